# Copyright 2025 Canonical Ltd.
# See LICENSE file for licensing details.

"""Configuration for the operator."""

from typing import Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class OperatorConfig(BaseSettings):
    """Manager for the structured configuration, read from ``DP_*`` environment variables."""

    model_config = SettingsConfigDict(env_prefix="DP_", case_sensitive=False, extra="ignore")

    controller_namespace: str = "kb-system"
    reconcile_workers: int = Field(default=4, ge=1, le=64)
    field_manager: str = "dataprotection-operator"

    worker_service_account: str = "kubeblocks-dataprotection-worker"
    worker_cluster_role: str = "kubeblocks-dataprotection-worker-role"
    tool_image: str = "apecloud/datasafed:0.2.0"
    exec_image: str = "bitnami/kubectl:latest"
    volume_snapshot_class: Optional[str] = None

    running_poll_interval: float = Field(default=30.0, gt=0)
    deletion_poll_interval: float = Field(default=5.0, gt=0)
    repo_wait_interval: float = Field(default=10.0, gt=0)
    continuous_retry_delay: float = Field(default=60.0, gt=0)
    requeue_base_delay: float = Field(default=0.5, gt=0)
    requeue_max_delay: float = Field(default=300.0, gt=0)

    job_ttl_seconds: int = Field(default=600, ge=0)
    log_tail_lines: int = Field(default=20, ge=1)
    log_level: str = "INFO"

    @field_validator("*", mode="before")
    @classmethod
    def blank_string(cls, value):
        """Convert empty strings to None."""
        if value == "":
            return None
        return value

    @field_validator("log_level")
    @classmethod
    def upper_log_level(cls, value: str) -> str:
        """Normalise the log level name."""
        return value.upper()
