# Copyright 2025 Canonical Ltd.
# See LICENSE file for licensing details.

"""Base classes of the backup actions."""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, Optional

from lightkube import Client
from lightkube.models.core_v1 import ObjectReference
from lightkube.models.meta_v1 import OwnerReference
from pydantic import BaseModel, ValidationError

from config import OperatorConfig
from utils import format_time

from ..crds import ActionStatus, BackupTimeRange
from ..types import ActionPhase, ActionType

logger = logging.getLogger(__name__)


class BackupInfo(BaseModel):
    """Information reported by a backup workload about the data it wrote."""

    totalSize: Optional[str] = None
    timeRange: Optional[Dict[str, Optional[str]]] = None


def parse_backup_info(raw: Optional[str]) -> Optional[BackupInfo]:
    """Parse the JSON backup information written by a backup workload.

    Malformed information is logged and ignored.
    """
    if not raw:
        return None
    try:
        return BackupInfo.model_validate_json(raw)
    except ValidationError as ve:
        logger.warning("Ignoring malformed backup info %r: %s", raw, ve)
        return None


@dataclass
class ActionContext:
    """Collaborators available to an action while it runs."""

    client: Client
    config: OperatorConfig
    now: datetime


@dataclass
class WorkloadMeta:
    """Identity shared by every workload created for one backup."""

    namespace: str
    labels: Dict[str, str]
    owner: Optional[OwnerReference] = None


class Action(ABC):
    """A data-movement step run against one target pod.

    Actions are idempotent: executing an action whose workload already exists
    observes that workload instead of creating a new one.
    """

    action_type: ActionType = ActionType.NONE

    def __init__(self, name: str, target_pod_name: str) -> None:
        self.name = name
        self.target_pod_name = target_pod_name

    @abstractmethod
    def execute(self, ctx: ActionContext) -> ActionStatus:
        """Run the action, or observe its progress, and report its status.

        Raises:
            ApiError: If the workload of the action can not be read or created.
        """

    def new_status(
        self,
        phase: ActionPhase,
        ctx: Optional[ActionContext] = None,
        object_ref: Optional[ObjectReference] = None,
        failure_reason: Optional[str] = None,
        info: Optional[BackupInfo] = None,
    ) -> ActionStatus:
        """Build the status of this action in ``phase``."""
        status = ActionStatus(
            name=self.name,
            targetPodName=self.target_pod_name,
            phase=str(phase),
            actionType=str(self.action_type),
            objectRef=object_ref,
            failureReason=failure_reason,
        )
        if phase.is_terminal and ctx is not None:
            status.completionTimestamp = format_time(ctx.now)
        if info is not None:
            status.totalSize = info.totalSize
            if info.timeRange:
                status.timeRange = BackupTimeRange.from_dict(info.timeRange)
        return status

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.name!r}, {self.target_pod_name!r})"
