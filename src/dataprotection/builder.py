# Copyright 2025 Canonical Ltd.
# See LICENSE file for licensing details.

"""Assembly and validation of the working request of a Backup."""

import logging
from typing import List, Optional

from lightkube import Client
from lightkube.resources.core_v1 import PersistentVolumeClaim, Secret

from constants import (
    BACKUP_SCHEDULE_LABEL,
    DEFAULT_REPO_ANNOTATION,
    SUPPORTED_ENCRYPTION_ALGORITHMS,
)
from k8s_utils import k8s_get, k8s_resource_exists

from .crds import ActionSet, Backup, BackupPolicy, BackupRepo, BackupSchedule, EncryptionConfig
from .errors import FatalError
from .lineage import prepare_incremental
from .parameters import ParameterError, validate_parameters
from .request import Request
from .types import BackupType

logger = logging.getLogger(__name__)

POLICY_UNAVAILABLE_PHASE = "Unavailable"
REPO_FAILED_PHASE = "Failed"
SCHEDULE_AVAILABLE_PHASE = "Available"
ACCESS_METHOD_MOUNT = "Mount"
ACCESS_METHOD_TOOL = "Tool"


def repo_access_method(repo: BackupRepo) -> str:
    """Return how the backup workloads reach a repository, Mount by default."""
    return (repo.spec.accessMethod if repo.spec else None) or ACCESS_METHOD_MOUNT


class RequestBuilder:
    """Builds the working request of a Backup from the objects it references.

    Every reference is looked up and validated in order. A reference that can
    never become valid is a ``FatalError``, API errors propagate as they are.
    """

    def __init__(self, client: Client) -> None:
        self._client = client

    def build(self, backup: Backup) -> Request:
        """Build and validate the request of ``backup``.

        Raises:
            FatalError: If the backup can never be taken as specified.
            ApiError: If a referenced object can not be read.
        """
        request = Request.from_backup(backup)
        self._resolve_policy(request)
        self._resolve_method(request)
        self._resolve_action_set(request)
        self._check_encryption_config(request)
        if not request.snapshot_volumes:
            self._bind_repo(request)

        backup_type = request.backup_type()
        if backup_type == BackupType.INCREMENTAL:
            prepare_incremental(self._client, request)
        elif backup_type == BackupType.CONTINUOUS:
            self._validate_continuous(request)
        return request

    def _resolve_policy(self, request: Request) -> None:
        name = request.backup.spec.backupPolicyName
        policy = k8s_get(self._client, BackupPolicy, name, request.namespace)
        if policy is None:
            raise FatalError(f'backupPolicy "{name}" not found')
        if policy.status is not None and policy.status.phase == POLICY_UNAVAILABLE_PHASE:
            raise FatalError(f'phase of backupPolicy "{name}" is Unavailable')
        request.policy = policy

    def _resolve_method(self, request: Request) -> None:
        name = request.backup.spec.backupMethod
        method = request.policy.get_method(name)
        if method is None:
            raise FatalError(f"backupMethod: {name} not found")
        request.snapshot_volumes = bool(method.snapshotVolumes)
        if not request.snapshot_volumes and not method.actionSetName:
            raise FatalError(
                f"backup method {method.name} should specify snapshotVolumes or actionSetName"
            )
        request.method = method

    def _resolve_action_set(self, request: Request) -> None:
        name = request.method.actionSetName
        if not name:
            return
        action_set = k8s_get(self._client, ActionSet, name)
        if action_set is None:
            raise FatalError(f"actionSet {name} not found")
        try:
            BackupType.parse(action_set.spec.backupType)
        except ValueError as ve:
            raise FatalError(
                f"unknown backup type {action_set.spec.backupType} of actionSet {name}"
            ) from ve
        try:
            validate_parameters(action_set, request.backup.spec.parameters)
        except ParameterError as pe:
            raise FatalError(f"fails to validate parameters with actionset {name}: {pe}") from pe
        request.action_set = action_set

    def _check_encryption_config(self, request: Request) -> None:
        """Validate the encryption config, the Backup one overriding the policy one."""
        config = request.backup.spec.encryptionConfig or request.policy.spec.encryptionConfig
        if config is None:
            return
        error = self._encryption_config_error(config, request.namespace)
        if error:
            raise FatalError(f"failed to validate backupPolicy's encryption config: {error}")
        request.encryption_config = config

    def _encryption_config_error(self, config: EncryptionConfig, namespace: str) -> Optional[str]:
        if config.algorithm not in SUPPORTED_ENCRYPTION_ALGORITHMS:
            return f"unsupported encryption algorithm {config.algorithm}"
        ref = config.passPhraseSecretKeyRef
        if ref is None or not ref.name or not ref.key:
            return "passPhraseSecretKeyRef must be set"
        secret = k8s_get(self._client, Secret, ref.name, namespace)
        if secret is None:
            return f"secret {namespace}/{ref.name} not found"
        value = (secret.data or {}).get(ref.key)
        if not value:
            return f"key {ref.key} not found in secret {namespace}/{ref.name}"
        return None

    def _get_default_repo(self) -> BackupRepo:
        defaults: List[BackupRepo] = [
            repo
            for repo in self._client.list(BackupRepo)
            if (repo.metadata.annotations or {}).get(DEFAULT_REPO_ANNOTATION) == "true"
        ]
        if not defaults:
            raise FatalError("no default BackupRepo found")
        if len(defaults) > 1:
            raise FatalError("multiple default BackupRepo found")
        return defaults[0]

    def _bind_repo(self, request: Request) -> None:
        """Bind the backup to its repository and find the repository access objects.

        A missing access object means the repository is still being prepared for
        the namespace: the request is left without it.
        """
        name = request.policy.spec.backupRepoName
        if name:
            repo = k8s_get(self._client, BackupRepo, name)
            if repo is None:
                raise FatalError(f'backupRepo "{name}" not found')
        else:
            repo = self._get_default_repo()
        if repo.status is not None and repo.status.phase == REPO_FAILED_PHASE:
            raise FatalError(f'backupRepo "{repo.metadata.name}" is failed')
        request.repo = repo

        status = repo.status
        access_method = repo_access_method(repo)
        if access_method == ACCESS_METHOD_MOUNT:
            pvc_name = status.backupPVCName if status else None
            if pvc_name and k8s_resource_exists(
                self._client, PersistentVolumeClaim, pvc_name, request.namespace
            ):
                request.repo_pvc_name = pvc_name
        elif access_method == ACCESS_METHOD_TOOL:
            secret_name = status.toolConfigSecretName if status else None
            if secret_name and k8s_resource_exists(
                self._client, Secret, secret_name, request.namespace
            ):
                request.tool_config_secret_name = secret_name
        else:
            raise FatalError(
                f'unknown access method {access_method} of backupRepo "{repo.metadata.name}"'
            )

    def _validate_continuous(self, request: Request) -> None:
        """Check that a continuous backup belongs to an available BackupSchedule."""
        backup = request.backup
        schedule_name = (backup.metadata.labels or {}).get(BACKUP_SCHEDULE_LABEL)
        if not schedule_name:
            raise FatalError("continuous backup is only allowed to be created by backupSchedule")
        schedule = k8s_get(self._client, BackupSchedule, schedule_name, request.namespace)
        if schedule is None:
            raise FatalError(f"backupSchedule {request.namespace}/{schedule_name} not found")
        if schedule.status is None or schedule.status.phase != SCHEDULE_AVAILABLE_PHASE:
            raise FatalError(
                f"create continuous backup by failed backupschedule "
                f"{request.namespace}/{schedule_name}"
            )
        if schedule.get_schedule(backup.spec.backupMethod) is None:
            raise FatalError(
                f"backupSchedule {request.namespace}/{schedule_name} has no schedule for "
                f"backup method {backup.spec.backupMethod}"
            )


def repo_is_waiting(request: Request) -> bool:
    """Return True if the repository access objects of the request are not ready yet."""
    if request.repo is None:
        return False
    if repo_access_method(request.repo) == ACCESS_METHOD_MOUNT:
        return request.repo_pvc_name is None
    return request.tool_config_secret_name is None
