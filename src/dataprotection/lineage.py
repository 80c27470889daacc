# Copyright 2025 Canonical Ltd.
# See LICENSE file for licensing details.

"""Parent and base backup resolution of incremental backups.

An incremental backup chains on a parent backup. The base of the chain is
the Full backup every incremental of the chain is relative to: the parent
itself when it is Full, the base of the parent when it is Incremental.
"""

import logging
from typing import List, Optional

from lightkube import Client
from lightkube.core.exceptions import ApiError

from constants import BACKUP_POLICY_LABEL
from k8s_utils import k8s_get

from .crds import ActionSet, Backup, BackupMethod, BackupPolicy
from .errors import FatalError
from .request import Request
from .types import BackupPhase, BackupType

logger = logging.getLogger(__name__)


def _compatible_methods(method: BackupMethod) -> List[str]:
    methods = [method.name]
    if method.compatibleMethod:
        methods.append(method.compatibleMethod)
    return methods


def _is_parent_candidate(
    backup: Backup, candidate: Backup, method: BackupMethod, repo_name: str
) -> bool:
    if candidate.metadata.name == backup.metadata.name:
        return False
    if candidate.metadata.deletionTimestamp:
        return False
    status = candidate.status
    if status is None or status.phase != BackupPhase.COMPLETED:
        return False
    if status.backupRepoName != repo_name:
        return False
    if candidate.spec.backupPolicyName != backup.spec.backupPolicyName:
        return False
    return candidate.spec.backupMethod in _compatible_methods(method)


def get_parent_backup(
    client: Client, backup: Backup, method: BackupMethod, repo_name: str
) -> Backup:
    """Find the parent of an incremental backup.

    An explicit ``spec.parentBackupName`` is used when set. Otherwise the parent
    is the latest completed backup of the same policy and repository taken by
    this method or by the method it is compatible with.

    Raises:
        FatalError: If no valid parent backup exists.
    """
    namespace = backup.metadata.namespace
    explicit = backup.spec.parentBackupName
    if explicit:
        parent = k8s_get(client, Backup, explicit, namespace)
        if parent is None:
            raise FatalError(f"parent backup {namespace}/{explicit} not found")
        if not _is_parent_candidate(backup, parent, method, repo_name):
            raise FatalError(
                f"backup {namespace}/{explicit} can not be the parent of backup "
                f"{namespace}/{backup.metadata.name}: it must be a completed backup of "
                f"the same backup policy, backup repo and a compatible backup method"
            )
        return parent

    candidates = [
        b
        for b in client.list(
            Backup,
            namespace=namespace,
            labels={BACKUP_POLICY_LABEL: backup.spec.backupPolicyName},
        )
        if _is_parent_candidate(backup, b, method, repo_name)
    ]
    if not candidates:
        raise FatalError(
            f"failed to find a completed parent backup for incremental backup "
            f"{namespace}/{backup.metadata.name}"
        )
    parent = max(candidates, key=lambda b: (b.status.completionTimestamp or "", b.metadata.name))
    logger.debug(
        "Found parent backup '%s' for backup '%s/%s'",
        parent.metadata.name,
        namespace,
        backup.metadata.name,
    )
    return parent


def get_backup_type_by_method(
    client: Client, method_name: str, policy: BackupPolicy
) -> BackupType:
    """Return the type of the backups taken by a method of a backup policy.

    Methods snapshotting volumes without an ActionSet take Full backups.

    Raises:
        FatalError: If the method or its ActionSet can not be found.
    """
    method = policy.get_method(method_name)
    if method is None:
        raise FatalError(f"backupMethod: {method_name} not found")
    if not method.actionSetName:
        return BackupType.FULL
    action_set = k8s_get(client, ActionSet, method.actionSetName)
    if action_set is None:
        raise FatalError(f"actionSet {method.actionSetName} not found")
    try:
        return BackupType.parse(action_set.spec.backupType)
    except ValueError as ve:
        raise FatalError(
            f"unknown backup type {action_set.spec.backupType} of actionSet "
            f"{method.actionSetName}"
        ) from ve


def prepare_incremental(client: Client, request: Request) -> Request:
    """Resolve the parent and the base backup of an incremental backup.

    Raises:
        FatalError: If the chain is broken or does not start with a full backup.
    """
    if request.repo is None:
        raise FatalError("backupRepo for incremental backup can't be empty")

    parent = get_parent_backup(
        client, request.backup, request.method, request.repo.metadata.name
    )
    parent_type = get_backup_type_by_method(client, parent.spec.backupMethod, request.policy)

    base: Optional[Backup]
    if parent_type == BackupType.FULL:
        base = parent
    elif parent_type == BackupType.INCREMENTAL:
        namespace = parent.metadata.namespace
        base_name = parent.status.baseBackupName if parent.status else None
        if not base_name:
            raise FatalError(
                f"backup {namespace}/{parent.metadata.name} base backup name is empty"
            )
        try:
            base = client.get(Backup, name=base_name, namespace=namespace)
        except ApiError as ae:
            raise FatalError(f"failed to get base backup {namespace}/{base_name}: {ae}") from ae
    else:
        raise FatalError(
            f"parent backup type is {parent_type}, "
            "but only full and incremental backup are supported"
        )

    request.parent_backup = parent
    request.base_backup = base
    return request
