# Copyright 2025 Canonical Ltd.
# See LICENSE file for licensing details.

"""Cascading deletion of a Backup, guarded by its finalizer."""

import copy
import logging
from typing import Optional

from lightkube import Client
from lightkube.resources.apps_v1 import StatefulSet
from lightkube.resources.batch_v1 import Job
from lightkube.resources.core_v1 import Pod

from config import OperatorConfig
from constants import (
    APP_MANAGED_BY_LABEL,
    APP_NAME,
    BACKUP_NAME_LABEL,
    BACKUP_POLICY_LABEL,
    CLUSTER_UID_LABEL,
    DATAPROTECTION_FINALIZER,
)
from k8s_utils import (
    EventRecorder,
    k8s_patch_metadata,
    k8s_patch_status,
    k8s_remove_labeled,
    k8s_remove_resource,
)

from .crds import Backup, BackupStatusModel
from .deleter import Deleter
from .types import DeletionPolicy, DeletionStatus, Result

logger = logging.getLogger(__name__)


class DeletionOrchestrator:
    """Deletes everything a Backup owns before releasing its finalizer.

    The order is: the backups chained on this one, the backup workloads, then,
    unless the data is retained and once no backup pod is left, the volume
    snapshots and the files in the repository.
    """

    def __init__(
        self,
        client: Client,
        config: OperatorConfig,
        recorder: EventRecorder,
        deleter: Optional[Deleter] = None,
    ) -> None:
        self._client = client
        self._config = config
        self._recorder = recorder
        self._deleter = deleter or Deleter(client, config)

    def delete_related_backups(self, backup: Backup) -> int:
        """Delete the backups of the same policy whose parent or base is ``backup``.

        Returns:
            int: The number of deleted backups.
        """
        name = backup.metadata.name
        deleted = 0
        for related in self._client.list(
            Backup,
            namespace=backup.metadata.namespace,
            labels={BACKUP_POLICY_LABEL: backup.spec.backupPolicyName},
        ):
            status = related.status
            if related.metadata.name == name or status is None:
                continue
            if status.parentBackupName != name and status.baseBackupName != name:
                continue
            if related.metadata.deletionTimestamp:
                continue
            k8s_remove_resource(
                self._client, Backup, related.metadata.name, related.metadata.namespace
            )
            logger.info(
                "Deleted backup '%s/%s' related to backup '%s'",
                related.metadata.namespace,
                related.metadata.name,
                name,
            )
            deleted += 1
        return deleted

    def delete_external_resources(self, backup: Backup) -> None:
        """Delete the jobs and statefulsets that ran the backup."""
        labels = {
            BACKUP_NAME_LABEL: backup.metadata.name,
            APP_MANAGED_BY_LABEL: APP_NAME,
        }
        cluster_uid = (backup.metadata.labels or {}).get(CLUSTER_UID_LABEL)
        if cluster_uid:
            labels[CLUSTER_UID_LABEL] = cluster_uid
        namespaces = {backup.metadata.namespace, self._config.controller_namespace}
        k8s_remove_labeled(self._client, Job, namespaces, labels)
        k8s_remove_labeled(self._client, StatefulSet, namespaces, labels)

    def backup_pods_remaining(self, backup: Backup) -> bool:
        """Return whether pods labeled with the backup name still exist."""
        pods = self._client.list(
            Pod,
            namespace=backup.metadata.namespace,
            labels={BACKUP_NAME_LABEL: backup.metadata.name},
        )
        return any(True for _ in pods)

    def remove_finalizer(self, backup: Backup) -> None:
        """Release the finalizer so the backup can be removed."""
        finalizers = backup.metadata.finalizers or []
        if DATAPROTECTION_FINALIZER not in finalizers:
            return
        k8s_patch_metadata(
            self._client,
            backup,
            {"finalizers": [f for f in finalizers if f != DATAPROTECTION_FINALIZER]},
        )
        logger.info(
            "Removed finalizer of backup '%s/%s'", backup.metadata.namespace, backup.metadata.name
        )

    def handle(self, backup: Backup) -> Result:
        """Run one deletion pass over ``backup``.

        Raises:
            ApiError: If a deletion step fails, the pass is retried with backoff.
        """
        self.delete_related_backups(backup)
        self.delete_external_resources(backup)

        if backup.spec.deletionPolicy == DeletionPolicy.RETAIN:
            self._recorder.warning(
                backup, "Retain", "can not delete the backup if deletionPolicy is Retain"
            )
            return Result.done()

        if self.backup_pods_remaining(backup):
            logger.debug("Waiting for the pods of backup '%s' to be deleted", backup.metadata.name)
            return Result.retry(self._config.deletion_poll_interval)

        self._deleter.delete_volume_snapshots(backup)

        status, err = self._deleter.delete_backup_files(backup)
        if status == DeletionStatus.SUCCEEDED:
            self.remove_finalizer(backup)
            return Result.done()
        if status == DeletionStatus.FAILED:
            reason = str(err)
            current = backup.status.failureReason if backup.status else None
            if current != reason:
                working = copy.deepcopy(backup)
                if working.status is None:
                    working.status = BackupStatusModel()
                working.status.failureReason = reason
                self._recorder.warning(backup, "DeleteBackupFilesFailed", reason)
                k8s_patch_status(self._client, backup, working)
            return Result.retry(self._config.deletion_poll_interval)
        if status == DeletionStatus.UNKNOWN and err is not None:
            raise err
        return Result.retry(self._config.deletion_poll_interval)
