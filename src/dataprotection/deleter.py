# Copyright 2025 Canonical Ltd.
# See LICENSE file for licensing details.

"""Removal of the data a backup stored in its repository."""

import logging
import shlex
from typing import List, Optional, Tuple

from lightkube import Client
from lightkube.core.exceptions import ApiError
from lightkube.models.batch_v1 import JobSpec
from lightkube.models.core_v1 import (
    Container,
    EnvVar,
    PersistentVolumeClaimVolumeSource,
    PodSpec,
    PodTemplateSpec,
    SecretVolumeSource,
    Volume,
    VolumeMount,
)
from lightkube.models.meta_v1 import ObjectMeta
from lightkube.resources.batch_v1 import Job
from lightkube.resources.core_v1 import PersistentVolumeClaim, Secret

from config import OperatorConfig
from constants import (
    APP_MANAGED_BY_LABEL,
    APP_NAME,
    BACKUP_NAME_LABEL,
    BACKUP_NAMESPACE_LABEL,
    DELETE_BACKUP_LABEL,
    DP_TOOL_CONFIG_PATH,
    REPO_MOUNT_PATH,
    REPO_VOLUME_NAME,
    TOOL_CONFIG_MOUNT_PATH,
    TOOL_CONFIG_VOLUME_NAME,
    VOLUME_SNAPSHOT_RESOURCE,
)
from k8s_utils import k8s_ensure_service_account, k8s_get, k8s_remove_labeled, k8s_remove_resource
from utils import build_object_name

from .actions import job_phase
from .builder import ACCESS_METHOD_MOUNT, repo_access_method
from .crds import Backup, BackupRepo
from .errors import DataProtectionError
from .types import ActionPhase, DeletionStatus

logger = logging.getLogger(__name__)


class DeletionError(DataProtectionError):
    """The backup data could not be deleted."""


class Deleter:
    """Deletes the files and the volume snapshots of a backup."""

    def __init__(self, client: Client, config: OperatorConfig) -> None:
        self._client = client
        self._config = config

    @staticmethod
    def deletion_job_name(backup: Backup) -> str:
        """Return the name of the job deleting the files of ``backup``."""
        uid = (backup.metadata.uid or "")[:8]
        return build_object_name("dp-delete", backup.metadata.name, uid)

    @staticmethod
    def deletion_job_labels(backup: Backup) -> dict:
        """Return the labels of the job deleting the files of ``backup``."""
        # never the backup name label: the deletion job must outlive the backup workloads
        return {
            APP_MANAGED_BY_LABEL: APP_NAME,
            BACKUP_NAMESPACE_LABEL: backup.metadata.namespace,
            DELETE_BACKUP_LABEL: build_object_name(backup.metadata.name),
        }

    def delete_backup_files(self, backup: Backup) -> Tuple[DeletionStatus, Optional[Exception]]:
        """Delete the files of ``backup`` from its repository.

        Returns:
            Tuple[DeletionStatus, Optional[Exception]]: The deletion status and, for
            failed or unknown deletions, the error.
        """
        status = backup.status
        if status is None or not status.path or not status.backupRepoName:
            logger.debug("Backup '%s' has no data to delete", backup.metadata.name)
            return DeletionStatus.SUCCEEDED, None
        if not status.path.strip("/"):
            return DeletionStatus.FAILED, DeletionError(f"refusing to delete path {status.path!r}")

        try:
            repo = k8s_get(self._client, BackupRepo, status.backupRepoName)
            if repo is None:
                logger.info(
                    "BackupRepo '%s' of backup '%s/%s' not found, skipping files deletion",
                    status.backupRepoName,
                    backup.metadata.namespace,
                    backup.metadata.name,
                )
                return DeletionStatus.SUCCEEDED, None

            name = self.deletion_job_name(backup)
            namespace = backup.metadata.namespace
            job = k8s_get(self._client, Job, name, namespace)
            if job is None:
                return self._create_deletion_job(backup, repo, name)

            phase, message = job_phase(job)
            if phase == ActionPhase.COMPLETED:
                logger.info("Deleted files of backup '%s/%s'", namespace, backup.metadata.name)
                k8s_remove_resource(self._client, Job, name, namespace)
                return DeletionStatus.SUCCEEDED, None
            if phase == ActionPhase.FAILED:
                # removed so the next attempt starts over
                k8s_remove_resource(self._client, Job, name, namespace)
                return DeletionStatus.FAILED, DeletionError(
                    f"deletion job {namespace}/{name} failed: {message}"
                )
            return DeletionStatus.DELETING, None
        except ApiError as ae:
            logger.error("Failed to delete files of backup '%s': %s", backup.metadata.name, ae)
            return DeletionStatus.UNKNOWN, ae

    def _create_deletion_job(
        self, backup: Backup, repo: BackupRepo, name: str
    ) -> Tuple[DeletionStatus, Optional[Exception]]:
        namespace = backup.metadata.namespace
        path = backup.status.path
        volumes: List[Volume] = []
        mounts: List[VolumeMount] = []
        env: List[EnvVar] = []

        if repo_access_method(repo) == ACCESS_METHOD_MOUNT:
            pvc_name = repo.status.backupPVCName if repo.status else None
            if not pvc_name or k8s_get(
                self._client, PersistentVolumeClaim, pvc_name, namespace
            ) is None:
                logger.info("Waiting for the repo PVC of BackupRepo '%s'", repo.metadata.name)
                return DeletionStatus.DELETING, None
            volumes.append(
                Volume(
                    name=REPO_VOLUME_NAME,
                    persistentVolumeClaim=PersistentVolumeClaimVolumeSource(claimName=pvc_name),
                )
            )
            mounts.append(VolumeMount(name=REPO_VOLUME_NAME, mountPath=REPO_MOUNT_PATH))
            command = f"rm -rf {shlex.quote(REPO_MOUNT_PATH + path)}"
        else:
            secret_name = repo.status.toolConfigSecretName if repo.status else None
            if not secret_name or k8s_get(self._client, Secret, secret_name, namespace) is None:
                logger.info("Waiting for the tool config of BackupRepo '%s'", repo.metadata.name)
                return DeletionStatus.DELETING, None
            volumes.append(
                Volume(
                    name=TOOL_CONFIG_VOLUME_NAME,
                    secret=SecretVolumeSource(secretName=secret_name),
                )
            )
            mounts.append(
                VolumeMount(
                    name=TOOL_CONFIG_VOLUME_NAME, mountPath=TOOL_CONFIG_MOUNT_PATH, readOnly=True
                )
            )
            env.append(
                EnvVar(name=DP_TOOL_CONFIG_PATH, value=f"{TOOL_CONFIG_MOUNT_PATH}/datasafed.conf")
            )
            command = f"datasafed rm -r {shlex.quote(path)}"

        service_account = k8s_ensure_service_account(
            self._client,
            self._config.worker_service_account,
            namespace,
            self._config.worker_cluster_role,
        )
        labels = self.deletion_job_labels(backup)
        job = Job(
            metadata=ObjectMeta(name=name, namespace=namespace, labels=labels),
            spec=JobSpec(
                backoffLimit=3,
                ttlSecondsAfterFinished=self._config.job_ttl_seconds or None,
                template=PodTemplateSpec(
                    metadata=ObjectMeta(labels=labels),
                    spec=PodSpec(
                        restartPolicy="Never",
                        serviceAccountName=service_account,
                        volumes=volumes,
                        containers=[
                            Container(
                                name="delete",
                                image=self._config.tool_image,
                                imagePullPolicy="IfNotPresent",
                                command=["sh", "-c", command],
                                env=env or None,
                                volumeMounts=mounts,
                            )
                        ],
                    ),
                ),
            ),
        )
        logger.info("Creating deletion job '%s/%s' for path '%s'", namespace, name, path)
        self._client.create(job)
        return DeletionStatus.DELETING, None

    def delete_volume_snapshots(self, backup: Backup) -> int:
        """Delete the volume snapshots taken for ``backup``.

        Raises:
            ApiError: If the volume snapshots can not be listed or deleted.
        """
        return k8s_remove_labeled(
            self._client,
            VOLUME_SNAPSHOT_RESOURCE,
            [backup.metadata.namespace],
            {BACKUP_NAME_LABEL: backup.metadata.name},
        )
