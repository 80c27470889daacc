# Copyright 2025 Canonical Ltd.
# See LICENSE file for licensing details.

"""The working request of one reconciliation pass and the actions it runs."""

import copy
import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

from lightkube.models.core_v1 import (
    Container,
    EnvVar,
    EnvVarSource,
    PersistentVolumeClaimVolumeSource,
    PodSpec,
    SecretKeySelector,
    SecretVolumeSource,
    Volume,
    VolumeMount,
)
from lightkube.models.meta_v1 import OwnerReference
from lightkube.resources.core_v1 import Pod

from constants import (
    APP_MANAGED_BY_LABEL,
    APP_NAME,
    BACKUP_NAME_LABEL,
    BACKUP_NAMESPACE_LABEL,
    BACKUP_TARGET_LABEL,
    CLUSTER_UID_LABEL,
    DP_BACKUP_BASE_PATH,
    DP_BACKUP_INFO_FILE,
    DP_BACKUP_NAME,
    DP_BASE_BACKUP_NAME,
    DP_ENCRYPTION_ALGORITHM,
    DP_ENCRYPTION_PASS_PHRASE,
    DP_KOPIA_REPO_ROOT,
    DP_PARENT_BACKUP_NAME,
    DP_TARGET_POD_NAME,
    DP_TARGET_POD_ROLE,
    DP_TOOL_CONFIG_PATH,
    POD_ROLE_LABEL,
    REPO_MOUNT_PATH,
    REPO_VOLUME_NAME,
    TERMINATION_MESSAGE_PATH,
    TOOL_CONFIG_MOUNT_PATH,
    TOOL_CONFIG_VOLUME_NAME,
)
from utils import build_object_name

from .actions import (
    Action,
    CreateVolumeSnapshotAction,
    ExecAction,
    JobAction,
    StatefulSetAction,
    WorkloadMeta,
)
from .crds import (
    ActionSet,
    ActionSpec,
    Backup,
    BackupMethod,
    BackupPolicy,
    BackupRepo,
    BackupStatusModel,
    BackupTarget,
    EncryptionConfig,
    JobActionSpec,
)
from .types import BackupType

logger = logging.getLogger(__name__)

BACKUP_DATA_ACTION = "backup-data"
CREATE_VOLUME_SNAPSHOT_ACTION = "create-volume-snapshot"
PRE_BACKUP_ACTION = "pre-backup"
POST_BACKUP_ACTION = "post-backup"

# statefulset pod names carry a revision hash label, keep room for it
MAX_STATEFULSET_NAME_LENGTH = 52


def backup_owner_reference(backup: Backup) -> OwnerReference:
    """Return the reference making a workload owned by ``backup``."""
    info = Backup._api_info.resource
    return OwnerReference(
        apiVersion=f"{info.group}/{info.version}",
        kind=info.kind,
        name=backup.metadata.name,
        uid=backup.metadata.uid,
        controller=True,
        blockOwnerDeletion=True,
    )


@dataclass
class Request:
    """Everything a pass knows about the Backup it reconciles.

    ``backup`` is a deep copy of the observed Backup: every mutation of the
    pass happens on it and is committed once, against the observed object.
    """

    backup: Backup
    policy: Optional[BackupPolicy] = None
    method: Optional[BackupMethod] = None
    action_set: Optional[ActionSet] = None
    snapshot_volumes: bool = False
    repo: Optional[BackupRepo] = None
    repo_pvc_name: Optional[str] = None
    tool_config_secret_name: Optional[str] = None
    parent_backup: Optional[Backup] = None
    base_backup: Optional[Backup] = None
    target: Optional[BackupTarget] = None
    target_pods: List[Pod] = field(default_factory=list)
    worker_service_account: Optional[str] = None
    encryption_config: Optional[EncryptionConfig] = None

    @classmethod
    def from_backup(cls, backup: Backup) -> "Request":
        """Start a request from a copy of the observed ``backup``."""
        working = copy.deepcopy(backup)
        if working.metadata.labels is None:
            working.metadata.labels = {}
        if working.metadata.annotations is None:
            working.metadata.annotations = {}
        if working.status is None:
            working.status = BackupStatusModel()
        return cls(backup=working)

    @property
    def name(self) -> str:
        """Name of the backup."""
        return self.backup.metadata.name

    @property
    def namespace(self) -> str:
        """Namespace of the backup."""
        return self.backup.metadata.namespace

    @property
    def status(self) -> BackupStatusModel:
        """Working status of the backup."""
        return self.backup.status

    def backup_type(self) -> BackupType:
        """Return the type of the backup, declared by the ActionSet of its method."""
        if self.action_set is None:
            return BackupType.FULL
        return BackupType.parse(self.action_set.spec.backupType)

    def workload_meta(self) -> WorkloadMeta:
        """Return the labels and owner of the workloads created for this backup."""
        labels = {
            BACKUP_NAME_LABEL: self.name,
            BACKUP_NAMESPACE_LABEL: self.namespace,
            APP_MANAGED_BY_LABEL: APP_NAME,
        }
        cluster_uid = self.backup.metadata.labels.get(CLUSTER_UID_LABEL)
        if cluster_uid:
            labels[CLUSTER_UID_LABEL] = cluster_uid
        if self.target is not None and self.target.name:
            labels[BACKUP_TARGET_LABEL] = self.target.name
        return WorkloadMeta(
            namespace=self.namespace, labels=labels, owner=backup_owner_reference(self.backup)
        )

    def workload_name(self, *parts: str, max_length: int = 63) -> str:
        """Return the deterministic name of a workload of this backup."""
        target = self.target.name if self.target is not None else None
        return build_object_name(self.name, target or "", *parts, max_length=max_length)

    def build_actions(self) -> Dict[str, List[Action]]:
        """Build the ordered actions of every selected target pod.

        Returns:
            Dict[str, List[Action]]: The actions to run, keyed by target pod name
            in the order the pods were selected.
        """
        actions: Dict[str, List[Action]] = {}
        for pod in self.target_pods:
            actions[pod.metadata.name] = self._build_pod_actions(pod)
        return actions

    def _build_pod_actions(self, pod: Pod) -> List[Action]:
        backup_spec = self.action_set.spec.backup if self.action_set is not None else None
        pre_backup = (backup_spec.preBackup if backup_spec else None) or []
        post_backup = (backup_spec.postBackup if backup_spec else None) or []
        acts: List[Action] = []
        for i, spec in enumerate(pre_backup):
            acts.append(self._build_hook_action(f"{PRE_BACKUP_ACTION}-{i}", spec, pod))

        if self.snapshot_volumes:
            acts.append(self._build_snapshot_action(pod))
        elif backup_spec is not None and backup_spec.backupData is not None:
            acts.append(self._build_backup_data_action(backup_spec.backupData, pod))

        for i, spec in enumerate(post_backup):
            acts.append(self._build_hook_action(f"{POST_BACKUP_ACTION}-{i}", spec, pod))
        return acts

    def _build_hook_action(self, name: str, spec: ActionSpec, pod: Pod) -> Action:
        meta = self.workload_meta()
        job_name = self.workload_name(name, pod.metadata.name)
        if spec.exec is not None:
            container = spec.exec.container or pod.spec.containers[0].name
            return ExecAction(
                name,
                pod.metadata.name,
                job_name,
                meta,
                container=container,
                command=spec.exec.command,
                service_account=self.worker_service_account,
                timeout=spec.exec.timeout,
            )
        return JobAction(
            name,
            pod.metadata.name,
            job_name,
            meta,
            pod_spec=self._build_job_pod_spec(spec.job, pod, name),
            backoff_limit=self.policy.spec.backoffLimit,
        )

    def _build_backup_data_action(self, spec: JobActionSpec, pod: Pod) -> Action:
        meta = self.workload_meta()
        pod_spec = self._build_job_pod_spec(spec, pod, BACKUP_DATA_ACTION)
        if self.backup_type() == BackupType.CONTINUOUS:
            return StatefulSetAction(
                BACKUP_DATA_ACTION,
                pod.metadata.name,
                self.workload_name(max_length=MAX_STATEFULSET_NAME_LENGTH),
                meta,
                pod_spec,
            )
        return JobAction(
            BACKUP_DATA_ACTION,
            pod.metadata.name,
            self.workload_name(BACKUP_DATA_ACTION, pod.metadata.name),
            meta,
            pod_spec=pod_spec,
            backoff_limit=self.policy.spec.backoffLimit,
        )

    def _build_snapshot_action(self, pod: Pod) -> Action:
        wanted = set()
        if self.method.targetVolumes and self.method.targetVolumes.volumes:
            wanted = set(self.method.targetVolumes.volumes)
        volumes: List[Tuple[str, str]] = []
        for vol in pod.spec.volumes or []:
            if vol.persistentVolumeClaim is None:
                continue
            if wanted and vol.name not in wanted:
                continue
            volumes.append((vol.name, vol.persistentVolumeClaim.claimName))
        return CreateVolumeSnapshotAction(
            CREATE_VOLUME_SNAPSHOT_ACTION,
            pod.metadata.name,
            self.name,
            self.workload_meta(),
            volumes,
            target_name=self.target.name if self.target is not None else None,
        )

    def build_env(self, pod: Pod) -> List[EnvVar]:
        """Return the environment handed over to the backup tools for ``pod``."""
        status = self.status
        base_path = status.path or ""
        if base_path and self.target is not None and self.target.name:
            base_path = f"{base_path}/{self.target.name}"
        env = [
            EnvVar(name=DP_BACKUP_NAME, value=self.name),
            EnvVar(name=DP_TARGET_POD_NAME, value=pod.metadata.name),
            EnvVar(name=DP_BACKUP_BASE_PATH, value=base_path),
            EnvVar(name=DP_BACKUP_INFO_FILE, value=TERMINATION_MESSAGE_PATH),
        ]
        role = (pod.metadata.labels or {}).get(POD_ROLE_LABEL)
        if role:
            env.append(EnvVar(name=DP_TARGET_POD_ROLE, value=role))
        if self.parent_backup is not None:
            env.append(EnvVar(name=DP_PARENT_BACKUP_NAME, value=self.parent_backup.metadata.name))
        if self.base_backup is not None:
            env.append(EnvVar(name=DP_BASE_BACKUP_NAME, value=self.base_backup.metadata.name))
        if status.kopiaRepoPath:
            env.append(EnvVar(name=DP_KOPIA_REPO_ROOT, value=status.kopiaRepoPath))

        encryption = status.encryptionConfig
        if encryption is not None:
            env.append(EnvVar(name=DP_ENCRYPTION_ALGORITHM, value=encryption.algorithm))
            ref = encryption.passPhraseSecretKeyRef
            if ref is not None:
                env.append(
                    EnvVar(
                        name=DP_ENCRYPTION_PASS_PHRASE,
                        valueFrom=EnvVarSource(
                            secretKeyRef=SecretKeySelector(name=ref.name, key=ref.key)
                        ),
                    )
                )
        if self.tool_config_secret_name:
            env.append(
                EnvVar(name=DP_TOOL_CONFIG_PATH, value=f"{TOOL_CONFIG_MOUNT_PATH}/datasafed.conf")
            )

        if self.action_set is not None:
            env.extend(self.action_set.spec.env or [])
        env.extend(self.method.env or [])
        for param in self.backup.spec.parameters or []:
            env.append(EnvVar(name=param.name, value=param.value))
        return env

    def _build_job_pod_spec(self, spec: JobActionSpec, pod: Pod, container_name: str) -> PodSpec:
        volumes: List[Volume] = []
        mounts: List[VolumeMount] = []
        if self.repo_pvc_name:
            volumes.append(
                Volume(
                    name=REPO_VOLUME_NAME,
                    persistentVolumeClaim=PersistentVolumeClaimVolumeSource(
                        claimName=self.repo_pvc_name
                    ),
                )
            )
            mounts.append(VolumeMount(name=REPO_VOLUME_NAME, mountPath=REPO_MOUNT_PATH))
        if self.tool_config_secret_name:
            volumes.append(
                Volume(
                    name=TOOL_CONFIG_VOLUME_NAME,
                    secret=SecretVolumeSource(secretName=self.tool_config_secret_name),
                )
            )
            mounts.append(
                VolumeMount(
                    name=TOOL_CONFIG_VOLUME_NAME, mountPath=TOOL_CONFIG_MOUNT_PATH, readOnly=True
                )
            )

        node_name = None
        if spec.runOnTargetPodNode:
            node_name = pod.spec.nodeName
            target_volumes = self.method.targetVolumes
            if target_volumes is not None:
                wanted = set(target_volumes.volumes or [])
                volumes.extend(v for v in pod.spec.volumes or [] if v.name in wanted)
                mounts.extend(target_volumes.volumeMounts or [])

        return PodSpec(
            serviceAccountName=self.worker_service_account,
            nodeName=node_name,
            volumes=volumes or None,
            containers=[
                Container(
                    name=container_name,
                    image=spec.image,
                    imagePullPolicy="IfNotPresent",
                    command=spec.command,
                    env=self.build_env(pod),
                    volumeMounts=mounts or None,
                    terminationMessagePath=TERMINATION_MESSAGE_PATH,
                )
            ],
        )
