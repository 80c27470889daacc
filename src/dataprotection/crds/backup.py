# Copyright 2025 Canonical Ltd.
# See LICENSE file for licensing details.

"""Backup CRD model."""

from typing import ClassVar, List, Optional

from lightkube.codecs import resource_registry
from lightkube.core import resource as res
from lightkube.core.schema import DictMixin, dataclass
from lightkube.models import core_v1, meta_v1

from .backup_policy import BackupMethod
from .common import API_GROUP, API_VERSION, NAMESPACED_VERBS, EncryptionConfig, PodSelector


@dataclass
class ParameterPair(DictMixin):
    """A named parameter handed over to the backup actions."""

    name: str
    value: str


@dataclass
class BackupSpecModel(DictMixin):
    """Backup specification model."""

    backupPolicyName: str
    backupMethod: str
    deletionPolicy: Optional[str] = None
    retentionPeriod: Optional[str] = None
    parentBackupName: Optional[str] = None
    parameters: Optional[List[ParameterPair]] = None
    encryptionConfig: Optional[EncryptionConfig] = None


@dataclass
class BackupTimeRange(DictMixin):
    """Time range covered by the backup data."""

    start: Optional[str] = None
    end: Optional[str] = None
    timeZone: Optional[str] = None


@dataclass
class VolumeSnapshotStatus(DictMixin):
    """A volume snapshot taken for a backup."""

    name: Optional[str] = None
    contentName: Optional[str] = None
    volumeName: Optional[str] = None
    size: Optional[str] = None
    targetName: Optional[str] = None


@dataclass
class ActionStatus(DictMixin):
    """Status of one action on one target pod."""

    name: str
    targetPodName: Optional[str] = None
    phase: Optional[str] = None
    actionType: Optional[str] = None
    startTimestamp: Optional[str] = None
    completionTimestamp: Optional[str] = None
    failureReason: Optional[str] = None
    totalSize: Optional[str] = None
    timeRange: Optional[BackupTimeRange] = None
    objectRef: Optional[core_v1.ObjectReference] = None
    availableReplicas: Optional[int] = None
    volumeSnapshots: Optional[List[VolumeSnapshotStatus]] = None


@dataclass
class BackupStatusTarget(DictMixin):
    """A backup target together with the pods selected for it."""

    name: Optional[str] = None
    podSelector: Optional[PodSelector] = None
    serviceAccountName: Optional[str] = None
    selectedTargetPods: Optional[List[str]] = None


@dataclass
class BackupStatusModel(DictMixin):
    """Backup status model."""

    formatVersion: Optional[str] = None
    phase: Optional[str] = None
    startTimestamp: Optional[str] = None
    completionTimestamp: Optional[str] = None
    duration: Optional[str] = None
    expiration: Optional[str] = None
    path: Optional[str] = None
    kopiaRepoPath: Optional[str] = None
    backupRepoName: Optional[str] = None
    persistentVolumeClaimName: Optional[str] = None
    backupMethod: Optional[BackupMethod] = None
    target: Optional[BackupStatusTarget] = None
    targets: Optional[List[BackupStatusTarget]] = None
    actions: Optional[List[ActionStatus]] = None
    totalSize: Optional[str] = None
    timeRange: Optional[BackupTimeRange] = None
    parentBackupName: Optional[str] = None
    baseBackupName: Optional[str] = None
    encryptionConfig: Optional[EncryptionConfig] = None
    failureReason: Optional[str] = None


@dataclass
class BackupModel(DictMixin):
    """Backup model representing the Backup CRD."""

    apiVersion: Optional[str] = None
    kind: Optional[str] = None
    metadata: Optional[meta_v1.ObjectMeta] = None
    spec: Optional[BackupSpecModel] = None
    status: Optional[BackupStatusModel] = None


class BackupStatus(res.NamespacedSubResource, BackupModel):
    """Backup status sub-resource."""

    _api_info = res.ApiInfo(
        resource=res.ResourceDef(API_GROUP, API_VERSION, "Backup"),
        parent=res.ResourceDef(API_GROUP, API_VERSION, "Backup"),
        plural="backups",
        verbs=["get", "patch", "put"],
        action="status",
    )


@resource_registry.register
class Backup(res.NamespacedResourceG, BackupModel):
    """Backup resource for the Backup CRD."""

    _api_info = res.ApiInfo(
        resource=res.ResourceDef(API_GROUP, API_VERSION, "Backup"),
        plural="backups",
        verbs=NAMESPACED_VERBS,
    )
    Status: ClassVar = BackupStatus
