# Copyright 2025 Canonical Ltd.
# See LICENSE file for licensing details.

"""BackupPolicy CRD model."""

from typing import ClassVar, List, Optional

from lightkube.codecs import resource_registry
from lightkube.core import resource as res
from lightkube.core.schema import DictMixin, dataclass
from lightkube.models import core_v1, meta_v1

from .common import (
    API_GROUP,
    API_VERSION,
    NAMESPACED_VERBS,
    BackupTarget,
    EncryptionConfig,
)


@dataclass
class TargetVolumeInfo(DictMixin):
    """Volumes of the target pod used by a backup method."""

    volumes: Optional[List[str]] = None
    volumeMounts: Optional[List[core_v1.VolumeMount]] = None


@dataclass
class BackupMethod(DictMixin):
    """A way of taking a backup: volume snapshots or an ActionSet."""

    name: str
    actionSetName: Optional[str] = None
    snapshotVolumes: Optional[bool] = None
    compatibleMethod: Optional[str] = None
    targetVolumes: Optional[TargetVolumeInfo] = None
    env: Optional[List[core_v1.EnvVar]] = None
    target: Optional[BackupTarget] = None
    targets: Optional[List[BackupTarget]] = None


@dataclass
class BackupPolicySpecModel(DictMixin):
    """BackupPolicy specification model."""

    backupMethods: List[BackupMethod]
    backupRepoName: Optional[str] = None
    pathPrefix: Optional[str] = None
    useKopia: Optional[bool] = None
    backoffLimit: Optional[int] = None
    encryptionConfig: Optional[EncryptionConfig] = None
    target: Optional[BackupTarget] = None
    targets: Optional[List[BackupTarget]] = None


@dataclass
class BackupPolicyStatusModel(DictMixin):
    """BackupPolicy status model."""

    phase: Optional[str] = None
    message: Optional[str] = None


@dataclass
class BackupPolicyModel(DictMixin):
    """BackupPolicy model."""

    apiVersion: Optional[str] = None
    kind: Optional[str] = None
    metadata: Optional[meta_v1.ObjectMeta] = None
    spec: Optional[BackupPolicySpecModel] = None
    status: Optional[BackupPolicyStatusModel] = None


class BackupPolicyStatus(res.NamespacedSubResource, BackupPolicyModel):
    """BackupPolicy status sub-resource."""

    _api_info = res.ApiInfo(
        resource=res.ResourceDef(API_GROUP, API_VERSION, "BackupPolicy"),
        parent=res.ResourceDef(API_GROUP, API_VERSION, "BackupPolicy"),
        plural="backuppolicies",
        verbs=["get", "patch", "put"],
        action="status",
    )


@resource_registry.register
class BackupPolicy(res.NamespacedResourceG, BackupPolicyModel):
    """BackupPolicy resource: where and how the backups of a cluster are taken."""

    _api_info = res.ApiInfo(
        resource=res.ResourceDef(API_GROUP, API_VERSION, "BackupPolicy"),
        plural="backuppolicies",
        verbs=NAMESPACED_VERBS,
    )
    Status: ClassVar = BackupPolicyStatus

    def get_method(self, name: str) -> Optional[BackupMethod]:
        """Return the backup method called ``name``."""
        for method in self.spec.backupMethods or []:
            if method.name == name:
                return method
        return None
