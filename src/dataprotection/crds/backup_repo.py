# Copyright 2025 Canonical Ltd.
# See LICENSE file for licensing details.

"""BackupRepo CRD model."""

from typing import Dict, Optional

from lightkube.codecs import resource_registry
from lightkube.core import resource as res
from lightkube.core.schema import DictMixin, dataclass
from lightkube.models import meta_v1

from .common import API_GROUP, API_VERSION, GLOBAL_VERBS


@dataclass
class BackupRepoSpecModel(DictMixin):
    """BackupRepo specification model."""

    storageProviderRef: Optional[str] = None
    accessMethod: Optional[str] = None
    pathPrefix: Optional[str] = None
    volumeCapacity: Optional[str] = None
    config: Optional[Dict[str, str]] = None


@dataclass
class BackupRepoStatusModel(DictMixin):
    """BackupRepo status model."""

    phase: Optional[str] = None
    backupPVCName: Optional[str] = None
    toolConfigSecretName: Optional[str] = None
    isDefault: Optional[bool] = None


@dataclass
class BackupRepoModel(DictMixin):
    """BackupRepo model."""

    apiVersion: Optional[str] = None
    kind: Optional[str] = None
    metadata: Optional[meta_v1.ObjectMeta] = None
    spec: Optional[BackupRepoSpecModel] = None
    status: Optional[BackupRepoStatusModel] = None


@resource_registry.register
class BackupRepo(res.GlobalResource, BackupRepoModel):
    """BackupRepo resource: storage the backup data is written to."""

    _api_info = res.ApiInfo(
        resource=res.ResourceDef(API_GROUP, API_VERSION, "BackupRepo"),
        plural="backuprepos",
        verbs=GLOBAL_VERBS,
    )
