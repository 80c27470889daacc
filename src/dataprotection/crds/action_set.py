# Copyright 2025 Canonical Ltd.
# See LICENSE file for licensing details.

"""ActionSet CRD model."""

from typing import Any, Dict, List, Optional

from lightkube.codecs import resource_registry
from lightkube.core import resource as res
from lightkube.core.schema import DictMixin, dataclass
from lightkube.models import core_v1, meta_v1

from .common import API_GROUP, API_VERSION, GLOBAL_VERBS


@dataclass
class ExecActionSpec(DictMixin):
    """Command executed inside a container of the target pod."""

    command: List[str]
    container: Optional[str] = None
    onError: Optional[str] = None
    timeout: Optional[str] = None


@dataclass
class JobActionSpec(DictMixin):
    """Command executed by a Job."""

    image: str
    command: List[str]
    runOnTargetPodNode: Optional[bool] = None
    onError: Optional[str] = None


@dataclass
class ActionSpec(DictMixin):
    """A pre or post backup action, either an exec or a job."""

    exec: Optional[ExecActionSpec] = None
    job: Optional[JobActionSpec] = None


@dataclass
class BackupActionSpec(DictMixin):
    """Actions taking a backup."""

    backupData: Optional[JobActionSpec] = None
    preBackup: Optional[List[ActionSpec]] = None
    postBackup: Optional[List[ActionSpec]] = None


@dataclass
class RestoreActionSpec(DictMixin):
    """Actions restoring a backup, consumed by the restore engine only."""

    prepareData: Optional[JobActionSpec] = None
    postReady: Optional[List[ActionSpec]] = None


@dataclass
class ActionSetParametersSchema(DictMixin):
    """Schema of the parameters accepted by an ActionSet."""

    openAPIV3Schema: Optional[Dict[str, Any]] = None


@dataclass
class ActionSetSpecModel(DictMixin):
    """ActionSet specification model."""

    backupType: Optional[str] = None
    env: Optional[List[core_v1.EnvVar]] = None
    parametersSchema: Optional[ActionSetParametersSchema] = None
    backup: Optional[BackupActionSpec] = None
    restore: Optional[RestoreActionSpec] = None


@dataclass
class ActionSetStatusModel(DictMixin):
    """ActionSet status model."""

    phase: Optional[str] = None
    message: Optional[str] = None


@dataclass
class ActionSetModel(DictMixin):
    """ActionSet model."""

    apiVersion: Optional[str] = None
    kind: Optional[str] = None
    metadata: Optional[meta_v1.ObjectMeta] = None
    spec: Optional[ActionSetSpecModel] = None
    status: Optional[ActionSetStatusModel] = None


@resource_registry.register
class ActionSet(res.GlobalResource, ActionSetModel):
    """ActionSet resource: the commands a backup method runs."""

    _api_info = res.ApiInfo(
        resource=res.ResourceDef(API_GROUP, API_VERSION, "ActionSet"),
        plural="actionsets",
        verbs=GLOBAL_VERBS,
    )
