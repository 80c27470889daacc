# Copyright 2025 Canonical Ltd.
# See LICENSE file for licensing details.

"""BackupSchedule CRD model."""

from typing import List, Optional

from lightkube.codecs import resource_registry
from lightkube.core import resource as res
from lightkube.core.schema import DictMixin, dataclass
from lightkube.models import meta_v1

from .common import API_GROUP, API_VERSION, NAMESPACED_VERBS


@dataclass
class SchedulePolicy(DictMixin):
    """Schedule of one backup method."""

    backupMethod: str
    cronExpression: Optional[str] = None
    enabled: Optional[bool] = None
    retentionPeriod: Optional[str] = None


@dataclass
class BackupScheduleSpecModel(DictMixin):
    """BackupSchedule specification model."""

    backupPolicyName: str
    schedules: Optional[List[SchedulePolicy]] = None


@dataclass
class BackupScheduleStatusModel(DictMixin):
    """BackupSchedule status model."""

    phase: Optional[str] = None
    failureReason: Optional[str] = None


@dataclass
class BackupScheduleModel(DictMixin):
    """BackupSchedule model."""

    apiVersion: Optional[str] = None
    kind: Optional[str] = None
    metadata: Optional[meta_v1.ObjectMeta] = None
    spec: Optional[BackupScheduleSpecModel] = None
    status: Optional[BackupScheduleStatusModel] = None


@resource_registry.register
class BackupSchedule(res.NamespacedResourceG, BackupScheduleModel):
    """BackupSchedule resource: periodic backups of a backup policy."""

    _api_info = res.ApiInfo(
        resource=res.ResourceDef(API_GROUP, API_VERSION, "BackupSchedule"),
        plural="backupschedules",
        verbs=NAMESPACED_VERBS,
    )

    def get_schedule(self, method: str) -> Optional[SchedulePolicy]:
        """Return the schedule of the backup method ``method``."""
        for schedule in self.spec.schedules or []:
            if schedule.backupMethod == method:
                return schedule
        return None
