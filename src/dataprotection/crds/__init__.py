# Copyright 2025 Canonical Ltd.
# See LICENSE file for licensing details.

"""Data protection CRDs module."""

from .action_set import (
    ActionSet,
    ActionSetModel,
    ActionSetParametersSchema,
    ActionSetSpecModel,
    ActionSpec,
    BackupActionSpec,
    ExecActionSpec,
    JobActionSpec,
)
from .backup import (
    ActionStatus,
    Backup,
    BackupModel,
    BackupSpecModel,
    BackupStatus,
    BackupStatusModel,
    BackupStatusTarget,
    BackupTimeRange,
    ParameterPair,
    VolumeSnapshotStatus,
)
from .backup_policy import (
    BackupMethod,
    BackupPolicy,
    BackupPolicySpecModel,
    BackupPolicyStatusModel,
    TargetVolumeInfo,
)
from .backup_repo import BackupRepo, BackupRepoSpecModel, BackupRepoStatusModel
from .backup_schedule import (
    BackupSchedule,
    BackupScheduleSpecModel,
    BackupScheduleStatusModel,
    SchedulePolicy,
)
from .common import BackupTarget, EncryptionConfig, PodSelector, SecretKeyRef

__all__ = [
    "ActionSet",
    "ActionSetModel",
    "ActionSetParametersSchema",
    "ActionSetSpecModel",
    "ActionSpec",
    "ActionStatus",
    "Backup",
    "BackupActionSpec",
    "BackupMethod",
    "BackupModel",
    "BackupPolicy",
    "BackupPolicySpecModel",
    "BackupPolicyStatusModel",
    "BackupRepo",
    "BackupRepoSpecModel",
    "BackupRepoStatusModel",
    "BackupSchedule",
    "BackupScheduleSpecModel",
    "BackupScheduleStatusModel",
    "BackupSpecModel",
    "BackupStatus",
    "BackupStatusModel",
    "BackupStatusTarget",
    "BackupTarget",
    "BackupTimeRange",
    "EncryptionConfig",
    "ExecActionSpec",
    "JobActionSpec",
    "ParameterPair",
    "PodSelector",
    "SchedulePolicy",
    "SecretKeyRef",
    "TargetVolumeInfo",
    "VolumeSnapshotStatus",
]
