# Copyright 2025 Canonical Ltd.
# See LICENSE file for licensing details.

"""Data protection module."""

from .builder import RequestBuilder
from .crds import (
    ActionSet,
    ActionStatus,
    Backup,
    BackupPolicy,
    BackupRepo,
    BackupSchedule,
)
from .deleter import Deleter, DeletionError
from .deletion import DeletionOrchestrator
from .errors import (
    DataProtectionError,
    FatalError,
    InvalidPhaseError,
    InvalidTransitionError,
    RequeueError,
)
from .reconciler import BackupReconciler
from .request import Request
from .types import (
    ActionPhase,
    BackupPhase,
    BackupType,
    DeletionPolicy,
    DeletionStatus,
    Result,
)

__all__ = [
    "BackupReconciler",
    "RequestBuilder",
    "Request",
    "Deleter",
    "DeletionError",
    "DeletionOrchestrator",
    "DataProtectionError",
    "FatalError",
    "RequeueError",
    "InvalidPhaseError",
    "InvalidTransitionError",
    "ActionPhase",
    "BackupPhase",
    "BackupType",
    "DeletionPolicy",
    "DeletionStatus",
    "Result",
    "ActionSet",
    "ActionStatus",
    "Backup",
    "BackupPolicy",
    "BackupRepo",
    "BackupSchedule",
]
