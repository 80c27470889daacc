# Copyright 2025 Canonical Ltd.
# See LICENSE file for licensing details.

"""Phases, enumerations and the backup state machine."""

from dataclasses import dataclass
from enum import Enum
from types import MappingProxyType
from typing import FrozenSet, Mapping, Optional

from .errors import InvalidPhaseError, InvalidTransitionError


class StrEnum(str, Enum):
    """String enumeration serialised as its value."""

    def __str__(self) -> str:
        return self.value


class BackupPhase(StrEnum):
    """Phase of a Backup."""

    NEW = "New"
    RUNNING = "Running"
    COMPLETED = "Completed"
    FAILED = "Failed"
    DELETING = "Deleting"

    @classmethod
    def parse(cls, value: Optional[str]) -> "BackupPhase":
        """Parse a phase string, the empty phase of a fresh Backup being New.

        Raises:
            InvalidPhaseError: If the value is not a known phase.
        """
        if not value:
            return cls.NEW
        try:
            return cls(value)
        except ValueError:
            raise InvalidPhaseError(f"unknown backup phase: {value!r}") from None


class ActionPhase(StrEnum):
    """Phase of a single action on a single target pod."""

    NEW = "New"
    RUNNING = "Running"
    COMPLETED = "Completed"
    FAILED = "Failed"

    @property
    def is_terminal(self) -> bool:
        """Return whether the action finished, successfully or not."""
        return self in (ActionPhase.COMPLETED, ActionPhase.FAILED)


class ActionType(StrEnum):
    """Kind of workload an action runs as."""

    JOB = "Job"
    STATEFULSET = "StatefulSet"
    NONE = ""


class BackupType(StrEnum):
    """Backup type declared by an ActionSet."""

    FULL = "Full"
    INCREMENTAL = "Incremental"
    DIFFERENTIAL = "Differential"
    CONTINUOUS = "Continuous"

    @classmethod
    def parse(cls, value: Optional[str]) -> "BackupType":
        """Parse a backup type, an undeclared type being Full.

        Raises:
            ValueError: If the value is not a known backup type.
        """
        if not value:
            return cls.FULL
        return cls(value)


class DeletionPolicy(StrEnum):
    """What happens to the backup data when the Backup is deleted."""

    DELETE = "Delete"
    RETAIN = "Retain"


class DeletionStatus(StrEnum):
    """Outcome of a backup data deletion attempt."""

    SUCCEEDED = "Succeeded"
    FAILED = "Failed"
    DELETING = "Deleting"
    UNKNOWN = "Unknown"


class TargetStrategy(StrEnum):
    """Pod selection strategy of a backup target."""

    ANY = "Any"
    ALL = "All"


_TRANSITIONS: Mapping[BackupPhase, FrozenSet[BackupPhase]] = MappingProxyType(
    {
        BackupPhase.NEW: frozenset(
            {BackupPhase.RUNNING, BackupPhase.FAILED, BackupPhase.DELETING}
        ),
        BackupPhase.RUNNING: frozenset(
            {BackupPhase.COMPLETED, BackupPhase.FAILED, BackupPhase.DELETING}
        ),
        BackupPhase.COMPLETED: frozenset({BackupPhase.DELETING}),
        # continuous backups are restarted from Failed
        BackupPhase.FAILED: frozenset(
            {
                BackupPhase.NEW,
                BackupPhase.RUNNING,
                BackupPhase.COMPLETED,
                BackupPhase.DELETING,
            }
        ),
        BackupPhase.DELETING: frozenset(),
    }
)


def can_transition(current: BackupPhase, target: BackupPhase) -> bool:
    """Return whether a Backup may move from ``current`` to ``target``."""
    return current == target or target in _TRANSITIONS[current]


def validate_transition(current: BackupPhase, target: BackupPhase) -> None:
    """Validate a phase transition.

    Raises:
        InvalidTransitionError: If the transition is not allowed.
    """
    if not can_transition(current, target):
        raise InvalidTransitionError(f"invalid backup phase transition: {current} -> {target}")


@dataclass(frozen=True)
class Result:
    """Outcome of a reconciliation pass."""

    requeue: bool = False
    requeue_after: Optional[float] = None

    @classmethod
    def done(cls) -> "Result":
        """Return a result ending the reconciliation."""
        return cls()

    @classmethod
    def retry(cls, after: Optional[float] = None) -> "Result":
        """Ask to reconcile again, after ``after`` seconds or with backoff when None."""
        return cls(requeue=True, requeue_after=after)
