# Copyright 2025 Canonical Ltd.
# See LICENSE file for licensing details.

import pytest

from dataprotection.errors import InvalidPhaseError, InvalidTransitionError
from dataprotection.types import (
    ActionPhase,
    BackupPhase,
    BackupType,
    Result,
    can_transition,
    validate_transition,
)


@pytest.mark.parametrize(
    "value,expected",
    [
        (None, BackupPhase.NEW),
        ("", BackupPhase.NEW),
        ("New", BackupPhase.NEW),
        ("Running", BackupPhase.RUNNING),
        ("Deleting", BackupPhase.DELETING),
    ],
)
def test_backup_phase_parse(value, expected):
    """Check empty phases parse as New and known phases as themselves."""
    assert BackupPhase.parse(value) == expected


def test_backup_phase_parse_invalid():
    """Check an unknown phase string raises InvalidPhaseError."""
    with pytest.raises(InvalidPhaseError) as ie:
        BackupPhase.parse("Paused")
    assert isinstance(ie.value, ValueError)
    assert "Paused" in str(ie.value)


def test_backup_type_parse():
    """Check backup types default to Full and reject unknown values."""
    assert BackupType.parse(None) == BackupType.FULL
    assert BackupType.parse("Continuous") == BackupType.CONTINUOUS
    with pytest.raises(ValueError):
        BackupType.parse("Snapshot")


def test_str_enum_serialises_as_value():
    """Check phases are written to the status as plain strings."""
    assert str(BackupPhase.COMPLETED) == "Completed"
    assert f"{ActionPhase.FAILED}" == "Failed"
    assert BackupPhase.RUNNING == "Running"


def test_action_phase_is_terminal():
    """Check only Completed and Failed actions are terminal."""
    assert ActionPhase.COMPLETED.is_terminal
    assert ActionPhase.FAILED.is_terminal
    assert not ActionPhase.NEW.is_terminal
    assert not ActionPhase.RUNNING.is_terminal


@pytest.mark.parametrize(
    "current,target",
    [
        (BackupPhase.NEW, BackupPhase.RUNNING),
        (BackupPhase.NEW, BackupPhase.FAILED),
        (BackupPhase.RUNNING, BackupPhase.COMPLETED),
        (BackupPhase.RUNNING, BackupPhase.RUNNING),
        (BackupPhase.COMPLETED, BackupPhase.DELETING),
        (BackupPhase.FAILED, BackupPhase.RUNNING),
        (BackupPhase.FAILED, BackupPhase.COMPLETED),
    ],
)
def test_allowed_transitions(current, target):
    """Check the transitions the lifecycle relies on are allowed."""
    assert can_transition(current, target)
    validate_transition(current, target)


@pytest.mark.parametrize(
    "current,target",
    [
        (BackupPhase.COMPLETED, BackupPhase.RUNNING),
        (BackupPhase.COMPLETED, BackupPhase.FAILED),
        (BackupPhase.DELETING, BackupPhase.RUNNING),
        (BackupPhase.DELETING, BackupPhase.NEW),
        (BackupPhase.RUNNING, BackupPhase.NEW),
    ],
)
def test_forbidden_transitions(current, target):
    """Check going back from a final phase raises InvalidTransitionError."""
    assert not can_transition(current, target)
    with pytest.raises(InvalidTransitionError):
        validate_transition(current, target)


def test_result():
    """Check the done and retry results."""
    assert Result.done() == Result(requeue=False, requeue_after=None)
    assert Result.retry() == Result(requeue=True, requeue_after=None)
    assert Result.retry(5) == Result(requeue=True, requeue_after=5)
