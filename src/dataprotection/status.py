# Copyright 2025 Canonical Ltd.
# See LICENSE file for licensing details.

"""Projection of action statuses onto the Backup status."""

import copy
import logging
from datetime import datetime
from enum import Enum
from typing import Dict, Iterable, List, Optional, Set

from constants import LOG_COLLECTOR_OUTPUT
from utils import format_duration, format_time, parse_retention_period, parse_time

from .crds import ActionStatus, Backup, BackupStatusModel
from .errors import FatalError
from .types import ActionPhase, BackupType

logger = logging.getLogger(__name__)

FAILED_ACTIONS_MESSAGE = (
    "there are failed actions, you can obtain the more informations in the status.actions"
)


class Aggregate(Enum):
    """Outcome of all the actions of a pass."""

    WAITING = "waiting"
    FAILED = "failed"
    COMPLETED = "completed"


def find_action_status(
    status: BackupStatusModel, name: str, target_pod_name: Optional[str]
) -> Optional[ActionStatus]:
    """Return the recorded status of an action on a target pod."""
    for act in status.actions or []:
        if act.name == name and act.targetPodName == target_pod_name:
            return act
    return None


def merge_action_status(
    status: BackupStatusModel, new: ActionStatus, now: datetime
) -> ActionStatus:
    """Merge the status reported by an action into the backup status.

    Entries are identified by (name, targetPodName). A completed or failed
    entry is never overwritten, a failure reason coming from the collected
    logs and the first start timestamp are kept.

    Returns:
        ActionStatus: The status recorded for the action after the merge.
    """
    existing = find_action_status(status, new.name, new.targetPodName)
    if existing is None:
        merged = copy.deepcopy(new)
        merged.startTimestamp = format_time(now)
        status.actions = (status.actions or []) + [merged]
        return merged

    if existing.phase and ActionPhase(existing.phase).is_terminal:
        return existing

    merged = copy.deepcopy(new)
    if existing.failureReason and existing.failureReason.startswith(LOG_COLLECTOR_OUTPUT):
        merged.failureReason = existing.failureReason
    merged.startTimestamp = existing.startTimestamp or format_time(now)
    status.actions = [merged if act is existing else act for act in status.actions]
    return merged


def reset_failed_actions(status: BackupStatusModel) -> int:
    """Move failed actions back to New so a restarted backup can run them again.

    Returns:
        int: The number of reset actions.
    """
    reset = 0
    for act in status.actions or []:
        if act.phase == ActionPhase.FAILED:
            act.phase = str(ActionPhase.NEW)
            act.completionTimestamp = None
            reset += 1
    return reset


def update_backup_status_by_action_status(status: BackupStatusModel) -> None:
    """Copy the first reported total size and time range into the backup status."""
    for act in status.actions or []:
        if act.totalSize and not status.totalSize:
            status.totalSize = act.totalSize
        if act.timeRange is not None and status.timeRange is None:
            status.timeRange = copy.deepcopy(act.timeRange)


def unresolved_pod_outcomes(
    status: BackupStatusModel, resolved_pods: Set[str]
) -> Dict[str, ActionPhase]:
    """Return the outcome of the recorded pods that no target resolved to anymore.

    A pod whose recorded actions did not all complete keeps the backup waiting,
    or fails it when one of them failed.
    """
    recorded: Dict[str, List[ActionPhase]] = {}
    for act in status.actions or []:
        if act.targetPodName in resolved_pods:
            continue
        phase = ActionPhase(act.phase) if act.phase else ActionPhase.NEW
        recorded.setdefault(act.targetPodName or "", []).append(phase)
    return {
        pod: next((p for p in phases if p != ActionPhase.COMPLETED), ActionPhase.COMPLETED)
        for pod, phases in recorded.items()
    }


def aggregate_action_phases(outcomes: Iterable[ActionPhase]) -> Aggregate:
    """Aggregate the outcome of every target pod of a pass.

    The outcome of a pod is the phase of its first action that did not complete.
    """
    outcomes = list(outcomes)
    if ActionPhase.RUNNING in outcomes or ActionPhase.NEW in outcomes:
        return Aggregate.WAITING
    if ActionPhase.FAILED in outcomes:
        return Aggregate.FAILED
    return Aggregate.COMPLETED


def set_expiration_time(backup: Backup, backup_type: Optional[str], now: datetime) -> None:
    """Set the expiration time of a backup from its retention period.

    Continuous backups expire relative to their completion, or to ``now``
    while they are still running; the others relative to their start.

    Raises:
        FatalError: If the retention period is malformed.
    """
    status = backup.status
    try:
        retention = parse_retention_period(backup.spec.retentionPeriod)
    except ValueError as ve:
        raise FatalError(str(ve)) from ve
    if retention is None:
        status.expiration = None
        return

    if backup_type == BackupType.CONTINUOUS:
        base = parse_time(status.completionTimestamp) or now
    else:
        base = parse_time(status.startTimestamp) or now
    status.expiration = format_time(base + retention)


def set_completion(status: BackupStatusModel, now: datetime) -> None:
    """Stamp the completion time and the duration, rounded to whole seconds."""
    status.completionTimestamp = format_time(now)
    start = parse_time(status.startTimestamp)
    if start is not None:
        status.duration = format_duration(now - start)


def build_backup_path(
    backup: Backup, repo_prefix: Optional[str], policy_prefix: Optional[str]
) -> str:
    """Return the path of the backup data inside its repository.

    The path is ``/<repo prefix>/<namespace>/<policy prefix>/<backup name>``,
    empty prefixes being left out.
    """
    parts = [repo_prefix, backup.metadata.namespace, policy_prefix, backup.metadata.name]
    return "/" + "/".join(p.strip("/") for p in parts if p and p.strip("/"))


def build_kopia_repo_path(
    backup: Backup, repo_prefix: Optional[str], policy_prefix: Optional[str]
) -> str:
    """Return the path of the kopia repository shared by the backups of a namespace."""
    parts = [repo_prefix, backup.metadata.namespace, policy_prefix, "kopia"]
    return "/" + "/".join(p.strip("/") for p in parts if p and p.strip("/"))
