# Copyright 2025 Canonical Ltd.
# See LICENSE file for licensing details.

"""Backup actions module."""

from .classes import Action, ActionContext, BackupInfo, WorkloadMeta, parse_backup_info
from .exec import ExecAction
from .job import JobAction, job_phase
from .snapshot import CreateVolumeSnapshotAction
from .statefulset import StatefulSetAction

__all__ = [
    "Action",
    "ActionContext",
    "BackupInfo",
    "CreateVolumeSnapshotAction",
    "ExecAction",
    "JobAction",
    "StatefulSetAction",
    "WorkloadMeta",
    "job_phase",
    "parse_backup_info",
]
