# Copyright 2025 Canonical Ltd.
# See LICENSE file for licensing details.

"""Phase driven reconciliation of Backup objects.

Each pass fetches the Backup, dispatches on its phase and commits the
resulting status once, with a JSON merge patch carrying the resource version
it observed. A pass never sleeps: it returns a ``Result`` telling the runtime
whether and when to come back.
"""

import copy
import json
import logging
from datetime import datetime
from types import MappingProxyType
from typing import Callable, Dict, List, Mapping, Optional, Set, Tuple

from lightkube import Client
from lightkube.resources.core_v1 import Pod

from config import OperatorConfig
from constants import (
    APP_INSTANCE_LABEL,
    APP_MANAGED_BY_LABEL,
    APP_NAME,
    BACKUP_POLICY_LABEL,
    BACKUP_REPO_LABEL,
    BACKUP_SCHEDULE_LABEL,
    BACKUP_TYPE_LABEL,
    CLUSTER_LABEL_KEYS,
    CLUSTER_RESOURCE,
    CLUSTER_SNAPSHOT_ANNOTATION,
    CLUSTER_UID_LABEL,
    DATAPROTECTION_FINALIZER,
    FORMAT_VERSION,
    LAST_APPLIED_CONFIG_ANNOTATION,
    OPS_REQUEST_ANNOTATION,
    RESTORE_FROM_BACKUP_ANNOTATION,
    SKIP_RECONCILIATION_ANNOTATION,
    WAIT_REPO_PREPARATION_LABEL,
)
from k8s_utils import EventRecorder, k8s_get, k8s_patch_metadata, k8s_patch_status
from utils import format_time, utcnow

from .actions import Action, ActionContext
from .builder import RequestBuilder, repo_is_waiting
from .crds import ActionStatus, Backup, BackupSchedule
from .deleter import Deleter
from .deletion import DeletionOrchestrator
from .errors import DataProtectionError, FatalError, InvalidPhaseError, RequeueError
from .request import Request
from .status import (
    FAILED_ACTIONS_MESSAGE,
    Aggregate,
    aggregate_action_phases,
    build_backup_path,
    build_kopia_repo_path,
    find_action_status,
    merge_action_status,
    reset_failed_actions,
    set_completion,
    set_expiration_time,
    update_backup_status_by_action_status,
    unresolved_pod_outcomes,
)
from .targets import get_backup_targets, prepare_request_target_info, record_backup_status_targets
from .types import ActionPhase, BackupPhase, BackupType, Result, validate_transition

logger = logging.getLogger(__name__)

CLUSTER_STOPPED_PHASE = "Stopped"
RESTORE_IN_PROGRESS_MESSAGE = "backup job is delayed because restore is in progress"

Handler = Callable[[Backup], Result]


def cluster_snapshot(cluster) -> str:
    """Serialise the spec of a cluster, without its volatile annotations."""
    annotations = dict(cluster.metadata.annotations or {})
    annotations.pop(OPS_REQUEST_ANNOTATION, None)
    annotations.pop(LAST_APPLIED_CONFIG_ANNOTATION, None)
    snapshot = {
        "apiVersion": cluster.get("apiVersion"),
        "kind": cluster.get("kind"),
        "metadata": {
            "name": cluster.metadata.name,
            "namespace": cluster.metadata.namespace,
            "annotations": annotations,
        },
        "spec": cluster.get("spec") or {},
    }
    return json.dumps(snapshot, sort_keys=True)


class BackupReconciler:
    """Drives a Backup through its lifecycle.

    Args:
        client: The lightkube client.
        config: The operator configuration.
        recorder: Records the events of the reconciled backups.
        clock: Returns the current time, in UTC.
    """

    def __init__(
        self,
        client: Client,
        config: OperatorConfig,
        recorder: Optional[EventRecorder] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._client = client
        self._config = config
        self._recorder = recorder or EventRecorder(client, APP_NAME)
        self._clock = clock
        self._builder = RequestBuilder(client)
        self._deletion = DeletionOrchestrator(
            client, config, self._recorder, Deleter(client, config)
        )
        self._handlers: Mapping[BackupPhase, Handler] = MappingProxyType(
            {
                BackupPhase.NEW: self.handle_new,
                BackupPhase.RUNNING: self.handle_running,
                BackupPhase.COMPLETED: self.handle_completed,
                BackupPhase.FAILED: self.handle_failed,
                BackupPhase.DELETING: self.handle_deleting,
            }
        )
        missing = set(BackupPhase) - set(self._handlers)
        if missing:
            raise ValueError(f"no handler for backup phases {sorted(map(str, missing))}")

    def reconcile(self, namespace: str, name: str) -> Result:
        """Run one pass over the Backup ``namespace/name``.

        Raises:
            ApiError: On any API failure; the pass should be retried with backoff.
        """
        try:
            return self._reconcile(namespace, name)
        except RequeueError as err:
            logger.info("Requeuing backup '%s/%s': %s", namespace, name, err)
            return Result.retry(err.after)

    def _reconcile(self, namespace: str, name: str) -> Result:
        backup = k8s_get(self._client, Backup, name, namespace)
        if backup is None:
            logger.debug("Backup '%s/%s' not found, nothing to do", namespace, name)
            return Result.done()

        annotations = backup.metadata.annotations or {}
        if annotations.get(SKIP_RECONCILIATION_ANNOTATION, "").lower() == "true":
            logger.debug("Skipping reconciliation of backup '%s/%s'", namespace, name)
            return Result.done()

        try:
            phase = BackupPhase.parse(backup.status.phase if backup.status else None)
        except InvalidPhaseError as err:
            logger.error("Backup '%s/%s' has an invalid phase: %s", namespace, name, err)
            return Result.done()

        if backup.metadata.deletionTimestamp and phase != BackupPhase.DELETING:
            working = Request.from_backup(backup).backup
            working.status.phase = str(BackupPhase.DELETING)
            backup = self._commit(backup, working)
            phase = BackupPhase.DELETING

        logger.debug("Reconciling backup '%s/%s' in phase %s", namespace, name, phase)
        return self._handlers[phase](backup)

    def _commit(self, original: Backup, working: Backup) -> Backup:
        """Write the status of ``working`` against the observed ``original``.

        Raises:
            InvalidTransitionError: If the phase change is not allowed.
            ApiError: On conflicts or any other API failure.
        """
        current = BackupPhase.parse(original.status.phase if original.status else None)
        target = BackupPhase.parse(working.status.phase if working.status else None)
        validate_transition(current, target)
        updated = k8s_patch_status(self._client, original, working)
        return updated if updated is not None else original

    def _backup_type(self, backup: Backup, request: Optional[Request] = None) -> Optional[str]:
        if request is not None and request.action_set is not None:
            return str(request.backup_type())
        return (backup.metadata.labels or {}).get(BACKUP_TYPE_LABEL)

    def _update_status_if_failed(
        self, original: Backup, request: Optional[Request], err: DataProtectionError
    ) -> Result:
        """Move the backup to Failed with the error as failure reason.

        Continuous backups are retried later, the others stay failed.
        """
        backup_type = self._backup_type(original, request)
        working = request.backup if request is not None else Request.from_backup(original).backup
        message = str(err)
        logger.error(
            "Backup '%s/%s' failed: %s",
            original.metadata.namespace,
            original.metadata.name,
            message,
        )
        self._recorder.warning(original, "BackupFailed", message)

        working.status.phase = str(BackupPhase.FAILED)
        working.status.failureReason = message
        try:
            set_expiration_time(working, backup_type, self._clock())
        except FatalError as fe:
            logger.warning("Can not set the expiration of a failed backup: %s", fe)
        self._commit(original, working)
        if backup_type == BackupType.CONTINUOUS:
            return Result.retry(self._config.continuous_retry_delay)
        return Result.done()

    def _get_cluster(self, namespace: str, name: Optional[str]):
        if not name:
            return None
        return k8s_get(self._client, CLUSTER_RESOURCE, name, namespace)

    def _iter_targets(self, request: Request):
        """Resolve every target of the request and yield the actions of its pods."""
        for target in get_backup_targets(request.policy, request.method):
            prepare_request_target_info(self._client, self._config, request, target)
            yield request.build_actions()

    # New

    def handle_new(self, backup: Backup) -> Result:
        """Validate a new backup, label it and start it."""
        request = None
        try:
            request = self._builder.build(backup)
            record_backup_status_targets(self._client, self._config, request)
            backup, waiting = self._patch_backup_meta(backup, request)
            if waiting:
                logger.info(
                    "Backup repo '%s' of backup '%s/%s' is being prepared",
                    request.repo.metadata.name,
                    request.namespace,
                    request.name,
                )
                return Result.retry(self._config.repo_wait_interval)
            self._init_status(request)
        except FatalError as err:
            return self._update_status_if_failed(backup, request, err)

        self._commit(backup, request.backup)
        logger.info("Started backup '%s/%s'", request.namespace, request.name)
        return Result.done()

    def _patch_backup_meta(self, original: Backup, request: Request) -> Tuple[Backup, bool]:
        """Label the backup with its identity and add the finalizer.

        Returns:
            Tuple[Backup, bool]: The backup as last written, and whether its
            repository is still being prepared.
        """
        meta = request.backup.metadata
        labels: Dict[str, str] = dict(meta.labels)
        annotations: Dict[str, str] = dict(meta.annotations)
        finalizers: List[str] = list(meta.finalizers or [])

        pod: Pod = request.target_pods[0]
        pod_labels = pod.metadata.labels or {}
        cluster = self._get_cluster(request.namespace, pod_labels.get(APP_INSTANCE_LABEL))
        if cluster is not None:
            labels[CLUSTER_UID_LABEL] = cluster.metadata.uid
            annotations[CLUSTER_SNAPSHOT_ANNOTATION] = cluster_snapshot(cluster)
        for key in CLUSTER_LABEL_KEYS:
            if pod_labels.get(key):
                labels[key] = pod_labels[key]
        labels.setdefault(APP_MANAGED_BY_LABEL, APP_NAME)
        labels[BACKUP_TYPE_LABEL] = str(request.backup_type())
        labels[BACKUP_POLICY_LABEL] = request.policy.metadata.name

        waiting = False
        if request.repo is not None:
            labels[BACKUP_REPO_LABEL] = request.repo.metadata.name
            if repo_is_waiting(request):
                labels[WAIT_REPO_PREPARATION_LABEL] = "true"
                waiting = True
        if DATAPROTECTION_FINALIZER not in finalizers:
            finalizers.append(DATAPROTECTION_FINALIZER)

        # the request carries the new identity, workloads are labeled from it
        meta.labels, meta.annotations, meta.finalizers = labels, annotations, finalizers
        original_meta = original.metadata
        if (
            labels == (original_meta.labels or {})
            and annotations == (original_meta.annotations or {})
            and finalizers == (original_meta.finalizers or [])
        ):
            return original, waiting
        patched = k8s_patch_metadata(
            self._client,
            original,
            {"labels": labels, "annotations": annotations, "finalizers": finalizers},
        )
        return patched, waiting

    def _init_status(self, request: Request) -> None:
        now = self._clock()
        status = request.status
        policy = request.policy
        status.formatVersion = FORMAT_VERSION
        if not request.snapshot_volumes:
            repo_prefix = request.repo.spec.pathPrefix if request.repo.spec else None
            status.path = build_backup_path(request.backup, repo_prefix, policy.spec.pathPrefix)
            if policy.spec.useKopia:
                status.kopiaRepoPath = build_kopia_repo_path(
                    request.backup, repo_prefix, policy.spec.pathPrefix
                )
        status.backupMethod = copy.deepcopy(request.method)
        if request.repo is not None:
            status.backupRepoName = request.repo.metadata.name
        if request.repo_pvc_name:
            status.persistentVolumeClaimName = request.repo_pvc_name
        if request.parent_backup is not None and request.parent_backup.status is not None:
            status.encryptionConfig = copy.deepcopy(request.parent_backup.status.encryptionConfig)
        elif request.encryption_config is not None:
            status.encryptionConfig = copy.deepcopy(request.encryption_config)

        entries: List[ActionStatus] = []
        for actions in self._iter_targets(request):
            for pod_name, acts in actions.items():
                for act in acts:
                    entries.append(
                        ActionStatus(
                            name=act.name,
                            targetPodName=pod_name,
                            phase=str(ActionPhase.NEW),
                            actionType=str(act.action_type),
                        )
                    )
        status.actions = entries

        status.phase = str(BackupPhase.RUNNING)
        status.startTimestamp = status.startTimestamp or format_time(now)
        if request.parent_backup is not None:
            status.parentBackupName = request.parent_backup.metadata.name
        if request.base_backup is not None:
            status.baseBackupName = request.base_backup.metadata.name
        set_expiration_time(request.backup, str(request.backup_type()), now)

    # Running

    def handle_running(self, backup: Backup) -> Result:
        """Run the actions of a started backup and aggregate their outcome."""
        if self._restore_in_progress(backup):
            self._recorder.warning(backup, "RestoreInProgress", RESTORE_IN_PROGRESS_MESSAGE)
            raise RequeueError(RESTORE_IN_PROGRESS_MESSAGE, self._config.running_poll_interval)

        request = None
        try:
            if self._backup_type(backup) == BackupType.CONTINUOUS:
                if self._complete_stopped_continuous_backup(backup):
                    return Result.done()

            request = self._builder.build(backup)
            backup_type = request.backup_type()
            if backup_type == BackupType.CONTINUOUS:
                self._sync_continuous_encryption_config(request)
                if reset_failed_actions(request.status):
                    logger.info("Restarting failed actions of backup '%s'", request.name)
            return self._run_actions(backup, request)
        except FatalError as err:
            return self._update_status_if_failed(backup, request, err)

    def _restore_in_progress(self, backup: Backup) -> bool:
        cluster_name = (backup.metadata.labels or {}).get(APP_INSTANCE_LABEL)
        cluster = self._get_cluster(backup.metadata.namespace, cluster_name)
        if cluster is None:
            return False
        return bool((cluster.metadata.annotations or {}).get(RESTORE_FROM_BACKUP_ANNOTATION))

    def _complete_stopped_continuous_backup(self, backup: Backup) -> bool:
        """Complete a continuous backup whose schedule or cluster went away.

        Returns:
            bool: True if the backup was completed.
        """
        labels = backup.metadata.labels or {}
        cluster_name = labels.get(APP_INSTANCE_LABEL)
        if cluster_name:
            cluster = self._get_cluster(backup.metadata.namespace, cluster_name)
            stopped = (
                cluster is None
                or bool(cluster.metadata.deletionTimestamp)
                or (cluster.get("status") or {}).get("phase") == CLUSTER_STOPPED_PHASE
            )
        else:
            stopped = False

        if not stopped:
            schedule = None
            schedule_name = labels.get(BACKUP_SCHEDULE_LABEL)
            if schedule_name:
                schedule = k8s_get(
                    self._client, BackupSchedule, schedule_name, backup.metadata.namespace
                )
            policy = schedule.get_schedule(backup.spec.backupMethod) if schedule else None
            if policy is not None and policy.enabled:
                return False

        now = self._clock()
        working = Request.from_backup(backup).backup
        status = working.status
        status.phase = str(BackupPhase.COMPLETED)
        set_completion(status, now)
        set_expiration_time(working, str(BackupType.CONTINUOUS), now)
        for act in status.actions or []:
            act.phase = str(ActionPhase.COMPLETED)
            act.availableReplicas = 0
            act.completionTimestamp = status.completionTimestamp
        self._commit(backup, working)
        logger.info(
            "Completed continuous backup '%s/%s'", backup.metadata.namespace, backup.metadata.name
        )
        return True

    def _sync_continuous_encryption_config(self, request: Request) -> None:
        """Follow the encryption config of the policy, which may change over time."""
        wanted = request.encryption_config
        if request.status.encryptionConfig != wanted:
            logger.info("Updating the encryption config of backup '%s'", request.name)
            request.status.encryptionConfig = copy.deepcopy(wanted)

    def _run_pod_actions(
        self, request: Request, pod_name: str, acts: List[Action], ctx: ActionContext
    ) -> ActionPhase:
        """Run the actions of one pod in order, stopping at the first unfinished one.

        Returns:
            ActionPhase: Completed if every action completed, otherwise the phase
            of the first action that did not.
        """
        for act in acts:
            recorded = find_action_status(request.status, act.name, pod_name)
            phase = ActionPhase(recorded.phase) if recorded and recorded.phase else None
            if phase is None or not phase.is_terminal:
                reported = act.execute(ctx)
                reported.targetPodName = pod_name
                merged = merge_action_status(request.status, reported, ctx.now)
                phase = ActionPhase(merged.phase)
            if phase != ActionPhase.COMPLETED:
                return phase
            update_backup_status_by_action_status(request.status)
        return ActionPhase.COMPLETED

    def _run_actions(self, original: Backup, request: Request) -> Result:
        now = self._clock()
        ctx = ActionContext(client=self._client, config=self._config, now=now)
        outcomes: List[ActionPhase] = []
        resolved: Set[str] = set()
        for actions in self._iter_targets(request):
            for pod_name, acts in actions.items():
                resolved.add(pod_name)
                outcomes.append(self._run_pod_actions(request, pod_name, acts, ctx))
        for pod_name, outcome in unresolved_pod_outcomes(request.status, resolved).items():
            if outcome != ActionPhase.COMPLETED:
                logger.warning(
                    "Target pod '%s' of backup '%s/%s' not found, its actions are %s",
                    pod_name,
                    request.namespace,
                    request.name,
                    outcome,
                )
            outcomes.append(outcome)

        status = request.status
        backup_type = str(request.backup_type())
        aggregate = aggregate_action_phases(outcomes)
        if aggregate == Aggregate.FAILED:
            raise FatalError(FAILED_ACTIONS_MESSAGE)

        if aggregate == Aggregate.WAITING:
            # a restarted continuous backup is running again
            status.phase = str(BackupPhase.RUNNING)
            status.failureReason = None
            status.completionTimestamp = None
            status.duration = None
            set_expiration_time(request.backup, backup_type, now)
            self._commit(original, request.backup)
            return Result.retry(self._config.running_poll_interval)

        status.phase = str(BackupPhase.COMPLETED)
        set_completion(status, now)
        set_expiration_time(request.backup, backup_type, now)
        self._commit(original, request.backup)
        self._recorder.normal(original, "CreatedBackup", "Completed backup")
        logger.info("Completed backup '%s/%s'", request.namespace, request.name)
        return Result.done()

    # Completed, Failed, Deleting

    def handle_completed(self, backup: Backup) -> Result:
        """Clean up the workloads of a completed backup."""
        self._deletion.delete_external_resources(backup)
        return Result.done()

    def handle_failed(self, backup: Backup) -> Result:
        """Restart failed continuous backups, the other failed backups are final."""
        if self._backup_type(backup) != BackupType.CONTINUOUS:
            return Result.done()
        if not (backup.status and backup.status.startTimestamp):
            return self.handle_new(backup)
        return self.handle_running(backup)

    def handle_deleting(self, backup: Backup) -> Result:
        """Delete the backup and its data, then release its finalizer."""
        return self._deletion.handle(backup)
