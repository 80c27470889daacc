# Copyright 2025 Canonical Ltd.
# See LICENSE file for licensing details.

import json

import pytest
from helpers import (
    CLUSTER,
    NAMESPACE,
    POLICY,
    REPO,
    START,
    finish_job,
    make_action_set,
    make_backup,
    make_method,
    make_pod,
    make_policy,
    make_repo,
    make_target,
    repo_pvc,
)
from lightkube.models.meta_v1 import ObjectMeta
from lightkube.resources.apps_v1 import StatefulSet
from lightkube.resources.batch_v1 import Job
from lightkube.resources.core_v1 import Event, Pod

from constants import (
    APP_INSTANCE_LABEL,
    BACKUP_POLICY_LABEL,
    BACKUP_REPO_LABEL,
    BACKUP_SCHEDULE_LABEL,
    BACKUP_TYPE_LABEL,
    CLUSTER_RESOURCE,
    CLUSTER_SNAPSHOT_ANNOTATION,
    CLUSTER_UID_LABEL,
    DATAPROTECTION_FINALIZER,
    OPS_REQUEST_ANNOTATION,
    RESTORE_FROM_BACKUP_ANNOTATION,
    SKIP_RECONCILIATION_ANNOTATION,
    WAIT_REPO_PREPARATION_LABEL,
)
from dataprotection.crds import (
    ActionStatus,
    Backup,
    BackupSchedule,
    BackupScheduleSpecModel,
    BackupScheduleStatusModel,
    BackupStatusModel,
    SchedulePolicy,
)
from dataprotection.reconciler import BackupReconciler, cluster_snapshot
from dataprotection.status import FAILED_ACTIONS_MESSAGE
from dataprotection.types import Result
from utils import format_time

BACKUP_INFO = json.dumps({"totalSize": "1Gi"})


@pytest.fixture()
def reconciler(client, config, clock):
    return BackupReconciler(client, config, clock=clock)


def reconcile(reconciler) -> Result:
    return reconciler.reconcile(NAMESPACE, "backup-1")


def stored(client, name="backup-1") -> Backup:
    return client.stored(Backup, name)


def events(client, reason):
    return [e for e in client.created_of(Event) if e.reason == reason]


def make_cluster(**annotations):
    return CLUSTER_RESOURCE(
        apiVersion="apps.kubeblocks.io/v1",
        kind="Cluster",
        metadata=ObjectMeta(
            name=CLUSTER, namespace=NAMESPACE, uid="cluster-uid", annotations=annotations
        ),
        spec={"clusterDef": "mysql"},
    )


def make_schedule(enabled=True):
    return BackupSchedule(
        metadata=ObjectMeta(name="schedule", namespace=NAMESPACE),
        spec=BackupScheduleSpecModel(
            backupPolicyName=POLICY,
            schedules=[SchedulePolicy(backupMethod="xtrabackup", enabled=enabled)],
        ),
        status=BackupScheduleStatusModel(phase="Available"),
    )


def test_not_found(reconciler):
    """Check a backup that no longer exists is ignored."""
    assert reconcile(reconciler) == Result.done()


def test_skip_reconciliation(reconciler, cluster_objects):
    """Check backups annotated to be skipped are left untouched."""
    backup = make_backup()
    backup.metadata.annotations = {SKIP_RECONCILIATION_ANNOTATION: "true"}
    cluster_objects.add(backup)

    assert reconcile(reconciler) == Result.done()
    assert cluster_objects.patches == []


def test_invalid_phase(reconciler, cluster_objects):
    """Check a backup in an unknown phase is logged and left untouched."""
    cluster_objects.add(make_backup(status=BackupStatusModel(phase="Paused")))

    assert reconcile(reconciler) == Result.done()
    assert cluster_objects.patches == []


def test_backup_lifecycle(reconciler, cluster_objects, clock, config):
    """Check a backup of two pods goes from New to Completed."""
    client = cluster_objects
    client.add(make_policy(target=make_target(strategy="All")), make_pod("mysql-1"))
    client.add(make_backup())

    # New: labeled, started and its actions recorded
    assert reconcile(reconciler) == Result.done()
    backup = stored(client)
    assert backup.metadata.finalizers == [DATAPROTECTION_FINALIZER]
    assert backup.metadata.labels[BACKUP_TYPE_LABEL] == "Full"
    assert backup.metadata.labels[BACKUP_POLICY_LABEL] == POLICY
    assert backup.metadata.labels[BACKUP_REPO_LABEL] == REPO
    assert backup.metadata.labels[APP_INSTANCE_LABEL] == CLUSTER
    status = backup.status
    assert status.phase == "Running"
    assert status.path == "/default/backup-1"
    assert status.backupRepoName == REPO
    assert status.persistentVolumeClaimName == "dp-backup-pvc"
    assert status.startTimestamp == format_time(START)
    assert status.target.selectedTargetPods == ["mysql-0", "mysql-1"]
    assert [(a.targetPodName, a.phase) for a in status.actions] == [
        ("mysql-0", "New"),
        ("mysql-1", "New"),
    ]

    # Running: one job per pod
    assert reconcile(reconciler) == Result.retry(config.running_poll_interval)
    jobs = sorted(j.metadata.name for j in client.created_of(Job))
    assert jobs == ["backup-1-backup-data-mysql-0", "backup-1-backup-data-mysql-1"]
    assert [a.phase for a in stored(client).status.actions] == ["Running", "Running"]

    finish_job(client, "backup-1-backup-data-mysql-0", message=BACKUP_INFO)
    assert reconcile(reconciler) == Result.retry(config.running_poll_interval)
    assert [a.phase for a in stored(client).status.actions] == ["Completed", "Running"]

    # Completed once every pod completed
    finish_job(client, "backup-1-backup-data-mysql-1", message=BACKUP_INFO)
    clock.advance(seconds=42, milliseconds=400)
    assert reconcile(reconciler) == Result.done()
    status = stored(client).status
    assert status.phase == "Completed"
    assert status.duration == "42s"
    assert status.completionTimestamp == "2024-05-01T10:00:42Z"
    assert status.totalSize == "1Gi"
    assert len(events(client, "CreatedBackup")) == 1
    assert len(client.created_of(Job)) == 2

    # Completed: the workloads are cleaned up
    assert reconcile(reconciler) == Result.done()
    assert client.stored(Job, "backup-1-backup-data-mysql-0") is None


def test_failed_action_fails_the_backup(reconciler, cluster_objects):
    """Check a failed action fails the backup with its reason kept on the action."""
    client = cluster_objects
    client.add(make_backup())
    reconcile(reconciler)
    reconcile(reconciler)
    finish_job(client, "backup-1-backup-data-mysql-0", succeeded=False)

    assert reconcile(reconciler) == Result.done()

    status = stored(client).status
    assert status.phase == "Failed"
    assert status.failureReason == FAILED_ACTIONS_MESSAGE
    assert status.actions[0].phase == "Failed"
    assert status.actions[0].failureReason == "BackoffLimitExceeded"
    assert len(events(client, "BackupFailed")) == 1

    # failed backups are final
    assert reconcile(reconciler) == Result.done()
    assert len(client.created_of(Job)) == 1


def start_two_pod_backup(reconciler, client):
    client.add(make_policy(target=make_target(strategy="All")), make_pod("mysql-1"))
    client.add(make_backup())
    reconcile(reconciler)
    reconcile(reconciler)


def test_missing_target_pod_keeps_backup_running(reconciler, cluster_objects, config):
    """Check a selected pod gone mid-run neither completes the backup nor lends its job."""
    client = cluster_objects
    start_two_pod_backup(reconciler, client)
    finish_job(client, "backup-1-backup-data-mysql-0", message=BACKUP_INFO)
    client.delete(Pod, "mysql-0", namespace=NAMESPACE)

    assert reconcile(reconciler) == Result.retry(config.running_poll_interval)

    status = stored(client).status
    assert status.phase == "Running"
    assert [(a.targetPodName, a.phase) for a in status.actions] == [
        ("mysql-0", "Running"),
        ("mysql-1", "Running"),
    ]
    assert len(client.created_of(Job)) == 2

    # the remaining pod completing alone does not complete the backup
    finish_job(client, "backup-1-backup-data-mysql-1", message=BACKUP_INFO)
    assert reconcile(reconciler) == Result.retry(config.running_poll_interval)
    assert stored(client).status.phase == "Running"


def test_action_status_follows_its_pod(reconciler, cluster_objects):
    """Check each pod keeps its own action entry and job when the pod set changes."""
    client = cluster_objects
    start_two_pod_backup(reconciler, client)
    client.delete(Pod, "mysql-0", namespace=NAMESPACE)
    finish_job(client, "backup-1-backup-data-mysql-1", message=BACKUP_INFO)
    reconcile(reconciler)

    # the pod is back and its own job finished meanwhile
    client.add(make_pod("mysql-0"))
    finish_job(client, "backup-1-backup-data-mysql-0", message=BACKUP_INFO)

    assert reconcile(reconciler) == Result.done()

    status = stored(client).status
    assert status.phase == "Completed"
    assert [(a.targetPodName, a.phase, a.objectRef.name) for a in status.actions] == [
        ("mysql-0", "Completed", "backup-1-backup-data-mysql-0"),
        ("mysql-1", "Completed", "backup-1-backup-data-mysql-1"),
    ]
    assert len(client.created_of(Job)) == 2


def test_fatal_error_fails_new_backup(reconciler, client):
    """Check a backup referencing a missing policy fails with the reason."""
    client.add(make_backup(retentionPeriod="7d"))

    assert reconcile(reconciler) == Result.done()

    status = stored(client).status
    assert status.phase == "Failed"
    assert status.failureReason == f'backupPolicy "{POLICY}" not found'
    assert status.expiration == "2024-05-08T10:00:00Z"
    (event,) = events(client, "BackupFailed")
    assert event.type == "Warning"


def test_broken_chain_fails_incremental_backup(reconciler, cluster_objects):
    """Check an incremental backup chaining on a parent without base fails."""
    client = cluster_objects
    client.add(
        make_policy(
            methods=[
                make_method(),
                make_method("xtrabackup-inc", "xtrabackup-inc", compatibleMethod="xtrabackup"),
            ]
        ),
        make_action_set("xtrabackup-inc", backup_type="Incremental"),
        make_backup(
            "inc-1",
            method="xtrabackup-inc",
            labels={BACKUP_POLICY_LABEL: POLICY},
            status=BackupStatusModel(
                phase="Completed", backupRepoName=REPO, completionTimestamp=format_time(START)
            ),
        ),
        make_backup(method="xtrabackup-inc"),
    )

    assert reconcile(reconciler) == Result.done()

    status = stored(client).status
    assert status.phase == "Failed"
    assert status.failureReason == "backup default/inc-1 base backup name is empty"


def test_waits_for_repo_preparation(reconciler, client, config):
    """Check a backup waits for the repository to be prepared in its namespace."""
    client.add(make_policy(), make_action_set(), make_pod("mysql-0"), make_repo(), make_backup())

    assert reconcile(reconciler) == Result.retry(config.repo_wait_interval)
    backup = stored(client)
    assert backup.metadata.labels[WAIT_REPO_PREPARATION_LABEL] == "true"
    assert backup.metadata.finalizers == [DATAPROTECTION_FINALIZER]
    assert backup.status is None

    client.add(repo_pvc())
    assert reconcile(reconciler) == Result.done()
    assert stored(client).status.phase == "Running"


def test_cluster_identity(reconciler, cluster_objects):
    """Check the backup records the uid and a snapshot of its cluster."""
    cluster = make_cluster(**{OPS_REQUEST_ANNOTATION: "restart", "team": "db"})
    cluster_objects.add(cluster, make_backup())

    reconcile(reconciler)

    backup = stored(cluster_objects)
    assert backup.metadata.labels[CLUSTER_UID_LABEL] == "cluster-uid"
    snapshot = json.loads(backup.metadata.annotations[CLUSTER_SNAPSHOT_ANNOTATION])
    assert snapshot["metadata"]["annotations"] == {"team": "db"}
    assert snapshot["spec"] == {"clusterDef": "mysql"}
    assert backup.metadata.annotations[CLUSTER_SNAPSHOT_ANNOTATION] == cluster_snapshot(cluster)


def test_restore_in_progress(reconciler, cluster_objects, config):
    """Check running backups wait while their cluster is being restored."""
    cluster_objects.add(
        make_cluster(**{RESTORE_FROM_BACKUP_ANNOTATION: "{}"}),
        make_backup(
            labels={APP_INSTANCE_LABEL: CLUSTER}, status=BackupStatusModel(phase="Running")
        ),
    )

    assert reconcile(reconciler) == Result.retry(config.running_poll_interval)
    assert len(events(cluster_objects, "RestoreInProgress")) == 1
    assert cluster_objects.created_of(Job) == []


def test_deletion(reconciler, cluster_objects, config):
    """Check a deleted backup moves to Deleting and is released once its data is gone."""
    client = cluster_objects
    client.add(
        make_backup(
            finalizers=[DATAPROTECTION_FINALIZER],
            status=BackupStatusModel(
                phase="Completed", path="/default/backup-1", backupRepoName=REPO
            ),
        )
    )
    client.delete(Backup, "backup-1", namespace=NAMESPACE)

    assert reconcile(reconciler) == Result.retry(config.deletion_poll_interval)
    assert stored(client).status.phase == "Deleting"
    (job,) = client.created_of(Job)

    finish_job(client, job.metadata.name)
    assert reconcile(reconciler) == Result.done()
    assert stored(client) is None


@pytest.fixture()
def continuous(cluster_objects):
    cluster_objects.add(make_action_set(backup_type="Continuous"))
    return cluster_objects


def continuous_backup(phase, action_phase, **status):
    return make_backup(
        labels={BACKUP_SCHEDULE_LABEL: "schedule", BACKUP_TYPE_LABEL: "Continuous"},
        finalizers=[DATAPROTECTION_FINALIZER],
        status=BackupStatusModel(
            phase=phase,
            startTimestamp=format_time(START),
            actions=[
                ActionStatus(name="backup-data", targetPodName="mysql-0", phase=action_phase)
            ],
            **status,
        ),
    )


def test_continuous_backup_completes_when_schedule_is_disabled(reconciler, continuous, clock):
    """Check a continuous backup completes once its schedule is disabled."""
    continuous.add(make_schedule(enabled=False), continuous_backup("Running", "Running"))
    clock.advance(hours=1)

    assert reconcile(reconciler) == Result.done()

    status = stored(continuous).status
    assert status.phase == "Completed"
    assert status.duration == "1h0m0s"
    assert status.actions[0].phase == "Completed"
    assert status.actions[0].availableReplicas == 0


def test_failed_continuous_backup_restarts(reconciler, continuous, config):
    """Check a failed continuous backup runs its failed actions again."""
    continuous.add(
        make_schedule(),
        continuous_backup("Failed", "Failed", failureReason=FAILED_ACTIONS_MESSAGE),
    )

    assert reconcile(reconciler) == Result.retry(config.running_poll_interval)

    status = stored(continuous).status
    assert status.phase == "Running"
    assert status.failureReason is None
    assert status.actions[0].phase == "Running"
    assert continuous.stored(StatefulSet, "backup-1").spec.replicas == 1


def test_continuous_backup_completes_without_schedule(reconciler, continuous):
    """Check a continuous backup whose schedule is gone completes."""
    continuous.add(continuous_backup("Running", "Running"))

    assert reconcile(reconciler) == Result.done()
    assert stored(continuous).status.phase == "Completed"


def test_failing_continuous_backup_is_retried_later(reconciler, continuous, config):
    """Check a continuous backup that fails is retried after a delay."""
    schedule = make_schedule()
    schedule.status.phase = "Failed"
    continuous.add(schedule, continuous_backup("Running", "Running"))

    assert reconcile(reconciler) == Result.retry(config.continuous_retry_delay)

    status = stored(continuous).status
    assert status.phase == "Failed"
    assert "failed backupschedule" in status.failureReason
