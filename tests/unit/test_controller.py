# Copyright 2025 Canonical Ltd.
# See LICENSE file for licensing details.

from unittest.mock import MagicMock, call, patch

import pytest
from helpers import NAMESPACE, make_backup, make_pod
from lightkube.models.core_v1 import PodStatus
from lightkube.models.meta_v1 import ObjectMeta
from lightkube.resources.apiextensions_v1 import CustomResourceDefinition
from lightkube.resources.batch_v1 import Job

from constants import APP_MANAGED_BY_LABEL, APP_NAME, BACKUP_NAME_LABEL, BACKUP_NAMESPACE_LABEL
from controller import (
    Controller,
    backup_key,
    filter_backup_pods,
    labeled_backup_keys,
    main,
    parse_backup_job,
)
from dataprotection.types import Result
from workqueue import RateLimitingQueue

KEY = (NAMESPACE, "backup-1")
LABELS = {BACKUP_NAME_LABEL: "backup-1", APP_MANAGED_BY_LABEL: APP_NAME}


@pytest.fixture()
def reconciler():
    return MagicMock()


@pytest.fixture()
def controller(config, reconciler):
    queue = RateLimitingQueue(base_delay=1.0, max_delay=10.0)
    return Controller(MagicMock(), config, reconciler=reconciler, queue=queue)


def job(labels, namespace="kb-system") -> Job:
    return Job(metadata=ObjectMeta(name="job", namespace=namespace, labels=labels))


def test_backup_key():
    assert backup_key(make_backup()) == [KEY]


@pytest.mark.parametrize(
    "labels,expected",
    [
        (LABELS, [("kb-system", "backup-1")]),
        (dict(LABELS, **{BACKUP_NAMESPACE_LABEL: NAMESPACE}), [KEY]),
        ({BACKUP_NAME_LABEL: "backup-1"}, []),
        ({APP_MANAGED_BY_LABEL: APP_NAME}, []),
        (None, []),
    ],
)
def test_labeled_backup_keys(labels, expected):
    """Check only workloads managed by the controller map to their backup."""
    assert labeled_backup_keys(job(labels)) == expected
    assert parse_backup_job(job(labels)) == expected


@pytest.mark.parametrize("phase,expected", [("Pending", []), ("Running", [KEY]), (None, [])])
def test_filter_backup_pods(phase, expected):
    """Check pending backup pods are not mapped to their backup."""
    pod = make_pod("backup-pod", labels=LABELS)
    pod.status = PodStatus(phase=phase)
    assert filter_backup_pods(pod) == expected


def test_process_next_done(controller, reconciler):
    """Check a backup reconciled to completion is forgotten."""
    reconciler.reconcile.return_value = Result.done()
    controller.queue.when(KEY)
    controller.queue.add(KEY)

    assert controller.process_next()

    reconciler.reconcile.assert_called_once_with(NAMESPACE, "backup-1")
    assert controller.queue.num_requeues(KEY) == 0
    assert len(controller.queue) == 0


def test_process_next_requeue_after(controller, reconciler):
    """Check a backup asking to come back later is delayed, without backoff."""
    reconciler.reconcile.return_value = Result.retry(30)
    controller.queue.add(KEY)

    with patch.object(controller.queue, "add_after") as add_after:
        controller.process_next()

    add_after.assert_called_once_with(KEY, 30)
    assert controller.queue.num_requeues(KEY) == 0


def test_process_next_requeue_with_backoff(controller, reconciler):
    """Check a backup asking to come back without delay is rate limited."""
    reconciler.reconcile.return_value = Result.retry()
    controller.queue.add(KEY)

    controller.process_next()

    assert controller.queue.num_requeues(KEY) == 1


def test_process_next_error(controller, reconciler, caplog):
    """Check a failed pass is logged and retried with backoff."""
    reconciler.reconcile.side_effect = RuntimeError("boom")
    controller.queue.add(KEY)

    assert controller.process_next()

    assert "Failed to reconcile backup 'default/backup-1'" in caplog.text
    assert controller.queue.num_requeues(KEY) == 1
    assert len(controller.queue) == 0


def test_process_next_shut_down(controller):
    """Check workers stop once the controller is stopped."""
    controller.stop()
    assert controller.stop_event.is_set()
    assert not controller.process_next()


def test_watch_once_queues_backups(controller):
    """Check watched objects are mapped to the backups to reconcile."""
    controller.client.watch.return_value = iter(
        [("ADDED", job(LABELS, NAMESPACE)), ("MODIFIED", job({"other": "x"}))]
    )

    controller._watch_once(Job, parse_backup_job, {APP_MANAGED_BY_LABEL: APP_NAME})

    controller.client.watch.assert_called_once_with(
        Job, namespace="*", labels={APP_MANAGED_BY_LABEL: APP_NAME}
    )
    assert len(controller.queue) == 1
    assert controller.queue.get() == KEY


def test_check_crds(controller):
    """Check every custom resource definition of the controller is looked up."""
    with patch("controller.k8s_retry_check", side_effect=lambda check: check()):
        controller.check_crds()

    names = [c.args[1] for c in controller.client.get.call_args_list]
    assert names == [
        "actionsets.dataprotection.kubeblocks.io",
        "backups.dataprotection.kubeblocks.io",
        "backuppolicies.dataprotection.kubeblocks.io",
        "backuprepos.dataprotection.kubeblocks.io",
        "backupschedules.dataprotection.kubeblocks.io",
    ]
    assert controller.client.get.call_args_list[0] == call(
        CustomResourceDefinition, "actionsets.dataprotection.kubeblocks.io"
    )


def test_main_invalid_config(caplog):
    """Check an invalid configuration exits with an error."""
    with patch("controller.Client") as client:
        assert main(["--workers", "0"]) == 1
    client.assert_not_called()
    assert "Invalid configuration" in caplog.text
