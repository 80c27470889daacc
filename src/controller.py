#!/usr/bin/env python3
# Copyright 2025 Canonical Ltd.
# See LICENSE file for licensing details.

"""The data protection controller: watches, work queue and reconcile workers."""

import argparse
import logging
import signal
import threading
from concurrent.futures import ThreadPoolExecutor
from typing import Callable, Iterable, List, Optional, Tuple, Type

import httpx
from lightkube import ApiError, Client
from lightkube.core.resource import NamespacedResource
from lightkube.resources.apiextensions_v1 import CustomResourceDefinition
from lightkube.resources.apps_v1 import StatefulSet
from lightkube.resources.batch_v1 import Job
from lightkube.resources.core_v1 import Pod
from pydantic import ValidationError
from tenacity import (
    Retrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_when_event_set,
    wait_exponential,
)

from config import OperatorConfig
from constants import (
    APP_MANAGED_BY_LABEL,
    APP_NAME,
    BACKUP_NAME_LABEL,
    BACKUP_NAMESPACE_LABEL,
    K8S_ALL_NAMESPACES,
)
from dataprotection import (
    ActionSet,
    Backup,
    BackupPolicy,
    BackupReconciler,
    BackupRepo,
    BackupSchedule,
)
from k8s_utils import EventRecorder, k8s_retry_check
from workqueue import RateLimitingQueue, ShutDown

logger = logging.getLogger(__name__)

Key = Tuple[str, str]
Mapper = Callable[[object], List[Key]]

REQUIRED_CRDS = (ActionSet, Backup, BackupPolicy, BackupRepo, BackupSchedule)


def backup_key(backup: Backup) -> List[Key]:
    """Map a Backup to its own key."""
    return [(backup.metadata.namespace, backup.metadata.name)]


def labeled_backup_keys(obj) -> List[Key]:
    """Map a workload of the controller to the backup it runs for."""
    labels = obj.metadata.labels or {}
    name = labels.get(BACKUP_NAME_LABEL)
    if not name or labels.get(APP_MANAGED_BY_LABEL) != APP_NAME:
        return []
    namespace = labels.get(BACKUP_NAMESPACE_LABEL) or obj.metadata.namespace
    return [(namespace, name)]


def filter_backup_pods(pod: Pod) -> List[Key]:
    """Map a backup pod to its backup, once it has left the Pending phase."""
    if pod.status is None or pod.status.phase in (None, "Pending"):
        return []
    return labeled_backup_keys(pod)


def parse_backup_job(job: Job) -> List[Key]:
    """Map a job of the controller to the backup it runs for."""
    return labeled_backup_keys(job)


class Controller:
    """Feeds the backups to reconcile from the watches to the workers.

    Args:
        client: The lightkube client.
        config: The operator configuration.
        reconciler: Reconciles one backup per call.
        queue: The work queue shared by the watches and the workers.
    """

    def __init__(
        self,
        client: Client,
        config: OperatorConfig,
        reconciler: Optional[BackupReconciler] = None,
        queue: Optional[RateLimitingQueue] = None,
    ) -> None:
        self.client = client
        self.config = config
        self.reconciler = reconciler or BackupReconciler(
            client, config, EventRecorder(client, config.field_manager)
        )
        self.queue = queue or RateLimitingQueue(
            base_delay=config.requeue_base_delay, max_delay=config.requeue_max_delay
        )
        self.stop_event = threading.Event()

    def watches(self) -> Iterable[Tuple[Type[NamespacedResource], Mapper, Optional[dict]]]:
        """Return the watched resources with their mapper and label filter."""
        managed = {APP_MANAGED_BY_LABEL: APP_NAME}
        return (
            (Backup, backup_key, None),
            (Job, parse_backup_job, managed),
            (Pod, filter_backup_pods, managed),
            (StatefulSet, labeled_backup_keys, managed),
        )

    def check_crds(self) -> None:
        """Wait for the custom resource definitions of the controller to be served.

        Raises:
            ApiError: If a definition is still missing after the last attempt.
        """

        def check() -> None:
            for resource in REQUIRED_CRDS:
                api_info = resource._api_info
                self.client.get(
                    CustomResourceDefinition, f"{api_info.plural}.{api_info.resource.group}"
                )

        logger.info("Checking the data protection custom resource definitions")
        k8s_retry_check(check)

    def _watch_once(self, resource, mapper: Mapper, labels: Optional[dict]) -> None:
        for _, obj in self.client.watch(resource, namespace=K8S_ALL_NAMESPACES, labels=labels):
            if self.stop_event.is_set():
                return
            for key in mapper(obj):
                self.queue.add(key)

    def watch(self, resource, mapper: Mapper, labels: Optional[dict] = None) -> None:
        """Watch ``resource`` until stopped, restarting the watch on errors."""
        while not self.stop_event.is_set():
            for attempt in Retrying(
                stop=stop_when_event_set(self.stop_event),
                wait=wait_exponential(multiplier=1, max=60),
                retry=retry_if_exception_type((ApiError, httpx.HTTPError)),
                before_sleep=before_sleep_log(logger, logging.WARNING),
                reraise=True,
            ):
                with attempt:
                    self._watch_once(resource, mapper, labels)

    def process_next(self) -> bool:
        """Reconcile the next backup of the queue.

        Returns:
            bool: False once the queue is shut down.
        """
        try:
            key = self.queue.get()
        except ShutDown:
            return False
        namespace, name = key
        try:
            result = self.reconciler.reconcile(namespace, name)
        except Exception:
            logger.exception("Failed to reconcile backup '%s/%s'", namespace, name)
            self.queue.add_rate_limited(key)
        else:
            if result.requeue_after is not None:
                self.queue.forget(key)
                self.queue.add_after(key, result.requeue_after)
            elif result.requeue:
                self.queue.add_rate_limited(key)
            else:
                self.queue.forget(key)
        finally:
            self.queue.done(key)
        return True

    def worker(self) -> None:
        """Reconcile backups until the queue is shut down."""
        while self.process_next():
            pass

    def stop(self) -> None:
        """Stop the watches and the workers."""
        logger.info("Stopping the controller")
        self.stop_event.set()
        self.queue.shut_down()

    def run(self) -> None:
        """Run the watches and the workers until ``stop`` is called."""
        self.check_crds()
        # watches block on their stream, they are not waited for on exit
        for resource, mapper, labels in self.watches():
            threading.Thread(
                target=self.watch,
                args=(resource, mapper, labels),
                name=f"watch-{resource.__name__}",
                daemon=True,
            ).start()
        with ThreadPoolExecutor(
            max_workers=self.config.reconcile_workers, thread_name_prefix="worker"
        ) as executor:
            for _ in range(self.config.reconcile_workers):
                executor.submit(self.worker)
            logger.info(
                "Started the controller with %d workers", self.config.reconcile_workers
            )
            self.stop_event.wait()


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    """Parse the command line overrides of the configuration."""
    parser = argparse.ArgumentParser(description="Reconcile data protection backups.")
    parser.add_argument("--controller-namespace", help="namespace of the controller")
    parser.add_argument("--workers", type=int, help="number of reconcile workers")
    parser.add_argument("--log-level", help="logging level")
    return parser.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> int:
    """Run the controller.

    Returns:
        int: The exit code, 1 when the configuration is invalid.
    """
    args = parse_args(argv)
    overrides = {
        "controller_namespace": args.controller_namespace,
        "reconcile_workers": args.workers,
        "log_level": args.log_level,
    }
    try:
        config = OperatorConfig(**{k: v for k, v in overrides.items() if v is not None})
    except ValidationError as ve:
        logging.basicConfig(level=logging.ERROR)
        logger.error("Invalid configuration: %s", ve)
        return 1

    logging.basicConfig(
        level=config.log_level,
        format="%(asctime)s %(levelname)s %(threadName)s %(name)s: %(message)s",
    )
    for noisy in ("httpx", "httpcore"):
        logging.getLogger(noisy).setLevel(logging.WARNING)

    client = Client(field_manager=config.field_manager)
    controller = Controller(client, config)
    signal.signal(signal.SIGTERM, lambda *_: controller.stop())
    signal.signal(signal.SIGINT, lambda *_: controller.stop())
    controller.run()
    return 0


if __name__ == "__main__":  # pragma: nocover
    raise SystemExit(main())
