# Copyright 2025 Canonical Ltd.
# See LICENSE file for licensing details.

"""Selection of the pods a backup runs against."""

import copy
import logging
from typing import Dict, List, Optional

from lightkube import Client
from lightkube.models.meta_v1 import LabelSelectorRequirement
from lightkube.resources.apps_v1 import StatefulSet
from lightkube.resources.core_v1 import Pod
from lightkube.types import PatchType

from config import OperatorConfig
from constants import BACKUP_NAME_LABEL, BACKUP_TARGET_LABEL
from k8s_utils import k8s_ensure_service_account, k8s_get, match_label_expressions

from .crds import Backup, BackupMethod, BackupPolicy, BackupStatusTarget, BackupTarget, PodSelector
from .errors import FatalError
from .request import Request
from .types import BackupType, TargetStrategy

logger = logging.getLogger(__name__)


def get_backup_targets(policy: BackupPolicy, method: BackupMethod) -> List[BackupTarget]:
    """Return the targets of a backup, the method ones overriding the policy ones."""
    if method.target is not None:
        return [method.target]
    if method.targets:
        return list(method.targets)
    if policy.spec.target is not None:
        return [policy.spec.target]
    return list(policy.spec.targets or [])


def get_backup_status_target(
    backup: Backup, target_name: Optional[str]
) -> Optional[BackupStatusTarget]:
    """Return the target recorded in the status of ``backup`` for ``target_name``."""
    status = backup.status
    if status is None:
        return None
    if status.target is not None:
        return status.target
    for target in status.targets or []:
        if target.name == target_name:
            return target
    return None


def is_pod_available(pod: Pod) -> bool:
    """Return True if the pod is running and ready."""
    if pod.metadata.deletionTimestamp or pod.status is None:
        return False
    if pod.status.phase != "Running":
        return False
    for cond in pod.status.conditions or []:
        if cond.type == "Ready":
            return cond.status == "True"
    return False


def _select_pods(
    client: Client,
    namespace: str,
    match_labels: Optional[Dict[str, str]],
    match_expressions: Optional[List[LabelSelectorRequirement]],
) -> List[Pod]:
    if not match_labels and not match_expressions:
        # an empty selector matches nothing
        return []
    pods = client.list(Pod, namespace=namespace, labels=match_labels or None)
    try:
        return [
            p
            for p in pods
            if not p.metadata.deletionTimestamp
            and match_label_expressions(p.metadata.labels, match_expressions)
        ]
    except ValueError as ve:
        raise FatalError(str(ve)) from ve


def get_target_pods(
    client: Client,
    selected_pods: List[str],
    policy: BackupPolicy,
    target: BackupTarget,
) -> List[Pod]:
    """Return the pods a target resolves to.

    Pods already selected are reused as they are, in their recorded order.
    Otherwise the pods are selected by the pod selector of the target, its
    fallback selector being used when nothing matches.
    """
    namespace = policy.metadata.namespace
    if selected_pods:
        pods = []
        for name in selected_pods:
            pod = k8s_get(client, Pod, name, namespace)
            if pod is None:
                logger.warning("Selected target pod '%s/%s' not found", namespace, name)
                continue
            pods.append(pod)
        return pods

    selector = target.podSelector or PodSelector()
    pods = _select_pods(client, namespace, selector.matchLabels, selector.matchExpressions)
    fallback = selector.fallbackLabelSelector
    if not pods and fallback is not None:
        pods = _select_pods(client, namespace, fallback.matchLabels, fallback.matchExpressions)
    if not pods:
        return []

    try:
        strategy = TargetStrategy(selector.strategy or TargetStrategy.ANY)
    except ValueError as ve:
        raise FatalError(f"unknown pod selection strategy {selector.strategy}") from ve
    if strategy == TargetStrategy.ALL:
        return sorted(pods, key=lambda p: p.metadata.name)
    # available pods first
    return [min(pods, key=lambda p: (not is_pod_available(p), p.metadata.name))]


def stop_statefulsets(client: Client, backup: Backup, target_name: Optional[str]) -> None:
    """Scale the statefulsets of a continuous backup down to release their volumes."""
    labels = {BACKUP_NAME_LABEL: backup.metadata.name}
    if target_name:
        labels[BACKUP_TARGET_LABEL] = target_name
    for sts in client.list(StatefulSet, namespace=backup.metadata.namespace, labels=labels):
        if sts.spec.replicas == 0:
            continue
        logger.info(
            "Scaling statefulset '%s/%s' down", sts.metadata.namespace, sts.metadata.name
        )
        client.patch(
            StatefulSet,
            sts.metadata.name,
            {"spec": {"replicas": 0}},
            namespace=sts.metadata.namespace,
            patch_type=PatchType.MERGE,
        )


def prepare_request_target_info(
    client: Client, config: OperatorConfig, request: Request, target: BackupTarget
) -> None:
    """Resolve the pods and the worker service account of a target into ``request``.

    Raises:
        FatalError: If the target resolves to no pod.
    """
    selected: List[str] = []
    status_target = get_backup_status_target(request.backup, target.name)
    if status_target is not None:
        selected = list(status_target.selectedTargetPods or [])

    use_parent = target.podSelector is not None and target.podSelector.useParentSelectedPods
    if request.parent_backup is not None and use_parent and not selected:
        parent_target = get_backup_status_target(request.parent_backup, target.name)
        if parent_target is not None and parent_target.selectedTargetPods:
            selected = list(parent_target.selectedTargetPods)

    request.target = target
    pods = get_target_pods(client, selected, request.policy, target)
    if not pods:
        if request.backup_type() == BackupType.CONTINUOUS:
            stop_statefulsets(client, request.backup, target.name)
        raise FatalError(
            "failed to get target pods by backup policy "
            f"{request.policy.metadata.namespace}/{request.policy.metadata.name}"
        )
    request.target_pods = pods

    service_account = target.serviceAccountName
    if not service_account:
        service_account = k8s_ensure_service_account(
            client, config.worker_service_account, request.namespace, config.worker_cluster_role
        )
    request.worker_service_account = service_account


def record_backup_status_targets(client: Client, config: OperatorConfig, request: Request) -> None:
    """Record the targets of the backup and their selected pods in its status.

    Targets already recorded are left untouched, so the selection of a backup
    never changes once made.

    Raises:
        FatalError: If neither the method nor the policy declare a target.
    """
    status = request.status
    if status.target is not None or status.targets:
        return

    def build_status_target(target: BackupTarget) -> BackupStatusTarget:
        """Return the status entry recording the pods selected for ``target``."""
        prepare_request_target_info(client, config, request, target)
        return BackupStatusTarget(
            name=target.name,
            podSelector=copy.deepcopy(target.podSelector),
            serviceAccountName=target.serviceAccountName,
            selectedTargetPods=[p.metadata.name for p in request.target_pods],
        )

    method, policy = request.method, request.policy
    if method.target is not None:
        status.target = build_status_target(method.target)
    elif method.targets:
        status.targets = [build_status_target(t) for t in method.targets]
    elif policy.spec.target is not None:
        status.target = build_status_target(policy.spec.target)
    elif policy.spec.targets:
        status.targets = [build_status_target(t) for t in policy.spec.targets]
    else:
        raise FatalError(
            f'backup target/targets can not be empty in backupPolicy "{policy.metadata.name}"'
        )
