# Copyright 2025 Canonical Ltd.
# See LICENSE file for licensing details.

"""Utility functions for Kubernetes operations."""

import logging
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple, Type, Union

from lightkube import Client
from lightkube.core.exceptions import ApiError
from lightkube.core.resource import GlobalResource, NamespacedResource
from lightkube.models.core_v1 import EventSource, ObjectReference
from lightkube.models.meta_v1 import LabelSelectorRequirement, ObjectMeta
from lightkube.models.rbac_v1 import RoleRef, Subject
from lightkube.resources.core_v1 import Event, ServiceAccount
from lightkube.resources.rbac_authorization_v1 import RoleBinding
from lightkube.types import CascadeType, PatchType
from tenacity import (
    Retrying,
    retry_if_exception_type,
    retry_if_result,
    stop_after_attempt,
    wait_fixed,
)

from constants import K8S_CHECK_ATTEMPTS, K8S_CHECK_DELAY, K8S_CHECK_OBSERVATIONS
from utils import utcnow

logger = logging.getLogger(__name__)

ResourceType = Type[Union[NamespacedResource, GlobalResource]]


def is_not_found(err: ApiError) -> bool:
    """Return True if the API error is a 404."""
    return err.status.code == 404


def is_conflict(err: ApiError) -> bool:
    """Return True if the API error is a 409."""
    return err.status.code == 409


def k8s_get(
    kube_client: Client, resource: ResourceType, name: str, namespace: Optional[str] = None
) -> Optional[Any]:
    """Get a Kubernetes resource, returning None when it does not exist.

    Args:
        kube_client (Client): The Kubernetes client used to interact with the cluster.
        resource: The resource type.
        name (str): The name of the resource.
        namespace (Optional[str]): The namespace, ignored for global resources.

    Raises:
        ApiError: If the resource cannot be retrieved for any reason but a 404.
    """
    try:
        if issubclass(resource, NamespacedResource):
            return kube_client.get(resource, name=name, namespace=namespace)
        return kube_client.get(resource, name=name)
    except ApiError as ae:
        if is_not_found(ae):
            return None
        raise ae


def k8s_resource_exists(
    kube_client: Client, resource: ResourceType, name: str, namespace: Optional[str] = None
) -> bool:
    """Check if a specified Kubernetes resource exists.

    Raises:
        ApiError: If the resource cannot be retrieved.
    """
    if k8s_get(kube_client, resource, name, namespace) is None:
        logger.debug("Resource %s '%s' not found", resource.__name__, name)
        return False
    return True


def k8s_remove_resource(
    kube_client: Client,
    resource: ResourceType,
    name: str,
    namespace: Optional[str] = None,
    cascade: Optional[CascadeType] = CascadeType.BACKGROUND,
) -> None:
    """Remove a specified Kubernetes resource, ignoring resources that are already gone.

    Raises:
        ApiError: If the resource cannot be deleted.
    """
    try:
        if issubclass(resource, NamespacedResource):
            kube_client.delete(resource, name=name, namespace=namespace, cascade=cascade)
        else:
            kube_client.delete(resource, name=name, cascade=cascade)
    except ApiError as ae:
        if is_not_found(ae):
            logger.debug(
                "Resource %s '%s' not found, skipping deletion", resource.__name__, name
            )
        else:
            logger.error("Failed to delete %s '%s' resource: %s", resource.__name__, name, ae)
            raise ae


def k8s_remove_labeled(
    kube_client: Client,
    resource: Type[NamespacedResource],
    namespaces: Iterable[str],
    labels: Dict[str, str],
) -> int:
    """Remove every resource of a type carrying the given labels in the given namespaces.

    Returns:
        int: The number of deleted resources.

    Raises:
        ApiError: If the resources cannot be listed or deleted.
    """
    removed = 0
    for namespace in sorted(set(namespaces)):
        for obj in kube_client.list(resource, namespace=namespace, labels=labels):
            if obj.metadata.deletionTimestamp:
                continue
            k8s_remove_resource(kube_client, resource, obj.metadata.name, namespace)
            logger.info(
                "Deleted %s '%s/%s'", resource.__name__, namespace, obj.metadata.name
            )
            removed += 1
    return removed


def k8s_retry_check(
    check_func: Callable[[], None],
    *,
    retry_exceptions: Tuple[Type[BaseException], ...] = (),
    attempts: int = K8S_CHECK_ATTEMPTS,
    delay: float = K8S_CHECK_DELAY,
    min_successful: int = K8S_CHECK_OBSERVATIONS,
) -> None:
    """Retry a check function until it succeeds or the maximum number of attempts is reached.

    Args:
        check_func (Callable[[], None]): The function to check.
            Should raise an exception if the check fails.
        retry_exceptions (Tuple[Type[BaseException], ...]): Exceptions to retry on.
        attempts (int): Maximum number of attempts.
        delay (float): Delay between attempts in seconds.
        min_successful (int): Minimum number of successful observations before stopping retries.
    """
    observations = 0

    for attempt in Retrying(
        stop=stop_after_attempt(attempts),
        wait=wait_fixed(delay),
        retry=(
            retry_if_result(lambda obs: obs < min_successful)
            | retry_if_exception_type((ApiError,) + retry_exceptions)
        ),
        reraise=True,
    ):
        with attempt:
            check_func()
            observations += 1
        if not attempt.retry_state.outcome.failed:  # type: ignore
            attempt.retry_state.set_result(observations)


def json_merge_patch(original: Dict[str, Any], modified: Dict[str, Any]) -> Dict[str, Any]:
    """Compute the JSON merge patch (RFC 7386) turning ``original`` into ``modified``.

    Keys missing from ``modified`` are set to None, nested mappings are diffed
    recursively and any other value (lists included) is replaced wholesale.
    """
    patch: Dict[str, Any] = {}
    for key in original:
        if key not in modified:
            patch[key] = None
    for key, value in modified.items():
        old = original.get(key)
        if isinstance(old, dict) and isinstance(value, dict):
            nested = json_merge_patch(old, value)
            if nested:
                patch[key] = nested
        elif key not in original or old != value:
            patch[key] = value
    return patch


def k8s_patch_status(kube_client: Client, original: Any, modified: Any) -> Optional[Any]:
    """Write the status of ``modified`` using an optimistic lock on ``original``.

    The patch is a JSON merge patch against the status subresource carrying the
    resource version last observed, so a concurrent writer results in a 409
    instead of a silent overwrite.

    Returns:
        The updated object, or None when there was nothing to write.

    Raises:
        ApiError: On conflicts or any other API failure.
    """
    old_status = original.status.to_dict() if original.status else {}
    new_status = modified.status.to_dict() if modified.status else {}
    diff = json_merge_patch(old_status, new_status)
    if not diff:
        return None
    body = {
        "metadata": {"resourceVersion": original.metadata.resourceVersion},
        "status": diff,
    }
    resource = type(original)
    return kube_client.patch(
        resource.Status,
        original.metadata.name,
        body,
        namespace=original.metadata.namespace,
        patch_type=PatchType.MERGE,
    )


def k8s_patch_metadata(kube_client: Client, obj: Any, metadata: Dict[str, Any]) -> Any:
    """Merge-patch the metadata of ``obj`` under an optimistic lock.

    Raises:
        ApiError: On conflicts or any other API failure.
    """
    body = {"metadata": dict(metadata, resourceVersion=obj.metadata.resourceVersion)}
    return kube_client.patch(
        type(obj),
        obj.metadata.name,
        body,
        namespace=obj.metadata.namespace,
        patch_type=PatchType.MERGE,
    )


def match_label_expressions(
    labels: Optional[Dict[str, str]], expressions: Optional[List[LabelSelectorRequirement]]
) -> bool:
    """Check the labels of an object against label selector expressions."""
    labels = labels or {}
    for expr in expressions or []:
        values = expr.values or []
        if expr.operator == "In":
            if labels.get(expr.key) not in values:
                return False
        elif expr.operator == "NotIn":
            if expr.key in labels and labels[expr.key] in values:
                return False
        elif expr.operator == "Exists":
            if expr.key not in labels:
                return False
        elif expr.operator == "DoesNotExist":
            if expr.key in labels:
                return False
        else:
            raise ValueError(f"Unknown label selector operator: {expr.operator}")
    return True


def k8s_ensure_service_account(
    kube_client: Client, name: str, namespace: str, cluster_role: str
) -> str:
    """Ensure a service account bound to a cluster role exists in a namespace.

    Returns:
        str: The service account name.

    Raises:
        ApiError: If the resources cannot be created.
    """
    if k8s_resource_exists(kube_client, ServiceAccount, name, namespace):
        return name

    logger.info("Creating worker service account '%s/%s'", namespace, name)
    for obj in (
        ServiceAccount(metadata=ObjectMeta(name=name, namespace=namespace)),
        RoleBinding(
            metadata=ObjectMeta(name=name, namespace=namespace),
            roleRef=RoleRef(
                apiGroup="rbac.authorization.k8s.io", kind="ClusterRole", name=cluster_role
            ),
            subjects=[Subject(kind="ServiceAccount", name=name, namespace=namespace)],
        ),
    ):
        try:
            kube_client.create(obj)
        except ApiError as ae:
            if not is_conflict(ae):
                raise ae
    return name


class EventRecorder:
    """Records Kubernetes events on the objects handled by the operator."""

    def __init__(self, kube_client: Client, component: str) -> None:
        self._client = kube_client
        self._component = component

    def event(self, obj: Any, event_type: str, reason: str, message: str) -> None:
        """Create an event for ``obj``.

        Failing to record an event never fails the caller, the error is logged.
        """
        meta = obj.metadata
        info = type(obj)._api_info.resource
        api_version = f"{info.group}/{info.version}" if info.group else info.version
        now = utcnow()
        event = Event(
            metadata=ObjectMeta(generateName=f"{meta.name}.", namespace=meta.namespace),
            involvedObject=ObjectReference(
                apiVersion=api_version,
                kind=info.kind,
                name=meta.name,
                namespace=meta.namespace,
                uid=meta.uid,
                resourceVersion=meta.resourceVersion,
            ),
            reason=reason,
            message=message,
            type=event_type,
            count=1,
            firstTimestamp=now,
            lastTimestamp=now,
            source=EventSource(component=self._component),
            reportingComponent=self._component,
        )
        try:
            self._client.create(event, namespace=meta.namespace)
        except ApiError as ae:
            logger.warning(
                "Failed to record event %s for %s '%s/%s': %s",
                reason,
                info.kind,
                meta.namespace,
                meta.name,
                ae,
            )

    def normal(self, obj: Any, reason: str, message: str) -> None:
        """Create a Normal event for ``obj``."""
        self.event(obj, "Normal", reason, message)

    def warning(self, obj: Any, reason: str, message: str) -> None:
        """Create a Warning event for ``obj``."""
        self.event(obj, "Warning", reason, message)
