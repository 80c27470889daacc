# Copyright 2025 Canonical Ltd.
# See LICENSE file for licensing details.

import copy
import itertools
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional
from unittest.mock import MagicMock

import httpx
from lightkube import ApiError
from lightkube.models.batch_v1 import JobCondition, JobStatus
from lightkube.models.core_v1 import (
    Container,
    ContainerState,
    ContainerStateTerminated,
    ContainerStatus,
    PersistentVolumeClaimVolumeSource,
    PodCondition,
    PodSpec,
    PodStatus,
    Volume,
)
from lightkube.models.meta_v1 import ObjectMeta
from lightkube.resources.batch_v1 import Job
from lightkube.resources.core_v1 import PersistentVolumeClaim, Pod, Secret

from config import OperatorConfig
from constants import APP_INSTANCE_LABEL, DEFAULT_REPO_ANNOTATION, JOB_NAME_LABEL
from dataprotection.crds import (
    ActionSet,
    ActionSetSpecModel,
    ActionSpec,
    Backup,
    BackupActionSpec,
    BackupMethod,
    BackupPolicy,
    BackupPolicySpecModel,
    BackupRepo,
    BackupRepoSpecModel,
    BackupRepoStatusModel,
    BackupSpecModel,
    BackupStatusModel,
    BackupTarget,
    JobActionSpec,
    PodSelector,
)

NAMESPACE = "default"
CLUSTER = "mysql"
POLICY = "mysql-backup-policy"
METHOD = "xtrabackup"
ACTION_SET = "xtrabackup-full"
REPO = "s3-repo"
REPO_PVC = "dp-backup-pvc"
START = datetime(2024, 5, 1, 10, 0, 0, tzinfo=timezone.utc)


def api_error(code: int, message: str = "error") -> ApiError:
    """Build an ApiError with the given status code."""
    mock_response = MagicMock(spec=httpx.Response)
    mock_response.json.return_value = {"code": code, "message": message}
    return ApiError(request=MagicMock(), response=mock_response)


def apply_merge_patch(target, patch):
    """Apply a JSON merge patch (RFC 7386) to a plain document."""
    if not isinstance(patch, dict):
        return patch
    result = dict(target) if isinstance(target, dict) else {}
    for key, value in patch.items():
        if value is None:
            result.pop(key, None)
        else:
            result[key] = apply_merge_patch(result.get(key), value)
    return result


class FakeClient:
    """In-memory stand-in for the lightkube Client.

    Objects are stored by (kind, namespace, name). Patches carrying a
    resource version that is not the stored one fail with a 409, deleting an
    object with finalizers only marks it as being deleted.
    """

    def __init__(self) -> None:
        self.objects: Dict[tuple, object] = {}
        self.created: List[object] = []
        self.deleted: List[tuple] = []
        self.patches: List[tuple] = []
        self.logs: Dict[str, List[str]] = {}
        self._versions = itertools.count(1)
        self._names = itertools.count(1)

    @staticmethod
    def _kind(resource) -> str:
        info = resource._api_info
        return (info.parent or info.resource).kind

    def _key(self, resource, name: str, namespace: Optional[str]) -> tuple:
        return (self._kind(resource), namespace, name)

    def _store(self, obj) -> object:
        obj = copy.deepcopy(obj)
        if isinstance(obj, dict) and isinstance(obj.get("metadata"), dict):
            obj["metadata"] = ObjectMeta.from_dict(obj["metadata"])
        obj.metadata.resourceVersion = str(next(self._versions))
        self.objects[self._key(type(obj), obj.metadata.name, obj.metadata.namespace)] = obj
        return copy.deepcopy(obj)

    def add(self, *objs) -> None:
        for obj in objs:
            self._store(obj)

    def stored(self, resource, name: str, namespace: Optional[str] = NAMESPACE):
        return self.objects.get(self._key(resource, name, namespace))

    def get(self, resource, name: str, namespace: Optional[str] = None):
        obj = self.objects.get(self._key(resource, name, namespace))
        if obj is None:
            raise api_error(404, f"{self._kind(resource)} {name} not found")
        return copy.deepcopy(obj)

    def list(self, resource, namespace: Optional[str] = None, labels=None, **kwargs):
        kind = self._kind(resource)
        for (obj_kind, obj_ns, _), obj in list(self.objects.items()):
            if obj_kind != kind:
                continue
            if namespace not in (None, "*") and obj_ns != namespace:
                continue
            obj_labels = obj.metadata.labels or {}
            if any(obj_labels.get(k) != v for k, v in (labels or {}).items()):
                continue
            yield copy.deepcopy(obj)

    def create(self, obj, namespace: Optional[str] = None):
        meta = obj.metadata
        if not meta.name and meta.generateName:
            meta.name = f"{meta.generateName}{next(self._names)}"
        if meta.namespace is None and namespace is not None:
            meta.namespace = namespace
        if self._key(type(obj), meta.name, meta.namespace) in self.objects:
            raise api_error(409, f"{meta.name} already exists")
        self.created.append(copy.deepcopy(obj))
        return self._store(obj)

    def patch(self, resource, name: str, obj, namespace: Optional[str] = None, **kwargs):
        key = self._key(resource, name, namespace)
        stored = self.objects.get(key)
        if stored is None:
            raise api_error(404, f"{name} not found")
        version = (obj.get("metadata") or {}).get("resourceVersion")
        if version is not None and version != stored.metadata.resourceVersion:
            raise api_error(409, "the object has been modified")
        self.patches.append((resource, name, copy.deepcopy(obj)))
        merged = apply_merge_patch(stored.to_dict(), obj)
        if isinstance(stored, dict):
            updated = type(stored)(merged)
        else:
            updated = type(stored).from_dict(merged)
        if updated.metadata.deletionTimestamp and not updated.metadata.finalizers:
            del self.objects[key]
            return copy.deepcopy(updated)
        return self._store(updated)

    def delete(self, resource, name: str, namespace: Optional[str] = None, **kwargs) -> None:
        key = self._key(resource, name, namespace)
        stored = self.objects.get(key)
        if stored is None:
            raise api_error(404, f"{name} not found")
        self.deleted.append(key)
        if stored.metadata.finalizers:
            if not stored.metadata.deletionTimestamp:
                stored.metadata.deletionTimestamp = START
            return
        del self.objects[key]

    def log(self, name: str, namespace: Optional[str] = None, **kwargs):
        return iter(self.logs.get(name, []))

    def created_of(self, resource) -> List[object]:
        return [obj for obj in self.created if self._kind(type(obj)) == self._kind(resource)]


class Clock:
    """Settable clock for the reconciler."""

    def __init__(self, now: datetime = START) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


def make_pod(
    name: str,
    labels: Optional[Dict[str, str]] = None,
    ready: bool = True,
    volumes: Optional[Dict[str, str]] = None,
) -> Pod:
    """Build a target pod; ``volumes`` maps volume names to claim names."""
    return Pod(
        metadata=ObjectMeta(
            name=name,
            namespace=NAMESPACE,
            labels=labels if labels is not None else {APP_INSTANCE_LABEL: CLUSTER},
        ),
        spec=PodSpec(
            nodeName="node-1",
            containers=[Container(name="mysql", image="mysql:8.0")],
            volumes=[
                Volume(
                    name=vol,
                    persistentVolumeClaim=PersistentVolumeClaimVolumeSource(claimName=claim),
                )
                for vol, claim in (volumes or {}).items()
            ],
        ),
        status=PodStatus(
            phase="Running",
            conditions=[PodCondition(type="Ready", status="True" if ready else "False")],
        ),
    )


def make_target(name: Optional[str] = None, strategy: str = "Any", **selector) -> BackupTarget:
    labels = selector.pop("matchLabels", {APP_INSTANCE_LABEL: CLUSTER})
    return BackupTarget(
        name=name,
        podSelector=PodSelector(matchLabels=labels, strategy=strategy, **selector),
    )


def make_method(name: str = METHOD, action_set: Optional[str] = ACTION_SET, **kwargs):
    return BackupMethod(name=name, actionSetName=action_set, **kwargs)


def make_policy(
    name: str = POLICY,
    methods: Optional[List[BackupMethod]] = None,
    target: Optional[BackupTarget] = None,
    **spec,
) -> BackupPolicy:
    spec.setdefault("backupRepoName", REPO)
    if target is None and "targets" not in spec:
        target = make_target()
    return BackupPolicy(
        metadata=ObjectMeta(name=name, namespace=NAMESPACE),
        spec=BackupPolicySpecModel(
            backupMethods=methods if methods is not None else [make_method()],
            target=target,
            **spec,
        ),
    )


def make_action_set(
    name: str = ACTION_SET,
    backup_type: str = "Full",
    pre_backup: Optional[List[ActionSpec]] = None,
    post_backup: Optional[List[ActionSpec]] = None,
    **spec,
) -> ActionSet:
    return ActionSet(
        metadata=ObjectMeta(name=name),
        spec=ActionSetSpecModel(
            backupType=backup_type,
            backup=BackupActionSpec(
                backupData=JobActionSpec(image="xtrabackup:8.0", command=["sh", "-c", "backup"]),
                preBackup=pre_backup,
                postBackup=post_backup,
            ),
            **spec,
        ),
    )


def make_repo(
    name: str = REPO,
    access_method: str = "Mount",
    pvc: Optional[str] = REPO_PVC,
    secret: Optional[str] = None,
    phase: str = "Ready",
    default: bool = False,
    path_prefix: Optional[str] = None,
) -> BackupRepo:
    annotations = {DEFAULT_REPO_ANNOTATION: "true"} if default else None
    return BackupRepo(
        metadata=ObjectMeta(name=name, annotations=annotations),
        spec=BackupRepoSpecModel(accessMethod=access_method, pathPrefix=path_prefix),
        status=BackupRepoStatusModel(
            phase=phase, backupPVCName=pvc, toolConfigSecretName=secret
        ),
    )


def make_backup(
    name: str = "backup-1",
    method: str = METHOD,
    policy: str = POLICY,
    labels: Optional[Dict[str, str]] = None,
    status: Optional[BackupStatusModel] = None,
    finalizers: Optional[List[str]] = None,
    **spec,
) -> Backup:
    return Backup(
        metadata=ObjectMeta(
            name=name,
            namespace=NAMESPACE,
            uid=f"uid-{name}",
            labels=labels,
            finalizers=finalizers,
        ),
        spec=BackupSpecModel(backupPolicyName=policy, backupMethod=method, **spec),
        status=status,
    )


def repo_pvc(name: str = REPO_PVC) -> PersistentVolumeClaim:
    return PersistentVolumeClaim(metadata=ObjectMeta(name=name, namespace=NAMESPACE))


def secret(name: str, data: Optional[Dict[str, str]] = None) -> Secret:
    return Secret(metadata=ObjectMeta(name=name, namespace=NAMESPACE), data=data)


def finish_job(
    client: FakeClient,
    name: str,
    namespace: str = NAMESPACE,
    succeeded: bool = True,
    message: Optional[str] = None,
) -> None:
    """Mark a created job as finished, with a pod holding its termination message."""
    job = client.objects[("Job", namespace, name)]
    job.status = JobStatus(
        conditions=[
            JobCondition(
                type="Complete" if succeeded else "Failed",
                status="True",
                message=None if succeeded else "BackoffLimitExceeded",
            )
        ]
    )
    terminated = ContainerStateTerminated(exitCode=0 if succeeded else 1, message=message)
    client.add(
        Pod(
            metadata=ObjectMeta(
                name=f"{name}-pod",
                namespace=namespace,
                labels={JOB_NAME_LABEL: name},
                creationTimestamp=START,
            ),
            status=PodStatus(
                phase="Succeeded" if succeeded else "Failed",
                containerStatuses=[
                    ContainerStatus(
                        name="backup",
                        image="xtrabackup:8.0",
                        imageID="",
                        ready=False,
                        restartCount=0,
                        state=ContainerState(terminated=terminated),
                    )
                ],
            ),
        )
    )


