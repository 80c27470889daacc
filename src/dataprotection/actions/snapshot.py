# Copyright 2025 Canonical Ltd.
# See LICENSE file for licensing details.

"""Action taking volume snapshots of the target pod volumes."""

import logging
from typing import Dict, List, Optional, Tuple

from lightkube.models.meta_v1 import ObjectMeta

from constants import VOLUME_SNAPSHOT_RESOURCE
from k8s_utils import k8s_get
from utils import build_object_name

from ..crds import ActionStatus, VolumeSnapshotStatus
from ..types import ActionPhase, ActionType
from .classes import Action, ActionContext, WorkloadMeta

logger = logging.getLogger(__name__)


class CreateVolumeSnapshotAction(Action):
    """Creates one VolumeSnapshot per persistent volume claim of the target pod.

    Args:
        volumes: (volume name, persistent volume claim name) pairs to snapshot.
    """

    action_type = ActionType.NONE

    def __init__(
        self,
        name: str,
        target_pod_name: str,
        backup_name: str,
        meta: WorkloadMeta,
        volumes: List[Tuple[str, str]],
        target_name: Optional[str] = None,
    ) -> None:
        super().__init__(name, target_pod_name)
        self.backup_name = backup_name
        self.meta = meta
        self.volumes = volumes
        self.target_name = target_name

    def snapshot_name(self, volume_name: str) -> str:
        """Return the name of the snapshot of a volume of the target pod."""
        return build_object_name(self.backup_name, self.target_pod_name, volume_name)

    def _create_snapshot(self, ctx: ActionContext, name: str, pvc_name: str) -> None:
        spec: Dict[str, object] = {"source": {"persistentVolumeClaimName": pvc_name}}
        if ctx.config.volume_snapshot_class:
            spec["volumeSnapshotClassName"] = ctx.config.volume_snapshot_class
        info = VOLUME_SNAPSHOT_RESOURCE._api_info.resource
        snapshot = VOLUME_SNAPSHOT_RESOURCE(
            apiVersion=f"{info.group}/{info.version}",
            kind=info.kind,
            metadata=ObjectMeta(
                name=name,
                namespace=self.meta.namespace,
                labels=dict(self.meta.labels),
                ownerReferences=[self.meta.owner] if self.meta.owner else None,
            ),
            spec=spec,
        )
        logger.info(
            "Creating volume snapshot '%s/%s' of pvc '%s'", self.meta.namespace, name, pvc_name
        )
        ctx.client.create(snapshot)

    def execute(self, ctx: ActionContext) -> ActionStatus:
        """Create the snapshots once and report when they are all ready."""
        if not self.volumes:
            return self.new_status(
                ActionPhase.FAILED,
                ctx,
                failure_reason=(
                    f"no persistent volume claim to snapshot in pod {self.target_pod_name}"
                ),
            )

        ready = True
        snapshots: List[VolumeSnapshotStatus] = []
        for volume_name, pvc_name in self.volumes:
            name = self.snapshot_name(volume_name)
            snapshot = k8s_get(ctx.client, VOLUME_SNAPSHOT_RESOURCE, name, self.meta.namespace)
            if snapshot is None:
                self._create_snapshot(ctx, name, pvc_name)
                ready = False
                continue
            status = snapshot.get("status") or {}
            error = status.get("error")
            if error:
                message = error.get("message") or "volume snapshot failed"
                return self.new_status(
                    ActionPhase.FAILED,
                    ctx,
                    failure_reason=f"volume snapshot {name}: {message}",
                )
            if not status.get("readyToUse"):
                ready = False
                continue
            snapshots.append(
                VolumeSnapshotStatus(
                    name=name,
                    contentName=status.get("boundVolumeSnapshotContentName"),
                    volumeName=volume_name,
                    size=status.get("restoreSize"),
                    targetName=self.target_name,
                )
            )

        if not ready:
            return self.new_status(ActionPhase.RUNNING)
        status = self.new_status(ActionPhase.COMPLETED, ctx)
        status.volumeSnapshots = snapshots
        return status
