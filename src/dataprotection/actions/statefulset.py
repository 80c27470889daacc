# Copyright 2025 Canonical Ltd.
# See LICENSE file for licensing details.

"""Action running a continuous backup as a StatefulSet."""

import logging

from lightkube.models.apps_v1 import StatefulSetSpec
from lightkube.models.core_v1 import ObjectReference, PodSpec, PodTemplateSpec
from lightkube.models.meta_v1 import LabelSelector, ObjectMeta
from lightkube.resources.apps_v1 import StatefulSet
from lightkube.types import PatchType

from constants import BACKUP_INFO_ANNOTATION
from k8s_utils import k8s_get

from ..crds import ActionStatus
from ..types import ActionPhase, ActionType
from .classes import Action, ActionContext, WorkloadMeta, parse_backup_info

logger = logging.getLogger(__name__)


class StatefulSetAction(Action):
    """Keeps a single replica StatefulSet running for the life of a continuous backup.

    The action never completes on its own: the backup completes when its
    schedule is disabled or its cluster goes away.
    """

    action_type = ActionType.STATEFULSET

    def __init__(
        self,
        name: str,
        target_pod_name: str,
        sts_name: str,
        meta: WorkloadMeta,
        pod_spec: PodSpec,
    ) -> None:
        super().__init__(name, target_pod_name)
        self.sts_name = sts_name
        self.meta = meta
        self.pod_spec = pod_spec

    def build_statefulset(self) -> StatefulSet:
        """Return the statefulset running the backup tool."""
        return StatefulSet(
            metadata=ObjectMeta(
                name=self.sts_name,
                namespace=self.meta.namespace,
                labels=dict(self.meta.labels),
                ownerReferences=[self.meta.owner] if self.meta.owner else None,
            ),
            spec=StatefulSetSpec(
                replicas=1,
                serviceName=self.sts_name,
                selector=LabelSelector(matchLabels=dict(self.meta.labels)),
                template=PodTemplateSpec(
                    metadata=ObjectMeta(labels=dict(self.meta.labels)),
                    spec=self.pod_spec,
                ),
            ),
        )

    def object_ref(self) -> ObjectReference:
        """Return the reference to the statefulset."""
        return ObjectReference(
            apiVersion="apps/v1",
            kind="StatefulSet",
            name=self.sts_name,
            namespace=self.meta.namespace,
        )

    def execute(self, ctx: ActionContext) -> ActionStatus:
        """Create or scale up the statefulset and report its replicas."""
        sts = k8s_get(ctx.client, StatefulSet, self.sts_name, self.meta.namespace)
        if sts is None:
            logger.info(
                "Creating statefulset '%s/%s' for %r", self.meta.namespace, self.sts_name, self
            )
            ctx.client.create(self.build_statefulset())
            status = self.new_status(ActionPhase.RUNNING, object_ref=self.object_ref())
            status.availableReplicas = 0
            return status

        if sts.spec.replicas == 0:
            # scaled down after a failure, bring it back
            logger.info("Scaling statefulset '%s/%s' up", self.meta.namespace, self.sts_name)
            ctx.client.patch(
                StatefulSet,
                self.sts_name,
                {"spec": {"replicas": 1}},
                namespace=self.meta.namespace,
                patch_type=PatchType.MERGE,
            )

        annotations = sts.metadata.annotations or {}
        status = self.new_status(
            ActionPhase.RUNNING,
            object_ref=self.object_ref(),
            info=parse_backup_info(annotations.get(BACKUP_INFO_ANNOTATION)),
        )
        status.availableReplicas = (sts.status.availableReplicas if sts.status else None) or 0
        return status
