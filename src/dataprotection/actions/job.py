# Copyright 2025 Canonical Ltd.
# See LICENSE file for licensing details.

"""Action running its step as a Kubernetes Job."""

import logging
from typing import List, Optional, Tuple

from lightkube.core.exceptions import ApiError
from lightkube.models.batch_v1 import JobSpec
from lightkube.models.core_v1 import ObjectReference, PodSpec, PodTemplateSpec
from lightkube.models.meta_v1 import ObjectMeta
from lightkube.resources.batch_v1 import Job
from lightkube.resources.core_v1 import Pod

from constants import JOB_NAME_LABEL, LOG_COLLECTOR_OUTPUT
from k8s_utils import k8s_get

from ..crds import ActionStatus
from ..types import ActionPhase, ActionType
from .classes import Action, ActionContext, BackupInfo, WorkloadMeta, parse_backup_info

logger = logging.getLogger(__name__)


def job_phase(job: Job) -> Tuple[ActionPhase, Optional[str]]:
    """Return the action phase of a Job and, for failed jobs, the failure message."""
    conditions = job.status.conditions if job.status and job.status.conditions else []
    for cond in conditions:
        if cond.status != "True":
            continue
        if cond.type == "Complete":
            return ActionPhase.COMPLETED, None
        if cond.type == "Failed":
            return ActionPhase.FAILED, cond.message or cond.reason or "job failed"
    return ActionPhase.RUNNING, None


def _job_pods(ctx: ActionContext, job: Job) -> List[Pod]:
    pods = list(
        ctx.client.list(
            Pod, namespace=job.metadata.namespace, labels={JOB_NAME_LABEL: job.metadata.name}
        )
    )
    # oldest first
    return sorted(
        pods,
        key=lambda p: (
            p.metadata.creationTimestamp.isoformat() if p.metadata.creationTimestamp else "",
            p.metadata.name,
        ),
    )


class JobAction(Action):
    """Runs a pod spec to completion as a Job named after the action."""

    action_type = ActionType.JOB

    def __init__(
        self,
        name: str,
        target_pod_name: str,
        job_name: str,
        meta: WorkloadMeta,
        pod_spec: Optional[PodSpec] = None,
        backoff_limit: Optional[int] = None,
    ) -> None:
        super().__init__(name, target_pod_name)
        self.job_name = job_name
        self.meta = meta
        self.pod_spec = pod_spec
        self.backoff_limit = backoff_limit

    def build_pod_spec(self, ctx: ActionContext) -> PodSpec:
        """Return the spec of the pod the job runs."""
        return self.pod_spec

    def build_job(self, ctx: ActionContext) -> Job:
        """Build the Job running this action."""
        pod_spec = self.build_pod_spec(ctx)
        pod_spec.restartPolicy = "Never"
        return Job(
            metadata=ObjectMeta(
                name=self.job_name,
                namespace=self.meta.namespace,
                labels=dict(self.meta.labels),
                ownerReferences=[self.meta.owner] if self.meta.owner else None,
            ),
            spec=JobSpec(
                template=PodTemplateSpec(
                    metadata=ObjectMeta(labels=dict(self.meta.labels)),
                    spec=pod_spec,
                ),
                backoffLimit=self.backoff_limit if self.backoff_limit is not None else 0,
                ttlSecondsAfterFinished=ctx.config.job_ttl_seconds or None,
            ),
        )

    def object_ref(self) -> ObjectReference:
        """Return the reference to the job."""
        return ObjectReference(
            apiVersion="batch/v1", kind="Job", name=self.job_name, namespace=self.meta.namespace
        )

    def execute(self, ctx: ActionContext) -> ActionStatus:
        """Create the job once and report its outcome."""
        job = k8s_get(ctx.client, Job, self.job_name, self.meta.namespace)
        if job is None:
            logger.info("Creating job '%s/%s' for %r", self.meta.namespace, self.job_name, self)
            ctx.client.create(self.build_job(ctx))
            return self.new_status(ActionPhase.RUNNING, object_ref=self.object_ref())

        phase, message = job_phase(job)
        if phase == ActionPhase.COMPLETED:
            return self.new_status(
                phase, ctx, object_ref=self.object_ref(), info=self._backup_info(ctx, job)
            )
        if phase == ActionPhase.FAILED:
            reason = self._collect_failure_logs(ctx, job) or message
            return self.new_status(phase, ctx, object_ref=self.object_ref(), failure_reason=reason)
        return self.new_status(phase, object_ref=self.object_ref())

    def _backup_info(self, ctx: ActionContext, job: Job) -> Optional[BackupInfo]:
        """Read the backup information from the termination message of the job pod."""
        for pod in reversed(_job_pods(ctx, job)):
            statuses = pod.status.containerStatuses if pod.status else None
            for cs in statuses or []:
                terminated = cs.state.terminated if cs.state else None
                if terminated and terminated.exitCode == 0 and terminated.message:
                    return parse_backup_info(terminated.message)
        return None

    def _collect_failure_logs(self, ctx: ActionContext, job: Job) -> Optional[str]:
        """Return the tail of the logs of the last pod of a failed job."""
        try:
            pods = _job_pods(ctx, job)
            if not pods:
                return None
            pod = pods[-1]
            lines = ctx.client.log(
                pod.metadata.name,
                namespace=pod.metadata.namespace,
                tail_lines=ctx.config.log_tail_lines,
            )
            output = "".join(lines).strip()
        except ApiError as ae:
            logger.warning("Failed to collect logs of job '%s': %s", self.job_name, ae)
            return None
        if not output:
            return None
        return f"{LOG_COLLECTOR_OUTPUT}: {output}"
