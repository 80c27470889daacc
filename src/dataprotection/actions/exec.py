# Copyright 2025 Canonical Ltd.
# See LICENSE file for licensing details.

"""Action executing a command inside a container of the target pod."""

from typing import List, Optional

from lightkube.models.core_v1 import Container, PodSpec

from .classes import ActionContext, WorkloadMeta
from .job import JobAction


class ExecAction(JobAction):
    """Runs ``kubectl exec`` against the target pod from a short-lived Job."""

    def __init__(
        self,
        name: str,
        target_pod_name: str,
        job_name: str,
        meta: WorkloadMeta,
        container: str,
        command: List[str],
        service_account: Optional[str] = None,
        timeout: Optional[str] = None,
    ) -> None:
        super().__init__(name, target_pod_name, job_name, meta)
        self.container = container
        self.command = command
        self.service_account = service_account
        self.timeout = timeout

    def kubectl_command(self) -> List[str]:
        """Return the kubectl command running the action in the target container."""
        cmd = ["kubectl", "exec", "-n", self.meta.namespace, self.target_pod_name]
        if self.container:
            cmd += ["-c", self.container]
        if self.timeout:
            cmd += [f"--request-timeout={self.timeout}"]
        return cmd + ["--"] + list(self.command)

    def build_pod_spec(self, ctx: ActionContext) -> PodSpec:
        """Return the pod running kubectl exec against the target container."""
        return PodSpec(
            serviceAccountName=self.service_account,
            containers=[
                Container(
                    name="exec",
                    image=ctx.config.exec_image,
                    imagePullPolicy="IfNotPresent",
                    command=self.kubectl_command(),
                )
            ],
        )
