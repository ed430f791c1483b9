"""
Direct Copy Strategy (ssh)
==========================
Copies the artifact to the target host with ``scp`` and activates it with a
remote ``ssh`` command.

connection_parameters:
    host              — required
    user              — default "deploy"
    port              — default 22
    key_file          — optional identity file
    remote_dir        — default "/opt/app"; releases live in <remote_dir>/releases
    activate_command  — run after the ``current`` symlink switch (e.g. a restart)
    health_command    — optional remote probe, exit 0 = healthy
    timeout_seconds   — per ssh/scp call, default 300

No native rollback: the Selector redeploys the previous artifact.
"""
import os
import logging
import shlex
from typing import List, Optional

from cicd_engine.deploy.base import DeploymentStrategy, run_process
from cicd_engine.models.deployment import ArtifactReference, DeploymentTarget, DeployResult
from cicd_engine.pipeline.cancellation import CancellationToken

logger = logging.getLogger(__name__)


class DirectCopyStrategy(DeploymentStrategy):
    kind = "ssh"
    supports_rollback = False

    def _ssh_options(self, params: dict, scp: bool = False) -> List[str]:
        opts = ["-o", "BatchMode=yes", "-o", "StrictHostKeyChecking=accept-new"]
        port = str(params.get("port", 22))
        opts += ["-P", port] if scp else ["-p", port]
        if params.get("key_file"):
            opts += ["-i", params["key_file"]]
        return opts

    def _destination(self, params: dict) -> str:
        return f"{params.get('user', 'deploy')}@{params['host']}"

    async def deploy(
        self,
        artifact: ArtifactReference,
        target: DeploymentTarget,
        token: Optional[CancellationToken] = None,
    ) -> DeployResult:
        params = target.connection_parameters
        if not params.get("host"):
            return self._result("FAILED", target, artifact, "connection_parameters.host is required")

        timeout = float(params.get("timeout_seconds", 300))
        remote_dir = params.get("remote_dir", "/opt/app").rstrip("/")
        release_name = f"{artifact.pipeline_run_id}-{artifact.file_name}"
        remote_release = f"{remote_dir}/releases/{release_name}"
        local_path = await self._materialize(artifact)

        try:
            mkdir = await run_process(
                ["ssh", *self._ssh_options(params), self._destination(params),
                 f"mkdir -p {shlex.quote(remote_dir)}/releases"],
                timeout=timeout, token=token,
            )
            if not mkdir.ok:
                return self._result("FAILED", target, artifact, f"ssh mkdir failed: {mkdir.output[-300:]}")

            copy = await run_process(
                ["scp", *self._ssh_options(params, scp=True), local_path,
                 f"{self._destination(params)}:{remote_release}"],
                timeout=timeout, token=token,
            )
            if not copy.ok:
                return self._result("FAILED", target, artifact, f"scp failed: {copy.output[-300:]}")

            activate = f"ln -sfn {shlex.quote(remote_release)} {shlex.quote(remote_dir)}/current"
            if params.get("activate_command"):
                activate += f" && {params['activate_command']}"
            switch = await run_process(
                ["ssh", *self._ssh_options(params), self._destination(params), activate],
                timeout=timeout, token=token,
            )
            if not switch.ok:
                return self._result("FAILED", target, artifact, f"activation failed: {switch.output[-300:]}")
        finally:
            os.unlink(local_path)

        logger.info("[DEPLOY] ssh %s ← run %d (%s)", params["host"], artifact.pipeline_run_id, remote_release)
        return self._result("DEPLOYED", target, artifact, remote_release)

    async def health_check(self, target: DeploymentTarget) -> bool:
        params = target.connection_parameters
        command = params.get("health_command")
        if not command or not params.get("host"):
            return True
        outcome = await run_process(
            ["ssh", *self._ssh_options(params), self._destination(params), command],
            timeout=float(params.get("timeout_seconds", 60)),
        )
        return outcome.ok
