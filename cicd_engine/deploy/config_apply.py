"""
Config Apply Strategy (config_mgmt)
===================================
Declarative config-apply through ``ansible-playbook``. The playbook receives
the artifact as extra vars and converges the hosts to it.

connection_parameters:
    playbook         — required
    inventory        — required
    extra_vars       — merged into the generated extra vars
    ansible_bin      — default "ansible-playbook"
    health_playbook  — optional playbook used as the native health probe
    timeout_seconds  — default 1200

No native rollback: the Selector re-applies the previous artifact.
"""
import json
import logging
from typing import List, Optional

from cicd_engine.deploy.base import DeploymentStrategy, run_process
from cicd_engine.models.deployment import ArtifactReference, DeploymentTarget, DeployResult
from cicd_engine.pipeline.cancellation import CancellationToken

logger = logging.getLogger(__name__)


class ConfigApplyStrategy(DeploymentStrategy):
    kind = "config_mgmt"
    supports_rollback = False

    def build_command(self, artifact: ArtifactReference, target: DeploymentTarget,
                      playbook: Optional[str] = None) -> List[str]:
        params = target.connection_parameters
        extra_vars = {
            "artifact_location": artifact.storage_location,
            "artifact_checksum": artifact.checksum,
            "pipeline_run_id": artifact.pipeline_run_id,
            "deploy_environment": target.environment_name,
            **(params.get("extra_vars") or {}),
        }
        return [
            params.get("ansible_bin", "ansible-playbook"),
            "-i", params["inventory"],
            playbook or params["playbook"],
            "--extra-vars", json.dumps(extra_vars, sort_keys=True),
        ]

    async def deploy(
        self,
        artifact: ArtifactReference,
        target: DeploymentTarget,
        token: Optional[CancellationToken] = None,
    ) -> DeployResult:
        params = target.connection_parameters
        if not params.get("playbook") or not params.get("inventory"):
            return self._result("FAILED", target, artifact, "playbook and inventory are required")

        outcome = await run_process(
            self.build_command(artifact, target),
            timeout=float(params.get("timeout_seconds", 1200)),
            token=token,
        )
        if not outcome.ok:
            logger.error("[DEPLOY] config apply failed for %s (exit %d)", target.environment_name, outcome.returncode)
            return self._result("FAILED", target, artifact, f"ansible exit {outcome.returncode}: {outcome.output[-300:]}")

        logger.info("[DEPLOY] config applied to %s (run %d)", target.environment_name, artifact.pipeline_run_id)
        return self._result("DEPLOYED", target, artifact, params["playbook"])

    async def health_check(self, target: DeploymentTarget) -> bool:
        params = target.connection_parameters
        if not params.get("health_playbook") or not params.get("inventory"):
            return True
        outcome = await run_process(
            [params.get("ansible_bin", "ansible-playbook"), "-i", params["inventory"], params["health_playbook"]],
            timeout=float(params.get("timeout_seconds", 300)),
        )
        return outcome.ok
