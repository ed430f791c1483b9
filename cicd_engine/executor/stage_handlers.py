"""
Stage Handlers
==============
Collaborators the Pipeline State Machine delegates each stage kind to.

    checkout  → WorkspaceManager.checkout (per-run clone at the exact sha)
    command   → BuildAgent.execute (build, test, any custom stage)
    quality   → BuildAgent.execute; non-zero exit = QUALITY_GATE_FAILED
    package   → optional command, then upload ``artifact_path`` to the
                artifact store and produce the run's ArtifactReference
    deploy    → DeploymentSelector for every target accepting the ref
    notify    → wait until the Status Reporter has delivered the run's
                transitions (the terminal one included)

Handlers return StageResult. The only exceptions that escape are
cancellation-related; the state machine converts anything else into
COMMAND_ERROR.
"""
import asyncio
import logging
import os
from typing import Callable, Dict, List, Optional

from cicd_engine.core.config import EngineConfig
from cicd_engine.deploy.selector import DeploymentSelector
from cicd_engine.executor.build_executor import BuildAgent, CommandResult
from cicd_engine.executor.workspace import CheckoutError, WorkspaceManager, get_repo_name
from cicd_engine.models.deployment import ArtifactReference, DeploymentTarget
from cicd_engine.models.pipeline_run import PipelineRun
from cicd_engine.models.stage_definition import StageDefinition
from cicd_engine.pipeline.cancellation import CancellationToken
from cicd_engine.pipeline.state_machine import StageHandler, StageResult
from cicd_engine.agents.status_reporter import StatusReporter
from cicd_engine.services.artifact_store import ArtifactStore, ArtifactStoreError, sha256_hex
from cicd_engine.utils.error_reasons import (
    COMMAND_ERROR,
    DEPLOY_FAILURE,
    QUALITY_GATE_FAILED,
    TIMEOUT,
)

logger = logging.getLogger(__name__)

ArtifactListener = Callable[[ArtifactReference], None]


def run_environment(run: PipelineRun) -> Dict[str, str]:
    """Variables exported to every stage command."""
    request = run.build_request
    env = {
        "CI_RUN_ID": str(run.run_id),
        "CI_COMMIT_SHA": request.commit_sha,
        "CI_REF": request.source_ref,
        "CI_BRANCH": request.branch,
        "CI_REPOSITORY": request.repository_identifier,
        "CI_TRIGGER": request.trigger_event_type,
    }
    if request.pull_request_number is not None:
        env["CI_PULL_REQUEST"] = str(request.pull_request_number)
    return env


class StageHandlers:
    def __init__(
        self,
        config: EngineConfig,
        workspace: WorkspaceManager,
        agent: BuildAgent,
        artifact_store: ArtifactStore,
        selector: DeploymentSelector,
        reporter: StatusReporter,
        on_artifact: Optional[ArtifactListener] = None,
    ) -> None:
        self.config = config
        self.workspace = workspace
        self.agent = agent
        self.artifact_store = artifact_store
        self.selector = selector
        self.reporter = reporter
        self.on_artifact = on_artifact
        self._workspaces: Dict[int, str] = {}

    def as_mapping(self) -> Dict[str, StageHandler]:
        return {
            "checkout": self.checkout,
            "command": self.command,
            "quality": self.quality,
            "package": self.package,
            "deploy": self.deploy,
            "notify": self.notify,
        }

    def workspace_for(self, run: PipelineRun) -> str:
        return self._workspaces.get(run.run_id) or self.workspace.run_path(run.run_id)

    def release(self, run_id: int) -> None:
        """Drop a finished run's workspace."""
        self._workspaces.pop(run_id, None)
        self.workspace.cleanup(run_id)

    # ------------------------------------------------------------------
    # checkout
    # ------------------------------------------------------------------
    async def checkout(self, run: PipelineRun, stage: StageDefinition, token: CancellationToken) -> StageResult:
        request = run.build_request
        try:
            path = await self.workspace.checkout(
                request.repository_identifier,
                request.commit_sha,
                run.run_id,
                repository_url=request.repository_url,
                token=token,
            )
        except CheckoutError as e:
            return StageResult.failure(COMMAND_ERROR, str(e))
        self._workspaces[run.run_id] = path
        return StageResult.success(f"{request.short_sha} checked out")

    # ------------------------------------------------------------------
    # command / quality
    # ------------------------------------------------------------------
    async def _execute(self, run: PipelineRun, stage: StageDefinition, token: CancellationToken) -> CommandResult:
        logger.info("[PIPELINE] Run %d %s: %s", run.run_id, stage.name, stage.command)
        return await self.agent.execute(
            stage.command,
            self.workspace_for(run),
            stage.timeout_seconds,
            token=token,
            env=run_environment(run),
        )

    @staticmethod
    def _command_failure(result: CommandResult, failing_reason: str) -> StageResult:
        if result.timed_out:
            return StageResult.failure(TIMEOUT, result.error or "")
        if result.error:
            return StageResult.failure(COMMAND_ERROR, result.error)
        return StageResult.failure(failing_reason, f"exit {result.exit_status}\n{result.log_excerpt}")

    async def command(self, run: PipelineRun, stage: StageDefinition, token: CancellationToken) -> StageResult:
        if not stage.command:
            return StageResult.success("no command")
        result = await self._execute(run, stage, token)
        if result.succeeded:
            return StageResult.success(result.log_excerpt)
        return self._command_failure(result, COMMAND_ERROR)

    async def quality(self, run: PipelineRun, stage: StageDefinition, token: CancellationToken) -> StageResult:
        if not stage.command:
            return StageResult.success("no quality gate")
        result = await self._execute(run, stage, token)
        if result.succeeded:
            return StageResult.success(result.log_excerpt)
        return self._command_failure(result, QUALITY_GATE_FAILED)

    # ------------------------------------------------------------------
    # package
    # ------------------------------------------------------------------
    async def package(self, run: PipelineRun, stage: StageDefinition, token: CancellationToken) -> StageResult:
        if stage.command:
            result = await self._execute(run, stage, token)
            if not result.succeeded:
                return self._command_failure(result, COMMAND_ERROR)
        if not stage.artifact_path:
            return StageResult.success("nothing to package")

        path = os.path.join(self.workspace_for(run), stage.artifact_path)
        if not os.path.isfile(path):
            return StageResult.failure(COMMAND_ERROR, f"artifact not found: {stage.artifact_path}")

        token.raise_if_cancelled()
        key = f"{get_repo_name(run.build_request.repository_identifier)}/{run.run_id}/{os.path.basename(path)}"
        try:
            data = await asyncio.to_thread(_read_bytes, path)
            location = await asyncio.to_thread(self.artifact_store.put, data, key)
        except (OSError, ArtifactStoreError) as e:
            return StageResult.failure(COMMAND_ERROR, f"artifact upload failed: {e}")

        artifact = ArtifactReference(
            pipeline_run_id=run.run_id,
            storage_location=location,
            checksum=sha256_hex(data),
        )
        run.artifact = artifact
        if self.on_artifact is not None:
            self.on_artifact(artifact)
        logger.info("[PIPELINE] Run %d packaged %s (%d bytes)", run.run_id, location, len(data))
        return StageResult.success(location)

    # ------------------------------------------------------------------
    # deploy
    # ------------------------------------------------------------------
    def targets_for(self, run: PipelineRun) -> List[DeploymentTarget]:
        if run.rollback_environment:
            target = self.config.target(run.rollback_environment)
            return [target] if target is not None else []
        if run.build_request.trigger_event_type == "pull_request":
            return []
        branch = run.build_request.branch
        return [t for t in self.config.deployment_targets if t.accepts_ref(branch)]

    async def deploy(self, run: PipelineRun, stage: StageDefinition, token: CancellationToken) -> StageResult:
        targets = self.targets_for(run)
        if not targets:
            return StageResult.success("no target")
        if run.artifact is None:
            return StageResult.failure(DEPLOY_FAILURE, "no artifact to deploy")

        failures = []
        for target in targets:
            if run.rollback_environment:
                result = await self.selector.deploy_specific(run.artifact, target, token)
            else:
                result = await self.selector.deploy(run.artifact, target, token)
            run.deploy_results.append(result)
            if not result.ok:
                note = f"{target.environment_name}: {result.detail}"
                if result.rollback_status:
                    note += f" (rollback {result.rollback_status})"
                failures.append(note)

        if failures:
            return StageResult.failure(DEPLOY_FAILURE, "; ".join(failures))
        return StageResult.success(", ".join(t.environment_name for t in targets))

    # ------------------------------------------------------------------
    # notify
    # ------------------------------------------------------------------
    async def notify(self, run: PipelineRun, stage: StageDefinition, token: CancellationToken) -> StageResult:
        await self.reporter.flush(run.run_id)
        undelivered = [u for u in self.reporter.undelivered if u.run_id == run.run_id]
        if undelivered:
            return StageResult.success(f"{len(undelivered)} transition(s) undelivered")
        return StageResult.success("delivered")


def _read_bytes(path: str) -> bytes:
    with open(path, "rb") as f:
        return f.read()
