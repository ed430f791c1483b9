"""
Deployment Strategy Base
========================
Abstract contract shared by every deployment backend:

    deploy(artifact, target)      → DeployResult
    rollback(target, previous)    → DeployResult   (native rollback only)
    health_check(target)          → bool           (native probe)

``supports_rollback`` tells the Selector whether ``rollback`` is native.
Strategies without it get generic "redeploy previous artifact" semantics
from the Selector, built on ``deploy``.

Strategies never raise for backend failures; they return a FAILED
DeployResult with the reason in ``detail``.
"""
import asyncio
import os
import tempfile
import logging
from dataclasses import dataclass
from typing import List, Optional

from cicd_engine.models.deployment import ArtifactReference, DeploymentTarget, DeployResult
from cicd_engine.pipeline.cancellation import CancellationToken
from cicd_engine.services.artifact_store import ArtifactStore

logger = logging.getLogger(__name__)


class DeploymentStrategy:
    kind = "abstract"
    supports_rollback = False

    def __init__(self, artifact_store: Optional[ArtifactStore] = None) -> None:
        self.artifact_store = artifact_store

    async def deploy(
        self,
        artifact: ArtifactReference,
        target: DeploymentTarget,
        token: Optional[CancellationToken] = None,
    ) -> DeployResult:
        raise NotImplementedError

    async def rollback(
        self,
        target: DeploymentTarget,
        previous: ArtifactReference,
        token: Optional[CancellationToken] = None,
    ) -> DeployResult:
        raise NotImplementedError(f"{self.kind} has no native rollback")

    async def health_check(self, target: DeploymentTarget) -> bool:
        return True

    # ------------------------------------------------------------------
    # Helpers shared by the file-based strategies
    # ------------------------------------------------------------------
    def _result(self, status: str, target: DeploymentTarget, artifact: Optional[ArtifactReference],
                detail: str = "") -> DeployResult:
        return DeployResult(
            status=status,
            environment_name=target.environment_name,
            artifact_ref=artifact,
            detail=detail,
        )

    async def _materialize(self, artifact: ArtifactReference) -> str:
        """Fetch the artifact into a local temp file and return its path."""
        if self.artifact_store is None:
            raise RuntimeError(f"{self.kind} strategy requires an artifact store")
        data = await asyncio.to_thread(self.artifact_store.get, artifact.storage_location)
        suffix = "-" + artifact.file_name
        fd, path = tempfile.mkstemp(prefix=f"run{artifact.pipeline_run_id}-", suffix=suffix)
        with os.fdopen(fd, "wb") as f:
            f.write(data)
        return path


@dataclass
class ProcessOutcome:
    returncode: int
    output: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0


async def run_process(args: List[str], timeout: float = 600,
                      token: Optional[CancellationToken] = None) -> ProcessOutcome:
    """
    Run an external deploy tool (scp, ssh, ansible-playbook).

    Killed on timeout or cancellation; never raises for a non-zero exit.
    """
    if token is not None:
        token.raise_if_cancelled()
    logger.info("[DEPLOY] exec: %s", " ".join(args[:4]) + (" ..." if len(args) > 4 else ""))
    try:
        proc = await asyncio.create_subprocess_exec(
            *args,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,
        )
    except FileNotFoundError as e:
        return ProcessOutcome(127, f"{args[0]} not found: {e}")

    try:
        out, _ = await asyncio.wait_for(proc.communicate(), timeout=timeout)
    except asyncio.TimeoutError:
        proc.kill()
        await proc.wait()
        return ProcessOutcome(-1, f"{args[0]} exceeded {timeout}s")
    except asyncio.CancelledError:
        if proc.returncode is None:
            proc.kill()
            await asyncio.shield(proc.wait())
        raise
    return ProcessOutcome(proc.returncode or 0, (out or b"").decode("utf-8", errors="replace"))
