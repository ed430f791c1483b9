"""
Deployment Strategy Selector
============================
Dispatch table from ``strategy_kind`` to a DeploymentStrategy, plus the
per-environment release history needed for rollback.

BOUNDARY RULES:
  - The Selector never branches on strategy names; new kinds are added by
    registering a strategy in the table.
  - A failed deploy (backend FAILED or health check exhausted) triggers
    exactly one automatic rollback to the artifact that was active
    immediately before.
  - Strategies without native rollback get "redeploy previous artifact"
    semantics built on ``deploy``.
  - Nothing here raises for backend failures; callers read DeployResult.
  - One operation per environment at a time: deploy, its health check and
    any rollback run under that environment's lock, so the release history
    follows the order deploys actually went live.
"""
import asyncio
import logging
from typing import Awaitable, Callable, Dict, List, Optional

from cicd_engine.deploy.base import DeploymentStrategy
from cicd_engine.deploy.config_apply import ConfigApplyStrategy
from cicd_engine.deploy.container import ContainerStrategy
from cicd_engine.deploy.direct_copy import DirectCopyStrategy
from cicd_engine.deploy.health import wait_until_healthy
from cicd_engine.deploy.managed_rollout import ManagedRolloutStrategy
from cicd_engine.deploy.storage_pull import StoragePullStrategy
from cicd_engine.models.deployment import ArtifactReference, DeploymentTarget, DeployResult
from cicd_engine.pipeline.cancellation import CancellationToken
from cicd_engine.services.artifact_store import ArtifactStore

logger = logging.getLogger(__name__)


def default_strategies(artifact_store: Optional[ArtifactStore] = None) -> Dict[str, DeploymentStrategy]:
    strategies = [
        DirectCopyStrategy(artifact_store),
        StoragePullStrategy(artifact_store),
        ManagedRolloutStrategy(artifact_store),
        ContainerStrategy(artifact_store),
        ConfigApplyStrategy(artifact_store),
    ]
    return {s.kind: s for s in strategies}


class DeploymentSelector:
    def __init__(
        self,
        strategies: Optional[Dict[str, DeploymentStrategy]] = None,
        artifact_store: Optional[ArtifactStore] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        url_probe: Optional[Callable[[str], Awaitable[bool]]] = None,
    ) -> None:
        self.strategies = strategies if strategies is not None else default_strategies(artifact_store)
        self._sleep = sleep
        self._url_probe = url_probe
        # environment_name -> artifacts in the order they went live
        self._history: Dict[str, List[ArtifactReference]] = {}
        self._locks: Dict[str, asyncio.Lock] = {}

    def _lock_for(self, environment_name: str) -> asyncio.Lock:
        lock = self._locks.get(environment_name)
        if lock is None:
            lock = self._locks[environment_name] = asyncio.Lock()
        return lock

    def strategy_for(self, target: DeploymentTarget) -> DeploymentStrategy:
        try:
            return self.strategies[target.strategy_kind]
        except KeyError:
            raise ValueError(f"no strategy registered for kind {target.strategy_kind!r}") from None

    # ------------------------------------------------------------------
    # Release history
    # ------------------------------------------------------------------
    def current(self, environment_name: str) -> Optional[ArtifactReference]:
        history = self._history.get(environment_name) or []
        return history[-1] if history else None

    def previous(self, environment_name: str) -> Optional[ArtifactReference]:
        history = self._history.get(environment_name) or []
        return history[-2] if len(history) >= 2 else None

    def history(self, environment_name: str) -> List[ArtifactReference]:
        return list(self._history.get(environment_name) or [])

    def record_live(self, environment_name: str, artifact: ArtifactReference) -> None:
        history = self._history.setdefault(environment_name, [])
        if history and history[-1] == artifact:
            return
        history.append(artifact)

    def _rewind_to(self, environment_name: str, artifact: ArtifactReference) -> None:
        """After a rollback the restored artifact is current again."""
        history = self._history.setdefault(environment_name, [])
        if artifact not in history:
            history.append(artifact)
            return
        while history[-1] != artifact:
            history.pop()

    # ------------------------------------------------------------------
    # Capabilities
    # ------------------------------------------------------------------
    async def health_check(self, target: DeploymentTarget, token: Optional[CancellationToken] = None) -> bool:
        strategy = self.strategy_for(target)
        kwargs = {"sleep": self._sleep}
        if self._url_probe is not None:
            kwargs["url_probe"] = self._url_probe
        return await wait_until_healthy(target, strategy.health_check, token=token, **kwargs)

    async def deploy(
        self,
        artifact: ArtifactReference,
        target: DeploymentTarget,
        token: Optional[CancellationToken] = None,
    ) -> DeployResult:
        async with self._lock_for(target.environment_name):
            return await self._deploy(artifact, target, token)

    async def _deploy(
        self,
        artifact: ArtifactReference,
        target: DeploymentTarget,
        token: Optional[CancellationToken],
    ) -> DeployResult:
        previous = self.current(target.environment_name)
        strategy = self.strategy_for(target)
        logger.info("[DEPLOY] %s via %s: run %d (previous: %s)", target.environment_name, strategy.kind,
                    artifact.pipeline_run_id, previous.pipeline_run_id if previous else "none")

        result = await strategy.deploy(artifact, target, token)
        result.previous_artifact_ref = previous
        if result.status == "DEPLOYED":
            if await self.health_check(target, token):
                self.record_live(target.environment_name, artifact)
                return result
            result.status = "FAILED"
            result.detail = f"health check failed after {target.health_check_attempts} attempts"

        logger.error("[DEPLOY] %s failed for run %d: %s", target.environment_name,
                     artifact.pipeline_run_id, result.detail)
        if previous is None:
            logger.warning("[DEPLOY] %s has no previous artifact; rollback skipped", target.environment_name)
            return result

        rollback = await self._restore(target, previous, token)
        result.rollback_status = rollback.status
        return result

    async def rollback(
        self,
        target: DeploymentTarget,
        token: Optional[CancellationToken] = None,
    ) -> DeployResult:
        """Restore the artifact that was live before the current one."""
        async with self._lock_for(target.environment_name):
            current = self.current(target.environment_name)
            previous = self.previous(target.environment_name)
            if previous is None:
                return DeployResult(status="ROLLBACK_FAILED", environment_name=target.environment_name,
                                    artifact_ref=current, detail="no previous artifact")
            result = await self._restore(target, previous, token)
        result.previous_artifact_ref = current
        return result

    async def _restore(
        self,
        target: DeploymentTarget,
        artifact: ArtifactReference,
        token: Optional[CancellationToken],
    ) -> DeployResult:
        strategy = self.strategy_for(target)
        logger.info("[DEPLOY] rolling %s back to run %d (%s)", target.environment_name,
                    artifact.pipeline_run_id, "native" if strategy.supports_rollback else "redeploy")
        if strategy.supports_rollback:
            result = await strategy.rollback(target, artifact, token)
        else:
            result = await strategy.deploy(artifact, target, token)
            result.status = "ROLLED_BACK" if result.status == "DEPLOYED" else "ROLLBACK_FAILED"

        if result.status == "ROLLED_BACK" and not await self.health_check(target, token):
            result.status = "ROLLBACK_FAILED"
            result.detail = "health check failed after rollback"

        if result.status == "ROLLED_BACK":
            self._rewind_to(target.environment_name, artifact)
            logger.info("[DEPLOY] %s restored to run %d", target.environment_name, artifact.pipeline_run_id)
        else:
            logger.error("[DEPLOY] rollback of %s failed: %s", target.environment_name, result.detail)
        return result

    async def deploy_specific(
        self,
        artifact: ArtifactReference,
        target: DeploymentTarget,
        token: Optional[CancellationToken] = None,
    ) -> DeployResult:
        """Explicit rollback run: put a chosen prior artifact back live."""
        async with self._lock_for(target.environment_name):
            current = self.current(target.environment_name)
            result = await self._restore(target, artifact, token)
        result.previous_artifact_ref = current
        return result
