"""
Container Strategy (container)
==============================
Pulls an image tag from the registry and replaces the running container.

connection_parameters:
    image           — repository, e.g. "registry.example.com/app" (required
                      unless the artifact location is ``docker://<ref>``)
    tag_prefix      — default "run-"; image tag = <tag_prefix><pipeline_run_id>
    container_name  — default "<environment_name>-app"
    ports           — {"8000/tcp": 8000}
    environment     — {"KEY": "value"}
    docker_host     — optional daemon URL; default docker.from_env()

Native rollback: restart the container from the previous image reference.
"""
import asyncio
import logging
from typing import Dict, Optional

import docker
from docker.errors import APIError, ImageNotFound, NotFound

from cicd_engine.deploy.base import DeploymentStrategy
from cicd_engine.models.deployment import ArtifactReference, DeploymentTarget, DeployResult
from cicd_engine.pipeline.cancellation import CancellationToken

logger = logging.getLogger(__name__)

_DOCKER_SCHEME = "docker://"


def image_ref_for(artifact: ArtifactReference, target: DeploymentTarget) -> str:
    if artifact.storage_location.startswith(_DOCKER_SCHEME):
        return artifact.storage_location[len(_DOCKER_SCHEME):]
    params = target.connection_parameters
    return f"{params['image']}:{params.get('tag_prefix', 'run-')}{artifact.pipeline_run_id}"


class ContainerStrategy(DeploymentStrategy):
    kind = "container"
    supports_rollback = True

    def __init__(self, artifact_store=None, client=None) -> None:
        super().__init__(artifact_store)
        self._client = client
        self._clients: Dict[str, object] = {}

    def _docker(self, target: DeploymentTarget):
        if self._client is not None:
            return self._client
        host = target.connection_parameters.get("docker_host")
        key = host or "env"
        if key not in self._clients:
            self._clients[key] = docker.DockerClient(base_url=host) if host else docker.from_env()
        return self._clients[key]

    def _container_name(self, target: DeploymentTarget) -> str:
        return target.connection_parameters.get("container_name", f"{target.environment_name}-app")

    def _replace(self, image_ref: str, target: DeploymentTarget) -> str:
        client = self._docker(target)
        params = target.connection_parameters
        name = self._container_name(target)

        client.images.pull(image_ref)
        try:
            old = client.containers.get(name)
            old.stop(timeout=10)
            old.remove()
            logger.info("[DEPLOY] container %s stopped and removed", name)
        except NotFound:
            pass

        container = client.containers.run(
            image_ref,
            name=name,
            detach=True,
            ports=params.get("ports") or {},
            environment=params.get("environment") or {},
            restart_policy={"Name": "unless-stopped"},
            labels={"project": "cicd-engine", "environment": target.environment_name},
        )
        return container.short_id

    async def _start(self, image_ref: str, artifact: ArtifactReference, target: DeploymentTarget,
                     token: Optional[CancellationToken]) -> DeployResult:
        if token is not None:
            token.raise_if_cancelled()
        try:
            container_id = await asyncio.to_thread(self._replace, image_ref, target)
        except (APIError, ImageNotFound) as e:
            logger.error("[DEPLOY] container deploy of %s failed: %s", image_ref, e)
            return self._result("FAILED", target, artifact, f"docker error: {e}")
        logger.info("[DEPLOY] container %s running %s (%s)", self._container_name(target), image_ref, container_id)
        return self._result("DEPLOYED", target, artifact, image_ref)

    async def deploy(
        self,
        artifact: ArtifactReference,
        target: DeploymentTarget,
        token: Optional[CancellationToken] = None,
    ) -> DeployResult:
        if not artifact.storage_location.startswith(_DOCKER_SCHEME) and not target.connection_parameters.get("image"):
            return self._result("FAILED", target, artifact, "connection_parameters.image is required")
        return await self._start(image_ref_for(artifact, target), artifact, target, token)

    async def rollback(
        self,
        target: DeploymentTarget,
        previous: ArtifactReference,
        token: Optional[CancellationToken] = None,
    ) -> DeployResult:
        result = await self._start(image_ref_for(previous, target), previous, target, token)
        result.status = "ROLLED_BACK" if result.status == "DEPLOYED" else "ROLLBACK_FAILED"
        return result

    async def health_check(self, target: DeploymentTarget) -> bool:
        def _running() -> bool:
            container = self._docker(target).containers.get(self._container_name(target))
            container.reload()
            return container.status == "running"

        try:
            return await asyncio.to_thread(_running)
        except (APIError, NotFound) as e:
            logger.warning("[DEPLOY] container health probe failed: %s", e)
            return False
