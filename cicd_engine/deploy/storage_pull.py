"""
Storage Pull Strategy (s3_pull)
===============================
Publishes the artifact to a release location in S3 and flips a ``current``
pointer object. Target hosts poll the pointer and pull the release
themselves; the engine never talks to the hosts.

connection_parameters:
    bucket          — required
    release_prefix  — default "<environment_name>"
    region          — optional

Pointer object ``<release_prefix>/current.json``:
    {"pipeline_run_id", "location", "checksum", "deployed_at"}

No native rollback: the Selector redeploys the previous artifact, which
rewrites the pointer.
"""
import asyncio
import json
import logging
from datetime import datetime, timezone
from typing import Optional

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from cicd_engine.deploy.base import DeploymentStrategy
from cicd_engine.models.deployment import ArtifactReference, DeploymentTarget, DeployResult
from cicd_engine.pipeline.cancellation import CancellationToken
from cicd_engine.services.artifact_store import ArtifactStoreError, parse_s3_location

logger = logging.getLogger(__name__)


class StoragePullStrategy(DeploymentStrategy):
    kind = "s3_pull"
    supports_rollback = False

    def __init__(self, artifact_store=None, client_factory=None) -> None:
        super().__init__(artifact_store)
        self._client_factory = client_factory
        self._clients: dict = {}

    def _client(self, region: Optional[str]):
        if region not in self._clients:
            if self._client_factory is not None:
                self._clients[region] = self._client_factory(region)
            else:
                self._clients[region] = boto3.client(
                    "s3", region_name=region,
                    config=Config(retries={"max_attempts": 3, "mode": "standard"}),
                )
        return self._clients[region]

    def _prefix(self, target: DeploymentTarget) -> str:
        return target.connection_parameters.get("release_prefix", target.environment_name).strip("/")

    def _publish(self, artifact: ArtifactReference, target: DeploymentTarget) -> str:
        params = target.connection_parameters
        bucket = params["bucket"]
        client = self._client(params.get("region"))
        prefix = self._prefix(target)
        release_key = f"{prefix}/releases/{artifact.pipeline_run_id}/{artifact.file_name}"

        if artifact.storage_location.startswith("s3://"):
            src_bucket, src_key = parse_s3_location(artifact.storage_location)
            client.copy_object(
                Bucket=bucket, Key=release_key,
                CopySource={"Bucket": src_bucket, "Key": src_key},
            )
        else:
            if self.artifact_store is None:
                raise ArtifactStoreError("no artifact store to read a non-s3 artifact from")
            client.put_object(Bucket=bucket, Key=release_key,
                              Body=self.artifact_store.get(artifact.storage_location))

        pointer = {
            "pipeline_run_id": artifact.pipeline_run_id,
            "location": f"s3://{bucket}/{release_key}",
            "checksum": artifact.checksum,
            "deployed_at": datetime.now(timezone.utc).isoformat(),
        }
        client.put_object(
            Bucket=bucket, Key=f"{prefix}/current.json",
            Body=json.dumps(pointer).encode("utf-8"),
            ContentType="application/json",
        )
        return pointer["location"]

    async def deploy(
        self,
        artifact: ArtifactReference,
        target: DeploymentTarget,
        token: Optional[CancellationToken] = None,
    ) -> DeployResult:
        if not target.connection_parameters.get("bucket"):
            return self._result("FAILED", target, artifact, "connection_parameters.bucket is required")
        if token is not None:
            token.raise_if_cancelled()
        try:
            location = await asyncio.to_thread(self._publish, artifact, target)
        except (BotoCoreError, ClientError, ArtifactStoreError) as e:
            logger.error("[DEPLOY] s3_pull publish failed for %s: %s", target.environment_name, e)
            return self._result("FAILED", target, artifact, f"publish failed: {e}")

        logger.info("[DEPLOY] s3_pull %s → %s", target.environment_name, location)
        return self._result("DEPLOYED", target, artifact, location)

    def _read_pointer(self, target: DeploymentTarget) -> Optional[dict]:
        params = target.connection_parameters
        client = self._client(params.get("region"))
        response = client.get_object(Bucket=params["bucket"], Key=f"{self._prefix(target)}/current.json")
        return json.loads(response["Body"].read())

    async def health_check(self, target: DeploymentTarget) -> bool:
        if not target.connection_parameters.get("bucket"):
            return False
        try:
            pointer = await asyncio.to_thread(self._read_pointer, target)
        except (BotoCoreError, ClientError, ValueError) as e:
            logger.warning("[DEPLOY] s3_pull pointer unreadable for %s: %s", target.environment_name, e)
            return False
        return bool(pointer and pointer.get("location"))
