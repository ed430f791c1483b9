"""
Managed Rollout Strategy (codedeploy)
=====================================
Hands the artifact to AWS CodeDeploy as an S3 revision. CodeDeploy runs the
appspec lifecycle hooks (BeforeInstall, AfterInstall, ApplicationStart,
ValidateService) on the deployment group's instances.

connection_parameters:
    application_name   — required
    deployment_group   — required
    bucket             — revision bucket, required when the artifact is not in S3
    revision_prefix    — default "codedeploy/<environment_name>"
    region             — optional
    poll_interval      — seconds between get_deployment calls, default 10
    max_wait_seconds   — default 1800

Native rollback: a new CodeDeploy deployment of the previous revision.
On ABORT the in-flight deployment is stopped with auto-rollback enabled.
"""
import asyncio
import logging
import time
from typing import Dict, Optional

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from cicd_engine.deploy.base import DeploymentStrategy
from cicd_engine.models.deployment import ArtifactReference, DeploymentTarget, DeployResult
from cicd_engine.pipeline.cancellation import CancellationToken
from cicd_engine.services.artifact_store import ArtifactStoreError, parse_s3_location

logger = logging.getLogger(__name__)

_TERMINAL = {"Succeeded", "Failed", "Stopped"}


def bundle_type_for(file_name: str) -> str:
    name = file_name.lower()
    if name.endswith(".zip"):
        return "zip"
    if name.endswith(".tar"):
        return "tar"
    if name.endswith(".tar.gz") or name.endswith(".tgz"):
        return "tgz"
    return "zip"


class ManagedRolloutStrategy(DeploymentStrategy):
    kind = "codedeploy"
    supports_rollback = True

    def __init__(self, artifact_store=None, client_factory=None, sleep=asyncio.sleep) -> None:
        super().__init__(artifact_store)
        self._client_factory = client_factory
        self._clients: Dict[str, object] = {}
        self._sleep = sleep

    def _client(self, service: str, region: Optional[str]):
        key = f"{service}:{region}"
        if key not in self._clients:
            if self._client_factory is not None:
                self._clients[key] = self._client_factory(service, region)
            else:
                self._clients[key] = boto3.client(
                    service, region_name=region,
                    config=Config(retries={"max_attempts": 3, "mode": "standard"}),
                )
        return self._clients[key]

    def _revision_location(self, artifact: ArtifactReference, target: DeploymentTarget) -> Dict[str, str]:
        """S3 location of the revision bundle, uploading it when it lives elsewhere."""
        params = target.connection_parameters
        if artifact.storage_location.startswith("s3://"):
            bucket, key = parse_s3_location(artifact.storage_location)
        else:
            bucket = params.get("bucket")
            if not bucket:
                raise ArtifactStoreError("connection_parameters.bucket is required for non-s3 artifacts")
            if self.artifact_store is None:
                raise ArtifactStoreError("no artifact store to read the revision from")
            prefix = params.get("revision_prefix", f"codedeploy/{target.environment_name}").strip("/")
            key = f"{prefix}/{artifact.pipeline_run_id}/{artifact.file_name}"
            self._client("s3", params.get("region")).put_object(
                Bucket=bucket, Key=key, Body=self.artifact_store.get(artifact.storage_location),
            )
        return {"bucket": bucket, "key": key, "bundleType": bundle_type_for(artifact.file_name)}

    async def _roll_out(
        self,
        artifact: ArtifactReference,
        target: DeploymentTarget,
        token: Optional[CancellationToken],
        description: str,
    ) -> DeployResult:
        params = target.connection_parameters
        if not params.get("application_name") or not params.get("deployment_group"):
            return self._result("FAILED", target, artifact,
                                "application_name and deployment_group are required")

        codedeploy = self._client("codedeploy", params.get("region"))
        try:
            location = await asyncio.to_thread(self._revision_location, artifact, target)
            response = await asyncio.to_thread(
                codedeploy.create_deployment,
                applicationName=params["application_name"],
                deploymentGroupName=params["deployment_group"],
                revision={"revisionType": "S3", "s3Location": location},
                description=description,
            )
        except (BotoCoreError, ClientError, ArtifactStoreError) as e:
            logger.error("[DEPLOY] codedeploy create_deployment failed: %s", e)
            return self._result("FAILED", target, artifact, f"create_deployment failed: {e}")

        deployment_id = response["deploymentId"]
        logger.info("[DEPLOY] codedeploy %s started for %s", deployment_id, target.environment_name)

        poll_interval = float(params.get("poll_interval", 10))
        deadline = time.monotonic() + float(params.get("max_wait_seconds", 1800))
        status = "Created"
        while status not in _TERMINAL:
            if token is not None and token.cancelled:
                await asyncio.to_thread(
                    codedeploy.stop_deployment, deploymentId=deployment_id, autoRollbackEnabled=True,
                )
                return self._result("FAILED", target, artifact, f"{deployment_id} stopped on abort")
            if time.monotonic() > deadline:
                return self._result("FAILED", target, artifact, f"{deployment_id} did not finish in time")
            await self._sleep(poll_interval)
            try:
                info = await asyncio.to_thread(codedeploy.get_deployment, deploymentId=deployment_id)
            except (BotoCoreError, ClientError) as e:
                logger.warning("[DEPLOY] get_deployment %s failed, retrying: %s", deployment_id, e)
                continue
            status = info["deploymentInfo"]["status"]

        if status != "Succeeded":
            return self._result("FAILED", target, artifact, f"{deployment_id} ended {status}")
        return self._result("DEPLOYED", target, artifact, deployment_id)

    async def deploy(
        self,
        artifact: ArtifactReference,
        target: DeploymentTarget,
        token: Optional[CancellationToken] = None,
    ) -> DeployResult:
        return await self._roll_out(artifact, target, token, f"pipeline run {artifact.pipeline_run_id}")

    async def rollback(
        self,
        target: DeploymentTarget,
        previous: ArtifactReference,
        token: Optional[CancellationToken] = None,
    ) -> DeployResult:
        result = await self._roll_out(previous, target, token, f"rollback to run {previous.pipeline_run_id}")
        if result.status == "DEPLOYED":
            result.status = "ROLLED_BACK"
        else:
            result.status = "ROLLBACK_FAILED"
        return result

    async def health_check(self, target: DeploymentTarget) -> bool:
        params = target.connection_parameters
        if not params.get("application_name") or not params.get("deployment_group"):
            return False
        codedeploy = self._client("codedeploy", params.get("region"))
        try:
            info = await asyncio.to_thread(
                codedeploy.get_deployment_group,
                applicationName=params["application_name"],
                deploymentGroupName=params["deployment_group"],
            )
        except (BotoCoreError, ClientError) as e:
            logger.warning("[DEPLOY] get_deployment_group failed: %s", e)
            return False
        group = info.get("deploymentGroupInfo", {})
        attempted = group.get("lastAttemptedDeployment", {}).get("deploymentId")
        succeeded = group.get("lastSuccessfulDeployment", {}).get("deploymentId")
        return bool(succeeded) and attempted == succeeded
