"""
Unit Tests — Deployment Strategies
==================================
Each backend adapter with its external tool mocked: scp/ssh and
ansible-playbook via run_process, boto3 clients, the docker SDK.
"""
import asyncio
import io
import json
from unittest.mock import AsyncMock, MagicMock, patch

from botocore.exceptions import ClientError
from docker.errors import NotFound

from cicd_engine.deploy.base import ProcessOutcome
from cicd_engine.deploy.config_apply import ConfigApplyStrategy
from cicd_engine.deploy.container import ContainerStrategy, image_ref_for
from cicd_engine.deploy.direct_copy import DirectCopyStrategy
from cicd_engine.deploy.managed_rollout import ManagedRolloutStrategy, bundle_type_for
from cicd_engine.deploy.storage_pull import StoragePullStrategy
from cicd_engine.services.artifact_store import LocalArtifactStore
from conftest import make_artifact, make_target


# ---------------------------------------------------------------------------
# ssh
# ---------------------------------------------------------------------------
class TestDirectCopy:

    def test_copy_then_activate(self, tmp_path):
        store = LocalArtifactStore(str(tmp_path))
        location = store.put(b"release-bytes", "acme__shop/7/app.tar.gz")
        artifact = make_artifact(7, location)
        target = make_target("ssh", host="web1", remote_dir="/srv/app", activate_command="systemctl restart app")

        async def run_test():
            with patch("cicd_engine.deploy.direct_copy.run_process",
                       new=AsyncMock(return_value=ProcessOutcome(0, ""))) as mock_run:
                result = await DirectCopyStrategy(store).deploy(artifact, target)
            return result, mock_run

        result, mock_run = asyncio.run(run_test())
        assert result.status == "DEPLOYED"
        commands = [call.args[0] for call in mock_run.await_args_list]
        assert commands[0][0] == "ssh" and "mkdir -p" in commands[0][-1]
        assert commands[1][0] == "scp"
        assert commands[1][-1] == "deploy@web1:/srv/app/releases/7-app.tar.gz"
        assert "ln -sfn" in commands[2][-1] and "systemctl restart app" in commands[2][-1]

    def test_scp_failure_reported(self, tmp_path):
        store = LocalArtifactStore(str(tmp_path))
        artifact = make_artifact(1, store.put(b"x", "a/1/app.tar.gz"))
        outcomes = [ProcessOutcome(0, ""), ProcessOutcome(1, "permission denied")]

        async def run_test():
            with patch("cicd_engine.deploy.direct_copy.run_process", new=AsyncMock(side_effect=outcomes)):
                return await DirectCopyStrategy(store).deploy(artifact, make_target("ssh", host="web1"))

        result = asyncio.run(run_test())
        assert result.status == "FAILED"
        assert "permission denied" in result.detail

    def test_missing_host(self):
        result = asyncio.run(DirectCopyStrategy().deploy(make_artifact(1), make_target("ssh")))
        assert result.status == "FAILED"


# ---------------------------------------------------------------------------
# s3_pull
# ---------------------------------------------------------------------------
class TestStoragePull:

    def test_copies_release_and_writes_pointer(self):
        client = MagicMock()
        strategy = StoragePullStrategy(client_factory=lambda region: client)
        artifact = make_artifact(5, "s3://builds/artifacts/acme__shop/5/app.zip")
        target = make_target("s3_pull", bucket="releases", release_prefix="prod")

        result = asyncio.run(strategy.deploy(artifact, target))

        assert result.status == "DEPLOYED"
        client.copy_object.assert_called_once_with(
            Bucket="releases", Key="prod/releases/5/app.zip",
            CopySource={"Bucket": "builds", "Key": "artifacts/acme__shop/5/app.zip"},
        )
        pointer_call = client.put_object.call_args
        assert pointer_call.kwargs["Key"] == "prod/current.json"
        pointer = json.loads(pointer_call.kwargs["Body"])
        assert pointer["pipeline_run_id"] == 5
        assert pointer["location"] == "s3://releases/prod/releases/5/app.zip"

    def test_client_error_is_failed_result(self):
        client = MagicMock()
        client.copy_object.side_effect = ClientError({"Error": {"Code": "AccessDenied"}}, "CopyObject")
        strategy = StoragePullStrategy(client_factory=lambda region: client)
        result = asyncio.run(strategy.deploy(make_artifact(1, "s3://b/k/app.zip"),
                                             make_target("s3_pull", bucket="r")))
        assert result.status == "FAILED"

    def test_health_reads_pointer(self):
        client = MagicMock()
        client.get_object.return_value = {"Body": io.BytesIO(b'{"location": "s3://r/x"}')}
        strategy = StoragePullStrategy(client_factory=lambda region: client)
        assert asyncio.run(strategy.health_check(make_target("s3_pull", bucket="r")))


# ---------------------------------------------------------------------------
# codedeploy
# ---------------------------------------------------------------------------
class TestManagedRollout:

    def _strategy(self, statuses):
        codedeploy = MagicMock()
        codedeploy.create_deployment.return_value = {"deploymentId": "d-123"}
        codedeploy.get_deployment.side_effect = [{"deploymentInfo": {"status": s}} for s in statuses]
        strategy = ManagedRolloutStrategy(client_factory=lambda service, region: codedeploy,
                                          sleep=AsyncMock())
        return strategy, codedeploy

    def _target(self):
        return make_target("codedeploy", application_name="shop", deployment_group="prod-fleet")

    def test_bundle_types(self):
        assert bundle_type_for("app.zip") == "zip"
        assert bundle_type_for("app.tar") == "tar"
        assert bundle_type_for("app.tar.gz") == "tgz"

    def test_deploy_waits_for_success(self):
        strategy, codedeploy = self._strategy(["InProgress", "Succeeded"])
        result = asyncio.run(strategy.deploy(make_artifact(3, "s3://b/shop/3/app.zip"), self._target()))
        assert result.status == "DEPLOYED"
        revision = codedeploy.create_deployment.call_args.kwargs["revision"]
        assert revision["s3Location"] == {"bucket": "b", "key": "shop/3/app.zip", "bundleType": "zip"}

    def test_failed_deployment(self):
        strategy, _ = self._strategy(["InProgress", "Failed"])
        result = asyncio.run(strategy.deploy(make_artifact(3, "s3://b/k.zip"), self._target()))
        assert result.status == "FAILED"
        assert "Failed" in result.detail

    def test_native_rollback_redeploys_previous_revision(self):
        strategy, codedeploy = self._strategy(["Succeeded"])
        result = asyncio.run(strategy.rollback(self._target(), make_artifact(2, "s3://b/shop/2/app.zip")))
        assert result.status == "ROLLED_BACK"
        assert "rollback" in codedeploy.create_deployment.call_args.kwargs["description"]

    def test_abort_stops_deployment(self):
        from cicd_engine.pipeline.cancellation import CancellationToken
        strategy, codedeploy = self._strategy(["InProgress"] * 5)
        token = CancellationToken()
        token.cancel("abort")
        result = asyncio.run(strategy.deploy(make_artifact(3, "s3://b/k.zip"), self._target(), token))
        assert result.status == "FAILED"
        codedeploy.stop_deployment.assert_called_once_with(deploymentId="d-123", autoRollbackEnabled=True)

    def test_health_compares_last_attempted_and_successful(self):
        strategy, codedeploy = self._strategy([])
        codedeploy.get_deployment_group.return_value = {"deploymentGroupInfo": {
            "lastAttemptedDeployment": {"deploymentId": "d-9"},
            "lastSuccessfulDeployment": {"deploymentId": "d-9"},
        }}
        assert asyncio.run(strategy.health_check(self._target()))


# ---------------------------------------------------------------------------
# container
# ---------------------------------------------------------------------------
class TestContainer:

    def test_image_ref(self):
        target = make_target("container", image="registry/shop")
        assert image_ref_for(make_artifact(4), target) == "registry/shop:run-4"
        assert image_ref_for(make_artifact(4, "docker://registry/shop@sha256:abc"), target) == \
            "registry/shop@sha256:abc"

    def test_replaces_running_container(self):
        client = MagicMock()
        old = MagicMock()
        client.containers.get.return_value = old
        client.containers.run.return_value = MagicMock(short_id="c0ffee")
        strategy = ContainerStrategy(client=client)
        target = make_target("container", image="registry/shop", container_name="shop")

        result = asyncio.run(strategy.deploy(make_artifact(4), target))

        assert result.status == "DEPLOYED"
        client.images.pull.assert_called_once_with("registry/shop:run-4")
        old.stop.assert_called_once()
        old.remove.assert_called_once()
        assert client.containers.run.call_args.kwargs["name"] == "shop"

    def test_first_deploy_without_existing_container(self):
        client = MagicMock()
        client.containers.get.side_effect = NotFound("none")
        client.containers.run.return_value = MagicMock(short_id="abc")
        result = asyncio.run(ContainerStrategy(client=client).deploy(
            make_artifact(1), make_target("container", image="r/app")))
        assert result.status == "DEPLOYED"

    def test_native_rollback(self):
        client = MagicMock()
        client.containers.run.return_value = MagicMock(short_id="abc")
        result = asyncio.run(ContainerStrategy(client=client).rollback(
            make_target("container", image="r/app"), make_artifact(2)))
        assert result.status == "ROLLED_BACK"
        client.images.pull.assert_called_once_with("r/app:run-2")

    def test_health_checks_running_state(self):
        client = MagicMock()
        client.containers.get.return_value = MagicMock(status="running")
        assert asyncio.run(ContainerStrategy(client=client).health_check(make_target("container")))
        client.containers.get.return_value = MagicMock(status="exited")
        assert not asyncio.run(ContainerStrategy(client=client).health_check(make_target("container")))


# ---------------------------------------------------------------------------
# config_mgmt
# ---------------------------------------------------------------------------
class TestConfigApply:

    def _target(self):
        return make_target("config_mgmt", playbook="site.yml", inventory="hosts/prod",
                           extra_vars={"app_user": "shop"})

    def test_command_carries_artifact_as_extra_vars(self):
        cmd = ConfigApplyStrategy().build_command(make_artifact(9), self._target())
        assert cmd[:4] == ["ansible-playbook", "-i", "hosts/prod", "site.yml"]
        extra = json.loads(cmd[-1])
        assert extra["pipeline_run_id"] == 9
        assert extra["artifact_checksum"] == "sum9"
        assert extra["app_user"] == "shop"

    def test_non_zero_exit_fails(self):
        async def run_test():
            with patch("cicd_engine.deploy.config_apply.run_process",
                       new=AsyncMock(return_value=ProcessOutcome(2, "UNREACHABLE"))):
                return await ConfigApplyStrategy().deploy(make_artifact(9), self._target())

        result = asyncio.run(run_test())
        assert result.status == "FAILED"
        assert "exit 2" in result.detail

    def test_missing_inventory(self):
        result = asyncio.run(ConfigApplyStrategy().deploy(make_artifact(1),
                                                          make_target("config_mgmt", playbook="x.yml")))
        assert result.status == "FAILED"
