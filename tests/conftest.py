import json
import os
from datetime import datetime, timezone
from types import SimpleNamespace
from unittest.mock import AsyncMock

import pytest

from cicd_engine.agents.orchestrator import Orchestrator
from cicd_engine.core.config import EngineConfig
from cicd_engine.deploy.base import DeploymentStrategy
from cicd_engine.deploy.selector import DeploymentSelector
from cicd_engine.executor.build_executor import BuildAgent, CommandResult
from cicd_engine.models.build_request import BuildRequest
from cicd_engine.models.deployment import ArtifactReference, DeploymentTarget
from cicd_engine.parser.signature import compute_signature
from cicd_engine.services.artifact_store import LocalArtifactStore
from cicd_engine.services.notification_sinks import (
    CommitStatusSink,
    WebhookNotificationSink,
    notification_payload,
)
from cicd_engine.services.run_archive import RunArchive

SECRET = "s3cret"


def make_request(sha: str = "def456", ref: str = "refs/heads/main", repo: str = "acme/shop",
                 trigger: str = "push", pr_number: int = None) -> BuildRequest:
    return BuildRequest(
        source_ref=ref,
        commit_sha=sha,
        repository_identifier=repo,
        trigger_event_type=trigger,
        received_at=datetime.now(timezone.utc),
        raw_payload_digest="0" * 64,
        pull_request_number=pr_number,
    )


def make_artifact(run_id: int, location: str = None) -> ArtifactReference:
    return ArtifactReference(
        pipeline_run_id=run_id,
        storage_location=location or f"file:///artifacts/acme__shop/{run_id}/app.tar.gz",
        checksum=f"sum{run_id}",
    )


def make_target(kind: str = "ssh", name: str = "production", **params) -> DeploymentTarget:
    return DeploymentTarget(
        environment_name=name,
        strategy_kind=kind,
        connection_parameters=params,
        health_check_attempts=3,
        health_check_interval_seconds=0,
    )


@pytest.fixture
def request_factory():
    return make_request


# ---------------------------------------------------------------------------
# Collaborator fakes
# ---------------------------------------------------------------------------
class FakeEnvironment(DeploymentStrategy):
    """Tracks which artifact is live; artifacts in ``broken`` fail health checks."""

    def __init__(self, kind="ssh", native=False, fail_deploy=()):
        super().__init__()
        self.kind = kind
        self.supports_rollback = native
        self.live = None
        self.broken = set()
        self.fail_deploy = set(fail_deploy)
        self.deploy_calls = []
        self.rollback_calls = []

    async def deploy(self, artifact, target, token=None):
        self.deploy_calls.append(artifact.pipeline_run_id)
        if artifact.pipeline_run_id in self.fail_deploy:
            return self._result("FAILED", target, artifact, "backend refused")
        self.live = artifact
        return self._result("DEPLOYED", target, artifact)

    async def rollback(self, target, previous, token=None):
        self.rollback_calls.append(previous.pipeline_run_id)
        self.live = previous
        return self._result("ROLLED_BACK", target, previous)

    async def health_check(self, target):
        return self.live is not None and self.live.pipeline_run_id not in self.broken




class FakeAgent(BuildAgent):
    """
    Build agent that records commands instead of running them.

    ``exits`` maps a command to its exit status (default 0). ``hold`` maps a
    command to an asyncio.Event it waits on before returning. ``files``
    maps a command to relative paths written into the workspace.
    """

    kind = "fake"

    def __init__(self, exits=None, hold=None, files=None):
        self.exits = dict(exits or {})
        self.hold = hold
        self.files = dict(files or {})
        self.calls = []

    async def execute(self, command_spec, workspace, timeout, token=None, env=None):
        self.calls.append((command_spec, (env or {}).get("CI_COMMIT_SHA")))
        if self.hold is not None and command_spec in self.hold:
            await self.hold[command_spec].wait()
        for rel in self.files.get(command_spec, ()):
            path = os.path.join(workspace, rel)
            os.makedirs(os.path.dirname(path), exist_ok=True)
            with open(path, "wb") as f:
                f.write(b"artifact for " + (env or {}).get("CI_COMMIT_SHA", "").encode())
        exit_status = self.exits.get(command_spec, 0)
        return CommandResult(exit_status=exit_status, captured_output=f"ran {command_spec}",
                             log_excerpt=f"ran {command_spec}")


class FakeWorkspace:
    """Checkout that just creates the run directory."""

    def __init__(self, root):
        self.root = str(root)
        self.checkouts = []
        self.cleaned = []

    def run_path(self, run_id):
        return os.path.join(self.root, "runs", str(run_id))

    async def checkout(self, repository_identifier, commit_sha, run_id, repository_url="", token=None):
        self.checkouts.append((run_id, commit_sha))
        path = self.run_path(run_id)
        os.makedirs(path, exist_ok=True)
        return path

    def cleanup(self, run_id):
        self.cleaned.append(run_id)


class RecordingCommitStatus(CommitStatusSink):
    """Commit-status sink that keeps (sha, state, description) instead of posting."""

    def __init__(self):
        super().__init__(token="")
        self.posted = []

    async def send(self, transition):
        body = self.build_body(transition)
        self.posted.append((transition.run.build_request.commit_sha, body["state"], body["description"]))


class RecordingNotifications(WebhookNotificationSink):
    def __init__(self):
        super().__init__("https://chat.example.com/hook")
        self.payloads = []

    async def send(self, transition):
        self.payloads.append(notification_payload(transition))


# ---------------------------------------------------------------------------
# Webhook helpers
# ---------------------------------------------------------------------------
def push_body(sha: str = "def456", ref: str = "refs/heads/main", repo: str = "acme/shop") -> bytes:
    return json.dumps({
        "ref": ref,
        "after": sha,
        "repository": {"full_name": repo, "clone_url": f"https://github.com/{repo}.git"},
        "sender": {"login": "octocat"},
    }).encode()


def signed_headers(raw: bytes, event: str = "push", secret: str = SECRET) -> dict:
    return {
        "X-Hub-Signature-256": compute_signature(raw, secret),
        "X-GitHub-Event": event,
        "X-GitHub-Delivery": "delivery-1",
    }


# ---------------------------------------------------------------------------
# Engine assembly
# ---------------------------------------------------------------------------
def make_engine(tmp_path, agent=None, env=None, **config_overrides):
    """
    Orchestrator wired to in-memory collaborators.

    Returns a namespace with the engine and every fake so tests can inspect
    what was built, deployed and reported.
    """
    settings = {
        "webhook_secret": SECRET,
        "debounce_window_seconds": 0.05,
        "agent_pool_capacity": 2,
        "reporter_backoff_seconds": 0,
        "deployment_targets": [make_target("ssh", name="production")],
    }
    settings.update(config_overrides)
    config = EngineConfig(**settings)

    agent = agent or FakeAgent(files={"make package": ["dist/artifact.tar.gz"]})
    env = env or FakeEnvironment()
    status = RecordingCommitStatus()
    notifications = RecordingNotifications()
    workspace = FakeWorkspace(tmp_path / "ws")
    engine = Orchestrator(
        config,
        agent=agent,
        workspace=workspace,
        artifact_store=LocalArtifactStore(str(tmp_path / "artifacts")),
        selector=DeploymentSelector(strategies={env.kind: env}, sleep=AsyncMock()),
        sinks=[status, notifications],
        archive=RunArchive(),
    )
    return SimpleNamespace(engine=engine, agent=agent, env=env, status=status,
                           notifications=notifications, workspace=workspace)
