"""
Integration Tests — Engine Flow
===============================
Webhook in, statuses out: signature → normalizer → debounce → scheduler →
stage handlers → deploy selector → status reporter → archive, with fake
build agent, workspace and deployment backend.
"""
import asyncio
import json

import pytest

from cicd_engine.agents.orchestrator import RollbackError
from cicd_engine.models.stage_definition import StageDefinition
from cicd_engine.services.notification_sinks import DeliveryError, NotificationSink
from cicd_engine.utils.error_reasons import TIMEOUT
from conftest import FakeAgent, make_engine, push_body, signed_headers

ALL_STAGES = ["checkout", "build", "test", "quality", "package", "deploy", "notify"]


async def push(fx, sha, ref="refs/heads/main"):
    raw = push_body(sha, ref)
    return await fx.engine.handle_webhook(raw, signed_headers(raw))


async def push_and_finish(fx, sha):
    outcome = await push(fx, sha)
    await fx.engine.drain()
    return outcome


def test_push_runs_every_stage_and_reports_success(tmp_path):
    fx = make_engine(tmp_path)

    async def run_test():
        outcome = await push(fx, "def456")
        # Let the debounce timer expire on its own
        await asyncio.sleep(0.2)
        await fx.engine.drain()
        await fx.engine.shutdown()
        return outcome

    outcome = asyncio.run(run_test())
    assert (outcome.status_code, outcome.result) == (200, "accepted")

    run = fx.engine.archive.recent(1)[0]
    assert run.overall_status == "SUCCEEDED"
    assert [r.stage_name for r in run.stage_history] == ALL_STAGES
    assert all(r.outcome == "SUCCESS" for r in run.stage_history)
    assert run.artifact.pipeline_run_id == run.run_id
    assert fx.env.live.pipeline_run_id == run.run_id

    successes = [p for p in fx.status.posted if p[1] == "success"]
    assert [(sha, state) for sha, state, _ in successes] == [("def456", "success")]
    assert fx.status.posted[0][1] == "pending"
    assert len(fx.notifications.payloads) == 1
    assert fx.notifications.payloads[0]["overall_status"] == "SUCCEEDED"
    assert fx.notifications.payloads[0]["commit_sha"] == "def456"


def test_rapid_pushes_coalesce_to_newest_commit(tmp_path):
    fx = make_engine(tmp_path, debounce_window_seconds=0.3)

    async def run_test():
        first = await push(fx, "a1")
        await asyncio.sleep(0.1)
        second = await push(fx, "a2")
        await asyncio.sleep(0.5)
        await fx.engine.drain()
        await fx.engine.shutdown()
        return first, second

    first, second = asyncio.run(run_test())
    assert first.entry_id != second.entry_id
    assert fx.engine.queue.superseded_total == 1
    assert len(fx.engine.archive) == 1
    run = fx.engine.archive.recent(1)[0]
    assert run.build_request.commit_sha == "a2"
    assert fx.workspace.checkouts == [(run.run_id, "a2")]
    assert {sha for _, sha in fx.agent.calls} == {"a2"}
    assert not any(sha == "a1" for sha, _, _ in fx.status.posted)


def test_failed_stage_skips_to_notify(tmp_path):
    fx = make_engine(tmp_path, agent=FakeAgent(exits={"make test": 1}))

    async def run_test():
        await push_and_finish(fx, "bad111")
        await fx.engine.shutdown()

    asyncio.run(run_test())
    run = fx.engine.archive.recent(1)[0]
    assert run.overall_status == "FAILED"
    assert run.failure_reason == "test: COMMAND_ERROR"
    assert [r.stage_name for r in run.stage_history] == ["checkout", "build", "test", "notify"]
    assert fx.status.posted[-1][:2] == ("bad111", "failure")
    assert fx.env.deploy_calls == []


def test_quality_warning_does_not_fail_run(tmp_path):
    fx = make_engine(tmp_path, agent=FakeAgent(exits={"make lint": 1},
                                               files={"make package": ["dist/artifact.tar.gz"]}))

    async def run_test():
        await push_and_finish(fx, "lint01")
        await fx.engine.shutdown()

    asyncio.run(run_test())
    run = fx.engine.archive.recent(1)[0]
    assert run.overall_status == "SUCCEEDED"
    assert run.warnings == ["quality: QUALITY_GATE_FAILED"]


def test_unhealthy_deploy_rolls_back_and_fails_run(tmp_path):
    fx = make_engine(tmp_path)
    fx.env.broken = {2}

    async def run_test():
        await push_and_finish(fx, "good01")
        await push_and_finish(fx, "bad002")
        await fx.engine.shutdown()

    asyncio.run(run_test())
    good, bad = sorted(fx.engine.archive.recent(), key=lambda r: r.run_id)
    assert good.overall_status == "SUCCEEDED"
    assert bad.overall_status == "FAILED"
    assert bad.failure_reason == "deploy: DEPLOY_FAILURE"
    result = bad.deploy_results[0]
    assert result.status == "FAILED"
    assert result.rollback_status == "ROLLED_BACK"
    assert result.previous_artifact_ref.pipeline_run_id == good.run_id
    assert fx.env.live.pipeline_run_id == good.run_id
    assert fx.engine.selector.current("production").pipeline_run_id == good.run_id
    assert fx.status.posted[-1][:2] == ("bad002", "failure")


def test_abort_cancels_running_stage(tmp_path):
    gate = asyncio.Event()
    agent = FakeAgent(hold={"make test": gate})
    fx = make_engine(tmp_path, agent=agent)

    async def run_test():
        await push(fx, "slow01")
        await fx.engine.queue.flush()
        while not any(cmd == "make test" for cmd, _ in agent.calls):
            await asyncio.sleep(0.01)
        run_id = fx.engine.scheduler.active_runs()[0].run_id
        accepted = fx.engine.abort(run_id, "stop requested")
        await fx.engine.drain()
        again = fx.engine.abort(run_id)
        await fx.engine.shutdown()
        return run_id, accepted, again

    run_id, accepted, again = asyncio.run(run_test())
    assert accepted and not again
    run = fx.engine.get_run(run_id)
    assert run.overall_status == "ABORTED"
    assert "stop requested" in run.failure_reason
    assert [r.stage_name for r in run.stage_history][-2:] == ["test", "notify"]
    assert run.stage_history[-2].outcome == "ABORTED"
    assert fx.status.posted[-1][:2] == ("slow01", "failure")
    assert fx.env.deploy_calls == []


def test_abort_unknown_run(tmp_path):
    assert make_engine(tmp_path).engine.abort(999) is False


def test_rollback_request_redeploys_previous_artifact(tmp_path):
    fx = make_engine(tmp_path)

    async def run_test():
        await push_and_finish(fx, "rel001")
        await push_and_finish(fx, "rel002")
        entry = await fx.engine.request_rollback("production")
        await fx.engine.drain()
        await fx.engine.shutdown()
        return entry

    entry = asyncio.run(run_test())
    assert entry.rollback_artifact.pipeline_run_id == 1
    rollback_run = fx.engine.archive.recent(1)[0]
    assert rollback_run.rollback_environment == "production"
    assert rollback_run.rollback_of_run_id == 1
    assert rollback_run.build_request.trigger_event_type == "rollback"
    assert rollback_run.build_request.commit_sha == "rel001"
    assert [r.stage_name for r in rollback_run.stage_history] == ["deploy", "notify"]
    assert rollback_run.overall_status == "SUCCEEDED"
    assert rollback_run.deploy_results[0].status == "ROLLED_BACK"
    assert fx.env.live.pipeline_run_id == 1
    # Commit statuses stay with the original builds
    assert [sha for sha, state, _ in fx.status.posted if state == "success"] == ["rel001", "rel002"]
    assert fx.notifications.payloads[-1]["pipeline_run_id"] == rollback_run.run_id


def test_rollback_errors(tmp_path):
    fx = make_engine(tmp_path)

    async def run_test():
        with pytest.raises(RollbackError):
            await fx.engine.request_rollback("staging")
        with pytest.raises(RollbackError):
            await fx.engine.request_rollback("production")
        await fx.engine.shutdown()

    asyncio.run(run_test())


def test_rejected_webhooks_never_create_runs(tmp_path):
    fx = make_engine(tmp_path)

    async def run_test():
        raw = push_body("def456")
        bad_sig = await fx.engine.handle_webhook(raw, signed_headers(raw, secret="wrong"))
        no_sig = await fx.engine.handle_webhook(raw, {"X-GitHub-Event": "push"})
        unsupported = await fx.engine.handle_webhook(raw, signed_headers(raw, event="issues"))
        ping = await fx.engine.handle_webhook(raw, signed_headers(raw, event="ping"))
        garbage = b"not json"
        malformed = await fx.engine.handle_webhook(garbage, signed_headers(garbage))
        await fx.engine.drain()
        await fx.engine.shutdown()
        return bad_sig, no_sig, unsupported, ping, malformed

    bad_sig, no_sig, unsupported, ping, malformed = asyncio.run(run_test())
    assert (bad_sig.status_code, bad_sig.reason) == (401, "SIGNATURE_MISMATCH")
    assert (no_sig.status_code, no_sig.reason) == (401, "MISSING_HEADER")
    assert (unsupported.status_code, unsupported.reason) == (400, "UNSUPPORTED_EVENT")
    assert (ping.status_code, ping.result) == (200, "skipped")
    assert (malformed.status_code, malformed.reason) == (400, "MALFORMED_PAYLOAD")
    assert len(fx.engine.archive) == 0
    assert fx.engine.rejected_total == 4
    assert fx.engine.skipped_total == 1


def test_status_snapshot(tmp_path):
    fx = make_engine(tmp_path, debounce_window_seconds=30)

    async def run_test():
        await push(fx, "def456")
        snapshot = fx.engine.status()
        await fx.engine.shutdown()
        return snapshot

    snapshot = asyncio.run(run_test())
    assert snapshot["queue"]["pending"] == 1
    assert snapshot["queue"]["pending_entries"][0]["commit_sha"] == "def456"
    assert snapshot["scheduler"]["capacity"] == 2
    assert snapshot["dropped"] == []


class OfflineSink(NotificationSink):
    name = "offline"

    def __init__(self):
        super().__init__()
        self.attempts = []

    async def send(self, transition):
        self.attempts.append(transition.kind)
        raise DeliveryError("channel down")


def test_terminal_status_delivery_outlives_notify_timeout(tmp_path):
    stages = [
        StageDefinition(name="build", ordinal=1, command="make build"),
        StageDefinition(name="notify", ordinal=2, kind="notify", timeout_seconds=0.2),
    ]
    fx = make_engine(tmp_path, stage_definitions=stages,
                     reporter_max_attempts=3, reporter_backoff_seconds=0.1)
    sink = OfflineSink()
    fx.engine.reporter.sinks = [sink]

    async def run_test():
        await push_and_finish(fx, "def456")
        await fx.engine.shutdown()

    asyncio.run(run_test())
    run = fx.engine.archive.recent(1)[0]
    assert run.overall_status == "SUCCEEDED"
    assert (run.stage_history[-1].stage_name, run.stage_history[-1].reason) == ("notify", TIMEOUT)
    # Retries continue after the run is archived and end as UNDELIVERED
    assert sink.attempts == ["terminal"] * 3
    undelivered = fx.engine.reporter.undelivered
    assert [(u.run_id, u.transition_kind, u.attempts) for u in undelivered] == [(run.run_id, "terminal", 3)]


def test_shutdown_reports_cancelled_run_as_aborted(tmp_path):
    gate = asyncio.Event()
    agent = FakeAgent(hold={"make test": gate})
    fx = make_engine(tmp_path, agent=agent)

    async def run_test():
        await push(fx, "stop01")
        await fx.engine.queue.flush()
        while not any(cmd == "make test" for cmd, _ in agent.calls):
            await asyncio.sleep(0.01)
        await fx.engine.shutdown()

    asyncio.run(run_test())
    run = fx.engine.archive.recent(1)[0]
    assert run.overall_status == "ABORTED"
    assert run.failure_reason == "ABORTED: engine shutdown"
    assert run.finished_at is not None
    assert fx.status.posted[-1][:2] == ("stop01", "failure")
    assert fx.notifications.payloads[-1]["overall_status"] == "ABORTED"


def test_artifact_index_is_bounded(tmp_path, monkeypatch):
    monkeypatch.setattr("cicd_engine.agents.orchestrator.RUN_HISTORY_LIMIT", 2)
    fx = make_engine(tmp_path)

    async def run_test():
        for sha in ("v1", "v2", "v3"):
            await push_and_finish(fx, sha)
        indexed = sorted(fx.engine._artifacts)
        # Run 1 fell out of the index; the release history and archive still know it
        entry = await fx.engine.request_rollback("production", artifact_run_id=1)
        await fx.engine.drain()
        await fx.engine.shutdown()
        return indexed, entry

    indexed, entry = asyncio.run(run_test())
    assert indexed == [2, 3]
    assert entry.rollback_artifact.pipeline_run_id == 1
    assert entry.build_request.commit_sha == "v1"
    assert fx.env.live.pipeline_run_id == 1


def test_wrong_typed_payload_rejected_as_malformed(tmp_path):
    fx = make_engine(tmp_path)

    async def run_test():
        raw = json.dumps({"ref": 123, "after": "def456", "repository": {"full_name": "acme/shop"}}).encode()
        outcome = await fx.engine.handle_webhook(raw, signed_headers(raw))
        await fx.engine.shutdown()
        return outcome

    outcome = asyncio.run(run_test())
    assert (outcome.status_code, outcome.reason) == (400, "MALFORMED_PAYLOAD")
    assert fx.engine.queue.submitted_total == 0
