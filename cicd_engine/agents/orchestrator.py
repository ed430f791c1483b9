"""
Orchestrator
============
Wires the engine together and owns its lifetime:

    Webhook → Signature Verifier → Event Normalizer → Coalescing Queue
            → Build Scheduler → Pipeline State Machine (stage handlers,
              Deployment Selector in DEPLOY) → Status Reporter → Run Archive

Also the entry point for the external controls exposed over HTTP:
abort a run, request a rollback, inspect runs and metrics.

BOUNDARY RULES:
  - Validation failures are the only errors returned synchronously (as an
    HTTP status on WebhookOutcome). Everything after queuing is reported
    through the Status Reporter.
  - A rollback is a new PipelineRun (DEPLOY → NOTIFY) that references a
    prior ArtifactReference; nothing existing is mutated.
  - Runs are archived once NOTIFY has run. Transitions still queued for a
    released run keep being delivered; shutdown waits for them.
"""
import logging
from collections import OrderedDict, deque
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Deque, Dict, List, Mapping, Optional, Tuple

from cicd_engine.agents.status_reporter import StatusReporter
from cicd_engine.core.config import EngineConfig
from cicd_engine.core.constants import DELIVERY_HEADER, EVENT_HEADER, RUN_HISTORY_LIMIT, SIGNATURE_HEADER
from cicd_engine.deploy.selector import DeploymentSelector
from cicd_engine.executor.build_executor import BuildAgent, create_build_agent
from cicd_engine.executor.stage_handlers import StageHandlers
from cicd_engine.executor.workspace import WorkspaceManager
from cicd_engine.models.build_request import BuildRequest
from cicd_engine.models.deployment import ArtifactReference
from cicd_engine.models.pipeline_run import PipelineRun
from cicd_engine.models.queue_entry import QueueEntry
from cicd_engine.parser.event_normalizer import normalize_event, parse_payload
from cicd_engine.parser.signature import verify_signature
from cicd_engine.pipeline.state_machine import PipelineStateMachine
from cicd_engine.scheduling.build_scheduler import BuildScheduler
from cicd_engine.scheduling.coalescing_queue import CoalescingQueue
from cicd_engine.services.artifact_store import ArtifactStore, create_artifact_store
from cicd_engine.services.notification_sinks import NotificationSink, build_sinks
from cicd_engine.services.run_archive import RunArchive
from cicd_engine.utils.error_reasons import MALFORMED_PAYLOAD, http_status_for

logger = logging.getLogger(__name__)

_DROPPED_HISTORY = 100


class RollbackError(Exception):
    """Raised when a rollback request cannot be turned into a run."""


@dataclass
class WebhookOutcome:
    status_code: int
    result: str                      # accepted | skipped | rejected
    reason: Optional[str] = None
    detail: str = ""
    entry_id: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {"result": self.result}
        if self.reason:
            body["reason"] = self.reason
        if self.detail:
            body["detail"] = self.detail
        if self.entry_id is not None:
            body["entry_id"] = self.entry_id
        return body


def _header(headers: Mapping[str, str], name: str) -> Optional[str]:
    value = headers.get(name)
    if value is not None:
        return value
    lowered = name.lower()
    for key, candidate in headers.items():
        if key.lower() == lowered:
            return candidate
    return None


class Orchestrator:
    def __init__(
        self,
        config: EngineConfig,
        agent: Optional[BuildAgent] = None,
        workspace: Optional[WorkspaceManager] = None,
        artifact_store: Optional[ArtifactStore] = None,
        selector: Optional[DeploymentSelector] = None,
        sinks: Optional[List[NotificationSink]] = None,
        archive: Optional[RunArchive] = None,
        reporter: Optional[StatusReporter] = None,
        load_archive: bool = False,
    ) -> None:
        self.config = config
        store_config = config.artifact_store
        self.artifact_store = artifact_store or create_artifact_store(
            store_config.kind, root=store_config.root, bucket=store_config.bucket,
            prefix=store_config.prefix, region=store_config.region,
        )
        self.selector = selector or DeploymentSelector(artifact_store=self.artifact_store)
        self.reporter = reporter or StatusReporter(
            sinks if sinks is not None else build_sinks(config),
            max_attempts=config.reporter_max_attempts,
            backoff_base=config.reporter_backoff_seconds,
        )
        self.handlers = StageHandlers(
            config,
            workspace or WorkspaceManager(config.workspace_root, config.github_token),
            agent or create_build_agent(config.build_agent, config.docker_image),
            self.artifact_store,
            self.selector,
            self.reporter,
            on_artifact=self._register_artifact,
        )
        self.archive = archive or RunArchive(config.archive_path)
        if load_archive:
            self.archive.load()

        self.scheduler = BuildScheduler(
            capacity=config.agent_pool_capacity,
            max_ready_depth=config.ready_queue_max_depth,
            run_executor=self._run_pipeline,
            on_dropped=self._on_dropped,
            first_run_id=self.archive.last_run_id() + 1,
        )
        self.queue = CoalescingQueue(config.debounce_window_seconds, self.scheduler.submit)

        self._machines: Dict[int, PipelineStateMachine] = {}
        # run_id → (artifact, request that built it); older runs come from the archive
        self._artifacts: OrderedDict[int, Tuple[ArtifactReference, BuildRequest]] = OrderedDict()
        self.dropped: Deque[QueueEntry] = deque(maxlen=_DROPPED_HISTORY)
        self.rejected_total = 0
        self.skipped_total = 0

    # ------------------------------------------------------------------
    # Inbound webhook
    # ------------------------------------------------------------------
    async def handle_webhook(self, raw_body: bytes, headers: Mapping[str, str]) -> WebhookOutcome:
        delivery = _header(headers, DELIVERY_HEADER) or "-"
        verification = verify_signature(raw_body, _header(headers, SIGNATURE_HEADER), self.config.webhook_secret)
        if not verification.accepted:
            self.rejected_total += 1
            logger.warning("Webhook %s rejected: %s", delivery, verification.reason)
            return WebhookOutcome(http_status_for(verification.reason), "rejected", verification.reason)

        event_type = _header(headers, EVENT_HEADER)
        result = normalize_event(
            parse_payload(raw_body),
            event_type,
            trigger_events=self.config.trigger_events,
            raw_body=raw_body,
        )

        if result.outcome == "SKIPPED":
            self.skipped_total += 1
            logger.info("Webhook %s skipped: %s", delivery, result.detail)
            return WebhookOutcome(200, "skipped", detail=result.detail)

        if result.outcome == "FAILED" or result.build_request is None:
            self.rejected_total += 1
            reason = result.reason or MALFORMED_PAYLOAD
            logger.warning("Webhook %s rejected: %s (%s)", delivery, reason, result.detail)
            return WebhookOutcome(http_status_for(reason), "rejected", reason, result.detail)

        entry = await self.queue.submit(result.build_request)
        return WebhookOutcome(200, "accepted", entry_id=entry.entry_id)

    # ------------------------------------------------------------------
    # Run execution (scheduler executor)
    # ------------------------------------------------------------------
    def stages_for(self, run: PipelineRun):
        if run.rollback_environment:
            return [s for s in self.config.stage_definitions if s.kind in ("deploy", "notify")]
        return self.config.stage_definitions

    async def _run_pipeline(self, run: PipelineRun) -> PipelineRun:
        machine = PipelineStateMachine(
            run,
            self.stages_for(run),
            self.handlers.as_mapping(),
            retry_max_attempts=self.config.retry_max_attempts,
            on_transition=self.reporter.publish,
        )
        self._machines[run.run_id] = machine
        try:
            return await machine.execute()
        finally:
            self._machines.pop(run.run_id, None)
            self.reporter.release(run.run_id)
            self.handlers.release(run.run_id)
            self.archive.archive(run)

    def _register_artifact(self, artifact: ArtifactReference) -> None:
        run = self.scheduler.get_active_run(artifact.pipeline_run_id)
        if run is not None:
            self._artifacts[artifact.pipeline_run_id] = (artifact, run.build_request)
            while len(self._artifacts) > RUN_HISTORY_LIMIT:
                self._artifacts.popitem(last=False)

    def _on_dropped(self, entry: QueueEntry) -> None:
        self.dropped.append(entry)

    # ------------------------------------------------------------------
    # External controls
    # ------------------------------------------------------------------
    def abort(self, run_id: int, reason: str = "aborted by request") -> bool:
        machine = self._machines.get(run_id)
        if machine is None:
            return False
        return machine.abort(reason)

    def _find_artifact(self, environment_name: str, artifact_run_id: Optional[int]) -> Optional[ArtifactReference]:
        if artifact_run_id is None:
            return self.selector.previous(environment_name)
        known = self._artifacts.get(artifact_run_id)
        if known is not None:
            return known[0]
        for artifact in self.selector.history(environment_name):
            if artifact.pipeline_run_id == artifact_run_id:
                return artifact
        archived = self.archive.get(artifact_run_id)
        return archived.artifact if archived is not None else None

    async def request_rollback(self, environment_name: str, artifact_run_id: Optional[int] = None) -> QueueEntry:
        """
        Queue a rollback run for ``environment_name``.

        Without ``artifact_run_id`` the target is the artifact that was live
        before the current one.

        Raises
        ------
        RollbackError
            Unknown environment, or no artifact to roll back to.
        """
        if self.config.target(environment_name) is None:
            raise RollbackError(f"unknown environment '{environment_name}'")
        artifact = self._find_artifact(environment_name, artifact_run_id)
        if artifact is None:
            raise RollbackError(f"no artifact to roll back to for '{environment_name}'")

        origin: Optional[BuildRequest] = None
        if artifact.pipeline_run_id in self._artifacts:
            origin = self._artifacts[artifact.pipeline_run_id][1]
        else:
            archived = self.archive.get(artifact.pipeline_run_id)
            origin = archived.build_request if archived is not None else None
        request = BuildRequest(
            source_ref=f"rollback/{environment_name}",
            commit_sha=origin.commit_sha if origin else "",
            repository_identifier=origin.repository_identifier if origin else "rollback",
            repository_url=origin.repository_url if origin else "",
            trigger_event_type="rollback",
            received_at=datetime.now(timezone.utc),
        )
        entry = QueueEntry(
            build_request=request,
            state="SCHEDULED",
            rollback_artifact=artifact,
            rollback_environment=environment_name,
        )
        logger.info("Rollback of %s to run %d requested", environment_name, artifact.pipeline_run_id)
        await self.scheduler.submit(entry)
        return entry

    # ------------------------------------------------------------------
    # Observation
    # ------------------------------------------------------------------
    def get_run(self, run_id: int) -> Optional[PipelineRun]:
        return self.scheduler.get_active_run(run_id) or self.archive.get(run_id)

    def list_runs(self, limit: int = 50) -> Dict[str, List[PipelineRun]]:
        return {
            "active": self.scheduler.active_runs(),
            "finished": self.archive.recent(limit),
        }

    def status(self) -> Dict[str, Any]:
        return {
            "scheduler": self.scheduler.metrics(),
            "queue": {
                "pending": self.queue.pending_count(),
                "submitted_total": self.queue.submitted_total,
                "superseded_total": self.queue.superseded_total,
                "scheduled_total": self.queue.scheduled_total,
                "pending_entries": [
                    {
                        "entry_id": e.entry_id,
                        "repository": e.build_request.repository_identifier,
                        "ref": e.build_request.source_ref,
                        "commit_sha": e.build_request.commit_sha,
                    }
                    for e in self.queue.pending_entries()
                ],
            },
            "webhooks": {"rejected_total": self.rejected_total, "skipped_total": self.skipped_total},
            "reporter": {
                "delivered_total": self.reporter.delivered_total,
                "undelivered_total": len(self.reporter.undelivered),
            },
            "dropped": [e.entry_id for e in self.dropped],
        }

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    async def drain(self) -> None:
        """Promote pending entries and wait for every run to finish."""
        await self.queue.flush()
        await self.queue.wait_promotions()
        await self.scheduler.wait_idle()

    async def shutdown(self) -> None:
        await self.queue.close()
        await self.scheduler.shutdown()
        await self.reporter.close()
        logger.info("Orchestrator stopped")
