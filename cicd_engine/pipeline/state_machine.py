"""
Pipeline State Machine
======================
Drives a single PipelineRun through its ordered stages.

States:
    CHECKOUT → BUILD → TEST → QUALITY → PACKAGE → DEPLOY → NOTIFY
    terminal: SUCCEEDED | FAILED | ABORTED

Transition rules:
    SUCCESS                         → next stage by ordinal
    FAILURE + ABORT_PIPELINE        → FAILED; remaining stages skipped
                                      except NOTIFY
    FAILURE + CONTINUE_WITH_WARNING → recorded as a warning, advance
    ABORT signal (any time)         → in-flight stage cancelled, ABORTED,
                                      NOTIFY still runs
    task cancelled (engine shutdown)→ ABORTED; the terminal transition is
                                      still published, NOTIFY is not awaited

Retry policy:
    A retryable stage is re-attempted up to ``retry_max_attempts`` times
    (no backoff) before its failure is final. Every attempt is recorded.

Timeouts:
    Each attempt runs under ``asyncio.wait_for(stage.timeout_seconds)``.
    Expiry cancels the handler and records FAILURE(TIMEOUT).

BOUNDARY RULES:
    - The machine never interprets collaborator output; it records the
      reported outcome, reason and elapsed time.
    - Collaborator exceptions are recorded as FAILURE(COMMAND_ERROR),
      never propagated.
    - The terminal status is decided BEFORE NOTIFY runs, so NOTIFY can
      publish it.
"""
import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Awaitable, Callable, Dict, List, Literal, Mapping, Optional

from cicd_engine.models.pipeline_run import PipelineRun, StageRecord
from cicd_engine.models.stage_definition import StageDefinition
from cicd_engine.pipeline.cancellation import CancellationToken, StageCancelled
from cicd_engine.utils.error_reasons import ABORTED, COMMAND_ERROR, TIMEOUT

logger = logging.getLogger(__name__)

ResultOutcome = Literal["SUCCESS", "FAILURE", "ABORTED"]
TransitionKind = Literal["run_started", "stage_started", "stage_finished", "terminal"]


@dataclass(frozen=True)
class StageResult:
    outcome: ResultOutcome
    reason: str = ""
    detail: str = ""

    @classmethod
    def success(cls, detail: str = "") -> "StageResult":
        return cls("SUCCESS", detail=detail)

    @classmethod
    def failure(cls, reason: str, detail: str = "") -> "StageResult":
        return cls("FAILURE", reason=reason, detail=detail)

    @classmethod
    def aborted(cls, detail: str = "") -> "StageResult":
        return cls("ABORTED", reason=ABORTED, detail=detail)


@dataclass(frozen=True)
class RunTransition:
    """Snapshot of a run at one state transition, in occurrence order."""
    kind: TransitionKind
    run: PipelineRun
    stage_name: Optional[str] = None
    outcome: Optional[str] = None
    reason: str = ""

    @property
    def is_terminal(self) -> bool:
        return self.kind == "terminal"


StageHandler = Callable[[PipelineRun, StageDefinition, CancellationToken], Awaitable[StageResult]]
TransitionListener = Callable[[RunTransition], None]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class PipelineStateMachine:
    """
    One instance per PipelineRun; owns the run for its lifetime.

    Parameters
    ----------
    run : PipelineRun
        Freshly scheduled run (overall_status RUNNING).
    stages : list[StageDefinition]
        Stages to traverse, sorted by ordinal. The ``notify`` stage runs last
        regardless of outcome.
    handlers : mapping kind → StageHandler
        Collaborators executing each stage kind.
    retry_max_attempts : int
        Extra attempts for retryable stages (default 2).
    on_transition : callable | None
        Receives a RunTransition for every state change.
    """

    def __init__(
        self,
        run: PipelineRun,
        stages: List[StageDefinition],
        handlers: Mapping[str, StageHandler],
        retry_max_attempts: int = 2,
        on_transition: Optional[TransitionListener] = None,
    ) -> None:
        self.run = run
        self.stages = sorted(stages, key=lambda s: s.ordinal)
        self.handlers: Dict[str, StageHandler] = dict(handlers)
        self.retry_max_attempts = max(0, retry_max_attempts)
        self.on_transition = on_transition
        self._token = CancellationToken()
        self._current_task: Optional[asyncio.Future] = None
        self._finalizing = False

    # ------------------------------------------------------------------
    # External control
    # ------------------------------------------------------------------
    def abort(self, reason: str = "aborted by request") -> bool:
        """
        Signal ABORT. Returns False once the run is already finalizing
        (terminal status decided, NOTIFY in progress or done).
        """
        if self._finalizing or self.run.is_terminal:
            return False
        logger.warning("[PIPELINE] Run %d abort requested: %s", self.run.run_id, reason)
        self._token.cancel(reason)
        if self._current_task is not None and not self._current_task.done():
            self._current_task.cancel()
        return True

    @property
    def abort_requested(self) -> bool:
        return self._token.cancelled

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------
    async def execute(self) -> PipelineRun:
        try:
            return await self._execute()
        except asyncio.CancelledError:
            self._abandon()
            raise

    async def _execute(self) -> PipelineRun:
        run = self.run
        body = [s for s in self.stages if s.kind != "notify"]
        notify = [s for s in self.stages if s.kind == "notify"]

        logger.info(
            "[PIPELINE] Run %d started | %s@%s | sha=%s | stages=%s",
            run.run_id, run.build_request.repository_identifier,
            run.build_request.source_ref, run.build_request.short_sha,
            ",".join(s.name for s in self.stages),
        )
        self._emit("run_started")

        for stage in body:
            if self._token.cancelled:
                break

            result = await self._run_stage(stage, self._token)

            if result.outcome == "ABORTED":
                break
            if result.outcome == "FAILURE":
                if stage.failure_policy == "CONTINUE_WITH_WARNING":
                    warning = f"{stage.name}: {result.reason}"
                    run.warnings.append(warning)
                    logger.warning("[PIPELINE] Run %d continuing with warning (%s)", run.run_id, warning)
                    continue
                run.overall_status = "FAILED"
                run.failure_reason = f"{stage.name}: {result.reason}"
                logger.error("[PIPELINE] Run %d FAILED at %s (%s)", run.run_id, stage.name, result.reason)
                break

        self._finalizing = True
        if self._token.cancelled:
            run.overall_status = "ABORTED"
            run.failure_reason = f"{ABORTED}: {self._token.reason}" if self._token.reason else ABORTED
        elif run.overall_status == "RUNNING":
            run.overall_status = "SUCCEEDED"
        self._emit("terminal", outcome=run.overall_status, reason=run.failure_reason)

        # NOTIFY always runs, with its own token so an earlier abort does not stop it
        notify_token = CancellationToken()
        for stage in notify:
            await self._run_stage(stage, notify_token)

        run.current_stage = None
        run.finished_at = _utcnow()
        logger.info(
            "[PIPELINE] Run %d finished | status=%s | stages=%d | warnings=%d",
            run.run_id, run.overall_status, len(run.stage_history), len(run.warnings),
        )
        return run

    def _abandon(self) -> None:
        """The run's task was cancelled from outside (engine shutdown)."""
        run = self.run
        if not self._finalizing:
            self._finalizing = True
            run.overall_status = "ABORTED"
            run.failure_reason = f"{ABORTED}: engine shutdown"
            logger.warning("[PIPELINE] Run %d cancelled before finishing", run.run_id)
            self._emit("terminal", outcome=run.overall_status, reason=run.failure_reason)
        run.current_stage = None
        run.finished_at = run.finished_at or _utcnow()

    async def _run_stage(self, stage: StageDefinition, token: CancellationToken) -> StageResult:
        max_attempts = 1 + (self.retry_max_attempts if stage.retryable else 0)
        result = StageResult.failure(COMMAND_ERROR, "stage never attempted")

        # NOTIFY transitions would arrive after the terminal one
        announce = stage.kind != "notify"

        for attempt in range(1, max_attempts + 1):
            self.run.current_stage = stage.name
            if announce:
                self._emit("stage_started", stage_name=stage.name)
            started_at = _utcnow()

            result = await self._attempt(stage, token)

            self.run.stage_history.append(StageRecord(
                stage_name=stage.name,
                outcome=result.outcome,
                reason=result.reason,
                attempt=attempt,
                started_at=started_at,
                ended_at=_utcnow(),
                detail=result.detail[:500],
            ))
            if announce:
                self._emit("stage_finished", stage_name=stage.name,
                           outcome=result.outcome, reason=result.reason)

            if result.outcome != "FAILURE" or token.cancelled:
                break
            if attempt < max_attempts:
                logger.warning(
                    "[PIPELINE] Run %d stage %s attempt %d/%d failed (%s), retrying",
                    self.run.run_id, stage.name, attempt, max_attempts, result.reason,
                )

        if token.cancelled and result.outcome == "FAILURE":
            return StageResult.aborted(result.detail)
        return result

    async def _attempt(self, stage: StageDefinition, token: CancellationToken) -> StageResult:
        handler = self.handlers.get(stage.kind)
        if handler is None:
            return StageResult.failure(COMMAND_ERROR, f"no handler for stage kind '{stage.kind}'")

        if token.cancelled:
            return StageResult.aborted(token.reason)

        task = asyncio.ensure_future(
            asyncio.wait_for(handler(self.run, stage, token), timeout=stage.timeout_seconds)
        )
        self._current_task = task
        try:
            result = await task
        except asyncio.TimeoutError:
            logger.error(
                "[PIPELINE] Run %d stage %s timed out after %.1fs",
                self.run.run_id, stage.name, stage.timeout_seconds,
            )
            return StageResult.failure(TIMEOUT, f"exceeded {stage.timeout_seconds}s")
        except asyncio.CancelledError:
            if token.cancelled:
                return StageResult.aborted(token.reason)
            raise
        except StageCancelled as e:
            return StageResult.aborted(str(e))
        except Exception as e:
            logger.exception("[PIPELINE] Run %d stage %s handler crashed", self.run.run_id, stage.name)
            return StageResult.failure(COMMAND_ERROR, f"{type(e).__name__}: {e}")
        finally:
            self._current_task = None

        if not isinstance(result, StageResult):
            return StageResult.failure(COMMAND_ERROR, "handler returned no StageResult")
        if token.cancelled and result.outcome != "SUCCESS":
            return StageResult.aborted(result.detail or token.reason)
        return result

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------
    def _emit(self, kind: TransitionKind, stage_name: Optional[str] = None,
              outcome: Optional[str] = None, reason: str = "") -> None:
        if self.on_transition is None:
            return
        transition = RunTransition(
            kind=kind,
            run=self.run.model_copy(deep=True),
            stage_name=stage_name,
            outcome=outcome,
            reason=reason,
        )
        try:
            self.on_transition(transition)
        except Exception:
            logger.exception("[PIPELINE] Transition listener failed for run %d", self.run.run_id)
