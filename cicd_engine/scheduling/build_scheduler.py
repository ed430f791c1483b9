"""
Build Scheduler
===============
Assigns SCHEDULED queue entries to a bounded pool of Build Agents.

Rules:
    - Pool capacity C: at most C Pipeline Runs execute at once.
    - Strict FIFO over the ready queue; no priorities.
    - No free agent → entry waits (NO_CAPACITY is a wait state, not an error).
    - Ready queue deeper than ``max_ready_depth`` → the OLDEST waiting entry
      is rejected with BACKPRESSURE_DROPPED. It is not retried; the caller
      must resubmit.
    - A waiting entry for a (repo, ref) is superseded by a newer entry for
      the same key, so a queued-but-unstarted build never runs stale code.

Run ids are assigned at dispatch, under the pool lock, so they are
monotonic in start order.
"""
import asyncio
import itertools
import logging
from collections import deque
from typing import Any, Awaitable, Callable, Deque, Dict, List, Literal, Optional

from cicd_engine.models.pipeline_run import PipelineRun
from cicd_engine.models.queue_entry import QueueEntry
from cicd_engine.utils.error_reasons import BACKPRESSURE_DROPPED, NO_CAPACITY

logger = logging.getLogger(__name__)

SubmitOutcome = Literal["STARTED", "WAITING"]
RunExecutor = Callable[[PipelineRun], Awaitable[Any]]
DropCallback = Callable[[QueueEntry], Any]


class BuildScheduler:
    """
    Owns the agent pool and the ready queue.

    The run executor receives a freshly created PipelineRun bound to an
    agent; the agent is released when the executor returns (or raises, or
    is cancelled).
    """

    def __init__(
        self,
        capacity: int,
        max_ready_depth: int,
        run_executor: RunExecutor,
        on_dropped: Optional[DropCallback] = None,
        first_run_id: int = 1,
    ) -> None:
        if capacity < 1:
            raise ValueError("capacity must be >= 1")
        if max_ready_depth < 1:
            raise ValueError("max_ready_depth must be >= 1")
        self._capacity = capacity
        self._max_ready_depth = max_ready_depth
        self._run_executor = run_executor
        self._on_dropped = on_dropped

        self._lock = asyncio.Lock()
        self._free_agents: Deque[str] = deque(f"agent-{i}" for i in range(1, capacity + 1))
        self._ready: Deque[QueueEntry] = deque()
        self._active: Dict[int, asyncio.Task] = {}
        self._runs: Dict[int, PipelineRun] = {}
        self._run_ids = itertools.count(first_run_id)
        self._idle = asyncio.Event()
        self._idle.set()

        # Telemetry
        self.total_started = 0
        self.total_completed = 0
        self.total_dropped = 0
        self.total_superseded = 0

    # ------------------------------------------------------------------
    # Submission
    # ------------------------------------------------------------------
    async def submit(self, entry: QueueEntry) -> SubmitOutcome:
        """Append an entry to the ready queue and dispatch what capacity allows."""
        dropped: List[QueueEntry] = []

        async with self._lock:
            self._idle.clear()
            if not entry.is_rollback:
                self._supersede_waiting_locked(entry)
            self._ready.append(entry)

            while len(self._ready) > self._max_ready_depth:
                oldest = self._ready.popleft()
                oldest.state = "DROPPED"
                self.total_dropped += 1
                dropped.append(oldest)

            self._dispatch_locked()
            started = entry.entry_id not in {e.entry_id for e in self._ready}
            depth = len(self._ready)

        for old in dropped:
            logger.warning(
                "[SCHEDULER] %s entry %d | %s@%s | sha=%s — resubmit required",
                BACKPRESSURE_DROPPED, old.entry_id, old.key[0], old.key[1],
                old.build_request.short_sha,
            )
            if self._on_dropped is not None:
                try:
                    self._on_dropped(old)
                except Exception:
                    logger.exception("[SCHEDULER] on_dropped callback failed")

        if started:
            return "STARTED"
        logger.info(
            "[SCHEDULER] %s — entry %d waiting (depth=%d)",
            NO_CAPACITY, entry.entry_id, depth,
        )
        return "WAITING"

    def _supersede_waiting_locked(self, entry: QueueEntry) -> None:
        for waiting in list(self._ready):
            if waiting.key == entry.key and not waiting.is_rollback:
                self._ready.remove(waiting)
                waiting.state = "SUPERSEDED"
                waiting.superseded_by = entry.entry_id
                self.total_superseded += 1
                logger.info(
                    "[SCHEDULER] Waiting entry %d superseded by %d (%s@%s)",
                    waiting.entry_id, entry.entry_id, entry.key[0], entry.key[1],
                )

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------
    def _dispatch_locked(self) -> None:
        while self._free_agents and self._ready:
            entry = self._ready.popleft()
            agent_id = self._free_agents.popleft()
            run = PipelineRun(
                run_id=next(self._run_ids),
                build_request=entry.build_request,
                assigned_agent_id=agent_id,
                artifact=entry.rollback_artifact,
                rollback_of_run_id=(
                    entry.rollback_artifact.pipeline_run_id if entry.rollback_artifact else None
                ),
                rollback_environment=entry.rollback_environment,
            )
            self._runs[run.run_id] = run
            self._active[run.run_id] = asyncio.ensure_future(self._execute(run))
            self.total_started += 1
            logger.info(
                "[SCHEDULER] Run %d → %s | %s@%s | sha=%s | active=%d/%d",
                run.run_id, agent_id,
                run.build_request.repository_identifier, run.build_request.source_ref,
                run.build_request.short_sha, len(self._active), self._capacity,
            )

    async def _execute(self, run: PipelineRun) -> None:
        try:
            await self._run_executor(run)
        except asyncio.CancelledError:
            logger.warning("[SCHEDULER] Run %d cancelled", run.run_id)
            raise
        except Exception:
            logger.exception("[SCHEDULER] Run %d executor crashed", run.run_id)
        finally:
            await self._release(run)

    async def _release(self, run: PipelineRun) -> None:
        async with self._lock:
            self._active.pop(run.run_id, None)
            self._runs.pop(run.run_id, None)
            self._free_agents.append(run.assigned_agent_id)
            self.total_completed += 1
            self._dispatch_locked()
            if not self._active and not self._ready:
                self._idle.set()
        logger.info(
            "[SCHEDULER] Run %d released %s | status=%s",
            run.run_id, run.assigned_agent_id, run.overall_status,
        )

    # ------------------------------------------------------------------
    # Observation / lifecycle
    # ------------------------------------------------------------------
    def metrics(self) -> Dict[str, int]:
        return {
            "queue_depth": len(self._ready),
            "active_runs": len(self._active),
            "capacity": self._capacity,
            "free_agents": len(self._free_agents),
            "total_started": self.total_started,
            "total_completed": self.total_completed,
            "total_dropped": self.total_dropped,
            "total_superseded": self.total_superseded,
        }

    @property
    def queue_depth(self) -> int:
        return len(self._ready)

    @property
    def active_count(self) -> int:
        return len(self._active)

    def active_runs(self) -> List[PipelineRun]:
        return list(self._runs.values())

    def get_active_run(self, run_id: int) -> Optional[PipelineRun]:
        return self._runs.get(run_id)

    def waiting_entries(self) -> List[QueueEntry]:
        return list(self._ready)

    async def wait_idle(self) -> None:
        """Block until no run is active and nothing is waiting."""
        await self._idle.wait()

    async def shutdown(self) -> None:
        """Cancel active runs and drop waiting entries."""
        async with self._lock:
            for entry in self._ready:
                entry.state = "DROPPED"
            self._ready.clear()
            tasks = list(self._active.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        logger.info("[SCHEDULER] Shutdown complete (%d runs cancelled)", len(tasks))
