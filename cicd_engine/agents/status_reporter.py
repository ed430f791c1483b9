"""
Status Reporter
===============
Publishes PipelineRun transitions to the configured sinks.

Delivery guarantees:
  - Per run, transitions are delivered in the order they occurred: each run
    has one asyncio.Queue drained by one worker task.
  - At-least-once per (transition, sink): a failed send is retried with
    exponential backoff (backoff_base * 2**n) up to ``max_attempts``.
  - Exhausted retries are logged as UNDELIVERED and counted, never raised.
  - Cross-run order is not guaranteed.

``publish`` is synchronous so it can be used directly as the state machine's
transition listener. ``flush(run_id)`` waits until everything published for
the run so far has been delivered (or marked UNDELIVERED).

``release(run_id)`` retires a finished run's channel without dropping what is
still queued: the worker keeps delivering in the background and exits once
the queue is empty. ``close()`` waits for every worker, retired ones included.
"""
import asyncio
import logging
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Dict, List, Optional, Set

from cicd_engine.pipeline.state_machine import RunTransition
from cicd_engine.services.notification_sinks import NotificationSink
from cicd_engine.utils.error_reasons import UNDELIVERED

logger = logging.getLogger(__name__)


@dataclass
class UndeliveredRecord:
    run_id: int
    transition_kind: str
    sink: str
    attempts: int
    error: str


# Queued behind the last transition of a released channel
_RETIRE = object()


@dataclass
class _RunChannel:
    queue: asyncio.Queue
    worker: Optional[asyncio.Task] = None
    delivered: List[str] = field(default_factory=list)


class StatusReporter:
    def __init__(
        self,
        sinks: List[NotificationSink],
        max_attempts: int = 5,
        backoff_base: float = 1.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.sinks = list(sinks)
        self.max_attempts = max(1, max_attempts)
        self.backoff_base = backoff_base
        self._sleep = sleep
        self._channels: Dict[int, _RunChannel] = {}
        self._retired: Set[asyncio.Task] = set()
        self.undelivered: List[UndeliveredRecord] = []
        self.delivered_total = 0

    # ------------------------------------------------------------------
    # Producer side
    # ------------------------------------------------------------------
    def publish(self, transition: RunTransition) -> None:
        run_id = transition.run.run_id
        channel = self._channels.get(run_id)
        if channel is None:
            channel = _RunChannel(queue=asyncio.Queue())
            self._channels[run_id] = channel
        channel.queue.put_nowait(transition)
        if channel.worker is None or channel.worker.done():
            channel.worker = asyncio.ensure_future(self._drain(run_id, channel))

    async def flush(self, run_id: int) -> None:
        channel = self._channels.get(run_id)
        if channel is None:
            return
        await channel.queue.join()

    def release(self, run_id: int) -> None:
        """Retire a finished run's channel; queued transitions are still delivered."""
        channel = self._channels.pop(run_id, None)
        if channel is None or channel.worker is None or channel.worker.done():
            return
        pending = channel.queue.qsize()
        if pending:
            logger.info("[REPORTER] run %d released with %d transition(s) still queued", run_id, pending)
        channel.queue.put_nowait(_RETIRE)
        self._retired.add(channel.worker)
        channel.worker.add_done_callback(self._retired.discard)

    def delivered_for(self, run_id: int) -> List[str]:
        channel = self._channels.get(run_id)
        return list(channel.delivered) if channel else []

    async def close(self) -> None:
        for run_id in list(self._channels):
            self.release(run_id)
        if self._retired:
            await asyncio.gather(*list(self._retired), return_exceptions=True)

    # ------------------------------------------------------------------
    # Worker side
    # ------------------------------------------------------------------
    async def _drain(self, run_id: int, channel: _RunChannel) -> None:
        while True:
            transition = await channel.queue.get()
            if transition is _RETIRE:
                channel.queue.task_done()
                return
            try:
                for sink in self.sinks:
                    if not sink.accepts(transition):
                        continue
                    if await self._deliver(sink, transition):
                        channel.delivered.append(f"{sink.name}:{transition.kind}")
            finally:
                channel.queue.task_done()

    async def _deliver(self, sink: NotificationSink, transition: RunTransition) -> bool:
        run_id = transition.run.run_id
        last_error = ""
        for attempt in range(1, self.max_attempts + 1):
            try:
                await sink.send(transition)
                self.delivered_total += 1
                return True
            except Exception as e:
                last_error = f"{type(e).__name__}: {e}"
                if attempt == self.max_attempts:
                    break
                delay = self.backoff_base * (2 ** (attempt - 1))
                logger.warning(
                    "[REPORTER] run %d %s → %s failed (attempt %d/%d), retrying in %.1fs: %s",
                    run_id, transition.kind, sink.name, attempt, self.max_attempts, delay, last_error,
                )
                await self._sleep(delay)

        self.undelivered.append(UndeliveredRecord(
            run_id=run_id,
            transition_kind=transition.kind,
            sink=sink.name,
            attempts=self.max_attempts,
            error=last_error,
        ))
        logger.error("[REPORTER] %s run %d %s → %s after %d attempts: %s",
                     UNDELIVERED, run_id, transition.kind, sink.name, self.max_attempts, last_error)
        return False
