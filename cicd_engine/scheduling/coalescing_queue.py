"""
Coalescing Queue
================
Prevents build storms from rapid pushes to the same ref.

Algorithm (per BuildRequest.key; pull requests key on their PR number):
    - New request, no PENDING entry   → insert PENDING, start debounce timer.
    - New request, PENDING entry      → old entry SUPERSEDED, its timer
                                        cancelled; new entry PENDING with a
                                        fresh timer.
    - Timer expires undisturbed       → entry SCHEDULED and handed to the
                                        Build Scheduler (carries the newest
                                        commit seen for the key).

Debounce timers are scheduled loop callbacks (``loop.call_later``), one per
key, cancelled and restarted on supersession. No polling.

Invariant: at most one PENDING entry per key. Keys are fully independent.
"""
import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, Tuple

from cicd_engine.models.build_request import BuildRequest
from cicd_engine.models.queue_entry import QueueEntry

logger = logging.getLogger(__name__)

Key = Tuple[str, str]
ScheduledCallback = Callable[[QueueEntry], Awaitable[Any]]


class CoalescingQueue:
    """
    Owned, internally-synchronized debounce queue.

    Only ``submit``, ``flush`` and ``close`` mutate state; all of them run
    inside the queue's lock.
    """

    def __init__(self, debounce_window_seconds: float, on_scheduled: ScheduledCallback) -> None:
        if debounce_window_seconds < 0:
            raise ValueError("debounce_window_seconds must be >= 0")
        self._window = debounce_window_seconds
        self._on_scheduled = on_scheduled
        self._lock = asyncio.Lock()
        self._pending: Dict[Key, QueueEntry] = {}
        self._timers: Dict[Key, asyncio.TimerHandle] = {}
        self._promotions: Set[asyncio.Task] = set()
        self._closed = False

        # Telemetry
        self.submitted_total = 0
        self.superseded_total = 0
        self.scheduled_total = 0

    @property
    def debounce_window_seconds(self) -> float:
        return self._window

    async def submit(self, request: BuildRequest) -> QueueEntry:
        """Insert a request, superseding any PENDING entry for the same key."""
        loop = asyncio.get_running_loop()
        entry = QueueEntry(build_request=request)

        async with self._lock:
            if self._closed:
                raise RuntimeError("queue is closed")

            key = request.key
            previous = self._pending.get(key)
            if previous is not None:
                previous.state = "SUPERSEDED"
                previous.superseded_by = entry.entry_id
                self.superseded_total += 1
                timer = self._timers.pop(key, None)
                if timer is not None:
                    timer.cancel()
                logger.info(
                    "[QUEUE] %s@%s superseded by %s (entry %d → %d)",
                    key[0], key[1], request.short_sha,
                    previous.entry_id, entry.entry_id,
                )

            self._pending[key] = entry
            self._timers[key] = loop.call_later(
                self._window, self._on_timer, key, entry.entry_id,
            )
            self.submitted_total += 1

        logger.info(
            "[QUEUE] PENDING entry %d | %s@%s | sha=%s | window=%.2fs",
            entry.entry_id, key[0], key[1], request.short_sha, self._window,
        )
        return entry

    def _on_timer(self, key: Key, entry_id: int) -> None:
        task = asyncio.ensure_future(self._promote(key, entry_id))
        self._promotions.add(task)
        task.add_done_callback(self._promotions.discard)

    async def _promote(self, key: Key, entry_id: int) -> None:
        async with self._lock:
            entry = self._pending.get(key)
            # Superseded between timer firing and lock acquisition
            if entry is None or entry.entry_id != entry_id or entry.state != "PENDING":
                return
            del self._pending[key]
            self._timers.pop(key, None)
            entry.state = "SCHEDULED"
            self.scheduled_total += 1

        await self._hand_off(entry)

    async def _hand_off(self, entry: QueueEntry) -> None:
        logger.info(
            "[QUEUE] SCHEDULED entry %d | %s@%s | sha=%s",
            entry.entry_id, entry.key[0], entry.key[1], entry.build_request.short_sha,
        )
        try:
            await self._on_scheduled(entry)
        except Exception:
            logger.exception("[QUEUE] Scheduler hand-off failed for entry %d", entry.entry_id)

    async def flush(self) -> List[QueueEntry]:
        """Promote every PENDING entry immediately, in insertion order."""
        async with self._lock:
            entries = list(self._pending.values())
            for timer in self._timers.values():
                timer.cancel()
            self._pending.clear()
            self._timers.clear()
            for entry in entries:
                entry.state = "SCHEDULED"
            self.scheduled_total += len(entries)

        for entry in entries:
            await self._hand_off(entry)
        return entries

    async def close(self) -> None:
        """Cancel all debounce timers and drop pending entries."""
        async with self._lock:
            self._closed = True
            for timer in self._timers.values():
                timer.cancel()
            self._timers.clear()
            dropped = len(self._pending)
            self._pending.clear()
        for task in list(self._promotions):
            task.cancel()
        if dropped:
            logger.warning("[QUEUE] Closed with %d pending entries discarded", dropped)

    async def wait_promotions(self) -> None:
        """Wait for in-flight timer promotions to finish handing off."""
        while self._promotions:
            await asyncio.gather(*list(self._promotions), return_exceptions=True)

    def pending_count(self) -> int:
        return len(self._pending)

    def pending_for(self, repository_identifier: str, source_ref: str) -> Optional[QueueEntry]:
        return self._pending.get((repository_identifier, source_ref))

    def pending_entries(self) -> List[QueueEntry]:
        return list(self._pending.values())
