"""
Cancellation Token
==================
Cooperative stop signal shared between a Pipeline State Machine and the
collaborators executing its current stage.

Collaborators check the token at their boundaries (before launching a
process, between polls of a container, before each deploy step) and release
their resources when it is set.
"""
import asyncio


class StageCancelled(Exception):
    """Raised by collaborators that observe a cancelled token."""


class CancellationToken:

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.reason = ""

    def cancel(self, reason: str = "") -> None:
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise StageCancelled(self.reason or "cancelled")

    async def wait(self) -> None:
        await self._event.wait()
