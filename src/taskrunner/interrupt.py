"""Abort signalling for a running task.

Every suspension point of a task (waiting on an ask, reading the next
stream chunk, awaiting a tool) races its awaitable against the task's
``AbortSignal`` so an abort is observed within one scheduling tick.
"""

import asyncio
from typing import Awaitable, Optional, TypeVar

from .errors import TaskAborted
from .logger import get_logger

T = TypeVar("T")

_log = get_logger("interrupt")


class AbortSignal:
    """Shared abort state for one task."""

    def __init__(self):
        self._event: Optional[asyncio.Event] = None
        self.aborted = False
        self.reason = ""

    def _get_event(self) -> asyncio.Event:
        if self._event is None:
            self._event = asyncio.Event()
            if self.aborted:
                self._event.set()
        return self._event

    def trigger(self, reason: str = "user") -> None:
        self.aborted = True
        self.reason = reason
        if self._event is not None:
            self._event.set()

    def check(self) -> None:
        """Raise TaskAborted if the task has been aborted."""
        if self.aborted:
            raise TaskAborted(self.reason)

    async def wait(self) -> None:
        await self._get_event().wait()

    async def race(self, awaitable: Awaitable[T]) -> T:
        """Await ``awaitable`` unless the task is aborted first.

        On abort the awaitable is cancelled and TaskAborted is raised.
        """
        self.check()
        work = asyncio.ensure_future(awaitable)
        aborted = asyncio.ensure_future(self.wait())
        try:
            done, _ = await asyncio.wait({work, aborted}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            work.cancel()
            raise
        finally:
            aborted.cancel()
        if work in done:
            return work.result()
        work.cancel()
        try:
            await work
        except (asyncio.CancelledError, StopAsyncIteration):
            pass
        except Exception as e:
            _log.debug("operation failed while aborting: %s", e)
        raise TaskAborted(self.reason)
