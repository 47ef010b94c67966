"""Ask/say message channel between a task and its presentation layer.

``say`` is fire-and-forget output. ``ask`` posts a question and blocks
until the presentation layer answers through ``respond()``, the task is
aborted, or a newer message supersedes the ask. Partial messages are
updated in place and keep the timestamp identity they were created with.
"""

import asyncio
import dataclasses
from typing import Callable, List, Optional, Protocol, Tuple, Union

from .errors import AskSuperseded, TaskAborted
from .interrupt import AbortSignal
from .logger import get_logger, truncate
from .messages import AskKind, AskResponse, AskResult, SayKind, UIMessage, now_ms

_log = get_logger("channel")


class Presenter(Protocol):
    """Sink for UI messages. ``is_update`` marks an in-place update."""

    async def post(self, message: UIMessage, is_update: bool) -> None:
        ...


class MessageChannel:
    def __init__(
        self,
        ui_messages: List[UIMessage],
        abort_signal: AbortSignal,
        presenter: Optional[Presenter] = None,
        on_change: Optional[Callable[[], None]] = None,
        is_abandoned: Optional[Callable[[], bool]] = None,
    ):
        self.ui_messages = ui_messages
        self.presenter = presenter
        self._abort = abort_signal
        self._on_change = on_change or (lambda: None)
        self._is_abandoned = is_abandoned or (lambda: False)
        self._pending: Optional[Tuple[int, asyncio.Future]] = None
        self._last_issued_ts = max((m.ts for m in ui_messages), default=0)

    # ── identity ─────────────────────────────────────────────

    def sync_identity(self) -> None:
        """Continue timestamps after messages loaded from storage."""
        self._last_issued_ts = max((m.ts for m in self.ui_messages), default=self._last_issued_ts)

    def _next_ts(self) -> int:
        ts = max(now_ms(), self._last_issued_ts + 1)
        self._last_issued_ts = ts
        return ts

    def _supersede_pending(self, ts: int) -> None:
        if self._pending is None:
            return
        pending_ts, future = self._pending
        if pending_ts != ts and not future.done():
            _log.debug("ask ts=%d superseded by ts=%d", pending_ts, ts)
            future.set_exception(AskSuperseded(f"ask {pending_ts} superseded by {ts}"))

    def _append(self, message: UIMessage) -> None:
        self.ui_messages.append(message)
        self._supersede_pending(message.ts)

    def _last_partial(self, type_: str, kind: Union[AskKind, SayKind]) -> Optional[UIMessage]:
        if not self.ui_messages:
            return None
        last = self.ui_messages[-1]
        if not last.partial or last.type != type_:
            return None
        if (last.ask if type_ == "ask" else last.say) != kind:
            return None
        return last

    async def _post(self, message: UIMessage, is_update: bool) -> None:
        if self.presenter is None or self._is_abandoned():
            return
        await self.presenter.post(dataclasses.replace(message, images=list(message.images)), is_update)

    # ── ask ──────────────────────────────────────────────────

    async def ask(
        self,
        kind: Union[AskKind, str],
        text: Optional[str] = None,
        partial: Optional[bool] = None,
    ) -> Optional[AskResult]:
        """Ask the user something.

        ``partial=True`` updates (or creates) a streaming preview and returns
        None immediately. Otherwise the call blocks until answered and
        returns the AskResult, or raises AskSuperseded / TaskAborted.
        """
        self._abort.check()
        kind = AskKind(kind)
        previous = self._last_partial("ask", kind)

        if partial:
            if previous is not None:
                previous.text = text
                await self._post(previous, is_update=True)
            else:
                message = UIMessage(ts=self._next_ts(), type="ask", ask=kind, text=text, partial=True)
                self._append(message)
                await self._post(message, is_update=False)
            return None

        if previous is not None:
            message = previous
            message.text = text
            message.partial = False
            is_update = True
            self._supersede_pending(message.ts)
        else:
            message = UIMessage(ts=self._next_ts(), type="ask", ask=kind, text=text)
            is_update = False
            self._append(message)

        future = asyncio.get_running_loop().create_future()
        self._pending = (message.ts, future)
        self._on_change()
        _log.info("ask %s ts=%d: %s", kind.value, message.ts, truncate(text or "", 120))
        await self._post(message, is_update=is_update)

        try:
            result = await self._abort.race(future)
        finally:
            if self._pending is not None and self._pending[1] is future:
                self._pending = None
        _log.info("ask %s ts=%d answered: %s", kind.value, message.ts, result.response.value)
        return result

    def respond(
        self,
        response: Union[AskResponse, str],
        text: Optional[str] = None,
        images: Optional[List[str]] = None,
        ts: Optional[int] = None,
    ) -> bool:
        """Answer the pending ask. Returns False when nothing is waiting.

        With ``ts`` the answer only applies to that ask; an answer to an ask
        that was superseded and posted again is ignored.
        """
        if self._pending is None or self._pending[1].done():
            _log.debug("response %s ignored: no pending ask", response)
            return False
        if ts is not None and self._pending[0] != ts:
            _log.debug("response %s ignored: ask ts=%d is no longer pending", response, ts)
            return False
        self._pending[1].set_result(AskResult(AskResponse(response), text, list(images or [])))
        return True

    @property
    def pending_ask(self) -> Optional[UIMessage]:
        if self._pending is None or self._pending[1].done():
            return None
        ts = self._pending[0]
        for message in reversed(self.ui_messages):
            if message.ts == ts:
                return message
        return None

    def abort(self) -> None:
        """Fail the pending ask, if any, with TaskAborted."""
        if self._pending is not None and not self._pending[1].done():
            self._pending[1].set_exception(TaskAborted("ask aborted"))

    # ── say ──────────────────────────────────────────────────

    async def say(
        self,
        kind: Union[SayKind, str],
        text: Optional[str] = None,
        images: Optional[List[str]] = None,
        partial: Optional[bool] = None,
    ) -> UIMessage:
        """Show something to the user. Returns the (possibly updated) message."""
        self._abort.check()
        kind = SayKind(kind)
        previous = self._last_partial("say", kind)

        if previous is not None and partial is not None:
            previous.text = text
            previous.images = list(images or [])
            previous.partial = bool(partial)
            if not partial:
                self._supersede_pending(previous.ts)
                self._on_change()
            await self._post(previous, is_update=True)
            return previous

        message = UIMessage(
            ts=self._next_ts(), type="say", say=kind, text=text,
            images=list(images or []), partial=bool(partial),
        )
        self._append(message)
        if not partial:
            self._on_change()
            _log.debug("say %s ts=%d: %s", kind.value, message.ts, truncate(text or "", 120))
        await self._post(message, is_update=False)
        return message

    async def update(self, message: UIMessage) -> None:
        """Re-post a message whose fields were changed in place."""
        self._on_change()
        await self._post(message, is_update=True)

    def remove_last_partial(self, type_: str, kind: Union[AskKind, SayKind, str]) -> bool:
        """Drop a trailing partial preview, e.g. when a tool turns out auto-approved."""
        kind = AskKind(kind) if type_ == "ask" else SayKind(kind)
        last = self._last_partial(type_, kind)
        if last is None:
            return False
        self.ui_messages.pop()
        self._on_change()
        return True

    def find_last(self, predicate: Callable[[UIMessage], bool]) -> Optional[UIMessage]:
        for message in reversed(self.ui_messages):
            if predicate(message):
                return message
        return None
