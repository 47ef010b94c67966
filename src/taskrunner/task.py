"""The task loop: request, stream, present, feed tool results back.

A ``Task`` owns the two histories (what the model sees and what the user
sees), the message channel, and the abort signal. Each iteration of the
loop sends one user message, streams the response through the parser
into the orchestrator, and sends the turn's tool results as the next
user message, until the model completes the task, the user aborts, or a
request fails for good.
"""

import asyncio
import json
import time
import uuid
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Set

from .assistant_message import ToolUseBlock, parse_assistant_message
from .auto_approve import AutoApprovalPolicy
from .channel import MessageChannel, Presenter
from .config import Config
from .context_management import ConversationContextManager, DeletedRange
from .cost_tracker import CostTracker
from .errors import ApiRequestFailed, TaskAborted, format_error
from .interrupt import AbortSignal
from .logger import get_logger, log_exception, truncate
from .messages import (
    ApiMessage,
    AskKind,
    AskResponse,
    SayKind,
    UIMessage,
    now_ms,
    text_part,
)
from .orchestrator import ToolOrchestrator, Turn
from .prompts import get_system_prompt
from . import responses
from .retry_stream import RetryingRequestStream, RetryState
from .storage import TaskStorage
from .streaming_client import ModelProvider, ReasoningChunk, TextChunk, UsageChunk
from .tools.registry import ToolExecutor

_log = get_logger("task")

INTERRUPTED_BY_FEEDBACK = "[Response interrupted by user feedback]"
INTERRUPTED_BY_TOOL_USE = (
    "[Response interrupted by a tool use result. Only one tool may be used at a time "
    "and should be placed at the end of the message.]"
)
INTERRUPTED_BY_USER = "[Response interrupted by user]"
INTERRUPTED_BY_API_ERROR = "[Response interrupted by API Error]"

MISTAKE_LIMIT_MESSAGE = (
    "This may indicate a failure in the model's thought process or inability to use a tool "
    "properly, which can be mitigated with some user guidance "
    '(e.g. "Try breaking down the task into smaller steps").'
)
EMPTY_RESPONSE_MESSAGE = (
    "Unexpected API Response: The language model did not provide any assistant messages. "
    "This may indicate an issue with the API or the model's output."
)


class LoopState(str, Enum):
    IDLE = "idle"
    BUILDING_CONTEXT = "building_context"
    AWAITING_RESPONSE = "awaiting_response"
    STREAMING = "streaming"
    TURN_COMPLETE = "turn_complete"
    STOPPED = "stopped"


@dataclass
class TurnOutcome:
    """``next_content`` is None when the model returned nothing."""
    did_end: bool
    next_content: Optional[List[Dict[str, Any]]] = None


def _format_ago(ms: int) -> str:
    seconds = max(ms // 1000, 0)
    for unit, size in (("day", 86400), ("hour", 3600), ("minute", 60)):
        if seconds >= size:
            n = seconds // size
            return f"{n} {unit}{'s' if n != 1 else ''} ago"
    return "just now"


class Task:
    def __init__(
        self,
        config: Config,
        provider: ModelProvider,
        executor: ToolExecutor,
        presenter: Optional[Presenter] = None,
        storage: Optional[TaskStorage] = None,
        task_id: Optional[str] = None,
        system_prompt: Optional[str] = None,
        context_manager: Optional[ConversationContextManager] = None,
        cost_tracker: Optional[CostTracker] = None,
    ):
        self.config = config
        self.provider = provider
        self.executor = executor
        self.storage = storage
        self.task_id = task_id or uuid.uuid4().hex[:12]
        self.task_text = ""

        self.api_history: List[ApiMessage] = []
        self.ui_messages: List[UIMessage] = []
        self.deleted_range: Optional[DeletedRange] = None

        self.abort_signal = AbortSignal()
        self.abandoned = False
        self.did_complete = False
        self.state = LoopState.IDLE
        self.consecutive_mistake_count = 0
        self.consecutive_auto_approved_requests_count = 0

        self.channel = MessageChannel(
            self.ui_messages,
            self.abort_signal,
            presenter=presenter,
            on_change=self.save_ui_messages,
            is_abandoned=lambda: self.abandoned,
        )
        self.context_manager = context_manager or ConversationContextManager()
        self.approval_policy = AutoApprovalPolicy(config.auto_approval, Path(config.workspace_path))
        self.orchestrator = ToolOrchestrator(self)
        self.request_stream = RetryingRequestStream(self)
        self.cost_tracker = cost_tracker or CostTracker()
        self._system_prompt = system_prompt
        self._pending_saves: Set[asyncio.Task] = set()

    @property
    def system_prompt(self) -> str:
        if self._system_prompt is None:
            self._system_prompt = get_system_prompt(str(self.config.workspace_path))
        return self._system_prompt

    # ── persistence ──────────────────────────────────────────

    def _spawn_save(self, coro, label: str) -> None:
        save = asyncio.get_running_loop().create_task(coro)
        self._pending_saves.add(save)
        save.add_done_callback(lambda t: self._on_save_done(t, label))

    def _on_save_done(self, save: asyncio.Task, label: str) -> None:
        self._pending_saves.discard(save)
        if save.cancelled():
            return
        error = save.exception()
        if error is not None:
            _log.warning("failed to save %s for task %s: %s", label, self.task_id, error)

    def save_api_history(self) -> None:
        if self.storage is None:
            return
        payload = json.dumps([m.to_dict() for m in self.api_history])
        self._spawn_save(self.storage.save_api_history(self.task_id, payload), "api history")

    def save_ui_messages(self) -> None:
        if self.storage is None:
            return
        payload = json.dumps([m.to_dict() for m in self.ui_messages])
        self._spawn_save(self.storage.save_ui_messages(self.task_id, payload), "ui messages")

    def save_metadata(self) -> None:
        if self.storage is None:
            return
        payload = json.dumps(self.metadata())
        self._spawn_save(self.storage.save_metadata(self.task_id, payload), "metadata")

    async def flush(self) -> None:
        """Wait for every scheduled save to finish."""
        while self._pending_saves:
            await asyncio.gather(*list(self._pending_saves), return_exceptions=True)

    def api_metrics(self) -> Dict[str, Any]:
        """Totals over every finished request shown in the UI stream."""
        totals = {"tokens_in": 0, "tokens_out": 0, "cache_writes": 0, "cache_reads": 0,
                  "total_cost": 0.0}
        for message in self.ui_messages:
            if message.say != SayKind.API_REQ_STARTED or not message.text:
                continue
            try:
                info = json.loads(message.text)
            except json.JSONDecodeError:
                continue
            totals["tokens_in"] += info.get("tokensIn", 0)
            totals["tokens_out"] += info.get("tokensOut", 0)
            totals["cache_writes"] += info.get("cacheWrites", 0)
            totals["cache_reads"] += info.get("cacheReads", 0)
            totals["total_cost"] += info.get("cost", 0.0)
        return totals

    def metadata(self) -> Dict[str, Any]:
        return {
            "id": self.task_id,
            "ts": self.ui_messages[-1].ts if self.ui_messages else now_ms(),
            "task": self.task_text,
            "model": self.config.model,
            "workspace": str(self.config.workspace_path),
            "deleted_range": list(self.deleted_range) if self.deleted_range else None,
            "completed": self.did_complete,
            **self.api_metrics(),
        }

    def add_to_api_history(self, message: ApiMessage) -> None:
        self.api_history.append(message)
        self.save_api_history()

    def overwrite_api_history(self, messages: List[ApiMessage]) -> None:
        self.api_history[:] = messages
        self.save_api_history()

    # ── lifecycle ────────────────────────────────────────────

    async def start_task(self, task: str, images: Optional[List[str]] = None) -> None:
        self.task_text = task
        _log.info("starting task %s: %s", self.task_id, truncate(task, 200))
        await self.channel.say(SayKind.TASK, task, images)
        self.save_metadata()
        await self.initiate_task_loop(
            [text_part(f"<task>\n{task}\n</task>"), *responses.image_blocks(images)]
        )

    async def resume_task_from_history(self) -> None:
        """Reload a saved task, ask how to continue, and re-enter the loop."""
        if self.storage is None:
            raise ValueError("resuming a task requires storage")
        snapshot = await self.storage.load(self.task_id)
        metadata = snapshot.metadata
        self.task_text = metadata.get("task", "")
        deleted_range = metadata.get("deleted_range")
        self.deleted_range = tuple(deleted_range) if deleted_range else None

        ui_messages = snapshot.ui_messages
        while ui_messages and ui_messages[-1].ask in (AskKind.RESUME_TASK, AskKind.RESUME_COMPLETED_TASK):
            ui_messages.pop()
        # A request that never finished carries neither cost nor cancel reason
        while ui_messages and ui_messages[-1].say in (SayKind.API_REQ_STARTED, SayKind.API_REQ_RETRIED):
            info = json.loads(ui_messages[-1].text or "{}") if ui_messages[-1].say == SayKind.API_REQ_STARTED else {}
            if "cost" in info or "cancelReason" in info:
                break
            ui_messages.pop()
        for message in ui_messages:
            message.partial = False
        self.ui_messages[:] = ui_messages
        self.channel.sync_identity()
        self.api_history[:] = snapshot.api_history
        _log.info("resuming task %s: %d api messages, %d ui messages",
                  self.task_id, len(self.api_history), len(self.ui_messages))

        last = self.channel.find_last(
            lambda m: m.say not in (SayKind.API_REQ_STARTED, SayKind.API_REQ_RETRIED)
        )
        last_ts = last.ts if last is not None else now_ms()
        completed = last is not None and last.ask == AskKind.COMPLETION_RESULT
        ask_kind = AskKind.RESUME_COMPLETED_TASK if completed else AskKind.RESUME_TASK

        result = await self.channel.ask(ask_kind)
        response_text = None
        images: List[str] = []
        if result.response == AskResponse.MESSAGE:
            response_text, images = result.text, result.images
            await self.channel.say(SayKind.USER_FEEDBACK, response_text, images)

        carried: List[Dict[str, Any]] = []
        if self.api_history and self.api_history[-1].role == "user":
            carried = list(self.api_history[-1].content)
            self.overwrite_api_history(self.api_history[:-1])

        ago = _format_ago(now_ms() - last_ts)
        content = carried + [
            text_part(responses.task_resumption(ago, str(self.config.workspace_path), response_text)),
            *responses.image_blocks(images),
        ]
        await self.initiate_task_loop(content)

    async def initiate_task_loop(self, user_content: List[Dict[str, Any]]) -> None:
        next_content = user_content
        try:
            while not self.abort_signal.aborted:
                did_end = await self.recursively_make_requests(next_content)
                if did_end:
                    break
                # The model answered with nothing: nudge it to use a tool
                next_content = [text_part(responses.no_tools_used())]
                self.consecutive_mistake_count += 1
        except TaskAborted as e:
            _log.info("task %s aborted: %s", self.task_id, e)
        except ApiRequestFailed as e:
            _log.warning("task %s stopped after failed request: %s", self.task_id, e)
        finally:
            self.state = LoopState.STOPPED
            self.save_metadata()
            await self.flush()

    async def abort_task(self, reason: str = "user") -> None:
        if self.abort_signal.aborted:
            return
        _log.info("aborting task %s (%s)", self.task_id, reason)
        self.abort_signal.trigger(reason)
        self.channel.abort()
        await self.executor.abort()

    async def abandon(self) -> None:
        """Abort without touching the presentation layer again."""
        self.abandoned = True
        await self.abort_task("abandoned")

    # ── requests ─────────────────────────────────────────────

    async def recursively_make_requests(self, user_content: List[Dict[str, Any]]) -> bool:
        """Run turns until the loop ends (True) or the model returns nothing (False)."""
        content = user_content
        while True:
            outcome = await self._make_request(content)
            if outcome.did_end:
                return True
            if outcome.next_content is None:
                return False
            content = outcome.next_content

    def _previous_request_tokens(self) -> int:
        message = self.channel.find_last(lambda m: m.say == SayKind.API_REQ_STARTED and bool(m.text))
        if message is None:
            return 0
        try:
            info = json.loads(message.text)
        except json.JSONDecodeError:
            return 0
        return (info.get("tokensIn", 0) + info.get("tokensOut", 0)
                + info.get("cacheWrites", 0) + info.get("cacheReads", 0))

    def _environment_details(self) -> str:
        now = datetime.now().astimezone()
        return (
            "<environment_details>\n"
            f"# Current Working Directory\n{self.config.workspace_path}\n\n"
            f"# Current Time\n{now.isoformat(timespec='seconds')}\n"
            "</environment_details>"
        )

    async def _check_limits(self, user_content: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        if self.consecutive_mistake_count >= self.config.max_consecutive_mistakes:
            result = await self.channel.ask(AskKind.MISTAKE_LIMIT_REACHED, MISTAKE_LIMIT_MESSAGE)
            if result.response == AskResponse.MESSAGE:
                await self.channel.say(SayKind.USER_FEEDBACK, result.text, result.images)
                user_content = user_content + [
                    text_part(responses.too_many_mistakes(result.text)),
                    *responses.image_blocks(result.images),
                ]
            self.consecutive_mistake_count = 0

        max_requests = self.approval_policy.max_requests
        if max_requests is not None and self.consecutive_auto_approved_requests_count >= max_requests:
            await self.channel.ask(
                AskKind.AUTO_APPROVAL_MAX_REQ_REACHED,
                f"Auto-approved {max_requests} API requests. "
                "Would you like to reset the count and proceed with the task?",
            )
            self.consecutive_auto_approved_requests_count = 0
        return user_content

    async def _make_request(self, user_content: List[Dict[str, Any]]) -> TurnOutcome:
        self.abort_signal.check()
        self.state = LoopState.BUILDING_CONTEXT
        user_content = await self._check_limits(user_content)

        previous_request_tokens = self._previous_request_tokens()
        request_text = "\n\n".join(p["text"] for p in user_content if p.get("type") == "text")
        api_req = await self.channel.say(
            SayKind.API_REQ_STARTED, json.dumps({"request": request_text + "\n\nLoading..."})
        )
        user_content = user_content + [text_part(self._environment_details())]
        self.add_to_api_history(ApiMessage("user", user_content))
        api_req.text = json.dumps({"request": request_text})
        await self.channel.update(api_req)

        turn = Turn()
        worker = asyncio.ensure_future(self.orchestrator.run(turn))
        usage = UsageChunk()
        assistant_text = ""
        reasoning = ""
        late_reasoning = ""
        started = time.time()

        self.state = LoopState.AWAITING_RESPONSE
        stream = self.request_stream.attempt(self.system_prompt, RetryState(), previous_request_tokens)
        try:
            try:
                async for chunk in stream:
                    self.state = LoopState.STREAMING
                    if isinstance(chunk, UsageChunk):
                        usage.input_tokens += chunk.input_tokens
                        usage.output_tokens += chunk.output_tokens
                        usage.cache_write_tokens += chunk.cache_write_tokens
                        usage.cache_read_tokens += chunk.cache_read_tokens
                        if chunk.total_cost is not None:
                            usage.total_cost = chunk.total_cost
                    elif isinstance(chunk, ReasoningChunk):
                        if assistant_text:
                            # Posting now would split the text run or supersede an ask
                            late_reasoning += chunk.reasoning
                        else:
                            reasoning += chunk.reasoning
                            await self.channel.say(SayKind.REASONING, reasoning, partial=True)
                    elif isinstance(chunk, TextChunk):
                        if reasoning and not assistant_text:
                            await self.channel.say(SayKind.REASONING, reasoning, partial=False)
                        assistant_text += chunk.text
                        turn.blocks = parse_assistant_message(assistant_text)
                        self.orchestrator.notify(turn)
                        await asyncio.sleep(0)

                    if worker.done():
                        # The consumer only stops early by failing
                        worker.result()
                    self.abort_signal.check()
                    if turn.did_reject_tool:
                        assistant_text += "\n\n" + INTERRUPTED_BY_FEEDBACK
                        break
                    if turn.did_use_tool:
                        assistant_text += "\n\n" + INTERRUPTED_BY_TOOL_USE
                        break
            finally:
                await stream.aclose()
        except TaskAborted:
            if not self.abandoned:
                await self._abort_stream(turn, worker, api_req, usage, started,
                                         assistant_text, "user_cancelled")
            raise
        except ApiRequestFailed:
            await self._stop_worker(worker)
            raise
        except Exception as error:
            log_exception(_log, "Error while streaming the response", error)
            await self.abort_task("streaming_failed")
            if not self.abandoned:
                await self._abort_stream(turn, worker, api_req, usage, started,
                                         assistant_text, "streaming_failed", format_error(error))
            raise TaskAborted("streaming_failed") from error

        if reasoning and not assistant_text:
            await self.channel.say(SayKind.REASONING, reasoning, partial=False)
        await self._finish_request(api_req, usage, started)

        turn.mark_stream_done()
        self.orchestrator.notify(turn)
        if assistant_text:
            self.add_to_api_history(ApiMessage("assistant", [text_part(assistant_text)]))
        await worker
        if late_reasoning:
            await self.channel.say(SayKind.REASONING, late_reasoning, partial=False)
        self.state = LoopState.TURN_COMPLETE

        if not assistant_text:
            _log.warning("empty assistant response")
            await self.channel.say(SayKind.ERROR, EMPTY_RESPONSE_MESSAGE)
            self.add_to_api_history(
                ApiMessage("assistant", [text_part(responses.empty_assistant_response())])
            )
            return TurnOutcome(did_end=False)

        if turn.did_complete_task:
            self.did_complete = True
            self.save_metadata()
            return TurnOutcome(did_end=True)

        if not any(isinstance(b, ToolUseBlock) for b in turn.blocks):
            turn.result.append(text_part(responses.no_tools_used()))
            self.consecutive_mistake_count += 1
        return TurnOutcome(did_end=False, next_content=turn.result)

    async def _finish_request(
        self,
        api_req: UIMessage,
        usage: UsageChunk,
        started: float,
        cancel_reason: Optional[str] = None,
        failed_message: Optional[str] = None,
    ) -> None:
        """Record usage and cost on the request's api_req_started message."""
        call = self.cost_tracker.record_call(
            self.config.model,
            usage.input_tokens,
            usage.output_tokens,
            (time.time() - started) * 1000,
            cache_write_tokens=usage.cache_write_tokens,
            cache_read_tokens=usage.cache_read_tokens,
            total_cost=usage.total_cost,
            cancelled=cancel_reason is not None,
        )
        info = json.loads(api_req.text or "{}")
        info.update(
            tokensIn=usage.input_tokens,
            tokensOut=usage.output_tokens,
            cacheWrites=usage.cache_write_tokens,
            cacheReads=usage.cache_read_tokens,
            cost=call.total_cost,
        )
        if cancel_reason:
            info["cancelReason"] = cancel_reason
        if failed_message:
            info["streamingFailedMessage"] = failed_message
        api_req.text = json.dumps(info)
        await self.channel.update(api_req)
        self.save_metadata()

    @staticmethod
    async def _stop_worker(worker: asyncio.Future) -> None:
        worker.cancel()
        await asyncio.gather(worker, return_exceptions=True)

    async def _abort_stream(
        self,
        turn: Turn,
        worker: asyncio.Future,
        api_req: UIMessage,
        usage: UsageChunk,
        started: float,
        assistant_text: str,
        cancel_reason: str,
        failed_message: Optional[str] = None,
    ) -> None:
        """Keep what was streamed so far and close the turn."""
        await self._stop_worker(worker)
        turn.mark_stream_done()
        if self.ui_messages and self.ui_messages[-1].partial:
            self.ui_messages[-1].partial = False
        await self._finish_request(api_req, usage, started, cancel_reason, failed_message)

        marker = INTERRUPTED_BY_USER if cancel_reason == "user_cancelled" else INTERRUPTED_BY_API_ERROR
        self.add_to_api_history(
            ApiMessage("assistant", [text_part(f"{assistant_text}\n\n{marker}".lstrip())])
        )
        _log.info("stream aborted (%s) after %d chars", cancel_reason, len(assistant_text))
