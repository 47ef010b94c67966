"""Model request stream with first-chunk retry handling.

Only failures before the first chunk are retried: by then nothing has
been shown to the user, so the request can be repeated transparently.
A failure after the first chunk propagates to the task loop, which
aborts the task and keeps the partial output.
"""

import asyncio
from dataclasses import dataclass
from typing import TYPE_CHECKING, AsyncIterator

from .errors import (
    ApiRequestFailed,
    TaskAborted,
    format_error,
    is_context_window_error,
    is_rate_limit_error,
)
from .logger import get_logger
from .messages import AskKind, AskResponse, SayKind
from .streaming_client import ApiChunk

if TYPE_CHECKING:
    from .task import Task

_log = get_logger("retry_stream")

CONTEXT_EXCEEDED_MESSAGE = (
    "Context window exceeded. Click retry to truncate the conversation and try again."
)


@dataclass
class RetryState:
    """Per-request retry bookkeeping. One silent retry is allowed."""
    did_automatically_retry: bool = False


async def _next_chunk(stream: AsyncIterator[ApiChunk]) -> ApiChunk:
    return await stream.__anext__()


class RetryingRequestStream:
    """Wraps the task's model provider for one request."""

    def __init__(self, task: "Task"):
        self.task = task

    async def attempt(
        self,
        system_prompt: str,
        retry_state: RetryState,
        previous_request_tokens: int = 0,
    ) -> AsyncIterator[ApiChunk]:
        """Yield the chunks of one model response, retrying first-chunk failures."""
        task = self.task
        while True:
            update = task.context_manager.get_new_context_messages(
                task.api_history,
                task.deleted_range,
                previous_request_tokens,
                task.config.model,
                task.config.context_window,
            )
            previous_request_tokens = 0
            if update.updated:
                task.deleted_range = update.deleted_range
                task.save_metadata()
            messages = task.context_manager.with_truncation_notice(
                update.messages, task.deleted_range
            )

            stream = task.provider.create_message(system_prompt, messages)
            try:
                first = await task.abort_signal.race(_next_chunk(stream))
            except StopAsyncIteration:
                return
            except TaskAborted:
                await stream.aclose()
                raise
            except Exception as error:
                await stream.aclose()
                await self._handle_first_chunk_failure(error, retry_state)
                continue

            try:
                yield first
                while True:
                    try:
                        chunk = await task.abort_signal.race(_next_chunk(stream))
                    except StopAsyncIteration:
                        return
                    yield chunk
            finally:
                await stream.aclose()

    async def _handle_first_chunk_failure(self, error: Exception, retry_state: RetryState) -> None:
        """Return to retry, raise ApiRequestFailed to give up."""
        task = self.task
        overflow = is_context_window_error(error)
        _log.warning(
            "first chunk failed (overflow=%s, auto_retried=%s): %s",
            overflow, retry_state.did_automatically_retry, error,
        )

        if overflow and not retry_state.did_automatically_retry:
            task.deleted_range = task.context_manager.get_next_truncation_range(
                task.api_history, task.deleted_range, "quarter"
            )
            task.save_metadata()
            retry_state.did_automatically_retry = True
            _log.info("context window exceeded; retrying with deleted range %s", task.deleted_range)
            return

        if not retry_state.did_automatically_retry and (
            task.provider.needs_cooldown_retry or is_rate_limit_error(error)
        ):
            retry_state.did_automatically_retry = True
            _log.info("retrying in %.1fs", task.config.first_chunk_retry_delay)
            await task.abort_signal.race(asyncio.sleep(task.config.first_chunk_retry_delay))
            return

        message = format_error(error)
        if overflow:
            truncated = task.context_manager.get_truncated_messages(
                task.api_history, task.deleted_range
            )
            if len(truncated) > 3:
                message = CONTEXT_EXCEEDED_MESSAGE
                # Retrying from the ask truncates again
                retry_state.did_automatically_retry = False

        result = await task.channel.ask(AskKind.API_REQ_FAILED, message)
        if result.response != AskResponse.YES:
            raise ApiRequestFailed(message) from error
        await task.channel.say(SayKind.API_REQ_RETRIED)
