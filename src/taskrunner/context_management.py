"""Context window management: truncation of the conversation history.

The stored history is never modified. Truncation is expressed as a
half-open ``deleted_range`` ``(start, end)`` of history indices that are
left out of what is transmitted. ``history[0]`` (the task) is always
kept and ``start`` is always 1. The first kept message after the range
is always an assistant message so a tool use and its result are never
separated.
"""

from dataclasses import dataclass
from typing import List, Optional, Tuple

from .logger import get_logger
from .messages import ApiMessage, text_part
from .responses import context_truncation_notice

_log = get_logger("context")

DeletedRange = Tuple[int, int]


# Model context windows (tokens)
MODEL_CONTEXT_WINDOWS = {
    "glm-4.7": 128_000,
    "glm-4-plus": 128_000,
    "deepseek": 64_000,
    "gpt-4o": 128_000,
    "gpt-4": 128_000,
    "claude": 200_000,
    "gemini": 1_000_000,
}

DEFAULT_CONTEXT_WINDOW = 128_000


def get_model_limits(model: str, context_window: Optional[int] = None) -> Tuple[int, int]:
    """Get (context_window, max_allowed) for a model.

    ``max_allowed`` leaves headroom for the response: 27k on 64k windows,
    30k on 128k, 40k on 200k, otherwise the larger of window-40k and 80%.
    """
    if context_window is None:
        context_window = DEFAULT_CONTEXT_WINDOW
        for key, window in MODEL_CONTEXT_WINDOWS.items():
            if key in model.lower():
                context_window = window
                break
    if context_window == 64_000:
        max_allowed = context_window - 27_000
    elif context_window == 128_000:
        max_allowed = context_window - 30_000
    elif context_window == 200_000:
        max_allowed = context_window - 40_000
    else:
        max_allowed = max(context_window - 40_000, int(context_window * 0.8))
    return context_window, max_allowed


@dataclass
class ContextUpdate:
    """Outcome of preparing the context for one request."""
    messages: List[ApiMessage]
    deleted_range: Optional[DeletedRange]
    updated: bool = False


class ConversationContextManager:
    """Decides what part of the conversation history is transmitted."""

    KEEP_MODES = ("none", "lastTwo", "half", "quarter")

    def get_truncated_messages(
        self,
        messages: List[ApiMessage],
        deleted_range: Optional[DeletedRange],
    ) -> List[ApiMessage]:
        """``messages[0:1] + messages[end:]``, or everything when no range is set."""
        if not deleted_range:
            return list(messages)
        _, end = deleted_range
        return list(messages[:1]) + list(messages[end:])

    def get_next_truncation_range(
        self,
        messages: List[ApiMessage],
        current_range: Optional[DeletedRange] = None,
        keep: str = "half",
    ) -> DeletedRange:
        """Extend the deleted range over the oldest remaining messages.

        ``half`` removes about half of the messages after the range,
        ``quarter`` about three quarters (only a quarter is kept),
        ``lastTwo`` everything but the last exchange and ``none`` everything.
        """
        if keep not in self.KEEP_MODES:
            raise ValueError(f"unknown truncation mode: {keep}")

        start = 1
        start_of_rest = current_range[1] if current_range else start
        remaining = max(len(messages) - start_of_rest, 0)

        if keep == "none":
            to_remove = remaining
        elif keep == "lastTwo":
            to_remove = max(remaining - 2, 0)
        elif keep == "half":
            to_remove = (remaining // 4) * 2
        else:
            to_remove = (remaining * 3 // 4 // 2) * 2

        end = start_of_rest + to_remove
        # The first transmitted message after the task must be an assistant
        # message; otherwise a tool result would lose its tool use.
        while start_of_rest < end < len(messages) and messages[end].role != "assistant":
            end -= 1

        _log.debug(
            "truncation range: keep=%s messages=%d previous=%s -> [%d, %d)",
            keep, len(messages), current_range, start, end,
        )
        return start, end

    def should_truncate(self, previous_request_tokens: int, model: str,
                        context_window: Optional[int] = None) -> Optional[str]:
        """Truncation mode needed before the next request, if any."""
        _, max_allowed = get_model_limits(model, context_window)
        if previous_request_tokens < max_allowed:
            return None
        return "quarter" if previous_request_tokens / 2 > max_allowed else "half"

    def get_new_context_messages(
        self,
        messages: List[ApiMessage],
        deleted_range: Optional[DeletedRange],
        previous_request_tokens: int,
        model: str,
        context_window: Optional[int] = None,
    ) -> ContextUpdate:
        """Apply proactive truncation from the previous request's token usage."""
        updated = False
        keep = self.should_truncate(previous_request_tokens, model, context_window)
        if keep is not None:
            new_range = self.get_next_truncation_range(messages, deleted_range, keep)
            if new_range != deleted_range and new_range[1] > new_range[0]:
                _log.info(
                    "previous request used %d tokens; truncating (%s) to %s",
                    previous_request_tokens, keep, new_range,
                )
                deleted_range = new_range
                updated = True
        return ContextUpdate(
            messages=self.get_truncated_messages(messages, deleted_range),
            deleted_range=deleted_range,
            updated=updated,
        )

    def with_truncation_notice(
        self,
        messages: List[ApiMessage],
        deleted_range: Optional[DeletedRange],
    ) -> List[ApiMessage]:
        """Copy of ``messages`` whose first message notes that history was removed."""
        if not deleted_range or deleted_range[1] <= deleted_range[0] or not messages:
            return messages
        first = messages[0]
        noted = ApiMessage(first.role, list(first.content) + [text_part(context_truncation_notice())])
        return [noted] + messages[1:]
