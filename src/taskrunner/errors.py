"""Exception types shared by the task loop and its collaborators."""

from typing import Optional

import httpx


class TaskAborted(Exception):
    """The task was aborted; every in-flight operation unwinds with this."""


class AskSuperseded(Exception):
    """A newer message replaced the one this ask was waiting on."""


class ApiRequestFailed(Exception):
    """A failed request was not retried; the task cannot continue."""


class ToolExecutionError(Exception):
    """A tool could not be executed."""


class ProviderError(Exception):
    """Error returned by the model provider."""

    def __init__(self, message: str, status_code: Optional[int] = None, provider: str = ""):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.provider = provider

    def __str__(self) -> str:
        if self.status_code:
            return f"{self.status_code} {self.message}"
        return self.message


_CONTEXT_WINDOW_MARKERS = (
    "context length",
    "context window",
    "context_length_exceeded",
    "maximum context",
    "prompt is too long",
    "too many tokens",
    "input is too long",
)


def is_context_window_error(error: BaseException) -> bool:
    """True when the provider rejected the request for exceeding the context window."""
    text = str(error).lower()
    if getattr(error, "status_code", None) == 413:
        return True
    return any(marker in text for marker in _CONTEXT_WINDOW_MARKERS)


def is_rate_limit_error(error: BaseException) -> bool:
    """True for errors worth one silent retry after a short cooldown."""
    status = getattr(error, "status_code", None)
    if status in (429, 500, 502, 503, 529):
        return True
    return isinstance(error, (httpx.TimeoutException, httpx.TransportError))


def format_error(error: BaseException) -> str:
    """Render an error for display in an api_req_failed ask."""
    return str(error) or type(error).__name__
