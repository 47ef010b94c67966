"""Streaming model client - OpenAI-compatible chat completions over SSE.

``create_message`` is an async generator of text, reasoning and usage
chunks. Closing the generator (``aclose()``) closes the HTTP stream, so
an abandoned request stops consuming the connection.
"""

import json
from dataclasses import dataclass
from typing import Any, AsyncIterator, Dict, List, Optional, Protocol, Union

import httpx

from .errors import ProviderError
from .logger import get_logger
from .messages import ApiMessage

_log = get_logger("streaming")


@dataclass
class TextChunk:
    text: str
    type: str = "text"


@dataclass
class ReasoningChunk:
    reasoning: str
    type: str = "reasoning"


@dataclass
class UsageChunk:
    input_tokens: int = 0
    output_tokens: int = 0
    cache_write_tokens: int = 0
    cache_read_tokens: int = 0
    total_cost: Optional[float] = None
    type: str = "usage"


ApiChunk = Union[TextChunk, ReasoningChunk, UsageChunk]


class ModelProvider(Protocol):
    """What the task loop needs from a model backend."""

    model: str

    @property
    def needs_cooldown_retry(self) -> bool:
        ...

    def create_message(self, system_prompt: str, messages: List[ApiMessage]) -> AsyncIterator[ApiChunk]:
        ...


class StreamingClient:
    """Model client for OpenAI-compatible ``/chat/completions`` endpoints."""

    def __init__(
        self,
        api_key: str,
        base_url: str = "https://api.z.ai/api/paas/v4",
        model: str = "glm-4.7",
        temperature: float = 0.7,
        max_tokens: int = 32000,
    ):
        self.api_key = api_key
        self.base_url = base_url.rstrip('/')
        self.model = model
        self.temperature = temperature
        self.max_tokens = max_tokens
        self._client: Optional[httpx.AsyncClient] = None

    async def __aenter__(self):
        self._client = httpx.AsyncClient(
            timeout=httpx.Timeout(600.0, connect=30.0)
        )
        return self

    async def __aexit__(self, *args):
        if self._client:
            await self._client.aclose()
        self._client = None

    def _provider_kind(self) -> str:
        """Infer provider from URL: ``openrouter``, ``openai`` or ``openai_compat``."""
        url = (self.base_url or "").lower()
        if "openrouter.ai" in url:
            return "openrouter"
        if "api.openai.com" in url:
            return "openai"
        return "openai_compat"

    @property
    def needs_cooldown_retry(self) -> bool:
        """OpenRouter fails transiently on the first chunk often enough to retry once."""
        return self._provider_kind() == "openrouter"

    def _get_headers(self) -> Dict[str, str]:
        headers = {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {self.api_key}",
        }
        if self._provider_kind() == "openrouter":
            headers["X-Title"] = "taskrunner"
        return headers

    @staticmethod
    def _to_openai_content(message: ApiMessage) -> Union[str, List[Dict[str, Any]]]:
        parts: List[Dict[str, Any]] = []
        for part in message.content:
            if part.get("type") == "text":
                parts.append({"type": "text", "text": part.get("text", "")})
            elif part.get("type") == "image":
                parts.append({"type": "image_url", "image_url": {"url": part.get("data", "")}})
        if all(p["type"] == "text" for p in parts):
            return "\n\n".join(p["text"] for p in parts)
        return parts

    def _build_payload(self, system_prompt: str, messages: List[ApiMessage]) -> Dict[str, Any]:
        openai_messages = [{"role": "system", "content": system_prompt}]
        openai_messages.extend(
            {"role": m.role, "content": self._to_openai_content(m)} for m in messages
        )
        return {
            "model": self.model,
            "messages": openai_messages,
            "temperature": self.temperature,
            "max_tokens": self.max_tokens,
            "stream": True,
            "stream_options": {"include_usage": True},
        }

    @staticmethod
    def _normalize_openai_usage(usage: Dict[str, Any]) -> Dict[str, int]:
        """Normalize OpenAI/OpenRouter/OpenAI-compatible usage payloads.

        Keeps canonical keys (`prompt_tokens`, `completion_tokens`) and preserves
        cache detail fields when present.
        """
        if not isinstance(usage, dict):
            return {}
        out: Dict[str, int] = {}
        for key in ("prompt_tokens", "completion_tokens", "total_tokens"):
            if usage.get(key) is not None:
                try:
                    out[key] = int(usage[key])
                except (TypeError, ValueError):
                    pass

        pdet = usage.get("prompt_tokens_details")
        if isinstance(pdet, dict) and pdet.get("cached_tokens") is not None:
            try:
                out["prompt_cached_tokens"] = int(pdet["cached_tokens"])
            except (TypeError, ValueError):
                pass

        for k in (
            "cache_creation_input_tokens",
            "cache_read_input_tokens",
            "input_tokens",
            "output_tokens",
        ):
            if usage.get(k) is not None:
                try:
                    out[k] = int(usage[k])
                except (TypeError, ValueError):
                    pass

        # Some providers return input/output instead of prompt/completion.
        if "prompt_tokens" not in out and "input_tokens" in out:
            out["prompt_tokens"] = out["input_tokens"]
        if "completion_tokens" not in out and "output_tokens" in out:
            out["completion_tokens"] = out["output_tokens"]
        return out

    def _usage_chunk(self, usage: Dict[str, Any]) -> UsageChunk:
        normalized = self._normalize_openai_usage(usage)
        cost = usage.get("cost") if isinstance(usage, dict) else None
        return UsageChunk(
            input_tokens=normalized.get("prompt_tokens", 0),
            output_tokens=normalized.get("completion_tokens", 0),
            cache_write_tokens=normalized.get("cache_creation_input_tokens", 0),
            cache_read_tokens=normalized.get(
                "cache_read_input_tokens", normalized.get("prompt_cached_tokens", 0)
            ),
            total_cost=float(cost) if isinstance(cost, (int, float)) else None,
        )

    @staticmethod
    def _error_message(body: str) -> str:
        try:
            data = json.loads(body)
        except json.JSONDecodeError:
            return body.strip() or "request failed"
        error = data.get("error", data) if isinstance(data, dict) else data
        if isinstance(error, dict):
            return str(error.get("message") or error)
        return str(error)

    def _parse_sse_line(self, line: str) -> List[ApiChunk]:
        line = line.strip()
        if not line.startswith("data: "):
            return []
        data_str = line[6:]
        if data_str.strip() == "[DONE]":
            return []
        try:
            data = json.loads(data_str)
        except json.JSONDecodeError:
            return []

        if "error" in data and not data.get("choices"):
            raise ProviderError(self._error_message(data_str), provider=self._provider_kind())

        chunks: List[ApiChunk] = []
        choices = data.get("choices") or []
        if choices:
            delta = choices[0].get("delta", {}) or {}
            reasoning = delta.get("reasoning_content") or delta.get("reasoning") or ""
            if reasoning:
                chunks.append(ReasoningChunk(reasoning))
            content = delta.get("content") or ""
            if isinstance(content, list):
                # Some providers emit content parts
                content = "".join(
                    p.get("text", "") for p in content if isinstance(p, dict)
                )
            if content:
                chunks.append(TextChunk(content))
        if data.get("usage"):
            chunks.append(self._usage_chunk(data["usage"]))
        return chunks

    async def create_message(
        self,
        system_prompt: str,
        messages: List[ApiMessage],
    ) -> AsyncIterator[ApiChunk]:
        """Stream one model response as text/reasoning/usage chunks."""
        if self._client is None:
            raise RuntimeError("StreamingClient must be used as an async context manager")

        url = f"{self.base_url}/chat/completions"
        payload = self._build_payload(system_prompt, messages)
        _log.info("create_message: url=%s model=%s msgs=%d", url, self.model, len(messages))

        async with self._client.stream(
            "POST", url, headers=self._get_headers(), json=payload
        ) as response:
            if response.status_code >= 400:
                body = (await response.aread()).decode("utf-8", errors="replace")
                raise ProviderError(
                    self._error_message(body),
                    status_code=response.status_code,
                    provider=self._provider_kind(),
                )

            line_buffer = ""
            async for text in response.aiter_text():
                line_buffer += text
                while "\n" in line_buffer:
                    line, line_buffer = line_buffer.split("\n", 1)
                    for chunk in self._parse_sse_line(line):
                        yield chunk
            for chunk in self._parse_sse_line(line_buffer):
                yield chunk
