"""Message types for the UI stream and the model conversation."""

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional


class AskKind(str, Enum):
    FOLLOWUP = "followup"
    COMMAND = "command"
    COMPLETION_RESULT = "completion_result"
    TOOL = "tool"
    API_REQ_FAILED = "api_req_failed"
    RESUME_TASK = "resume_task"
    RESUME_COMPLETED_TASK = "resume_completed_task"
    MISTAKE_LIMIT_REACHED = "mistake_limit_reached"
    AUTO_APPROVAL_MAX_REQ_REACHED = "auto_approval_max_req_reached"


class SayKind(str, Enum):
    TASK = "task"
    ERROR = "error"
    API_REQ_STARTED = "api_req_started"
    API_REQ_RETRIED = "api_req_retried"
    TEXT = "text"
    REASONING = "reasoning"
    COMPLETION_RESULT = "completion_result"
    USER_FEEDBACK = "user_feedback"
    COMMAND = "command"
    COMMAND_OUTPUT = "command_output"
    TOOL = "tool"


class AskResponse(str, Enum):
    """How the user answered an ask."""

    YES = "yesButtonClicked"        # approve / retry
    NO = "noButtonClicked"          # reject
    MESSAGE = "messageResponse"     # free-text reply


@dataclass
class AskResult:
    response: AskResponse
    text: Optional[str] = None
    images: List[str] = field(default_factory=list)


@dataclass
class UIMessage:
    """One entry of the user-visible message stream.

    ``ts`` is the message identity. A partial message keeps its ``ts``
    through every update and through finalization.
    """

    ts: int
    type: str                       # "ask" | "say"
    ask: Optional[AskKind] = None
    say: Optional[SayKind] = None
    text: Optional[str] = None
    images: List[str] = field(default_factory=list)
    partial: bool = False

    @property
    def kind(self) -> Optional[str]:
        value = self.ask if self.type == "ask" else self.say
        return value.value if value is not None else None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"ts": self.ts, "type": self.type}
        if self.ask is not None:
            data["ask"] = self.ask.value
        if self.say is not None:
            data["say"] = self.say.value
        if self.text is not None:
            data["text"] = self.text
        if self.images:
            data["images"] = list(self.images)
        if self.partial:
            data["partial"] = True
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "UIMessage":
        return cls(
            ts=int(data["ts"]),
            type=data["type"],
            ask=AskKind(data["ask"]) if data.get("ask") else None,
            say=SayKind(data["say"]) if data.get("say") else None,
            text=data.get("text"),
            images=list(data.get("images", [])),
            partial=bool(data.get("partial", False)),
        )


# ── Conversation (model-facing) messages ─────────────────────

def text_part(text: str) -> Dict[str, Any]:
    return {"type": "text", "text": text}


def image_part(data_uri: str) -> Dict[str, Any]:
    return {"type": "image", "data": data_uri}


@dataclass
class ApiMessage:
    """A message of the model conversation. ``content`` is a list of parts."""

    role: str                       # "user" | "assistant"
    content: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def text(self) -> str:
        return "\n\n".join(p["text"] for p in self.content if p.get("type") == "text")

    def to_dict(self) -> Dict[str, Any]:
        return {"role": self.role, "content": [dict(p) for p in self.content]}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ApiMessage":
        content = data.get("content", [])
        if isinstance(content, str):
            content = [text_part(content)]
        return cls(role=data["role"], content=[dict(p) for p in content])


def now_ms() -> int:
    return int(time.time() * 1000)
