"""Autonomous coding task runner: stream a model's response, run its tools, repeat."""

from .assistant_message import TextBlock, ToolUseBlock, parse_assistant_message
from .channel import MessageChannel
from .config import AutoApprovalSettings, Config
from .context_management import ConversationContextManager
from .cost_tracker import CostTracker
from .orchestrator import ToolOrchestrator, Turn
from .retry_stream import RetryingRequestStream, RetryState
from .storage import TaskStorage
from .streaming_client import StreamingClient
from .task import Task

__version__ = "0.1.0"
__all__ = [
    "TextBlock",
    "ToolUseBlock",
    "parse_assistant_message",
    "MessageChannel",
    "AutoApprovalSettings",
    "Config",
    "ConversationContextManager",
    "CostTracker",
    "ToolOrchestrator",
    "Turn",
    "RetryingRequestStream",
    "RetryState",
    "TaskStorage",
    "StreamingClient",
    "Task",
]
