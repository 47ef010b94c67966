"""Tools the model can use in a workspace."""

from .registry import LocalToolExecutor, ToolExecutor, ToolResult

__all__ = ["LocalToolExecutor", "ToolExecutor", "ToolResult"]
