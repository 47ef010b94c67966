"""Single source of truth for all tool definitions.

Every tool the model may call is defined ONCE here. The assistant
message parser, the system prompt, missing-parameter validation,
tool descriptions and auto-approval all derive from this module.
"""

import threading
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from .logger import get_logger

log = get_logger("registry")


# ── Tool Definition ──────────────────────────────────────────────

@dataclass
class ToolParam:
    """Metadata for a single tool parameter."""
    name: str
    required: bool = False
    description: str = ""


@dataclass
class ToolDef:
    """Canonical definition of a tool.

    ``complex_params`` name parameters whose value may itself contain
    tag-like text; the parser closes them at the LAST closing tag inside
    the tool block. ``approval`` is the auto-approval action category
    ("read", "edit", "command") or None for tools the orchestrator
    handles itself.
    """
    name: str
    category: str = "general"         # file, shell, search, interaction
    params: List[ToolParam] = field(default_factory=list)
    complex_params: List[str] = field(default_factory=list)
    approval: Optional[str] = None
    path_param: Optional[str] = None
    summary: str = ""                 # "[{name} for '{path}']"
    description: str = ""

    @property
    def required_params(self) -> List[str]:
        return [p.name for p in self.params if p.required]

    def missing_params(self, params: Dict[str, str]) -> List[str]:
        return [name for name in self.required_params if not params.get(name)]

    def describe(self, params: Dict[str, str]) -> str:
        """Human-readable one-line description used to label tool results."""
        values = {p.name: params.get(p.name, "") for p in self.params}
        values["name"] = self.name
        return (self.summary or "[{name}]").format(**values)


# ── The Registry ─────────────────────────────────────────────────

TOOL_DEFS: List[ToolDef] = [
    # --- Shell ---
    ToolDef("execute_command", category="shell", approval="command",
            params=[ToolParam("command", required=True,
                              description="The CLI command to execute."),
                    ToolParam("requires_approval", required=True,
                              description="'true' for impactful commands, 'false' for safe ones.")],
            summary="[{name} for '{command}']",
            description="Execute a CLI command in the workspace directory."),

    # --- File operations ---
    ToolDef("read_file", category="file", approval="read", path_param="path",
            params=[ToolParam("path", required=True,
                              description="Path of the file to read, relative to the workspace.")],
            summary="[{name} for '{path}']",
            description="Read the contents of a file."),
    ToolDef("write_to_file", category="file", approval="edit", path_param="path",
            complex_params=["content"],
            params=[ToolParam("path", required=True,
                              description="Path of the file to write, relative to the workspace."),
                    ToolParam("content", required=True,
                              description="The COMPLETE intended content of the file.")],
            summary="[{name} for '{path}']",
            description="Write content to a file, creating it and its directories if needed."),
    ToolDef("replace_in_file", category="file", approval="edit", path_param="path",
            complex_params=["diff"],
            params=[ToolParam("path", required=True,
                              description="Path of the file to modify, relative to the workspace."),
                    ToolParam("diff", required=True,
                              description="One or more SEARCH/REPLACE blocks.")],
            summary="[{name} for '{path}']",
            description="Replace sections of an existing file using SEARCH/REPLACE blocks."),

    # --- Search / exploration ---
    ToolDef("list_files", category="search", approval="read", path_param="path",
            params=[ToolParam("path", required=True,
                              description="Directory to list, relative to the workspace."),
                    ToolParam("recursive", description="'true' to list recursively.")],
            summary="[{name} for '{path}']",
            description="List files and directories."),
    ToolDef("search_files", category="search", approval="read", path_param="path",
            params=[ToolParam("path", required=True,
                              description="Directory to search, relative to the workspace."),
                    ToolParam("regex", required=True,
                              description="Regular expression to search for."),
                    ToolParam("file_pattern", description="Glob filter, e.g. '*.py'.")],
            summary="[{name} for '{regex}']",
            description="Regex search across files in a directory."),

    # --- Interaction (handled by the orchestrator) ---
    ToolDef("ask_followup_question", category="interaction",
            params=[ToolParam("question", required=True,
                              description="The question to ask the user."),
                    ToolParam("options", description="Optional JSON array of 2-5 answer options.")],
            summary="[{name} for '{question}']",
            description="Ask the user a question to gather information needed for the task."),
    ToolDef("attempt_completion", category="interaction",
            params=[ToolParam("result", required=True,
                              description="Final description of the result of the task."),
                    ToolParam("command", description="Optional command that demonstrates the result.")],
            summary="[{name}]",
            description="Present the result of the task once it is complete."),
]

# Derived lookups (computed once at import time)
TOOL_BY_NAME: Dict[str, ToolDef] = {t.name: t for t in TOOL_DEFS}
EXECUTABLE_TOOLS: set = {t.name for t in TOOL_DEFS if t.category != "interaction"}


def get_tool_def(name: str) -> Optional[ToolDef]:
    """Return tool definition by name, or None if unknown."""
    return TOOL_BY_NAME.get(name)


# ── Observability: ToolMetrics ───────────────────────────────────

class ToolMetrics:
    """Thread-safe per-tool execution statistics."""

    def __init__(self):
        self._lock = threading.Lock()
        self._counts: Dict[str, Dict[str, Any]] = {}

    def record(self, tool_name: str, elapsed_ms: float, success: bool, error: str = "") -> None:
        with self._lock:
            stats = self._counts.setdefault(
                tool_name, {"calls": 0, "failures": 0, "total_ms": 0.0, "last_error": ""}
            )
            stats["calls"] += 1
            stats["total_ms"] += elapsed_ms
            if not success:
                stats["failures"] += 1
                stats["last_error"] = error[:200]

        log.debug("tool %s %s in %.0fms", tool_name, "ok" if success else "FAILED", elapsed_ms)

    def summary(self) -> Dict[str, Any]:
        with self._lock:
            return {
                name: {
                    "calls": stats["calls"],
                    "failures": stats["failures"],
                    "avg_ms": round(stats["total_ms"] / stats["calls"], 1) if stats["calls"] else 0.0,
                    "last_error": stats["last_error"],
                }
                for name, stats in self._counts.items()
            }
