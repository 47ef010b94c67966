"""Local tool executor: runs the registry's executable tools in a workspace."""

import json
import time
from pathlib import Path
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Dict, List, Optional, Protocol

from pydantic import BaseModel, Field

from ..errors import TaskAborted, ToolExecutionError
from ..logger import get_logger, log_exception, truncate
from ..messages import SayKind
from ..tool_registry import EXECUTABLE_TOOLS, ToolMetrics
from . import file_tools
from .shell_tools import ShellRunner

if TYPE_CHECKING:
    from ..channel import MessageChannel

log = get_logger("tools")


class ToolResult(BaseModel):
    """Result of a tool execution."""

    success: bool
    output: Any = None
    error: Optional[str] = None
    images: List[str] = Field(default_factory=list)

    def to_message(self) -> str:
        """Convert result to a message string for the model."""
        if self.success:
            if isinstance(self.output, str):
                return self.output
            return json.dumps(self.output, indent=2, default=str)
        return f"Error: {self.error}"


class ToolExecutor(Protocol):
    """Executes a tool use; progress goes through the given channel."""

    async def execute(self, tool_name: str, params: Dict[str, str],
                      channel: Optional["MessageChannel"] = None) -> ToolResult:
        ...

    async def abort(self) -> None:
        ...


Handler = Callable[[Dict[str, str], Optional["MessageChannel"]], Awaitable[str]]


class LocalToolExecutor:
    """Runs file, search and shell tools against a local workspace."""

    def __init__(self, workspace_path: Path, command_timeout: float = 120.0,
                 metrics: Optional[ToolMetrics] = None):
        self.workspace_path = Path(workspace_path).resolve()
        self.command_timeout = command_timeout
        self.metrics = metrics or ToolMetrics()
        self.shell = ShellRunner()
        self._handlers: Dict[str, Handler] = {
            "read_file": self._read_file,
            "write_to_file": self._write_to_file,
            "replace_in_file": self._replace_in_file,
            "list_files": self._list_files,
            "search_files": self._search_files,
            "execute_command": self._execute_command,
        }
        missing = EXECUTABLE_TOOLS - set(self._handlers)
        if missing:
            raise ValueError(f"no handler for tools: {sorted(missing)}")

    def _resolve_path(self, path: str) -> Path:
        p = Path(path).expanduser()
        if not p.is_absolute():
            p = self.workspace_path / p
        return p

    async def execute(self, tool_name: str, params: Dict[str, str],
                      channel: Optional["MessageChannel"] = None) -> ToolResult:
        handler = self._handlers.get(tool_name)
        if handler is None:
            return ToolResult(success=False, error=f"Tool '{tool_name}' not found")

        start = time.time()
        log.info("execute %s %s", tool_name, truncate(json.dumps(params), 300))
        try:
            output = await handler(params, channel)
        except TaskAborted:
            raise
        except (OSError, ValueError, ToolExecutionError) as e:
            elapsed = (time.time() - start) * 1000
            self.metrics.record(tool_name, elapsed, success=False, error=str(e))
            log.warning("%s failed: %s", tool_name, e)
            return ToolResult(success=False, error=f"{type(e).__name__}: {e}")
        except Exception as e:
            elapsed = (time.time() - start) * 1000
            self.metrics.record(tool_name, elapsed, success=False, error=str(e))
            log_exception(log, f"{tool_name} crashed", e)
            return ToolResult(success=False, error=f"{type(e).__name__}: {e}")

        self.metrics.record(tool_name, (time.time() - start) * 1000, success=True)
        return ToolResult(success=True, output=output)

    async def abort(self) -> None:
        """Kill every command still running."""
        self.shell.kill_all()

    # ── handlers ─────────────────────────────────────────────

    async def _read_file(self, params, channel) -> str:
        return await file_tools.read_file(self._resolve_path(params["path"]))

    async def _write_to_file(self, params, channel) -> str:
        content = params.get("content", "")
        if content and not content.endswith("\n"):
            content += "\n"
        return await file_tools.write_file(self._resolve_path(params["path"]), content)

    async def _replace_in_file(self, params, channel) -> str:
        return await file_tools.replace_in_file(self._resolve_path(params["path"]), params["diff"])

    async def _list_files(self, params, channel) -> str:
        path = params.get("path") or "."
        return await file_tools.list_files(
            self._resolve_path(path),
            recursive=params.get("recursive", "").strip().lower() == "true",
            include_hidden=path.startswith(".") and path != ".",
        )

    async def _search_files(self, params, channel) -> str:
        path = params.get("path") or "."
        return await file_tools.search_files(
            self._resolve_path(path),
            params["regex"],
            params.get("file_pattern"),
            include_hidden=path.startswith(".") and path != ".",
        )

    async def _execute_command(self, params, channel) -> str:
        on_output = None
        if channel is not None:
            async def on_output(text: str) -> None:
                await channel.say(SayKind.COMMAND_OUTPUT, text, partial=True)

        result = await self.shell.run(
            params["command"],
            cwd=str(self.workspace_path),
            timeout=self.command_timeout,
            on_output=on_output,
        )
        if channel is not None and result.output:
            await channel.say(SayKind.COMMAND_OUTPUT, result.output, partial=False)
        return result.to_message()
