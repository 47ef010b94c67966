"""Shell command execution tools."""

import asyncio
import sys
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, Set

import psutil

from ..logger import get_logger

log = get_logger("tools.shell")


@dataclass
class ShellResult:
    """Result of a shell command execution."""

    output: str
    return_code: Optional[int]
    timed_out: bool = False
    duration: float = 0.0

    def to_message(self) -> str:
        output = self.output.rstrip() or "(no output)"
        if self.timed_out:
            return f"Command timed out after {self.duration:.0f}s. Output so far:\n{output}"
        return f"Command exited with code {self.return_code}.\nOutput:\n{output}"


def kill_process_tree(pid: int, timeout: float = 3.0) -> None:
    """Kill a process and all its descendants, children first."""
    try:
        parent = psutil.Process(pid)
    except psutil.NoSuchProcess:
        return

    children = []
    try:
        children = parent.children(recursive=True)
    except (psutil.NoSuchProcess, psutil.AccessDenied):
        pass

    for child in reversed(children):
        try:
            child.kill()
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            pass

    try:
        parent.kill()
    except (psutil.NoSuchProcess, psutil.AccessDenied):
        pass

    _, alive = psutil.wait_procs(children + [parent], timeout=timeout)
    for p in alive:
        log.warning("process %d survived kill", p.pid)


OutputCallback = Callable[[str], Awaitable[None]]


class ShellRunner:
    """Runs commands and remembers live processes so an abort can kill them."""

    def __init__(self):
        self._running: Set[int] = set()

    async def run(
        self,
        command: str,
        cwd: Optional[str] = None,
        timeout: float = 120.0,
        on_output: Optional[OutputCallback] = None,
    ) -> ShellResult:
        """Execute ``command`` in a shell, streaming combined output lines."""
        if sys.platform == "win32":
            command = f'powershell -NoProfile -Command "{command}"'

        start = time.time()
        process = await asyncio.create_subprocess_shell(
            command,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,
            cwd=cwd,
        )
        self._running.add(process.pid)
        log.info("command started pid=%d: %s", process.pid, command)
        output_lines = []

        async def pump() -> None:
            assert process.stdout is not None
            while True:
                line = await process.stdout.readline()
                if not line:
                    break
                text = line.decode("utf-8", errors="replace")
                output_lines.append(text)
                if on_output is not None:
                    await on_output("".join(output_lines))

        timed_out = False
        try:
            await asyncio.wait_for(pump(), timeout=timeout)
            await process.wait()
        except asyncio.TimeoutError:
            timed_out = True
            kill_process_tree(process.pid)
            await process.wait()
        except BaseException:
            # Cancelled or aborted mid-command
            kill_process_tree(process.pid)
            raise
        finally:
            self._running.discard(process.pid)

        duration = time.time() - start
        log.info("command finished pid=%d code=%s timed_out=%s in %.1fs",
                 process.pid, process.returncode, timed_out, duration)
        return ShellResult(
            output="".join(output_lines),
            return_code=process.returncode,
            timed_out=timed_out,
            duration=duration,
        )

    def kill_all(self) -> None:
        for pid in list(self._running):
            kill_process_tree(pid)
            self._running.discard(pid)
