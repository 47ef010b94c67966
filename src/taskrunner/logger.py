"""Centralized observability logger for the task runner.

Writes a structured, always-on log to .taskrunner_output/taskrunner.log.
Every ask, say, request attempt, tool execution and persistence failure
is recorded so that a task's timeline can be reconstructed afterwards.
Each line carries the id of the task that was running when it was written.

Usage in any module:
    from .logger import get_logger
    log = get_logger(__name__)
    log.info("something happened")

The log file rotates at 5 MB and keeps the last 5 files.
"""

import logging
import os
import sys
import traceback
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional

# ── Singleton state ──────────────────────────────────────────

_initialized = False
_log_dir: Optional[Path] = None
_task_id: Optional[str] = None


class _TaskIdFilter(logging.Filter):
    """Stamp every record with the id of the task being run."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.task_id = _task_id or "-"
        return True


def _ensure_log_dir() -> Path:
    """Return (and create) the log directory."""
    global _log_dir
    if _log_dir is not None:
        return _log_dir
    _log_dir = Path.cwd() / ".taskrunner_output"
    _log_dir.mkdir(parents=True, exist_ok=True)
    return _log_dir


def init_logging(
    workspace: Optional[str] = None,
    task_id: Optional[str] = None,
    level: int = logging.DEBUG,
) -> None:
    """Initialise the file logger.  Safe to call more than once."""
    global _initialized, _log_dir, _task_id

    if workspace:
        _log_dir = Path(workspace) / ".taskrunner_output"
        _log_dir.mkdir(parents=True, exist_ok=True)
    else:
        _ensure_log_dir()

    _task_id = task_id

    if _initialized:
        if task_id:
            logging.getLogger("taskrunner").info("=== Task %s ===", task_id)
        return
    _initialized = True

    root = logging.getLogger("taskrunner")
    root.setLevel(level)

    if root.handlers:
        return

    log_path = _log_dir / "taskrunner.log"

    handler = RotatingFileHandler(
        str(log_path),
        maxBytes=5 * 1024 * 1024,   # 5 MB per file
        backupCount=5,
        encoding="utf-8",
    )
    handler.setLevel(level)

    fmt = logging.Formatter(
        fmt="%(asctime)s.%(msecs)03d | %(levelname)-5s | %(task_id)s | %(name)s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    handler.setFormatter(fmt)
    handler.addFilter(_TaskIdFilter())
    root.addHandler(handler)

    # Mirror to stderr while developing
    if os.environ.get("TASKRUNNER_DEBUG"):
        stderr_handler = logging.StreamHandler(sys.stderr)
        stderr_handler.setLevel(logging.DEBUG)
        stderr_handler.setFormatter(fmt)
        stderr_handler.addFilter(_TaskIdFilter())
        root.addHandler(stderr_handler)

    root.info(
        "=== Logging initialised === pid=%d python=%s log=%s",
        os.getpid(),
        sys.version.split()[0],
        log_path,
    )


def get_logger(name: str) -> logging.Logger:
    """Return a child logger under the 'taskrunner' namespace.

    Logging is initialised lazily on first use so module-level loggers
    work before the CLI calls init_logging().
    """
    if not _initialized:
        init_logging()
    if name.startswith("taskrunner."):
        name = name[len("taskrunner."):]
    return logging.getLogger(f"taskrunner.{name}")


# ── Convenience helpers ──────────────────────────────────────

def log_exception(logger: logging.Logger, msg: str, exc: BaseException) -> None:
    """Log an exception with full traceback."""
    tb = traceback.format_exception(type(exc), exc, exc.__traceback__)
    logger.error("%s: %s\n%s", msg, exc, "".join(tb))


def truncate(text: str, max_len: int = 200) -> str:
    """Truncate a string for log readability."""
    if not text:
        return "(empty)"
    text = text.replace("\n", "\\n")
    if len(text) <= max_len:
        return text
    return text[:max_len] + f"...[{len(text)} chars]"
