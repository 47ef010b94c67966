"""Task persistence: histories and metadata as JSON files per task.

    <data_dir>/tasks/<task_id>/api_conversation_history.json
    <data_dir>/tasks/<task_id>/ui_messages.json
    <data_dir>/tasks/<task_id>/task_metadata.json

Writes are serialized per storage instance and atomic (temp file then
replace), so a later snapshot is never overwritten by an earlier one.
"""

import asyncio
import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

import aiofiles

from .logger import get_logger
from .messages import ApiMessage, UIMessage

_log = get_logger("storage")

API_HISTORY_FILE = "api_conversation_history.json"
UI_MESSAGES_FILE = "ui_messages.json"
METADATA_FILE = "task_metadata.json"


@dataclass
class TaskSnapshot:
    """Everything needed to resume a task."""
    task_id: str
    api_history: List[ApiMessage] = field(default_factory=list)
    ui_messages: List[UIMessage] = field(default_factory=list)
    metadata: Dict[str, Any] = field(default_factory=dict)


class TaskStorage:
    def __init__(self, data_dir: Path):
        self.data_dir = Path(data_dir)
        self._lock: Optional[asyncio.Lock] = None
        self._lock_loop: Optional[asyncio.AbstractEventLoop] = None

    def task_dir(self, task_id: str) -> Path:
        return self.data_dir / "tasks" / task_id

    def _get_lock(self) -> asyncio.Lock:
        loop = asyncio.get_running_loop()
        if self._lock is None or self._lock_loop is not loop:
            self._lock = asyncio.Lock()
            self._lock_loop = loop
        return self._lock

    async def _write_json(self, path: Path, payload: str) -> None:
        async with self._get_lock():
            path.parent.mkdir(parents=True, exist_ok=True)
            tmp = path.with_suffix(path.suffix + ".tmp")
            async with aiofiles.open(tmp, "w", encoding="utf-8") as f:
                await f.write(payload)
            os.replace(tmp, path)

    async def _read_json(self, path: Path, default: Any) -> Any:
        if not path.exists():
            return default
        async with aiofiles.open(path, "r", encoding="utf-8") as f:
            text = await f.read()
        try:
            return json.loads(text)
        except json.JSONDecodeError as e:
            _log.warning("corrupt %s: %s", path, e)
            return default

    async def save_api_history(self, task_id: str, payload: str) -> None:
        await self._write_json(self.task_dir(task_id) / API_HISTORY_FILE, payload)

    async def save_ui_messages(self, task_id: str, payload: str) -> None:
        await self._write_json(self.task_dir(task_id) / UI_MESSAGES_FILE, payload)

    async def save_metadata(self, task_id: str, payload: str) -> None:
        await self._write_json(self.task_dir(task_id) / METADATA_FILE, payload)

    async def load(self, task_id: str) -> TaskSnapshot:
        task_dir = self.task_dir(task_id)
        if not task_dir.exists():
            raise FileNotFoundError(f"No saved task {task_id} in {self.data_dir}")
        api = await self._read_json(task_dir / API_HISTORY_FILE, [])
        ui = await self._read_json(task_dir / UI_MESSAGES_FILE, [])
        metadata = await self._read_json(task_dir / METADATA_FILE, {})
        return TaskSnapshot(
            task_id=task_id,
            api_history=[ApiMessage.from_dict(m) for m in api],
            ui_messages=[UIMessage.from_dict(m) for m in ui],
            metadata=metadata,
        )

    def list_tasks(self) -> List[Dict[str, Any]]:
        """Metadata of all saved tasks, newest first."""
        tasks = []
        root = self.data_dir / "tasks"
        if not root.exists():
            return tasks
        for task_dir in root.iterdir():
            meta_path = task_dir / METADATA_FILE
            if not meta_path.exists():
                continue
            try:
                tasks.append(json.loads(meta_path.read_text(encoding="utf-8")))
            except (json.JSONDecodeError, OSError) as e:
                _log.warning("skipping %s: %s", meta_path, e)
        tasks.sort(key=lambda m: m.get("ts", 0), reverse=True)
        return tasks
