"""Auto-approval policy: which tool uses skip the blocking approval ask."""

import os
from pathlib import Path
from typing import Dict, Optional, Tuple

from .config import AutoApprovalSettings
from .tool_registry import get_tool_def


class AutoApprovalPolicy:
    def __init__(self, settings: AutoApprovalSettings, cwd: Path):
        self.settings = settings
        self.cwd = Path(cwd).resolve()

    def _flags(self, tool_name: str) -> Tuple[bool, bool]:
        """(local, external) approval flags for the tool's action category."""
        s = self.settings
        if not s.enabled:
            return False, False
        tool_def = get_tool_def(tool_name)
        action = tool_def.approval if tool_def else None
        if action == "read":
            return s.read_files, s.read_files_externally
        if action == "edit":
            return s.edit_files, s.edit_files_externally
        if action == "command":
            return s.execute_safe_commands, s.execute_all_commands
        return False, False

    def _is_inside_workspace(self, path: Optional[str]) -> bool:
        if not path:
            return False
        absolute = Path(os.path.normpath(self.cwd / path))
        return absolute == self.cwd or self.cwd in absolute.parents

    def is_auto_approved(self, tool_name: str, params: Dict[str, str]) -> bool:
        local, external = self._flags(tool_name)
        tool_def = get_tool_def(tool_name)
        if tool_def is None:
            return False

        if tool_def.approval == "command":
            requires_approval = params.get("requires_approval", "").strip().lower() == "true"
            if requires_approval:
                return local and external
            return local

        if tool_def.path_param is None:
            return local
        if self._is_inside_workspace(params.get(tool_def.path_param)):
            return local
        return local and external

    @property
    def max_requests(self) -> Optional[int]:
        if not self.settings.enabled:
            return None
        return self.settings.max_requests
