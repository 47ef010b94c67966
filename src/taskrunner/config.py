"""Configuration management for the task runner."""

import os
import json
from pathlib import Path
from dataclasses import dataclass, field, asdict
from typing import Any, Dict, Optional
from dotenv import load_dotenv


def get_global_config_path() -> Path:
    """Get path to global config: ~/.taskrunner.json"""
    return Path.home() / ".taskrunner.json"


def get_workspace_config_path(workspace: Optional[Path] = None) -> Path:
    """Get path to workspace config: workspace/.taskrunner/config.json"""
    ws = workspace or Path.cwd()
    return ws / ".taskrunner" / "config.json"


def load_json_config(path: Path) -> dict:
    """Load config from JSON file if it exists."""
    if path.exists():
        try:
            return json.loads(path.read_text())
        except (json.JSONDecodeError, IOError):
            pass
    return {}


def _env_flag(name: str, default: bool = False) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


@dataclass
class AutoApprovalSettings:
    """Which tool categories may run without a blocking approval ask."""

    enabled: bool = False
    read_files: bool = False
    read_files_externally: bool = False
    edit_files: bool = False
    edit_files_externally: bool = False
    execute_safe_commands: bool = False
    execute_all_commands: bool = False
    max_requests: int = 20

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AutoApprovalSettings":
        actions = data.get("actions", {})
        return cls(
            enabled=bool(data.get("enabled", False)),
            read_files=bool(actions.get("read_files", False)),
            read_files_externally=bool(actions.get("read_files_externally", False)),
            edit_files=bool(actions.get("edit_files", False)),
            edit_files_externally=bool(actions.get("edit_files_externally", False)),
            execute_safe_commands=bool(actions.get("execute_safe_commands", False)),
            execute_all_commands=bool(actions.get("execute_all_commands", False)),
            max_requests=int(data.get("max_requests", 20)),
        )

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        return {
            "enabled": data.pop("enabled"),
            "max_requests": data.pop("max_requests"),
            "actions": data,
        }


@dataclass
class Config:
    """Configuration for the task runner."""

    api_url: str = ""
    api_key: str = ""
    model: str = "glm-4.7"
    max_tokens: int = 32000
    temperature: float = 0.7
    workspace_path: Path = field(default_factory=lambda: Path.cwd())
    data_dir: Path = field(default_factory=lambda: Path.home() / ".taskrunner" / "data")
    context_window: Optional[int] = None
    max_consecutive_mistakes: int = 3
    first_chunk_retry_delay: float = 1.0
    command_timeout: float = 120.0
    auto_approval: AutoApprovalSettings = field(default_factory=AutoApprovalSettings)

    @classmethod
    def from_json(cls, workspace: Optional[Path] = None) -> "Config":
        """Load configuration from JSON files.

        Priority (later overrides earlier):
        1. ~/.taskrunner.json (global)
        2. workspace/.taskrunner/config.json (workspace-specific)
        """
        config_data = {}

        global_config = load_json_config(get_global_config_path())
        config_data.update(global_config)

        ws_config = load_json_config(get_workspace_config_path(workspace))
        config_data.update(ws_config)

        defaults = cls()
        context_window = config_data.get("context_window")
        data_dir = config_data.get("data_dir")
        return cls(
            api_url=config_data.get("api_url", ""),
            api_key=config_data.get("api_key", ""),
            model=config_data.get("model", defaults.model),
            max_tokens=int(config_data.get("max_tokens", defaults.max_tokens)),
            temperature=float(config_data.get("temperature", defaults.temperature)),
            workspace_path=workspace or Path.cwd(),
            data_dir=Path(data_dir).expanduser() if data_dir else defaults.data_dir,
            context_window=int(context_window) if context_window else None,
            max_consecutive_mistakes=int(
                config_data.get("max_consecutive_mistakes", defaults.max_consecutive_mistakes)
            ),
            first_chunk_retry_delay=float(
                config_data.get("first_chunk_retry_delay", defaults.first_chunk_retry_delay)
            ),
            command_timeout=float(config_data.get("command_timeout", defaults.command_timeout)),
            auto_approval=AutoApprovalSettings.from_dict(config_data.get("auto_approval", {})),
        )

    @classmethod
    def from_env(cls, env_path: Optional[Path] = None, workspace: Optional[Path] = None) -> "Config":
        """Load configuration from environment variables, falling back to JSON."""
        if env_path and env_path.exists():
            load_dotenv(env_path)
        else:
            load_dotenv()

        api_url = os.getenv("TASKRUNNER_API_URL", "")
        api_key = os.getenv("TASKRUNNER_API_KEY", "")

        if not api_url or not api_key:
            return cls.from_json(workspace)

        defaults = cls()
        context_window = os.getenv("TASKRUNNER_CONTEXT_WINDOW")
        data_dir = os.getenv("TASKRUNNER_DATA_DIR")
        return cls(
            api_url=api_url,
            api_key=api_key,
            model=os.getenv("TASKRUNNER_MODEL", defaults.model),
            max_tokens=int(os.getenv("TASKRUNNER_MAX_TOKENS", str(defaults.max_tokens))),
            temperature=float(os.getenv("TASKRUNNER_TEMPERATURE", str(defaults.temperature))),
            workspace_path=workspace or Path(os.getenv("WORKSPACE_PATH", str(Path.cwd()))),
            data_dir=Path(data_dir).expanduser() if data_dir else defaults.data_dir,
            context_window=int(context_window) if context_window else None,
            max_consecutive_mistakes=int(os.getenv("TASKRUNNER_MAX_MISTAKES", "3")),
            command_timeout=float(os.getenv("TASKRUNNER_COMMAND_TIMEOUT", "120")),
            auto_approval=AutoApprovalSettings(
                enabled=_env_flag("TASKRUNNER_AUTO_APPROVE"),
                read_files=_env_flag("TASKRUNNER_AUTO_APPROVE_READ"),
                edit_files=_env_flag("TASKRUNNER_AUTO_APPROVE_EDIT"),
                execute_safe_commands=_env_flag("TASKRUNNER_AUTO_APPROVE_SAFE_COMMANDS"),
                max_requests=int(os.getenv("TASKRUNNER_AUTO_APPROVE_MAX_REQUESTS", "20")),
            ),
        )

    def validate(self) -> bool:
        """Validate the configuration."""
        if not self.api_url:
            raise ValueError("API URL is required. Set TASKRUNNER_API_URL or api_url in ~/.taskrunner.json.")
        if not self.api_key:
            raise ValueError("API key is required. Set TASKRUNNER_API_KEY or api_key in ~/.taskrunner.json.")
        if self.max_consecutive_mistakes < 1:
            raise ValueError("max_consecutive_mistakes must be at least 1.")
        return True
