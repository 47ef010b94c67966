import json

import pytest

from taskrunner import config as config_module
from taskrunner.config import AutoApprovalSettings, Config


@pytest.fixture
def global_config(tmp_path, monkeypatch):
    path = tmp_path / "global.json"
    monkeypatch.setattr(config_module, "get_global_config_path", lambda: path)
    return path


def test_from_json_workspace_overrides_global(tmp_path, global_config):
    global_config.write_text(json.dumps({
        "api_url": "https://api.example.com/v1",
        "api_key": "global-key",
        "model": "gpt-4o",
    }))
    workspace = tmp_path / "ws"
    (workspace / ".taskrunner").mkdir(parents=True)
    (workspace / ".taskrunner" / "config.json").write_text(json.dumps({
        "model": "glm-4.7",
        "context_window": 64000,
        "auto_approval": {"enabled": True, "actions": {"read_files": True}, "max_requests": 5},
    }))

    config = Config.from_json(workspace)
    assert config.api_key == "global-key"
    assert config.model == "glm-4.7"
    assert config.context_window == 64000
    assert config.workspace_path == workspace
    assert config.auto_approval.enabled
    assert config.auto_approval.read_files
    assert not config.auto_approval.edit_files
    assert config.auto_approval.max_requests == 5


def test_from_json_ignores_corrupt_file(tmp_path, global_config):
    global_config.write_text("{not json")
    config = Config.from_json(tmp_path)
    assert config.api_url == ""
    assert config.context_window is None
    assert config.max_consecutive_mistakes == 3


def test_validate_requires_credentials():
    with pytest.raises(ValueError, match="API URL"):
        Config().validate()
    with pytest.raises(ValueError, match="API key"):
        Config(api_url="https://api.example.com").validate()
    assert Config(api_url="https://api.example.com", api_key="k").validate()


def test_validate_mistake_limit():
    with pytest.raises(ValueError):
        Config(api_url="u", api_key="k", max_consecutive_mistakes=0).validate()


def test_auto_approval_dict_round_trip():
    settings = AutoApprovalSettings(enabled=True, edit_files=True, max_requests=7)
    data = settings.to_dict()
    assert data["enabled"] is True
    assert data["max_requests"] == 7
    assert data["actions"]["edit_files"] is True
    assert AutoApprovalSettings.from_dict(data) == settings
