import pytest

from taskrunner.auto_approve import AutoApprovalPolicy
from taskrunner.config import AutoApprovalSettings


def policy(tmp_path, **flags):
    return AutoApprovalPolicy(AutoApprovalSettings(enabled=True, **flags), tmp_path)


class TestFileTools:
    def test_read_inside_workspace(self, tmp_path):
        p = policy(tmp_path, read_files=True)
        assert p.is_auto_approved("read_file", {"path": "src/app.py"})
        assert p.is_auto_approved("list_files", {"path": "."})

    def test_read_outside_workspace_needs_external_flag(self, tmp_path):
        p = policy(tmp_path, read_files=True)
        assert not p.is_auto_approved("read_file", {"path": "../secrets.txt"})
        assert not p.is_auto_approved("read_file", {"path": "/etc/passwd"})
        p = policy(tmp_path, read_files=True, read_files_externally=True)
        assert p.is_auto_approved("read_file", {"path": "/etc/passwd"})

    def test_edit_needs_edit_flag(self, tmp_path):
        p = policy(tmp_path, read_files=True)
        assert not p.is_auto_approved("write_to_file", {"path": "a.py"})
        p = policy(tmp_path, edit_files=True)
        assert p.is_auto_approved("replace_in_file", {"path": "a.py"})

    def test_missing_path_is_external(self, tmp_path):
        p = policy(tmp_path, read_files=True)
        assert not p.is_auto_approved("read_file", {})


class TestCommands:
    def test_safe_command(self, tmp_path):
        p = policy(tmp_path, execute_safe_commands=True)
        assert p.is_auto_approved("execute_command", {"command": "ls", "requires_approval": "false"})

    def test_command_requiring_approval(self, tmp_path):
        p = policy(tmp_path, execute_safe_commands=True)
        assert not p.is_auto_approved("execute_command", {"command": "rm -rf build", "requires_approval": "true"})
        p = policy(tmp_path, execute_safe_commands=True, execute_all_commands=True)
        assert p.is_auto_approved("execute_command", {"command": "rm -rf build", "requires_approval": "true"})


@pytest.mark.parametrize("tool", ["ask_followup_question", "attempt_completion", "unknown_tool"])
def test_never_approves_interaction_or_unknown(tmp_path, tool):
    p = policy(tmp_path, read_files=True, edit_files=True, execute_safe_commands=True)
    assert not p.is_auto_approved(tool, {})


def test_disabled_policy(tmp_path):
    settings = AutoApprovalSettings(enabled=False, read_files=True, max_requests=3)
    p = AutoApprovalPolicy(settings, tmp_path)
    assert not p.is_auto_approved("read_file", {"path": "a.py"})
    assert p.max_requests is None


def test_max_requests_when_enabled(tmp_path):
    assert policy(tmp_path, max_requests=3).max_requests == 3
