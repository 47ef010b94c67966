"""Tests for the local tool executor and its file and shell tools."""

import asyncio
import sys

import pytest

from taskrunner.tools import LocalToolExecutor
from taskrunner.tools.file_tools import parse_search_replace_blocks


def run(coro):
    return asyncio.run(coro)


@pytest.fixture
def executor(tmp_path):
    return LocalToolExecutor(tmp_path, command_timeout=10)


# ============================================================
# SEARCH/REPLACE parsing
# ============================================================

def test_parse_angle_bracket_blocks():
    diff = "<<<<<<< SEARCH\nold line\n=======\nnew line\n>>>>>>> REPLACE"
    assert parse_search_replace_blocks(diff) == [("old line", "new line")]


def test_parse_dash_plus_blocks():
    diff = (
        "------- SEARCH\na = 1\n=======\na = 2\n+++++++ REPLACE\n"
        "------- SEARCH\nb = 1\n=======\nb = 2\n+++++++ REPLACE"
    )
    assert parse_search_replace_blocks(diff) == [("a = 1", "a = 2"), ("b = 1", "b = 2")]


def test_parse_without_blocks():
    assert parse_search_replace_blocks("just some text") == []


# ============================================================
# File tools
# ============================================================

class TestFileTools:
    def test_write_creates_directories(self, executor, tmp_path):
        result = run(executor.execute("write_to_file", {"path": "pkg/mod.py", "content": "x = 1"}))
        assert result.success
        assert (tmp_path / "pkg" / "mod.py").read_text() == "x = 1\n"

    def test_read_file(self, executor, tmp_path):
        (tmp_path / "hello.txt").write_text("hi there\n")
        result = run(executor.execute("read_file", {"path": "hello.txt"}))
        assert result.success
        assert result.to_message() == "hi there\n"

    def test_read_missing_file(self, executor):
        result = run(executor.execute("read_file", {"path": "nope.txt"}))
        assert not result.success
        assert "FileNotFoundError" in result.error

    def test_replace_in_file(self, executor, tmp_path):
        target = tmp_path / "app.py"
        target.write_text("def main():\n    return 1\n")
        diff = "------- SEARCH\n    return 1\n=======\n    return 2\n+++++++ REPLACE"
        result = run(executor.execute("replace_in_file", {"path": "app.py", "diff": diff}))
        assert result.success
        assert target.read_text() == "def main():\n    return 2\n"
        assert "<final_file_content" in result.output

    def test_replace_without_match_leaves_file(self, executor, tmp_path):
        target = tmp_path / "app.py"
        target.write_text("print('a')\n")
        diff = "<<<<<<< SEARCH\nprint('b')\n=======\nprint('c')\n>>>>>>> REPLACE"
        result = run(executor.execute("replace_in_file", {"path": "app.py", "diff": diff}))
        assert not result.success
        assert result.error.startswith("ToolExecutionError")
        assert "does not match" in result.error
        assert target.read_text() == "print('a')\n"

    def test_list_files_skips_hidden(self, executor, tmp_path):
        (tmp_path / "src").mkdir()
        (tmp_path / "src" / "a.py").write_text("")
        (tmp_path / ".git").mkdir()
        (tmp_path / ".git" / "HEAD").write_text("")
        result = run(executor.execute("list_files", {"path": ".", "recursive": "true"}))
        assert result.success
        lines = result.output.splitlines()
        assert "src/" in lines
        assert "src/a.py" in lines
        assert not any(line.startswith(".git") for line in lines)

    def test_search_files(self, executor, tmp_path):
        (tmp_path / "a.py").write_text("import os\nTODO = 1\n")
        (tmp_path / "b.txt").write_text("TODO later\n")
        result = run(executor.execute("search_files", {"path": ".", "regex": "TODO", "file_pattern": "*.py"}))
        assert result.success
        assert "a.py:2: TODO = 1" in result.output
        assert "b.txt" not in result.output

    def test_search_invalid_regex(self, executor):
        result = run(executor.execute("search_files", {"path": ".", "regex": "("}))
        assert not result.success
        assert "Invalid regex" in result.error

    def test_unknown_tool(self, executor):
        result = run(executor.execute("fly_to_moon", {}))
        assert not result.success
        assert "not found" in result.error

    def test_metrics_recorded(self, executor, tmp_path):
        (tmp_path / "x.txt").write_text("x")
        run(executor.execute("read_file", {"path": "x.txt"}))
        run(executor.execute("read_file", {"path": "missing.txt"}))
        assert executor.metrics.summary()["read_file"]["calls"] == 2
        assert executor.metrics.summary()["read_file"]["failures"] == 1
        assert "File not found" in executor.metrics.summary()["read_file"]["last_error"]


# ============================================================
# Shell
# ============================================================

@pytest.mark.skipif(sys.platform == "win32", reason="POSIX shell syntax")
class TestExecuteCommand:
    def test_output_and_exit_code(self, executor):
        result = run(executor.execute("execute_command", {"command": "echo hello", "requires_approval": "false"}))
        assert result.success
        assert "exited with code 0" in result.output
        assert "hello" in result.output

    def test_stderr_is_merged(self, executor):
        result = run(executor.execute("execute_command", {"command": "echo oops 1>&2; exit 3"}))
        assert "exited with code 3" in result.output
        assert "oops" in result.output

    def test_runs_in_workspace(self, executor, tmp_path):
        (tmp_path / "marker.txt").write_text("")
        result = run(executor.execute("execute_command", {"command": "ls"}))
        assert "marker.txt" in result.output

    def test_timeout_kills_command(self, tmp_path):
        executor = LocalToolExecutor(tmp_path, command_timeout=0.5)
        result = run(executor.execute("execute_command", {"command": "sleep 5"}))
        assert result.success
        assert "timed out" in result.output
        assert executor.shell._running == set()
