"""End-to-end tests of the task loop with a scripted model and user."""

import asyncio
import json
import logging

import pytest

from taskrunner.config import AutoApprovalSettings
from taskrunner.errors import ProviderError
from taskrunner.messages import AskKind, AskResponse, SayKind
from taskrunner.storage import TaskStorage
from taskrunner.assistant_message import parse_assistant_message
from taskrunner.orchestrator import Turn
from taskrunner.streaming_client import ReasoningChunk, TextChunk, UsageChunk
from taskrunner.task import EMPTY_RESPONSE_MESSAGE

from fakes import COMPLETION, HANG, DelayedPresenter, RecordingExecutor, make_task, text

YES = (AskResponse.YES, None)
NO = (AskResponse.NO, None)


def run(coro, timeout=10):
    return asyncio.run(asyncio.wait_for(coro, timeout))


def request_text(task, index):
    """Text of the last user message of the ``index``-th request."""
    return task.provider.requests[index][-1].text


def api_request_info(task):
    started = [m for m in task.ui_messages if m.say == SayKind.API_REQ_STARTED]
    return json.loads(started[-1].text)


@pytest.fixture
def workspace(tmp_path):
    (tmp_path / "notes.txt").write_text("hello from notes\n")
    (tmp_path / "a.txt").write_text("alpha\n")
    (tmp_path / "b.txt").write_text("bravo\n")
    return tmp_path


READ_NOTES = "I'll read the notes.\n\n<read_file>\n<path>notes.txt</path>\n</read_file>"
READ_TWO = (
    "<read_file>\n<path>a.txt</path>\n</read_file>\n"
    "<read_file>\n<path>b.txt</path>\n</read_file>"
)


# ============================================================
# Happy path
# ============================================================

class TestApprovedToolThenCompletion:
    def test_read_then_complete(self, workspace):
        task = make_task(workspace, [text(READ_NOTES), text(COMPLETION)], answers=[YES, YES])
        run(task.start_task("Summarize notes.txt"))

        assert task.did_complete
        assert task.channel.presenter.ask_kinds == [AskKind.TOOL, AskKind.COMPLETION_RESULT]
        assert [m.role for m in task.api_history] == ["user", "assistant", "user", "assistant"]
        assert task.api_history[0].text.startswith("<task>\nSummarize notes.txt\n</task>")

        result = request_text(task, 1)
        assert "[read_file for 'notes.txt'] Result:" in result
        assert "hello from notes" in result

    def test_ui_stream(self, workspace):
        task = make_task(workspace, [text(READ_NOTES), text(COMPLETION)], answers=[YES, YES])
        run(task.start_task("Summarize notes.txt"))

        assert task.ui_messages[0].say == SayKind.TASK
        assert task.ui_messages[1].say == SayKind.API_REQ_STARTED
        texts = [m for m in task.ui_messages if m.say == SayKind.TEXT]
        assert texts[0].text == "I'll read the notes."
        assert not any(m.partial for m in task.ui_messages)
        stamps = [m.ts for m in task.ui_messages]
        assert stamps == sorted(set(stamps))

    def test_usage_recorded_on_request(self, workspace):
        task = make_task(workspace, [text(COMPLETION)], answers=[YES])
        run(task.start_task("Finish up"))

        info = api_request_info(task)
        assert info["tokensIn"] == 100
        assert info["tokensOut"] == 20
        assert "cost" in info
        assert task.cost_tracker.get_summary().total_calls == 1

    def test_streamed_tool_is_asked_once(self, workspace):
        script = [
            [TextChunk("<read_file>\n<path>no"), TextChunk("tes.txt</path>\n</read_file>"), UsageChunk()],
            text(COMPLETION),
        ]
        task = make_task(workspace, script, answers=[YES, YES])
        run(task.start_task("Read the notes"))

        tool_asks = [m for m in task.ui_messages if m.ask == AskKind.TOOL]
        assert len(tool_asks) == 1
        assert "notes.txt" in tool_asks[0].text
        assert not tool_asks[0].partial


# ============================================================
# One tool per message
# ============================================================

class TestToolOrchestration:
    def test_second_tool_is_not_executed(self, workspace):
        task = make_task(
            workspace, [text(READ_TWO), text(COMPLETION)], answers=[YES],
            auto_approval=AutoApprovalSettings(enabled=True, read_files=True),
        )
        run(task.start_task("Read both files"))

        result = request_text(task, 1)
        assert "[read_file for 'a.txt'] Result:" in result
        assert "alpha" in result
        assert "bravo" not in result
        assert "Tool [read_file] was not executed" in result
        assert task.channel.presenter.ask_kinds == [AskKind.COMPLETION_RESULT]

    def test_rejection_skips_remaining_tools(self, workspace):
        task = make_task(workspace, [text(READ_TWO), text(COMPLETION)], answers=[NO, YES])
        run(task.start_task("Read both files"))

        result = request_text(task, 1)
        assert "The user denied this operation." in result
        assert "Skipping tool [read_file for 'b.txt'] due to user rejecting a previous tool." in result
        assert task.channel.presenter.ask_kinds == [AskKind.TOOL, AskKind.COMPLETION_RESULT]

    def test_rejection_with_feedback(self, workspace):
        answers = [(AskResponse.MESSAGE, "read notes.txt instead"), YES]
        task = make_task(workspace, [text(READ_TWO), text(COMPLETION)], answers=answers)
        run(task.start_task("Read both files"))

        result = request_text(task, 1)
        assert "<feedback>\nread notes.txt instead\n</feedback>" in result
        assert any(m.say == SayKind.USER_FEEDBACK for m in task.ui_messages)

    def test_missing_parameter(self, workspace):
        task = make_task(workspace, [text("<read_file>\n</read_file>"), text(COMPLETION)], answers=[YES])
        run(task.start_task("Read something"))

        assert "Missing value for required parameter 'path'" in request_text(task, 1)
        errors = [m for m in task.ui_messages if m.say == SayKind.ERROR]
        assert "without value for required parameter 'path'" in errors[0].text
        assert task.consecutive_mistake_count == 0

    def test_followup_question(self, workspace):
        question = (
            "<ask_followup_question>\n<question>Which file?</question>\n"
            '<options>["a.txt", "b.txt"]</options>\n</ask_followup_question>'
        )
        answers = [(AskResponse.MESSAGE, "a.txt"), YES]
        task = make_task(workspace, [text(question), text(COMPLETION)], answers=answers)
        run(task.start_task("Pick a file"))

        assert "<answer>\na.txt\n</answer>" in request_text(task, 1)
        followup = task.channel.presenter.asks[0]
        assert json.loads(followup.text) == {"question": "Which file?", "options": ["a.txt", "b.txt"]}
        assert not any(m.say == SayKind.USER_FEEDBACK for m in task.ui_messages)

    def test_completion_feedback_continues_task(self, workspace):
        answers = [(AskResponse.MESSAGE, "Please also add docs"), YES]
        task = make_task(workspace, [text(COMPLETION), text(COMPLETION)], answers=answers)
        run(task.start_task("Write code"))

        assert "<feedback>\nPlease also add docs\n</feedback>" in request_text(task, 1)
        assert task.channel.presenter.ask_kinds == [AskKind.COMPLETION_RESULT, AskKind.COMPLETION_RESULT]
        assert task.did_complete


# ============================================================
# Mistakes and empty responses
# ============================================================

class TestMistakes:
    def test_text_only_response_gets_nudge(self, workspace):
        task = make_task(workspace, [text("I think we are done here."), text(COMPLETION)], answers=[YES])
        run(task.start_task("Do it"))

        assert "[ERROR] You did not use a tool" in request_text(task, 1)

    def test_empty_response(self, workspace):
        task = make_task(workspace, [[UsageChunk(5, 0)], text(COMPLETION)], answers=[YES])
        run(task.start_task("Do it"))

        assert task.api_history[1].role == "assistant"
        assert task.api_history[1].text == "Failure: I did not provide a response."
        assert any(m.say == SayKind.ERROR and m.text == EMPTY_RESPONSE_MESSAGE for m in task.ui_messages)
        assert "[ERROR] You did not use a tool" in request_text(task, 1)

    def test_mistake_limit_asks_for_guidance(self, workspace):
        answers = [(AskResponse.MESSAGE, "Use the read_file tool"), YES]
        task = make_task(
            workspace, [text("Hmm."), text(COMPLETION)], answers=answers, max_consecutive_mistakes=1,
        )
        run(task.start_task("Do it"))

        assert task.channel.presenter.ask_kinds == [AskKind.MISTAKE_LIMIT_REACHED, AskKind.COMPLETION_RESULT]
        assert "Use the read_file tool" in request_text(task, 1)

    def test_auto_approval_limit(self, workspace):
        script = [text("<read_file>\n<path>a.txt</path>\n</read_file>"), text(COMPLETION)]
        task = make_task(
            workspace, script, answers=[YES, YES],
            auto_approval=AutoApprovalSettings(enabled=True, read_files=True, max_requests=1),
        )
        run(task.start_task("Read a"))

        assert task.channel.presenter.ask_kinds == [
            AskKind.AUTO_APPROVAL_MAX_REQ_REACHED, AskKind.COMPLETION_RESULT,
        ]
        assert task.consecutive_auto_approved_requests_count == 0


# ============================================================
# Interruption
# ============================================================

class TestInterruption:
    def test_abort_mid_stream(self, workspace):
        task = make_task(workspace, [[TextChunk("Partial answer"), HANG]])
        presenter = task.channel.presenter

        async def go():
            running = asyncio.ensure_future(task.start_task("Do it"))
            for _ in range(200):
                await asyncio.sleep(0.01)
                if any(m.say == SayKind.TEXT for m, _ in presenter.posts):
                    break
            await task.abort_task()
            await asyncio.wait_for(running, 5)

        run(go())

        assert task.abort_signal.aborted
        assert task.api_history[-1].role == "assistant"
        assert task.api_history[-1].text == "Partial answer\n\n[Response interrupted by user]"
        assert api_request_info(task)["cancelReason"] == "user_cancelled"
        assert not task.ui_messages[-1].partial
        assert not task.did_complete

    def test_abort_while_waiting_for_approval(self, workspace):
        task = make_task(workspace, [text(READ_NOTES)])

        async def go():
            running = asyncio.ensure_future(task.start_task("Read notes"))
            for _ in range(200):
                await asyncio.sleep(0.01)
                if task.channel.pending_ask is not None:
                    break
            await task.abort_task()
            await asyncio.wait_for(running, 5)

        run(go())
        assert task.abort_signal.aborted
        assert len(task.provider.requests) == 1

    def test_stream_error_keeps_partial_output(self, workspace):
        script = [[TextChunk("Working on it"), ProviderError("connection reset")]]
        task = make_task(workspace, script)
        run(task.start_task("Do it"))

        assert task.abort_signal.aborted
        assert task.api_history[-1].text == "Working on it\n\n[Response interrupted by API Error]"
        info = api_request_info(task)
        assert info["cancelReason"] == "streaming_failed"
        assert info["streamingFailedMessage"] == "connection reset"

    def test_declined_retry_stops_task(self, workspace):
        script = [ProviderError("bad gateway", status_code=502), ProviderError("bad gateway", status_code=502)]
        task = make_task(workspace, script, answers=[NO])
        run(task.start_task("Do it"))

        assert task.channel.presenter.ask_kinds == [AskKind.API_REQ_FAILED]
        assert task.state.value == "stopped"
        assert not task.did_complete


# ============================================================
# Persistence and resume
# ============================================================

class TestResume:
    def test_saved_task_can_be_resumed(self, workspace):
        storage = TaskStorage(workspace / ".data")
        first = make_task(workspace, [text(COMPLETION)], answers=[YES], storage=storage, task_id="t1")
        run(first.start_task("Finish up"))

        snapshot = run(storage.load("t1"))
        assert snapshot.metadata["completed"] is True
        assert snapshot.metadata["task"] == "Finish up"
        assert [m.role for m in snapshot.api_history] == ["user", "assistant"]
        assert snapshot.ui_messages[0].say == SayKind.TASK

        answers = [(AskResponse.MESSAGE, "Also update the changelog"), YES]
        second = make_task(workspace, [text(COMPLETION)], answers=answers, storage=storage, task_id="t1")
        run(second.resume_task_from_history())

        assert second.channel.presenter.ask_kinds == [
            AskKind.RESUME_COMPLETED_TASK, AskKind.COMPLETION_RESULT,
        ]
        assert second.task_text == "Finish up"
        resumed = request_text(second, 0)
        assert "[TASK RESUMPTION]" in resumed
        assert "Also update the changelog" in resumed
        assert len(second.provider.requests[0]) == 3

    def test_resume_unknown_task(self, workspace):
        storage = TaskStorage(workspace / ".data")
        task = make_task(workspace, [], storage=storage, task_id="missing")
        with pytest.raises(FileNotFoundError):
            run(task.resume_task_from_history())


class FailingStorage(TaskStorage):
    async def _write_json(self, path, payload):
        raise OSError("disk full")


class TestPersistenceFailures:
    def test_failed_saves_are_logged_not_fatal(self, workspace, caplog):
        storage = FailingStorage(workspace / ".data")
        task = make_task(workspace, [text(READ_NOTES), text(COMPLETION)], answers=[YES, YES],
                         storage=storage, task_id="t1")
        with caplog.at_level(logging.WARNING, logger="taskrunner"):
            run(task.start_task("Summarize notes.txt"))

        assert task.did_complete
        assert not task.abort_signal.aborted
        failures = [r for r in caplog.records if "failed to save" in r.getMessage()]
        assert failures
        assert all(r.levelno == logging.WARNING for r in failures)
        assert "disk full" in failures[0].getMessage()


# ============================================================
# Scenarios with a slow user and interleaved reasoning
# ============================================================

WRITE_A = "<write_to_file>\n<path>a.txt</path>\n<content>hi</content>\n</write_to_file>"


class TestWriteFileScenario:
    def test_approved_write_runs_once_with_exact_params(self, workspace):
        executor = RecordingExecutor(workspace)
        task = make_task(workspace, [text(WRITE_A), text(COMPLETION)], answers=[YES, YES],
                         executor=executor)
        run(task.start_task("create file a.txt with content hi"))

        assert task.channel.presenter.ask_kinds == [AskKind.TOOL, AskKind.COMPLETION_RESULT]
        assert executor.calls == [("write_to_file", {"path": "a.txt", "content": "hi"})]
        assert (workspace / "a.txt").read_text() == "hi\n"

        result = request_text(task, 1)
        assert "[write_to_file for 'a.txt'] Result:" in result
        assert "successfully saved" in result
        assert task.did_complete


class TestSlowUser:
    def test_late_reasoning_does_not_abort_pending_approval(self, workspace, caplog):
        tool_only = "<read_file>\n<path>notes.txt</path>\n</read_file>"
        script = [
            [TextChunk(tool_only), ReasoningChunk("late reasoning"), UsageChunk(100, 20)],
            text(COMPLETION),
        ]
        task = make_task(workspace, script, presenter=DelayedPresenter([YES, YES]))
        with caplog.at_level(logging.DEBUG, logger="taskrunner"):
            run(task.start_task("Read notes"))

        assert not task.abort_signal.aborted
        assert task.did_complete
        assert task.channel.presenter.ask_kinds == [AskKind.TOOL, AskKind.COMPLETION_RESULT]
        assert "hello from notes" in request_text(task, 1)
        reasoning = [m for m in task.ui_messages if m.say == SayKind.REASONING]
        assert [(m.text, m.partial) for m in reasoning] == [("late reasoning", False)]
        assert not [r for r in caplog.records if r.levelno >= logging.ERROR]

    def test_reasoning_between_text_keeps_one_text_message(self, workspace):
        script = [[
            TextChunk("Hello "),
            ReasoningChunk("hmm"),
            TextChunk("world. " + COMPLETION),
            UsageChunk(100, 20),
        ]]
        task = make_task(workspace, script, answers=[YES])
        run(task.start_task("Say hello"))

        texts = [m for m in task.ui_messages if m.say == SayKind.TEXT]
        assert [(m.text, m.partial) for m in texts] == [("Hello world.", False)]
        partial_posts = [m for m, _ in task.channel.presenter.posts
                         if m.say == SayKind.TEXT and m.partial]
        assert {m.ts for m in partial_posts} <= {texts[0].ts}
        assert not any(m.partial for m in task.ui_messages)
        assert task.did_complete

    def test_superseded_approval_is_asked_again(self, workspace):
        presenter = DelayedPresenter([YES, YES])
        executor = RecordingExecutor(workspace)
        task = make_task(workspace, [], presenter=presenter, executor=executor)

        async def interrupt():
            while task.channel.pending_ask is None:
                await asyncio.sleep(0.001)
            await task.channel.say(SayKind.ERROR, "something else happened")

        async def go():
            turn = Turn(blocks=parse_assistant_message(READ_NOTES))
            turn.mark_stream_done()
            task.orchestrator.notify(turn)
            await asyncio.gather(task.orchestrator.run(turn), interrupt())
            return turn

        turn = run(go())

        assert presenter.ask_kinds == [AskKind.TOOL, AskKind.TOOL]
        first, second = presenter.asks
        assert second.ts > first.ts
        assert executor.calls == [("read_file", {"path": "notes.txt"})]
        assert turn.did_use_tool
        assert "hello from notes" in "\n".join(p["text"] for p in turn.result if p["type"] == "text")
