"""Presents parsed assistant blocks as they stream in and runs their tools.

One ``Turn`` is one model response. While the task loop reads the stream
and re-parses the accumulated text, a single consumer (``run``) walks
the blocks in order:

- text blocks are said (partially while still streaming);
- at most one tool is executed per turn; later tools get a marker in the
  turn result instead of running;
- once the user rejects a tool, every later block is skipped.

The consumer is woken through the turn's bounded wakeup queue; a full
queue already guarantees a wakeup, so extra signals are dropped. Only
``run`` presents blocks, so no two presentations of a turn ever overlap.

A blocking ask that is superseded by a newer message is posted again;
the block it belongs to is neither skipped nor re-run.
"""

import asyncio
import copy
import json
import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Dict, List, Optional

from .assistant_message import ContentBlock, TextBlock, ToolUseBlock, clean_text_for_display
from .errors import AskSuperseded, TaskAborted
from .logger import get_logger, log_exception
from .messages import AskKind, AskResponse, AskResult, SayKind, text_part
from . import responses
from .tool_registry import ToolDef, get_tool_def
from .tools.registry import ToolResult

if TYPE_CHECKING:
    from .task import Task

_log = get_logger("orchestrator")


@dataclass
class Turn:
    """Mutable state of one model response, owned by the task loop."""
    blocks: List[ContentBlock] = field(default_factory=list)
    current_block_index: int = 0
    did_reject_tool: bool = False
    did_use_tool: bool = False
    did_complete_task: bool = False
    result: List[Dict[str, Any]] = field(default_factory=list)
    stream_done: bool = False
    complete: bool = False
    wakeups: asyncio.Queue = field(default_factory=lambda: asyncio.Queue(maxsize=1))

    def mark_stream_done(self) -> None:
        """The stream ended: every block is now final."""
        for block in self.blocks:
            block.partial = False
        self.stream_done = True


class ToolOrchestrator:
    def __init__(self, task: "Task"):
        self.task = task

    # ── scheduling ───────────────────────────────────────────

    def notify(self, turn: Turn) -> None:
        """Signal that the turn's blocks changed."""
        try:
            turn.wakeups.put_nowait(None)
        except asyncio.QueueFull:
            pass

    async def run(self, turn: Turn) -> None:
        """Consume wakeups until every block of the turn has been presented."""
        while not turn.complete:
            await self.task.abort_signal.race(turn.wakeups.get())
            await self._drain(turn)
        _log.debug("turn complete: blocks=%d used_tool=%s rejected=%s",
                   len(turn.blocks), turn.did_use_tool, turn.did_reject_tool)

    async def _drain(self, turn: Turn) -> None:
        while True:
            self.task.abort_signal.check()
            if turn.current_block_index >= len(turn.blocks):
                if turn.stream_done:
                    turn.complete = True
                return

            # Copy: the stream reader replaces blocks while we await
            block = copy.deepcopy(turn.blocks[turn.current_block_index])
            if isinstance(block, TextBlock):
                await self._present_text(turn, block)
            else:
                await self._present_tool(turn, block)

            if block.partial and not (turn.did_reject_tool or turn.did_use_tool):
                return
            turn.current_block_index += 1

    async def _ask(self, kind: AskKind, text: str) -> AskResult:
        """Blocking ask; a superseded ask is discarded and asked again."""
        while True:
            try:
                return await self.task.channel.ask(kind, text)
            except AskSuperseded as e:
                _log.debug("%s ask discarded, asking again: %s", kind.value, e)

    # ── blocks ───────────────────────────────────────────────

    async def _present_text(self, turn: Turn, block: TextBlock) -> None:
        if turn.did_reject_tool or turn.did_use_tool:
            return
        content = clean_text_for_display(block.content, block.partial)
        await self.task.channel.say(SayKind.TEXT, content, partial=block.partial)

    async def _present_tool(self, turn: Turn, block: ToolUseBlock) -> None:
        tool_def = get_tool_def(block.name)
        description = tool_def.describe(block.params)

        if turn.did_reject_tool:
            if block.partial:
                text = responses.tool_interrupted_after_rejection(description)
            else:
                text = responses.tool_skipped_after_rejection(description)
            turn.result.append(text_part(text))
            return
        if turn.did_use_tool:
            turn.result.append(text_part(responses.tool_already_used(block.name)))
            return

        if block.name == "ask_followup_question":
            await self._ask_followup(turn, block, tool_def, description)
        elif block.name == "attempt_completion":
            await self._attempt_completion(turn, block, tool_def, description)
        else:
            await self._use_tool(turn, block, tool_def, description)

    @staticmethod
    def _preview(block: ToolUseBlock, tool_def: ToolDef) -> str:
        if tool_def.approval == "command":
            return block.params.get("command", "")
        return json.dumps({"tool": block.name, **block.params})

    async def _use_tool(self, turn: Turn, block: ToolUseBlock, tool_def: ToolDef,
                        description: str) -> None:
        task = self.task
        channel = task.channel
        is_command = tool_def.approval == "command"
        ask_kind = AskKind.COMMAND if is_command else AskKind.TOOL
        say_kind = SayKind.COMMAND if is_command else SayKind.TOOL
        preview = self._preview(block, tool_def)
        auto_approved = task.approval_policy.is_auto_approved(block.name, block.params)

        if block.partial:
            if auto_approved:
                channel.remove_last_partial("ask", ask_kind)
                await channel.say(say_kind, preview, partial=True)
            else:
                channel.remove_last_partial("say", say_kind)
                await channel.ask(ask_kind, preview, partial=True)
            return

        if tool_def.missing_params(block.params):
            channel.remove_last_partial("ask", ask_kind)
            channel.remove_last_partial("say", say_kind)
        if await self._reject_missing_params(turn, block, tool_def, description):
            return

        if auto_approved:
            channel.remove_last_partial("ask", ask_kind)
            await channel.say(say_kind, preview, partial=False)
            task.consecutive_auto_approved_requests_count += 1
        else:
            channel.remove_last_partial("say", say_kind)
            if not await self._ask_approval(turn, ask_kind, preview, description):
                return

        await self._execute(turn, block.name, block.params, description)

    async def _reject_missing_params(self, turn: Turn, block: ToolUseBlock, tool_def: ToolDef,
                                     description: str) -> bool:
        missing = tool_def.missing_params(block.params)
        if not missing:
            self.task.consecutive_mistake_count = 0
            return False
        self.task.consecutive_mistake_count += 1
        _log.info("%s missing required param %s", block.name, missing[0])
        await self.task.channel.say(
            SayKind.ERROR, responses.missing_param_notice(block.name, missing[0])
        )
        self._push_tool_result(turn, description, [
            text_part(responses.tool_error(responses.missing_tool_parameter_error(missing[0])))
        ])
        return True

    async def _ask_approval(self, turn: Turn, kind: AskKind, preview: str,
                            description: str) -> bool:
        channel = self.task.channel
        result = await self._ask(kind, preview)
        if result.response != AskResponse.YES:
            self._push_tool_result(turn, description, [text_part(responses.tool_denied())])
            if result.text:
                turn.result.append(text_part(responses.feedback_block(result.text)))
                turn.result.extend(responses.image_blocks(result.images))
                await channel.say(SayKind.USER_FEEDBACK, result.text, result.images)
            turn.did_reject_tool = True
            _log.info("user rejected %s", description)
            return False
        if result.text:
            turn.result.append(text_part(responses.feedback_block(result.text)))
            turn.result.extend(responses.image_blocks(result.images))
            await channel.say(SayKind.USER_FEEDBACK, result.text, result.images)
        return True

    async def _run_tool(self, tool_name: str, params: Dict[str, str],
                        description: str) -> ToolResult:
        """Run a tool through the executor; failures are reported, not raised."""
        task = self.task
        start = time.time()
        try:
            result = await task.abort_signal.race(
                task.executor.execute(tool_name, params, task.channel)
            )
        except TaskAborted:
            raise
        except Exception as e:
            log_exception(_log, f"Error executing {description}", e)
            result = ToolResult(success=False, error=str(e))
        _log.info("%s finished in %.0fms success=%s", description,
                  (time.time() - start) * 1000, result.success)
        if not result.success:
            await task.channel.say(SayKind.ERROR, f"Error executing {description}:\n{result.error}")
        return result

    async def _execute(self, turn: Turn, tool_name: str, params: Dict[str, str],
                       description: str) -> None:
        result = await self._run_tool(tool_name, params, description)
        if result.success:
            parts = responses.tool_result(result.to_message(), result.images)
        else:
            parts = [text_part(responses.tool_error(result.error))]
        self._push_tool_result(turn, description, parts)

    @staticmethod
    def _push_tool_result(turn: Turn, description: str, parts: List[Dict[str, Any]]) -> None:
        turn.result.append(text_part(f"{description} Result:"))
        turn.result.extend(parts)
        turn.did_use_tool = True

    # ── interaction tools ────────────────────────────────────

    @staticmethod
    def _parse_options(raw: Optional[str]) -> List[str]:
        if not raw:
            return []
        try:
            options = json.loads(raw)
        except json.JSONDecodeError:
            return []
        return [str(o) for o in options] if isinstance(options, list) else []

    async def _ask_followup(self, turn: Turn, block: ToolUseBlock, tool_def: ToolDef,
                            description: str) -> None:
        channel = self.task.channel
        options = self._parse_options(block.params.get("options"))
        payload = json.dumps({"question": block.params.get("question", ""), "options": options})

        if block.partial:
            await channel.ask(AskKind.FOLLOWUP, payload, partial=True)
            return
        if await self._reject_missing_params(turn, block, tool_def, description):
            return

        result = await self._ask(AskKind.FOLLOWUP, payload)
        if result.text and result.text not in options:
            await channel.say(SayKind.USER_FEEDBACK, result.text, result.images)
        self._push_tool_result(
            turn, description,
            responses.tool_result(responses.followup_answer(result.text), result.images),
        )

    async def _attempt_completion(self, turn: Turn, block: ToolUseBlock, tool_def: ToolDef,
                                  description: str) -> None:
        channel = self.task.channel
        result_text = block.params.get("result", "")
        command = block.params.get("command")

        if block.partial:
            await channel.say(SayKind.COMPLETION_RESULT, result_text, partial=True)
            return
        if await self._reject_missing_params(turn, block, tool_def, description):
            return

        await channel.say(SayKind.COMPLETION_RESULT, result_text, partial=False)

        command_output = None
        if command:
            if not await self._ask_approval(turn, AskKind.COMMAND, command, description):
                return
            outcome = await self._run_tool(
                "execute_command", {"command": command, "requires_approval": "false"},
                description,
            )
            if not outcome.success:
                self._push_tool_result(turn, description, [text_part(responses.tool_error(outcome.error))])
                return
            command_output = outcome.to_message()

        verdict = await self._ask(AskKind.COMPLETION_RESULT, "")
        if verdict.response == AskResponse.YES:
            turn.did_complete_task = True
            self._push_tool_result(turn, description, [text_part("")])
            _log.info("task completion accepted")
            return

        await channel.say(SayKind.USER_FEEDBACK, verdict.text or "", verdict.images)
        parts = []
        if command_output:
            parts.append(text_part(command_output))
        parts.append(text_part(responses.completion_feedback(verdict.text)))
        parts.extend(responses.image_blocks(verdict.images))
        self._push_tool_result(turn, description, parts)
