"""Terminal presentation of a task's message stream, using rich."""

import asyncio
import json
from typing import Dict, Optional

from rich.console import Console
from rich.markdown import Markdown
from rich.markup import escape as rich_escape
from rich.panel import Panel
from rich.prompt import Prompt

from .channel import MessageChannel
from .logger import get_logger
from .messages import AskKind, AskResponse, SayKind, UIMessage

_log = get_logger("console")

# Kinds whose partial updates are streamed as they grow
STREAMED_KINDS = {SayKind.TEXT, SayKind.REASONING, SayKind.COMMAND_OUTPUT}

APPROVAL_HINT = "[dim]Enter/y to approve, n to reject, or type feedback[/dim]"


class ConsolePresenter:
    """Prints UI messages and answers asks from the keyboard.

    Asks are answered from a background task so ``post`` never blocks the
    task loop; the answer goes back through ``MessageChannel.respond``.
    Only one prompt reads the keyboard at a time and it answers whichever
    ask is pending when the line is entered.
    """

    def __init__(self, console: Optional[Console] = None):
        self.console = console or Console()
        self.channel: Optional[MessageChannel] = None
        self._printed: Dict[int, int] = {}
        self._prompt: Optional[asyncio.Task] = None

    def bind(self, channel: MessageChannel) -> None:
        self.channel = channel

    async def post(self, message: UIMessage, is_update: bool) -> None:
        if message.type == "ask":
            self._render_ask(message)
            if not message.partial and self._prompt is None:
                self._prompt = asyncio.get_running_loop().create_task(self._answer())
        else:
            self._render_say(message, is_update)

    # ── say ──────────────────────────────────────────────────

    def _stream(self, message: UIMessage, style: str) -> None:
        text = message.text or ""
        shown = self._printed.get(message.ts, 0)
        if len(text) < shown:
            # Text was rewritten rather than extended; start over
            self.console.print()
            shown = 0
        delta = text[shown:]
        if delta:
            self.console.print(rich_escape(delta), style=style, end="", soft_wrap=True)
        self._printed[message.ts] = len(text)
        if not message.partial:
            self.console.print()
            self._printed.pop(message.ts, None)

    def _render_say(self, message: UIMessage, is_update: bool) -> None:
        kind = message.say
        text = message.text or ""

        if kind in STREAMED_KINDS:
            style = {SayKind.REASONING: "dim italic", SayKind.COMMAND_OUTPUT: "dim"}.get(kind, "")
            self._stream(message, style)
            return
        if message.partial:
            return

        if kind == SayKind.TASK:
            self.console.print(Panel(rich_escape(text), title="Task", border_style="cyan"))
        elif kind == SayKind.ERROR:
            self.console.print(f"[red][X] {rich_escape(text)}[/red]")
        elif kind == SayKind.API_REQ_STARTED:
            self._render_api_request(text, is_update)
        elif kind == SayKind.API_REQ_RETRIED:
            self.console.print("[dim][!] Retrying request...[/dim]")
        elif kind in (SayKind.TOOL, SayKind.COMMAND):
            self.console.print(f"  [dim]•[/dim] [cyan]{rich_escape(self._describe(message))}[/cyan]")
        elif kind == SayKind.COMPLETION_RESULT:
            self.console.print(Panel(Markdown(text), title="Result", border_style="green"))
        elif kind == SayKind.USER_FEEDBACK:
            self.console.print(f"[bold blue]You:[/bold blue] {rich_escape(text)}")

    def _render_api_request(self, text: str, is_update: bool) -> None:
        try:
            info = json.loads(text)
        except json.JSONDecodeError:
            return
        if "streamingFailedMessage" in info:
            self.console.print(f"[red][X] Request failed: {rich_escape(info['streamingFailedMessage'])}[/red]")
        elif is_update and "cost" in info:
            self.console.print(
                f"[dim]  {info.get('tokensIn', 0):,} in / {info.get('tokensOut', 0):,} out"
                f" · ${info.get('cost', 0.0):.4f}[/dim]"
            )

    @staticmethod
    def _describe(message: UIMessage) -> str:
        if message.say == SayKind.COMMAND or message.ask == AskKind.COMMAND:
            return f"$ {message.text or ''}"
        try:
            payload = json.loads(message.text or "{}")
        except json.JSONDecodeError:
            return message.text or ""
        tool = payload.pop("tool", "tool")
        target = payload.get("path") or payload.get("regex") or ""
        return f"{tool} {target}".strip()

    # ── ask ──────────────────────────────────────────────────

    def _render_ask(self, message: UIMessage) -> None:
        if message.partial:
            return
        kind = message.ask
        text = message.text or ""
        if kind == AskKind.FOLLOWUP:
            try:
                payload = json.loads(text)
            except json.JSONDecodeError:
                payload = {"question": text, "options": []}
            self.console.print(f"[bold yellow]?[/bold yellow] {rich_escape(payload.get('question', ''))}")
            for i, option in enumerate(payload.get("options", []), 1):
                self.console.print(f"  [dim]{i}.[/dim] {rich_escape(option)}")
        elif kind in (AskKind.TOOL, AskKind.COMMAND):
            self.console.print(f"[bold yellow]Approve[/bold yellow] {rich_escape(self._describe(message))}?")
            self.console.print(APPROVAL_HINT)
        elif kind == AskKind.COMPLETION_RESULT:
            self.console.print("[dim]Enter/y to accept the result, or type feedback[/dim]")
        elif kind == AskKind.API_REQ_FAILED:
            self.console.print(f"[red]API request failed:[/red] {rich_escape(text)}")
            self.console.print("[dim]y to retry, anything else to stop[/dim]")
        elif kind in (AskKind.RESUME_TASK, AskKind.RESUME_COMPLETED_TASK):
            self.console.print("[bold]Resume task?[/bold] [dim]Enter to resume, or type new instructions[/dim]")
        else:
            self.console.print(f"[yellow][!] {rich_escape(text)}[/yellow]")
            self.console.print("[dim]Enter to continue, or type guidance[/dim]")

    @staticmethod
    def _to_response(kind: AskKind, answer: str):
        answer = answer.strip()
        if kind == AskKind.FOLLOWUP:
            return AskResponse.MESSAGE, answer
        if answer.lower() in ("", "y", "yes"):
            return AskResponse.YES, None
        if answer.lower() in ("n", "no"):
            return AskResponse.NO, None
        return AskResponse.MESSAGE, answer

    async def _answer(self) -> None:
        try:
            answer = await asyncio.to_thread(Prompt.ask, "[bold blue]>[/bold blue]", console=self.console, default="")
        finally:
            self._prompt = None
        message = self.channel.pending_ask if self.channel is not None else None
        if message is None:
            _log.debug("answer arrived with no pending ask")
            return
        if message.ask == AskKind.FOLLOWUP:
            answer = self._pick_option(message, answer)
        response, text = self._to_response(message.ask, answer)
        self.channel.respond(response, text, ts=message.ts)

    @staticmethod
    def _pick_option(message: UIMessage, answer: str) -> str:
        """A bare number selects the matching suggested option."""
        try:
            options = json.loads(message.text or "{}").get("options", [])
        except json.JSONDecodeError:
            return answer
        if answer.strip().isdigit() and 1 <= int(answer) <= len(options):
            return options[int(answer) - 1]
        return answer
