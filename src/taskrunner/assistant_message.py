"""Parse a (possibly incomplete) assistant message into content blocks.

The model calls tools with XML-style tags:

    Some prose.
    <read_file>
    <path>src/main.py</path>
    </read_file>

``parse_assistant_message`` is a pure function of the whole accumulated
text and is re-run on every stream chunk. Blocks that are complete in a
prefix are identical in every extension of that prefix; only the final
block may be partial. Tag names come from the tool registry; any other
tag is plain text.
"""

import re
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple, Union

from .tool_registry import TOOL_DEFS, ToolDef


@dataclass
class TextBlock:
    content: str
    partial: bool = False
    type: str = "text"


@dataclass
class ToolUseBlock:
    name: str
    params: Dict[str, str] = field(default_factory=dict)
    partial: bool = False
    type: str = "tool_use"


ContentBlock = Union[TextBlock, ToolUseBlock]

_OPEN_TAGS: List[Tuple[str, ToolDef]] = [(f"<{t.name}>", t) for t in TOOL_DEFS]


def _find_tool_open(message: str, pos: int) -> Optional[Tuple[int, ToolDef]]:
    """Earliest known tool opening tag at or after ``pos``."""
    i = message.find("<", pos)
    while i != -1:
        for tag, tool_def in _OPEN_TAGS:
            if message.startswith(tag, i):
                return i, tool_def
        i = message.find("<", i + 1)
    return None


def _find_param_open(message: str, pos: int, tool_def: ToolDef) -> Optional[Tuple[int, str]]:
    best: Optional[Tuple[int, str]] = None
    for param in tool_def.params:
        i = message.find(f"<{param.name}>", pos)
        if i != -1 and (best is None or i < best[0]):
            best = (i, param.name)
    return best


def _strip_partial_closing(text: str, closing_tags: Tuple[str, ...]) -> str:
    """Value of a still-open parameter.

    Trailing fragments of the expected closing tags ("</pa" of "</path>")
    are dropped so the value seen while streaming is always a prefix of
    the final value.
    """
    while True:
        text = text.strip()
        cut = 0
        for tag in closing_tags:
            for k in range(min(len(tag), len(text)), cut, -1):
                if text.endswith(tag[:k]):
                    cut = k
                    break
        if not cut:
            return text
        text = text[:-cut]


def _parse_trailing_params(tail: str, tool_def: ToolDef, params: Dict[str, str]) -> None:
    """Simple params that appear after a complex param inside a closed tool block."""
    for param in tool_def.params:
        if param.name in params or param.name in tool_def.complex_params:
            continue
        match = re.search(rf"<{param.name}>(.*?)</{param.name}>", tail, re.DOTALL)
        if match:
            params[param.name] = match.group(1).strip()


def _parse_tool(message: str, body_start: int, tool_def: ToolDef) -> Tuple[ToolUseBlock, int]:
    """Parse a tool block whose opening tag ends at ``body_start``.

    Returns the block and the index just past it (len(message) if partial).
    """
    params: Dict[str, str] = {}
    close_tag = f"</{tool_def.name}>"
    end_of_message = len(message)
    pos = body_start

    while True:
        tool_close = message.find(close_tag, pos)
        opening = _find_param_open(message, pos, tool_def)
        if opening is not None and tool_close != -1 and opening[0] > tool_close:
            opening = None

        if opening is None:
            if tool_close == -1:
                return ToolUseBlock(tool_def.name, params, partial=True), end_of_message
            return ToolUseBlock(tool_def.name, params, partial=False), tool_close + len(close_tag)

        param_at, name = opening
        param_close_tag = f"</{name}>"
        value_start = param_at + len(name) + 2

        if name in tool_def.complex_params:
            # Value may contain tag-like text: it ends at the LAST closing
            # tag before the tool's own closing tag.
            if tool_close == -1:
                params[name] = _strip_partial_closing(
                    message[value_start:], (param_close_tag, close_tag)
                )
                return ToolUseBlock(tool_def.name, params, partial=True), end_of_message
            body = message[value_start:tool_close]
            value_end = body.rfind(param_close_tag)
            if value_end == -1:
                params[name] = body.strip()
            else:
                params[name] = body[:value_end].strip()
                _parse_trailing_params(body[value_end + len(param_close_tag):], tool_def, params)
            return ToolUseBlock(tool_def.name, params, partial=False), tool_close + len(close_tag)

        param_close = message.find(param_close_tag, value_start)
        if param_close == -1 or (tool_close != -1 and param_close > tool_close):
            if tool_close == -1:
                params[name] = _strip_partial_closing(
                    message[value_start:], (param_close_tag, close_tag)
                )
                return ToolUseBlock(tool_def.name, params, partial=True), end_of_message
            # Unclosed parameter inside a closed tool block
            params[name] = message[value_start:tool_close].strip()
            return ToolUseBlock(tool_def.name, params, partial=False), tool_close + len(close_tag)

        params[name] = message[value_start:param_close].strip()
        pos = param_close + len(param_close_tag)


def parse_assistant_message(message: str) -> List[ContentBlock]:
    """Split assistant text into ordered text and tool-use blocks."""
    blocks: List[ContentBlock] = []
    pos = 0
    while pos < len(message):
        opening = _find_tool_open(message, pos)
        if opening is None:
            text = message[pos:].strip()
            if text:
                blocks.append(TextBlock(text, partial=True))
            break

        tag_at, tool_def = opening
        text = message[pos:tag_at].strip()
        if text:
            blocks.append(TextBlock(text, partial=False))

        tool, pos = _parse_tool(message, tag_at + len(tool_def.name) + 2, tool_def)
        blocks.append(tool)
        if tool.partial:
            break
    return blocks


# ── Display helpers ──────────────────────────────────────────────

_THINKING_RE = re.compile(r"<thinking>\s?|\s?</thinking>")
_PARTIAL_TAG_RE = re.compile(r"</?[A-Za-z_]*$")
_TRAILING_FENCE_RE = re.compile(r"\s*```[A-Za-z0-9_+-]+\s*$")


def strip_partial_tag(text: str) -> str:
    """Drop an unfinished tag at the very end: "<", "</", "<read_fi"."""
    last_open = text.rfind("<")
    if last_open == -1 or ">" in text[last_open:]:
        return text
    if _PARTIAL_TAG_RE.fullmatch(text[last_open:]):
        return text[:last_open].rstrip()
    return text


def clean_text_for_display(content: str, partial: bool) -> str:
    """Text block content as shown to the user.

    Thinking tags are removed, and so is a trailing half-written tag while
    streaming. Once the block is complete a dangling code fence that opened
    a tool call ("```xml") is removed too.
    """
    content = _THINKING_RE.sub("", content)
    if partial:
        return strip_partial_tag(content)
    return _TRAILING_FENCE_RE.sub("", content)
