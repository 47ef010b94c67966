"""Tests for the streaming assistant message parser.

The parser is re-run over the accumulated text on every chunk, so the
tests feed it every prefix of realistic model output, not just the
final message.
"""

from taskrunner.assistant_message import (
    TextBlock,
    ToolUseBlock,
    clean_text_for_display,
    parse_assistant_message,
    strip_partial_tag,
)


READ_THEN_WRITE = """Let me look at the config first.

<read_file>
<path>src/config.py</path>
</read_file>

Now I'll write the new module.

<write_to_file>
<path>src/widget.py</path>
<content>
def render():
    return "<div>ok</div>"
</content>
</write_to_file>"""


def prefixes(message):
    for i in range(len(message) + 1):
        yield message[:i]


# ============================================================
# Complete messages
# ============================================================

class TestCompleteMessages:
    def test_plain_text_is_single_partial_block(self):
        blocks = parse_assistant_message("Just thinking out loud.")
        assert blocks == [TextBlock("Just thinking out loud.", partial=True)]

    def test_empty_message(self):
        assert parse_assistant_message("") == []
        assert parse_assistant_message("   \n") == []

    def test_text_then_tool(self):
        blocks = parse_assistant_message(
            "I need to examine the auth module.\n\n<read_file>\n<path>src/auth.py</path>\n</read_file>"
        )
        assert blocks == [
            TextBlock("I need to examine the auth module.", partial=False),
            ToolUseBlock("read_file", {"path": "src/auth.py"}, partial=False),
        ]

    def test_multiple_tools_in_order(self):
        blocks = parse_assistant_message(READ_THEN_WRITE)
        assert [b.type for b in blocks] == ["text", "tool_use", "text", "tool_use"]
        assert blocks[1].params == {"path": "src/config.py"}
        assert blocks[3].name == "write_to_file"
        assert blocks[3].params["path"] == "src/widget.py"
        assert blocks[3].params["content"] == 'def render():\n    return "<div>ok</div>"'
        assert not any(b.partial for b in blocks)

    def test_text_after_last_tool_is_partial(self):
        blocks = parse_assistant_message(
            "<list_files>\n<path>.</path>\n</list_files>\nTrailing words"
        )
        assert blocks[-1] == TextBlock("Trailing words", partial=True)

    def test_unknown_tags_are_text(self):
        message = "Wrap it in <section>like this</section> and carry on."
        assert parse_assistant_message(message) == [TextBlock(message, partial=True)]

    def test_content_may_contain_its_own_closing_tag(self):
        message = (
            "<write_to_file>\n<path>doc.xml</path>\n<content>\n"
            "<note>literal </content> inside</note>\n"
            "</content>\n</write_to_file>"
        )
        (block,) = parse_assistant_message(message)
        assert block.params["content"] == "<note>literal </content> inside</note>"
        assert not block.partial

    def test_diff_is_complex_param(self):
        diff = "------- SEARCH\nold = 1\n=======\nnew = 2\n+++++++ REPLACE"
        message = f"<replace_in_file>\n<path>a.py</path>\n<diff>\n{diff}\n</diff>\n</replace_in_file>"
        (block,) = parse_assistant_message(message)
        assert block.params == {"path": "a.py", "diff": diff}

    def test_param_tags_outside_tool_are_text(self):
        blocks = parse_assistant_message("<path>nothing</path>")
        assert blocks == [TextBlock("<path>nothing</path>", partial=True)]

    def test_completion_with_command(self):
        blocks = parse_assistant_message(
            "<attempt_completion>\n<result>All tests pass.</result>\n"
            "<command>pytest -q</command>\n</attempt_completion>"
        )
        assert blocks == [
            ToolUseBlock("attempt_completion", {"result": "All tests pass.", "command": "pytest -q"})
        ]


# ============================================================
# Streaming prefixes
# ============================================================

class TestStreamingPrefixes:
    def test_completed_blocks_never_change(self):
        final = parse_assistant_message(READ_THEN_WRITE)
        for prefix in prefixes(READ_THEN_WRITE):
            blocks = parse_assistant_message(prefix)
            for i, block in enumerate(blocks):
                if not block.partial:
                    assert block == final[i], repr(prefix)

    def test_only_last_block_is_partial(self):
        for prefix in prefixes(READ_THEN_WRITE):
            blocks = parse_assistant_message(prefix)
            assert all(not b.partial for b in blocks[:-1]), repr(prefix)

    def test_partial_param_values_grow_toward_final(self):
        final = parse_assistant_message(READ_THEN_WRITE)[3].params
        for prefix in prefixes(READ_THEN_WRITE):
            blocks = parse_assistant_message(prefix)
            if len(blocks) < 4 or not blocks[3].partial:
                continue
            for name, value in blocks[3].params.items():
                assert final[name].startswith(value), (prefix, name, value)

    def test_closing_tag_fragment_is_hidden(self):
        (block,) = parse_assistant_message("<read_file>\n<path>src/app.py</pa")
        assert block.partial
        assert block.params == {"path": "src/app.py"}

    def test_half_written_opening_tag_is_text(self):
        blocks = parse_assistant_message("Reading now <read_fi")
        assert blocks == [TextBlock("Reading now <read_fi", partial=True)]

    def test_tool_without_params_yet(self):
        blocks = parse_assistant_message("Ok.\n<execute_command>\n<comm")
        assert blocks[1] == ToolUseBlock("execute_command", {}, partial=True)

    def test_parse_is_idempotent(self):
        for prefix in prefixes(READ_THEN_WRITE):
            assert parse_assistant_message(prefix) == parse_assistant_message(prefix)


# ============================================================
# Display helpers
# ============================================================

class TestDisplay:
    def test_strip_partial_tag(self):
        assert strip_partial_tag("Looking at it <") == "Looking at it"
        assert strip_partial_tag("Looking at it </rea") == "Looking at it"
        assert strip_partial_tag("a < b") == "a < b"
        assert strip_partial_tag("done <b>") == "done <b>"

    def test_thinking_tags_removed(self):
        assert clean_text_for_display("<thinking>plan</thinking>", partial=False) == "plan"

    def test_dangling_fence_removed_when_complete(self):
        assert clean_text_for_display("Here goes:\n```xml", partial=False) == "Here goes:"

    def test_partial_text_keeps_fence(self):
        assert clean_text_for_display("Here goes:\n```xml\n<wri", partial=True) == "Here goes:\n```xml"
