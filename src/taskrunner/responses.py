"""Canned texts fed back to the model as parts of the next user message."""

from typing import Any, Dict, List, Optional

from .messages import image_part, text_part

TOOL_USE_REMINDER = """# Reminder: Instructions for Tool Use

Tool uses are formatted using XML-style tags. The tool name is enclosed in opening and closing tags, and each parameter is similarly enclosed within its own set of tags. Here's the structure:

<tool_name>
<parameter1_name>value1</parameter1_name>
<parameter2_name>value2</parameter2_name>
...
</tool_name>

For example:

<attempt_completion>
<result>
I have completed the task...
</result>
</attempt_completion>

Always adhere to this format for all tool uses to ensure proper parsing and execution."""


def tool_denied() -> str:
    return "The user denied this operation."


def tool_error(error: Optional[str] = None) -> str:
    return f"The tool execution failed with the following error:\n<error>\n{error}\n</error>"


def no_tools_used() -> str:
    return f"""[ERROR] You did not use a tool in your previous response! Please retry with a tool use.

{TOOL_USE_REMINDER}

# Next Steps

If you have completed the user's task, use the attempt_completion tool.
If you require additional information from the user, use the ask_followup_question tool.
Otherwise, if you have not completed the task and do not need additional information, then proceed with the next step of the task.
(This is an automated message, so do not respond to it conversationally.)"""


def too_many_mistakes(feedback: Optional[str] = None) -> str:
    return (
        "You seem to be having trouble proceeding. The user has provided the following "
        f"feedback to help guide you:\n<feedback>\n{feedback}\n</feedback>"
    )


def missing_tool_parameter_error(param_name: str) -> str:
    return (
        f"Missing value for required parameter '{param_name}'. "
        f"Please retry with complete response.\n\n{TOOL_USE_REMINDER}"
    )


def missing_param_notice(tool_name: str, param_name: str) -> str:
    """User-facing error when the model leaves out a required parameter."""
    return (
        f"The model tried to use {tool_name} without value for required parameter "
        f"'{param_name}'. Retrying..."
    )


def tool_already_used(tool_name: str) -> str:
    return (
        f"Tool [{tool_name}] was not executed because a tool has already been used in this "
        "message. Only one tool may be used per message. You must assess the first tool's "
        "result before proceeding to use the next tool."
    )


def tool_skipped_after_rejection(description: str) -> str:
    return f"Skipping tool {description} due to user rejecting a previous tool."


def tool_interrupted_after_rejection(description: str) -> str:
    return f"Tool {description} was interrupted and not executed due to user rejecting a previous tool."


def context_truncation_notice() -> str:
    return (
        "[NOTE] Some previous conversation history with the user has been removed to maintain "
        "optimal context window length. The initial user task and the most recent exchanges "
        "have been retained for continuity, while intermediate conversation history has been "
        "removed. Please keep this in mind as you continue assisting the user."
    )


def feedback_block(text: str) -> str:
    return f"The user provided the following feedback:\n<feedback>\n{text}\n</feedback>"


def followup_answer(text: Optional[str]) -> str:
    return f"<answer>\n{text or ''}\n</answer>"


def completion_feedback(text: Optional[str]) -> str:
    return (
        "The user has provided feedback on the results. Consider their input to continue the "
        f"task, and then attempt completion again.\n<feedback>\n{text or ''}\n</feedback>"
    )


def empty_assistant_response() -> str:
    return "Failure: I did not provide a response."


def task_resumption(ago_text: str, cwd: str, response_text: Optional[str] = None) -> str:
    message = (
        f"[TASK RESUMPTION] This task was interrupted {ago_text}. It may or may not be complete, "
        "so please reassess the task context. Be aware that the project state may have changed "
        f"since then. The current working directory is now '{cwd}'. If the task has not been "
        "completed, retry the last step before interruption and proceed with completing the task."
        "\n\nNote: If you previously attempted a tool use that the user did not provide a result "
        "for, you should assume the tool use was not successful and assess whether you should retry."
    )
    if response_text:
        message += (
            "\n\nNew instructions for task continuation:\n"
            f"<user_message>\n{response_text}\n</user_message>"
        )
    return message


def tool_result(text: str, images: Optional[List[str]] = None) -> List[Dict[str, Any]]:
    """Content parts for a tool's output, with any images attached."""
    parts = [text_part(text or "(tool did not return anything)")]
    parts.extend(image_part(uri) for uri in images or [])
    return parts


def image_blocks(images: Optional[List[str]]) -> List[Dict[str, Any]]:
    return [image_part(uri) for uri in images or []]
