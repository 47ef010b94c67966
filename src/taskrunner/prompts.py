"""System prompt generator with XML tool formatting."""

import os
import platform
from pathlib import Path
from typing import Optional

from .logger import get_logger
from .tool_registry import TOOL_DEFS, ToolDef

_log = get_logger("prompts")


def load_agent_rules(workspace_path: str) -> str:
    """Load the agent.md file from the workspace root, if it exists."""
    agent_md = Path(workspace_path) / "agent.md"
    if agent_md.exists():
        try:
            content = agent_md.read_text(encoding="utf-8").strip()
        except OSError as e:
            _log.warning("Failed to read agent.md: %s", e)
            return ""
        if content:
            _log.debug("Loaded agent.md (%d chars) from %s", len(content), workspace_path)
            return content
    return ""


def _format_tool(tool: ToolDef) -> str:
    lines = [f"## {tool.name}", f"Description: {tool.description}", "Parameters:"]
    for param in tool.params:
        required = "required" if param.required else "optional"
        lines.append(f"- {param.name}: ({required}) {param.description}")
    lines.append("Usage:")
    lines.append(f"<{tool.name}>")
    for param in tool.params:
        lines.append(f"<{param.name}>{param.name} here</{param.name}>")
    lines.append(f"</{tool.name}>")
    return "\n".join(lines)


def get_system_prompt(workspace_path: str, shell: Optional[str] = None) -> str:
    """Generate the system prompt for a workspace."""
    os_name = platform.system()
    if os_name == "Windows":
        shell = shell or "PowerShell"
    else:
        shell = shell or os.path.basename(os.environ.get("SHELL", "bash"))

    tools = "\n\n".join(_format_tool(t) for t in TOOL_DEFS)
    agent_rules = load_agent_rules(workspace_path)
    rules_section = f"\n\n====\n\nUSER'S CUSTOM INSTRUCTIONS\n\n{agent_rules}" if agent_rules else ""

    return f'''You are a highly skilled software engineer with extensive knowledge in many programming languages, frameworks, design patterns, and best practices.

====

TOOL USE

You have access to a set of tools that are executed upon the user's approval. You can use one tool per message, and will receive the result of that tool use in the user's response. You use tools step-by-step to accomplish a given task, with each tool use informed by the result of the previous tool use.

# Tool Use Formatting

Tool use is formatted using XML-style tags. The tool name is enclosed in opening and closing tags, and each parameter is similarly enclosed within its own set of tags:

<tool_name>
<parameter1_name>value1</parameter1_name>
<parameter2_name>value2</parameter2_name>
</tool_name>

Always put the tool use at the end of your message, and never use more than one tool per message.

# Tools

{tools}

====

RULES

- Your current working directory is: {workspace_path}
- All file paths are relative to the current working directory.
- Wait for the result of each tool use before continuing; never assume success.
- When the task is done, use attempt_completion. Do not end your result with a question.
- Only use ask_followup_question when you cannot proceed with the tools available.

====

SYSTEM INFORMATION

Operating System: {os_name} {platform.release()}
Default Shell: {shell}
Current Working Directory: {workspace_path}{rules_section}
'''
