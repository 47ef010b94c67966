"""Command-line entry point: run a new task or resume a saved one."""

import argparse
import asyncio
import json
import signal
import sys
from pathlib import Path
from typing import Optional

from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from .config import Config
from .console import ConsolePresenter
from .logger import get_logger, init_logging
from .storage import TaskStorage
from .streaming_client import StreamingClient
from .task import Task
from .tools import LocalToolExecutor

_log = get_logger("cli")


def load_config(args: argparse.Namespace) -> Config:
    workspace = Path(args.workspace).resolve()
    env_path = Path(args.env)
    config = Config.from_env(env_path if env_path.exists() else None, workspace)
    config.workspace_path = workspace
    if args.model:
        config.model = args.model
    if args.auto_approve:
        settings = config.auto_approval
        settings.enabled = True
        settings.read_files = True
        settings.edit_files = True
        settings.execute_safe_commands = True
    return config


def read_task_text(args: argparse.Namespace) -> Optional[str]:
    if args.message:
        return args.message
    if args.input_file:
        return Path(args.input_file).read_text(encoding="utf-8").strip()
    if not sys.stdin.isatty():
        return sys.stdin.read().strip()
    return None


def show_tasks(storage: TaskStorage, console: Console) -> None:
    table = Table(title="Saved tasks")
    table.add_column("ID", style="cyan")
    table.add_column("Task")
    table.add_column("Cost", justify="right")
    table.add_column("Done")
    for meta in storage.list_tasks():
        table.add_row(
            meta.get("id", "?"),
            (meta.get("task") or "")[:60],
            f"${meta.get('total_cost', 0.0):.4f}",
            "yes" if meta.get("completed") else "",
        )
    console.print(table)


def install_interrupt_handler(task: Task, console: Console) -> None:
    """First Ctrl+C aborts the task; a second one abandons it."""
    loop = asyncio.get_running_loop()

    def on_interrupt() -> None:
        if task.abort_signal.aborted:
            console.print("\n[red][STOP] Abandoning task[/red]")
            loop.create_task(task.abandon())
            return
        console.print("\n[yellow][STOP] Interrupted by user[/yellow]")
        loop.create_task(task.abort_task())

    try:
        loop.add_signal_handler(signal.SIGINT, on_interrupt)
    except NotImplementedError:
        signal.signal(signal.SIGINT, lambda *_: loop.call_soon_threadsafe(on_interrupt))


async def run_task(config: Config, console: Console, text: Optional[str],
                   resume_id: Optional[str]) -> Task:
    storage = TaskStorage(config.data_dir)
    presenter = ConsolePresenter(console)
    async with StreamingClient(
        api_key=config.api_key,
        base_url=config.api_url,
        model=config.model,
        temperature=config.temperature,
        max_tokens=config.max_tokens,
    ) as client:
        executor = LocalToolExecutor(config.workspace_path, config.command_timeout)
        task = Task(config, client, executor, presenter=presenter, storage=storage,
                    task_id=resume_id)
        presenter.bind(task.channel)
        init_logging(str(config.workspace_path), task.task_id)
        install_interrupt_handler(task, console)

        if resume_id:
            await task.resume_task_from_history()
        else:
            await task.start_task(text)
    return task


def main():
    """Main CLI entry point."""
    parser = argparse.ArgumentParser(
        description="Autonomous coding task runner",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Run a task in the current directory
  taskrunner . -m "Fix the failing test in tests/test_api.py"

  # Pipe the task text
  echo "Add a --verbose flag" | taskrunner /path/to/project

  # Resume a saved task
  taskrunner . --resume 3f2a9c1d7e4b
        """
    )
    parser.add_argument(
        "workspace",
        nargs="?",
        default=".",
        help="Workspace directory (default: current directory)"
    )
    parser.add_argument("-m", "--message", type=str, help="Task description")
    parser.add_argument("--input-file", type=str, help="Read the task description from a file")
    parser.add_argument("--resume", metavar="TASK_ID", help="Resume a saved task")
    parser.add_argument("--list", action="store_true", help="List saved tasks and exit")
    parser.add_argument(
        "-e", "--env",
        type=str,
        default=".env",
        help="Path to .env file (default: .env)"
    )
    parser.add_argument("--model", type=str, help="Override the configured model")
    parser.add_argument(
        "--auto-approve",
        action="store_true",
        help="Auto-approve file reads, edits and safe commands inside the workspace"
    )
    parser.add_argument(
        "--output-format",
        choices=["human", "json"],
        default="human",
        help="How to print the final summary (default: human)"
    )
    args = parser.parse_args()

    console = Console()
    config = load_config(args)

    if args.list:
        show_tasks(TaskStorage(config.data_dir), console)
        sys.exit(0)

    try:
        config.validate()
    except ValueError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        sys.exit(1)

    text = None
    if not args.resume:
        text = read_task_text(args)
        if not text:
            print("Error: No task provided. Use -m, --input-file, or pipe input.", file=sys.stderr)
            sys.exit(1)

    try:
        task = asyncio.run(run_task(config, console, text, args.resume))
    except FileNotFoundError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)

    summary = task.cost_tracker.get_summary()
    if args.output_format == "json":
        print(json.dumps({
            "task": task.metadata(),
            "cost": summary.to_dict(),
            "tools": task.executor.metrics.summary(),
        }, indent=2))
    else:
        console.print()
        console.print(Panel(summary.format_human(), title="Cost", border_style="cyan"))
        console.print(f"[dim]Task {task.task_id} saved in {TaskStorage(config.data_dir).task_dir(task.task_id)}[/dim]")
    sys.exit(0 if task.did_complete else 1)


if __name__ == "__main__":
    main()
