"""CLI entry point for fetch-harness."""

import asyncio
import sys
from pathlib import Path
from typing import Optional

import click

from fetch_harness.version import __version__
from fetch_harness.config import CONFIG_FILENAME, KNOWN_AGENTS, get_default_config, load_config, save_config
from fetch_harness.console import (
    add_task_row,
    console,
    create_agents_table,
    create_task_table,
    format_duration_ms,
    format_flag,
    format_task_status,
    print_error,
    print_heading,
    print_info,
    print_key_value,
    print_panel,
    print_success,
    print_warning,
)
from fetch_harness.exceptions import HarnessError
from fetch_harness.harness.types import (
    EVENT_FAILED,
    EVENT_FILE_OP,
    EVENT_OUTPUT,
    EVENT_PROGRESS,
    EVENT_QUESTION,
    EVENT_STARTED,
    HarnessEvent,
)
from fetch_harness.task import AGENT_AUTO, TaskConstraints, TaskStatus


# --- Context object for sharing state between commands ---


class HarnessContext:
    """Context object for CLI commands."""

    def __init__(self):
        self.project_dir: Path = Path.cwd()
        self.config = None
        self.verbose: bool = False

    def load_config(self):
        """Load configuration if not already loaded."""
        if self.config is None:
            self.config = load_config(self.project_dir)
        return self.config

    def build_runtime(self):
        """Build the harness components for this project."""
        from fetch_harness.runtime import HarnessRuntime

        return HarnessRuntime.from_config(self.load_config(), self.project_dir)


pass_context = click.make_pass_decorator(HarnessContext, ensure=True)


def _fail(ctx: HarnessContext, error: Exception) -> None:
    """Report an error and exit with status 1."""
    if isinstance(error, HarnessError):
        print_error(str(error))
    else:
        print_error(f"Unexpected error: {error}")
    if ctx.verbose:
        import traceback
        traceback.print_exc()
    sys.exit(1)


# --- Main CLI group ---


@click.group()
@click.option(
    "--project-dir", "-p",
    type=click.Path(exists=True, file_okay=False, path_type=Path),
    default=None,
    help="Project directory (defaults to current directory)"
)
@click.option(
    "--verbose", "-v",
    is_flag=True,
    help="Enable verbose output"
)
@click.version_option(version=__version__, prog_name="fetch-harness")
@pass_context
def main(ctx: HarnessContext, project_dir: Optional[Path], verbose: bool):
    """Fetch harness - run coding agents as supervised tasks.

    Delegates a goal to an agent CLI (Claude, Gemini or Copilot), tracks
    the task through its lifecycle and relays the agent's questions.
    """
    if project_dir:
        ctx.project_dir = project_dir
    ctx.verbose = verbose


# --- Version command ---


@main.command()
def version():
    """Show version information."""
    print_info(f"Fetch Harness v{__version__}")


# --- Init command ---


@main.command()
@click.option(
    "--force", "-f",
    is_flag=True,
    help="Overwrite an existing configuration file"
)
@pass_context
def init(ctx: HarnessContext, force: bool):
    """Write a default .fetch.yaml to the project directory."""
    config_path = ctx.project_dir / CONFIG_FILENAME
    if config_path.exists() and not force:
        print_warning(f"{CONFIG_FILENAME} already exists (use --force to overwrite)")
        return

    save_config(get_default_config(), ctx.project_dir)
    print_success(f"Wrote {config_path}")


# --- Run command ---


@main.command()
@click.argument("goal")
@click.option(
    "--workspace", "-w",
    default=".",
    help="Workspace the agent works in (defaults to current directory)"
)
@click.option(
    "--agent", "-a",
    type=click.Choice([AGENT_AUTO, *KNOWN_AGENTS]),
    default=AGENT_AUTO,
    help="Agent to run"
)
@click.option(
    "--timeout", "-t",
    type=int,
    default=None,
    help="Timeout in seconds (defaults to tasks.timeout_ms from config)"
)
@click.option(
    "--non-interactive",
    is_flag=True,
    help="Do not prompt when the agent asks a question"
)
@pass_context
def run(
    ctx: HarnessContext,
    goal: str,
    workspace: str,
    agent: str,
    timeout: Optional[int],
    non_interactive: bool,
):
    """Run GOAL as a new task and wait for it to finish."""
    try:
        success = asyncio.run(_async_run(ctx, goal, workspace, agent, timeout, non_interactive))
    except KeyboardInterrupt:
        print_warning("Task interrupted by user")
        sys.exit(130)
    except Exception as e:
        _fail(ctx, e)
    else:
        if not success:
            sys.exit(1)


async def _async_run(
    ctx: HarnessContext,
    goal: str,
    workspace: str,
    agent: str,
    timeout: Optional[int],
    non_interactive: bool,
) -> bool:
    """Async implementation of run command."""
    runtime = ctx.build_runtime()
    config = runtime.config
    pending: set = set()

    constraints = TaskConstraints(
        timeout_ms=timeout * 1000 if timeout is not None else config.tasks.timeout_ms,
        require_approval=config.tasks.require_approval,
        max_retries=config.tasks.max_retries,
    )

    async def answer(event: HarnessEvent) -> None:
        reply = await asyncio.to_thread(click.prompt, "Answer")
        try:
            delivered = await runtime.integration.respond_to_task(event.task_id, reply)
        except HarnessError as e:
            print_warning(str(e))
            return
        if not delivered:
            print_warning("The agent is no longer accepting input")

    def on_event(event: HarnessEvent) -> None:
        if event.type == EVENT_STARTED:
            print_info(f"Agent started ({event.harness_id}, pid {event.data.get('pid')})")
        elif event.type == EVENT_FILE_OP:
            console.print(f"  [success]{event.data['message']}[/success]")
        elif event.type == EVENT_PROGRESS:
            console.print(f"  [muted]{event.data['message']}[/muted]")
        elif event.type == EVENT_OUTPUT and ctx.verbose:
            console.print(f"  [muted]{event.data['line'].rstrip()}[/muted]", highlight=False)
        elif event.type == EVENT_QUESTION:
            print_panel(event.data["question"], title="Agent question", style="yellow")
            if non_interactive:
                print_warning("Non-interactive mode: question left unanswered")
            else:
                prompt = asyncio.ensure_future(answer(event))
                pending.add(prompt)
                prompt.add_done_callback(pending.discard)
        elif event.type == EVENT_FAILED:
            print_warning(f"Attempt failed: {event.data.get('error')}")

    print_heading("Fetch Task")
    print_key_value("Goal", goal)
    print_key_value("Workspace", workspace)

    created = runtime.task_manager.create_task(
        goal,
        workspace,
        agent_selection=agent,
        constraints=constraints,
    )
    print_key_value("Task", created.id)

    try:
        outcome = await runtime.integration.execute_task(created.id, on_event=on_event)
    finally:
        for prompt in pending:
            prompt.cancel()
        # Never leave the task active once this process stops supervising it
        if runtime.task_manager.get_task_or_raise(created.id).is_active:
            runtime.integration.cancel_task(created.id)
        await runtime.shutdown()

    task = outcome.task
    console.print()
    print_key_value("Agent", task.agent)
    print_key_value("Status", format_task_status(task.status))
    print_key_value("Attempts", str(outcome.attempts))
    if outcome.harness_result is not None:
        print_key_value("Duration", format_duration_ms(outcome.harness_result.duration_ms))

    if task.result is None:
        return task.status == TaskStatus.COMPLETED

    _print_file_changes(task.result)
    if task.status == TaskStatus.COMPLETED:
        print_panel(task.result.summary, title="Summary", style="green")
        return True

    print_error(task.result.error or "Task did not complete")
    return False


def _print_file_changes(result) -> None:
    for label, files in (
        ("Created", result.files_created),
        ("Modified", result.files_modified),
        ("Deleted", result.files_deleted),
    ):
        for path in files:
            print_key_value(label, path)


# --- Status command ---


@main.command()
@pass_context
def status(ctx: HarnessContext):
    """Show the current task and harness settings."""
    try:
        runtime = ctx.build_runtime()
        config = runtime.config
        print_heading("Harness Status")

        task = runtime.task_manager.get_current_task()
        if task is not None and task.is_active:
            print_key_value("Current task", task.id)
            print_key_value("Status", format_task_status(task.status))
            print_key_value("Agent", task.agent)
            print_key_value("Goal", task.goal)
            if task.pending_question:
                print_key_value("Question", task.pending_question)
        else:
            print_key_value("Current task", "none")

        console.print()
        print_key_value("Max concurrent", str(config.pool.max_concurrent))
        print_key_value("Timeout", format_duration_ms(config.pool.default_timeout_ms))
        print_key_value("Default agent", config.agents.default)
        print_key_value("Agents", ", ".join(runtime.registry.list_agents()))
        print_key_value("State dir", str(runtime.state_dir))

    except Exception as e:
        _fail(ctx, e)


# --- Tasks command ---


@main.command()
@click.option(
    "--status", "-s", "status_filter",
    type=click.Choice([s.value for s in TaskStatus]),
    default=None,
    help="Only show tasks with this status"
)
@click.option(
    "--limit", "-n",
    type=int,
    default=20,
    help="Maximum tasks to show"
)
@pass_context
def tasks(ctx: HarnessContext, status_filter: Optional[str], limit: int):
    """List recent tasks, newest first."""
    try:
        runtime = ctx.build_runtime()
        task_manager = runtime.task_manager

        if status_filter:
            found = task_manager.list_tasks(TaskStatus(status_filter))
            found = list(reversed(found))[:limit]
        else:
            found = task_manager.get_recent_tasks(limit)

        if not found:
            print_warning("No tasks found")
            return

        table = create_task_table()
        for task in found:
            add_task_row(table, task)
        console.print(table)

    except Exception as e:
        _fail(ctx, e)


# --- Show command ---


@main.command()
@click.argument("task_id")
@click.option(
    "--progress", "-n",
    type=int,
    default=10,
    help="Number of progress entries to show"
)
@click.option(
    "--output", "show_output",
    is_flag=True,
    help="Print the agent's raw output"
)
@click.option(
    "--events", "show_events",
    is_flag=True,
    help="Print every logged event for the task"
)
@pass_context
def show(ctx: HarnessContext, task_id: str, progress: int, show_output: bool, show_events: bool):
    """Show details for one task."""
    from fetch_harness.logging import format_log_event, get_task_events

    try:
        runtime = ctx.build_runtime()
        task = runtime.task_manager.get_task_or_raise(task_id)

        print_heading(f"Task {task.id}")
        print_key_value("Goal", task.goal)
        print_key_value("Status", format_task_status(task.status))
        print_key_value("Agent", f"{task.agent} ({task.agent_selection})")
        print_key_value("Workspace", task.workspace)
        print_key_value("Created", task.created_at)
        if task.started_at:
            print_key_value("Started", task.started_at)
        if task.completed_at:
            print_key_value("Finished", task.completed_at)
        if task.retry_count:
            print_key_value("Retries", str(task.retry_count))
        if task.harness_id:
            print_key_value("Harness", task.harness_id)
        if task.pending_question:
            print_panel(task.pending_question, title="Pending question", style="yellow")

        if task.progress and progress > 0:
            print_heading("Progress")
            for entry in task.progress[-progress:]:
                suffix = f" ({entry.percent}%)" if entry.percent is not None else ""
                console.print(
                    f"[muted]{entry.timestamp[11:19]}[/muted] {entry.message}{suffix}",
                    highlight=False,
                )

        if task.result is not None:
            print_heading("Result")
            _print_file_changes(task.result)
            if task.result.exit_code is not None:
                print_key_value("Exit code", str(task.result.exit_code))
            if task.result.error:
                print_key_value("Error", task.result.error)
            if task.result.summary:
                print_panel(task.result.summary, title="Summary")
            if show_output and task.result.raw_output:
                console.print(task.result.raw_output, highlight=False, markup=False)

        if show_events:
            print_heading("Events")
            events = get_task_events(runtime.logs_dir, task.id)
            if not events:
                print_info("No events logged")
            for event in events:
                console.print(format_log_event(event), highlight=False, markup=False)

    except Exception as e:
        _fail(ctx, e)


# --- Cancel command ---


@main.command()
@click.argument("task_id")
@pass_context
def cancel(ctx: HarnessContext, task_id: str):
    """Cancel an active or failed task."""
    try:
        runtime = ctx.build_runtime()
        task = runtime.integration.cancel_task(task_id)
        print_success(f"Task {task.id} cancelled")
    except Exception as e:
        _fail(ctx, e)


# --- Agents command ---


@main.command()
@pass_context
def agents(ctx: HarnessContext):
    """List the available agent adapters."""
    try:
        runtime = ctx.build_runtime()
        default_agent = runtime.config.agents.default

        table = create_agents_table()
        for name, caps in runtime.registry.capabilities().items():
            label = f"{name} (default)" if name == default_agent else name
            table.add_row(
                label,
                caps.display_name,
                format_flag(caps.can_modify_files),
                format_flag(caps.interactive),
                caps.description,
            )
        console.print(table)

    except Exception as e:
        _fail(ctx, e)


# --- Logs command ---


@main.command()
@click.option(
    "--query", "-q",
    default=None,
    help="Text to search for"
)
@click.option(
    "--task", "task_id",
    default=None,
    help="Only show events for this task"
)
@click.option(
    "--type", "log_type",
    type=click.Choice(["events", "tasks", "harness", "errors"]),
    default="events",
    help="Log file to read"
)
@click.option(
    "--level", "-l",
    type=click.Choice(["debug", "routine", "important", "critical"]),
    default="routine",
    help="Minimum level"
)
@click.option(
    "--limit", "-n",
    type=int,
    default=50,
    help="Maximum events to show"
)
@click.option(
    "--cleanup",
    is_flag=True,
    help="Delete events older than logging.retention_days"
)
@pass_context
def logs(
    ctx: HarnessContext,
    query: Optional[str],
    task_id: Optional[str],
    log_type: str,
    level: str,
    limit: int,
    cleanup: bool,
):
    """Query event logs."""
    from fetch_harness.logging import LogLevel, cleanup_old_logs, format_log_event, query_logs

    try:
        config = ctx.load_config()
        logs_dir = ctx.project_dir / config.paths.state_dir / "logs"

        if not logs_dir.exists():
            print_warning("No logs found. Run a task first.")
            return

        if cleanup:
            removed = cleanup_old_logs(logs_dir, config.logging.retention_days)
            print_success(f"Removed {removed} old events")
            return

        events = query_logs(
            logs_dir,
            log_type,
            query=query,
            task_id=task_id,
            min_level=LogLevel(level),
            limit=limit,
        )

        if not events:
            print_warning("No matching events found")
            return

        print_heading("Event Logs")
        if task_id:
            print_info(f"Task: {task_id}")
        if query:
            print_info(f"Filter: {query}")
        print_info(f"Level: {level}+")
        print_info(f"Showing: {len(events)} events")
        print_info("")

        for event in events:
            console.print(format_log_event(event), highlight=False, markup=False)

    except Exception as e:
        _fail(ctx, e)


if __name__ == "__main__":
    main()
