"""Rich console utilities for terminal output."""

from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from rich.theme import Theme

from fetch_harness.task import Task, TaskStatus

# Custom theme for harness output
FETCH_THEME = Theme({
    "info": "cyan",
    "success": "green",
    "warning": "yellow",
    "error": "red bold",
    "heading": "bold magenta",
    "muted": "dim",
    "task": "bold blue",
    "agent": "bold cyan",
    "question": "bold yellow",
})

# Global console instance
console = Console(theme=FETCH_THEME)

STATUS_STYLES = {
    TaskStatus.PENDING: "muted",
    TaskStatus.RUNNING: "info",
    TaskStatus.WAITING_INPUT: "question",
    TaskStatus.COMPLETED: "success",
    TaskStatus.FAILED: "error",
    TaskStatus.CANCELLED: "warning",
}


def print_info(message: str) -> None:
    """Print an informational message."""
    console.print(f"[info]{message}[/info]")


def print_success(message: str) -> None:
    """Print a success message."""
    console.print(f"[success]{message}[/success]")


def print_warning(message: str) -> None:
    """Print a warning message."""
    console.print(f"[warning]Warning: {message}[/warning]")


def print_error(message: str) -> None:
    """Print an error message."""
    console.print(f"[error]Error: {message}[/error]")


def print_heading(title: str) -> None:
    """Print a section heading."""
    console.print(f"\n[heading]{title}[/heading]")
    console.print("[muted]" + "-" * len(title) + "[/muted]")


def print_panel(content: str, title: str = "", style: str = "info") -> None:
    """Print content in a panel."""
    console.print(Panel(content, title=title, border_style=style))


def print_key_value(key: str, value: str, key_width: int = 16) -> None:
    """Print a key-value pair."""
    console.print(f"[muted]{key:<{key_width}}[/muted] {value}")


def format_task_status(status: TaskStatus) -> str:
    """Format a task status for display."""
    style = STATUS_STYLES.get(status, "muted")
    return f"[{style}]{status.value.upper()}[/{style}]"


def format_duration_ms(duration_ms: int) -> str:
    """Format a duration like 1.2s or 3m05s."""
    seconds = duration_ms / 1000
    if seconds < 60:
        return f"{seconds:.1f}s"
    minutes, seconds = divmod(int(seconds), 60)
    return f"{minutes}m{seconds:02d}s"


def create_task_table(title: str = "Tasks") -> Table:
    """Create a table for listing tasks."""
    table = Table(title=title, show_header=True, header_style="bold")
    table.add_column("ID", style="dim", no_wrap=True)
    table.add_column("Agent", style="agent")
    table.add_column("Status", justify="center")
    table.add_column("Goal")
    table.add_column("Created", style="dim")
    return table


def add_task_row(table: Table, task: Task) -> None:
    """Add one task to a table created by create_task_table."""
    goal = task.goal if len(task.goal) <= 60 else task.goal[:57] + "..."
    table.add_row(
        task.id,
        task.agent,
        format_task_status(task.status),
        goal,
        task.created_at[:19].replace("T", " "),
    )


def create_agents_table(title: str = "Agents") -> Table:
    """Create a table for listing agent adapters."""
    table = Table(title=title, show_header=True, header_style="bold")
    table.add_column("Agent", style="agent")
    table.add_column("Name")
    table.add_column("Edits files", justify="center")
    table.add_column("Interactive", justify="center")
    table.add_column("Best for", style="muted")
    return table


def format_flag(value: bool) -> str:
    return "[success]yes[/success]" if value else "[muted]no[/muted]"
