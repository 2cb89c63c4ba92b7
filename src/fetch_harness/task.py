"""Task entity and lifecycle rules for fetch-harness.

A task is one unit of coding work delegated to an agent. Its status moves
through a fixed transition table:

    pending ──► running ──► completed
                  │  ▲          ▲
                  ▼  │          │
             waiting_input ─────┘

Any active status can be cancelled, running/waiting_input can fail, and a
failed task can still be marked cancelled. Completed and cancelled are final.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from fetch_harness.exceptions import StateError
from fetch_harness.ids import generate_progress_id


class TaskStatus(str, Enum):
    """Task lifecycle states."""
    PENDING = "pending"
    RUNNING = "running"
    WAITING_INPUT = "waiting_input"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class TaskPriority(str, Enum):
    """Task priority. Recorded on the task, not used for admission."""
    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"


ACTIVE_STATUSES = frozenset({
    TaskStatus.PENDING,
    TaskStatus.RUNNING,
    TaskStatus.WAITING_INPUT,
})

TERMINAL_STATUSES = frozenset({
    TaskStatus.COMPLETED,
    TaskStatus.FAILED,
    TaskStatus.CANCELLED,
})

VALID_TRANSITIONS: dict[TaskStatus, frozenset] = {
    TaskStatus.PENDING: frozenset({TaskStatus.RUNNING, TaskStatus.CANCELLED}),
    TaskStatus.RUNNING: frozenset({
        TaskStatus.WAITING_INPUT,
        TaskStatus.COMPLETED,
        TaskStatus.FAILED,
        TaskStatus.CANCELLED,
    }),
    TaskStatus.WAITING_INPUT: frozenset({
        TaskStatus.RUNNING,
        TaskStatus.COMPLETED,
        TaskStatus.FAILED,
        TaskStatus.CANCELLED,
    }),
    TaskStatus.FAILED: frozenset({TaskStatus.CANCELLED}),
    TaskStatus.COMPLETED: frozenset(),
    TaskStatus.CANCELLED: frozenset(),
}

# Agent names. "auto" defers the choice to the task manager.
AGENT_CLAUDE = "claude"
AGENT_GEMINI = "gemini"
AGENT_COPILOT = "copilot"
AGENT_AUTO = "auto"


def can_transition(current: TaskStatus, target: TaskStatus) -> bool:
    """Check whether ``current -> target`` is allowed."""
    return target in VALID_TRANSITIONS.get(current, frozenset())


def utc_now() -> str:
    """Current UTC time as an ISO-8601 string with a Z suffix."""
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


@dataclass
class TaskConstraints:
    """Execution limits applied to a task."""

    timeout_ms: int = 300000
    require_approval: bool = False
    scope_paths: Optional[list[str]] = None
    # Total number of attempts, so 1 means no retry
    max_retries: int = 1


@dataclass
class TaskProgress:
    """One progress entry reported while a task runs."""

    message: str
    id: str = field(default_factory=generate_progress_id)
    timestamp: str = field(default_factory=utc_now)
    files: Optional[list[str]] = None
    percent: Optional[int] = None


@dataclass
class TaskResult:
    """Outcome of a finished task, successful or not."""

    success: bool
    summary: str = ""
    files_modified: list[str] = field(default_factory=list)
    files_created: list[str] = field(default_factory=list)
    files_deleted: list[str] = field(default_factory=list)
    error: Optional[str] = None
    raw_output: Optional[str] = None
    exit_code: Optional[int] = None


@dataclass
class Task:
    """A unit of coding work delegated to an agent."""

    id: str
    goal: str
    workspace: str
    agent: str
    agent_selection: str = AGENT_AUTO
    status: TaskStatus = TaskStatus.PENDING
    priority: TaskPriority = TaskPriority.NORMAL
    constraints: TaskConstraints = field(default_factory=TaskConstraints)
    progress: list[TaskProgress] = field(default_factory=list)
    result: Optional[TaskResult] = None
    pending_question: Optional[str] = None
    retry_count: int = 0
    session_id: str = ""
    harness_id: Optional[str] = None
    created_at: str = field(default_factory=utc_now)
    started_at: Optional[str] = None
    completed_at: Optional[str] = None

    @property
    def is_active(self) -> bool:
        """Task is pending, running or waiting for input."""
        return self.status in ACTIVE_STATUSES

    @property
    def is_terminal(self) -> bool:
        """Task has completed, failed or been cancelled."""
        return self.status in TERMINAL_STATUSES


def task_to_dict(task: Task) -> dict:
    """Convert a Task to a JSON-compatible dictionary."""
    result = None
    if task.result is not None:
        result = {
            "success": task.result.success,
            "summary": task.result.summary,
            "files_modified": task.result.files_modified,
            "files_created": task.result.files_created,
            "files_deleted": task.result.files_deleted,
            "error": task.result.error,
            "raw_output": task.result.raw_output,
            "exit_code": task.result.exit_code,
        }

    return {
        "id": task.id,
        "goal": task.goal,
        "workspace": task.workspace,
        "agent": task.agent,
        "agent_selection": task.agent_selection,
        "status": task.status.value,
        "priority": task.priority.value,
        "constraints": {
            "timeout_ms": task.constraints.timeout_ms,
            "require_approval": task.constraints.require_approval,
            "scope_paths": task.constraints.scope_paths,
            "max_retries": task.constraints.max_retries,
        },
        "progress": [
            {
                "id": p.id,
                "timestamp": p.timestamp,
                "message": p.message,
                "files": p.files,
                "percent": p.percent,
            }
            for p in task.progress
        ],
        "result": result,
        "pending_question": task.pending_question,
        "retry_count": task.retry_count,
        "session_id": task.session_id,
        "harness_id": task.harness_id,
        "created_at": task.created_at,
        "started_at": task.started_at,
        "completed_at": task.completed_at,
    }


def dict_to_task(data: dict) -> Task:
    """
    Convert a dictionary produced by ``task_to_dict`` back into a Task.

    Raises:
        StateError: If required fields are missing or a status is unknown.
    """
    if not isinstance(data, dict):
        raise StateError("Task record is not a JSON object")

    try:
        constraints_data = data.get("constraints") or {}
        result_data = data.get("result")

        return Task(
            id=data["id"],
            goal=data["goal"],
            workspace=data["workspace"],
            agent=data["agent"],
            agent_selection=data.get("agent_selection", AGENT_AUTO),
            status=TaskStatus(data.get("status", "pending")),
            priority=TaskPriority(data.get("priority", "normal")),
            constraints=TaskConstraints(
                timeout_ms=constraints_data.get("timeout_ms", 300000),
                require_approval=constraints_data.get("require_approval", False),
                scope_paths=constraints_data.get("scope_paths"),
                max_retries=constraints_data.get("max_retries", 1),
            ),
            progress=[
                TaskProgress(
                    id=p.get("id") or generate_progress_id(),
                    timestamp=p.get("timestamp") or utc_now(),
                    message=p.get("message", ""),
                    files=p.get("files"),
                    percent=p.get("percent"),
                )
                for p in data.get("progress", [])
            ],
            result=TaskResult(
                success=result_data.get("success", False),
                summary=result_data.get("summary", ""),
                files_modified=result_data.get("files_modified", []),
                files_created=result_data.get("files_created", []),
                files_deleted=result_data.get("files_deleted", []),
                error=result_data.get("error"),
                raw_output=result_data.get("raw_output"),
                exit_code=result_data.get("exit_code"),
            ) if result_data else None,
            pending_question=data.get("pending_question"),
            retry_count=data.get("retry_count", 0),
            session_id=data.get("session_id", ""),
            harness_id=data.get("harness_id"),
            created_at=data.get("created_at") or utc_now(),
            started_at=data.get("started_at"),
            completed_at=data.get("completed_at"),
        )
    except KeyError as e:
        raise StateError(f"Task record is missing field {e}")
    except ValueError as e:
        raise StateError(f"Invalid task record: {e}")
    except (TypeError, AttributeError) as e:
        raise StateError(f"Malformed task record: {e}")
