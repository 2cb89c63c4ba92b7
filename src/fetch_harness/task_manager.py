"""Task lifecycle management for fetch-harness.

The TaskManager owns every Task, enforces the transition table, allows at
most one active task at a time and persists each change through a
TaskStore. All operations are synchronous so that a status change and its
persistence happen without yielding to other coroutines.
"""

from dataclasses import dataclass, field
from typing import Callable, Optional

from fetch_harness.exceptions import (
    AdapterNotFoundError,
    InvalidTransitionError,
    StateError,
    TaskConflictError,
    TaskNotFoundError,
)
from fetch_harness.ids import generate_task_id
from fetch_harness.logging import EventLogger, LogLevel
from fetch_harness.task import (
    AGENT_AUTO,
    AGENT_CLAUDE,
    Task,
    TaskConstraints,
    TaskProgress,
    TaskResult,
    TaskStatus,
    can_transition,
    utc_now,
)
from fetch_harness.task_store import MemoryTaskStore, TaskStore


@dataclass
class TaskEvent:
    """Notification sent to task listeners."""

    type: str
    task_id: str
    timestamp: str = field(default_factory=utc_now)
    data: dict = field(default_factory=dict)


TaskListener = Callable[[TaskEvent], None]


class TaskManager:
    """Creates tasks and drives them through their lifecycle."""

    def __init__(
        self,
        store: Optional[TaskStore] = None,
        event_logger: Optional[EventLogger] = None,
        default_agent: str = AGENT_CLAUDE,
        known_agents: Optional[list[str]] = None,
        default_constraints: Optional[TaskConstraints] = None,
    ):
        """
        Initialize the task manager.

        Args:
            store: Persistence backend. Defaults to an in-memory store.
            event_logger: Optional JSONL event logger.
            default_agent: Agent used when a task asks for "auto".
            known_agents: If given, explicit agent names must be in this list.
            default_constraints: Constraints used when a task supplies none.
        """
        self.store = store if store is not None else MemoryTaskStore()
        self.event_logger = event_logger
        self.default_agent = default_agent
        self.known_agents = known_agents
        self.default_constraints = default_constraints or TaskConstraints()
        self._tasks: dict[str, Task] = {}
        self._current_task_id: Optional[str] = None
        self._listeners: list[TaskListener] = []

    # --- Setup ---

    def init(self) -> None:
        """
        Load persisted tasks.

        A store that cannot be read is logged and the manager starts empty
        rather than failing the process.
        """
        try:
            tasks = self.store.load_all_tasks()
            current_id = self.store.load_current_task_id()
        except (StateError, OSError) as e:
            self._log_error("Failed to load tasks, starting empty", {"error": str(e)})
            self._tasks = {}
            self._current_task_id = None
            return

        self._tasks = {task.id: task for task in tasks}
        self._current_task_id = current_id if current_id in self._tasks else None

        if self.event_logger:
            self.event_logger.log_event(
                "task_manager_initialized",
                {"tasks": len(self._tasks), "current_task_id": self._current_task_id},
                LogLevel.ROUTINE,
            )

    def add_listener(self, listener: TaskListener) -> Callable[[], None]:
        """
        Subscribe to task events.

        Returns:
            A function that removes the listener again.
        """
        self._listeners.append(listener)

        def remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return remove

    # --- Creation ---

    def resolve_agent(self, agent_selection: str) -> str:
        """
        Turn an agent selection into a concrete agent name.

        "auto" resolves to the configured default agent.

        Raises:
            AdapterNotFoundError: If an explicit agent is not known.
        """
        if agent_selection == AGENT_AUTO:
            return self.default_agent
        if self.known_agents is not None and agent_selection not in self.known_agents:
            raise AdapterNotFoundError(agent_selection)
        return agent_selection

    def create_task(
        self,
        goal: str,
        workspace: str,
        agent_selection: str = AGENT_AUTO,
        constraints: Optional[TaskConstraints] = None,
        session_id: str = "",
    ) -> Task:
        """
        Create a new pending task.

        Args:
            goal: What the agent should accomplish.
            workspace: Workspace name or path the agent works in.
            agent_selection: Agent name or "auto".
            constraints: Execution limits. Defaults to the manager defaults.
            session_id: Conversation session that requested the task.

        Returns:
            The new Task, already persisted and marked as current.

        Raises:
            TaskConflictError: If another task is still active.
            AdapterNotFoundError: If the agent selection is unknown.
        """
        active = self.get_current_task()
        if active is not None and active.is_active:
            raise TaskConflictError(active.id, active.status.value)

        agent = self.resolve_agent(agent_selection)

        if constraints is None:
            constraints = TaskConstraints(
                timeout_ms=self.default_constraints.timeout_ms,
                require_approval=self.default_constraints.require_approval,
                scope_paths=self.default_constraints.scope_paths,
                max_retries=self.default_constraints.max_retries,
            )

        task = Task(
            id=generate_task_id(),
            goal=goal,
            workspace=workspace,
            agent=agent,
            agent_selection=agent_selection,
            constraints=constraints,
            session_id=session_id,
        )

        self._tasks[task.id] = task
        self._current_task_id = task.id
        self._persist(task, current_changed=True)

        self._emit("task:created", task.id, {"goal": goal, "agent": agent, "workspace": workspace})
        return task

    # --- Transitions ---

    def _transition(self, task_id: str, target: TaskStatus) -> Task:
        task = self.get_task_or_raise(task_id)
        if not can_transition(task.status, target):
            raise InvalidTransitionError(task_id, task.status.value, target.value)
        task.status = target
        return task

    def start_task(self, task_id: str) -> Task:
        """Move a pending task to running."""
        task = self._transition(task_id, TaskStatus.RUNNING)
        task.started_at = utc_now()
        self._persist(task)
        self._emit("task:started", task_id)
        return task

    def set_waiting_input(self, task_id: str, question: str) -> Task:
        """Record that the agent asked a question and is waiting for an answer."""
        task = self._transition(task_id, TaskStatus.WAITING_INPUT)
        task.pending_question = question
        self._persist(task)
        self._emit("task:question", task_id, {"question": question})
        return task

    def resume_task(self, task_id: str) -> Task:
        """Move a task that received its answer back to running."""
        task = self._transition(task_id, TaskStatus.RUNNING)
        task.pending_question = None
        self._persist(task)
        self._emit("task:resumed", task_id)
        return task

    def complete_task(self, task_id: str, result: TaskResult) -> Task:
        """Mark a running or waiting task as completed with its result."""
        task = self._transition(task_id, TaskStatus.COMPLETED)
        task.result = result
        task.pending_question = None
        task.completed_at = utc_now()
        self._release_current(task_id)
        self._persist(task, current_changed=True)
        self._emit("task:completed", task_id, {
            "summary": result.summary,
            "files_created": result.files_created,
            "files_modified": result.files_modified,
            "files_deleted": result.files_deleted,
        })
        return task

    def fail_task(
        self,
        task_id: str,
        error: str,
        partial_result: Optional[TaskResult] = None,
    ) -> Task:
        """
        Mark a running or waiting task as failed.

        File lists and output from ``partial_result`` are kept on the
        stored result so work done before the failure stays visible.
        """
        task = self._transition(task_id, TaskStatus.FAILED)
        partial = partial_result or TaskResult(success=False)
        task.result = TaskResult(
            success=False,
            summary=partial.summary or f"Task failed: {error}",
            files_modified=partial.files_modified,
            files_created=partial.files_created,
            files_deleted=partial.files_deleted,
            error=error,
            raw_output=partial.raw_output,
            exit_code=partial.exit_code if partial.exit_code is not None else 1,
        )
        task.pending_question = None
        task.completed_at = utc_now()
        self._release_current(task_id)
        self._persist(task, current_changed=True)
        self._emit("task:failed", task_id, {"error": error})
        return task

    def cancel_task(self, task_id: str) -> Task:
        """Cancel a task. Allowed from any active status and from failed."""
        task = self._transition(task_id, TaskStatus.CANCELLED)
        task.pending_question = None
        task.completed_at = utc_now()
        self._release_current(task_id)
        self._persist(task, current_changed=True)
        self._emit("task:cancelled", task_id)
        return task

    def record_retry(self, task_id: str) -> Task:
        """Count another attempt on a running task."""
        task = self.get_task_or_raise(task_id)
        if task.status != TaskStatus.RUNNING:
            raise InvalidTransitionError(task_id, task.status.value, TaskStatus.RUNNING.value)
        task.retry_count += 1
        self._persist(task)
        self._emit("task:retry", task_id, {"retry_count": task.retry_count})
        return task

    def attach_harness(self, task_id: str, harness_id: str) -> Task:
        """Remember which execution is currently working on the task."""
        task = self.get_task_or_raise(task_id)
        task.harness_id = harness_id
        self._persist(task)
        return task

    def add_progress(
        self,
        task_id: str,
        message: str,
        files: Optional[list[str]] = None,
        percent: Optional[int] = None,
    ) -> TaskProgress:
        """Append a progress entry. Does not change the task status."""
        task = self.get_task_or_raise(task_id)
        progress = TaskProgress(message=message, files=files, percent=percent)
        task.progress.append(progress)
        self.store.save_task(task)
        self._emit("task:progress", task_id, {"message": message, "percent": percent}, log=False)
        return progress

    # --- Queries ---

    def get_task(self, task_id: str) -> Optional[Task]:
        """Return a task by id, or None."""
        return self._tasks.get(task_id)

    def get_task_or_raise(self, task_id: str) -> Task:
        """Return a task by id or raise TaskNotFoundError."""
        task = self._tasks.get(task_id)
        if task is None:
            raise TaskNotFoundError(task_id)
        return task

    def get_current_task_id(self) -> Optional[str]:
        return self._current_task_id

    def get_current_task(self) -> Optional[Task]:
        """Return the active task, if any."""
        if self._current_task_id is None:
            return None
        return self._tasks.get(self._current_task_id)

    def has_active_task(self) -> bool:
        task = self.get_current_task()
        return task is not None and task.is_active

    def get_tasks_for_session(self, session_id: str) -> list[Task]:
        """Tasks created by one session, oldest first."""
        return [t for t in self._tasks.values() if t.session_id == session_id]

    def get_recent_tasks(self, limit: int = 10) -> list[Task]:
        """Most recently created tasks, newest first."""
        tasks = sorted(self._tasks.values(), key=lambda t: t.created_at, reverse=True)
        return tasks[:limit]

    def list_tasks(self, status: Optional[TaskStatus] = None) -> list[Task]:
        """All tasks, optionally filtered by status, oldest first."""
        tasks = sorted(self._tasks.values(), key=lambda t: t.created_at)
        if status is not None:
            tasks = [t for t in tasks if t.status == status]
        return tasks

    # --- Internals ---

    def _release_current(self, task_id: str) -> None:
        if self._current_task_id == task_id:
            self._current_task_id = None

    def _persist(self, task: Task, current_changed: bool = False) -> None:
        self.store.save_task(task)
        if current_changed:
            self.store.save_current_task_id(self._current_task_id)

    def _emit(self, event_type: str, task_id: str, data: Optional[dict] = None, log: bool = True) -> None:
        event = TaskEvent(type=event_type, task_id=task_id, data=data or {})

        if log and self.event_logger:
            level = LogLevel.CRITICAL if event_type == "task:failed" else LogLevel.IMPORTANT
            self.event_logger.log_task_event(event_type, task_id, event.data, level)

        for listener in list(self._listeners):
            listener(event)

    def _log_error(self, message: str, details: dict) -> None:
        if self.event_logger:
            self.event_logger.log_error(message, details, LogLevel.CRITICAL)
