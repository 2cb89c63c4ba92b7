"""Tests for the task manager."""

import pytest

from fetch_harness.exceptions import (
    AdapterNotFoundError,
    InvalidTransitionError,
    TaskConflictError,
    TaskNotFoundError,
)
from fetch_harness.logging import read_log_file
from fetch_harness.task import VALID_TRANSITIONS, TaskConstraints, TaskResult, TaskStatus
from fetch_harness.task_manager import TaskManager
from fetch_harness.task_store import JsonTaskStore, MemoryTaskStore


@pytest.fixture
def manager():
    """TaskManager over an in-memory store."""
    tm = TaskManager(known_agents=["claude", "gemini", "copilot"])
    tm.init()
    return tm


OPERATIONS = {
    TaskStatus.RUNNING: lambda tm, task_id: tm.start_task(task_id),
    TaskStatus.WAITING_INPUT: lambda tm, task_id: tm.set_waiting_input(task_id, "Which one?"),
    TaskStatus.COMPLETED: lambda tm, task_id: tm.complete_task(task_id, TaskResult(success=True)),
    TaskStatus.FAILED: lambda tm, task_id: tm.fail_task(task_id, "boom"),
    TaskStatus.CANCELLED: lambda tm, task_id: tm.cancel_task(task_id),
}

PATHS = {
    TaskStatus.PENDING: [],
    TaskStatus.RUNNING: [TaskStatus.RUNNING],
    TaskStatus.WAITING_INPUT: [TaskStatus.RUNNING, TaskStatus.WAITING_INPUT],
    TaskStatus.COMPLETED: [TaskStatus.RUNNING, TaskStatus.COMPLETED],
    TaskStatus.FAILED: [TaskStatus.RUNNING, TaskStatus.FAILED],
    TaskStatus.CANCELLED: [TaskStatus.CANCELLED],
}


def task_in_status(tm: TaskManager, status: TaskStatus):
    """Create a task and drive it to the given status through the manager."""
    task = tm.create_task("goal", "ws")
    for step in PATHS[status]:
        OPERATIONS[step](tm, task.id)
    assert task.status == status
    return task


def transition_pairs(valid: bool) -> list:
    return [
        (current, target)
        for current in TaskStatus
        for target in OPERATIONS
        if (target in VALID_TRANSITIONS[current]) == valid
    ]



class TestCreateTask:
    """Tests for task creation."""

    def test_create_task(self, manager):
        """New tasks are pending, current and use the default agent for auto."""
        task = manager.create_task("Add a health endpoint", "api", session_id="sess_1")

        assert task.status == TaskStatus.PENDING
        assert task.agent == "claude"
        assert task.agent_selection == "auto"
        assert task.session_id == "sess_1"
        assert manager.get_current_task_id() == task.id
        assert manager.has_active_task()

    def test_explicit_agent(self, manager):
        """An explicit agent is used as-is."""
        task = manager.create_task("Fix typo", "docs", agent_selection="gemini")
        assert task.agent == "gemini"

    def test_unknown_agent_rejected(self, manager):
        """Unknown agents raise AdapterNotFoundError."""
        with pytest.raises(AdapterNotFoundError):
            manager.create_task("goal", "ws", agent_selection="cursor")
        assert manager.get_current_task() is None

    def test_default_constraints_copied(self):
        """Tasks get their own copy of the default constraints."""
        tm = TaskManager(default_constraints=TaskConstraints(timeout_ms=42, max_retries=3))
        task = tm.create_task("goal", "ws")

        assert task.constraints.timeout_ms == 42
        assert task.constraints.max_retries == 3
        assert task.constraints is not tm.default_constraints

    def test_conflict_while_active(self, manager):
        """Only one task may be active at a time."""
        first = manager.create_task("first", "ws")

        with pytest.raises(TaskConflictError) as exc_info:
            manager.create_task("second", "ws")
        assert exc_info.value.active_task_id == first.id

    def test_create_after_terminal(self, manager):
        """A new task may start once the previous one finished."""
        first = manager.create_task("first", "ws")
        manager.cancel_task(first.id)

        second = manager.create_task("second", "ws")
        assert manager.get_current_task_id() == second.id


class TestTransitions:
    """Tests for lifecycle transitions."""

    def test_happy_path(self, manager):
        """pending -> running -> waiting_input -> running -> completed."""
        task = manager.create_task("goal", "ws")
        manager.start_task(task.id)
        assert task.started_at is not None

        manager.set_waiting_input(task.id, "Which framework?")
        assert task.status == TaskStatus.WAITING_INPUT
        assert task.pending_question == "Which framework?"

        manager.resume_task(task.id)
        assert task.status == TaskStatus.RUNNING
        assert task.pending_question is None

        manager.complete_task(task.id, TaskResult(success=True, summary="ok"))
        assert task.status == TaskStatus.COMPLETED
        assert task.completed_at is not None
        assert task.result.summary == "ok"
        assert manager.get_current_task_id() is None

    def test_complete_from_waiting_input(self, manager):
        """A waiting task can complete directly."""
        task = manager.create_task("goal", "ws")
        manager.start_task(task.id)
        manager.set_waiting_input(task.id, "?")
        manager.complete_task(task.id, TaskResult(success=True))
        assert task.status == TaskStatus.COMPLETED

    def test_invalid_transition_raises(self, manager):
        """Transitions outside the table raise and leave the status alone."""
        task = manager.create_task("goal", "ws")

        with pytest.raises(InvalidTransitionError):
            manager.complete_task(task.id, TaskResult(success=True))
        assert task.status == TaskStatus.PENDING

    def test_completed_is_final(self, manager):
        """Completed tasks cannot be cancelled."""
        task = manager.create_task("goal", "ws")
        manager.start_task(task.id)
        manager.complete_task(task.id, TaskResult(success=True))

        with pytest.raises(InvalidTransitionError):
            manager.cancel_task(task.id)

    def test_fail_then_cancel(self, manager):
        """A failed task can still be cancelled."""
        task = manager.create_task("goal", "ws")
        manager.start_task(task.id)
        manager.fail_task(task.id, "boom")
        manager.cancel_task(task.id)
        assert task.status == TaskStatus.CANCELLED

    def test_fail_task_result(self, manager):
        """Failures keep partial work and default their summary and exit code."""
        task = manager.create_task("goal", "ws")
        manager.start_task(task.id)
        manager.fail_task(task.id, "Process exited with code 2", TaskResult(
            success=False,
            files_created=["a.py"],
        ))

        assert task.status == TaskStatus.FAILED
        assert task.result.error == "Process exited with code 2"
        assert task.result.summary == "Task failed: Process exited with code 2"
        assert task.result.files_created == ["a.py"]
        assert task.result.exit_code == 1

    def test_unknown_task(self, manager):
        """Unknown ids raise TaskNotFoundError."""
        with pytest.raises(TaskNotFoundError):
            manager.start_task("tsk_missing000")


class TestTransitionTable:
    """Every manager operation follows the transition table."""

    @pytest.mark.parametrize("current,target", transition_pairs(valid=False))
    def test_invalid_transition_leaves_status(self, manager, current, target):
        """Transitions outside the table raise and change nothing."""
        task = task_in_status(manager, current)

        with pytest.raises(InvalidTransitionError):
            OPERATIONS[target](manager, task.id)
        assert task.status == current
        assert manager.get_task(task.id).status == current

    @pytest.mark.parametrize("current,target", transition_pairs(valid=True))
    def test_valid_transition_applies(self, manager, current, target):
        """Transitions in the table are applied."""
        task = task_in_status(manager, current)

        OPERATIONS[target](manager, task.id)
        assert task.status == target


class TestProgressAndRetries:
    """Tests for progress entries and retry counting."""

    def test_add_progress(self, manager):
        """Progress is appended without changing status."""
        task = manager.create_task("goal", "ws")
        manager.start_task(task.id)
        entry = manager.add_progress(task.id, "Created a.py", files=["a.py"])

        assert entry.id.startswith("prg_")
        assert task.progress[-1].files == ["a.py"]
        assert task.status == TaskStatus.RUNNING

    def test_record_retry(self, manager):
        """Retries are counted on running tasks only."""
        task = manager.create_task("goal", "ws")
        with pytest.raises(InvalidTransitionError):
            manager.record_retry(task.id)

        manager.start_task(task.id)
        manager.record_retry(task.id)
        assert task.retry_count == 1

    def test_attach_harness(self, manager):
        """The working execution id is recorded."""
        task = manager.create_task("goal", "ws")
        manager.attach_harness(task.id, "hrn_abcdefgh")
        assert task.harness_id == "hrn_abcdefgh"


class TestListenersAndLogging:
    """Tests for task event delivery."""

    def test_listener_receives_events(self, manager):
        """Listeners see every lifecycle event in order."""
        events = []
        manager.add_listener(lambda e: events.append(e.type))

        task = manager.create_task("goal", "ws")
        manager.start_task(task.id)
        manager.add_progress(task.id, "working")
        manager.complete_task(task.id, TaskResult(success=True))

        assert events == ["task:created", "task:started", "task:progress", "task:completed"]

    def test_remove_listener(self, manager):
        """The returned function unsubscribes the listener."""
        events = []
        remove = manager.add_listener(events.append)
        remove()
        manager.create_task("goal", "ws")
        assert events == []

    def test_events_logged(self, event_logger, logs_dir):
        """Lifecycle events go to the task log; progress does not."""
        tm = TaskManager(event_logger=event_logger)
        task = tm.create_task("goal", "ws")
        tm.start_task(task.id)
        tm.add_progress(task.id, "working")
        tm.fail_task(task.id, "boom")

        logged = read_log_file(logs_dir / "tasks.jsonl")
        assert [e.event_type for e in logged] == ["task:created", "task:started", "task:failed"]
        assert logged[-1].level == "critical"


class TestQueries:
    """Tests for task queries."""

    def test_session_and_recent(self, manager):
        """Tasks can be listed by session, recency and status."""
        a = manager.create_task("a", "ws", session_id="s1")
        manager.cancel_task(a.id)
        b = manager.create_task("b", "ws", session_id="s2")
        manager.cancel_task(b.id)
        c = manager.create_task("c", "ws", session_id="s1")

        assert [t.id for t in manager.get_tasks_for_session("s1")] == [a.id, c.id]
        assert len(manager.get_recent_tasks(limit=2)) == 2
        assert [t.id for t in manager.list_tasks(TaskStatus.PENDING)] == [c.id]


class TestPersistence:
    """Tests for init() and persistence through a store."""

    def test_reload_from_disk(self, temp_project_dir):
        """A new manager sees tasks and the current task from disk."""
        store = JsonTaskStore(temp_project_dir / ".fetch")
        tm = TaskManager(store=store)
        tm.init()
        task = tm.create_task("goal", "ws")
        tm.start_task(task.id)

        reloaded = TaskManager(store=JsonTaskStore(temp_project_dir / ".fetch"))
        reloaded.init()

        assert reloaded.get_task(task.id).status == TaskStatus.RUNNING
        assert reloaded.get_current_task_id() == task.id
        with pytest.raises(TaskConflictError):
            reloaded.create_task("another", "ws")

    def test_stale_task_can_be_cancelled(self, temp_project_dir):
        """A task left running by an earlier process can be cancelled."""
        store = JsonTaskStore(temp_project_dir / ".fetch")
        tm = TaskManager(store=store)
        task = tm.create_task("goal", "ws")
        tm.start_task(task.id)

        reloaded = TaskManager(store=JsonTaskStore(temp_project_dir / ".fetch"))
        reloaded.init()
        reloaded.cancel_task(task.id)
        assert reloaded.create_task("another", "ws").status == TaskStatus.PENDING

    @pytest.mark.parametrize("filename,content", [
        ("tasks/tsk_broken0000.json", b"{oops"),
        ("tasks/tsk_broken0000.json", b"\xff\xfe garbage"),
        ("tasks/tsk_broken0000.json", b"[1, 2]"),
        ("tasks/tsk_broken0000.json", b'{"id": "tsk_broken0000", "goal": "g", "workspace": "w", "agent": "claude", "constraints": [1]}'),
        ("current_task.json", b"\xff\xfe garbage"),
        ("current_task.json", b"[\"tsk_broken0000\"]"),
    ])
    def test_corrupt_store_starts_empty(self, temp_project_dir, event_logger, logs_dir, filename, content):
        """Unreadable state is logged and the manager starts empty."""
        state_dir = temp_project_dir / ".fetch"
        (state_dir / "tasks").mkdir(parents=True)
        (state_dir / filename).write_bytes(content)

        tm = TaskManager(store=JsonTaskStore(state_dir), event_logger=event_logger)
        tm.init()

        assert tm.list_tasks() == []
        assert read_log_file(logs_dir / "errors.jsonl")

    def test_current_pointer_to_missing_task_ignored(self):
        """A current id with no task record is dropped."""
        store = MemoryTaskStore()
        store.save_current_task_id("tsk_gone000000")
        tm = TaskManager(store=store)
        tm.init()
        assert tm.get_current_task_id() is None
