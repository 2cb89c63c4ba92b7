"""Tests for task persistence."""

import json

import pytest

from fetch_harness.exceptions import StateError
from fetch_harness.task import Task, TaskStatus
from fetch_harness.task_store import JsonTaskStore, MemoryTaskStore


def make_task(task_id: str, created_at: str) -> Task:
    return Task(id=task_id, goal="goal", workspace="ws", agent="claude", created_at=created_at)


class TestJsonTaskStore:
    """Tests for JsonTaskStore."""

    def test_empty_store(self, temp_project_dir):
        """A missing state directory holds no tasks."""
        store = JsonTaskStore(temp_project_dir / ".fetch")
        assert store.load_all_tasks() == []
        assert store.load_current_task_id() is None

    def test_save_and_load(self, temp_project_dir):
        """Saved tasks load back oldest first."""
        store = JsonTaskStore(temp_project_dir / ".fetch")
        newer = make_task("tsk_bbbbbbbbbb", "2025-01-02T00:00:00Z")
        older = make_task("tsk_aaaaaaaaaa", "2025-01-01T00:00:00Z")
        store.save_task(newer)
        store.save_task(older)

        assert (temp_project_dir / ".fetch" / "tasks" / "tsk_bbbbbbbbbb.json").exists()
        assert [t.id for t in store.load_all_tasks()] == ["tsk_aaaaaaaaaa", "tsk_bbbbbbbbbb"]

    def test_save_replaces(self, temp_project_dir):
        """Saving a task again overwrites the earlier record."""
        store = JsonTaskStore(temp_project_dir / ".fetch")
        task = make_task("tsk_aaaaaaaaaa", "2025-01-01T00:00:00Z")
        store.save_task(task)
        task.status = TaskStatus.RUNNING
        store.save_task(task)

        loaded = store.load_all_tasks()
        assert len(loaded) == 1
        assert loaded[0].status == TaskStatus.RUNNING
        assert not list((temp_project_dir / ".fetch" / "tasks").glob("*.tmp"))

    def test_current_task_id(self, temp_project_dir):
        """The current task pointer can be set and cleared."""
        store = JsonTaskStore(temp_project_dir / ".fetch")
        store.save_current_task_id("tsk_aaaaaaaaaa")
        assert store.load_current_task_id() == "tsk_aaaaaaaaaa"

        data = json.loads((temp_project_dir / ".fetch" / "current_task.json").read_text())
        assert data == {"current_task_id": "tsk_aaaaaaaaaa"}

        store.save_current_task_id(None)
        assert store.load_current_task_id() is None

    @pytest.mark.parametrize("content", [b"{not json", b"\xff\xfe garbage", b"[1, 2]", b"\"text\""])
    def test_corrupt_task_file_raises(self, temp_project_dir, content):
        """Undecodable or non-record task files raise StateError."""
        tasks_dir = temp_project_dir / ".fetch" / "tasks"
        tasks_dir.mkdir(parents=True)
        (tasks_dir / "tsk_broken0000.json").write_bytes(content)

        with pytest.raises(StateError):
            JsonTaskStore(temp_project_dir / ".fetch").load_all_tasks()

    @pytest.mark.parametrize("content", [b"\xff\xfe", b"[\"tsk_a\"]", b'{"current_task_id": 7}'])
    def test_corrupt_current_task_file_raises(self, temp_project_dir, content):
        """A current task file that is not a record raises StateError."""
        state_dir = temp_project_dir / ".fetch"
        state_dir.mkdir()
        (state_dir / "current_task.json").write_bytes(content)

        with pytest.raises(StateError):
            JsonTaskStore(state_dir).load_current_task_id()


class TestMemoryTaskStore:
    """Tests for MemoryTaskStore."""

    def test_saved_copy_is_isolated(self):
        """Later mutation of a task does not change the stored copy."""
        store = MemoryTaskStore()
        task = make_task("tsk_aaaaaaaaaa", "2025-01-01T00:00:00Z")
        store.save_task(task)
        task.goal = "changed"

        assert store.load_all_tasks()[0].goal == "goal"

    def test_current_task_id(self):
        """The current task pointer is kept in memory."""
        store = MemoryTaskStore()
        store.save_current_task_id("tsk_aaaaaaaaaa")
        assert store.load_current_task_id() == "tsk_aaaaaaaaaa"
