"""Task persistence for fetch-harness.

Tasks are stored as one JSON file each under ``<state_dir>/tasks/``, and the
id of the currently active task lives in ``<state_dir>/current_task.json``.
"""

import copy
import json
import os
from pathlib import Path
from typing import Optional, Protocol

from fetch_harness.exceptions import StateError
from fetch_harness.task import Task, dict_to_task, task_to_dict


class TaskStore(Protocol):
    """Storage backend used by the task manager."""

    def save_task(self, task: Task) -> None:
        ...

    def load_all_tasks(self) -> list[Task]:
        ...

    def save_current_task_id(self, task_id: Optional[str]) -> None:
        ...

    def load_current_task_id(self) -> Optional[str]:
        ...


def _write_json_atomic(path: Path, data: dict) -> None:
    """Write JSON through a temp file and rename it into place."""
    tmp_path = path.with_suffix(path.suffix + ".tmp")
    with open(tmp_path, "w", encoding="utf-8") as f:
        json.dump(data, f, indent=2)
    os.replace(tmp_path, path)


class JsonTaskStore:
    """Task store backed by JSON files in the state directory."""

    def __init__(self, state_dir: Path):
        """
        Initialize the store.

        Args:
            state_dir: Path to the .fetch/ directory.
        """
        self.state_dir = Path(state_dir)
        self.tasks_dir = self.state_dir / "tasks"
        self.current_file = self.state_dir / "current_task.json"

    def save_task(self, task: Task) -> None:
        """Write one task record, replacing any earlier version."""
        self.tasks_dir.mkdir(parents=True, exist_ok=True)
        _write_json_atomic(self.tasks_dir / f"{task.id}.json", task_to_dict(task))

    def load_all_tasks(self) -> list[Task]:
        """
        Load every stored task, oldest first.

        Raises:
            StateError: If a task file is not valid JSON or not a task record.
        """
        if not self.tasks_dir.exists():
            return []

        tasks = []
        for path in sorted(self.tasks_dir.glob("*.json")):
            try:
                with open(path, encoding="utf-8") as f:
                    data = json.load(f)
            except (json.JSONDecodeError, UnicodeDecodeError) as e:
                raise StateError(f"Invalid JSON in task file {path.name}: {e}")
            tasks.append(dict_to_task(data))

        tasks.sort(key=lambda t: t.created_at)
        return tasks

    def save_current_task_id(self, task_id: Optional[str]) -> None:
        """Record which task is active, or clear it with None."""
        self.state_dir.mkdir(parents=True, exist_ok=True)
        _write_json_atomic(self.current_file, {"current_task_id": task_id})

    def load_current_task_id(self) -> Optional[str]:
        """Return the recorded active task id, if any."""
        if not self.current_file.exists():
            return None

        try:
            with open(self.current_file, encoding="utf-8") as f:
                data = json.load(f)
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise StateError(f"Invalid JSON in current task file: {e}")

        if not isinstance(data, dict):
            raise StateError("Current task file is not a JSON object")
        current_id = data.get("current_task_id")
        if current_id is not None and not isinstance(current_id, str):
            raise StateError(f"Invalid current task id: {current_id!r}")
        return current_id


class MemoryTaskStore:
    """In-process task store. Nothing survives the process."""

    def __init__(self):
        self.tasks: dict[str, dict] = {}
        self.current_task_id: Optional[str] = None

    def save_task(self, task: Task) -> None:
        # Store a serialized copy so later mutation of the Task is not shared
        self.tasks[task.id] = copy.deepcopy(task_to_dict(task))

    def load_all_tasks(self) -> list[Task]:
        tasks = [dict_to_task(data) for data in self.tasks.values()]
        tasks.sort(key=lambda t: t.created_at)
        return tasks

    def save_current_task_id(self, task_id: Optional[str]) -> None:
        self.current_task_id = task_id

    def load_current_task_id(self) -> Optional[str]:
        return self.current_task_id
