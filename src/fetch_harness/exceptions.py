"""Custom exceptions for fetch-harness."""

from typing import Optional


class HarnessError(Exception):
    """Base exception for all harness errors."""

    pass


class ConfigError(HarnessError):
    """Error loading or validating configuration."""

    pass


class ConfigNotFoundError(ConfigError):
    """Configuration file not found."""

    def __init__(self, path: str):
        self.path = path
        super().__init__(f"Configuration file not found: {path}")


class ConfigValidationError(ConfigError):
    """Configuration validation failed."""

    def __init__(self, field: str, message: str):
        self.field = field
        super().__init__(f"Invalid configuration for '{field}': {message}")


class StateError(HarnessError):
    """Error with persisted task state."""

    pass


class AdapterNotFoundError(ConfigError):
    """No adapter is registered for the requested agent."""

    def __init__(self, agent: str):
        self.agent = agent
        super().__init__(f"No adapter registered for agent: {agent}")


class SpawnError(HarnessError):
    """The agent process could not be created."""

    def __init__(self, command: str, message: str, instance_id: Optional[str] = None):
        self.command = command
        self.instance_id = instance_id
        super().__init__(f"Failed to spawn '{command}': {message}")


class TaskError(HarnessError):
    """Error with task lifecycle operations."""

    pass


class TaskNotFoundError(TaskError):
    """Task id is unknown to the task manager."""

    def __init__(self, task_id: str):
        self.task_id = task_id
        super().__init__(f"Task not found: {task_id}")


class InvalidTransitionError(TaskError):
    """Requested status change is not allowed from the current status."""

    def __init__(self, task_id: str, current: str, target: str):
        self.task_id = task_id
        self.current = current
        self.target = target
        super().__init__(
            f"Invalid transition for task {task_id}: {current} -> {target}"
        )


class TaskConflictError(TaskError):
    """A new task was requested while another task is still active."""

    def __init__(self, active_task_id: str, status: str):
        self.active_task_id = active_task_id
        self.status = status
        super().__init__(
            f"Task {active_task_id} is still {status}; cancel it or wait for it to finish"
        )


class ExecutionError(HarnessError):
    """Error interacting with a harness execution."""

    pass


class ExecutionNotFoundError(ExecutionError):
    """No execution exists for the given harness id."""

    def __init__(self, harness_id: str):
        self.harness_id = harness_id
        super().__init__(f"Execution not found: {harness_id}")


class NotWaitingForInputError(ExecutionError):
    """Input was sent to an execution that is not waiting for it."""

    def __init__(self, harness_id: str, status: Optional[str] = None):
        self.harness_id = harness_id
        self.status = status
        detail = f" (status: {status})" if status else ""
        super().__init__(f"Execution {harness_id} is not waiting for input{detail}")
