"""Shared data types for the harness layer."""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional

from fetch_harness.task import utc_now


class HarnessStatus(str, Enum):
    """Lifecycle of one agent process (and of the execution wrapping it)."""
    STARTING = "starting"
    RUNNING = "running"
    WAITING_INPUT = "waiting_input"
    COMPLETED = "completed"
    FAILED = "failed"
    KILLED = "killed"


TERMINAL_HARNESS_STATUSES = frozenset({
    HarnessStatus.COMPLETED,
    HarnessStatus.FAILED,
    HarnessStatus.KILLED,
})

LIVE_HARNESS_STATUSES = frozenset({
    HarnessStatus.RUNNING,
    HarnessStatus.WAITING_INPUT,
})

# Failure kinds reported on HarnessResult
FAILURE_SPAWN = "spawn"
FAILURE_RUNTIME = "runtime"
FAILURE_TIMEOUT = "timeout"
FAILURE_KILLED = "killed"

RETRIABLE_FAILURES = frozenset({FAILURE_RUNTIME, FAILURE_TIMEOUT})

# Harness lifecycle events emitted by the executor
EVENT_STARTED = "harness:started"
EVENT_OUTPUT = "harness:output"
EVENT_PROGRESS = "harness:progress"
EVENT_FILE_OP = "harness:file_op"
EVENT_QUESTION = "harness:question"
EVENT_COMPLETED = "harness:completed"
EVENT_FAILED = "harness:failed"
EVENT_KILLED = "harness:killed"

# Per-line output classifications
OUTPUT_LINE = "output"
OUTPUT_PROGRESS = "progress"
OUTPUT_FILE_OP = "file_op"
OUTPUT_QUESTION = "question"
OUTPUT_ERROR = "error"
OUTPUT_COMPLETE = "complete"


@dataclass
class HarnessConfig:
    """Exact process invocation for one agent run."""

    command: str
    args: list[str] = field(default_factory=list)
    env: dict[str, str] = field(default_factory=dict)
    cwd: Optional[str] = None
    timeout_ms: Optional[int] = None  # None takes the pool default; 0 disables

    @property
    def argv(self) -> list[str]:
        return [self.command, *self.args]


@dataclass
class FileOperations:
    """Files an agent reported creating, modifying or deleting."""

    created: list[str] = field(default_factory=list)
    modified: list[str] = field(default_factory=list)
    deleted: list[str] = field(default_factory=list)

    def is_empty(self) -> bool:
        return not (self.created or self.modified or self.deleted)


@dataclass
class HarnessOutputEvent:
    """One classified piece of output recorded on an execution."""

    type: str
    data: str
    timestamp: str = field(default_factory=utc_now)


@dataclass
class HarnessExecution:
    """One attempt to run a task through an agent process."""

    id: str
    task_id: str
    agent: str
    config: HarnessConfig
    status: HarnessStatus = HarnessStatus.STARTING
    events: list[HarnessOutputEvent] = field(default_factory=list)
    instance_id: Optional[str] = None
    pid: Optional[int] = None
    exit_code: Optional[int] = None
    started_at: str = field(default_factory=utc_now)
    completed_at: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_HARNESS_STATUSES


@dataclass
class HarnessEvent:
    """Lifecycle notification delivered to an execution's listener."""

    type: str
    harness_id: str
    task_id: str
    data: dict[str, Any] = field(default_factory=dict)
    timestamp: str = field(default_factory=utc_now)


@dataclass
class HarnessResult:
    """Outcome of one execution, returned instead of raising."""

    success: bool
    output: str
    exit_code: Optional[int]
    duration_ms: int
    error: Optional[str] = None
    failure_kind: Optional[str] = None
    harness_id: Optional[str] = None

    @property
    def retriable(self) -> bool:
        return not self.success and self.failure_kind in RETRIABLE_FAILURES


@dataclass
class PoolStats:
    """Point-in-time view of pool occupancy."""

    running: int
    queued: int
    max_concurrent: int


@dataclass
class AdapterCapabilities:
    """What an agent is able to do, for display and routing."""

    agent: str
    display_name: str
    can_modify_files: bool
    interactive: bool
    description: str = ""
