"""Event logging for fetch-harness.

Logs events to structured JSONL files in .fetch/logs/.
"""

import json
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from enum import Enum
from typing import Optional


class LogLevel(Enum):
    """Log levels in order of importance."""
    DEBUG = "debug"
    ROUTINE = "routine"
    IMPORTANT = "important"
    CRITICAL = "critical"


LOG_LEVEL_ORDER = {
    LogLevel.DEBUG: 0,
    LogLevel.ROUTINE: 1,
    LogLevel.IMPORTANT: 2,
    LogLevel.CRITICAL: 3,
}


def _parse_level(value: str) -> LogLevel:
    """Map a stored level string to a LogLevel, defaulting to ROUTINE."""
    try:
        return LogLevel(value)
    except ValueError:
        return LogLevel.ROUTINE


@dataclass
class LogEvent:
    """A logged event."""

    timestamp: str
    event_type: str
    level: str
    task_id: Optional[str]
    data: dict

    def to_dict(self) -> dict:
        """Convert to dictionary."""
        return {
            "timestamp": self.timestamp,
            "event_type": self.event_type,
            "level": self.level,
            "task_id": self.task_id,
            "data": self.data,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "LogEvent":
        """Create from dictionary."""
        return cls(
            timestamp=data.get("timestamp", ""),
            event_type=data.get("event_type", ""),
            level=data.get("level", "routine"),
            task_id=data.get("task_id"),
            data=data.get("data", {}),
        )


class EventLogger:
    """Logger for task and harness events.

    Every event goes to ``events.jsonl``; task, harness and error events are
    additionally written to their own category file so they can be queried
    on their own.
    """

    def __init__(self, logs_dir: Path, min_level: LogLevel = LogLevel.DEBUG):
        """
        Initialize the event logger.

        Args:
            logs_dir: Path to .fetch/logs/ directory.
            min_level: Events below this level are dropped.
        """
        self.logs_dir = Path(logs_dir)
        self.min_level = min_level
        self._ensure_logs_dir()

    def _ensure_logs_dir(self) -> None:
        """Ensure logs directory exists."""
        self.logs_dir.mkdir(parents=True, exist_ok=True)

    def _get_log_file(self, log_type: str) -> Path:
        """Get the path to a log file."""
        return self.logs_dir / f"{log_type}.jsonl"

    def _write_event(self, log_type: str, event: LogEvent) -> None:
        """Write an event to a log file."""
        log_file = self._get_log_file(log_type)
        with open(log_file, "a") as f:
            f.write(json.dumps(event.to_dict()) + "\n")

    def _create_event(
        self,
        event_type: str,
        data: dict,
        level: LogLevel,
        task_id: Optional[str],
    ) -> LogEvent:
        """Create a log event."""
        return LogEvent(
            timestamp=datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
            event_type=event_type,
            level=level.value,
            task_id=task_id,
            data=data,
        )

    def _enabled(self, level: LogLevel) -> bool:
        return LOG_LEVEL_ORDER[level] >= LOG_LEVEL_ORDER[self.min_level]

    def log_event(
        self,
        event_type: str,
        data: dict,
        level: LogLevel = LogLevel.ROUTINE,
        task_id: Optional[str] = None,
    ) -> None:
        """
        Log a generic event.

        Args:
            event_type: Type of event.
            data: Event data.
            level: Log level.
            task_id: Task the event belongs to, if any.
        """
        if not self._enabled(level):
            return
        event = self._create_event(event_type, data, level, task_id)
        self._write_event("events", event)

    def log_task_event(
        self,
        event_type: str,
        task_id: str,
        data: Optional[dict] = None,
        level: LogLevel = LogLevel.IMPORTANT,
    ) -> None:
        """
        Log a task lifecycle event (created, started, completed, ...).

        Args:
            event_type: Event name, e.g. "task:completed".
            task_id: ID of the task.
            data: Additional details.
            level: Log level.
        """
        if not self._enabled(level):
            return
        event = self._create_event(event_type, data or {}, level, task_id)
        self._write_event("tasks", event)
        self._write_event("events", event)

    def log_harness_event(
        self,
        event_type: str,
        harness_id: str,
        task_id: Optional[str] = None,
        data: Optional[dict] = None,
        level: LogLevel = LogLevel.ROUTINE,
    ) -> None:
        """
        Log a harness process event (spawned, exited, killed, ...).

        Args:
            event_type: Event name, e.g. "harness_spawned".
            harness_id: ID of the harness instance or execution.
            task_id: Task the process is working on, if known.
            data: Additional details.
            level: Log level.
        """
        if not self._enabled(level):
            return
        payload = {"harness_id": harness_id, **(data or {})}
        event = self._create_event(event_type, payload, level, task_id)
        self._write_event("harness", event)
        self._write_event("events", event)

    def log_error(
        self,
        error: str,
        details: Optional[dict] = None,
        level: LogLevel = LogLevel.CRITICAL,
        task_id: Optional[str] = None,
    ) -> None:
        """
        Log an error.

        Args:
            error: Error message.
            details: Additional details.
            level: Log level.
            task_id: Task the error belongs to, if any.
        """
        if not self._enabled(level):
            return
        data = {
            "error": error,
            "details": details or {},
        }
        event = self._create_event("error", data, level, task_id)
        self._write_event("errors", event)
        self._write_event("events", event)


def read_log_file(
    log_file: Path,
    limit: Optional[int] = None,
    offset: int = 0,
) -> list[LogEvent]:
    """
    Read events from a log file.

    Args:
        log_file: Path to the log file.
        limit: Maximum events to return.
        offset: Number of events to skip.

    Returns:
        List of LogEvent objects.
    """
    if not log_file.exists():
        return []

    events = []
    with open(log_file) as f:
        for i, line in enumerate(f):
            if i < offset:
                continue
            if limit and len(events) >= limit:
                break

            line = line.strip()
            if line:
                try:
                    events.append(LogEvent.from_dict(json.loads(line)))
                except json.JSONDecodeError:
                    continue

    return events


def query_logs(
    logs_dir: Path,
    log_type: str = "events",
    query: Optional[str] = None,
    task_id: Optional[str] = None,
    min_level: LogLevel = LogLevel.ROUTINE,
    limit: int = 100,
    reverse: bool = True,
) -> list[LogEvent]:
    """
    Query logs with filters.

    Args:
        logs_dir: Path to logs directory.
        log_type: Type of log to query ("events", "tasks", "harness", "errors").
        query: Text query to filter by.
        task_id: Filter by task ID.
        min_level: Minimum log level.
        limit: Maximum events to return.
        reverse: Return newest first.

    Returns:
        List of matching LogEvent objects.
    """
    log_file = Path(logs_dir) / f"{log_type}.jsonl"
    if not log_file.exists():
        return []

    events = read_log_file(log_file)

    min_order = LOG_LEVEL_ORDER[min_level]
    events = [e for e in events if LOG_LEVEL_ORDER[_parse_level(e.level)] >= min_order]

    if task_id is not None:
        events = [e for e in events if e.task_id == task_id]

    if query:
        query_lower = query.lower()
        events = [
            e for e in events
            if query_lower in e.event_type.lower()
            or query_lower in json.dumps(e.data).lower()
        ]

    if reverse:
        events = list(reversed(events))

    return events[:limit]


def get_task_events(logs_dir: Path, task_id: str) -> list[LogEvent]:
    """Get every logged event for one task, oldest first."""
    return query_logs(
        logs_dir,
        "events",
        task_id=task_id,
        min_level=LogLevel.DEBUG,
        limit=10000,
        reverse=False,
    )


def format_log_event(event: LogEvent) -> str:
    """
    Format a log event for display.

    Args:
        event: LogEvent to format.

    Returns:
        Formatted string.
    """
    timestamp = event.timestamp[:19].replace("T", " ")
    task_str = f"[{event.task_id}]" if event.task_id else "[---]"
    level_str = event.level.upper()[:4]

    if event.event_type == "error":
        data_str = event.data.get("error", str(event.data))
    elif "harness_id" in event.data:
        rest = {k: v for k, v in event.data.items() if k != "harness_id"}
        data_str = f"{event.data['harness_id']} {rest}" if rest else event.data["harness_id"]
    else:
        data_str = str(event.data)[:100]

    return f"{timestamp} {task_str} {level_str} {event.event_type}: {data_str}"


def cleanup_old_logs(logs_dir: Path, max_age_days: int = 30) -> int:
    """
    Drop log events older than ``max_age_days``.

    Args:
        logs_dir: Path to logs directory.
        max_age_days: Maximum age in days.

    Returns:
        Number of events removed.
    """
    now = datetime.now(timezone.utc)
    removed = 0

    for log_file in Path(logs_dir).glob("*.jsonl"):
        events = read_log_file(log_file)
        kept = []
        for event in events:
            try:
                stamp = datetime.fromisoformat(event.timestamp.replace("Z", "+00:00"))
            except ValueError:
                kept.append(event)
                continue
            if (now - stamp).days <= max_age_days:
                kept.append(event)

        if len(kept) != len(events):
            removed += len(events) - len(kept)
            with open(log_file, "w") as f:
                for event in kept:
                    f.write(json.dumps(event.to_dict()) + "\n")

    return removed
