"""Harness executor: runs one goal through an agent and reports the result.

The executor ties an adapter, the pool and per-line output classification
together. Each call to ``execute`` consumes only its own instance's event
queue, and reports events to a listener scoped to that call.

Question detection is two-tier: any stdout chunk containing "?" (which the
spawner also flags as waiting_input) and any question-like line flagged by
the parsers make the executor ask the adapter to confirm a question in the
recent output. Only a confirmed question moves the execution to
waiting_input.
"""

import asyncio
import time
from dataclasses import dataclass
from typing import Callable, Optional

from fetch_harness.exceptions import ExecutionNotFoundError, NotWaitingForInputError, SpawnError
from fetch_harness.harness.adapters.base import HarnessAdapter
from fetch_harness.harness.pool import HarnessPool
from fetch_harness.harness.registry import AdapterRegistry
from fetch_harness.harness.spawner import (
    INSTANCE_EXIT,
    INSTANCE_OUTPUT,
    HarnessInstance,
)
from fetch_harness.harness.types import (
    EVENT_COMPLETED,
    EVENT_FAILED,
    EVENT_FILE_OP,
    EVENT_KILLED,
    EVENT_OUTPUT,
    EVENT_PROGRESS,
    EVENT_QUESTION,
    EVENT_STARTED,
    FAILURE_KILLED,
    FAILURE_RUNTIME,
    FAILURE_SPAWN,
    FAILURE_TIMEOUT,
    OUTPUT_COMPLETE,
    OUTPUT_FILE_OP,
    OUTPUT_LINE,
    OUTPUT_PROGRESS,
    OUTPUT_QUESTION,
    TERMINAL_HARNESS_STATUSES,
    HarnessEvent,
    HarnessExecution,
    HarnessOutputEvent,
    HarnessResult,
    HarnessStatus,
)
from fetch_harness.ids import generate_harness_id
from fetch_harness.logging import EventLogger, LogLevel
from fetch_harness.output_parser import OutputParser, ParserEvent, create_parser
from fetch_harness.task import utc_now


MAX_OUTPUT_BUFFER = 1024 * 1024

# Recorded output events kept per execution
MAX_EXECUTION_EVENTS = 5000

# Finished executions kept for lookups
MAX_EXECUTION_HISTORY = 100

# Characters of recent output handed to adapter.detect_question
QUESTION_WINDOW = 4000

HarnessListener = Callable[[HarnessEvent], None]


@dataclass
class _ExecutionRun:
    """Mutable state for one in-flight execute() call."""

    execution: HarnessExecution
    adapter: HarnessAdapter
    parser: OutputParser
    on_event: Optional[HarnessListener]
    output: str = ""
    question_from: int = 0
    saw_completion: bool = False
    acquire_task: Optional[asyncio.Task] = None


def _pair_lines(events: list[ParserEvent]) -> list[tuple[str, Optional[ParserEvent]]]:
    """Group parser output into (line, classification or None) pairs."""
    pairs: list[tuple[str, Optional[ParserEvent]]] = []
    for event in events:
        if event.type == "line":
            pairs.append((event.line, None))
        elif pairs:
            pairs[-1] = (pairs[-1][0], event)
    return pairs


class HarnessExecutor:
    """Runs goals through agent adapters under the pool's limits."""

    def __init__(
        self,
        pool: HarnessPool,
        registry: AdapterRegistry,
        event_logger: Optional[EventLogger] = None,
        max_output_bytes: int = MAX_OUTPUT_BUFFER,
        strip_ansi: bool = True,
        max_line_length: int = 10000,
        log_output_lines: bool = False,
        max_history: int = MAX_EXECUTION_HISTORY,
    ):
        """
        Initialize the executor.

        Args:
            pool: Pool that admits and spawns processes.
            registry: Adapter lookup by agent name.
            event_logger: Optional JSONL event logger.
            max_output_bytes: Output kept per execution; older text is dropped.
            strip_ansi: Strip terminal escapes before classifying lines.
            max_line_length: Force a line break past this many characters.
            log_output_lines: Also write every classified output line to the
                harness log at debug level.
            max_history: Finished executions remembered for lookups.
        """
        self.pool = pool
        self.registry = registry
        self.event_logger = event_logger
        self.max_output_bytes = max_output_bytes
        self.strip_ansi = strip_ansi
        self.max_line_length = max_line_length
        self.log_output_lines = log_output_lines
        self.max_history = max_history
        self._executions: dict[str, HarnessExecution] = {}
        self._runs: dict[str, _ExecutionRun] = {}

    # --- Execution ---

    async def execute(
        self,
        task_id: str,
        agent: str,
        goal: str,
        workspace_path: str,
        timeout_ms: Optional[int] = None,
        on_event: Optional[HarnessListener] = None,
    ) -> HarnessResult:
        """
        Run a goal with the given agent and wait for it to finish.

        Args:
            task_id: Task the execution belongs to.
            agent: Agent name, e.g. "claude".
            goal: What the agent should do.
            workspace_path: Working directory for the process.
            timeout_ms: Kill the process after this long. None uses the pool
                default and 0 disables the timeout.
            on_event: Called with every HarnessEvent of this execution.
                Errors raised by the listener are logged and do not stop
                the execution.

        Returns:
            HarnessResult. Spawn failures, timeouts and non-zero exits are
            reported in the result rather than raised.

        Raises:
            AdapterNotFoundError: If no adapter is registered for the agent.
        """
        adapter = self.registry.get(agent)
        config = adapter.build_config(goal, workspace_path, timeout_ms)

        execution = HarnessExecution(
            id=generate_harness_id(),
            task_id=task_id,
            agent=agent,
            config=config,
        )
        run = _ExecutionRun(
            execution=execution,
            adapter=adapter,
            parser=create_parser(
                strip_ansi=self.strip_ansi,
                max_line_length=self.max_line_length,
                agent=agent,
            ),
            on_event=on_event,
        )
        self._executions[execution.id] = execution
        self._runs[execution.id] = run
        started = time.monotonic()

        if self.event_logger:
            self.event_logger.log_harness_event(
                "execution_starting",
                execution.id,
                task_id=task_id,
                data={"agent": agent, "command": config.command, "cwd": config.cwd},
            )

        try:
            instance = await self._acquire(run)
            if instance is None:
                return self._finish_without_process(
                    run, started, "Killed before the process started", FAILURE_KILLED
                )
        except SpawnError as e:
            if e.instance_id is not None:
                self.pool.remove(e.instance_id)
            return self._finish_without_process(run, started, str(e), FAILURE_SPAWN)

        execution.instance_id = instance.id
        execution.pid = instance.pid
        execution.status = HarnessStatus.RUNNING

        try:
            self._emit(run, EVENT_STARTED, {"pid": instance.pid, "command": config.command})
            await self._consume(run, instance)
        except BaseException:
            # Nobody is left to watch the process
            self.pool.kill(instance.id)
            execution.status = HarnessStatus.KILLED
            execution.completed_at = utc_now()
            raise
        finally:
            self._runs.pop(execution.id, None)

        result = self._finish(run, instance, started)
        self.pool.remove(instance.id)
        self._prune_history()
        return result

    async def _acquire(self, run: _ExecutionRun) -> Optional[HarnessInstance]:
        """Wait for a pool slot. Returns None if the execution was killed while queued."""
        acquire_task = asyncio.ensure_future(self.pool.acquire(run.execution.config))
        run.acquire_task = acquire_task
        try:
            await asyncio.wait({acquire_task})
        except asyncio.CancelledError:
            acquire_task.cancel()
            raise
        finally:
            run.acquire_task = None

        if acquire_task.cancelled():
            return None
        return acquire_task.result()

    async def _consume(self, run: _ExecutionRun, instance: HarnessInstance) -> None:
        while True:
            event = await instance.events.get()

            if event.type == INSTANCE_OUTPUT:
                self._append_output(run, event.data)
                if event.stream == "stdout":
                    self._handle_lines(run, run.parser.write(event.data))
                    # Prompts often lack a trailing newline
                    if "?" in event.data:
                        self._check_question(run)
                else:
                    self._record(run, "stderr", event.data)
            elif event.type == INSTANCE_EXIT:
                break

        self._handle_lines(run, run.parser.flush())

    def _handle_lines(self, run: _ExecutionRun, events: list[ParserEvent]) -> None:
        for line, generic in _pair_lines(events):
            if not line.strip():
                continue
            self._handle_line(run, line, generic)

    def _handle_line(self, run: _ExecutionRun, line: str, generic: Optional[ParserEvent]) -> None:
        kind = run.adapter.parse_output_line(line)
        if kind is None and generic is not None:
            kind = generic.type

        self._record(run, kind or OUTPUT_LINE, line)

        if self.log_output_lines and self.event_logger:
            self.event_logger.log_harness_event(
                "execution_output",
                run.execution.id,
                task_id=run.execution.task_id,
                data={"line": line, "kind": kind or OUTPUT_LINE},
                level=LogLevel.DEBUG,
            )

        if kind == OUTPUT_PROGRESS:
            data = {"message": line.strip(), "percent": None}
            if generic is not None and generic.type == OUTPUT_PROGRESS:
                data = dict(generic.data)
            self._emit(run, EVENT_PROGRESS, data)

        elif kind == OUTPUT_FILE_OP:
            ops = run.adapter.extract_file_operations(line)
            if ops.is_empty() and generic is not None and generic.type == OUTPUT_FILE_OP:
                operation, files = generic.data["operation"], [generic.data["path"]]
            elif ops.created:
                operation, files = "create", ops.created
            elif ops.deleted:
                operation, files = "delete", ops.deleted
            else:
                operation, files = "modify", ops.modified
            self._emit(run, EVENT_FILE_OP, {
                "message": line.strip(),
                "operation": operation,
                "files": files,
            })

        else:
            self._emit(run, EVENT_OUTPUT, {"line": line, "kind": kind or OUTPUT_LINE})
            if kind == OUTPUT_QUESTION:
                self._check_question(run)
            elif kind == OUTPUT_COMPLETE:
                run.saw_completion = True

    def _check_question(self, run: _ExecutionRun) -> None:
        """Ask the adapter whether the recent output really ends in a question."""
        execution = run.execution
        if execution.status != HarnessStatus.RUNNING:
            return

        recent = run.output[run.question_from:][-QUESTION_WINDOW:]
        question = run.adapter.detect_question(recent)
        if not question:
            return

        execution.status = HarnessStatus.WAITING_INPUT
        run.question_from = len(run.output)
        self._emit(run, EVENT_QUESTION, {"question": question})

        if self.event_logger:
            self.event_logger.log_harness_event(
                "execution_question",
                execution.id,
                task_id=execution.task_id,
                data={"question": question},
                level=LogLevel.IMPORTANT,
            )

    # --- Results ---

    def _finish(self, run: _ExecutionRun, instance: HarnessInstance, started: float) -> HarnessResult:
        execution = run.execution
        duration_ms = int((time.monotonic() - started) * 1000)
        user_killed = execution.status == HarnessStatus.KILLED

        execution.status = instance.status
        execution.exit_code = instance.exit_code
        execution.completed_at = utc_now()

        if instance.status == HarnessStatus.COMPLETED:
            self._emit(run, EVENT_COMPLETED, {"exit_code": instance.exit_code})
            result = HarnessResult(
                success=True,
                output=run.output,
                exit_code=instance.exit_code,
                duration_ms=duration_ms,
                harness_id=execution.id,
            )
        else:
            if instance.timed_out:
                kind = FAILURE_TIMEOUT
                error = f"Timed out after {instance.config.timeout_ms}ms"
            elif instance.status == HarnessStatus.KILLED:
                kind = FAILURE_KILLED
                error = "Killed"
            else:
                kind = FAILURE_RUNTIME
                error = instance.error or f"Process exited with code {instance.exit_code}"

            if not user_killed:
                self._emit(run, EVENT_FAILED, {
                    "error": error,
                    "exit_code": instance.exit_code,
                    "failure_kind": kind,
                })

            result = HarnessResult(
                success=False,
                output=run.output,
                exit_code=instance.exit_code,
                duration_ms=duration_ms,
                error=error,
                failure_kind=kind,
                harness_id=execution.id,
            )

        if self.event_logger:
            self.event_logger.log_harness_event(
                "execution_finished",
                execution.id,
                task_id=execution.task_id,
                data={
                    "success": result.success,
                    "exit_code": result.exit_code,
                    "duration_ms": duration_ms,
                    "failure_kind": result.failure_kind,
                },
                level=LogLevel.ROUTINE if result.success else LogLevel.IMPORTANT,
            )
        return result

    def _finish_without_process(
        self,
        run: _ExecutionRun,
        started: float,
        error: str,
        kind: str,
    ) -> HarnessResult:
        execution = run.execution
        self._runs.pop(execution.id, None)

        already_killed = execution.status == HarnessStatus.KILLED
        execution.status = HarnessStatus.KILLED if kind == FAILURE_KILLED else HarnessStatus.FAILED
        execution.completed_at = utc_now()
        if not already_killed:
            self._emit(run, EVENT_FAILED, {"error": error, "failure_kind": kind})

        if self.event_logger and kind == FAILURE_SPAWN:
            self.event_logger.log_error(
                error,
                {"harness_id": execution.id, "command": execution.config.command},
                LogLevel.CRITICAL,
                task_id=execution.task_id,
            )

        result = HarnessResult(
            success=False,
            output="",
            exit_code=None,
            duration_ms=int((time.monotonic() - started) * 1000),
            error=error,
            failure_kind=kind,
            harness_id=execution.id,
        )
        self._prune_history()
        return result

    # --- Control ---

    async def send_input(self, harness_id: str, text: str) -> bool:
        """
        Answer a pending question.

        Returns:
            True if the reply was written to the process.

        Raises:
            ExecutionNotFoundError: If the execution is unknown.
            NotWaitingForInputError: If the execution is not waiting for input.
        """
        execution = self._executions.get(harness_id)
        if execution is None:
            raise ExecutionNotFoundError(harness_id)
        if execution.status != HarnessStatus.WAITING_INPUT or execution.instance_id is None:
            raise NotWaitingForInputError(harness_id, execution.status.value)

        adapter = self.registry.get(execution.agent)
        written = await self.pool.send_input(execution.instance_id, adapter.format_response(text))
        if written:
            execution.status = HarnessStatus.RUNNING
            run = self._runs.get(harness_id)
            if run is not None:
                run.question_from = len(run.output)
        return written

    def kill(self, harness_id: str) -> bool:
        """
        Stop an execution, whether running or still queued.

        Returns:
            True if a kill was issued, False if the execution is unknown or
            already finished.
        """
        execution = self._executions.get(harness_id)
        if execution is None or execution.status in TERMINAL_HARNESS_STATUSES:
            return False

        run = self._runs.get(harness_id)
        if execution.instance_id is not None:
            if not self.pool.kill(execution.instance_id):
                return False
        elif run is not None and run.acquire_task is not None:
            run.acquire_task.cancel()
        else:
            return False

        execution.status = HarnessStatus.KILLED
        if run is not None:
            self._emit(run, EVENT_KILLED, {})

        if self.event_logger:
            self.event_logger.log_harness_event(
                "execution_killed",
                harness_id,
                task_id=execution.task_id,
                level=LogLevel.IMPORTANT,
            )
        return True

    # --- Queries ---

    def get_execution(self, harness_id: str) -> Optional[HarnessExecution]:
        return self._executions.get(harness_id)

    def get_execution_for_task(self, task_id: str) -> Optional[HarnessExecution]:
        """The most recent execution for a task."""
        for execution in reversed(list(self._executions.values())):
            if execution.task_id == task_id:
                return execution
        return None

    def get_active_execution(self, task_id: str) -> Optional[HarnessExecution]:
        """The execution of a task that has not finished yet, if any."""
        for execution in self._executions.values():
            if execution.task_id == task_id and execution.status not in TERMINAL_HARNESS_STATUSES:
                return execution
        return None

    def is_running(self, harness_id: str) -> bool:
        execution = self._executions.get(harness_id)
        return execution is not None and execution.status not in TERMINAL_HARNESS_STATUSES

    def list_executions(self) -> list[HarnessExecution]:
        return list(self._executions.values())

    # --- Internals ---

    def _append_output(self, run: _ExecutionRun, text: str) -> None:
        run.output += text
        overflow = len(run.output) - self.max_output_bytes
        if overflow > 0:
            run.output = run.output[overflow:]
            run.question_from = max(0, run.question_from - overflow)

    def _record(self, run: _ExecutionRun, event_type: str, data: str) -> None:
        events = run.execution.events
        events.append(HarnessOutputEvent(type=event_type, data=data))
        if len(events) > MAX_EXECUTION_EVENTS:
            del events[: len(events) - MAX_EXECUTION_EVENTS]

    def _prune_history(self) -> None:
        """Forget the oldest finished executions beyond ``max_history``."""
        finished = [
            harness_id
            for harness_id, execution in self._executions.items()
            if execution.status in TERMINAL_HARNESS_STATUSES
        ]
        for harness_id in finished[: max(0, len(finished) - self.max_history)]:
            del self._executions[harness_id]

    def _emit(self, run: _ExecutionRun, event_type: str, data: dict) -> None:
        if run.on_event is None:
            return
        event = HarnessEvent(
            type=event_type,
            harness_id=run.execution.id,
            task_id=run.execution.task_id,
            data=data,
        )
        try:
            run.on_event(event)
        except Exception as e:
            if self.event_logger:
                self.event_logger.log_error(
                    f"Execution listener failed on {event_type}: {e}",
                    {"harness_id": run.execution.id, "error_type": type(e).__name__},
                    LogLevel.IMPORTANT,
                    task_id=run.execution.task_id,
                )
