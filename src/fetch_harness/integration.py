"""Task integration: routes harness events into task lifecycle calls.

    harness:output / progress / file_op  ->  TaskManager.add_progress
    harness:question                     ->  TaskManager.set_waiting_input
    successful exit                      ->  TaskManager.complete_task
    failed exit                          ->  TaskManager.fail_task

Runtime failures and timeouts are retried while the task's attempt limit
allows; spawn failures are not.
"""

from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional

from fetch_harness.exceptions import AdapterNotFoundError, ExecutionNotFoundError, InvalidTransitionError
from fetch_harness.harness.executor import HarnessExecutor, HarnessListener
from fetch_harness.harness.types import (
    EVENT_FILE_OP,
    EVENT_OUTPUT,
    EVENT_PROGRESS,
    EVENT_QUESTION,
    EVENT_STARTED,
    HarnessEvent,
    HarnessResult,
)
from fetch_harness.logging import EventLogger, LogLevel
from fetch_harness.task import AGENT_AUTO, Task, TaskConstraints, TaskResult, TaskStatus
from fetch_harness.task_manager import TaskManager


WorkspaceResolver = Callable[[str], str]


def default_workspace_resolver(workspace: str) -> str:
    """Treat the workspace name as a path, expanding ~ and making it absolute."""
    return str(Path(workspace).expanduser().resolve())


@dataclass
class TaskExecutionResult:
    """What happened when a task was executed."""

    task: Task
    harness_result: Optional[HarnessResult]
    attempts: int


class TaskIntegration:
    """Runs tasks through the executor and keeps their status in sync."""

    def __init__(
        self,
        task_manager: TaskManager,
        executor: HarnessExecutor,
        workspace_resolver: Optional[WorkspaceResolver] = None,
        event_logger: Optional[EventLogger] = None,
    ):
        self.task_manager = task_manager
        self.executor = executor
        self.workspace_resolver = workspace_resolver or default_workspace_resolver
        self.event_logger = event_logger

    async def create_and_execute(
        self,
        goal: str,
        workspace: str,
        agent_selection: str = AGENT_AUTO,
        constraints: Optional[TaskConstraints] = None,
        session_id: str = "",
        on_event: Optional[HarnessListener] = None,
    ) -> TaskExecutionResult:
        """Create a task and run it to a terminal status."""
        task = self.task_manager.create_task(
            goal,
            workspace,
            agent_selection=agent_selection,
            constraints=constraints,
            session_id=session_id,
        )
        return await self.execute_task(task.id, on_event=on_event)

    async def execute_task(
        self,
        task_id: str,
        on_event: Optional[HarnessListener] = None,
    ) -> TaskExecutionResult:
        """
        Run a pending task until it completes, fails or is cancelled.

        Args:
            task_id: ID of a pending task.
            on_event: Also called with every harness event, after routing.

        Returns:
            TaskExecutionResult with the final task and last harness result.

        Raises:
            TaskNotFoundError: If the task does not exist.
            InvalidTransitionError: If the task is not pending.
            AdapterNotFoundError: If the task's agent has no adapter (the
                task is marked failed first).
        """
        task = self.task_manager.get_task_or_raise(task_id)
        workspace_path = self.workspace_resolver(task.workspace)
        self.task_manager.start_task(task_id)

        def route(event: HarnessEvent) -> None:
            self._route(task_id, event)
            if on_event is not None:
                on_event(event)

        attempts = 0
        result: Optional[HarnessResult] = None
        while True:
            attempts += 1
            try:
                result = await self.executor.execute(
                    task_id,
                    task.agent,
                    task.goal,
                    workspace_path,
                    task.constraints.timeout_ms,
                    on_event=route,
                )
            except AdapterNotFoundError as e:
                self.task_manager.fail_task(task_id, str(e))
                raise

            task = self.task_manager.get_task_or_raise(task_id)
            if task.status == TaskStatus.CANCELLED:
                break

            if result.success:
                self._complete(task, result)
                break

            if result.retriable and attempts < task.constraints.max_retries:
                self._log_retry(task_id, attempts, result)
                if task.status == TaskStatus.WAITING_INPUT:
                    self.task_manager.resume_task(task_id)
                self.task_manager.record_retry(task_id)
                continue

            self._fail(task, result)
            break

        return TaskExecutionResult(
            task=self.task_manager.get_task_or_raise(task_id),
            harness_result=result,
            attempts=attempts,
        )

    async def respond_to_task(self, task_id: str, text: str) -> bool:
        """
        Relay a user's answer to the agent and resume the task.

        Returns:
            True if the answer was delivered.

        Raises:
            InvalidTransitionError: If the task is not waiting for input.
            ExecutionNotFoundError: If no execution is running for the task.
        """
        task = self.task_manager.get_task_or_raise(task_id)
        if task.status != TaskStatus.WAITING_INPUT:
            raise InvalidTransitionError(task_id, task.status.value, TaskStatus.RUNNING.value)

        execution = self.executor.get_active_execution(task_id)
        if execution is None:
            raise ExecutionNotFoundError(task.harness_id or task_id)

        written = await self.executor.send_input(execution.id, text)
        if written:
            self.task_manager.resume_task(task_id)
        return written

    def cancel_task(self, task_id: str) -> Task:
        """Kill the task's running execution, if any, and cancel the task."""
        execution = self.executor.get_active_execution(task_id)
        if execution is not None:
            self.executor.kill(execution.id)
        return self.task_manager.cancel_task(task_id)

    # --- Routing ---

    def _route(self, task_id: str, event: HarnessEvent) -> None:
        tm = self.task_manager
        data = event.data

        if event.type == EVENT_STARTED:
            tm.attach_harness(task_id, event.harness_id)
        elif event.type == EVENT_OUTPUT:
            tm.add_progress(task_id, data["line"].strip())
        elif event.type == EVENT_PROGRESS:
            tm.add_progress(task_id, data["message"], percent=data.get("percent"))
        elif event.type == EVENT_FILE_OP:
            tm.add_progress(task_id, data["message"], files=list(data["files"]))
        elif event.type == EVENT_QUESTION:
            task = tm.get_task_or_raise(task_id)
            if task.status == TaskStatus.RUNNING:
                tm.set_waiting_input(task_id, data["question"])

    def _complete(self, task: Task, result: HarnessResult) -> None:
        adapter = self.executor.registry.get(task.agent)
        ops = adapter.extract_file_operations(result.output)
        self.task_manager.complete_task(task.id, TaskResult(
            success=True,
            summary=adapter.extract_summary(result.output),
            files_modified=ops.modified,
            files_created=ops.created,
            files_deleted=ops.deleted,
            raw_output=result.output,
            exit_code=result.exit_code,
        ))

    def _fail(self, task: Task, result: HarnessResult) -> None:
        adapter = self.executor.registry.get(task.agent)
        ops = adapter.extract_file_operations(result.output)
        self.task_manager.fail_task(
            task.id,
            result.error or "Harness execution failed",
            TaskResult(
                success=False,
                files_modified=ops.modified,
                files_created=ops.created,
                files_deleted=ops.deleted,
                raw_output=result.output,
                exit_code=result.exit_code if result.exit_code is not None else 1,
            ),
        )

    def _log_retry(self, task_id: str, attempt: int, result: HarnessResult) -> None:
        if self.event_logger:
            self.event_logger.log_task_event(
                "task_retrying",
                task_id,
                {"attempt": attempt, "error": result.error, "failure_kind": result.failure_kind},
                LogLevel.IMPORTANT,
            )
