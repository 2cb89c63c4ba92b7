"""Process spawner for agent CLIs.

The spawner owns every agent OS process: it creates it, captures stdout
and stderr, writes to stdin, enforces the timeout and terminates it. Each
instance gets its own event queue, so a consumer only ever sees events for
the instance it is watching.
"""

import asyncio
import codecs
import os
import time
from dataclasses import dataclass, field
from typing import Callable, Optional

from fetch_harness.exceptions import ExecutionNotFoundError, SpawnError
from fetch_harness.harness.types import (
    LIVE_HARNESS_STATUSES,
    TERMINAL_HARNESS_STATUSES,
    HarnessConfig,
    HarnessStatus,
)
from fetch_harness.ids import generate_harness_id
from fetch_harness.logging import EventLogger, LogLevel
from fetch_harness.task import utc_now


READ_CHUNK_SIZE = 4096

# Output kept per stream on each instance
MAX_INSTANCE_OUTPUT = 1024 * 1024

# How long to keep draining pipes after the process has exited
READER_DRAIN_SECONDS = 2.0

# Instance event types
INSTANCE_OUTPUT = "output"
INSTANCE_STATUS = "status"
INSTANCE_EXIT = "exit"


@dataclass
class InstanceEvent:
    """Something that happened to one process instance."""

    type: str
    instance_id: str
    stream: Optional[str] = None  # "stdout" or "stderr" for output events
    data: str = ""
    status: Optional[HarnessStatus] = None
    exit_code: Optional[int] = None


@dataclass
class HarnessInstance:
    """One agent process tracked by the spawner."""

    id: str
    config: HarnessConfig
    status: HarnessStatus = HarnessStatus.STARTING
    pid: Optional[int] = None
    exit_code: Optional[int] = None
    error: Optional[str] = None
    timed_out: bool = False
    stdout: list[str] = field(default_factory=list)
    stderr: list[str] = field(default_factory=list)
    started_at: str = field(default_factory=utc_now)
    completed_at: Optional[str] = None
    events: asyncio.Queue = field(default_factory=asyncio.Queue, repr=False)
    process: Optional[asyncio.subprocess.Process] = field(default=None, repr=False)
    _done: asyncio.Event = field(default_factory=asyncio.Event, repr=False)
    _started_monotonic: float = field(default_factory=time.monotonic, repr=False)
    _kill_requested: bool = field(default=False, repr=False)
    _output_sizes: dict[str, int] = field(default_factory=dict, repr=False)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_HARNESS_STATUSES

    @property
    def is_done(self) -> bool:
        """The process has exited (or never started) and been finalized."""
        return self._done.is_set()

    @property
    def output(self) -> str:
        return "".join(self.stdout)

    @property
    def duration_ms(self) -> int:
        return int((time.monotonic() - self._started_monotonic) * 1000)


ExitListener = Callable[[HarnessInstance], None]


class HarnessSpawner:
    """Creates and supervises agent processes."""

    def __init__(
        self,
        event_logger: Optional[EventLogger] = None,
        kill_grace_seconds: float = 5.0,
        max_output_chars: int = MAX_INSTANCE_OUTPUT,
    ):
        """
        Initialize the spawner.

        Args:
            event_logger: Optional JSONL event logger.
            kill_grace_seconds: Time between SIGTERM and SIGKILL on kill.
            max_output_chars: Minimum recent output kept per stream on an
                instance; older text is trimmed once twice this is stored.
        """
        self.event_logger = event_logger
        self.kill_grace_seconds = kill_grace_seconds
        self.max_output_chars = max_output_chars
        self._instances: dict[str, HarnessInstance] = {}
        self._exit_listeners: list[ExitListener] = []
        self._tasks: dict[str, list[asyncio.Task]] = {}
        self._timers: dict[str, list[asyncio.TimerHandle]] = {}

    def add_exit_listener(self, listener: ExitListener) -> None:
        """Call ``listener(instance)`` whenever an instance finishes."""
        self._exit_listeners.append(listener)

    # --- Spawning ---

    async def spawn(self, config: HarnessConfig) -> HarnessInstance:
        """
        Start a process for the given configuration.

        The instance is registered as "starting" before the process is
        created and "running" once it exists.

        Raises:
            SpawnError: If the process could not be created (binary missing,
                permission denied, bad working directory).
        """
        instance = HarnessInstance(id=generate_harness_id(), config=config)
        self._instances[instance.id] = instance

        env = {**os.environ, **config.env}

        try:
            process = await asyncio.create_subprocess_exec(
                config.command,
                *config.args,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=config.cwd,
                env=env,
            )
        except asyncio.CancelledError:
            # asyncio reaps a half-created process itself; only the record is left
            self._abandon(instance, HarnessStatus.KILLED, "Cancelled before the process started")
            del self._instances[instance.id]
            raise
        except OSError as e:
            if config.cwd is not None and not os.path.isdir(config.cwd):
                message = f"working directory not found: {config.cwd}"
            elif isinstance(e, FileNotFoundError):
                message = "command not found"
            else:
                message = str(e)
            self._abandon(instance, HarnessStatus.FAILED, message)
            if self.event_logger:
                self.event_logger.log_error(
                    "Failed to spawn harness process",
                    {"harness_id": instance.id, "command": config.command, "error": str(e)},
                    LogLevel.CRITICAL,
                )
            raise SpawnError(config.command, message, instance.id) from e

        instance.process = process
        instance.pid = process.pid
        instance.status = HarnessStatus.RUNNING
        self._push(instance, InstanceEvent(INSTANCE_STATUS, instance.id, status=HarnessStatus.RUNNING))

        if self.event_logger:
            self.event_logger.log_harness_event(
                "harness_spawned",
                instance.id,
                data={"command": config.command, "pid": process.pid, "cwd": config.cwd},
            )

        loop = asyncio.get_running_loop()
        self._timers[instance.id] = []
        if config.timeout_ms and config.timeout_ms > 0:
            self._timers[instance.id].append(
                loop.call_later(config.timeout_ms / 1000, self._on_timeout, instance.id)
            )

        readers = [
            asyncio.create_task(self._read_stream(instance, process.stdout, "stdout")),
            asyncio.create_task(self._read_stream(instance, process.stderr, "stderr")),
        ]
        self._tasks[instance.id] = readers + [
            asyncio.create_task(self._watch(instance, readers)),
        ]

        # Kill was requested while the process was still being created
        if instance._kill_requested:
            self.kill(instance.id)

        return instance

    # --- Stream handling ---

    async def _read_stream(
        self,
        instance: HarnessInstance,
        stream: Optional[asyncio.StreamReader],
        name: str,
    ) -> None:
        if stream is None:
            return

        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        try:
            while True:
                chunk = await stream.read(READ_CHUNK_SIZE)
                if not chunk:
                    break
                text = decoder.decode(chunk)
                if text:
                    self._handle_output(instance, name, text)
        except OSError as e:
            self._mark_process_error(instance, f"{name} read failed: {e}")
            return

        tail = decoder.decode(b"", final=True)
        if tail:
            self._handle_output(instance, name, tail)

    def _handle_output(self, instance: HarnessInstance, stream: str, text: str) -> None:
        self._keep_output(instance, stream, text)
        self._push(instance, InstanceEvent(INSTANCE_OUTPUT, instance.id, stream=stream, data=text))

        # First-pass signal only; adapters confirm real questions
        if stream == "stdout" and "?" in text and instance.status == HarnessStatus.RUNNING:
            self._set_status(instance, HarnessStatus.WAITING_INPUT)

    def _keep_output(self, instance: HarnessInstance, stream: str, text: str) -> None:
        """Store output, keeping at least the last ``max_output_chars`` per stream."""
        chunks = instance.stdout if stream == "stdout" else instance.stderr
        chunks.append(text)
        size = instance._output_sizes.get(stream, 0) + len(text)
        if size > 2 * self.max_output_chars:
            tail = "".join(chunks)[-self.max_output_chars:]
            chunks[:] = [tail]
            size = len(tail)
        instance._output_sizes[stream] = size

    def _mark_process_error(self, instance: HarnessInstance, message: str) -> None:
        instance.error = message
        if instance.status in LIVE_HARNESS_STATUSES:
            self._set_status(instance, HarnessStatus.FAILED)
        if self.event_logger:
            self.event_logger.log_error(message, {"harness_id": instance.id}, LogLevel.IMPORTANT)

    # --- Exit handling ---

    async def _watch(self, instance: HarnessInstance, readers: list[asyncio.Task]) -> None:
        process = instance.process
        returncode = await process.wait()

        _, pending = await asyncio.wait(readers, timeout=READER_DRAIN_SECONDS)
        for task in pending:
            task.cancel()

        self._finalize(instance, returncode)

    def _finalize(self, instance: HarnessInstance, returncode: Optional[int]) -> None:
        for timer in self._timers.pop(instance.id, []):
            timer.cancel()
        self._tasks.pop(instance.id, None)

        if returncode is not None and returncode < 0:
            # Terminated by signal N, reported the way shells do
            returncode = 128 + (-returncode)
        instance.exit_code = returncode

        if instance.status != HarnessStatus.KILLED:
            if instance.error or returncode != 0:
                instance.status = HarnessStatus.FAILED
            else:
                instance.status = HarnessStatus.COMPLETED

        instance.completed_at = utc_now()
        self._push(instance, InstanceEvent(
            INSTANCE_EXIT,
            instance.id,
            status=instance.status,
            exit_code=returncode,
        ))
        instance._done.set()

        if self.event_logger:
            self.event_logger.log_harness_event(
                "harness_exited",
                instance.id,
                data={
                    "status": instance.status.value,
                    "exit_code": returncode,
                    "timed_out": instance.timed_out,
                    "duration_ms": instance.duration_ms,
                },
                level=LogLevel.ROUTINE if instance.status == HarnessStatus.COMPLETED else LogLevel.IMPORTANT,
            )

        for listener in list(self._exit_listeners):
            listener(instance)

    def _on_timeout(self, instance_id: str) -> None:
        instance = self._instances.get(instance_id)
        if instance is None or instance.status not in LIVE_HARNESS_STATUSES:
            return

        instance.timed_out = True
        if self.event_logger:
            self.event_logger.log_harness_event(
                "harness_timeout",
                instance_id,
                data={"timeout_ms": instance.config.timeout_ms},
                level=LogLevel.IMPORTANT,
            )
        self.kill(instance_id)

    # --- Control ---

    async def send_input(self, instance_id: str, text: str) -> bool:
        """
        Write text to the process's stdin.

        Returns:
            True if the text was written, False if the instance is unknown,
            finished, or its stdin is closed.
        """
        instance = self._instances.get(instance_id)
        if instance is None or instance.is_terminal or instance.process is None:
            return False

        stdin = instance.process.stdin
        if stdin is None or stdin.is_closing():
            return False

        try:
            stdin.write(text.encode("utf-8"))
            await stdin.drain()
        except (BrokenPipeError, ConnectionResetError):
            return False

        if instance.status == HarnessStatus.WAITING_INPUT:
            self._set_status(instance, HarnessStatus.RUNNING)
        return True

    def kill(self, instance_id: str) -> bool:
        """
        Terminate a process.

        Sends SIGTERM and escalates to SIGKILL after the grace period. The
        instance is marked killed immediately; its exit is reported once
        the process is gone.

        Returns:
            True if a kill was issued, False if the instance is unknown or
            already finished.
        """
        instance = self._instances.get(instance_id)
        if instance is None or instance.is_terminal:
            return False

        if instance.process is None:
            # Still being created; spawn() kills it as soon as it exists
            instance._kill_requested = True
            return True

        self._set_status(instance, HarnessStatus.KILLED)

        try:
            instance.process.terminate()
        except ProcessLookupError:
            return True

        loop = asyncio.get_running_loop()
        self._timers.setdefault(instance_id, []).append(
            loop.call_later(self.kill_grace_seconds, self._force_kill, instance_id)
        )

        if self.event_logger:
            self.event_logger.log_harness_event(
                "harness_killed",
                instance_id,
                data={"timed_out": instance.timed_out},
                level=LogLevel.IMPORTANT,
            )
        return True

    def _force_kill(self, instance_id: str) -> None:
        instance = self._instances.get(instance_id)
        if instance is None or instance.is_done or instance.process is None:
            return
        try:
            instance.process.kill()
        except ProcessLookupError:
            pass

    async def wait_for(self, instance_id: str) -> HarnessInstance:
        """
        Wait until the instance has exited.

        Raises:
            ExecutionNotFoundError: If the instance id is unknown.
        """
        instance = self._instances.get(instance_id)
        if instance is None:
            raise ExecutionNotFoundError(instance_id)
        await instance._done.wait()
        return instance

    # --- Queries ---

    def get_instance(self, instance_id: str) -> Optional[HarnessInstance]:
        return self._instances.get(instance_id)

    def list_instances(self) -> list[HarnessInstance]:
        return list(self._instances.values())

    def list_running(self) -> list[HarnessInstance]:
        """Instances whose process has not exited yet."""
        return [i for i in self._instances.values() if not i.is_done]

    def remove(self, instance_id: str) -> bool:
        """Forget a finished instance. Live instances are kept."""
        instance = self._instances.get(instance_id)
        if instance is None or not instance.is_done:
            return False
        del self._instances[instance_id]
        return True

    async def shutdown(self) -> None:
        """Kill every live process and wait for all of them to exit."""
        live = self.list_running()
        for instance in live:
            self.kill(instance.id)
        for instance in live:
            if instance.process is not None:
                await instance._done.wait()

    # --- Internals ---

    def _abandon(self, instance: HarnessInstance, status: HarnessStatus, message: str) -> None:
        """Finalize an instance whose process never came to exist."""
        instance.status = status
        instance.error = message
        instance.completed_at = utc_now()
        instance._done.set()

    def _set_status(self, instance: HarnessInstance, status: HarnessStatus) -> None:
        if instance.status == status:
            return
        instance.status = status
        self._push(instance, InstanceEvent(INSTANCE_STATUS, instance.id, status=status))

    def _push(self, instance: HarnessInstance, event: InstanceEvent) -> None:
        instance.events.put_nowait(event)
