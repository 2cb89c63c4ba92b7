"""Harness pool: admission control for agent processes.

At most ``max_concurrent`` processes run at once. Further requests wait in
a FIFO queue and are spawned in arrival order as running processes exit.
"""

import asyncio
from collections import deque
from dataclasses import dataclass, replace
from typing import Optional

from fetch_harness.harness.spawner import HarnessInstance, HarnessSpawner
from fetch_harness.harness.types import HarnessConfig, PoolStats
from fetch_harness.logging import EventLogger, LogLevel


DEFAULT_MAX_CONCURRENT = 2
DEFAULT_TIMEOUT_MS = 300000


@dataclass
class QueueItem:
    """A request waiting for a free slot."""

    config: HarnessConfig
    future: asyncio.Future


class HarnessPool:
    """Bounds how many agent processes run at the same time."""

    def __init__(
        self,
        spawner: Optional[HarnessSpawner] = None,
        max_concurrent: int = DEFAULT_MAX_CONCURRENT,
        default_timeout_ms: int = DEFAULT_TIMEOUT_MS,
        event_logger: Optional[EventLogger] = None,
    ):
        """
        Initialize the pool.

        Args:
            spawner: Spawner that creates the processes.
            max_concurrent: Maximum number of simultaneously running processes.
            default_timeout_ms: Timeout applied to configs that do not set one.
            event_logger: Optional JSONL event logger.
        """
        if max_concurrent < 1:
            raise ValueError("max_concurrent must be at least 1")

        self.spawner = spawner if spawner is not None else HarnessSpawner(event_logger)
        self.max_concurrent = max_concurrent
        self.default_timeout_ms = default_timeout_ms
        self.event_logger = event_logger
        self._running: set[str] = set()
        self._starting = 0
        self._queue: deque[QueueItem] = deque()
        self._lock = asyncio.Lock()
        self._drain_tasks: set[asyncio.Task] = set()

        self.spawner.add_exit_listener(self._on_instance_exit)

    @property
    def running_count(self) -> int:
        return len(self._running) + self._starting

    @property
    def queued_count(self) -> int:
        return len(self._queue)

    def _has_free_slot(self) -> bool:
        return self.running_count < self.max_concurrent

    async def acquire(self, config: HarnessConfig) -> HarnessInstance:
        """
        Get a running instance for the config, waiting for a slot if needed.

        Requests are served strictly in arrival order: a new request queues
        whenever the pool is full or earlier requests are still waiting.
        A config without a timeout (None) gets the pool default; an explicit
        0 runs without a timeout. The caller's config is never modified.

        Raises:
            SpawnError: If the process could not be created.
        """
        if config.timeout_ms is None:
            config = replace(config, timeout_ms=self.default_timeout_ms)

        if self._has_free_slot() and not self._queue:
            return await self._spawn(config)

        future = asyncio.get_running_loop().create_future()
        self._queue.append(QueueItem(config=config, future=future))

        if self.event_logger:
            self.event_logger.log_event(
                "harness_queued",
                {"command": config.command, "position": len(self._queue)},
                LogLevel.ROUTINE,
            )

        return await future

    async def _spawn(self, config: HarnessConfig) -> HarnessInstance:
        # Hold the slot while the process is being created
        self._starting += 1
        try:
            instance = await self.spawner.spawn(config)
        except BaseException:
            # Includes cancellation of the caller while the process is created
            self._starting -= 1
            if self._queue:
                self._schedule_drain()
            raise
        self._starting -= 1

        if not instance.is_done:
            self._running.add(instance.id)
        else:
            # Exited before we could register it; free the slot right away
            self._schedule_drain()
        return instance

    def _on_instance_exit(self, instance: HarnessInstance) -> None:
        if instance.id in self._running:
            self._running.discard(instance.id)
            self._schedule_drain()

    def _schedule_drain(self) -> None:
        task = asyncio.ensure_future(self._process_queue())
        self._drain_tasks.add(task)
        task.add_done_callback(self._drain_tasks.discard)

    async def _process_queue(self) -> None:
        """Spawn queued requests, oldest first, while slots are free."""
        async with self._lock:
            while self._queue and self._has_free_slot():
                item = self._queue.popleft()
                if item.future.done():
                    # Caller gave up waiting
                    continue

                try:
                    instance = await self._spawn(item.config)
                except Exception as e:
                    if not item.future.done():
                        item.future.set_exception(e)
                    continue

                if item.future.done():
                    # Cancelled while spawning; nobody will watch this process
                    self.spawner.kill(instance.id)
                else:
                    item.future.set_result(instance)

    def set_max_concurrent(self, max_concurrent: int) -> None:
        """
        Change the concurrency bound and admit queued requests if it grew.

        Raises:
            ValueError: If the bound is less than 1.
        """
        if max_concurrent < 1:
            raise ValueError("max_concurrent must be at least 1")
        self.max_concurrent = max_concurrent
        if self._queue and self._has_free_slot():
            self._schedule_drain()

    def get_stats(self) -> PoolStats:
        return PoolStats(
            running=self.running_count,
            queued=self.queued_count,
            max_concurrent=self.max_concurrent,
        )

    # --- Delegation to the spawner ---

    def kill(self, instance_id: str) -> bool:
        return self.spawner.kill(instance_id)

    async def wait_for(self, instance_id: str) -> HarnessInstance:
        return await self.spawner.wait_for(instance_id)

    async def send_input(self, instance_id: str, text: str) -> bool:
        return await self.spawner.send_input(instance_id, text)

    def get_instance(self, instance_id: str) -> Optional[HarnessInstance]:
        return self.spawner.get_instance(instance_id)

    def remove(self, instance_id: str) -> bool:
        return self.spawner.remove(instance_id)

    async def shutdown(self) -> None:
        """Reject queued requests and stop every running process."""
        while self._queue:
            item = self._queue.popleft()
            if not item.future.done():
                item.future.cancel()
        await self.spawner.shutdown()
