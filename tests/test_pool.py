"""Tests for the harness pool."""

import asyncio
from dataclasses import dataclass
from typing import Optional

import pytest

from fetch_harness.exceptions import SpawnError
from fetch_harness.harness.pool import HarnessPool
from fetch_harness.harness.spawner import HarnessSpawner
from fetch_harness.harness.types import HarnessConfig

from helpers import python_config


@dataclass
class FakeInstance:
    id: str
    config: HarnessConfig
    done: bool = False

    @property
    def is_done(self) -> bool:
        return self.done


class FakeSpawner:
    """Spawner double whose processes finish only when told to."""

    def __init__(self):
        self.spawned: list[str] = []
        self.killed: list[str] = []
        self.instances: dict[str, FakeInstance] = {}
        self._listeners = []

    def add_exit_listener(self, listener):
        self._listeners.append(listener)

    async def spawn(self, config: HarnessConfig) -> FakeInstance:
        if config.command == "missing":
            raise SpawnError(config.command, "command not found")
        instance = FakeInstance(id=config.command, config=config)
        self.instances[instance.id] = instance
        self.spawned.append(instance.id)
        return instance

    def finish(self, instance_id: str) -> None:
        instance = self.instances[instance_id]
        instance.done = True
        for listener in self._listeners:
            listener(instance)

    def kill(self, instance_id: str) -> bool:
        self.killed.append(instance_id)
        return True

    def get_instance(self, instance_id: str) -> Optional[FakeInstance]:
        return self.instances.get(instance_id)

    async def shutdown(self) -> None:
        pass


class BlockingSpawner(FakeSpawner):
    """Spawner double whose process creation waits until released."""

    def __init__(self):
        super().__init__()
        self.release = asyncio.Event()

    async def spawn(self, config: HarnessConfig) -> FakeInstance:
        await self.release.wait()
        return await super().spawn(config)


async def settle(rounds: int = 10) -> None:
    """Let scheduled tasks run."""
    for _ in range(rounds):
        await asyncio.sleep(0)


def request(pool: HarnessPool, name: str) -> asyncio.Task:
    return asyncio.ensure_future(pool.acquire(HarnessConfig(command=name)))


class TestPoolAdmission:
    """Tests for bounded, FIFO admission."""

    def test_rejects_zero_bound(self):
        """The bound must be at least one."""
        with pytest.raises(ValueError):
            HarnessPool(spawner=FakeSpawner(), max_concurrent=0)

    @pytest.mark.asyncio
    async def test_default_bound_is_two(self):
        """Two requests run at once by default; the third waits."""
        spawner = FakeSpawner()
        pool = HarnessPool(spawner=spawner)

        tasks = [request(pool, name) for name in ("a", "b", "c")]
        await settle()

        assert spawner.spawned == ["a", "b"]
        assert pool.get_stats().running == 2
        assert pool.get_stats().queued == 1
        assert not tasks[2].done()

    @pytest.mark.asyncio
    async def test_fifo_with_bound_one(self):
        """With a bound of one, requests run strictly one after another."""
        spawner = FakeSpawner()
        pool = HarnessPool(spawner=spawner, max_concurrent=1)

        tasks = [request(pool, name) for name in ("a", "b", "c")]
        await settle()
        assert spawner.spawned == ["a"]

        spawner.finish("a")
        await settle()
        assert spawner.spawned == ["a", "b"]

        spawner.finish("b")
        await settle()
        assert spawner.spawned == ["a", "b", "c"]
        assert [t.result().id for t in tasks] == ["a", "b", "c"]

    @pytest.mark.asyncio
    async def test_fifo_with_bound_three(self):
        """With a larger bound, queued requests start in arrival order."""
        spawner = FakeSpawner()
        pool = HarnessPool(spawner=spawner, max_concurrent=3)

        names = ["a", "b", "c", "d", "e", "f"]
        tasks = [request(pool, name) for name in names]
        await settle()
        assert spawner.spawned == ["a", "b", "c"]

        spawner.finish("b")
        await settle()
        assert spawner.spawned == ["a", "b", "c", "d"]

        spawner.finish("a")
        spawner.finish("c")
        await settle()
        assert spawner.spawned == names
        assert pool.get_stats().running == 3
        assert all(t.done() for t in tasks)

    @pytest.mark.asyncio
    async def test_new_request_waits_behind_queue(self):
        """A request arriving as a slot frees up still queues behind older ones."""
        spawner = FakeSpawner()
        pool = HarnessPool(spawner=spawner, max_concurrent=1)

        request(pool, "a")
        request(pool, "b")
        await settle()

        late = request(pool, "c")
        spawner.finish("a")
        await settle()

        assert spawner.spawned == ["a", "b"]
        assert not late.done()

        spawner.finish("b")
        await settle()
        assert late.result().id == "c"

    @pytest.mark.asyncio
    async def test_cancelled_waiter_is_skipped(self):
        """A request cancelled while queued never spawns."""
        spawner = FakeSpawner()
        pool = HarnessPool(spawner=spawner, max_concurrent=1)

        request(pool, "a")
        waiting = request(pool, "b")
        third = request(pool, "c")
        await settle()

        waiting.cancel()
        spawner.finish("a")
        await settle()

        assert spawner.spawned == ["a", "c"]
        assert third.result().id == "c"

    @pytest.mark.asyncio
    async def test_spawn_error_reaches_caller(self):
        """A queued request whose spawn fails gets the error; the next one runs."""
        spawner = FakeSpawner()
        pool = HarnessPool(spawner=spawner, max_concurrent=1)

        request(pool, "a")
        failing = request(pool, "missing")
        after = request(pool, "b")
        await settle()

        spawner.finish("a")
        await settle()

        with pytest.raises(SpawnError):
            failing.result()
        assert after.result().id == "b"
        assert pool.get_stats().running == 1

    @pytest.mark.asyncio
    async def test_cancel_while_spawning_frees_slot(self):
        """A caller cancelled during process creation does not keep its slot."""
        spawner = BlockingSpawner()
        pool = HarnessPool(spawner=spawner, max_concurrent=1)

        first = request(pool, "a")
        await settle()
        assert pool.get_stats().running == 1
        queued = request(pool, "b")
        await settle()
        assert pool.get_stats().queued == 1

        first.cancel()
        await settle()
        spawner.release.set()
        await settle()

        assert first.cancelled()
        assert queued.result().id == "b"
        assert spawner.spawned == ["b"]
        assert pool.get_stats().running == 1
        assert pool.get_stats().queued == 0

    @pytest.mark.asyncio
    async def test_spawn_error_frees_slot(self):
        """A failed immediate spawn does not hold a slot."""
        spawner = FakeSpawner()
        pool = HarnessPool(spawner=spawner, max_concurrent=1)

        with pytest.raises(SpawnError):
            await pool.acquire(HarnessConfig(command="missing"))

        assert pool.get_stats().running == 0
        instance = await pool.acquire(HarnessConfig(command="a"))
        assert instance.id == "a"


class TestPoolConfiguration:
    """Tests for defaults and runtime changes."""

    @pytest.mark.asyncio
    async def test_default_timeout_applied(self):
        """Only configs without a timeout get the pool default."""
        pool = HarnessPool(spawner=FakeSpawner(), max_concurrent=3, default_timeout_ms=1234)
        unset_config = HarnessConfig(command="a")

        unset = await pool.acquire(unset_config)
        explicit = await pool.acquire(HarnessConfig(command="b", timeout_ms=99))
        disabled = await pool.acquire(HarnessConfig(command="c", timeout_ms=0))

        assert unset.config.timeout_ms == 1234
        assert unset_config.timeout_ms is None
        assert explicit.config.timeout_ms == 99
        assert disabled.config.timeout_ms == 0

    @pytest.mark.asyncio
    async def test_raising_bound_admits_queued(self):
        """Growing the bound starts waiting requests."""
        spawner = FakeSpawner()
        pool = HarnessPool(spawner=spawner, max_concurrent=1)

        request(pool, "a")
        request(pool, "b")
        await settle()
        assert spawner.spawned == ["a"]

        pool.set_max_concurrent(2)
        await settle()
        assert spawner.spawned == ["a", "b"]

    def test_set_max_concurrent_rejects_zero(self):
        """The bound cannot be lowered below one."""
        pool = HarnessPool(spawner=FakeSpawner())
        with pytest.raises(ValueError):
            pool.set_max_concurrent(0)

    @pytest.mark.asyncio
    async def test_shutdown_cancels_queue(self):
        """Shutdown rejects requests that never started."""
        spawner = FakeSpawner()
        pool = HarnessPool(spawner=spawner, max_concurrent=1)

        request(pool, "a")
        waiting = request(pool, "b")
        await settle()

        await pool.shutdown()
        await settle()

        assert waiting.cancelled()
        assert pool.get_stats().queued == 0


class TestPoolWithProcesses:
    """Pool admission with real processes."""

    @pytest.mark.asyncio
    async def test_second_process_waits_for_first(self):
        """With a bound of one, the second process starts after the first exits."""
        pool = HarnessPool(spawner=HarnessSpawner(), max_concurrent=1)

        first_task = asyncio.ensure_future(pool.acquire(python_config("import time; time.sleep(0.3)")))
        second_task = asyncio.ensure_future(pool.acquire(python_config("print('second')")))
        first = await asyncio.wait_for(first_task, 10)
        await settle()

        assert pool.get_stats().queued == 1
        assert not second_task.done()

        second = await asyncio.wait_for(second_task, 10)
        await asyncio.wait_for(pool.wait_for(second.id), 10)

        assert first.is_done
        assert "second" in second.output
        assert pool.get_stats().running == 0
