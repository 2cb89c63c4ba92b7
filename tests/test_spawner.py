"""Tests for the process spawner.

These run real child processes using the current Python interpreter as a
stand-in agent.
"""

import asyncio
import sys
from pathlib import Path

import pytest

from fetch_harness.exceptions import ExecutionNotFoundError, SpawnError
from fetch_harness.harness.spawner import (
    INSTANCE_EXIT,
    INSTANCE_OUTPUT,
    INSTANCE_STATUS,
    HarnessSpawner,
)
from fetch_harness.harness.types import HarnessConfig, HarnessStatus
from fetch_harness.logging import read_log_file

from helpers import python_config


async def drain(instance, timeout: float = 10.0) -> list:
    """Collect an instance's events until its exit event."""
    events = []
    while True:
        event = await asyncio.wait_for(instance.events.get(), timeout)
        events.append(event)
        if event.type == INSTANCE_EXIT:
            return events


async def wait_for_status(instance, status, timeout: float = 10.0) -> list:
    """Collect events until the instance reports the given status."""
    events = []
    while True:
        event = await asyncio.wait_for(instance.events.get(), timeout)
        events.append(event)
        if event.type == INSTANCE_STATUS and event.status == status:
            return events


async def wait_for_output(instance, text: str, timeout: float = 10.0) -> None:
    """Consume events until stdout contains the given text."""
    while text not in instance.output:
        await asyncio.wait_for(instance.events.get(), timeout)


class TestSpawn:
    """Tests for spawning and exit handling."""

    @pytest.mark.asyncio
    async def test_successful_process(self):
        """A zero exit completes the instance and captures stdout."""
        spawner = HarnessSpawner()
        instance = await spawner.spawn(python_config("print('hello'); print('world')"))

        assert instance.status == HarnessStatus.RUNNING
        assert instance.pid is not None

        events = await drain(instance)
        assert instance.status == HarnessStatus.COMPLETED
        assert instance.exit_code == 0
        assert instance.output.splitlines() == ["hello", "world"]
        assert instance.is_done

        assert events[0].type == INSTANCE_STATUS
        assert events[0].status == HarnessStatus.RUNNING
        assert any(e.type == INSTANCE_OUTPUT and e.stream == "stdout" for e in events)
        assert events[-1].exit_code == 0

    @pytest.mark.asyncio
    async def test_nonzero_exit_fails(self):
        """A non-zero exit marks the instance failed with its code."""
        spawner = HarnessSpawner()
        instance = await spawner.spawn(python_config(
            "import sys; sys.stderr.write('bad things'); sys.exit(3)"
        ))
        await drain(instance)

        assert instance.status == HarnessStatus.FAILED
        assert instance.exit_code == 3
        assert "bad things" in "".join(instance.stderr)

    @pytest.mark.asyncio
    async def test_missing_command(self, event_logger, logs_dir):
        """A missing binary raises SpawnError and leaves a failed instance."""
        spawner = HarnessSpawner(event_logger)

        with pytest.raises(SpawnError) as exc_info:
            await spawner.spawn(HarnessConfig(command="definitely-not-an-agent-cli-xyz"))

        assert "command not found" in str(exc_info.value)
        instances = spawner.list_instances()
        assert len(instances) == 1
        assert instances[0].status == HarnessStatus.FAILED
        assert instances[0].is_done
        assert read_log_file(logs_dir / "errors.jsonl")

    @pytest.mark.asyncio
    async def test_missing_working_directory(self, tmp_path):
        """A missing cwd is reported as such, not as a missing command."""
        missing = tmp_path / "no-such-workspace"
        spawner = HarnessSpawner()

        with pytest.raises(SpawnError) as exc_info:
            await spawner.spawn(python_config("pass", cwd=missing))

        assert f"working directory not found: {missing}" in str(exc_info.value)
        assert "command not found" not in str(exc_info.value)
        assert exc_info.value.instance_id == spawner.list_instances()[0].id

    @pytest.mark.asyncio
    async def test_cancelled_while_creating(self):
        """Cancelling spawn() mid-creation leaves no live instance behind."""
        spawner = HarnessSpawner(kill_grace_seconds=1.0)
        spawning = asyncio.ensure_future(spawner.spawn(python_config("import time; time.sleep(30)")))
        await asyncio.sleep(0)

        spawning.cancel()
        with pytest.raises(asyncio.CancelledError):
            await spawning

        assert spawner.list_running() == []
        assert spawner.list_instances() == []

    @pytest.mark.asyncio
    async def test_output_is_capped(self):
        """Only recent output is kept once a stream grows past its limit."""
        spawner = HarnessSpawner(max_output_chars=1000)
        instance = await spawner.spawn(python_config(
            "import sys\nfor i in range(50):\n    sys.stdout.write('x' * 99 + '\\n')\nprint('tail')"
        ))
        await drain(instance)

        assert 1000 <= len(instance.output) <= 2000
        assert instance.output.endswith("tail\n")

    @pytest.mark.asyncio
    async def test_env_and_cwd(self, tmp_path):
        """Config env is merged over the parent environment; cwd is honored."""
        config = python_config(
            "import os; print(os.environ['FETCH_TEST_VAR']); print(os.environ.get('PATH') is not None); print(os.getcwd())",
            cwd=tmp_path,
        )
        config.env = {"FETCH_TEST_VAR": "from-config"}

        spawner = HarnessSpawner()
        instance = await spawner.spawn(config)
        await drain(instance)

        lines = instance.output.splitlines()
        assert lines[0] == "from-config"
        assert lines[1] == "True"
        assert Path(lines[2]).resolve() == tmp_path.resolve()

    @pytest.mark.asyncio
    async def test_exit_listener_called(self):
        """Exit listeners receive the finished instance."""
        spawner = HarnessSpawner()
        finished = []
        spawner.add_exit_listener(finished.append)

        instance = await spawner.spawn(python_config("pass"))
        await spawner.wait_for(instance.id)

        assert len(finished) == 1
        assert finished[0] is instance

    @pytest.mark.asyncio
    async def test_wait_for_unknown(self):
        """Waiting on an unknown instance raises."""
        with pytest.raises(ExecutionNotFoundError):
            await HarnessSpawner().wait_for("hrn_unknown0")


class TestTimeoutAndKill:
    """Tests for timeouts and kills."""

    @pytest.mark.asyncio
    async def test_timeout_kills_process(self, event_logger, logs_dir):
        """A process running past its timeout is killed and flagged."""
        spawner = HarnessSpawner(event_logger, kill_grace_seconds=1.0)
        loop = asyncio.get_running_loop()
        started = loop.time()
        instance = await spawner.spawn(python_config("import time; time.sleep(30)", timeout_ms=50))

        await asyncio.wait_for(spawner.wait_for(instance.id), 10)
        elapsed = loop.time() - started

        assert instance.timed_out
        assert instance.status == HarnessStatus.KILLED
        assert 0.05 <= elapsed < 2.0
        logged = [e.event_type for e in read_log_file(logs_dir / "harness.jsonl")]
        assert "harness_timeout" in logged

    @pytest.mark.asyncio
    async def test_kill_is_idempotent(self):
        """The first kill is issued; later kills report False."""
        spawner = HarnessSpawner(kill_grace_seconds=1.0)
        instance = await spawner.spawn(python_config("import time; time.sleep(30)"))

        assert spawner.kill(instance.id) is True
        assert instance.status == HarnessStatus.KILLED
        assert spawner.kill(instance.id) is False

        await asyncio.wait_for(spawner.wait_for(instance.id), 10)
        assert instance.status == HarnessStatus.KILLED
        assert spawner.kill(instance.id) is False

    @pytest.mark.asyncio
    async def test_kill_unknown(self):
        """Killing an unknown instance reports False."""
        assert HarnessSpawner().kill("hrn_unknown0") is False

    @pytest.mark.asyncio
    @pytest.mark.skipif(sys.platform == "win32", reason="POSIX signals")
    async def test_kill_escalates_after_grace(self):
        """A process ignoring SIGTERM is force-killed after the grace period."""
        spawner = HarnessSpawner(kill_grace_seconds=0.2)
        instance = await spawner.spawn(python_config(
            "import signal, time\n"
            "signal.signal(signal.SIGTERM, signal.SIG_IGN)\n"
            "print('ready', flush=True)\n"
            "time.sleep(30)\n"
        ))
        await wait_for_output(instance, "ready")

        spawner.kill(instance.id)
        await asyncio.wait_for(spawner.wait_for(instance.id), 10)

        assert instance.status == HarnessStatus.KILLED
        assert instance.exit_code == 128 + 9

    @pytest.mark.asyncio
    async def test_shutdown_stops_everything(self):
        """shutdown() kills every live process."""
        spawner = HarnessSpawner(kill_grace_seconds=1.0)
        first = await spawner.spawn(python_config("import time; time.sleep(30)"))
        second = await spawner.spawn(python_config("import time; time.sleep(30)"))

        await asyncio.wait_for(spawner.shutdown(), 10)

        assert first.is_done and second.is_done
        assert spawner.list_running() == []


class TestSendInput:
    """Tests for writing to a process's stdin."""

    @pytest.mark.asyncio
    async def test_question_and_answer(self):
        """A '?' in stdout flags waiting_input; sending input resumes."""
        spawner = HarnessSpawner()
        instance = await spawner.spawn(python_config(
            "name = input('Which name? ')\nprint('hi ' + name)"
        ))

        await wait_for_status(instance, HarnessStatus.WAITING_INPUT)
        assert instance.status == HarnessStatus.WAITING_INPUT

        assert await spawner.send_input(instance.id, "bob\n") is True
        assert instance.status == HarnessStatus.RUNNING

        await drain(instance)
        assert "hi bob" in instance.output
        assert instance.status == HarnessStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_send_input_after_exit(self):
        """Input to a finished process is refused."""
        spawner = HarnessSpawner()
        instance = await spawner.spawn(python_config("pass"))
        await spawner.wait_for(instance.id)

        assert await spawner.send_input(instance.id, "late\n") is False

    @pytest.mark.asyncio
    async def test_send_input_unknown(self):
        """Input to an unknown instance is refused."""
        assert await HarnessSpawner().send_input("hrn_unknown0", "x\n") is False


class TestInstanceRegistry:
    """Tests for instance bookkeeping."""

    @pytest.mark.asyncio
    async def test_remove_only_finished(self):
        """Finished instances can be forgotten; live ones cannot."""
        spawner = HarnessSpawner(kill_grace_seconds=1.0)
        live = await spawner.spawn(python_config("import time; time.sleep(30)"))
        done = await spawner.spawn(python_config("pass"))
        await spawner.wait_for(done.id)

        assert spawner.remove(live.id) is False
        assert spawner.remove(done.id) is True
        assert spawner.get_instance(done.id) is None

        await spawner.shutdown()
