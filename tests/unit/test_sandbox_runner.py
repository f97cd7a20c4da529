"""Unit tests for sandboxos/sandbox/runner.py.

Programs run against the recording platform and a fake clock, so timeouts
are driven by clock reads rather than real sleeping unless stated.
"""

import asyncio
import gc
import time
import uuid
from unittest.mock import patch

import pytest
from pydantic import ValidationError

from sandboxos.exceptions import InvalidLevelError
from sandboxos.host import Host, LocalFilesystem, MonotonicClock
from sandboxos.sandbox.policies import FileAccessMode, IsolationLevel, Policy, get_policy
from sandboxos.sandbox.runner import ExecutionResult, MonitoredRunner, RunState, run_program


def _limited(seconds: float) -> Policy:
    return Policy(
        name="limited",
        description="short time limit",
        file_access=FileAccessMode.FULL,
        time_limit_seconds=seconds,
        network_allowed=True,
        peripheral_allowed=True,
    )


class TestExecutionResult:
    def test_defaults(self):
        r = ExecutionResult(
            success=True,
            execution_time_seconds=0.5,
            state=RunState.COMPLETED,
            policy_name="MEDIUM",
        )
        assert r.output == ""
        assert r.violations == []
        assert r.file_operations == 0
        assert r.capability_calls == 0
        assert r.timed_out is False
        uuid.UUID(r.id)

    def test_frozen(self):
        r = ExecutionResult(
            success=False, execution_time_seconds=0, state=RunState.FAILED, policy_name="x"
        )
        with pytest.raises(ValidationError):
            r.success = True


class TestRunnerInit:
    def test_default_host_uses_settings_root(self, test_settings):
        with patch("sandboxos.sandbox.runner.get_settings", return_value=test_settings):
            runner = MonitoredRunner()
        assert isinstance(runner.host.filesystem, LocalFilesystem)
        assert runner.host.filesystem.root == test_settings.host_root.resolve()

    def test_registry_defaults_to_private(self, host):
        assert len(MonitoredRunner(host=host).registry) == 0


class TestRunSource:
    async def test_completed(self, runner):
        result = await runner.run_source("x = 1 + 1", IsolationLevel.MEDIUM)
        assert result.success is True
        assert result.state == RunState.COMPLETED
        assert result.output == ""
        assert result.policy_name == "MEDIUM"
        assert result.violations == []

    async def test_print_and_args(self, runner, platform):
        result = await runner.run_source("print(args)", "none", "a", "b")
        assert result.success
        assert platform.output == ["('a', 'b')\n"]

    async def test_top_level_await(self, runner, platform):
        source = "await sleep(0)\nprint('after')\n"
        result = await runner.run_source(source, 0)
        assert result.success
        assert platform.output == ["after\n"]

    async def test_functions_see_namespace(self, runner, platform):
        source = (
            "async def main():\n"
            "    await sleep(0)\n"
            "    print(len(args))\n"
            "await main()\n"
        )
        result = await runner.run_source(source, "LOW", "x")
        assert result.success
        assert platform.output == ["1\n"]

    async def test_program_error_is_captured(self, runner):
        result = await runner.run_source("1 / 0", IsolationLevel.LOW)
        assert result.success is False
        assert result.state == RunState.FAILED
        assert result.output == "ZeroDivisionError: division by zero"

    async def test_program_error_after_await(self, runner):
        result = await runner.run_source("await sleep(0)\nraise ValueError('late')", 0)
        assert result.output == "ValueError: late"

    async def test_load_error(self, runner):
        result = await runner.run_source("def (:", IsolationLevel.LOW, name="broken")
        assert result.state == RunState.FAILED
        assert result.output.startswith("Failed to load program: broken:1:")

    async def test_disallowed_import_fails_to_load(self, runner):
        result = await runner.run_source("import os", IsolationLevel.NONE)
        assert result.state == RunState.FAILED
        assert "not allowed" in result.output

    async def test_invalid_level_raises_before_run(self, runner, registry):
        with pytest.raises(InvalidLevelError):
            await runner.run_source("x = 1", 9)
        assert registry.started_count == 0

    async def test_custom_policy(self, runner):
        custom = Policy(name="locked", description="no files", file_access=FileAccessMode.NONE)
        result = await runner.run_source("fs.read('/rom/programs/shell')", 0, custom_policy=custom)
        assert result.policy_name == "locked"
        assert result.violations == ["Filesystem read violation: /rom/programs/shell"]
        assert get_policy(IsolationLevel.NONE).file_access == FileAccessMode.FULL

    async def test_counts_capability_calls(self, runner):
        result = await runner.run_source("os.time()\nos.time()\n", IsolationLevel.LOW)
        assert result.capability_calls == 2

    async def test_common_constructs_run_under_guards(self, runner, platform):
        source = (
            "import math\n"
            "from json import dumps\n"
            "total = 0\n"
            "for value in [1, 2, 3]:\n"
            "    total += value\n"
            "first, second = 'ab'\n"
            "table = {}\n"
            "table['k'] = math.sqrt(16)\n"
            "pairs = [(k, v) for k, v in table.items()]\n"
            "class Box:\n"
            "    def size(self):\n"
            "        return len(pairs)\n"
            "print(total, first, second, dumps(table), Box().size())\n"
        )
        result = await runner.run_source(source, IsolationLevel.MAXIMUM)
        assert result.success, result.output
        assert platform.output == ['6 a b {"k": 4.0} 1\n']


class TestRunPath:
    async def test_runs_program_from_filesystem(self, runner, platform):
        result = await runner.run("/rom/programs/shell", IsolationLevel.MEDIUM)
        assert result.success
        assert platform.output == ["shell\n"]
        # the existence check is itself a file operation
        assert result.file_operations == 1

    async def test_missing_program(self, runner):
        result = await runner.run("/sandbox/missing", IsolationLevel.MEDIUM)
        assert result.success is False
        assert result.state == RunState.FAILED
        assert result.output == "Program not found: /sandbox/missing"

    async def test_existence_check_obeys_policy(self, runner):
        result = await runner.run("/rom/programs/shell", IsolationLevel.MAXIMUM)
        assert result.output == "Program not found: /rom/programs/shell"
        assert result.violations == ["Filesystem list violation: /rom/programs/shell"]
        assert result.file_operations == 0

    async def test_program_arguments(self, runner, platform, write_program):
        write_program("/sandbox/echo", "print(' '.join(args))")
        result = await runner.run("/sandbox/echo", "medium", "hello", "world")
        assert result.success
        assert platform.output == ["hello world\n"]

    async def test_unreadable_source(self, runner, host_root):
        (host_root / "sandbox/binary").write_bytes(b"\xff\xfe\x00")
        result = await runner.run("/sandbox/binary", IsolationLevel.MEDIUM)
        assert result.state == RunState.FAILED
        assert result.output.startswith("Failed to load program: /sandbox/binary")

    async def test_registry_tracks_active_run(self, runner, platform, registry):
        seen: list[int] = []
        platform.register("hooks.active", lambda: seen.append(len(registry)))
        result = await runner.run_source("hooks.active()", IsolationLevel.NONE)
        assert result.success
        assert seen == [1]
        assert len(registry) == 0
        assert registry.started_count == 1


class TestTiming:
    async def test_execution_time_from_host_clock(self, runner, platform, clock):
        platform.register("hooks.wait", lambda: clock.advance(1500))
        result = await runner.run_source("hooks.wait()", IsolationLevel.NONE)
        assert result.execution_time_seconds == 1.5

    async def test_timeout_between_steps(self, host, clock):
        clock.step = 100
        runner = MonitoredRunner(host=host)
        result = await runner.run_source(
            "while True:\n    await sleep(0)\n", 0, custom_policy=_limited(1)
        )
        assert result.state == RunState.TIMED_OUT
        assert result.timed_out is True
        assert result.success is False
        assert result.output == "Execution time limit of 1s exceeded"
        assert result.violations.count("Execution time limit exceeded") == 1
        assert result.execution_time_seconds > 1

    async def test_unlimited_time_never_times_out(self, host, clock, platform):
        clock.step = 10_000
        runner = MonitoredRunner(host=host)
        source = "for i in range(20):\n    await sleep(0)\nprint('done')\n"
        result = await runner.run_source(source, IsolationLevel.NONE)
        assert result.success
        assert platform.output == ["done\n"]

    async def test_timeout_while_blocked_on_host_future(self, host_root, platform):
        host = Host(filesystem=LocalFilesystem(host_root), clock=MonotonicClock(), platform=platform)
        runner = MonitoredRunner(host=host)
        started = time.monotonic()
        result = await runner.run_source(
            "await sleep(30)\nprint('never')\n", 0, custom_policy=_limited(0.2)
        )
        assert result.state == RunState.TIMED_OUT
        assert time.monotonic() - started < 5
        assert platform.output == []

    async def test_program_without_awaits_runs_to_completion(self, runner, clock, platform):
        platform.register("hooks.tick", lambda: clock.advance(5000))
        result = await runner.run_source(
            "for i in range(3):\n    hooks.tick()\n    print(i)\n", 0, custom_policy=_limited(1)
        )
        assert result.state == RunState.COMPLETED
        assert platform.output == ["0\n", "1\n", "2\n"]


class TestCallerCancellation:
    async def test_cancelling_run_stops_program_cleanly(self, runner, platform):
        ticks: list[int] = []
        platform.register("hooks.tick", lambda: ticks.append(1))
        loop = asyncio.get_running_loop()
        loop_errors: list[dict] = []
        loop.set_exception_handler(lambda _loop, context: loop_errors.append(context))
        try:
            outer = asyncio.create_task(
                runner.run_source(
                    "while True:\n    hooks.tick()\n    await sleep(0)\n", IsolationLevel.NONE
                )
            )
            while not ticks:
                await asyncio.sleep(0)
            outer.cancel()
            with pytest.raises(asyncio.CancelledError):
                await outer
            stopped_at = len(ticks)
            await asyncio.sleep(0.01)
            del outer
            gc.collect()
        finally:
            loop.set_exception_handler(None)

        assert len(ticks) == stopped_at
        assert len(runner.registry) == 0
        assert loop_errors == []


class TestRunProgram:
    async def test_convenience_function(self, host_root, capsys):
        result = await run_program("/rom/programs/shell", "LOW", root=host_root)
        assert result.success
        assert capsys.readouterr().out == "shell\n"
