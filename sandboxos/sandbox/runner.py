"""Monitored execution of untrusted programs.

Runs a compiled program inside an InterceptingContext as one cooperatively
scheduled unit of work, enforcing the policy's wall-clock limit between
steps.  Every run ends in an ExecutionResult; errors raised by the program,
by loading it or by the timeout never reach the caller.

The program runs in its own asyncio Task so that ``asyncio`` primitives used
inside it (``wait_for``, ``timeout``) behave normally.  The task drives the
program through a monitored proxy that checks the deadline at each step
boundary, and the runner polls the task at bounded intervals so a program
blocked on a host future is also cut off on time.

A program that never awaits runs in a single step and cannot be interrupted.
"""

import asyncio
import inspect
import logging
import uuid
from collections.abc import Coroutine, Generator
from enum import StrEnum
from pathlib import Path
from types import CodeType
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from sandboxos.exceptions import (
    LoadError,
    ProgramNotFoundError,
    ProgramRuntimeError,
    SandboxOSError,
    SandboxTimeoutError,
)
from sandboxos.host import Host
from sandboxos.sandbox.access import normalize_path
from sandboxos.sandbox.context import InterceptingContext
from sandboxos.sandbox.environment import SandboxEnvironment, create_environment, resolve_policy
from sandboxos.sandbox.policies import IsolationLevel, Policy, parse_level
from sandboxos.sandbox.registry import SandboxRegistry
from sandboxos.settings import get_settings

logger = logging.getLogger(__name__)

# Upper bound on how long the runner waits before re-checking the deadline
POLL_INTERVAL_SECONDS = 0.05

TIMEOUT_VIOLATION = "Execution time limit exceeded"


class RunState(StrEnum):
    """Lifecycle of a single run."""

    LOADING = "loading"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    TIMED_OUT = "timed_out"


class ExecutionResult(BaseModel):
    """Result of a sandboxed program run."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    success: bool = Field(..., description="Whether the program ran to completion")
    output: str = Field(default="", description="Failure message when not completed")
    violations: list[str] = Field(default_factory=list, description="Denied accesses in detection order")
    execution_time_seconds: float = Field(..., description="Wall-clock time from start to termination")
    file_operations: int = Field(default=0, description="Approved filesystem operations")
    capability_calls: int = Field(default=0, description="Approved capability invocations")
    state: RunState = Field(..., description="Terminal run state")
    policy_name: str = Field(..., description="Policy used for execution")
    timed_out: bool = Field(default=False, description="Whether execution timed out")


# =============================================================================
# UNIT OF WORK
# =============================================================================


async def _invoke(code: CodeType, namespace: dict[str, Any]) -> Any:
    """Execute ``code`` in ``namespace``, awaiting it if it has top-level awaits."""
    result = eval(code, namespace)  # noqa: S307  # nosec B307
    if inspect.iscoroutine(result):
        result = await result
    return result


class _MonitoredUnit:
    """Awaitable proxy that steps a program coroutine under a deadline.

    Each value the program yields is forwarded to the event loop unchanged.
    Before every resumption the deadline is checked; once it has passed, or
    once the runner has marked the unit ``abandoned``, the program is closed
    and SandboxTimeoutError is raised in its place.
    """

    def __init__(
        self,
        coro: Coroutine[Any, Any, Any],
        env: SandboxEnvironment,
        runner: "MonitoredRunner",
    ) -> None:
        self._coro = coro
        self._env = env
        self._runner = runner
        self.abandoned = False

    def close(self) -> None:
        """Close the program coroutine; it is never resumed afterwards."""
        try:
            self._coro.close()
        except RuntimeError as e:
            logger.warning("Sandbox %s: program ignored shutdown: %s", self._env.id[:8], e)

    def _check_deadline(self) -> None:
        if not self.abandoned and self._runner.deadline_passed(self._env):
            self.abandoned = True
        if self.abandoned:
            self.close()
            raise SandboxTimeoutError(self._env.limits.time_limit or 0)

    def __await__(self) -> Generator[Any, Any, Any]:
        send_value: Any = None
        error: BaseException | None = None
        while True:
            self._check_deadline()
            try:
                if error is None:
                    yielded = self._coro.send(send_value)
                else:
                    yielded = self._coro.throw(error)
            except StopIteration as stop:
                return stop.value
            send_value, error = None, None
            try:
                send_value = yield yielded
            except GeneratorExit:
                self.close()
                raise
            except BaseException as e:
                # Cancellation from the program's own timeouts is passed through
                error = e


async def _drive(unit: _MonitoredUnit) -> Any:
    return await unit


def _retrieve(task: asyncio.Task) -> None:
    """Mark the outcome of a finished task as seen."""
    if not task.cancelled():
        task.exception()


# =============================================================================
# RUNNER
# =============================================================================


class MonitoredRunner:
    """Loads and runs untrusted programs under an isolation level.

    Usage:
        runner = MonitoredRunner(host=Host.local("./world"))
        result = await runner.run("/rom/programs/shell", IsolationLevel.MEDIUM)

        # With a one-off policy
        result = await runner.run("/sandbox/job", 2, "arg", custom_policy=policy)

        # From source text
        result = await runner.run_source("print(1 + 1)", "high")
    """

    def __init__(self, host: Host | None = None, registry: SandboxRegistry | None = None) -> None:
        """Initialize the runner.

        Args:
            host: Host collaborators (default: local host rooted at settings.host_root)
            registry: Registry of active runs (default: a private registry)
        """
        self.host = host or Host.local(get_settings().host_root)
        self.registry = registry if registry is not None else SandboxRegistry()

    # -------------------------------------------------------------------------
    # Public API
    # -------------------------------------------------------------------------

    async def run(
        self,
        program_path: str,
        level: IsolationLevel | int | str,
        *program_args: str,
        custom_policy: Policy | None = None,
    ) -> ExecutionResult:
        """Run the program stored at ``program_path``.

        Args:
            program_path: Sandbox-absolute path of the program
            level: Isolation level (member, number or name)
            *program_args: Arguments exposed to the program as ``args``
            custom_policy: Policy to use instead of the catalog entry

        Returns:
            ExecutionResult describing the run

        Raises:
            InvalidLevelError: If the level is unknown; no run is started
        """
        policy = self._resolve(level, custom_policy)
        return await self._run(policy, program_args, path=program_path)

    async def run_source(
        self,
        source: str,
        level: IsolationLevel | int | str,
        *program_args: str,
        name: str = "<program>",
        custom_policy: Policy | None = None,
    ) -> ExecutionResult:
        """Run program text directly, without loading it from the filesystem.

        Raises:
            InvalidLevelError: If the level is unknown; no run is started
        """
        policy = self._resolve(level, custom_policy)
        return await self._run(policy, program_args, source=source, name=name)

    def elapsed_millis(self, env: SandboxEnvironment) -> int:
        return self.host.clock.now_millis() - env.start_timestamp

    def deadline_passed(self, env: SandboxEnvironment) -> bool:
        limit = env.limits.time_limit
        return limit is not None and self.elapsed_millis(env) > limit * 1000

    # -------------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------------

    @staticmethod
    def _resolve(level: IsolationLevel | int | str, custom_policy: Policy | None) -> Policy:
        return resolve_policy(parse_level(level), custom_policy)

    async def _run(
        self,
        policy: Policy,
        program_args: tuple[str, ...],
        *,
        path: str | None = None,
        source: str | None = None,
        name: str = "<program>",
    ) -> ExecutionResult:
        env = create_environment(policy, clock=self.host.clock)
        logger.debug("Sandbox %s: starting under policy %s", env.id[:8], policy.name)

        with self.registry.track(env):
            context = InterceptingContext(env, self.host, program_args)
            try:
                if path is not None:
                    code = self._load(path, context)
                else:
                    code = self.host.loader.compile(source or "", name)
            except SandboxOSError as e:
                logger.info("Sandbox %s: %s", env.id[:8], e)
                return self._finish(env, RunState.FAILED, str(e))

            return await self._execute(env, context, code)

    def _load(self, program_path: str, context: InterceptingContext) -> CodeType:
        """Locate, read and compile a program.

        Raises:
            ProgramNotFoundError: If the intercepted existence check fails
            LoadError: If the source cannot be read or compiled
        """
        try:
            found = context.fs.exists(program_path)
        except OSError as e:
            raise LoadError(f"{program_path}: {e}", name=program_path) from e
        if not found:
            raise ProgramNotFoundError(program_path)

        try:
            source = self.host.filesystem.read(normalize_path(program_path))
        except (OSError, UnicodeDecodeError) as e:
            raise LoadError(f"{program_path}: {e}", name=program_path) from e

        return self.host.loader.compile(source, program_path)

    async def _execute(
        self,
        env: SandboxEnvironment,
        context: InterceptingContext,
        code: CodeType,
    ) -> ExecutionResult:
        unit = _MonitoredUnit(_invoke(code, context.namespace), env, self)
        task = asyncio.create_task(_drive(unit), name=f"sandbox-{env.id[:8]}")
        logger.debug("Sandbox %s: running", env.id[:8])

        try:
            await self._supervise(env, task, unit)
        except asyncio.CancelledError:
            unit.abandoned = True
            task.cancel()
            # Outcome is retrieved even if the caller cancels again while waiting
            task.add_done_callback(_retrieve)
            await asyncio.shield(asyncio.wait({task}))
            raise
        finally:
            unit.close()

        exc = None if task.cancelled() else task.exception()

        if unit.abandoned:
            env.record_violation(TIMEOUT_VIOLATION)
            message = str(SandboxTimeoutError(env.limits.time_limit or 0))
            return self._finish(env, RunState.TIMED_OUT, message, timed_out=True)

        if task.cancelled():
            return self._finish(env, RunState.FAILED, "CancelledError: program was cancelled")

        if exc is not None:
            error = ProgramRuntimeError.from_exception(exc)
            logger.info("Sandbox %s: program failed: %s", env.id[:8], error)
            return self._finish(env, RunState.FAILED, str(error))

        return self._finish(env, RunState.COMPLETED, "")

    async def _supervise(
        self,
        env: SandboxEnvironment,
        task: asyncio.Task,
        unit: _MonitoredUnit,
    ) -> None:
        """Wait for ``task``, cancelling it once the deadline has passed."""
        limit = env.limits.time_limit
        while not task.done():
            if self.deadline_passed(env):
                unit.abandoned = True
                task.cancel()
                await asyncio.wait({task})
                return

            timeout = POLL_INTERVAL_SECONDS
            if limit is not None:
                remaining = limit - self.elapsed_millis(env) / 1000
                timeout = min(max(remaining, 0.0), POLL_INTERVAL_SECONDS)
            await asyncio.wait({task}, timeout=timeout)

    def _finish(
        self,
        env: SandboxEnvironment,
        state: RunState,
        output: str,
        *,
        timed_out: bool = False,
    ) -> ExecutionResult:
        result = ExecutionResult(
            id=env.id,
            success=state == RunState.COMPLETED,
            output=output,
            violations=list(env.violations),
            execution_time_seconds=self.elapsed_millis(env) / 1000,
            file_operations=env.file_operations,
            capability_calls=env.capability_calls,
            state=state,
            policy_name=env.policy.name,
            timed_out=timed_out,
        )
        logger.info(
            "Sandbox %s: %s in %.3fs (%d violations, %d file ops)",
            env.id[:8],
            state.value,
            result.execution_time_seconds,
            len(result.violations),
            result.file_operations,
        )
        return result


async def run_program(
    program_path: str,
    level: IsolationLevel | int | str,
    *program_args: str,
    root: Path | str | None = None,
    custom_policy: Policy | None = None,
) -> ExecutionResult:
    """Convenience function to run a program on the local host.

    Args:
        program_path: Sandbox-absolute path of the program
        level: Isolation level (member, number or name)
        *program_args: Arguments exposed to the program as ``args``
        root: Host directory backing the sandbox path space
        custom_policy: Policy to use instead of the catalog entry

    Returns:
        ExecutionResult
    """
    host = Host.local(root if root is not None else get_settings().host_root)
    runner = MonitoredRunner(host=host)
    return await runner.run(program_path, level, *program_args, custom_policy=custom_policy)


__all__ = [
    "ExecutionResult",
    "MonitoredRunner",
    "RunState",
    "run_program",
]
