"""SandboxOS exception hierarchy.

Base exceptions for the sandbox core with correlation ID support.

Usage:
    from sandboxos.exceptions import InvalidLevelError, LoadError

    try:
        policy = get_policy(level)
    except InvalidLevelError as e:
        logger.error("Bad level %s (correlation_id=%s)", e.level, e.correlation_id)

Denied filesystem and capability accesses are *not* exceptions: they are
recorded as violation strings on the SandboxEnvironment and the untrusted
program receives an inert value instead.
"""

import uuid
from typing import Any


class SandboxOSError(Exception):
    """Base exception for all SandboxOS errors.

    Carries a correlation_id for tracing errors across layers.
    """

    def __init__(self, message: str, *, correlation_id: str | None = None):
        self.correlation_id = correlation_id or str(uuid.uuid4())
        super().__init__(message)


class InvalidLevelError(SandboxOSError):
    """Caller supplied an isolation level outside the enumerated set.

    Raised before any environment is created; this is caller misuse, not a
    security violation.
    """

    def __init__(self, level: Any, **kwargs):
        self.level = level
        super().__init__(f"Invalid sandbox level: {level!r}", **kwargs)


class ProgramNotFoundError(SandboxOSError):
    """The target program could not be located through the sandboxed filesystem."""

    def __init__(self, path: str, **kwargs):
        self.path = path
        super().__init__(f"Program not found: {path}", **kwargs)


class LoadError(SandboxOSError):
    """The target program could not be read or compiled."""

    def __init__(self, detail: str, *, name: str | None = None, **kwargs):
        self.detail = detail
        self.name = name
        super().__init__(f"Failed to load program: {detail}", **kwargs)


class SandboxTimeoutError(SandboxOSError):
    """The policy time limit elapsed before the program finished."""

    def __init__(self, time_limit: float, **kwargs):
        self.time_limit = time_limit
        super().__init__(f"Execution time limit of {time_limit:g}s exceeded", **kwargs)


class ProgramRuntimeError(SandboxOSError):
    """The untrusted program raised while it was being stepped."""

    def __init__(self, message: str, *, original_error: BaseException | None = None, **kwargs):
        self.original_error = original_error
        super().__init__(message, **kwargs)

    @classmethod
    def from_exception(cls, exc: BaseException) -> "ProgramRuntimeError":
        return cls(f"{type(exc).__name__}: {exc}", original_error=exc)


class ConfigurationError(SandboxOSError):
    """Errors from application configuration."""

    pass
