"""Registry of active sandbox runs.

Replaces a process-wide counter with an explicit object.  A runner is handed
a registry and registers each environment for the duration of its run;
anything that needs to enumerate live runs receives the same registry.
"""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from sandboxos.sandbox.environment import SandboxEnvironment


class SandboxRegistry:
    """Tracks the environments of runs that have started and not finished."""

    def __init__(self) -> None:
        self._active: dict[str, SandboxEnvironment] = {}
        self._started = 0

    @property
    def started_count(self) -> int:
        """Number of runs ever registered."""
        return self._started

    def active(self) -> list[SandboxEnvironment]:
        """Return the environments of runs currently in progress."""
        return list(self._active.values())

    def __len__(self) -> int:
        return len(self._active)

    def __contains__(self, env_id: object) -> bool:
        return env_id in self._active

    @contextmanager
    def track(self, env: SandboxEnvironment) -> Iterator[SandboxEnvironment]:
        """Register ``env`` for the duration of the ``with`` block."""
        self._active[env.id] = env
        self._started += 1
        try:
            yield env
        finally:
            self._active.pop(env.id, None)


__all__ = ["SandboxRegistry"]
