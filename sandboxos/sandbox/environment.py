"""Per-run sandbox session state.

A SandboxEnvironment aggregates the policy, its predicates and limits and
the live counters for exactly one run.  It is created at run start, owned by
that run alone and discarded once the ExecutionResult has been produced.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from sandboxos.sandbox.access import (
    AccessPredicates,
    CapabilityFilter,
    build_access_predicates,
    build_capability_filter,
)
from sandboxos.sandbox.limits import ResourceLimits, derive_limits
from sandboxos.sandbox.policies import FileAccessMode, IsolationLevel, Policy, get_policy

if TYPE_CHECKING:
    from sandboxos.host import HostClock

logger = logging.getLogger(__name__)


@dataclass
class SandboxEnvironment:
    """Mutable session object for one sandboxed run.

    Only the counters, the violation log and the virtual filesystem map
    change after creation.
    """

    policy: Policy
    predicates: AccessPredicates
    capability_filter: CapabilityFilter
    limits: ResourceLimits
    start_timestamp: int
    virtual_fs: dict[str, str] | None = None
    file_operations: int = 0
    capability_calls: int = 0
    violations: list[str] = field(default_factory=list)
    id: str = field(default_factory=lambda: str(uuid.uuid4()))

    def record_violation(self, message: str) -> None:
        """Append a violation in detection order."""
        self.violations.append(message)
        logger.info("Sandbox %s: %s", self.id[:8], message)

    def count_file_operation(self) -> None:
        self.file_operations += 1

    def count_capability_call(self) -> None:
        self.capability_calls += 1

    @property
    def file_ops_exhausted(self) -> bool:
        return self.file_operations >= self.limits.max_file_ops

    @property
    def capability_calls_exhausted(self) -> bool:
        return self.capability_calls >= self.limits.max_capability_calls


def resolve_policy(level: IsolationLevel | int, custom_policy: Policy | None = None) -> Policy:
    """Return ``custom_policy`` if given, otherwise the catalog entry for ``level``.

    Raises:
        InvalidLevelError: If no custom policy is given and the level is unknown
    """
    if custom_policy is not None:
        return custom_policy
    return get_policy(level)


def create_environment(policy: Policy, *, clock: HostClock) -> SandboxEnvironment:
    """Create a fresh environment for one run, stamping the start time."""
    virtual_fs: dict[str, str] | None = None
    if policy.file_access == FileAccessMode.VIRTUAL_ONLY:
        virtual_fs = {}

    return SandboxEnvironment(
        policy=policy,
        predicates=build_access_predicates(policy, virtual_fs),
        capability_filter=build_capability_filter(policy),
        limits=derive_limits(policy),
        start_timestamp=clock.now_millis(),
        virtual_fs=virtual_fs,
    )


__all__ = ["SandboxEnvironment", "create_environment", "resolve_policy"]
