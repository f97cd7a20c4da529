"""Access predicates derived from a policy.

Turns a Policy into three path predicates (``can_read``, ``can_write``,
``can_list``) and a capability filter.  Predicates are pure functions of the
policy and, for the virtual filesystem mode, the live virtual map handed in
by the caller, so two sandboxes with different policies never interfere.
"""

from __future__ import annotations

import posixpath
from collections.abc import Callable, Mapping
from dataclasses import dataclass

from sandboxos.sandbox.policies import (
    CapabilityTier,
    ExplicitSet,
    FileAccessMode,
    Policy,
    Tier,
    Unrestricted,
)

PathPredicate = Callable[[str], bool]

# Sandbox-absolute path prefixes
SYSTEM_PREFIX = "/rom/"
SANDBOX_PREFIX = "/sandbox/"
TMP_PREFIX = "/tmp/"  # nosec B108
VIRTUAL_PREFIX = "/virtual/"
VIRTUAL_ROOT = "/virtual"

# Read/list allow-list used by the read-only-system mode
ALLOWED_FS_PREFIXES: tuple[str, ...] = (SYSTEM_PREFIX, SANDBOX_PREFIX, TMP_PREFIX)

# Capability namespaces denied by the coarse tiers
MOST_BLOCKED: tuple[str, ...] = ("os.", "fs.", "http.", "commands.", "peripheral.")
NON_ESSENTIAL_BLOCKED: tuple[str, ...] = MOST_BLOCKED + ("io.", "term.", "window.")

NETWORK_NAMESPACES: tuple[str, ...] = ("http.",)
PERIPHERAL_NAMESPACES: tuple[str, ...] = ("peripheral.",)


def normalize_path(path: str) -> str:
    """Canonicalise a sandbox path before it is checked.

    Relative paths are rooted at ``/``, ``.`` and ``..`` segments are
    collapsed and a trailing slash is kept, so ``/sandbox/../rom/x``
    is checked as ``/rom/x``.
    """
    text = str(path)
    trailing = text.endswith("/") and text.strip("/") != ""
    normalized = posixpath.normpath("/" + text.lstrip("/"))
    if trailing:
        normalized += "/"
    return normalized


def is_allowed_path(path: str) -> bool:
    """Return True if ``path`` is under one of the allow-listed prefixes."""
    return path.startswith(ALLOWED_FS_PREFIXES)


@dataclass(frozen=True)
class AccessPredicates:
    """The filesystem decision functions for one policy."""

    can_read: PathPredicate
    can_write: PathPredicate
    can_list: PathPredicate


def _always(_path: str) -> bool:
    return True


def _never(_path: str) -> bool:
    return False


def build_access_predicates(
    policy: Policy,
    virtual_fs: Mapping[str, str] | None = None,
) -> AccessPredicates:
    """Build the path predicates for ``policy``.

    Args:
        policy: The policy in effect
        virtual_fs: Live virtual filesystem map; required for VIRTUAL_ONLY

    Returns:
        AccessPredicates for the policy's file access mode
    """
    mode = policy.file_access

    if mode == FileAccessMode.FULL:
        return AccessPredicates(can_read=_always, can_write=_always, can_list=_always)

    if mode == FileAccessMode.READONLY_SYSTEM:
        return AccessPredicates(
            can_read=is_allowed_path,
            can_write=lambda path: path.startswith((SANDBOX_PREFIX, TMP_PREFIX)),
            can_list=is_allowed_path,
        )

    if mode == FileAccessMode.SANDBOX_ONLY:

        def readable(path: str) -> bool:
            return path.startswith((SANDBOX_PREFIX, SYSTEM_PREFIX))

        return AccessPredicates(
            can_read=readable,
            can_write=lambda path: path.startswith(SANDBOX_PREFIX),
            can_list=readable,
        )

    if mode == FileAccessMode.VIRTUAL_ONLY:
        if virtual_fs is None:
            raise ValueError("VIRTUAL_ONLY access requires a virtual filesystem map")
        return AccessPredicates(
            can_read=lambda path: path in virtual_fs,
            can_write=lambda path: path.startswith(VIRTUAL_PREFIX),
            can_list=lambda path: path == VIRTUAL_ROOT,
        )

    if mode == FileAccessMode.NONE:
        return AccessPredicates(can_read=_never, can_write=_never, can_list=_never)

    raise ValueError(f"Unhandled file access mode: {mode!r}")


# =============================================================================
# CAPABILITY FILTER
# =============================================================================


@dataclass(frozen=True)
class CapabilityFilter:
    """Default-allow filter over fully qualified capability names.

    A name is denied when any deny pattern is a case-sensitive substring of
    it.  Substring matching over-blocks: ``photos.list`` contains ``os.``.
    """

    patterns: tuple[str, ...]

    def blocked_by(self, name: str) -> str | None:
        """Return the first deny pattern matching ``name``, if any."""
        for pattern in self.patterns:
            if pattern in name:
                return pattern
        return None

    def is_allowed(self, name: str) -> bool:
        return self.blocked_by(name) is None


def blocked_patterns(policy: Policy) -> tuple[str, ...]:
    """Expand a policy's blocked capabilities into deny patterns."""
    blocked = policy.blocked_capabilities
    patterns: list[str] = []

    if isinstance(blocked, ExplicitSet):
        patterns.extend(sorted(blocked.patterns))
    elif isinstance(blocked, Tier):
        if blocked.tier == CapabilityTier.MOST:
            patterns.extend(MOST_BLOCKED)
        else:
            patterns.extend(NON_ESSENTIAL_BLOCKED)
    elif not isinstance(blocked, Unrestricted):
        raise ValueError(f"Unhandled blocked capabilities: {blocked!r}")

    if not policy.network_allowed:
        patterns.extend(NETWORK_NAMESPACES)
    if not policy.peripheral_allowed:
        patterns.extend(PERIPHERAL_NAMESPACES)

    # Keep first occurrence order, drop duplicates
    return tuple(dict.fromkeys(patterns))


def build_capability_filter(policy: Policy) -> CapabilityFilter:
    """Build the capability filter for ``policy``."""
    return CapabilityFilter(patterns=blocked_patterns(policy))


__all__ = [
    "ALLOWED_FS_PREFIXES",
    "AccessPredicates",
    "CapabilityFilter",
    "MOST_BLOCKED",
    "NON_ESSENTIAL_BLOCKED",
    "SANDBOX_PREFIX",
    "SYSTEM_PREFIX",
    "TMP_PREFIX",
    "VIRTUAL_PREFIX",
    "VIRTUAL_ROOT",
    "blocked_patterns",
    "build_access_predicates",
    "build_capability_filter",
    "is_allowed_path",
    "normalize_path",
]
