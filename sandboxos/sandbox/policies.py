"""Isolation levels and the security policy catalog.

Defines the security policies that control what sandboxed programs can
access.  Each policy specifies a filesystem access mode, the capability
names to deny, a wall-clock time limit and resource caps.

The catalog is read-only and shared by all runs.  A caller may pass its own
Policy to a single run without touching the catalog.
"""

from enum import IntEnum, StrEnum
from typing import Annotated, Literal

from pydantic import BaseModel, ConfigDict, Field

from sandboxos.exceptions import InvalidLevelError


class IsolationLevel(IntEnum):
    """Isolation levels, ordered by increasing restriction."""

    NONE = 0  # No restrictions (admin mode)
    LOW = 1  # Basic restrictions
    MEDIUM = 2  # Moderate restrictions
    HIGH = 3  # Strict restrictions
    MAXIMUM = 4  # Maximum isolation


class FileAccessMode(StrEnum):
    """How much of the filesystem a sandboxed program may touch."""

    FULL = "full"
    READONLY_SYSTEM = "readonly_system"
    SANDBOX_ONLY = "sandbox_only"
    VIRTUAL_ONLY = "virtual_fs"
    NONE = "none"


class CapabilityTier(StrEnum):
    """Coarse capability deny tiers."""

    MOST = "most"
    ALL_NON_ESSENTIAL = "all_non_essential"


# =============================================================================
# BLOCKED CAPABILITY VARIANTS
# =============================================================================


class ExplicitSet(BaseModel):
    """Deny every capability whose name contains one of ``patterns``."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["explicit"] = "explicit"
    patterns: frozenset[str] = Field(default_factory=frozenset)


class Tier(BaseModel):
    """Deny a predefined set of capability namespaces."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["tier"] = "tier"
    tier: CapabilityTier


class Unrestricted(BaseModel):
    """Deny nothing."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["empty"] = "empty"


BlockedCapabilities = Annotated[
    ExplicitSet | Tier | Unrestricted,
    Field(discriminator="kind"),
]


# =============================================================================
# POLICY
# =============================================================================


class Policy(BaseModel):
    """Complete sandbox security policy.

    Policies are immutable after creation.  Limits left as ``None`` are
    either unlimited (time, memory) or filled in with fixed defaults by
    :func:`sandboxos.sandbox.limits.derive_limits`.
    """

    model_config = ConfigDict(frozen=True)

    name: str = Field(..., min_length=1, description="Display label")
    description: str = Field(..., min_length=1, description="Human-readable summary")

    # Filesystem
    file_access: FileAccessMode = Field(..., description="Filesystem access mode")

    # Capabilities
    blocked_capabilities: BlockedCapabilities = Field(
        default_factory=Unrestricted,
        description="Capability names denied to the program",
    )
    network_allowed: bool = Field(default=False, description="Allow http.* capabilities")
    peripheral_allowed: bool = Field(default=False, description="Allow peripheral.* capabilities")

    # Resources
    time_limit_seconds: float | None = Field(
        default=None,
        gt=0,
        description="Wall-clock limit (None = unlimited)",
    )
    memory_limit: int | None = Field(
        default=None,
        gt=0,
        description="Advisory memory cap, reported but not enforced",
    )
    max_file_ops: int | None = Field(default=None, gt=0)
    max_capability_calls: int | None = Field(default=None, gt=0)


# =============================================================================
# PREDEFINED POLICIES
# =============================================================================


def _none_policy() -> Policy:
    """No restrictions - full system access."""
    return Policy(
        name="NONE",
        description="No restrictions - full system access",
        file_access=FileAccessMode.FULL,
        blocked_capabilities=Unrestricted(),
        time_limit_seconds=None,
        network_allowed=True,
        peripheral_allowed=True,
    )


def _low_policy() -> Policy:
    """Basic restrictions - prevent system damage."""
    return Policy(
        name="LOW",
        description="Basic restrictions - prevent system damage",
        file_access=FileAccessMode.READONLY_SYSTEM,
        blocked_capabilities=ExplicitSet(
            patterns=frozenset({"os.shutdown", "os.reboot", "fs.delete"}),
        ),
        time_limit_seconds=60,
        network_allowed=True,
        peripheral_allowed=True,
    )


def _medium_policy() -> Policy:
    """Moderate restrictions - limited file access."""
    return Policy(
        name="MEDIUM",
        description="Moderate restrictions - limited file access",
        file_access=FileAccessMode.SANDBOX_ONLY,
        blocked_capabilities=ExplicitSet(
            patterns=frozenset(
                {
                    "os.shutdown",
                    "os.reboot",
                    "fs.delete",
                    "fs.move",
                    "fs.copy",
                    "commands.exec",
                    "http.request",
                }
            ),
        ),
        time_limit_seconds=30,
        network_allowed=False,
        peripheral_allowed=False,
    )


def _high_policy() -> Policy:
    """Strict restrictions - isolated environment."""
    return Policy(
        name="HIGH",
        description="Strict restrictions - isolated environment",
        file_access=FileAccessMode.VIRTUAL_ONLY,
        blocked_capabilities=Tier(tier=CapabilityTier.MOST),
        time_limit_seconds=15,
        memory_limit=10000,
        network_allowed=False,
        peripheral_allowed=False,
    )


def _maximum_policy() -> Policy:
    """Maximum isolation - minimal API access."""
    return Policy(
        name="MAXIMUM",
        description="Maximum isolation - minimal API access",
        file_access=FileAccessMode.NONE,
        blocked_capabilities=Tier(tier=CapabilityTier.ALL_NON_ESSENTIAL),
        time_limit_seconds=10,
        memory_limit=5000,
        network_allowed=False,
        peripheral_allowed=False,
    )


# Policy registry
_POLICIES: dict[IsolationLevel, Policy] = {
    IsolationLevel.NONE: _none_policy(),
    IsolationLevel.LOW: _low_policy(),
    IsolationLevel.MEDIUM: _medium_policy(),
    IsolationLevel.HIGH: _high_policy(),
    IsolationLevel.MAXIMUM: _maximum_policy(),
}


def get_policy(level: IsolationLevel | int) -> Policy:
    """Get the catalog policy for an isolation level.

    Args:
        level: An IsolationLevel member or its integer value

    Returns:
        The shared, immutable Policy for that level

    Raises:
        InvalidLevelError: If the value is not an enumerated level
    """
    try:
        key = IsolationLevel(level)
    except (ValueError, TypeError):
        raise InvalidLevelError(level) from None

    return _POLICIES[key]


def parse_level(value: str | int) -> IsolationLevel:
    """Parse user input (``2``, ``"2"`` or ``"medium"``) into a level.

    Raises:
        InvalidLevelError: If the value names no level
    """
    if isinstance(value, str):
        text = value.strip()
        if text.isdigit():
            value = int(text)
        elif text.upper() in IsolationLevel.__members__:
            return IsolationLevel[text.upper()]
        else:
            raise InvalidLevelError(value)

    try:
        return IsolationLevel(value)
    except (ValueError, TypeError):
        raise InvalidLevelError(value) from None


def list_policies() -> list[tuple[IsolationLevel, Policy]]:
    """Return every catalog entry, least restrictive first."""
    return sorted(_POLICIES.items())


__all__ = [
    "BlockedCapabilities",
    "CapabilityTier",
    "ExplicitSet",
    "FileAccessMode",
    "IsolationLevel",
    "Policy",
    "Tier",
    "Unrestricted",
    "get_policy",
    "list_policies",
    "parse_level",
]
