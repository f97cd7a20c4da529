"""Resource limits derived from a policy."""

from pydantic import BaseModel, ConfigDict, Field

from sandboxos.sandbox.policies import Policy

DEFAULT_MAX_FILE_OPS = 1000
DEFAULT_MAX_CAPABILITY_CALLS = 10000


class ResourceLimits(BaseModel):
    """Numeric limits used by the runtime for one run."""

    model_config = ConfigDict(frozen=True)

    time_limit: float | None = Field(default=None, description="Seconds (None = unlimited)")
    memory_limit: int | None = Field(default=None, description="Advisory only")
    max_file_ops: int = Field(default=DEFAULT_MAX_FILE_OPS, gt=0)
    max_capability_calls: int = Field(default=DEFAULT_MAX_CAPABILITY_CALLS, gt=0)


def derive_limits(policy: Policy) -> ResourceLimits:
    """Derive the runtime limits for ``policy``, applying fixed defaults."""
    return ResourceLimits(
        time_limit=policy.time_limit_seconds,
        memory_limit=policy.memory_limit,
        max_file_ops=policy.max_file_ops or DEFAULT_MAX_FILE_OPS,
        max_capability_calls=policy.max_capability_calls or DEFAULT_MAX_CAPABILITY_CALLS,
    )


__all__ = [
    "DEFAULT_MAX_CAPABILITY_CALLS",
    "DEFAULT_MAX_FILE_OPS",
    "ResourceLimits",
    "derive_limits",
]
