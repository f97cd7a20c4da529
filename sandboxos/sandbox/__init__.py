"""Policy-driven execution sandbox.

Runs untrusted programs inside an intercepting context: every filesystem
and platform capability access is checked against the policy of the chosen
isolation level, and the run is cut off once the policy's wall-clock limit
has passed.
"""

from sandboxos.sandbox.policies import IsolationLevel, Policy, get_policy, list_policies, parse_level
from sandboxos.sandbox.registry import SandboxRegistry
from sandboxos.sandbox.runner import ExecutionResult, MonitoredRunner, RunState, run_program

__all__ = [
    # Policies
    "IsolationLevel",
    "Policy",
    "get_policy",
    "list_policies",
    "parse_level",
    # Runner
    "ExecutionResult",
    "MonitoredRunner",
    "RunState",
    "SandboxRegistry",
    "run_program",
]
