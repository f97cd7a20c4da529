"""Intercepting execution context.

Builds the namespace a sandboxed program runs in.  The program sees what
looks like direct access to the host filesystem (``fs``) and to platform
capability namespaces (``os``, ``http``, ``term``, ...), but every entry is a
guarded closure built once, here, from an explicit table.  Each closure
consults the SandboxEnvironment before forwarding to the real host
operation.

A denied access never raises into the program: it is appended to the
environment's violation log and the program gets ``None`` (filesystem) or an
inert stand-in (capabilities) back.

Programs are compiled by RestrictedPython, so the namespace also carries the
guard helpers from ``guards.py``.  Imports hand out SafeModule views rather
than module objects.

Filesystem operations outside the list/read/write categories (``move``,
``copy``, ``get_size``) are forwarded without a check.  This is a known gap.
"""

from __future__ import annotations

import asyncio
import builtins
import logging
from collections.abc import Callable
from typing import TYPE_CHECKING, Any

from sandboxos.host import SAFE_MODULES
from sandboxos.sandbox.access import PathPredicate, normalize_path
from sandboxos.sandbox.guards import SafeModule, build_guards, restricted_builtins
from sandboxos.sandbox.virtual_fs import VirtualFilesystem

if TYPE_CHECKING:
    from sandboxos.host import Host, HostFilesystem
    from sandboxos.sandbox.environment import SandboxEnvironment

logger = logging.getLogger(__name__)

# Builtins added to RestrictedPython's safe set
SAFE_BUILTINS: frozenset[str] = frozenset(
    {
        "abs", "all", "any", "ascii", "bin", "bool", "bytes", "callable", "chr",
        "dict", "divmod", "enumerate", "filter", "float", "format", "frozenset",
        "hash", "hex", "int", "isinstance", "issubclass", "iter", "len", "list",
        "map", "max", "min", "next", "oct", "ord", "pow", "range", "repr",
        "reversed", "round", "set", "slice", "sorted", "str", "sum", "tuple", "zip",
        # Exceptions
        "ArithmeticError", "AssertionError", "AttributeError", "Exception",
        "FileNotFoundError", "ImportError", "IndexError", "KeyError", "LookupError",
        "NameError", "NotImplementedError", "RuntimeError", "StopIteration",
        "TypeError", "ValueError", "ZeroDivisionError",
    }
)  # fmt: skip

# Filesystem operation categories
LIST_OPERATIONS: tuple[str, ...] = ("list", "exists", "is_dir")
READ_OPERATIONS: tuple[str, ...] = ("read",)
WRITE_OPERATIONS: tuple[str, ...] = ("write", "delete", "make_dir")
PASSTHROUGH_OPERATIONS: tuple[str, ...] = ("move", "copy", "get_size")

_WRITE_MODE_FLAGS = "wax+"


class _Inert:
    """Stand-in for a denied capability: callable, awaitable and falsy."""

    __slots__ = ("name",)

    def __init__(self, name: str) -> None:
        self.name = name

    def __call__(self, *args: Any, **kwargs: Any) -> _Inert:
        return self

    def __await__(self):
        return None
        yield  # pragma: no cover

    def __bool__(self) -> bool:
        return False

    def __repr__(self) -> str:
        return f"<blocked {self.name}>"


class FilesystemProxy:
    """The ``fs`` object seen by the program."""

    __slots__ = ("_operations",)

    def __init__(self, operations: dict[str, Callable[..., Any]]) -> None:
        self._operations = operations

    def __getattr__(self, name: str) -> Callable[..., Any]:
        try:
            return self._operations[name]
        except KeyError:
            raise AttributeError(f"fs has no operation '{name}'") from None

    def __dir__(self) -> list[str]:
        return sorted(self._operations)

    def __repr__(self) -> str:
        return "<fs>"


class CapabilityNamespace:
    """A platform namespace (``os``, ``http``, ...) seen by the program.

    Member lookup checks the fully qualified name against the capability
    filter; a blocked name resolves to an inert stand-in and is logged.
    """

    __slots__ = ("_name", "_members", "_resolve")

    def __init__(
        self,
        name: str,
        members: dict[str, Callable[..., Any]],
        resolve: Callable[[str, dict[str, Callable[..., Any]]], Any],
    ) -> None:
        self._name = name
        self._members = members
        self._resolve = resolve

    def __getattr__(self, member: str) -> Any:
        return self._resolve(f"{self._name}.{member}", self._members)

    def __dir__(self) -> list[str]:
        return sorted(self._members)

    def __repr__(self) -> str:
        return f"<capabilities {self._name}>"


class InterceptingContext:
    """Restricted namespace for one run.

    Usage:
        context = InterceptingContext(env, host, args=("a", "b"))
        exec_globals = context.namespace
    """

    def __init__(self, env: SandboxEnvironment, host: Host, args: tuple[str, ...] = ()) -> None:
        self.env = env
        self.host = host
        self.backend: HostFilesystem = (
            VirtualFilesystem(env.virtual_fs) if env.virtual_fs is not None else host.filesystem
        )
        self.fs = FilesystemProxy(self._build_filesystem())
        self.namespace = self._build_namespace(tuple(str(a) for a in args))
        logger.debug(
            "Sandbox %s: context ready (%s backend)", env.id[:8], type(self.backend).__name__
        )

    # -------------------------------------------------------------------------
    # Filesystem
    # -------------------------------------------------------------------------

    def _approve(self, category: str, predicate: PathPredicate, path: Any) -> str | None:
        """Return the checked path if the operation may proceed, else None."""
        checked = normalize_path(path)
        if not predicate(checked):
            self.env.record_violation(f"Filesystem {category} violation: {checked}")
            return None
        if self.env.file_ops_exhausted:
            self.env.record_violation(f"File operation limit exceeded: {checked}")
            return None
        self.env.count_file_operation()
        return checked

    def _guard(self, category: str, predicate: PathPredicate, operation: Callable[..., Any]):
        def guarded(path: str, *args: Any, **kwargs: Any) -> Any:
            checked = self._approve(category, predicate, path)
            if checked is None:
                return None
            return operation(checked, *args, **kwargs)

        guarded.__name__ = operation.__name__
        return guarded

    def _build_filesystem(self) -> dict[str, Callable[..., Any]]:
        predicates = self.env.predicates
        backend = self.backend
        operations: dict[str, Callable[..., Any]] = {}

        for name in LIST_OPERATIONS:
            operations[name] = self._guard("list", predicates.can_list, getattr(backend, name))
        for name in READ_OPERATIONS:
            operations[name] = self._guard("read", predicates.can_read, getattr(backend, name))
        for name in WRITE_OPERATIONS:
            operations[name] = self._guard("write", predicates.can_write, getattr(backend, name))
        for name in PASSTHROUGH_OPERATIONS:
            operations[name] = getattr(backend, name)

        def open_(path: str, mode: str = "r") -> Any:
            if any(flag in mode for flag in _WRITE_MODE_FLAGS):
                checked = self._approve("write", predicates.can_write, path)
            else:
                checked = self._approve("read", predicates.can_read, path)
            if checked is None:
                return None
            return backend.open(checked, mode)

        operations["open"] = open_
        return operations

    # -------------------------------------------------------------------------
    # Capabilities
    # -------------------------------------------------------------------------

    def _guard_capability(self, name: str, func: Callable[..., Any]) -> Callable[..., Any]:
        env = self.env

        def guarded(*args: Any, **kwargs: Any) -> Any:
            if env.capability_calls_exhausted:
                env.record_violation(f"API call limit exceeded: {name}")
                return _Inert(name)
            env.count_capability_call()
            return func(*args, **kwargs)

        guarded.__name__ = name
        return guarded

    def _resolve_capability(self, name: str, members: dict[str, Callable[..., Any]]) -> Any:
        if not self.env.capability_filter.is_allowed(name):
            self.env.record_violation(f"Blocked API access: {name}")
            return _Inert(name)
        try:
            return members[name.partition(".")[2]]
        except KeyError:
            raise AttributeError(f"'{name}' is not available on this host") from None

    def _build_capabilities(self) -> dict[str, CapabilityNamespace]:
        grouped: dict[str, dict[str, Callable[..., Any]]] = {}
        for name, func in self.host.platform.capabilities().items():
            namespace, _, member = name.partition(".")
            grouped.setdefault(namespace, {})[member] = self._guard_capability(name, func)

        # Namespaces the policy mentions stay addressable even when the host lacks them
        for namespace in ("os", "http", "io", "term", "commands", "peripheral", "window"):
            grouped.setdefault(namespace, {})

        return {
            namespace: CapabilityNamespace(namespace, members, self._resolve_capability)
            for namespace, members in grouped.items()
        }

    # -------------------------------------------------------------------------
    # Namespace
    # -------------------------------------------------------------------------

    def _build_builtins(self) -> dict[str, Any]:
        def import_(name: str, globals=None, locals=None, fromlist=(), level=0):  # noqa: A002
            if level or name not in SAFE_MODULES:
                raise ImportError(f"import of '{name}' is not allowed in the sandbox")
            return SafeModule(builtins.__import__(name, None, None, fromlist, 0))

        extra = {name: getattr(builtins, name) for name in SAFE_BUILTINS}
        extra["__import__"] = import_
        return restricted_builtins(extra)

    def _build_namespace(self, args: tuple[str, ...]) -> dict[str, Any]:
        def sleep(seconds: float = 0) -> Any:
            return asyncio.sleep(max(0.0, float(seconds)))

        namespace: dict[str, Any] = {
            "__builtins__": self._build_builtins(),
            "__name__": "__sandbox__",
            "args": args,
            "sleep": sleep,
        }
        namespace.update(build_guards(self.host.platform.write_output))
        namespace.update(self._build_capabilities())
        namespace["fs"] = self.fs
        return namespace


def build_namespace(env: SandboxEnvironment, host: Host, args: tuple[str, ...] = ()) -> dict[str, Any]:
    """Return the restricted globals for one run of a program."""
    return InterceptingContext(env, host, args).namespace


__all__ = [
    "CapabilityNamespace",
    "FilesystemProxy",
    "InterceptingContext",
    "SAFE_BUILTINS",
    "build_namespace",
]
