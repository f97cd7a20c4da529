"""Runtime guards for RestrictedPython-compiled programs.

The loader rewrites attribute access, item access, iteration, unpacking,
augmented assignment and ``print`` into calls to helper names (``_getattr_``,
``_getitem_``, ...).  This module supplies those helpers and the module
proxies handed out by the sandbox ``__import__``.

Usage:
    namespace.update(build_guards(platform.write_output))
"""

from __future__ import annotations

import operator
from collections.abc import Callable
from types import ModuleType
from typing import Any

from RestrictedPython import safe_builtins
from RestrictedPython.Eval import default_guarded_getitem, default_guarded_getiter
from RestrictedPython.Guards import (
    full_write_guard,
    guarded_iter_unpack_sequence,
    guarded_unpack_sequence,
    safer_getattr,
)
from RestrictedPython.transformer import INSPECT_ATTRIBUTES

_MISSING = object()

# Exceptions that would escape the event loop if a program raised them
_UNRAISABLE = frozenset({"KeyboardInterrupt", "SystemExit"})

_INPLACE_OPERATORS: dict[str, Callable[[Any, Any], Any]] = {
    "+=": operator.iadd,
    "-=": operator.isub,
    "*=": operator.imul,
    "/=": operator.itruediv,
    "//=": operator.ifloordiv,
    "%=": operator.imod,
    "**=": operator.ipow,
    "@=": operator.imatmul,
    "<<=": operator.ilshift,
    ">>=": operator.irshift,
    "&=": operator.iand,
    "^=": operator.ixor,
    "|=": operator.ior,
}


class SafeModule:
    """Read-only view of a module a program imported.

    Only public attributes that are not themselves modules are visible, so
    a program cannot walk from an allowed module (``json``) to one it may not
    import (``json.codecs.builtins``).
    """

    __slots__ = ("_module",)

    def __init__(self, module: ModuleType) -> None:
        object.__setattr__(self, "_module", module)

    def __getattr__(self, name: str) -> Any:
        module = object.__getattribute__(self, "_module")
        if name.startswith("_"):
            raise AttributeError(name)
        value = getattr(module, name)
        if isinstance(value, ModuleType):
            raise AttributeError(f"module '{module.__name__}' has no attribute '{name}'")
        return value

    def __setattr__(self, name: str, value: Any) -> None:
        raise AttributeError("imported modules are read-only in the sandbox")

    def __delattr__(self, name: str) -> None:
        raise AttributeError("imported modules are read-only in the sandbox")

    def __repr__(self) -> str:
        return f"<module {object.__getattribute__(self, '_module').__name__!r}>"


def guarded_getattr(obj: Any, name: str, default: Any = _MISSING) -> Any:
    """Attribute access for program code.

    Applies RestrictedPython's ``safer_getattr`` rules, refuses frame and
    code introspection attributes and never returns a module object.
    Missing attributes raise AttributeError unless a default is given.
    """
    if name in INSPECT_ATTRIBUTES:
        raise AttributeError(f'"{name}" is a restricted name')
    value = safer_getattr(obj, name, _MISSING)
    if value is _MISSING:
        if default is not _MISSING:
            return default
        # re-raise the object's own AttributeError
        return getattr(obj, name)
    if isinstance(value, ModuleType):
        raise AttributeError(f"access to module '{name}' is not allowed")
    return value


def guarded_inplacevar(op: str, target: Any, value: Any) -> Any:
    try:
        return _INPLACE_OPERATORS[op](target, value)
    except KeyError:
        raise ValueError(f"unsupported in-place operator {op!r}") from None


def guarded_apply(func: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
    return func(*args, **kwargs)


class PlatformPrinter:
    """Print collector that forwards program output to the host platform.

    RestrictedPython creates one per module or function scope that uses
    ``print``; calling the collector returns what it printed.
    """

    def __init__(self, write: Callable[[str], None], _getattr_: Any = None) -> None:
        self._write = write
        self._printed: list[str] = []

    def _call_print(self, *values: Any, sep: str = " ", end: str = "\n", **_: Any) -> None:
        text = sep.join(str(v) for v in values) + end
        self._printed.append(text)
        self._write(text)

    def __call__(self) -> str:
        return "".join(self._printed)


def restricted_builtins(extra: dict[str, Any]) -> dict[str, Any]:
    """RestrictedPython's safe builtins plus ``extra``."""
    result = {name: value for name, value in safe_builtins.items() if name not in _UNRAISABLE}
    result.update(extra)
    return result


def build_guards(write: Callable[[str], None]) -> dict[str, Any]:
    """Helper names the compiled program looks up in its globals."""

    def printer(_getattr_: Any = None) -> PlatformPrinter:
        return PlatformPrinter(write, _getattr_)

    return {
        "_getattr_": guarded_getattr,
        "_getitem_": default_guarded_getitem,
        "_getiter_": default_guarded_getiter,
        "_write_": full_write_guard,
        "_print_": printer,
        "_inplacevar_": guarded_inplacevar,
        "_apply_": guarded_apply,
        "_unpack_sequence_": guarded_unpack_sequence,
        "_iter_unpack_sequence_": guarded_iter_unpack_sequence,
        "__metaclass__": type,
    }


__all__ = [
    "PlatformPrinter",
    "SafeModule",
    "build_guards",
    "guarded_getattr",
    "restricted_builtins",
]
