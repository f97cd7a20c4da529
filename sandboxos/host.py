"""Host collaborators used by the sandbox core.

The core never reimplements the host: it calls a clock, a filesystem, a
program loader and a table of privileged platform operations through the
small interfaces defined here.  ``Host.local()`` bundles the default
implementations that back the CLI; tests substitute their own.

Usage:
    host = Host.local(Path("./world"))
    runner = MonitoredRunner(host=host)
"""

from __future__ import annotations

import ast
import asyncio
import logging
import posixpath
import shutil
import sys
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from pathlib import Path
from types import CodeType
from typing import IO, Any, Protocol

import httpx
from RestrictedPython.transformer import RestrictingNodeTransformer

from sandboxos.exceptions import ConfigurationError, LoadError

logger = logging.getLogger(__name__)

# Standard library modules a sandboxed program may import, by exact name.
# Modules whose helpers fetch attributes by name (operator, string) stay out.
SAFE_MODULES: frozenset[str] = frozenset(
    {
        "collections",
        "datetime",
        "functools",
        "itertools",
        "json",
        "math",
        "random",
        "re",
        "statistics",
        "textwrap",
    }
)


# =============================================================================
# INTERFACES
# =============================================================================


class HostClock(Protocol):
    """Wall-clock source for elapsed-time measurement."""

    def now_millis(self) -> int: ...


class HostFilesystem(Protocol):
    """Raw filesystem operations over sandbox-absolute paths."""

    def exists(self, path: str) -> bool: ...

    def list(self, path: str) -> list[str]: ...

    def is_dir(self, path: str) -> bool: ...

    def open(self, path: str, mode: str = "r") -> IO[Any]: ...

    def read(self, path: str) -> str: ...

    def write(self, path: str, data: str, append: bool = False) -> None: ...

    def delete(self, path: str) -> None: ...

    def make_dir(self, path: str) -> None: ...

    def move(self, src: str, dst: str) -> None: ...

    def copy(self, src: str, dst: str) -> None: ...

    def get_size(self, path: str) -> int: ...


class HostLoader(Protocol):
    """Turns program source text into a runnable code object."""

    def compile(self, source: str, name: str) -> CodeType: ...


# =============================================================================
# CLOCK
# =============================================================================


class MonotonicClock:
    """Millisecond clock backed by ``time.monotonic_ns``."""

    def now_millis(self) -> int:
        return time.monotonic_ns() // 1_000_000


# =============================================================================
# FILESYSTEM
# =============================================================================


class LocalFilesystem:
    """Maps the sandbox path space (``/rom``, ``/sandbox``, ...) onto a host directory.

    Every path is resolved below ``root``; a path that escapes it (for
    example through a symlink) raises PermissionError.  A root that is not
    an existing directory raises ConfigurationError.
    """

    def __init__(self, root: Path | str) -> None:
        self.root = Path(root).resolve()
        if not self.root.is_dir():
            raise ConfigurationError(f"Host root is not a directory: {self.root}")

    def __repr__(self) -> str:
        return f"LocalFilesystem(root={str(self.root)!r})"

    def _resolve(self, path: str) -> Path:
        relative = posixpath.normpath("/" + str(path).lstrip("/")).lstrip("/")
        target = (self.root / relative).resolve()
        if target != self.root and self.root not in target.parents:
            raise PermissionError(f"Path escapes host root: {path}")
        return target

    def exists(self, path: str) -> bool:
        return self._resolve(path).exists()

    def list(self, path: str) -> list[str]:
        return sorted(child.name for child in self._resolve(path).iterdir())

    def is_dir(self, path: str) -> bool:
        return self._resolve(path).is_dir()

    def open(self, path: str, mode: str = "r") -> IO[Any]:
        target = self._resolve(path)
        if any(flag in mode for flag in "wax"):
            target.parent.mkdir(parents=True, exist_ok=True)
        if "b" in mode:
            return target.open(mode)
        return target.open(mode, encoding="utf-8")

    def read(self, path: str) -> str:
        return self._resolve(path).read_text(encoding="utf-8")

    def write(self, path: str, data: str, append: bool = False) -> None:
        target = self._resolve(path)
        target.parent.mkdir(parents=True, exist_ok=True)
        with target.open("a" if append else "w", encoding="utf-8") as f:
            f.write(str(data))

    def delete(self, path: str) -> None:
        target = self._resolve(path)
        if target.is_dir():
            shutil.rmtree(target)
        else:
            target.unlink(missing_ok=True)

    def make_dir(self, path: str) -> None:
        self._resolve(path).mkdir(parents=True, exist_ok=True)

    def move(self, src: str, dst: str) -> None:
        target = self._resolve(dst)
        target.parent.mkdir(parents=True, exist_ok=True)
        shutil.move(self._resolve(src), target)

    def copy(self, src: str, dst: str) -> None:
        source = self._resolve(src)
        target = self._resolve(dst)
        target.parent.mkdir(parents=True, exist_ok=True)
        if source.is_dir():
            shutil.copytree(source, target, dirs_exist_ok=True)
        else:
            shutil.copy2(source, target)

    def get_size(self, path: str) -> int:
        return self._resolve(path).stat().st_size


# =============================================================================
# LOADER
# =============================================================================


class ProgramTransformer(RestrictingNodeTransformer):
    """RestrictedPython policy for cooperative sandbox programs.

    Adds ``await`` and ``async def`` to what RestrictedPython accepts, so a
    program can yield with ``await sleep(0)``.  ``async for`` and
    ``async with`` stay rejected.  Imports are limited to SAFE_MODULES.
    """

    def visit_Await(self, node: ast.Await) -> ast.AST:
        return self.node_contents_visit(node)

    def visit_AsyncFunctionDef(self, node: ast.AsyncFunctionDef) -> ast.AST:
        return self.visit_FunctionDef(node)

    def visit_Import(self, node: ast.Import) -> ast.AST:
        for alias in node.names:
            self.check_module(node, alias.name)
        return super().visit_Import(node)

    def visit_ImportFrom(self, node: ast.ImportFrom) -> ast.AST:
        if node.level:
            self.error(node, "relative imports are not allowed")
        else:
            self.check_module(node, node.module or "")
        return super().visit_ImportFrom(node)

    def check_module(self, node: ast.AST, module: str) -> None:
        if module not in SAFE_MODULES:
            self.error(node, f"import of '{module}' is not allowed")


class PythonLoader:
    """Compiles Python program text for cooperative execution.

    The tree is rewritten by ProgramTransformer, which rejects private and
    introspection attribute access and routes attribute, item and iteration
    access through the guards installed by the execution context.  The
    result is compiled with top-level ``await`` allowed.
    """

    def compile(self, source: str, name: str) -> CodeType:
        try:
            tree = compile(
                source,
                name,
                "exec",
                flags=ast.PyCF_ONLY_AST | ast.PyCF_ALLOW_TOP_LEVEL_AWAIT,
                dont_inherit=True,
            )
        except (SyntaxError, ValueError) as e:
            raise LoadError(_describe_syntax_error(e, name), name=name) from e

        errors: list[str] = []
        warnings: list[str] = []
        tree = ProgramTransformer(errors=errors, warnings=warnings, used_names={}).visit(tree)
        if errors:
            raise LoadError(f"{name}: {'; '.join(errors)}", name=name)
        for warning in warnings:
            logger.debug("%s: %s", name, warning)

        try:
            return compile(
                ast.fix_missing_locations(tree),
                name,
                "exec",
                flags=ast.PyCF_ALLOW_TOP_LEVEL_AWAIT,
                dont_inherit=True,
            )
        except (SyntaxError, ValueError) as e:
            raise LoadError(_describe_syntax_error(e, name), name=name) from e


def _describe_syntax_error(error: Exception, name: str) -> str:
    if isinstance(error, SyntaxError) and error.lineno:
        return f"{name}:{error.lineno}: {error.msg}"
    return f"{name}: {error}"


# =============================================================================
# PLATFORM CAPABILITIES
# =============================================================================


def _stdout_write(text: str) -> None:
    sys.stdout.write(text)
    sys.stdout.flush()


class HostPlatform:
    """Privileged host operations keyed by fully qualified name (``ns.member``).

    The ``fs`` namespace is reserved: filesystem access is routed through
    the host filesystem instead.
    """

    def __init__(
        self,
        capabilities: Mapping[str, Callable[..., Any]] | None = None,
        *,
        output: Callable[[str], None] | None = None,
    ) -> None:
        self._capabilities: dict[str, Callable[..., Any]] = {}
        self._output = output or _stdout_write
        for name, func in (capabilities or {}).items():
            self.register(name, func)

    def register(self, name: str, func: Callable[..., Any]) -> None:
        """Add a capability under its fully qualified name."""
        namespace, _, member = name.partition(".")
        if not namespace or not member:
            raise ValueError(f"Capability name must be 'namespace.member': {name!r}")
        if namespace == "fs":
            raise ValueError("The 'fs' namespace is reserved for the filesystem")
        self._capabilities[name] = func

    def capabilities(self) -> dict[str, Callable[..., Any]]:
        """Return a copy of the capability table."""
        return dict(self._capabilities)

    def write_output(self, text: str) -> None:
        self._output(text)


async def _http_request(
    url: str,
    method: str = "GET",
    body: str | None = None,
    headers: dict[str, str] | None = None,
    timeout: float = 10.0,
) -> dict[str, Any]:
    async with httpx.AsyncClient(timeout=timeout) as client:
        response = await client.request(method, url, content=body, headers=headers)
    return {
        "status": response.status_code,
        "headers": dict(response.headers),
        "body": response.text,
    }


async def _http_get(url: str, headers: dict[str, str] | None = None) -> dict[str, Any]:
    return await _http_request(url, "GET", headers=headers)


async def _exec_command(command: str, timeout: float = 30.0) -> dict[str, Any]:
    process = await asyncio.create_subprocess_shell(
        command,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.STDOUT,
    )
    try:
        stdout, _ = await asyncio.wait_for(process.communicate(), timeout=timeout)
    except TimeoutError:
        process.kill()
        await process.wait()
        return {"exit_code": -1, "output": "Command timed out"}
    return {
        "exit_code": process.returncode,
        "output": stdout.decode("utf-8", errors="replace"),
    }


class LocalPlatform(HostPlatform):
    """Default capabilities of the local host."""

    def __init__(self, *, output: Callable[[str], None] | None = None) -> None:
        super().__init__(output=output)
        self.register("os.time", time.time)
        self.register("os.clock", time.process_time)
        self.register("os.epoch", lambda: time.time_ns() // 1_000_000)
        self.register("os.sleep", asyncio.sleep)
        self.register("io.write", self.write_output)
        self.register("term.write", self.write_output)
        self.register("http.request", _http_request)
        self.register("http.get", _http_get)
        self.register("commands.exec", _exec_command)


# =============================================================================
# BUNDLE
# =============================================================================


@dataclass
class Host:
    """The host collaborators one runner talks to."""

    filesystem: HostFilesystem
    clock: HostClock = field(default_factory=MonotonicClock)
    loader: HostLoader = field(default_factory=PythonLoader)
    platform: HostPlatform = field(default_factory=LocalPlatform)

    @classmethod
    def local(cls, root: Path | str, *, output: Callable[[str], None] | None = None) -> Host:
        """Host backed by a local directory and the default platform."""
        logger.debug("Using local host rooted at %s", root)
        return cls(
            filesystem=LocalFilesystem(root),
            platform=LocalPlatform(output=output),
        )


__all__ = [
    "SAFE_MODULES",
    "Host",
    "HostClock",
    "HostFilesystem",
    "HostLoader",
    "HostPlatform",
    "LocalFilesystem",
    "LocalPlatform",
    "MonotonicClock",
    "ProgramTransformer",
    "PythonLoader",
]
