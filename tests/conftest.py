"""Shared test fixtures for SandboxOS.

Provides a controllable clock, a recording platform and a temporary host
directory laid out like the sandbox path space.
"""

from collections.abc import Callable
from pathlib import Path
from typing import Any

import pytest

from sandboxos.host import Host, HostPlatform, LocalFilesystem
from sandboxos.sandbox.registry import SandboxRegistry
from sandboxos.sandbox.runner import MonitoredRunner
from sandboxos.settings import Settings

# =============================================================================
# CLOCK
# =============================================================================


class FakeClock:
    """Millisecond clock that only moves when told to.

    ``step`` advances the clock on every read, which lets a test drive a
    program past its deadline without sleeping.
    """

    def __init__(self, start: int = 1_000_000, step: int = 0) -> None:
        self.millis = start
        self.step = step
        self.reads = 0

    def now_millis(self) -> int:
        self.reads += 1
        value = self.millis
        self.millis += self.step
        return value

    def advance(self, millis: int) -> None:
        self.millis += millis


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


# =============================================================================
# PLATFORM
# =============================================================================


class RecordingPlatform(HostPlatform):
    """Platform whose capabilities record their calls instead of acting."""

    def __init__(self) -> None:
        self.output: list[str] = []
        self.calls: list[tuple[str, tuple[Any, ...]]] = []
        super().__init__(output=self.output.append)
        for name in (
            "os.time",
            "os.shutdown",
            "os.reboot",
            "io.write",
            "term.write",
            "commands.exec",
            "peripheral.find",
            "window.create",
            "photos.list",
            "colors.mix",
        ):
            self.register(name, self._recorder(name))
        self.register("http.request", self._async_recorder("http.request"))

    def _recorder(self, name: str) -> Callable[..., Any]:
        def call(*args: Any) -> str:
            self.calls.append((name, args))
            return f"{name} ok"

        return call

    def _async_recorder(self, name: str) -> Callable[..., Any]:
        async def call(*args: Any) -> dict[str, Any]:
            self.calls.append((name, args))
            return {"status": 200, "body": "ok"}

        return call

    def called(self, name: str) -> bool:
        return any(called == name for called, _ in self.calls)


@pytest.fixture
def platform() -> RecordingPlatform:
    return RecordingPlatform()


# =============================================================================
# HOST
# =============================================================================


@pytest.fixture
def host_root(tmp_path: Path) -> Path:
    """Temporary host directory with /rom, /sandbox and /tmp."""
    for directory in ("rom/programs", "sandbox", "tmp"):
        (tmp_path / directory).mkdir(parents=True)
    (tmp_path / "rom/programs/shell").write_text("print('shell')\n", encoding="utf-8")
    return tmp_path


@pytest.fixture
def host(host_root: Path, clock: FakeClock, platform: RecordingPlatform) -> Host:
    return Host(filesystem=LocalFilesystem(host_root), clock=clock, platform=platform)


@pytest.fixture
def registry() -> SandboxRegistry:
    return SandboxRegistry()


@pytest.fixture
def runner(host: Host, registry: SandboxRegistry) -> MonitoredRunner:
    return MonitoredRunner(host=host, registry=registry)


@pytest.fixture
def write_program(host_root: Path) -> Callable[[str, str], str]:
    """Store program text at a sandbox path and return the path."""

    def write(path: str, source: str) -> str:
        target = host_root / path.lstrip("/")
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(source, encoding="utf-8")
        return path

    return write


# =============================================================================
# SETTINGS
# =============================================================================


@pytest.fixture
def test_settings(host_root: Path) -> Settings:
    """Provide test settings with safe defaults."""
    return Settings(environment="testing", debug=False, host_root=host_root)
