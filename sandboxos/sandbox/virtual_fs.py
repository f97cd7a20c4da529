"""In-memory filesystem used under the VIRTUAL_ONLY access mode.

Substitutes for real storage: every approved filesystem operation of a
VIRTUAL_ONLY run lands in the environment's ``virtual_fs`` map, which lives
and dies with the environment.  Directories are implicit.
"""

from __future__ import annotations

import io

from sandboxos.sandbox.access import VIRTUAL_ROOT


class _VirtualFile(io.StringIO):
    """Text handle that commits its contents to the map on close."""

    def __init__(self, files: dict[str, str], path: str, initial: str, *, at_end: bool) -> None:
        super().__init__(initial)
        self._files = files
        self._path = path
        if at_end:
            self.seek(0, io.SEEK_END)

    def close(self) -> None:
        if not self.closed:
            self._files[self._path] = self.getvalue()
        super().close()


class VirtualFilesystem:
    """HostFilesystem implementation over a ``path -> content`` mapping."""

    def __init__(self, files: dict[str, str]) -> None:
        self.files = files

    def _children(self, path: str) -> list[str]:
        prefix = path.rstrip("/") + "/"
        return [key for key in self.files if key.startswith(prefix)]

    def exists(self, path: str) -> bool:
        return path in self.files or self.is_dir(path)

    def list(self, path: str) -> list[str]:
        prefix = path.rstrip("/") + "/"
        return sorted({key[len(prefix) :].split("/")[0] for key in self._children(path)})

    def is_dir(self, path: str) -> bool:
        return path.rstrip("/") == VIRTUAL_ROOT or bool(self._children(path))

    def open(self, path: str, mode: str = "r") -> io.StringIO:
        if "b" in mode:
            raise ValueError("The virtual filesystem only supports text mode")
        if "w" in mode:
            return _VirtualFile(self.files, path, "", at_end=False)
        if "a" in mode:
            return _VirtualFile(self.files, path, self.files.get(path, ""), at_end=True)
        content = self.read(path)
        if "+" in mode:
            return _VirtualFile(self.files, path, content, at_end=False)
        return io.StringIO(content)

    def read(self, path: str) -> str:
        try:
            return self.files[path]
        except KeyError:
            raise FileNotFoundError(f"No such virtual file: {path}") from None

    def write(self, path: str, data: str, append: bool = False) -> None:
        previous = self.files.get(path, "") if append else ""
        self.files[path] = previous + str(data)

    def delete(self, path: str) -> None:
        self.files.pop(path, None)
        for key in self._children(path):
            del self.files[key]

    def make_dir(self, path: str) -> None:
        # Directories are implicit in the path keys
        return None

    def move(self, src: str, dst: str) -> None:
        self.files[dst] = self.read(src)
        del self.files[src]

    def copy(self, src: str, dst: str) -> None:
        self.files[dst] = self.read(src)

    def get_size(self, path: str) -> int:
        return len(self.read(path).encode("utf-8"))


__all__ = ["VirtualFilesystem"]
