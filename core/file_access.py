"""File access backends for the patch applier.

The applier only ever calls open / write / remove, so the same patch logic
runs against the real filesystem (DiskFileAccess), a dict in memory
(MemoryFileAccess, used by the tests), or caller-supplied callbacks
(CallbackFileAccess, used by process_patch).

open() raises FileNotFoundError for a missing file. exists() is derived
from it.
"""

import os
from pathlib import Path
from typing import Callable, Protocol


class FileAccess(Protocol):
    def open(self, path: str) -> str: ...
    def write(self, path: str, content: str) -> None: ...
    def remove(self, path: str) -> None: ...


def exists(fs: FileAccess, path: str) -> bool:
    try:
        fs.open(path)
    except FileNotFoundError:
        return False
    return True


class DiskFileAccess:
    """Real filesystem, with relative paths resolved against root.

    Writes create missing parent directories. Content is read and written
    as UTF-8 with newlines untranslated.
    """

    def __init__(self, root: str | None = None):
        self.root = os.path.realpath(root or os.getcwd())

    def resolve(self, path: str) -> str:
        return os.path.normpath(os.path.join(self.root, path))

    def open(self, path: str) -> str:
        p = Path(self.resolve(path))
        if not p.is_file():
            raise FileNotFoundError(f"File does not exist: {path}")
        with open(p, "r", encoding="utf-8", newline="") as f:
            return f.read()

    def write(self, path: str, content: str) -> None:
        p = Path(self.resolve(path))
        p.parent.mkdir(parents=True, exist_ok=True)
        with open(p, "w", encoding="utf-8", newline="") as f:
            f.write(content)

    def remove(self, path: str) -> None:
        os.remove(self.resolve(path))


class MemoryFileAccess:
    """In-memory file map. Records every write and removal in order."""

    def __init__(self, files: dict[str, str] | None = None):
        self.files: dict[str, str] = dict(files or {})
        self.writes: list[tuple[str, str]] = []
        self.removals: list[str] = []

    def open(self, path: str) -> str:
        if path not in self.files:
            raise FileNotFoundError(f"File does not exist: {path}")
        return self.files[path]

    def write(self, path: str, content: str) -> None:
        self.files[path] = content
        self.writes.append((path, content))

    def remove(self, path: str) -> None:
        if path not in self.files:
            raise FileNotFoundError(f"File does not exist: {path}")
        del self.files[path]
        self.removals.append(path)


class CallbackFileAccess:
    """Adapts three plain callables to the FileAccess interface."""

    def __init__(
        self,
        open_fn: Callable[[str], str],
        write_fn: Callable[[str, str], None],
        remove_fn: Callable[[str], None],
    ):
        self._open = open_fn
        self._write = write_fn
        self._remove = remove_fn

    def open(self, path: str) -> str:
        return self._open(path)

    def write(self, path: str, content: str) -> None:
        self._write(path, content)

    def remove(self, path: str) -> None:
        self._remove(path)
