from __future__ import annotations

import fnmatch
import os
import threading
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from taskscan.errors import WorkspaceUnreadableError


@dataclass(slots=True, frozen=True)
class FileEntry:
    path: str
    size: int
    mtime: float

    @property
    def name(self) -> str:
        return self.path.rsplit("/", maxsplit=1)[-1]

    @property
    def stem(self) -> str:
        name = self.name
        if name.startswith("."):
            return name
        return name.split(".", maxsplit=1)[0]

    @property
    def suffix(self) -> str:
        name = self.name
        dot = name.rfind(".")
        return name[dot:].lower() if dot > 0 else ""


def _matches(path: str, pattern: str) -> bool:
    if "/" not in pattern:
        return fnmatch.fnmatch(path, pattern)
    if fnmatch.fnmatch(path, pattern):
        return True
    return pattern.startswith("**/") and fnmatch.fnmatch(path, pattern[3:])


class WorkspaceSnapshot:
    """Read-only view of a workspace captured once per scan run.

    File metadata is collected up front; file contents are read lazily and
    memoized for the lifetime of the snapshot. Re-scanning means capturing a
    new snapshot.
    """

    def __init__(
        self,
        root: Path,
        files: Iterable[FileEntry],
        directories: Iterable[str],
        *,
        max_file_bytes: int = 262144,
    ) -> None:
        self.root = root
        self.files: tuple[FileEntry, ...] = tuple(sorted(files, key=lambda entry: entry.path))
        self.directories: frozenset[str] = frozenset(directories)
        self.max_file_bytes = max_file_bytes
        self._by_path = {entry.path: entry for entry in self.files}
        self._memo: dict[Any, Any] = {}
        self._memo_lock = threading.Lock()

    @classmethod
    def capture(
        cls,
        root: Path,
        *,
        ignore_dirs: Iterable[str] = (),
        exclude: Iterable[str] = (),
        max_file_bytes: int = 262144,
    ) -> WorkspaceSnapshot:
        root = root.resolve()
        if not root.is_dir():
            raise WorkspaceUnreadableError(f"Workspace root is not a directory: {root}")
        ignored = set(ignore_dirs)
        excluded = {item.strip("/") for item in exclude if item.strip("/")}
        files: list[FileEntry] = []
        directories: list[str] = []
        errors: list[OSError] = []

        for current, dirnames, filenames in os.walk(root, onerror=errors.append):
            rel_dir = Path(current).relative_to(root).as_posix()
            rel_dir = "" if rel_dir == "." else rel_dir
            kept: list[str] = []
            for dirname in sorted(dirnames):
                rel = f"{rel_dir}/{dirname}" if rel_dir else dirname
                if dirname in ignored or rel in excluded:
                    continue
                kept.append(dirname)
                directories.append(rel)
            dirnames[:] = kept
            for filename in filenames:
                rel = f"{rel_dir}/{filename}" if rel_dir else filename
                try:
                    stat = os.stat(os.path.join(current, filename))
                except OSError:
                    continue
                files.append(FileEntry(path=rel, size=stat.st_size, mtime=stat.st_mtime))

        if errors and not files and not directories:
            raise WorkspaceUnreadableError(f"Cannot read workspace {root}: {errors[0]}")
        return cls(root, files, directories, max_file_bytes=max_file_bytes)

    def get(self, path: str) -> FileEntry | None:
        return self._by_path.get(path)

    def has_dir(self, path: str) -> bool:
        return path.strip("/") in self.directories

    def glob(self, pattern: str) -> list[str]:
        """Relative paths matching ``pattern``; a trailing ``/`` selects directories."""
        if pattern.endswith("/"):
            dir_pattern = pattern.rstrip("/")
            return sorted(path for path in self.directories if _matches(path, dir_pattern))
        return [entry.path for entry in self.files if _matches(entry.path, pattern)]

    def cached(self, key: Any, factory: Callable[[], Any]) -> Any:
        with self._memo_lock:
            if key in self._memo:
                return self._memo[key]
        value = factory()
        with self._memo_lock:
            return self._memo.setdefault(key, value)

    def read_text(self, path: str) -> str | None:
        """File contents, or None when the file is too large, binary or gone."""
        entry = self._by_path.get(path)
        if entry is None or entry.size > self.max_file_bytes:
            return None

        def _load() -> str | None:
            try:
                raw = (self.root / path).read_bytes()
            except OSError:
                return None
            if b"\x00" in raw[:1024]:
                return None
            return raw.decode("utf-8", errors="replace")

        return self.cached(("text", path), _load)
