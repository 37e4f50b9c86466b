"""Workspace storage capability used by the apply engine."""

from __future__ import annotations

import fnmatch
import threading
from pathlib import Path, PurePosixPath
from typing import Iterable, Protocol, runtime_checkable

__all__ = [
    "InMemoryWorkspace",
    "LocalWorkspace",
    "WorkspaceError",
    "WorkspaceStorage",
    "decode_text",
    "matches_pattern",
    "normalise_workspace_path",
]


class WorkspaceError(OSError):
    """Raised when a workspace path is unsafe or storage access fails."""


@runtime_checkable
class WorkspaceStorage(Protocol):
    """Byte-level file access rooted at a workspace."""

    def read(self, path: str) -> bytes: ...

    def write(self, path: str, data: bytes) -> None: ...

    def delete(self, path: str) -> None: ...

    def list(self, pattern: str = "**/*") -> list[str]: ...

    def exists(self, path: str) -> bool: ...


def decode_text(data: bytes) -> str:
    """Decode workspace bytes as UTF-8, replacing undecodable sequences."""
    try:
        return data.decode("utf-8")
    except UnicodeDecodeError:
        return data.decode("utf-8", errors="replace")


def normalise_workspace_path(raw: str) -> str:
    """Return a clean repository-relative POSIX path or raise `WorkspaceError`."""
    candidate = (raw or "").strip().replace("\\", "/")
    if not candidate:
        raise WorkspaceError("Empty workspace path.")
    path = PurePosixPath(candidate)
    if path.is_absolute():
        raise WorkspaceError(f"Absolute paths are not permitted: {raw}")
    parts = [part for part in path.parts if part not in ("", ".")]
    if any(part == ".." for part in parts):
        raise WorkspaceError(f"Path escaping detected: {raw}")
    if parts and parts[0] == ".git":
        raise WorkspaceError("Changes may not target the .git directory.")
    if not parts:
        raise WorkspaceError(f"Invalid workspace path: {raw}")
    return "/".join(parts)


def matches_pattern(path: str, pattern: str) -> bool:
    if fnmatch.fnmatchcase(path, pattern):
        return True
    # ``**/`` also matches files at the workspace root.
    if pattern.startswith("**/") and fnmatch.fnmatchcase(path, pattern[3:]):
        return True
    return False


class LocalWorkspace:
    """Filesystem-backed workspace rooted at ``root``."""

    def __init__(self, root: Path | str) -> None:
        self.root = Path(root).resolve()

    def _resolve(self, path: str) -> Path:
        relative = normalise_workspace_path(path)
        target = (self.root / relative).resolve()
        try:
            target.relative_to(self.root)
        except ValueError:
            raise WorkspaceError(f"Path escaped workspace: {path}") from None
        return target

    def read(self, path: str) -> bytes:
        return self._resolve(path).read_bytes()

    def write(self, path: str, data: bytes) -> None:
        target = self._resolve(path)
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_bytes(data)

    def delete(self, path: str) -> None:
        self._resolve(path).unlink(missing_ok=True)

    def exists(self, path: str) -> bool:
        return self._resolve(path).is_file()

    def list(self, pattern: str = "**/*") -> list[str]:
        results: list[str] = []
        for candidate in self.root.rglob("*"):
            if not candidate.is_file():
                continue
            relative = candidate.relative_to(self.root).as_posix()
            if matches_pattern(relative, pattern):
                results.append(relative)
        return sorted(results)


class InMemoryWorkspace:
    """Dictionary-backed workspace, safe for concurrent writers."""

    def __init__(self, files: dict[str, bytes | str] | None = None) -> None:
        self._files: dict[str, bytes] = {}
        self._lock = threading.Lock()
        for path, data in (files or {}).items():
            self.write(path, data.encode("utf-8") if isinstance(data, str) else data)

    def read(self, path: str) -> bytes:
        key = normalise_workspace_path(path)
        with self._lock:
            try:
                return self._files[key]
            except KeyError:
                raise FileNotFoundError(key) from None

    def write(self, path: str, data: bytes) -> None:
        key = normalise_workspace_path(path)
        with self._lock:
            self._files[key] = bytes(data)

    def delete(self, path: str) -> None:
        key = normalise_workspace_path(path)
        with self._lock:
            self._files.pop(key, None)

    def exists(self, path: str) -> bool:
        key = normalise_workspace_path(path)
        with self._lock:
            return key in self._files

    def list(self, pattern: str = "**/*") -> list[str]:
        with self._lock:
            keys: Iterable[str] = list(self._files)
        return sorted(key for key in keys if matches_pattern(key, pattern))
