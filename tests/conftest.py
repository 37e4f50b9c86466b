from __future__ import annotations

import sys
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"

if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

from cse.structured import FileSnapshot  # noqa: E402
from cse.tools.snapshot import capture_snapshot  # noqa: E402
from cse.tools.workspace import InMemoryWorkspace, LocalWorkspace  # noqa: E402


@pytest.fixture()
def memory_workspace() -> InMemoryWorkspace:
    """In-memory workspace seeded with two small text files."""

    return InMemoryWorkspace(
        {
            "src/app.py": "def main():\n    return 1\n",
            "README.md": "# Demo\n",
        }
    )


@pytest.fixture()
def local_workspace(tmp_path: Path) -> LocalWorkspace:
    """Filesystem workspace rooted in a temporary directory."""

    root = tmp_path / "workspace"
    (root / "pkg").mkdir(parents=True)
    (root / "pkg" / "a.txt").write_text("alpha\nbeta\n", encoding="utf-8")
    (root / "pkg" / "b.txt").write_text("one\ntwo\n", encoding="utf-8")
    return LocalWorkspace(root)


@pytest.fixture()
def take_snapshots():
    """Return a helper capturing snapshots of the given workspace paths."""

    def _take(storage, *paths: str) -> dict[str, FileSnapshot]:
        return {path: capture_snapshot(storage, path) for path in paths}

    return _take
