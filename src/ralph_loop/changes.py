"""Detect which project files an agent iteration touched."""

from __future__ import annotations

import os
from pathlib import Path
from typing import Iterable, Mapping

DEFAULT_EXCLUDES = frozenset(
    {".git", ".ralph", ".venv", "venv", "node_modules", "__pycache__", ".pytest_cache", ".mypy_cache"}
)

Snapshot = Mapping[str, tuple[int, int]]


def snapshot_files(root: Path, *, excludes: Iterable[str] = DEFAULT_EXCLUDES) -> dict[str, tuple[int, int]]:
    """Map relative paths to ``(mtime_ns, size)`` for every regular file under ``root``."""

    root = Path(root)
    skipped = set(excludes)
    snapshot: dict[str, tuple[int, int]] = {}
    for directory, dirnames, filenames in os.walk(root):
        dirnames[:] = sorted(name for name in dirnames if name not in skipped)
        for filename in filenames:
            path = Path(directory) / filename
            try:
                stat = path.stat()
            except OSError:
                continue
            snapshot[path.relative_to(root).as_posix()] = (stat.st_mtime_ns, stat.st_size)
    return snapshot


def diff_files(before: Snapshot, after: Snapshot) -> list[str]:
    """Sorted paths whose signature differs between two snapshots."""

    changed = {path for path, signature in after.items() if before.get(path) != signature}
    changed.update(path for path in before if path not in after)
    return sorted(changed)


__all__ = ["DEFAULT_EXCLUDES", "diff_files", "snapshot_files"]
