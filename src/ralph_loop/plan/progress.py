"""Append-only progress log (progress.txt)."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path

from ..files import atomic_write

logger = logging.getLogger(__name__)

PROGRESS_TEMPLATE = """# Ralph Progress Log{suffix}

## Codebase Patterns
(Add reusable patterns here)

---
Started: {started}
"""


@dataclass(slots=True)
class ProgressEntry:
    title: str
    timestamp: datetime = field(default_factory=datetime.now)
    changes: list[str] = field(default_factory=list)
    files: list[str] = field(default_factory=list)
    learnings: list[str] = field(default_factory=list)

    def render(self) -> str:
        lines = [f"## {self.timestamp:%Y-%m-%d %H:%M:%S} - {self.title}", "", "### What changed"]
        lines.extend(_bullets(self.changes))
        lines.extend(["", "### Files touched"])
        lines.extend(_bullets(self.files))
        lines.extend(["", "### Learnings"])
        lines.extend(_bullets(self.learnings))
        return "\n".join(lines) + "\n"


def _bullets(items: list[str]) -> list[str]:
    if not items:
        return ["- (none)"]
    return [f"- {item}" for item in items]


class ProgressLog:
    """Dated progress entries appended after every iteration."""

    def __init__(self, path: Path, *, name: str | None = None) -> None:
        self._path = Path(path)
        self._name = name

    @property
    def path(self) -> Path:
        return self._path

    def ensure(self) -> None:
        if not self._path.exists():
            self.reset()

    def reset(self, *, now: datetime | None = None) -> None:
        suffix = f" - {self._name}" if self._name else ""
        stamp = (now or datetime.now()).strftime("%Y-%m-%d %H:%M:%S")
        atomic_write(self._path, PROGRESS_TEMPLATE.format(suffix=suffix, started=stamp))

    def append(self, entry: ProgressEntry) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        with open(self._path, "a", encoding="utf-8") as handle:
            handle.write("\n" + entry.render())

    def read(self) -> str:
        try:
            return self._path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return ""
        except (OSError, UnicodeDecodeError) as exc:
            logger.warning(
                "Progress log unreadable; treating as empty",
                extra={"path": str(self._path), "error": str(exc)},
            )
            return ""


__all__ = ["PROGRESS_TEMPLATE", "ProgressEntry", "ProgressLog"]
