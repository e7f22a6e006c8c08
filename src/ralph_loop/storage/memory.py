"""Cross-session memory kept in ``.ralph/memory.md``.

Entries accumulate across every session and are injected into prompts while
memory is enabled. Nothing is pruned automatically; :meth:`MemoryStore.clear`
resets the file to its template on explicit request.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from datetime import date, datetime
from enum import Enum
from pathlib import Path
from typing import Callable

from pydantic import ValidationError

from ..files import atomic_write, atomic_write_json, read_text
from .models import PersistedSettings

logger = logging.getLogger(__name__)

_LAST_UPDATED_RE = re.compile(r"^\*Last updated:.*\*$", re.MULTILINE)


class MemorySection(str, Enum):
    PATTERNS = "Patterns"
    COMMANDS = "Commands"
    GOTCHAS = "Gotchas"
    DECISIONS = "Decisions"

    @classmethod
    def parse(cls, value: str) -> "MemorySection":
        for section in cls:
            if section.value.lower() == value.strip().lower():
                return section
        choices = ", ".join(section.value for section in cls)
        raise ValueError(f"Unknown memory section '{value}'. Expected one of: {choices}")


_SECTION_BLURBS = {
    MemorySection.PATTERNS: "Code patterns, conventions, and best practices discovered in this codebase.",
    MemorySection.COMMANDS: "Build, test, lint, and other commands that work for this project.",
    MemorySection.GOTCHAS: "Common pitfalls, edge cases, and things to watch out for.",
    MemorySection.DECISIONS: "Architectural decisions, design choices, and their rationale.",
}


def render_template(now: datetime) -> str:
    parts = [
        "# Ralph Memory",
        "",
        "> Cross-session learnings that persist across all Ralph sessions.",
        "> This file is automatically managed by Ralph. You can also edit it manually.",
        "",
        "---",
        "",
    ]
    for section in MemorySection:
        parts.extend(
            [
                f"## {section.value}",
                "",
                f"> {_SECTION_BLURBS[section]}",
                "",
                f"<!-- Add {section.value.lower()} here -->",
                "",
                "---",
                "",
            ]
        )
    parts.append(f"*Last updated: {now:%Y-%m-%d %H:%M:%S}*")
    return "\n".join(parts) + "\n"


@dataclass(frozen=True, slots=True)
class MemoryStats:
    enabled: bool
    patterns: int = 0
    commands: int = 0
    gotchas: int = 0
    decisions: int = 0

    @property
    def total(self) -> int:
        return self.patterns + self.commands + self.gotchas + self.decisions


class MemoryStore:
    """Read and append memory entries, honouring the persisted on/off flag."""

    def __init__(
        self,
        path: Path,
        settings_path: Path,
        *,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._path = Path(path)
        self._settings_path = Path(settings_path)
        self._clock = clock or datetime.now

    @property
    def path(self) -> Path:
        return self._path

    def load_settings(self) -> PersistedSettings:
        if not self._settings_path.exists():
            return PersistedSettings()
        try:
            return PersistedSettings.model_validate(json.loads(self._settings_path.read_text(encoding="utf-8")))
        except (OSError, UnicodeDecodeError, json.JSONDecodeError, ValidationError) as exc:
            logger.warning(
                "Settings file unreadable; using defaults",
                extra={"path": str(self._settings_path), "error": str(exc)},
            )
            return PersistedSettings()

    @property
    def enabled(self) -> bool:
        return self.load_settings().memory.enabled

    def set_enabled(self, enabled: bool) -> None:
        settings = self.load_settings()
        settings.memory.enabled = enabled
        atomic_write_json(self._settings_path, settings.model_dump(mode="json"))
        if enabled:
            self.ensure()
        logger.info("Memory %s", "enabled" if enabled else "disabled")

    def ensure(self) -> None:
        if not self._path.exists():
            atomic_write(self._path, render_template(self._clock()))

    def content(self) -> str:
        """Memory text for prompt injection; empty when disabled or absent."""

        if not self.enabled or not self._path.exists():
            return ""
        try:
            return read_text(self._path)
        except (OSError, UnicodeDecodeError) as exc:
            logger.warning("Memory file unreadable", extra={"path": str(self._path), "error": str(exc)})
            return ""

    def add(
        self,
        section: MemorySection,
        entry: str,
        *,
        source: str | None = None,
        today: date | None = None,
    ) -> bool:
        """Insert ``entry`` under ``section``; returns False when disabled or a duplicate."""

        entry = entry.strip()
        if not entry or not self.enabled:
            return False

        self.ensure()
        document = read_text(self._path)
        if entry in document:
            return False

        stamp = (today or self._clock().date()).isoformat()
        source_text = f" *(from: {source})*" if source else ""
        formatted = f"- {entry}{source_text} [{stamp}]"

        lines = document.split("\n")
        inserted = False
        in_section = False
        for index, line in enumerate(lines):
            if line == f"## {section.value}":
                in_section = True
            elif in_section and line.startswith("## "):
                break
            elif in_section and "<!-- Add" in line:
                lines[index:index] = [formatted, ""]
                inserted = True
                break
        if not inserted:
            return False

        now = self._clock()
        updated = _LAST_UPDATED_RE.sub(f"*Last updated: {now:%Y-%m-%d %H:%M:%S}*", "\n".join(lines))
        atomic_write(self._path, updated)
        logger.info("Memory entry added", extra={"section": section.value, "source": source})
        return True

    def stats(self) -> MemoryStats:
        enabled = self.enabled
        if not enabled or not self._path.exists():
            return MemoryStats(enabled=enabled)

        counts = {section: 0 for section in MemorySection}
        current: MemorySection | None = None
        for line in read_text(self._path).splitlines():
            if line.startswith("## "):
                current = next((s for s in MemorySection if line == f"## {s.value}"), None)
            elif line.strip() == "---":
                current = None
            elif current is not None and line.startswith("- "):
                counts[current] += 1
        return MemoryStats(
            enabled=True,
            patterns=counts[MemorySection.PATTERNS],
            commands=counts[MemorySection.COMMANDS],
            gotchas=counts[MemorySection.GOTCHAS],
            decisions=counts[MemorySection.DECISIONS],
        )

    def clear(self) -> None:
        atomic_write(self._path, render_template(self._clock()))
        logger.info("Memory cleared", extra={"path": str(self._path)})


__all__ = ["MemorySection", "MemoryStats", "MemoryStore", "render_template"]
