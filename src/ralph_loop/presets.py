"""Preset spec templates for common jobs (refactoring, hardening, docs, ...).

Presets are Markdown files in ``ralph/presets/`` with YAML frontmatter::

    ---
    name: Security Hardening
    description: Audit and harden the codebase
    category: Security
    ---
    - Review input validation
    ...
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Callable

from .agents.loader import AgentLoadError, split_frontmatter
from .files import atomic_write
from .storage.models import SessionMetadata
from .storage.sessions import SessionStore

logger = logging.getLogger(__name__)

DEFAULT_CATEGORY = "General"


class PresetError(RuntimeError):
    """Raised when a preset is missing or malformed."""


@dataclass(frozen=True, slots=True)
class Preset:
    id: str
    name: str
    description: str
    category: str
    body: str
    path: Path

    def render_spec(self, now: datetime) -> str:
        return (
            f"# {self.name}\n\n"
            "## Overview\n\n"
            f"{self.description}\n\n"
            "## Requirements\n\n"
            f"{self.body.strip()}\n\n"
            "---\n"
            f"Generated from preset: {self.id}\n"
            f"Applied: {now:%Y-%m-%d %H:%M:%S}\n"
        )


class PresetLibrary:
    """Discovers presets in a directory."""

    def __init__(self, directory: Path, *, clock: Callable[[], datetime] | None = None) -> None:
        self._directory = Path(directory)
        self._clock = clock or datetime.now

    @property
    def directory(self) -> Path:
        return self._directory

    def ids(self) -> list[str]:
        if not self._directory.is_dir():
            return []
        return sorted(path.stem for path in self._directory.glob("*.md") if path.is_file())

    def get(self, preset_id: str) -> Preset:
        path = self._directory / f"{preset_id}.md"
        if not path.is_file():
            raise PresetError(f"Preset '{preset_id}' not found in {self._directory}")
        try:
            metadata, body = split_frontmatter(path.read_text(encoding="utf-8"))
        except AgentLoadError as exc:
            raise PresetError(f"Preset '{preset_id}' has invalid frontmatter: {exc}") from exc
        return Preset(
            id=preset_id,
            name=str(metadata.get("name") or preset_id),
            description=str(metadata.get("description") or ""),
            category=str(metadata.get("category") or DEFAULT_CATEGORY),
            body=body,
            path=path,
        )

    def list(self) -> list[Preset]:
        presets: list[Preset] = []
        for preset_id in self.ids():
            try:
                presets.append(self.get(preset_id))
            except PresetError as exc:
                logger.warning("Skipping preset", extra={"preset": preset_id, "error": str(exc)})
        return presets

    def apply(self, preset_id: str, specs_dir: Path) -> Path:
        """Write ``<id>-spec.md`` into ``specs_dir`` and return its path."""

        preset = self.get(preset_id)
        target = Path(specs_dir) / f"{preset.id}-spec.md"
        atomic_write(target, preset.render_spec(self._clock()))
        logger.info("Applied preset", extra={"preset": preset.id, "path": str(target)})
        return target


def create_session_from_preset(
    store: SessionStore,
    library: PresetLibrary,
    preset_id: str,
    *,
    name: str | None = None,
) -> SessionMetadata:
    """Create an isolated session seeded with a preset spec and make it active."""

    preset = library.get(preset_id)
    metadata = store.create(name or preset.name, description=preset.description, specs_mode="isolated")
    library.apply(preset.id, store.workspace(metadata.id).specs_dir)
    store.activate(metadata.id)
    return metadata


__all__ = ["Preset", "PresetError", "PresetLibrary", "create_session_from_preset"]
