"""Isolated per-session state directories and the active-session pointer.

Layout under the state directory (``.ralph`` by default)::

    active-session                  id of the active session, absent for the default one
    sessions/<id>/session.json      SessionMetadata
    sessions/<id>/IMPLEMENTATION_PLAN.md
    sessions/<id>/progress.txt
    sessions/<id>/checkpoint.json
    sessions/<id>/specs/            only for isolated sessions

The default (global) session keeps its plan, progress and checkpoint directly
in the state directory and reads specs from the project-level ``specs/``.
"""

from __future__ import annotations

import json
import logging
import re
import shutil
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Callable

from pydantic import ValidationError

from ..files import atomic_write, atomic_write_json
from ..plan import ProgressLog, TaskPlan
from ..plan.checklist import PlanStats
from .models import SessionMetadata, SpecsMode

logger = logging.getLogger(__name__)

PLAN_FILENAME = "IMPLEMENTATION_PLAN.md"
PROGRESS_FILENAME = "progress.txt"
CHECKPOINT_FILENAME = "checkpoint.json"
LAST_RUN_FILENAME = "last-run.json"
METADATA_FILENAME = "session.json"
POINTER_FILENAME = "active-session"

SESSION_PLAN_TEMPLATE = """# Implementation Plan

## Session: {name}

{description}

## Tasks

(Generated from specs by the planning phase)

## Completed

(Completed tasks are marked with [x])
"""


class SessionError(RuntimeError):
    """Raised for unknown sessions or invalid session operations."""


def slugify(label: str) -> str:
    slug = re.sub(r"[^a-z0-9]", "-", label.lower())
    slug = re.sub(r"-+", "-", slug).strip("-")
    return slug or "session"


@dataclass(frozen=True, slots=True)
class SessionWorkspace:
    """Resolved file locations for one session (``session_id`` None = default)."""

    session_id: str | None
    root: Path
    specs_dir: Path
    name: str = "default"

    @property
    def plan_path(self) -> Path:
        return self.root / PLAN_FILENAME

    @property
    def progress_path(self) -> Path:
        return self.root / PROGRESS_FILENAME

    @property
    def checkpoint_path(self) -> Path:
        return self.root / CHECKPOINT_FILENAME

    @property
    def last_run_path(self) -> Path:
        return self.root / LAST_RUN_FILENAME

    def user_specs(self) -> list[Path]:
        """Spec files, skipping templates whose names start with an underscore."""

        if not self.specs_dir.is_dir():
            return []
        return sorted(
            path
            for path in self.specs_dir.glob("*.md")
            if path.is_file() and not path.name.startswith("_")
        )

    def has_specs(self) -> bool:
        return bool(self.user_specs())

    def progress_log(self) -> ProgressLog:
        return ProgressLog(self.progress_path, name=None if self.session_id is None else self.name)

    def load_plan(self) -> TaskPlan:
        return TaskPlan.load(self.plan_path)


@dataclass(frozen=True, slots=True)
class SessionSummary:
    metadata: SessionMetadata
    stats: PlanStats
    active: bool


class SessionStore:
    """Manage session directories and the active-session pointer."""

    def __init__(
        self,
        state_dir: Path,
        shared_specs_dir: Path,
        *,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._state_dir = Path(state_dir)
        self._shared_specs_dir = Path(shared_specs_dir)
        self._clock = clock or datetime.now

    @property
    def state_dir(self) -> Path:
        return self._state_dir

    @property
    def sessions_root(self) -> Path:
        return self._state_dir / "sessions"

    @property
    def pointer_path(self) -> Path:
        return self._state_dir / POINTER_FILENAME

    def session_dir(self, session_id: str) -> Path:
        return self.sessions_root / session_id

    def exists(self, session_id: str | None) -> bool:
        if not session_id:
            return False
        return (self.session_dir(session_id) / METADATA_FILENAME).is_file()

    def create(
        self,
        name: str,
        *,
        description: str = "",
        specs_mode: SpecsMode = "isolated",
    ) -> SessionMetadata:
        if not name.strip():
            raise SessionError("Session name is required")

        created_at = self._clock()
        base_id = f"{slugify(name)}-{created_at:%Y%m%d-%H%M%S}"
        session_id = base_id
        suffix = 2
        while self.session_dir(session_id).exists():
            session_id = f"{base_id}-{suffix}"
            suffix += 1

        metadata = SessionMetadata(
            id=session_id,
            name=name.strip(),
            description=description.strip(),
            specs_mode=specs_mode,
            created_at=created_at,
        )
        directory = self.session_dir(session_id)
        directory.mkdir(parents=True)
        atomic_write_json(directory / METADATA_FILENAME, metadata.model_dump(mode="json", by_alias=True))
        atomic_write(
            directory / PLAN_FILENAME,
            SESSION_PLAN_TEMPLATE.format(name=metadata.name, description=metadata.description),
        )
        ProgressLog(directory / PROGRESS_FILENAME, name=metadata.name).reset(now=created_at)
        if specs_mode == "isolated":
            (directory / "specs").mkdir()

        logger.info("Created session", extra={"session_id": session_id, "specs_mode": specs_mode})
        return metadata

    def get(self, session_id: str) -> SessionMetadata:
        path = self.session_dir(session_id) / METADATA_FILENAME
        if not path.is_file():
            raise SessionError(f"Session '{session_id}' does not exist")
        try:
            return SessionMetadata.model_validate(json.loads(path.read_text(encoding="utf-8")))
        except (OSError, json.JSONDecodeError, ValidationError) as exc:
            raise SessionError(f"Session metadata for '{session_id}' is unreadable: {exc}") from exc

    def list(self) -> list[SessionSummary]:
        if not self.sessions_root.is_dir():
            return []

        active = self.active_id()
        summaries: list[SessionSummary] = []
        for directory in sorted(self.sessions_root.iterdir()):
            if not (directory / METADATA_FILENAME).is_file():
                continue
            try:
                metadata = self.get(directory.name)
            except SessionError as exc:
                logger.warning("Skipping unreadable session", extra={"path": str(directory), "error": str(exc)})
                continue
            stats = TaskPlan.load(directory / PLAN_FILENAME).stats()
            summaries.append(SessionSummary(metadata=metadata, stats=stats, active=metadata.id == active))
        summaries.sort(key=lambda summary: summary.metadata.created_at)
        return summaries

    def active_id(self) -> str | None:
        """Return the active session id, or None for the default session."""

        try:
            value = self.pointer_path.read_text(encoding="utf-8").strip()
        except FileNotFoundError:
            return None
        except OSError as exc:
            logger.warning("Active session pointer unreadable", extra={"error": str(exc)})
            return None
        if value and self.exists(value):
            return value
        if value:
            logger.warning("Active session pointer is dangling", extra={"session_id": value})
        return None

    def activate(self, session_id: str) -> None:
        if not self.exists(session_id):
            raise SessionError(f"Session '{session_id}' does not exist")
        atomic_write(self.pointer_path, session_id)

    def deactivate(self) -> None:
        self.pointer_path.unlink(missing_ok=True)

    def delete(self, session_id: str) -> None:
        if not self.exists(session_id):
            raise SessionError(f"Session '{session_id}' does not exist")
        if self.active_id() == session_id:
            self.deactivate()
        shutil.rmtree(self.session_dir(session_id))
        logger.info("Deleted session", extra={"session_id": session_id})

    def workspace(self, session_id: str | None = None) -> SessionWorkspace:
        """Resolve paths for ``session_id``, or the default session when None."""

        if session_id is None:
            return SessionWorkspace(session_id=None, root=self._state_dir, specs_dir=self._shared_specs_dir)

        metadata = self.get(session_id)
        directory = self.session_dir(session_id)
        isolated_specs = directory / "specs"
        if metadata.specs_mode == "shared" and not isolated_specs.is_dir():
            specs_dir = self._shared_specs_dir
        else:
            specs_dir = isolated_specs
        return SessionWorkspace(session_id=session_id, root=directory, specs_dir=specs_dir, name=metadata.name)

    def active_workspace(self) -> SessionWorkspace:
        return self.workspace(self.active_id())


__all__ = [
    "SessionError",
    "SessionStore",
    "SessionSummary",
    "SessionWorkspace",
    "slugify",
]
