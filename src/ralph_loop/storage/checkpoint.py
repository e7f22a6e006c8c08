"""Checkpoint persistence for crash recovery."""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Sequence

from pydantic import ValidationError

from ..files import atomic_write_json
from .models import Checkpoint, Phase

logger = logging.getLogger(__name__)


class CheckpointManager:
    """Serialize and restore orchestration state for one session."""

    def __init__(self, path: Path, *, clock: Callable[[], datetime] | None = None) -> None:
        self._path = Path(path)
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    @property
    def path(self) -> Path:
        return self._path

    def save(self, checkpoint: Checkpoint) -> Checkpoint:
        atomic_write_json(self._path, checkpoint.model_dump(mode="json", by_alias=True))
        return checkpoint

    def record(
        self,
        phase: Phase,
        *,
        iteration: int,
        active_task_id: str | None = None,
        pending_count: int = 0,
        mode: str | None = None,
        model: str | None = None,
        feedback: Sequence[str] = (),
    ) -> Checkpoint:
        checkpoint = Checkpoint(
            phase=phase,
            iteration=iteration,
            active_task_id=active_task_id,
            pending_count=pending_count,
            timestamp=self._clock(),
            mode=mode,
            model=model,
            feedback=list(feedback),
        )
        logger.debug(
            "Checkpoint written",
            extra={"phase": phase.value, "iteration": iteration, "pending": pending_count},
        )
        return self.save(checkpoint)

    def load(self) -> Checkpoint | None:
        """Return the stored checkpoint; unreadable data counts as no checkpoint."""

        if not self._path.exists():
            return None
        try:
            return Checkpoint.model_validate(json.loads(self._path.read_text(encoding="utf-8")))
        except (OSError, UnicodeDecodeError, json.JSONDecodeError, ValidationError) as exc:
            logger.warning(
                "Checkpoint unreadable; starting fresh",
                extra={"path": str(self._path), "error": str(exc)},
            )
            return None

    def clear(self) -> None:
        self._path.unlink(missing_ok=True)


__all__ = ["CheckpointManager"]
