"""Checklist parsing for IMPLEMENTATION_PLAN.md documents.

A plan is free-form Markdown in which two kinds of lines carry meaning::

    - [ ] pending task text
    - [x] completed task text

Every other line is kept verbatim so that a plan can be parsed, mutated and
written back without disturbing anything a human typed into it.
"""

from __future__ import annotations

import logging
import re
from collections import Counter
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Union

from ..files import advisory_lock, atomic_write, read_text

logger = logging.getLogger(__name__)

_ITEM_RE = re.compile(r"^(?P<prefix>\s*[-*+]\s*)\[(?P<mark>[^\]]*)\](?P<rest>.*)$")
_LINE_END_RE = re.compile(r"\r?\n$")


@dataclass(frozen=True, slots=True)
class PendingItem:
    raw: str
    text: str
    marker_start: int


@dataclass(frozen=True, slots=True)
class DoneItem:
    raw: str
    text: str
    marker_start: int


@dataclass(frozen=True, slots=True)
class OtherLine:
    raw: str


PlanLine = Union[PendingItem, DoneItem, OtherLine]


def classify_line(raw: str) -> PlanLine:
    """Classify one physical line (line ending included) of a plan document."""

    body = _LINE_END_RE.sub("", raw)
    match = _ITEM_RE.match(body)
    if match is None:
        return OtherLine(raw)

    text = match.group("rest").strip()
    if not text:
        return OtherLine(raw)

    mark = match.group("mark")
    marker_start = match.start("mark") - 1
    if mark.strip() == "":
        return PendingItem(raw, text, marker_start)
    if mark in ("x", "X"):
        return DoneItem(raw, text, marker_start)
    return OtherLine(raw)


def split_lines(document: str) -> list[str]:
    """Split on ``\\n`` only, keeping line endings so that ``"".join`` round-trips."""

    parts = document.split("\n")
    lines = [part + "\n" for part in parts[:-1]]
    if parts[-1]:
        lines.append(parts[-1])
    return lines


@dataclass(frozen=True, slots=True)
class Task:
    """A checklist item as seen by the orchestrator."""

    index: int
    line_number: int
    text: str
    done: bool

    @property
    def id(self) -> str:
        return f"task-{self.index}"


@dataclass(frozen=True, slots=True)
class PlanStats:
    pending: int
    completed: int

    @property
    def total(self) -> int:
        return self.pending + self.completed


class TaskNotFoundError(KeyError):
    """Raised when a task to mark done is not present in the plan."""


class TaskPlan:
    """Immutable view over a parsed plan document."""

    def __init__(self, lines: list[PlanLine] | None = None) -> None:
        self._lines: tuple[PlanLine, ...] = tuple(lines or ())

    @classmethod
    def parse(cls, document: str) -> "TaskPlan":
        return cls([classify_line(raw) for raw in split_lines(document)])

    @classmethod
    def load(cls, path: Path) -> "TaskPlan":
        """Load a plan from disk; anything unreadable is treated as an empty plan."""

        path = Path(path)
        if not path.exists():
            return cls()
        try:
            return cls.parse(read_text(path))
        except (OSError, UnicodeDecodeError) as exc:
            logger.warning(
                "Plan file unreadable; treating as empty",
                extra={"path": str(path), "error": str(exc)},
            )
            return cls()

    def save(self, path: Path) -> None:
        with advisory_lock(path):
            atomic_write(path, self.render())

    def render(self) -> str:
        return "".join(line.raw for line in self._lines)

    @property
    def lines(self) -> tuple[PlanLine, ...]:
        return self._lines

    @property
    def tasks(self) -> list[Task]:
        tasks: list[Task] = []
        for line_number, line in enumerate(self._lines, start=1):
            if isinstance(line, PendingItem):
                tasks.append(Task(len(tasks) + 1, line_number, line.text, done=False))
            elif isinstance(line, DoneItem):
                tasks.append(Task(len(tasks) + 1, line_number, line.text, done=True))
        return tasks

    def next_pending(self) -> Task | None:
        for task in self.tasks:
            if not task.done:
                return task
        return None

    def find(self, task_id: str) -> Task | None:
        for task in self.tasks:
            if task.id == task_id:
                return task
        return None

    def stats(self) -> PlanStats:
        pending = completed = 0
        for line in self._lines:
            if isinstance(line, PendingItem):
                pending += 1
            elif isinstance(line, DoneItem):
                completed += 1
        return PlanStats(pending=pending, completed=completed)

    def mark_done(self, task: Task | str) -> "TaskPlan":
        """Return a new plan with exactly one matching item flipped to done.

        ``task`` may be a :class:`Task` (matched by position, then by text if the
        document moved underneath it) or the task text. Marking an already
        completed task returns an identical plan.
        """

        position = self._locate(task)
        line = self._lines[position]
        if isinstance(line, DoneItem):
            return TaskPlan(list(self._lines))
        assert isinstance(line, PendingItem)

        start = line.marker_start
        end = line.raw.index("]", start) + 1
        flipped = classify_line(line.raw[:start] + "[x]" + line.raw[end:])
        lines = list(self._lines)
        lines[position] = flipped
        return TaskPlan(lines)

    def _locate(self, task: Task | str) -> int:
        text = task.text if isinstance(task, Task) else task.strip()
        if isinstance(task, Task):
            index = task.line_number - 1
            if 0 <= index < len(self._lines):
                candidate = self._lines[index]
                if isinstance(candidate, (PendingItem, DoneItem)) and candidate.text == text:
                    return index

        done_match: int | None = None
        for position, line in enumerate(self._lines):
            if isinstance(line, PendingItem) and line.text == text:
                return position
            if isinstance(line, DoneItem) and line.text == text and done_match is None:
                done_match = position
        if done_match is not None:
            return done_match
        raise TaskNotFoundError(text)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, TaskPlan):
            return NotImplemented
        return self.render() == other.render()

    def __repr__(self) -> str:
        stats = self.stats()
        return f"TaskPlan(pending={stats.pending}, completed={stats.completed})"


PLAN_TEMPLATE = """# Implementation Plan

## Tasks

(No tasks yet - planning phase will populate this)

---
Created: {created}
"""


def reset_plan(path: Path, *, now: datetime | None = None) -> TaskPlan:
    """Overwrite the plan with the empty template used by a fresh start."""

    stamp = (now or datetime.now()).strftime("%Y-%m-%d %H:%M:%S")
    plan = TaskPlan.parse(PLAN_TEMPLATE.format(created=stamp))
    plan.save(path)
    return plan


def restore_completed(previous: TaskPlan, current: TaskPlan) -> tuple[TaskPlan, list[Task]]:
    """Re-tick tasks that were done in ``previous`` but show as pending in ``current``.

    Completion is monotonic; an agent rewriting the plan must not silently reopen work.
    """

    deficit = Counter(task.text for task in previous.tasks if task.done)
    deficit.subtract(task.text for task in current.tasks if task.done)

    restored = current
    reopened: list[Task] = []
    for task in current.tasks:
        if not task.done and deficit[task.text] > 0:
            deficit[task.text] -= 1
            restored = restored.mark_done(task)
            reopened.append(task)
    return restored, reopened


__all__ = [
    "DoneItem",
    "OtherLine",
    "PLAN_TEMPLATE",
    "PendingItem",
    "PlanLine",
    "PlanStats",
    "Task",
    "TaskNotFoundError",
    "TaskPlan",
    "classify_line",
    "reset_plan",
    "restore_completed",
    "split_lines",
]
