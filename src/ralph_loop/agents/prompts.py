"""Prompt composition for agent invocations."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, Literal

TASK_HEADER = "## YOUR ASSIGNED TASK FOR THIS ITERATION"

TASK_INSTRUCTIONS = (
    "**DO NOT search IMPLEMENTATION_PLAN.md for a task and DO NOT select a different task.** "
    "Your task has already been selected for you. Work on exactly this one task:"
)

TASK_FOOTER = (
    "Focus ONLY on implementing this specific task. Do not start any other task in the same "
    "iteration. When it is complete, mark it as done in the plan and update progress.txt."
)


class PromptValidationError(ValueError):
    """Raised when a prompt cannot be built from the supplied parts."""


@dataclass(frozen=True, slots=True)
class ReferenceBlock:
    """Labeled reference material appended after the task."""

    label: str
    body: str = ""
    kind: Literal["text", "data", "image"] = "text"
    path: Path | None = None

    def render(self) -> str:
        header = f"## REFERENCE: {self.label}"
        if self.kind == "image":
            location = str(self.path) if self.path is not None else self.body.strip()
            return f"{header}\n\nImage file: {location}"
        if self.kind == "data":
            return f"{header}\n\n```\n{self.body.strip()}\n```"
        return f"{header}\n\n{self.body.strip()}"


def _fence_for(text: str) -> str:
    fence = "```"
    while fence in text:
        fence += "`"
    return fence


def build_prompt(
    base_prompt: str,
    task: str | None = None,
    references: Iterable[ReferenceBlock] = (),
    *,
    require_task: bool = True,
) -> str:
    """Compose the final prompt: base prompt, assigned task, then reference blocks."""

    if not base_prompt or not base_prompt.strip():
        raise PromptValidationError("Base prompt is empty")
    if require_task and (task is None or not task.strip()):
        raise PromptValidationError("Task is empty")

    sections = [base_prompt.strip()]
    if task is not None and task.strip():
        fence = _fence_for(task)
        sections.append(f"{TASK_HEADER}\n\n{TASK_INSTRUCTIONS}\n\n{fence}\n{task}\n{fence}\n\n{TASK_FOOTER}")

    for reference in references:
        if reference.kind != "image" and not reference.body.strip():
            continue
        sections.append(reference.render())

    return "\n\n".join(sections)


__all__ = [
    "PromptValidationError",
    "ReferenceBlock",
    "TASK_FOOTER",
    "TASK_HEADER",
    "TASK_INSTRUCTIONS",
    "build_prompt",
]
