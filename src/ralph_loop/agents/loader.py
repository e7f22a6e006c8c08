"""Agent prompt template loading utilities."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Iterable

import yaml

from .models import AgentDescriptor, AgentRole

logger = logging.getLogger(__name__)


class AgentLoadError(RuntimeError):
    """Raised when an agent prompt template is missing or cannot be parsed."""


@dataclass(frozen=True, slots=True)
class AgentPrompt:
    descriptor: AgentDescriptor
    body: str


def split_frontmatter(content: str) -> tuple[dict[str, Any], str]:
    """Separate a leading ``---`` YAML block from the Markdown body."""

    lines = content.splitlines(keepends=True)
    if not lines or lines[0].strip() != "---":
        return {}, content

    for index in range(1, len(lines)):
        if lines[index].strip() == "---":
            header = "".join(lines[1:index])
            body = "".join(lines[index + 1 :])
            try:
                document = yaml.safe_load(header) if header.strip() else {}
            except yaml.YAMLError as exc:
                raise AgentLoadError(f"Invalid YAML frontmatter: {exc}") from exc
            if document is None:
                document = {}
            if not isinstance(document, dict):
                raise AgentLoadError("YAML frontmatter must be a mapping")
            return document, body.lstrip("\n")

    return {}, content


class AgentCatalog:
    """Loads agent descriptors and prompt bodies from the agents directory."""

    def __init__(self, agents_dir: Path, roles: Iterable[AgentRole] | None = None) -> None:
        self._agents_dir = Path(agents_dir)
        self._descriptors: dict[AgentRole, AgentDescriptor] = {
            role: AgentDescriptor.for_role(role, self._agents_dir) for role in (roles or AgentRole)
        }

    @property
    def agents_dir(self) -> Path:
        return self._agents_dir

    def descriptor(self, role: AgentRole) -> AgentDescriptor:
        try:
            return self._descriptors[role]
        except KeyError as exc:
            raise AgentLoadError(f"No agent configured for role '{role.value}'") from exc

    def available(self, role: AgentRole) -> bool:
        descriptor = self._descriptors.get(role)
        return descriptor is not None and descriptor.prompt_path.is_file()

    def load(self, role: AgentRole) -> AgentPrompt:
        descriptor = self.descriptor(role)
        path = descriptor.prompt_path
        if not path.is_file():
            raise AgentLoadError(f"Agent prompt not found for role '{role.value}': {path}")

        try:
            content = path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as exc:
            raise AgentLoadError(f"Failed to read agent prompt {path}: {exc}") from exc

        frontmatter, body = split_frontmatter(content)
        name = frontmatter.pop("name", None)
        descriptor = descriptor.model_copy(
            update={"name": str(name) if name is not None else None, "metadata": frontmatter}
        )
        logger.debug(
            "Loaded agent prompt",
            extra={"role": role.value, "path": str(path), "length": len(body)},
        )
        return AgentPrompt(descriptor=descriptor, body=body)


__all__ = ["AgentCatalog", "AgentLoadError", "AgentPrompt", "split_frontmatter"]
