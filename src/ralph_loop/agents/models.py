"""Agent role descriptors."""

from __future__ import annotations

from enum import Enum
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator


class AgentRole(str, Enum):
    BUILDING = "building"
    PLANNING = "planning"
    SPEC_CREATION = "spec_creation"
    AGENTS_UPDATER = "agents_updater"


SENTINELS: dict[AgentRole, str] = {
    AgentRole.BUILDING: "<promise>COMPLETE</promise>",
    AgentRole.PLANNING: "<promise>PLANNING_COMPLETE</promise>",
    AgentRole.SPEC_CREATION: "<promise>SPEC_CREATED</promise>",
    AgentRole.AGENTS_UPDATER: "<promise>AGENTS_UPDATED</promise>",
}

PROMPT_FILENAMES: dict[AgentRole, str] = {
    AgentRole.BUILDING: "ralph.agent.md",
    AgentRole.PLANNING: "ralph-planner.agent.md",
    AgentRole.SPEC_CREATION: "ralph-spec-creator.agent.md",
    AgentRole.AGENTS_UPDATER: "ralph-agents-updater.agent.md",
}


class AgentDescriptor(BaseModel):
    """Static metadata for one agent role."""

    model_config = ConfigDict(frozen=True)

    role: AgentRole = Field(..., description="Role this agent plays in the loop.")
    prompt_path: Path = Field(..., description="Prompt template file for the role.")
    signal: str = Field(..., description="Sentinel the agent must emit when its phase is done.")
    name: str | None = Field(default=None, description="Display name from the template frontmatter.")
    metadata: dict[str, Any] = Field(
        default_factory=dict,
        description="Remaining frontmatter keys, kept for reporting.",
    )

    @field_validator("signal")
    @classmethod
    def _require_signal(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("Agent signal must not be empty")
        return value

    @classmethod
    def for_role(cls, role: AgentRole, agents_dir: Path) -> "AgentDescriptor":
        return cls(role=role, prompt_path=Path(agents_dir) / PROMPT_FILENAMES[role], signal=SENTINELS[role])


__all__ = ["AgentDescriptor", "AgentRole", "PROMPT_FILENAMES", "SENTINELS"]
