"""Data models for persisted loop state."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator


class Phase(str, Enum):
    IDLE = "idle"
    RECOVERING = "recovering"
    SPEC_CREATION = "spec_creation"
    PLANNING = "planning"
    BUILDING = "building"
    COMPLETE = "complete"
    CANCELLED = "cancelled"

    @property
    def in_progress(self) -> bool:
        return self in {Phase.SPEC_CREATION, Phase.PLANNING, Phase.BUILDING}


SpecsMode = Literal["isolated", "shared"]


class SessionMetadata(BaseModel):
    """Contents of ``session.json``."""

    model_config = ConfigDict(populate_by_name=True)

    id: str
    name: str
    description: str = ""
    specs_mode: SpecsMode = Field(default="isolated", alias="specsMode")
    created_at: datetime = Field(alias="createdAt")
    status: str = "active"

    @field_validator("id")
    @classmethod
    def _normalize_id(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError("Session id must not be empty")
        return normalized


class Checkpoint(BaseModel):
    """Point-in-time snapshot used to resume an interrupted loop."""

    model_config = ConfigDict(populate_by_name=True)

    phase: Phase
    iteration: int = Field(default=0, ge=0)
    active_task_id: str | None = Field(default=None, alias="activeTaskId")
    pending_count: int = Field(default=0, ge=0, alias="pendingCount")
    timestamp: datetime
    mode: str | None = None
    model: str | None = None
    feedback: list[str] = Field(default_factory=list)


class MemorySettings(BaseModel):
    enabled: bool = True


class PersistedSettings(BaseModel):
    """Contents of ``settings.json``."""

    memory: MemorySettings = Field(default_factory=MemorySettings)


__all__ = [
    "Checkpoint",
    "MemorySettings",
    "PersistedSettings",
    "Phase",
    "SessionMetadata",
    "SpecsMode",
]
