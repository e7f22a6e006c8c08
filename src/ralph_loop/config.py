"""Configuration management for the Ralph loop."""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


DEFAULT_MODEL = "claude-sonnet-4.5"


class RalphSettings(BaseSettings):
    """Runtime configuration sourced from environment variables and optional .env file."""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    agent_path: str | None = Field(default=None, validation_alias="RALPH_AGENT_PATH")
    default_model: str = Field(default=DEFAULT_MODEL, validation_alias="RALPH_DEFAULT_MODEL")
    project_root: Path = Field(default=Path("."), validation_alias="RALPH_PROJECT_ROOT")
    state_dir: Path = Field(default=Path(".ralph"), validation_alias="RALPH_STATE_DIR")
    agents_dir: Path = Field(default=Path(".github/agents"), validation_alias="RALPH_AGENTS_DIR")
    presets_dir: Path = Field(default=Path("ralph/presets"), validation_alias="RALPH_PRESETS_DIR")
    log_level: str = Field(default="INFO", validation_alias="RALPH_LOG_LEVEL")
    agent_timeout: float | None = Field(default=None, validation_alias="RALPH_AGENT_TIMEOUT")
    phase_attempt_limit: int = Field(default=3, validation_alias="RALPH_PHASE_ATTEMPT_LIMIT")
    iteration_delay: float = Field(default=2.0, validation_alias="RALPH_ITERATION_DELAY")

    @field_validator("log_level")
    @classmethod
    def _normalize_log_level(cls, value: str) -> str:
        normalized = value.strip().upper()
        if normalized not in {"CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"}:
            raise ValueError(
                "RALPH_LOG_LEVEL must be one of CRITICAL, ERROR, WARNING, INFO, DEBUG"
            )
        return normalized

    @field_validator("agent_timeout", mode="before")
    @classmethod
    def _parse_agent_timeout(cls, value):
        if value is None or value == "":
            return None
        return value

    @field_validator("agent_timeout")
    @classmethod
    def _validate_agent_timeout(cls, value: float | None) -> float | None:
        if value is not None and value <= 0:
            raise ValueError("RALPH_AGENT_TIMEOUT must be > 0 when set")
        return value

    @field_validator("phase_attempt_limit")
    @classmethod
    def _validate_phase_attempt_limit(cls, value: int) -> int:
        if value < 1:
            raise ValueError("RALPH_PHASE_ATTEMPT_LIMIT must be >= 1")
        return value

    @field_validator("iteration_delay")
    @classmethod
    def _validate_iteration_delay(cls, value: float) -> float:
        if value < 0:
            raise ValueError("RALPH_ITERATION_DELAY must be >= 0")
        return value

    def resolve(self) -> "RalphSettings":
        """Anchor relative directories at the project root."""

        root = self.project_root.expanduser().resolve()
        self.project_root = root
        self.state_dir = _anchor(root, self.state_dir)
        self.agents_dir = _anchor(root, self.agents_dir)
        self.presets_dir = _anchor(root, self.presets_dir)
        return self


def _anchor(root: Path, path: Path) -> Path:
    path = path.expanduser()
    return path if path.is_absolute() else (root / path).resolve()


@lru_cache(maxsize=1)
def get_settings() -> RalphSettings:
    """Return cached settings instance."""

    return RalphSettings().resolve()


__all__ = ["DEFAULT_MODEL", "RalphSettings", "get_settings"]
