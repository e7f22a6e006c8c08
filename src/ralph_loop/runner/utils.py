"""Utility helpers for agent and validation subprocesses."""

from __future__ import annotations

import os
from typing import Mapping

# the agent works inside the project's own environment, not the loop's
_LOOP_ENVIRONMENT = frozenset({"PYTHONHOME", "PYTHONPATH", "VIRTUAL_ENV", "PIP_RESPECT_VIRTUALENV"})
_LOOP_PREFIX = "RALPH_"


def sanitize_environment(additional: Mapping[str, str] | None = None) -> dict[str, str]:
    """Environment for child processes with the loop's virtualenv and RALPH_* settings removed."""

    env = {
        key: value
        for key, value in os.environ.items()
        if key not in _LOOP_ENVIRONMENT and not key.startswith(_LOOP_PREFIX)
    }
    if additional:
        env.update(additional)
    return env


def tail(text: str, limit: int) -> str:
    """Return at most ``limit`` trailing characters of ``text``."""

    if limit <= 0:
        return ""
    return text if len(text) <= limit else text[-limit:]


__all__ = ["sanitize_environment", "tail"]
