"""Completion sentinel detection."""

from __future__ import annotations

from typing import Mapping

from .models import SENTINELS, AgentRole


class SignalDetector:
    """Exact-substring matcher for the fixed per-role sentinels."""

    def __init__(self, sentinels: Mapping[AgentRole, str] | None = None) -> None:
        self._sentinels = dict(sentinels or SENTINELS)

    def sentinel(self, role: AgentRole) -> str:
        return self._sentinels[role]

    @staticmethod
    def detect(text: str, sentinel: str) -> bool:
        if not sentinel:
            return False
        return sentinel in text

    def detect_role(self, text: str, role: AgentRole) -> bool:
        return self.detect(text, self._sentinels[role])

    def scan(self, text: str) -> frozenset[AgentRole]:
        return frozenset(role for role, sentinel in self._sentinels.items() if sentinel in text)


__all__ = ["SignalDetector"]
