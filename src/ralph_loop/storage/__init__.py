"""Persistent loop state: sessions, checkpoints, memory and settings."""

from .checkpoint import CheckpointManager
from .memory import MemorySection, MemoryStats, MemoryStore
from .models import Checkpoint, PersistedSettings, Phase, SessionMetadata
from .sessions import SessionError, SessionStore, SessionSummary, SessionWorkspace, slugify

__all__ = [
    "Checkpoint",
    "CheckpointManager",
    "MemorySection",
    "MemoryStats",
    "MemoryStore",
    "PersistedSettings",
    "Phase",
    "SessionError",
    "SessionMetadata",
    "SessionStore",
    "SessionSummary",
    "SessionWorkspace",
    "slugify",
]
