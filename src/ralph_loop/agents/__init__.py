"""Agent descriptors, prompt loading, prompt composition and sentinel detection."""

from .loader import AgentCatalog, AgentLoadError, AgentPrompt, split_frontmatter
from .models import AgentDescriptor, AgentRole, SENTINELS
from .prompts import PromptValidationError, ReferenceBlock, TASK_HEADER, build_prompt
from .signals import SignalDetector

__all__ = [
    "AgentCatalog",
    "AgentDescriptor",
    "AgentLoadError",
    "AgentPrompt",
    "AgentRole",
    "PromptValidationError",
    "ReferenceBlock",
    "SENTINELS",
    "SignalDetector",
    "TASK_HEADER",
    "build_prompt",
    "split_frontmatter",
]
