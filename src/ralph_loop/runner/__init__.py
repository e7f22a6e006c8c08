"""Agent CLI and validation command execution."""

from .agent import (
    AgentAuthError,
    AgentNotFoundError,
    AgentRunResult,
    AgentRunner,
    AgentRunnerError,
    FakeAgentRunner,
    RunOutcome,
    ToolPermission,
    serialize_result,
)
from .validation import (
    ValidationCommand,
    ValidationConfigError,
    ValidationResult,
    load_validation_commands,
    run_validations,
    summarize_failures,
)

__all__ = [
    "AgentAuthError",
    "AgentNotFoundError",
    "AgentRunResult",
    "AgentRunner",
    "AgentRunnerError",
    "FakeAgentRunner",
    "RunOutcome",
    "ToolPermission",
    "ValidationCommand",
    "ValidationConfigError",
    "ValidationResult",
    "load_validation_commands",
    "run_validations",
    "serialize_result",
    "summarize_failures",
]
