"""Implementation plan and progress log handling."""

from .checklist import (
    DoneItem,
    OtherLine,
    PendingItem,
    PlanStats,
    Task,
    TaskNotFoundError,
    TaskPlan,
    classify_line,
    reset_plan,
    restore_completed,
)
from .progress import ProgressEntry, ProgressLog

__all__ = [
    "DoneItem",
    "OtherLine",
    "PendingItem",
    "PlanStats",
    "ProgressEntry",
    "ProgressLog",
    "Task",
    "TaskNotFoundError",
    "TaskPlan",
    "classify_line",
    "reset_plan",
    "restore_completed",
]
