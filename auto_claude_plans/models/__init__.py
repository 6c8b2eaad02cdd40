"""Data models used by the resolver, invokers and the orchestrator."""

from auto_claude_plans.models.enums import (
    StepStatus, PlanOutcome, FailoverReason, ReviewStatus, Severity,
    STARTED_STATUSES, TERMINAL_STATUSES,
)
from auto_claude_plans.models.results import AgentRunResult, StepResult
from auto_claude_plans.models.review import (
    FeedbackItem, ReviewResult, ReviewRecord,
)
from auto_claude_plans.models.git import (
    WorktreeInfo, PullRequestInfo, ReplayConflict,
)

__all__ = [
    "StepStatus",
    "PlanOutcome",
    "FailoverReason",
    "ReviewStatus",
    "Severity",
    "STARTED_STATUSES",
    "TERMINAL_STATUSES",
    "AgentRunResult",
    "StepResult",
    "FeedbackItem",
    "ReviewResult",
    "ReviewRecord",
    "WorktreeInfo",
    "PullRequestInfo",
    "ReplayConflict",
]
