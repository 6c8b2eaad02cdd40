"""Status, outcome and classification enumerations."""

from enum import Enum


class StepStatus(Enum):
    """Status of an individual plan step."""
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETE = "complete"
    BLOCKED = "blocked"


# a step counts as started once it has left pending
STARTED_STATUSES = frozenset({
    StepStatus.IN_PROGRESS.value,
    StepStatus.COMPLETE.value,
    StepStatus.BLOCKED.value,
})

TERMINAL_STATUSES = frozenset({
    StepStatus.COMPLETE.value,
    StepStatus.BLOCKED.value,
})


class PlanOutcome(Enum):
    """Outcome stamped on an archived plan."""
    SUCCESS = "success"
    PARTIAL = "partial"


class FailoverReason(Enum):
    """Why an invocation was handed to the next backend."""
    COMMAND_NOT_FOUND = "command_not_found"
    SPAWN_ERROR = "spawn_error"
    TIMEOUT = "timeout"
    API_ERROR = "api_error"
    TOKEN_LIMIT = "token_limit"


class ReviewStatus(Enum):
    APPROVED = "approved"
    NEEDS_CHANGES = "needs_changes"


class Severity(Enum):
    BLOCKING = "blocking"
    SUGGESTION = "suggestion"
