"""Agent process results and the per-step result contract."""

from dataclasses import dataclass, field
from typing import Any, List, Optional

from auto_claude_plans.models.enums import StepStatus


@dataclass
class AgentRunResult:
    """Outcome of one worker process (or of a whole failover attempt)."""
    step_ids: List[str]
    exit_code: Optional[int]
    stdout: str = ""
    stderr: str = ""
    timed_out: bool = False
    agent_name: Optional[str] = None

    @property
    def failed(self) -> bool:
        return self.exit_code is not None and self.exit_code != 0


@dataclass
class StepResult:
    """A validated worker result for a single step.

    ``status`` is always either ``StepStatus.COMPLETE`` or
    ``StepStatus.BLOCKED``; ``blocked_reason`` is set iff blocked.
    """
    step_id: str
    status: StepStatus
    summary: str = ""
    artifacts: List[str] = field(default_factory=list)
    test_results: Optional[Any] = None
    blocked_reason: Optional[str] = None
    commit_message: Optional[str] = None

    @property
    def is_complete(self) -> bool:
        return self.status is StepStatus.COMPLETE

    @classmethod
    def complete(cls, step_id: str, summary: str = "Step completed",
                 **kwargs) -> "StepResult":
        return cls(step_id=step_id, status=StepStatus.COMPLETE,
                   summary=summary, **kwargs)

    @classmethod
    def blocked(cls, step_id: str, reason: str,
                summary: str = "Step blocked", **kwargs) -> "StepResult":
        return cls(step_id=step_id, status=StepStatus.BLOCKED,
                   summary=summary, blocked_reason=reason, **kwargs)
