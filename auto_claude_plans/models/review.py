"""Review feedback and per-iteration review records."""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from auto_claude_plans.models.enums import Severity


@dataclass
class FeedbackItem:
    comment: str
    severity: Severity = Severity.SUGGESTION
    file: Optional[str] = None
    line: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'severity': self.severity.value,
            'file': self.file,
            'line': self.line,
            'comment': self.comment,
        }


@dataclass
class ReviewResult:
    """Parsed reviewer verdict.

    ``error`` records why the output could not be interpreted; such
    results are treated as approvals so a broken reviewer never blocks a
    step on its own.
    """
    approved: bool
    feedback: List[FeedbackItem] = field(default_factory=list)
    error: Optional[str] = None


@dataclass
class ReviewRecord:
    iteration: int
    approved: bool
    feedback: List[FeedbackItem] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'iteration': self.iteration,
            'approved': self.approved,
            'feedback': [fb.to_dict() for fb in self.feedback],
        }
