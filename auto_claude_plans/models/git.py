"""Value objects produced by the branch/worktree manager."""

from dataclasses import dataclass, field
from typing import List


@dataclass
class WorktreeInfo:
    path: str
    branch: str
    step_ids: List[str] = field(default_factory=list)


@dataclass
class PullRequestInfo:
    title: str
    body: str
    head_branch: str
    base_branch: str
    url: str = ""
    pushed: bool = False


@dataclass
class ReplayConflict:
    """A cherry-picked commit that could not be applied."""
    commit: str
    branch: str
    step_ids: List[str] = field(default_factory=list)
    error: str = ""
