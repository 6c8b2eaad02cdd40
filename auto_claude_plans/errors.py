"""Exception hierarchy.

Only plan-level failures are raised out of the engine; step-level
failures are recorded into the plan and reports instead.
"""

from typing import Iterable, List, Optional


class OrchestratorError(Exception):
    """Base class for fatal orchestration errors."""


class PlanError(OrchestratorError):
    """The plan document could not be read or is structurally unusable."""


class CycleError(OrchestratorError):
    """The dependency graph contains a cycle."""

    def __init__(self, step_ids: Iterable[str]):
        self.step_ids: List[str] = list(step_ids)
        super().__init__(
            "Circular dependency detected among steps: "
            + ", ".join(self.step_ids))


class LockError(OrchestratorError):
    """Another orchestrator holds the execution lock."""

    def __init__(self, reason: str, pid: Optional[int] = None):
        self.reason = reason
        self.pid = pid
        super().__init__(reason)


class DirtyWorkingTreeError(OrchestratorError):
    """Uncommitted changes exist where a clean tree is required."""


class GitError(OrchestratorError):
    """A git command exited non-zero."""

    def __init__(self, cmd: List[str], stdout: str = "", stderr: str = "",
                 returncode: Optional[int] = None):
        self.cmd = cmd
        self.stdout = stdout
        self.stderr = stderr
        self.returncode = returncode
        super().__init__(
            f"git command failed: {' '.join(cmd)}\n"
            f"stdout: {stdout}\nstderr: {stderr}"
        )


class AgentSpawnError(OrchestratorError):
    """The agent executable could not be started."""

    def __init__(self, agent_name: str, reason: str, message: str = ""):
        self.agent_name = agent_name
        self.reason = reason
        super().__init__(message or f"{agent_name}: {reason}")
