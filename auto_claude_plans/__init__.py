"""Auto-Claude-Plans: execute YAML step plans with AI coding agents,
with dependency ordering, agent failover, git worktrees for parallel
steps and an optional review/edit loop."""

from auto_claude_plans.config import OrchestratorConfig, AgentBackend
from auto_claude_plans.errors import (
    OrchestratorError, PlanError, CycleError, LockError,
    DirtyWorkingTreeError, GitError, AgentSpawnError,
)
from auto_claude_plans.models import StepStatus, AgentRunResult, StepResult
from auto_claude_plans.plan_store import (
    Plan, load_plan, save_plan, update_step_status, update_steps_status,
    validate_plan_structure,
)
from auto_claude_plans.resolver import (
    get_ready_steps, resolve_execution_groups, partition_steps,
)
from auto_claude_plans.lock import LockManager
from auto_claude_plans.git_helper import GitHelper
from auto_claude_plans.agent import invoke_agent, invoke_with_failover
from auto_claude_plans.orchestrator import Orchestrator
from auto_claude_plans.utils import cleanup_worktrees, cleanup_temp_plans
