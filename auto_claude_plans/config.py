"""Configuration: agent backends, prompts and runtime settings.

Environment variables are loaded once at import time (with optional
``.env`` file support via *python-dotenv*).  Settings are then resolved
into an explicit :class:`OrchestratorConfig` with the precedence
CLI flag > environment variable > default, and that object is passed to
every component.
"""

import hashlib
import os
import re
from dataclasses import dataclass, field, replace
from typing import Dict, List, Mapping, Optional, Pattern

from dotenv import load_dotenv

from auto_claude_plans.result_parser import format_instructions

load_dotenv()

PROCESS_MARKERS = ('auto-claude-plans', 'auto_claude_plans')

# -- Prompts ------------------------------------------------------------------

WORKER_PROMPT = f"""You are a Worker Agent executing plan steps.

Plan file: {{planFile}}
Steps to execute: {{stepIds}}

## Workflow

For each step:

1. Read the plan file to understand the step's requirements, criteria, and files
2. Execute: Implement the changes following project conventions. Commit your work.
3. Verify: Run tests and confirm acceptance criteria are met. Fix issues before proceeding.
4. Report: Output a JSON result for the step (see format below)

{format_instructions()}

## Exit Codes

- Exit 0: All steps completed successfully
- Exit 1: One or more steps blocked

## Rules

- The plan file is READ-ONLY, never modify it
- Complete each step fully before starting the next
- Output clean JSON to stdout with no extra text or markdown wrapping"""

REVIEW_PROMPT = """You are a Review Agent checking the work done for plan steps.

Plan file: {planFile}
Steps to review: {stepIds}

Read each step's requirements and criteria from the plan file, then inspect
the uncommitted changes listed below. Do NOT modify any files.

Output exactly one JSON object to stdout:
{"status": "approved"}
or
{"status": "needs_changes", "feedback": [{"comment": "...", "file": "path", "line": 12, "severity": "blocking"}]}

Use severity "blocking" for defects that violate the requirements or criteria
and "suggestion" for optional improvements."""


# -- Agent backends -----------------------------------------------------------

@dataclass
class AgentBackend:
    """A worker executable plus its argument template.

    ``{planFile}`` and ``{stepIds}`` are substituted in every argument.
    The prompt is conventionally the last argument.
    """
    name: str
    command: str
    args: List[str] = field(default_factory=list)
    stderr_is_progress: bool = False

    def render_args(self, plan_file: str, step_ids: List[str]) -> List[str]:
        ids = ",".join(step_ids)
        return [a.replace('{planFile}', plan_file).replace('{stepIds}', ids)
                for a in self.args]

    def with_prompt(self, prompt: str) -> 'AgentBackend':
        args = list(self.args)
        if args:
            args[-1] = prompt
        return replace(self, args=args)


def default_agents(prompt: str = WORKER_PROMPT) -> Dict[str, AgentBackend]:
    return {
        'claude': AgentBackend(
            'claude', 'claude',
            ['--model', 'sonnet', '--dangerously-skip-permissions',
             '-p', prompt]),
        # codex and gemini write progress to stderr, results to stdout
        'codex': AgentBackend(
            'codex', 'codex', ['exec', '--yolo', prompt],
            stderr_is_progress=True),
        'gemini': AgentBackend(
            'gemini', 'gemini', ['--yolo', '-p', prompt],
            stderr_is_progress=True),
    }


DEFAULT_AGENT_PRIORITY = ['codex', 'gemini', 'claude']
DEFAULT_AGENT = 'codex'
DEFAULT_AGENT_TIMEOUT = 600
DEFAULT_PARALLEL_MAX = 3
DEFAULT_REVIEW_MAX_ITERATIONS = 3

# stderr classifiers deciding which non-zero exits are worth a failover
DEFAULT_ERROR_PATTERNS: Dict[str, List[str]] = {
    'api_error': [
        r'API error', r'connection refused', r'ECONNRESET', r'ETIMEDOUT',
        r'network error', r'rate limit', r'\b429\b', r'\b502\b', r'\b503\b',
    ],
    'token_limit': [
        r'token limit', r'context.*(limit|length|exceeded)',
        r'maximum.*tokens', r'too long',
    ],
}


def compile_error_patterns(
        patterns: Mapping[str, List[str]]) -> Dict[str, List[Pattern]]:
    return {kind: [re.compile(p, re.IGNORECASE) for p in pats]
            for kind, pats in patterns.items()}


# -- Value parsing ------------------------------------------------------------

_TRUE = {'true', '1', 'yes', 'y', 'on'}
_FALSE = {'false', '0', 'no', 'n', 'off'}


def parse_bool(value) -> Optional[bool]:
    """Parse a boolean flag; ``None`` when unset or unrecognised."""
    if value is None:
        return None
    if isinstance(value, bool):
        return value
    normalized = str(value).strip().lower()
    if normalized in _TRUE:
        return True
    if normalized in _FALSE:
        return False
    return None


def parse_positive_int(value) -> Optional[int]:
    if value is None:
        return None
    try:
        parsed = int(str(value).strip())
    except ValueError:
        return None
    return parsed if parsed > 0 else None


def project_id(repo_root: str) -> str:
    """Deterministic ``<basename>-<sha8>`` identifier for a repository."""
    root = os.path.abspath(repo_root)
    base = os.path.basename(root) or 'root'
    sanitized = re.sub(r'[^a-zA-Z0-9._-]', '_', base)
    digest = hashlib.sha256(root.encode('utf-8')).hexdigest()[:8]
    return f"{sanitized}-{digest}"


def _first(*values):
    for v in values:
        if v is not None:
            return v
    return None


# -- Resolved configuration ---------------------------------------------------

@dataclass
class OrchestratorConfig:
    repo_root: str
    work_dir: str
    state_dir: str
    agents: Dict[str, AgentBackend] = field(default_factory=default_agents)
    agent_priority: List[str] = field(
        default_factory=lambda: list(DEFAULT_AGENT_PRIORITY))
    default_agent: str = DEFAULT_AGENT
    failover_enabled: bool = True
    agent_timeout: float = DEFAULT_AGENT_TIMEOUT
    error_patterns: Dict[str, List[Pattern]] = field(
        default_factory=lambda: compile_error_patterns(DEFAULT_ERROR_PATTERNS))
    parallel_enabled: bool = False
    max_parallel: int = 1
    review_enabled: bool = False
    review_max_iterations: int = DEFAULT_REVIEW_MAX_ITERATIONS
    worker_prompt: str = WORKER_PROMPT
    review_prompt: str = REVIEW_PROMPT
    verbose: bool = False
    debug: bool = False
    bitbucket_access_token: Optional[str] = None
    bitbucket_workspace: Optional[str] = None
    bitbucket_repo_slug: Optional[str] = None

    # -- layout ---------------------------------------------------------------

    @property
    def plans_dir(self) -> str:
        return os.path.join(self.work_dir, 'plans')

    @property
    def completed_dir(self) -> str:
        return os.path.join(self.work_dir, 'completed')

    @property
    def reports_dir(self) -> str:
        return os.path.join(self.work_dir, 'reports')

    @property
    def temp_dir(self) -> str:
        return os.path.join(self.work_dir, 'temp')

    @property
    def locks_dir(self) -> str:
        return os.path.join(self.work_dir, 'locks')

    @property
    def worktree_dir(self) -> str:
        return os.path.join(self.state_dir, 'worktrees',
                            project_id(self.repo_root))

    @property
    def timeout_log(self) -> str:
        return os.path.join(self.reports_dir, 'timeouts.log')

    @property
    def failure_log(self) -> str:
        return os.path.join(self.reports_dir, 'failures.log')

    def ensure_directories(self):
        """Create the working layout.

        Lock files and condensed plans are kept out of commits with a
        ``.gitignore`` in the work dir.
        """
        for d in (self.plans_dir, self.completed_dir, self.reports_dir,
                  self.temp_dir, self.locks_dir, self.worktree_dir):
            os.makedirs(d, exist_ok=True)
        ignore = os.path.join(self.work_dir, '.gitignore')
        if not os.path.exists(ignore):
            with open(ignore, 'w') as f:
                f.write("temp/\nlocks/\n*.lock\n")

    # -- derived views --------------------------------------------------------

    def available_agents(self) -> List[str]:
        """Backend names to try, in order."""
        if not self.failover_enabled:
            name = self.default_agent if self.default_agent in self.agents \
                else next(iter(self.agents), None)
            return [name] if name else []
        return [n for n in self.agent_priority if n in self.agents]

    def with_prompt(self, prompt: str) -> 'OrchestratorConfig':
        """Copy whose backends all carry *prompt* as their last argument."""
        agents = {n: a.with_prompt(prompt) for n, a in self.agents.items()}
        return replace(self, agents=agents)

    # -- resolution -----------------------------------------------------------

    @classmethod
    def resolve(cls, env: Optional[Mapping[str, str]] = None,
                repo_root: Optional[str] = None,
                work_dir: Optional[str] = None,
                parallel: Optional[bool] = None,
                review: Optional[bool] = None,
                review_max_iterations: Optional[int] = None,
                agent_timeout: Optional[float] = None,
                verbose: bool = False,
                debug: bool = False) -> 'OrchestratorConfig':
        """Resolve settings once: CLI value > environment > default."""
        env = os.environ if env is None else env

        root = os.path.abspath(
            _first(repo_root, env.get('PLANS_REPO_ROOT') or None, os.getcwd()))

        external = work_dir or env.get('PLANS_WORK_DIR')
        if external and external.strip():
            resolved_work = os.path.join(os.path.abspath(external.strip()),
                                         project_id(root))
        else:
            resolved_work = os.path.join(root, '.agent-work')

        state_dir = env.get('PLANS_STATE_DIR') or os.path.expanduser(
            '~/.auto-claude-plans')

        priority_env = env.get('PLANS_AGENT_PRIORITY')
        priority = ([p.strip() for p in priority_env.split(',') if p.strip()]
                    if priority_env else list(DEFAULT_AGENT_PRIORITY))

        parallel_enabled = _first(
            parse_bool(parallel), parse_bool(env.get('PLANS_PARALLEL_ENABLED')),
            False)
        max_parallel = 1
        if parallel_enabled:
            max_parallel = _first(
                parse_positive_int(env.get('PLANS_PARALLEL_MAX')),
                DEFAULT_PARALLEL_MAX)

        timeout = agent_timeout if agent_timeout and agent_timeout > 0 else \
            _first(parse_positive_int(env.get('PLANS_AGENT_TIMEOUT')),
                   DEFAULT_AGENT_TIMEOUT)

        return cls(
            repo_root=root,
            work_dir=resolved_work,
            state_dir=state_dir,
            agent_priority=priority,
            default_agent=env.get('PLANS_DEFAULT_AGENT') or DEFAULT_AGENT,
            failover_enabled=_first(
                parse_bool(env.get('PLANS_FAILOVER_ENABLED')), True),
            agent_timeout=timeout,
            parallel_enabled=parallel_enabled,
            max_parallel=max_parallel,
            review_enabled=_first(
                parse_bool(review), parse_bool(env.get('PLANS_REVIEW_ENABLED')),
                False),
            review_max_iterations=_first(
                parse_positive_int(review_max_iterations),
                parse_positive_int(env.get('PLANS_REVIEW_MAX_ITERATIONS')),
                DEFAULT_REVIEW_MAX_ITERATIONS),
            verbose=verbose,
            debug=debug,
            bitbucket_access_token=env.get('BITBUCKET_ACCESS_TOKEN'),
            bitbucket_workspace=env.get('BITBUCKET_WORKSPACE'),
            bitbucket_repo_slug=env.get('BITBUCKET_REPO_SLUG'),
        )
