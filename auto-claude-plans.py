#!/usr/bin/env python3
"""
Run YAML step plans through AI coding agents (claude, codex, gemini).

Environment Variables (all optional, a .env file is honoured):
- PLANS_REPO_ROOT: Repository to work in (defaults to the current directory)
- PLANS_WORK_DIR: External base directory for plans, reports and locks
- PLANS_AGENT_PRIORITY: Comma separated failover order (codex,gemini,claude)
- PLANS_DEFAULT_AGENT: Agent used when failover is disabled
- PLANS_FAILOVER_ENABLED: Try the next agent on spawn errors and timeouts
- PLANS_AGENT_TIMEOUT: Seconds before an agent invocation is killed
- PLANS_PARALLEL_ENABLED / PLANS_PARALLEL_MAX: Parallel steps in worktrees
- PLANS_REVIEW_ENABLED / PLANS_REVIEW_MAX_ITERATIONS: Review/edit loop
- BITBUCKET_ACCESS_TOKEN, BITBUCKET_WORKSPACE, BITBUCKET_REPO_SLUG:
  open the pull request on BitBucket when a plan finishes

Plans live in <work dir>/plans/*.yaml and are archived to
<work dir>/completed/ once every step is complete or blocked.
`auto-claude-plans plans-dir` prints the resolved plans directory and
`auto-claude-plans ingest-plan FILE` validates a plan and copies it there.
"""

import sys

from auto_claude_plans.cli import main


if __name__ == '__main__':
    sys.exit(main())
