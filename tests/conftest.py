"""Shared fixtures: temporary git repositories, plans and fake agents."""

import os
import subprocess
import sys
import textwrap
from pathlib import Path

import pytest

from auto_claude_plans.config import AgentBackend, OrchestratorConfig


def git(repo, *args, check=True):
    return subprocess.run(['git', *args], cwd=str(repo), capture_output=True,
                          text=True, check=check)


@pytest.fixture
def temp_git_repo(tmp_path: Path) -> Path:
    repo = tmp_path / "repo"
    repo.mkdir()
    git(repo, 'init', '-q')
    git(repo, 'checkout', '-q', '-b', 'main')
    git(repo, 'config', 'user.email', 'test@example.com')
    git(repo, 'config', 'user.name', 'Test User')
    git(repo, 'config', 'commit.gpgsign', 'false')
    (repo / "README.md").write_text("# test\n", encoding="utf-8")
    git(repo, 'add', '-A')
    git(repo, 'commit', '-q', '-m', 'initial commit')
    return repo


def write_plan(path: Path, content: str) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(textwrap.dedent(content).lstrip(), encoding="utf-8")
    return path


# Writes "<id>.txt" for every assigned step and reports it complete.  Steps
# whose description contains "FAIL" are reported blocked instead.  When the
# prompt is a review prompt it approves, appending what it saw to
# reviews.jsonl next to this script.  "SLOW_WORK" or "SLOW_REVIEW" in a
# description makes the matching role record its pid in agent.pid and
# sleep.
FAKE_WORKER = '''
import json
import os
import sys
import time

from ruamel.yaml import YAML

here = os.path.dirname(os.path.abspath(__file__))
plan_file, step_ids = sys.argv[1], sys.argv[2].split(",")
prompt = sys.argv[3] if len(sys.argv) > 3 else ""
with open(plan_file) as f:
    plan = YAML(typ="safe").load(f)
steps = {str(s["id"]): s for s in plan["steps"]}
descriptions = " ".join(steps[sid].get("description", "") for sid in step_ids)
reviewing = "## Changed Files" in prompt


def linger():
    with open(os.path.join(here, "agent.pid"), "w") as out:
        out.write(str(os.getpid()))
    time.sleep(60)


if reviewing:
    with open(os.path.join(here, "reviews.jsonl"), "a") as out:
        out.write(json.dumps({"cwd": os.getcwd(), "stepIds": step_ids,
                              "prompt": prompt}) + "\\n")
    if "SLOW_REVIEW" in descriptions:
        linger()
    print(json.dumps({"status": "approved"}))
    sys.exit(0)

if "SLOW_WORK" in descriptions:
    linger()
print("Working on the assigned steps {not json}")
for sid in step_ids:
    if "FAIL" in steps[sid].get("description", ""):
        print(json.dumps({"stepId": sid, "status": "blocked",
                          "blockedReason": "told to fail"}))
        continue
    with open(sid + ".txt", "w") as out:
        out.write("done " + sid + "\\n")
    print(json.dumps({"stepId": sid, "status": "complete",
                      "summary": "wrote " + sid,
                      "artifacts": [sid + ".txt"],
                      "commitMessage": "feat: step " + sid}))
'''


@pytest.fixture
def fake_worker(tmp_path: Path) -> Path:
    script = tmp_path / "fake_worker.py"
    script.write_text(FAKE_WORKER, encoding="utf-8")
    return script


def script_backend(name: str, script: Path) -> AgentBackend:
    """A backend running *script* with the plan file and step ids."""
    return AgentBackend(name, sys.executable,
                        [str(script), '{planFile}', '{stepIds}', 'PROMPT'])


@pytest.fixture
def make_config(tmp_path: Path):
    def _make(repo: Path, agents=None, **overrides) -> OrchestratorConfig:
        config = OrchestratorConfig.resolve(
            env={'PLANS_STATE_DIR': str(tmp_path / "state")},
            repo_root=str(repo))
        if agents is not None:
            config.agents = agents
            config.agent_priority = list(agents)
            config.default_agent = next(iter(agents))
        for key, value in overrides.items():
            setattr(config, key, value)
        return config
    return _make


@pytest.fixture(autouse=True)
def _no_dotenv_leak(monkeypatch):
    for key in list(os.environ):
        if key.startswith('PLANS_') or key.startswith('BITBUCKET_'):
            monkeypatch.delenv(key, raising=False)
