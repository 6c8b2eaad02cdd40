"""End-to-end orchestration runs against a temporary repository."""

import json
import os
import signal
import threading
import time

import pytest

from auto_claude_plans.errors import CycleError, DirtyWorkingTreeError, PlanError
from auto_claude_plans.git_helper import GitHelper
from auto_claude_plans.models import PullRequestInfo
from auto_claude_plans.orchestrator import (
    INTERRUPT_EXIT_CODE, Orchestrator, generate_pr_body, pr_title,
)
from auto_claude_plans.plan_store import load_plan, save_plan

from conftest import git, script_backend, write_plan

SERIAL_PLAN = """
metadata:
  title: Demo
steps:
  - id: a
    description: first step
    status: pending
  - id: b
    description: second step
    status: pending
    deps: [a]
"""

PARALLEL_PLAN = """
metadata:
  title: Fan out
steps:
  - id: a
    description: setup
    status: pending
  - id: b
    description: left
    status: pending
    parallel: true
  - id: c
    description: right
    status: pending
    parallel: true
  - id: d
    description: join
    status: pending
    deps: [b, c]
"""

BLOCKING_PLAN = """
metadata:
  title: Flaky
steps:
  - id: a
    description: FAIL on purpose
    status: pending
  - id: b
    description: needs a
    status: pending
    deps: [a]
"""


@pytest.fixture
def orchestrator_for(make_config, fake_worker):
    def _make(repo, **overrides):
        config = make_config(
            repo, agents={'fake': script_backend('fake', fake_worker)},
            **overrides)
        return Orchestrator(config)
    return _make


def _branch_file(repo, branch, path):
    return git(repo, 'show', f'{branch}:{path}', check=False)


def test_serial_plan_runs_to_completion(temp_git_repo, orchestrator_for):
    orch = orchestrator_for(temp_git_repo)
    plan_file = write_plan(
        temp_git_repo / ".agent-work" / "plans" / "2024-05-01-demo.yaml",
        SERIAL_PLAN)

    assert orch.run() is True

    helper = GitHelper(str(temp_git_repo))
    assert helper.current_branch() == 'main'
    assert helper.branch_exists('plan/demo')
    assert not os.path.exists(orch.locks.lock_path())

    # the archived plan and reports live on the work branch
    helper.checkout('plan/demo')
    assert not plan_file.exists()

    archived = load_plan(os.path.join(orch.config.completed_dir,
                                      plan_file.name))
    assert archived.metadata['outcome'] == 'success'
    assert archived.metadata['source_branch'] == 'main'
    assert archived.metadata['work_branch'] == 'plan/demo'
    assert [s['status'] for s in archived.steps] == ['complete', 'complete']
    assert archived.get_step('a')['agent'] == 'fake'

    assert _branch_file(temp_git_repo, 'plan/demo', 'a.txt').stdout == 'done a\n'
    log = git(temp_git_repo, 'log', '--format=%s', 'plan/demo').stdout
    assert 'feat: step a' in log
    assert 'chore: complete plan 2024-05-01-demo.yaml' in log

    reports = os.listdir(orch.config.reports_dir)
    assert '2024-05-01-demo-a-report.yaml' in reports
    assert not os.listdir(orch.config.temp_dir)

    assert len(orch.pull_requests) == 1
    assert orch.pull_requests[0].title == 'Plan: demo'


def test_parallel_batch_uses_worktrees(temp_git_repo, orchestrator_for):
    orch = orchestrator_for(temp_git_repo, parallel_enabled=True,
                            max_parallel=3)
    write_plan(temp_git_repo / ".agent-work" / "plans" / "fan-out.yaml",
               PARALLEL_PLAN)

    assert orch.run() is True
    assert orch.conflicts == []
    for name in ('a', 'b', 'c', 'd'):
        shown = _branch_file(temp_git_repo, 'plan/fan-out', f'{name}.txt')
        assert shown.returncode == 0, name
    log = git(temp_git_repo, 'log', '--format=%s', 'plan/fan-out').stdout
    assert 'feat: step b' in log and 'feat: step c' in log

    helper = GitHelper(str(temp_git_repo))
    assert len(helper.list_worktrees()) == 1
    branches = git(temp_git_repo, 'branch', '--list', 'worktree-*').stdout
    assert branches.strip() == ''


def test_blocked_step_stops_plan_and_can_be_resumed(temp_git_repo,
                                                   orchestrator_for):
    orch = orchestrator_for(temp_git_repo)
    plan_file = write_plan(
        temp_git_repo / ".agent-work" / "plans" / "flaky.yaml", BLOCKING_PLAN)

    assert orch.run() is False
    helper = GitHelper(str(temp_git_repo))
    assert helper.current_branch() == 'plan/flaky'
    plan = load_plan(str(plan_file))
    assert plan.get_step('a')['status'] == 'blocked'
    assert plan.get_step('a')['blocked_reason'] == 'told to fail'
    assert plan.get_step('b')['status'] == 'pending'
    assert not helper.has_uncommitted_changes()

    assert orch.unblock(str(plan_file), dry_run=True) == ['a']
    plan.get_step('a')['description'] = 'works now'
    save_plan(plan)
    assert orch.unblock(str(plan_file)) == ['a']
    step = load_plan(str(plan_file)).get_step('a')
    assert step['status'] == 'pending'
    assert 'blocked_reason' not in step
    assert not helper.has_uncommitted_changes()

    assert orchestrator_for(temp_git_repo).run(resume=True) is True
    archived = load_plan(os.path.join(orch.config.completed_dir, 'flaky.yaml'))
    assert archived.metadata['outcome'] == 'success'


def test_resume_resets_interrupted_steps(temp_git_repo, orchestrator_for):
    orch = orchestrator_for(temp_git_repo)
    plan_file = write_plan(
        temp_git_repo / ".agent-work" / "plans" / "flaky.yaml", BLOCKING_PLAN)
    orch.run()

    plan = load_plan(str(plan_file))
    plan.get_step('a')['status'] = 'in_progress'
    plan.get_step('a')['description'] = 'interrupted'
    save_plan(plan)
    git(temp_git_repo, 'commit', '-q', '-am', 'simulate interruption')

    assert orchestrator_for(temp_git_repo).run(resume=True) is True


def test_unblock_unknown_step(temp_git_repo, orchestrator_for):
    orch = orchestrator_for(temp_git_repo)
    plan_file = write_plan(temp_git_repo / "plan.yaml", SERIAL_PLAN)
    with pytest.raises(PlanError):
        orch.unblock(str(plan_file), step_id='a')


def test_dirty_tree_aborts_and_releases_lock(temp_git_repo, orchestrator_for):
    orch = orchestrator_for(temp_git_repo)
    write_plan(temp_git_repo / ".agent-work" / "plans" / "demo.yaml",
               SERIAL_PLAN)
    (temp_git_repo / "README.md").write_text("dirty\n")

    with pytest.raises(DirtyWorkingTreeError):
        orch.run()
    assert not os.path.exists(orch.locks.lock_path())
    assert GitHelper(str(temp_git_repo)).current_branch() == 'main'


def test_cycle_aborts_before_any_dispatch(temp_git_repo, orchestrator_for):
    orch = orchestrator_for(temp_git_repo)
    plan_file = write_plan(
        temp_git_repo / ".agent-work" / "plans" / "cycle.yaml", """
        steps:
          - {id: a, description: a, deps: [b]}
          - {id: b, description: b, deps: [a]}
        """)

    with pytest.raises(CycleError):
        orch.run()
    assert 'work_branch' not in plan_file.read_text()
    assert GitHelper(str(temp_git_repo)).current_branch() == 'main'


def test_dry_run_changes_nothing(temp_git_repo, orchestrator_for, capsys):
    orch = orchestrator_for(temp_git_repo)
    plan_file = write_plan(
        temp_git_repo / ".agent-work" / "plans" / "demo.yaml", SERIAL_PLAN)
    before = plan_file.read_text()

    assert orch.run(dry_run=True) is True
    assert plan_file.read_text() == before
    out = capsys.readouterr().out
    assert "demo.yaml (2 pending, 0 complete, 0 blocked)" in out
    assert "next: a" in out
    assert not GitHelper(str(temp_git_repo)).branch_exists('plan/demo')


def test_already_dispatched_plans_are_skipped(temp_git_repo, orchestrator_for,
                                              capsys):
    orch = orchestrator_for(temp_git_repo)
    write_plan(temp_git_repo / ".agent-work" / "plans" / "demo.yaml",
               "metadata:\n  work_branch: plan/demo\n" + SERIAL_PLAN.replace(
                   "metadata:\n  title: Demo\n", ""))
    assert orch.run() is True
    assert "already-dispatched" in capsys.readouterr().out


def test_pr_helpers(tmp_path):
    plan = load_plan(str(write_plan(tmp_path / "2024-01-01-thing.yaml", """
        metadata: {outcome: partial}
        steps:
          - {id: a, description: done, status: complete}
          - {id: b, description: stuck, status: blocked, blocked_reason: why}
    """)))
    body = generate_pr_body(plan)
    assert "1/2 complete, 1 blocked" in body
    assert "- [x] **a**: done" in body
    assert "  - Blocked: why" in body
    assert pr_title(plan.file_path) == "Plan: thing"
    assert pr_title("plain.yaml") == "Plan: plain"


def test_bitbucket_pr_used_when_configured(temp_git_repo, orchestrator_for,
                                           tmp_path):
    remote = tmp_path / "remote.git"
    git(tmp_path, 'init', '-q', '--bare', str(remote))
    git(temp_git_repo, 'remote', 'add', 'origin', str(remote))

    class FakeBitbucket:
        def __init__(self):
            self.created = []

        def create_pull_request(self, pr: PullRequestInfo):
            self.created.append(pr)
            return "https://bitbucket.org/team/repo/pull-requests/1"

    orch = orchestrator_for(temp_git_repo)
    orch.bitbucket = FakeBitbucket()
    write_plan(temp_git_repo / ".agent-work" / "plans" / "demo.yaml",
               SERIAL_PLAN)

    assert orch.run() is True
    assert orch.bitbucket.created[0].head_branch == 'plan/demo'
    assert orch.pull_requests[0].url.endswith('/pull-requests/1')


def _review_log(fake_worker):
    path = fake_worker.parent / "reviews.jsonl"
    with open(path, encoding='utf-8') as f:
        return [json.loads(line) for line in f if line.strip()]


def test_review_records_are_stored_in_plan_and_reports(temp_git_repo,
                                                       orchestrator_for,
                                                       fake_worker):
    orch = orchestrator_for(temp_git_repo, review_enabled=True)
    plan_file = write_plan(
        temp_git_repo / ".agent-work" / "plans" / "2024-05-01-demo.yaml",
        SERIAL_PLAN)

    assert orch.run() is True
    GitHelper(str(temp_git_repo)).checkout('plan/demo')
    archived = load_plan(os.path.join(orch.config.completed_dir,
                                      plan_file.name))
    for step_id in ('a', 'b'):
        assert archived.get_step(step_id)['reviews'] == [
            {'iteration': 1, 'approved': True, 'feedback': []}]
    report = os.path.join(orch.config.reports_dir,
                          '2024-05-01-demo-a-report.yaml')
    with open(report, encoding='utf-8') as f:
        assert 'approved: true' in f.read()

    reviews = _review_log(fake_worker)
    assert [r['stepIds'] for r in reviews] == [['a'], ['b']]
    first = reviews[0]
    assert first['cwd'] == os.path.realpath(str(temp_git_repo))
    assert "- a.txt" in first['prompt']
    # the plan's own in_progress bookkeeping is not up for review
    assert ".agent-work/plans/2024-05-01-demo.yaml" not in first['prompt']


def test_parallel_reviews_run_inside_worktrees(temp_git_repo, orchestrator_for,
                                               fake_worker):
    orch = orchestrator_for(temp_git_repo, parallel_enabled=True,
                            max_parallel=3, review_enabled=True)
    write_plan(temp_git_repo / ".agent-work" / "plans" / "fan-out.yaml",
               PARALLEL_PLAN)

    assert orch.run() is True
    cwds = {r['stepIds'][0]: r['cwd'] for r in _review_log(fake_worker)}
    assert set(cwds) == {'a', 'b', 'c', 'd'}
    repo = os.path.realpath(str(temp_git_repo))
    assert cwds['a'] == repo and cwds['d'] == repo
    for step_id in ('b', 'c'):
        assert os.path.basename(cwds[step_id]).startswith(
            f"worktree-{step_id}-")


# -- interrupts -----------------------------------------------------------------

needs_proc = pytest.mark.skipif(not os.path.isdir('/proc/self'),
                                reason="needs /proc")


def _signal_when_agent_starts(pid_file, signum):
    def _fire():
        deadline = time.time() + 30
        while time.time() < deadline:
            if pid_file.exists() and pid_file.read_text().strip():
                os.kill(os.getpid(), signum)
                return
            time.sleep(0.05)
    thread = threading.Thread(target=_fire, daemon=True)
    thread.start()
    return thread


def _is_gone(pid, timeout=10):
    """True once *pid* has exited (a zombie counts as exited)."""
    deadline = time.time() + timeout
    while time.time() < deadline:
        try:
            with open(f"/proc/{pid}/stat") as f:
                state = f.read().rsplit(')', 1)[1].split()[0]
        except FileNotFoundError:
            return True
        if state in ('Z', 'X'):
            return True
        time.sleep(0.05)
    return False


def _assert_interrupted(orch, exc_info, pid_file, plan_file):
    assert exc_info.value.code == INTERRUPT_EXIT_CODE
    assert _is_gone(int(pid_file.read_text()))
    assert not os.path.exists(orch.locks.lock_path())
    assert orch.locks.list_plan_locks() == []
    assert signal.getsignal(signal.SIGINT) != orch._handle_signal
    assert load_plan(str(plan_file)).get_step('a')['status'] == 'in_progress'


@needs_proc
def test_sigterm_kills_workers_and_releases_locks(temp_git_repo,
                                                  orchestrator_for,
                                                  fake_worker):
    orch = orchestrator_for(temp_git_repo)
    plan_file = write_plan(
        temp_git_repo / ".agent-work" / "plans" / "slow.yaml",
        SERIAL_PLAN.replace("first step", "SLOW_WORK step"))
    pid_file = fake_worker.parent / "agent.pid"

    thread = _signal_when_agent_starts(pid_file, signal.SIGTERM)
    with pytest.raises(SystemExit) as exc_info:
        orch.run()
    thread.join(timeout=5)
    _assert_interrupted(orch, exc_info, pid_file, plan_file)


@needs_proc
def test_sigint_during_review_kills_the_reviewer(temp_git_repo,
                                                 orchestrator_for,
                                                 fake_worker):
    orch = orchestrator_for(temp_git_repo, review_enabled=True)
    plan_file = write_plan(
        temp_git_repo / ".agent-work" / "plans" / "slow.yaml",
        SERIAL_PLAN.replace("first step", "SLOW_REVIEW step"))
    pid_file = fake_worker.parent / "agent.pid"

    thread = _signal_when_agent_starts(pid_file, signal.SIGINT)
    with pytest.raises(SystemExit) as exc_info:
        orch.run()
    thread.join(timeout=5)
    assert _review_log(fake_worker)[0]['stepIds'] == ['a']
    _assert_interrupted(orch, exc_info, pid_file, plan_file)
    assert orch._aux_runs == set()
