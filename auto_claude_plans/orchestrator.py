"""Plan orchestrator.

Runs the steps of a YAML plan through worker agents in dependency order.
Each plan is stamped with a work branch and executed there; serial steps
run in the main working tree, and parallel batches run in their own git
worktrees whose commits are cherry-picked back once the whole batch is
done.  Plan files on disk are the only source of truth, so an interrupted
run can be resumed from the work branch.
"""

import concurrent.futures
import os
import signal
import threading
import time
import traceback
from dataclasses import dataclass
from datetime import datetime, timezone
from functools import partial
from typing import Dict, List, Optional, Set, Tuple

from auto_claude_plans.agent import FailoverRun, wait_for_all, wait_for_any
from auto_claude_plans.bitbucket_api import BitbucketAPI
from auto_claude_plans.condensed_plan import (
    delete_condensed_plan, write_condensed_plan,
)
from auto_claude_plans.config import OrchestratorConfig
from auto_claude_plans.edit import invoke_edit_agent
from auto_claude_plans.errors import (
    AgentSpawnError, DirtyWorkingTreeError, LockError, PlanError,
)
from auto_claude_plans.git_helper import GitHelper, derive_branch_name
from auto_claude_plans.lock import LockManager
from auto_claude_plans.models import (
    AgentRunResult, PlanOutcome, PullRequestInfo, ReplayConflict,
    ReviewRecord, StepResult, StepStatus, WorktreeInfo,
)
from auto_claude_plans.plan_store import (
    Plan, completed_plan_names, get_plan_files, load_plan,
    move_plan_to_completed, find_plan_for_branch, resolve_plan_path,
    save_plan, update_steps_status,
)
from auto_claude_plans.progress import ProgressTracker
from auto_claude_plans.reports import build_report, write_report
from auto_claude_plans.resolver import (
    get_blocked_dependents, get_ready_steps, partition_steps,
    resolve_execution_groups,
)
from auto_claude_plans.result_parser import default_result, parse_agent_results
from auto_claude_plans.review import invoke_review_agent, run_review_cycle

INTERRUPT_EXIT_CODE = 130


@dataclass
class Dispatch:
    """One in-flight agent invocation and what it needs for harvesting."""
    step_ids: List[str]
    temp_plan_file: str
    cwd: str
    run: FailoverRun
    worktree: Optional[WorktreeInfo] = None


def replay_worktree_commits(git: GitHelper, worktrees: List[WorktreeInfo]
                            ) -> List[ReplayConflict]:
    """Cherry-pick each worktree's commits onto the current branch.

    Commit lists are collected before anything is applied, and every
    commit is applied in order.  A commit that does not apply cleanly is
    aborted and reported; the rest of the batch still goes through.
    Worktrees and their branches are always removed.
    """
    pending: List[Tuple[str, WorktreeInfo]] = []
    for wt in worktrees:
        try:
            commits = git.commit_range('HEAD', wt.branch)
        except Exception as exc:
            print(f"[ORCH] Failed to list commits of {wt.branch}: {exc}")
            continue
        if commits:
            print(f"[ORCH] Found {len(commits)} commit(s) in worktree "
                  f"{wt.branch}")
        pending.extend((sha, wt) for sha in commits)

    conflicts: List[ReplayConflict] = []
    if pending:
        print(f"[ORCH] Replaying {len(pending)} commit(s) from parallel agents")
    for sha, wt in pending:
        if git.cherry_pick(sha):
            print(f"[ORCH] Cherry-picked {sha[:7]} from {wt.branch}")
            continue
        print(f"[ORCH] Cherry-pick conflict for commit {sha[:7]} from "
              f"{wt.branch}; steps affected: {', '.join(wt.step_ids)}. "
              f"Manual resolution required.")
        git.cherry_pick_abort()
        conflicts.append(ReplayConflict(commit=sha, branch=wt.branch,
                                        step_ids=list(wt.step_ids),
                                        error="cherry-pick conflict"))

    for wt in worktrees:
        try:
            git.remove_worktree(wt.path)
            git.delete_branch(wt.branch, force=True)
            print(f"[ORCH] Cleaned up worktree: {wt.branch}")
        except Exception as exc:
            print(f"[ORCH] Failed to clean up worktree {wt.branch}: {exc}")
    return conflicts


def generate_pr_body(plan: Plan) -> str:
    steps = plan.steps
    completed = plan.count(StepStatus.COMPLETE)
    blocked = plan.count(StepStatus.BLOCKED)
    outcome = plan.metadata.get('outcome')

    lines = [
        "## Plan Summary",
        "",
        "- **Status:** " + ("All steps complete"
                            if outcome == PlanOutcome.SUCCESS.value
                            else "Partial (some steps blocked)"),
        f"- **Steps:** {completed}/{len(steps)} complete"
        + (f", {blocked} blocked" if blocked else ""),
        "",
        "## Steps",
        "",
    ]
    for step in steps:
        status = step.get('status')
        mark = {'complete': 'x', 'blocked': '-'}.get(status, ' ')
        lines.append(f"- [{mark}] **{step.get('id')}**: "
                     f"{step.get('description', '')}")
        if status == StepStatus.BLOCKED.value and step.get('blocked_reason'):
            lines.append(f"  - Blocked: {step.get('blocked_reason')}")
    lines += ["", "---", "*Generated by auto-claude-plans*"]
    return "\n".join(lines)


def pr_title(plan_file: str) -> str:
    name = os.path.splitext(os.path.basename(plan_file))[0]
    if len(name) > 11 and name[:10].replace('-', '').isdigit() \
            and name[10] == '-':
        name = name[11:]
    return f"Plan: {name}"


class Orchestrator:
    """Drives plans through worker agents until they reach a terminal state."""

    def __init__(self, config: OrchestratorConfig,
                 git: Optional[GitHelper] = None,
                 locks: Optional[LockManager] = None,
                 bitbucket: Optional[BitbucketAPI] = None):
        self.config = config
        self.git = git or GitHelper(config.repo_root, config.worktree_dir,
                                    debug=config.debug)
        self.locks = locks or LockManager(config.work_dir, debug=config.debug)
        self.bitbucket = bitbucket or BitbucketAPI.from_config(config)
        self._executor: Optional[concurrent.futures.ThreadPoolExecutor] = None
        # future -> dispatch
        self._futures: Dict[concurrent.futures.Future, Dispatch] = {}
        # review and edit agents running on the main thread
        self._aux_runs: Set[FailoverRun] = set()
        self._held_locks: List[Optional[str]] = []
        self._stop_requested = False
        self._previous_handlers: Dict[int, object] = {}
        self.conflicts: List[ReplayConflict] = []
        self.pull_requests: List[PullRequestInfo] = []

    # -- signal handling ------------------------------------------------------

    def _register_signals(self):
        if threading.current_thread() is not threading.main_thread():
            return
        for signum in (signal.SIGINT, signal.SIGTERM):
            self._previous_handlers[signum] = signal.signal(
                signum, self._handle_signal)

    def _restore_signals(self):
        for signum, handler in self._previous_handlers.items():
            if handler is not None:
                signal.signal(signum, handler)
        self._previous_handlers = {}

    def _handle_signal(self, signum, frame):
        running = len(self._futures) + len(self._aux_runs)
        print(f"\n[ORCH] Received signal {signum}, stopping "
              f"{running} running agent(s)...")
        self._stop_requested = True
        self.kill_agents()
        self._release_locks()
        raise SystemExit(INTERRUPT_EXIT_CODE)

    def kill_agents(self):
        for dispatch in list(self._futures.values()):
            dispatch.run.kill()
        for run in list(self._aux_runs):
            run.kill()

    # -- locking --------------------------------------------------------------

    def _acquire_lock(self, plan_id: Optional[str] = None):
        result = self.locks.acquire(plan_id=plan_id,
                                    worktree_path=self.config.repo_root
                                    if plan_id else None)
        if not result.acquired:
            raise LockError(f"Cannot start: {result.reason}", result.pid)
        if result.stale:
            print("[LOCK] Reclaimed stale lock")
        self._held_locks.append(plan_id)

    def _release_lock(self, plan_id: Optional[str] = None):
        self.locks.release(plan_id)
        if plan_id in self._held_locks:
            self._held_locks.remove(plan_id)

    def _release_locks(self):
        for plan_id in list(reversed(self._held_locks)):
            self._release_lock(plan_id)

    # -- helpers --------------------------------------------------------------

    def _in_repo(self, path: str) -> bool:
        root = os.path.realpath(self.config.repo_root)
        return os.path.realpath(path).startswith(root + os.sep)

    def _commit(self, message: str, files: Optional[List[str]] = None,
                cwd: Optional[str] = None) -> Optional[str]:
        if files is not None:
            files = [f for f in files if self._in_repo(f)]
            if not files:
                return None
        sha = self.git.commit(message, files=files, cwd=cwd)
        if sha:
            print(f"[ORCH] Committed: {message.splitlines()[0]} ({sha[:7]})")
        return sha

    def _on_stdout_line(self, line: str, step_ids: List[str]):
        if self.config.verbose and line.strip():
            print(f"[{','.join(step_ids)}] {line}")

    def _on_stderr_line(self, line: str, step_ids: List[str]):
        if self.config.verbose and line.strip():
            print(f"[{','.join(step_ids)}:stderr] {line}")

    def _check_clean_tree(self):
        if self.git.has_uncommitted_changes():
            raise DirtyWorkingTreeError(
                "Uncommitted changes detected. Please commit or stash before "
                "running the orchestrator.")

    # -- entry points ---------------------------------------------------------

    def run(self, plan: Optional[str] = None, dry_run: bool = False,
            resume: bool = False) -> bool:
        """Process pending plans (or resume the current branch's plan).

        Returns True when every processed plan finished successfully.
        """
        self.config.ensure_directories()
        if self.config.parallel_enabled:
            print(f"[ORCH] Parallel mode enabled (max "
                  f"{self.config.max_parallel} concurrent agents)")

        if not dry_run:
            self._acquire_lock()
            self._register_signals()
        try:
            print("=== Plan Orchestrator Starting ===\n")
            source_branch = self.git.current_branch()
            print(f"[ORCH] Source branch: {source_branch}")
            self._check_clean_tree()

            if resume:
                return self.resume(plan, dry_run=dry_run)

            plan_files = self._discover_plans(plan)
            if plan_files is None:
                return True
            for path in plan_files:
                resolve_execution_groups(load_plan(path).steps)

            if dry_run:
                self.print_dry_run_summary(plan_files)
                return True

            print(f"[ORCH] Found {len(plan_files)} plan(s) to process:")
            for path in plan_files:
                print(f"  - {os.path.basename(path)}")

            all_successful = True
            for index, path in enumerate(plan_files):
                final = self.process_plan_with_branching(path, source_branch)
                if final.is_complete() and final.is_successful():
                    if self.git.current_branch() != source_branch:
                        print(f"\n[ORCH] Returning to source branch: "
                              f"{source_branch}")
                        self.git.checkout(source_branch)
                    continue

                all_successful = False
                print(f"\n[ORCH] Plan \"{os.path.basename(path)}\" is blocked.")
                print(f"[ORCH] Staying on work branch: "
                      f"{final.metadata.get('work_branch')}")
                print("To continue: fix the blocked steps, then run "
                      "'auto-claude-plans resume'")
                remaining = len(plan_files) - index - 1
                if remaining:
                    print(f"\n[ORCH] Skipped {remaining} remaining plan(s).")
                break

            print("\n=== Orchestrator Complete ===")
            return all_successful
        finally:
            if not dry_run:
                self._release_locks()
                self._restore_signals()

    def _discover_plans(self, plan_arg: Optional[str]) -> Optional[List[str]]:
        done = completed_plan_names(self.config.completed_dir)
        if plan_arg:
            path = resolve_plan_path(plan_arg, self.config.plans_dir)
            if path is None:
                raise PlanError(f"Plan file not found: {plan_arg}")
            if os.path.basename(path) in done:
                print(f"[ORCH] Plan already completed: "
                      f"{os.path.basename(path)}")
                return None
            candidates = [path]
        else:
            candidates = [p for p in get_plan_files(self.config.plans_dir)
                          if os.path.basename(p) not in done]

        fresh, dispatched = [], []
        for path in candidates:
            plan = load_plan(path)
            work_branch = plan.metadata.get('work_branch')
            if work_branch:
                dispatched.append((path, work_branch))
            else:
                fresh.append(path)

        if dispatched:
            print(f"[ORCH] Skipping {len(dispatched)} already-dispatched "
                  f"plan(s):")
            for path, branch in dispatched:
                print(f"  - {os.path.basename(path)} (work branch: {branch})")
        if not fresh:
            print(f"[ORCH] No new plans to process in "
                  f"{self.config.plans_dir}")
            return None
        return fresh

    def print_dry_run_summary(self, plan_files: List[str]):
        print("Dry run: no changes will be made.")
        print(f"Plans to process ({len(plan_files)}):")
        for path in plan_files:
            plan = load_plan(path)
            complete = plan.count(StepStatus.COMPLETE)
            blocked = plan.count(StepStatus.BLOCKED)
            pending = len(plan.steps) - complete - blocked
            print(f"  - {os.path.basename(path)} ({pending} pending, "
                  f"{complete} complete, {blocked} blocked)")
            ready = get_ready_steps(plan)
            if ready:
                print(f"    next: {', '.join(str(s.get('id')) for s in ready)}")

    def resume(self, plan_arg: Optional[str] = None,
               dry_run: bool = False) -> bool:
        """Continue the plan whose work branch is checked out."""
        print("=== Resume Mode ===\n")
        branch = self.git.current_branch()

        if plan_arg:
            path = resolve_plan_path(plan_arg, self.config.plans_dir)
            if path is None:
                raise PlanError(f"Plan file not found: {plan_arg}")
            plan = load_plan(path)
            work_branch = plan.metadata.get('work_branch')
            if not work_branch:
                raise PlanError("Plan has no work_branch; it has not been "
                                "dispatched yet. Use 'exec --plan' first.")
            if work_branch != branch:
                raise PlanError(f"Plan expects branch '{work_branch}' but you "
                                f"are on '{branch}'. Run: git checkout "
                                f"{work_branch}")
        else:
            plan = find_plan_for_branch(self.config.plans_dir, branch,
                                        self.config.completed_dir)
            if plan is None:
                raise PlanError(f"No plan found with work_branch matching "
                                f"'{branch}'")
        resolve_execution_groups(plan.steps)
        print(f"[ORCH] Found plan: {plan.file_name}")

        if plan.is_complete():
            print("[ORCH] Plan is already complete (no pending steps).")
            return plan.is_successful()

        in_progress = [s for s in plan.steps
                       if s.get('status') == StepStatus.IN_PROGRESS.value]
        print(f"[ORCH] Pending steps: {plan.count(StepStatus.PENDING)}")
        if dry_run:
            if in_progress:
                print(f"[ORCH] Would retry {len(in_progress)} in-progress "
                      f"step(s)")
            self.print_dry_run_summary([plan.file_path])
            return True

        if in_progress:
            print(f"[ORCH] In-progress steps (will be retried): "
                  f"{len(in_progress)}")
            for step in in_progress:
                step['status'] = StepStatus.PENDING.value
            save_plan(plan)

        print("\nResuming plan execution...\n")
        self._acquire_lock(plan.name)
        try:
            final = self.process_plan(plan.file_path)
            self._finish_plan(final, plan.metadata.get('source_branch')
                              or 'main')
        finally:
            self._release_lock(plan.name)
        print("\n=== Resume Complete ===")
        return final.is_complete() and final.is_successful()

    def unblock(self, plan_file: str, step_id: Optional[str] = None,
                dry_run: bool = False, commit: bool = True) -> List[str]:
        """Reset blocked steps (all, or just *step_id*) to pending.

        Clears ``blocked_reason`` and commits the plan file.  Returns the
        ids that were (or, for a dry run, would be) unblocked.
        """
        plan = load_plan(plan_file)
        blocked = [s for s in plan.steps
                   if s.get('status') == StepStatus.BLOCKED.value]
        if step_id is not None:
            blocked = [s for s in blocked if str(s.get('id')) == step_id]
            if not blocked:
                raise PlanError(f"Step \"{step_id}\" is not blocked or does "
                                f"not exist.")
        ids = [str(s.get('id')) for s in blocked]
        if dry_run or not ids:
            return ids

        update_steps_status(plan_file, [
            {'step_id': sid, 'status': StepStatus.PENDING.value,
             'extras': {'blocked_reason': None}}
            for sid in ids
        ])
        print(f"[ORCH] Unblocked {len(ids)} step(s): {', '.join(ids)}")
        if commit:
            self._commit(f"chore: unblock steps in {plan.name}", [plan_file])
        return ids

    # -- per-plan lifecycle ---------------------------------------------------

    def process_plan_with_branching(self, plan_file: str,
                                    source_branch: str) -> Plan:
        """Stamp, branch, execute and (when terminal) archive one plan."""
        name = os.path.basename(plan_file)
        print(f"\n--- Processing: {name} ---\n")

        work_branch = derive_branch_name(name)
        print(f"[ORCH] Work branch: {work_branch}")

        plan = load_plan(plan_file)
        plan.metadata['source_branch'] = source_branch
        plan.metadata['work_branch'] = work_branch
        save_plan(plan)
        self._commit(f"chore: dispatch plan {name} to {work_branch}",
                     [plan_file])

        if self.git.branch_exists(work_branch):
            print(f"[ORCH] Work branch {work_branch} already exists, "
                  f"checking out...")
            self.git.checkout(work_branch)
        else:
            print(f"[ORCH] Creating work branch: {work_branch}")
            self.git.create_branch(work_branch)

        self._acquire_lock(plan.name)
        try:
            final = self.process_plan(plan_file)
            self._finish_plan(final, source_branch)
        finally:
            self._release_lock(plan.name)
        return final

    def _finish_plan(self, plan: Plan, source_branch: str):
        name = plan.file_name
        if not plan.is_complete():
            self._commit(f"wip: progress on plan {name}")
            print("\n[ORCH] Plan not complete. Work branch preserved for "
                  "later continuation.")
            return

        self.archive_plan(plan)
        self._commit(f"chore: complete plan {name}")
        pr = self.git.create_pull_request(pr_title(name),
                                          generate_pr_body(plan),
                                          source_branch)
        if self.bitbucket is not None and pr.pushed:
            url = self.bitbucket.create_pull_request(pr)
            if url:
                pr.url = url
        self.pull_requests.append(pr)
        self.log_pull_request_info(pr)

    def archive_plan(self, plan: Plan) -> str:
        """Stamp completion metadata and move the plan to the completed dir.

        ``plan.file_path`` is updated to the archived location.
        """
        success = plan.is_successful()
        plan.metadata['completed_at'] = datetime.now(timezone.utc).isoformat()
        plan.metadata['outcome'] = (PlanOutcome.SUCCESS if success
                                    else PlanOutcome.PARTIAL).value
        save_plan(plan)
        dest = move_plan_to_completed(plan.file_path,
                                      self.config.completed_dir)
        plan.file_path = dest
        print(f"\n[ORCH] Plan archived: "
              f"{'SUCCESS' if success else 'PARTIAL (some steps blocked)'}")
        print(f"  -> {dest}")
        return dest

    @staticmethod
    def log_pull_request_info(pr: PullRequestInfo):
        print("\n=== Pull Request Ready ===\n")
        if pr.pushed:
            print(f"Branch pushed: {pr.head_branch} -> origin")
        else:
            print(f"Note: could not push branch. Run: git push -u origin "
                  f"{pr.head_branch}")
        print(f"\nBase branch: {pr.base_branch}")
        print(f"Head branch: {pr.head_branch}")
        if pr.url:
            print(f"\nCreate PR: {pr.url}")
        else:
            print("\nCould not generate PR URL (no remote configured).")
        print("\n--- PR Title ---")
        print(pr.title)
        print("\n--- PR Body ---")
        print(pr.body)
        print("----------------\n")

    # -- main loop ------------------------------------------------------------

    def process_plan(self, plan_file: str) -> Plan:
        """Run the dispatch loop until the plan is terminal or stuck."""
        plan = load_plan(plan_file)
        tracker = ProgressTracker(len(plan.steps), plan.file_name)
        tracker.initialize_from_plan(plan)
        tracker.log_start()

        if plan.is_complete():
            print("[ORCH] Plan is already complete.")
            tracker.log_summary()
            return plan

        self._executor = concurrent.futures.ThreadPoolExecutor(
            max_workers=max(1, self.config.max_parallel))
        try:
            while not plan.is_complete() and not self._stop_requested:
                ready = get_ready_steps(plan)

                if not ready:
                    if not self._futures:
                        print("[ORCH] Plan is blocked - no executable steps "
                              "remaining.")
                        break
                    self._wait_and_harvest(plan_file, tracker)
                    plan = load_plan(plan_file)
                    continue

                running = sum(len(d.step_ids) for d in self._futures.values())
                batch = partition_steps(ready, self.config.max_parallel,
                                        running)
                if not batch:
                    self._wait_and_harvest(plan_file, tracker)
                    plan = load_plan(plan_file)
                    continue

                step_ids = [str(s.get('id')) for s in batch]
                use_worktree = self.config.parallel_enabled and len(batch) > 1
                tracker.log_step_start(step_ids)
                dispatched = [self._start_step(plan_file, sid, use_worktree)
                              for sid in step_ids]

                if use_worktree:
                    self._wait_for_batch(plan_file, dispatched, tracker)
                else:
                    self._wait_and_harvest(plan_file, tracker)
                plan = load_plan(plan_file)
        except Exception as exc:
            print(f"[ORCH] Orchestration failed: {exc}")
            traceback.print_exc()
            self.kill_agents()
            raise
        finally:
            self._executor.shutdown(wait=True)
            self._executor = None

        tracker.log_summary()
        return plan

    def _start_step(self, plan_file: str, step_id: str,
                    use_worktree: bool) -> Dispatch:
        update_steps_status(plan_file, [
            {'step_id': step_id, 'status': StepStatus.IN_PROGRESS.value}])
        plan = load_plan(plan_file)
        temp_plan = write_condensed_plan(self.config.temp_dir, plan,
                                         [step_id])

        cwd = self.config.repo_root
        worktree = None
        if use_worktree:
            branch = f"worktree-{step_id}-{int(time.time() * 1000)}"
            path = os.path.join(self.git.worktree_base
                                or self.config.worktree_dir, branch)
            try:
                worktree = self.git.add_worktree(path, branch, 'HEAD',
                                                 step_ids=[step_id])
                cwd = worktree.path
                print(f"[ORCH] Created worktree for {step_id}: {path}")
            except Exception as exc:
                print(f"[ORCH] Failed to create worktree: {exc}; "
                      f"falling back to the main repository")

        run = FailoverRun(self.config, temp_plan, [step_id], cwd,
                          self._on_stdout_line, self._on_stderr_line)
        dispatch = Dispatch(step_ids=[step_id], temp_plan_file=temp_plan,
                            cwd=cwd, run=run, worktree=worktree)
        future = self._executor.submit(run.run)
        self._futures[future] = dispatch
        return dispatch

    def _wait_and_harvest(self, plan_file: str, tracker: ProgressTracker):
        """Wait for any running agent and record what it produced."""
        done = wait_for_any(self._futures)
        for future in [f for f in self._futures if f in done]:
            dispatch = self._futures.pop(future)
            results = self._harvest(plan_file, future, dispatch, tracker)
            if dispatch.worktree is None:
                message = next((r.commit_message for r in results
                                if r.commit_message), None) or \
                    f"feat: complete step(s) {', '.join(dispatch.step_ids)}"
                self._commit(message)
            else:
                self._finish_worktrees([dispatch.worktree], dispatch.step_ids)

    def _wait_for_batch(self, plan_file: str, batch: List[Dispatch],
                        tracker: ProgressTracker):
        """Wait for every member of a parallel batch, then replay commits."""
        futures = [f for f, d in self._futures.items() if d in batch]
        wait_for_all(futures)
        step_ids: List[str] = []
        for future in futures:
            dispatch = self._futures.pop(future)
            self._harvest(plan_file, future, dispatch, tracker)
            step_ids.extend(dispatch.step_ids)
        self._finish_worktrees([d.worktree for d in batch if d.worktree],
                               step_ids)

    def _finish_worktrees(self, worktrees: List[WorktreeInfo],
                          step_ids: List[str]):
        self._commit(f"chore: record results for step(s) "
                     f"{', '.join(step_ids)}")
        conflicts = replay_worktree_commits(self.git, worktrees)
        self.conflicts.extend(conflicts)
        # agents that fell back to the main tree leave changes behind
        self._commit(f"feat: complete step(s) {', '.join(step_ids)}")

    # -- harvesting -----------------------------------------------------------

    def _harvest(self, plan_file: str, future: concurrent.futures.Future,
                 dispatch: Dispatch, tracker: ProgressTracker
                 ) -> List[StepResult]:
        """Turn one finished invocation into plan updates and reports."""
        try:
            result = future.result()
        except AgentSpawnError as exc:
            print(f"[ORCH] Could not start any agent for "
                  f"{', '.join(dispatch.step_ids)}: {exc}")
            result = AgentRunResult(step_ids=dispatch.step_ids, exit_code=None,
                                    stderr=str(exc))
        except Exception as exc:
            print(f"[ORCH] Agent invocation failed for "
                  f"{', '.join(dispatch.step_ids)}: {exc}")
            result = AgentRunResult(step_ids=dispatch.step_ids, exit_code=None,
                                    stderr=str(exc))

        agent_name = result.agent_name or 'unknown'
        print(f"[ORCH] Agent {agent_name} for step(s) "
              f"{', '.join(dispatch.step_ids)} exited with code "
              f"{result.exit_code}")
        if result.failed and (self.config.verbose or self.config.debug):
            if result.stderr:
                print(f"[{agent_name}] stderr:\n{result.stderr}")
            if result.stdout:
                print(f"[{agent_name}] stdout:\n{result.stdout}")

        parsed = {r.step_id: r for r in parse_agent_results(result.stdout)}
        updates, reports, results = [], [], []
        for step_id in dispatch.step_ids:
            step_result = parsed.get(step_id)
            if step_result is None:
                if self.config.debug:
                    print(f"[ORCH] No report found for step {step_id}")
                step_result = default_result(step_id, result.exit_code,
                                             result.stderr)

            reviews: List[ReviewRecord] = []
            if self.config.review_enabled and step_result.is_complete \
                    and not self._stop_requested:
                observers = dict(on_stdout_line=self._on_stdout_line,
                                 on_stderr_line=self._on_stderr_line,
                                 active_runs=self._aux_runs)
                step_result, reviews = run_review_cycle(
                    self.config, step_result, dispatch.temp_plan_file,
                    dispatch.cwd, git=self.git,
                    review_agent=partial(invoke_review_agent, **observers),
                    edit_agent=partial(invoke_edit_agent, **observers),
                    exclude_files=[plan_file])

            extras = {
                'agent': agent_name,
                'blocked_reason': step_result.blocked_reason
                if not step_result.is_complete else None,
            }
            if reviews:
                extras['reviews'] = [r.to_dict() for r in reviews]
            updates.append({'step_id': step_id,
                            'status': step_result.status.value,
                            'extras': extras})
            reports.append(build_report(step_result, agent_name, reviews))
            results.append(step_result)

        if dispatch.worktree is not None:
            message = next((r.commit_message for r in results
                            if r.commit_message), None) or \
                f"wip: attempt step(s) {', '.join(dispatch.step_ids)}"
            self._commit(message, cwd=dispatch.worktree.path)

        update_steps_status(plan_file, updates)
        for report in reports:
            write_report(self.config.reports_dir, plan_file, report)

        for step_result in results:
            if step_result.is_complete:
                tracker.record_complete(step_result.step_id)
            else:
                tracker.record_blocked(step_result.step_id)
        tracker.log_progress()

        plan = load_plan(plan_file)
        for step_result in results:
            if step_result.is_complete:
                continue
            dependents = get_blocked_dependents(plan, step_result.step_id)
            if dependents:
                print(f"[ORCH] Step {step_result.step_id} blocked. Dependent "
                      f"steps affected: {', '.join(dependents)}")

        delete_condensed_plan(dispatch.temp_plan_file)
        return results
