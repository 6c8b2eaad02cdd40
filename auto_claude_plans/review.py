"""Review agent and the review/edit cycle run on completed steps.

A reviewer that produces no usable verdict counts as an approval (with
the parse problem recorded), so review never blocks a step on its own.
"""

import os
from typing import Any, Callable, List, Optional, Set, Tuple

from auto_claude_plans.agent import FailoverRun, LineObserver, run_tracked
from auto_claude_plans.config import OrchestratorConfig
from auto_claude_plans.edit import invoke_edit_agent
from auto_claude_plans.models import (
    FeedbackItem, ReviewRecord, ReviewResult, ReviewStatus, Severity,
    StepResult,
)
from auto_claude_plans.result_parser import default_result, extract_json_payload

MAX_DIFF_CHARS = 60000

_STATUS_ALIASES = {
    'approved': ReviewStatus.APPROVED,
    'needs_changes': ReviewStatus.NEEDS_CHANGES,
    'changes_requested': ReviewStatus.NEEDS_CHANGES,
}


def build_review_prompt(template: str, plan_file: str, step_ids: List[str],
                        changed_files: Optional[List[str]] = None,
                        diff: Optional[str] = None) -> str:
    prompt = (template or "").replace('{planFile}', plan_file or "") \
        .replace('{stepIds}', ", ".join(step_ids))
    files = "\n".join(f"- {f}" for f in changed_files or []) or "(none)"
    prompt += f"\n\n## Changed Files\n{files}"
    if diff:
        if len(diff) > MAX_DIFF_CHARS:
            diff = diff[:MAX_DIFF_CHARS] + "\n... (diff truncated)"
        prompt += f"\n\n## Diff\n```diff\n{diff}\n```"
    return prompt


def _feedback_item(entry: Any) -> Optional[FeedbackItem]:
    if isinstance(entry, str):
        return FeedbackItem(comment=entry) if entry.strip() else None
    if not isinstance(entry, dict):
        return None
    comment = entry.get('comment')
    comment = comment if isinstance(comment, str) else str(comment or "")
    if not comment:
        return None
    file = entry.get('file')
    line = entry.get('line')
    return FeedbackItem(
        comment=comment,
        severity=(Severity.BLOCKING if entry.get('severity') == 'blocking'
                  else Severity.SUGGESTION),
        file=file.strip() if isinstance(file, str) and file.strip() else None,
        line=line if isinstance(line, int) and not isinstance(line, bool)
        else None,
    )


def parse_review_results(stdout: str) -> ReviewResult:
    payload = extract_json_payload(stdout)
    if payload is None:
        return ReviewResult(approved=True,
                            error="No JSON review output detected")

    data = payload[0] if isinstance(payload, list) and payload else payload
    if not isinstance(data, dict):
        return ReviewResult(approved=True,
                            error="Review output was not a JSON object")

    raw = data.get('status')
    status = _STATUS_ALIASES.get(raw.strip().lower()) \
        if isinstance(raw, str) else None
    if status is None:
        return ReviewResult(approved=True,
                            error=f"Unrecognized review status: {raw}")

    entries = data.get('feedback') or data.get('comments')
    if not isinstance(entries, list):
        entries = []
    feedback = [fb for fb in map(_feedback_item, entries) if fb]
    return ReviewResult(approved=status is ReviewStatus.APPROVED,
                        feedback=feedback)


def invoke_review_agent(config: OrchestratorConfig, plan_file: str,
                        step_ids: List[str], cwd: str,
                        changed_files: Optional[List[str]] = None,
                        diff: Optional[str] = None,
                        on_stdout_line: Optional[LineObserver] = None,
                        on_stderr_line: Optional[LineObserver] = None,
                        active_runs: Optional[Set[FailoverRun]] = None
                        ) -> ReviewResult:
    """Run the reviewer on *step_ids*.

    While the reviewer runs, its :class:`FailoverRun` is a member of
    *active_runs*, where a signal handler can find and kill it.
    """
    prompt = build_review_prompt(config.review_prompt, plan_file, step_ids,
                                 changed_files, diff)
    result = run_tracked(FailoverRun(config.with_prompt(prompt), plan_file,
                                     step_ids, cwd, on_stdout_line,
                                     on_stderr_line), active_runs)
    return parse_review_results(result.stdout or "")


def _print_feedback(feedback: List[FeedbackItem]):
    for fb in feedback:
        loc = ""
        if fb.file:
            loc = f"  {fb.file}" + (f":{fb.line}" if fb.line else "")
        print(f"[REVIEW]   [{fb.severity.value}]{loc}: {fb.comment}")


def _review_inputs(git, cwd: str, exclude_files: Optional[List[str]]
                   ) -> Tuple[List[str], Optional[str]]:
    """Changed files of *cwd* and their diff, minus *exclude_files*."""
    root = os.path.realpath(cwd)
    excluded = {os.path.relpath(os.path.realpath(p), root)
                for p in exclude_files or []}
    changed = [f for f in git.changed_files(cwd=cwd) if f not in excluded]
    if not changed:
        return [], None
    return changed, git.uncommitted_diff(files=changed, cwd=cwd)


def run_review_cycle(config: OrchestratorConfig, result: StepResult,
                     plan_file: str, cwd: str,
                     git=None,
                     review_agent: Optional[Callable[..., ReviewResult]] = None,
                     edit_agent: Optional[Callable[..., List[StepResult]]] = None,
                     exclude_files: Optional[List[str]] = None
                     ) -> Tuple[StepResult, List[ReviewRecord]]:
    """Review *result* and apply edits until approved or out of iterations.

    *git* (a :class:`~auto_claude_plans.git_helper.GitHelper`) supplies the
    uncommitted diff of *cwd* for each review; paths in *exclude_files*
    (such as the plan file being updated) are left out of it.  Returns the
    final step result and one :class:`ReviewRecord` per review iteration.
    """
    review_agent = review_agent or invoke_review_agent
    edit_agent = edit_agent or invoke_edit_agent
    max_iterations = config.review_max_iterations
    step_id = result.step_id
    records: List[ReviewRecord] = []
    if max_iterations <= 0 or not result.is_complete:
        return result, records

    original_message = result.commit_message
    current = result
    approved = False

    for iteration in range(1, max_iterations + 1):
        print(f"[REVIEW] Iteration {iteration}/{max_iterations} "
              f"for step {step_id}")
        changed_files, diff = [], None
        if git is not None:
            changed_files, diff = _review_inputs(git, cwd, exclude_files)

        review = review_agent(config, plan_file, [step_id], cwd,
                              changed_files=changed_files, diff=diff)
        if review.error:
            print(f"[REVIEW] Warning: review output parse issue for step "
                  f"{step_id}: {review.error}")

        if review.approved:
            print(f"[REVIEW] Approved step {step_id}")
            records.append(ReviewRecord(iteration, True, []))
            approved = True
            break

        print(f"[REVIEW] Step {step_id} needs changes: "
              f"{len(review.feedback)} issue(s)")
        _print_feedback(review.feedback)
        records.append(ReviewRecord(iteration, False, list(review.feedback)))

        if iteration >= max_iterations:
            break

        edited = edit_agent(config, plan_file, [step_id], review.feedback, cwd)
        current = next((r for r in edited if r.step_id == step_id), None) or \
            default_result(step_id, None, "Edit agent returned no report")
        if original_message:
            current.commit_message = original_message
        if not current.is_complete:
            print(f"[REVIEW] Edit agent reported {current.status.value} "
                  f"for step {step_id}")
            break

    if not approved and current.is_complete:
        print(f"[REVIEW] Warning: max iterations reached for step {step_id}, "
              f"proceeding without approval")
    return current, records
