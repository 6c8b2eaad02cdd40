"""Edit agent: re-runs a worker with reviewer feedback appended to its prompt."""

from typing import List, Optional, Set

from auto_claude_plans.agent import FailoverRun, LineObserver, run_tracked
from auto_claude_plans.config import OrchestratorConfig
from auto_claude_plans.models import FeedbackItem, StepResult
from auto_claude_plans.result_parser import parse_agent_results


def format_feedback_list(feedback: List[FeedbackItem]) -> str:
    if not feedback:
        return "No review feedback items provided."
    lines = []
    for index, item in enumerate(feedback, 1):
        file = (item.file or "").strip() or "(not specified)"
        line = f" line: {item.line}" if item.line is not None else ""
        comment = (item.comment or "").strip() or "(no comment provided)"
        lines.append(f"{index}. file: {file}{line} severity: "
                     f"{item.severity.value} comment: {comment}")
    return "\n".join(lines)


def build_edit_prompt(template: str, plan_file: str, step_ids: List[str],
                      feedback: List[FeedbackItem]) -> str:
    base = (template or "").replace('{planFile}', plan_file) \
        .replace('{stepIds}', ",".join(step_ids))
    return (
        f"{base}\n\n## Review Feedback\n{format_feedback_list(feedback)}\n\n"
        "## Instructions\nAddress all review feedback items above before "
        "reporting the step as complete."
    )


def invoke_edit_agent(config: OrchestratorConfig, plan_file: str,
                      step_ids: List[str], feedback: List[FeedbackItem],
                      cwd: str,
                      on_stdout_line: Optional[LineObserver] = None,
                      on_stderr_line: Optional[LineObserver] = None,
                      active_runs: Optional[Set[FailoverRun]] = None
                      ) -> List[StepResult]:
    """Run the worker again with *feedback*; returns the parsed results."""
    prompt = build_edit_prompt(config.worker_prompt, plan_file, step_ids,
                               feedback)
    edit_config = config.with_prompt(prompt)
    result = run_tracked(FailoverRun(edit_config, plan_file, step_ids, cwd,
                                     on_stdout_line, on_stderr_line),
                         active_runs)
    return parse_agent_results(result.stdout or "")
