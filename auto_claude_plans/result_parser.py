"""Extraction of structured JSON results from noisy agent output.

Agents narrate freely; the result contract is one JSON object per step,
possibly wrapped in markdown fences or gathered into an array.  Parsing
is tolerant: fenced blocks are tried first, then balanced ``{...}`` /
``[...]`` spans in the raw text.  Candidates failing validation are
dropped, never raised.
"""

import json
import re
from typing import Any, Iterator, List, Optional

from auto_claude_plans.models import StepResult, StepStatus

FENCED_BLOCK = re.compile(r'```(?:json)?\s*([\s\S]*?)```')

REPORT_FIELDS = {
    'stepId': "The ID of the step being executed (string)",
    'status': "One of: 'complete', 'blocked'",
    'summary': "A concise summary of what was done (string)",
    'artifacts': "Array of file paths created or modified (string[])",
    'testResults': "Optional: Test outcome summary (string, e.g., '2/2 passed')",
    'blockedReason': "Required if status is 'blocked' (string)",
    'commitMessage': "A meaningful commit message (string, e.g., 'feat: add login endpoint')",
}


def format_instructions() -> str:
    """Output contract text embedded in the worker prompt."""
    fields = "\n".join(f"- {k}: {v}" for k, v in REPORT_FIELDS.items())
    return (
        "## Output Contract\n\n"
        "Output one JSON object per step to stdout. You may output multiple "
        "objects if processing multiple steps.\n\n"
        f"Fields:\n{fields}\n\n"
        "Success Example:\n"
        '{"stepId": "step-1", "status": "complete", "summary": "Implemented '
        'login", "artifacts": ["src/auth.py"], "testResults": "5/5 passed", '
        '"commitMessage": "feat: add user authentication"}\n\n'
        "Blocked Example:\n"
        '{"stepId": "step-2", "status": "blocked", "blockedReason": "API is '
        'down", "summary": "Could not verify"}\n\n'
        "Rules:\n"
        "- JSON must be valid and on a single line.\n"
        "- Do not wrap in markdown blocks (just raw JSON).\n"
        "- Each step result must be a separate JSON object."
    )


def extract_balanced(text: str, start: int, open_char: str = '{',
                     close_char: str = '}') -> Optional[str]:
    """Return the balanced span starting at *start*, or None if unbalanced.

    Brackets inside double-quoted strings (with backslash escapes) do not
    count towards the depth.
    """
    if start >= len(text) or text[start] != open_char:
        return None

    depth = 0
    in_string = False
    escape_next = False
    for i in range(start, len(text)):
        ch = text[i]
        if escape_next:
            escape_next = False
            continue
        if ch == '\\' and in_string:
            escape_next = True
            continue
        if ch == '"':
            in_string = not in_string
            continue
        if in_string:
            continue
        if ch == open_char:
            depth += 1
        elif ch == close_char:
            depth -= 1
            if depth == 0:
                return text[start:i + 1]
    return None


def _iter_fenced(text: str) -> Iterator[Any]:
    for match in FENCED_BLOCK.finditer(text):
        try:
            yield json.loads(match.group(1).strip())
        except ValueError:
            continue


def _iter_balanced(text: str) -> Iterator[Any]:
    i = 0
    while i < len(text):
        ch = text[i]
        if ch not in '{[':
            i += 1
            continue
        close = '}' if ch == '{' else ']'
        span = extract_balanced(text, i, ch, close)
        if span is None:
            i += 1
            continue
        try:
            yield json.loads(span)
        except ValueError:
            # not JSON; rescan inside the span for nested candidates
            i += 1
            continue
        i += len(span)


def _flatten(payload: Any) -> Iterator[Any]:
    if isinstance(payload, list):
        for item in payload:
            yield item
    else:
        yield payload


def validate_agent_output(data: Any) -> Optional[StepResult]:
    """Validate one candidate against the result contract.

    Returns a normalised :class:`StepResult`, or None when invalid.
    """
    if not isinstance(data, dict):
        return None
    step_id = data.get('stepId')
    if not step_id or not isinstance(step_id, str):
        return None
    status = data.get('status')
    if status not in (StepStatus.COMPLETE.value, StepStatus.BLOCKED.value):
        return None
    blocked_reason = data.get('blockedReason') or data.get('blocked_reason')
    if status == StepStatus.BLOCKED.value and not blocked_reason:
        return None

    artifacts = data.get('artifacts')
    return StepResult(
        step_id=step_id,
        status=StepStatus(status),
        summary=data.get('summary') or (
            'Step blocked' if status == StepStatus.BLOCKED.value
            else 'Step completed'),
        artifacts=list(artifacts) if isinstance(artifacts, list) else [],
        test_results=data.get('testResults') or None,
        blocked_reason=blocked_reason or None,
        commit_message=data.get('commitMessage') or (
            f"wip: attempt step {step_id}" if status == StepStatus.BLOCKED.value
            else f"feat: complete step {step_id}"),
    )


def _collect(candidates: Iterator[Any]) -> List[StepResult]:
    results = []
    for payload in candidates:
        for item in _flatten(payload):
            result = validate_agent_output(item)
            if result is not None:
                results.append(result)
    return results


def parse_agent_results(stdout: str) -> List[StepResult]:
    """Extract every valid step result from *stdout*."""
    if not stdout:
        return []
    results = _collect(_iter_fenced(stdout))
    if results:
        return results
    return _collect(_iter_balanced(stdout))


def extract_json_payload(stdout: str) -> Optional[Any]:
    """First parseable JSON value in *stdout* (fenced blocks preferred)."""
    if not stdout:
        return None
    for payload in _iter_fenced(stdout):
        return payload
    for payload in _iter_balanced(stdout):
        return payload
    return None


def default_result(step_id: str, exit_code: Optional[int],
                   stderr: str = "") -> StepResult:
    """Synthesise a result for a step the agent did not report on."""
    if exit_code == 0:
        return StepResult.complete(
            step_id,
            summary="Step completed (no detailed report from agent)",
            commit_message=f"feat: complete step {step_id}",
        )
    return StepResult.blocked(
        step_id,
        reason=(stderr or "").strip() or f"Agent exited with code {exit_code}",
        summary="Step failed",
        commit_message=f"wip: attempt step {step_id}",
    )
