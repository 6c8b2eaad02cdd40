"""Condensed plans: the assigned steps plus their completed dependency closure.

Workers receive a temporary copy of the plan containing only what they
need, which keeps large plans from flooding the agent's context.
"""

import os
import re
import time
from datetime import datetime, timezone
from typing import Any, List, Sequence

from ruamel.yaml.comments import CommentedMap, CommentedSeq

from auto_claude_plans.plan_store import Plan, dump_yaml
from auto_claude_plans.models import StepStatus


def _natural_key(value: Any):
    return [int(part) if part.isdigit() else part
            for part in re.split(r'(\d+)', str(value))]


def completed_dependencies(plan: Plan, step_ids: Sequence[str]) -> List[Any]:
    """Completed steps reachable through ``deps`` from *step_ids*.

    Traversal stops at dependencies that are not complete.
    """
    by_id = {str(s.get('id')): s for s in plan.steps}
    collected: List[str] = []

    def collect(step_id: str):
        step = by_id.get(step_id)
        if step is None:
            return
        for dep in step.get('deps') or []:
            dep = str(dep)
            if dep in collected:
                continue
            dep_step = by_id.get(dep)
            if dep_step is not None and \
                    dep_step.get('status') == StepStatus.COMPLETE.value:
                collected.append(dep)
                collect(dep)

    for sid in step_ids:
        collect(sid)
    return [by_id[sid] for sid in collected]


def generate_condensed_plan(plan: Plan, step_ids: Sequence[str]
                            ) -> CommentedMap:
    """Build the condensed document (not yet written anywhere)."""
    wanted = set(step_ids)
    deps = completed_dependencies(plan, step_ids)
    dep_ids = {str(s.get('id')) for s in deps}
    assigned = [s for s in plan.steps
                if str(s.get('id')) in wanted and str(s.get('id')) not in dep_ids]
    ordered = sorted(deps + assigned, key=lambda s: _natural_key(s.get('id')))

    metadata = CommentedMap()
    if plan.doc.get('metadata'):
        for key, value in plan.metadata.items():
            metadata[key] = value
    metadata['condensed'] = True
    metadata['source_plan'] = plan.file_path
    metadata['condensed_at'] = datetime.now(timezone.utc).isoformat()
    metadata['assigned_steps'] = CommentedSeq(list(step_ids))

    doc = CommentedMap()
    doc['metadata'] = metadata
    doc['steps'] = CommentedSeq(ordered)
    return doc


def write_condensed_plan(temp_dir: str, plan: Plan,
                         step_ids: Sequence[str]) -> str:
    """Generate and write a condensed plan; returns the temp file path."""
    os.makedirs(temp_dir, exist_ok=True)
    base = os.path.splitext(plan.file_name)[0]
    suffix = re.sub(r'[^a-zA-Z0-9.-]', '_', '-'.join(step_ids))
    file_name = f"{base}-{suffix}-{int(time.time() * 1000)}.yaml"
    path = os.path.join(temp_dir, file_name)

    content = dump_yaml(generate_condensed_plan(plan, step_ids))
    with open(path, 'w', encoding='utf-8') as f:
        f.write(content)
    return path


def delete_condensed_plan(path: str):
    try:
        if os.path.exists(path):
            os.unlink(path)
    except OSError as exc:
        print(f"[ORCH] Warning: failed to delete temp plan {path}: {exc}")

