"""Plan documents: loading, saving and in-place status updates.

Plans are YAML files handled in ruamel.yaml round-trip mode, so comments,
key order and fields the engine does not touch survive every rewrite.
"""

import io
import os
import shutil
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple

from ruamel.yaml import YAML
from ruamel.yaml.comments import CommentedMap
from ruamel.yaml.error import YAMLError

from auto_claude_plans.errors import PlanError
from auto_claude_plans.models import (
    STARTED_STATUSES, TERMINAL_STATUSES, StepStatus,
)
from auto_claude_plans.resolver import detect_cycles

PLAN_SUFFIXES = ('.yaml', '.yml')
VALID_STATUSES = [s.value for s in StepStatus]
REQUIRED_STEP_FIELDS = ('id', 'description')


def _yaml() -> YAML:
    yaml = YAML()
    yaml.preserve_quotes = True
    yaml.width = 4096
    yaml.indent(mapping=2, sequence=4, offset=2)
    return yaml


def dump_yaml(doc: Any) -> str:
    buf = io.StringIO()
    _yaml().dump(doc, buf)
    return buf.getvalue()


def _atomic_write(path: str, content: str):
    tmp_path = f"{path}.tmp"
    try:
        with open(tmp_path, 'w', encoding='utf-8') as f:
            f.write(content)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_path, path)
    finally:
        if os.path.exists(tmp_path):
            os.unlink(tmp_path)


class Plan:
    """A loaded plan document.

    ``metadata`` and ``steps`` are live views into the round-trip
    document; mutate them and call :func:`save_plan`.
    """

    def __init__(self, file_path: str, doc: CommentedMap):
        self.file_path = file_path
        self.doc = doc

    @property
    def file_name(self) -> str:
        return os.path.basename(self.file_path)

    @property
    def name(self) -> str:
        return os.path.splitext(self.file_name)[0]

    @property
    def metadata(self) -> CommentedMap:
        if not isinstance(self.doc.get('metadata'), dict):
            self.doc.insert(0, 'metadata', CommentedMap())
        return self.doc['metadata']

    @property
    def steps(self) -> List[CommentedMap]:
        return self.doc.get('steps') or []

    def get_step(self, step_id: str) -> Optional[CommentedMap]:
        for step in self.steps:
            if str(step.get('id')) == step_id:
                return step
        return None

    def _ids_with(self, statuses: Iterable[str]) -> Set[str]:
        wanted = set(statuses)
        return {str(s.get('id')) for s in self.steps
                if (s.get('status') or StepStatus.PENDING.value) in wanted}

    def completed_ids(self) -> Set[str]:
        return self._ids_with([StepStatus.COMPLETE.value])

    def blocked_ids(self) -> Set[str]:
        return self._ids_with([StepStatus.BLOCKED.value])

    def started_ids(self) -> Set[str]:
        return self._ids_with(STARTED_STATUSES)

    def is_complete(self) -> bool:
        """Every step is complete or blocked."""
        return all(s.get('status') in TERMINAL_STATUSES for s in self.steps)

    def is_successful(self) -> bool:
        return all(s.get('status') == StepStatus.COMPLETE.value
                   for s in self.steps)

    def count(self, status: StepStatus) -> int:
        return sum(1 for s in self.steps
                   if (s.get('status') or StepStatus.PENDING.value)
                   == status.value)


# -- load / save --------------------------------------------------------------

def load_plan(file_path: str) -> Plan:
    try:
        with open(file_path, 'r', encoding='utf-8') as f:
            doc = _yaml().load(f)
    except OSError as exc:
        raise PlanError(f"Cannot read plan {file_path}: {exc}") from exc
    except YAMLError as exc:
        raise PlanError(f"Invalid YAML in {file_path}: {exc}") from exc

    if doc is None:
        raise PlanError(f"Plan file is empty: {file_path}")
    if not isinstance(doc, dict):
        raise PlanError(f"Plan must be a mapping: {file_path}")
    return Plan(file_path, doc)


def save_plan(plan: Plan):
    _atomic_write(plan.file_path, dump_yaml(plan.doc))


def _apply(step: CommentedMap, status: Optional[str],
           extras: Dict[str, Any]):
    if status is not None:
        step['status'] = status
    for key, value in extras.items():
        if value is None:
            step.pop(key, None)
        else:
            step[key] = value


def update_step_status(file_path: str, step_id: str, status: str,
                       **extras) -> bool:
    """Rewrite one step's status (and extra fields) in the plan file.

    An extra whose value is None removes that key.  Returns False when the
    step does not exist.
    """
    return update_steps_status(
        file_path, [{'step_id': step_id, 'status': status, 'extras': extras}]
    ) == 1


def update_steps_status(file_path: str, updates: List[Dict[str, Any]]) -> int:
    """Apply several step updates with a single write.

    Each update is ``{'step_id', 'status', 'extras'?}``.  Returns the number
    of steps changed.
    """
    plan = load_plan(file_path)
    by_id = {u['step_id']: u for u in updates}
    changed = 0
    for step in plan.steps:
        update = by_id.get(str(step.get('id')))
        if update is None:
            continue
        _apply(step, update.get('status'), update.get('extras') or {})
        changed += 1
    if changed:
        save_plan(plan)
    return changed


# -- discovery and archiving --------------------------------------------------

def get_plan_files(directory: str) -> List[str]:
    if not os.path.isdir(directory):
        return []
    return sorted(
        os.path.join(directory, f) for f in os.listdir(directory)
        if f.endswith(PLAN_SUFFIXES)
    )


def completed_plan_names(completed_dir: str) -> Set[str]:
    if not os.path.isdir(completed_dir):
        return set()
    return {f for f in os.listdir(completed_dir) if f.endswith(PLAN_SUFFIXES)}


def move_plan_to_completed(file_path: str, completed_dir: str) -> str:
    os.makedirs(completed_dir, exist_ok=True)
    dest = os.path.join(completed_dir, os.path.basename(file_path))
    shutil.move(file_path, dest)
    return dest


def find_plan_for_branch(plans_dir: str, branch: str,
                         completed_dir: Optional[str] = None) -> Optional[Plan]:
    """The active plan whose ``metadata.work_branch`` equals *branch*."""
    done = completed_plan_names(completed_dir) if completed_dir else set()
    for path in get_plan_files(plans_dir):
        if os.path.basename(path) in done:
            continue
        try:
            plan = load_plan(path)
        except PlanError:
            continue
        if plan.doc.get('metadata') and \
                plan.metadata.get('work_branch') == branch:
            return plan
    return None


def resolve_plan_path(plan_arg: Optional[str], plans_dir: str) -> Optional[str]:
    """Locate a plan given as an absolute path, a relative path or a name."""
    if not plan_arg:
        return None
    if os.path.isabs(plan_arg):
        candidates = [plan_arg]
    else:
        candidates = [os.path.abspath(plan_arg),
                      os.path.join(plans_dir, plan_arg)]
    for candidate in candidates:
        if os.path.isfile(candidate):
            return candidate
    return None


# -- validation ---------------------------------------------------------------

def validate_plan_structure(file_path: str) -> Tuple[List[str], List[str]]:
    """Check a plan file; returns ``(errors, warnings)``."""
    errors: List[str] = []
    warnings: List[str] = []

    try:
        plan = load_plan(file_path)
    except PlanError as exc:
        return [str(exc)], warnings

    data = plan.doc
    steps = data.get('steps')
    if steps is None:
        errors.append("Missing required 'steps' array")
    elif not isinstance(steps, list):
        errors.append("'steps' must be an array")
    else:
        seen: Set[str] = set()
        for index, step in enumerate(steps):
            if not isinstance(step, dict):
                errors.append(f"step at index {index}: must be a mapping")
                continue
            label = (f"step '{step['id']}'" if step.get('id')
                     else f"step at index {index}")
            for name in REQUIRED_STEP_FIELDS:
                if not step.get(name):
                    errors.append(f"{label}: missing required field '{name}'")
            sid = step.get('id')
            if sid:
                if str(sid) in seen:
                    errors.append(f"Duplicate step ID: '{sid}'")
                seen.add(str(sid))
            status = step.get('status')
            if status and status not in VALID_STATUSES:
                errors.append(
                    f"{label}: invalid status '{status}' (must be one of: "
                    f"{', '.join(VALID_STATUSES)})")
            deps = step.get('deps')
            if deps is not None:
                if not isinstance(deps, list):
                    errors.append(f"{label}: 'deps' must be an array")
                elif any(not isinstance(d, str) for d in deps):
                    errors.append(f"{label}: dependencies must be strings")
            for name in ('files', 'commands'):
                if step.get(name) is not None and \
                        not isinstance(step.get(name), list):
                    errors.append(f"{label}: '{name}' must be an array")

        for step in steps:
            if not isinstance(step, dict) or \
                    not isinstance(step.get('deps'), list):
                continue
            for dep in step['deps']:
                if str(dep) not in seen:
                    errors.append(f"step '{step.get('id')}': references "
                                  f"unknown dependency '{dep}'")

        if not errors:
            cycle = detect_cycles(steps)
            if cycle:
                errors.append("Circular dependency detected among steps: "
                              + ", ".join(cycle))

    if not isinstance(data.get('metadata'), dict):
        warnings.append("Missing 'metadata' section (recommended)")

    return errors, warnings
