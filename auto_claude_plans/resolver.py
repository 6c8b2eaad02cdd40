"""Dependency resolution for plan steps.

Pure functions over plan snapshots; nothing here touches the filesystem.
Steps are plain mappings (``id``, ``status``, ``deps``, ``parallel``).

Ordering has two sources.  Explicit ``deps`` must all be complete before
a step is ready.  On top of that, plan order acts as an *implicit
barrier*: a step waits until the nearest preceding serial step whose
deps are empty or a subset of its own deps has at least started.  Plan
authors can therefore rely on ordering without declaring trivial deps,
while unrelated parallel steps still run ahead once the barrier begins.
"""

from typing import Any, Dict, List, Mapping, Optional, Sequence

from auto_claude_plans.errors import CycleError
from auto_claude_plans.models import STARTED_STATUSES, StepStatus

Step = Mapping[str, Any]


def _steps(plan) -> Sequence[Step]:
    return plan.steps if hasattr(plan, 'steps') else plan


def step_deps(step: Step) -> List[str]:
    return [str(d) for d in (step.get('deps') or [])]


def step_status(step: Step) -> str:
    return step.get('status') or StepStatus.PENDING.value


def is_parallel(step: Step) -> bool:
    return step.get('parallel') is True


def _implicit_barrier(steps: Sequence[Step], index: int) -> Optional[Step]:
    deps = set(step_deps(steps[index]))
    for prior in reversed(steps[:index]):
        if is_parallel(prior):
            continue
        if set(step_deps(prior)) <= deps:
            return prior
    return None


def get_ready_steps(plan) -> List[Step]:
    """Pending steps whose deps are complete and whose barrier has started.

    Accepts a :class:`~auto_claude_plans.plan_store.Plan` or a sequence of
    step mappings; results keep plan order.
    """
    steps = list(_steps(plan))
    status_by_id = {str(s.get('id')): step_status(s) for s in steps}
    complete = StepStatus.COMPLETE.value

    ready = []
    for index, step in enumerate(steps):
        if step_status(step) != StepStatus.PENDING.value:
            continue
        if not all(status_by_id.get(d) == complete for d in step_deps(step)):
            continue
        barrier = _implicit_barrier(steps, index)
        if barrier is not None and step_status(barrier) not in STARTED_STATUSES:
            continue
        ready.append(step)
    return ready


def resolve_execution_groups(steps: Sequence[Step]) -> List[List[Step]]:
    """Partition *steps* into dependency levels (Kahn's algorithm).

    Within a level, parallel steps form one group and every serial step
    its own group.  Raises :class:`CycleError` naming the unresolved
    remainder when a level has no step without outstanding deps.
    """
    by_id: Dict[str, Step] = {str(s.get('id')): s for s in steps}
    order = [str(s.get('id')) for s in steps]
    remaining = set(order)
    groups: List[List[Step]] = []

    while remaining:
        level = [sid for sid in order if sid in remaining
                 and not any(d in remaining for d in step_deps(by_id[sid]))]
        if not level:
            raise CycleError(sid for sid in order if sid in remaining)

        parallel = [by_id[sid] for sid in level if is_parallel(by_id[sid])]
        if parallel:
            groups.append(parallel)
        for sid in level:
            if not is_parallel(by_id[sid]):
                groups.append([by_id[sid]])
        remaining.difference_update(level)

    return groups


def detect_cycles(steps: Sequence[Step]) -> List[str]:
    """Ids involved in (or stuck behind) a cycle; empty when acyclic."""
    try:
        resolve_execution_groups(steps)
    except CycleError as exc:
        return exc.step_ids
    return []


def partition_steps(ready_steps: Sequence[Step], max_parallel: int,
                    currently_running: int = 0) -> List[Step]:
    """Choose the next batch to dispatch from *ready_steps* (plan order).

    A leading serial step is dispatched alone; a leading parallel step
    takes the consecutive run of ready parallel steps after it, capped by
    the free slots.  Never mixes serial and parallel steps.
    """
    available = max(0, max_parallel - currently_running)
    if available == 0 or not ready_steps:
        return []

    first = ready_steps[0]
    if not is_parallel(first):
        return [first]

    batch = []
    for step in ready_steps:
        if not is_parallel(step) or len(batch) >= available:
            break
        batch.append(step)
    return batch


def get_blocked_dependents(plan, step_id: str) -> List[str]:
    """Ids of steps depending on *step_id* directly or transitively."""
    steps = list(_steps(plan))
    dependents: List[str] = []
    seen = set()
    frontier = [step_id]
    while frontier:
        current = frontier.pop(0)
        for step in steps:
            sid = str(step.get('id'))
            if current in step_deps(step) and sid not in seen:
                seen.add(sid)
                dependents.append(sid)
                frontier.append(sid)
    return dependents
