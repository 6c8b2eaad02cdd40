"""Console progress for a running plan: counts, elapsed time and ETA."""

import time
from typing import Dict, List, Optional

from auto_claude_plans.models import StepStatus


def format_duration(seconds: float) -> str:
    if seconds < 1:
        return "<1s"
    total = int(seconds)
    minutes, secs = divmod(total, 60)
    hours, minutes = divmod(minutes, 60)
    if hours:
        return f"{hours}h {minutes}m"
    if minutes:
        return f"{minutes}m {secs}s"
    return f"{secs}s"


class ProgressTracker:
    """Tracks step outcomes for one plan run.

    Step durations are measured from ``record_start`` to
    ``record_complete``; the ETA is the average completed-step duration
    times the number of steps still outstanding.
    """

    def __init__(self, total_steps: int, plan_name: str,
                 clock=time.monotonic):
        self.total_steps = total_steps
        self.plan_name = plan_name
        self.completed = 0
        self.blocked = 0
        self._clock = clock
        self._started_at = clock()
        self._step_started: Dict[str, float] = {}
        self._durations: List[float] = []
        self._first_batch = True

    def initialize_from_plan(self, plan):
        for step in plan.steps:
            status = step.get('status')
            if status == StepStatus.COMPLETE.value:
                self.completed += 1
            elif status == StepStatus.BLOCKED.value:
                self.blocked += 1

    @property
    def processed(self) -> int:
        return self.completed + self.blocked

    def record_start(self, step_ids: List[str]):
        now = self._clock()
        for sid in step_ids:
            self._step_started[sid] = now

    def record_complete(self, step_id: str):
        self.completed += 1
        started = self._step_started.pop(step_id, None)
        if started is not None:
            self._durations.append(self._clock() - started)

    def record_blocked(self, step_id: str):
        self.blocked += 1
        self._step_started.pop(step_id, None)

    def elapsed(self) -> float:
        return self._clock() - self._started_at

    def estimated_remaining(self) -> Optional[float]:
        if not self._durations:
            return None
        average = sum(self._durations) / len(self._durations)
        return average * max(0, self.total_steps - self.processed)

    def percent_complete(self) -> int:
        if not self.total_steps:
            return 100
        return round(self.processed / self.total_steps * 100)

    # -- output ---------------------------------------------------------------

    def log_start(self):
        pending = self.total_steps - self.processed
        print(f"[Progress] Starting plan: {self.plan_name}")
        print(f"[Progress] Total steps: {self.total_steps} ({pending} pending, "
              f"{self.completed} complete, {self.blocked} blocked)")

    def log_step_start(self, step_ids: List[str]):
        if self._first_batch:
            self._first_batch = False
        else:
            print()
            print("-" * 40)
        self.record_start(step_ids)
        n = self.processed
        if len(step_ids) == 1:
            print(f"[Progress] Starting {step_ids[0]} "
                  f"({n + 1} of {self.total_steps})")
        else:
            print(f"[Progress] Starting {len(step_ids)} steps: "
                  f"{', '.join(step_ids)} "
                  f"({n + 1}-{n + len(step_ids)} of {self.total_steps})")

    def progress_line(self) -> str:
        line = (f"[Progress] {self.processed}/{self.total_steps} steps "
                f"({self.percent_complete()}%) | Elapsed: "
                f"{format_duration(self.elapsed())}")
        eta = self.estimated_remaining()
        if eta is None:
            return line + " | ETA: Calculating..."
        return line + f" | ETA: {format_duration(eta)}"

    def log_progress(self):
        print(self.progress_line())

    def log_summary(self):
        average = (format_duration(sum(self._durations) / len(self._durations))
                   if self._durations else "N/A")
        print("[Progress] === Summary ===")
        print(f"[Progress] Total: {self.total_steps} steps "
              f"({self.completed} complete, {self.blocked} blocked)")
        print(f"[Progress] Time: {format_duration(self.elapsed())}")
        print(f"[Progress] Avg step time: {average}")
