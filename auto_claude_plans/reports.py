"""Per-step report files: an audit trail written after each step outcome."""

import os
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from auto_claude_plans.models import ReviewRecord, StepResult
from auto_claude_plans.plan_store import dump_yaml


def build_report(result: StepResult, agent: Optional[str],
                 reviews: Optional[List[ReviewRecord]] = None
                 ) -> Dict[str, Any]:
    report = {
        'step_id': result.step_id,
        'agent': agent,
        'outcome': 'success' if result.is_complete else 'failure',
        'details': result.summary or "",
        'timestamp': datetime.now(timezone.utc).isoformat(),
        'artifacts': list(result.artifacts),
        'blocked_reason': result.blocked_reason,
        'test_results': result.test_results,
    }
    if reviews:
        report['reviews'] = [r.to_dict() for r in reviews]
    return report


def report_path(reports_dir: str, plan_file: str, step_id: str) -> str:
    plan_name = os.path.splitext(os.path.basename(plan_file))[0]
    return os.path.join(reports_dir, f"{plan_name}-{step_id}-report.yaml")


def write_report(reports_dir: str, plan_file: str,
                 report: Dict[str, Any]) -> str:
    os.makedirs(reports_dir, exist_ok=True)
    path = report_path(reports_dir, plan_file, report['step_id'])
    with open(path, 'w', encoding='utf-8') as f:
        f.write(dump_yaml(report))
    print(f"[ORCH] Report written: {os.path.basename(path)}")
    return path
