"""Tests for per-step report files."""

import os

from ruamel.yaml import YAML

from auto_claude_plans.models import FeedbackItem, ReviewRecord, StepResult
from auto_claude_plans.reports import build_report, write_report


def test_report_written_per_step(tmp_path):
    result = StepResult.complete('step-1', summary='did it',
                                 artifacts=['a.py'], test_results='3/3')
    reviews = [ReviewRecord(1, False, [FeedbackItem('fix')]),
               ReviewRecord(2, True)]
    report = build_report(result, 'codex', reviews)
    path = write_report(str(tmp_path / "reports"), '/x/plans/my-plan.yaml',
                        report)

    assert os.path.basename(path) == 'my-plan-step-1-report.yaml'
    with open(path) as f:
        data = YAML(typ='safe').load(f)
    assert data['outcome'] == 'success'
    assert data['agent'] == 'codex'
    assert data['details'] == 'did it'
    assert data['artifacts'] == ['a.py']
    assert data['reviews'][0]['feedback'][0]['comment'] == 'fix'
    assert data['blocked_reason'] is None


def test_blocked_report():
    report = build_report(StepResult.blocked('s', 'broken'), None)
    assert report['outcome'] == 'failure'
    assert report['blocked_reason'] == 'broken'
    assert 'reviews' not in report
