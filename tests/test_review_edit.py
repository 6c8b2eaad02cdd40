"""Tests for the review/edit cycle with injected agents."""

from auto_claude_plans.edit import build_edit_prompt, format_feedback_list
from auto_claude_plans.models import (
    FeedbackItem, ReviewResult, Severity, StepResult, StepStatus,
)
from auto_claude_plans.review import (
    MAX_DIFF_CHARS, build_review_prompt, parse_review_results,
    run_review_cycle,
)


class FakeGit:
    def __init__(self):
        self.calls = 0

    def changed_files(self, cwd=None):
        self.calls += 1
        return ['src/app.py']

    def uncommitted_diff(self, files=None, cwd=None):
        return "+print('hi')"


def _reviewer(*verdicts):
    queue = list(verdicts)
    seen = []

    def review(config, plan_file, step_ids, cwd, changed_files=None,
               diff=None):
        seen.append({'files': changed_files, 'diff': diff})
        return queue.pop(0)
    review.seen = seen
    return review


def _editor(*outcomes):
    queue = list(outcomes)
    calls = []

    def edit(config, plan_file, step_ids, feedback, cwd):
        calls.append(list(feedback))
        return queue.pop(0)
    edit.calls = calls
    return edit


def _complete(step_id='s1', message='feat: original'):
    return StepResult.complete(step_id, commit_message=message)


def test_approved_on_first_review(tmp_path, make_config):
    config = make_config(tmp_path, review_max_iterations=3)
    review = _reviewer(ReviewResult(approved=True))
    git = FakeGit()
    result, records = run_review_cycle(config, _complete(), 'p.yaml', '.',
                                       git=git, review_agent=review,
                                       edit_agent=_editor())
    assert result.is_complete
    assert [r.approved for r in records] == [True]
    assert review.seen[0] == {'files': ['src/app.py'], 'diff': "+print('hi')"}


def test_feedback_then_edit_then_approval(tmp_path, make_config):
    config = make_config(tmp_path, review_max_iterations=3)
    fb = [FeedbackItem("rename variable", Severity.BLOCKING, 'a.py', 3)]
    review = _reviewer(ReviewResult(approved=False, feedback=fb),
                       ReviewResult(approved=True))
    edit = _editor([StepResult.complete('s1', commit_message='fix: edit')])
    result, records = run_review_cycle(config, _complete(), 'p.yaml', '.',
                                       git=FakeGit(), review_agent=review,
                                       edit_agent=edit)
    assert result.commit_message == 'feat: original'
    assert [r.approved for r in records] == [False, True]
    assert records[0].feedback == fb
    assert edit.calls == [fb]


def test_max_iterations_proceeds_without_approval(tmp_path, make_config):
    config = make_config(tmp_path, review_max_iterations=2)
    no = ReviewResult(approved=False, feedback=[FeedbackItem("meh")])
    review = _reviewer(no, no)
    edit = _editor([_complete()])
    result, records = run_review_cycle(config, _complete(), 'p.yaml', '.',
                                       review_agent=review, edit_agent=edit)
    assert result.is_complete
    assert len(records) == 2
    assert len(edit.calls) == 1


def test_edit_without_report_blocks_step(tmp_path, make_config):
    config = make_config(tmp_path, review_max_iterations=3)
    review = _reviewer(ReviewResult(approved=False,
                                    feedback=[FeedbackItem("fix it")]))
    result, records = run_review_cycle(config, _complete(), 'p.yaml', '.',
                                       review_agent=review,
                                       edit_agent=_editor([]))
    assert result.status is StepStatus.BLOCKED
    assert result.blocked_reason == 'Edit agent returned no report'
    assert len(records) == 1


def test_blocked_results_are_not_reviewed(tmp_path, make_config):
    config = make_config(tmp_path, review_max_iterations=3)
    blocked = StepResult.blocked('s1', 'nope')
    result, records = run_review_cycle(config, blocked, 'p.yaml', '.',
                                       review_agent=_reviewer(),
                                       edit_agent=_editor())
    assert result is blocked
    assert records == []


class TestParseReview:

    def test_needs_changes_with_feedback(self):
        out = ('Reviewing...\n{"status": "needs_changes", "feedback": ['
               '{"comment": "missing test", "file": "a.py", "line": 4, '
               '"severity": "blocking"}, "plain string note", {"file": "x"}]}')
        review = parse_review_results(out)
        assert not review.approved
        assert [f.comment for f in review.feedback] == \
            ['missing test', 'plain string note']
        assert review.feedback[0].severity is Severity.BLOCKING
        assert review.feedback[0].line == 4
        assert review.feedback[1].severity is Severity.SUGGESTION

    def test_unparsable_output_approves_with_error(self):
        review = parse_review_results("looks fine to me")
        assert review.approved
        assert review.error

        review = parse_review_results('{"status": "maybe"}')
        assert review.approved
        assert 'maybe' in review.error

    def test_status_aliases(self):
        assert not parse_review_results(
            '{"status": "changes_requested"}').approved
        assert parse_review_results('{"status": "APPROVED"}').approved


def test_review_prompt_sections():
    prompt = build_review_prompt("Review {stepIds} in {planFile}", 'p.yaml',
                                 ['a', 'b'], ['x.py'], "d" * (MAX_DIFF_CHARS + 5))
    assert prompt.startswith("Review a, b in p.yaml")
    assert "## Changed Files\n- x.py" in prompt
    assert "(diff truncated)" in prompt

    assert "(none)" in build_review_prompt("t", 'p', ['a'])


def test_edit_prompt_lists_feedback():
    feedback = [FeedbackItem("fix naming", Severity.BLOCKING, 'a.py', 7),
                FeedbackItem("")]
    text = format_feedback_list(feedback)
    assert "1. file: a.py line: 7 severity: blocking comment: fix naming" in text
    assert "2. file: (not specified) severity: suggestion comment: " \
           "(no comment provided)" in text
    assert format_feedback_list([]) == "No review feedback items provided."

    prompt = build_edit_prompt("Do {stepIds} from {planFile}", 'p.yaml',
                               ['s1'], feedback)
    assert prompt.startswith("Do s1 from p.yaml")
    assert "## Review Feedback" in prompt


class RecordingGit:
    def __init__(self, changed):
        self.changed = changed
        self.diff_files = None

    def changed_files(self, cwd=None):
        return list(self.changed)

    def uncommitted_diff(self, files=None, cwd=None):
        self.diff_files = files
        return "+change"


def test_excluded_files_stay_out_of_the_review(tmp_path, make_config):
    config = make_config(tmp_path, review_max_iterations=1)
    plan = tmp_path / "plans" / "p.yaml"
    git = RecordingGit(['plans/p.yaml', 'src/app.py'])
    review = _reviewer(ReviewResult(approved=True))
    run_review_cycle(config, _complete(), 'p.yaml', str(tmp_path), git=git,
                     review_agent=review, edit_agent=_editor(),
                     exclude_files=[str(plan)])
    assert review.seen == [{'files': ['src/app.py'], 'diff': '+change'}]
    assert git.diff_files == ['src/app.py']


def test_only_excluded_changes_means_empty_review(tmp_path, make_config):
    config = make_config(tmp_path, review_max_iterations=1)
    git = RecordingGit(['plans/p.yaml'])
    review = _reviewer(ReviewResult(approved=True))
    run_review_cycle(config, _complete(), 'p.yaml', str(tmp_path), git=git,
                     review_agent=review, edit_agent=_editor(),
                     exclude_files=[str(tmp_path / "plans" / "p.yaml")])
    assert review.seen == [{'files': [], 'diff': None}]
    assert git.diff_files is None
