"""Tests for git operations and worktree replay."""

import os

import pytest

from auto_claude_plans.errors import GitError
from auto_claude_plans.git_helper import (
    GitHelper, derive_branch_name, web_url_from_remote,
)
from auto_claude_plans.orchestrator import replay_worktree_commits

from conftest import git


@pytest.mark.parametrize("file_name,branch", [
    ('2024-01-15-add-auth.yaml', 'plan/add-auth'),
    ('Refactor_Parser.yml', 'plan/refactor-parser'),
    ('/abs/path/2025-12-01--weird  name!.yaml', 'plan/weird-name'),
])
def test_derive_branch_name(file_name, branch):
    assert derive_branch_name(file_name) == branch


@pytest.mark.parametrize("remote,url", [
    ('git@github.com:org/repo.git', 'https://github.com/org/repo'),
    ('https://bitbucket.org/team/repo.git', 'https://bitbucket.org/team/repo'),
    ('', None),
])
def test_web_url_from_remote(remote, url):
    assert web_url_from_remote(remote) == url


class TestBranchesAndCommits:

    def test_branch_lifecycle(self, temp_git_repo):
        helper = GitHelper(str(temp_git_repo))
        assert helper.current_branch() == 'main'
        assert not helper.branch_exists('plan/x')
        helper.create_branch('plan/x')
        assert helper.current_branch() == 'plan/x'
        assert helper.branch_exists('plan/x')
        helper.checkout('main')
        helper.delete_branch('plan/x')
        assert not helper.branch_exists('plan/x')

    def test_uncommitted_changes_ignore_untracked(self, temp_git_repo):
        helper = GitHelper(str(temp_git_repo))
        (temp_git_repo / "new.txt").write_text("untracked")
        assert not helper.has_uncommitted_changes()
        assert 'new.txt' in helper.changed_files()

        (temp_git_repo / "README.md").write_text("# changed\n")
        assert helper.has_uncommitted_changes()
        assert '# changed' in helper.uncommitted_diff()

    def test_commit_returns_sha_or_none(self, temp_git_repo):
        helper = GitHelper(str(temp_git_repo))
        assert helper.commit("nothing") is None

        (temp_git_repo / "a.txt").write_text("a")
        (temp_git_repo / "b.txt").write_text("b")
        sha = helper.commit("add a", files=[str(temp_git_repo / "a.txt")])
        assert sha == helper.head_sha()
        assert 'b.txt' in helper.changed_files()

    def test_failed_command_raises(self, temp_git_repo):
        helper = GitHelper(str(temp_git_repo))
        with pytest.raises(GitError) as exc_info:
            helper.checkout('does-not-exist')
        assert exc_info.value.returncode != 0
        assert 'does-not-exist' in ' '.join(exc_info.value.cmd)


def _worktree_with_commit(helper, base, name, file_name, content):
    path = os.path.join(base, name)
    wt = helper.add_worktree(path, name, 'HEAD', step_ids=[name])
    with open(os.path.join(path, file_name), 'w') as f:
        f.write(content)
    helper.commit(f"change {file_name} in {name}", cwd=path)
    return wt


def test_replay_applies_clean_commits_and_reports_conflicts(temp_git_repo,
                                                            tmp_path):
    helper = GitHelper(str(temp_git_repo), str(tmp_path / "worktrees"))
    base = str(tmp_path / "worktrees")
    first = _worktree_with_commit(helper, base, 'step-a', 'shared.txt', 'A\n')
    second = _worktree_with_commit(helper, base, 'step-b', 'shared.txt', 'B\n')

    conflicts = replay_worktree_commits(helper, [first, second])

    assert [c.step_ids for c in conflicts] == [['step-b']]
    assert conflicts[0].branch == 'step-b'
    assert (temp_git_repo / "shared.txt").read_text() == 'A\n'
    assert not helper.has_uncommitted_changes()
    assert not os.path.exists(first.path)
    assert not os.path.exists(second.path)
    assert not helper.branch_exists('step-a')
    assert not helper.branch_exists('step-b')
    assert len(helper.list_worktrees()) == 1


def test_replay_preserves_commit_order(temp_git_repo, tmp_path):
    helper = GitHelper(str(temp_git_repo))
    base = str(tmp_path / "worktrees")
    first = _worktree_with_commit(helper, base, 'w1', 'one.txt', '1')
    second = _worktree_with_commit(helper, base, 'w2', 'two.txt', '2')
    before = helper.head_sha()

    assert replay_worktree_commits(helper, [first, second]) == []
    log = git(temp_git_repo, 'log', '--format=%s', f'{before}..HEAD').stdout
    assert log.split('\n')[:2] == ['change two.txt in w2', 'change one.txt in w1']


def test_pull_request_without_remote(temp_git_repo):
    helper = GitHelper(str(temp_git_repo))
    helper.create_branch('plan/demo')
    pr = helper.create_pull_request('Plan: demo', 'body', 'main')
    assert pr.head_branch == 'plan/demo'
    assert pr.base_branch == 'main'
    assert not pr.pushed
    assert pr.url == ''


def test_pull_request_compare_url(temp_git_repo, tmp_path):
    remote = tmp_path / "remote.git"
    git(tmp_path, 'init', '-q', '--bare', str(remote))
    git(temp_git_repo, 'remote', 'add', 'origin', str(remote))
    helper = GitHelper(str(temp_git_repo))
    helper.create_branch('plan/demo')
    pr = helper.create_pull_request('Plan: demo', 'a body', 'main')
    assert pr.pushed
    assert pr.url.startswith(f"{str(remote)[:-4]}/compare/main...plan/demo?expand=1")
    assert 'title=Plan%3A%20demo' in pr.url
