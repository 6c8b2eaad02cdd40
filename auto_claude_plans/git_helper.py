"""Git operations helper for the orchestrator (branch / worktree management)."""

import os
import re
import shutil
import subprocess
from typing import List, Optional
from urllib.parse import quote

from auto_claude_plans.errors import GitError
from auto_claude_plans.models import PullRequestInfo, WorktreeInfo


def derive_branch_name(plan_file_name: str) -> str:
    """``2024-01-15-add-auth.yaml`` -> ``plan/add-auth``."""
    name = re.sub(r'\.ya?ml$', '', os.path.basename(plan_file_name))
    name = re.sub(r'^\d{4}-\d{2}-\d{2}-', '', name)
    name = re.sub(r'[^a-z0-9-]', '-', name.lower())
    name = re.sub(r'-+', '-', name).strip('-')
    return f"plan/{name}"


def web_url_from_remote(remote_url: str) -> Optional[str]:
    """Turn an ssh/https remote into a browsable https URL."""
    url = (remote_url or "").strip()
    if not url:
        return None
    match = re.match(r'^git@([^:]+):(.+?)(?:\.git)?$', url)
    if match:
        url = f"https://{match.group(1)}/{match.group(2)}"
    url = re.sub(r'^git\+', '', url)
    url = re.sub(r'\.git$', '', url)
    return url


class GitHelper:
    """Git operations helper for the orchestrator."""

    def __init__(self, repo_path: str, worktree_base: Optional[str] = None,
                 debug: bool = False):
        self.repo_path = repo_path
        self.worktree_base = worktree_base
        self.debug = debug

    def _run(self, cmd: List[str], cwd: Optional[str] = None,
             check: bool = True,
             timeout: int = 120) -> subprocess.CompletedProcess:
        cwd = cwd or self.repo_path
        if self.debug:
            print(f"[ORCH-GIT] {' '.join(cmd)}  (cwd={cwd})")
        result = subprocess.run(cmd, cwd=cwd, capture_output=True, text=True,
                                timeout=timeout)
        if check and result.returncode != 0:
            raise GitError(cmd, result.stdout, result.stderr,
                           result.returncode)
        return result

    # -- branches -------------------------------------------------------------

    def current_branch(self, cwd: Optional[str] = None) -> str:
        r = self._run(['git', 'rev-parse', '--abbrev-ref', 'HEAD'], cwd=cwd)
        return r.stdout.strip()

    def branch_exists(self, branch_name: str) -> bool:
        for ref in (branch_name, f"origin/{branch_name}"):
            r = self._run(['git', 'rev-parse', '--verify', '--quiet', ref],
                          check=False)
            if r.returncode == 0:
                return True
        return False

    def create_branch(self, branch_name: str):
        self._run(['git', 'checkout', '-b', branch_name])

    def checkout(self, branch_name: str):
        self._run(['git', 'checkout', branch_name])

    def delete_branch(self, branch_name: str, force: bool = True):
        self._run(['git', 'branch', '-D' if force else '-d', branch_name],
                  check=False)

    # -- working tree state ---------------------------------------------------

    def has_uncommitted_changes(self, cwd: Optional[str] = None) -> bool:
        """Tracked files modified or staged; untracked files do not count."""
        r = self._run(['git', 'status', '--porcelain', '--untracked-files=no'],
                      cwd=cwd)
        return bool(r.stdout.strip())

    def changed_files(self, cwd: Optional[str] = None) -> List[str]:
        """Paths with uncommitted changes, untracked files included."""
        r = self._run(['git', 'status', '--porcelain', '-z'], cwd=cwd)
        entries = r.stdout.split('\0')
        files = []
        i = 0
        while i < len(entries):
            entry = entries[i]
            i += 1
            if len(entry) < 4:
                continue
            code, path = entry[:2], entry[3:]
            files.append(path)
            # renames carry the original path as the next entry
            if 'R' in code or 'C' in code:
                i += 1
        return files

    def uncommitted_diff(self, files: Optional[List[str]] = None,
                         cwd: Optional[str] = None) -> str:
        if not self.has_uncommitted_changes(cwd=cwd):
            return ""
        tail = ['--'] + list(files) if files else []
        unstaged = self._run(['git', 'diff'] + tail, cwd=cwd, check=False)
        staged = self._run(['git', 'diff', '--cached'] + tail, cwd=cwd,
                           check=False)
        return "\n".join(p for p in (unstaged.stdout, staged.stdout)
                         if p).strip()

    def commit(self, message: str, files: Optional[List[str]] = None,
               cwd: Optional[str] = None) -> Optional[str]:
        """Stage *files* (or everything) and commit.

        Returns the new commit sha, or None when nothing was staged.
        """
        if files:
            self._run(['git', 'add', '--'] + list(files), cwd=cwd)
        else:
            self._run(['git', 'add', '-A'], cwd=cwd)
        staged = self._run(['git', 'diff', '--cached', '--quiet'], cwd=cwd,
                           check=False)
        if staged.returncode == 0:
            return None
        self._run(['git', 'commit', '-m', message], cwd=cwd)
        return self.head_sha(cwd=cwd)

    def head_sha(self, cwd: Optional[str] = None) -> str:
        return self._run(['git', 'rev-parse', 'HEAD'], cwd=cwd).stdout.strip()

    # -- worktrees ------------------------------------------------------------

    def add_worktree(self, path: str, branch_name: str, base: str = 'HEAD',
                     step_ids: Optional[List[str]] = None) -> WorktreeInfo:
        os.makedirs(os.path.dirname(path), exist_ok=True)
        self._run(['git', 'worktree', 'add', '-b', branch_name, path, base])
        return WorktreeInfo(path=path, branch=branch_name,
                            step_ids=list(step_ids or []))

    def remove_worktree(self, path: str):
        self._run(['git', 'worktree', 'remove', '--force', path], check=False)
        if os.path.exists(path):
            shutil.rmtree(path, ignore_errors=True)
        self.prune_worktrees()

    def prune_worktrees(self):
        self._run(['git', 'worktree', 'prune'], check=False)

    def list_worktrees(self) -> List[str]:
        r = self._run(['git', 'worktree', 'list', '--porcelain'], check=False)
        return [line.split(' ', 1)[1] for line in r.stdout.split('\n')
                if line.startswith('worktree ')]

    # -- replay ---------------------------------------------------------------

    def commit_range(self, base: str, branch_name: str) -> List[str]:
        """Commits on *branch_name* not reachable from *base*, oldest first."""
        r = self._run(['git', 'rev-list', '--reverse',
                       f"{base}..{branch_name}"])
        return [line for line in r.stdout.split() if line]

    def cherry_pick(self, sha: str) -> bool:
        r = self._run(['git', 'cherry-pick', '--allow-empty', sha],
                      check=False)
        return r.returncode == 0

    def cherry_pick_abort(self):
        self._run(['git', 'cherry-pick', '--abort'], check=False)

    # -- remote / pull requests -----------------------------------------------

    def push(self, branch_name: str, cwd: Optional[str] = None) -> bool:
        r = self._run(['git', 'push', '-u', 'origin', branch_name],
                      cwd=cwd, check=False)
        return r.returncode == 0

    def remote_url(self) -> Optional[str]:
        r = self._run(['git', 'remote', 'get-url', 'origin'], check=False)
        return r.stdout.strip() if r.returncode == 0 else None

    def remote_web_url(self) -> Optional[str]:
        return web_url_from_remote(self.remote_url() or "")

    def create_pull_request(self, title: str, body: str,
                            base_branch: str) -> PullRequestInfo:
        """Push the current branch and build a compare URL for the PR.

        No hosting API is involved; a failed push still yields metadata.
        """
        head = self.current_branch()
        pushed = self.push(head) if self.remote_url() else False
        url = ""
        web = self.remote_web_url()
        if web:
            url = (f"{web}/compare/{base_branch}...{head}?expand=1"
                   f"&title={quote(title, safe='')}"
                   f"&body={quote(body, safe='')}")
        return PullRequestInfo(title=title, body=body, head_branch=head,
                               base_branch=base_branch, url=url,
                               pushed=pushed)
