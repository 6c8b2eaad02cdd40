"""Cleanup utilities for worktrees and leftover condensed plans."""

import os
import time

from auto_claude_plans.git_helper import GitHelper


def cleanup_worktrees(git: GitHelper):
    """Clean up orphaned worktrees (registered but missing on disk)."""
    removed = 0
    for path in git.list_worktrees():
        if not os.path.exists(path) and path != git.repo_path:
            print(f"Removing orphaned worktree: {path}")
            git.remove_worktree(path)
            removed += 1
    git.prune_worktrees()
    return removed


def cleanup_temp_plans(temp_dir: str, hours_old: int = 24) -> int:
    """Delete condensed plans older than *hours_old* from *temp_dir*."""
    if not os.path.isdir(temp_dir):
        return 0

    cutoff_time = time.time() - (hours_old * 60 * 60)
    removed = 0
    for name in os.listdir(temp_dir):
        path = os.path.join(temp_dir, name)
        if not os.path.isfile(path) or not name.endswith(('.yaml', '.yml')):
            continue
        if os.path.getmtime(path) < cutoff_time:
            try:
                os.remove(path)
                removed += 1
            except OSError as e:
                print(f"Error cleaning up temp plan {name}: {e}")
    return removed
