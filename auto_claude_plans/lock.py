"""Cross-process execution locks.

A lock is a small JSON file.  Its content is written to a private temp
file first and then hard-linked into place, so the lock appears
atomically and fully written, and the link fails if a lock already
exists.  The global lock lives at ``<work_dir>/exec.lock``; per-plan locks
live at ``<work_dir>/locks/plan-<planId>.lock``.  A lock whose owner is
dead, or whose owner's command line does not look like an orchestrator,
is stale and gets reclaimed on the next acquire.  An unreadable lock file
is only reclaimed once it is older than ``UNREADABLE_GRACE_SECONDS``.
"""

import json
import os
import re
import subprocess
import sys
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence

from auto_claude_plans.config import PROCESS_MARKERS

LOCK_FILE = 'exec.lock'
PLAN_LOCK_DIR = 'locks'
UNREADABLE_GRACE_SECONDS = 30


@dataclass
class LockResult:
    acquired: bool
    reason: Optional[str] = None
    pid: Optional[int] = None
    stale: bool = False


def is_process_running(pid: int) -> bool:
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        # exists, owned by someone else
        return True
    except (OSError, ValueError, TypeError):
        return False
    return True


def process_command_line(pid: int) -> Optional[str]:
    """The command line of *pid*, or None when it cannot be determined."""
    cmdline_path = f"/proc/{pid}/cmdline"
    if os.path.exists(cmdline_path):
        try:
            with open(cmdline_path, 'rb') as f:
                return f.read().replace(b'\0', b' ').decode('utf-8', 'replace')
        except OSError:
            return None
    try:
        result = subprocess.run(['ps', '-p', str(pid), '-o', 'args='],
                                capture_output=True, text=True, timeout=10)
    except (OSError, subprocess.SubprocessError):
        return None
    if result.returncode != 0:
        return None
    return result.stdout.strip()


def is_orchestrator_process(pid: int,
                            markers: Sequence[str] = PROCESS_MARKERS) -> bool:
    cmdline = process_command_line(pid)
    if not cmdline:
        return False
    return any(m in cmdline for m in markers)


def _sanitize(plan_id: str) -> str:
    return re.sub(r'[^A-Za-z0-9._-]', '_', plan_id)


class LockManager:
    """Acquire, release and inspect execution locks under *work_dir*."""

    def __init__(self, work_dir: str,
                 process_markers: Sequence[str] = PROCESS_MARKERS,
                 debug: bool = False):
        self.work_dir = work_dir
        self.process_markers = tuple(process_markers)
        self.debug = debug

    def lock_path(self, plan_id: Optional[str] = None) -> str:
        if plan_id is None:
            return os.path.join(self.work_dir, LOCK_FILE)
        return os.path.join(self.work_dir, PLAN_LOCK_DIR,
                            f"plan-{_sanitize(plan_id)}.lock")

    def read_lock(self, plan_id: Optional[str] = None
                  ) -> Optional[Dict[str, Any]]:
        try:
            with open(self.lock_path(plan_id), 'r') as f:
                data = json.load(f)
        except (OSError, ValueError):
            return None
        return data if isinstance(data, dict) else None

    def _owner_alive(self, data: Dict[str, Any]) -> bool:
        pid = data.get('pid')
        if not isinstance(pid, int):
            return False
        return is_process_running(pid) and \
            is_orchestrator_process(pid, self.process_markers)

    def _remove_if_unchanged(self, plan_id: Optional[str],
                             expected: Dict[str, Any]):
        # another process may have reclaimed and replaced it meanwhile
        if self.read_lock(plan_id) != expected:
            return
        try:
            os.unlink(self.lock_path(plan_id))
        except FileNotFoundError:
            pass

    def _create(self, path: str, data: Dict[str, Any]):
        """Publish *data* at *path* fully written, or raise FileExistsError."""
        tmp_path = f"{path}.{os.getpid()}.tmp"
        try:
            with open(tmp_path, 'w') as f:
                f.write(json.dumps(data, indent=2) + "\n")
                f.flush()
                os.fsync(f.fileno())
            os.link(tmp_path, path)
        finally:
            try:
                os.unlink(tmp_path)
            except FileNotFoundError:
                pass

    def acquire(self, plan_id: Optional[str] = None,
                worktree_path: Optional[str] = None) -> LockResult:
        """Try to take the lock; never blocks."""
        path = self.lock_path(plan_id)
        os.makedirs(os.path.dirname(path), exist_ok=True)

        stale = False
        existing = self.read_lock(plan_id)
        if existing is not None:
            if self._owner_alive(existing):
                return LockResult(
                    acquired=False,
                    reason=(f"Another orchestrator process is running "
                            f"(PID {existing.get('pid')}, started "
                            f"{existing.get('startedAt')})"),
                    pid=existing.get('pid'))
            stale = True
            if self.debug:
                print(f"[LOCK] Reclaiming stale lock held by PID "
                      f"{existing.get('pid')}")
            self._remove_if_unchanged(plan_id, existing)
        else:
            try:
                age = time.time() - os.path.getmtime(path)
            except FileNotFoundError:
                age = None
            if age is not None:
                if age < UNREADABLE_GRACE_SECONDS:
                    return LockResult(
                        acquired=False,
                        reason=(f"Lock file {path} is unreadable; another "
                                f"process may be starting"))
                stale = True
                if self.debug:
                    print(f"[LOCK] Reclaiming unreadable lock file {path}")
                try:
                    os.unlink(path)
                except FileNotFoundError:
                    pass

        data: Dict[str, Any] = {
            'pid': os.getpid(),
            'startedAt': datetime.now(timezone.utc).isoformat(),
            'command': ' '.join(sys.argv[1:]),
        }
        if plan_id is not None:
            data['planId'] = plan_id
        if worktree_path is not None:
            data['worktreePath'] = worktree_path

        try:
            self._create(path, data)
        except FileExistsError:
            winner = self.read_lock(plan_id) or {}
            return LockResult(
                acquired=False,
                reason=(f"Another orchestrator process just started "
                        f"(PID {winner.get('pid', 'unknown')})"),
                pid=winner.get('pid'))
        except OSError as exc:
            return LockResult(acquired=False,
                              reason=f"Failed to create lock file: {exc}")
        return LockResult(acquired=True, pid=os.getpid(), stale=stale)

    def release(self, plan_id: Optional[str] = None) -> bool:
        """Remove the lock, but only if this process owns it."""
        existing = self.read_lock(plan_id)
        if not existing or existing.get('pid') != os.getpid():
            return False
        try:
            os.unlink(self.lock_path(plan_id))
        except FileNotFoundError:
            return False
        return True

    def status(self, plan_id: Optional[str] = None) -> Dict[str, Any]:
        """Read-only view: ``locked``, ``stale``, ``pid``, ``startedAt``."""
        existing = self.read_lock(plan_id)
        if existing is None:
            return {'locked': False, 'stale': False}
        alive = self._owner_alive(existing)
        info = {
            'locked': alive,
            'stale': not alive,
            'pid': existing.get('pid'),
            'startedAt': existing.get('startedAt'),
        }
        for key in ('planId', 'worktreePath'):
            if key in existing:
                info[key] = existing[key]
        return info

    def list_plan_locks(self) -> List[Dict[str, Any]]:
        lock_dir = os.path.join(self.work_dir, PLAN_LOCK_DIR)
        if not os.path.isdir(lock_dir):
            return []
        locks = []
        for name in sorted(os.listdir(lock_dir)):
            if not (name.startswith('plan-') and name.endswith('.lock')):
                continue
            try:
                with open(os.path.join(lock_dir, name), 'r') as f:
                    data = json.load(f)
            except (OSError, ValueError):
                continue
            if not isinstance(data, dict):
                continue
            alive = self._owner_alive(data)
            locks.append({
                'planId': data.get('planId', name[len('plan-'):-len('.lock')]),
                'pid': data.get('pid'),
                'startedAt': data.get('startedAt'),
                'worktreePath': data.get('worktreePath'),
                'locked': alive,
                'stale': not alive,
            })
        return locks
