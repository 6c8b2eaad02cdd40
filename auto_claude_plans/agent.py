"""Worker agent processes: spawning, timeout and failover.

One call spawns exactly one process.  Output is read line by line on two
reader threads and handed to optional observers, so concurrent dispatches
never share buffers.  :class:`FailoverRun` walks the configured backend
priority list and only moves on for infrastructure failures; any other
non-zero exit is a real step outcome and is returned to the caller.
"""

import json
import os
import subprocess
import threading
from concurrent.futures import FIRST_COMPLETED, Future, wait
from datetime import datetime, timezone
from typing import (
    Callable, Dict, Iterable, List, Mapping, Optional, Pattern, Set, Tuple,
)

from auto_claude_plans.config import AgentBackend, OrchestratorConfig
from auto_claude_plans.errors import AgentSpawnError
from auto_claude_plans.models import AgentRunResult, FailoverReason

LineObserver = Callable[[str, List[str]], None]


class AgentHandle:
    """A running worker bound to *step_ids*."""

    def __init__(self, backend: AgentBackend, step_ids: List[str],
                 proc: subprocess.Popen,
                 on_stdout_line: Optional[LineObserver] = None,
                 on_stderr_line: Optional[LineObserver] = None):
        self.backend = backend
        self.step_ids = list(step_ids)
        self.proc = proc
        self._stdout: List[str] = []
        self._stderr: List[str] = []
        # stderr is still captured for failover classification either way
        if backend.stderr_is_progress:
            on_stderr_line = on_stdout_line
        self._readers = [
            threading.Thread(target=self._pump,
                             args=(proc.stdout, self._stdout, on_stdout_line),
                             daemon=True),
            threading.Thread(target=self._pump,
                             args=(proc.stderr, self._stderr, on_stderr_line),
                             daemon=True),
        ]
        for t in self._readers:
            t.start()

    @property
    def pid(self) -> int:
        return self.proc.pid

    def _pump(self, src, chunks: List[str],
              observer: Optional[LineObserver]):
        try:
            for line in iter(src.readline, ''):
                chunks.append(line)
                if observer is not None:
                    try:
                        observer(line.rstrip('\n'), self.step_ids)
                    except Exception as exc:
                        print(f"[ORCH] output observer failed: {exc}")
        finally:
            try:
                src.close()
            except OSError:
                pass

    def _join_readers(self):
        for t in self._readers:
            t.join(timeout=5)

    def wait(self, timeout: Optional[float] = None) -> AgentRunResult:
        """Block until the process exits.

        With a *timeout*, a process still running at the deadline is
        killed and a synthetic timed-out result is returned.
        """
        try:
            exit_code = self.proc.wait(timeout=timeout)
        except subprocess.TimeoutExpired:
            self.kill()
            self.proc.wait()
            self._join_readers()
            return AgentRunResult(
                step_ids=self.step_ids, exit_code=None, stdout="",
                stderr="Process timed out", timed_out=True,
                agent_name=self.backend.name)
        self._join_readers()
        return AgentRunResult(
            step_ids=self.step_ids,
            exit_code=exit_code,
            stdout=''.join(self._stdout),
            stderr=''.join(self._stderr),
            agent_name=self.backend.name,
        )

    def kill(self):
        if self.proc.poll() is None:
            try:
                self.proc.kill()
            except ProcessLookupError:
                pass


def invoke_agent(backend: AgentBackend, plan_file: str, step_ids: List[str],
                 cwd: str,
                 on_stdout_line: Optional[LineObserver] = None,
                 on_stderr_line: Optional[LineObserver] = None,
                 env: Optional[Mapping[str, str]] = None) -> AgentHandle:
    """Spawn *backend* for *step_ids* in *cwd*.

    Raises :class:`AgentSpawnError` with reason ``command_not_found`` when
    the executable does not exist, ``spawn_error`` for any other failure
    to start.
    """
    cmd = [backend.command] + backend.render_args(plan_file, step_ids)
    try:
        proc = subprocess.Popen(
            cmd,
            cwd=cwd,
            env=dict(env) if env is not None else None,
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            text=True,
            encoding='utf-8',
            errors='replace',
            bufsize=1,
        )
    except FileNotFoundError as exc:
        raise AgentSpawnError(
            backend.name, FailoverReason.COMMAND_NOT_FOUND.value,
            f"{backend.name}: command not found: {backend.command}") from exc
    except OSError as exc:
        raise AgentSpawnError(
            backend.name, FailoverReason.SPAWN_ERROR.value,
            f"{backend.name}: failed to start: {exc}") from exc
    return AgentHandle(backend, step_ids, proc, on_stdout_line,
                       on_stderr_line)


def invoke_with_timeout(backend: AgentBackend, plan_file: str,
                        step_ids: List[str], cwd: str,
                        timeout: Optional[float],
                        on_stdout_line: Optional[LineObserver] = None,
                        on_stderr_line: Optional[LineObserver] = None
                        ) -> AgentRunResult:
    handle = invoke_agent(backend, plan_file, step_ids, cwd,
                          on_stdout_line, on_stderr_line)
    return handle.wait(timeout if timeout and timeout > 0 else None)


def should_failover(result: Optional[AgentRunResult],
                    spawn_error: Optional[AgentSpawnError] = None,
                    error_patterns: Optional[Mapping[str, List[Pattern]]] = None
                    ) -> Optional[FailoverReason]:
    """Classify a failed attempt; None means the outcome is final."""
    if spawn_error is not None:
        if spawn_error.reason == FailoverReason.COMMAND_NOT_FOUND.value:
            return FailoverReason.COMMAND_NOT_FOUND
        return FailoverReason.SPAWN_ERROR

    if result is None:
        return None
    if result.timed_out:
        return FailoverReason.TIMEOUT

    if result.exit_code != 0:
        stderr = result.stderr or ""
        patterns = error_patterns or {}
        for kind in (FailoverReason.API_ERROR, FailoverReason.TOKEN_LIMIT):
            for pattern in patterns.get(kind.value, []):
                if pattern.search(stderr):
                    return kind
    return None


# -- audit logs ---------------------------------------------------------------

def _append_jsonl(path: str, entry: Dict):
    os.makedirs(os.path.dirname(path), exist_ok=True)
    with open(path, 'a', encoding='utf-8') as f:
        f.write(json.dumps(entry) + "\n")


def log_timeout(config: OrchestratorConfig, plan_file: str,
                step_ids: List[str], agent_name: str):
    _append_jsonl(config.timeout_log, {
        'timestamp': datetime.now(timezone.utc).isoformat(),
        'planFile': os.path.basename(plan_file),
        'stepIds': list(step_ids),
        'agent': agent_name,
        'timeoutSeconds': config.agent_timeout,
    })


def log_failure(config: OrchestratorConfig, plan_file: str,
                result: AgentRunResult, agent_name: str):
    # agents print errors to either stream, keep both
    _append_jsonl(config.failure_log, {
        'timestamp': datetime.now(timezone.utc).isoformat(),
        'planFile': os.path.basename(plan_file),
        'stepIds': list(result.step_ids),
        'agent': agent_name,
        'exitCode': result.exit_code,
        'stdout': result.stdout or "",
        'stderr': result.stderr or "",
    })


# -- failover -----------------------------------------------------------------

class FailoverRun:
    """One logical invocation across the backend priority list.

    ``run()`` blocks (call it from a worker thread); ``kill()`` may be
    called from any thread and stops the current process and any further
    attempts.
    """

    def __init__(self, config: OrchestratorConfig, plan_file: str,
                 step_ids: List[str], cwd: str,
                 on_stdout_line: Optional[LineObserver] = None,
                 on_stderr_line: Optional[LineObserver] = None,
                 agents: Optional[Dict[str, AgentBackend]] = None):
        self.config = config
        self.plan_file = plan_file
        self.step_ids = list(step_ids)
        self.cwd = cwd
        self.on_stdout_line = on_stdout_line
        self.on_stderr_line = on_stderr_line
        self.agents = agents if agents is not None else config.agents
        self.attempts: List[Tuple[str, Optional[FailoverReason]]] = []
        # reentrant: kill() may run in a signal handler on the thread holding it
        self._lock = threading.RLock()
        self._current: Optional[AgentHandle] = None
        self._cancelled = False

    def _candidates(self) -> List[str]:
        if not self.config.failover_enabled:
            name = self.config.default_agent
            if name not in self.agents:
                name = next(iter(self.agents), None)
            return [name] if name else []
        return [n for n in self.config.agent_priority if n in self.agents]

    def kill(self):
        with self._lock:
            self._cancelled = True
            if self._current is not None:
                self._current.kill()

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def run(self) -> AgentRunResult:
        candidates = self._candidates()
        if not candidates:
            raise AgentSpawnError('none', FailoverReason.SPAWN_ERROR.value,
                                  "No agents configured")

        last_result: Optional[AgentRunResult] = None
        last_error: Optional[AgentSpawnError] = None

        for index, name in enumerate(candidates):
            if self._cancelled:
                break
            backend = self.agents[name]
            has_next = index < len(candidates) - 1
            if self.config.failover_enabled:
                print(f"[failover] Trying agent: {name} "
                      f"({index + 1}/{len(candidates)})")

            try:
                with self._lock:
                    if self._cancelled:
                        break
                    handle = invoke_agent(
                        backend, self.plan_file, self.step_ids, self.cwd,
                        self.on_stdout_line, self.on_stderr_line)
                    self._current = handle
                timeout = self.config.agent_timeout
                result = handle.wait(timeout if timeout and timeout > 0
                                     else None)
            except AgentSpawnError as exc:
                reason = should_failover(None, exc)
                self.attempts.append((name, reason))
                if has_next:
                    print(f"[failover] Agent {name} spawn failed "
                          f"({reason.value}), trying next agent")
                    last_error = exc
                    continue
                raise
            finally:
                with self._lock:
                    self._current = None

            if result.exit_code not in (0, None):
                log_failure(self.config, self.plan_file, result, name)
            if result.timed_out:
                log_timeout(self.config, self.plan_file, self.step_ids, name)

            reason = should_failover(result, None, self.config.error_patterns)
            self.attempts.append((name, reason))
            if reason is not None and has_next and not self._cancelled:
                print(f"[failover] Agent {name} failed ({reason.value}), "
                      f"trying next agent")
                last_result = result
                continue

            result.agent_name = name
            return result

        if last_result is not None:
            return last_result
        if last_error is not None:
            raise last_error
        return AgentRunResult(step_ids=self.step_ids, exit_code=None,
                              stderr="Invocation cancelled")


def invoke_with_failover(config: OrchestratorConfig, plan_file: str,
                         step_ids: List[str], cwd: str,
                         on_stdout_line: Optional[LineObserver] = None,
                         on_stderr_line: Optional[LineObserver] = None
                         ) -> AgentRunResult:
    return FailoverRun(config, plan_file, step_ids, cwd,
                       on_stdout_line, on_stderr_line).run()


def run_tracked(run: FailoverRun,
                active_runs: Optional[Set[FailoverRun]] = None
                ) -> AgentRunResult:
    """Run *run* in the calling thread while it is a member of *active_runs*."""
    if active_runs is None:
        return run.run()
    active_runs.add(run)
    try:
        return run.run()
    finally:
        active_runs.discard(run)


# -- suspension points --------------------------------------------------------

def wait_for_any(futures: Iterable[Future]) -> Set[Future]:
    """Block until at least one of *futures* finishes; returns the done set."""
    done, _ = wait(list(futures), return_when=FIRST_COMPLETED)
    return done


def wait_for_all(futures: Iterable[Future]) -> List:
    """Block until every future finishes; results in input order.

    Exceptions are returned in place of results rather than raised.
    """
    futures = list(futures)
    wait(futures)
    results = []
    for f in futures:
        exc = f.exception()
        results.append(exc if exc is not None else f.result())
    return results
