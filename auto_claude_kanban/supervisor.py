"""Agent session lifecycle: spawn, monitor, complete.

One :class:`SessionTable` holds every running agent, at most one per
project and never more than the concurrency ceiling. The supervisor owns the
table and hands it by reference to the reaper and the scheduler; nothing
else touches it.

Each agent runs to completion on its own monitor thread. When the process
exits, the thread reports the outcome to the board and applies the stage's
completion transition.
"""

import logging
import subprocess
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Set

from auto_claude_kanban.agent import (
    RESUME_CONTINUE, agent_environment, build_agent_argv,
    looks_like_stale_resume, spawn_agent,
)
from auto_claude_kanban.board_api import BoardClient
from auto_claude_kanban.config import Settings
from auto_claude_kanban.models import (
    EventType, Project, SessionResult, SessionStatus, Task,
)
from auto_claude_kanban.utils import tail

log = logging.getLogger(__name__)


class ProjectBusyError(Exception):
    """The project already has an active session."""


class CapacityError(Exception):
    """The global concurrency ceiling is reached."""


@dataclass
class ActiveSessionEntry:
    project_id: str
    task_id: str
    stage: str
    dispatch_status: str
    session_id: Optional[str] = None
    process: Optional[subprocess.Popen] = None
    started_at: float = field(default_factory=time.time)
    resume_handle: Optional[str] = None
    resume_mode: str = RESUME_CONTINUE
    finishing: bool = False

    @property
    def pid(self) -> Optional[int]:
        return self.process.pid if self.process is not None else None


@dataclass
class SessionHandle:
    session_id: str
    project_id: str
    task_id: str
    pid: Optional[int] = None


class SessionTable:
    """Thread-safe map of project id -> active session entry."""

    def __init__(self, capacity: int):
        self.capacity = capacity
        self._entries: Dict[str, ActiveSessionEntry] = {}
        # failed reply attempts per task since its last answered message
        self._reply_failures: Dict[str, int] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __contains__(self, project_id: str) -> bool:
        with self._lock:
            return project_id in self._entries

    def is_full(self) -> bool:
        return len(self) >= self.capacity

    def reserve(self, entry: ActiveSessionEntry):
        with self._lock:
            if entry.project_id in self._entries:
                raise ProjectBusyError(
                    f"Project {entry.project_id} already has an active "
                    f"session")
            if len(self._entries) >= self.capacity:
                raise CapacityError(
                    f"Concurrency limit reached ({self.capacity})")
            self._entries[entry.project_id] = entry

    def get(self, project_id: str) -> Optional[ActiveSessionEntry]:
        with self._lock:
            return self._entries.get(project_id)

    def entries(self) -> List[ActiveSessionEntry]:
        with self._lock:
            return list(self._entries.values())

    def project_ids(self) -> Set[str]:
        with self._lock:
            return set(self._entries)

    def release(self, entry: ActiveSessionEntry) -> bool:
        """Remove *entry* if it is still the project's current entry."""
        with self._lock:
            if self._entries.get(entry.project_id) is entry:
                del self._entries[entry.project_id]
                return True
            return False

    def begin_finishing(self, entry: ActiveSessionEntry) -> bool:
        """Claim *entry* for completion. False if it was reaped meanwhile."""
        with self._lock:
            if self._entries.get(entry.project_id) is not entry:
                return False
            if entry.finishing:
                return False
            entry.finishing = True
            return True

    def take(self, entry: ActiveSessionEntry) -> bool:
        """Remove a running *entry* for reaping. False if it is already
        finishing or gone."""
        with self._lock:
            if self._entries.get(entry.project_id) is not entry:
                return False
            if entry.finishing:
                return False
            del self._entries[entry.project_id]
            return True

    def note_reply_failure(self, task_id: str) -> int:
        with self._lock:
            count = self._reply_failures.get(task_id, 0) + 1
            self._reply_failures[task_id] = count
            return count

    def reply_failures(self, task_id: str) -> int:
        with self._lock:
            return self._reply_failures.get(task_id, 0)

    def clear_reply_failures(self, task_id: str):
        with self._lock:
            self._reply_failures.pop(task_id, None)


@dataclass
class _Run:
    entry: ActiveSessionEntry
    task: Task
    handler: Any
    prompt: str
    cwd: str


Popen = Callable[[List[str], str, Dict[str, str]], subprocess.Popen]


class SessionSupervisor:
    """Starts agent sessions and carries them through to completion."""

    def __init__(self, board: BoardClient, settings: Settings,
                 table: Optional[SessionTable] = None,
                 popen: Popen = spawn_agent):
        self.board = board
        self.settings = settings
        self.table = table or SessionTable(settings.max_concurrent)
        self._popen = popen
        self._threads: List[threading.Thread] = []
        self._threads_lock = threading.Lock()
        self._stopping = False

    # -- start ----------------------------------------------------------------

    def start(self, project_id: str, task: Task, prompt: str, handler,
              project: Optional[Project] = None,
              claim: Optional[Dict] = None,
              resume_handle: Optional[str] = None,
              resume_mode: str = RESUME_CONTINUE) -> SessionHandle:
        """Start one agent session for *task*.

        *handler* is the stage handler that owns the session: it provides the
        ``key``, ``label`` and ``allow_scm`` of the stage, the pre-dispatch
        status and the completion callbacks. Raises :class:`ProjectBusyError`
        or :class:`CapacityError` when the slot cannot be taken.
        """
        entry = ActiveSessionEntry(
            project_id=project_id,
            task_id=task.id,
            stage=handler.key,
            dispatch_status=handler.dispatch_status(task),
            resume_handle=resume_handle,
            resume_mode=resume_mode,
        )
        self.table.reserve(entry)

        try:
            session = self.board.create_session(
                project_id, task.id, summary=f"{handler.label}: {task.title}",
                session_type=handler.key)
        except Exception:
            self.table.release(entry)
            raise
        entry.session_id = session.id

        cwd = (project.working_directory if project else None) \
            or self.settings.workspace_root
        run = _Run(entry=entry, task=task, handler=handler, prompt=prompt,
                   cwd=cwd)

        log.info("Starting %s session (session=%s project=%s task=%s "
                 "title=%r)", handler.label, session.id, project_id, task.id,
                 task.title)
        self._post_event(EventType.SESSION_START,
                         f"{handler.label} started: {task.title}", run)

        if claim:
            try:
                self.board.update_task(task.id, **claim)
            except Exception as exc:
                log.warning("Failed to claim task %s: %s", task.id, exc)

        try:
            entry.process = self._spawn(run)
        except OSError as exc:
            log.error("Failed to spawn agent for project %s: %s",
                      project_id, exc)
            if self.table.begin_finishing(entry):
                self._finish(run, SessionResult(exit_code=None,
                                                stderr=str(exc)))
            return SessionHandle(session.id, project_id, task.id)

        entry.started_at = time.time()
        thread = threading.Thread(target=self._monitor, args=(run,),
                                  name=f"agent-{project_id}", daemon=True)
        with self._threads_lock:
            self._threads.append(thread)
        thread.start()
        return SessionHandle(session.id, project_id, task.id, entry.pid)

    def _spawn(self, run: _Run) -> subprocess.Popen:
        entry = run.entry
        argv = build_agent_argv(self.settings.agent_command, run.prompt,
                                entry.resume_handle, entry.resume_mode)
        env = agent_environment(self.settings, entry.session_id, entry.task_id,
                                allow_scm=run.handler.allow_scm)
        return self._popen(argv, run.cwd, env)

    # -- monitor --------------------------------------------------------------

    def _monitor(self, run: _Run):
        try:
            self._run_to_completion(run)
        finally:
            current = threading.current_thread()
            with self._threads_lock:
                if current in self._threads:
                    self._threads.remove(current)

    def _run_to_completion(self, run: _Run):
        entry = run.entry
        started = time.time()
        while True:
            stdout, stderr = entry.process.communicate()
            code = entry.process.returncode
            if (code != 0 and entry.resume_handle
                    and entry.resume_mode == RESUME_CONTINUE
                    and looks_like_stale_resume(f"{stdout}\n{stderr}")
                    and not self._stopping
                    and self.table.get(entry.project_id) is entry
                    and not entry.finishing):
                log.warning("Resume handle %s looks stale (session=%s), "
                            "retrying once without resumption",
                            entry.resume_handle, entry.session_id)
                self._clear_resume_handle(run.task)
                entry.resume_handle = None
                try:
                    entry.process = self._spawn(run)
                except OSError as exc:
                    result = SessionResult(None, stdout, str(exc),
                                           time.time() - started)
                    break
                if self.table.get(entry.project_id) is not entry:
                    entry.process.terminate()
                    return
                continue
            result = SessionResult(code, stdout or '', stderr or '',
                                   time.time() - started)
            break

        if self._stopping:
            log.info("Session %s exited during shutdown, leaving it for "
                     "orphan reconciliation", entry.session_id)
            return
        if not self.table.begin_finishing(entry):
            log.debug("Session %s was reaped, skipping completion",
                      entry.session_id)
            return
        self._finish(run, result)

    def _clear_resume_handle(self, task: Task):
        task.claude_session_id = None
        try:
            self.board.update_task(task.id, claude_session_id=None)
        except Exception as exc:
            log.warning("Failed to clear resume handle on task %s: %s",
                        task.id, exc)

    # -- completion -----------------------------------------------------------

    def _finish(self, run: _Run, result: SessionResult):
        entry, task, handler = run.entry, run.task, run.handler
        try:
            if result.success:
                log.info("%s session ended (session=%s project=%s task=%s "
                         "exit=0)", handler.label, entry.session_id,
                         entry.project_id, task.id)
                summary = f"{handler.label} completed: {task.title}"
            else:
                log.error("%s session ended (session=%s project=%s task=%s "
                          "exit=%s)", handler.label, entry.session_id,
                          entry.project_id, task.id, result.exit_code)
                summary = (f"{handler.label} failed (exit "
                           f"{result.exit_code}): {tail(result.stderr, 500)}")

            try:
                self.board.update_session(
                    entry.session_id,
                    status=(SessionStatus.COMPLETED.value if result.success
                            else SessionStatus.ERROR.value),
                    summary=summary)
            except Exception as exc:
                log.error("Failed to update session %s: %s",
                          entry.session_id, exc)

            self._post_event(EventType.SESSION_END, summary[:300], run)

            comment = handler.completion_comment(task, result)
            if comment:
                content, comment_type = comment
                try:
                    self.board.add_comment(task.id, content, comment_type)
                except Exception as exc:
                    log.error("Failed to comment on task %s: %s",
                              task.id, exc)

            try:
                transition = handler.on_complete(task, result)
                patch = transition.to_patch() if transition else {}
                if patch:
                    self.board.update_task(task.id, **patch)
                    log.info("Task %s updated after %s: %s", task.id,
                             handler.label, patch.get('status', 'unchanged'))
            except Exception as exc:
                log.error("Failed to update task %s: %s", task.id, exc)
        finally:
            self.table.release(entry)

    def _post_event(self, event_type: EventType, message: str, run: _Run):
        try:
            self.board.post_event(
                event_type.value, message,
                session_id=run.entry.session_id, task_id=run.task.id,
                metadata={'session_type': run.handler.key})
        except Exception as exc:
            log.error("Failed to post %s event: %s", event_type.value, exc)

    # -- shutdown -------------------------------------------------------------

    def terminate_all(self) -> int:
        """SIGTERM every running agent. Their board records are left to
        orphan reconciliation on the next start."""
        self._stopping = True
        count = 0
        for entry in self.table.entries():
            if entry.process is not None and entry.process.poll() is None:
                log.info("Killing agent session for project %s",
                         entry.project_id)
                entry.process.terminate()
                count += 1
        return count

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Join monitor threads. True if all of them finished."""
        deadline = None if timeout is None else time.time() + timeout
        with self._threads_lock:
            threads = list(self._threads)
        for thread in threads:
            remaining = None if deadline is None else max(
                0.0, deadline - time.time())
            thread.join(remaining)
        return not any(t.is_alive() for t in threads)
