"""Stuck-session detection and orphan cleanup.

Runs at the start of every poll cycle, before any dispatch:

* :meth:`StuckSessionReaper.sweep` kills local agents that outlived the
  session timeout or whose process has vanished, and records the failure;
* :meth:`StuckSessionReaper.reconcile_orphans` closes board sessions marked
  active that no local process backs (left behind by a restart).
"""

import logging
import os
import subprocess
import time
from typing import Callable, List, Optional, Set

from auto_claude_kanban.board_api import BoardClient
from auto_claude_kanban.config import KILL_GRACE_SECONDS, Settings
from auto_claude_kanban.models import (
    EventType, Session, SessionStatus, Task,
)
from auto_claude_kanban.stages import Stage, STAGES, stage_for_session
from auto_claude_kanban.supervisor import ActiveSessionEntry, SessionTable
from auto_claude_kanban.workflow import REPLY

log = logging.getLogger(__name__)


def pid_alive(pid: int) -> bool:
    """True if a process with *pid* exists (signal 0 probe)."""
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


class StuckSessionReaper:

    def __init__(self, board: BoardClient, table: SessionTable,
                 settings: Settings,
                 is_alive: Callable[[int], bool] = pid_alive,
                 clock: Callable[[], float] = time.time,
                 kill_grace: float = KILL_GRACE_SECONDS):
        self.board = board
        self.table = table
        self.settings = settings
        self.is_alive = is_alive
        self.clock = clock
        self.kill_grace = kill_grace

    def run(self) -> Set[str]:
        """Sweep, then reconcile. Returns the projects the board reports as
        busy with a locally tracked session."""
        try:
            self.sweep()
        except Exception as exc:
            log.error("Stuck-session sweep failed: %s", exc)
        return self.reconcile_orphans()

    # -- local sweep ----------------------------------------------------------

    def sweep(self) -> List[ActiveSessionEntry]:
        reaped = []
        now = self.clock()
        for entry in self.table.entries():
            if entry.process is None or entry.finishing:
                continue
            if entry.process.poll() is not None:
                # already exited, the monitor thread completes it
                continue
            age = now - entry.started_at
            dead = not self.is_alive(entry.pid)
            timed_out = age >= self.settings.session_timeout
            if not (dead or timed_out):
                continue
            if not self.table.take(entry):
                continue

            reason = 'process died' if dead else 'timeout'
            log.warning("Reaping session %s (project=%s task=%s): %s after "
                        "%d min", entry.session_id, entry.project_id,
                        entry.task_id, reason, age // 60)
            if not dead:
                self._kill(entry.process)
            self._record_failure(entry, reason, age)
            reaped.append(entry)
        return reaped

    def _kill(self, process: subprocess.Popen):
        process.terminate()
        try:
            process.wait(timeout=self.kill_grace)
        except subprocess.TimeoutExpired:
            log.warning("Process %s ignored SIGTERM, sending SIGKILL",
                        process.pid)
            process.kill()

    def _record_failure(self, entry: ActiveSessionEntry, reason: str,
                        age: float):
        summary = f"Session killed: {reason} after {int(age // 60)} minutes"
        try:
            self.board.update_session(entry.session_id,
                                      status=SessionStatus.ERROR.value,
                                      summary=summary)
        except Exception as exc:
            log.error("Failed to update session %s: %s", entry.session_id, exc)

        if entry.stage == REPLY:
            count = self.table.note_reply_failure(entry.task_id)
            self._post_error(f"{summary}. Reply attempt {count} failed.",
                             entry.session_id, entry.task_id)
            return

        status = entry.dispatch_status
        try:
            task = self.board.get_task(entry.task_id)
            self._restore_task(task, STAGES.get(entry.stage), status)
        except Exception as exc:
            log.error("Failed to reset task %s: %s", entry.task_id, exc)

        self._post_error(f"{summary}. Task reset to {status}.",
                         entry.session_id, entry.task_id)

    def _restore_task(self, task: Task, stage: Optional[Stage], status: str):
        counter = stage.counter if stage else 'error_count'
        count = getattr(task, counter) + 1
        self.board.update_task(task.id, status=status, assigned_to=None,
                               **{counter: count})
        log.info("Task %s reset to %s (%s=%d)", task.id, status, counter,
                 count)

    def _post_error(self, message: str, session_id: str, task_id: str):
        try:
            self.board.post_event(EventType.SESSION_ERROR.value, message,
                                  session_id=session_id, task_id=task_id)
        except Exception as exc:
            log.error("Failed to post session_error event: %s", exc)

    # -- orphans --------------------------------------------------------------

    def reconcile_orphans(self) -> Set[str]:
        try:
            sessions = self.board.list_sessions(
                status=SessionStatus.ACTIVE.value)
        except Exception as exc:
            log.error("Failed to list active sessions: %s", exc)
            return set()

        tracked = set()
        for session in sessions:
            if not session.project_id:
                continue
            entry = self.table.get(session.project_id)
            if entry is not None and entry.session_id in (None, session.id):
                tracked.add(session.project_id)
                continue
            self._clean_orphan(session)
        return tracked

    def _clean_orphan(self, session: Session):
        log.warning("Cleaning up orphan session %s (project=%s task=%s)",
                    session.id, session.project_id, session.current_task_id)
        summary = ("Orphan session: orchestrator restarted while the "
                   "session was active")
        try:
            self.board.update_session(session.id,
                                      status=SessionStatus.ERROR.value,
                                      summary=summary)
        except Exception as exc:
            # leave the task alone so the next cycle retries the whole cleanup
            log.error("Failed to close orphan session %s: %s", session.id, exc)
            return

        self._post_error(summary, session.id, session.current_task_id)
        if not session.current_task_id:
            return
        try:
            task = self.board.get_task(session.current_task_id)
            stage = stage_for_session(session.session_type, task.status)
            if stage is None or stage.key == REPLY:
                return
            if task.status != stage.working_status:
                log.info("Orphan task %s already moved on (%s), leaving it",
                         task.id, task.status)
                return
            self._restore_task(task, stage, stage.queue_status)
        except Exception as exc:
            log.error("Failed to reset orphan task %s: %s",
                      session.current_task_id, exc)
