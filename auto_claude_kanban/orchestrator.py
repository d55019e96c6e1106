"""Scheduler: the periodic poll cycle that drives everything else.

Each tick:

1. reap stuck local sessions and close orphaned board sessions;
2. clone / register project workspaces;
3. load the feature toggles and build this tick's workflow graph;
4. walk the enabled stages in priority order and start at most one session
   per idle project until the concurrency ceiling is reached.

A tick never raises: every step logs its own failures and the next tick
starts from fresh board state.
"""

import logging
import signal
import threading
from typing import List, Optional, Set

from auto_claude_kanban.board_api import BoardClient
from auto_claude_kanban.config import KILL_GRACE_SECONDS, Settings
from auto_claude_kanban.git_helper import GitHelper
from auto_claude_kanban.models import FeatureToggle
from auto_claude_kanban.reaper import StuckSessionReaper
from auto_claude_kanban.stages import STAGES, StageHandler
from auto_claude_kanban.supervisor import (
    CapacityError, ProjectBusyError, SessionSupervisor,
)
from auto_claude_kanban.workflow import WorkflowGraph
from auto_claude_kanban.workspace import WorkspaceProvisioner

log = logging.getLogger(__name__)


class Scheduler:

    def __init__(self, settings: Settings,
                 board: Optional[BoardClient] = None,
                 supervisor: Optional[SessionSupervisor] = None,
                 reaper: Optional[StuckSessionReaper] = None,
                 provisioner: Optional[WorkspaceProvisioner] = None):
        self.settings = settings
        self.board = board or BoardClient(settings.api_url, settings.api_key)
        self.supervisor = supervisor or SessionSupervisor(self.board, settings)
        self.table = self.supervisor.table
        self.reaper = reaper or StuckSessionReaper(self.board, self.table,
                                                   settings)
        self.provisioner = provisioner or WorkspaceProvisioner(
            self.board, GitHelper(settings.gh_token), settings.projects_dir)
        self._stop = threading.Event()

    # -- signal handling ------------------------------------------------------

    def _register_signals(self):
        signal.signal(signal.SIGINT, self._handle_signal)
        signal.signal(signal.SIGTERM, self._handle_signal)

    def _handle_signal(self, signum, frame):
        log.info("Received signal %s, shutting down", signum)
        self.stop()

    def stop(self):
        self._stop.set()

    # -- poll cycle -----------------------------------------------------------

    def _feature_toggles(self) -> List[FeatureToggle]:
        try:
            return self.board.get_feature_toggles()
        except Exception as exc:
            log.warning("Failed to load feature toggles, optional stages "
                        "disabled this cycle: %s", exc)
            return []

    def poll_cycle(self) -> int:
        """Run one tick. Returns the number of sessions started."""
        log.info("Poll cycle starting (%d/%d sessions active)",
                 len(self.table), self.table.capacity)
        started = 0
        try:
            busy = self.reaper.run()

            try:
                skipped = self.provisioner.provision()
            except Exception as exc:
                log.error("Workspace provisioning failed: %s", exc)
                skipped = set()

            graph = WorkflowGraph.from_toggles(self._feature_toggles())
            active = set(busy) | self.table.project_ids()

            for key in graph.enabled_stages:
                if self.table.is_full():
                    log.info("Concurrency limit reached (%d), waiting for "
                             "the next cycle", self.table.capacity)
                    break
                handler = StageHandler(STAGES[key], self.board,
                                       self.supervisor, self.settings, graph)
                started += self._run_stage(handler, active, skipped)
        except Exception as exc:
            log.exception("Poll cycle failed: %s", exc)

        log.info("Poll cycle complete: started %d session(s), %d active",
                 started, len(self.table))
        return started

    def _run_stage(self, handler: StageHandler, active: Set[str],
                   skipped: Set[str]) -> int:
        try:
            grouped = handler.candidates()
        except Exception as exc:
            log.error("Failed to fetch %s candidates: %s", handler.label, exc)
            return 0

        started = 0
        for project_id, tasks in grouped.items():
            if project_id in active:
                log.debug("Project %s busy, skipping %s", project_id,
                          handler.label)
                continue
            if project_id in skipped:
                log.debug("Project %s has no workspace, skipping", project_id)
                continue
            if self.table.is_full():
                break
            try:
                task = handler.select(tasks)
                if task is None:
                    continue
                handler.dispatch(project_id, task)
            except ProjectBusyError as exc:
                log.info("%s", exc)
                active.add(project_id)
                continue
            except CapacityError as exc:
                log.info("%s", exc)
                break
            except Exception as exc:
                log.error("Failed to start %s for project %s: %s",
                          handler.label, project_id, exc)
                continue
            active.add(project_id)
            started += 1
        return started

    # -- main loop ------------------------------------------------------------

    def run_forever(self):
        self._register_signals()
        log.info("Orchestrator starting (api=%s poll=%ds max_concurrent=%d "
                 "timeout=%ds)", self.settings.api_url,
                 self.settings.poll_interval, self.settings.max_concurrent,
                 self.settings.session_timeout)
        while not self._stop.is_set():
            self.poll_cycle()
            self._stop.wait(self.settings.poll_interval)
        self.shutdown()

    def shutdown(self):
        """SIGTERM every agent and give them a short grace window. Board
        records of killed sessions are cleaned up by orphan reconciliation
        on the next start."""
        killed = self.supervisor.terminate_all()
        if killed:
            log.info("Waiting up to %ds for %d agent(s) to exit",
                     KILL_GRACE_SECONDS, killed)
            self.supervisor.wait(KILL_GRACE_SECONDS)
        log.info("Orchestrator stopped")
