"""Project working-copy provisioning (clone-if-absent, mark initialized)."""

import logging
import os
from typing import Set

from auto_claude_kanban.board_api import BoardClient
from auto_claude_kanban.git_helper import GitHelper

log = logging.getLogger(__name__)


class WorkspaceProvisioner:
    """Makes sure every board project has a local working copy."""

    def __init__(self, board: BoardClient, git: GitHelper, projects_dir: str):
        self.board = board
        self.git = git
        self.projects_dir = projects_dir

    def project_dir(self, project_id: str) -> str:
        return os.path.join(self.projects_dir, project_id)

    def provision(self) -> Set[str]:
        """Clone uninitialized projects.

        Returns the ids of projects that could not be provisioned; they are
        retried on the next call.
        """
        failed: Set[str] = set()
        for project in self.board.list_projects():
            if project.is_initialized or not project.repository_url:
                continue

            dest = self.project_dir(project.id)
            try:
                if os.path.exists(dest):
                    log.info("Project directory exists, marking initialized "
                             "(project=%s)", project.id)
                else:
                    log.info("Cloning project repository (project=%s)",
                             project.id)
                    os.makedirs(self.projects_dir, exist_ok=True)
                    self.git.clone(project.repository_url, dest)
                self.board.update_project(project.id,
                                          working_directory=dest,
                                          is_initialized=True)
                log.info("Project initialized (project=%s, dir=%s)",
                         project.id, dest)
            except Exception as exc:
                log.error("Failed to initialize project %s: %s",
                          project.id, exc)
                failed.add(project.id)
        return failed
