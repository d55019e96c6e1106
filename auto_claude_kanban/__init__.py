"""Auto-Claude-Kanban: autonomous task execution for a kanban board,
powered by short-lived Claude Code agent sessions."""

from auto_claude_kanban.config import Settings, ConfigError, load_settings
from auto_claude_kanban.models import (
    TaskStatus, TaskPriority, SessionStatus, EventType, FeatureKey,
    Task, Project, Session, SessionResult, FeatureToggle,
)
from auto_claude_kanban.board_api import BoardClient, BoardAPIError
from auto_claude_kanban.git_helper import GitHelper
from auto_claude_kanban.workspace import WorkspaceProvisioner
from auto_claude_kanban.workflow import WorkflowGraph, Transition
from auto_claude_kanban.supervisor import (
    SessionSupervisor, SessionTable, ProjectBusyError, CapacityError,
)
from auto_claude_kanban.stages import STAGES, StageHandler
from auto_claude_kanban.reaper import StuckSessionReaper
from auto_claude_kanban.orchestrator import Scheduler
from auto_claude_kanban.cli import main
