"""Data models shared by the board client, the supervisor and the
scheduler."""

from auto_claude_kanban.models.enums import (
    TaskStatus, TaskPriority, SessionStatus, EventType, FeatureKey,
)
from auto_claude_kanban.models.task import Task, sort_by_priority
from auto_claude_kanban.models.project import Project
from auto_claude_kanban.models.session import Session, SessionResult
from auto_claude_kanban.models.feature_toggle import FeatureToggle, find_toggle

__all__ = [
    "TaskStatus",
    "TaskPriority",
    "SessionStatus",
    "EventType",
    "FeatureKey",
    "Task",
    "sort_by_priority",
    "Project",
    "Session",
    "SessionResult",
    "FeatureToggle",
    "find_toggle",
]
