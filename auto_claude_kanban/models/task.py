"""Task dataclass — one work item on the board."""

import json
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from auto_claude_kanban.models.enums import TaskPriority, TaskStatus

DEFAULT_PROJECT_ID = 'default'


def parse_json_list(value: Any) -> List:
    """The board may send list columns as JSON-encoded strings."""
    if isinstance(value, list):
        return value
    if isinstance(value, str) and value:
        try:
            parsed = json.loads(value)
        except json.JSONDecodeError:
            return []
        return parsed if isinstance(parsed, list) else []
    return []


@dataclass
class Task:
    id: str
    title: str
    description: Optional[str] = None
    status: str = TaskStatus.TODO.value
    priority: str = TaskPriority.MEDIUM.value
    task_list_id: Optional[str] = None
    error_count: int = 0
    review_rounds: int = 0
    pr_url: Optional[str] = None
    branch_name: Optional[str] = None
    completion_notes: Optional[str] = None
    parent_task_id: Optional[str] = None
    claude_session_id: Optional[str] = None
    assigned_to: Optional[str] = None
    labels: List[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Dict) -> 'Task':
        known = {k: v for k, v in data.items()
                 if k in cls.__dataclass_fields__}
        known['labels'] = parse_json_list(data.get('labels'))
        known['error_count'] = int(data.get('error_count') or 0)
        known['review_rounds'] = int(data.get('review_rounds') or 0)
        known.setdefault('title', '')
        return cls(**known)

    @property
    def project_id(self) -> str:
        return self.task_list_id or DEFAULT_PROJECT_ID

    @property
    def is_subtask(self) -> bool:
        return bool(self.parent_task_id)

    @property
    def priority_rank(self) -> int:
        return TaskPriority.rank(self.priority)


def sort_by_priority(tasks: List[Task]) -> List[Task]:
    """Most urgent first; the board order is kept among equals."""
    return sorted(tasks, key=lambda t: t.priority_rank)
