"""Board session record and the in-process result of one agent run."""

from dataclasses import dataclass
from typing import Dict, Optional

from auto_claude_kanban.models.enums import SessionStatus


@dataclass
class Session:
    id: str
    project_id: Optional[str] = None
    current_task_id: Optional[str] = None
    status: str = SessionStatus.ACTIVE.value
    summary: Optional[str] = None
    session_type: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict) -> 'Session':
        return cls(**{k: v for k, v in data.items()
                      if k in cls.__dataclass_fields__})


@dataclass
class SessionResult:
    """Outcome of one agent process. ``exit_code`` is None when the
    process could not be spawned at all."""
    exit_code: Optional[int]
    stdout: str = ''
    stderr: str = ''
    duration: float = 0.0

    @property
    def success(self) -> bool:
        return self.exit_code == 0
