"""Status and priority enumerations."""

from enum import Enum


class TaskStatus(Enum):
    """Board column a task currently sits in."""
    BACKLOG = "backlog"
    REFINEMENT = "refinement"
    TODO = "todo"
    IN_PROGRESS = "in_progress"
    REVIEW_REJECTED = "review_rejected"
    TEST_FAILED = "test_failed"
    TESTING = "testing"
    AI_REVIEW = "ai_review"
    REVIEW = "review"            # human review
    DONE = "done"


class TaskPriority(Enum):
    URGENT = "urgent"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"

    @classmethod
    def rank(cls, value: str) -> int:
        """Sort key: lower is more urgent; unknown values rank as medium."""
        order = {cls.URGENT.value: 0, cls.HIGH.value: 1,
                 cls.MEDIUM.value: 2, cls.LOW.value: 3}
        return order.get(value, order[cls.MEDIUM.value])


class SessionStatus(Enum):
    ACTIVE = "active"
    COMPLETED = "completed"
    ERROR = "error"


class EventType(Enum):
    SESSION_START = "session_start"
    SESSION_END = "session_end"
    SESSION_ERROR = "session_error"
    STUCK = "stuck"


class FeatureKey(Enum):
    AI_REVIEW = "ai_review"
    REFINEMENT = "refinement"
    LOCAL_TESTING = "local_testing"
