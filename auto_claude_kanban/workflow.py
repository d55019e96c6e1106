"""Task workflow state machine.

The set of stages a task passes through depends on the feature toggles, so
the workflow is a small graph rebuilt on every poll cycle:
``(stage key, outcome) -> next status``. Enabling an optional stage adds
nodes and rewires edges; nothing else changes.
"""

from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

from auto_claude_kanban.models import (
    FeatureKey, FeatureToggle, TaskStatus, find_toggle,
)

# stage keys, in strict dispatch priority order
REPLY = 'reply'
FIX_REVIEW = 'fix_review'
FIX_TEST = 'fix_test'
AI_REVIEW = 'ai_review'
TESTING = 'testing'
EXECUTE = 'execute'
REFINEMENT = 'refinement'

STAGE_PRIORITY = (REPLY, FIX_REVIEW, FIX_TEST, AI_REVIEW, TESTING, EXECUTE,
                  REFINEMENT)

# outcomes of a successful agent run
DONE = 'done'
PASS = 'pass'
FAIL = 'fail'

DEFAULT_MAX_REVIEW_ROUNDS = 3
REFINED_LABEL = 'refined'


@dataclass
class Transition:
    """Board update produced by a stage outcome. ``status`` None keeps the
    task where it is."""
    status: Optional[str] = None
    error_count: Optional[int] = None
    review_rounds: Optional[int] = None
    completion_notes: Optional[str] = None
    clear_assignment: bool = False
    labels: Optional[List[str]] = None

    def to_patch(self) -> Dict[str, Any]:
        patch: Dict[str, Any] = {}
        if self.status is not None:
            patch['status'] = self.status
        if self.error_count is not None:
            patch['error_count'] = self.error_count
        if self.review_rounds is not None:
            patch['review_rounds'] = self.review_rounds
        if self.completion_notes is not None:
            patch['completion_notes'] = self.completion_notes
        if self.clear_assignment:
            patch['assigned_to'] = None
        if self.labels is not None:
            patch['labels'] = self.labels
        return patch


class WorkflowGraph:
    """Stage graph for one set of feature toggles."""

    def __init__(self, ai_review: bool = False, local_testing: bool = False,
                 refinement: bool = False,
                 max_review_rounds: int = DEFAULT_MAX_REVIEW_ROUNDS,
                 auto_advance_on_approve: bool = True,
                 refinement_auto_advance: bool = True):
        self.ai_review = ai_review
        self.local_testing = local_testing
        self.refinement = refinement
        self.max_review_rounds = max_review_rounds
        self.auto_advance_on_approve = auto_advance_on_approve
        self.refinement_auto_advance = refinement_auto_advance
        self.edges: Dict[Tuple[str, str], Optional[str]] = {}
        self._build()

    @classmethod
    def from_toggles(cls, toggles: List[FeatureToggle]) -> 'WorkflowGraph':
        review = find_toggle(toggles, FeatureKey.AI_REVIEW.value)
        testing = find_toggle(toggles, FeatureKey.LOCAL_TESTING.value)
        refine = find_toggle(toggles, FeatureKey.REFINEMENT.value)
        review_cfg = review.config if review else {}
        refine_cfg = refine.config if refine else {}
        return cls(
            ai_review=bool(review and review.enabled),
            local_testing=bool(testing and testing.enabled),
            refinement=bool(refine and refine.enabled),
            max_review_rounds=int(review_cfg.get(
                'max_review_rounds', DEFAULT_MAX_REVIEW_ROUNDS)),
            auto_advance_on_approve=bool(review_cfg.get(
                'auto_advance_on_approve', True)),
            refinement_auto_advance=bool(refine_cfg.get('auto_advance', True)),
        )

    def _build(self):
        review = TaskStatus.REVIEW.value
        after_review = (TaskStatus.DONE.value if self.auto_advance_on_approve
                        else review)
        after_testing = TaskStatus.AI_REVIEW.value if self.ai_review else review

        if self.local_testing:
            after_execute = TaskStatus.TESTING.value
        else:
            after_execute = after_testing

        self.edges[(EXECUTE, DONE)] = after_execute
        self.edges[(REPLY, DONE)] = None

        if self.ai_review:
            self.edges[(FIX_REVIEW, DONE)] = TaskStatus.AI_REVIEW.value
            self.edges[(AI_REVIEW, PASS)] = after_review
            self.edges[(AI_REVIEW, FAIL)] = TaskStatus.REVIEW_REJECTED.value

        if self.local_testing:
            self.edges[(FIX_TEST, DONE)] = TaskStatus.TESTING.value
            self.edges[(TESTING, PASS)] = after_testing
            self.edges[(TESTING, FAIL)] = TaskStatus.TEST_FAILED.value

        if self.refinement:
            self.edges[(REFINEMENT, DONE)] = (
                TaskStatus.TODO.value if self.refinement_auto_advance else None)

    @property
    def enabled_stages(self) -> List[str]:
        """Enabled stage keys in dispatch priority order."""
        present = {stage for stage, _ in self.edges}
        return [stage for stage in STAGE_PRIORITY if stage in present]

    def next_status(self, stage_key: str, outcome: str) -> Optional[str]:
        try:
            return self.edges[(stage_key, outcome)]
        except KeyError:
            raise ValueError(
                f"No transition for stage {stage_key!r} on {outcome!r}")
