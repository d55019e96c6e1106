"""Workflow stages: candidate selection, dispatch and completion.

Every stage follows the same shape, so one :class:`StageHandler` drives all
of them from the :data:`STAGES` table:

1. fetch candidate tasks from the stage's queue, grouped by project;
2. pick the most urgent task per idle project, escalating any task that
   already hit its retry ceiling;
3. build the prompt and hand it to the supervisor;
4. on completion, turn the agent result into a :class:`Transition`.
"""

import logging
import uuid
from collections import OrderedDict
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple

from auto_claude_kanban.agent import RESUME_CONTINUE, RESUME_NEW
from auto_claude_kanban.board_api import BoardClient
from auto_claude_kanban.config import Settings
from auto_claude_kanban.models import (
    EventType, Project, SessionResult, Task, TaskStatus, sort_by_priority,
)
from auto_claude_kanban.models.task import DEFAULT_PROJECT_ID
from auto_claude_kanban.prompts import (
    TEST_FAIL, TEST_PASS, VERDICT_APPROVE, VERDICT_REJECT, build_prompt,
)
from auto_claude_kanban.supervisor import SessionHandle, SessionSupervisor
from auto_claude_kanban.utils import tail
from auto_claude_kanban.workflow import (
    AI_REVIEW, DONE, EXECUTE, FAIL, FIX_REVIEW, FIX_TEST, PASS,
    REFINED_LABEL, REFINEMENT, REPLY, TESTING, Transition, WorkflowGraph,
)

log = logging.getLogger(__name__)

ASSIGNEE = 'orchestrator'
CANDIDATE_LIMIT = 100
REPLY_HISTORY = 20


@dataclass(frozen=True)
class Stage:
    key: str
    label: str
    queue_status: Optional[str]         # None: candidates are pending messages
    working_status: Optional[str]       # None: status is left alone
    counter: str = 'error_count'
    verdict: Optional[Tuple[str, str]] = None   # (pass marker, fail marker)
    allow_scm: bool = True
    resumable: bool = False


STAGES: Dict[str, Stage] = {
    REPLY: Stage(REPLY, 'Message reply', None, None, resumable=True),
    FIX_REVIEW: Stage(FIX_REVIEW, 'Review fix',
                      TaskStatus.REVIEW_REJECTED.value,
                      TaskStatus.IN_PROGRESS.value, resumable=True),
    FIX_TEST: Stage(FIX_TEST, 'Test fix', TaskStatus.TEST_FAILED.value,
                    TaskStatus.IN_PROGRESS.value, resumable=True),
    AI_REVIEW: Stage(AI_REVIEW, 'AI review', TaskStatus.AI_REVIEW.value,
                     TaskStatus.AI_REVIEW.value, counter='review_rounds',
                     verdict=(VERDICT_APPROVE, VERDICT_REJECT)),
    TESTING: Stage(TESTING, 'Local testing', TaskStatus.TESTING.value,
                   TaskStatus.TESTING.value, verdict=(TEST_PASS, TEST_FAIL)),
    EXECUTE: Stage(EXECUTE, 'Execution', TaskStatus.TODO.value,
                   TaskStatus.IN_PROGRESS.value, resumable=True),
    REFINEMENT: Stage(REFINEMENT, 'Refinement', TaskStatus.REFINEMENT.value,
                      TaskStatus.REFINEMENT.value, allow_scm=False),
}


def stage_for_session(session_type: Optional[str],
                      task_status: Optional[str] = None) -> Optional[Stage]:
    """Stage that started a board session. Sessions recorded without a type
    are execution sessions when the task sits in ``in_progress``."""
    if session_type in STAGES:
        return STAGES[session_type]
    if task_status == TaskStatus.IN_PROGRESS.value:
        return STAGES[EXECUTE]
    return None


def parse_verdict(output: str, pass_marker: str,
                  fail_marker: str) -> Optional[str]:
    """PASS or FAIL from the last verdict marker in *output*, None if the
    agent printed neither."""
    output = output or ''
    passed = output.rfind(pass_marker)
    failed = output.rfind(fail_marker)
    if passed < 0 and failed < 0:
        return None
    return PASS if passed > failed else FAIL


def text_after_marker(output: str, marker: str, limit: int = 2000) -> str:
    idx = (output or '').rfind(marker)
    if idx < 0:
        return tail(output, limit)
    return tail(output[idx + len(marker):], limit)


class StageHandler:
    """Runs one workflow stage for a single poll cycle."""

    def __init__(self, stage: Stage, board: BoardClient,
                 supervisor: SessionSupervisor, settings: Settings,
                 graph: WorkflowGraph):
        self.stage = stage
        self.board = board
        self.supervisor = supervisor
        self.settings = settings
        self.graph = graph

    @property
    def key(self) -> str:
        return self.stage.key

    @property
    def label(self) -> str:
        return self.stage.label

    @property
    def allow_scm(self) -> bool:
        return self.stage.allow_scm

    def dispatch_status(self, task: Task) -> str:
        """Status a failed or reaped session returns the task to."""
        return self.stage.queue_status or task.status

    # -- candidates -----------------------------------------------------------

    def candidates(self) -> Dict[str, List[Task]]:
        """Queue tasks grouped by project, board order kept."""
        if self.stage.queue_status is None:
            tasks = self.board.pending_message_tasks()
        else:
            tasks = self.board.list_tasks(status=self.stage.queue_status,
                                          limit=CANDIDATE_LIMIT)

        grouped: Dict[str, List[Task]] = OrderedDict()
        for task in tasks:
            if task.is_subtask:
                continue
            if self.key == REFINEMENT and REFINED_LABEL in task.labels:
                continue
            grouped.setdefault(task.project_id, []).append(task)
        return grouped

    def escalation_reason(self, task: Task) -> Optional[str]:
        """Why *task* must not be dispatched again, or None."""
        if self.key == REPLY:
            failures = self.supervisor.table.reply_failures(task.id)
            if failures >= self.settings.max_retries:
                return (f"Could not answer the latest message after "
                        f"{failures} attempts")
            return None

        rounds = self.graph.max_review_rounds
        if self.key in (AI_REVIEW, FIX_REVIEW) and task.review_rounds >= rounds:
            return (f"Escalated to human review after {task.review_rounds} "
                    f"AI review rounds")
        if self.key == AI_REVIEW and not task.pr_url:
            return "No PR URL to review, moved to human review"
        if task.error_count >= self.settings.max_retries:
            if self.key == REFINEMENT:
                return (f"Refinement failed {task.error_count} times, "
                        f"moved to todo without refinement")
            return (f"Escalated to human review after {task.error_count} "
                    f"failed attempts")
        return None

    def escalate(self, task: Task, reason: str):
        log.warning("Task %s (%s): %s", task.id, self.label, reason)
        if self.key == REPLY:
            self.board.add_comment(
                task.id, f"⚠️ {reason}. Please check the task manually.",
                'error')
            self.supervisor.table.clear_reply_failures(task.id)
        else:
            target = (TaskStatus.TODO.value if self.key == REFINEMENT
                      else TaskStatus.REVIEW.value)
            self.board.update_task(task.id, status=target,
                                   completion_notes=reason, assigned_to=None)
        try:
            self.board.post_event(EventType.STUCK.value,
                                  f"{task.title}: {reason}", task_id=task.id,
                                  metadata={'session_type': self.key})
        except Exception as exc:
            log.error("Failed to post stuck event for task %s: %s",
                      task.id, exc)

    def select(self, tasks: List[Task]) -> Optional[Task]:
        """Most urgent dispatchable task; the ones at their ceiling are
        escalated on the way."""
        for task in sort_by_priority(tasks):
            reason = self.escalation_reason(task)
            if reason is None:
                return task
            try:
                self.escalate(task, reason)
            except Exception as exc:
                log.error("Failed to escalate task %s: %s", task.id, exc)
        return None

    # -- dispatch -------------------------------------------------------------

    def _project(self, project_id: str) -> Optional[Project]:
        if project_id == DEFAULT_PROJECT_ID:
            return None
        try:
            return self.board.get_project(project_id)
        except Exception as exc:
            log.warning("Could not load project %s: %s", project_id, exc)
            return None

    def _messages(self, task: Task) -> List[Dict]:
        comments = self.board.list_comments(task.id, limit=REPLY_HISTORY)
        return sorted(comments, key=lambda c: c.get('created_at') or '')

    def dispatch(self, project_id: str, task: Task) -> SessionHandle:
        project = self._project(project_id)
        messages = self._messages(task) if self.key == REPLY else None
        prompt = build_prompt(self.key, task, project, self.settings,
                              self.graph, messages)

        claim: Dict = {}
        if self.key != REPLY:
            claim['assigned_to'] = ASSIGNEE
            if self.stage.working_status != task.status:
                claim['status'] = self.stage.working_status

        resume_handle, resume_mode = None, RESUME_CONTINUE
        if self.stage.resumable:
            if task.claude_session_id:
                resume_handle = task.claude_session_id
            elif self.key == EXECUTE:
                resume_handle, resume_mode = str(uuid.uuid4()), RESUME_NEW
                claim['claude_session_id'] = resume_handle

        return self.supervisor.start(
            project_id, task, prompt, self, project=project, claim=claim,
            resume_handle=resume_handle, resume_mode=resume_mode)

    # -- completion -----------------------------------------------------------

    def completion_comment(self, task: Task,
                           result: SessionResult) -> Optional[Tuple[str, str]]:
        """(content, comment type) posted to the task, or None."""
        if self.key == REPLY:
            # a bot comment answers the message; failures keep it pending
            if not result.success:
                return None
            return tail(result.stdout, 4000) or "(no reply)", 'summary'
        if result.success:
            return (f"✅ {self.label} finished.\n\n"
                    f"{tail(result.stdout, 1500)}", 'summary')
        code = 'spawn failure' if result.exit_code is None \
            else f"exit {result.exit_code}"
        return (f"❌ {self.label} failed ({code}).\n\n"
                f"{tail(result.stderr or result.stdout, 1500)}", 'error')

    def on_complete(self, task: Task, result: SessionResult) -> Transition:
        if not result.success:
            return self.failure(task, f"exit code {result.exit_code}")
        if self.stage.verdict is None:
            return self.success(task, DONE, result)
        outcome = parse_verdict(result.stdout, *self.stage.verdict)
        if outcome is None:
            return self.failure(task, "agent printed no verdict")
        return self.success(task, outcome, result)

    def failure(self, task: Task, reason: str) -> Transition:
        if self.key == REPLY:
            count = self.supervisor.table.note_reply_failure(task.id)
            log.warning("Task %s %s failed (%s), attempt %d", task.id,
                        self.label, reason, count)
            return Transition()

        counter = self.stage.counter
        count = getattr(task, counter) + 1
        log.warning("Task %s %s failed (%s), %s now %d", task.id, self.label,
                    reason, counter, count)
        return Transition(status=self.dispatch_status(task),
                          clear_assignment=True, **{counter: count})

    def success(self, task: Task, outcome: str,
                result: SessionResult) -> Transition:
        status = self.graph.next_status(self.key, outcome)
        if self.key == REPLY:
            self.supervisor.table.clear_reply_failures(task.id)
            return Transition()

        transition = Transition(status=status, clear_assignment=True)
        if self.key == AI_REVIEW:
            rounds = task.review_rounds + 1
            transition.review_rounds = rounds
            if outcome == PASS:
                transition.completion_notes = (
                    f"AI review approved (round {rounds})")
            else:
                transition.completion_notes = (
                    f"AI review requested changes (round {rounds}):\n"
                    f"{text_after_marker(result.stdout, VERDICT_REJECT)}")
        elif self.key == TESTING:
            if outcome == PASS:
                transition.completion_notes = "Local tests passed"
            else:
                transition.error_count = task.error_count + 1
                transition.completion_notes = (
                    f"Local tests failed:\n"
                    f"{text_after_marker(result.stdout, TEST_FAIL)}")
        elif self.key == REFINEMENT:
            if REFINED_LABEL not in task.labels:
                transition.labels = list(task.labels) + [REFINED_LABEL]
        else:
            transition.completion_notes = tail(result.stdout, 1000) or None
        return transition
