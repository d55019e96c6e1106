"""Agent instructions for every workflow stage.

Pure functions of (stage, task, project, settings, workflow graph): the same
inputs always produce the same text.
"""

import json
import os
from typing import Dict, List, Optional

from auto_claude_kanban.config import Settings
from auto_claude_kanban.git_helper import (
    create_branch_name, parse_pr_number, parse_repo_slug,
)
from auto_claude_kanban.models import Project, Task
from auto_claude_kanban.workflow import (
    AI_REVIEW, EXECUTE, FIX_REVIEW, FIX_TEST, REFINED_LABEL, REFINEMENT,
    REPLY, TESTING, WorkflowGraph,
)

VERDICT_APPROVE = 'VERDICT: APPROVE'
VERDICT_REJECT = 'VERDICT: REQUEST_CHANGES'
TEST_PASS = 'TEST_RESULT: PASS'
TEST_FAIL = 'TEST_RESULT: FAIL'


def _header(task: Task, project: Optional[Project], settings: Settings) -> str:
    work_dir = (project.working_directory if project else None) \
        or settings.workspace_root
    name = project.name if project and project.name else 'Unknown'
    return (
        f"Project: {name}\n"
        f"Read {os.path.join(work_dir, 'CLAUDE.md')} for project rules if it "
        f"exists.\n"
        f"Read {os.path.join(work_dir, '.memory', 'context.md')} for current "
        f"context if it exists.\n"
    )


def _branch(task: Task) -> str:
    return task.branch_name or create_branch_name(task.id, task.title)


def _git_workflow(task: Task, settings: Settings) -> str:
    if not settings.gh_token:
        return ""
    branch = _branch(task)
    return (
        "\n## Git Workflow\n\n"
        "After completing the task, create a PR for review:\n"
        "1. Start from main: git checkout main && git pull origin main\n"
        f"2. Create branch: git checkout -b {branch}\n"
        "3. Stage all changes: git add -A\n"
        "4. Commit using conventional commits (feat: ..., fix: ...)\n"
        f"5. Push: git push -u origin {branch}\n"
        f'6. Create PR: gh pr create --title "{task.title}" '
        f'--body "Automated PR for task {task.id}"\n'
        "7. Save the PR on the task:\n"
        '   curl -s -X PATCH "$KANBAN_API_URL/api/tasks/$KANBAN_TASK_ID" \\\n'
        '     -H "Authorization: Bearer $KANBAN_API_KEY" \\\n'
        '     -H "Content-Type: application/json" \\\n'
        f"     -d '{{\"pr_url\":\"<PR_URL>\",\"branch_name\":\"{branch}\"}}'\n"
    )


def _push_fixes(task: Task) -> str:
    branch = _branch(task)
    return (
        "\n## Push the fixes\n\n"
        f"git checkout {branch} && git pull origin {branch}\n"
        "Make the fixes, then:\n"
        f"git add -A && git commit -m \"fix: address feedback for "
        f"{task.title}\" && git push origin {branch}\n"
        "Do NOT create a new PR; push to the existing branch.\n"
    )


def build_execution_prompt(task: Task, project: Optional[Project],
                           settings: Settings) -> str:
    return (
        f"{_header(task, project, settings)}\n"
        f"Task: {task.title}\n"
        f"{task.description or ''}\n\n"
        "Do the task. When done, update .memory/context.md with what you "
        "accomplished.\n"
        f"{_git_workflow(task, settings)}"
    )


def build_fix_review_prompt(task: Task, project: Optional[Project],
                            settings: Settings) -> str:
    slug = parse_repo_slug(project.repository_url if project else None)
    pr = parse_pr_number(task.pr_url)
    if slug and pr:
        feedback = (
            f"gh pr view {pr} --repo {slug} --json reviews "
            f"--jq '.reviews[-1].body'\n"
            f"gh api repos/{slug}/pulls/{pr}/comments\n"
        )
    else:
        feedback = "PR URL not available; use the review feedback below.\n"
    return (
        f"{_header(task, project, settings)}\n"
        f"Task: Fix review feedback for \"{task.title}\"\n\n"
        "This task was reviewed and changes were requested.\n"
        f"Review feedback: {task.completion_notes or '(none recorded)'}\n\n"
        f"## Read the review comments\n\n{feedback}"
        f"{_push_fixes(task)}"
    )


def build_ai_review_prompt(task: Task, project: Optional[Project],
                           settings: Settings, graph: WorkflowGraph) -> str:
    slug = parse_repo_slug(project.repository_url if project else None)
    pr = parse_pr_number(task.pr_url)
    target = f"--repo {slug}" if slug else ""
    return (
        "You are an automated PR reviewer. Review the pull request and post "
        "your review to GitHub.\n\n"
        f"Task ID: {task.id}\n"
        f"Title: {task.title}\n"
        f"PR: {task.pr_url}\n"
        f"Review round: {task.review_rounds + 1} of "
        f"{graph.max_review_rounds}\n\n"
        "## Review\n\n"
        f"gh pr view {pr or ''} {target} --json title,body,files\n"
        f"gh pr diff {pr or ''} {target}\n\n"
        "Look for bugs and logic errors, behavioural regressions, missing "
        "error handling and security problems. Style nits alone must not "
        "block the PR.\n\n"
        "Post the review with event APPROVE or REQUEST_CHANGES, with inline "
        "comments where possible.\n\n"
        "## Verdict\n\n"
        "Finish your output with exactly one of these lines:\n"
        f"{VERDICT_APPROVE}\n"
        f"{VERDICT_REJECT}\n"
        "followed, for REQUEST_CHANGES, by a short summary of the blocking "
        "issues.\n"
    )


def build_testing_prompt(task: Task, project: Optional[Project],
                         settings: Settings) -> str:
    return (
        f"{_header(task, project, settings)}\n"
        f"Task under test: {task.title}\n"
        f"Branch: {_branch(task)}\n\n"
        "Check out the branch, install dependencies and run the project's "
        "test suite and build locally. Do not change any code.\n\n"
        "Finish your output with exactly one of these lines:\n"
        f"{TEST_PASS}\n"
        f"{TEST_FAIL}\n"
        "followed, for FAIL, by the failing tests and error output.\n"
    )


def build_fix_test_prompt(task: Task, project: Optional[Project],
                          settings: Settings) -> str:
    return (
        f"{_header(task, project, settings)}\n"
        f"Task: Fix failing tests for \"{task.title}\"\n\n"
        f"Test report: {task.completion_notes or '(none recorded)'}\n\n"
        "Reproduce the failures locally, fix the code (not the tests, unless "
        "the tests are wrong) and run the suite again until it passes.\n"
        f"{_push_fixes(task)}"
    )


def build_refinement_prompt(task: Task, project: Optional[Project],
                            settings: Settings) -> str:
    labels = list(task.labels) + [REFINED_LABEL]
    return (
        "You are a task refinement assistant. Your ONLY job is to improve "
        "the title and description of a task on the kanban board. Do NOT "
        "write code, create files or run git commands.\n\n"
        f"ID: {task.id}\n"
        f"Current title: {task.title}\n"
        f"Current description:\n{task.description or '(no description)'}\n\n"
        "Produce a clear imperative title (under 80 characters) and a "
        "markdown description with Overview, Deliverables, Technical Notes "
        "and Acceptance Criteria. Keep existing technical details.\n\n"
        "Update the task:\n"
        f'curl -s -X PATCH "$KANBAN_API_URL/api/tasks/{task.id}" \\\n'
        '  -H "Authorization: Bearer $KANBAN_API_KEY" \\\n'
        '  -H "Content-Type: application/json" \\\n'
        f"  -d '{{\"title\": \"...\", \"description\": \"...\", "
        f"\"labels\": {json.dumps(labels)}}}'\n"
    )


def build_reply_prompt(task: Task, project: Optional[Project],
                       settings: Settings,
                       messages: Optional[List[Dict]] = None) -> str:
    thread = "\n".join(
        f"[{m.get('author_type', 'user')}] {m.get('author', '?')}: "
        f"{m.get('content', '')}"
        for m in (messages or [])
    ) or "(no messages)"
    return (
        f"{_header(task, project, settings)}\n"
        f"Task: {task.title} (status: {task.status})\n"
        f"{task.description or ''}\n\n"
        "A human left a message on this task. Recent conversation, oldest "
        f"first:\n{thread}\n\n"
        "Answer the latest human message. If it asks for a change, make it "
        "in the working copy and say what you did. Your final output is "
        "posted back to the task as the reply.\n"
    )


def build_prompt(stage_key: str, task: Task, project: Optional[Project],
                 settings: Settings, graph: WorkflowGraph,
                 messages: Optional[List[Dict]] = None) -> str:
    if stage_key == EXECUTE:
        return build_execution_prompt(task, project, settings)
    if stage_key == FIX_REVIEW:
        return build_fix_review_prompt(task, project, settings)
    if stage_key == AI_REVIEW:
        return build_ai_review_prompt(task, project, settings, graph)
    if stage_key == TESTING:
        return build_testing_prompt(task, project, settings)
    if stage_key == FIX_TEST:
        return build_fix_test_prompt(task, project, settings)
    if stage_key == REFINEMENT:
        return build_refinement_prompt(task, project, settings)
    if stage_key == REPLY:
        return build_reply_prompt(task, project, settings, messages)
    raise ValueError(f"Unknown stage: {stage_key}")
