"""Shared test fixtures: an in-memory board and fake agent processes."""

import itertools
import subprocess
import threading
from typing import Dict, List, Optional

import pytest

from auto_claude_kanban.board_api import BoardAPIError
from auto_claude_kanban.config import Settings
from auto_claude_kanban.models import FeatureToggle, Project, Session, Task
from auto_claude_kanban.supervisor import SessionSupervisor, SessionTable

# ---------------------------------------------------------------------------
# Fake board
# ---------------------------------------------------------------------------


class FakeBoard:
    """Dict-backed stand-in for :class:`BoardClient`.

    ``fail`` maps a method name to the exception that method raises.
    Comments from a bot answer a task's pending human message.
    """

    def __init__(self):
        self.tasks: Dict[str, Dict] = {}
        self.projects: Dict[str, Dict] = {}
        self.sessions: Dict[str, Dict] = {}
        self.comments: Dict[str, List[Dict]] = {}
        self.events: List[Dict] = []
        self.toggles: List[Dict] = []
        self.pending: List[str] = []
        self.task_updates: List = []
        self.fail: Dict[str, Exception] = {}
        self._ids = itertools.count(1)
        self._lock = threading.Lock()

    def _check(self, name: str):
        if name in self.fail:
            raise self.fail[name]

    # -- seeding --

    def add_task(self, task_id: str, status: str = 'todo',
                 project_id: Optional[str] = 'p1', **fields) -> Dict:
        data = {'id': task_id, 'title': f"Task {task_id}", 'status': status,
                'priority': 'medium', 'task_list_id': project_id,
                'error_count': 0, 'review_rounds': 0}
        data.update(fields)
        self.tasks[task_id] = data
        return data

    def add_project(self, project_id: str, **fields) -> Dict:
        data = {'id': project_id, 'name': f"Project {project_id}",
                'working_directory': f"/tmp/{project_id}",
                'is_initialized': True}
        data.update(fields)
        self.projects[project_id] = data
        return data

    def add_session(self, session_id: str, project_id: str, task_id: str,
                    status: str = 'active',
                    session_type: Optional[str] = None) -> Dict:
        data = {'id': session_id, 'project_id': project_id,
                'current_task_id': task_id, 'status': status,
                'session_type': session_type}
        self.sessions[session_id] = data
        return data

    def events_of(self, event_type: str) -> List[Dict]:
        return [e for e in self.events if e['event_type'] == event_type]

    # -- tasks --

    def list_tasks(self, status=None, project_id=None, limit=100):
        self._check('list_tasks')
        tasks = [t for t in self.tasks.values()
                 if (status is None or t['status'] == status)
                 and (project_id is None or t['task_list_id'] == project_id)]
        return [Task.from_dict(t) for t in tasks[:limit]]

    def get_task(self, task_id):
        self._check('get_task')
        if task_id not in self.tasks:
            raise BoardAPIError('GET', f'/api/tasks/{task_id}', 404)
        return Task.from_dict(self.tasks[task_id])

    def update_task(self, task_id, **fields):
        self._check('update_task')
        with self._lock:
            self.tasks[task_id].update(fields)
            self.task_updates.append((task_id, dict(fields)))
        return dict(self.tasks[task_id])

    def pending_message_tasks(self):
        self._check('pending_message_tasks')
        return [Task.from_dict(self.tasks[i]) for i in self.pending]

    # -- comments --

    def add_comment(self, task_id, content, comment_type='progress',
                    author='orchestrator'):
        self._check('add_comment')
        comment = {'task_id': task_id, 'author': author,
                   'author_type': 'bot', 'content': content,
                   'comment_type': comment_type}
        with self._lock:
            self.comments.setdefault(task_id, []).append(comment)
            if task_id in self.pending:
                self.pending.remove(task_id)
        return comment

    def list_comments(self, task_id, limit=50):
        return list(self.comments.get(task_id, []))[-limit:]

    # -- projects --

    def list_projects(self):
        self._check('list_projects')
        return [Project.from_dict(p) for p in self.projects.values()]

    def get_project(self, project_id):
        self._check('get_project')
        if project_id not in self.projects:
            raise BoardAPIError('GET', f'/api/task-lists/{project_id}', 404)
        return Project.from_dict(self.projects[project_id])

    def update_project(self, project_id, **fields):
        self._check('update_project')
        self.projects[project_id].update(fields)
        return dict(self.projects[project_id])

    # -- sessions --

    def create_session(self, project_id, task_id, summary, session_type):
        self._check('create_session')
        session_id = f"s-{next(self._ids)}"
        return Session.from_dict(self.add_session(
            session_id, project_id, task_id, session_type=session_type))

    def update_session(self, session_id, **fields):
        self._check('update_session')
        self.sessions[session_id].update(fields)
        return dict(self.sessions[session_id])

    def list_sessions(self, status=None):
        self._check('list_sessions')
        return [Session.from_dict(s) for s in self.sessions.values()
                if status is None or s['status'] == status]

    # -- events / toggles --

    def post_event(self, event_type, message, session_id=None, task_id=None,
                   metadata=None):
        self._check('post_event')
        event = {'event_type': event_type, 'message': message,
                 'session_id': session_id, 'task_id': task_id,
                 'metadata': metadata}
        with self._lock:
            self.events.append(event)
        return event

    def get_feature_toggles(self):
        self._check('get_feature_toggles')
        return [FeatureToggle.from_dict(t) for t in self.toggles]

    def enable(self, feature_key: str, **config):
        self.toggles.append({'feature_key': feature_key, 'enabled': True,
                             'config': config})


# ---------------------------------------------------------------------------
# Fake agent processes
# ---------------------------------------------------------------------------


class FakeProcess:
    """Popen look-alike. ``block=True`` keeps it running until terminated
    or :meth:`finish` is called."""

    _pids = itertools.count(50000)

    def __init__(self, exit_code: int = 0, stdout: str = '', stderr: str = '',
                 block: bool = False):
        self.pid = next(self._pids)
        self.exit_code = exit_code
        self.stdout = stdout
        self.stderr = stderr
        self.returncode = None
        self.terminated = False
        self.killed = False
        self.ignore_term = False
        self._done = threading.Event()
        if not block:
            self._done.set()

    def finish(self, exit_code: Optional[int] = None):
        if exit_code is not None:
            self.exit_code = exit_code
        self._done.set()

    def communicate(self, timeout=None):
        self._done.wait()
        if self.returncode is None:
            self.returncode = self.exit_code
        return self.stdout, self.stderr

    def poll(self):
        if self._done.is_set():
            if self.returncode is None:
                self.returncode = self.exit_code
            return self.returncode
        return None

    def wait(self, timeout=None):
        if not self._done.wait(timeout):
            raise subprocess.TimeoutExpired('agent', timeout)
        return self.poll()

    def terminate(self):
        self.terminated = True
        if not self.ignore_term:
            self.returncode = -15
            self._done.set()

    def kill(self):
        self.killed = True
        self.returncode = -9
        self._done.set()


class FakeSpawner:
    """Records spawn calls and hands out queued :class:`FakeProcess` objects
    (a default successful one when the queue is empty)."""

    def __init__(self):
        self.calls: List[Dict] = []
        self.queue: List[FakeProcess] = []
        self.error: Optional[Exception] = None

    def __call__(self, argv, cwd, env):
        self.calls.append({'argv': argv, 'cwd': cwd, 'env': env})
        if self.error is not None:
            raise self.error
        if self.queue:
            return self.queue.pop(0)
        return FakeProcess()


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture()
def settings(tmp_path) -> Settings:
    return Settings(api_key='test-key', api_url='http://board.test',
                    workspace_root=str(tmp_path), gh_token='gh-secret')


@pytest.fixture()
def board() -> FakeBoard:
    return FakeBoard()


@pytest.fixture()
def spawner() -> FakeSpawner:
    return FakeSpawner()


@pytest.fixture()
def supervisor(board, settings, spawner) -> SessionSupervisor:
    sup = SessionSupervisor(board, settings,
                            table=SessionTable(settings.max_concurrent),
                            popen=spawner)
    yield sup
    sup.terminate_all()
    sup.wait(2)
