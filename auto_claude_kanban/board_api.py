"""Kanban board REST API client used by the orchestrator."""

import logging
from typing import Any, Dict, List, Optional

import requests

from auto_claude_kanban.models import (
    FeatureToggle, Project, Session, SessionStatus, Task,
)

log = logging.getLogger(__name__)

RETRYABLE_STATUS = {408, 425, 429}


class BoardAPIError(Exception):
    """A board request failed. ``status`` is None for transport errors."""

    def __init__(self, method: str, path: str, status: Optional[int] = None,
                 body: str = ''):
        self.method = method
        self.path = path
        self.status = status
        self.body = body
        detail = f"{status} {body[:200]}" if status else body
        super().__init__(f"API {method} {path} failed: {detail}")

    @property
    def retryable(self) -> bool:
        if self.status is None:
            return True
        return self.status in RETRYABLE_STATUS or self.status >= 500


class BoardClient:
    """Lightweight wrapper around the kanban board REST API."""

    def __init__(self, api_url: str, api_key: str, timeout: int = 30):
        self.base = api_url.rstrip('/')
        self.timeout = timeout
        self.headers = {
            'Authorization': f'Bearer {api_key}',
            'Content-Type': 'application/json',
            'Accept': 'application/json',
        }

    def _request(self, method: str, path: str,
                 params: Optional[Dict] = None,
                 body: Optional[Dict] = None) -> Dict[str, Any]:
        url = f"{self.base}{path}"
        if params:
            params = {k: v for k, v in params.items() if v is not None}
        log.debug("%s %s params=%s", method, path, params)
        try:
            resp = requests.request(method, url, headers=self.headers,
                                    params=params, json=body,
                                    timeout=self.timeout)
        except requests.RequestException as exc:
            raise BoardAPIError(method, path, body=str(exc)) from exc
        if not resp.ok:
            raise BoardAPIError(method, path, resp.status_code, resp.text)
        if not resp.content:
            return {}
        return resp.json()

    # -- tasks ----------------------------------------------------------------

    def list_tasks(self, status: Optional[str] = None,
                   project_id: Optional[str] = None,
                   limit: int = 100) -> List[Task]:
        data = self._request('GET', '/api/tasks', params={
            'status': status, 'task_list_id': project_id, 'limit': limit})
        return [Task.from_dict(t) for t in data.get('tasks', [])]

    def get_task(self, task_id: str) -> Task:
        data = self._request('GET', f'/api/tasks/{task_id}')
        return Task.from_dict(data['task'])

    def update_task(self, task_id: str, **fields) -> Dict:
        data = self._request('PATCH', f'/api/tasks/{task_id}', body=fields)
        return data.get('task', {})

    def pending_message_tasks(self) -> List[Task]:
        """Tasks whose latest comment is an unanswered human message."""
        data = self._request('GET', '/api/tasks/pending-messages')
        return [Task.from_dict(t) for t in data.get('tasks', [])]

    # -- comments -------------------------------------------------------------

    def add_comment(self, task_id: str, content: str,
                    comment_type: str = 'progress',
                    author: str = 'orchestrator') -> Dict:
        data = self._request('POST', f'/api/tasks/{task_id}/comments', body={
            'author': author,
            'author_type': 'bot',
            'content': content,
            'comment_type': comment_type,
        })
        return data.get('comment', {})

    def list_comments(self, task_id: str, limit: int = 50) -> List[Dict]:
        data = self._request('GET', f'/api/tasks/{task_id}/comments',
                             params={'limit': limit})
        return data.get('comments', [])

    # -- projects -------------------------------------------------------------

    def list_projects(self) -> List[Project]:
        data = self._request('GET', '/api/task-lists')
        return [Project.from_dict(p) for p in data.get('task_lists', [])]

    def get_project(self, project_id: str) -> Project:
        data = self._request('GET', f'/api/task-lists/{project_id}')
        return Project.from_dict(data['task_list'])

    def update_project(self, project_id: str, **fields) -> Dict:
        data = self._request('PATCH', f'/api/task-lists/{project_id}',
                             body=fields)
        return data.get('task_list', {})

    # -- sessions -------------------------------------------------------------

    def create_session(self, project_id: str, task_id: str, summary: str,
                       session_type: str) -> Session:
        data = self._request('POST', '/api/sessions', body={
            'project_id': project_id,
            'current_task_id': task_id,
            'status': SessionStatus.ACTIVE.value,
            'summary': summary,
            'session_type': session_type,
        })
        return Session.from_dict(data['session'])

    def update_session(self, session_id: str, **fields) -> Dict:
        data = self._request('PATCH', f'/api/sessions/{session_id}',
                             body=fields)
        return data.get('session', {})

    def list_sessions(self, status: Optional[str] = None) -> List[Session]:
        data = self._request('GET', '/api/sessions', params={'status': status})
        return [Session.from_dict(s) for s in data.get('sessions', [])]

    # -- events / toggles -----------------------------------------------------

    def post_event(self, event_type: str, message: str,
                   session_id: Optional[str] = None,
                   task_id: Optional[str] = None,
                   metadata: Optional[Dict] = None) -> Dict:
        body: Dict[str, Any] = {'event_type': event_type, 'message': message}
        if session_id:
            body['session_id'] = session_id
        if task_id:
            body['task_id'] = task_id
        if metadata:
            body['metadata'] = metadata
        data = self._request('POST', '/api/events', body=body)
        return data.get('event', {})

    def get_feature_toggles(self) -> List[FeatureToggle]:
        data = self._request('GET', '/api/feature-toggles')
        return [FeatureToggle.from_dict(t) for t in data.get('toggles', [])]
