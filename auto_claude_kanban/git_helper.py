"""Git operations helper (project clones, branch and PR naming)."""

import logging
import re
import subprocess
from typing import List, Optional

log = logging.getLogger(__name__)


def to_https_url(repo_url: str) -> str:
    """git@github.com:owner/repo.git -> https://github.com/owner/repo.git"""
    m = re.match(r'^git@github\.com:(.+)$', repo_url)
    if m:
        return f"https://github.com/{m.group(1)}"
    m = re.match(r'^ssh://git@github\.com/(.+)$', repo_url)
    if m:
        return f"https://github.com/{m.group(1)}"
    return repo_url


def parse_repo_slug(repo_url: Optional[str]) -> Optional[str]:
    """Return ``owner/repo`` for a GitHub URL, or None."""
    if not repo_url:
        return None
    m = re.search(r'github\.com[/:]([^/]+/[^/]+?)(?:\.git)?/?$', repo_url)
    return m.group(1) if m else None


def parse_pr_number(pr_url: Optional[str]) -> Optional[str]:
    if not pr_url:
        return None
    m = re.search(r'/pull/(\d+)', pr_url)
    return m.group(1) if m else None


def create_branch_name(task_id: str, title: str) -> str:
    """Create a valid git branch name from the task id and title."""
    short_id = task_id.replace('task_', '')[:8]
    slug = re.sub(r'[^a-z0-9]+', '-', title.lower()).strip('-')[:40]
    return f"task/{short_id}/{slug}"


class GitHelper:
    """Git operations helper for project working copies."""

    def __init__(self, token: str = ''):
        self.token = token

    def _run(self, cmd: List[str], cwd: Optional[str] = None,
             check: bool = True,
             timeout: int = 600) -> subprocess.CompletedProcess:
        log.debug("git: %s (cwd=%s)", ' '.join(self._redact(cmd)), cwd)
        result = subprocess.run(cmd, cwd=cwd, capture_output=True, text=True,
                                timeout=timeout)
        if check and result.returncode != 0:
            raise RuntimeError(
                f"git command failed (exit {result.returncode}): "
                f"{' '.join(self._redact(cmd))}\n"
                f"stderr: {self._scrub(result.stderr)[-200:]}"
            )
        return result

    def _scrub(self, text: str) -> str:
        return text.replace(self.token, '***') if self.token else text

    def _redact(self, cmd: List[str]) -> List[str]:
        return [self._scrub(part) for part in cmd]

    def clone_url(self, repo_url: str) -> str:
        url = to_https_url(repo_url)
        if self.token and url.startswith('https://github.com/'):
            url = url.replace('https://github.com/',
                              f'https://{self.token}@github.com/', 1)
        return url

    def clone(self, repo_url: str, dest: str):
        self._run(['git', 'clone', self.clone_url(repo_url), dest])
