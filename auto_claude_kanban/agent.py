"""Agent process helpers: argv, scoped environment and spawning.

The agent is an opaque one-shot CLI: it receives its instructions as an
argument, runs in the project's working copy and exits 0 on success.
"""

import os
import re
import subprocess
from typing import Dict, List, Optional

from auto_claude_kanban.config import Settings

RESUME_NEW = 'new'
RESUME_CONTINUE = 'resume'

STALE_RESUME_PATTERNS = (
    re.compile(r'no conversation found', re.IGNORECASE),
    re.compile(r'session\b.*\bnot found', re.IGNORECASE),
    re.compile(r'invalid session id', re.IGNORECASE),
)


def build_agent_argv(command: str, prompt: str,
                     resume_handle: Optional[str] = None,
                     resume_mode: str = RESUME_CONTINUE) -> List[str]:
    cmd = [command, '-p', prompt, '--dangerously-skip-permissions',
           '--output-format', 'text']
    if resume_handle:
        if resume_mode == RESUME_NEW:
            cmd.extend(['--session-id', resume_handle])
        else:
            cmd.extend(['--resume', resume_handle])
    return cmd


def agent_environment(settings: Settings, session_id: str, task_id: str,
                      allow_scm: bool = True) -> Dict[str, str]:
    """Environment for one agent: an allow-list of host variables plus the
    board credentials for this session. Nothing else is inherited."""
    env = {name: os.environ[name] for name in settings.env_passthrough
           if name in os.environ}
    env.update({
        'KANBAN_API_URL': settings.api_url,
        'KANBAN_API_KEY': settings.api_key,
        'KANBAN_SESSION_ID': session_id,
        'KANBAN_TASK_ID': task_id,
    })
    if allow_scm and settings.gh_token:
        env['GH_TOKEN'] = settings.gh_token
    return env


def spawn_agent(argv: List[str], cwd: str,
                env: Dict[str, str]) -> subprocess.Popen:
    """Start the agent with stdin closed so it never waits for input."""
    return subprocess.Popen(
        argv,
        cwd=cwd,
        env=env,
        stdin=subprocess.DEVNULL,
        stdout=subprocess.PIPE,
        stderr=subprocess.PIPE,
        text=True,
        errors='replace',
    )


def looks_like_stale_resume(output: str) -> bool:
    return any(p.search(output or '') for p in STALE_RESUME_PATTERNS)
