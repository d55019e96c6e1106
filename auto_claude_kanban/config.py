"""Environment variables and path settings.

All configuration is loaded once at startup from environment variables
(with optional ``.env`` / config file support via *python-dotenv*).
Values already present in the environment win over the file.
"""

import os
from dataclasses import dataclass, field
from typing import Optional, Tuple

from dotenv import load_dotenv

DEFAULT_API_URL = 'http://localhost:3000'
DEFAULT_POLL_INTERVAL = 15 * 60
DEFAULT_MAX_CONCURRENT = 3
DEFAULT_MAX_RETRIES = 3
DEFAULT_SESSION_TIMEOUT = 45 * 60
DEFAULT_WORKSPACE_ROOT = '/workspace'
DEFAULT_ENV_PASSTHROUGH = (
    'PATH', 'HOME', 'USER', 'LANG', 'LC_ALL', 'TMPDIR', 'SHELL', 'TERM',
)

# seconds between SIGTERM and SIGKILL, and the shutdown grace window
KILL_GRACE_SECONDS = 5


class ConfigError(Exception):
    """Raised when required configuration is missing or malformed."""


@dataclass
class Settings:
    api_key: str
    api_url: str = DEFAULT_API_URL
    poll_interval: int = DEFAULT_POLL_INTERVAL
    max_concurrent: int = DEFAULT_MAX_CONCURRENT
    max_retries: int = DEFAULT_MAX_RETRIES
    session_timeout: int = DEFAULT_SESSION_TIMEOUT
    workspace_root: str = DEFAULT_WORKSPACE_ROOT
    projects_dir: str = ''
    log_dir: str = ''
    gh_token: str = ''
    agent_command: str = 'claude'
    env_passthrough: Tuple[str, ...] = field(
        default_factory=lambda: DEFAULT_ENV_PASSTHROUGH)

    def __post_init__(self):
        self.api_url = self.api_url.rstrip('/')
        if not self.projects_dir:
            self.projects_dir = os.path.join(self.workspace_root, 'projects')
        if not self.log_dir:
            self.log_dir = os.path.join(self.workspace_root, '.memory')


def _int_env(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == '':
        return default
    try:
        value = int(raw)
    except ValueError:
        raise ConfigError(f"{name} must be an integer, got {raw!r}")
    if value <= 0:
        raise ConfigError(f"{name} must be positive, got {value}")
    return value


def load_settings(config_file: Optional[str] = None) -> Settings:
    """Build :class:`Settings` from the environment.

    *config_file* (or ``$KANBAN_CONFIG``) is a dotenv-style file whose
    entries fill in variables that are not already set.
    """
    config_file = config_file or os.getenv('KANBAN_CONFIG')
    if config_file:
        if not os.path.exists(config_file):
            raise ConfigError(f"Config file not found: {config_file}")
        load_dotenv(config_file, override=False)
    else:
        load_dotenv(override=False)

    api_key = os.getenv('KANBAN_API_KEY', '').strip()
    if not api_key:
        raise ConfigError("KANBAN_API_KEY must be set")

    passthrough = os.getenv('AGENT_ENV_PASSTHROUGH')
    if passthrough:
        env_passthrough = tuple(
            name.strip() for name in passthrough.split(',') if name.strip())
    else:
        env_passthrough = DEFAULT_ENV_PASSTHROUGH

    workspace_root = os.getenv('WORKSPACE_ROOT', DEFAULT_WORKSPACE_ROOT)

    return Settings(
        api_key=api_key,
        api_url=os.getenv('KANBAN_API_URL', DEFAULT_API_URL),
        poll_interval=_int_env('POLL_INTERVAL', DEFAULT_POLL_INTERVAL),
        max_concurrent=_int_env('MAX_CONCURRENT', DEFAULT_MAX_CONCURRENT),
        max_retries=_int_env('MAX_RETRIES', DEFAULT_MAX_RETRIES),
        session_timeout=_int_env('SESSION_TIMEOUT', DEFAULT_SESSION_TIMEOUT),
        workspace_root=workspace_root,
        projects_dir=os.getenv('PROJECTS_DIR', ''),
        log_dir=os.getenv('LOG_DIR', ''),
        gh_token=os.getenv('GH_TOKEN', ''),
        agent_command=os.getenv('AGENT_COMMAND', 'claude'),
        env_passthrough=env_passthrough,
    )
