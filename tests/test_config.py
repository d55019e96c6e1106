"""Tests for settings loading and the CLI entry point."""

import sys
from unittest.mock import patch

import pytest

from auto_claude_kanban.cli import main
from auto_claude_kanban.config import (
    DEFAULT_ENV_PASSTHROUGH, ConfigError, load_settings,
)

ENV_VARS = ('KANBAN_API_KEY', 'KANBAN_API_URL', 'KANBAN_CONFIG',
            'POLL_INTERVAL', 'MAX_CONCURRENT', 'MAX_RETRIES',
            'SESSION_TIMEOUT', 'WORKSPACE_ROOT', 'PROJECTS_DIR', 'LOG_DIR',
            'GH_TOKEN', 'AGENT_COMMAND', 'AGENT_ENV_PASSTHROUGH')


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    # set first so teardown also removes what load_dotenv exported
    for name in ENV_VARS:
        monkeypatch.setenv(name, '')
        monkeypatch.delenv(name)


def test_defaults(monkeypatch):
    monkeypatch.setenv('KANBAN_API_KEY', 'k')

    settings = load_settings()

    assert settings.api_url == 'http://localhost:3000'
    assert settings.poll_interval == 900
    assert settings.max_concurrent == 3
    assert settings.max_retries == 3
    assert settings.session_timeout == 2700
    assert settings.workspace_root == '/workspace'
    assert settings.projects_dir == '/workspace/projects'
    assert settings.log_dir == '/workspace/.memory'
    assert settings.gh_token == ''
    assert settings.env_passthrough == DEFAULT_ENV_PASSTHROUGH


def test_missing_api_key():
    with pytest.raises(ConfigError):
        load_settings()


def test_non_integer_is_rejected(monkeypatch):
    monkeypatch.setenv('KANBAN_API_KEY', 'k')
    monkeypatch.setenv('MAX_CONCURRENT', 'three')
    with pytest.raises(ConfigError):
        load_settings()


def test_config_file_fills_unset_variables(monkeypatch, tmp_path):
    config = tmp_path / 'orchestrator.env'
    config.write_text('KANBAN_API_KEY=from-file\nMAX_RETRIES=5\n'
                      'KANBAN_API_URL=http://file.test/\n')
    monkeypatch.setenv('KANBAN_API_URL', 'http://env.test')

    settings = load_settings(str(config))

    assert settings.api_key == 'from-file'
    assert settings.max_retries == 5
    assert settings.api_url == 'http://env.test'


def test_missing_config_file(tmp_path):
    with pytest.raises(ConfigError):
        load_settings(str(tmp_path / 'nope.env'))


def test_passthrough_list(monkeypatch):
    monkeypatch.setenv('KANBAN_API_KEY', 'k')
    monkeypatch.setenv('AGENT_ENV_PASSTHROUGH', 'PATH, HOME ,NODE_ENV')
    assert load_settings().env_passthrough == ('PATH', 'HOME', 'NODE_ENV')


def test_cli_exits_on_config_error(monkeypatch, capsys):
    monkeypatch.setattr(sys, 'argv', ['auto-claude-kanban', '--once'])

    with pytest.raises(SystemExit) as info:
        main()

    assert info.value.code == 1
    assert 'ERROR: KANBAN_API_KEY must be set' in capsys.readouterr().out


def test_cli_once_runs_a_single_cycle(monkeypatch, tmp_path):
    monkeypatch.setenv('KANBAN_API_KEY', 'k')
    monkeypatch.setenv('LOG_DIR', str(tmp_path))
    monkeypatch.setattr(sys, 'argv', ['auto-claude-kanban', '--once'])

    with patch('auto_claude_kanban.cli.setup_logging'), \
            patch('auto_claude_kanban.cli.Scheduler') as scheduler_cls:
        main()

    scheduler = scheduler_cls.return_value
    scheduler.poll_cycle.assert_called_once_with()
    scheduler.supervisor.wait.assert_called_once_with(2700)
    scheduler.shutdown.assert_called_once_with()
    scheduler.run_forever.assert_not_called()
