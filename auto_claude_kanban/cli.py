"""CLI entry point for the orchestrator daemon."""

import argparse
import logging
import sys

from auto_claude_kanban.config import ConfigError, load_settings
from auto_claude_kanban.orchestrator import Scheduler
from auto_claude_kanban.utils import setup_logging

log = logging.getLogger(__name__)


def main():
    """Poll the board and dispatch agent sessions until stopped."""
    parser = argparse.ArgumentParser(
        description='Kanban board orchestrator: dispatch board tasks to '
                    'Claude Code agents')
    parser.add_argument('--once', action='store_true',
                        help='Run a single poll cycle, wait for the sessions '
                             'it started and exit')
    parser.add_argument('--config',
                        help='dotenv-style config file (default: .env)')
    parser.add_argument('--debug', action='store_true',
                        help='Verbose output')
    args = parser.parse_args()

    try:
        settings = load_settings(args.config)
    except ConfigError as exc:
        print(f"ERROR: {exc}")
        sys.exit(1)

    setup_logging(settings.log_dir, debug=args.debug)
    if not settings.gh_token:
        log.warning("GH_TOKEN is not set: agents will not get the git "
                    "workflow and private repositories cannot be cloned")

    scheduler = Scheduler(settings)
    if args.once:
        scheduler.poll_cycle()
        scheduler.supervisor.wait(settings.session_timeout)
        scheduler.shutdown()
    else:
        scheduler.run_forever()


if __name__ == '__main__':
    main()
