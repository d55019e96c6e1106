"""Diagnostic log setup and small text helpers."""

import logging
import os
import sys

LOG_FORMAT = '[%(asctime)s] [%(levelname)s] %(name)s: %(message)s'
LOG_FILENAME = 'orchestrator.log'


def setup_logging(log_dir: str, debug: bool = False) -> logging.Logger:
    """Attach an append-only file handler and a console handler to the
    package logger.

    Falls back to console-only logging when the log file cannot be opened.
    """
    logger = logging.getLogger('auto_claude_kanban')
    logger.setLevel(logging.DEBUG if debug else logging.INFO)
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    formatter = logging.Formatter(LOG_FORMAT)
    console = logging.StreamHandler(sys.stdout)
    console.setFormatter(formatter)
    logger.addHandler(console)

    try:
        os.makedirs(log_dir, exist_ok=True)
        file_handler = logging.FileHandler(
            os.path.join(log_dir, LOG_FILENAME), mode='a', encoding='utf-8')
    except OSError as exc:
        logger.warning("Could not open log file in %s (%s), logging to "
                       "console only", log_dir, exc)
    else:
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)

    logger.propagate = False
    return logger


def tail(text: str, limit: int) -> str:
    """Last *limit* characters of *text*, stripped."""
    text = (text or '').strip()
    return text[-limit:] if len(text) > limit else text
