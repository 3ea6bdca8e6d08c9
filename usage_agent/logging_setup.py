"""
Logging configuration for the usage agent.

Everything goes to the root logger, which writes to a rotating log file and
to stdout. The level comes from agent_settings.log_level, or DEBUG when
agent_settings.debug_mode is on.
"""

import logging
import logging.handlers
import os
import sys
from typing import Optional

from usage_agent.config import get_config_value

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(module)s.%(funcName)s:%(lineno)d - %(message)s"
LOG_MAX_BYTES = 5 * 1024 * 1024
LOG_BACKUP_COUNT = 5


def _resolve_log_level() -> int:
    if get_config_value("agent_settings.debug_mode", False):
        return logging.DEBUG
    level_name = str(get_config_value("agent_settings.log_level", "INFO")).upper()
    return getattr(logging, level_name, logging.INFO)


def _prepare_log_path(log_file: str) -> str:
    """Create the log directory if needed; falls back to the working directory."""
    log_dir = os.path.dirname(log_file)
    if not log_dir or os.path.isdir(log_dir):
        return log_file
    try:
        os.makedirs(log_dir, exist_ok=True)
        return log_file
    except OSError as e:
        print(
            f"Error: could not create log directory {log_dir}: {e}. Logging to the working directory.",
            file=sys.stderr,
        )
        return os.path.basename(log_file)


def _file_handler(log_file: str) -> Optional[logging.Handler]:
    try:
        return logging.handlers.RotatingFileHandler(
            log_file, maxBytes=LOG_MAX_BYTES, backupCount=LOG_BACKUP_COUNT, encoding="utf-8"
        )
    except PermissionError:
        print(
            f"Error: Permission denied writing log file to {log_file}. Check permissions.",
            file=sys.stderr,
        )
    except OSError as e:
        print(f"Error setting up file logger: {e}", file=sys.stderr)
    return None


def setup_logging() -> None:
    """Install the file and console handlers on the root logger, replacing any existing ones."""
    log_level = _resolve_log_level()
    formatter = logging.Formatter(LOG_FORMAT)

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)
    root_logger.handlers.clear()

    log_file = get_config_value("agent_settings.log_file_name") or "usage_agent.log"
    log_file = _prepare_log_path(log_file)

    handlers = [_file_handler(log_file), logging.StreamHandler(sys.stdout)]
    for handler in handlers:
        if handler is None:
            continue
        handler.setFormatter(formatter)
        root_logger.addHandler(handler)

    # urllib3 logs full request lines at DEBUG
    logging.getLogger("urllib3").setLevel(max(log_level, logging.INFO))

    logging.info(
        f"Logging setup complete. Level: {logging.getLevelName(log_level)}, File: {log_file}"
    )
