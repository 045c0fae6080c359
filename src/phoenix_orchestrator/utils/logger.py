"""
Logging configuration for Phoenix Orchestrator.

Every component receives its logger at construction; this module only builds
the configured instances. Console output goes to stderr because stdout
carries the JSON that ``plan`` and ``markers`` print.
"""

from __future__ import annotations

import logging
import os
import sys
from pathlib import Path
from typing import Optional, TextIO

DEFAULT_LOGGER_NAME = "phoenix-orchestrator"
DEFAULT_LOG_FILE = "/var/log/phoenix_orchestrator/combined.log"
LOG_FORMAT = "[%(asctime)s] [%(name)s] [%(levelname)s] %(message)s"


def get_logger(name: Optional[str] = None) -> logging.Logger:
    """
    Get a configured logger instance.

    Args:
        name: Logger name. If None, uses the default service name.

    Returns:
        Configured logger instance.
    """
    logger_instance = logging.getLogger(name or DEFAULT_LOGGER_NAME)

    # Only configure if not already configured
    if not logger_instance.handlers:
        configure_logger(logger_instance)

    return logger_instance


def configure_logger(logger_instance: logging.Logger, stream: Optional[TextIO] = None) -> None:
    """
    Attach the provisioning log file and a console handler.

    ``LOG_LEVEL`` sets the level and ``LOG_FILE`` the file (default
    ``/var/log/phoenix_orchestrator/combined.log``). When the file cannot be
    opened, only the console handler is attached.

    Args:
        logger_instance: Logger instance to configure.
        stream: Console stream, stderr when omitted.
    """
    level_name = os.environ.get("LOG_LEVEL", "INFO").upper()
    logger_instance.setLevel(getattr(logging, level_name, logging.INFO))
    logger_instance.propagate = False

    formatter = logging.Formatter(LOG_FORMAT)

    log_file = Path(os.environ.get("LOG_FILE") or DEFAULT_LOG_FILE)
    try:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_file)
        file_handler.setFormatter(formatter)
        logger_instance.addHandler(file_handler)
    except OSError as e:
        print(f"Warning: provisioning log {log_file} unavailable, console only: {e}", file=sys.stderr)

    console_handler = logging.StreamHandler(stream if stream is not None else sys.stderr)
    console_handler.setFormatter(formatter)
    logger_instance.addHandler(console_handler)


__all__ = ["get_logger", "configure_logger", "DEFAULT_LOGGER_NAME", "LOG_FORMAT"]
