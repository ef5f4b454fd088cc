"""
Logging utilities.

WHAT: Root logger setup and per-module logger access
WHY: State transitions, rejected operations and delivery failures share one format
HOW: Python logging with a stdout handler and an optional file handler
"""

import logging
import sys
from pathlib import Path
from typing import Optional

from ..core.config import settings

CONSOLE_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
FILE_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(pathname)s:%(lineno)d - %(message)s'
DATE_FORMAT = '%Y-%m-%d %H:%M:%S'

# Third-party loggers that are chatty at INFO
_QUIET_LOGGERS = ("httpx", "httpcore", "sqlalchemy.engine")


def setup_logging(level: Optional[str] = None, log_file: Optional[str] = None):
    """
    Configure application logging.

    Args:
        level: Override for settings.LOG_LEVEL
        log_file: Override for settings.LOG_FILE; pass "" to log to stdout only
    """
    level_name = (level or settings.LOG_LEVEL).upper()
    log_path = settings.LOG_FILE if log_file is None else log_file

    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level_name, logging.INFO))
    root_logger.handlers.clear()

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(logging.INFO)
    console_handler.setFormatter(logging.Formatter(CONSOLE_FORMAT, datefmt=DATE_FORMAT))
    root_logger.addHandler(console_handler)

    if log_path:
        path = Path(log_path)
        path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(path)
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(logging.Formatter(FILE_FORMAT, datefmt=DATE_FORMAT))
        root_logger.addHandler(file_handler)

    if not settings.DEBUG:
        for name in _QUIET_LOGGERS:
            logging.getLogger(name).setLevel(logging.WARNING)

    root_logger.info(f"Logging initialized (level={level_name}, file={log_path or '-'})")


def get_logger(name: str) -> logging.Logger:
    """Get a logger for a module (typically __name__)."""
    return logging.getLogger(name)
