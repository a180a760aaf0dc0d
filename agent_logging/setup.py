"""
Logging Setup
Configures file and console logging for the gateway and the scheduler.
"""
import logging
import logging.handlers
import os
import sys
from datetime import datetime
from pathlib import Path
from typing import Optional

from jarvis_orchestrator.state_paths import resolve_state_dir

DETAILED_FORMAT = "%(asctime)s | %(name)s | %(levelname)s | %(filename)s:%(lineno)d | %(message)s"
SIMPLE_FORMAT = "%(asctime)s | %(levelname)s | %(message)s"
MAX_LOG_BYTES = 10 * 1024 * 1024
BACKUP_COUNT = 5


def _level(log_level: str) -> int:
    return getattr(logging, log_level.upper(), logging.INFO)


def setup_logging(
    component: str,
    log_dir: Optional[str] = None,
    log_level: str = "INFO",
    console_output: bool = True,
) -> logging.Logger:
    """
    Setup logging for a named component.

    Creates a rotating file handler under
    ``<state_dir>/logs/<component>/`` and an optional console handler.

    Args:
        component: Logger name, e.g. "jarvis_gateway"
        log_dir: Directory for log files (defaults to the state directory)
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        console_output: Whether to also log to console

    Returns:
        Configured logger instance
    """
    if log_dir is None:
        log_path = resolve_state_dir() / "logs" / component.lower()
    else:
        log_path = Path(os.path.expanduser(log_dir))
    log_path.mkdir(parents=True, exist_ok=True)

    logger = logging.getLogger(component)
    logger.setLevel(_level(log_level))
    logger.handlers.clear()

    log_file = log_path / f"{component.lower()}_{datetime.now().strftime('%Y%m%d')}.log"
    file_handler = logging.handlers.RotatingFileHandler(
        log_file,
        maxBytes=MAX_LOG_BYTES,
        backupCount=BACKUP_COUNT,
        encoding="utf-8",
    )
    file_handler.setLevel(logging.DEBUG)
    file_handler.setFormatter(logging.Formatter(fmt=DETAILED_FORMAT, datefmt="%Y-%m-%d %H:%M:%S"))
    logger.addHandler(file_handler)

    if console_output:
        console_handler = logging.StreamHandler(sys.stdout)
        console_handler.setLevel(_level(log_level))
        console_handler.setFormatter(logging.Formatter(fmt=SIMPLE_FORMAT, datefmt="%H:%M:%S"))
        logger.addHandler(console_handler)

    # Component loggers own their handlers.
    logger.propagate = False

    logger.debug(f"Log file: {log_file}")
    return logger


def setup_root_logging(log_level: str = "INFO", log_dir: Optional[str] = None) -> Path:
    """
    Configure the root logger with a rotating system log plus stdout.

    Returns:
        Path of the log file
    """
    if log_dir is None:
        log_path = resolve_state_dir() / "logs"
    else:
        log_path = Path(os.path.expanduser(log_dir))
    log_path.mkdir(parents=True, exist_ok=True)

    log_file = log_path / f"jarvis_{datetime.now().strftime('%Y%m%d')}.log"

    logging.basicConfig(
        level=_level(log_level),
        format="%(asctime)s | %(name)s | %(levelname)s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
        handlers=[
            logging.handlers.RotatingFileHandler(
                log_file,
                maxBytes=MAX_LOG_BYTES,
                backupCount=BACKUP_COUNT,
                encoding="utf-8",
            ),
            logging.StreamHandler(sys.stdout),
        ],
        force=True,
    )
    return log_file
