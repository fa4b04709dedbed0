"""Logging configuration for coremesh.

This module provides centralized logging configuration using Loguru.
A console handler is installed on import; each run adds a rotating file
handler inside its configuration directory.
"""

import sys
from pathlib import Path

from loguru import logger

DEFAULT_CONF_DIR = Path.home() / ".v2n_coremesh"
APP_LOG_FILE_NAME = "v2n-coremesh.log"
XRAY_LOG_FILE_NAME = "xray.log"
CORE_LOG_FILE_NAME = "cores.log"

CONSOLE_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss}</green> | "
    "<level>{level: <8}</level> | "
    "<cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> - "
    "<level>{message}</level>"
)
FILE_FORMAT = "{time:YYYY-MM-DD HH:mm:ss} | {level: <8} | {name}:{function}:{line} - {message}"

_console_handler_id: int | None = None
_file_handler_id: int | None = None


def configure_console(level: str = "INFO") -> None:
    """(Re)install the stderr handler at the given level."""
    global _console_handler_id
    if _console_handler_id is not None:
        logger.remove(_console_handler_id)
    _console_handler_id = logger.add(
        sys.stderr,
        format=CONSOLE_FORMAT,
        level=level,
        backtrace=True,
        diagnose=True,
    )


def configure_file_logging(conf_dir: Path, level: str = "DEBUG") -> Path:
    """Send log records to ``<conf_dir>/v2n-coremesh.log`` with rotation.

    Args:
        conf_dir: Configuration directory of the run
        level: Minimum level written to the file

    Returns:
        Path: The log file path
    """
    global _file_handler_id
    conf_dir.mkdir(parents=True, exist_ok=True)
    log_path = conf_dir / APP_LOG_FILE_NAME
    if _file_handler_id is not None:
        logger.remove(_file_handler_id)
    _file_handler_id = logger.add(
        log_path,
        rotation="10 MB",
        retention="1 week",
        compression="zip",
        format=FILE_FORMAT,
        level=level,
        backtrace=True,
        diagnose=True,
    )
    return log_path


logger.remove()  # Remove default handler
configure_console()

__all__ = [
    "APP_LOG_FILE_NAME",
    "CORE_LOG_FILE_NAME",
    "DEFAULT_CONF_DIR",
    "XRAY_LOG_FILE_NAME",
    "configure_console",
    "configure_file_logging",
    "logger",
]
