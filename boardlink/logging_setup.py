"""
Logging infrastructure for BoardLink.

Provides file-based logging with rotation and colored console output,
plus the debug/verbose toggles exposed by the node API.
"""

import logging
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional

from .config import (
    LOG_FILE,
    LOG_MAX_BYTES,
    LOG_BACKUP_COUNT,
)


LOGGER_NAME = "boardlink"

# Module-level logger
_logger: Optional[logging.Logger] = None

# Per-frame tracing is gated separately from the DEBUG level
_verbose = False


class ColorFormatter(logging.Formatter):
    """
    Formatter that adds colors for terminal output.
    """

    COLORS = {
        "DEBUG": "\033[36m",     # Cyan
        "INFO": "\033[32m",      # Green
        "WARNING": "\033[33m",   # Yellow
        "ERROR": "\033[31m",     # Red
        "CRITICAL": "\033[35m",  # Magenta
    }
    RESET = "\033[0m"

    def format(self, record: logging.LogRecord) -> str:
        color = self.COLORS.get(record.levelname, "")
        original = record.levelname
        record.levelname = f"{color}{record.levelname}{self.RESET}"
        try:
            return super().format(record)
        finally:
            record.levelname = original


def setup_logging(
    log_to_file: bool = True,
    log_to_console: bool = True,
    log_level: str = "INFO",
    log_file: str = LOG_FILE,
) -> logging.Logger:
    """
    Configure the logging system.

    Args:
        log_to_file: Enable rotating file logging
        log_to_console: Enable colored console logging
        log_level: Minimum log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_file: Path of the rotating log file

    Returns:
        Configured logger instance
    """
    global _logger

    if _logger is not None:
        return _logger

    level = getattr(logging, log_level.upper(), logging.INFO)

    _logger = logging.getLogger(LOGGER_NAME)
    _logger.setLevel(level)
    _logger.propagate = False

    # Clear existing handlers
    _logger.handlers.clear()

    # File handler with rotation
    if log_to_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(
            log_file,
            maxBytes=LOG_MAX_BYTES,
            backupCount=LOG_BACKUP_COUNT,
            encoding="utf-8",
        )
        file_handler.setLevel(logging.DEBUG)  # Capture everything to file
        file_formatter = logging.Formatter(
            "%(asctime)s [%(levelname)s] %(name)s: %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )
        file_handler.setFormatter(file_formatter)
        _logger.addHandler(file_handler)

    if log_to_console:
        console_handler = logging.StreamHandler()
        console_handler.setLevel(logging.DEBUG)
        console_handler.setFormatter(
            ColorFormatter("%(asctime)s %(levelname)s %(message)s", datefmt="%H:%M:%S")
        )
        _logger.addHandler(console_handler)

    return _logger


def get_logger() -> logging.Logger:
    """Get the BoardLink logger, initializing if necessary."""
    global _logger
    if _logger is None:
        _logger = setup_logging(log_to_file=False, log_to_console=True)
    return _logger


def set_debug(enabled: bool) -> None:
    """Switch the package logger between DEBUG and INFO."""
    logging.getLogger(LOGGER_NAME).setLevel(logging.DEBUG if enabled else logging.INFO)


def set_verbose(enabled: bool) -> None:
    """Enable per-frame trace messages (implies debug)."""
    global _verbose
    _verbose = enabled
    if enabled:
        set_debug(True)


def is_verbose() -> bool:
    return _verbose


def log(msg: str) -> None:
    """Log an informational message."""
    get_logger().info(msg)


def log_debug(msg: str) -> None:
    """Log a debug message."""
    get_logger().debug(msg)


def format_block(title: str, lines: list) -> str:
    """
    Format a titled block for log output.

    Args:
        title: Block title (displayed in brackets)
        lines: Content lines (will be indented)

    Returns:
        Formatted multi-line string
    """
    pad = "  "
    return "\n".join([f"[{title}]", *[pad + ln for ln in lines]])
