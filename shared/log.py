#!/usr/bin/env python3
"""
Emoji Relay Logging Configuration

Centralized logging setup for consistent formatting across the relay and
its clients. Supports both development (coloured console) and production
(plain console + file) modes.

Usage:
    from shared.log import get_logger

    logger = get_logger(__name__)
    logger.info("Starting relay...")
    logger.warning("Dropped frame", extra={"connection_id": "1f0c...", "author": "bob"})
"""

from __future__ import annotations
import logging
import sys
from pathlib import Path
from typing import Optional, Any, TYPE_CHECKING
import os

if TYPE_CHECKING:
    from shared.wire import Event


# ========================================
#           LOGGING FORMATTERS
# ========================================

class ColoredFormatter(logging.Formatter):
    """Colored formatter for console output"""

    # ANSI Color codes
    COLORS = {
        'DEBUG': '\033[36m',     # Cyan
        'INFO': '\033[32m',      # Green
        'WARNING': '\033[33m',   # Yellow
        'ERROR': '\033[31m',     # Red
        'CRITICAL': '\033[35m',  # Magenta
        'RESET': '\033[0m'       # Reset
    }

    def format(self, record: logging.LogRecord) -> str:
        levelname = record.levelname
        if levelname in self.COLORS:
            record.levelname = f"{self.COLORS[levelname]}{levelname}{self.COLORS['RESET']}"
        try:
            return super().format(record)
        finally:
            record.levelname = levelname


class ContextFormatter(logging.Formatter):
    """Prefix records with relay context passed through ``extra=``."""

    def format(self, record: logging.LogRecord) -> str:
        context = []

        if hasattr(record, 'connection_id') and record.connection_id:
            context.append(f"conn={str(record.connection_id)[:8]}")
        if hasattr(record, 'author') and record.author:
            context.append(f"author={record.author}")
        if hasattr(record, 'msg_type') and record.msg_type:
            context.append(f"msg={record.msg_type}")

        formatted = super().format(record)
        if context:
            return f"[{' '.join(context)}] {formatted}"
        return formatted


class ColoredContextFormatter(ColoredFormatter, ContextFormatter):
    pass


# ========================================
#           LOGGING CONFIGURATION
# ========================================

_loggers_configured = set()

def get_logger(name: str, level: Optional[str] = None) -> logging.Logger:
    """
    Get a configured logger for the given module.

    Args:
        name: Usually __name__ from the calling module
        level: Override log level ("DEBUG", "INFO", "WARNING", "ERROR")

    Returns:
        Configured logger instance

    Examples:
        logger = get_logger(__name__)
        logger.info("Relay starting")

        # With context
        logger.warning("Write failed", extra={
            "connection_id": "8c6d...",
            "author": "alice",
            "msg_type": "message",
        })
    """
    logger = logging.getLogger(name)

    # Only configure each logger once
    if name not in _loggers_configured:
        _configure_logger(logger, level)
        _loggers_configured.add(name)

    return logger


def _configure_logger(logger: logging.Logger, level: Optional[str] = None) -> None:
    """Configure a logger with appropriate handlers and formatters"""

    logger.setLevel(_get_log_level(level))

    # Clear existing handlers to avoid duplicates
    logger.handlers.clear()

    if _is_development():
        _add_console_handler(logger, colored=True)
    else:
        _add_console_handler(logger, colored=False)
    _add_file_handler(logger)

    # Prevent duplicate messages from parent loggers
    logger.propagate = False


def _get_log_level(level: Optional[str] = None) -> int:
    """Determine appropriate log level"""

    level = level or os.getenv('EMOJI_RELAY_LOG_LEVEL')
    if level:
        return getattr(logging, level.upper(), logging.INFO)

    # Default based on environment
    return logging.DEBUG if _is_development() else logging.INFO


def _is_development() -> bool:
    """Detect if we're in development mode"""
    return (
        os.getenv('PYTHON_ENV', '').lower() in ['dev', 'development'] or
        'pytest' in sys.modules
    )


def _add_console_handler(logger: logging.Logger, colored: bool = True) -> None:
    """Add console handler with appropriate formatter"""

    fmt = '[%(levelname)-8s][%(asctime)s][%(name)-5s]: %(message)s'
    handler = logging.StreamHandler(sys.stdout)

    if colored and _supports_color():
        formatter: logging.Formatter = ColoredContextFormatter(fmt=fmt, datefmt='%H:%M:%S')
    else:
        formatter = ContextFormatter(fmt=fmt, datefmt='%Y-%m-%d %H:%M:%S')

    handler.setFormatter(formatter)
    logger.addHandler(handler)


def _add_file_handler(logger: logging.Logger) -> None:
    """Add file handler; EMOJI_RELAY_LOG_DIR="" turns file logging off"""

    log_dir_name = os.getenv('EMOJI_RELAY_LOG_DIR', 'logs')
    if not log_dir_name:
        return

    log_dir = Path(log_dir_name)
    try:
        log_dir.mkdir(parents=True, exist_ok=True)
    except OSError:
        # read-only working directory, console only
        return

    handler = logging.FileHandler(log_dir / "emoji-relay.log", encoding="utf-8")
    handler.setFormatter(ContextFormatter(
        fmt='%(asctime)s | %(name)-30s | %(levelname)-8s | %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    ))
    logger.addHandler(handler)


def _supports_color() -> bool:
    """Check if terminal supports color output"""

    # stdout must be a terminal
    if not (hasattr(sys.stdout, "isatty") and sys.stdout.isatty()):
        return False

    # TERM should not be dumb
    if os.getenv("TERM", "") == "dumb":
        return False

    if sys.platform == "win32":
        return os.getenv("ANSICON") is not None or os.getenv("WT_SESSION") is not None or os.getenv("TERM_PROGRAM") == "vscode" or "WindowsTerminal" in os.getenv("TERM", "")

    return True

# ========================================
#           CONVENIENCE FUNCTIONS
# ========================================

def configure_root_logging(level: str = "INFO") -> None:
    """
    Configure root logging for the entire application.
    Call this once at application startup.

    Args:
        level: Root log level ("DEBUG", "INFO", "WARNING", "ERROR")
    """
    root_logger = logging.getLogger()
    _configure_logger(root_logger, level)
    # loggers handed out before startup follow the requested level too
    for name in _loggers_configured:
        logging.getLogger(name).setLevel(root_logger.level)


def log_event(logger: logging.Logger, level: str, message: str,
              event: Optional["Event"] = None,
              **context: Any) -> None:
    """
    Log a relay event with structured context.

    Args:
        logger: Logger instance
        level: Log level ("debug", "info", "warning", "error")
        message: Log message
        event: Event for automatic context extraction
        **context: Additional context fields (connection_id, ...)

    Example:
        log_event(logger, "info", "Broadcasting", event=event,
                  connection_id=link.connection_id)
    """

    extra_context = {}

    if event is not None:
        extra_context.update({
            'msg_type': event.type,
            'author': event.author,
        })

    extra_context.update(context)

    log_func = getattr(logger, level.lower())
    log_func(message, extra=extra_context)
