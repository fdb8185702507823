"""Python logging configuration for acme_autocert.

Environment Variables:
    LOG_LEVEL: Logging level (TRACE, DEBUG, INFO, WARNING, ERROR, CRITICAL)
    PYTHON_LOG_FORMAT: Log message format
"""

import logging
import sys
from typing import Optional

from .config import Config

# Below DEBUG, used for raw ACME exchanges
TRACE = 5


def setup_trace_logging() -> int:
    """Register the TRACE level and a ``Logger.trace`` method."""
    logging.addLevelName(TRACE, "TRACE")

    def trace(self, message, *args, **kwargs):
        if self.isEnabledFor(TRACE):
            self._log(TRACE, message, args, **kwargs)

    logging.Logger.trace = trace
    return TRACE


class ColoredFormatter(logging.Formatter):
    """Colored formatter for console output."""

    COLORS = {
        'TRACE': '\033[90m',     # Dark gray
        'DEBUG': '\033[36m',     # Cyan
        'INFO': '\033[32m',      # Green
        'WARNING': '\033[33m',   # Yellow
        'ERROR': '\033[31m',     # Red
        'CRITICAL': '\033[35m',  # Magenta
    }
    RESET = '\033[0m'

    def format(self, record):
        msg = super().format(record)
        if sys.stdout.isatty():
            color = self.COLORS.get(record.levelname, '')
            if color:
                msg = f"{color}{msg}{self.RESET}"
        return msg


def setup_logging(
    log_level: Optional[str] = None,
    use_colors: bool = True,
    log_format: Optional[str] = None
) -> logging.Logger:
    """Configure console logging.

    Args:
        log_level: Logging level (if None, uses Config.LOG_LEVEL)
        use_colors: Whether to use colored output for TTY
        log_format: Custom log format (if None, uses Config.PYTHON_LOG_FORMAT)

    Returns:
        Configured root logger
    """
    setup_trace_logging()

    log_level = (log_level or Config.LOG_LEVEL).upper()
    log_format = log_format or Config.PYTHON_LOG_FORMAT

    if log_level == 'TRACE':
        level = TRACE
    else:
        level = getattr(logging, log_level, logging.INFO)

    # Remove any existing handlers to avoid duplicates
    root_logger = logging.getLogger()
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(level)

    if use_colors and sys.stdout.isatty():
        formatter = ColoredFormatter(log_format)
    else:
        formatter = logging.Formatter(log_format)
    console_handler.setFormatter(formatter)

    root_logger.setLevel(level)
    root_logger.addHandler(console_handler)

    silence_noisy_loggers()
    root_logger.debug(f"Logging configured: level={log_level}")
    return root_logger


def silence_noisy_loggers():
    """Reduce verbosity of chatty third-party loggers."""
    noisy_loggers = [
        'acme.client',
        'urllib3',
        'apscheduler',
        'hypercorn.access',
        'hypercorn.error',
        'asyncio',
    ]

    for logger_name in noisy_loggers:
        logging.getLogger(logger_name).setLevel(logging.WARNING)
