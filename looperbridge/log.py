"""Logging utilities for looperbridge."""
import logging
import sys
import os
import threading
from typing import Optional


LOG_LEVEL_ENV = "LOOPERBRIDGE_LOG_LEVEL"

# Thread-safe lock for logger initialization
_logger_init_lock = threading.Lock()


class BridgeFormatter(logging.Formatter):
    """Compact single-line formatter.

    Logs go to stderr; stdout is reserved for the text LED stream.

    Format: [{level[0]} {time} {module_basename[:9]}] {message}
    Example: [I 14:23:45.123 session  ] Connected to looper engine 7
    """

    def format(self, record):
        level_char = record.levelname[0]

        # Module basename, truncated and padded to a fixed column
        module_name = record.name.split('.')[-1]
        module_padded = module_name[:9].ljust(9)

        timestamp = self.formatTime(record, "%H:%M:%S")
        msecs = f"{record.msecs:03.0f}"

        prefix = f"[{level_char} {timestamp}.{msecs} {module_padded}]"
        message = record.getMessage()
        if record.exc_info:
            message = f"{message}\n{self.formatException(record.exc_info)}"

        return f"{prefix} {message}"


def get_logger(name: str, level: Optional[str] = None) -> logging.Logger:
    """Get logger for a looperbridge component.

    Args:
        name: Component name (usually __name__)
        level: Optional level (DEBUG/INFO/WARNING/ERROR)
               Falls back to LOOPERBRIDGE_LOG_LEVEL env var, then INFO

    Returns:
        Configured logger instance

    Example:
        >>> from looperbridge.log import get_logger
        >>> logger = get_logger(__name__)
        >>> logger.info("Connected to looper engine 7")
        [I 14:23:45.123 session  ] Connected to looper engine 7
    """
    logger = logging.getLogger(name)

    if level is None:
        level = os.getenv(LOG_LEVEL_ENV, "INFO")

    logger.setLevel(getattr(logging, level.upper(), logging.INFO))

    with _logger_init_lock:
        if not logger.handlers:
            handler = logging.StreamHandler(sys.stderr)
            handler.setFormatter(BridgeFormatter())
            logger.addHandler(handler)

    return logger


def set_level(level: str) -> None:
    """Apply level to every looperbridge logger created so far.

    Loggers are created at import time, so the CLI calls this after parsing
    --log-level. Loggers created later pick the level up from the env var.
    """
    os.environ[LOG_LEVEL_ENV] = level.upper()
    numeric = getattr(logging, level.upper(), logging.INFO)
    for name in list(logging.root.manager.loggerDict):
        if name == "looperbridge" or name.startswith("looperbridge."):
            logging.getLogger(name).setLevel(numeric)
