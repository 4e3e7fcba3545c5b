"""Logging configuration for the daemon and the admin tool."""

import logging
import os
import sys
import threading
import time
from logging.handlers import RotatingFileHandler
from typing import Callable, Dict, Optional

from const import LOG_FILE, LOGGER_PREFIX


def setup_logging(log_file: str = LOG_FILE, level: int = logging.INFO) -> None:
    """
    Configure application logging.

    Args:
        log_file: Path to the log file.
        level: Logging level (default: logging.INFO).
    """
    logger = logging.getLogger(LOGGER_PREFIX)
    logger.setLevel(level)

    # Check environment variables
    log_format = os.getenv('LOG_FORMAT', 'text').lower()
    log_dest = os.getenv('LOG_DEST', 'file').lower()

    if log_dest == 'stdout':
        handler = logging.StreamHandler(sys.stdout)
    else:
        os.makedirs(os.path.dirname(os.path.abspath(log_file)), exist_ok=True)
        handler = RotatingFileHandler(
            log_file,
            maxBytes=5 * 1024 * 1024,  # 5 MB
            backupCount=10,
            encoding='utf-8'
        )

    if log_format == 'json':
        from pythonjsonlogger import jsonlogger
        formatter = jsonlogger.JsonFormatter(
            '%(asctime)s %(levelname)s %(name)s %(message)s',
            timestamp=True
        )
    else:
        formatter = logging.Formatter(
            '%(asctime)s - %(levelname)s - [%(name)s] - %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S'
        )

    handler.setFormatter(formatter)

    # Remove existing handlers to avoid duplicates
    if logger.hasHandlers():
        logger.handlers.clear()

    logger.addHandler(handler)
    logger.propagate = False


def setup_exception_logging():
    """
    Set up a global exception hook to log uncaught exceptions.
    """
    logger = get_logger("exception_handler")

    def handle_exception(exc_type, exc_value, exc_traceback):
        """
        Log uncaught exceptions using the configured logger.
        """
        if issubclass(exc_type, KeyboardInterrupt):
            sys.__excepthook__(exc_type, exc_value, exc_traceback)
            return

        logger.error("Uncaught exception", exc_info=(exc_type, exc_value, exc_traceback))

    sys.excepthook = handle_exception


def get_logger(name: str) -> logging.Logger:
    """Get a logger instance with the app prefix."""
    return logging.getLogger(f"{LOGGER_PREFIX}.{name}")


class RateLimitedLog:
    """
    Emit a log line per key at most once per interval.

    Repeats inside the interval are counted and reported with the next
    line that gets through, so an attack-driven error storm costs one
    line per interval instead of one per event.
    """

    def __init__(self, logger: logging.Logger, interval: float,
                 clock: Optional[Callable[[], float]] = None):
        self.logger = logger
        self.interval = interval
        self._clock = clock or time.monotonic
        self._last: Dict[str, float] = {}
        self._suppressed: Dict[str, int] = {}
        self._lock = threading.Lock()

    def log(self, level: int, key: str, message: str, **kwargs) -> bool:
        """Log message under key unless it was logged within the interval.

        Returns:
            True if the line was emitted
        """
        with self._lock:
            now = self._clock()
            last = self._last.get(key)
            if last is not None and now - last < self.interval:
                self._suppressed[key] = self._suppressed.get(key, 0) + 1
                return False
            suppressed = self._suppressed.pop(key, 0)
            self._last[key] = now

        if suppressed:
            message = f"{message} ({suppressed} similar messages suppressed)"
        self.logger.log(level, message, **kwargs)
        return True

    def reset(self, key: str) -> None:
        """Forget key so the next occurrence is logged immediately."""
        with self._lock:
            self._last.pop(key, None)
            self._suppressed.pop(key, None)
