"""
Logging and error handling utilities for the forum sync system.

Provides:
- Structured logging with rotation
- Exception taxonomy shared by the client, store and orchestrator
- Performance timing context managers
- Health check result type
"""

from __future__ import annotations

import sys
import time
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from loguru import logger


# =============================================================================
# Logging Setup
# =============================================================================

# Custom format for pretty console output
CONSOLE_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss}</green> | "
    "<level>{level: <8}</level> | "
    "<magenta>{module}</magenta>:<cyan>{function}</cyan> | "
    "<level>{message}</level>"
)

# Detailed format for file logs
FILE_FORMAT = (
    "{time:YYYY-MM-DD HH:mm:ss.SSS} | "
    "{level: <8} | "
    "{name}:{function}:{line} | "
    "{message}"
)

# Simple format for verbose mode
VERBOSE_FORMAT = (
    "<green>{time:HH:mm:ss}</green> | "
    "<level>{level: <8}</level> | "
    "<level>{message}</level>"
)


def setup_logging(
    level: str = "INFO",
    log_file: str = "./logs/forumsync.log",
    max_size_mb: int = 50,
    backup_count: int = 5,
    log_format: Optional[str] = None,
    verbose: bool = False,
) -> None:
    """
    Configure logging for the forum sync system.

    Args:
        level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL).
        log_file: Path to log file.
        max_size_mb: Maximum log file size before rotation.
        backup_count: Number of rotated log files to keep.
        log_format: Custom console format string.
        verbose: If True, use simplified verbose format.
    """
    logger.remove()

    if log_format is None:
        log_format = VERBOSE_FORMAT if verbose else CONSOLE_FORMAT

    logger.add(
        sys.stderr,
        format=log_format,
        level=level,
        colorize=True,
    )

    log_path = Path(log_file)
    log_path.parent.mkdir(parents=True, exist_ok=True)

    logger.add(
        str(log_path),
        format=FILE_FORMAT,
        level="DEBUG",  # Always log everything to file
        rotation=f"{max_size_mb} MB",
        retention=backup_count,
        compression="zip",
        enqueue=True,  # Thread-safe
    )

    logger.info(f"Logging configured: level={level}, file={log_file}")


def setup_detailed_logging(
    level: str = "DEBUG",
    log_file: str = "./logs/forumsync.log",
    show_colors: bool = True,
) -> None:
    """Configure logging with thread names, for debugging concurrent syncs."""
    logger.remove()

    logger.add(
        sys.stderr,
        format=(
            "<green>{time:HH:mm:ss}</green> | "
            "<level>{level: <8}</level> | "
            "<yellow>{thread.name}</yellow> | "
            "<blue>{module}</blue>:<cyan>{function}</cyan> | "
            "<level>{message}</level>"
        ),
        level=level,
        colorize=show_colors,
    )

    log_path = Path(log_file)
    log_path.parent.mkdir(parents=True, exist_ok=True)

    logger.add(
        str(log_path),
        format=FILE_FORMAT,
        level="DEBUG",
        rotation="50 MB",
        retention=5,
        compression="zip",
        enqueue=True,
    )

    logger.info("Detailed logging initialized")


# =============================================================================
# Custom Exceptions
# =============================================================================

class ForumSyncError(Exception):
    """Base exception for the forum sync system."""
    pass


class EdAPIError(ForumSyncError):
    """Non-success response from the Ed API."""
    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        body: str = "",
    ):
        super().__init__(message)
        self.status_code = status_code
        self.body = body


class RateLimitError(EdAPIError):
    """The Ed API rejected a request with 429."""
    pass


class AuthError(EdAPIError):
    """Token missing, invalid or expired. Never retried."""
    pass


class TransientNetworkError(ForumSyncError):
    """Transport-level failure talking to the Ed API."""
    pass


class RequestTimeoutError(TransientNetworkError):
    """The request to the Ed API timed out."""
    pass


class MalformedResponseError(ForumSyncError):
    """Ed API payload is missing required fields or has the wrong shape."""
    pass


class VectorStoreError(ForumSyncError):
    """Error interacting with the vector store."""
    def __init__(self, message: str, operation: Optional[str] = None):
        super().__init__(message)
        self.operation = operation


class StateStoreError(ForumSyncError):
    """Error with sync state persistence."""
    pass


class SyncError(ForumSyncError):
    """Unrecoverable error during a course sync."""
    def __init__(self, message: str, course_id: Optional[int] = None):
        super().__init__(message)
        self.course_id = course_id


class SyncInProgressError(SyncError):
    """A sync is already running for the course."""
    def __init__(self, course_id: int):
        super().__init__(f"Sync already in progress for course {course_id}", course_id)


class ConfigError(ForumSyncError):
    """Error with configuration."""
    pass


# =============================================================================
# Performance Timing
# =============================================================================

@contextmanager
def timed_operation(operation_name: str, log_level: str = "info"):
    """
    Context manager for timing operations.

    Example:
        with timed_operation("Fetching threads"):
            client.get_all_threads(course_id)
    """
    start_time = time.perf_counter()
    try:
        yield
    finally:
        elapsed = time.perf_counter() - start_time

        log_func = getattr(logger, log_level)
        log_func(f"{operation_name} completed in {elapsed:.3f}s")


class Timer:
    """Simple timer for measuring elapsed time."""

    def __init__(self, name: str = "Timer"):
        self.name = name
        self.start_time: Optional[float] = None
        self.end_time: Optional[float] = None
        self.elapsed: float = 0.0

    def start(self) -> "Timer":
        self.start_time = time.perf_counter()
        self.end_time = None
        self.elapsed = 0.0
        return self

    def stop(self) -> float:
        if self.start_time is None:
            raise RuntimeError("Timer not started")

        self.end_time = time.perf_counter()
        self.elapsed = self.end_time - self.start_time
        return self.elapsed

    def __enter__(self) -> "Timer":
        return self.start()

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.stop()


# =============================================================================
# Health Check Utilities
# =============================================================================

@dataclass
class HealthStatus:
    """Health check status. Health checks return this instead of raising."""
    is_healthy: bool
    message: str = ""
    courses_count: Optional[int] = None
