# =============================================================================
# d3_core/logging/config.py
# Logging Configuration for the D3 offline core
# =============================================================================

import logging
import sys
import time
from pathlib import Path
from datetime import datetime
from typing import Optional


# Log format
LOG_FORMAT = "%(asctime)s | %(name)s | %(levelname)s | %(message)s"
LOG_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

# Log directory
LOG_DIR = Path("logs")

# Chatty third-party loggers (Supabase talks through httpx)
NOISY_LOGGERS = ("urllib3", "httpx", "httpcore", "hpack", "supabase", "postgrest")


def setup_logging(
    level: int = logging.INFO,
    log_to_file: bool = True,
    log_filename: Optional[str] = None,
    log_dir: Optional[Path] = None,
) -> None:
    """
    Configure application-wide logging.

    Args:
        level: Logging level (default: INFO)
        log_to_file: Whether to also log to a file
        log_filename: Custom log filename (default: d3_YYYY-MM-DD.log)
        log_dir: Directory for the log file (default: ./logs)
    """
    handlers = [logging.StreamHandler(sys.stdout)]

    if log_to_file:
        directory = log_dir or LOG_DIR
        directory.mkdir(parents=True, exist_ok=True)
        if log_filename is None:
            log_filename = f"d3_{datetime.now().strftime('%Y-%m-%d')}.log"
        handlers.append(logging.FileHandler(directory / log_filename, encoding="utf-8"))

    logging.basicConfig(
        level=level,
        format=LOG_FORMAT,
        datefmt=LOG_DATE_FORMAT,
        handlers=handlers,
        force=True,  # Override any existing configuration
    )

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    logging.getLogger("d3_core").info("Logging initialized")


def get_logger(name: str) -> logging.Logger:
    """
    Get a logger instance with the given name.

    Usage:
        from d3_core.logging import get_logger
        logger = get_logger(__name__)
        logger.info("Drain started")
    """
    return logging.getLogger(name)


class LogContext:
    """
    Context manager for logging operation timing and status.

    Usage:
        with LogContext(logger, "Draining mutation queue"):
            engine.drain()
        # Logs: "Draining mutation queue... started"
        # Logs: "Draining mutation queue... completed (0.12s)"
    """

    def __init__(self, logger: logging.Logger, operation: str, level: int = logging.INFO):
        self.logger = logger
        self.operation = operation
        self.level = level
        self.start_time: Optional[float] = None

    def __enter__(self):
        self.start_time = time.monotonic()
        self.logger.log(self.level, f"{self.operation}... started")
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        elapsed = time.monotonic() - self.start_time

        if exc_type is None:
            self.logger.log(self.level, f"{self.operation}... completed ({elapsed:.2f}s)")
        else:
            self.logger.error(
                f"{self.operation}... failed ({elapsed:.2f}s): {exc_val}",
                exc_info=True
            )

        return False  # Don't suppress exceptions
