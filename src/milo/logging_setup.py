"""Logging for milo.

CLI commands log to stderr. ``milo serve`` runs as a daemon: timestamped
console output, plus the configured log file whatever ``logging.output``
says. Records emitted while a job is being dispatched carry its job and
execution ids.
"""

import contextvars
import logging
import sys
from contextlib import contextmanager
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Iterator

from .config import Config, LoggingConfig

LOGGER_NAME = "milo"

_FORMAT = "%(levelname)-5s [%(name)s]%(job)s %(message)s"
_TIMESTAMPED_FORMAT = "%(asctime)s " + _FORMAT
_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

# Third-party loggers that would drown out dispatch output
_QUIET_LOGGERS = ("httpx", "httpcore", "werkzeug")

_current_job: contextvars.ContextVar[tuple[str, str] | None] = contextvars.ContextVar(
    "milo_current_job", default=None,
)

_initialized = False


@contextmanager
def job_context(job_id: str, execution_id: str | None = None) -> Iterator[None]:
    """Tag log records from this thread with the job being dispatched."""
    token = _current_job.set((job_id, execution_id or "-"))
    try:
        yield
    finally:
        _current_job.reset(token)


class JobContextFilter(logging.Filter):
    """Fills ``%(job)s``: `` job=<id> exec=<id>`` inside a job, empty otherwise."""

    def filter(self, record: logging.LogRecord) -> bool:
        current = _current_job.get()
        record.job = f" job={current[0]} exec={current[1]}" if current else ""
        return True


def _make_handler(handler: logging.Handler, level: int, fmt: str) -> logging.Handler:
    handler.setLevel(level)
    handler.setFormatter(logging.Formatter(fmt, datefmt=_DATE_FORMAT))
    handler.addFilter(JobContextFilter())
    return handler


def _file_handler(log_config: LoggingConfig) -> logging.Handler:
    path = Path(log_config.file)
    path.parent.mkdir(parents=True, exist_ok=True)
    if log_config.rotate:
        return RotatingFileHandler(
            path,
            maxBytes=log_config.max_size_mb * 1024 * 1024,
            backupCount=log_config.backup_count,
        )
    return logging.FileHandler(path)


def setup_logging(
    config: Config,
    verbose: bool = False,
    daemon_mode: bool = False,
) -> None:
    """
    Configure the ``milo`` logger tree once per process.

    Args:
        config: Application configuration with logging settings
        verbose: If True, override config level to DEBUG
        daemon_mode: Long-running server. Adds timestamps to console output
            and always writes to ``logging.file`` when one is configured.
    """
    global _initialized
    if _initialized:
        return
    _initialized = True

    log_config = config.logging
    level_name = "DEBUG" if verbose else log_config.level.upper()
    level = getattr(logging, level_name, logging.INFO)

    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(level)
    logger.handlers.clear()

    if log_config.output in ("console", "both"):
        logger.addHandler(_make_handler(
            logging.StreamHandler(sys.stderr),
            level,
            _TIMESTAMPED_FORMAT if daemon_mode else _FORMAT,
        ))

    wants_file = daemon_mode or log_config.output in ("file", "both")
    if wants_file and log_config.file:
        logger.addHandler(_make_handler(_file_handler(log_config), level, _TIMESTAMPED_FORMAT))

    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def reset_logging() -> None:
    """Drop milo's handlers so the next setup_logging() call reconfigures."""
    global _initialized
    _initialized = False
    logger = logging.getLogger(LOGGER_NAME)
    for handler in logger.handlers:
        handler.close()
    logger.handlers.clear()
