"""Logging setup for processes embedding the turn engine.

Every record emitted while a turn is running carries that turn's ``run_id``
so interleaved turns from several engines can be told apart in one log
file. The engine binds the id with ``turn_context``; ``setup_logging``
installs the filter that stamps it onto records.
"""

from __future__ import annotations

import logging
import logging.handlers
import os
from contextlib import contextmanager
from contextvars import ContextVar
from pathlib import Path
from typing import Iterator

__all__ = [
    "RunContextFilter",
    "current_run_id",
    "get_log_path",
    "setup_logging",
    "turn_context",
]

NO_RUN = "-"
LOG_FORMAT = "%(asctime)s | %(levelname)-8s | %(run_id)s | %(name)s | %(message)s"

_DEFAULT_LOG_DIR = Path.home() / ".turnwright" / "logs"
_NOISY_LOGGERS: tuple[str, ...] = ("asyncio", "httpx", "httpcore", "openai")
_RUN_ID: ContextVar[str] = ContextVar("turnwright_run_id", default=NO_RUN)
_LOG_PATH: Path | None = None


# -----------------------------------------------------------------------------
# Turn Context
# -----------------------------------------------------------------------------


@contextmanager
def turn_context(run_id: str) -> Iterator[str]:
    """Bind ``run_id`` to log records emitted inside the block.

    Tasks created inside the block inherit the binding.
    """
    token = _RUN_ID.set(run_id)
    try:
        yield run_id
    finally:
        _RUN_ID.reset(token)


def current_run_id() -> str:
    return _RUN_ID.get()


class RunContextFilter(logging.Filter):
    """Stamp the bound turn id onto every record as ``run_id``."""

    def filter(self, record: logging.LogRecord) -> bool:
        if not hasattr(record, "run_id"):
            record.run_id = _RUN_ID.get()
        return True


# -----------------------------------------------------------------------------
# Setup
# -----------------------------------------------------------------------------


def setup_logging(
    level: int | str | None = None,
    *,
    log_dir: Path | str | None = None,
    console: bool = True,
    max_bytes: int = 1_000_000,
    backup_count: int = 3,
    force: bool = False,
) -> Path:
    """Configure root logging with a rotating file and an optional console handler.

    Args:
        level: Level number or name. Falls back to ``TURNWRIGHT_LOG_LEVEL``,
            then INFO.
        log_dir: Directory for ``turnwright.log``. Falls back to
            ``TURNWRIGHT_LOG_DIR``, then ``~/.turnwright/logs``.
        console: Also log to stderr.
        max_bytes: Rotation threshold of the log file.
        backup_count: Rotated files to keep.
        force: Reconfigure even if logging was already set up.

    Returns:
        Path of the active log file. Repeated calls return the same path
        unless ``force`` is set.
    """
    global _LOG_PATH
    if _LOG_PATH is not None and not force:
        return _LOG_PATH

    resolved_level = _resolve_level(level)
    target_dir = _resolve_log_dir(log_dir)
    target_dir.mkdir(parents=True, exist_ok=True)
    log_path = target_dir / "turnwright.log"

    formatter = logging.Formatter(fmt=LOG_FORMAT, datefmt="%Y-%m-%d %H:%M:%S")
    run_filter = RunContextFilter()
    handlers: list[logging.Handler] = [
        logging.handlers.RotatingFileHandler(log_path, maxBytes=max_bytes, backupCount=backup_count, encoding="utf-8")
    ]
    if console:
        handlers.append(logging.StreamHandler())
    for handler in handlers:
        handler.setLevel(resolved_level)
        handler.setFormatter(formatter)
        handler.addFilter(run_filter)

    logging.basicConfig(level=resolved_level, handlers=handlers, force=True)
    logging.captureWarnings(True)
    _quiet_external_loggers(resolved_level)

    _LOG_PATH = log_path
    return log_path


def get_log_path() -> Path | None:
    return _LOG_PATH


def _resolve_level(level: int | str | None) -> int:
    if level is None:
        level = os.environ.get("TURNWRIGHT_LOG_LEVEL") or logging.INFO
    if isinstance(level, int):
        return level
    resolved = logging.getLevelName(level.strip().upper())
    if not isinstance(resolved, int):
        logging.getLogger(__name__).warning("Unknown log level %r; using INFO", level)
        return logging.INFO
    return resolved


def _resolve_log_dir(log_dir: Path | str | None) -> Path:
    return Path(log_dir or os.environ.get("TURNWRIGHT_LOG_DIR") or _DEFAULT_LOG_DIR).expanduser()


def _quiet_external_loggers(root_level: int) -> None:
    quiet_level = max(root_level, logging.WARNING)
    for logger_name in _NOISY_LOGGERS:
        logging.getLogger(logger_name).setLevel(quiet_level)
