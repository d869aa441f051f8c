"""Logging for the radar animation service: one log file plus the console."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import List, Optional, Tuple, Union

DEFAULT_LOGGER_NAME = "radar_animation"
DEFAULT_LOG_FILE = Path("logs") / "radar_animation.log"
LOG_FORMAT = "%(asctime)s - %(levelname)s - %(message)s"


def parse_level(value: Union[str, int, None], default: int = logging.INFO) -> int:
    """Translate a level name such as ``"debug"`` into a logging level."""
    if isinstance(value, int):
        return value
    if not value:
        return default
    level = logging.getLevelName(str(value).strip().upper())
    return level if isinstance(level, int) else default


def log_file_candidates(log_file: Union[str, Path]) -> List[Path]:
    """The configured log path, then the same file name in the working directory."""
    configured = Path(log_file)
    if not configured.is_absolute():
        configured = Path.cwd() / configured
    candidates = [configured]
    local = Path.cwd() / configured.name
    if local != configured:
        candidates.append(local)
    return candidates


def open_log_file(log_file: Union[str, Path]) -> Tuple[Optional[logging.Handler], List[str]]:
    """Open the first writable candidate; the notes say which ones failed.

    Opening is best effort: when no candidate works the service still logs to
    the console.
    """

    notes: List[str] = []
    for path in log_file_candidates(log_file):
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            handler = logging.FileHandler(path, encoding="utf-8")
        except OSError as exc:
            notes.append(f"Cannot write log file {path}: {exc}")
            continue
        if notes:
            notes.append(f"Logging to {path} instead")
        return handler, notes
    notes.append("File logging disabled")
    return None, notes


def configure_logging(
    logger_name: Optional[str] = None,
    *,
    level: Union[str, int] = logging.INFO,
    log_file: Union[str, Path, None] = DEFAULT_LOG_FILE,
    include_stream: bool = True,
) -> logging.Logger:
    """Install the root handlers and return the service logger.

    ``level`` may be a number or a name like ``"warning"``. Pass
    ``log_file=None`` for console-only logging.
    """

    resolved_level = parse_level(level)
    handlers: List[logging.Handler] = []
    notes: List[str] = []

    if log_file:
        file_handler, notes = open_log_file(log_file)
        if file_handler is not None:
            handlers.append(file_handler)
    if include_stream:
        handlers.append(logging.StreamHandler())

    formatter = logging.Formatter(LOG_FORMAT)
    for handler in handlers:
        handler.setFormatter(formatter)
    logging.basicConfig(level=resolved_level, handlers=handlers, force=True)

    logger = logging.getLogger(logger_name or DEFAULT_LOGGER_NAME)
    logger.setLevel(resolved_level)
    for note in notes:
        logger.warning(note)
    return logger


__all__ = ["configure_logging", "log_file_candidates", "open_log_file", "parse_level"]
