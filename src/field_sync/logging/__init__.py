from __future__ import annotations

import logging
from logging.handlers import TimedRotatingFileHandler
from pathlib import Path
from typing import Mapping, Optional

from field_sync.config.models import FileLoggingSettings, LoggingSettings

_LOG_FORMAT = "[%(asctime)s][%(levelname)s][%(name)s] %(message)s"
_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

# Third-party loggers that are noisy at DEBUG and only useful at WARNING.
_QUIET_LOGGERS = ("aiohttp.access", "asyncio")


def _resolve_level(name: str) -> int:
    level = logging.getLevelNamesMapping().get(name.strip().upper())
    if level is None:
        raise ValueError(f"Invalid logging level: {name}")
    return level


def _resolve_overrides(levels: Mapping[str, str]) -> dict[str, int]:
    return {logger_name: _resolve_level(level_name) for logger_name, level_name in levels.items()}


def _open_file_handler(settings: FileLoggingSettings) -> Optional[logging.Handler]:
    file_path = settings.path.strip()
    if not file_path:
        return None
    try:
        log_path = Path(file_path)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        handler = TimedRotatingFileHandler(
            filename=str(log_path),
            when="midnight",
            interval=1,
            backupCount=settings.rotation.backup_count,
            encoding="utf-8",
        )
    except OSError:
        logging.getLogger(__name__).error(
            "File logging handler failed to initialize. path=%s",
            file_path,
            exc_info=True,
        )
        return None
    handler.suffix = "%Y-%m-%d"
    return handler


def init_logging(settings: LoggingSettings) -> None:
    """
    Configure logging once at process start.

    Records go to stderr and, when settings.file.path is set, to a file rotated at
    midnight. Filtering happens on loggers only: the root gets settings.level and
    every entry of settings.levels overrides one subtree, so a single component can
    run at DEBUG on a device in the field without flooding the rest of the log.

    Invalid level names raise ValueError before any handler is touched. A file
    handler that cannot be created is reported and skipped.
    """
    level = _resolve_level(settings.level)
    overrides = _resolve_overrides(settings.levels)

    root_logger = logging.getLogger()
    for handler in list(root_logger.handlers):
        root_logger.removeHandler(handler)
    root_logger.setLevel(level)

    formatter = logging.Formatter(fmt=_LOG_FORMAT, datefmt=_DATE_FORMAT)
    stream_handler = logging.StreamHandler()
    stream_handler.setFormatter(formatter)
    root_logger.addHandler(stream_handler)

    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))
    for name, override in overrides.items():
        logging.getLogger(name).setLevel(override)

    file_handler = _open_file_handler(settings.file)
    if file_handler is not None:
        file_handler.setFormatter(formatter)
        root_logger.addHandler(file_handler)


__all__ = ["init_logging"]
