"""
Logging setup for unirouter.

Every module logs through ``logging.getLogger(__name__)`` and passes
structured context via ``extra=``.  This module attaches handlers to the
``unirouter`` package logger whose formatter is a structlog
:class:`~structlog.stdlib.ProcessorFormatter`: the ``extra`` fields of
each stdlib record are lifted into the event dict and rendered either as
``key=value`` text or as one JSON object per line.
"""

import logging
from pathlib import Path
from typing import Any, Dict, Optional

import structlog

from unirouter.config import get_settings

PACKAGE_LOGGER = "unirouter"
LOG_FILE_NAME = "unirouter.log"

_HANDLER_MARKER = "_unirouter_handler"

# The router config uses "warn"; logging wants "WARNING".
_LEVEL_ALIASES = {"warn": "WARNING"}

_TEXT_KEY_ORDER = ["timestamp", "level", "logger", "event"]


def _drop_formatter_attrs(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    # Set on the record by any plain Formatter that saw it first.
    event_dict.pop("message", None)
    event_dict.pop("asctime", None)
    return event_dict


def _pre_chain() -> list:
    """Processors applied to records coming from stdlib ``logging``."""
    return [
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.stdlib.ExtraAdder(),
        _drop_formatter_attrs,
    ]


def build_formatter(fmt: str) -> structlog.stdlib.ProcessorFormatter:
    """Return the formatter for ``"json"`` or ``"text"`` output."""
    if fmt == "json":
        renderer: Any = structlog.processors.JSONRenderer(default=str)
    else:
        renderer = structlog.processors.KeyValueRenderer(key_order=_TEXT_KEY_ORDER, drop_missing=True)
    return structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=_pre_chain(),
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            structlog.processors.format_exc_info,
            renderer,
        ],
    )


def resolve_level(level: str) -> int:
    """Translate a level name (``debug``, ``warn``, ``INFO`` ...) to an int."""
    name = _LEVEL_ALIASES.get(level.lower(), level.upper())
    resolved = logging.getLevelName(name)
    return resolved if isinstance(resolved, int) else logging.INFO


def configure_logging(
    level: Optional[str] = None,
    fmt: Optional[str] = None,
    log_to_console: bool = True,
    log_to_file: Optional[bool] = None,
    log_dir: Optional[str] = None,
) -> logging.Logger:
    """Install handlers on the ``unirouter`` logger.

    Unset arguments fall back to the ``logging`` section of the settings.
    Calling this again replaces the handlers it installed previously, so
    it is safe to invoke on every configuration reload.

    Args:
        level: Level name; ``warn`` is accepted as an alias of WARNING.
        fmt: ``"json"`` or ``"text"``.
        log_to_console: Attach a stream handler.
        log_to_file: Attach a file handler writing to ``log_dir``.
        log_dir: Directory for the log file (created if missing).

    Returns:
        The configured package logger.
    """
    settings = get_settings().logging
    level = level or settings.level
    fmt = fmt or settings.format
    log_to_file = settings.log_to_file if log_to_file is None else log_to_file
    log_dir = log_dir or settings.log_dir

    package_logger = logging.getLogger(PACKAGE_LOGGER)
    for handler in list(package_logger.handlers):
        if getattr(handler, _HANDLER_MARKER, False):
            package_logger.removeHandler(handler)
            handler.close()

    formatter = build_formatter(fmt)
    handlers = []
    if log_to_console:
        handlers.append(logging.StreamHandler())
    if log_to_file:
        directory = Path(log_dir).expanduser()
        directory.mkdir(parents=True, exist_ok=True)
        handlers.append(
            logging.FileHandler(directory / LOG_FILE_NAME, encoding="utf-8")
        )

    for handler in handlers:
        handler.setFormatter(formatter)
        setattr(handler, _HANDLER_MARKER, True)
        package_logger.addHandler(handler)

    package_logger.setLevel(resolve_level(level))
    return package_logger
