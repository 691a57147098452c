"""Tagged console logging for the beat engine.

Every message carries a level and a short tag naming the subsystem
(Engine, BEAT, Tempo, Emitter, ...), with optional key=value fields.
"""
from __future__ import annotations

import logging
from typing import Any

_logger = logging.getLogger("beatlock")
if not _logger.handlers:
    handler = logging.StreamHandler()
    formatter = logging.Formatter("[%(levelname)s][%(tag)s] %(message)s")
    handler.setFormatter(formatter)
    _logger.addHandler(handler)
    _logger.setLevel(logging.INFO)
    _logger.propagate = False


class _TagAdapter(logging.LoggerAdapter):
    def process(self, msg: Any, kwargs: dict[str, Any]):
        tag = kwargs.pop("tag", "Engine")
        kwargs.setdefault("extra", {})["tag"] = tag
        return msg, kwargs


_logger_adapter = _TagAdapter(_logger, {})


def log_event(level: str, tag: str, message: str, **fields: Any) -> None:
    """Log a message with level+tag, appending key=value fields when provided."""
    if fields:
        extras = " ".join(f"{k}={v}" for k, v in fields.items())
        message = f"{message} | {extras}"
    level_name = level.upper()
    if level_name == "WARN":
        level_name = "WARNING"
    level_val = getattr(logging, level_name, logging.INFO)
    _logger_adapter.log(level_val, message, tag=tag)


def log_exception(level: str, tag: str, message: str, exc: BaseException, **fields: Any) -> None:
    """Log a caught exception as error_type/error fields, without a traceback
    unless the logger is at DEBUG."""
    log_event(level, tag, message, error_type=type(exc).__name__, error=exc, **fields)
    if _logger.isEnabledFor(logging.DEBUG):
        _logger_adapter.debug("Traceback follows", exc_info=exc, tag=tag)


def set_log_level(level: str) -> None:
    """Set global log level (DEBUG/INFO/WARNING/ERROR)."""
    level_name = (level or "INFO").upper()
    level_val = getattr(logging, level_name, logging.INFO)
    _logger.setLevel(level_val)


def get_log_level() -> str:
    """Return current global log level name."""
    return logging.getLevelName(_logger.level)
