"""
Logging helpers.

The engine runs inside a host application and never installs output handlers:
records of the ``pointmls`` loggers propagate to whatever the host configured.
``configure_logging`` only adds a NullHandler to the package logger and applies
the ``POINTMLS_LOG_LEVEL`` override. Degenerate samples inside vectorized loops
are reported through ``log_once``, once per filter run.
"""

from __future__ import annotations

import logging
import os
import threading
from typing import Optional

PACKAGE_LOGGER = "pointmls"
ENV_LOG_LEVEL = "POINTMLS_LOG_LEVEL"

_LOG_ONCE_KEYS: set[tuple[str, str]] = set()
_LOCK = threading.Lock()


def _parse_log_level(level: str | int | None) -> Optional[int]:
    """Numeric level, or None for an empty or unknown name."""
    if level is None:
        return None
    if isinstance(level, int):
        return int(level)
    value = str(level).strip().upper()
    if not value:
        return None
    if value.isdigit():
        return int(value)
    resolved = logging.getLevelName(value)
    return resolved if isinstance(resolved, int) else None


def configure_logging(level: str | int | None = None) -> logging.Logger:
    """
    Prepare the ``pointmls`` package logger.

    Idempotent. ``level`` wins over the environment; an unknown level name
    leaves the logger level unchanged.

    Returns:
        the package logger
    """
    logger = logging.getLogger(PACKAGE_LOGGER)
    with _LOCK:
        if not any(isinstance(h, logging.NullHandler) for h in logger.handlers):
            logger.addHandler(logging.NullHandler())

    resolved = _parse_log_level(os.environ.get(ENV_LOG_LEVEL) if level is None else level)
    if resolved is not None:
        logger.setLevel(resolved)
    return logger


def log_once(
    logger: logging.Logger,
    key: str,
    level: int,
    msg: str,
    *args,
    exc_info: bool | BaseException | None = None,
) -> bool:
    """
    Log at most once per ``(logger, key)`` until the keys are reset.

    Returns:
        True when the record was emitted
    """
    k = (logger.name, str(key))
    with _LOCK:
        if k in _LOG_ONCE_KEYS:
            return False
        _LOG_ONCE_KEYS.add(k)

    logger.log(level, msg, *args, exc_info=exc_info)
    return True


def reset_log_once(prefix: str = "") -> int:
    """Forget the emitted keys starting with ``prefix``; returns how many."""
    with _LOCK:
        stale = {k for k in _LOG_ONCE_KEYS if k[1].startswith(prefix)}
        _LOG_ONCE_KEYS.difference_update(stale)
    return len(stale)
