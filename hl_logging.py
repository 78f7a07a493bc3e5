"""Logging configuration helpers for hl-bootstrap."""
from __future__ import annotations

import logging
import os
import sys
from typing import Any, Optional

_DEFAULT_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"
_DEFAULT_DATEFMT = "%Y-%m-%d %H:%M:%S"

_configured = False

PROJECT_LOGGERS = [
    "bootstrap",
    "supervisor",
    "config",
    "network",
    "servers",
    "health",
    "visor",
    "app",
]

THIRD_PARTY_LOGGERS = [
    "httpx",
    "httpcore",
    "trio",
    "werkzeug",
    "urllib3",
]


def _coerce_level(level: Optional[Any]) -> int:
    """Translate a human readable level into the logging module's numeric level."""
    if isinstance(level, int):
        return level
    if isinstance(level, str):
        level = level.strip().upper()
        numeric = getattr(logging, level, None)
        if isinstance(numeric, int):
            return numeric
    env_default = os.environ.get("HL_BOOTSTRAP_LOG_LEVEL", "INFO").strip().upper()
    return getattr(logging, env_default, logging.INFO)


def configure(logging_settings: Optional[Any] = None, *, force: bool = True) -> None:
    """Configure logging to stderr for project loggers. Third-party loggers are kept quiet."""
    global _configured
    if _configured and not force:
        return

    level = None
    fmt = None
    datefmt = None

    if logging_settings is not None:
        if isinstance(logging_settings, dict):
            level = logging_settings.get("level")
            fmt = logging_settings.get("format")
            datefmt = logging_settings.get("datefmt")
        else:
            level = getattr(logging_settings, "level", None)
            fmt = getattr(logging_settings, "format", None)
            datefmt = getattr(logging_settings, "datefmt", None)

    level = _coerce_level(level)
    fmt = fmt or os.environ.get("HL_BOOTSTRAP_LOG_FORMAT", _DEFAULT_FORMAT)
    datefmt = datefmt or os.environ.get("HL_BOOTSTRAP_LOG_DATEFMT", _DEFAULT_DATEFMT)

    formatter = logging.Formatter(fmt, datefmt)

    root_logger = logging.getLogger()
    root_logger.setLevel(max(logging.WARNING, level))

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    # stdout belongs to the node once it takes over
    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)

    for name in PROJECT_LOGGERS:
        logging.getLogger(name).setLevel(level)

    for name in THIRD_PARTY_LOGGERS:
        logging.getLogger(name).setLevel(max(logging.WARNING, level))

    logging.captureWarnings(True)

    _configured = True
