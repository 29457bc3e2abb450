"""
core/logging.py -- Process-wide logging setup.

Every module logs through a named stdlib logger under the "formwork."
namespace (formwork.api, formwork.web, formwork.csrf, ...). This module owns
the single root handler so nothing else calls logging.basicConfig().

Two output formats:
  text -- human-readable, one line per record (development default)
  json -- one JSON object per line for log shippers (forced in production),
          rendered by structlog's ProcessorFormatter over the same stdlib
          records

Extra attributes passed via logger.info(..., extra={...}) are carried into
the JSON output so request_id, path and method survive aggregation.
"""

from __future__ import annotations

import logging
import sys

import structlog

from core.config import Settings

_TEXT_FORMAT = "%(asctime)s %(levelname)-5s %(name)s %(message)s"
_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

# Applied to every stdlib record before rendering.
_PRE_CHAIN: list = [
    structlog.stdlib.add_logger_name,
    structlog.stdlib.add_log_level,
    structlog.stdlib.ExtraAdder(),
    structlog.processors.TimeStamper(fmt="iso", utc=True, key="time"),
]


def json_formatter() -> logging.Formatter:
    """Formatter that renders stdlib records as single-line JSON objects."""
    return structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=_PRE_CHAIN,
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            structlog.processors.format_exc_info,
            structlog.processors.EventRenamer("message"),
            structlog.processors.JSONRenderer(default=str),
        ],
    )


def get_log_level(name: str) -> int:
    """Map a config string to a logging level. Unknown names fall back to INFO."""
    return {
        "debug": logging.DEBUG,
        "warn": logging.WARNING,
        "warning": logging.WARNING,
        "error": logging.ERROR,
    }.get(name.lower(), logging.INFO)


def configure_logging(settings: Settings) -> None:
    """Install one stream handler on the root logger, replacing any existing ones."""
    handler = logging.StreamHandler(sys.stdout)
    if settings.log_format == "json":
        handler.setFormatter(json_formatter())
    else:
        handler.setFormatter(logging.Formatter(_TEXT_FORMAT, datefmt=_DATE_FORMAT))

    root = logging.getLogger()
    for existing in list(root.handlers):
        root.removeHandler(existing)
    root.addHandler(handler)
    root.setLevel(get_log_level(settings.log_level))
