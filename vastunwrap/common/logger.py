"""
Structured logging using structlog.

JSON lines in production, coloured console output for development. Ad-tag
and bid endpoint URLs routinely carry bidder tokens and price macros in
their query strings, so outside debug mode URL-valued fields are logged
without them.
"""

from __future__ import annotations

import logging
import sys
from collections.abc import MutableMapping
from typing import Any
from urllib.parse import urlsplit, urlunsplit

import structlog
from structlog.types import Processor

from vastunwrap.common.config import Settings

# Event fields that hold a URL
URL_FIELDS: frozenset[str] = frozenset({"url", "target", "endpoint", "location"})

# Libraries that log every request line at INFO
_NOISY_LOGGERS = ("httpx", "httpcore")


def strip_url_queries(
    _logger: Any, _method: str, event_dict: MutableMapping[str, Any]
) -> MutableMapping[str, Any]:
    """structlog processor: drop query and fragment from URL fields."""
    for key in URL_FIELDS.intersection(event_dict):
        value = event_dict[key]
        if not isinstance(value, str):
            value = str(value)
        try:
            parts = urlsplit(value)
        except ValueError:
            continue
        if parts.query or parts.fragment:
            event_dict[key] = urlunsplit((parts.scheme, parts.netloc, parts.path, "", ""))
    return event_dict


def setup_logging(settings: Settings) -> None:
    """Configure structlog and stdlib logging for one process."""
    level = logging.getLevelName("DEBUG" if settings.debug else settings.logging.level.upper())

    processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
    ]
    if not settings.debug:
        processors.append(strip_url_queries)

    if settings.logging.format == "json":
        processors += [
            structlog.processors.dict_tracebacks,
            structlog.processors.JSONRenderer(),
        ]
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty()))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=False,
    )

    # uvicorn and friends log through the standard library
    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=level)
    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))


def get_logger(name: str | None = None) -> structlog.BoundLogger:
    """
    Logger carrying ``logger_name`` when a name is given.

    The name goes in as an initial value rather than through ``bind()``, so
    module-level loggers stay lazy and pick up ``setup_logging`` run later.
    """
    if name:
        return structlog.get_logger(logger_name=name)
    return structlog.get_logger()


class LoggerMixin:
    """Gives a class a ``logger`` bound with its class name."""

    @property
    def logger(self) -> structlog.BoundLogger:
        if not hasattr(self, "_logger"):
            self._logger = get_logger(self.__class__.__name__)
        return self._logger


def log_context(**kwargs: Any) -> None:
    """
    Bind values (e.g. ``request_id``) to every later log line of the
    current request.
    """
    structlog.contextvars.bind_contextvars(**kwargs)


def clear_log_context() -> None:
    structlog.contextvars.clear_contextvars()


logger = get_logger("vastunwrap")
