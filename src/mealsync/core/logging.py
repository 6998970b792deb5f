"""
Structured logging for mealsync.

Every module logs through structlog with snake_case event names and
key/value fields. ``store`` binds ``update_id`` and ``backend`` around each
backend call, so one update can be followed from ``update_created``
through the controller and the backend to ``update_succeeded`` or
``update_rolled_back``.

Processor chain::

    merge_contextvars          update_id / backend from LogContext
    add_log_level, logger name
    service metadata           "service": "mealsync"
    timestamp (iso, utc)
    JSONRenderer | ConsoleRenderer

Examples:
    >>> from mealsync.core.logging import configure_logging, get_logger
    >>> configure_logging(get_settings())          # MEALSYNC_LOG_LEVEL / _LOG_FORMAT
    >>> configure_logging(level="DEBUG", json_format=True)
    >>> get_logger(__name__).info("update_created", update_id="upd_1")

Tags:
    logging, structlog, observability
"""

from __future__ import annotations

import logging
import sys
from typing import TYPE_CHECKING, Any

import structlog
from structlog.types import EventDict, Processor, WrappedLogger

if TYPE_CHECKING:
    from mealsync.core.settings import MealsyncSettings


class _ServiceName:
    """Processor stamping the configured service name on every event."""

    def __init__(self, service: str):
        self.service = service

    def __call__(self, logger: WrappedLogger, method_name: str, event_dict: EventDict) -> EventDict:
        event_dict.setdefault("service", self.service)
        return event_dict


def configure_logging(
    settings: MealsyncSettings | None = None,
    *,
    level: str | None = None,
    json_format: bool | None = None,
    service: str = "mealsync",
) -> None:
    """Configure structlog (and stdlib logging underneath it).

    Explicit ``level`` / ``json_format`` win over ``settings``. With neither,
    the level is INFO and JSON is used whenever stdout is not a terminal.
    Libraries embedding mealsync may skip this and configure structlog
    themselves.
    """
    if settings is not None:
        level = level or settings.log_level
        if json_format is None:
            json_format = settings.json_logs
    level = (level or "INFO").upper()
    if json_format is None:
        json_format = not sys.stdout.isatty()

    processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        _ServiceName(service),
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
        structlog.dev.set_exc_info,
    ]
    if json_format:
        processors += [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty()))

    numeric_level = getattr(logging, level)
    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(numeric_level),
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )
    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=numeric_level)


def get_logger(name: str | None = None) -> Any:
    """Get a structured logger bound to ``name`` (usually ``__name__``)."""
    return structlog.get_logger(name)


def bind_context(**kwargs: Any) -> None:
    """Bind fields to every subsequent event of the current task."""
    structlog.contextvars.bind_contextvars(**kwargs)


def unbind_context(*keys: str) -> None:
    structlog.contextvars.unbind_contextvars(*keys)


def clear_context() -> None:
    structlog.contextvars.clear_contextvars()


class LogContext:
    """Bind fields for the duration of a ``with`` / ``async with`` block.

    Example:
        async with LogContext(update_id=update.id, backend="remote"):
            await backend.update(entity_id, changes)
    """

    def __init__(self, **kwargs: Any):
        self._context = kwargs

    def __enter__(self) -> LogContext:
        bind_context(**self._context)
        return self

    def __exit__(self, *args: Any) -> None:
        unbind_context(*self._context)

    async def __aenter__(self) -> LogContext:
        return self.__enter__()

    async def __aexit__(self, *args: Any) -> None:
        self.__exit__(*args)


__all__ = [
    "configure_logging",
    "get_logger",
    "bind_context",
    "unbind_context",
    "clear_context",
    "LogContext",
]
