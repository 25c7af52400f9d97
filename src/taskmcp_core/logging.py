"""structlog setup and logger-agnostic event helpers.

Breakers, retries and batch runs log through ``log_info`` and friends so the
same call works with a structlog logger or a plain stdlib one. Fields bound
with ``bound_log_context`` ride along on every event logged inside the block,
including events from tasks spawned there.
"""

from __future__ import annotations

import logging
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Literal, Protocol

import structlog
from structlog.typing import EventDict

_LOG_LEVELS: dict[str, int] = {
    "DEBUG": logging.DEBUG,
    "INFO": logging.INFO,
    "WARNING": logging.WARNING,
    "ERROR": logging.ERROR,
    "CRITICAL": logging.CRITICAL,
}

DEFAULT_SERVICE_NAME = "taskmcp"

_StdlibLogger = logging.Logger | logging.LoggerAdapter[logging.Logger]
_Level = Literal["debug", "info", "warning", "error", "exception"]


class StructuredLogger(Protocol):
    """Anything with structlog-style ``level(event, **fields)`` methods."""

    def debug(self, event: str, **kwargs: object) -> None:
        """Log a diagnostic event."""

    def info(self, event: str, **kwargs: object) -> None:
        """Log an informational event."""

    def warning(self, event: str, **kwargs: object) -> None:
        """Log a warning event."""

    def error(self, event: str, **kwargs: object) -> None:
        """Log an error event."""

    def exception(self, event: str, **kwargs: object) -> None:
        """Log an error event with the active traceback."""


def get_log_level_value(level: str) -> int:
    """Map a level name such as ``" warning "`` to its stdlib constant."""
    normalized = level.strip().upper()
    try:
        return _LOG_LEVELS[normalized]
    except KeyError as error:
        choices = ", ".join(sorted(_LOG_LEVELS))
        raise ValueError(f"log_level must be one of: {choices}") from error


@contextmanager
def bound_log_context(**fields: object) -> Iterator[None]:
    """Attach ``fields`` to every structlog event logged inside the block."""
    with structlog.contextvars.bound_contextvars(**fields):
        yield


def _build_service_stamper(service_name: str) -> structlog.types.Processor:
    def _stamp_service(_: object, __: str, event_dict: EventDict) -> EventDict:
        event_dict.setdefault("service", service_name)
        return event_dict

    return _stamp_service


def _select_renderer() -> structlog.types.Processor:
    if sys.stderr.isatty():
        return structlog.dev.ConsoleRenderer()
    return structlog.processors.JSONRenderer()


def _log(
    logger: StructuredLogger | _StdlibLogger,
    level: _Level,
    event: str,
    **fields: object,
) -> None:
    """Log one event on either a structlog or a stdlib logger."""
    method = getattr(logger, level)
    if isinstance(logger, (logging.Logger, logging.LoggerAdapter)):
        method(event, extra=fields)
        return
    method(event, **fields)


def log_debug(
    logger: StructuredLogger | _StdlibLogger, event: str, **fields: object
) -> None:
    """Log a diagnostic event."""
    _log(logger, "debug", event, **fields)


def log_info(
    logger: StructuredLogger | _StdlibLogger, event: str, **fields: object
) -> None:
    """Log an informational event."""
    _log(logger, "info", event, **fields)


def log_warning(
    logger: StructuredLogger | _StdlibLogger, event: str, **fields: object
) -> None:
    """Log a warning event."""
    _log(logger, "warning", event, **fields)


def log_error(
    logger: StructuredLogger | _StdlibLogger, event: str, **fields: object
) -> None:
    """Log an error event."""
    _log(logger, "error", event, **fields)


def log_exception(
    logger: StructuredLogger | _StdlibLogger, event: str, **fields: object
) -> None:
    """Log at error level with the active exception's traceback attached."""
    _log(logger, "exception", event, **fields)


def configure_structlog(
    *,
    log_level: str,
    service_name: str = DEFAULT_SERVICE_NAME,
) -> structlog.stdlib.BoundLogger:
    """Route structlog and stdlib logging through one stderr handler.

    Safe to call more than once; the root handler is replaced each time.
    Output is colored console text on a TTY and JSON lines otherwise, which
    keeps stdout free for a stdio tool transport.

    Args:
        log_level: Level name accepted by ``get_log_level_value``.
        service_name: Value of the ``service`` field stamped on every event.
    """
    level_value = get_log_level_value(log_level)
    timestamper = structlog.processors.TimeStamper(fmt="iso", utc=True)
    stamp_service = _build_service_stamper(service_name)

    shared_processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        stamp_service,
        timestamper,
    ]

    formatter = structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=shared_processors,
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            _select_renderer(),
        ],
    )
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(formatter)

    logging.basicConfig(
        format="%(message)s",
        handlers=[handler],
        level=level_value,
        force=True,
    )

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            stamp_service,
            structlog.stdlib.PositionalArgumentsFormatter(),
            timestamper,
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )
    return structlog.stdlib.get_logger()
