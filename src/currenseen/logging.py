"""Structured logging for the rate service.

Events are short snake_case names with keyword fields. Every event passes
through ``redact_secrets`` so API keys and authorization headers never reach
the log sink in clear text.
"""

from __future__ import annotations

import logging
import sys
from collections.abc import Mapping
from typing import Literal, Protocol

import structlog
from structlog.typing import EventDict

SERVICE_NAME = "currenseen"
LogFormat = Literal["auto", "json", "console"]

_LEVELS_BY_NAME: Mapping[str, int] = {
    name: getattr(logging, name)
    for name in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")
}
_MASK_VISIBLE_CHARS = 4
SENSITIVE_FIELDS = frozenset({"api_key", "x_api_key", "authorization", "token"})

_StdlibLogger = logging.Logger | logging.LoggerAdapter[logging.Logger]


class StructuredLogger(Protocol):
    """Anything with structlog-style ``level(event, **fields)`` methods."""

    def info(self, event: str, **kwargs: object) -> None: ...

    def warning(self, event: str, **kwargs: object) -> None: ...

    def error(self, event: str, **kwargs: object) -> None: ...

    def exception(self, event: str, **kwargs: object) -> None: ...


def get_log_level_value(level: str) -> int:
    """Map a level name such as ``" info "`` to its stdlib constant."""
    value = _LEVELS_BY_NAME.get(level.strip().upper())
    if value is None:
        choices = ", ".join(sorted(_LEVELS_BY_NAME))
        raise ValueError(f"log_level must be one of: {choices}")
    return value


def mask_api_key(key: str | None) -> str:
    """Return a log-safe rendering of an API key showing only its last chars."""
    if not key:
        return ""
    hidden = max(len(key) - _MASK_VISIBLE_CHARS, 0)
    if hidden == 0:
        return "*" * len(key)
    return "*" * hidden + key[hidden:]


def redact_secrets(_: object, __: str, event_dict: EventDict) -> EventDict:
    """structlog processor masking credential-looking fields in place."""
    for name in SENSITIVE_FIELDS.intersection(event_dict):
        value = event_dict[name]
        if isinstance(value, str):
            event_dict[name] = mask_api_key(value)
    return event_dict


def _add_service(_: object, __: str, event_dict: EventDict) -> EventDict:
    event_dict.setdefault("service", SERVICE_NAME)
    return event_dict


def _renderer_for(log_format: LogFormat) -> structlog.types.Processor:
    use_console = log_format == "console" or (
        log_format == "auto" and sys.stderr.isatty()
    )
    if use_console:
        return structlog.dev.ConsoleRenderer()
    return structlog.processors.JSONRenderer()


def _log(
    logger: StructuredLogger | _StdlibLogger,
    level: Literal["info", "warning", "error", "exception"],
    event: str,
    **fields: object,
) -> None:
    method = getattr(logger, level)
    if isinstance(logger, (logging.Logger, logging.LoggerAdapter)):
        method(event, extra=fields)
    else:
        method(event, **fields)


def log_info(
    logger: StructuredLogger | _StdlibLogger, event: str, **fields: object
) -> None:
    _log(logger, "info", event, **fields)


def log_warning(
    logger: StructuredLogger | _StdlibLogger, event: str, **fields: object
) -> None:
    _log(logger, "warning", event, **fields)


def log_error(
    logger: StructuredLogger | _StdlibLogger, event: str, **fields: object
) -> None:
    _log(logger, "error", event, **fields)


def log_exception(
    logger: StructuredLogger | _StdlibLogger, event: str, **fields: object
) -> None:
    """Log at error level with the active exception's traceback attached."""
    _log(logger, "exception", event, **fields)


def configure_structlog(
    *,
    log_level: str,
    log_format: LogFormat = "auto",
) -> structlog.stdlib.BoundLogger:
    """Route structlog and stdlib logging through one stderr handler.

    Safe to call repeatedly; each call replaces the root handler. ``auto``
    renders JSON unless stderr is a terminal.
    """
    timestamper = structlog.processors.TimeStamper(fmt="iso", utc=True)
    pre_chain: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        _add_service,
        redact_secrets,
        timestamper,
    ]

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            foreign_pre_chain=pre_chain,
            processors=[
                structlog.stdlib.ProcessorFormatter.remove_processors_meta,
                _renderer_for(log_format),
            ],
        )
    )
    logging.basicConfig(
        format="%(message)s",
        handlers=[handler],
        level=get_log_level_value(log_level),
        force=True,
    )

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            *pre_chain[:2],
            structlog.stdlib.add_logger_name,
            *pre_chain[2:],
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )
    return structlog.stdlib.get_logger(SERVICE_NAME)
