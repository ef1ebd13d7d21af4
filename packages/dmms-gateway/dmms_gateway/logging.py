"""DMMS AI Gateway — Structured logging configuration.

Uses structlog for structured, levelled logging with consistent key names
across all layers.  All log entries include:
    - timestamp (ISO-8601)
    - level
    - logger (Python logger name)
    - service (bound via context variables when a lifecycle op is running)

Service files carry gateway secrets in their environment maps.  The
``_redact_secrets`` processor masks any event key whose name looks like a
credential, and any ``KEY=value`` secret assignment embedded in text, so
no log path can echo a token unredacted.
"""

from __future__ import annotations

import logging
import re
import sys
from collections.abc import Mapping
from contextvars import ContextVar
from typing import Any

import structlog
from structlog.types import EventDict, WrappedLogger

_ctx_service: ContextVar[str | None] = ContextVar("service", default=None)
_ctx_operation: ContextVar[str | None] = ContextVar("operation", default=None)

REDACTED = "***"

_SECRET_NAME_RE = re.compile(r"(token|password|passwd|secret|api_?key|credential)", re.IGNORECASE)
_SECRET_ASSIGN_RE = re.compile(
    r"([A-Z0-9_]*(?:TOKEN|PASSWORD|PASSWD|SECRET|API_?KEY|CREDENTIAL)[A-Z0-9_]*)=(\S+)",
    re.IGNORECASE,
)


def bind_service_context(service: str | None = None, operation: str | None = None) -> None:
    """Bind lifecycle context to the current async task."""
    if service is not None:
        _ctx_service.set(service)
    if operation is not None:
        _ctx_operation.set(operation)


def clear_service_context() -> None:
    _ctx_service.set(None)
    _ctx_operation.set(None)


# ---------------------------------------------------------------------------
# Redaction helpers (also used by the diagnostics report)
# ---------------------------------------------------------------------------


def is_secret_key(name: str) -> bool:
    return bool(_SECRET_NAME_RE.search(name))


def redact_text(text: str) -> str:
    """Mask ``SECRET_NAME=value`` assignments inside free text."""
    return _SECRET_ASSIGN_RE.sub(lambda m: f"{m.group(1)}={REDACTED}", text)


def redact_environment(env: Mapping[str, str]) -> dict[str, str]:
    """Return a copy of *env* with secret-looking values masked.

    The original mapping is never altered.
    """
    return {key: (REDACTED if is_secret_key(key) and value else value) for key, value in env.items()}


def _redact_value(key: str, value: Any) -> Any:
    if isinstance(value, str):
        if is_secret_key(key) and value:
            return REDACTED
        return redact_text(value)
    if isinstance(value, Mapping):
        return {k: _redact_value(str(k), v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [redact_text(v) if isinstance(v, str) else v for v in value]
    return value


# ---------------------------------------------------------------------------
# Custom processors
# ---------------------------------------------------------------------------


def _inject_context_vars(
    _logger: WrappedLogger, _method: str, event_dict: EventDict
) -> EventDict:
    """Add ContextVar values to every log record."""
    if (service := _ctx_service.get()) is not None:
        event_dict["service"] = service
    if (operation := _ctx_operation.get()) is not None:
        event_dict["operation"] = operation
    return event_dict


def _redact_secrets(
    _logger: WrappedLogger, _method: str, event_dict: EventDict
) -> EventDict:
    for key in list(event_dict):
        if key == "event":
            if isinstance(event_dict[key], str):
                event_dict[key] = redact_text(event_dict[key])
            continue
        event_dict[key] = _redact_value(key, event_dict[key])
    return event_dict


def _drop_color_message(
    _logger: WrappedLogger, _method: str, event_dict: EventDict
) -> EventDict:
    """Remove uvicorn's ``color_message`` duplicate field."""
    event_dict.pop("color_message", None)
    return event_dict


# ---------------------------------------------------------------------------
# Setup
# ---------------------------------------------------------------------------


def configure_logging(
    level: str = "info",
    format: str = "console",
    log_file: str | None = None,
) -> None:
    """Configure structlog and stdlib logging.

    Call once at CLI or gateway startup, before any log statements.

    Args:
        level:    One of debug, info, warning, error, critical.
        format:   ``"console"`` for human-readable output, ``"json"`` for
                  machine-readable structured logs.
        log_file: Optional path to write logs to in addition to stderr.
    """
    shared_processors: list[Any] = [
        structlog.contextvars.merge_contextvars,
        _inject_context_vars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        _drop_color_message,
        _redact_secrets,
    ]

    if format == "json":
        renderer: Any = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty())

    structlog.configure(
        processors=[
            *shared_processors,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    formatter = structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=shared_processors,
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            renderer,
        ],
    )

    handlers: list[logging.Handler] = []

    # stderr keeps stdout clean for ``--json`` output.
    stream_handler = logging.StreamHandler(sys.stderr)
    stream_handler.setFormatter(formatter)
    handlers.append(stream_handler)

    if log_file:
        file_handler = logging.FileHandler(log_file)
        file_handler.setFormatter(formatter)
        handlers.append(file_handler)

    root_logger = logging.getLogger()
    root_logger.handlers = handlers
    root_logger.setLevel(level.upper())

    for noisy in ("uvicorn.access", "httpx", "asyncio", "websockets"):
        logging.getLogger(noisy).setLevel(logging.WARNING)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Return a bound structlog logger for *name*.

    Usage::

        log = get_logger(__name__)
        log.info("service_installed", label="ai.dmmsai.gateway", path=str(path))
    """
    return structlog.get_logger(name)
