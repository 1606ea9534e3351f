"""Structured logging for calsync.

Uses structlog's ProcessorFormatter so every existing
``logging.getLogger(__name__)`` call site is rendered through structlog.

Two output formats:
- ``text``: colored, human-readable console output (default)
- ``json``: machine-parseable JSON lines

The provider name is injected into every record from a ContextVar set by
:func:`set_provider_context`. Credential values are redacted from rendered
messages before they leave the process.
"""

from __future__ import annotations

import logging
import sys
from contextvars import ContextVar

import structlog

from calsync.errors import redact_credential_values

_provider_context: ContextVar[str | None] = ContextVar("calsync_provider", default=None)

_NOISE_LOGGERS = (
    "httpx",
    "httpcore",
)


def set_provider_context(name: str | None) -> None:
    """Set the provider name for the current async context."""
    _provider_context.set(name)


def add_provider_context(
    logger: logging.Logger,  # noqa: ARG001
    method_name: str,  # noqa: ARG001
    event_dict: dict,
) -> dict:
    """Inject ``provider`` from the ContextVar unless the record already has one."""
    event_dict.setdefault("provider", _provider_context.get())
    return event_dict


def redact_credentials(
    logger: logging.Logger,  # noqa: ARG001
    method_name: str,  # noqa: ARG001
    event_dict: dict,
) -> dict:
    """Scrub token and secret values from the rendered event message."""
    event = event_dict.get("event")
    if isinstance(event, str):
        event_dict["event"] = redact_credential_values(event)
    return event_dict


def _build_processors(time_fmt: str) -> list[structlog.types.Processor]:
    return [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt=time_fmt),
        add_provider_context,
        structlog.stdlib.ExtraAdder(),
        redact_credentials,
    ]


def configure_logging(level: str = "INFO", fmt: str = "text") -> None:
    """Configure structured logging for the process.

    Parameters
    ----------
    level:
        Root log level (e.g. "DEBUG", "INFO", "WARNING").
    fmt:
        ``"text"`` for colored console output, ``"json"`` for JSON lines.
    """
    if fmt == "json":
        processors = _build_processors(time_fmt="iso")
        renderer: structlog.types.Processor = structlog.processors.JSONRenderer()
    else:
        processors = _build_processors(time_fmt="%H:%M:%S")
        renderer = structlog.dev.ConsoleRenderer()

    formatter = structlog.stdlib.ProcessorFormatter(
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            renderer,
        ],
        foreign_pre_chain=processors,
    )

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(formatter)

    root = logging.getLogger()
    # Remove existing handlers to avoid duplicate output on reconfiguration
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(getattr(logging, level.upper(), logging.INFO))

    for name in _NOISE_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    structlog.configure(
        processors=[
            *processors,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )
