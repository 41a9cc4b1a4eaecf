"""Structured logging for calbridge — request-scoped user context, JSON or text.

Uses structlog's ProcessorFormatter to upgrade every
``logging.getLogger(__name__)`` call site without touching it.

Two output formats:
- ``text``: Colored, human-readable console output (dev default)
- ``json``: Machine-parseable JSON lines (production / log aggregation)

The acting user id and OTel trace context are injected automatically, and a
final processor scrubs anything that looks like token material from the
rendered event.

When ``log_root`` is set, JSON copies are written to::

    logs/
      calbridge.log   # application logs
      http.log        # uvicorn / httpx transport logs
"""

from __future__ import annotations

import logging
import sys
from contextvars import ContextVar
from pathlib import Path

import structlog
from opentelemetry import trace

from calbridge.errors import redact_credentials

# ---------------------------------------------------------------------------
# User context (asyncio-safe via ContextVar)
# ---------------------------------------------------------------------------

_user_context: ContextVar[str | None] = ContextVar("calbridge_user_id", default=None)


def set_user_context(user_id: str | None) -> None:
    """Set the acting user id for the current async context."""
    _user_context.set(user_id)


def get_user_context() -> str | None:
    """Get the acting user id for the current async context."""
    return _user_context.get()


# ---------------------------------------------------------------------------
# Structlog processors
# ---------------------------------------------------------------------------


def add_user_context(
    logger: logging.Logger,  # noqa: ARG001
    method_name: str,  # noqa: ARG001
    event_dict: dict,
) -> dict:
    """Inject ``user_id`` from the ContextVar into the event dict."""
    user_id = _user_context.get()
    if user_id is not None:
        event_dict.setdefault("user_id", user_id)
    return event_dict


def add_otel_context(
    logger: logging.Logger,  # noqa: ARG001
    method_name: str,  # noqa: ARG001
    event_dict: dict,
) -> dict:
    """Inject ``trace_id`` and ``span_id`` from the current OTel span."""
    span = trace.get_current_span()
    ctx = span.get_span_context()
    if ctx and ctx.trace_id:
        event_dict["trace_id"] = format(ctx.trace_id, "032x")
        event_dict["span_id"] = format(ctx.span_id, "016x")
    else:
        event_dict["trace_id"] = "0" * 32
        event_dict["span_id"] = "0" * 16
    return event_dict


def redact_event(
    logger: logging.Logger,  # noqa: ARG001
    method_name: str,  # noqa: ARG001
    event_dict: dict,
) -> dict:
    """Scrub credential-looking values from string fields of the event."""
    for key, value in event_dict.items():
        if isinstance(value, str):
            event_dict[key] = redact_credentials(value)
    return event_dict


# ---------------------------------------------------------------------------
# Noise suppression
# ---------------------------------------------------------------------------

_NOISE_LOGGERS = (
    "uvicorn.access",
    "uvicorn.error",
    "httpx",
    "httpcore",
)

_APP_LOG_FILE = "calbridge.log"
_TRANSPORT_LOG_FILE = "http.log"


def _build_processors(
    time_fmt: str,
) -> list[structlog.types.Processor]:
    """Build the pre-chain processor list with the given timestamp format."""
    return [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt=time_fmt),
        add_user_context,
        add_otel_context,
        structlog.stdlib.ExtraAdder(),
    ]


def _make_file_handler(path: Path, processors: list) -> logging.FileHandler:
    """Create a JSON file handler at *path*."""
    formatter = structlog.stdlib.ProcessorFormatter(
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            redact_event,
            structlog.processors.JSONRenderer(),
        ],
        foreign_pre_chain=processors,
    )
    handler = logging.FileHandler(path)
    handler.setFormatter(formatter)
    handler.setLevel(logging.DEBUG)
    return handler


# ---------------------------------------------------------------------------
# configure_logging()
# ---------------------------------------------------------------------------


def configure_logging(
    level: str = "INFO",
    fmt: str = "text",
    log_root: Path | None = None,
) -> None:
    """Configure structured logging for the process.

    Parameters
    ----------
    level:
        Root log level (e.g. "DEBUG", "INFO", "WARNING").
    fmt:
        Output format: ``"text"`` for colored console, ``"json"`` for JSON lines.
    log_root:
        Directory for JSON log files.  Application logs go to
        ``calbridge.log`` and transport logs to ``http.log``.
    """
    if fmt == "json":
        console_processors = _build_processors(time_fmt="iso")
        renderer = structlog.processors.JSONRenderer()
    else:
        # Console: compact HH:MM:SS, no microseconds
        console_processors = _build_processors(time_fmt="%H:%M:%S")
        renderer = structlog.dev.ConsoleRenderer()

    formatter = structlog.stdlib.ProcessorFormatter(
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            redact_event,
            renderer,
        ],
        foreign_pre_chain=console_processors,
    )

    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setFormatter(formatter)

    root = logging.getLogger()
    # Remove existing handlers to avoid duplicate output on reconfiguration
    root.handlers.clear()
    root.addHandler(console_handler)
    root.setLevel(getattr(logging, level.upper(), logging.INFO))

    for name in _NOISE_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    if log_root is not None:
        log_root = Path(log_root)
        log_root.mkdir(parents=True, exist_ok=True)
        file_processors = _build_processors(time_fmt="iso")

        root.addHandler(_make_file_handler(log_root / _APP_LOG_FILE, file_processors))

        transport_handler = _make_file_handler(log_root / _TRANSPORT_LOG_FILE, file_processors)
        for name in _NOISE_LOGGERS:
            logging.getLogger(name).addHandler(transport_handler)

    structlog.configure(
        processors=[
            *console_processors,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )
