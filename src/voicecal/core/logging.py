"""Structured logging for the API server and voice sessions.

Every module logs through ``logging.getLogger(__name__)``; structlog's
``ProcessorFormatter`` renders those records as colored console lines
(``text``) or JSON lines (``json``).

Records carry the acting user and the active voice session, read from
ContextVars, and the current OTel trace when a span is recording.  String
fields are passed through credential redaction before rendering, so a
provider reply that echoes a token cannot leak it into the log.
"""

from __future__ import annotations

import logging
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar
from pathlib import Path
from typing import Any

import structlog
from opentelemetry import trace

from voicecal.core.redaction import redact_credentials

_user_id: ContextVar[str | None] = ContextVar("user_id", default=None)
_voice_session_id: ContextVar[str | None] = ContextVar("voice_session_id", default=None)

# Lowered to WARNING on the console; mirrored to transport.log when file
# logging is on.
TRANSPORT_LOGGERS = ("httpx", "httpcore", "websockets", "uvicorn.access", "uvicorn.error")


def set_user_context(user_id: str | None) -> None:
    """Set the acting user for the current async context."""
    _user_id.set(user_id)


def get_user_context() -> str | None:
    return _user_id.get()


@contextmanager
def voice_session_context(session_id: str | None) -> Iterator[None]:
    """Bind ``voice_session_id`` for log lines emitted inside the block."""
    token = _voice_session_id.set(session_id)
    try:
        yield
    finally:
        _voice_session_id.reset(token)


def add_session_context(_logger: Any, _method: str, event_dict: dict) -> dict:
    user_id = _user_id.get()
    if user_id is not None:
        event_dict.setdefault("user_id", user_id)
    session_id = _voice_session_id.get()
    if session_id is not None:
        event_dict.setdefault("voice_session_id", session_id)
    return event_dict


def add_trace_context(_logger: Any, _method: str, event_dict: dict) -> dict:
    ctx = trace.get_current_span().get_span_context()
    if ctx.is_valid:
        event_dict["trace_id"] = format(ctx.trace_id, "032x")
        event_dict["span_id"] = format(ctx.span_id, "016x")
    return event_dict


def redact_event(_logger: Any, _method: str, event_dict: dict) -> dict:
    """Mask token-like values in every string field, the message included."""
    for key, value in event_dict.items():
        if isinstance(value, str):
            event_dict[key] = redact_credentials(value)
    return event_dict


def _pre_chain(timestamp_fmt: str) -> list[structlog.types.Processor]:
    return [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt=timestamp_fmt, utc=True),
        add_session_context,
        add_trace_context,
        structlog.stdlib.ExtraAdder(),
    ]


def _formatter(
    renderer: structlog.types.Processor, pre_chain: list[structlog.types.Processor]
) -> structlog.stdlib.ProcessorFormatter:
    return structlog.stdlib.ProcessorFormatter(
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            # exc_info is rendered to text first so tracebacks are redacted too.
            structlog.processors.format_exc_info,
            redact_event,
            renderer,
        ],
        foreign_pre_chain=pre_chain,
    )


def _json_file_handler(path: Path) -> logging.FileHandler:
    handler = logging.FileHandler(path)
    handler.setFormatter(_formatter(structlog.processors.JSONRenderer(), _pre_chain("iso")))
    handler.setLevel(logging.DEBUG)
    return handler


def configure_logging(
    level: str = "INFO",
    fmt: str = "text",
    log_root: Path | str | None = None,
) -> None:
    """Install structured logging on the root logger.

    Parameters
    ----------
    level:
        Root log level name.
    fmt:
        ``"text"`` for colored console output, ``"json"`` for JSON lines.
    log_root:
        Optional directory.  When set, JSON copies of application logs go to
        ``voicecal.log`` and HTTP/WebSocket client logs to ``transport.log``.

    Calling this again replaces the previously installed handlers.
    """
    if fmt == "json":
        pre_chain = _pre_chain("iso")
        renderer: structlog.types.Processor = structlog.processors.JSONRenderer()
    else:
        pre_chain = _pre_chain("%H:%M:%S")
        renderer = structlog.dev.ConsoleRenderer()

    console = logging.StreamHandler(sys.stderr)
    console.setFormatter(_formatter(renderer, pre_chain))

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(console)
    root.setLevel(getattr(logging, level.upper(), logging.INFO))

    for name in TRANSPORT_LOGGERS:
        transport_logger = logging.getLogger(name)
        transport_logger.setLevel(logging.WARNING)
        transport_logger.handlers.clear()

    if log_root is not None:
        directory = Path(log_root)
        directory.mkdir(parents=True, exist_ok=True)
        root.addHandler(_json_file_handler(directory / "voicecal.log"))
        transport_file = _json_file_handler(directory / "transport.log")
        for name in TRANSPORT_LOGGERS:
            logging.getLogger(name).addHandler(transport_file)

    structlog.configure(
        processors=[*pre_chain, structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )
