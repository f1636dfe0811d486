"""Logging setup for the PlanTracker process.

Application modules log through ``logging.getLogger(__name__)`` with
%-style messages. ``configure_logging`` installs a structlog
``ProcessorFormatter`` on the root logger, so those records come out as
colored console lines (``fmt="text"``) or JSON lines (``fmt="json"``).

Each record carries the id of the HTTP request being served and the ids of
the active OTel span, if any.

With ``log_root`` set, JSON copies are also written to::

    {log_root}/app/{name}.log    everything that reaches the root logger
    {log_root}/http/{name}.log   uvicorn and HTTP client records only
"""

from __future__ import annotations

import logging
import sys
from contextvars import ContextVar, Token
from pathlib import Path

import structlog
from opentelemetry import trace

_request_id: ContextVar[str | None] = ContextVar("request_id", default=None)


def set_request_id(request_id: str | None) -> Token[str | None]:
    return _request_id.set(request_id)


def reset_request_id(token: Token[str | None]) -> None:
    _request_id.reset(token)


def get_request_id() -> str | None:
    return _request_id.get()


def add_request_context(
    logger: logging.Logger,  # noqa: ARG001
    method_name: str,  # noqa: ARG001
    event_dict: dict,
) -> dict:
    event_dict["request_id"] = _request_id.get()
    return event_dict


def add_otel_context(
    logger: logging.Logger,  # noqa: ARG001
    method_name: str,  # noqa: ARG001
    event_dict: dict,
) -> dict:
    """Add hex ``trace_id``/``span_id``; all zeros outside a recording span."""
    span_context = trace.get_current_span().get_span_context()
    trace_id = span_context.trace_id if span_context else 0
    span_id = span_context.span_id if trace_id else 0
    event_dict["trace_id"] = format(trace_id, "032x")
    event_dict["span_id"] = format(span_id, "016x")
    return event_dict


# Third-party loggers held at WARNING on the console and routed to the http log.
_NOISE_LOGGERS = (
    "uvicorn.access",
    "uvicorn.error",
    "httpx",
    "httpcore",
)

_APP_LOG_DIR = "app"
_HTTP_LOG_DIR = "http"


def _pre_chain(timestamp_fmt: str) -> list[structlog.types.Processor]:
    return [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt=timestamp_fmt),
        add_request_context,
        add_otel_context,
        structlog.stdlib.ExtraAdder(),
    ]


def _formatter(
    renderer: structlog.types.Processor, pre_chain: list[structlog.types.Processor]
) -> structlog.stdlib.ProcessorFormatter:
    return structlog.stdlib.ProcessorFormatter(
        processors=[structlog.stdlib.ProcessorFormatter.remove_processors_meta, renderer],
        foreign_pre_chain=pre_chain,
    )


def _json_file_handler(path: Path) -> logging.FileHandler:
    path.parent.mkdir(parents=True, exist_ok=True)
    handler = logging.FileHandler(path)
    handler.setFormatter(_formatter(structlog.processors.JSONRenderer(), _pre_chain("iso")))
    handler.setLevel(logging.DEBUG)
    return handler


def configure_logging(
    level: str = "INFO",
    fmt: str = "text",
    log_root: Path | str | None = None,
    name: str = "plantracker",
) -> None:
    """Install console (and optionally file) handlers on the root logger.

    Calling it again replaces the previous console setup. ``level`` is a
    standard level name; unknown names fall back to INFO. ``name`` is the
    file stem used under ``log_root``.
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

    for noisy in _NOISE_LOGGERS:
        logging.getLogger(noisy).setLevel(logging.WARNING)

    if log_root is not None:
        log_root = Path(log_root)
        root.addHandler(_json_file_handler(log_root / _APP_LOG_DIR / f"{name}.log"))
        http_handler = _json_file_handler(log_root / _HTTP_LOG_DIR / f"{name}.log")
        for noisy in _NOISE_LOGGERS:
            logging.getLogger(noisy).addHandler(http_handler)

    structlog.configure(
        processors=[*pre_chain, structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )
