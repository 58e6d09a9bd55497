"""
Structured logging for the alert worker.

Every record is one JSON object (LOG_FORMAT=console for local runs) with
event_type, level, logger, an ISO 8601 UTC timestamp and the event context
bound by the orchestrator (owner, metric_id, entry_index, rule_id).
Values under secret-looking keys never reach the output.

No backend_kpivault imports here: every other module imports this one.
"""

from __future__ import annotations

import logging
import os
import sys
from datetime import datetime, timezone
from typing import Any

import structlog

DEFAULT_LOG_LEVEL = "INFO"
DEFAULT_LOG_FORMAT = "json"

# Field names whose values are replaced before rendering
SECRET_KEYS = frozenset(
    {
        "private_key",
        "worker_private_key",
        "worker_key",
        "x-alert-worker-key",
        "signature",
        "authorization",
    }
)
REDACTED = "***"


def _add_timestamp(logger: Any, method_name: str, event_dict: dict[str, Any]) -> dict[str, Any]:
    event_dict.setdefault("timestamp", datetime.now(timezone.utc).isoformat())
    return event_dict


def _rename_event(logger: Any, method_name: str, event_dict: dict[str, Any]) -> dict[str, Any]:
    """structlog's positional 'event' becomes event_type; message defaults to it."""
    if "event" in event_dict and "event_type" not in event_dict:
        event_dict["event_type"] = event_dict.pop("event")
    if "event_type" in event_dict:
        event_dict.setdefault("message", str(event_dict["event_type"]))
    return event_dict


def _redact_secrets(logger: Any, method_name: str, event_dict: dict[str, Any]) -> dict[str, Any]:
    for key in list(event_dict):
        if key.lower() in SECRET_KEYS and event_dict[key]:
            event_dict[key] = REDACTED
    return event_dict


def configure_logging(level: str | None = None, fmt: str | None = None) -> None:
    """
    (Re)configure structlog. Defaults come from LOG_LEVEL / LOG_FORMAT.

    Runs once on import; call again to switch level or renderer at runtime.
    """
    level_name = (level or os.getenv("LOG_LEVEL") or DEFAULT_LOG_LEVEL).upper()
    level_value = getattr(logging, level_name, logging.INFO)
    fmt = (fmt or os.getenv("LOG_FORMAT") or DEFAULT_LOG_FORMAT).strip().lower()

    renderer: Any
    if fmt == "console":
        renderer = structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty())
    else:
        renderer = structlog.processors.JSONRenderer()

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.format_exc_info,
            _add_timestamp,
            _redact_secrets,
            _rename_event,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level_value),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=sys.stdout),
        cache_logger_on_first_use=False,
    )


if not structlog.is_configured():
    configure_logging()


def get_logger(name: str) -> structlog.BoundLogger:
    """
    Module logger; the event type is the first argument:

        logger = get_logger(__name__)
        logger.info("alert_triggered", rule_id="r-1")
    """
    return structlog.get_logger(name).bind(logger=name)


def bind_owner(owner: str, name: str = "backend_kpivault", **context: Any) -> structlog.BoundLogger:
    """Logger carrying owner (plus metric_id / entry_index etc.) on every record of one event."""
    return get_logger(name).bind(owner=owner, **context)
