"""Structured log events for database, file-system and conversion activity."""

from __future__ import annotations

import logging
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Optional


DEFAULT_EVENT_LOGGER = logging.getLogger("image_optimizer.events")

_VALUE_LIMIT = 200


def sanitize_context_value(value: Any) -> Any:
    """Return a log-friendly representation for *value*, or ``None`` to drop it."""

    if value is None or isinstance(value, (bool, int, float)):
        return value
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, Path):
        return value.as_posix()
    if isinstance(value, (bytes, bytearray)):
        return f"<{len(value)} bytes>"
    if isinstance(value, (list, tuple, set, frozenset)):
        text = ", ".join(str(item) for item in value)
    else:
        text = str(value)
    text = text.strip()
    if not text:
        return None
    if len(text) > _VALUE_LIMIT:
        return text[:_VALUE_LIMIT] + "…"
    return text


def normalize_context(values: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """Drop empty entries and sanitise the remaining values of *values*."""

    normalised: Dict[str, Any] = {}
    for key, raw_value in (values or {}).items():
        if not key:
            continue
        value = sanitize_context_value(raw_value)
        if value is None:
            continue
        normalised[str(key)] = value
    return normalised


def emit_structured_event(
    event_type: str,
    message: str,
    *,
    session_id: Optional[str] = None,
    payload: Optional[Dict[str, Any]] = None,
    duration_ms: Optional[float] = None,
    level: int = logging.DEBUG,
    logger: logging.Logger | logging.LoggerAdapter = DEFAULT_EVENT_LOGGER,
) -> None:
    """Log ``[event_type] message (key=value, ...)`` with the details attached as extras."""

    details = normalize_context(payload)
    if session_id:
        details = {"session": session_id, **details}
    if duration_ms is not None:
        details["duration_ms"] = round(float(duration_ms), 2)

    text = f"[{event_type}] {str(message).strip()}"
    if details:
        text += " (" + ", ".join(f"{key}={value}" for key, value in details.items()) + ")"
    logger.log(
        level,
        text,
        extra={"event_type": event_type, "event_details": details},
    )


def emit_db_event(action: str, **kwargs: Any) -> None:
    """Emit a ``DB_QUERY`` event for repository activity."""

    emit_structured_event("DB_QUERY", action, **kwargs)


def emit_file_event(operation: str, **kwargs: Any) -> None:
    """Emit a ``FILE_OP`` event for session file activity."""

    emit_structured_event("FILE_OP", operation, **kwargs)


def emit_item_event(state: str, label: str, **kwargs: Any) -> None:
    """Emit an ``ITEM_STATE`` event when a batch item changes state."""

    payload = {"item": label, **(kwargs.pop("payload", None) or {})}
    emit_structured_event("ITEM_STATE", state, payload=payload, **kwargs)


__all__ = [
    "DEFAULT_EVENT_LOGGER",
    "emit_db_event",
    "emit_file_event",
    "emit_item_event",
    "emit_structured_event",
    "normalize_context",
    "sanitize_context_value",
]
