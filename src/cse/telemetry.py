"""Structured telemetry events emitted as compact JSON log lines."""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Mapping

__all__ = ["TELEMETRY_LOGGER", "emit_event", "serialise_event_value"]


TELEMETRY_LOGGER = logging.getLogger("cse.telemetry")


def serialise_event_value(value: Any) -> Any:
    """Convert telemetry payload values into JSON-friendly representations."""
    if isinstance(value, Enum):
        return serialise_event_value(value.value)
    if isinstance(value, (str, int, float, bool)) or value is None:
        return value
    if isinstance(value, Path):
        return value.as_posix()
    if isinstance(value, (list, tuple, set)):
        return [serialise_event_value(item) for item in value]
    if isinstance(value, Mapping):
        return {str(key): serialise_event_value(child) for key, child in value.items()}
    to_dict = getattr(value, "to_dict", None)
    if callable(to_dict):
        return serialise_event_value(to_dict())
    return str(value)


def emit_event(event: str, *, level: int = logging.INFO, **fields: Any) -> None:
    """Log a structured telemetry event."""
    if not TELEMETRY_LOGGER.isEnabledFor(level):
        return
    payload: dict[str, Any] = {"event": event, "timestamp": datetime.now(timezone.utc).isoformat()}
    for key, value in fields.items():
        payload[key] = serialise_event_value(value)
    try:
        message = json.dumps(payload, separators=(",", ":"), ensure_ascii=True)
    except (TypeError, ValueError):
        fallback = {key: str(value) for key, value in payload.items()}
        message = json.dumps(fallback, separators=(",", ":"), ensure_ascii=True)
    TELEMETRY_LOGGER.log(level, message)
