"""
Structured run events.

Every decision and external call of a rotation run is logged as a single
record of the form ``event=<name> key=value ...`` so that console and syslog
output can be grepped or parsed without a separate event store.
"""
from __future__ import annotations

import logging
from enum import Enum
from typing import Any, Dict


LOGGER_NAME = "backup_rotation"

logger = logging.getLogger(LOGGER_NAME)


def _format_value(value: Any) -> str:
    if isinstance(value, float):
        text = f"{value:.2f}"
    elif isinstance(value, Enum):
        text = str(value.value)
    else:
        text = str(value)
    if not text or any(char.isspace() for char in text) or '"' in text:
        escaped = text.replace('"', '\\"')
        return f'"{escaped}"'
    return text


def format_fields(event: str, fields: Dict[str, Any]) -> str:
    parts = [f"event={event}"]
    for key, value in fields.items():
        if value is None:
            continue
        parts.append(f"{key}={_format_value(value)}")
    return " ".join(parts)


def log_event(level: int, event: str, **fields: Any) -> None:
    logger.log(level, "%s", format_fields(event, fields))
