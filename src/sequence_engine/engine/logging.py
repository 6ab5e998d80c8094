"""Structured logging configuration.

Engine modules attach enrollment context through `extra=`, usually as
`extra=enrollment.context()`. The JSON formatter lifts the correlation keys
(tenant, sequence, enrollment, contact, worker, step) to the top level of each
line so log queries can filter on them directly; everything else is nested
under `extra`.
"""

from __future__ import annotations

import json
import logging
import sys
from datetime import UTC, datetime
from enum import Enum
from typing import Any

# Keys promoted to the top level, in output order.
CORRELATION_KEYS: tuple[str, ...] = (
    "tenant_id",
    "sequence_id",
    "enrollment_id",
    "contact_id",
    "worker_id",
    "step_index",
)

_STANDARD_RECORD_ATTRS = frozenset(
    logging.LogRecord("", logging.INFO, "", 0, "", (), None).__dict__
) | {"message", "asctime"}


def _json_default(value: object) -> object:
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    return str(value)


class JsonFormatter(logging.Formatter):
    """One JSON object per record, correlation keys first."""

    def format(self, record: logging.LogRecord) -> str:  # noqa: A003 (record)
        payload: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "thread": record.threadName,
            "message": record.getMessage(),
        }

        extra = {
            key: value
            for key, value in record.__dict__.items()
            if key not in _STANDARD_RECORD_ATTRS and not key.startswith("_")
        }
        for key in CORRELATION_KEYS:
            if extra.get(key) is not None:
                payload[key] = extra.pop(key)
        # Enrollment context names the step it sits at; report it as the step.
        if "step_index" not in payload and extra.get("current_step") is not None:
            payload["step_index"] = extra.pop("current_step")
        if extra:
            payload["extra"] = extra

        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)

        return json.dumps(payload, ensure_ascii=False, default=_json_default)


def configure_logging(level: str) -> None:
    """Route everything through one stdout handler with the JSON formatter."""

    root = logging.getLogger()
    for handler in list(root.handlers):
        root.removeHandler(handler)

    handler = logging.StreamHandler(stream=sys.stdout)
    handler.setFormatter(JsonFormatter())
    root.addHandler(handler)
    root.setLevel(level.upper())

    logging.getLogger("urllib3").setLevel(max(root.level, logging.WARNING))
    logging.getLogger("uvicorn.access").setLevel(max(root.level, logging.INFO))
