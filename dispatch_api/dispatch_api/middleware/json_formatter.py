"""JSON log formatter for log aggregation.

Emits each log record as a single-line JSON object that aggregators can
index without regex parsing.  Activate by setting
``DISPATCH_STRUCTURED_LOGGING=true``; the application then replaces the
root handlers with a ``StreamHandler`` using this formatter.

Output schema per line::

    {
        "timestamp": "2026-10-20T09:00:00.123456+00:00",
        "level": "INFO",
        "logger": "dispatch_api.services.notification_scheduler",
        "message": "Job birthday finished: ...",
        "request": { ... },          // present when emitted by RequestLoggingMiddleware
        "exc_info": "Traceback ..."  // present only on exceptions
    }
"""

from __future__ import annotations

import json
import logging
import traceback
from datetime import UTC, datetime
from typing import Any

# ``extra=`` keys copied into the payload when present on a record.
_EXTRA_FIELDS: tuple[str, ...] = ("request", "job", "tenant_id")


class JSONFormatter(logging.Formatter):
    """Format log records as single-line JSON."""

    def format(self, record: logging.LogRecord) -> str:
        """Render *record* as a single JSON line."""
        payload: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        for field in _EXTRA_FIELDS:
            value = getattr(record, field, None)
            if value is not None:
                payload[field] = value

        if record.exc_info and record.exc_info[0] is not None:
            payload["exc_info"] = "".join(traceback.format_exception(*record.exc_info))

        return json.dumps(payload, default=str, ensure_ascii=False)


def configure_json_logging(level: int = logging.INFO) -> None:
    """Replace the root handlers with a single JSON ``StreamHandler``."""
    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    handler = logging.StreamHandler()
    handler.setFormatter(JSONFormatter())
    root_logger.addHandler(handler)
    root_logger.setLevel(level)
