"""JSON log formatter for structured log shipping.

Emits each record as one JSON line.  Activate with
``CHERISH_STRUCTURED_LOGGING=true``; the handler also carries
:class:`~cherish_api.middleware.logging.CorrelationIdFilter` so that records
logged by the allowance and sync engines during a request share the access
record's ``correlation_id``.

Output schema per line::

    {
        "timestamp": "2026-05-15T12:34:56.789012+00:00",
        "level": "INFO",
        "logger": "cherish_engine.allowance.engine",
        "message": "Usage recorded user=... feature=suggest_activity tokens=400",
        "correlation_id": "5a0c...",   // when logged inside a request
        "user_id": "user-1",            // access records only
        "route_group": "ai",            // access records only
        "request": { ... },             // access records only
        "exc_type": "UpstreamError",    // exceptions only
        "exc_info": "Traceback ..."     // exceptions only
    }
"""

from __future__ import annotations

import json
import logging
import traceback
from datetime import UTC, datetime
from typing import Any

# Fields of an access record worth indexing on their own.
_LIFTED_REQUEST_FIELDS: tuple[str, ...] = ("user_id", "route_group", "status_code")


class JSONFormatter(logging.Formatter):
    """Format log records as single-line JSON."""

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        request_data = getattr(record, "request", None)
        correlation_id = getattr(record, "correlation_id", None)
        if not correlation_id and isinstance(request_data, dict):
            correlation_id = request_data.get("correlation_id")
        if correlation_id:
            payload["correlation_id"] = correlation_id

        if isinstance(request_data, dict):
            for key in _LIFTED_REQUEST_FIELDS:
                if key in request_data:
                    payload[key] = request_data[key]
            payload["request"] = request_data

        if record.exc_info and record.exc_info[0] is not None:
            payload["exc_type"] = record.exc_info[0].__name__
            payload["exc_info"] = "".join(traceback.format_exception(*record.exc_info))

        return json.dumps(payload, default=str, ensure_ascii=False)
