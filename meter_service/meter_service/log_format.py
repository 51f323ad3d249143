"""Structured JSON logging for the metering services.

Emits each log record as a single-line JSON object so log aggregators can
index fields without regex parsing.  Enable with
``METER_SERVICE_STRUCTURED_LOGGING=true``.

Output schema per line::

    {
        "timestamp": "2026-10-01T12:34:56.789012+00:00",
        "level": "INFO",
        "logger": "meter_service.services.session_service",
        "message": "Session stopped: ...",
        "session": { ... },          // present when passed via extra={"session": ...}
        "exc_info": "Traceback ..."  // present only on exceptions
    }
"""

from __future__ import annotations

import json
import logging
import traceback
from datetime import UTC, datetime
from typing import Any

from meter_service.config import ServiceSettings


class JSONFormatter(logging.Formatter):
    """Format log records as single-line JSON."""

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        session_data = getattr(record, "session", None)
        if session_data is not None:
            payload["session"] = session_data

        if record.exc_info and record.exc_info[0] is not None:
            payload["exc_info"] = "".join(traceback.format_exception(*record.exc_info))

        return json.dumps(payload, default=str, ensure_ascii=False)


def configure_logging(settings: ServiceSettings) -> None:
    """Install root logging according to *settings*.

    With ``structured_logging`` the root handlers are replaced by a single
    ``StreamHandler`` using :class:`JSONFormatter`; otherwise a plain text
    format is used.
    """
    level = logging.getLevelName(settings.log_level.upper())
    if not isinstance(level, int):
        level = logging.INFO

    root_logger = logging.getLogger()
    if settings.structured_logging:
        root_logger.handlers.clear()
        handler = logging.StreamHandler()
        handler.setFormatter(JSONFormatter())
        root_logger.addHandler(handler)
        root_logger.setLevel(level)
    else:
        logging.basicConfig(
            level=level,
            format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        )
        root_logger.setLevel(level)
