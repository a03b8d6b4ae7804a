"""Centralized logging configuration.

Request-path log calls attach their routing context through ``extra=``
(see ``log_context``). The JSON formatter lifts those fields to the top
level of each line so they can be filtered on.
"""

import json
import logging
import sys
from datetime import datetime, timezone

from genrouter.core.config import settings

CONTEXT_FIELDS = ("request_id", "tenant_id", "provider_id", "model")


def log_context(request_id: str, tenant_id: str | None = None, provider_id: str | None = None, model: str | None = None) -> dict:
    """Build the ``extra`` mapping for a request-scoped log call. Unset fields are left out."""
    fields = {"request_id": request_id, "tenant_id": tenant_id, "provider_id": provider_id, "model": model}
    return {key: value for key, value in fields.items() if value}


class JSONFormatter(logging.Formatter):
    """Structured JSON log formatter for production."""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        for key in CONTEXT_FIELDS:
            value = getattr(record, key, None)
            if value is not None:
                log_data[key] = value
        if record.exc_info and record.exc_info[1]:
            log_data["exception"] = self.formatException(record.exc_info)
        return json.dumps(log_data, ensure_ascii=False, default=str)


def setup_logging() -> None:
    """Configure logging for the gateway process."""
    level = getattr(logging, settings.log_level.upper(), logging.INFO)

    root = logging.getLogger()
    root.setLevel(level)

    for handler in root.handlers[:]:
        root.removeHandler(handler)

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(level)

    if settings.log_json:
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(
            logging.Formatter(
                "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
                datefmt="%Y-%m-%d %H:%M:%S",
            )
        )

    root.addHandler(handler)

    # Upstream HTTP calls and usage flushes are logged by the gateway itself
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING if not settings.app_debug else level)
