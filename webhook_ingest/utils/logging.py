"""
Structured JSON logging with correlation IDs.

Every log line is one JSON object: timestamp, level, correlation_id, module,
message, plus any webhook fields passed through `extra=`.
The correlation ID is set per request by middleware and lives in a contextvar,
so dispatch tasks spawned from a request inherit it automatically.
"""
import json
import logging
import uuid
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Optional

correlation_id_ctx: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)

# Record attributes copied into the JSON line when present
EXTRA_FIELDS = (
    "webhook_event_id",
    "provider_event_id",
    "event_type",
    "source",
    "retry_count",
    "error_code",
)


def get_correlation_id() -> Optional[str]:
    return correlation_id_ctx.get()


def set_correlation_id(cid: str) -> None:
    correlation_id_ctx.set(cid)


def generate_correlation_id() -> str:
    """UUID4 hex, 32 chars."""
    return uuid.uuid4().hex


def event_log_extra(event) -> dict:
    """`extra=` payload identifying a webhook record in log lines."""
    return {
        "webhook_event_id": str(event.id),
        "provider_event_id": event.provider_event_id,
        "event_type": event.event_type,
        "source": event.source,
        "retry_count": event.retry_count,
    }


class StructuredJsonFormatter(logging.Formatter):
    """
    Formats log records as single-line JSON objects.

    {"timestamp": "...", "level": "INFO", "correlation_id": "...", "module": "...", "message": "...", ...}
    """

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ"),
            "level": record.levelname,
            "correlation_id": get_correlation_id(),
            "module": record.name,
            "message": record.getMessage(),
        }

        if record.exc_info and record.exc_info[0] is not None:
            entry["exception"] = self.formatException(record.exc_info)

        for key in EXTRA_FIELDS:
            val = getattr(record, key, None)
            if val is not None:
                entry[key] = val

        return json.dumps(entry, default=str)


def configure_structured_logging(log_level: str = "INFO") -> None:
    """
    Replace default logging with structured JSON logging on stdout.
    Call once at application startup before any log calls.
    """
    level = getattr(logging, log_level.upper(), logging.INFO)

    root_logger = logging.getLogger()
    root_logger.setLevel(level)

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    stream_handler = logging.StreamHandler()
    stream_handler.setFormatter(StructuredJsonFormatter())
    root_logger.addHandler(stream_handler)

    for noisy in ("uvicorn.access", "sqlalchemy.engine", "httpcore", "httpx", "stripe"):
        logging.getLogger(noisy).setLevel(logging.WARNING)
