"""JSON-lines logging for the engagement pipeline.

Every record is one JSON object on stdout. Structured fields travel in
``extra={"context": {...}}`` and come out under the ``context`` key.
"""

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any

LOGGER_PREFIX = "engage"

# Third-party loggers that drown out pipeline events at INFO.
QUIET_LOGGERS = ("httpx", "httpcore", "uvicorn.access", "sqlalchemy.engine")


class JSONFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        context = getattr(record, "context", None)
        if context:
            entry["context"] = context
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        # UUIDs and datetimes in context are rendered with str().
        return json.dumps(entry, ensure_ascii=False, default=str)


def setup_logging(level: str = "INFO") -> None:
    """Replace root handlers with a single stdout JSON handler."""
    resolved = logging.getLevelName((level or "INFO").upper())
    if not isinstance(resolved, int):
        resolved = logging.INFO

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JSONFormatter())

    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(resolved)

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(f"{LOGGER_PREFIX}.{name}")


class ContextLogger(logging.LoggerAdapter):
    """Adapter carrying ids (tenant, message, conversation) into every record.

    Per-call fields go in ``context=``; they win over the bound ones::

        log = ContextLogger(get_logger("orchestrator"), {"tenant_id": str(ctx.tenant_id)})
        log.info("Inbound persisted", context={"message_id": str(message.id)})
    """

    def bind(self, **fields: Any) -> "ContextLogger":
        return ContextLogger(self.logger, {**self.extra, **fields})

    def process(self, msg: str, kwargs: dict[str, Any]) -> tuple[str, dict[str, Any]]:
        merged = {**self.extra, **(kwargs.pop("context", None) or {})}
        if merged:
            kwargs["extra"] = {"context": merged}
        return msg, kwargs
