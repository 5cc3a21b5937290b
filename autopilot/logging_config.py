"""JSON logging for the autopilot service.

Every record is one JSON object per line. Conversation identifiers passed in the
``context`` extra are also lifted to the top level so log search can filter a
single chat without parsing the nested context.
"""

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any, Iterable, TextIO

CONVERSATION_FIELDS = ("channel_id", "participant_id", "message_id")
NOISY_LOGGERS = ("httpx", "httpcore", "uvicorn.access")


class JSONFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        context = getattr(record, "context", None)
        if context:
            for field in CONVERSATION_FIELDS:
                if context.get(field):
                    entry[field] = context[field]
            entry["context"] = context

        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)

        return json.dumps(entry, ensure_ascii=False, default=str)


def setup_logging(level: str = "INFO", stream: TextIO = sys.stdout, quiet: Iterable[str] = NOISY_LOGGERS) -> None:
    """Send all records to ``stream`` as JSON, replacing existing root handlers."""
    root = logging.getLogger()
    root.setLevel(level.upper())
    for existing in list(root.handlers):
        root.removeHandler(existing)

    handler = logging.StreamHandler(stream)
    handler.setFormatter(JSONFormatter())
    root.addHandler(handler)

    for name in quiet:
        logging.getLogger(name).setLevel(logging.WARNING)


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(f"autopilot.{name}")


class ConversationLoggerAdapter(logging.LoggerAdapter):
    """Stamps every record with the conversation it belongs to.

    Accepts an extra ``context=`` keyword whose keys are merged over the
    conversation identifiers.
    """

    def process(self, msg: str, kwargs: dict[str, Any]) -> tuple[str, dict[str, Any]]:
        extra = dict(kwargs.get("extra") or {})
        merged = {**self.extra, **extra.get("context", {}), **(kwargs.pop("context", None) or {})}
        extra["context"] = merged
        kwargs["extra"] = extra
        return msg, kwargs


def conversation_logger(logger: logging.Logger, channel_id: str, participant_id: str) -> ConversationLoggerAdapter:
    return ConversationLoggerAdapter(logger, {"channel_id": channel_id, "participant_id": participant_id})
