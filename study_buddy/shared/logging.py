"""
Structured JSON logging for Study Buddy.

Every record is one JSON object. Chat-turn context (session, conversation,
interaction, pipeline stage and LLM provider) is lifted into top-level keys
so a single turn can be followed across stages; raw user ids never reach a
handler.
"""

import hashlib
import json
import logging
import sys
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Optional

from study_buddy.shared.config import settings

# Emitted first and in this order when present on a record
CONTEXT_FIELDS = (
    "action",
    "user_id",
    "session_id",
    "conversation_id",
    "interaction_id",
    "stage",
    "provider",
)

_LOGRECORD_ATTRS = set(vars(logging.makeLogRecord({}))) | {"message", "asctime", "taskName"}


def anonymize_user_id(user_id: str) -> str:
    """Stable short hash of a user id, safe for logs."""
    return hashlib.sha256(user_id.encode()).hexdigest()[:16]


def _plain(value: Any) -> Any:
    if isinstance(value, Enum):
        # Stage is an IntEnum; its label reads better than its number
        return getattr(value, "label", value.value)
    return value


class StructuredFormatter(logging.Formatter):
    """JSON formatter that surfaces chat-turn context fields."""

    def format(self, record: logging.LogRecord) -> str:
        log_data: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        for field in CONTEXT_FIELDS:
            value = getattr(record, field, None)
            if value is None:
                continue
            if field == "user_id":
                value = anonymize_user_id(str(value))
            log_data[field] = _plain(value)

        extra = {
            key: _plain(value) for key, value in record.__dict__.items()
            if key not in _LOGRECORD_ATTRS and key not in CONTEXT_FIELDS
        }
        if extra:
            log_data["extra"] = extra

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


def setup_logging(
    log_level: Optional[str] = None,
    log_file: Optional[Path] = None
):
    """
    Setup structured logging for Study Buddy.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        log_file: Optional file path for file logging
    """
    log_level = log_level or settings.log_level
    log_file = log_file or settings.log_file

    if log_file:
        log_file.parent.mkdir(parents=True, exist_ok=True)

    formatter = StructuredFormatter()

    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, log_level.upper()))
    root_logger.handlers.clear()

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)

    if log_file:
        file_handler = logging.FileHandler(log_file, encoding="utf-8")
        file_handler.setFormatter(formatter)
        root_logger.addHandler(file_handler)

    return root_logger


def get_logger(name: str) -> logging.Logger:
    """Get a logger with the given name."""
    return logging.getLogger(name)


def log_with_context(
    logger: logging.Logger,
    level: int,
    message: str,
    user_id: Optional[str] = None,
    action: Optional[str] = None,
    session_id: Optional[str] = None,
    conversation_id: Optional[str] = None,
    interaction_id: Optional[str] = None,
    **kwargs
):
    """
    Log one chat-turn event.

    The user id is passed raw; StructuredFormatter hashes it. Any other
    keyword, such as stage or provider, becomes a structured field.
    """
    context = {
        "user_id": user_id,
        "action": action,
        "session_id": session_id,
        "conversation_id": conversation_id,
        "interaction_id": interaction_id,
    }
    extra = {key: value for key, value in context.items() if value is not None}
    extra.update(kwargs)

    logger.log(level, message, extra=extra)


# Initialize logging on import
setup_logging()
