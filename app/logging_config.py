"""
Structured logging configuration.

Outputs JSON lines in production (or when LOG_JSON is set) so log shippers can
index the payment identifiers, and plain text in development for readability.

Modules log through the standard library:

    logger = logging.getLogger(__name__)
    logger.info("Intent created", extra={"transaction_id": str(txn.id)})

Only whitelisted keys passed via ``extra`` are copied into the JSON object;
anything that looks like a credential is masked before it is written.
"""

import json
import logging
import re
import sys
from datetime import datetime, timezone
from typing import Any

from app.config import Settings


# Keys copied from LogRecord.__dict__ into the JSON payload when present
EXTRA_FIELDS = (
    "transaction_id",
    "refund_id",
    "job_id",
    "job_kind",
    "attempt",
    "queue",
    "event_id",
    "event_type",
    "provider",
    "provider_reference",
    "worker_id",
    "entity_type",
    "entity_id",
    "outcome",
)

_SECRET_PATTERNS = (
    # Stripe-style keys and client secrets
    re.compile(r"\b(sk|rk|pk)_(live|test)_[A-Za-z0-9]+"),
    re.compile(r"\bwhsec_[A-Za-z0-9]+"),
    re.compile(r"\b(pi|seti)_[A-Za-z0-9]+_secret_[A-Za-z0-9]+"),
)

# user:password@ in database URLs
_URL_CREDENTIALS = re.compile(r"(?<=://)([^:/@\s]+):([^@\s]+)@")


def mask_secrets(text: str) -> str:
    """Replace anything shaped like a credential with a fixed marker."""
    for pattern in _SECRET_PATTERNS:
        text = pattern.sub("***", text)
    return _URL_CREDENTIALS.sub(r"\1:***@", text)


class JSONFormatter(logging.Formatter):
    """Format log records as single-line JSON objects."""

    def format(self, record: logging.LogRecord) -> str:
        log_obj: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": mask_secrets(record.getMessage()),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }

        for key in EXTRA_FIELDS:
            value = getattr(record, key, None)
            if value is not None:
                log_obj[key] = value if isinstance(value, (int, float, bool)) else str(value)

        if record.exc_info:
            log_obj["exception"] = mask_secrets(self.formatException(record.exc_info))

        return json.dumps(log_obj, default=str)


class MaskingFormatter(logging.Formatter):
    """Plain-text formatter that still masks credentials."""

    def format(self, record: logging.LogRecord) -> str:
        return mask_secrets(super().format(record))


def configure_logging(settings: Settings) -> None:
    """Configure the root logger once per process (API or worker)."""
    root_logger = logging.getLogger()
    root_logger.setLevel(settings.LOG_LEVEL.upper())

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    console_handler = logging.StreamHandler(sys.stdout)
    if settings.is_production or settings.LOG_JSON:
        console_handler.setFormatter(JSONFormatter())
    else:
        console_handler.setFormatter(
            MaskingFormatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")
        )
    root_logger.addHandler(console_handler)

    # Set levels for noisy libraries
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    if not settings.DEBUG:
        logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
