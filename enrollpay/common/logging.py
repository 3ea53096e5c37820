"""Structured JSON logging with request/checkout context fields and redaction."""

import logging
import sys
from contextvars import ContextVar
from typing import Any

from pythonjsonlogger.json import JsonFormatter
from sqlalchemy.exc import StatementError

from enrollpay.common.config import settings


request_id_ctx: ContextVar[str] = ContextVar("request_id", default="")
checkout_id_ctx: ContextVar[str] = ContextVar("checkout_id", default="")
idempotency_key_ctx: ContextVar[str] = ContextVar("idempotency_key", default="")

SENSITIVE_KEYS = ("token", "password", "secret", "cvv", "securitycode", "cardnumber")
SENSITIVE_EXACT_KEYS = ("authorization", "card")
REDACTED = "[redacted]"


class ContextFilter(logging.Filter):
    """Inject service and correlation identifiers into every log record."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.service_name = settings.service_name
        record.request_id = request_id_ctx.get()
        record.checkout_id = checkout_id_ctx.get()
        record.idempotency_key = idempotency_key_ctx.get()
        return True


def configure_logging(level: str | None = None) -> None:
    """Send JSON lines to stdout; call once per process."""

    handler = logging.StreamHandler(sys.stdout)
    handler.addFilter(ContextFilter())
    handler.setFormatter(
        JsonFormatter(
            "%(asctime)s %(levelname)s %(name)s %(service_name)s %(request_id)s %(checkout_id)s "
            "%(idempotency_key)s %(message)s",
            rename_fields={"asctime": "timestamp", "levelname": "level", "name": "logger"},
        )
    )

    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel((level or settings.log_level).upper())
    # Uvicorn installs its own handlers; route its records through ours.
    for name in ("uvicorn", "uvicorn.error", "uvicorn.access"):
        logging.getLogger(name).handlers = []
        logging.getLogger(name).propagate = True


def _is_sensitive_key(key: str) -> bool:
    normalized = key.lower().replace("-", "").replace("_", "")
    return normalized in SENSITIVE_EXACT_KEYS or any(entry in normalized for entry in SENSITIVE_KEYS)


def sanitize_meta(value: Any, depth: int = 0) -> Any:
    """Return a copy of `value` with secret-like keys replaced by a marker."""

    if depth > 5:
        return "[truncated]"
    if isinstance(value, dict):
        return {
            key: REDACTED if _is_sensitive_key(str(key)) else sanitize_meta(item, depth + 1)
            for key, item in value.items()
        }
    if isinstance(value, (list, tuple)):
        return [sanitize_meta(item, depth + 1) for item in value]
    return value


def sanitize_error(exc: BaseException) -> dict[str, str]:
    """Summarize an exception for logs without leaking its arguments' payloads."""

    # Statement errors render their SQL and bound values; the driver error alone does not.
    source = exc.orig if isinstance(exc, StatementError) and exc.orig is not None else exc
    summary = {"name": type(exc).__name__, "message": str(source) or "Unknown error"}
    code = getattr(exc, "code", None)
    if code is not None:
        summary["code"] = str(code)
    return summary


logger = logging.getLogger("enrollpay")
