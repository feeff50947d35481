from __future__ import annotations

import json
import logging
import sys
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional
from uuid import uuid4

from flask import Flask, g, has_request_context, request, session

from lounge.config import Config

PAYMENT_DEBUG_LOGGER = "lounge.payments.debug"

# Keys whose values never reach the payment debug log
_MASKED_KEYS = {
    "Password",
    "SecurityCredential",
    "password",
    "client_secret",
    "access_token",
    "Authorization",
}

_STANDARD_RECORD_ATTRS = set(
    logging.LogRecord("", 0, "", 0, "", (), None).__dict__.keys()
) | {"message", "asctime", "request_id", "path", "method", "user_id"}


class RequestContextFilter(logging.Filter):
    """Inject Flask request context information into log records."""

    def filter(self, record: logging.LogRecord) -> bool:  # type: ignore[override]
        if has_request_context():
            record.request_id = getattr(g, "request_id", None)
            record.path = request.path
            record.method = request.method
            record.user_id = session.get("user_id")
        else:
            record.request_id = None
            record.path = None
            record.method = None
            record.user_id = None
        return True


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:  # type: ignore[override]
        payload: Dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "request_id": getattr(record, "request_id", None),
            "path": getattr(record, "path", None),
            "method": getattr(record, "method", None),
            "user_id": getattr(record, "user_id", None),
        }
        # Anything passed through `extra=` rides along as context
        context = {
            key: value
            for key, value in record.__dict__.items()
            if key not in _STANDARD_RECORD_ATTRS and not key.startswith("_")
        }
        if context:
            payload["context"] = context
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


def mask_sensitive(data: Any) -> Any:
    """Return a copy of a provider payload with credentials replaced by ***."""
    if isinstance(data, dict):
        return {
            key: "***" if key in _MASKED_KEYS and value else mask_sensitive(value)
            for key, value in data.items()
        }
    if isinstance(data, list):
        return [mask_sensitive(item) for item in data]
    return data


def configure_logging(app: Flask) -> None:
    """Configure global logging once, respecting Config toggles."""
    configure_payment_debug_log()

    if not Config.STRUCTURED_LOGS_ENABLED:
        app.logger.setLevel(Config.LOG_LEVEL)
        return

    root_logger = logging.getLogger()
    root_logger.setLevel(Config.LOG_LEVEL)

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JsonFormatter())
    handler.addFilter(RequestContextFilter())

    # Drop existing handlers so reloads don't duplicate output
    root_logger.handlers = [handler]
    app.logger.handlers = [handler]

    app.logger.debug("Structured logging configured.")


def configure_payment_debug_log(path: Optional[str] = None) -> logging.Logger:
    """Attach a rotating JSON file handler to the payment debug logger."""
    logger = logging.getLogger(PAYMENT_DEBUG_LOGGER)
    logger.setLevel(logging.DEBUG)
    if not Config.PAYMENT_DEBUG_LOG_ENABLED:
        return logger
    if any(isinstance(h, RotatingFileHandler) for h in logger.handlers):
        return logger

    log_path = Config.PAYMENT_DEBUG_LOG if path is None else path
    Path(log_path).parent.mkdir(parents=True, exist_ok=True)
    handler = RotatingFileHandler(log_path, maxBytes=1_000_000, backupCount=3, encoding="utf-8")
    handler.setFormatter(JsonFormatter())
    handler.addFilter(RequestContextFilter())
    logger.addHandler(handler)
    return logger


def log_payment_debug(provider: str, stage: str, payload: Any, level: int = logging.DEBUG) -> None:
    logging.getLogger(PAYMENT_DEBUG_LOGGER).log(
        level,
        "%s %s",
        provider,
        stage,
        extra={"provider": provider, "stage": stage, "payload": mask_sensitive(payload)},
    )


def read_payment_debug_log(limit: int = 20, path: Optional[str] = None) -> List[Dict[str, Any]]:
    """Return the last `limit` JSON entries of the payment debug log."""
    log_path = Config.PAYMENT_DEBUG_LOG if path is None else path
    try:
        with open(log_path, "r", encoding="utf-8") as handle:
            lines: Iterable[str] = handle.readlines()[-limit:]
    except FileNotFoundError:
        return []

    entries: List[Dict[str, Any]] = []
    for line in lines:
        line = line.strip()
        if not line:
            continue
        try:
            entries.append(json.loads(line))
        except json.JSONDecodeError:
            entries.append({"message": line})
    return entries


def ensure_request_id() -> str:
    """Return the active request id, generating one if needed."""
    if getattr(g, "request_id", None):
        return g.request_id
    incoming = request.headers.get(Config.REQUEST_ID_HEADER)
    g.request_id = incoming or str(uuid4())
    return g.request_id
