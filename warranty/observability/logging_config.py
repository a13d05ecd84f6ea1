from __future__ import annotations

import json
import logging
import sys
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Dict, Iterator, Optional
from uuid import uuid4

from flask import Flask, g, has_request_context, request, session

from warranty.config import Config

# Warranty identifiers bound to whatever the current thread is working on
CONTEXT_FIELDS = ("batch_id", "claim_id", "ticket_id", "barcode_id", "attachment_id")

_bound_context: ContextVar[Optional[Dict[str, Any]]] = ContextVar("warranty_log_context", default=None)


@contextmanager
def log_context(**fields: Any) -> Iterator[None]:
    """Stamp every record logged inside the block with the given identifiers."""
    current = dict(_bound_context.get() or {})
    current.update({key: value for key, value in fields.items() if key in CONTEXT_FIELDS and value is not None})
    token = _bound_context.set(current)
    try:
        yield
    finally:
        _bound_context.reset(token)


class RequestContextFilter(logging.Filter):
    """Inject Flask request context and caller identity into log records."""

    def filter(self, record: logging.LogRecord) -> bool:  # type: ignore[override]
        if has_request_context():
            record.request_id = getattr(g, "request_id", None)
            record.path = request.path
            record.method = request.method
            record.actor_id = session.get("user_id")
            record.actor_type = session.get("actor_type")
        else:
            record.request_id = None
            record.path = None
            record.method = None
            record.actor_id = None
            record.actor_type = None
        # An explicit extra= wins over the bound context
        for name, value in (_bound_context.get() or {}).items():
            if getattr(record, name, None) is None:
                setattr(record, name, value)
        return True


class JsonFormatter(logging.Formatter):
    _EXTRA_FIELDS = CONTEXT_FIELDS

    def format(self, record: logging.LogRecord) -> str:  # type: ignore[override]
        payload: Dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "request_id": getattr(record, "request_id", None),
            "path": getattr(record, "path", None),
            "method": getattr(record, "method", None),
            "actor_id": getattr(record, "actor_id", None),
            "actor_type": getattr(record, "actor_type", None),
        }
        for name in self._EXTRA_FIELDS:
            value = getattr(record, name, None)
            if value is not None:
                payload[name] = value
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


def configure_logging(app: Flask) -> None:
    """Configure global logging once, respecting Config toggles."""

    if not Config.STRUCTURED_LOGS_ENABLED:
        app.logger.setLevel(Config.LOG_LEVEL)
        return

    root_logger = logging.getLogger()
    root_logger.setLevel(Config.LOG_LEVEL)

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JsonFormatter())
    handler.addFilter(RequestContextFilter())

    # Remove existing handlers to avoid duplicate logs when reloading
    root_logger.handlers = [handler]
    app.logger.handlers = [handler]

    app.logger.debug("Structured logging configured.")


def ensure_request_id() -> str:
    """Return the active request id, generating one if needed."""
    if getattr(g, "request_id", None):
        return g.request_id
    incoming = request.headers.get(Config.REQUEST_ID_HEADER)
    g.request_id = incoming or str(uuid4())
    return g.request_id
