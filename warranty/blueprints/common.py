"""Request plumbing shared by the warranty blueprints."""
from __future__ import annotations

import logging
from datetime import datetime, timezone
from functools import wraps
from typing import Any, Dict, Optional, Tuple

from flask import Flask, g, jsonify, request, session
from werkzeug.exceptions import HTTPException

from warranty.errors import InvalidArgumentError, WarrantyError, http_status_for
from warranty.models import ActorType
from warranty.observability import increment_counter
from warranty.services.collaborators import Actor, roles_from
from warranty.time_utils import parse_iso_datetime

logger = logging.getLogger(__name__)


def current_actor() -> Optional[Actor]:
    """Build the caller identity from the session, or None when anonymous."""
    user_id = session.get("user_id")
    if user_id is None:
        return None
    try:
        actor_type = ActorType(str(session.get("actor_type", ActorType.CUSTOMER.value)).lower())
    except ValueError:
        return None
    roles = set(roles_from(session.get("roles")))
    roles.add(actor_type.value)
    return Actor(actor_id=int(user_id), actor_type=actor_type, roles=frozenset(roles))


def require_actor(f):
    """Reject anonymous callers; sets ``g.actor`` for the wrapped view."""
    @wraps(f)
    def decorated_function(*args, **kwargs):
        actor = current_actor()
        if actor is None:
            return jsonify({"error": "Not authenticated"}), 401
        g.actor = actor
        return f(*args, **kwargs)
    return decorated_function


def error_body(error: WarrantyError, code: Optional[str] = None) -> Dict[str, Any]:
    return {
        "error": error.kind,
        "message": error.message,
        "code": code or error.kind.upper(),
        "details": error.details,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "request_id": getattr(g, "request_id", None),
    }


def register_error_handlers(app: Flask) -> None:
    @app.errorhandler(WarrantyError)
    def handle_warranty_error(error: WarrantyError):
        status = http_status_for(error)
        increment_counter("warranty_errors_total", labels={"kind": error.kind})
        if status >= 500:
            logger.error("Warranty operation failed: %s", error.message)
        return jsonify(error_body(error)), status

    @app.errorhandler(HTTPException)
    def handle_http_error(error: HTTPException):
        return jsonify({
            "error": error.name.lower().replace(" ", "_"),
            "message": error.description,
            "code": f"HTTP_{error.code}",
            "request_id": getattr(g, "request_id", None),
        }), error.code

    @app.errorhandler(Exception)
    def handle_unexpected_error(error: Exception):
        # Internal detail stays in the log; the caller only gets the correlation id
        logger.exception("Unhandled error: %s", error)
        return jsonify({
            "error": "internal",
            "message": "An internal error occurred",
            "code": "INTERNAL_ERROR",
            "request_id": getattr(g, "request_id", None),
        }), 500


def json_body() -> Dict[str, Any]:
    payload = request.get_json(silent=True)
    if payload is None:
        return {}
    if not isinstance(payload, dict):
        raise InvalidArgumentError("Request body must be a JSON object")
    return payload


def int_arg(name: str, default: Optional[int] = None) -> Optional[int]:
    raw = request.args.get(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise InvalidArgumentError.for_field(name, f"{name} must be an integer", raw) from None


def bool_arg(name: str) -> Optional[bool]:
    raw = request.args.get(name)
    if raw is None or raw == "":
        return None
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def date_arg(name: str) -> Optional[datetime]:
    raw = request.args.get(name)
    try:
        return parse_iso_datetime(raw)
    except ValueError:
        raise InvalidArgumentError.for_field(name, f"{name} must be an ISO-8601 date", raw) from None


def page_args(default_size: int = 20) -> Tuple[int, int]:
    return int_arg("page", 1), int_arg("page_size", default_size)


def pagination(page: int, page_size: int, total: int) -> Dict[str, Any]:
    pages = (total + page_size - 1) // page_size if page_size else 0
    return {
        "page": page,
        "page_size": page_size,
        "total": total,
        "pages": pages,
        "has_next": page < pages,
        "has_prev": page > 1,
    }
