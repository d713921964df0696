"""Blueprints of the JSON API and the helpers they share."""
from __future__ import annotations

from typing import Any, Dict, Optional, Tuple

from flask import Response, current_app, jsonify, request

from marketplace.auth import current_identity
from marketplace.errors import AuthorizationError, field_error
from marketplace.models import Role
from marketplace.services import Services


def ok(data: Any = None, status: int = 200, message: Optional[str] = None) -> Tuple[Response, int]:
    body: Dict[str, Any] = {"success": True, "data": data}
    if message:
        body["message"] = message
    return jsonify(body), status


def services() -> Services:
    return current_app.extensions["marketplace"]


def page_limit() -> int:
    return current_app.config["PAGE_SIZE_LIMIT"]


def current_organizer() -> Dict[str, Any]:
    """The caller's organizer profile; 403 unless it exists and is approved."""
    identity = current_identity()
    if identity.role != Role.ORGANIZER.value:
        raise AuthorizationError("Organizer access required.")
    return services().accounts.approved_organizer(identity)


def current_user_id() -> int:
    return services().accounts.user_profile(current_identity())["user_id"]


def bool_arg(name: str) -> Optional[bool]:
    raw = (request.args.get(name) or "").strip().lower()
    if not raw:
        return None
    if raw in ("1", "true", "yes"):
        return True
    if raw in ("0", "false", "no"):
        return False
    raise field_error(name, f"{name} must be true or false.")
