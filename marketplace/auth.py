"""Session authentication (Flask-Login) and role guards."""
from __future__ import annotations

import logging
from functools import wraps
from typing import Any, Dict, Optional

from flask import Flask, jsonify
from flask_login import LoginManager, UserMixin, current_user

from marketplace.db import Store
from marketplace.errors import AuthenticationError, AuthorizationError
from marketplace.models import Role

logger = logging.getLogger("marketplace.auth")


class SessionUser(UserMixin):
    """The authenticated identity: an account plus its role discriminant."""

    def __init__(self, doc: Dict[str, Any]):
        self.doc = doc
        self.account_id = int(doc["account_id"])
        self.id = str(self.account_id)
        self.email = doc.get("email", "")
        self.role = doc.get("role_type", Role.USER.value)
        self.role_id = doc.get("role_id")


def init_auth(app: Flask, store: Store) -> LoginManager:
    login_manager = LoginManager()
    login_manager.init_app(app)
    login_manager.session_protection = "strong"

    @login_manager.user_loader
    def load_user(user_id: str) -> Optional[SessionUser]:
        try:
            doc = store.accounts.find_one({"account_id": int(user_id)})
        except ValueError:
            return None
        return SessionUser(doc) if doc else None

    @login_manager.unauthorized_handler
    def unauthorized():
        return jsonify({"success": False, "error": "Authentication required.", "code": "unauthorized"}), 401

    return login_manager


def current_identity() -> SessionUser:
    if not current_user.is_authenticated:
        raise AuthenticationError("Authentication required.")
    return current_user._get_current_object()


def require_roles(*roles: str):
    def decorator(fn):
        @wraps(fn)
        def wrapped(*args, **kwargs):
            identity = current_identity()
            if identity.role not in roles:
                logger.info("Account %s (%s) denied access to %s", identity.account_id, identity.role, fn.__name__)
                raise AuthorizationError("Forbidden.")
            return fn(*args, **kwargs)

        return wrapped

    return decorator
