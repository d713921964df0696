"""Input coercion and validation for JSON payloads and query strings."""
from __future__ import annotations

import re
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Optional, Tuple

from flask import request

from marketplace.errors import ApiError, field_error
from marketplace.util import parse_iso, to_iso

EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
SPECIAL_CHAR_RE = re.compile(r"[!@#$%^&*(),.?\":{}|<>]")


def require_json() -> Dict[str, Any]:
    if not request.is_json:
        raise ApiError("Request must be JSON.", 415, "unsupported_media_type")
    data = request.get_json(silent=True)
    if data is None:
        raise ApiError("Invalid JSON payload.", 400, "invalid_json")
    if not isinstance(data, dict):
        raise ApiError("JSON body must be an object.", 400, "invalid_json")
    return data


def optional_json() -> Dict[str, Any]:
    data = request.get_json(silent=True)
    return data if isinstance(data, dict) else {}


def safe_int(value: Any, field: str, min_value: Optional[int] = None) -> int:
    if isinstance(value, bool):
        raise field_error(field, f"{field} must be an integer.")
    try:
        n = int(value)
    except (TypeError, ValueError):
        raise field_error(field, f"{field} must be an integer.")
    if min_value is not None and n < min_value:
        raise field_error(field, f"{field} must be >= {min_value}.")
    return n


def safe_decimal(value: Any, field: str, min_value: Optional[Decimal] = None,
                 places: Optional[int] = None) -> Decimal:
    if isinstance(value, bool) or value is None:
        raise field_error(field, f"{field} must be a number.")
    try:
        n = Decimal(str(value))
    except InvalidOperation:
        raise field_error(field, f"{field} must be a number.")
    if not n.is_finite():
        raise field_error(field, f"{field} must be a number.")
    if min_value is not None and n < min_value:
        raise field_error(field, f"{field} must be >= {min_value}.")
    if places is not None and n.as_tuple().exponent < -places:
        raise field_error(field, f"{field} must have at most {places} decimal places.")
    return n


def parse_id(value: Any, field: str = "id") -> int:
    """Numeric entity ids are positive integers."""
    try:
        n = int(value)
    except (TypeError, ValueError):
        raise field_error(field, f"Invalid {field}. Must be a positive number.")
    if n <= 0:
        raise field_error(field, f"Invalid {field}. Must be a positive number.")
    return n


def require_text(data: Dict[str, Any], field: str, label: Optional[str] = None, max_length: int = 255) -> str:
    value = (data.get(field) or "")
    value = value.strip() if isinstance(value, str) else ""
    if not value:
        raise field_error(field, f"{label or field} is required.")
    if len(value) > max_length:
        raise field_error(field, f"{label or field} must be at most {max_length} characters.")
    return value


def optional_text(data: Dict[str, Any], field: str, max_length: int = 255) -> str:
    value = data.get(field)
    if value is None:
        return ""
    if not isinstance(value, str):
        raise field_error(field, f"{field} must be a string.")
    value = value.strip()
    if len(value) > max_length:
        raise field_error(field, f"{field} must be at most {max_length} characters.")
    return value


def require_iso(data: Dict[str, Any], field: str) -> str:
    """Return the field as a UTC ISO 8601 string so stored dates compare correctly."""
    value = (data.get(field) or "")
    parsed = parse_iso(value) if isinstance(value, str) else None
    if parsed is None:
        raise field_error(field, f"{field} must be ISO format (e.g., 2026-01-01T10:00:00+00:00).")
    return to_iso(parsed)


def validate_email(email: str) -> str:
    email = (email or "").strip().lower() if isinstance(email, str) else ""
    if not EMAIL_RE.match(email):
        raise field_error("email", "A valid email is required.")
    return email


def validate_password(pw: str) -> str:
    pw = pw if isinstance(pw, str) else ""
    if len(pw) < 6:
        raise field_error("password", "Password must be at least 6 characters.")
    return pw


def validate_new_password(pw: str) -> str:
    pw = pw if isinstance(pw, str) else ""
    if len(pw) < 8:
        raise field_error("new_password", "New password must be at least 8 characters long.")
    if not re.search(r"\d", pw) or not SPECIAL_CHAR_RE.search(pw):
        raise field_error(
            "new_password",
            "Password must contain at least one number and one special character.",
        )
    return pw


def page_args(max_per_page: int = 100) -> Tuple[int, int]:
    page = safe_int(request.args.get("page", 1), "page", min_value=1)
    per_page = safe_int(request.args.get("per_page", 20), "per_page", min_value=1)
    return page, min(per_page, max_per_page)


def query_id(name: str, required: bool = False) -> Optional[int]:
    raw = (request.args.get(name) or "").strip()
    if not raw:
        if required:
            raise field_error(name, f"{name} is required.")
        return None
    return parse_id(raw, name)
