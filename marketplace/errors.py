"""API error taxonomy.

Services raise these; the application's error handler renders them as
``{"success": false, "error": ..., "code": ...}`` with the matching status.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Optional


@dataclass
class ApiError(Exception):
    message: str
    status: int = 400
    code: str = "bad_request"
    details: Optional[Dict[str, Any]] = None

    def __str__(self) -> str:
        return f"{self.code}: {self.message}"


@dataclass
class ValidationError(ApiError):
    status: int = 400
    code: str = "validation_error"


@dataclass
class AuthenticationError(ApiError):
    status: int = 401
    code: str = "unauthorized"


@dataclass
class AuthorizationError(ApiError):
    status: int = 403
    code: str = "forbidden"


@dataclass
class NotFoundError(ApiError):
    status: int = 404
    code: str = "not_found"


@dataclass
class ConflictError(ApiError):
    status: int = 409
    code: str = "conflict"


@dataclass
class InternalError(ApiError):
    status: int = 500
    code: str = "internal_error"


def field_error(field: str, message: str) -> ValidationError:
    return ValidationError(message, details={"field": field})
