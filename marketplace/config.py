"""Configuration loaded from the environment.

Everything here can be overridden by passing a mapping to ``create_app``.
"""
from __future__ import annotations

import logging
import os


def _env_flag(name: str, default: str = "0") -> bool:
    return os.environ.get(name, default) == "1"


def _env_int(name: str, default: int) -> int:
    try:
        return int(os.environ.get(name, default))
    except ValueError:
        return default


class Config:
    MONGO_URI = os.environ.get("MONGO_URI", "mongodb://localhost:27017")
    MONGO_DB = os.environ.get("MONGO_DB", "event_marketplace")

    SECRET_KEY = os.environ.get("SECRET_KEY", "CHANGE_ME_IN_PRODUCTION")
    SESSION_COOKIE_SECURE = _env_flag("SESSION_COOKIE_SECURE")  # set to 1 behind HTTPS
    SESSION_COOKIE_SAMESITE = os.environ.get("SESSION_COOKIE_SAMESITE", "Lax")
    SESSION_COOKIE_HTTPONLY = True

    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO").upper()

    DEFAULT_ADMIN_EMAIL = os.environ.get("DEFAULT_ADMIN_EMAIL", "admin@example.com")
    DEFAULT_ADMIN_PASSWORD = os.environ.get("DEFAULT_ADMIN_PASSWORD", "Admin123!")
    PASSWORD_HASH_METHOD = os.environ.get("PASSWORD_HASH_METHOD", "scrypt")

    UPLOAD_FOLDER = os.environ.get("UPLOAD_FOLDER", os.path.join(os.getcwd(), "uploads"))
    UPLOAD_URL_PREFIX = os.environ.get("UPLOAD_URL_PREFIX", "/uploads")
    ALLOWED_IMAGE_EXTENSIONS = frozenset({"png", "jpg", "jpeg", "gif", "webp"})
    EVENT_BANNER_MAX_BYTES = _env_int("EVENT_BANNER_MAX_BYTES", 10 * 1024 * 1024)
    TICKET_BANNER_MAX_BYTES = _env_int("TICKET_BANNER_MAX_BYTES", 5 * 1024 * 1024)
    LOGO_MAX_BYTES = _env_int("LOGO_MAX_BYTES", 5 * 1024 * 1024)
    PROFILE_IMAGE_MAX_BYTES = _env_int("PROFILE_IMAGE_MAX_BYTES", 5 * 1024 * 1024)
    MAX_CONTENT_LENGTH = _env_int("MAX_CONTENT_LENGTH", 16 * 1024 * 1024)

    DEFAULT_MAX_PER_ORDER = _env_int("DEFAULT_MAX_PER_ORDER", 10)
    CHECKOUT_CLAIM_TIMEOUT = _env_int("CHECKOUT_CLAIM_TIMEOUT", 300)  # seconds
    ANALYTICS_DEFAULT_MONTHS = _env_int("ANALYTICS_DEFAULT_MONTHS", 6)
    PAGE_SIZE_LIMIT = 100


def configure_logging(level: str) -> logging.Logger:
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )
    return logging.getLogger("marketplace")
