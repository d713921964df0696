"""
Event ticket marketplace
- Flask JSON API built by ``create_app``
- Flask-Login session authentication
- MongoDB via PyMongo
"""
from __future__ import annotations

import logging
import uuid
from typing import Any, Mapping, Optional

from flask import Flask, Response, jsonify, request, send_from_directory
from pymongo.database import Database
from pymongo.errors import PyMongoError
from werkzeug.exceptions import HTTPException

from marketplace.auth import init_auth
from marketplace.config import Config, configure_logging
from marketplace.db import Store, connect
from marketplace.errors import ApiError
from marketplace.services import build_services

logger = logging.getLogger("marketplace")


def create_app(config: Optional[Mapping[str, Any]] = None, database: Optional[Database] = None) -> Flask:
    app = Flask(__name__)
    app.config.from_object(Config)
    if config:
        app.config.update(config)
    configure_logging(app.config["LOG_LEVEL"])

    if database is None:
        database = connect(app.config["MONGO_URI"], app.config["MONGO_DB"])
    store = Store(database)
    store.ensure_indexes()

    services = build_services(store, app.config)
    app.extensions["marketplace"] = services
    init_auth(app, store)
    services.accounts.ensure_default_admin(app.config["DEFAULT_ADMIN_EMAIL"], app.config["DEFAULT_ADMIN_PASSWORD"])

    _register_hooks(app)
    _register_error_handlers(app)
    _register_blueprints(app)
    return app


def _register_hooks(app: Flask) -> None:
    # Attach a request id for debugging/traceability.
    @app.before_request
    def attach_request_id():
        rid = request.headers.get("X-Request-Id") or str(uuid.uuid4())
        request.environ["request_id"] = rid

    @app.after_request
    def add_security_headers(resp: Response):
        resp.headers["X-Content-Type-Options"] = "nosniff"
        resp.headers["X-Frame-Options"] = "DENY"
        resp.headers["Referrer-Policy"] = "no-referrer"
        resp.headers["Cache-Control"] = "no-store"
        resp.headers["X-Request-Id"] = request.environ.get("request_id", "")
        return resp


def _register_error_handlers(app: Flask) -> None:
    def internal_error(code: str):
        rid = request.environ.get("request_id", "")
        body = {"success": False, "error": "Internal server error.", "code": code, "request_id": rid}
        return jsonify(body), 500

    @app.errorhandler(ApiError)
    def handle_api_error(err: ApiError):
        if err.status >= 500:
            logger.error("Request failed (request_id=%s): %s", request.environ.get("request_id", ""), err)
            return internal_error(err.code)
        body = {"success": False, "error": err.message, "code": err.code}
        if err.details:
            body["details"] = err.details
        return jsonify(body), err.status

    @app.errorhandler(404)
    def handle_404(_):
        return jsonify({"success": False, "error": "Not found.", "code": "not_found"}), 404

    @app.errorhandler(405)
    def handle_405(_):
        return jsonify({"success": False, "error": "Method not allowed.", "code": "method_not_allowed"}), 405

    @app.errorhandler(HTTPException)
    def handle_http_exception(e: HTTPException):
        return jsonify({"success": False, "error": e.description, "code": e.name.lower().replace(" ", "_")}), e.code

    @app.errorhandler(PyMongoError)
    def handle_db_error(e: PyMongoError):
        logger.exception("Database error (request_id=%s): %s", request.environ.get("request_id", ""), e)
        return internal_error("database_error")

    @app.errorhandler(Exception)
    def handle_exception(e: Exception):
        logger.exception("Unhandled error (request_id=%s): %s", request.environ.get("request_id", ""), e)
        return internal_error("internal_error")


def _register_blueprints(app: Flask) -> None:
    from marketplace.routes import account, admin, catalog, events, orders, organizer

    for module in (account, catalog, events, orders, organizer, admin):
        app.register_blueprint(module.bp)

    @app.get(f"{app.config['UPLOAD_URL_PREFIX'].rstrip('/')}/<path:filename>")
    def uploaded_file(filename: str):
        return send_from_directory(app.config["UPLOAD_FOLDER"], filename)
