"""Public event discovery."""
from __future__ import annotations

from flask import Blueprint, request

from marketplace.routes import ok, page_limit, services
from marketplace.validation import page_args, query_id

bp = Blueprint("events", __name__, url_prefix="/api")


@bp.get("/events")
def list_events():
    page, per_page = page_args(page_limit())
    filters = {
        "q": request.args.get("q", ""),
        "genre_id": query_id("genre_id"),
        "location_id": query_id("location_id"),
        "organizer_id": query_id("organizer_id"),
        "date_from": request.args.get("date_from", ""),
        "date_to": request.args.get("date_to", ""),
    }
    return ok(services().events.list_public(filters, page, per_page))


@bp.get("/events/<int:event_id>")
def get_event(event_id: int):
    return ok(services().events.public_detail(event_id))


@bp.get("/home")
def home():
    return ok(services().events.home(request.args.get("type", "")))
