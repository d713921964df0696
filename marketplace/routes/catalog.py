"""Genres, locations and artists."""
from __future__ import annotations

from flask import Blueprint, request

from marketplace.auth import current_identity, require_roles
from marketplace.models import Role
from marketplace.routes import current_organizer, ok, services
from marketplace.validation import require_json

bp = Blueprint("catalog", __name__, url_prefix="/api")


@bp.get("/genres")
def list_genres():
    return ok(services().catalog.list_genres())


@bp.post("/genres")
@require_roles(Role.ADMIN.value)
def create_genre():
    return ok(services().catalog.create_genre(require_json()), 201)


@bp.get("/locations")
def list_locations():
    return ok(services().catalog.list_locations((request.args.get("city") or "").strip()))


@bp.post("/locations")
@require_roles(Role.ADMIN.value)
def create_location():
    return ok(services().catalog.create_location(require_json()), 201)


@bp.get("/artists")
def list_artists():
    return ok(services().catalog.list_artists())


@bp.post("/artists")
@require_roles(Role.ADMIN.value, Role.ORGANIZER.value)
def create_artist():
    if current_identity().role == Role.ORGANIZER.value:
        current_organizer()
    return ok(services().catalog.create_artist(require_json()), 201)
