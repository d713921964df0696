"""Admin moderation, user management and platform reporting."""
from __future__ import annotations

from flask import Blueprint, request

from marketplace.auth import current_identity, require_roles
from marketplace.models import Role, public_account, public_profile
from marketplace.routes import ok, page_limit, services
from marketplace.validation import optional_json, page_args, require_json

bp = Blueprint("admin", __name__, url_prefix="/api/admin")

admin_only = require_roles(Role.ADMIN.value)


def _status_arg():
    return (request.args.get("status") or "").strip() or None


def _search_arg():
    return (request.args.get("q") or request.args.get("search") or "").strip()


# -------------------------
# Organizers
# -------------------------
@bp.get("/organizers")
@admin_only
def list_organizers():
    page, per_page = page_args(page_limit())
    return ok(services().moderation.list_organizers(_status_arg(), _search_arg(), page, per_page))


@bp.get("/organizers/<int:organizer_id>")
@admin_only
def get_organizer(organizer_id: int):
    return ok(services().moderation.organizer_detail(organizer_id))


@bp.post("/organizers/<int:organizer_id>/approve")
@admin_only
def approve_organizer(organizer_id: int):
    return ok(services().moderation.approve_organizer(organizer_id), message="Organizer approved.")


@bp.post("/organizers/<int:organizer_id>/reject")
@admin_only
def reject_organizer(organizer_id: int):
    reason = optional_json().get("reason")
    return ok(services().moderation.reject_organizer(organizer_id, reason), message="Organizer rejected.")


# -------------------------
# Events
# -------------------------
@bp.get("/events")
@admin_only
def list_events():
    page, per_page = page_args(page_limit())
    return ok(services().moderation.list_events(_status_arg(), _search_arg(), page, per_page))


@bp.get("/events/<int:event_id>")
@admin_only
def get_event(event_id: int):
    events = services().events
    return ok(events.detail(events.get(event_id), include_sales=True))


@bp.post("/events/<int:event_id>/approve")
@admin_only
def approve_event(event_id: int):
    return ok(services().moderation.approve_event(event_id), message="Event approved.")


@bp.post("/events/<int:event_id>/reject")
@admin_only
def reject_event(event_id: int):
    reason = optional_json().get("reason")
    return ok(services().moderation.reject_event(event_id, reason), message="Event rejected.")


# -------------------------
# Users and admins
# -------------------------
@bp.get("/users")
@admin_only
def list_users():
    page, per_page = page_args(page_limit())
    return ok(services().accounts.list_users(_search_arg(), page, per_page))


@bp.delete("/users/<int:account_id>")
@admin_only
def delete_user(account_id: int):
    services().accounts.delete_account(current_identity(), account_id)
    return ok(message="Account deleted.")


@bp.post("/admins")
@admin_only
def create_admin():
    account, profile = services().accounts.create_admin(require_json())
    return ok({"account": public_account(account), "profile": public_profile(Role.ADMIN.value, profile)}, 201,
              "Admin created.")


# -------------------------
# Reporting
# -------------------------
@bp.get("/stats")
@admin_only
def platform_stats():
    analytics = services().analytics
    stats = analytics.platform_stats()
    stats["genre_revenue"] = analytics.genre_revenue()
    stats["monthly_revenue"] = analytics.monthly_revenue()
    return ok(stats)


@bp.get("/transactions")
@admin_only
def list_transactions():
    page, per_page = page_args(page_limit())
    return ok(services().orders.list_transactions(_status_arg(), page, per_page))
