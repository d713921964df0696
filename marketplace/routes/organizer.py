"""Organizer workspace: event management, uploads, analytics, attendees and the scanner.

Every route requires an approved organizer; event routes also require
that the organizer owns the event.
"""
from __future__ import annotations

from flask import Blueprint, request

from marketplace.auth import current_identity
from marketplace.models import public_event
from marketplace.routes import bool_arg, current_organizer, ok, services
from marketplace.uploads import EVENT_BANNER, LOGO, TICKET_BANNER
from marketplace.validation import parse_id, query_id, require_json, safe_int

bp = Blueprint("organizer", __name__, url_prefix="/api/organizer")


# -------------------------
# Events
# -------------------------
@bp.get("/events")
def list_events():
    organizer = current_organizer()
    status = (request.args.get("status") or "").strip() or None
    return ok({"events": services().events.list_for_organizer(organizer, status)})


@bp.post("/events")
def create_event():
    organizer = current_organizer()
    event = services().events.create(organizer, require_json())
    return ok(public_event(event), 201, "Event created.")


@bp.get("/events/<int:event_id>")
def get_event(event_id: int):
    organizer = current_organizer()
    events = services().events
    event = events.owned(organizer, event_id)
    out = events.detail(event, include_sales=True)
    out["ticket_type_sales"] = services().analytics.ticket_type_sales(event)
    return ok(out)


@bp.put("/events/<int:event_id>")
def update_event(event_id: int):
    organizer = current_organizer()
    event = services().events.update(organizer, event_id, require_json())
    return ok(public_event(event), message="Event updated.")


@bp.delete("/events/<int:event_id>")
def delete_event(event_id: int):
    organizer = current_organizer()
    services().events.delete(organizer, event_id)
    return ok(message="Event deleted.")


def _transition(event_id: int, action: str, message: str):
    organizer = current_organizer()
    svc = services()
    svc.events.owned(organizer, event_id)
    result = svc.moderation.transition_event(event_id, action, organizer_id=organizer["organizer_id"])
    return ok(result, message=message)


@bp.post("/events/<int:event_id>/submit")
def submit_event(event_id: int):
    return _transition(event_id, "submit", "Event submitted for review.")


@bp.post("/events/<int:event_id>/go-live")
def go_live(event_id: int):
    return _transition(event_id, "go_live", "Event is now live.")


@bp.post("/events/<int:event_id>/complete")
def complete_event(event_id: int):
    return _transition(event_id, "complete", "Event completed.")


# -------------------------
# Uploads
# -------------------------
@bp.post("/upload/banner")
def upload_banner():
    organizer = current_organizer()
    svc = services()
    event_id = parse_id(request.form.get("event_id"), "event_id")
    svc.events.owned(organizer, event_id)
    url = svc.uploader.upload(request.files.get("file"), EVENT_BANNER, organizer["organizer_id"], event_id)
    svc.events.set_banner(organizer, event_id, url)
    return ok({"url": url, "event_id": event_id}, 201, "Banner uploaded.")


@bp.post("/upload/ticket-banner")
def upload_ticket_banner():
    organizer = current_organizer()
    svc = services()
    event_id = parse_id(request.form.get("event_id"), "event_id")
    event = svc.events.owned(organizer, event_id)
    _, ticket_type = svc.events.ticket_type_or_404(event, request.form.get("ticket_type_id"))
    url = svc.uploader.upload(request.files.get("file"), TICKET_BANNER, organizer["organizer_id"], event_id,
                              ticket_type["ticket_type_id"])
    svc.events.set_ticket_banner(organizer, event_id, ticket_type["ticket_type_id"], url)
    return ok({"url": url, "event_id": event_id, "ticket_type_id": ticket_type["ticket_type_id"]}, 201,
              "Ticket banner uploaded.")


@bp.post("/upload/logo")
def upload_logo():
    organizer = current_organizer()
    svc = services()
    url = svc.uploader.upload(request.files.get("file"), LOGO, organizer["organizer_id"])
    svc.accounts.set_profile_image(current_identity(), "logo", url)
    return ok({"url": url}, 201, "Logo uploaded.")


# -------------------------
# Attendees and analytics
# -------------------------
@bp.get("/attendees")
def attendees():
    organizer = current_organizer()
    rows = services().scanner.attendees(
        organizer,
        query_id("event_id"),
        bool_arg("validated"),
        (request.args.get("q") or "").strip(),
    )
    return ok({"attendees": rows, "total": len(rows)})


@bp.get("/analytics/overview")
def analytics_overview():
    organizer = current_organizer()
    return ok(services().analytics.organizer_overview(organizer["organizer_id"]))


@bp.get("/analytics/events")
def analytics_events():
    organizer = current_organizer()
    return ok({"events": services().analytics.event_breakdown(organizer["organizer_id"])})


@bp.get("/analytics/genre-revenue")
def analytics_genre_revenue():
    organizer = current_organizer()
    return ok({"genres": services().analytics.genre_revenue(organizer["organizer_id"])})


@bp.get("/analytics/monthly-revenue")
def analytics_monthly_revenue():
    organizer = current_organizer()
    months = request.args.get("months")
    months = safe_int(months, "months", min_value=1) if months else None
    if months is not None:
        months = min(months, 24)
    return ok({"months": services().analytics.monthly_revenue(organizer["organizer_id"], months)})


@bp.get("/dashboard/stats")
def dashboard_stats():
    organizer = current_organizer()
    return ok(services().analytics.dashboard_stats(organizer["organizer_id"]))


# -------------------------
# Scanner
# -------------------------
@bp.get("/scanner/ticket")
def scan_lookup():
    organizer = current_organizer()
    pass_id = request.args.get("passId") or request.args.get("pass_id")
    return ok(services().scanner.lookup(organizer, pass_id))


@bp.put("/scanner/ticket")
def scan_validate():
    organizer = current_organizer()
    data = require_json()
    pass_id = data.get("passId") or data.get("pass_id")
    return ok(services().scanner.mark_validated(organizer, pass_id), message="Ticket validated successfully.")


@bp.get("/scanner/stats")
def scan_stats():
    organizer = current_organizer()
    return ok(services().scanner.stats(organizer, query_id("event_id")))


@bp.get("/scanner/validations")
def scan_history():
    organizer = current_organizer()
    limit = min(safe_int(request.args.get("limit", 20), "limit", min_value=1), 100)
    return ok({"validations": services().scanner.history(organizer, query_id("event_id"), limit)})
