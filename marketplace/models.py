"""Status enums, the role -> profile lookup table and public serializers.

Documents are plain dicts as returned by PyMongo; these helpers are the only
place that knows how a stored document is shown to API callers.
"""
from __future__ import annotations

from enum import Enum
from typing import Any, Dict, Iterable, NamedTuple, Optional

from marketplace.util import money_out, to_decimal


class Role(str, Enum):
    USER = "user"
    ORGANIZER = "organizer"
    ADMIN = "admin"


class OrganizerStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class EventStatus(str, Enum):
    DRAFT = "draft"
    PENDING = "pending"
    APPROVED = "approved"
    LIVE = "live"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class PaymentStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    REFUNDED = "refunded"


class ProfileSource(NamedTuple):
    collection: str
    id_field: str


# An account holds only the role discriminant and role_id; this resolves the profile.
PROFILE_SOURCES: Dict[Role, ProfileSource] = {
    Role.USER: ProfileSource("users", "user_id"),
    Role.ORGANIZER: ProfileSource("organizers", "organizer_id"),
    Role.ADMIN: ProfileSource("admins", "admin_id"),
}

PUBLIC_EVENT_STATUSES = (EventStatus.APPROVED.value, EventStatus.LIVE.value)
CLOSED_EVENT_STATUSES = (EventStatus.CANCELLED.value, EventStatus.COMPLETED.value)


def _strip(doc: Dict[str, Any], *hidden: str) -> Dict[str, Any]:
    return {k: v for k, v in doc.items() if k != "_id" and k not in hidden}


def public_account(a: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "account_id": a["account_id"],
        "email": a.get("email", ""),
        "role": a.get("role_type", Role.USER.value),
        "role_id": a.get("role_id"),
        "email_verified": bool(a.get("email_verified", False)),
        "last_login": a.get("last_login"),
        "created_at": a.get("created_at", ""),
    }


def public_profile(role: str, profile: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    if not profile:
        return None
    out = _strip(profile)
    out["role"] = role
    return out


def public_ticket_type(t: Dict[str, Any], category: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    out = {
        "ticket_type_id": t["ticket_type_id"],
        "name": t.get("name", ""),
        "description": t.get("description", ""),
        "price": money_out(to_decimal(t.get("price"))),
        "quantity_available": int(t.get("quantity_available", 0)),
        "max_per_order": int(t.get("max_per_order", 10)),
        "banner": t.get("banner"),
        "pdf_template": t.get("pdf_template"),
    }
    if category is not None:
        out["category_id"] = category.get("category_id")
        out["category_name"] = category.get("name", "")
    return out


def public_category(c: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "category_id": c["category_id"],
        "name": c.get("name", ""),
        "description": c.get("description", ""),
        "category_type": c.get("category_type", ""),
        "ticket_types": [public_ticket_type(t) for t in c.get("ticket_types", [])],
    }


def public_event(e: Dict[str, Any], with_categories: bool = True) -> Dict[str, Any]:
    out = {
        "event_id": e["event_id"],
        "organizer_id": e.get("organizer_id"),
        "title": e.get("title", ""),
        "description": e.get("description", ""),
        "banner_image": e.get("banner_image"),
        "start_date": e.get("start_date", ""),
        "end_date": e.get("end_date", ""),
        "start_time": e.get("start_time"),
        "venue_name": e.get("venue_name", ""),
        "location_id": e.get("location_id"),
        "genre_id": e.get("genre_id"),
        "status": e.get("status", EventStatus.DRAFT.value),
        "tickets_sale_start": e.get("tickets_sale_start"),
        "tickets_sale_end": e.get("tickets_sale_end"),
        "event_policy": e.get("event_policy", ""),
        "artists": list(e.get("artists", [])),
        "created_at": e.get("created_at", ""),
        "updated_at": e.get("updated_at", ""),
    }
    if e.get("rejection_reason"):
        out["rejection_reason"] = e["rejection_reason"]
    if with_categories:
        out["categories"] = [public_category(c) for c in e.get("categories", [])]
    return out


def public_organizer(o: Dict[str, Any], event_count: Optional[int] = None) -> Dict[str, Any]:
    out = _strip(o)
    if event_count is not None:
        out["event_count"] = event_count
    return out


def public_order_item(item: Dict[str, Any]) -> Dict[str, Any]:
    unit_price = to_decimal(item.get("unit_price"))
    quantity = int(item.get("quantity", 0))
    return {
        "order_item_id": item["order_item_id"],
        "event_id": item["event_id"],
        "ticket_type_id": item["ticket_type_id"],
        "category": item.get("category", ""),
        "ticket_name": item.get("ticket_name", ""),
        "quantity": quantity,
        "unit_price": money_out(unit_price),
        "subtotal": money_out(unit_price * quantity),
        "attendee_info": list(item.get("attendee_info", [])),
    }


def public_order(o: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "order_id": o["order_id"],
        "user_id": o.get("user_id"),
        "order_items": [public_order_item(i) for i in o.get("order_items", [])],
        "total_amount": money_out(to_decimal(o.get("total_amount"))),
        "payment_status": o.get("payment_status", PaymentStatus.PENDING.value),
        "payment_method": o.get("payment_method"),
        "transaction_id": o.get("transaction_id"),
        "created_at": o.get("created_at", ""),
        "completed_at": o.get("completed_at"),
    }


def public_ticket(t: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "ticket_id": t["ticket_id"],
        "order_id": t.get("order_id"),
        "event_id": t.get("event_id"),
        "ticket_type_id": t.get("ticket_type_id"),
        "pass_id": t.get("pass_id"),
        "qr_code": t.get("qr_code"),
        "is_validated": bool(t.get("is_validated", False)),
        "validation_time": t.get("validation_time"),
        "attendee_name": t.get("attendee_name", ""),
        "attendee_email": t.get("attendee_email", ""),
        "attendee_phone": t.get("attendee_phone", ""),
        "ticket_document": t.get("ticket_document"),
        "created_at": t.get("created_at", ""),
    }


def public_catalog_item(doc: Dict[str, Any]) -> Dict[str, Any]:
    return _strip(doc)


def iter_ticket_types(event: Dict[str, Any]) -> Iterable[tuple]:
    """Yield (category, ticket_type) pairs of an event in display order."""
    for category in event.get("categories", []):
        for ticket_type in category.get("ticket_types", []):
            yield category, ticket_type
