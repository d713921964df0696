"""Events with embedded categories and ticket types, and their inventory counters."""
from __future__ import annotations

import logging
import re
from datetime import timedelta
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple

from pymongo import ASCENDING, DESCENDING
from pymongo.errors import PyMongoError

from marketplace import sequences
from marketplace.analytics import SalesAggregator, empty_event_sales
from marketplace.catalog import CatalogService
from marketplace.db import Store
from marketplace.errors import AuthorizationError, ConflictError, NotFoundError, ValidationError, field_error
from marketplace.moderation import ModerationService
from marketplace.models import (
    CLOSED_EVENT_STATUSES,
    PUBLIC_EVENT_STATUSES,
    EventStatus,
    OrganizerStatus,
    iter_ticket_types,
    public_catalog_item,
    public_event,
)
from marketplace.sequences import SequenceGenerator
from marketplace.util import iso_now, parse_iso, to_bson_money, to_iso
from marketplace.validation import (
    optional_text,
    parse_id,
    require_iso,
    require_text,
    safe_decimal,
    safe_int,
)

logger = logging.getLogger("marketplace.events")

SCALAR_FIELDS = ("title", "description", "venue_name", "event_policy", "banner_image")
DATE_FIELDS = ("start_date", "end_date", "start_time", "tickets_sale_start", "tickets_sale_end")
HOME_KINDS = ("live", "past", "organizers")
HOME_LIVE_LIMIT = 4
HOME_PAST_LIMIT = 16
# events an anonymous visitor may see, including ones that already ran
SHOWN_EVENT_STATUSES = PUBLIC_EVENT_STATUSES + (EventStatus.COMPLETED.value,)


def find_ticket_type(event: Dict[str, Any], ticket_type_id: int) -> Optional[Tuple[Dict[str, Any], Dict[str, Any]]]:
    for category, ticket_type in iter_ticket_types(event):
        if ticket_type.get("ticket_type_id") == ticket_type_id:
            return category, ticket_type
    return None


def total_capacity(event: Dict[str, Any]) -> int:
    return sum(int(t.get("quantity_available", 0)) for _, t in iter_ticket_types(event))


def sale_window_open(event: Dict[str, Any], now_iso: str) -> bool:
    start = event.get("tickets_sale_start")
    end = event.get("tickets_sale_end")
    now = parse_iso(now_iso)
    if start and parse_iso(start) and now < parse_iso(start):
        return False
    if end and parse_iso(end) and now > parse_iso(end):
        return False
    return True


def parse_categories(raw: Any, default_max_per_order: int) -> List[Dict[str, Any]]:
    """Build embedded categories; ids are assigned 1..n and are unique only within the event."""
    if raw is None:
        return []
    if not isinstance(raw, list):
        raise field_error("categories", "categories must be a list.")
    categories = []
    ticket_type_id = 0
    for index, c in enumerate(raw, start=1):
        if not isinstance(c, dict):
            raise field_error("categories", "Each category must be an object.")
        raw_types = c.get("ticket_types")
        if not isinstance(raw_types, list) or not raw_types:
            raise field_error("ticket_types", f"Category {index} needs at least one ticket type.")
        ticket_types = []
        for t in raw_types:
            if not isinstance(t, dict):
                raise field_error("ticket_types", "Each ticket type must be an object.")
            ticket_type_id += 1
            ticket_types.append({
                "ticket_type_id": ticket_type_id,
                "name": require_text(t, "name", "Ticket type name", max_length=100),
                "description": optional_text(t, "description", max_length=2000),
                "price": to_bson_money(safe_decimal(t.get("price"), "price", min_value=Decimal("0"), places=2)),
                "quantity_available": safe_int(t.get("quantity_available"), "quantity_available", min_value=0),
                "max_per_order": safe_int(t.get("max_per_order", default_max_per_order), "max_per_order", min_value=1),
                "banner": optional_text(t, "banner") or None,
                "pdf_template": optional_text(t, "pdf_template") or None,
            })
        categories.append({
            "category_id": index,
            "name": require_text(c, "name", "Category name", max_length=100),
            "description": optional_text(c, "description", max_length=2000),
            "category_type": optional_text(c, "category_type", max_length=100),
            "ticket_types": ticket_types,
        })
    return categories


def _check_date_order(doc: Dict[str, Any]) -> None:
    start, end = parse_iso(doc.get("start_date") or ""), parse_iso(doc.get("end_date") or "")
    if start and end and end < start:
        raise field_error("end_date", "end_date must not be before start_date.")
    sale_start = parse_iso(doc.get("tickets_sale_start") or "")
    sale_end = parse_iso(doc.get("tickets_sale_end") or "")
    if sale_start and sale_end and sale_end <= sale_start:
        raise field_error("tickets_sale_end", "tickets_sale_end must be after tickets_sale_start.")


class InventoryLedger:
    """Conditional updates of ticket-type counters.

    The event document carries ``inventory_version``; a write only lands when
    the version read is still current, so two checkouts can never both take
    the last unit.
    """

    MAX_ATTEMPTS = 8

    def __init__(self, store: Store):
        self.store = store

    def _apply(self, event_id: int, ticket_type_id: int, delta: int) -> int:
        for _ in range(self.MAX_ATTEMPTS):
            event = self.store.events.find_one(
                {"event_id": event_id}, {"categories": 1, "inventory_version": 1}
            )
            if not event:
                raise NotFoundError("Event not found.")
            found = find_ticket_type(event, ticket_type_id)
            if not found:
                raise ConflictError(f"Ticket type {ticket_type_id} is no longer available.")
            _, ticket_type = found
            remaining = int(ticket_type.get("quantity_available", 0))
            if remaining + delta < 0:
                raise ConflictError(
                    f"Insufficient tickets available for ticket type {ticket_type_id}.",
                    code="insufficient_inventory",
                    details={"ticket_type_id": ticket_type_id, "available": remaining, "requested": -delta},
                )
            ticket_type["quantity_available"] = remaining + delta
            result = self.store.events.update_one(
                {"event_id": event_id, "inventory_version": event.get("inventory_version", 0)},
                {"$set": {"categories": event["categories"], "updated_at": iso_now()},
                 "$inc": {"inventory_version": 1}},
            )
            if result.modified_count == 1:
                return remaining + delta
        raise ConflictError("Inventory changed concurrently, please retry.", code="inventory_busy")

    def reserve(self, event_id: int, ticket_type_id: int, quantity: int) -> int:
        """Decrement ``quantity`` units; fails without writing if fewer remain."""
        return self._apply(event_id, ticket_type_id, -quantity)

    def release(self, event_id: int, ticket_type_id: int, quantity: int) -> int:
        return self._apply(event_id, ticket_type_id, quantity)


class EventService:
    def __init__(self, store: Store, seq: SequenceGenerator, catalog: CatalogService,
                 analytics: SalesAggregator, moderation: ModerationService, default_max_per_order: int = 10):
        self.store = store
        self.seq = seq
        self.catalog = catalog
        self.analytics = analytics
        self.moderation = moderation
        self.default_max_per_order = default_max_per_order

    # -------------------------
    # Lookups
    # -------------------------
    def get(self, event_id: int) -> Dict[str, Any]:
        event = self.store.events.find_one({"event_id": event_id})
        if not event:
            raise NotFoundError("Event not found.")
        return event

    def owned(self, organizer: Dict[str, Any], event_id: int) -> Dict[str, Any]:
        event = self.get(event_id)
        if event.get("organizer_id") != organizer["organizer_id"]:
            raise AuthorizationError("You do not own this event.")
        return event

    # -------------------------
    # Writes
    # -------------------------
    def create(self, organizer: Dict[str, Any], data: Dict[str, Any]) -> Dict[str, Any]:
        doc: Dict[str, Any] = {
            "title": require_text(data, "title", "Title"),
            "description": optional_text(data, "description", max_length=20000),
            "start_date": require_iso(data, "start_date"),
            "end_date": require_iso(data, "end_date"),
            "venue_name": optional_text(data, "venue_name"),
            "event_policy": optional_text(data, "event_policy", max_length=20000),
            "banner_image": optional_text(data, "banner_image") or None,
        }
        for field in ("start_time", "tickets_sale_start", "tickets_sale_end"):
            doc[field] = require_iso(data, field) if data.get(field) else None
        _check_date_order(doc)
        doc["genre_id"] = self.catalog.require_genre(data["genre_id"]) if data.get("genre_id") else None
        doc["location_id"] = self.catalog.require_location(data["location_id"]) if data.get("location_id") else None
        doc["artists"] = self.catalog.resolve_artists(data.get("artists"))
        doc["categories"] = parse_categories(data.get("categories"), self.default_max_per_order)

        now = iso_now()
        doc.update({
            "event_id": self.seq.next_value(sequences.EVENT),
            "organizer_id": organizer["organizer_id"],
            "status": EventStatus.DRAFT.value,
            "inventory_version": 0,
            "created_at": now,
            "updated_at": now,
        })
        self.store.events.insert_one(doc)
        logger.info("Event %s created by organizer %s", doc["event_id"], organizer["organizer_id"])
        return doc

    def update(self, organizer: Dict[str, Any], event_id: int, data: Dict[str, Any]) -> Dict[str, Any]:
        event = self.owned(organizer, event_id)
        if event.get("status") in CLOSED_EVENT_STATUSES:
            raise ConflictError(f"Cannot edit a {event['status']} event.")

        updates: Dict[str, Any] = {}
        for field in SCALAR_FIELDS:
            if field in data:
                updates[field] = (require_text(data, field, "Title") if field == "title"
                                  else optional_text(data, field, max_length=20000) or None)
        for field in DATE_FIELDS:
            if field in data:
                required = field in ("start_date", "end_date")
                updates[field] = require_iso(data, field) if (required or data.get(field)) else None
        if "genre_id" in data:
            updates["genre_id"] = self.catalog.require_genre(data["genre_id"]) if data["genre_id"] else None
        if "location_id" in data:
            updates["location_id"] = (self.catalog.require_location(data["location_id"])
                                      if data["location_id"] else None)
        if "artists" in data:
            updates["artists"] = self.catalog.resolve_artists(data["artists"])
        _check_date_order({**event, **updates})

        query: Dict[str, Any] = {"event_id": event_id}
        change: Dict[str, Any] = {}
        if "categories" in data:
            if self.store.tickets.find_one({"event_id": event_id}, {"_id": 1}):
                raise ConflictError("Ticket categories cannot be replaced after tickets were issued.")
            updates["categories"] = parse_categories(data["categories"], self.default_max_per_order)
            query["inventory_version"] = event.get("inventory_version", 0)
            change["$inc"] = {"inventory_version": 1}

        if not updates:
            return event
        updates["updated_at"] = iso_now()
        change["$set"] = updates
        result = self.store.events.update_one(query, change)
        if result.matched_count == 0:
            raise ConflictError("Event inventory changed concurrently, please retry.")
        return self.get(event_id)

    def delete(self, organizer: Dict[str, Any], event_id: int) -> None:
        self.owned(organizer, event_id)
        if self.store.tickets.find_one({"event_id": event_id}, {"_id": 1}):
            raise ConflictError("Cannot delete an event that has issued tickets.")
        self.store.events.delete_one({"event_id": event_id})
        logger.info("Event %s deleted by organizer %s", event_id, organizer["organizer_id"])

    def set_banner(self, organizer: Dict[str, Any], event_id: int, url: str) -> None:
        self.owned(organizer, event_id)
        self.store.events.update_one({"event_id": event_id}, {"$set": {"banner_image": url, "updated_at": iso_now()}})

    def set_ticket_banner(self, organizer: Dict[str, Any], event_id: int, ticket_type_id: int, url: str) -> None:
        event = self.owned(organizer, event_id)
        found = find_ticket_type(event, ticket_type_id)
        if not found:
            raise NotFoundError("Ticket type not found.")
        found[1]["banner"] = url
        result = self.store.events.update_one(
            {"event_id": event_id, "inventory_version": event.get("inventory_version", 0)},
            {"$set": {"categories": event["categories"], "updated_at": iso_now()}, "$inc": {"inventory_version": 1}},
        )
        if result.matched_count == 0:
            raise ConflictError("Event inventory changed concurrently, please retry.")

    # -------------------------
    # Reads
    # -------------------------
    def detail(self, event: Dict[str, Any], include_sales: bool = False) -> Dict[str, Any]:
        out = public_event(event)
        organizer = self.store.organizers.find_one({"organizer_id": event.get("organizer_id")})
        out["organizer"] = (
            {
                "organizer_id": organizer["organizer_id"],
                "organization_name": organizer.get("organization_name", ""),
                "logo": organizer.get("logo"),
                "description": organizer.get("description", ""),
                "status": organizer.get("status"),
            }
            if organizer else None
        )
        location = self.catalog.location(event.get("location_id"))
        genre = self.catalog.genre(event.get("genre_id"))
        out["location"] = public_catalog_item(location) if location else None
        out["genre"] = public_catalog_item(genre) if genre else None
        out["capacity"] = total_capacity(event)
        if include_sales:
            out["sales"] = self.analytics.event_sales(event)
        return out

    def public_detail(self, event_id: int) -> Dict[str, Any]:
        event = self.get(event_id)
        if event.get("status") not in PUBLIC_EVENT_STATUSES:
            raise NotFoundError("Event not found.")
        return self.detail(event)

    def list_public(self, filters: Dict[str, Any], page: int, per_page: int) -> Dict[str, Any]:
        ands: List[Dict[str, Any]] = [{"status": {"$in": list(PUBLIC_EVENT_STATUSES)}}]
        q = (filters.get("q") or "").strip()
        if q:
            ands.append({"$or": [
                {"title": {"$regex": re.escape(q), "$options": "i"}},
                {"description": {"$regex": re.escape(q), "$options": "i"}},
                {"venue_name": {"$regex": re.escape(q), "$options": "i"}},
            ]})
        if filters.get("genre_id"):
            ands.append({"genre_id": filters["genre_id"]})
        if filters.get("location_id"):
            ands.append({"location_id": filters["location_id"]})
        if filters.get("organizer_id"):
            ands.append({"organizer_id": filters["organizer_id"]})
        for key, op in (("date_from", "$gte"), ("date_to", "$lte")):
            value = (filters.get(key) or "").strip()
            if not value:
                continue
            bound = parse_iso(value)
            if not bound:
                raise ValidationError(f"{key} must be ISO format (e.g., 2026-01-01).", details={"field": key})
            if key == "date_to" and len(value) == 10:
                # a bare date includes the whole day
                op, bound = "$lt", bound + timedelta(days=1)
            ands.append({"start_date": {op: to_iso(bound)}})

        query = {"$and": ands}
        total = self.store.events.count_documents(query)
        events = list(
            self.store.events.find(query).sort("start_date", ASCENDING).skip((page - 1) * per_page).limit(per_page)
        )
        return {
            "events": [public_event(e) for e in events],
            "pagination": {"page": page, "per_page": per_page, "total": total,
                           "total_pages": (total + per_page - 1) // per_page},
        }

    # -------------------------
    # Home page
    # -------------------------
    def home(self, kind: str, now: Optional[str] = None) -> Dict[str, Any]:
        if kind not in HOME_KINDS:
            raise field_error("type", "Invalid type parameter. Use 'live', 'past', or 'organizers'.")
        now = now or iso_now()
        if kind == "live":
            return {"events": self.home_live(now)}
        if kind == "past":
            return {"events": self.home_past(now)}
        return {"organizers": self.home_organizers()}

    def home_live(self, now: str) -> List[Dict[str, Any]]:
        """Events on sale right now, the ones closing soonest first."""
        docs = self.store.events.find({
            "status": {"$in": list(PUBLIC_EVENT_STATUSES)},
            "tickets_sale_start": {"$lt": now},
            "tickets_sale_end": {"$gt": now},
        }).sort("tickets_sale_end", ASCENDING).limit(HOME_LIVE_LIMIT)
        out = []
        for e in docs:
            genre = self.catalog.genre(e.get("genre_id"))
            location = self.catalog.location(e.get("location_id")) or {}
            out.append({
                "event_id": e["event_id"],
                "title": e.get("title", ""),
                "banner_image": e.get("banner_image"),
                "start_date": e.get("start_date", ""),
                "start_time": e.get("start_time"),
                "genre": genre["name"] if genre else "Event",
                "location": {
                    "venue": e.get("venue_name") or location.get("venue_name", ""),
                    "city": location.get("city", ""),
                },
            })
        return out

    def home_past(self, now: str) -> List[Dict[str, Any]]:
        docs = self.store.events.find({
            "status": {"$in": list(SHOWN_EVENT_STATUSES)},
            "tickets_sale_end": {"$lt": now},
        }).sort("tickets_sale_end", DESCENDING).limit(HOME_PAST_LIMIT)
        out = []
        for e in docs:
            genre = self.catalog.genre(e.get("genre_id"))
            out.append({
                "event_id": e["event_id"],
                "title": e.get("title", ""),
                "banner_image": e.get("banner_image"),
                "genre": genre["name"] if genre else "Event",
            })
        return out

    def home_organizers(self) -> List[Dict[str, Any]]:
        organizers = list(self.store.organizers.find({"status": OrganizerStatus.APPROVED.value}))
        counts = self.moderation.event_counts([o["organizer_id"] for o in organizers], SHOWN_EVENT_STATUSES)
        out = [
            {
                "organizer_id": o["organizer_id"],
                "organization_name": o.get("organization_name", ""),
                "logo": o.get("logo"),
                "event_count": counts[o["organizer_id"]],
            }
            for o in organizers
            if counts.get(o["organizer_id"], 0) > 0
        ]
        out.sort(key=lambda o: (-o["event_count"], o["organization_name"].lower()))
        return out

    def list_for_organizer(self, organizer: Dict[str, Any], status: Optional[str] = None) -> List[Dict[str, Any]]:
        query: Dict[str, Any] = {"organizer_id": organizer["organizer_id"]}
        if status:
            if status not in {s.value for s in EventStatus}:
                raise field_error("status", "Unknown event status.")
            query["status"] = status
        out = []
        for event in self.store.events.find(query).sort("created_at", DESCENDING):
            item = public_event(event, with_categories=False)
            item["capacity"] = total_capacity(event)
            try:
                item["sales"] = self.analytics.event_sales(event)
            except PyMongoError:
                logger.warning("Sales lookup failed for event %s", event["event_id"], exc_info=True)
                item["sales"] = empty_event_sales()
            out.append(item)
        return out

    def ticket_type_or_404(self, event: Dict[str, Any], ticket_type_id: Any) -> Tuple[Dict[str, Any], Dict[str, Any]]:
        found = find_ticket_type(event, parse_id(ticket_type_id, "ticket_type_id"))
        if not found:
            raise NotFoundError("Ticket type not found.")
        return found
