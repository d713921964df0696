"""Entry scanning for organizers: pass lookup, validation and attendance figures."""
from __future__ import annotations

import logging
import re
from typing import Any, Dict, List, Optional

from pymongo import ASCENDING, DESCENDING

from marketplace.db import Store
from marketplace.errors import AuthorizationError, ConflictError, NotFoundError, field_error
from marketplace.events import find_ticket_type
from marketplace.models import public_ticket, public_ticket_type
from marketplace.util import iso_now, start_of_day

logger = logging.getLogger("marketplace.scanner")


def _normalize_pass_id(pass_id: Any) -> str:
    value = pass_id.strip().upper() if isinstance(pass_id, str) else ""
    if not value:
        raise field_error("pass_id", "pass_id is required.")
    return value


class ScannerService:
    def __init__(self, store: Store):
        self.store = store

    def _event_summary(self, event: Dict[str, Any]) -> Dict[str, Any]:
        return {
            "event_id": event["event_id"],
            "title": event.get("title", ""),
            "start_date": event.get("start_date", ""),
            "venue_name": event.get("venue_name", ""),
            "status": event.get("status"),
        }

    def _owned_event_ids(self, organizer: Dict[str, Any], event_id: Optional[int] = None) -> List[int]:
        if event_id is not None:
            event = self.store.events.find_one({"event_id": event_id}, {"event_id": 1, "organizer_id": 1})
            if not event:
                raise NotFoundError("Event not found.")
            if event.get("organizer_id") != organizer["organizer_id"]:
                raise AuthorizationError("You do not own this event.")
            return [event_id]
        return [e["event_id"] for e in
                self.store.events.find({"organizer_id": organizer["organizer_id"]}, {"event_id": 1})]

    def _owned_ticket(self, organizer: Dict[str, Any], pass_id: Any):
        ticket = self.store.tickets.find_one({"pass_id": _normalize_pass_id(pass_id)})
        if not ticket:
            raise NotFoundError("Ticket not found.")
        event = self.store.events.find_one({"event_id": ticket.get("event_id")})
        if not event or event.get("organizer_id") != organizer["organizer_id"]:
            raise AuthorizationError("You are not authorized to manage this ticket.")
        return ticket, event

    def lookup(self, organizer: Dict[str, Any], pass_id: Any) -> Dict[str, Any]:
        ticket, event = self._owned_ticket(organizer, pass_id)
        found = find_ticket_type(event, ticket.get("ticket_type_id"))
        return {
            "ticket": public_ticket(ticket),
            "event": self._event_summary(event),
            "ticket_type": public_ticket_type(found[1], found[0]) if found else None,
        }

    def mark_validated(self, organizer: Dict[str, Any], pass_id: Any) -> Dict[str, Any]:
        """Flip ``is_validated`` once; a second scan is refused and keeps the first timestamp."""
        ticket, event = self._owned_ticket(organizer, pass_id)
        now = iso_now()
        result = self.store.tickets.update_one(
            {"pass_id": ticket["pass_id"], "is_validated": False},
            {"$set": {"is_validated": True, "validation_time": now,
                      "validated_by": organizer["organizer_id"]}},
        )
        if result.matched_count == 0:
            current = self.store.tickets.find_one({"pass_id": ticket["pass_id"]})
            if not current:
                raise NotFoundError("Ticket not found.")
            raise ConflictError(
                "Ticket already validated.",
                code="already_validated",
                details={"pass_id": ticket["pass_id"], "validation_time": current.get("validation_time")},
            )
        logger.info("Ticket %s validated for event %s by organizer %s",
                    ticket["pass_id"], event["event_id"], organizer["organizer_id"])
        validated = self.store.tickets.find_one({"pass_id": ticket["pass_id"]})
        return {"ticket": public_ticket(validated), "event": self._event_summary(event)}

    def stats(self, organizer: Dict[str, Any], event_id: Optional[int] = None) -> Dict[str, Any]:
        ids = self._owned_event_ids(organizer, event_id)
        query = {"event_id": {"$in": ids}}
        total = self.store.tickets.count_documents(query)
        validated = self.store.tickets.count_documents({**query, "is_validated": True})
        today = self.store.tickets.count_documents(
            {**query, "is_validated": True, "validation_time": {"$gte": start_of_day()}}
        )
        return {
            "event_id": event_id,
            "total_tickets": total,
            "validated": validated,
            "pending": total - validated,
            "validated_today": today,
            "validation_rate": round(validated / total * 100, 2) if total else 0.0,
        }

    def history(self, organizer: Dict[str, Any], event_id: Optional[int] = None, limit: int = 20) -> List[Dict[str, Any]]:
        ids = self._owned_event_ids(organizer, event_id)
        events = {e["event_id"]: e.get("title", "") for e in
                  self.store.events.find({"event_id": {"$in": ids}}, {"event_id": 1, "title": 1})}
        cursor = (
            self.store.tickets.find({"event_id": {"$in": ids}, "is_validated": True})
            .sort("validation_time", DESCENDING)
            .limit(limit)
        )
        out = []
        for t in cursor:
            item = public_ticket(t)
            item["event_title"] = events.get(t["event_id"], "")
            out.append(item)
        return out

    def attendees(self, organizer: Dict[str, Any], event_id: Optional[int] = None,
                  validated: Optional[bool] = None, search: str = "") -> List[Dict[str, Any]]:
        ids = self._owned_event_ids(organizer, event_id)
        query: Dict[str, Any] = {"event_id": {"$in": ids}}
        if validated is not None:
            query["is_validated"] = validated
        if search:
            pattern = {"$regex": re.escape(search), "$options": "i"}
            query["$or"] = [{"attendee_name": pattern}, {"attendee_email": pattern}, {"pass_id": pattern}]
        events = {e["event_id"]: e for e in self.store.events.find({"event_id": {"$in": ids}})}
        out = []
        for t in self.store.tickets.find(query).sort([("event_id", ASCENDING), ("ticket_id", ASCENDING)]):
            event = events.get(t["event_id"], {})
            found = find_ticket_type(event, t.get("ticket_type_id"))
            item = public_ticket(t)
            item["event_title"] = event.get("title", "")
            item["ticket_type_name"] = found[1].get("name", "") if found else ""
            out.append(item)
        return out
