"""Organizer and event status lifecycles.

Both machines are tables of ``action -> (target, legal sources)``. A refused
action raises ``ConflictError`` with a message naming why the current state
forbids it; writes are conditional on the state that was read.
"""
from __future__ import annotations

import logging
import re
from typing import Any, Dict, FrozenSet, Iterable, List, NamedTuple, Optional

from pymongo import DESCENDING

from marketplace.db import Store
from marketplace.errors import ConflictError, NotFoundError, field_error
from marketplace.models import EventStatus, OrganizerStatus, public_event, public_organizer
from marketplace.util import iso_now

logger = logging.getLogger("marketplace.moderation")

E = EventStatus
O = OrganizerStatus


class Transition(NamedTuple):
    target: str
    sources: FrozenSet[str]


EVENT_TRANSITIONS: Dict[str, Transition] = {
    "submit": Transition(E.PENDING.value, frozenset({E.DRAFT.value})),
    "approve": Transition(E.APPROVED.value, frozenset({E.DRAFT.value, E.PENDING.value})),
    "reject": Transition(E.CANCELLED.value, frozenset({E.DRAFT.value, E.PENDING.value, E.APPROVED.value})),
    "go_live": Transition(E.LIVE.value, frozenset({E.APPROVED.value})),
    "complete": Transition(E.COMPLETED.value, frozenset({E.LIVE.value})),
}

EVENT_REFUSALS: Dict[tuple, str] = {
    ("approve", E.APPROVED.value): "Event is already approved.",
    ("approve", E.LIVE.value): "Cannot approve an event that is already live.",
    ("approve", E.COMPLETED.value): "Cannot approve a completed event.",
    ("approve", E.CANCELLED.value): "Cannot approve a cancelled event.",
    ("reject", E.LIVE.value): "Cannot reject an event that is currently live.",
    ("reject", E.COMPLETED.value): "Cannot reject a completed event.",
    ("reject", E.CANCELLED.value): "Event is already cancelled.",
    ("submit", E.PENDING.value): "Event is already pending review.",
    ("go_live", E.LIVE.value): "Event is already live.",
    ("complete", E.COMPLETED.value): "Event is already completed.",
}

ORGANIZER_TRANSITIONS: Dict[str, Transition] = {
    "approve": Transition(O.APPROVED.value, frozenset({O.PENDING.value})),
    "reject": Transition(O.REJECTED.value, frozenset({O.PENDING.value, O.APPROVED.value})),
}

ORGANIZER_REFUSALS: Dict[tuple, str] = {
    ("approve", O.APPROVED.value): "Organizer is already approved.",
    ("approve", O.REJECTED.value): "Cannot approve a rejected organizer.",
    ("reject", O.REJECTED.value): "Organizer is already rejected.",
}


def _next_state(table: Dict[str, Transition], refusals: Dict[tuple, str], kind: str,
                current: str, action: str) -> str:
    transition = table[action]
    if current in transition.sources:
        return transition.target
    message = refusals.get((action, current)) or f"Cannot {action.replace('_', ' ')} a {current} {kind}."
    code = "already_in_state" if current == transition.target else "invalid_transition"
    raise ConflictError(message, code=code, details={"status": current, "action": action})


def next_event_status(current: str, action: str) -> str:
    return _next_state(EVENT_TRANSITIONS, EVENT_REFUSALS, "event", current, action)


def next_organizer_status(current: str, action: str) -> str:
    return _next_state(ORGANIZER_TRANSITIONS, ORGANIZER_REFUSALS, "organizer", current, action)


def _clean_reason(reason: Any) -> Optional[str]:
    if reason is None:
        return None
    if not isinstance(reason, str):
        raise field_error("reason", "reason must be a string.")
    reason = reason.strip()
    if len(reason) > 2000:
        raise field_error("reason", "reason must be at most 2000 characters.")
    return reason or None


class ModerationService:
    def __init__(self, store: Store):
        self.store = store

    # -------------------------
    # Events
    # -------------------------
    def transition_event(self, event_id: int, action: str, reason: Any = None,
                         organizer_id: Optional[int] = None) -> Dict[str, Any]:
        reason = _clean_reason(reason)
        query: Dict[str, Any] = {"event_id": event_id}
        if organizer_id is not None:
            query["organizer_id"] = organizer_id
        event = self.store.events.find_one(query)
        if not event:
            raise NotFoundError("Event not found.")
        current = event.get("status", E.DRAFT.value)
        target = next_event_status(current, action)

        now = iso_now()
        change: Dict[str, Any] = {"$set": {"status": target, "updated_at": now}}
        if action == "reject":
            change["$set"].update({"rejection_reason": reason, "rejected_at": now})
        elif action == "approve":
            change["$unset"] = {"rejection_reason": "", "rejected_at": ""}
        result = self.store.events.update_one({"event_id": event_id, "status": current}, change)
        if result.matched_count == 0:
            # someone else moved it first; report against the state that won
            latest = self.store.events.find_one({"event_id": event_id}) or {}
            next_event_status(latest.get("status", current), action)
            raise ConflictError("Event status changed concurrently, please retry.")
        logger.info("Event %s: %s -> %s (%s)", event_id, current, target, action)
        return {
            "event_id": event_id,
            "title": event.get("title", ""),
            "previous_status": current,
            "status": target,
            "rejection_reason": reason if action == "reject" else None,
            "updated_at": now,
        }

    def approve_event(self, event_id: int) -> Dict[str, Any]:
        return self.transition_event(event_id, "approve")

    def reject_event(self, event_id: int, reason: Any = None) -> Dict[str, Any]:
        return self.transition_event(event_id, "reject", reason)

    def list_events(self, status: Optional[str], q: str, page: int, per_page: int) -> Dict[str, Any]:
        query: Dict[str, Any] = {}
        if status:
            if status not in {s.value for s in E}:
                raise field_error("status", "Unknown event status.")
            query["status"] = status
        if q:
            query["title"] = {"$regex": re.escape(q), "$options": "i"}
        total = self.store.events.count_documents(query)
        docs = list(
            self.store.events.find(query).sort("created_at", DESCENDING).skip((page - 1) * per_page).limit(per_page)
        )
        organizer_names = {
            o["organizer_id"]: o.get("organization_name", "")
            for o in self.store.organizers.find({"organizer_id": {"$in": [d.get("organizer_id") for d in docs]}})
        }
        events = []
        for d in docs:
            item = public_event(d, with_categories=False)
            item["organization_name"] = organizer_names.get(d.get("organizer_id"), "")
            events.append(item)
        return {"events": events, "pagination": _pagination(page, per_page, total)}

    # -------------------------
    # Organizers
    # -------------------------
    def transition_organizer(self, organizer_id: int, action: str, reason: Any = None) -> Dict[str, Any]:
        reason = _clean_reason(reason)
        organizer = self.store.organizers.find_one({"organizer_id": organizer_id})
        if not organizer:
            raise NotFoundError("Organizer not found.")
        current = organizer.get("status", O.PENDING.value)
        target = next_organizer_status(current, action)

        now = iso_now()
        change: Dict[str, Any] = {"$set": {"status": target, "updated_at": now}}
        if action == "reject":
            change["$set"].update({"rejection_reason": reason, "rejected_at": now})
        result = self.store.organizers.update_one({"organizer_id": organizer_id, "status": current}, change)
        if result.matched_count == 0:
            latest = self.store.organizers.find_one({"organizer_id": organizer_id}) or {}
            next_organizer_status(latest.get("status", current), action)
            raise ConflictError("Organizer status changed concurrently, please retry.")
        logger.info("Organizer %s: %s -> %s", organizer_id, current, target)
        return {
            "organizer_id": organizer_id,
            "organization_name": organizer.get("organization_name", ""),
            "previous_status": current,
            "status": target,
            "rejection_reason": reason if action == "reject" else None,
            "updated_at": now,
        }

    def approve_organizer(self, organizer_id: int) -> Dict[str, Any]:
        return self.transition_organizer(organizer_id, "approve")

    def reject_organizer(self, organizer_id: int, reason: Any = None) -> Dict[str, Any]:
        return self.transition_organizer(organizer_id, "reject", reason)

    def event_counts(self, organizer_ids: List[int], statuses: Optional[Iterable[str]] = None) -> Dict[int, int]:
        """Recount events per organizer from the events collection."""
        match: Dict[str, Any] = {"organizer_id": {"$in": organizer_ids}}
        if statuses is not None:
            match["status"] = {"$in": list(statuses)}
        rows = self.store.events.aggregate([
            {"$match": match},
            {"$group": {"_id": "$organizer_id", "count": {"$sum": 1}}},
        ])
        return {row["_id"]: int(row["count"]) for row in rows}

    def list_organizers(self, status: Optional[str], q: str, page: int, per_page: int) -> Dict[str, Any]:
        query: Dict[str, Any] = {}
        if status:
            if status not in {s.value for s in O}:
                raise field_error("status", "Unknown organizer status.")
            query["status"] = status
        if q:
            query["organization_name"] = {"$regex": re.escape(q), "$options": "i"}
        total = self.store.organizers.count_documents(query)
        docs = list(
            self.store.organizers.find(query).sort("created_at", DESCENDING)
            .skip((page - 1) * per_page).limit(per_page)
        )
        counts = self.event_counts([d["organizer_id"] for d in docs])
        emails = self._emails([d.get("account_id") for d in docs])
        organizers = []
        for d in docs:
            item = public_organizer(d, counts.get(d["organizer_id"], 0))
            item["email"] = emails.get(d.get("account_id"), "")
            organizers.append(item)
        return {"organizers": organizers, "pagination": _pagination(page, per_page, total)}

    def organizer_detail(self, organizer_id: int) -> Dict[str, Any]:
        organizer = self.store.organizers.find_one({"organizer_id": organizer_id})
        if not organizer:
            raise NotFoundError("Organizer not found.")
        events = list(self.store.events.find({"organizer_id": organizer_id}).sort("created_at", DESCENDING))
        out = public_organizer(organizer, len(events))
        out["email"] = self._emails([organizer.get("account_id")]).get(organizer.get("account_id"), "")
        out["events"] = [public_event(e, with_categories=False) for e in events]
        return out

    def _emails(self, account_ids: List[Any]) -> Dict[int, str]:
        return {
            a["account_id"]: a.get("email", "")
            for a in self.store.accounts.find({"account_id": {"$in": account_ids}}, {"account_id": 1, "email": 1})
        }


def _pagination(page: int, per_page: int, total: int) -> Dict[str, int]:
    return {"page": page, "per_page": per_page, "total": total, "total_pages": (total + per_page - 1) // per_page}
