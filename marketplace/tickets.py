"""Ticket issuance for completed orders, ticket listings and QR rendering."""
from __future__ import annotations

import logging
import secrets
import string
from io import BytesIO
from typing import Any, Dict, List, Optional

import qrcode
from pymongo import ASCENDING
from pymongo.errors import DuplicateKeyError

from marketplace import sequences
from marketplace.db import Store
from marketplace.errors import ConflictError, NotFoundError
from marketplace.events import find_ticket_type
from marketplace.models import PaymentStatus, public_ticket
from marketplace.sequences import SequenceGenerator
from marketplace.util import iso_now

logger = logging.getLogger("marketplace.tickets")

PASS_ALPHABET = string.ascii_uppercase + string.digits
PASS_LENGTH = 12
PASS_ATTEMPTS = 5


def new_pass_id() -> str:
    return "".join(secrets.choice(PASS_ALPHABET) for _ in range(PASS_LENGTH))


def qr_payload(event_id: int, ticket_id: int, pass_id: str) -> str:
    return f"{event_id}:{ticket_id}:{pass_id}"


def render_qr_png(payload: str) -> bytes:
    qr = qrcode.QRCode(version=1, box_size=10, border=4)
    qr.add_data(payload)
    qr.make(fit=True)
    img = qr.make_image(fill_color="black", back_color="white")
    buffered = BytesIO()
    img.save(buffered, format="PNG")
    return buffered.getvalue()


class TicketIssuer:
    def __init__(self, store: Store, seq: SequenceGenerator):
        self.store = store
        self.seq = seq

    def issue_for_order(self, order: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Write one ticket per purchased unit.

        Calling this twice for the same order returns the existing tickets.
        If any insert fails, the tickets written so far are removed before
        the error propagates.
        """
        order_id = order["order_id"]
        existing = list(self.store.tickets.find({"order_id": order_id}).sort("ticket_id", ASCENDING))
        if existing:
            return existing

        issued: List[Dict[str, Any]] = []
        try:
            for item in order.get("order_items", []):
                attendees = list(item.get("attendee_info", []))
                for unit in range(int(item.get("quantity", 0))):
                    attendee = attendees[unit] if unit < len(attendees) else {}
                    issued.append(self._issue_one(order_id, item, attendee))
        except Exception:
            logger.exception("Ticket issuance failed for order %s; removing %d partial tickets",
                             order_id, len(issued))
            self.store.tickets.delete_many({"order_id": order_id})
            raise
        logger.info("Issued %d tickets for order %s", len(issued), order_id)
        return issued

    def _issue_one(self, order_id: int, item: Dict[str, Any], attendee: Dict[str, Any]) -> Dict[str, Any]:
        ticket_id = self.seq.next_value(sequences.TICKET)
        for _ in range(PASS_ATTEMPTS):
            pass_id = new_pass_id()
            doc = {
                "ticket_id": ticket_id,
                "order_id": order_id,
                "event_id": item["event_id"],
                "ticket_type_id": item["ticket_type_id"],
                "pass_id": pass_id,
                "qr_code": qr_payload(item["event_id"], ticket_id, pass_id),
                "is_validated": False,
                "validation_time": None,
                "attendee_name": attendee.get("name", ""),
                "attendee_email": attendee.get("email", ""),
                "attendee_phone": attendee.get("phone", ""),
                "ticket_document": f"/api/tickets/{pass_id}/qr",
                "created_at": iso_now(),
            }
            try:
                self.store.tickets.insert_one(doc)
                return doc
            except DuplicateKeyError:
                logger.warning("Pass id collision for ticket %s, retrying", ticket_id)
        raise ConflictError("Could not allocate a unique pass id.", code="pass_id_exhausted")

    def release_order(self, order_id: int) -> int:
        return self.store.tickets.delete_many({"order_id": order_id}).deleted_count

    # -------------------------
    # Reads
    # -------------------------
    def list_user_tickets(self, user_id: int, order_id: Optional[int] = None) -> List[Dict[str, Any]]:
        query: Dict[str, Any] = {"user_id": user_id, "payment_status": PaymentStatus.COMPLETED.value}
        if order_id is not None:
            query["order_id"] = order_id
        order_ids = [o["order_id"] for o in self.store.orders.find(query, {"order_id": 1})]
        if order_id is not None and not order_ids:
            raise NotFoundError("Order not found.")
        tickets = list(
            self.store.tickets.find({"order_id": {"$in": order_ids}}).sort("ticket_id", ASCENDING)
        )
        events = {
            e["event_id"]: e
            for e in self.store.events.find({"event_id": {"$in": list({t["event_id"] for t in tickets})}})
        }
        out = []
        for t in tickets:
            item = public_ticket(t)
            event = events.get(t["event_id"], {})
            item["event"] = {
                "event_id": t["event_id"],
                "title": event.get("title", ""),
                "start_date": event.get("start_date", ""),
                "venue_name": event.get("venue_name", ""),
                "status": event.get("status"),
            }
            found = find_ticket_type(event, t.get("ticket_type_id"))
            item["ticket_type_name"] = found[1].get("name", "") if found else ""
            out.append(item)
        return out

    def owned_ticket(self, user_id: int, pass_id: str) -> Dict[str, Any]:
        ticket = self.store.tickets.find_one({"pass_id": (pass_id or "").strip().upper()})
        if not ticket:
            raise NotFoundError("Ticket not found.")
        order = self.store.orders.find_one({"order_id": ticket["order_id"]}, {"user_id": 1})
        if not order or order.get("user_id") != user_id:
            # not the caller's ticket; do not reveal that it exists
            raise NotFoundError("Ticket not found.")
        return ticket

