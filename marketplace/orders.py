"""Carts, checkout and order history.

A cart is the caller's single ``pending`` order. Checkout claims the order
with a one-time token, reserves inventory line by line, issues the tickets
and only then flips the order to ``completed``. Any failure in between
undoes what was done so far and hands the cart back to the user.

Each reservation is recorded on the order as soon as it is made. A claim
older than ``claim_timeout`` seconds belongs to a checkout that died, so the
next request on that order releases what was recorded and clears the claim.
"""
from __future__ import annotations

import logging
import re
import secrets
from datetime import timedelta
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple

from pymongo import DESCENDING

from marketplace import sequences
from marketplace.db import Store
from marketplace.errors import ConflictError, InternalError, NotFoundError, ValidationError, field_error
from marketplace.events import EventService, InventoryLedger, find_ticket_type, sale_window_open
from marketplace.models import (
    CLOSED_EVENT_STATUSES,
    PUBLIC_EVENT_STATUSES,
    PaymentStatus,
    public_order,
    public_ticket,
)
from marketplace.sequences import SequenceGenerator
from marketplace.tickets import TicketIssuer
from marketplace.util import ZERO, iso_now, now_utc, parse_iso, to_bson_money, to_decimal
from marketplace.validation import optional_text, parse_id, safe_int, validate_email

logger = logging.getLogger("marketplace.orders")

PAYMENT_METHOD_RE = re.compile(r"^[A-Za-z0-9_\-]{1,40}$")


def order_total(items: List[Dict[str, Any]]) -> Decimal:
    return sum((to_decimal(i.get("unit_price")) * int(i.get("quantity", 0)) for i in items), ZERO)


def _clean_attendees(raw: Any) -> List[Dict[str, str]]:
    if raw is None:
        return []
    if isinstance(raw, dict):
        raw = [raw]
    if not isinstance(raw, list):
        raise field_error("attendee_info", "attendee_info must be a list of objects.")
    out = []
    for a in raw:
        if not isinstance(a, dict):
            raise field_error("attendee_info", "attendee_info must be a list of objects.")
        email = optional_text(a, "email")
        out.append({
            "name": optional_text(a, "name"),
            "email": validate_email(email) if email else "",
            "phone": optional_text(a, "phone", max_length=40),
        })
    return out


class OrderService:
    def __init__(self, store: Store, seq: SequenceGenerator, events: EventService,
                 ledger: InventoryLedger, issuer: TicketIssuer, claim_timeout: int = 300):
        self.store = store
        self.seq = seq
        self.events = events
        self.ledger = ledger
        self.issuer = issuer
        self.claim_timeout = claim_timeout

    # -------------------------
    # Checks shared by cart and checkout
    # -------------------------
    def _sellable(self, event_id: int, ticket_type_id: int) -> Tuple[Dict[str, Any], Dict[str, Any], Dict[str, Any]]:
        event = self.events.get(event_id)
        status = event.get("status")
        if status in CLOSED_EVENT_STATUSES:
            raise ConflictError(f"Cannot purchase tickets for a {status} event.", code="event_closed")
        if status not in PUBLIC_EVENT_STATUSES:
            raise NotFoundError("Event not found.")
        if not sale_window_open(event, iso_now()):
            raise ConflictError("Ticket sales are not open for this event.", code="sales_closed")
        found = find_ticket_type(event, ticket_type_id)
        if not found:
            raise NotFoundError("Ticket type not found.")
        category, ticket_type = found
        return event, category, ticket_type

    @staticmethod
    def _check_max(ticket_type: Dict[str, Any], quantity: int) -> None:
        max_per_order = int(ticket_type.get("max_per_order", 10))
        if quantity > max_per_order:
            raise ValidationError(
                f"You can buy at most {max_per_order} tickets of this type per order.",
                details={"field": "quantity", "max_per_order": max_per_order},
            )

    def _check_quantity(self, ticket_type: Dict[str, Any], quantity: int) -> None:
        self._check_max(ticket_type, quantity)
        available = int(ticket_type.get("quantity_available", 0))
        if quantity > available:
            raise ConflictError(
                "Not enough tickets available.",
                code="insufficient_inventory",
                details={"ticket_type_id": ticket_type["ticket_type_id"], "available": available,
                         "requested": quantity},
            )

    # -------------------------
    # Cart
    # -------------------------
    def pending_order(self, user_id: int) -> Optional[Dict[str, Any]]:
        return self.store.orders.find_one(
            {"user_id": user_id, "payment_status": PaymentStatus.PENDING.value},
            sort=[("created_at", DESCENDING)],
        )

    def _owned_pending(self, user_id: int, order_id: int) -> Dict[str, Any]:
        order = self.store.orders.find_one({"order_id": order_id, "user_id": user_id})
        if not order:
            raise NotFoundError("Order not found.")
        if order.get("payment_status") != PaymentStatus.PENDING.value:
            raise ConflictError(f"Order is already {order.get('payment_status')}.")
        return self._clear_stale_claim(order)

    def _clear_stale_claim(self, order: Dict[str, Any]) -> Dict[str, Any]:
        token = order.get("checkout_token")
        if not token:
            return order
        started = parse_iso(order.get("checkout_started_at"))
        if started and now_utc() - started < timedelta(seconds=self.claim_timeout):
            raise ConflictError("Checkout is in progress for this order.", code="checkout_in_progress")

        order_id = order["order_id"]
        result = self.store.orders.update_one(
            {"order_id": order_id, "checkout_token": token},
            {"$set": {"checkout_token": None}, "$unset": {"checkout_started_at": "", "reserved": ""}},
        )
        if result.matched_count:
            reserved = [(r["event_id"], r["ticket_type_id"], int(r["quantity"])) for r in order.get("reserved", [])]
            removed = self.issuer.release_order(order_id)
            self._release_all(order_id, reserved)
            logger.warning("Stale checkout claim on order %s cleared (%d reservations, %d tickets removed)",
                           order_id, len(reserved), removed)
        return self._owned_pending(order["user_id"], order_id)

    def _save_items(self, order: Dict[str, Any], items: List[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
        query = {"order_id": order["order_id"], "payment_status": PaymentStatus.PENDING.value,
                 "checkout_token": None}
        if not items:
            self.store.orders.delete_one(query)
            return None
        result = self.store.orders.update_one(query, {"$set": {
            "order_items": items,
            "total_amount": to_bson_money(order_total(items)),
            "updated_at": iso_now(),
        }})
        if result.matched_count == 0:
            raise ConflictError("Cart changed while updating, please retry.")
        return self.store.orders.find_one({"order_id": order["order_id"]})

    def add_to_cart(self, user_id: int, data: Dict[str, Any]) -> Dict[str, Any]:
        event_id = parse_id(data.get("event_id"), "event_id")
        ticket_type_id = parse_id(data.get("ticket_type_id"), "ticket_type_id")
        quantity = safe_int(data.get("quantity", 1), "quantity", min_value=1)
        attendees = _clean_attendees(data.get("attendee_info", data.get("attendee")))
        _, category, ticket_type = self._sellable(event_id, ticket_type_id)

        order = self.pending_order(user_id)
        if order:
            order = self._clear_stale_claim(order)
        items = list(order.get("order_items", [])) if order else []
        line = next((i for i in items if i["event_id"] == event_id and i["ticket_type_id"] == ticket_type_id), None)

        new_quantity = quantity + (int(line["quantity"]) if line else 0)
        self._check_quantity(ticket_type, new_quantity)
        if line:
            line["quantity"] = new_quantity
            line["attendee_info"] = (list(line.get("attendee_info", [])) + attendees)[:new_quantity]
        else:
            next_item_id = max((i["order_item_id"] for i in items), default=0) + 1
            items.append({
                "order_item_id": next_item_id,
                "event_id": event_id,
                "ticket_type_id": ticket_type_id,
                "category": category.get("name", ""),
                "ticket_name": ticket_type.get("name", ""),
                "quantity": quantity,
                "unit_price": ticket_type.get("price"),
                "attendee_info": attendees[:quantity],
            })

        if order:
            return self._save_items(order, items)
        now = iso_now()
        doc = {
            "order_id": self.seq.next_value(sequences.ORDER),
            "user_id": user_id,
            "order_items": items,
            "total_amount": to_bson_money(order_total(items)),
            "payment_status": PaymentStatus.PENDING.value,
            "payment_method": None,
            "transaction_id": None,
            "checkout_token": None,
            "created_at": now,
            "updated_at": now,
            "completed_at": None,
        }
        self.store.orders.insert_one(doc)
        logger.info("Cart order %s opened for user %s", doc["order_id"], user_id)
        return doc

    def update_cart_item(self, user_id: int, order_id: int, order_item_id: int, quantity: int) -> Optional[Dict[str, Any]]:
        order = self._owned_pending(user_id, order_id)
        items = list(order.get("order_items", []))
        line = next((i for i in items if i["order_item_id"] == order_item_id), None)
        if not line:
            raise NotFoundError("Order item not found.")
        if quantity <= 0:
            items.remove(line)
            return self._save_items(order, items)
        _, _, ticket_type = self._sellable(line["event_id"], line["ticket_type_id"])
        self._check_quantity(ticket_type, quantity)
        line["quantity"] = quantity
        line["attendee_info"] = list(line.get("attendee_info", []))[:quantity]
        return self._save_items(order, items)

    def remove_cart_item(self, user_id: int, order_id: int, order_item_id: int) -> Optional[Dict[str, Any]]:
        order = self._owned_pending(user_id, order_id)
        items = [i for i in order.get("order_items", []) if i["order_item_id"] != order_item_id]
        if len(items) == len(order.get("order_items", [])):
            raise NotFoundError("Order item not found.")
        return self._save_items(order, items)

    def get_cart(self, user_id: int) -> Optional[Dict[str, Any]]:
        order = self.pending_order(user_id)
        return self.with_event_titles(order) if order else None

    def with_event_titles(self, order: Dict[str, Any]) -> Dict[str, Any]:
        out = public_order(order)
        event_ids = list({i["event_id"] for i in out["order_items"]})
        titles = {e["event_id"]: e.get("title", "")
                  for e in self.store.events.find({"event_id": {"$in": event_ids}}, {"event_id": 1, "title": 1})}
        for item in out["order_items"]:
            item["event_title"] = titles.get(item["event_id"], "")
        return out

    # -------------------------
    # Checkout
    # -------------------------
    def checkout(self, user_id: int, order_id: int, payment_method: Any = None) -> Dict[str, Any]:
        if payment_method in (None, ""):
            payment_method = "card"
        if not isinstance(payment_method, str) or not PAYMENT_METHOD_RE.match(payment_method.strip()):
            raise field_error("payment_method", "Invalid payment_method.")
        payment_method = payment_method.strip()
        order = self._owned_pending(user_id, order_id)
        if not order.get("order_items"):
            raise ValidationError("Cart is empty.")

        token = secrets.token_hex(16)
        claimed = self.store.orders.update_one(
            {"order_id": order_id, "payment_status": PaymentStatus.PENDING.value, "checkout_token": None},
            {"$set": {"checkout_token": token, "checkout_started_at": iso_now()}},
        )
        if claimed.matched_count == 0:
            raise ConflictError("Checkout is in progress for this order.", code="checkout_in_progress")

        reserved: List[Tuple[int, int, int]] = []
        try:
            for item in order["order_items"]:
                _, _, ticket_type = self._sellable(item["event_id"], item["ticket_type_id"])
                self._check_max(ticket_type, int(item["quantity"]))
                line = (item["event_id"], item["ticket_type_id"], int(item["quantity"]))
                self.ledger.reserve(*line)
                recorded = self.store.orders.update_one(
                    {"order_id": order_id, "checkout_token": token},
                    {"$push": {"reserved": {"event_id": line[0], "ticket_type_id": line[1], "quantity": line[2]}}},
                )
                if recorded.matched_count == 0:
                    self.ledger.release(*line)
                    raise ConflictError("Checkout claim expired, please retry.", code="checkout_expired")
                reserved.append(line)

            tickets = self.issuer.issue_for_order(order)

            now = iso_now()
            done = self.store.orders.update_one(
                {"order_id": order_id, "checkout_token": token},
                {"$set": {
                    "payment_status": PaymentStatus.COMPLETED.value,
                    "payment_method": payment_method,
                    "transaction_id": f"TXN-{order_id}-{secrets.token_hex(6).upper()}",
                    "total_amount": to_bson_money(order_total(order["order_items"])),
                    "completed_at": now,
                    "updated_at": now,
                }, "$unset": {"checkout_token": "", "checkout_started_at": "", "reserved": ""}},
            )
            if done.matched_count == 0:
                raise InternalError("Checkout lost its claim on the order.")
        except Exception:
            self._roll_back(order_id, token, reserved)
            raise

        completed = self.store.orders.find_one({"order_id": order_id})
        logger.info("Order %s completed: %d tickets issued", order_id, len(tickets))
        return {"order": public_order(completed), "tickets": [public_ticket(t) for t in tickets]}

    def _roll_back(self, order_id: int, token: str, reserved: List[Tuple[int, int, int]]) -> None:
        released = self.store.orders.update_one(
            {"order_id": order_id, "checkout_token": token},
            {"$set": {"checkout_token": None}, "$unset": {"checkout_started_at": "", "reserved": ""}},
        )
        if released.matched_count == 0:
            # the claim was cleared as stale and its reservations were already returned
            logger.warning("Checkout of order %s lost its claim before rolling back", order_id)
            return
        removed = self.issuer.release_order(order_id)
        self._release_all(order_id, reserved)
        logger.warning("Checkout of order %s rolled back (%d reservations, %d tickets removed)",
                       order_id, len(reserved), removed)

    def _release_all(self, order_id: int, reserved: List[Tuple[int, int, int]]) -> None:
        for event_id, ticket_type_id, quantity in reversed(reserved):
            try:
                self.ledger.release(event_id, ticket_type_id, quantity)
            except Exception:
                logger.exception("Could not release %d units of ticket type %s on event %s for order %s",
                                 quantity, ticket_type_id, event_id, order_id)

    def fail_payment(self, user_id: int, order_id: int) -> Dict[str, Any]:
        self._owned_pending(user_id, order_id)
        result = self.store.orders.update_one(
            {"order_id": order_id, "user_id": user_id, "payment_status": PaymentStatus.PENDING.value,
             "checkout_token": None},
            {"$set": {"payment_status": PaymentStatus.FAILED.value, "updated_at": iso_now()}},
        )
        if result.matched_count == 0:
            raise ConflictError("Order changed concurrently, please retry.")
        logger.info("Order %s marked failed by user %s", order_id, user_id)
        return public_order(self.store.orders.find_one({"order_id": order_id}))

    # -------------------------
    # History
    # -------------------------
    def list_orders(self, user_id: int, status: Optional[str] = None) -> List[Dict[str, Any]]:
        query: Dict[str, Any] = {"user_id": user_id}
        if status:
            if status not in {s.value for s in PaymentStatus}:
                raise field_error("status", "Unknown payment status.")
            query["payment_status"] = status
        return [self.with_event_titles(o) for o in self.store.orders.find(query).sort("created_at", DESCENDING)]

    def list_transactions(self, status: Optional[str], page: int, per_page: int) -> Dict[str, Any]:
        query: Dict[str, Any] = {}
        if status:
            if status not in {s.value for s in PaymentStatus}:
                raise field_error("status", "Unknown payment status.")
            query["payment_status"] = status
        total = self.store.orders.count_documents(query)
        docs = list(
            self.store.orders.find(query).sort("created_at", DESCENDING).skip((page - 1) * per_page).limit(per_page)
        )
        users = {
            u["user_id"]: u
            for u in self.store.users.find({"user_id": {"$in": [d.get("user_id") for d in docs]}})
        }
        transactions = []
        for d in docs:
            item = public_order(d)
            user = users.get(d.get("user_id"), {})
            item["customer_name"] = f"{user.get('first_name', '')} {user.get('last_name', '')}".strip()
            transactions.append(item)
        return {
            "transactions": transactions,
            "pagination": {"page": page, "per_page": per_page, "total": total,
                           "total_pages": (total + per_page - 1) // per_page},
        }
