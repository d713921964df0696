"""Cart, checkout, order history and the buyer's tickets."""
from __future__ import annotations

from io import BytesIO

from flask import Blueprint, request, send_file

from marketplace.errors import NotFoundError
from marketplace.models import public_ticket
from marketplace.routes import current_user_id, ok, services
from marketplace.tickets import render_qr_png
from marketplace.validation import optional_json, parse_id, query_id, require_json, safe_int

bp = Blueprint("orders", __name__, url_prefix="/api")


def _cart_payload(order):
    return {"cart": services().orders.with_event_titles(order) if order else None}


@bp.get("/cart")
def get_cart():
    return ok({"cart": services().orders.get_cart(current_user_id())})


@bp.post("/cart")
def add_to_cart():
    user_id = current_user_id()
    order = services().orders.add_to_cart(user_id, require_json())
    return ok(_cart_payload(order), 201, "Added to cart.")


@bp.put("/cart")
def update_cart_item():
    user_id = current_user_id()
    data = require_json()
    order = services().orders.update_cart_item(
        user_id,
        parse_id(data.get("order_id"), "order_id"),
        parse_id(data.get("order_item_id"), "order_item_id"),
        safe_int(data.get("quantity"), "quantity", min_value=0),
    )
    return ok(_cart_payload(order), message="Cart updated.")


@bp.delete("/cart")
def remove_cart_item():
    user_id = current_user_id()
    data = optional_json()
    order = services().orders.remove_cart_item(
        user_id,
        parse_id(data.get("order_id", request.args.get("order_id")), "order_id"),
        parse_id(data.get("order_item_id", request.args.get("order_item_id")), "order_item_id"),
    )
    return ok(_cart_payload(order), message="Item removed from cart.")


@bp.post("/checkout")
def checkout():
    user_id = current_user_id()
    data = optional_json()
    orders = services().orders
    if data.get("order_id") is not None:
        order_id = parse_id(data["order_id"], "order_id")
    else:
        cart = orders.pending_order(user_id)
        if not cart:
            raise NotFoundError("No pending order to check out.")
        order_id = cart["order_id"]
    result = orders.checkout(user_id, order_id, data.get("payment_method"))
    return ok(result, message="Payment successful. Tickets issued.")


@bp.post("/orders/<int:order_id>/fail")
def fail_payment(order_id: int):
    return ok({"order": services().orders.fail_payment(current_user_id(), order_id)},
              message="Order marked as failed.")


@bp.get("/orders")
def list_orders():
    status = (request.args.get("status") or "").strip() or None
    return ok({"orders": services().orders.list_orders(current_user_id(), status)})


@bp.get("/user/tickets")
def list_tickets():
    tickets = services().issuer.list_user_tickets(current_user_id(), query_id("order_id"))
    return ok({"tickets": tickets})


@bp.get("/tickets/<pass_id>")
def get_ticket(pass_id: str):
    return ok(public_ticket(services().issuer.owned_ticket(current_user_id(), pass_id)))


@bp.get("/tickets/<pass_id>/qr")
def ticket_qr(pass_id: str):
    ticket = services().issuer.owned_ticket(current_user_id(), pass_id)
    png = render_qr_png(ticket["qr_code"])
    return send_file(BytesIO(png), mimetype="image/png", download_name=f"ticket-{ticket['pass_id']}.png")
