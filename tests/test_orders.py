import re

import pytest
from pymongo.errors import PyMongoError

from conftest import buy, remaining
from marketplace.errors import ConflictError
from marketplace.util import iso_now


def _cart(client):
    return client.get("/api/cart").get_json()["data"]["cart"]


def test_cart_merges_lines_and_recomputes_total(user_client, live_event):
    event_id = live_event["event_id"]
    user_client.post("/api/cart", json={"event_id": event_id, "ticket_type_id": 1, "quantity": 2})
    user_client.post("/api/cart", json={"event_id": event_id, "ticket_type_id": 1, "quantity": 1})
    resp = user_client.post("/api/cart", json={"event_id": event_id, "ticket_type_id": 2, "quantity": 1})
    assert resp.status_code == 201

    cart = _cart(user_client)
    assert [(i["ticket_type_id"], i["quantity"]) for i in cart["order_items"]] == [(1, 3), (2, 1)]
    assert cart["order_items"][0]["subtotal"] == 76.5
    assert cart["order_items"][0]["event_title"] == live_event["title"]
    assert cart["total_amount"] == 86.5
    assert cart["payment_status"] == "pending"


def test_update_and_remove_cart_items(user_client, live_event, services):
    event_id = live_event["event_id"]
    user_client.post("/api/cart", json={"event_id": event_id, "ticket_type_id": 1, "quantity": 2})
    user_client.post("/api/cart", json={"event_id": event_id, "ticket_type_id": 2, "quantity": 2})
    cart = _cart(user_client)
    order_id = cart["order_id"]

    resp = user_client.put("/api/cart", json={"order_id": order_id, "order_item_id": 1, "quantity": 1})
    assert resp.get_json()["data"]["cart"]["total_amount"] == 45.5

    resp = user_client.delete("/api/cart", json={"order_id": order_id, "order_item_id": 2})
    assert resp.get_json()["data"]["cart"]["total_amount"] == 25.5
    assert user_client.delete("/api/cart", json={"order_id": order_id, "order_item_id": 2}).status_code == 404

    resp = user_client.put("/api/cart", json={"order_id": order_id, "order_item_id": 1, "quantity": 0})
    assert resp.get_json()["data"]["cart"] is None
    assert services.store.orders.find_one({"order_id": order_id}) is None


def test_max_per_order_and_availability(user_client, live_event):
    event_id = live_event["event_id"]
    resp = user_client.post("/api/cart", json={"event_id": event_id, "ticket_type_id": 1, "quantity": 5})
    assert resp.status_code == 400
    assert resp.get_json()["details"]["max_per_order"] == 4

    resp = user_client.post("/api/cart", json={"event_id": event_id, "ticket_type_id": 2, "quantity": 3})
    assert resp.status_code == 409
    assert resp.get_json()["code"] == "insufficient_inventory"

    user_client.post("/api/cart", json={"event_id": event_id, "ticket_type_id": 1, "quantity": 3})
    resp = user_client.post("/api/cart", json={"event_id": event_id, "ticket_type_id": 1, "quantity": 2})
    assert resp.status_code == 400


def test_cart_refuses_unsellable_events(user_client, admin_client, create_event):
    draft = create_event(approve=False)
    resp = user_client.post("/api/cart", json={"event_id": draft["event_id"], "ticket_type_id": 1, "quantity": 1})
    assert resp.status_code == 404

    cancelled = create_event()
    admin_client.post(f"/api/admin/events/{cancelled['event_id']}/reject")
    resp = user_client.post("/api/cart", json={"event_id": cancelled["event_id"], "ticket_type_id": 1, "quantity": 1})
    assert resp.status_code == 409
    assert resp.get_json()["code"] == "event_closed"

    closed = create_event(tickets_sale_start="2020-01-01T00:00:00+00:00", tickets_sale_end="2020-02-01T00:00:00+00:00")
    resp = user_client.post("/api/cart", json={"event_id": closed["event_id"], "ticket_type_id": 1, "quantity": 1})
    assert resp.status_code == 409
    assert resp.get_json()["code"] == "sales_closed"

    resp = user_client.post("/api/cart", json={"event_id": closed["event_id"], "ticket_type_id": 99, "quantity": 1})
    assert resp.status_code == 409


def test_organizers_cannot_buy(organizer_client, live_event):
    resp = organizer_client.post("/api/cart", json={"event_id": live_event["event_id"], "ticket_type_id": 1})
    assert resp.status_code == 403


def test_checkout_issues_one_ticket_per_unit(user_client, live_event, services):
    event_id = live_event["event_id"]
    resp = buy(user_client, event_id, 1, 3, attendee_info=[{"name": "Ann", "email": "ann@example.com"}])
    assert resp.status_code == 200
    data = resp.get_json()["data"]
    assert data["order"]["payment_status"] == "completed"
    assert data["order"]["transaction_id"].startswith("TXN-")
    assert data["order"]["completed_at"]

    tickets = data["tickets"]
    assert len(tickets) == 3
    pass_ids = {t["pass_id"] for t in tickets}
    assert len(pass_ids) == 3
    for t in tickets:
        assert re.fullmatch(r"[A-Z0-9]{12}", t["pass_id"])
        assert t["qr_code"] == f"{event_id}:{t['ticket_id']}:{t['pass_id']}"
        assert t["ticket_document"] == f"/api/tickets/{t['pass_id']}/qr"
        assert t["is_validated"] is False
    assert tickets[0]["attendee_name"] == "Ann"
    assert tickets[1]["attendee_name"] == ""
    assert remaining(services, event_id, 1) == 2
    assert _cart(user_client) is None

    listed = user_client.get("/api/user/tickets").get_json()["data"]["tickets"]
    assert {t["pass_id"] for t in listed} == pass_ids
    assert listed[0]["event"]["title"] == live_event["title"]
    assert listed[0]["ticket_type_name"] == "General"


def test_checkout_without_cart(user_client):
    assert user_client.post("/api/checkout", json={}).status_code == 404


def test_completed_order_cannot_be_paid_twice(user_client, live_event, services):
    buy(user_client, live_event["event_id"], 1, 1)
    order = user_client.get("/api/orders").get_json()["data"]["orders"][0]
    resp = user_client.post("/api/checkout", json={"order_id": order["order_id"]})
    assert resp.status_code == 409
    assert services.store.tickets.count_documents({"order_id": order["order_id"]}) == 1


def test_checkout_rechecks_inventory(register_client, live_event, services):
    event_id = live_event["event_id"]
    first, second = register_client("user"), register_client("user")
    for client in (first, second):
        resp = client.post("/api/cart", json={"event_id": event_id, "ticket_type_id": 2, "quantity": 2})
        assert resp.status_code == 201

    assert first.post("/api/checkout", json={}).status_code == 200
    resp = second.post("/api/checkout", json={})
    assert resp.status_code == 409
    assert resp.get_json()["code"] == "insufficient_inventory"

    assert remaining(services, event_id, 2) == 0
    cart = _cart(second)
    assert cart["payment_status"] == "pending"
    assert services.store.orders.find_one({"order_id": cart["order_id"]})["checkout_token"] is None
    assert services.store.tickets.count_documents({"order_id": cart["order_id"]}) == 0


def test_issuance_failure_rolls_back_everything(user_client, live_event, services, monkeypatch):
    event_id = live_event["event_id"]
    user_client.post("/api/cart", json={"event_id": event_id, "ticket_type_id": 1, "quantity": 2})
    user_client.post("/api/cart", json={"event_id": event_id, "ticket_type_id": 2, "quantity": 2})
    order_id = _cart(user_client)["order_id"]

    issue_one = services.issuer._issue_one
    calls = []

    def flaky(*args, **kwargs):
        calls.append(1)
        if len(calls) == 3:
            raise PyMongoError("disk full")
        return issue_one(*args, **kwargs)

    monkeypatch.setattr(services.issuer, "_issue_one", flaky)
    resp = user_client.post("/api/checkout", json={})
    assert resp.status_code == 500
    assert resp.get_json()["code"] == "database_error"
    assert resp.get_json()["success"] is False

    assert services.store.tickets.count_documents({"order_id": order_id}) == 0
    assert remaining(services, event_id, 1) == 5
    assert remaining(services, event_id, 2) == 2
    order = services.store.orders.find_one({"order_id": order_id})
    assert order["payment_status"] == "pending"
    assert order["checkout_token"] is None

    monkeypatch.undo()
    resp = user_client.post("/api/checkout", json={})
    assert resp.status_code == 200
    assert len(resp.get_json()["data"]["tickets"]) == 4


def test_issue_for_order_is_idempotent(user_client, live_event, services):
    buy(user_client, live_event["event_id"], 1, 2)
    order = services.store.orders.find_one({"payment_status": "completed"})
    first = [t["pass_id"] for t in services.store.tickets.find({"order_id": order["order_id"]})]
    again = [t["pass_id"] for t in services.issuer.issue_for_order(order)]
    assert sorted(first) == sorted(again)
    assert services.store.tickets.count_documents({}) == 2


def test_fail_payment(user_client, live_event):
    user_client.post("/api/cart", json={"event_id": live_event["event_id"], "ticket_type_id": 1, "quantity": 1})
    order_id = _cart(user_client)["order_id"]
    resp = user_client.post(f"/api/orders/{order_id}/fail")
    assert resp.status_code == 200
    assert resp.get_json()["data"]["order"]["payment_status"] == "failed"
    assert user_client.post(f"/api/orders/{order_id}/fail").status_code == 409
    assert user_client.post("/api/orders/999/fail").status_code == 404

    orders = user_client.get("/api/orders?status=failed").get_json()["data"]["orders"]
    assert [o["order_id"] for o in orders] == [order_id]


def test_orders_are_private(register_client, live_event):
    owner, stranger = register_client("user"), register_client("user")
    owner.post("/api/cart", json={"event_id": live_event["event_id"], "ticket_type_id": 1, "quantity": 1})
    order_id = _cart(owner)["order_id"]
    assert stranger.post("/api/checkout", json={"order_id": order_id}).status_code == 404
    assert stranger.post(f"/api/orders/{order_id}/fail").status_code == 404


def test_qr_png_for_owner_only(register_client, live_event):
    owner, stranger = register_client("user"), register_client("user")
    ticket = buy(owner, live_event["event_id"], 1, 1).get_json()["data"]["tickets"][0]
    resp = owner.get(ticket["ticket_document"])
    assert resp.status_code == 200
    assert resp.mimetype == "image/png"
    assert resp.data.startswith(b"\x89PNG")
    assert stranger.get(ticket["ticket_document"]).status_code == 404


def test_reserve_loses_race_without_overselling(live_event, services, monkeypatch):
    event_id = live_event["event_id"]
    ledger = services.ledger
    events = services.store.events
    update_one = events.update_one
    raced = []

    def racing_update(*args, **kwargs):
        if not raced:
            raced.append(True)
            # a competing checkout takes the last two units between our read and write
            ledger.reserve(event_id, 2, 2)
        return update_one(*args, **kwargs)

    monkeypatch.setattr(events, "update_one", racing_update)
    with pytest.raises(ConflictError) as exc:
        ledger.reserve(event_id, 2, 1)
    assert exc.value.code == "insufficient_inventory"
    assert remaining(services, event_id, 2) == 0


def test_sequential_reservations_never_go_negative(live_event, services):
    event_id = live_event["event_id"]
    succeeded = 0
    for _ in range(5):
        try:
            services.ledger.reserve(event_id, 2, 1)
            succeeded += 1
        except ConflictError:
            pass
    assert succeeded == 2
    assert remaining(services, event_id, 2) == 0
    services.ledger.release(event_id, 2, 1)
    assert remaining(services, event_id, 2) == 1


def test_admin_transactions(admin_client, user_client, live_event):
    buy(user_client, live_event["event_id"], 1, 2)
    data = admin_client.get("/api/admin/transactions?status=completed").get_json()["data"]
    assert data["pagination"]["total"] == 1
    assert data["transactions"][0]["total_amount"] == 51.0
    assert data["transactions"][0]["customer_name"].startswith("Test")


def _abandon_checkout(services, order_id, event_id, tt_id, quantity, started_at):
    services.ledger.reserve(event_id, tt_id, quantity)
    services.store.orders.update_one({"order_id": order_id}, {"$set": {
        "checkout_token": "abandoned",
        "checkout_started_at": started_at,
        "reserved": [{"event_id": event_id, "ticket_type_id": tt_id, "quantity": quantity}],
    }})


def test_abandoned_checkout_is_recovered_after_timeout(user_client, live_event, services):
    event_id = live_event["event_id"]
    user_client.post("/api/cart", json={"event_id": event_id, "ticket_type_id": 1, "quantity": 2})
    order_id = _cart(user_client)["order_id"]
    _abandon_checkout(services, order_id, event_id, 1, 2, "2020-01-01T00:00:00+00:00")
    assert remaining(services, event_id, 1) == 3

    resp = user_client.post("/api/cart", json={"event_id": event_id, "ticket_type_id": 2, "quantity": 1})
    assert resp.status_code == 201
    assert remaining(services, event_id, 1) == 5
    order = services.store.orders.find_one({"order_id": order_id})
    assert order["checkout_token"] is None
    assert "reserved" not in order

    resp = user_client.post("/api/checkout", json={})
    assert resp.status_code == 200
    assert len(resp.get_json()["data"]["tickets"]) == 3
    assert remaining(services, event_id, 1) == 3
    assert "reserved" not in services.store.orders.find_one({"order_id": order_id})


def test_fresh_checkout_claim_blocks_cart_changes(user_client, live_event, services):
    event_id = live_event["event_id"]
    user_client.post("/api/cart", json={"event_id": event_id, "ticket_type_id": 1, "quantity": 1})
    order_id = _cart(user_client)["order_id"]
    _abandon_checkout(services, order_id, event_id, 1, 1, iso_now())

    for resp in (
        user_client.post("/api/checkout", json={}),
        user_client.post("/api/cart", json={"event_id": event_id, "ticket_type_id": 1, "quantity": 1}),
        user_client.post(f"/api/orders/{order_id}/fail"),
    ):
        assert resp.status_code == 409
        assert resp.get_json()["code"] == "checkout_in_progress"
    assert remaining(services, event_id, 1) == 4


def test_stale_claim_can_be_marked_failed(user_client, live_event, services):
    event_id = live_event["event_id"]
    user_client.post("/api/cart", json={"event_id": event_id, "ticket_type_id": 2, "quantity": 2})
    order_id = _cart(user_client)["order_id"]
    _abandon_checkout(services, order_id, event_id, 2, 2, "2020-01-01T00:00:00+00:00")
    assert remaining(services, event_id, 2) == 0

    resp = user_client.post(f"/api/orders/{order_id}/fail")
    assert resp.status_code == 200
    assert resp.get_json()["data"]["order"]["payment_status"] == "failed"
    assert remaining(services, event_id, 2) == 2


def test_checkout_records_reservations_while_claimed(user_client, live_event, services, monkeypatch):
    event_id = live_event["event_id"]
    user_client.post("/api/cart", json={"event_id": event_id, "ticket_type_id": 1, "quantity": 2})
    user_client.post("/api/cart", json={"event_id": event_id, "ticket_type_id": 2, "quantity": 1})
    order_id = _cart(user_client)["order_id"]
    seen = []

    def crash(order):
        seen.append(services.store.orders.find_one({"order_id": order_id})["reserved"])
        raise PyMongoError("worker lost")

    monkeypatch.setattr(services.issuer, "issue_for_order", crash)
    assert user_client.post("/api/checkout", json={}).status_code == 500
    assert seen == [[
        {"event_id": event_id, "ticket_type_id": 1, "quantity": 2},
        {"event_id": event_id, "ticket_type_id": 2, "quantity": 1},
    ]]
    assert remaining(services, event_id, 1) == 5
    assert remaining(services, event_id, 2) == 2
