import pytest

from conftest import buy


@pytest.fixture
def tickets(user_client, live_event):
    resp = buy(user_client, live_event["event_id"], 1, 2, attendee_info=[{"name": "Ann Lee"}, {"name": "Bo Kim"}])
    return resp.get_json()["data"]["tickets"]


def test_lookup_returns_ticket_event_and_type(organizer_client, tickets, live_event):
    pass_id = tickets[0]["pass_id"]
    resp = organizer_client.get(f"/api/organizer/scanner/ticket?passId={pass_id.lower()}")
    assert resp.status_code == 200
    data = resp.get_json()["data"]
    assert data["ticket"]["pass_id"] == pass_id
    assert data["event"]["event_id"] == live_event["event_id"]
    assert data["ticket_type"]["name"] == "General"
    assert data["ticket_type"]["category_name"] == "Standing"


def test_validation_is_idempotent(organizer_client, tickets, services):
    pass_id = tickets[0]["pass_id"]
    first = organizer_client.put("/api/organizer/scanner/ticket", json={"passId": pass_id})
    assert first.status_code == 200
    assert first.get_json()["data"]["ticket"]["is_validated"] is True
    validated_at = services.store.tickets.find_one({"pass_id": pass_id})["validation_time"]
    assert validated_at

    second = organizer_client.put("/api/organizer/scanner/ticket", json={"passId": pass_id})
    assert second.status_code == 409
    body = second.get_json()
    assert body["code"] == "already_validated"
    assert body["details"]["validation_time"] == validated_at
    assert services.store.tickets.find_one({"pass_id": pass_id})["validation_time"] == validated_at


def test_unknown_and_missing_pass(organizer_client):
    assert organizer_client.get("/api/organizer/scanner/ticket?passId=NOPE00000000").status_code == 404
    assert organizer_client.get("/api/organizer/scanner/ticket").status_code == 400
    assert organizer_client.put("/api/organizer/scanner/ticket", json={}).status_code == 400


def test_other_organizer_cannot_scan(register_client, services, tickets):
    other = register_client("organizer")
    services.moderation.approve_organizer(other.account["profile"]["organizer_id"])
    pass_id = tickets[0]["pass_id"]
    assert other.get(f"/api/organizer/scanner/ticket?passId={pass_id}").status_code == 403
    assert other.put("/api/organizer/scanner/ticket", json={"passId": pass_id}).status_code == 403
    assert services.store.tickets.find_one({"pass_id": pass_id})["is_validated"] is False


def test_users_cannot_scan(user_client, tickets):
    resp = user_client.put("/api/organizer/scanner/ticket", json={"passId": tickets[0]["pass_id"]})
    assert resp.status_code == 403


def test_stats_history_and_attendees(organizer_client, tickets, live_event):
    event_id = live_event["event_id"]
    organizer_client.put("/api/organizer/scanner/ticket", json={"passId": tickets[1]["pass_id"]})

    stats = organizer_client.get(f"/api/organizer/scanner/stats?event_id={event_id}").get_json()["data"]
    assert stats["total_tickets"] == 2
    assert stats["validated"] == 1
    assert stats["pending"] == 1
    assert stats["validated_today"] == 1
    assert stats["validation_rate"] == 50.0

    history = organizer_client.get("/api/organizer/scanner/validations").get_json()["data"]["validations"]
    assert [t["pass_id"] for t in history] == [tickets[1]["pass_id"]]
    assert history[0]["event_title"] == live_event["title"]

    everyone = organizer_client.get("/api/organizer/attendees").get_json()["data"]
    assert everyone["total"] == 2
    waiting = organizer_client.get("/api/organizer/attendees?validated=false").get_json()["data"]["attendees"]
    assert [a["attendee_name"] for a in waiting] == ["Ann Lee"]
    found = organizer_client.get("/api/organizer/attendees?q=bo%20kim").get_json()["data"]["attendees"]
    assert [a["pass_id"] for a in found] == [tickets[1]["pass_id"]]
    assert organizer_client.get("/api/organizer/attendees?validated=maybe").status_code == 400


def test_stats_for_foreign_event(register_client, services, live_event):
    other = register_client("organizer")
    services.moderation.approve_organizer(other.account["profile"]["organizer_id"])
    resp = other.get(f"/api/organizer/scanner/stats?event_id={live_event['event_id']}")
    assert resp.status_code == 403
    empty = other.get("/api/organizer/scanner/stats").get_json()["data"]
    assert empty["total_tickets"] == 0
    assert empty["validation_rate"] == 0.0
