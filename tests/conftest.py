import itertools

import mongomock
import pytest

from marketplace import create_app

ADMIN_EMAIL = "admin@example.com"
ADMIN_PASSWORD = "Admin123!"
PASSWORD = "secret1"


def event_payload(**overrides):
    payload = {
        "title": "Summer Night Live",
        "description": "Open air concert",
        "start_date": "2030-06-01T18:00:00+00:00",
        "end_date": "2030-06-01T23:00:00+00:00",
        "venue_name": "City Park",
        "categories": [
            {
                "name": "Standing",
                "ticket_types": [
                    {"name": "General", "price": "25.50", "quantity_available": 5, "max_per_order": 4},
                    {"name": "Early Bird", "price": 10, "quantity_available": 2},
                ],
            }
        ],
    }
    payload.update(overrides)
    return payload


@pytest.fixture
def database():
    return mongomock.MongoClient()["marketplace_test"]


@pytest.fixture
def app(database, tmp_path):
    return create_app(
        {
            "TESTING": True,
            "SECRET_KEY": "test-secret",
            "LOG_LEVEL": "WARNING",
            "PASSWORD_HASH_METHOD": "pbkdf2:sha256:1000",
            "DEFAULT_ADMIN_EMAIL": ADMIN_EMAIL,
            "DEFAULT_ADMIN_PASSWORD": ADMIN_PASSWORD,
            "UPLOAD_FOLDER": str(tmp_path / "uploads"),
        },
        database=database,
    )


@pytest.fixture
def services(app):
    return app.extensions["marketplace"]


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def admin_client(app):
    client = app.test_client()
    resp = client.post("/api/login", json={"email": ADMIN_EMAIL, "password": ADMIN_PASSWORD})
    assert resp.status_code == 200, resp.get_json()
    return client


@pytest.fixture
def register_client(app):
    counter = itertools.count(1)

    def _register(role="user", **fields):
        n = next(counter)
        client = app.test_client()
        payload = {"email": f"{role}{n}@example.com", "password": PASSWORD, "role": role}
        if role == "organizer":
            payload["organization_name"] = f"Org {n}"
        else:
            payload.update(first_name="Test", last_name=f"User{n}")
        payload.update(fields)
        resp = client.post("/api/register", json=payload)
        assert resp.status_code == 201, resp.get_json()
        client.account = resp.get_json()["data"]
        return client

    return _register


@pytest.fixture
def organizer_client(register_client, services):
    client = register_client("organizer")
    services.moderation.approve_organizer(client.account["profile"]["organizer_id"])
    return client


@pytest.fixture
def user_client(register_client):
    return register_client("user")


@pytest.fixture
def create_event(organizer_client, services):
    def _create(client=None, approve=True, **overrides):
        resp = (client or organizer_client).post("/api/organizer/events", json=event_payload(**overrides))
        assert resp.status_code == 201, resp.get_json()
        event = resp.get_json()["data"]
        if approve:
            services.moderation.approve_event(event["event_id"])
        return event

    return _create


@pytest.fixture
def live_event(create_event):
    return create_event()


def remaining(services, event_id, ticket_type_id):
    event = services.store.events.find_one({"event_id": event_id})
    for category in event["categories"]:
        for t in category["ticket_types"]:
            if t["ticket_type_id"] == ticket_type_id:
                return t["quantity_available"]
    raise AssertionError("ticket type missing")


def buy(client, event_id, ticket_type_id, quantity, **extra):
    resp = client.post(
        "/api/cart",
        json={"event_id": event_id, "ticket_type_id": ticket_type_id, "quantity": quantity, **extra},
    )
    assert resp.status_code == 201, resp.get_json()
    resp = client.post("/api/checkout", json={"payment_method": "card"})
    return resp
