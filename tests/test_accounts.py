from conftest import ADMIN_EMAIL, PASSWORD


def test_register_user_logs_in_and_me_reports_profile(client):
    resp = client.post("/api/register", json={
        "email": "Jane@Example.com", "password": PASSWORD, "first_name": "Jane", "last_name": "Doe",
    })
    assert resp.status_code == 201
    body = resp.get_json()
    assert body["success"] is True
    assert body["data"]["account"]["email"] == "jane@example.com"
    assert body["data"]["account"]["role"] == "user"

    me = client.get("/api/me").get_json()["data"]
    assert me["account"]["role_id"] == me["profile"]["user_id"]
    assert me["profile"]["first_name"] == "Jane"
    assert "password_hash" not in me["account"]


def test_me_without_session(client):
    resp = client.get("/api/me")
    assert resp.status_code == 200
    assert resp.get_json()["data"] == {"account": None, "profile": None}


def test_duplicate_email_conflicts(client, register_client):
    register_client("user", email="dup@example.com")
    resp = client.post("/api/register", json={
        "email": "dup@example.com", "password": PASSWORD, "first_name": "A", "last_name": "B",
    })
    assert resp.status_code == 409
    assert resp.get_json()["details"] == {"field": "email"}


def test_admin_self_registration_is_refused(client):
    resp = client.post("/api/register", json={
        "email": "x@example.com", "password": PASSWORD, "role": "admin", "name": "X",
    })
    assert resp.status_code == 400
    assert resp.get_json()["success"] is False


def test_registration_validates_input(client):
    assert client.post("/api/register", json={"email": "bad", "password": PASSWORD}).status_code == 400
    resp = client.post("/api/register", json={"email": "a@example.com", "password": "123",
                                              "first_name": "A", "last_name": "B"})
    assert resp.status_code == 400
    assert resp.get_json()["details"]["field"] == "password"
    resp = client.post("/api/register", json={"email": "o@example.com", "password": PASSWORD, "role": "organizer"})
    assert resp.get_json()["details"]["field"] == "organization_name"
    assert client.post("/api/register", data="x", content_type="text/plain").status_code == 415


def test_login_rejects_wrong_password(client, register_client):
    register_client("user", email="u@example.com")
    resp = client.post("/api/login", json={"email": "u@example.com", "password": "wrong!"})
    assert resp.status_code == 401
    assert resp.get_json()["code"] == "unauthorized"


def test_login_records_last_login(client, register_client, services):
    register_client("user", email="u@example.com")
    resp = client.post("/api/login", json={"email": "u@example.com", "password": PASSWORD})
    assert resp.status_code == 200
    assert services.store.accounts.find_one({"email": "u@example.com"})["last_login"]


def test_protected_route_requires_session(client):
    resp = client.get("/api/cart")
    assert resp.status_code == 401
    assert resp.get_json() == {"success": False, "error": "Authentication required.", "code": "unauthorized"}
    assert client.post("/api/logout").status_code == 401


def test_pending_organizer_is_forbidden(register_client):
    organizer = register_client("organizer")
    assert organizer.account["profile"]["status"] == "pending"
    resp = organizer.get("/api/organizer/events")
    assert resp.status_code == 403


def test_update_profile_only_touches_whitelisted_fields(user_client, services):
    resp = user_client.put("/api/user/profile", json={"first_name": "Neo", "user_id": 999, "phone_number": "555"})
    assert resp.status_code == 200
    profile = resp.get_json()["data"]
    assert profile["first_name"] == "Neo"
    assert profile["phone_number"] == "555"
    assert profile["user_id"] != 999
    resp = user_client.put("/api/user/profile", json={"first_name": "  "})
    assert resp.status_code == 400


def test_change_password_rules(user_client, client):
    email = user_client.account["account"]["email"]
    weak = user_client.put("/api/user/password", json={"current_password": PASSWORD, "new_password": "longenough"})
    assert weak.status_code == 400
    wrong = user_client.put("/api/user/password", json={"current_password": "nope", "new_password": "Str0ng!pw"})
    assert wrong.status_code == 401
    same = user_client.put("/api/user/password", json={"current_password": PASSWORD, "new_password": PASSWORD})
    assert same.status_code == 400

    good = user_client.put("/api/user/password", json={"current_password": PASSWORD, "new_password": "Str0ng!pw"})
    assert good.status_code == 200
    assert client.post("/api/login", json={"email": email, "password": PASSWORD}).status_code == 401
    assert client.post("/api/login", json={"email": email, "password": "Str0ng!pw"}).status_code == 200


def test_change_email(user_client, register_client):
    other = register_client("user")
    taken = other.account["account"]["email"]
    resp = user_client.put("/api/user/email", json={"email": taken, "password": PASSWORD})
    assert resp.status_code == 409
    resp = user_client.put("/api/user/email", json={"email": "fresh@example.com", "password": "bad"})
    assert resp.status_code == 401
    resp = user_client.put("/api/user/email", json={"email": "fresh@example.com", "password": PASSWORD})
    assert resp.status_code == 200
    assert resp.get_json()["data"]["account"]["email"] == "fresh@example.com"
    assert resp.get_json()["data"]["account"]["email_verified"] is False


def test_default_admin_is_seeded_once(app, services):
    assert services.store.accounts.count_documents({"email": ADMIN_EMAIL}) == 1
    services.accounts.ensure_default_admin(ADMIN_EMAIL, "whatever")
    assert services.store.accounts.count_documents({"email": ADMIN_EMAIL}) == 1


def test_admin_creates_admin_and_manages_users(admin_client, user_client, services):
    resp = admin_client.post("/api/admin/admins", json={
        "email": "second@example.com", "password": PASSWORD, "name": "Second",
    })
    assert resp.status_code == 201
    assert resp.get_json()["data"]["account"]["role"] == "admin"

    users = admin_client.get("/api/admin/users?q=test").get_json()["data"]
    assert users["pagination"]["total"] == 1
    assert users["users"][0]["email"] == user_client.account["account"]["email"]

    account_id = user_client.account["account"]["account_id"]
    assert admin_client.delete(f"/api/admin/users/{account_id}").status_code == 200
    assert services.store.accounts.find_one({"account_id": account_id}) is None
    assert services.store.users.count_documents({}) == 0


def test_admin_cannot_delete_self(admin_client, services):
    me = admin_client.get("/api/me").get_json()["data"]["account"]
    resp = admin_client.delete(f"/api/admin/users/{me['account_id']}")
    assert resp.status_code == 409


def test_admin_routes_forbidden_to_users(user_client):
    resp = user_client.get("/api/admin/users")
    assert resp.status_code == 403
    assert resp.get_json()["code"] == "forbidden"
