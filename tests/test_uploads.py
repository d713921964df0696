import os
from io import BytesIO

import pytest
from werkzeug.datastructures import FileStorage

from marketplace.errors import ValidationError
from marketplace.uploads import EVENT_BANNER, LOGO, LocalUploader

PNG = b"\x89PNG\r\n\x1a\n" + b"\x00" * 64


def _file(name="banner.png", data=PNG):
    return FileStorage(stream=BytesIO(data), filename=name)


@pytest.fixture
def uploader(tmp_path):
    return LocalUploader(str(tmp_path), "/uploads", {"png", "jpg"}, {EVENT_BANNER: 100, LOGO: 10})


def test_upload_stores_file_under_kind(uploader, tmp_path):
    url = uploader.upload(_file("My Banner!.png"), EVENT_BANNER, 3, 7)
    assert url.startswith("/uploads/event_banner/event_banner_3_7_")
    assert url.endswith("_My_Banner.png")
    stored = tmp_path / "event_banner" / url.rsplit("/", 1)[1]
    assert stored.read_bytes() == PNG


def test_upload_rejects_bad_extension(uploader):
    with pytest.raises(ValidationError) as exc:
        uploader.upload(_file("script.exe"), EVENT_BANNER, 1)
    assert exc.value.details["allowed"] == ["jpg", "png"]


def test_upload_enforces_size_per_kind(uploader):
    uploader.upload(_file(), EVENT_BANNER, 1)
    with pytest.raises(ValidationError) as exc:
        uploader.upload(_file(), LOGO, 1)
    assert exc.value.details["max_bytes"] == 10


def test_upload_requires_a_file(uploader):
    with pytest.raises(ValidationError):
        uploader.upload(None, EVENT_BANNER, 1)
    with pytest.raises(ValidationError):
        uploader.upload(_file(data=b""), EVENT_BANNER, 1)


def test_banner_endpoint_sets_event_banner(organizer_client, live_event, services, app):
    event_id = live_event["event_id"]
    resp = organizer_client.post(
        "/api/organizer/upload/banner",
        data={"event_id": str(event_id), "file": (BytesIO(PNG), "stage.png")},
        content_type="multipart/form-data",
    )
    assert resp.status_code == 201
    url = resp.get_json()["data"]["url"]
    assert services.store.events.find_one({"event_id": event_id})["banner_image"] == url
    assert os.path.exists(os.path.join(app.config["UPLOAD_FOLDER"], "event_banner", url.rsplit("/", 1)[1]))

    served = organizer_client.get(url)
    assert served.status_code == 200
    assert served.data == PNG


def test_ticket_banner_endpoint(organizer_client, live_event, services):
    event_id = live_event["event_id"]
    resp = organizer_client.post(
        "/api/organizer/upload/ticket-banner",
        data={"event_id": str(event_id), "ticket_type_id": "2", "file": (BytesIO(PNG), "vip.png")},
        content_type="multipart/form-data",
    )
    assert resp.status_code == 201
    event = services.store.events.find_one({"event_id": event_id})
    assert event["categories"][0]["ticket_types"][1]["banner"] == resp.get_json()["data"]["url"]

    resp = organizer_client.post(
        "/api/organizer/upload/ticket-banner",
        data={"event_id": str(event_id), "ticket_type_id": "9", "file": (BytesIO(PNG), "vip.png")},
        content_type="multipart/form-data",
    )
    assert resp.status_code == 404


def test_logo_and_profile_image(organizer_client, user_client, services):
    resp = organizer_client.post("/api/organizer/upload/logo", data={"file": (BytesIO(PNG), "logo.png")},
                                 content_type="multipart/form-data")
    assert resp.status_code == 201
    organizer_id = organizer_client.account["profile"]["organizer_id"]
    assert services.store.organizers.find_one({"organizer_id": organizer_id})["logo"] == resp.get_json()["data"]["url"]

    resp = user_client.post("/api/user/upload/profile-image", data={"file": (BytesIO(PNG), "me.jpg")},
                            content_type="multipart/form-data")
    assert resp.status_code == 201
    user_id = user_client.account["profile"]["user_id"]
    assert services.store.users.find_one({"user_id": user_id})["profile_image"].startswith("/uploads/profile_image/")

    resp = user_client.post("/api/user/upload/profile-image", data={"file": (BytesIO(PNG), "me.gifx")},
                            content_type="multipart/form-data")
    assert resp.status_code == 400


def test_banner_for_foreign_event_is_forbidden(register_client, services, live_event):
    other = register_client("organizer")
    services.moderation.approve_organizer(other.account["profile"]["organizer_id"])
    resp = other.post(
        "/api/organizer/upload/banner",
        data={"event_id": str(live_event["event_id"]), "file": (BytesIO(PNG), "x.png")},
        content_type="multipart/form-data",
    )
    assert resp.status_code == 403
