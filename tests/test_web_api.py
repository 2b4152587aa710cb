from __future__ import annotations

import io
import logging
import zipfile

import pytest

pytest.importorskip("fastapi")
pytest.importorskip("httpx")

from fastapi.testclient import TestClient

from image_optimizer.services.storage import SessionRepository
from image_optimizer.web import create_app


def _client(config) -> TestClient:
    repository = SessionRepository(config)
    app = create_app(repository, config=config)
    return TestClient(app)


def _convert(client: TestClient, make_image, *names: str, fmt: str = "webp", session: str = "sess1"):
    files = [("images", (name, make_image("PNG"), "image/png")) for name in names]
    return client.post(
        "/api/convert",
        data={"format": fmt, "sessionId": session},
        files=files,
    )


def test_health_endpoint(temp_config) -> None:
    with _client(temp_config) as client:
        response = client.get("/api/health")

    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


def test_convert_returns_descriptors(temp_config, make_image) -> None:
    with _client(temp_config) as client:
        response = _convert(client, make_image, "cat.png")

    assert response.status_code == 200
    payload = response.json()
    assert payload["sessionId"] == "sess1"
    assert payload["failures"] == []
    [descriptor] = payload["files"]
    assert descriptor["displayName"] == "cat"
    assert descriptor["storageName"] == "cat.webp"
    assert descriptor["thumbnailName"] == "cat_webp_thumb.webp"
    assert descriptor["format"] == "webp"
    assert descriptor["originalSize"] > 0


def test_convert_rejects_unsupported_format(temp_config, make_image) -> None:
    with _client(temp_config) as client:
        response = _convert(client, make_image, "cat.png", fmt="gif")
        listing = client.get("/api/convert", params={"sessionId": "sess1"})

    assert response.status_code == 400
    assert response.json()["detail"]["error"] == "UnsupportedFormat"
    assert listing.json()["files"] == []
    assert not (temp_config.sessions_root / "sess1").exists()


def test_convert_reports_partial_failures(temp_config, make_image) -> None:
    with _client(temp_config) as client:
        response = client.post(
            "/api/convert",
            data={"format": "png", "sessionId": "sess1"},
            files=[
                ("images", ("ok.png", make_image("PNG"), "image/png")),
                ("images", ("anim.gif", make_image("GIF"), "image/gif")),
            ],
        )

    assert response.status_code == 200
    payload = response.json()
    assert [item["storageName"] for item in payload["files"]] == ["ok.png"]
    assert payload["failures"] == [
        {
            "name": "anim.gif",
            "error": "UnsupportedMediaType",
            "message": "'anim.gif' has unsupported type 'image/gif'",
        }
    ]


def test_convert_fails_when_every_item_fails(temp_config, make_image) -> None:
    with _client(temp_config) as client:
        response = client.post(
            "/api/convert",
            data={"format": "webp", "sessionId": "sess1"},
            files=[("images", ("anim.gif", make_image("GIF"), "image/gif"))],
        )

    assert response.status_code == 400
    detail = response.json()["detail"]
    assert detail["error"] == "UnsupportedMediaType"
    assert detail["failures"][0]["name"] == "anim.gif"


def test_convert_rejects_session_id_that_needs_sanitising(temp_config, make_image) -> None:
    with _client(temp_config) as client:
        response = _convert(client, make_image, "cat.png", session="a/b")

    assert response.status_code == 400
    assert response.json()["detail"]["error"] == "InvalidPath"
    assert not (temp_config.sessions_root / "ab").exists()


def test_repository_events_carry_request_id(temp_config, make_image, caplog) -> None:
    with caplog.at_level(logging.DEBUG, logger="image_optimizer.web.events"):
        with _client(temp_config) as client:
            response = _convert(client, make_image, "cat.png")

    assert response.status_code == 200
    db_events = [
        record for record in caplog.records if getattr(record, "event_type", None) == "DB_QUERY"
    ]
    assert db_events
    assert all(record.name == "image_optimizer.web.events" for record in db_events)
    assert any("request_id" in record.event_details for record in db_events)


def test_reconvert_fields_are_honoured(temp_config, make_image) -> None:
    with _client(temp_config) as client:
        _convert(client, make_image, "cat.png")
        response = client.post(
            "/api/convert",
            data={
                "format": "jpeg",
                "sessionId": "sess1",
                "reconvertFrom[]": ["cat", "ghost"],
                "reconvertName[]": ["kitty", ""],
            },
        )

    assert response.status_code == 200
    payload = response.json()
    [descriptor] = payload["files"]
    assert descriptor["displayName"] == "kitty"
    assert descriptor["storageName"].startswith("kitty_")
    assert [failure["error"] for failure in payload["failures"]] == ["SourceNotFound"]


def test_list_files_self_heals(temp_config, make_image) -> None:
    with _client(temp_config) as client:
        _convert(client, make_image, "cat.png", "dog.png")
        (temp_config.sessions_root / "sess1" / "output" / "dog.webp").unlink()
        response = client.get("/api/convert", params={"sessionId": "sess1"})

    assert response.status_code == 200
    assert [item["storageName"] for item in response.json()["files"]] == ["cat.webp"]


def test_list_requires_session(temp_config) -> None:
    with _client(temp_config) as client:
        response = client.get("/api/convert")

    assert response.status_code == 400


def test_delete_single_then_all(temp_config, make_image) -> None:
    with _client(temp_config) as client:
        _convert(client, make_image, "cat.png", "dog.png")

        response = client.delete("/api/convert", params={"sessionId": "sess1", "file": "cat.webp"})
        assert response.status_code == 200
        assert response.json() == {"status": "deleted"}
        listing = client.get("/api/convert", params={"sessionId": "sess1"})
        assert [item["storageName"] for item in listing.json()["files"]] == ["dog.webp"]

        response = client.delete("/api/convert", params={"sessionId": "sess1"})
        assert response.json() == {"status": "deleted"}

        missing = client.delete("/api/convert", params={"file": "dog.webp"})

    assert missing.status_code == 400
    assert not (temp_config.sessions_root / "sess1").exists()


def test_download_and_thumbnail_headers(temp_config, make_image) -> None:
    with _client(temp_config) as client:
        _convert(client, make_image, "cat.png")
        download = client.get("/api/download", params={"session": "sess1", "file": "cat.webp"})
        thumbnail = client.get(
            "/api/thumbnail", params={"session": "sess1", "file": "cat_webp_thumb.webp"}
        )

    assert download.status_code == 200
    assert download.headers["content-type"] == "image/webp"
    assert download.headers["content-disposition"] == 'attachment; filename="cat.webp"'
    assert download.content[:4] == b"RIFF"

    assert thumbnail.status_code == 200
    assert thumbnail.headers["content-type"] == "image/webp"
    assert thumbnail.headers["content-disposition"].startswith("inline")


@pytest.mark.parametrize(
    "params, status_code",
    [
        ({"session": "sess1", "file": "../image-optimizer.sqlite"}, 400),
        ({"session": "../etc", "file": "cat.webp"}, 400),
        ({"session": "sess1", "file": "missing.webp"}, 404),
        ({"session": "sess1"}, 400),
    ],
)
def test_download_rejects_bad_requests(temp_config, params, status_code) -> None:
    with _client(temp_config) as client:
        response = client.get("/api/download", params=params)

    assert response.status_code == status_code


def test_archive_bundles_outputs(temp_config, make_image) -> None:
    with _client(temp_config) as client:
        _convert(client, make_image, "cat.png", "dog.png")
        response = client.get("/api/archive", params={"session": "sess1"})
        empty = client.get("/api/archive", params={"session": "nobody"})

    assert response.status_code == 200
    assert response.headers["content-type"] == "application/zip"
    with zipfile.ZipFile(io.BytesIO(response.content)) as archive:
        assert sorted(archive.namelist()) == ["cat.webp", "dog.webp"]
    assert empty.status_code == 404


def test_cors_preflight_is_supported(temp_config) -> None:
    with _client(temp_config) as client:
        response = client.options(
            "/api/convert",
            headers={
                "Origin": "http://example.com",
                "Access-Control-Request-Method": "POST",
            },
        )

    assert response.status_code == 200
    assert response.headers["access-control-allow-origin"] in {"*", "http://example.com"}


def test_shutdown_closes_repository(temp_config) -> None:
    repository = SessionRepository(temp_config)
    app = create_app(repository, config=temp_config)

    with TestClient(app):
        assert not repository.closed

    assert repository.closed
