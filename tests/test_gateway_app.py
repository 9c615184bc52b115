"""HTTP surface tests using FastAPI's TestClient."""

import time

import pytest
from fastapi.testclient import TestClient

from conftest import make_image_bytes
from photocheck_gateway.app import GatewayConfig, create_app
from photocheck_gateway.records import (
    STATUS_ACCEPTED,
    STATUS_AWAITING_UPLOAD,
    STATUS_VERIFYING,
    TERMINAL_STATUSES,
)


@pytest.fixture
def app(tmp_path):
    config = GatewayConfig(
        storage_type="local",
        local_storage_dir=tmp_path / "objects",
        local_storage_base_url="http://testserver/v1/storage",
        verification_retry_delay_ms=10,
        verify_backoff_delay=0.01,
        validate_backoff_delay=0.01,
    )
    return create_app(config)


def _sign(client, **overrides):
    body = {"filename": "portrait.JPG", "contentType": "image/jpeg", "fileSize": 200_000}
    body.update(overrides)
    return client.post("/v1/uploads/sign", json=body)


def _wait_for_terminal(client, image_id, timeout=10.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        body = client.get(f"/v1/images/{image_id}").json()
        if body["status"] in TERMINAL_STATUSES:
            return body
        time.sleep(0.05)
    raise AssertionError(f"image {image_id} never reached a terminal status")


def test_sign_creates_awaiting_record(app):
    with TestClient(app) as client:
        response = _sign(client)
        assert response.status_code == 200
        body = response.json()

        assert body["key"] == f"uploads/{body['imageId']}.jpg"
        assert body["uploadUrl"] == f"http://testserver/v1/storage/{body['key']}"
        assert "expiresAt" in body

        record = client.get(f"/v1/images/{body['imageId']}").json()
        assert record["status"] == STATUS_AWAITING_UPLOAD
        assert record["originalName"] == "portrait.JPG"
        assert record["fileSize"] == 200_000


@pytest.mark.parametrize(
    "overrides",
    [
        {"contentType": "image/gif"},
        {"fileSize": 0},
        {"fileSize": 8_000_001},
        {"filename": ""},
        {"filename": "x" * 256},
    ],
)
def test_sign_rejects_invalid_requests(app, overrides):
    with TestClient(app) as client:
        response = _sign(client, **overrides)

    assert response.status_code == 400
    assert response.json()["error"] == "VALIDATION_ERROR"
    assert response.json()["retryable"] is False


def test_complete_unknown_image_is_404(app):
    with TestClient(app) as client:
        response = client.post("/v1/uploads/complete", json={"imageId": "does-not-exist"})

    assert response.status_code == 404
    assert response.json()["error"] == "NOT_FOUND"


def test_get_unknown_image_is_404(app):
    with TestClient(app) as client:
        response = client.get("/v1/images/nope")

    assert response.status_code == 404


def test_full_upload_flow_reaches_accepted(app):
    data = make_image_bytes(700, 500)
    with TestClient(app) as client:
        slot = _sign(client, fileSize=len(data)).json()
        put = client.put(f"/v1/storage/{slot['key']}", content=data)
        assert put.status_code == 200

        first = client.post("/v1/uploads/complete", json={"imageId": slot["imageId"]}).json()
        second = client.post("/v1/uploads/complete", json={"imageId": slot["imageId"]}).json()
        final = _wait_for_terminal(client, slot["imageId"])

        listed = client.get("/v1/images", params={"status": STATUS_ACCEPTED}).json()

    assert first["started"] is True
    assert first["status"] == STATUS_VERIFYING
    assert second["started"] is False
    assert second["imageId"] == slot["imageId"]
    assert final["status"] == STATUS_ACCEPTED
    assert (final["width"], final["height"]) == (700, 500)
    assert final["rejectionReasons"] == []
    assert [image["id"] for image in listed["images"]] == [slot["imageId"]]


def test_list_rejects_unknown_status(app):
    with TestClient(app) as client:
        response = client.get("/v1/images", params={"status": "DONE"})

    assert response.status_code == 400


def test_storage_put_refuses_path_traversal(app):
    with TestClient(app) as client:
        response = client.put("/v1/storage/..%2F..%2Fescape.jpg", content=b"data")

    assert response.status_code == 503
    assert response.json()["error"] == "STORAGE_ERROR"


def test_health_reports_queues(app):
    with TestClient(app) as client:
        body = client.get("/health").json()

    assert body["status"] == "healthy"
    assert body["record_store"] == "InMemoryRecordStore"
    assert body["queues"]["verify-upload"]["concurrency"] == 20
    assert body["queues"]["validate-image"]["concurrency"] == 5
