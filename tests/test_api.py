import pytest
from fastapi.testclient import TestClient

from scheduled_mail_service import api
from scheduled_mail_service.api import create_app, API_TOKEN_HEADER_NAME


API_TOKEN = "secret-token"

ITEM = {
    "id": "item-1",
    "subscription_id": "sub",
    "to": "x@y.com",
    "subject": "Hello",
    "body": "Body",
    "scheduled_at": "2024-05-01T10:00:00Z",
    "next_run": "2024-05-01T10:00:00Z",
    "is_recurring": False,
    "last_sent": None,
    "status": "scheduled",
    "attempts": 0,
    "error_message": None,
}


class DummyMetrics:
    def generate_latest(self):
        return b"metrics-data"


class DummyService:
    def __init__(self):
        self.calls = []
        self.metrics = DummyMetrics()

    async def handle_command(self, cmd, payload):
        self.calls.append((cmd, payload))
        if cmd == "scheduleEmail":
            return {"ok": True, "item": dict(ITEM) if payload.get("send_email") else None}
        if cmd == "listScheduled":
            return {"ok": True, "items": [dict(ITEM)]}
        if cmd == "deleteBySubscription":
            return {"ok": True, "removed": 2}
        if cmd == "sendItem":
            if payload["id"] == "done":
                return {"ok": False, "error": "item 'done' is sent"}
            if payload["id"] != ITEM["id"]:
                return {"ok": False, "error": "item 'nope' not found"}
            return {"ok": True, "item": dict(ITEM, status="sent")}
        return {"ok": True}


@pytest.fixture(autouse=True)
def reset_service():
    original = api.service
    original_token = getattr(api.app.state, "api_token", None)
    api.service = None
    api.app.state.api_token = None
    try:
        yield
    finally:
        api.service = original
        api.app.state.api_token = original_token


@pytest.fixture
def client_and_service():
    svc = DummyService()
    client = TestClient(create_app(svc, api_token=API_TOKEN))
    client.headers.update({API_TOKEN_HEADER_NAME: API_TOKEN})
    return client, svc


def test_returns_500_when_service_missing():
    create_app(DummyService(), api_token=API_TOKEN)
    api.service = None
    client = TestClient(api.app)
    response = client.post("/commands/run-now", headers={API_TOKEN_HEADER_NAME: API_TOKEN})
    assert response.status_code == 500
    assert response.json()["detail"] == "Service not initialized"


def test_rejects_missing_token():
    client = TestClient(create_app(DummyService(), api_token=API_TOKEN))
    response = client.get("/status")
    assert response.status_code == 401
    assert response.json()["detail"] == "Invalid or missing API token"


def test_schedule_and_list(client_and_service):
    client, svc = client_and_service

    assert client.get("/status").json() == {"ok": True}

    response = client.post(
        "/scheduled",
        json={
            "subscription_id": "sub",
            "to": "x@y.com",
            "subject": "Hello",
            "body": "Body",
            "scheduled_at": "2024-05-01T10:00:00Z",
            "send_email": True,
        },
    )
    assert response.status_code == 200
    assert response.json()["item"]["id"] == "item-1"
    cmd, payload = svc.calls[-1]
    assert cmd == "scheduleEmail"
    assert payload["send_email"] is True
    assert payload["scheduled_at"].isoformat() == "2024-05-01T10:00:00+00:00"

    listed = client.get("/scheduled").json()
    assert [i["id"] for i in listed["items"]] == ["item-1"]


def test_schedule_without_delivery_flag_returns_empty_item(client_and_service):
    client, _ = client_and_service
    response = client.post("/scheduled", json={"to": "x@y.com", "scheduled_at": "2024-05-01T10:00:00Z"})
    assert response.status_code == 200
    assert response.json() == {"ok": True}


def test_delete_run_now_and_send_item(client_and_service):
    client, svc = client_and_service

    assert client.delete("/scheduled/sub").json() == {"ok": True, "removed": 2}
    assert client.post("/commands/run-now").json()["ok"] is True
    assert client.post("/subscription", json={"id": "sub", "send_email": False}).json()["ok"] is True
    assert client.post("/commands/send-item/item-1").json()["item"]["status"] == "sent"
    assert client.post("/commands/send-item/nope").status_code == 404

    assert svc.calls == [
        ("deleteBySubscription", {"subscription_id": "sub"}),
        ("run now", {}),
        ("addSubscription", {"id": "sub", "send_email": False}),
        ("sendItem", {"id": "item-1"}),
        ("sendItem", {"id": "nope"}),
    ]


def test_send_item_conflict_for_item_no_longer_scheduled(client_and_service):
    client, _ = client_and_service
    response = client.post("/commands/send-item/done")
    assert response.status_code == 409
    assert response.json()["detail"] == "item 'done' is sent"


def test_metrics_endpoint(client_and_service):
    client, _ = client_and_service
    response = client.get("/metrics")
    assert response.status_code == 200
    assert response.content == b"metrics-data"
