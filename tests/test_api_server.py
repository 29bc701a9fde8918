"""HTTP surface: webhook acknowledgment, verification handshake, admin broadcast, health."""

import pytest
from fastapi.testclient import TestClient

import api_server
from nelo.schemas.core import WhatsAppWebhook
from nelo.utils.config import settings


def webhook_payload(*texts):
    return {
        "object": "whatsapp_business_account",
        "entry": [{
            "id": "waba",
            "changes": [{
                "field": "messages",
                "value": {
                    "messages": [
                        {"from": "2348012345678", "id": f"wamid.{i}", "timestamp": "1700000000",
                         "type": "text", "text": {"body": text}}
                        for i, text in enumerate(texts)
                    ],
                },
            }],
        }],
    }


class FakeEngine:
    def __init__(self):
        self.calls = []

    async def process_message(self, user_id, text, whatsapp_number=None):
        self.calls.append((user_id, text))
        return f"echo: {text}"


class FakeDispatcher:
    def __init__(self):
        self.sent = []

    async def send(self, user_id, message):
        self.sent.append((user_id, message))
        return True

    async def broadcast(self, message, limit=50):
        return {"total": limit, "sent": limit, "failed": 0}


@pytest.fixture
def client(monkeypatch):
    engine, dispatcher = FakeEngine(), FakeDispatcher()
    monkeypatch.setattr(api_server, "services", {"engine": engine, "dispatcher": dispatcher})
    spawned = []
    monkeypatch.setattr(api_server, "_spawn", spawned.append)
    test_client = TestClient(api_server.app)
    test_client.engine = engine
    test_client.dispatcher = dispatcher
    test_client.spawned = spawned
    return test_client


def test_webhook_acknowledges_and_spawns_one_task_per_message(client):
    response = client.post("/whatsapp/webhook", json=webhook_payload("balance", "help"))

    assert response.status_code == 200
    assert response.json() == {"status": "received"}
    assert [m.text.body for m in client.spawned] == ["balance", "help"]


@pytest.mark.parametrize("body", [{"entry": "nope"}, {"object": "x"}, []])
def test_malformed_webhook_is_still_acknowledged(client, body):
    response = client.post("/whatsapp/webhook", json=body)

    assert response.status_code == 200
    assert response.json() == {"status": "received"}
    assert client.spawned == []


def test_non_json_webhook_is_still_acknowledged(client):
    response = client.post("/whatsapp/webhook", content=b"not json", headers={"Content-Type": "text/plain"})

    assert response.status_code == 200
    assert client.spawned == []


async def test_handle_text_message_replies_through_dispatcher(monkeypatch):
    engine, dispatcher = FakeEngine(), FakeDispatcher()
    monkeypatch.setattr(api_server, "services", {"engine": engine, "dispatcher": dispatcher})
    [message] = WhatsAppWebhook(**webhook_payload("balance")).text_messages()

    await api_server.handle_text_message(message)

    assert engine.calls == [("2348012345678", "balance")]
    assert dispatcher.sent == [("2348012345678", "echo: balance")]


def test_verify_handshake(client, monkeypatch):
    monkeypatch.setattr(settings, "whatsapp_verify_token", "s3cret")

    ok = client.get("/whatsapp/webhook", params={
        "hub.mode": "subscribe", "hub.verify_token": "s3cret", "hub.challenge": "12345",
    })
    bad = client.get("/whatsapp/webhook", params={
        "hub.mode": "subscribe", "hub.verify_token": "wrong", "hub.challenge": "12345",
    })

    assert ok.status_code == 200
    assert ok.text == "12345"
    assert bad.status_code == 403


def test_broadcast_requires_api_key(client, monkeypatch):
    monkeypatch.setattr(settings, "admin_api_key", "admin-key")

    denied = client.post("/admin/broadcast", json={"message": "hi"})
    allowed = client.post("/admin/broadcast", json={"message": "hi", "limit": 5}, headers={"X-API-Key": "admin-key"})

    assert denied.status_code == 401
    assert allowed.status_code == 200
    assert allowed.json()["data"] == {"total": 5, "sent": 5, "failed": 0}


def test_broadcast_validates_body(client, monkeypatch):
    monkeypatch.setattr(settings, "admin_api_key", "admin-key")

    response = client.post("/admin/broadcast", json={"message": ""}, headers={"X-API-Key": "admin-key"})

    assert response.status_code == 422


def test_health(client):
    response = client.get("/health")

    assert response.status_code == 200
    assert response.json()["status"] == "healthy"
