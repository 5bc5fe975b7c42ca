import hashlib
import hmac
import json

import httpx
import pytest

from inboxflow.main import create_app
from inboxflow.messaging.domain.value_objects import RawEventStatus
from inboxflow.messaging.infrastructure.models import RawWebhookEventModel
from inboxflow.shared.infrastructure.queue.job_queue import webhook_job_id


@pytest.fixture
async def client(container):
    app = create_app(container)
    async with httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test") as c:
        yield c


def sign(secret: str, body: bytes) -> str:
    return "sha256=" + hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()


async def test_verify_echoes_challenge(client):
    r = await client.get(
        "/api/webhook",
        params={"hub.mode": "subscribe", "hub.verify_token": "verify-me", "hub.challenge": "1158201444"},
    )
    assert r.status_code == 200
    assert r.text == "1158201444"


async def test_verify_rejects_wrong_token(client):
    r = await client.get(
        "/api/webhook",
        params={"hub.mode": "subscribe", "hub.verify_token": "nope", "hub.challenge": "42"},
    )
    assert r.status_code == 403


async def test_post_persists_raw_event_and_enqueues_job(client, container, seed, payloads, pipeline):
    tenant = await seed.tenant()
    r = await client.post("/api/webhook", json=payloads.text("wamid.A", "hello"))
    assert r.status_code == 200

    [event] = await pipeline.rows(RawWebhookEventModel)
    assert event.status == RawEventStatus.PENDING
    assert event.tenant_id == tenant.id
    assert event.routing_key == "PNID-1"
    assert event.payload["field"] == "messages"
    assert event.payload["value"]["messages"][0]["id"] == "wamid.A"

    job = await container.webhook_queue.claim()
    assert job.id == webhook_job_id(event.id)
    assert job.payload == {"raw_event_id": str(event.id)}


async def test_post_without_known_tenant_is_still_accepted(client, payloads, pipeline):
    r = await client.post("/api/webhook", json=payloads.text("wamid.A", "hello", phone_number_id="UNKNOWN"))
    assert r.status_code == 200
    [event] = await pipeline.rows(RawWebhookEventModel)
    assert event.tenant_id is None


async def test_one_row_per_change(client, payloads, pipeline):
    body = payloads.text("wamid.A", "one")
    body["entry"][0]["changes"].append(payloads.text("wamid.B", "two")["entry"][0]["changes"][0])
    await client.post("/api/webhook", json=body)
    assert len(await pipeline.rows(RawWebhookEventModel)) == 2


async def test_invalid_json_is_rejected(client, pipeline):
    r = await client.post("/api/webhook", content=b"{not json", headers={"content-type": "application/json"})
    assert r.status_code == 400
    assert await pipeline.rows(RawWebhookEventModel) == []


async def test_foreign_object_is_rejected(client):
    r = await client.post("/api/webhook", json={"object": "page", "entry": []})
    assert r.status_code == 400


async def test_signature_checked_when_app_secret_set(client, container, payloads, pipeline):
    container.webhook_service.app_secret = "app-secret-123"
    body = json.dumps(payloads.text("wamid.A", "hello")).encode()

    bad = await client.post("/api/webhook", content=body, headers={"X-Hub-Signature-256": "sha256=deadbeef"})
    assert bad.status_code == 401
    missing = await client.post("/api/webhook", content=body)
    assert missing.status_code == 401

    ok = await client.post(
        "/api/webhook", content=body, headers={"X-Hub-Signature-256": sign("app-secret-123", body)},
    )
    assert ok.status_code == 200
    assert len(await pipeline.rows(RawWebhookEventModel)) == 1


async def test_health(client):
    assert (await client.get("/health")).json() == {"status": "ok"}
    db = await client.get("/health/db")
    assert db.status_code == 200
    assert db.json()["ok"] is True
    assert (await client.get("/health/redis")).json()["status"] == "not_configured"


async def test_correlation_id_is_echoed(client):
    r = await client.get("/health", headers={"X-Correlation-ID": "req-123"})
    assert r.headers["X-Correlation-ID"] == "req-123"
    generated = await client.get("/health")
    assert generated.headers["X-Correlation-ID"]
