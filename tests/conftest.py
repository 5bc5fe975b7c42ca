import json
from datetime import datetime, timezone
from typing import Any, Optional
from uuid import UUID

import httpx
import pytest
from cryptography.fernet import Fernet
from sqlalchemy import select

from inboxflow.conversation.domain.value_objects import TriggerType
from inboxflow.conversation.infrastructure.models import FlowModel
from inboxflow.di import build_container
from inboxflow.messaging.domain.value_objects import MessageDirection, MessageStatus, MessageType, TemplateStatus
from inboxflow.messaging.infrastructure.models import (
    ConversationModel,
    MessageModel,
    MessageTemplateModel,
    TenantModel,
    WhatsAppCredentialModel,
)
from inboxflow.shared.config import Settings
from inboxflow.shared.infrastructure.database.session import DatabaseSessionFactory
from inboxflow.shared.infrastructure.messaging.event_bus import WILDCARD, RealtimeEvent

PHONE_NUMBER_ID = "PNID-1"
WABA_ID = "WABA-1"
ACCESS_TOKEN = "EAAG-test-token"


class FakeClock:
    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class RecordingSubscriber:
    def __init__(self):
        self.events: list[RealtimeEvent] = []

    async def __call__(self, event: RealtimeEvent) -> None:
        self.events.append(event)

    @property
    def types(self) -> list[str]:
        return [e.type for e in self.events]

    def of_type(self, event_type: str) -> list[RealtimeEvent]:
        return [e for e in self.events if e.type == event_type]


class GraphApiStub:
    """httpx MockTransport handler: records requests, replays queued responses (default: success)."""

    def __init__(self):
        self.requests: list[httpx.Request] = []
        self.responses: list[httpx.Response] = []
        self._counter = 0

    def queue(self, status_code: int, body: Optional[dict[str, Any]] = None, headers: Optional[dict[str, str]] = None) -> None:
        self.responses.append(httpx.Response(status_code, json=body or {}, headers=headers))

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.responses:
            return self.responses.pop(0)
        self._counter += 1
        return httpx.Response(200, json={"messages": [{"id": f"wamid.OUT{self._counter}"}]})

    def sent_payloads(self) -> list[dict[str, Any]]:
        return [json.loads(r.content) for r in self.requests]


class Seeder:
    def __init__(self, container):
        self.container = container

    async def tenant(self, *, messages_per_minute: int = 60, phone_number_id: str = PHONE_NUMBER_ID,
                     waba_id: str = WABA_ID, is_valid: bool = True) -> TenantModel:
        async with self.container.sessions.transaction() as session:
            tenant = TenantModel(name="Acme", messages_per_minute=messages_per_minute)
            session.add(tenant)
            await session.flush()
            session.add(
                WhatsAppCredentialModel(
                    tenant_id=tenant.id,
                    phone_number_id=phone_number_id,
                    waba_id=waba_id,
                    display_phone_number="+15550001111",
                    access_token_ciphertext=self.container.encryption.encrypt(ACCESS_TOKEN),
                    is_valid=is_valid,
                )
            )
        return tenant

    async def flow(self, tenant_id: UUID, trigger_type: TriggerType, nodes: list, edges: list, *,
                   keywords: Optional[str] = None, is_active: bool = True, name: str = "flow") -> FlowModel:
        async with self.container.sessions.transaction() as session:
            flow = FlowModel(
                tenant_id=tenant_id,
                name=name,
                trigger_type=trigger_type,
                trigger_keywords=keywords,
                nodes=nodes,
                edges=edges,
                is_active=is_active,
            )
            session.add(flow)
        return flow

    async def outbound(self, tenant_id: UUID, body: str, *, to_phone: str = "+15551234567",
                       status: MessageStatus = MessageStatus.PENDING,
                       external_message_id: Optional[str] = None) -> MessageModel:
        async with self.container.sessions.transaction() as session:
            conversation = (
                await session.execute(
                    select(ConversationModel).where(
                        ConversationModel.tenant_id == tenant_id, ConversationModel.contact_phone == to_phone,
                    )
                )
            ).scalar_one_or_none()
            if conversation is None:
                conversation = ConversationModel(tenant_id=tenant_id, contact_phone=to_phone)
                session.add(conversation)
                await session.flush()
            message = MessageModel(
                tenant_id=tenant_id,
                conversation_id=conversation.id,
                direction=MessageDirection.OUTBOUND,
                status=status,
                type=MessageType.TEXT,
                from_phone=PHONE_NUMBER_ID,
                to_phone=to_phone,
                content=body,
                external_message_id=external_message_id,
                timestamp=datetime.now(timezone.utc),
            )
            session.add(message)
        return message

    async def template(self, tenant_id: UUID, *, name: str = "order_update", language: str = "en_US") -> MessageTemplateModel:
        async with self.container.sessions.transaction() as session:
            template = MessageTemplateModel(
                tenant_id=tenant_id, name=name, language=language, category="UTILITY", status=TemplateStatus.PENDING,
            )
            session.add(template)
        return template


class Pipeline:
    """Drives ingestion, processing and flow polling the way the workers do."""

    def __init__(self, container):
        self.container = container

    async def deliver(self, payload: dict[str, Any]) -> list[UUID]:
        result = await self.container.webhook_service.ingest(payload)
        for raw_event_id in result.persisted:
            await self.container.event_processor.process(raw_event_id)
        return result.persisted

    async def run_flows(self, now: Optional[datetime] = None) -> int:
        return await self.container.flow_poller().poll_once(now)

    async def rows(self, model, *criteria) -> list:
        async with self.container.sessions.session() as session:
            stmt = select(model).where(*criteria).order_by(model.created_at)
            return list((await session.execute(stmt)).scalars())

    async def get(self, model, row_id: UUID):
        async with self.container.sessions.session() as session:
            return await session.get(model, row_id)


class Payloads:
    """Cloud API webhook bodies."""

    @staticmethod
    def envelope(value: dict[str, Any], *, field: str = "messages", entry_id: str = WABA_ID) -> dict[str, Any]:
        return {
            "object": "whatsapp_business_account",
            "entry": [{"id": entry_id, "changes": [{"field": field, "value": value}]}],
        }

    def text(self, wamid: str, body: str, *, sender: str = "15551234567", ts: int = 1_700_000_000,
             name: Optional[str] = "Alice", phone_number_id: str = PHONE_NUMBER_ID) -> dict[str, Any]:
        value: dict[str, Any] = {
            "messaging_product": "whatsapp",
            "metadata": {"display_phone_number": "15550001111", "phone_number_id": phone_number_id},
            "messages": [{"from": sender, "id": wamid, "timestamp": str(ts), "type": "text", "text": {"body": body}}],
        }
        if name:
            value["contacts"] = [{"profile": {"name": name}, "wa_id": sender}]
        return self.envelope(value)

    def button_reply(self, wamid: str, button_id: str, title: str, *, sender: str = "15551234567",
                     ts: int = 1_700_000_100) -> dict[str, Any]:
        return self.envelope({
            "metadata": {"phone_number_id": PHONE_NUMBER_ID},
            "messages": [{
                "from": sender,
                "id": wamid,
                "timestamp": str(ts),
                "type": "interactive",
                "interactive": {"type": "button_reply", "button_reply": {"id": button_id, "title": title}},
            }],
        })

    def status(self, wamid: str, status: str, *, ts: int = 1_700_000_200, errors: Optional[list] = None) -> dict[str, Any]:
        item: dict[str, Any] = {"id": wamid, "status": status, "timestamp": str(ts), "recipient_id": "15551234567"}
        if errors:
            item["errors"] = errors
        return self.envelope({"metadata": {"phone_number_id": PHONE_NUMBER_ID}, "statuses": [item]})

    def template_status(self, template_id: str, event: str, *, name: str = "order_update",
                        language: str = "en_US", reason: Optional[str] = None) -> dict[str, Any]:
        value = {
            "event": event,
            "message_template_id": template_id,
            "message_template_name": name,
            "message_template_language": language,
            "reason": reason,
        }
        return self.envelope(value, field="message_template_status_update")


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def settings() -> Settings:
    return Settings(
        environment="test",
        log_json=False,
        database_url="sqlite+aiosqlite:///:memory:",
        webhook_verify_token="verify-me",
        encryption_key=Fernet.generate_key().decode(),
    )


@pytest.fixture
def graph_api() -> GraphApiStub:
    return GraphApiStub()


@pytest.fixture
async def container(settings, clock, graph_api):
    sessions = DatabaseSessionFactory(settings.database_url)
    c = build_container(settings, sessions=sessions, http_transport=httpx.MockTransport(graph_api), clock=clock)
    await sessions.create_all()
    yield c
    await c.close()


@pytest.fixture
def events(container) -> RecordingSubscriber:
    recorder = RecordingSubscriber()
    container.bus.subscribe(WILDCARD, recorder)
    return recorder


@pytest.fixture
def seed(container) -> Seeder:
    return Seeder(container)


@pytest.fixture
def payloads() -> Payloads:
    return Payloads()


@pytest.fixture
def pipeline(container) -> Pipeline:
    return Pipeline(container)
