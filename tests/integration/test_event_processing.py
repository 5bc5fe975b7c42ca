from datetime import datetime, timezone
from uuid import uuid4

import pytest

from inboxflow.conversation.domain.value_objects import ExecutionStatus, TriggerType
from inboxflow.conversation.infrastructure.models import FlowExecutionModel
from inboxflow.messaging.application.services.event_processor import ABANDONED, PROCESSED, SKIPPED
from inboxflow.messaging.domain.exceptions import RawEventNotFoundError, UnresolvedTenantError
from inboxflow.messaging.domain.value_objects import (
    MessageDirection,
    MessageStatus,
    RawEventStatus,
    TemplateStatus,
)
from inboxflow.messaging.infrastructure.models import (
    ContactModel,
    ConversationModel,
    MessageModel,
    MessageTemplateModel,
    RawWebhookEventModel,
)
from inboxflow.shared.exceptions import TransientInfraError

START = {"id": "start", "type": "start", "data": {}}


def reply_flow(text):
    return [START, {"id": "m1", "type": "message", "data": {"content": text}}], [{"source": "start", "target": "m1"}]


async def test_inbound_text_creates_contact_conversation_message_and_execution(seed, payloads, pipeline, events):
    tenant = await seed.tenant()
    nodes, edges = reply_flow("How can we help?")
    flow = await seed.flow(tenant.id, TriggerType.KEYWORD, nodes, edges, keywords="help,support")

    [raw_id] = await pipeline.deliver(payloads.text("wamid.A", "I need HELP please"))

    raw = await pipeline.get(RawWebhookEventModel, raw_id)
    assert raw.status == RawEventStatus.PROCESSED
    assert raw.processed_at is not None

    [contact] = await pipeline.rows(ContactModel)
    assert contact.phone == "+15551234567"
    assert contact.name == "Alice"

    [conversation] = await pipeline.rows(ConversationModel)
    assert conversation.tenant_id == tenant.id
    assert conversation.unread_count == 1
    assert conversation.last_message_at == datetime.fromtimestamp(1_700_000_000, tz=timezone.utc)

    [message] = await pipeline.rows(MessageModel)
    assert message.direction == MessageDirection.INBOUND
    assert message.status == MessageStatus.DELIVERED
    assert message.external_message_id == "wamid.A"
    assert message.content == "I need HELP please"
    assert message.conversation_id == conversation.id

    [execution] = await pipeline.rows(FlowExecutionModel)
    assert execution.flow_id == flow.id
    assert execution.status == ExecutionStatus.PENDING
    assert execution.triggered_by == TriggerType.KEYWORD
    assert execution.execution_state["messageBody"] == "I need HELP please"

    assert events.types == ["conversation:new", "message:new", "notification:new"]
    assert events.of_type("message:new")[0].data["externalMessageId"] == "wamid.A"


async def test_keyword_flow_ignores_unrelated_text(seed, payloads, pipeline):
    tenant = await seed.tenant()
    nodes, edges = reply_flow("hi")
    await seed.flow(tenant.id, TriggerType.KEYWORD, nodes, edges, keywords="help,support")
    await pipeline.deliver(payloads.text("wamid.A", "good morning"))
    assert await pipeline.rows(FlowExecutionModel) == []


async def test_opened_trigger_fires_only_for_new_conversation(seed, payloads, pipeline):
    tenant = await seed.tenant()
    nodes, edges = reply_flow("Welcome!")
    await seed.flow(tenant.id, TriggerType.CONVERSATION_OPENED, nodes, edges)

    await pipeline.deliver(payloads.text("wamid.A", "hi"))
    await pipeline.deliver(payloads.text("wamid.B", "again", ts=1_700_000_050))

    assert len(await pipeline.rows(FlowExecutionModel)) == 1


async def test_redelivered_message_is_stored_once(seed, payloads, pipeline, events):
    tenant = await seed.tenant()
    nodes, edges = reply_flow("hi")
    await seed.flow(tenant.id, TriggerType.NEW_MESSAGE, nodes, edges)

    await pipeline.deliver(payloads.text("wamid.A", "hello"))
    await pipeline.deliver(payloads.text("wamid.A", "hello"))

    assert len(await pipeline.rows(MessageModel)) == 1
    assert len(await pipeline.rows(FlowExecutionModel)) == 1
    [conversation] = await pipeline.rows(ConversationModel)
    assert conversation.unread_count == 1
    assert len(events.of_type("message:new")) == 1


async def test_processing_twice_is_skipped(container, seed, payloads, pipeline):
    await seed.tenant()
    [raw_id] = await pipeline.deliver(payloads.text("wamid.A", "hello"))
    assert await container.event_processor.process(raw_id) == SKIPPED


async def test_missing_raw_event(container):
    with pytest.raises(RawEventNotFoundError):
        await container.event_processor.process(uuid4())


async def test_unread_count_and_last_message_at_are_monotonic(seed, payloads, pipeline):
    await seed.tenant()
    await pipeline.deliver(payloads.text("wamid.NEW", "second", ts=1_700_000_200))
    # older message delivered late
    await pipeline.deliver(payloads.text("wamid.OLD", "first", ts=1_700_000_100))

    [conversation] = await pipeline.rows(ConversationModel)
    assert conversation.unread_count == 2
    assert conversation.last_message_at == datetime.fromtimestamp(1_700_000_200, tz=timezone.utc)


async def test_tenant_resolved_at_processing_time(container, seed, payloads, pipeline):
    # webhook arrives before the credential exists
    result = await container.webhook_service.ingest(payloads.text("wamid.A", "hello"))
    [raw_id] = result.persisted
    assert (await pipeline.get(RawWebhookEventModel, raw_id)).tenant_id is None

    tenant = await seed.tenant()
    assert await container.event_processor.process(raw_id) == PROCESSED
    raw = await pipeline.get(RawWebhookEventModel, raw_id)
    assert raw.tenant_id == tenant.id


async def test_status_updates_never_regress(seed, payloads, pipeline, events):
    tenant = await seed.tenant()
    sent = await seed.outbound(tenant.id, "hi", status=MessageStatus.SENT, external_message_id="wamid.OUT")

    await pipeline.deliver(payloads.status("wamid.OUT", "read", ts=1_700_000_300))
    await pipeline.deliver(payloads.status("wamid.OUT", "delivered", ts=1_700_000_200))

    message = await pipeline.get(MessageModel, sent.id)
    assert message.status == MessageStatus.READ
    assert message.read_at == datetime.fromtimestamp(1_700_000_300, tz=timezone.utc)
    assert message.delivered_at is not None
    assert len(events.of_type("conversation:updated")) == 1


async def test_failed_status_records_error_and_is_terminal(seed, payloads, pipeline):
    tenant = await seed.tenant()
    sent = await seed.outbound(tenant.id, "hi", status=MessageStatus.SENT, external_message_id="wamid.OUT")

    errors = [{"code": 131026, "title": "Message undeliverable"}]
    await pipeline.deliver(payloads.status("wamid.OUT", "failed", errors=errors))
    await pipeline.deliver(payloads.status("wamid.OUT", "delivered"))

    message = await pipeline.get(MessageModel, sent.id)
    assert message.status == MessageStatus.FAILED
    assert message.error_message == "Message undeliverable"
    assert message.failed_at is not None


async def test_status_for_unknown_message_is_ignored(seed, payloads, pipeline):
    await seed.tenant()
    [raw_id] = await pipeline.deliver(payloads.status("wamid.NOPE", "delivered"))
    assert (await pipeline.get(RawWebhookEventModel, raw_id)).status == RawEventStatus.PROCESSED


async def test_template_status_update(seed, payloads, pipeline):
    tenant = await seed.tenant()
    template = await seed.template(tenant.id)

    await pipeline.deliver(payloads.template_status("998877", "REJECTED", reason="INVALID_FORMAT"))
    stored = await pipeline.get(MessageTemplateModel, template.id)
    assert stored.status == TemplateStatus.REJECTED
    assert stored.rejection_reason == "INVALID_FORMAT"
    assert stored.external_template_id == "998877"

    await pipeline.deliver(payloads.template_status("998877", "APPROVED", reason="NONE"))
    stored = await pipeline.get(MessageTemplateModel, template.id)
    assert stored.status == TemplateStatus.APPROVED
    assert stored.rejection_reason is None


async def test_unresolved_tenant_is_dead_lettered(container, payloads, pipeline):
    await container.webhook_service.ingest(payloads.text("wamid.A", "hello", phone_number_id="UNKNOWN"))
    worker = container.webhook_worker()

    assert await worker.process_next() == "dead_lettered"

    [raw] = await pipeline.rows(RawWebhookEventModel)
    assert raw.status == RawEventStatus.FAILED
    assert raw.retry_count == 1
    assert "UnresolvedTenantError" in raw.error_message
    assert len(await container.webhook_queue.dead_letters()) == 1


async def test_unresolved_tenant_raises_from_processor(container, payloads):
    result = await container.webhook_service.ingest(payloads.text("wamid.A", "hello", phone_number_id="UNKNOWN"))
    with pytest.raises(UnresolvedTenantError):
        await container.event_processor.process(result.persisted[0])


async def test_transient_failures_exhaust_retries(container, clock, seed, payloads, pipeline, monkeypatch):
    await seed.tenant()

    async def broken(session, tenant_id, payload):
        raise TransientInfraError("database unavailable")

    monkeypatch.setattr(container.event_processor, "_apply_change", broken)
    await container.webhook_service.ingest(payloads.text("wamid.A", "hello"))
    worker = container.webhook_worker()
    [raw] = await pipeline.rows(RawWebhookEventModel)

    outcomes = []
    for _ in range(5):
        outcomes.append(await worker.process_next())
        ready_at = container.webhook_queue.next_ready_at(f"webhook-{raw.id}")
        if ready_at is not None:
            clock.advance(ready_at - clock.now)

    assert outcomes == ["retried"] * 4 + ["dead_lettered"]
    raw = await pipeline.get(RawWebhookEventModel, raw.id)
    assert raw.status == RawEventStatus.FAILED
    assert raw.retry_count == 5
    assert await pipeline.rows(MessageModel) == []
    assert await container.event_processor.process(raw.id) == ABANDONED
