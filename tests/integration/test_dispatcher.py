import pytest
from sqlalchemy import update

from inboxflow.conversation.domain.value_objects import TriggerType
from inboxflow.messaging.application.services.dispatcher import SENT, SKIPPED
from inboxflow.messaging.domain.exceptions import (
    CredentialInvalidError,
    ProviderAuthError,
    ProviderTransientError,
    RateLimitExceededError,
    UndeliverableRecipientError,
)
from inboxflow.messaging.domain.value_objects import MessageDirection, MessageStatus
from inboxflow.messaging.infrastructure.models import MessageModel, WhatsAppCredentialModel


async def test_send_marks_message_sent(container, seed, graph_api, pipeline, events):
    tenant = await seed.tenant()
    message = await seed.outbound(tenant.id, "Your order shipped")

    assert await container.dispatcher.send(message.id) == SENT

    [request] = graph_api.requests
    assert str(request.url) == "https://graph.facebook.com/v18.0/PNID-1/messages"
    assert request.headers["Authorization"] == "Bearer EAAG-test-token"
    assert graph_api.sent_payloads() == [{
        "messaging_product": "whatsapp",
        "recipient_type": "individual",
        "to": "15551234567",
        "type": "text",
        "text": {"body": "Your order shipped"},
    }]

    stored = await pipeline.get(MessageModel, message.id)
    assert stored.status == MessageStatus.SENT
    assert stored.external_message_id == "wamid.OUT1"
    assert stored.sent_at is not None
    assert events.of_type("conversation:updated")[0].data["status"] == "SENT"


async def test_already_sent_message_is_skipped(container, seed, graph_api):
    tenant = await seed.tenant()
    message = await seed.outbound(tenant.id, "hi", status=MessageStatus.SENT, external_message_id="wamid.X")
    assert await container.dispatcher.send(message.id) == SKIPPED
    assert graph_api.requests == []


async def test_auth_failure_invalidates_credential(container, seed, graph_api, pipeline):
    tenant = await seed.tenant()
    message = await seed.outbound(tenant.id, "hi")
    graph_api.queue(401, {"error": {"code": 190, "message": "Error validating access token"}})

    with pytest.raises(ProviderAuthError):
        await container.dispatcher.send(message.id)

    stored = await pipeline.get(MessageModel, message.id)
    assert stored.status == MessageStatus.FAILED
    assert "access token" in stored.error_message
    [credential] = await pipeline.rows(WhatsAppCredentialModel)
    assert credential.is_valid is False
    assert credential.invalidated_at is not None

    # later sends fail fast without calling the provider
    second = await seed.outbound(tenant.id, "again")
    with pytest.raises(CredentialInvalidError):
        await container.dispatcher.send(second.id)
    assert len(graph_api.requests) == 1


async def test_undeliverable_recipient_fails_immediately(container, seed, graph_api, pipeline):
    tenant = await seed.tenant()
    message = await seed.outbound(tenant.id, "hi")
    graph_api.queue(400, {"error": {"code": 131026, "message": "Message undeliverable"}})

    with pytest.raises(UndeliverableRecipientError):
        await container.dispatcher.send(message.id, attempt=1)

    stored = await pipeline.get(MessageModel, message.id)
    assert stored.status == MessageStatus.FAILED
    assert stored.failed_at is not None


async def test_transient_failure_stays_pending_until_last_attempt(container, seed, graph_api, pipeline):
    tenant = await seed.tenant()
    message = await seed.outbound(tenant.id, "hi")
    graph_api.queue(503, {"error": {"message": "Service unavailable"}})
    graph_api.queue(503, {"error": {"message": "Service unavailable"}})

    with pytest.raises(ProviderTransientError):
        await container.dispatcher.send(message.id, attempt=1)
    stored = await pipeline.get(MessageModel, message.id)
    assert stored.status == MessageStatus.PENDING
    assert stored.retry_count == 1

    with pytest.raises(ProviderTransientError):
        await container.dispatcher.send(message.id, attempt=3)
    stored = await pipeline.get(MessageModel, message.id)
    assert stored.status == MessageStatus.FAILED
    assert stored.retry_count == 2


async def test_tenant_rate_limit_defers_send(container, seed, graph_api, pipeline):
    tenant = await seed.tenant(messages_per_minute=1)
    first = await seed.outbound(tenant.id, "one")
    second = await seed.outbound(tenant.id, "two")

    assert await container.dispatcher.send(first.id) == SENT
    with pytest.raises(RateLimitExceededError) as exc:
        await container.dispatcher.send(second.id)

    assert 60 <= exc.value.retry_after <= 61
    assert len(graph_api.requests) == 1
    assert (await pipeline.get(MessageModel, second.id)).status == MessageStatus.PENDING


async def test_invalid_credential_fails_before_spending_a_token(container, seed, graph_api, pipeline):
    tenant = await seed.tenant(messages_per_minute=1, is_valid=False)
    first = await seed.outbound(tenant.id, "one")
    second = await seed.outbound(tenant.id, "two")

    with pytest.raises(CredentialInvalidError):
        await container.dispatcher.send(first.id)
    assert (await pipeline.get(MessageModel, first.id)).status == MessageStatus.FAILED

    async with container.sessions.transaction() as session:
        await session.execute(update(WhatsAppCredentialModel).values(is_valid=True))

    # the single token per minute is still there
    assert await container.dispatcher.send(second.id) == SENT
    assert len(graph_api.requests) == 1


async def test_send_worker_retries_with_provider_backoff(container, seed, graph_api, pipeline):
    tenant = await seed.tenant()
    message = await seed.outbound(tenant.id, "hi")
    await container.send_queue.enqueue(f"message-{message.id}", {"message_id": str(message.id)})
    graph_api.queue(429, {"error": {"code": 130429, "message": "Rate limit hit"}}, headers={"Retry-After": "120"})

    worker = container.send_worker()
    assert await worker.process_next() == "retried"
    ready_at = container.send_queue.next_ready_at(f"message-{message.id}")
    assert ready_at - container.send_queue.clock() == 120

    container.send_queue.clock.advance(120)
    assert await worker.process_next() == "completed"
    assert (await pipeline.get(MessageModel, message.id)).status == MessageStatus.SENT


async def test_inbound_keyword_to_sent_reply(container, seed, payloads, pipeline, graph_api):
    tenant = await seed.tenant()
    await seed.flow(
        tenant.id, TriggerType.KEYWORD,
        [{"id": "start", "type": "start", "data": {}}, {"id": "m", "type": "message", "data": {"content": "On it!"}}],
        [{"source": "start", "target": "m"}],
        keywords="support",
    )
    await pipeline.deliver(payloads.text("wamid.A", "need support"))
    await pipeline.run_flows()

    assert await container.send_worker().execute() is True

    assert graph_api.sent_payloads()[0]["text"] == {"body": "On it!"}
    [reply] = await pipeline.rows(MessageModel, MessageModel.direction == MessageDirection.OUTBOUND)
    assert reply.status == MessageStatus.SENT
