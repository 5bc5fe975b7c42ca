from datetime import timedelta

from sqlalchemy import update

from inboxflow.messaging.application.services.event_processor import PROCESSED, SKIPPED
from inboxflow.messaging.application.services.webhook_service import WebhookService
from inboxflow.messaging.domain.value_objects import RawEventStatus
from inboxflow.messaging.infrastructure.models import MessageModel, RawWebhookEventModel
from inboxflow.messaging.infrastructure.repositories.message_repository import RawEventRepository
from inboxflow.shared.infrastructure.database.base_model import utcnow
from inboxflow.shared.infrastructure.queue.job_queue import webhook_job_id


class UnreachableQueue:
    async def enqueue(self, job_id, payload, delay=0.0):
        raise ConnectionError("queue unreachable")


async def claim(container, raw_id) -> bool:
    async with container.sessions.transaction() as session:
        return await RawEventRepository(session).claim(raw_id, max_attempts=5, stale_after_seconds=300)


async def set_row(container, raw_id, **values):
    async with container.sessions.transaction() as session:
        await session.execute(
            update(RawWebhookEventModel).where(RawWebhookEventModel.id == raw_id).values(**values)
        )


def minutes_ago(n):
    return utcnow() - timedelta(minutes=n)


async def ingest_without_job(container, payload):
    service = WebhookService(container.sessions, UnreachableQueue(), "verify-me")
    result = await service.ingest(payload)
    assert result.failures == 1
    return result.persisted[0]


async def test_claim_is_exclusive(container, payloads):
    [raw_id] = (await container.webhook_service.ingest(payloads.text("wamid.A", "hello"))).persisted

    assert await claim(container, raw_id) is True
    assert await claim(container, raw_id) is False


async def test_stale_processing_row_can_be_taken_over(container, payloads):
    [raw_id] = (await container.webhook_service.ingest(payloads.text("wamid.A", "hello"))).persisted
    assert await claim(container, raw_id) is True

    await set_row(container, raw_id, updated_at=minutes_ago(10))

    assert await claim(container, raw_id) is True
    assert await claim(container, raw_id) is False


async def test_processor_leaves_event_owned_by_another_worker(container, seed, payloads, pipeline):
    await seed.tenant()
    [raw_id] = (await container.webhook_service.ingest(payloads.text("wamid.A", "hello"))).persisted
    assert await claim(container, raw_id) is True

    assert await container.event_processor.process(raw_id) == SKIPPED

    raw = await pipeline.get(RawWebhookEventModel, raw_id)
    assert raw.status == RawEventStatus.PROCESSING
    assert await pipeline.rows(MessageModel) == []


async def test_sweeper_requeues_event_whose_enqueue_failed(container, seed, payloads, pipeline):
    await seed.tenant()
    raw_id = await ingest_without_job(container, payloads.text("wamid.A", "hello"))
    sweeper = container.raw_event_sweeper()

    # too recent: ingestion may still be enqueueing it
    assert await sweeper.sweep_once() == 0

    await set_row(container, raw_id, updated_at=minutes_ago(10))
    assert await sweeper.sweep_once() == 1
    # job already queued
    assert await sweeper.sweep_once() == 0

    job = await container.webhook_queue.claim()
    assert job.id == webhook_job_id(raw_id)
    assert await container.handle_webhook_job(job) == PROCESSED
    await container.webhook_queue.complete(job)

    assert (await pipeline.get(RawWebhookEventModel, raw_id)).status == RawEventStatus.PROCESSED
    assert await sweeper.sweep_once() == 0


async def test_sweeper_recovers_event_abandoned_mid_processing(container, seed, payloads, pipeline):
    await seed.tenant()
    raw_id = await ingest_without_job(container, payloads.text("wamid.A", "hello"))
    await set_row(container, raw_id, status=RawEventStatus.PROCESSING, updated_at=minutes_ago(10))

    assert await container.raw_event_sweeper().sweep_once() == 1
    assert await container.webhook_worker().process_next() == "completed"

    assert (await pipeline.get(RawWebhookEventModel, raw_id)).status == RawEventStatus.PROCESSED
    [message] = await pipeline.rows(MessageModel)
    assert message.external_message_id == "wamid.A"


async def test_sweeper_skips_exhausted_events(container, payloads):
    raw_id = await ingest_without_job(container, payloads.text("wamid.A", "hello"))
    await set_row(container, raw_id, status=RawEventStatus.FAILED, retry_count=5, updated_at=minutes_ago(10))

    assert await container.raw_event_sweeper().sweep_once() == 0
    assert await container.webhook_queue.pending_count() == 0
