"""
Composition root.

Builds every collaborator once per process from ``Settings``. The HTTP app
only needs the webhook service; the worker entry point uses the rest. Tests
pass overrides (in-memory queues, an httpx mock transport, a fixed clock).
"""
from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Callable, Optional
from uuid import UUID

import httpx
import redis.asyncio as redis
from redis.asyncio import Redis

# model modules register their tables on Base.metadata
import inboxflow.conversation.infrastructure.models  # noqa: F401
import inboxflow.messaging.infrastructure.models  # noqa: F401
from inboxflow.conversation.application.outbox_poller import FlowOutboxPoller
from inboxflow.conversation.application.runner import FlowRunner
from inboxflow.conversation.application.trigger_matcher import FlowTriggerMatcher
from inboxflow.messaging.application.services.dispatcher import Dispatcher
from inboxflow.messaging.application.services.event_processor import EventProcessor
from inboxflow.messaging.application.services.raw_event_sweeper import RawEventSweeper
from inboxflow.messaging.application.services.webhook_service import WebhookService
from inboxflow.messaging.infrastructure.adapters.whatsapp_adapter import WhatsAppCloudClient
from inboxflow.messaging.infrastructure.rate_limiter.token_bucket import (
    BucketStore,
    InMemoryBucketStore,
    RedisBucketStore,
    TenantRateLimiter,
    TokenBucketRateLimiter,
)
from inboxflow.shared.config import Settings, get_settings
from inboxflow.shared.infrastructure.database.session import DatabaseSessionFactory
from inboxflow.shared.infrastructure.messaging.event_bus import EventBus, RedisEventPublisher
from inboxflow.shared.infrastructure.observability.logger import get_logger
from inboxflow.shared.infrastructure.queue.job_queue import (
    SEND_QUEUE,
    WEBHOOK_QUEUE,
    InMemoryJobQueue,
    Job,
    JobQueue,
    RedisJobQueue,
)
from inboxflow.shared.infrastructure.security.encryption import EncryptionManager
from inboxflow.workers.manager import WorkerManager
from inboxflow.workers.queue_worker import QueueWorker

logger = get_logger(__name__)


def create_redis(url: str) -> Redis:
    # from_url is sync; the pool connects lazily
    return redis.from_url(
        url,
        encoding="utf-8",
        decode_responses=True,
        health_check_interval=30,
        socket_connect_timeout=5.0,
        socket_timeout=5.0,
        retry_on_timeout=True,
        max_connections=100,
    )


@dataclass
class Container:
    settings: Settings
    sessions: DatabaseSessionFactory
    redis: Optional[Redis]
    bus: EventBus
    bucket_store: BucketStore
    webhook_queue: JobQueue
    send_queue: JobQueue
    encryption: EncryptionManager
    client: WhatsAppCloudClient
    tenant_limiter: TenantRateLimiter
    webhook_service: WebhookService
    trigger_matcher: FlowTriggerMatcher
    event_processor: EventProcessor
    flow_runner: FlowRunner
    dispatcher: Dispatcher

    async def handle_webhook_job(self, job: Job) -> str:
        return await self.event_processor.process(UUID(job.payload["raw_event_id"]))

    async def handle_send_job(self, job: Job) -> str:
        return await self.dispatcher.send(UUID(job.payload["message_id"]), attempt=job.attempts)

    def throughput_limiter(self, per_second: float) -> TokenBucketRateLimiter:
        # in-process cap; each worker process gets its own bucket
        return TokenBucketRateLimiter(InMemoryBucketStore(), capacity=per_second, refill_rate=per_second)

    def webhook_worker(self) -> QueueWorker:
        s = self.settings
        return QueueWorker(
            WEBHOOK_QUEUE,
            self.webhook_queue,
            self.handle_webhook_job,
            concurrency=s.webhook_concurrency,
            throughput=self.throughput_limiter(s.webhook_throughput_per_second),
            max_attempts=s.webhook_max_attempts,
            backoff_base=s.webhook_backoff_base_seconds,
            backoff_max=s.queue_backoff_max_seconds,
            lease_seconds=s.webhook_stale_seconds,
        )

    def send_worker(self) -> QueueWorker:
        s = self.settings
        return QueueWorker(
            SEND_QUEUE,
            self.send_queue,
            self.handle_send_job,
            concurrency=s.send_concurrency,
            throughput=self.throughput_limiter(s.send_throughput_per_second),
            max_attempts=s.send_max_attempts,
            backoff_base=s.send_backoff_base_seconds,
            backoff_max=s.queue_backoff_max_seconds,
        )

    def flow_poller(self) -> FlowOutboxPoller:
        s = self.settings
        return FlowOutboxPoller(
            self.sessions,
            self.flow_runner,
            interval=s.flow_poll_interval_seconds,
            batch_size=s.flow_batch_size,
            stale_after_seconds=s.flow_stale_seconds,
        )

    def raw_event_sweeper(self) -> RawEventSweeper:
        s = self.settings
        return RawEventSweeper(
            self.sessions,
            self.webhook_queue,
            interval=s.webhook_sweep_interval_seconds,
            older_than_seconds=s.webhook_stale_seconds,
            batch_size=s.webhook_sweep_batch_size,
            max_attempts=s.webhook_max_attempts,
        )

    def worker_manager(self, which: str = "all") -> WorkerManager:
        manager = WorkerManager()
        if which in ("all", "webhook"):
            manager.register_worker(self.webhook_worker())
            manager.register_worker(self.raw_event_sweeper())
        if which in ("all", "send"):
            manager.register_worker(self.send_worker())
        if which in ("all", "flows"):
            manager.register_worker(self.flow_poller())
        return manager

    async def close(self) -> None:
        await self.client.aclose()
        if self.redis is not None:
            await self.redis.aclose()
        await self.sessions.dispose()


def build_container(
    settings: Optional[Settings] = None,
    *,
    sessions: Optional[DatabaseSessionFactory] = None,
    redis_client: Optional[Redis] = None,
    http_transport: Optional[httpx.AsyncBaseTransport] = None,
    clock: Callable[[], float] = time.time,
) -> Container:
    settings = settings or get_settings()
    sessions = sessions or DatabaseSessionFactory(
        settings.database_url,
        echo=settings.debug,
        pool_size=settings.database_pool_size,
        max_overflow=settings.database_max_overflow,
    )

    if redis_client is None and settings.redis_url:
        redis_client = create_redis(settings.redis_url)

    bus = EventBus()
    webhook_queue: JobQueue
    send_queue: JobQueue
    bucket_store: BucketStore
    if redis_client is not None:
        RedisEventPublisher(redis_client).attach(bus)
        webhook_queue = RedisJobQueue(redis_client, WEBHOOK_QUEUE, clock=clock)
        send_queue = RedisJobQueue(redis_client, SEND_QUEUE, clock=clock)
        bucket_store = RedisBucketStore(redis_client)
    else:
        logger.warning("redis_not_configured", detail="in-process queues and limiter; workers must run inside the API process")
        webhook_queue = InMemoryJobQueue(WEBHOOK_QUEUE, clock=clock)
        send_queue = InMemoryJobQueue(SEND_QUEUE, clock=clock)
        bucket_store = InMemoryBucketStore()

    encryption = EncryptionManager(settings.encryption_key)
    client = WhatsAppCloudClient(settings.wa_graph_url, timeout=settings.wa_http_timeout, transport=http_transport)
    tenant_limiter = TenantRateLimiter(
        bucket_store,
        default_messages_per_minute=settings.default_messages_per_minute,
        ttl_seconds=settings.rate_limit_bucket_ttl,
        clock=clock,
    )
    matcher = FlowTriggerMatcher(max_retries=settings.flow_max_retries)

    return Container(
        settings=settings,
        sessions=sessions,
        redis=redis_client,
        bus=bus,
        bucket_store=bucket_store,
        webhook_queue=webhook_queue,
        send_queue=send_queue,
        encryption=encryption,
        client=client,
        tenant_limiter=tenant_limiter,
        webhook_service=WebhookService(
            sessions, webhook_queue, settings.webhook_verify_token, app_secret=settings.wa_app_secret,
        ),
        trigger_matcher=matcher,
        event_processor=EventProcessor(
            sessions,
            bus,
            matcher,
            max_attempts=settings.webhook_max_attempts,
            stale_after_seconds=settings.webhook_stale_seconds,
        ),
        flow_runner=FlowRunner(
            sessions,
            bus,
            send_queue,
            max_steps=settings.flow_max_steps,
            delay_min_ms=settings.flow_delay_min_ms,
            delay_max_ms=settings.flow_delay_max_ms,
        ),
        dispatcher=Dispatcher(
            sessions, bus, tenant_limiter, encryption, client, max_attempts=settings.send_max_attempts,
        ),
    )
