"""
Realtime Event Bus
In-process publish/subscribe for committed state transitions, with an
optional Redis fan-out to the websocket gateway.
"""
from __future__ import annotations

import json
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable
from uuid import UUID, uuid4

from redis.asyncio import Redis
from redis.exceptions import RedisError

from inboxflow.shared.infrastructure.database.base_model import utcnow
from inboxflow.shared.infrastructure.observability.logger import get_logger

logger = get_logger(__name__)

MESSAGE_NEW = "message:new"
CONVERSATION_NEW = "conversation:new"
CONVERSATION_UPDATED = "conversation:updated"
NOTIFICATION_NEW = "notification:new"

REALTIME_CHANNEL = "websocket:events"

# subscribing to "*" receives every event type
WILDCARD = "*"

EventHandler = Callable[["RealtimeEvent"], Awaitable[None]]


@dataclass(frozen=True)
class RealtimeEvent:
    type: str
    tenant_id: UUID
    data: dict[str, Any]
    event_id: UUID = field(default_factory=uuid4)
    occurred_at: datetime = field(default_factory=utcnow)

    def to_json(self) -> str:
        return json.dumps(
            {
                "type": self.type,
                "eventId": str(self.event_id),
                "tenantId": str(self.tenant_id),
                "occurredAt": self.occurred_at.isoformat(),
                "data": self.data,
            },
            default=str,
        )


class EventBus:
    """
    In-memory event bus.

    Services publish only after their transaction committed, so each event
    maps to exactly one persisted transition. A failing handler is logged and
    never affects the publisher or the remaining handlers.
    """

    def __init__(self) -> None:
        self._handlers: dict[str, list[EventHandler]] = defaultdict(list)

    def subscribe(self, event_type: str, handler: EventHandler) -> None:
        self._handlers[event_type].append(handler)
        logger.debug("event_handler_subscribed", event_type=event_type, handler=getattr(handler, "__name__", repr(handler)))

    async def publish(self, event: RealtimeEvent) -> None:
        handlers = [*self._handlers.get(event.type, []), *self._handlers.get(WILDCARD, [])]
        if not handlers:
            logger.debug("event_without_handlers", event_type=event.type, event_id=str(event.event_id))
            return

        for handler in handlers:
            try:
                await handler(event)
            except Exception as e:
                # Continue processing other handlers even if one fails
                logger.error(
                    "event_handler_failed",
                    event_type=event.type,
                    event_id=str(event.event_id),
                    handler=getattr(handler, "__name__", repr(handler)),
                    error=str(e),
                )

    async def publish_many(self, events: list[RealtimeEvent]) -> None:
        for event in events:
            await self.publish(event)


class RedisEventPublisher:
    """Forwards every bus event to the Redis pub/sub channel read by the websocket gateway."""

    def __init__(self, redis: Redis, channel: str = REALTIME_CHANNEL) -> None:
        self.redis = redis
        self.channel = channel

    async def __call__(self, event: RealtimeEvent) -> None:
        try:
            await self.redis.publish(self.channel, event.to_json())
        except (RedisError, OSError) as e:
            logger.warning("realtime_publish_failed", event_type=event.type, error=str(e))

    def attach(self, bus: EventBus) -> None:
        bus.subscribe(WILDCARD, self)
