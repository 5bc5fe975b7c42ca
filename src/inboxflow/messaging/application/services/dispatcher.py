"""
Outbound message dispatch.

One ``message-send`` job per PENDING outbound message. Failures are
classified by the Graph API adapter: retryable ones keep the message PENDING
until the last attempt, permanent ones fail it at once. The error is always
re-raised so the queue applies backoff and the attempt cap.
"""
from __future__ import annotations

from typing import Optional
from uuid import UUID

from inboxflow.messaging.domain.exceptions import (
    MessageNotFoundError,
    ProviderAuthError,
    RateLimitExceededError,
)
from inboxflow.messaging.domain.value_objects import MessageDirection, MessageStatus
from inboxflow.messaging.infrastructure.adapters.whatsapp_adapter import WhatsAppCloudClient, build_message_payload
from inboxflow.messaging.infrastructure.rate_limiter.token_bucket import TenantRateLimiter
from inboxflow.messaging.infrastructure.repositories.conversation_repository import ConversationRepository
from inboxflow.messaging.infrastructure.repositories.message_repository import MessageRepository
from inboxflow.messaging.infrastructure.repositories.tenant_repository import TenantDirectory
from inboxflow.shared.exceptions import is_retryable
from inboxflow.shared.infrastructure.database.base_model import utcnow
from inboxflow.shared.infrastructure.database.session import DatabaseSessionFactory
from inboxflow.shared.infrastructure.messaging.event_bus import CONVERSATION_UPDATED, EventBus, RealtimeEvent
from inboxflow.shared.infrastructure.observability.logger import get_logger
from inboxflow.shared.infrastructure.security.encryption import EncryptionManager

logger = get_logger(__name__)

SENT = "sent"
SKIPPED = "skipped"


class Dispatcher:
    def __init__(
        self,
        sessions: DatabaseSessionFactory,
        bus: EventBus,
        tenant_limiter: TenantRateLimiter,
        encryption: EncryptionManager,
        client: WhatsAppCloudClient,
        max_attempts: int = 3,
    ) -> None:
        self.sessions = sessions
        self.bus = bus
        self.tenant_limiter = tenant_limiter
        self.encryption = encryption
        self.client = client
        self.max_attempts = max_attempts

    async def send(self, message_id: UUID, attempt: int = 1) -> str:
        """Send one message; ``attempt`` is the queue's 1-based attempt number."""
        async with self.sessions.transaction() as session:
            message = await MessageRepository(session).get(message_id)
            if message is None:
                raise MessageNotFoundError(f"Message {message_id} not found")
            if message.direction != MessageDirection.OUTBOUND or message.status != MessageStatus.PENDING:
                logger.info("message_send_skipped", message_id=str(message_id), status=message.status.value)
                return SKIPPED
            tenant = await TenantDirectory(session).get_tenant(message.tenant_id)

        tenant_id = message.tenant_id
        credential_id: Optional[UUID] = None
        try:
            # an invalidated credential fails fast without spending a token
            async with self.sessions.transaction() as session:
                credential = await TenantDirectory(session).get_active_credential(tenant_id, message.from_phone)
            credential_id = credential.id
            payload = build_message_payload(message)

            decision = await self.tenant_limiter.consume(tenant_id, tenant.messages_per_minute if tenant else None)
            if not decision.allowed:
                raise RateLimitExceededError(retry_after=decision.retry_after)

            access_token = self.encryption.decrypt(credential.access_token_ciphertext)

            external_id = await self.client.send_message(credential.phone_number_id, access_token, payload)
        except Exception as e:
            await self._record_failure(message_id, credential_id, e, attempt)
            raise

        async with self.sessions.transaction() as session:
            await MessageRepository(session).mark_sent(message_id, external_id)
            await ConversationRepository(session).touch(message.conversation_id, utcnow())

        await self.bus.publish(
            RealtimeEvent(
                CONVERSATION_UPDATED,
                tenant_id,
                {
                    "conversationId": str(message.conversation_id),
                    "messageId": str(message_id),
                    "externalMessageId": external_id,
                    "status": MessageStatus.SENT.value,
                },
            )
        )
        logger.info("message_sent", message_id=str(message_id), external_message_id=external_id, attempt=attempt)
        return SENT

    async def _record_failure(
        self, message_id: UUID, credential_id: Optional[UUID], error: Exception, attempt: int,
    ) -> None:
        retryable = is_retryable(error)
        terminal = not retryable or attempt >= self.max_attempts
        async with self.sessions.transaction() as session:
            if isinstance(error, ProviderAuthError) and credential_id is not None:
                await TenantDirectory(session).invalidate_credential(credential_id, str(error) or "Authentication rejected")
            await MessageRepository(session).record_send_failure(
                message_id, f"{type(error).__name__}: {error}", terminal=terminal,
            )
        logger.warning(
            "message_send_failed",
            message_id=str(message_id),
            attempt=attempt,
            retryable=retryable,
            terminal=terminal,
            error=str(error),
        )
