"""
Raw webhook event processing.

State machine per RawEvent::

    PENDING --claim--> PROCESSING --> PROCESSED
                                  \\-> FAILED (retry_count + 1, re-claimable below the cap)

A PROCESSING row is owned by the worker that claimed it; another worker may
take it over only after it has sat untouched past the stale window. Rows whose
job was lost are re-enqueued by RawEventSweeper.

A change is applied in one transaction: contact/conversation upserts, the
message row, status updates and the FlowExecution rows created by the
trigger matcher commit together. Realtime events are published after commit.
"""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Optional
from uuid import UUID

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from inboxflow.conversation.application.trigger_matcher import FlowTriggerMatcher, TriggerContext
from inboxflow.messaging.application.services.content import classify_inbound
from inboxflow.messaging.application.services.webhook_service import TEMPLATE_STATUS_FIELD
from inboxflow.messaging.domain.exceptions import (
    DuplicateEventError,
    RawEventNotFoundError,
    UnresolvedTenantError,
)
from inboxflow.messaging.domain.phone import normalize_phone
from inboxflow.messaging.domain.value_objects import (
    PROVIDER_STATUS_MAP,
    PROVIDER_TEMPLATE_STATUS_MAP,
    MessageDirection,
    MessageStatus,
    RawEventStatus,
    TemplateStatus,
)
from inboxflow.messaging.infrastructure.models import MessageModel
from inboxflow.messaging.infrastructure.repositories.conversation_repository import (
    ContactRepository,
    ConversationRepository,
)
from inboxflow.messaging.infrastructure.repositories.message_repository import (
    MessageRepository,
    RawEventRepository,
    TemplateRepository,
)
from inboxflow.messaging.infrastructure.repositories.tenant_repository import TenantDirectory
from inboxflow.shared.exceptions import TransientInfraError
from inboxflow.shared.infrastructure.database.base_model import utcnow
from inboxflow.shared.infrastructure.database.session import DatabaseSessionFactory
from inboxflow.shared.infrastructure.messaging.event_bus import (
    CONVERSATION_NEW,
    CONVERSATION_UPDATED,
    MESSAGE_NEW,
    NOTIFICATION_NEW,
    EventBus,
    RealtimeEvent,
)
from inboxflow.shared.infrastructure.observability.logger import get_logger

logger = get_logger(__name__)

PROCESSED = "processed"
SKIPPED = "skipped"
ABANDONED = "abandoned"


def _parse_timestamp(raw: Any) -> datetime:
    try:
        return datetime.fromtimestamp(int(raw), tz=timezone.utc)
    except (TypeError, ValueError, OverflowError):
        return utcnow()


def _profile_names(value: dict[str, Any]) -> dict[str, str]:
    names: dict[str, str] = {}
    for contact in value.get("contacts") or []:
        wa_id = contact.get("wa_id")
        name = (contact.get("profile") or {}).get("name")
        if wa_id and name:
            names[normalize_phone(wa_id)] = name
    return names


def _status_error(status: dict[str, Any]) -> str:
    errors = status.get("errors") or []
    if errors:
        first = errors[0] or {}
        return str(first.get("title") or first.get("message") or first.get("code") or "Unknown error")
    return "Unknown error"


class EventProcessor:
    def __init__(
        self,
        sessions: DatabaseSessionFactory,
        bus: EventBus,
        trigger_matcher: FlowTriggerMatcher,
        max_attempts: int = 5,
        stale_after_seconds: float = 300.0,
    ) -> None:
        self.sessions = sessions
        self.bus = bus
        self.trigger_matcher = trigger_matcher
        self.max_attempts = max_attempts
        self.stale_after_seconds = stale_after_seconds

    async def process(self, raw_event_id: UUID) -> str:
        """
        Process one raw event; returns "processed", "skipped" or "abandoned".

        Failures mark the row FAILED (retry_count + 1) and re-raise so the queue
        applies backoff. UnresolvedTenantError and RawEventNotFoundError are
        not retryable.
        """
        async with self.sessions.transaction() as session:
            raw_events = RawEventRepository(session)
            event = await raw_events.get(raw_event_id)
            if event is None:
                raise RawEventNotFoundError(f"Raw event {raw_event_id} not found")
            if event.status == RawEventStatus.PROCESSED:
                logger.info("raw_event_already_processed", raw_event_id=str(raw_event_id))
                return SKIPPED
            if event.retry_count >= self.max_attempts:
                logger.warning("raw_event_abandoned", raw_event_id=str(raw_event_id), retry_count=event.retry_count)
                return ABANDONED
            if not await raw_events.claim(raw_event_id, self.max_attempts, self.stale_after_seconds):
                logger.info("raw_event_claimed_elsewhere", raw_event_id=str(raw_event_id))
                return SKIPPED
            payload = dict(event.payload or {})
            routing_key = event.routing_key
            tenant_id = event.tenant_id

        try:
            realtime = await self._apply_with_dedupe(raw_event_id, payload, routing_key, tenant_id)
        except Exception as e:
            async with self.sessions.transaction() as session:
                await RawEventRepository(session).mark_failed(raw_event_id, f"{type(e).__name__}: {e}")
            logger.warning("raw_event_failed", raw_event_id=str(raw_event_id), error=str(e))
            raise

        await self.bus.publish_many(realtime)
        logger.info("raw_event_processed", raw_event_id=str(raw_event_id), events=len(realtime))
        return PROCESSED

    async def _apply_with_dedupe(
        self, raw_event_id: UUID, payload: dict[str, Any], routing_key: Optional[str], tenant_id: Optional[UUID],
    ) -> list[RealtimeEvent]:
        # a concurrent insert of the same provider message rolls the whole change
        # back; re-applying it skips the now-existing row
        for _ in range(2):
            try:
                async with self.sessions.transaction() as session:
                    tenant_id = await self._ensure_tenant(session, routing_key, tenant_id)
                    realtime = await self._apply_change(session, tenant_id, payload)
                    await RawEventRepository(session).mark_processed(raw_event_id, tenant_id)
                return realtime
            except DuplicateEventError as e:
                logger.info("inbound_message_duplicate", raw_event_id=str(raw_event_id), error=str(e))
        raise TransientInfraError(f"Raw event {raw_event_id} kept colliding with concurrent inserts")

    async def _ensure_tenant(self, session: AsyncSession, routing_key: Optional[str], tenant_id: Optional[UUID]) -> UUID:
        if tenant_id is not None:
            return tenant_id
        tenant = await TenantDirectory(session).resolve_by_routing_key(routing_key)
        if tenant is None:
            raise UnresolvedTenantError(f"No tenant for routing key {routing_key!r}")
        return tenant.id

    async def _apply_change(self, session: AsyncSession, tenant_id: UUID, payload: dict[str, Any]) -> list[RealtimeEvent]:
        value = payload.get("value") or {}
        realtime: list[RealtimeEvent] = []

        if payload.get("field") == TEMPLATE_STATUS_FIELD:
            await self._apply_template_status(session, tenant_id, value)
            return realtime

        if value.get("messages"):
            realtime += await self._apply_inbound_messages(session, tenant_id, value)
        if value.get("statuses"):
            realtime += await self._apply_statuses(session, tenant_id, value)
        return realtime

    # ──────────────────────────────────────────────────────────────────────
    # Inbound messages
    # ──────────────────────────────────────────────────────────────────────
    async def _apply_inbound_messages(self, session: AsyncSession, tenant_id: UUID, value: dict[str, Any]) -> list[RealtimeEvent]:
        messages = MessageRepository(session)
        contacts = ContactRepository(session)
        conversations = ConversationRepository(session)
        metadata = value.get("metadata") or {}
        phone_number_id = metadata.get("phone_number_id")
        names = _profile_names(value)
        realtime: list[RealtimeEvent] = []

        for item in value.get("messages") or []:
            external_id = item.get("id")
            if not external_id:
                logger.warning("inbound_message_without_id")
                continue
            if await messages.exists_external_id(external_id):
                logger.info("inbound_message_already_stored", external_message_id=external_id)
                continue

            phone = normalize_phone(item.get("from"))
            if not phone:
                logger.warning("inbound_message_without_sender", external_message_id=external_id)
                continue
            sent_at = _parse_timestamp(item.get("timestamp"))
            content = classify_inbound(item)

            contact = await contacts.upsert(tenant_id, phone, names.get(phone))
            conversation, created = await conversations.record_inbound(tenant_id, phone, contact, sent_at)

            message = messages.add(
                MessageModel(
                    tenant_id=tenant_id,
                    conversation_id=conversation.id,
                    external_message_id=external_id,
                    direction=MessageDirection.INBOUND,
                    status=MessageStatus.DELIVERED,
                    type=content.type,
                    from_phone=phone,
                    to_phone=metadata.get("display_phone_number") or phone_number_id,
                    content=content.text,
                    media_id=content.media_id,
                    media_mime_type=content.media_mime_type,
                    media_caption=content.media_caption,
                    media_filename=content.media_filename,
                    interactive=content.interactive,
                    timestamp=sent_at,
                    delivered_at=sent_at,
                )
            )
            try:
                await session.flush()
            except IntegrityError as e:
                raise DuplicateEventError(f"Message {external_id} inserted concurrently") from e

            await self.trigger_matcher.on_inbound_message(
                session,
                TriggerContext(
                    tenant_id=tenant_id,
                    contact_phone=phone,
                    conversation_id=conversation.id,
                    message_id=message.id,
                    message_body=content.text,
                    message_type=content.type.value,
                    phone_number_id=phone_number_id,
                ),
                conversation_created=created,
                button_payload=content.button_payload,
            )

            conversation_data = {
                "conversationId": str(conversation.id),
                "contactPhone": phone,
                "contactName": conversation.contact_name,
                "unreadCount": conversation.unread_count,
                "lastMessageAt": conversation.last_message_at.isoformat() if conversation.last_message_at else None,
            }
            message_data = {
                "messageId": str(message.id),
                "conversationId": str(conversation.id),
                "externalMessageId": external_id,
                "direction": MessageDirection.INBOUND.value,
                "type": content.type.value,
                "content": content.text,
                "from": phone,
                "timestamp": sent_at.isoformat(),
            }
            realtime += [
                RealtimeEvent(CONVERSATION_NEW if created else CONVERSATION_UPDATED, tenant_id, conversation_data),
                RealtimeEvent(MESSAGE_NEW, tenant_id, message_data),
                RealtimeEvent(
                    NOTIFICATION_NEW,
                    tenant_id,
                    {
                        "kind": "inbound_message",
                        "title": f"New message from {conversation.contact_name or phone}",
                        "body": (content.text or content.type.value)[:140],
                        "conversationId": str(conversation.id),
                    },
                ),
            ]
            logger.info(
                "inbound_message_stored",
                external_message_id=external_id,
                message_id=str(message.id),
                conversation_id=str(conversation.id),
                conversation_created=created,
            )
        return realtime

    # ──────────────────────────────────────────────────────────────────────
    # Delivery receipts
    # ──────────────────────────────────────────────────────────────────────
    async def _apply_statuses(self, session: AsyncSession, tenant_id: UUID, value: dict[str, Any]) -> list[RealtimeEvent]:
        messages = MessageRepository(session)
        realtime: list[RealtimeEvent] = []
        for item in value.get("statuses") or []:
            external_id = item.get("id")
            new_status = PROVIDER_STATUS_MAP.get(str(item.get("status", "")).lower())
            if not external_id or new_status is None:
                logger.warning("status_update_unrecognised", external_message_id=external_id, status=item.get("status"))
                continue

            message = await messages.get_by_external_id(external_id)
            if message is None or message.tenant_id != tenant_id:
                logger.warning("status_update_unknown_message", external_message_id=external_id)
                continue
            if not message.status.can_transition_to(new_status):
                logger.info(
                    "status_update_ignored",
                    external_message_id=external_id,
                    current=message.status.value,
                    incoming=new_status.value,
                )
                continue

            at = _parse_timestamp(item.get("timestamp"))
            message.status = new_status
            if new_status == MessageStatus.SENT:
                message.sent_at = message.sent_at or at
            elif new_status == MessageStatus.DELIVERED:
                message.delivered_at = at
            elif new_status == MessageStatus.READ:
                message.read_at = at
                message.delivered_at = message.delivered_at or at
            elif new_status == MessageStatus.FAILED:
                message.failed_at = at
                message.error_message = _status_error(item)
            await session.flush()

            realtime.append(
                RealtimeEvent(
                    CONVERSATION_UPDATED,
                    tenant_id,
                    {
                        "conversationId": str(message.conversation_id),
                        "messageId": str(message.id),
                        "status": new_status.value,
                        "errorMessage": message.error_message,
                    },
                )
            )
        return realtime

    # ──────────────────────────────────────────────────────────────────────
    # Template review results
    # ──────────────────────────────────────────────────────────────────────
    async def _apply_template_status(self, session: AsyncSession, tenant_id: UUID, value: dict[str, Any]) -> None:
        external_id = value.get("message_template_id")
        name = value.get("message_template_name")
        language = value.get("message_template_language")
        new_status = PROVIDER_TEMPLATE_STATUS_MAP.get(str(value.get("event", "")).upper())
        if new_status is None:
            logger.warning("template_status_unrecognised", event=value.get("event"))
            return

        template = await TemplateRepository(session).find(
            tenant_id, str(external_id) if external_id is not None else None, name, language,
        )
        if template is None:
            logger.warning("template_not_found", external_template_id=external_id, name=name, language=language)
            return

        template.status = new_status
        reason = value.get("reason")
        template.rejection_reason = reason if new_status == TemplateStatus.REJECTED and reason and reason != "NONE" else None
        if external_id is not None and not template.external_template_id:
            template.external_template_id = str(external_id)
        await session.flush()
        logger.info("template_status_updated", template_id=str(template.id), status=new_status.value)
