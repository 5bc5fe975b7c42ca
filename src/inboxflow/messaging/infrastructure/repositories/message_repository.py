from __future__ import annotations

from datetime import timedelta
from typing import Any, Optional
from uuid import UUID

from sqlalchemy import and_, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from inboxflow.messaging.domain.value_objects import MessageStatus, RawEventStatus
from inboxflow.messaging.infrastructure.models import (
    MessageModel,
    MessageTemplateModel,
    RawWebhookEventModel,
)
from inboxflow.shared.infrastructure.database.base_model import utcnow


class RawEventRepository:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def add(self, tenant_id: Optional[UUID], routing_key: Optional[str], payload: dict[str, Any]) -> RawWebhookEventModel:
        event = RawWebhookEventModel(
            tenant_id=tenant_id,
            routing_key=routing_key,
            payload=payload,
            status=RawEventStatus.PENDING,
            retry_count=0,
        )
        self.db.add(event)
        await self.db.flush()
        return event

    async def get(self, event_id: UUID) -> Optional[RawWebhookEventModel]:
        return await self.db.get(RawWebhookEventModel, event_id)

    async def claim(self, event_id: UUID, max_attempts: int, stale_after_seconds: float = 300.0) -> bool:
        """
        PENDING/FAILED → PROCESSING with one conditional UPDATE; False when
        already processed, exhausted or owned by another worker.

        A PROCESSING row is taken over only once it has not been touched for
        ``stale_after_seconds`` (its worker died without marking it).
        """
        now = utcnow()
        cutoff = now - timedelta(seconds=stale_after_seconds)
        result = await self.db.execute(
            update(RawWebhookEventModel)
            .where(
                RawWebhookEventModel.id == event_id,
                or_(
                    RawWebhookEventModel.status.in_([RawEventStatus.PENDING, RawEventStatus.FAILED]),
                    and_(
                        RawWebhookEventModel.status == RawEventStatus.PROCESSING,
                        RawWebhookEventModel.updated_at < cutoff,
                    ),
                ),
                RawWebhookEventModel.retry_count < max_attempts,
            )
            .values(status=RawEventStatus.PROCESSING, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def unfinished_ids(self, limit: int, older_than_seconds: float, max_attempts: int) -> list[UUID]:
        """Unprocessed rows under the attempt cap and untouched for ``older_than_seconds``, oldest first."""
        cutoff = utcnow() - timedelta(seconds=older_than_seconds)
        stmt = (
            select(RawWebhookEventModel.id)
            .where(RawWebhookEventModel.status != RawEventStatus.PROCESSED)
            .where(RawWebhookEventModel.retry_count < max_attempts)
            .where(RawWebhookEventModel.updated_at < cutoff)
            .order_by(RawWebhookEventModel.created_at)
            .limit(limit)
        )
        return list((await self.db.execute(stmt)).scalars())

    async def mark_processed(self, event_id: UUID, tenant_id: Optional[UUID]) -> None:
        await self.db.execute(
            update(RawWebhookEventModel)
            .where(RawWebhookEventModel.id == event_id)
            .values(
                status=RawEventStatus.PROCESSED,
                tenant_id=tenant_id,
                processed_at=utcnow(),
                error_message=None,
                updated_at=utcnow(),
            )
            .execution_options(synchronize_session=False)
        )

    async def mark_failed(self, event_id: UUID, error: str, *, count_attempt: bool = True) -> None:
        values: dict[str, Any] = {
            "status": RawEventStatus.FAILED,
            "error_message": error[:2000],
            "updated_at": utcnow(),
        }
        if count_attempt:
            values["retry_count"] = RawWebhookEventModel.retry_count + 1
        await self.db.execute(
            update(RawWebhookEventModel)
            .where(RawWebhookEventModel.id == event_id)
            .values(**values)
            .execution_options(synchronize_session=False)
        )


class MessageRepository:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def get(self, message_id: UUID) -> Optional[MessageModel]:
        return await self.db.get(MessageModel, message_id)

    async def get_by_external_id(self, external_message_id: str) -> Optional[MessageModel]:
        stmt = select(MessageModel).where(MessageModel.external_message_id == external_message_id)
        return (await self.db.execute(stmt)).scalar_one_or_none()

    async def exists_external_id(self, external_message_id: str) -> bool:
        stmt = select(MessageModel.id).where(MessageModel.external_message_id == external_message_id).limit(1)
        return (await self.db.execute(stmt)).first() is not None

    def add(self, message: MessageModel) -> MessageModel:
        self.db.add(message)
        return message

    async def mark_sent(self, message_id: UUID, external_message_id: str) -> None:
        now = utcnow()
        await self.db.execute(
            update(MessageModel)
            .where(MessageModel.id == message_id, MessageModel.status == MessageStatus.PENDING)
            .values(
                status=MessageStatus.SENT,
                external_message_id=external_message_id,
                sent_at=now,
                error_message=None,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )

    async def record_send_failure(self, message_id: UUID, error: str, *, terminal: bool) -> None:
        now = utcnow()
        values: dict[str, Any] = {
            "error_message": error[:2000],
            "retry_count": MessageModel.retry_count + 1,
            "updated_at": now,
        }
        if terminal:
            values["status"] = MessageStatus.FAILED
            values["failed_at"] = now
        await self.db.execute(
            update(MessageModel)
            .where(MessageModel.id == message_id)
            .values(**values)
            .execution_options(synchronize_session=False)
        )


class TemplateRepository:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def find(
        self,
        tenant_id: UUID,
        external_template_id: Optional[str],
        name: Optional[str],
        language: Optional[str],
    ) -> Optional[MessageTemplateModel]:
        if external_template_id:
            stmt = select(MessageTemplateModel).where(
                MessageTemplateModel.tenant_id == tenant_id,
                MessageTemplateModel.external_template_id == external_template_id,
            )
            found = (await self.db.execute(stmt)).scalars().first()
            if found is not None:
                return found
        if name:
            stmt = select(MessageTemplateModel).where(
                MessageTemplateModel.tenant_id == tenant_id,
                MessageTemplateModel.name == name,
            )
            if language:
                stmt = stmt.where(MessageTemplateModel.language == language)
            return (await self.db.execute(stmt)).scalars().first()
        return None
