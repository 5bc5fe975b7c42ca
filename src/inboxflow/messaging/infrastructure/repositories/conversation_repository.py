"""
Contact and conversation upserts keyed by (tenant_id, phone).

Both tables carry a unique constraint on that pair. A concurrent insert by
another worker surfaces as TransientInfraError; the retried job then finds
the existing row and takes the update path.
"""
from __future__ import annotations

from datetime import datetime
from typing import Optional
from uuid import UUID

from sqlalchemy import case, literal, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from inboxflow.messaging.domain.value_objects import ConversationStatus
from inboxflow.messaging.infrastructure.models import ContactModel, ConversationModel
from inboxflow.shared.exceptions import TransientInfraError
from inboxflow.shared.infrastructure.database.base_model import UTCDateTime, utcnow


class ContactRepository:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def get_by_phone(self, tenant_id: UUID, phone: str) -> Optional[ContactModel]:
        stmt = select(ContactModel).where(ContactModel.tenant_id == tenant_id, ContactModel.phone == phone)
        return (await self.db.execute(stmt)).scalar_one_or_none()

    async def upsert(self, tenant_id: UUID, phone: str, name: Optional[str]) -> ContactModel:
        contact = await self.get_by_phone(tenant_id, phone)
        if contact is None:
            contact = ContactModel(tenant_id=tenant_id, phone=phone, name=name)
            self.db.add(contact)
            try:
                await self.db.flush()
            except IntegrityError as e:
                raise TransientInfraError(f"Concurrent contact insert for {phone}") from e
        elif name and contact.name != name:
            contact.name = name
        return contact


class ConversationRepository:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def get(self, conversation_id: UUID) -> Optional[ConversationModel]:
        return await self.db.get(ConversationModel, conversation_id)

    async def get_by_phone(self, tenant_id: UUID, phone: str) -> Optional[ConversationModel]:
        stmt = select(ConversationModel).where(
            ConversationModel.tenant_id == tenant_id, ConversationModel.contact_phone == phone,
        )
        return (await self.db.execute(stmt)).scalar_one_or_none()

    async def record_inbound(
        self,
        tenant_id: UUID,
        phone: str,
        contact: ContactModel,
        message_at: datetime,
    ) -> tuple[ConversationModel, bool]:
        """
        Upsert the conversation for an inbound message.

        Returns (conversation, created). Existing rows get ``unread_count + 1``
        and ``last_message_at = max(last_message_at, message_at)`` in one
        UPDATE so concurrent workers never lose an increment.
        """
        conversation = await self.get_by_phone(tenant_id, phone)
        if conversation is None:
            conversation = ConversationModel(
                tenant_id=tenant_id,
                contact_id=contact.id,
                contact_phone=phone,
                contact_name=contact.name,
                status=ConversationStatus.OPEN,
                last_message_at=message_at,
                unread_count=1,
            )
            self.db.add(conversation)
            try:
                await self.db.flush()
            except IntegrityError as e:
                raise TransientInfraError(f"Concurrent conversation insert for {phone}") from e
            return conversation, True

        ts = literal(message_at, UTCDateTime())
        await self.db.execute(
            update(ConversationModel)
            .where(ConversationModel.id == conversation.id)
            .values(
                unread_count=ConversationModel.unread_count + 1,
                last_message_at=case(
                    (ConversationModel.last_message_at.is_(None), ts),
                    (ConversationModel.last_message_at < ts, ts),
                    else_=ConversationModel.last_message_at,
                ),
                status=ConversationStatus.OPEN,
                contact_id=contact.id,
                contact_name=contact.name or conversation.contact_name,
                updated_at=utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        await self.db.refresh(conversation)
        return conversation, False

    async def get_or_create_for_outbound(self, tenant_id: UUID, phone: str) -> ConversationModel:
        conversation = await self.get_by_phone(tenant_id, phone)
        if conversation is not None:
            return conversation
        conversation = ConversationModel(tenant_id=tenant_id, contact_phone=phone, status=ConversationStatus.OPEN)
        self.db.add(conversation)
        try:
            await self.db.flush()
        except IntegrityError as e:
            raise TransientInfraError(f"Concurrent conversation insert for {phone}") from e
        return conversation

    async def touch(self, conversation_id: UUID, at: datetime) -> None:
        ts = literal(at, UTCDateTime())
        await self.db.execute(
            update(ConversationModel)
            .where(ConversationModel.id == conversation_id)
            .values(
                last_message_at=case(
                    (ConversationModel.last_message_at.is_(None), ts),
                    (ConversationModel.last_message_at < ts, ts),
                    else_=ConversationModel.last_message_at,
                ),
                updated_at=utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
