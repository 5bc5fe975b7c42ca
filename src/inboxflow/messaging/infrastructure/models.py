"""
Messaging ORM models: tenants and credentials (collaborator-owned, read and
invalidated here), raw webhook events, contacts, conversations, messages and
templates.
"""
from __future__ import annotations

from datetime import datetime
from typing import Any, Optional
from uuid import UUID

from sqlalchemy import (
    JSON,
    Boolean,
    Enum as SAEnum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column

from inboxflow.messaging.domain.value_objects import (
    ConversationStatus,
    MessageDirection,
    MessageStatus,
    MessageType,
    RawEventStatus,
    TemplateStatus,
)
from inboxflow.shared.infrastructure.database.base_model import Base


def _enum(enum_cls: type) -> SAEnum:
    return SAEnum(enum_cls, native_enum=False, length=20, validate_strings=True)


class TenantModel(Base):
    __tablename__ = "tenants"

    name: Mapped[str] = mapped_column(String(200), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="ACTIVE")
    messages_per_minute: Mapped[int] = mapped_column(Integer, nullable=False, default=60)


class WhatsAppCredentialModel(Base):
    __tablename__ = "whatsapp_credentials"

    tenant_id: Mapped[UUID] = mapped_column(ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False, index=True)
    phone_number_id: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    waba_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True, index=True)
    display_phone_number: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    access_token_ciphertext: Mapped[str] = mapped_column(Text, nullable=False)
    is_valid: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    invalid_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    invalidated_at: Mapped[Optional[datetime]] = mapped_column(nullable=True)


class RawWebhookEventModel(Base):
    __tablename__ = "raw_webhook_events"
    __table_args__ = (Index("ix_raw_webhook_events_status_created", "status", "created_at"),)

    tenant_id: Mapped[Optional[UUID]] = mapped_column(ForeignKey("tenants.id", ondelete="SET NULL"), nullable=True)
    routing_key: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    payload: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False)
    status: Mapped[RawEventStatus] = mapped_column(_enum(RawEventStatus), nullable=False, default=RawEventStatus.PENDING)
    retry_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    processed_at: Mapped[Optional[datetime]] = mapped_column(nullable=True)


class ContactModel(Base):
    __tablename__ = "contacts"
    __table_args__ = (UniqueConstraint("tenant_id", "phone", name="uq_contacts_tenant_phone"),)

    tenant_id: Mapped[UUID] = mapped_column(ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False)
    phone: Mapped[str] = mapped_column(String(32), nullable=False)
    name: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)


class ConversationModel(Base):
    __tablename__ = "conversations"
    __table_args__ = (UniqueConstraint("tenant_id", "contact_phone", name="uq_conversations_tenant_phone"),)

    tenant_id: Mapped[UUID] = mapped_column(ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False)
    contact_id: Mapped[Optional[UUID]] = mapped_column(ForeignKey("contacts.id", ondelete="SET NULL"), nullable=True)
    contact_phone: Mapped[str] = mapped_column(String(32), nullable=False)
    contact_name: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)
    status: Mapped[ConversationStatus] = mapped_column(
        _enum(ConversationStatus), nullable=False, default=ConversationStatus.OPEN,
    )
    last_message_at: Mapped[Optional[datetime]] = mapped_column(nullable=True)
    unread_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)


class MessageModel(Base):
    __tablename__ = "messages"
    __table_args__ = (
        Index("ix_messages_conversation_timestamp", "conversation_id", "timestamp"),
    )

    tenant_id: Mapped[UUID] = mapped_column(ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False, index=True)
    conversation_id: Mapped[UUID] = mapped_column(ForeignKey("conversations.id", ondelete="CASCADE"), nullable=False)
    # provider id; unique across tenants, null until an outbound send is accepted
    external_message_id: Mapped[Optional[str]] = mapped_column(String(128), nullable=True, unique=True)
    direction: Mapped[MessageDirection] = mapped_column(_enum(MessageDirection), nullable=False)
    status: Mapped[MessageStatus] = mapped_column(_enum(MessageStatus), nullable=False, default=MessageStatus.PENDING)
    type: Mapped[MessageType] = mapped_column(_enum(MessageType), nullable=False, default=MessageType.TEXT)

    from_phone: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    to_phone: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)

    content: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    media_id: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    media_url: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    media_mime_type: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    media_caption: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    media_filename: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    template_name: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)
    template_language: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    template_params: Mapped[Optional[list[Any]]] = mapped_column(JSON, nullable=True)
    interactive: Mapped[Optional[dict[str, Any]]] = mapped_column(JSON, nullable=True)

    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    retry_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    timestamp: Mapped[datetime] = mapped_column(nullable=False)
    sent_at: Mapped[Optional[datetime]] = mapped_column(nullable=True)
    delivered_at: Mapped[Optional[datetime]] = mapped_column(nullable=True)
    read_at: Mapped[Optional[datetime]] = mapped_column(nullable=True)
    failed_at: Mapped[Optional[datetime]] = mapped_column(nullable=True)


class MessageTemplateModel(Base):
    __tablename__ = "message_templates"
    __table_args__ = (UniqueConstraint("tenant_id", "name", "language", name="uq_templates_tenant_name_lang"),)

    tenant_id: Mapped[UUID] = mapped_column(ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False)
    external_template_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True, index=True)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    language: Mapped[str] = mapped_column(String(20), nullable=False, default="en")
    category: Mapped[Optional[str]] = mapped_column(String(40), nullable=True)
    status: Mapped[TemplateStatus] = mapped_column(_enum(TemplateStatus), nullable=False, default=TemplateStatus.PENDING)
    rejection_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
