from __future__ import annotations

from datetime import datetime
from typing import Any, Optional
from uuid import UUID

from sqlalchemy import JSON, Boolean, Enum as SAEnum, ForeignKey, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from inboxflow.conversation.domain.value_objects import ExecutionStatus, TriggerType
from inboxflow.shared.infrastructure.database.base_model import Base


class FlowModel(Base):
    __tablename__ = "flows"
    __table_args__ = (Index("ix_flows_tenant_trigger_active", "tenant_id", "trigger_type", "is_active"),)

    tenant_id: Mapped[UUID] = mapped_column(ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    trigger_type: Mapped[TriggerType] = mapped_column(
        SAEnum(TriggerType, native_enum=False, length=30), nullable=False,
    )
    # comma-separated list for KEYWORD flows
    trigger_keywords: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    nodes: Mapped[list[Any]] = mapped_column(JSON, nullable=False, default=list)
    edges: Mapped[list[Any]] = mapped_column(JSON, nullable=False, default=list)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    runs_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)


class FlowExecutionModel(Base):
    __tablename__ = "flow_executions"
    __table_args__ = (Index("ix_flow_executions_status_created", "status", "created_at"),)

    flow_id: Mapped[UUID] = mapped_column(ForeignKey("flows.id", ondelete="CASCADE"), nullable=False, index=True)
    tenant_id: Mapped[UUID] = mapped_column(ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False)
    contact_phone: Mapped[str] = mapped_column(String(32), nullable=False)
    conversation_id: Mapped[Optional[UUID]] = mapped_column(
        ForeignKey("conversations.id", ondelete="SET NULL"), nullable=True,
    )
    message_body: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    triggered_by: Mapped[TriggerType] = mapped_column(
        SAEnum(TriggerType, native_enum=False, length=30), nullable=False,
    )
    trigger_data: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    status: Mapped[ExecutionStatus] = mapped_column(
        SAEnum(ExecutionStatus, native_enum=False, length=20), nullable=False, default=ExecutionStatus.PENDING,
    )
    # resume point: set for button replies and delay continuations
    current_node_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    execution_state: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    retry_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    max_retries: Mapped[int] = mapped_column(Integer, nullable=False, default=3)
    error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    wake_at: Mapped[Optional[datetime]] = mapped_column(nullable=True)
    parent_execution_id: Mapped[Optional[UUID]] = mapped_column(
        ForeignKey("flow_executions.id", ondelete="SET NULL"), nullable=True,
    )
    started_at: Mapped[Optional[datetime]] = mapped_column(nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(nullable=True)
