from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any, Optional
from uuid import UUID

from sqlalchemy import or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from inboxflow.conversation.domain.value_objects import ExecutionStatus, TriggerType
from inboxflow.conversation.infrastructure.models import FlowExecutionModel, FlowModel
from inboxflow.shared.infrastructure.database.base_model import utcnow


class FlowRepository:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def get(self, flow_id: UUID) -> Optional[FlowModel]:
        return await self.db.get(FlowModel, flow_id)

    async def list_active(self, tenant_id: UUID, trigger_type: TriggerType) -> list[FlowModel]:
        stmt = (
            select(FlowModel)
            .where(FlowModel.tenant_id == tenant_id)
            .where(FlowModel.trigger_type == trigger_type)
            .where(FlowModel.is_active == True)  # noqa: E712
            .order_by(FlowModel.created_at)
        )
        return list((await self.db.execute(stmt)).scalars())

    async def increment_runs(self, flow_id: UUID) -> None:
        await self.db.execute(
            update(FlowModel)
            .where(FlowModel.id == flow_id)
            .values(runs_count=FlowModel.runs_count + 1)
            .execution_options(synchronize_session=False)
        )


class FlowExecutionRepository:
    def __init__(self, db: AsyncSession):
        self.db = db

    def _now(self) -> datetime:
        return utcnow()

    def add(self, execution: FlowExecutionModel) -> FlowExecutionModel:
        self.db.add(execution)
        return execution

    async def get(self, execution_id: UUID) -> Optional[FlowExecutionModel]:
        return await self.db.get(FlowExecutionModel, execution_id)

    async def due_pending_ids(self, limit: int, now: Optional[datetime] = None) -> list[UUID]:
        now = now or self._now()
        stmt = (
            select(FlowExecutionModel.id)
            .where(FlowExecutionModel.status == ExecutionStatus.PENDING)
            .where(or_(FlowExecutionModel.wake_at.is_(None), FlowExecutionModel.wake_at <= now))
            .order_by(FlowExecutionModel.created_at)
            .limit(limit)
        )
        return list((await self.db.execute(stmt)).scalars())

    async def claim(self, execution_id: UUID) -> bool:
        """PENDING → PROCESSING with one conditional UPDATE; False if another poller won."""
        now = self._now()
        result = await self.db.execute(
            update(FlowExecutionModel)
            .where(FlowExecutionModel.id == execution_id)
            .where(FlowExecutionModel.status == ExecutionStatus.PENDING)
            .values(status=ExecutionStatus.PROCESSING, started_at=now, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def release_stale(self, older_than_seconds: int) -> int:
        """Executions left PROCESSING by a crashed poller go back to PENDING."""
        cutoff = self._now() - timedelta(seconds=older_than_seconds)
        result = await self.db.execute(
            update(FlowExecutionModel)
            .where(FlowExecutionModel.status == ExecutionStatus.PROCESSING)
            .where(FlowExecutionModel.updated_at < cutoff)
            .values(status=ExecutionStatus.PENDING, updated_at=self._now())
            .execution_options(synchronize_session=False)
        )
        return result.rowcount or 0

    async def mark_completed(self, execution_id: UUID, state: dict[str, Any]) -> bool:
        """PROCESSING → COMPLETED; False when the row left PROCESSING (released as stale, or completed by another run)."""
        now = self._now()
        result = await self.db.execute(
            update(FlowExecutionModel)
            .where(FlowExecutionModel.id == execution_id)
            .where(FlowExecutionModel.status == ExecutionStatus.PROCESSING)
            .values(
                status=ExecutionStatus.COMPLETED,
                execution_state=state,
                completed_at=now,
                error=None,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def record_failure(self, execution_id: UUID, error: str, *, retry: bool) -> ExecutionStatus:
        """
        Bump ``retry_count``; back to PENDING while retries remain (and ``retry``
        is allowed), otherwise FAILED.
        """
        execution = await self.get(execution_id)
        if execution is None:
            return ExecutionStatus.FAILED
        retry_count = execution.retry_count + 1
        status = ExecutionStatus.PENDING if retry and retry_count < execution.max_retries else ExecutionStatus.FAILED
        now = self._now()
        await self.db.execute(
            update(FlowExecutionModel)
            .where(FlowExecutionModel.id == execution_id)
            .values(
                status=status,
                retry_count=retry_count,
                error=error[:2000],
                completed_at=now if status == ExecutionStatus.FAILED else None,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        return status
