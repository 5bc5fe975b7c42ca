from __future__ import annotations

from datetime import datetime
from typing import Callable, Optional

from inboxflow.conversation.application.runner import FlowRunner
from inboxflow.conversation.infrastructure.repositories import FlowExecutionRepository
from inboxflow.shared.infrastructure.database.base_model import utcnow
from inboxflow.shared.infrastructure.database.session import DatabaseSessionFactory
from inboxflow.shared.infrastructure.observability.logger import correlation_context, get_logger
from inboxflow.workers.base_worker import BaseWorker

logger = get_logger(__name__)


class FlowOutboxPoller(BaseWorker):
    """
    Polls PENDING flow executions and runs them.

    Every poll first returns executions stuck in PROCESSING past
    ``stale_after_seconds`` to PENDING, then claims up to ``batch_size`` due
    rows (``wake_at`` unset or passed) with a conditional update each, so
    several pollers can run side by side.
    """

    def __init__(
        self,
        sessions: DatabaseSessionFactory,
        runner: FlowRunner,
        *,
        interval: float = 1.0,
        batch_size: int = 10,
        stale_after_seconds: int = 300,
        clock: Callable[[], datetime] = utcnow,
    ):
        super().__init__(worker_name="flow-outbox-poller", interval=interval)
        self.sessions = sessions
        self.runner = runner
        self.batch_size = batch_size
        self.stale_after_seconds = stale_after_seconds
        self.clock = clock

    async def poll_once(self, now: Optional[datetime] = None) -> int:
        """One poll; returns the number of executions this poller claimed and ran."""
        async with self.sessions.transaction() as session:
            executions = FlowExecutionRepository(session)
            released = await executions.release_stale(self.stale_after_seconds)
            due = await executions.due_pending_ids(self.batch_size, now or self.clock())
        if released:
            logger.warning("flow_executions_released", count=released)

        ran = 0
        for execution_id in due:
            async with self.sessions.transaction() as session:
                claimed = await FlowExecutionRepository(session).claim(execution_id)
            if not claimed:
                continue
            with correlation_context(execution_id=str(execution_id)):
                await self.runner.run(execution_id)
            ran += 1
        return ran

    async def execute(self) -> bool:
        return await self.poll_once() > 0
