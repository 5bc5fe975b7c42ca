from __future__ import annotations

from inboxflow.messaging.infrastructure.repositories.message_repository import RawEventRepository
from inboxflow.shared.infrastructure.database.session import DatabaseSessionFactory
from inboxflow.shared.infrastructure.observability.logger import get_logger
from inboxflow.shared.infrastructure.queue.job_queue import JobQueue, webhook_job_id
from inboxflow.workers.base_worker import BaseWorker

logger = get_logger(__name__)


class RawEventSweeper(BaseWorker):
    """
    Re-enqueues raw events that have no live job.

    Covers a failed enqueue at ingestion, a queue that lost its state and a
    worker that died mid-claim. Enqueue is keyed by raw event id, so rows whose
    job is still queued or backing off are left alone.
    """

    def __init__(
        self,
        sessions: DatabaseSessionFactory,
        queue: JobQueue,
        *,
        interval: float = 60.0,
        older_than_seconds: float = 300.0,
        batch_size: int = 100,
        max_attempts: int = 5,
    ):
        super().__init__(worker_name="raw-event-sweeper", interval=interval)
        self.sessions = sessions
        self.queue = queue
        self.older_than_seconds = older_than_seconds
        self.batch_size = batch_size
        self.max_attempts = max_attempts

    async def sweep_once(self) -> int:
        """One pass; returns how many jobs were re-enqueued."""
        async with self.sessions.session() as session:
            stranded = await RawEventRepository(session).unfinished_ids(
                self.batch_size, self.older_than_seconds, self.max_attempts,
            )

        requeued = 0
        for raw_event_id in stranded:
            if await self.queue.enqueue(webhook_job_id(raw_event_id), {"raw_event_id": str(raw_event_id)}):
                requeued += 1
        if requeued:
            logger.warning("raw_events_requeued", count=requeued, scanned=len(stranded))
        return requeued

    async def execute(self) -> bool:
        await self.sweep_once()
        # periodic; never busy-loop on the same stranded rows
        return False
