"""
Queue consumer with bounded concurrency, a throughput cap and exponential
backoff.

A failed job is dead-lettered when its error is not retryable or its attempts
are exhausted; otherwise it is rescheduled after
``max(backoff_seconds(attempts), error.retry_after)``.
"""
from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Callable, Optional

from inboxflow.messaging.infrastructure.rate_limiter.token_bucket import TokenBucketRateLimiter
from inboxflow.shared.exceptions import is_retryable
from inboxflow.shared.infrastructure.observability.logger import correlation_context, get_logger
from inboxflow.shared.infrastructure.queue.job_queue import Job, JobQueue, backoff_seconds
from inboxflow.workers.base_worker import BaseWorker

logger = get_logger(__name__)

JobHandler = Callable[[Job], Awaitable[Any]]

COMPLETED = "completed"
RETRIED = "retried"
DEAD_LETTERED = "dead_lettered"


class QueueWorker(BaseWorker):
    def __init__(
        self,
        name: str,
        queue: JobQueue,
        handler: JobHandler,
        *,
        concurrency: int = 1,
        throughput: Optional[TokenBucketRateLimiter] = None,
        max_attempts: int = 3,
        backoff_base: float = 2.0,
        backoff_max: float = 300.0,
        lease_seconds: float = 300.0,
        poll_interval: float = 0.5,
    ):
        super().__init__(worker_name=name, interval=poll_interval)
        self.queue = queue
        self.handler = handler
        self.concurrency = max(1, concurrency)
        self.throughput = throughput
        self.max_attempts = max_attempts
        self.backoff_base = backoff_base
        self.backoff_max = backoff_max
        self.lease_seconds = lease_seconds

    def retry_delay(self, job: Job, error: BaseException) -> float:
        delay = backoff_seconds(job.attempts, self.backoff_base, self.backoff_max)
        retry_after = getattr(error, "retry_after", None)
        if retry_after:
            delay = max(delay, float(retry_after))
        return delay

    async def process_job(self, job: Job) -> str:
        with correlation_context(queue=self.worker_name, job_id=job.id, attempt=job.attempts):
            try:
                await self.handler(job)
            except Exception as e:
                error = f"{type(e).__name__}: {e}"
                if not is_retryable(e) or job.attempts >= self.max_attempts:
                    await self.queue.fail(job, error)
                    logger.error("job_dead_lettered", error=error, retryable=is_retryable(e))
                    return DEAD_LETTERED
                delay = self.retry_delay(job, e)
                await self.queue.retry(job, delay, error)
                logger.warning("job_retry_scheduled", error=error, delay=delay)
                return RETRIED

            await self.queue.complete(job)
            logger.debug("job_completed")
            return COMPLETED

    async def process_next(self) -> Optional[str]:
        """Claim and handle a single job; None when nothing is due."""
        job = await self.queue.claim(self.lease_seconds)
        if job is None:
            return None
        if self.throughput is not None:
            await self.throughput.wait_for_token(f"throughput:{self.worker_name}")
        return await self.process_job(job)

    async def execute(self) -> bool:
        jobs = []
        for _ in range(self.concurrency):
            job = await self.queue.claim(self.lease_seconds)
            if job is None:
                break
            jobs.append(job)
        if not jobs:
            return False

        async def _throttled(job: Job) -> str:
            if self.throughput is not None:
                await self.throughput.wait_for_token(f"throughput:{self.worker_name}")
            return await self.process_job(job)

        await asyncio.gather(*(_throttled(job) for job in jobs))
        return True
