import pytest

from inboxflow.messaging.domain.exceptions import (
    RateLimitExceededError,
    UnresolvedTenantError,
)
from inboxflow.shared.exceptions import TransientInfraError
from inboxflow.shared.infrastructure.queue.job_queue import InMemoryJobQueue
from inboxflow.workers.queue_worker import COMPLETED, DEAD_LETTERED, RETRIED, QueueWorker


class Clock:
    def __init__(self, now=1000.0):
        self.now = now

    def __call__(self):
        return self.now


def make_worker(queue, handler, **kwargs):
    kwargs.setdefault("max_attempts", 5)
    kwargs.setdefault("backoff_base", 2.0)
    return QueueWorker("test-queue", queue, handler, **kwargs)


async def test_success_completes_job():
    queue = InMemoryJobQueue("q", clock=Clock())
    seen = []

    async def handler(job):
        seen.append(job.payload)

    worker = make_worker(queue, handler)
    await queue.enqueue("job-1", {"n": 1})

    assert await worker.process_next() == COMPLETED
    assert seen == [{"n": 1}]
    assert await queue.pending_count() == 0
    assert await worker.process_next() is None


async def test_transient_failures_back_off_then_dead_letter():
    clock = Clock()
    queue = InMemoryJobQueue("q", clock=clock)

    async def handler(job):
        raise TransientInfraError("db down")

    worker = make_worker(queue, handler)
    await queue.enqueue("job-1", {})

    delays = []
    for _ in range(4):
        assert await worker.process_next() == RETRIED
        delay = queue.next_ready_at("job-1") - clock.now
        delays.append(delay)
        clock.now += delay

    assert delays == [2, 4, 8, 16]
    assert await worker.process_next() == DEAD_LETTERED
    dead = await queue.dead_letters()
    assert dead[0].attempts == 5
    assert "db down" in dead[0].last_error


async def test_non_retryable_error_dead_letters_immediately():
    queue = InMemoryJobQueue("q", clock=Clock())

    async def handler(job):
        raise UnresolvedTenantError("no tenant for routing key")

    worker = make_worker(queue, handler)
    await queue.enqueue("job-1", {})

    assert await worker.process_next() == DEAD_LETTERED
    assert len(await queue.dead_letters()) == 1


async def test_unexpected_errors_are_retried():
    queue = InMemoryJobQueue("q", clock=Clock())

    async def handler(job):
        raise RuntimeError("surprise")

    worker = make_worker(queue, handler)
    await queue.enqueue("job-1", {})
    assert await worker.process_next() == RETRIED


async def test_retry_after_extends_backoff():
    clock = Clock()
    queue = InMemoryJobQueue("q", clock=clock)

    async def handler(job):
        raise RateLimitExceededError(retry_after=30)

    worker = make_worker(queue, handler)
    await queue.enqueue("job-1", {})

    assert await worker.process_next() == RETRIED
    assert queue.next_ready_at("job-1") == pytest.approx(clock.now + 30)


async def test_execute_claims_up_to_concurrency():
    queue = InMemoryJobQueue("q", clock=Clock())
    handled = []

    async def handler(job):
        handled.append(job.id)

    worker = make_worker(queue, handler, concurrency=2)
    for i in range(3):
        await queue.enqueue(f"job-{i}", {})

    assert await worker.execute() is True
    assert len(handled) == 2
    assert await worker.execute() is True
    assert len(handled) == 3
    assert await worker.execute() is False
