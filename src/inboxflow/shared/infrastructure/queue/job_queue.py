"""
Durable Job Queue
Delayed, de-duplicated jobs with leases and a dead-letter list.

Two interchangeable backends:
- RedisJobQueue: shared across processes, atomic Lua scripts
- InMemoryJobQueue: single process (local runs, tests), injectable clock
"""
from __future__ import annotations

import asyncio
import json
import time
from dataclasses import asdict, dataclass, field
from typing import Any, Callable, Optional, Protocol

from redis.asyncio import Redis

from inboxflow.shared.infrastructure.observability.logger import get_logger

logger = get_logger(__name__)

WEBHOOK_QUEUE = "webhook-processor"
SEND_QUEUE = "message-send"

Clock = Callable[[], float]


def webhook_job_id(raw_event_id: Any) -> str:
    return f"webhook-{raw_event_id}"


def send_job_id(message_id: Any) -> str:
    return f"message-{message_id}"


def backoff_seconds(attempts: int, base: float, max_delay: float) -> float:
    # simple exponential backoff with cap
    delay = base * (2 ** max(0, attempts - 1))
    return min(delay, max_delay)


@dataclass
class Job:
    id: str
    queue: str
    payload: dict[str, Any]
    attempts: int = 0
    last_error: Optional[str] = None
    enqueued_at: float = field(default_factory=time.time)

    def to_json(self) -> str:
        return json.dumps(asdict(self))

    @classmethod
    def from_json(cls, raw: str | bytes) -> "Job":
        return cls(**json.loads(raw))


class JobQueue(Protocol):
    name: str

    async def enqueue(self, job_id: str, payload: dict[str, Any], delay: float = 0.0) -> bool:
        """Schedule a job; returns False when a job with that id is already queued or running."""

    async def claim(self, lease_seconds: float = 300.0) -> Optional[Job]:
        """Take the oldest due job, bumping ``attempts``; expired leases become due again."""

    async def complete(self, job: Job) -> None: ...

    async def retry(self, job: Job, delay: float, error: str) -> None: ...

    async def fail(self, job: Job, error: str) -> None:
        """Move the job to the dead-letter list."""

    async def dead_letters(self) -> list[Job]: ...

    async def pending_count(self) -> int: ...


# ──────────────────────────────────────────────────────────────────────────────
# In-memory backend
# ──────────────────────────────────────────────────────────────────────────────
class InMemoryJobQueue:
    def __init__(self, name: str, clock: Clock = time.time) -> None:
        self.name = name
        self.clock = clock
        self._jobs: dict[str, Job] = {}
        self._ready_at: dict[str, float] = {}
        self._leases: dict[str, float] = {}
        self._dead: list[Job] = []
        self._lock = asyncio.Lock()

    async def enqueue(self, job_id: str, payload: dict[str, Any], delay: float = 0.0) -> bool:
        async with self._lock:
            if job_id in self._jobs:
                return False
            now = self.clock()
            self._jobs[job_id] = Job(id=job_id, queue=self.name, payload=payload, enqueued_at=now)
            self._ready_at[job_id] = now + max(0.0, delay)
            return True

    async def claim(self, lease_seconds: float = 300.0) -> Optional[Job]:
        async with self._lock:
            now = self.clock()
            for job_id, deadline in list(self._leases.items()):
                if deadline <= now:
                    del self._leases[job_id]
                    self._ready_at[job_id] = now
            due = [(ready, job_id) for job_id, ready in self._ready_at.items() if ready <= now]
            if not due:
                return None
            _, job_id = min(due)
            del self._ready_at[job_id]
            self._leases[job_id] = now + lease_seconds
            job = self._jobs[job_id]
            job.attempts += 1
            return job

    async def complete(self, job: Job) -> None:
        async with self._lock:
            self._leases.pop(job.id, None)
            self._jobs.pop(job.id, None)

    async def retry(self, job: Job, delay: float, error: str) -> None:
        async with self._lock:
            self._leases.pop(job.id, None)
            job.last_error = error
            self._jobs[job.id] = job
            self._ready_at[job.id] = self.clock() + max(0.0, delay)

    async def fail(self, job: Job, error: str) -> None:
        async with self._lock:
            self._leases.pop(job.id, None)
            self._jobs.pop(job.id, None)
            job.last_error = error
            self._dead.append(job)

    async def dead_letters(self) -> list[Job]:
        return list(self._dead)

    async def pending_count(self) -> int:
        return len(self._ready_at)

    def next_ready_at(self, job_id: str) -> Optional[float]:
        return self._ready_at.get(job_id)


# ──────────────────────────────────────────────────────────────────────────────
# Redis backend
# ──────────────────────────────────────────────────────────────────────────────
_ENQUEUE_LUA = """
local jobs = KEYS[1]
local scheduled = KEYS[2]
local job_id = ARGV[1]
if redis.call('HEXISTS', jobs, job_id) == 1 then
    return 0
end
redis.call('HSET', jobs, job_id, ARGV[2])
redis.call('ZADD', scheduled, ARGV[3], job_id)
return 1
"""

_CLAIM_LUA = """
local jobs = KEYS[1]
local scheduled = KEYS[2]
local active = KEYS[3]
local attempts = KEYS[4]
local now = tonumber(ARGV[1])
local lease = tonumber(ARGV[2])

-- expired leases become due again
local expired = redis.call('ZRANGEBYSCORE', active, '-inf', ARGV[1])
for _, job_id in ipairs(expired) do
    redis.call('ZREM', active, job_id)
    redis.call('ZADD', scheduled, ARGV[1], job_id)
end

local due = redis.call('ZRANGEBYSCORE', scheduled, '-inf', ARGV[1], 'LIMIT', 0, 1)
if #due == 0 then
    return false
end
local job_id = due[1]
redis.call('ZREM', scheduled, job_id)
local raw = redis.call('HGET', jobs, job_id)
if not raw then
    return false
end
local attempt = redis.call('HINCRBY', attempts, job_id, 1)
redis.call('ZADD', active, tostring(now + lease), job_id)
return {raw, attempt}
"""

_RETRY_LUA = """
local jobs = KEYS[1]
local scheduled = KEYS[2]
local active = KEYS[3]
redis.call('ZREM', active, ARGV[1])
redis.call('HSET', jobs, ARGV[1], ARGV[2])
redis.call('ZADD', scheduled, ARGV[3], ARGV[1])
return 1
"""

_FAIL_LUA = """
local jobs = KEYS[1]
local active = KEYS[2]
local dead = KEYS[3]
local attempts = KEYS[4]
redis.call('ZREM', active, ARGV[1])
redis.call('HDEL', jobs, ARGV[1])
redis.call('HDEL', attempts, ARGV[1])
redis.call('RPUSH', dead, ARGV[2])
return 1
"""


class RedisJobQueue:
    """
    Keys (per queue name):
      queue:{name}:jobs       hash   job id -> job json
      queue:{name}:scheduled  zset   job id -> ready-at epoch seconds
      queue:{name}:active     zset   job id -> lease deadline
      queue:{name}:attempts   hash   job id -> claim count
      queue:{name}:dead       list   dead-lettered job json
    """

    def __init__(self, redis: Redis, name: str, clock: Clock = time.time) -> None:
        self.redis = redis
        self.name = name
        self.clock = clock
        base = f"queue:{name}"
        self.jobs_key = f"{base}:jobs"
        self.scheduled_key = f"{base}:scheduled"
        self.active_key = f"{base}:active"
        self.dead_key = f"{base}:dead"
        self.attempts_key = f"{base}:attempts"

    async def enqueue(self, job_id: str, payload: dict[str, Any], delay: float = 0.0) -> bool:
        now = self.clock()
        job = Job(id=job_id, queue=self.name, payload=payload, enqueued_at=now)
        added = await self.redis.eval(
            _ENQUEUE_LUA, 2, self.jobs_key, self.scheduled_key,
            job_id, job.to_json(), now + max(0.0, delay),
        )
        return int(added) == 1

    async def claim(self, lease_seconds: float = 300.0) -> Optional[Job]:
        claimed = await self.redis.eval(
            _CLAIM_LUA, 4, self.jobs_key, self.scheduled_key, self.active_key, self.attempts_key,
            self.clock(), lease_seconds,
        )
        if claimed is None:
            return None
        raw, attempts = claimed
        job = Job.from_json(raw)
        job.attempts = int(attempts)
        return job

    async def complete(self, job: Job) -> None:
        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.zrem(self.active_key, job.id)
            pipe.hdel(self.jobs_key, job.id)
            pipe.hdel(self.attempts_key, job.id)
            await pipe.execute()

    async def retry(self, job: Job, delay: float, error: str) -> None:
        job.last_error = error
        await self.redis.eval(
            _RETRY_LUA, 3, self.jobs_key, self.scheduled_key, self.active_key,
            job.id, job.to_json(), self.clock() + max(0.0, delay),
        )

    async def fail(self, job: Job, error: str) -> None:
        job.last_error = error
        await self.redis.eval(
            _FAIL_LUA, 4, self.jobs_key, self.active_key, self.dead_key, self.attempts_key,
            job.id, job.to_json(),
        )

    async def dead_letters(self) -> list[Job]:
        return [Job.from_json(raw) for raw in await self.redis.lrange(self.dead_key, 0, -1)]

    async def pending_count(self) -> int:
        return int(await self.redis.zcard(self.scheduled_key))
