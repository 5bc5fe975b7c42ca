from __future__ import annotations

import asyncio
import time
from abc import ABC, abstractmethod

from inboxflow.shared.infrastructure.observability.logger import get_logger

logger = get_logger(__name__)


class BaseWorker(ABC):
    """Base class for all background workers."""

    def __init__(self, worker_name: str, interval: float = 60.0, error_backoff_max: float = 300.0):
        self.worker_name = worker_name
        self.interval = interval
        self.error_backoff_max = error_backoff_max
        self.is_running = False
        self.shutdown_event = asyncio.Event()

    async def initialize(self) -> None:
        """Hook for subclasses that need resources before the loop starts."""

    async def shutdown(self) -> None:
        """Graceful shutdown of worker."""
        self.is_running = False
        self.shutdown_event.set()
        logger.info("worker_shutting_down", worker=self.worker_name)

    async def run(self) -> None:
        """Main worker loop."""
        await self.initialize()
        self.is_running = True
        logger.info("worker_started", worker=self.worker_name, interval=self.interval)

        while self.is_running and not self.shutdown_event.is_set():
            delay = self.interval
            try:
                start_time = time.monotonic()
                did_work = await self.execute()
                duration = time.monotonic() - start_time
                if did_work:
                    logger.debug("worker_iteration_completed", worker=self.worker_name, duration=duration)
                    # busy: go again without waiting out the interval
                    delay = 0
            except asyncio.CancelledError:
                logger.info("worker_cancelled", worker=self.worker_name)
                break
            except Exception as e:
                logger.error("worker_iteration_failed", worker=self.worker_name, error=str(e), exc_info=True)
                delay = min(self.error_backoff_max, max(self.interval * 2, 1.0))

            try:
                # wait for the next interval, waking early on shutdown
                await asyncio.wait_for(self.shutdown_event.wait(), timeout=delay or 0.001)
            except asyncio.TimeoutError:
                pass
            except asyncio.CancelledError:
                logger.info("worker_cancelled", worker=self.worker_name)
                break

        self.is_running = False
        logger.info("worker_stopped", worker=self.worker_name)

    @abstractmethod
    async def execute(self) -> bool:
        """One unit of work; True when something was processed."""
