from __future__ import annotations

import asyncio
import signal
from typing import Dict

from inboxflow.shared.infrastructure.observability.logger import get_logger
from inboxflow.workers.base_worker import BaseWorker

logger = get_logger(__name__)


class WorkerManager:
    """Manager for all background workers."""

    def __init__(self) -> None:
        self.workers: Dict[str, BaseWorker] = {}
        self.tasks: Dict[str, asyncio.Task] = {}
        self.shutdown_event = asyncio.Event()

    def register_worker(self, worker: BaseWorker) -> None:
        """Register a worker with the manager."""
        if worker.worker_name in self.workers:
            raise ValueError(f"Worker already registered: {worker.worker_name}")
        self.workers[worker.worker_name] = worker
        logger.info("worker_registered", worker=worker.worker_name)

    def setup_signal_handlers(self) -> None:
        """SIGINT/SIGTERM trigger a graceful shutdown."""
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, lambda: asyncio.create_task(self.shutdown()))
            except NotImplementedError:
                # add_signal_handler is unavailable on Windows event loops
                signal.signal(sig, lambda s, f: asyncio.create_task(self.shutdown()))

    async def start_all(self, install_signal_handlers: bool = True) -> None:
        """Start all registered workers; embedded in a server, leave its signal handling alone."""
        if install_signal_handlers:
            self.setup_signal_handlers()
        logger.info("workers_starting", count=len(self.workers))
        for worker_name, worker in self.workers.items():
            self.tasks[worker_name] = asyncio.create_task(worker.run(), name=f"worker_{worker_name}")
            logger.info("worker_task_started", worker=worker_name)

    async def shutdown(self) -> None:
        """Graceful shutdown of all workers."""
        if self.shutdown_event.is_set():
            return
        logger.info("workers_shutdown_initiated")
        self.shutdown_event.set()
        for worker in self.workers.values():
            await worker.shutdown()
        if self.tasks:
            results = await asyncio.gather(*self.tasks.values(), return_exceptions=True)
            for worker_name, result in zip(self.tasks, results):
                if isinstance(result, Exception):
                    logger.error("worker_exited_with_error", worker=worker_name, error=str(result))
        logger.info("workers_shutdown_complete")

    async def wait_for_shutdown(self) -> None:
        """Wait for shutdown signal."""
        await self.shutdown_event.wait()

    def get_worker_status(self) -> Dict[str, str]:
        return {name: "running" if w.is_running else "stopped" for name, w in self.workers.items()}
