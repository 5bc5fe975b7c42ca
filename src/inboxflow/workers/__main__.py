#!/usr/bin/env python3
"""CLI entry point for the background workers: ``python -m inboxflow.workers [all|webhook|send|flows]``."""

import argparse
import asyncio
import sys

from inboxflow.di import build_container
from inboxflow.shared.infrastructure.observability.logger import configure_logging, get_logger

logger = get_logger(__name__)

WORKER_CHOICES = ("all", "webhook", "send", "flows")


async def run_workers(which: str) -> None:
    container = build_container()
    settings = container.settings
    configure_logging(settings.log_level, settings.log_json)
    if container.redis is None:
        # in-memory queues are per process; only the API process can feed them
        logger.error("workers_require_redis")
        await container.close()
        raise SystemExit("REDIS_URL is required for standalone workers; without it the API runs them in-process")
    if settings.is_local:
        await container.sessions.create_all()

    manager = container.worker_manager(which)

    try:
        await manager.start_all()
        await manager.wait_for_shutdown()
        await asyncio.gather(*manager.tasks.values(), return_exceptions=True)
    finally:
        await container.close()


def main() -> None:
    parser = argparse.ArgumentParser(description="InboxFlow background workers")
    parser.add_argument("worker", nargs="?", choices=WORKER_CHOICES, default="all", help="Which worker to run (default: all)")
    args = parser.parse_args()

    try:
        asyncio.run(run_workers(args.worker))
    except KeyboardInterrupt:
        logger.info("workers_interrupted")
    except Exception as e:
        logger.error("workers_crashed", error=str(e), exc_info=True)
        sys.exit(1)


if __name__ == "__main__":
    main()
