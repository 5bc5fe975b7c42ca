from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI

from inboxflow.di import Container, build_container
from inboxflow.messaging.api.routes.webhook import router as webhook_router
from inboxflow.shared.exceptions import register_exception_handlers  # central mapping
from inboxflow.shared.health import router as health_router
from inboxflow.shared.infrastructure.observability.logger import configure_logging, get_logger
from inboxflow.shared.middleware import CorrelationIdMiddleware

logger = get_logger(__name__)


def create_app(container: Optional[Container] = None, *, embedded_workers: Optional[bool] = None) -> FastAPI:
    """
    HTTP surface: webhook ingestion and health checks.

    With Redis the app only persists and enqueues; processing, flows and
    sending run in the worker process (``python -m inboxflow.workers``).
    Without Redis the queues live in this process, so the workers run here
    too (``embedded_workers`` overrides that choice).
    """
    container = container or build_container()
    settings = container.settings
    configure_logging(settings.log_level, settings.log_json)
    if embedded_workers is None:
        embedded_workers = container.redis is None

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if settings.is_local:
            await container.sessions.create_all()
        manager = container.worker_manager() if embedded_workers else None
        if manager is not None:
            await manager.start_all(install_signal_handlers=False)
        app.state.workers = manager
        logger.info("api_started", environment=settings.environment, embedded_workers=embedded_workers)
        try:
            yield
        finally:
            if manager is not None:
                await manager.shutdown()
            await container.close()

    app = FastAPI(title="InboxFlow Webhook API", version="1.0.0", lifespan=lifespan)
    app.state.container = container
    app.add_middleware(CorrelationIdMiddleware)

    app.include_router(health_router)
    app.include_router(webhook_router)

    # Centralized error handling → {code, message, details?, correlation_id?}
    register_exception_handlers(app)

    return app
