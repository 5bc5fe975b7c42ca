from __future__ import annotations

import time
import uuid

from starlette.types import ASGIApp, Message, Receive, Scope, Send

from inboxflow.shared.infrastructure.observability.logger import bind_context, clear_context, get_logger

logger = get_logger(__name__)

CORRELATION_HEADER = "X-Correlation-ID"


class CorrelationIdMiddleware:
    """
    Tags each HTTP request with a correlation id and logs its completion.

    The id comes from the caller's header when present. It is stored on
    ``request.state.correlation_id`` (error bodies read it from there), bound
    into the structlog context for the request, and echoed back as a header.
    """

    def __init__(self, app: ASGIApp, header_name: str = CORRELATION_HEADER):
        self.app = app
        self.header_name = header_name
        self._raw_header = header_name.lower().encode("latin-1")

    def _incoming(self, scope: Scope) -> str | None:
        for name, value in scope.get("headers") or []:
            if name == self._raw_header:
                return value.decode("latin-1") or None
        return None

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        corr = self._incoming(scope) or str(uuid.uuid4())
        scope.setdefault("state", {})["correlation_id"] = corr
        bind_context(correlation_id=corr, path=scope.get("path"))
        started = time.perf_counter()

        async def send_with_header(message: Message) -> None:
            if message["type"] == "http.response.start":
                message["headers"] = [
                    *(message.get("headers") or []),
                    (self._raw_header, corr.encode("latin-1")),
                ]
                logger.info(
                    "http_request_completed",
                    method=scope.get("method"),
                    status=message.get("status"),
                    duration_ms=int((time.perf_counter() - started) * 1000),
                )
            await send(message)

        try:
            await self.app(scope, receive, send_with_header)
        finally:
            clear_context()
