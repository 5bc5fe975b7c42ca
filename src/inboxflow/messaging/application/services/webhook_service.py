"""
Webhook ingestion: persist first, enqueue second, answer 200 always.

Every ``entry[].changes[]`` item becomes one RawEvent row written in its own
transaction, then one ``webhook-processor`` job keyed ``webhook-{raw_event_id}``.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Iterator, Optional
from uuid import UUID

from inboxflow.messaging.infrastructure.repositories.message_repository import RawEventRepository
from inboxflow.messaging.infrastructure.repositories.tenant_repository import TenantDirectory
from inboxflow.shared.infrastructure.database.session import DatabaseSessionFactory
from inboxflow.shared.infrastructure.observability.logger import get_logger
from inboxflow.shared.infrastructure.queue.job_queue import JobQueue, webhook_job_id
from inboxflow.shared.security import verify_hub_signature

logger = get_logger(__name__)

WHATSAPP_OBJECT = "whatsapp_business_account"
TEMPLATE_STATUS_FIELD = "message_template_status_update"


@dataclass
class IngestResult:
    persisted: list[UUID] = field(default_factory=list)
    enqueued: int = 0
    failures: int = 0


def routing_key_for(entry: dict[str, Any], change: dict[str, Any]) -> Optional[str]:
    value = change.get("value") or {}
    metadata = value.get("metadata") or {}
    key = metadata.get("phone_number_id") or metadata.get("routing_key")
    if key:
        return str(key)
    # account-level changes (template status) carry only the WABA id
    entry_id = entry.get("id")
    return str(entry_id) if entry_id else None


def iter_changes(payload: dict[str, Any]) -> Iterator[tuple[Optional[str], dict[str, Any]]]:
    for entry in payload.get("entry") or []:
        if not isinstance(entry, dict):
            continue
        for change in entry.get("changes") or []:
            if not isinstance(change, dict):
                continue
            stored = {
                "entryId": entry.get("id"),
                "field": change.get("field") or "messages",
                "value": change.get("value") or {},
            }
            yield routing_key_for(entry, change), stored


class WebhookService:
    def __init__(
        self,
        sessions: DatabaseSessionFactory,
        queue: JobQueue,
        verify_token: Optional[str],
        app_secret: Optional[str] = None,
    ) -> None:
        self.sessions = sessions
        self.queue = queue
        self.verify_token = verify_token
        self.app_secret = app_secret

    def verify_subscription(self, mode: Optional[str], token: Optional[str], challenge: Optional[str]) -> Optional[str]:
        """Challenge to echo back, or None when the handshake must be refused."""
        if mode == "subscribe" and self.verify_token and token == self.verify_token and challenge is not None:
            logger.info("webhook_verified")
            return challenge
        logger.warning("webhook_verification_failed", mode=mode)
        return None

    def verify_signature(self, raw_body: bytes, signature_header: Optional[str]) -> bool:
        if not self.app_secret:
            return True
        return verify_hub_signature(raw_body, self.app_secret, signature_header)

    async def ingest(self, payload: dict[str, Any]) -> IngestResult:
        """Never raises: storage and queue failures are logged so the provider always sees success."""
        result = IngestResult()
        for routing_key, change in iter_changes(payload):
            raw_event_id = await self._persist(routing_key, change)
            if raw_event_id is None:
                result.failures += 1
                continue
            result.persisted.append(raw_event_id)
            try:
                if await self.queue.enqueue(webhook_job_id(raw_event_id), {"raw_event_id": str(raw_event_id)}):
                    result.enqueued += 1
            except Exception as e:
                # row stays PENDING and can be re-enqueued by an operator
                result.failures += 1
                logger.error("webhook_enqueue_failed", raw_event_id=str(raw_event_id), error=str(e))

        logger.info(
            "webhook_ingested",
            persisted=len(result.persisted),
            enqueued=result.enqueued,
            failures=result.failures,
        )
        return result

    async def _persist(self, routing_key: Optional[str], change: dict[str, Any]) -> Optional[UUID]:
        tenant_id: Optional[UUID] = None
        try:
            async with self.sessions.transaction() as session:
                try:
                    tenant = await TenantDirectory(session).resolve_by_routing_key(routing_key)
                    tenant_id = tenant.id if tenant else None
                except Exception as e:
                    # processor resolves again; persist without tenant
                    logger.warning("tenant_resolution_failed", routing_key=routing_key, error=str(e))
                    await session.rollback()
                event = await RawEventRepository(session).add(tenant_id, routing_key, change)
                return event.id
        except Exception as e:
            logger.error("webhook_persist_failed", routing_key=routing_key, error=str(e), exc_info=True)
            return None
