"""
Tenant directory: read-only lookups against the collaborator-owned tenant and
credential tables, plus credential invalidation after provider auth failures.
"""
from __future__ import annotations

from typing import Optional
from uuid import UUID

from sqlalchemy import or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from inboxflow.messaging.domain.exceptions import CredentialInvalidError, CredentialNotFoundError
from inboxflow.messaging.infrastructure.models import TenantModel, WhatsAppCredentialModel
from inboxflow.shared.infrastructure.database.base_model import utcnow
from inboxflow.shared.infrastructure.observability.logger import get_logger

logger = get_logger(__name__)


class TenantDirectory:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def resolve_by_routing_key(self, routing_key: Optional[str]) -> Optional[TenantModel]:
        """Routing key is a phone number id or, for account-level changes, the WABA id."""
        if not routing_key:
            return None
        stmt = (
            select(TenantModel, WhatsAppCredentialModel)
            .join(WhatsAppCredentialModel, WhatsAppCredentialModel.tenant_id == TenantModel.id)
            .where(
                or_(
                    WhatsAppCredentialModel.phone_number_id == routing_key,
                    WhatsAppCredentialModel.waba_id == routing_key,
                )
            )
            .limit(1)
        )
        row = (await self.db.execute(stmt)).first()
        if row is None:
            logger.warning("tenant_not_found_for_routing_key", routing_key=routing_key)
            return None
        tenant, credential = row
        if not credential.is_valid:
            logger.warning(
                "credential_invalid_for_routing_key",
                routing_key=routing_key,
                tenant_id=str(tenant.id),
                reason=credential.invalid_reason,
            )
        return tenant

    async def get_tenant(self, tenant_id: UUID) -> Optional[TenantModel]:
        return await self.db.get(TenantModel, tenant_id)

    async def get_active_credential(
        self, tenant_id: UUID, phone_number_id: Optional[str] = None,
    ) -> WhatsAppCredentialModel:
        """
        Credential used to send on behalf of the tenant.

        A specific phone number id wins; otherwise the oldest valid credential.
        Raises CredentialInvalidError when the only match was invalidated.
        """
        stmt = select(WhatsAppCredentialModel).where(WhatsAppCredentialModel.tenant_id == tenant_id)
        if phone_number_id:
            stmt = stmt.where(WhatsAppCredentialModel.phone_number_id == phone_number_id)
        rows = list((await self.db.execute(stmt.order_by(WhatsAppCredentialModel.created_at))).scalars())
        if not rows:
            if phone_number_id:
                return await self.get_active_credential(tenant_id)
            raise CredentialNotFoundError(f"No WhatsApp credential configured for tenant {tenant_id}")
        for cred in rows:
            if cred.is_valid:
                return cred
        raise CredentialInvalidError(
            f"WhatsApp credential is invalid: {rows[0].invalid_reason or 'unknown reason'}",
            details={"credential_id": str(rows[0].id)},
        )

    async def invalidate_credential(self, credential_id: UUID, reason: str) -> None:
        await self.db.execute(
            update(WhatsAppCredentialModel)
            .where(WhatsAppCredentialModel.id == credential_id)
            .values(is_valid=False, invalid_reason=reason[:500], invalidated_at=utcnow(), updated_at=utcnow())
        )
        logger.warning("credential_invalidated", credential_id=str(credential_id), reason=reason)
