from __future__ import annotations

import logging
from datetime import UTC, datetime

from sqlalchemy import select

from app.catalog import CatalogStore
from app.connections import TenantConnectionManager
from app.events import EventPublisher
from app.schemas import ChatEvent, LogoSyncPayload
from app.tenant_models import Contact
from app.worker_runtime import JobContext

logger = logging.getLogger(__name__)


class CrossOrgLogoSyncJob:
    """Pushes an organization's new logo onto the contacts other tenants keep for it."""

    def __init__(
        self,
        catalog: CatalogStore,
        connections: TenantConnectionManager,
        publisher: EventPublisher,
    ) -> None:
        self.catalog = catalog
        self.connections = connections
        self.publisher = publisher

    async def __call__(self, job: JobContext) -> dict:
        payload: LogoSyncPayload = job.payload
        source = payload.organization_id
        tenants = await self.catalog.list_tenants(status="active")

        processed = 0
        failed = 0
        updated = 0
        for tenant in tenants:
            if tenant.organization_id == source:
                continue
            try:
                contact_ids = await self.sync_tenant(tenant.organization_id, source, payload.logo_url)
            except Exception as exc:  # noqa: BLE001
                failed += 1
                logger.warning(
                    "logo sync tenant failed source_organization_id=%s organization_id=%s err_type=%s err=%s",
                    source,
                    tenant.organization_id,
                    type(exc).__name__,
                    exc,
                )
                continue
            processed += 1
            updated += len(contact_ids)

        logger.info(
            "logo sync finished source_organization_id=%s tenants=%s tenants_failed=%s contacts_updated=%s",
            source,
            processed,
            failed,
            updated,
        )
        return {
            "sourceOrganizationId": source,
            "tenantsProcessed": processed,
            "tenantsFailed": failed,
            "contactsUpdated": updated,
        }

    async def sync_tenant(self, organization_id: str, source_organization_id: str, logo_url: str | None) -> list[str]:
        handle = await self.connections.get(organization_id)
        async with handle.session() as session:
            contacts = list(
                (
                    await session.scalars(
                        select(Contact).where(
                            Contact.metadata_json["targetOrganizationId"].as_string() == source_organization_id
                        )
                    )
                ).all()
            )
            now = datetime.now(UTC)
            for contact in contacts:
                contact.avatar = logo_url
                contact.updated_at = now
            await session.commit()

        contact_ids = [contact.id for contact in contacts]
        if contact_ids:
            await self.publisher.publish(
                ChatEvent(
                    type="contact:logo:updated",
                    organization_id=organization_id,
                    data={
                        "contactIds": contact_ids,
                        "sourceOrganizationId": source_organization_id,
                        "logoUrl": logo_url,
                    },
                )
            )
        return contact_ids
