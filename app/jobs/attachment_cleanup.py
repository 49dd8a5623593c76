from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import UTC, datetime, timedelta

from sqlalchemy import update

from app.catalog import CatalogStore
from app.config import Settings
from app.connections import TenantConnectionManager
from app.schemas import SYSTEM_SCOPE, AttachmentCleanupPayload
from app.tenant_models import Attachment
from app.worker_runtime import JobContext

logger = logging.getLogger(__name__)

SHORT_LIVED_MEDIA = ("video",)
LONG_LIVED_MEDIA = ("image", "audio", "document")


def _utc_now() -> datetime:
    return datetime.now(UTC)


class AttachmentCleanupJob:
    """Expires stored media past its retention window.

    Only catalog metadata changes here: the status becomes ``expired`` and the storage URL is
    cleared. The objects themselves are removed by the bucket lifecycle rule.

    A payload naming an organization cleans that tenant and fails the job on error. The
    ``system`` scope sweeps every active tenant, logging and skipping tenants that fail.
    """

    def __init__(
        self,
        catalog: CatalogStore,
        connections: TenantConnectionManager,
        settings: Settings,
        *,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        self.catalog = catalog
        self.connections = connections
        self.settings = settings
        self._clock = clock

    async def __call__(self, job: JobContext) -> dict:
        payload: AttachmentCleanupPayload = job.payload
        now = self._clock()
        if not payload.is_system:
            expired = await self.cleanup_organization(payload.organization_id, now=now)
            return {"scope": payload.organization_id, "tenants": 1, "tenantsFailed": 0, "expired": expired}

        tenants = await self.catalog.list_tenants(status="active")
        expired_total = 0
        failed = 0
        for tenant in tenants:
            try:
                expired_total += await self.cleanup_organization(tenant.organization_id, now=now)
            except Exception as exc:  # noqa: BLE001
                failed += 1
                logger.warning(
                    "attachment cleanup tenant failed organization_id=%s err_type=%s err=%s",
                    tenant.organization_id,
                    type(exc).__name__,
                    exc,
                )
        logger.info(
            "attachment cleanup sweep finished tenants=%s tenants_failed=%s expired=%s",
            len(tenants),
            failed,
            expired_total,
        )
        return {"scope": SYSTEM_SCOPE, "tenants": len(tenants), "tenantsFailed": failed, "expired": expired_total}

    async def cleanup_organization(self, organization_id: str, *, now: datetime) -> int:
        windows = (
            (SHORT_LIVED_MEDIA, now - timedelta(hours=self.settings.attachment_video_retention_hours)),
            (LONG_LIVED_MEDIA, now - timedelta(days=self.settings.attachment_media_retention_days)),
        )
        handle = await self.connections.get(organization_id)
        expired = 0
        async with handle.session() as session:
            for media_types, cutoff in windows:
                result = await session.execute(
                    update(Attachment)
                    .where(
                        Attachment.media_type.in_(media_types),
                        Attachment.download_status == "completed",
                        Attachment.downloaded_at.is_not(None),
                        Attachment.downloaded_at < cutoff,
                    )
                    .values(download_status="expired", storage_url=None)
                    .execution_options(synchronize_session=False)
                )
                expired += result.rowcount or 0
            await session.commit()
        if expired:
            logger.info("attachment cleanup expired organization_id=%s count=%s", organization_id, expired)
        return expired
