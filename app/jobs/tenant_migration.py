from __future__ import annotations

import logging

from app.provisioning import ProvisioningPipeline
from app.schemas import SYSTEM_SCOPE, TenantMigrationPayload
from app.worker_runtime import JobContext

logger = logging.getLogger(__name__)


class TenantMigrationJob:
    """Applies pending tenant migrations to one organization, or to every active tenant for ``system``."""

    def __init__(self, pipeline: ProvisioningPipeline) -> None:
        self.pipeline = pipeline

    async def __call__(self, job: JobContext) -> dict:
        payload: TenantMigrationPayload = job.payload
        if not payload.is_system:
            applied = await self.pipeline.migrate_tenant(payload.organization_id)
            return {"scope": payload.organization_id, "applied": {payload.organization_id: applied}, "failed": {}}

        result = await self.pipeline.migrate_all(
            max_concurrency=payload.max_concurrency, continue_on_error=payload.continue_on_error
        )
        if result.skipped:
            logger.warning(
                "tenant migration rollout halted failed=%s skipped=%s",
                sorted(result.failed),
                len(result.skipped),
            )
        return {"scope": SYSTEM_SCOPE, **result.model_dump()}
