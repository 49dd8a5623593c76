from __future__ import annotations

import logging

from app.errors import TenantProvisioningError
from app.events import EventPublisher
from app.provisioning import ProvisioningPipeline
from app.schemas import ProvisioningEvent, ProvisioningParams
from app.worker_runtime import JobContext

logger = logging.getLogger(__name__)

# Shown to end users instead of the internal error.
GENERIC_FAILURE_MESSAGE = "Tenant provisioning failed. Our team has been notified."


class ProvisioningJob:
    def __init__(self, pipeline: ProvisioningPipeline, publisher: EventPublisher) -> None:
        self.pipeline = pipeline
        self.publisher = publisher

    async def __call__(self, job: JobContext) -> dict:
        params: ProvisioningParams = job.payload
        organization_id = params.organization_id

        async def report(step: str, progress: int, message: str) -> None:
            await self.publisher.publish(
                ProvisioningEvent(
                    type="provisioning:progress",
                    organization_id=organization_id,
                    step=step,
                    progress=progress,
                    message=message,
                )
            )

        try:
            tenant = await self.pipeline.provision(params, progress=report)
        except TenantProvisioningError as exc:
            await self.publisher.publish(
                ProvisioningEvent(
                    type="provisioning:error",
                    organization_id=organization_id,
                    step=exc.step or "unknown",
                    progress=100,
                    message=GENERIC_FAILURE_MESSAGE,
                    data={"attempt": job.attempt, "maxAttempts": job.max_attempts},
                )
            )
            raise

        await self.publisher.publish(
            ProvisioningEvent(
                type="provisioning:complete",
                organization_id=organization_id,
                step="complete",
                progress=100,
                message="Tenant ready",
                data={"tenantId": tenant.id},
            )
        )
        return {"tenantId": tenant.id, "status": tenant.status}
