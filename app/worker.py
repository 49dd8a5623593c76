from __future__ import annotations

import asyncio
import logging

from arq.cron import cron

from app.config import Settings, get_settings
from app.jobs.attachment_cleanup import AttachmentCleanupJob
from app.jobs.channel_sync import ChannelSyncJob
from app.jobs.cross_org_logo_sync import CrossOrgLogoSyncJob
from app.jobs.provisioning import ProvisioningJob
from app.jobs.tenant_migration import TenantMigrationJob
from app.queue import (
    ATTACHMENT_CLEANUP_QUEUE,
    CHANNEL_SYNC_QUEUE,
    LOGO_SYNC_QUEUE,
    TENANT_MIGRATION_QUEUE,
    TENANT_PROVISIONING_QUEUE,
    JobQueue,
)
from app.schemas import SYSTEM_SCOPE, AttachmentCleanupPayload
from app.services import CoreServices
from app.worker_runtime import QueueBinding, WorkerRuntime

logger = logging.getLogger(__name__)


def nightly_cleanup(queue: JobQueue):
    async def schedule_system_cleanup(ctx: dict) -> None:
        result = await queue.enqueue(ATTACHMENT_CLEANUP_QUEUE, AttachmentCleanupPayload(organization_id=SYSTEM_SCOPE))
        if not result.accepted:
            logger.info("attachment cleanup sweep already scheduled job_id=%s", result.job_id)

    return schedule_system_cleanup


def build_bindings(services: CoreServices) -> list[QueueBinding]:
    settings = services.settings
    return [
        QueueBinding(
            TENANT_PROVISIONING_QUEUE,
            ProvisioningJob(services.pipeline, services.publisher),
            settings.queue_provisioning_concurrency,
        ),
        QueueBinding(
            ATTACHMENT_CLEANUP_QUEUE,
            AttachmentCleanupJob(services.catalog, services.connections, settings),
            settings.queue_attachment_cleanup_concurrency,
            cron_jobs=(
                cron(
                    nightly_cleanup(services.queue),
                    name="attachment-cleanup-nightly",
                    hour={settings.attachment_cleanup_cron_hour},
                    minute={0},
                ),
            ),
        ),
        QueueBinding(
            CHANNEL_SYNC_QUEUE,
            ChannelSyncJob(services.connections, services.evolution, services.publisher),
            settings.queue_channel_sync_concurrency,
        ),
        QueueBinding(
            LOGO_SYNC_QUEUE,
            CrossOrgLogoSyncJob(services.catalog, services.connections, services.publisher),
            settings.queue_logo_sync_concurrency,
        ),
        QueueBinding(
            TENANT_MIGRATION_QUEUE,
            TenantMigrationJob(services.pipeline),
            settings.queue_tenant_migration_concurrency,
        ),
    ]


async def run_worker(settings: Settings | None = None) -> None:
    settings = settings or get_settings()
    services = await CoreServices.create(settings)
    try:
        await WorkerRuntime(settings, build_bindings(services)).run()
    finally:
        await services.close()


def main() -> None:
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s %(message)s")
    asyncio.run(run_worker())


if __name__ == "__main__":
    main()
