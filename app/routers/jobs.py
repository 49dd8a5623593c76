from __future__ import annotations

from fastapi import APIRouter, Depends, status

from app.deps import Principal, get_principal, get_services, require_organization
from app.queue import (
    ATTACHMENT_CLEANUP_QUEUE,
    CHANNEL_SYNC_QUEUE,
    LOGO_SYNC_QUEUE,
    TENANT_MIGRATION_QUEUE,
    EnqueueResult,
)
from app.schemas import (
    AttachmentCleanupPayload,
    ChannelSyncPayload,
    EnqueueResponse,
    LogoSyncPayload,
    TenantMigrationPayload,
)
from app.services import CoreServices


router = APIRouter(prefix="/v1/jobs", tags=["jobs"])


def _accepted(result: EnqueueResult) -> EnqueueResponse:
    return EnqueueResponse(queue=result.queue, job_id=result.job_id, accepted=result.accepted)


@router.post("/attachment-cleanup", response_model=EnqueueResponse, status_code=status.HTTP_202_ACCEPTED)
async def enqueue_attachment_cleanup(
    body: AttachmentCleanupPayload,
    principal: Principal = Depends(get_principal),
    services: CoreServices = Depends(get_services),
) -> EnqueueResponse:
    # The system sweep is only open to principals that carry the system scope.
    require_organization(principal, body.organization_id)
    return _accepted(await services.queue.enqueue(ATTACHMENT_CLEANUP_QUEUE, body))


@router.post("/channel-sync", response_model=EnqueueResponse, status_code=status.HTTP_202_ACCEPTED)
async def enqueue_channel_sync(
    body: ChannelSyncPayload,
    principal: Principal = Depends(get_principal),
    services: CoreServices = Depends(get_services),
) -> EnqueueResponse:
    require_organization(principal, body.organization_id)
    return _accepted(await services.queue.enqueue(CHANNEL_SYNC_QUEUE, body))


@router.post("/cross-org-logo-sync", response_model=EnqueueResponse, status_code=status.HTTP_202_ACCEPTED)
async def enqueue_logo_sync(
    body: LogoSyncPayload,
    principal: Principal = Depends(get_principal),
    services: CoreServices = Depends(get_services),
) -> EnqueueResponse:
    require_organization(principal, body.organization_id)
    return _accepted(await services.queue.enqueue(LOGO_SYNC_QUEUE, body))


@router.post("/tenant-migration", response_model=EnqueueResponse, status_code=status.HTTP_202_ACCEPTED)
async def enqueue_tenant_migration(
    body: TenantMigrationPayload,
    principal: Principal = Depends(get_principal),
    services: CoreServices = Depends(get_services),
) -> EnqueueResponse:
    require_organization(principal, body.organization_id)
    return _accepted(await services.queue.enqueue(TENANT_MIGRATION_QUEUE, body))
