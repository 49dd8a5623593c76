from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, status

from app.deps import Principal, get_principal, get_services, require_organization
from app.queue import TENANT_PROVISIONING_QUEUE
from app.schemas import EnqueueResponse, JobStateOut, ProvisioningParams, ProvisioningStatusOut, TenantOut
from app.services import CoreServices


router = APIRouter(prefix="/v1/provisioning", tags=["provisioning"])


@router.post("", response_model=EnqueueResponse, status_code=status.HTTP_202_ACCEPTED)
async def start_provisioning(
    body: ProvisioningParams,
    principal: Principal = Depends(get_principal),
    services: CoreServices = Depends(get_services),
) -> EnqueueResponse:
    require_organization(principal, body.organization_id)
    tenant = await services.catalog.get_tenant_by_organization(body.organization_id)
    if tenant is not None and tenant.status == "active":
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail={"error": "tenant_already_active", "message": "Organization already has an active tenant"},
        )
    result = await services.queue.enqueue(TENANT_PROVISIONING_QUEUE, body)
    return EnqueueResponse(queue=result.queue, job_id=result.job_id, accepted=result.accepted)


@router.get("/{organization_id}", response_model=ProvisioningStatusOut)
async def get_provisioning_status(
    organization_id: str,
    principal: Principal = Depends(get_principal),
    services: CoreServices = Depends(get_services),
) -> ProvisioningStatusOut:
    require_organization(principal, organization_id)
    tenant = await services.catalog.get_tenant_by_organization(organization_id)
    job = await services.queue.get_job(TENANT_PROVISIONING_QUEUE, organization_id)
    if tenant is None and job is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Provisioning not found")
    return ProvisioningStatusOut(
        organization_id=organization_id,
        tenant=TenantOut.model_validate(tenant) if tenant is not None else None,
        job=JobStateOut(job_id=job.job_id, state=job.state, attempts=job.attempts) if job is not None else None,
    )
