from __future__ import annotations

from fastapi import APIRouter, Depends

from app.deps import Principal, get_principal, get_services, require_organization, tenant_http_error
from app.errors import TenantError, TenantNotFoundError
from app.models import Tenant
from app.schemas import SYSTEM_SCOPE, HealthCheckResult, TenantOut, TenantStatusUpdate
from app.services import CoreServices


router = APIRouter(prefix="/v1/tenants", tags=["tenants"])


async def _tenant_for_principal(services: CoreServices, tenant_id: str, principal: Principal) -> Tenant:
    tenant = await services.catalog.get_tenant(tenant_id)
    if tenant is None:
        raise tenant_http_error(TenantNotFoundError(tenant_id))
    require_organization(principal, tenant.organization_id)
    return tenant


@router.get("/health", response_model=dict[str, HealthCheckResult])
async def all_tenants_health(
    principal: Principal = Depends(get_principal),
    services: CoreServices = Depends(get_services),
) -> dict[str, HealthCheckResult]:
    require_organization(principal, SYSTEM_SCOPE)
    return await services.pipeline.check_all_health()


@router.get("/{tenant_id}", response_model=TenantOut)
async def get_tenant(
    tenant_id: str,
    principal: Principal = Depends(get_principal),
    services: CoreServices = Depends(get_services),
) -> TenantOut:
    return TenantOut.model_validate(await _tenant_for_principal(services, tenant_id, principal))


@router.get("/{tenant_id}/health", response_model=HealthCheckResult)
async def tenant_health(
    tenant_id: str,
    principal: Principal = Depends(get_principal),
    services: CoreServices = Depends(get_services),
) -> HealthCheckResult:
    await _tenant_for_principal(services, tenant_id, principal)
    try:
        return await services.pipeline.health_check(tenant_id)
    except TenantError as exc:
        raise tenant_http_error(exc) from exc


@router.post("/{tenant_id}/status", response_model=TenantOut)
async def update_tenant_status(
    tenant_id: str,
    body: TenantStatusUpdate,
    principal: Principal = Depends(get_principal),
    services: CoreServices = Depends(get_services),
) -> TenantOut:
    await _tenant_for_principal(services, tenant_id, principal)
    try:
        tenant = await services.pipeline.set_status(tenant_id, body.status)
    except TenantError as exc:
        raise tenant_http_error(exc) from exc
    return TenantOut.model_validate(tenant)
