from __future__ import annotations

from dataclasses import dataclass

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from app.circuit_breaker import CircuitBreakerError
from app.errors import TenantError
from app.security import decode_access_token, is_token_error
from app.services import CoreServices


bearer_scheme = HTTPBearer(auto_error=False)


@dataclass(frozen=True)
class Principal:
    user_id: str
    organization_ids: frozenset[str]

    def can_access(self, organization_id: str) -> bool:
        return organization_id in self.organization_ids


def principal_from_claims(claims: dict) -> Principal:
    orgs = claims.get("orgs") or []
    return Principal(user_id=str(claims["sub"]), organization_ids=frozenset(str(org) for org in orgs))


def get_principal(
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
) -> Principal:
    if credentials is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing bearer token")
    try:
        claims = decode_access_token(credentials.credentials)
    except Exception as exc:  # noqa: BLE001
        if is_token_error(exc):
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token") from exc
        raise
    return principal_from_claims(claims)


def require_organization(principal: Principal, organization_id: str) -> None:
    if not principal.can_access(organization_id):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Organization not accessible")


def get_services(request: Request) -> CoreServices:
    return request.app.state.services


def tenant_http_error(exc: TenantError | CircuitBreakerError) -> HTTPException:
    status_map = {
        "tenant_not_found": status.HTTP_404_NOT_FOUND,
        "tenant_not_active": status.HTTP_503_SERVICE_UNAVAILABLE,
        "tenant_database_error": status.HTTP_503_SERVICE_UNAVAILABLE,
        "circuit_open": status.HTTP_503_SERVICE_UNAVAILABLE,
        "no_database_host_capacity": status.HTTP_507_INSUFFICIENT_STORAGE,
    }
    return HTTPException(
        status_code=status_map.get(exc.code, status.HTTP_500_INTERNAL_SERVER_ERROR),
        detail={"error": exc.code, "message": str(exc)},
    )
