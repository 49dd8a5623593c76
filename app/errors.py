from __future__ import annotations


class TenantError(RuntimeError):
    code = "tenant_error"

    def __init__(self, message: str, *, code: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code


class TenantNotFoundError(TenantError):
    code = "tenant_not_found"

    def __init__(self, organization_id: str) -> None:
        super().__init__(f"no tenant for organization {organization_id}")
        self.organization_id = organization_id


class TenantNotActiveError(TenantError):
    code = "tenant_not_active"

    def __init__(self, organization_id: str, status: str) -> None:
        super().__init__(f"tenant for organization {organization_id} is {status}")
        self.organization_id = organization_id
        self.status = status


class TenantDatabaseError(TenantError):
    code = "tenant_database_error"

    def __init__(self, organization_id: str, cause: BaseException) -> None:
        super().__init__(f"tenant database unavailable for organization {organization_id}: {cause}")
        self.organization_id = organization_id
        self.cause = cause


class TenantProvisioningError(TenantError):
    code = "tenant_provisioning_failed"

    def __init__(self, organization_id: str, cause: BaseException, *, step: str | None = None) -> None:
        super().__init__(f"provisioning failed for organization {organization_id} at {step or 'unknown'}: {cause}")
        self.organization_id = organization_id
        self.cause = cause
        self.step = step


class TenantMigrationError(TenantError):
    code = "tenant_migration_failed"

    def __init__(self, organization_id: str, cause: BaseException) -> None:
        super().__init__(f"migrations failed for organization {organization_id}: {cause}")
        self.organization_id = organization_id
        self.cause = cause


class HostCapacityError(TenantError):
    code = "no_database_host_capacity"

    def __init__(self) -> None:
        super().__init__("no active database host has spare tenant capacity")
