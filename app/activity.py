from __future__ import annotations

import logging

from app.catalog import CatalogStore
from app.models import ActivityLog

logger = logging.getLogger(__name__)


class ActivityLogger:
    """Append-only audit trail in the catalog. A failed write is logged and never reaches the caller."""

    def __init__(self, catalog: CatalogStore) -> None:
        self.catalog = catalog

    async def log(
        self,
        action: str,
        category: str,
        description: str,
        *,
        tenant_id: str | None = None,
        severity: str = "info",
        metadata: dict | None = None,
    ) -> None:
        try:
            async with self.catalog.session() as session:
                session.add(
                    ActivityLog(
                        tenant_id=tenant_id,
                        action=action,
                        category=category,
                        severity=severity,
                        description=description,
                        metadata_json=metadata or {},
                    )
                )
                await session.commit()
        except Exception as exc:  # noqa: BLE001
            logger.warning(
                "activity log write failed action=%s tenant_id=%s err_type=%s err=%s",
                action,
                tenant_id,
                type(exc).__name__,
                exc,
            )

    async def tenant_created(self, tenant_id: str, organization_id: str, database_name: str) -> None:
        await self.log(
            "tenant.created",
            "tenant",
            f"Tenant record created for organization {organization_id}",
            tenant_id=tenant_id,
            metadata={"organizationId": organization_id, "databaseName": database_name},
        )

    async def tenant_provisioned(self, tenant_id: str, duration_ms: int) -> None:
        await self.log(
            "tenant.provisioned",
            "tenant",
            "Tenant database provisioned",
            tenant_id=tenant_id,
            metadata={"durationMs": duration_ms},
        )

    async def tenant_status_changed(self, tenant_id: str, status: str) -> None:
        await self.log(
            "tenant.status_changed",
            "tenant",
            f"Tenant status changed to {status}",
            tenant_id=tenant_id,
            severity="warning" if status in {"suspended", "error"} else "info",
            metadata={"status": status},
        )

    async def migration_started(self, tenant_id: str, count: int) -> None:
        await self.log(
            "migration.started",
            "migration",
            f"Running {count} tenant migrations",
            tenant_id=tenant_id,
            metadata={"count": count},
        )

    async def migration_executed(self, tenant_id: str, migration_name: str, execution_time_ms: int) -> None:
        await self.log(
            "migration.executed",
            "migration",
            f"Migration {migration_name} applied",
            tenant_id=tenant_id,
            metadata={"migration": migration_name, "executionTimeMs": execution_time_ms},
        )

    async def migration_failed(self, tenant_id: str, migration_name: str, error: str) -> None:
        await self.log(
            "migration.failed",
            "migration",
            f"Migration {migration_name} failed",
            tenant_id=tenant_id,
            severity="error",
            metadata={"migration": migration_name, "error": error},
        )

    async def system_error(self, description: str, *, tenant_id: str | None = None, metadata: dict | None = None) -> None:
        await self.log("system.error", "system", description, tenant_id=tenant_id, severity="error", metadata=metadata)
