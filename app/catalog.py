from __future__ import annotations

import logging
from datetime import UTC, datetime

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from app.config import Settings
from app.db import CATALOG_PROFILE, build_engine
from app.errors import HostCapacityError
from app.models import Base, DatabaseHost, MigrationLog, Tenant

logger = logging.getLogger(__name__)


class CatalogStore:
    """Shared catalog database: tenants, their database hosts, migration and activity records."""

    def __init__(self, engine: AsyncEngine) -> None:
        self.engine = engine
        self.sessions = async_sessionmaker(engine, autoflush=False, expire_on_commit=False)

    @classmethod
    def from_settings(cls, settings: Settings) -> CatalogStore:
        return cls(build_engine(settings.database_url, CATALOG_PROFILE))

    def session(self) -> AsyncSession:
        return self.sessions()

    async def create_schema(self) -> None:
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def close(self) -> None:
        await self.engine.dispose()

    async def get_tenant(self, tenant_id: str) -> Tenant | None:
        async with self.sessions() as session:
            return await session.get(Tenant, tenant_id)

    async def get_tenant_by_organization(self, organization_id: str) -> Tenant | None:
        async with self.sessions() as session:
            return await session.scalar(select(Tenant).where(Tenant.organization_id == organization_id))

    async def get_host(self, host_id: str) -> DatabaseHost | None:
        async with self.sessions() as session:
            return await session.get(DatabaseHost, host_id)

    async def list_tenants(self, *, status: str | None = "active") -> list[Tenant]:
        stmt = select(Tenant).order_by(Tenant.created_at, Tenant.id)
        if status is not None:
            stmt = stmt.where(Tenant.status == status)
        async with self.sessions() as session:
            return list((await session.scalars(stmt)).all())

    async def add_host(self, **fields) -> DatabaseHost:
        async with self.sessions() as session:
            host = DatabaseHost(**fields)
            session.add(host)
            await session.commit()
            return host

    async def create_tenant(
        self,
        *,
        organization_id: str,
        slug: str,
        name: str,
        database_name: str,
        tier: str,
        credentials_blob: dict,
    ) -> Tenant:
        """Allocate a host with spare capacity and insert the tenant row in one transaction."""
        async with self.sessions() as session:
            async with session.begin():
                host = await session.scalar(
                    select(DatabaseHost)
                    .where(
                        DatabaseHost.status == "active",
                        DatabaseHost.current_tenants < DatabaseHost.max_tenants,
                    )
                    .order_by(DatabaseHost.is_default.desc(), DatabaseHost.current_tenants, DatabaseHost.name)
                    .limit(1)
                    .with_for_update()
                )
                if host is None:
                    raise HostCapacityError()
                host.current_tenants += 1
                tenant = Tenant(
                    organization_id=organization_id,
                    slug=slug,
                    name=name,
                    database_name=database_name,
                    database_host_id=host.id,
                    status="provisioning",
                    tier=tier,
                    credentials_blob=credentials_blob,
                )
                session.add(tenant)
            logger.info(
                "catalog tenant created organization_id=%s host=%s database=%s",
                organization_id,
                host.name,
                database_name,
            )
            return tenant

    async def set_tenant_status(self, tenant_id: str, status: str, *, details: dict | None = None) -> Tenant | None:
        async with self.sessions() as session:
            tenant = await session.get(Tenant, tenant_id)
            if tenant is None:
                return None
            tenant.status = status
            if status == "active":
                tenant.provisioned_at = datetime.now(UTC)
            if details is not None:
                tenant.provisioning_details = {**(tenant.provisioning_details or {}), **details}
            await session.commit()
            return tenant

    async def start_migration(self, tenant_id: str, migration_name: str) -> int:
        async with self.sessions() as session:
            row = MigrationLog(
                tenant_id=tenant_id,
                migration_name=migration_name,
                status="running",
                started_at=datetime.now(UTC),
            )
            session.add(row)
            await session.commit()
            return row.id

    async def finish_migration(
        self, log_id: int, *, status: str, execution_time_ms: int, error: str | None = None
    ) -> None:
        async with self.sessions() as session:
            row = await session.get(MigrationLog, log_id)
            if row is None:
                return
            row.status = status
            row.completed_at = datetime.now(UTC)
            row.execution_time_ms = execution_time_ms
            row.error = error
            await session.commit()

    async def latest_migration(self, tenant_id: str) -> str | None:
        async with self.sessions() as session:
            return await session.scalar(
                select(MigrationLog.migration_name)
                .where(MigrationLog.tenant_id == tenant_id, MigrationLog.status == "success")
                .order_by(MigrationLog.completed_at.desc(), MigrationLog.id.desc())
                .limit(1)
            )

    async def applied_migrations(self, tenant_id: str) -> set[str]:
        async with self.sessions() as session:
            rows = await session.scalars(
                select(MigrationLog.migration_name).where(
                    MigrationLog.tenant_id == tenant_id, MigrationLog.status == "success"
                )
            )
            return set(rows)
