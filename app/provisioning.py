from __future__ import annotations

import asyncio
import logging
import re
from collections.abc import Awaitable, Callable
from time import monotonic

from sqlalchemy import select, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession

from app.activity import ActivityLogger
from app.catalog import CatalogStore
from app.config import Settings
from app.connections import EngineFactory, TenantConnectionManager
from app.crypto import SecretCipher
from app.db import ADMIN_PROFILE, MIGRATION_PROFILE, build_engine, server_url
from app.errors import (
    TenantError,
    TenantMigrationError,
    TenantNotActiveError,
    TenantNotFoundError,
    TenantProvisioningError,
)
from app.models import DatabaseHost, Tenant
from app.partitioning import DEFAULT_PLANS, PartitionPlan, PartmanPolicy, convert_to_partitioned
from app.schemas import HealthCheckResult, MigrationRolloutResult, ProvisioningParams
from app.tenant_migrations import TENANT_MIGRATIONS, TenantMigration
from app.tenant_models import Agent

logger = logging.getLogger(__name__)

SLUG_PATTERN = re.compile(r"^[a-z0-9]+(?:-[a-z0-9]+)*$")

ProgressCallback = Callable[[str, int, str], Awaitable[None]]


def database_name_for(organization_id: str) -> str:
    return "org_" + organization_id.replace("-", "").lower()


async def _no_progress(step: str, progress: int, message: str) -> None:
    del step, progress, message


class DatabaseAdmin:
    """Server-level operations through a single-connection autocommit pool on the host's maintenance database."""

    def __init__(self, settings: Settings, engine_factory: EngineFactory) -> None:
        self.settings = settings
        self._engine_factory = engine_factory

    def _admin_engine(self, host: DatabaseHost) -> AsyncEngine:
        return self._engine_factory(
            server_url(self.settings, host=host.host, port=host.port, database="postgres"),
            ADMIN_PROFILE,
        )

    async def database_exists(self, host: DatabaseHost, database_name: str) -> bool:
        engine = self._admin_engine(host)
        try:
            async with engine.connect() as conn:
                found = await conn.scalar(
                    text("SELECT 1 FROM pg_database WHERE datname = :name"), {"name": database_name}
                )
        finally:
            await engine.dispose()
        return found is not None

    async def create_database(self, host: DatabaseHost, database_name: str) -> None:
        engine = self._admin_engine(host)
        try:
            async with engine.connect() as conn:
                found = await conn.scalar(
                    text("SELECT 1 FROM pg_database WHERE datname = :name"), {"name": database_name}
                )
                if found is not None:
                    # Leftover from an earlier failed run; the pipeline always starts from an empty database.
                    logger.warning(
                        "provisioning dropping stale database host=%s database=%s", host.name, database_name
                    )
                    await conn.execute(text(f'DROP DATABASE "{database_name}" WITH (FORCE)'))
                await conn.execute(text(f'CREATE DATABASE "{database_name}"'))
        finally:
            await engine.dispose()
        logger.info("provisioning database created host=%s database=%s", host.name, database_name)


class ProvisioningPipeline:
    def __init__(
        self,
        catalog: CatalogStore,
        activity: ActivityLogger,
        cipher: SecretCipher,
        settings: Settings,
        *,
        connections: TenantConnectionManager | None = None,
        engine_factory: EngineFactory | None = None,
        admin: DatabaseAdmin | None = None,
        migrations: tuple[TenantMigration, ...] = TENANT_MIGRATIONS,
        partition_plans: tuple[PartitionPlan, ...] = DEFAULT_PLANS,
        partman_policy: PartmanPolicy | None = None,
    ) -> None:
        self.catalog = catalog
        self.activity = activity
        self.cipher = cipher
        self.settings = settings
        self.connections = connections
        self._engine_factory = engine_factory or self._default_engine_factory
        self.admin = admin or DatabaseAdmin(settings, self._engine_factory)
        self.migrations = migrations
        self.partition_plans = partition_plans
        self.partman_policy = partman_policy or PartmanPolicy.from_settings(settings)

    def _default_engine_factory(self, url, profile) -> AsyncEngine:
        return build_engine(url, profile, connect_timeout=self.settings.tenant_connect_timeout_seconds)

    def _tenant_url(self, host: DatabaseHost, tenant: Tenant):
        return server_url(
            self.settings,
            host=host.host,
            port=host.port,
            database=tenant.database_name,
            credentials=self.cipher.open_credentials(tenant.credentials_blob),
        )

    async def provision(self, params: ProvisioningParams, *, progress: ProgressCallback | None = None) -> Tenant:
        report = progress or _no_progress
        if not SLUG_PATTERN.match(params.slug):
            raise ValueError(f"invalid organization slug: {params.slug!r}")

        tenant = await self.catalog.get_tenant_by_organization(params.organization_id)
        if tenant is not None and tenant.status == "active":
            logger.info("provisioning skipped organization_id=%s reason=already_active", params.organization_id)
            return tenant

        started = monotonic()
        step = "allocating_host"
        try:
            await report("starting", 5, "Starting tenant provisioning")
            if tenant is None:
                tenant = await self.catalog.create_tenant(
                    organization_id=params.organization_id,
                    slug=params.slug,
                    name=params.name,
                    database_name=database_name_for(params.organization_id),
                    tier=params.tier,
                    credentials_blob=self.cipher.seal_credentials(
                        self.settings.tenant_db_user, self.settings.tenant_db_password
                    ),
                )
                await self.activity.tenant_created(tenant.id, params.organization_id, tenant.database_name)
            host = await self.catalog.get_host(tenant.database_host_id)
            if host is None:
                raise LookupError(f"database host {tenant.database_host_id} missing")

            step = "creating_database"
            await report(step, 20, "Creating tenant database")
            await self.admin.create_database(host, tenant.database_name)

            step = "running_migrations"
            await report(step, 50, "Running tenant migrations")
            engine = self._engine_factory(self._tenant_url(host, tenant), MIGRATION_PROFILE)
            try:
                await self._run_migrations(engine, tenant, self.migrations)
                step = "partitioning"
                await report(step, 75, "Partitioning chat and message tables")
                await convert_to_partitioned(engine, self.partition_plans, self.partman_policy)
                step = "finalizing"
                await report(step, 90, "Finalizing tenant")
                if params.owner_user_id:
                    await self._seed_owner(engine, params)
            finally:
                await engine.dispose()
        except Exception as exc:
            await self._record_failure(tenant, params, step, exc)
            raise TenantProvisioningError(params.organization_id, exc, step=step) from exc

        duration_ms = int((monotonic() - started) * 1000)
        tenant = await self.catalog.set_tenant_status(
            tenant.id, "active", details={"durationMs": duration_ms, "failedStep": None, "error": None}
        )
        await self.activity.tenant_provisioned(tenant.id, duration_ms)
        logger.info(
            "provisioning completed organization_id=%s tenant_id=%s duration_ms=%s",
            params.organization_id,
            tenant.id,
            duration_ms,
        )
        return tenant

    async def set_status(self, tenant_id: str, status: str) -> Tenant:
        tenant = await self.catalog.set_tenant_status(tenant_id, status)
        if tenant is None:
            raise TenantNotFoundError(tenant_id)
        if status != "active" and self.connections is not None:
            await self.connections.close(tenant.organization_id)
        await self.activity.tenant_status_changed(tenant.id, status)
        return tenant

    async def health_check(self, tenant_id: str) -> HealthCheckResult:
        tenant = await self.catalog.get_tenant(tenant_id)
        if tenant is None:
            raise TenantNotFoundError(tenant_id)
        host = await self.catalog.get_host(tenant.database_host_id)
        if host is None:
            return HealthCheckResult(status="unhealthy", can_connect=False, database_exists=False)

        try:
            database_exists = await self.admin.database_exists(host, tenant.database_name)
        except (SQLAlchemyError, OSError) as exc:
            logger.warning(
                "tenant health admin check failed tenant_id=%s err_type=%s err=%s", tenant_id, type(exc).__name__, exc
            )
            database_exists = False

        can_connect = database_exists and await self._can_connect(host, tenant)
        schema_version = await self.catalog.latest_migration(tenant.id)
        return HealthCheckResult(
            status="healthy" if can_connect else "unhealthy",
            can_connect=can_connect,
            database_exists=database_exists,
            schema_version=schema_version,
        )

    async def _can_connect(self, host: DatabaseHost, tenant: Tenant, *, attempts: int = 3) -> bool:
        engine = self._engine_factory(self._tenant_url(host, tenant), MIGRATION_PROFILE)
        try:
            for attempt in range(1, attempts + 1):
                try:
                    async with engine.connect() as conn:
                        await conn.execute(text("SELECT 1"))
                    return True
                except (SQLAlchemyError, OSError) as exc:
                    logger.warning(
                        "tenant health connect failed tenant_id=%s attempt=%s err_type=%s err=%s",
                        tenant.id,
                        attempt,
                        type(exc).__name__,
                        exc,
                    )
                    if attempt < attempts:
                        await asyncio.sleep(0.5 * attempt)
            return False
        finally:
            await engine.dispose()

    async def migrate_tenant(self, organization_id: str) -> list[str]:
        """Apply the migrations an active tenant has not recorded as successful; returns their names."""
        tenant = await self.catalog.get_tenant_by_organization(organization_id)
        if tenant is None:
            raise TenantNotFoundError(organization_id)
        if tenant.status != "active":
            raise TenantNotActiveError(organization_id, tenant.status)
        applied = await self.catalog.applied_migrations(tenant.id)
        pending = tuple(migration for migration in self.migrations if migration.name not in applied)
        if not pending:
            logger.info("tenant migrations up to date organization_id=%s", organization_id)
            return []
        host = await self.catalog.get_host(tenant.database_host_id)
        if host is None:
            raise TenantMigrationError(organization_id, LookupError(f"database host {tenant.database_host_id} missing"))

        engine = self._engine_factory(self._tenant_url(host, tenant), MIGRATION_PROFILE)
        try:
            await self._run_migrations(engine, tenant, pending)
        except Exception as exc:
            raise TenantMigrationError(organization_id, exc) from exc
        finally:
            await engine.dispose()
        return [migration.name for migration in pending]

    async def migrate_all(self, *, max_concurrency: int = 5, continue_on_error: bool = True) -> MigrationRolloutResult:
        """Roll pending migrations out to every active tenant, at most ``max_concurrency`` at a time.

        A failing tenant is recorded and the rollout carries on. With ``continue_on_error`` off,
        tenants that have not started yet are skipped once any tenant fails.
        """
        tenants = await self.catalog.list_tenants(status="active")
        result = MigrationRolloutResult()
        semaphore = asyncio.Semaphore(max_concurrency)
        halted = asyncio.Event()

        async def _migrate(tenant: Tenant) -> None:
            async with semaphore:
                if halted.is_set():
                    result.skipped.append(tenant.organization_id)
                    return
                try:
                    result.applied[tenant.organization_id] = await self.migrate_tenant(tenant.organization_id)
                except TenantError as exc:
                    result.failed[tenant.organization_id] = exc.message
                    logger.warning(
                        "tenant migration rollout failed organization_id=%s err_type=%s err=%s",
                        tenant.organization_id,
                        type(exc).__name__,
                        exc,
                    )
                    if not continue_on_error:
                        halted.set()

        await asyncio.gather(*(_migrate(tenant) for tenant in tenants))
        logger.info(
            "tenant migration rollout finished tenants=%s failed=%s skipped=%s",
            len(tenants),
            len(result.failed),
            len(result.skipped),
        )
        return result

    async def check_all_health(self, *, max_concurrency: int = 5) -> dict[str, HealthCheckResult]:
        tenants = await self.catalog.list_tenants(status="active")
        semaphore = asyncio.Semaphore(max_concurrency)

        async def _check(tenant: Tenant) -> HealthCheckResult:
            async with semaphore:
                return await self.health_check(tenant.id)

        results = await asyncio.gather(*(_check(tenant) for tenant in tenants))
        return {tenant.id: health for tenant, health in zip(tenants, results, strict=True)}

    async def _run_migrations(
        self, engine: AsyncEngine, tenant: Tenant, migrations: tuple[TenantMigration, ...]
    ) -> None:
        await self.activity.migration_started(tenant.id, len(migrations))
        for migration in migrations:
            log_id = await self.catalog.start_migration(tenant.id, migration.name)
            started = monotonic()
            try:
                async with engine.begin() as conn:
                    await migration.apply(conn)
            except Exception as exc:
                elapsed_ms = int((monotonic() - started) * 1000)
                await self.catalog.finish_migration(log_id, status="failed", execution_time_ms=elapsed_ms, error=str(exc))
                await self.activity.migration_failed(tenant.id, migration.name, str(exc))
                raise
            elapsed_ms = int((monotonic() - started) * 1000)
            await self.catalog.finish_migration(log_id, status="success", execution_time_ms=elapsed_ms)
            await self.activity.migration_executed(tenant.id, migration.name, elapsed_ms)
            logger.info(
                "tenant migration applied tenant_id=%s migration=%s execution_time_ms=%s",
                tenant.id,
                migration.name,
                elapsed_ms,
            )

    async def _seed_owner(self, engine: AsyncEngine, params: ProvisioningParams) -> None:
        async with AsyncSession(engine, expire_on_commit=False) as session:
            existing = await session.scalar(select(Agent).where(Agent.user_id == params.owner_user_id))
            if existing is not None:
                return
            session.add(Agent(user_id=params.owner_user_id, name=params.owner_name or "", role="owner"))
            await session.commit()

    async def _record_failure(
        self, tenant: Tenant | None, params: ProvisioningParams, step: str, exc: BaseException
    ) -> None:
        logger.error(
            "provisioning failed organization_id=%s step=%s err_type=%s err=%s",
            params.organization_id,
            step,
            type(exc).__name__,
            exc,
        )
        tenant_id = tenant.id if tenant is not None else None
        if tenant_id is not None:
            try:
                await self.catalog.set_tenant_status(
                    tenant_id, "error", details={"failedStep": step, "error": str(exc)}
                )
            except Exception as status_exc:  # noqa: BLE001
                logger.warning(
                    "provisioning status update failed tenant_id=%s err_type=%s err=%s",
                    tenant_id,
                    type(status_exc).__name__,
                    status_exc,
                )
        await self.activity.system_error(
            f"Tenant provisioning failed at {step}",
            tenant_id=tenant_id,
            metadata={
                "organizationId": params.organization_id,
                "step": step,
                "errorType": type(exc).__name__,
                "error": str(exc),
            },
        )
