from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import dataclass

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncConnection

from app.tenant_models import TenantBase


@dataclass(frozen=True)
class TenantMigration:
    name: str
    apply: Callable[[AsyncConnection], Awaitable[None]]


async def _extensions(conn: AsyncConnection) -> None:
    if conn.dialect.name != "postgresql":
        return
    await conn.execute(text("CREATE SCHEMA IF NOT EXISTS partman"))
    await conn.execute(text("CREATE EXTENSION IF NOT EXISTS pg_partman SCHEMA partman"))


async def _base_tables(conn: AsyncConnection) -> None:
    await conn.run_sync(TenantBase.metadata.create_all)


async def _contact_metadata_index(conn: AsyncConnection) -> None:
    # Cross-org lookups filter contacts on metadata->>'targetOrganizationId'.
    if conn.dialect.name != "postgresql":
        return
    await conn.execute(
        text(
            "CREATE INDEX IF NOT EXISTS contact_target_org_idx "
            "ON contact ((metadata->>'targetOrganizationId')) "
            "WHERE metadata ? 'targetOrganizationId'"
        )
    )


TENANT_MIGRATIONS: tuple[TenantMigration, ...] = (
    TenantMigration("0000_extensions", _extensions),
    TenantMigration("0001_base_tables", _base_tables),
    TenantMigration("0002_contact_target_org_index", _contact_metadata_index),
)
