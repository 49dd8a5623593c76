from __future__ import annotations

import os
from pathlib import Path

os.environ.setdefault("REDIS_URL", "redis://127.0.0.1:6399/0")

import pytest
from sqlalchemy.ext.asyncio import async_sessionmaker

from app.config import Settings
from app.connections import TenantHandle
from app.db import build_engine
from app.errors import TenantDatabaseError, TenantNotFoundError
from app.provisioning import database_name_for
from app.schemas import DomainEvent
from app.tenant_models import TenantBase


class SqliteTenants:
    """Stands in for the connection manager with one sqlite file per organization."""

    def __init__(self, root: Path) -> None:
        self.root = root
        self.handles: dict[str, TenantHandle] = {}
        self.unavailable: set[str] = set()
        self.requested: list[str] = []

    async def add(self, organization_id: str) -> TenantHandle:
        engine = build_engine(f"sqlite+aiosqlite:///{self.root / database_name_for(organization_id)}.db")
        async with engine.begin() as conn:
            await conn.run_sync(TenantBase.metadata.create_all)
        handle = TenantHandle(
            organization_id=organization_id,
            tenant_id=f"tenant-{organization_id}",
            engine=engine,
            sessions=async_sessionmaker(engine, autoflush=False, expire_on_commit=False),
        )
        self.handles[organization_id] = handle
        return handle

    async def get(self, organization_id: str) -> TenantHandle:
        self.requested.append(organization_id)
        if organization_id in self.unavailable:
            raise TenantDatabaseError(organization_id, OSError("connection refused"))
        handle = self.handles.get(organization_id)
        if handle is None:
            raise TenantNotFoundError(organization_id)
        return handle

    async def close_all(self) -> None:
        for handle in self.handles.values():
            await handle.engine.dispose()
        self.handles.clear()


class RecordingPublisher:
    def __init__(self) -> None:
        self.events: list[DomainEvent] = []

    async def publish(self, event: DomainEvent) -> bool:
        self.events.append(event)
        return True

    def types(self) -> list[str]:
        return [event.type for event in self.events]


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    return Settings(
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'catalog.db'}",
        redis_url="redis://127.0.0.1:6399/0",
        tenant_db_driver="sqlite+aiosqlite",
    )


@pytest.fixture
def tenants(tmp_path: Path) -> SqliteTenants:
    return SqliteTenants(tmp_path)


@pytest.fixture
def publisher() -> RecordingPublisher:
    return RecordingPublisher()
