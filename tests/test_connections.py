from __future__ import annotations

import asyncio
from pathlib import Path

import pytest
from sqlalchemy import event, text
from sqlalchemy.engine import URL

from app.catalog import CatalogStore
from app.config import Settings
from app.connections import TenantConnectionManager
from app.crypto import SecretCipher
from app.db import PoolProfile, build_engine
from app.errors import TenantDatabaseError, TenantNotActiveError, TenantNotFoundError
from app.provisioning import database_name_for


class CountingFactory:
    def __init__(self, root: Path, *, broken: bool = False) -> None:
        self.root = root
        self.broken = broken
        self.calls: list[tuple[URL, PoolProfile]] = []
        self.disposed: list[str] = []

    def __call__(self, url: URL, profile: PoolProfile):
        self.calls.append((url, profile))
        directory = self.root / "missing" if self.broken else self.root
        engine = build_engine(f"sqlite+aiosqlite:///{directory / url.database}.db")
        event.listen(engine.sync_engine, "engine_disposed", lambda _engine, name=url.database: self.disposed.append(name))
        return engine


class FakeClock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


async def _catalog_with_tenant(settings: Settings, *organization_ids: str, status: str = "active") -> CatalogStore:
    catalog = CatalogStore.from_settings(settings)
    await catalog.create_schema()
    await catalog.add_host(name="pg-1", host="db1.internal", port=5432, is_default=True)
    for organization_id in organization_ids:
        tenant = await catalog.create_tenant(
            organization_id=organization_id,
            slug=organization_id,
            name="Acme",
            database_name=database_name_for(organization_id),
            tier="shared",
            credentials_blob=SecretCipher(settings).seal_credentials("tenant_user", "s3cret"),
        )
        await catalog.set_tenant_status(tenant.id, status)
    return catalog


def test_concurrent_gets_share_one_pool(settings: Settings, tmp_path: Path) -> None:
    factory = CountingFactory(tmp_path)

    async def _exercise() -> None:
        catalog = await _catalog_with_tenant(settings, "org-a")
        manager = TenantConnectionManager(catalog, SecretCipher(settings), settings, engine_factory=factory)
        try:
            handles = await asyncio.gather(*(manager.get("org-a") for _ in range(8)))
            assert all(handle is handles[0] for handle in handles)
            assert await manager.get("org-a") is handles[0]
            async with handles[0].session() as session:
                assert await session.scalar(text("SELECT 1")) == 1
            assert manager.cached_organization_ids() == {"org-a"}
        finally:
            await manager.close_all()
            await catalog.close()

    asyncio.run(_exercise())
    assert len(factory.calls) == 1
    url, profile = factory.calls[0]
    assert url.database == "org_orga"
    assert url.username == "tenant_user"
    assert url.host == "db1.internal"
    assert profile.name == "proxy"
    assert profile.pool_size == 3
    assert profile.max_overflow == 0
    assert profile.disable_statement_cache is True


def test_proxy_port_overrides_host_port(tmp_path: Path) -> None:
    settings = Settings(
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'catalog.db'}",
        tenant_db_driver="sqlite+aiosqlite",
        tenant_proxy_port=6432,
    )
    factory = CountingFactory(tmp_path)

    async def _exercise() -> None:
        catalog = await _catalog_with_tenant(settings, "org-a")
        manager = TenantConnectionManager(catalog, SecretCipher(settings), settings, engine_factory=factory)
        try:
            await manager.get("org-a")
        finally:
            await manager.close_all()
            await catalog.close()

    asyncio.run(_exercise())
    assert factory.calls[0][0].port == 6432


def test_unknown_organization_raises_not_found(settings: Settings, tmp_path: Path) -> None:
    factory = CountingFactory(tmp_path)

    async def _exercise() -> None:
        catalog = await _catalog_with_tenant(settings, "org-a")
        manager = TenantConnectionManager(catalog, SecretCipher(settings), settings, engine_factory=factory)
        try:
            with pytest.raises(TenantNotFoundError) as excinfo:
                await manager.get("org-missing")
            assert excinfo.value.code == "tenant_not_found"
        finally:
            await catalog.close()

    asyncio.run(_exercise())
    assert factory.calls == []


def test_inactive_tenant_is_refused(settings: Settings, tmp_path: Path) -> None:
    factory = CountingFactory(tmp_path)

    async def _exercise() -> None:
        catalog = await _catalog_with_tenant(settings, "org-a", status="suspended")
        manager = TenantConnectionManager(catalog, SecretCipher(settings), settings, engine_factory=factory)
        try:
            with pytest.raises(TenantNotActiveError) as excinfo:
                await manager.get("org-a")
            assert excinfo.value.status == "suspended"
        finally:
            await catalog.close()

    asyncio.run(_exercise())
    assert factory.calls == []


def test_unreachable_database_is_not_cached(settings: Settings, tmp_path: Path) -> None:
    factory = CountingFactory(tmp_path, broken=True)

    async def _exercise() -> None:
        catalog = await _catalog_with_tenant(settings, "org-a")
        manager = TenantConnectionManager(catalog, SecretCipher(settings), settings, engine_factory=factory)
        try:
            with pytest.raises(TenantDatabaseError):
                await manager.get("org-a")
            assert manager.cached_organization_ids() == set()
            factory.broken = False
            handle = await manager.get("org-a")
            assert handle.organization_id == "org-a"
        finally:
            await manager.close_all()
            await catalog.close()

    asyncio.run(_exercise())
    assert len(factory.calls) == 2


def test_close_evicts_pool_and_next_get_reopens(settings: Settings, tmp_path: Path) -> None:
    factory = CountingFactory(tmp_path)

    async def _exercise() -> None:
        catalog = await _catalog_with_tenant(settings, "org-a")
        manager = TenantConnectionManager(catalog, SecretCipher(settings), settings, engine_factory=factory)
        try:
            first = await manager.get("org-a")
            await manager.close("org-a")
            assert manager.cached_organization_ids() == set()
            second = await manager.get("org-a")
            assert second is not first
        finally:
            await manager.close_all()
            await catalog.close()

    asyncio.run(_exercise())
    assert len(factory.calls) == 2


def test_least_recently_used_pool_is_disposed_past_cache_size(settings: Settings, tmp_path: Path) -> None:
    settings = settings.model_copy(update={"tenant_pool_cache_size": 2})
    factory = CountingFactory(tmp_path)

    async def _exercise() -> None:
        catalog = await _catalog_with_tenant(settings, "org-a", "org-b", "org-c")
        manager = TenantConnectionManager(catalog, SecretCipher(settings), settings, engine_factory=factory)
        try:
            first = await manager.get("org-a")
            await manager.get("org-b")
            assert await manager.get("org-a") is first
            await manager.get("org-c")
            assert manager.cached_organization_ids() == {"org-a", "org-c"}
            assert factory.disposed == ["org_orgb"]
            reopened = await manager.get("org-b")
            assert reopened.organization_id == "org-b"
            assert manager.cached_organization_ids() == {"org-b", "org-c"}
            assert factory.disposed == ["org_orgb", "org_orga"]
        finally:
            await manager.close_all()
            await catalog.close()

    asyncio.run(_exercise())
    assert [url.database for url, _ in factory.calls] == ["org_orga", "org_orgb", "org_orgc", "org_orgb"]


def test_idle_pools_are_disposed_after_ttl(settings: Settings, tmp_path: Path) -> None:
    settings = settings.model_copy(update={"tenant_pool_idle_ttl_seconds": 60.0})
    factory = CountingFactory(tmp_path)
    clock = FakeClock()

    async def _exercise() -> None:
        catalog = await _catalog_with_tenant(settings, "org-a", "org-b")
        manager = TenantConnectionManager(
            catalog, SecretCipher(settings), settings, engine_factory=factory, clock=clock
        )
        try:
            await manager.get("org-a")
            clock.now = 30.0
            kept = await manager.get("org-b")
            clock.now = 75.0
            assert await manager.get("org-b") is kept
            assert manager.cached_organization_ids() == {"org-b"}
            assert factory.disposed == ["org_orga"]
            assert await manager.prune() == []
            clock.now = 200.0
            assert await manager.prune() == ["org-b"]
            assert manager.cached_organization_ids() == set()
        finally:
            await manager.close_all()
            await catalog.close()

    asyncio.run(_exercise())
    assert factory.disposed == ["org_orga", "org_orgb"]
