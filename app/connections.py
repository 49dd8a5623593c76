from __future__ import annotations

import asyncio
import contextlib
import logging
from collections import OrderedDict
from collections.abc import Callable
from dataclasses import dataclass
from time import monotonic

from sqlalchemy import text
from sqlalchemy.engine import URL
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from app.catalog import CatalogStore
from app.config import Settings
from app.crypto import SecretCipher
from app.db import PoolProfile, build_engine, proxy_profile, server_url
from app.errors import TenantDatabaseError, TenantNotActiveError, TenantNotFoundError

logger = logging.getLogger(__name__)

EngineFactory = Callable[[URL, PoolProfile], AsyncEngine]


@dataclass
class TenantHandle:
    organization_id: str
    tenant_id: str
    engine: AsyncEngine
    sessions: async_sessionmaker[AsyncSession]
    last_used_at: float = 0.0

    def session(self) -> AsyncSession:
        return self.sessions()


class TenantConnectionManager:
    """Per-process registry of tenant pools keyed by organization id.

    The first ``get`` for an organization opens the pool; concurrent callers await that same
    in-flight open instead of building their own. Rehoming a tenant requires an explicit ``close``.
    At most ``tenant_pool_cache_size`` pools stay open; the least recently used pool and any pool
    idle longer than ``tenant_pool_idle_ttl_seconds`` are disposed on the next lookup.
    """

    def __init__(
        self,
        catalog: CatalogStore,
        cipher: SecretCipher,
        settings: Settings,
        *,
        engine_factory: EngineFactory | None = None,
        clock: Callable[[], float] = monotonic,
    ) -> None:
        self.catalog = catalog
        self.cipher = cipher
        self.settings = settings
        self._profile = proxy_profile(settings)
        self._engine_factory = engine_factory or self._default_engine_factory
        self._clock = clock
        self._handles: OrderedDict[str, TenantHandle] = OrderedDict()
        self._pending: dict[str, asyncio.Task[TenantHandle]] = {}

    def cached_organization_ids(self) -> set[str]:
        return set(self._handles.keys())

    async def get(self, organization_id: str) -> TenantHandle:
        handle = self._handles.get(organization_id)
        if handle is not None:
            handle.last_used_at = self._clock()
            self._handles.move_to_end(organization_id)
            await self.prune()
            return handle
        task = self._pending.get(organization_id)
        if task is None:
            task = asyncio.create_task(self._open(organization_id))
            self._pending[organization_id] = task
            task.add_done_callback(lambda done, key=organization_id: self._forget_pending(key, done))
        return await asyncio.shield(task)

    async def close(self, organization_id: str) -> None:
        task = self._pending.get(organization_id)
        if task is not None:
            with contextlib.suppress(Exception):
                await asyncio.shield(task)
        handle = self._handles.pop(organization_id, None)
        if handle is None:
            return
        await handle.engine.dispose()
        logger.info("tenant pool closed organization_id=%s", organization_id)

    async def close_all(self) -> None:
        for organization_id in list(self._pending.keys()) + list(self._handles.keys()):
            await self.close(organization_id)

    async def prune(self) -> list[str]:
        """Dispose pools past the cache size or idle TTL, least recently used first."""
        now = self._clock()
        evicted: list[str] = []
        while self._handles:
            organization_id, handle = next(iter(self._handles.items()))
            idle_seconds = now - handle.last_used_at
            if (
                len(self._handles) <= self.settings.tenant_pool_cache_size
                and idle_seconds < self.settings.tenant_pool_idle_ttl_seconds
            ):
                break
            del self._handles[organization_id]
            evicted.append(organization_id)
            await handle.engine.dispose()
            logger.info(
                "tenant pool evicted organization_id=%s idle_seconds=%.1f cached=%d",
                organization_id,
                idle_seconds,
                len(self._handles),
            )
        return evicted

    def _forget_pending(self, organization_id: str, task: asyncio.Task) -> None:
        if self._pending.get(organization_id) is task:
            self._pending.pop(organization_id, None)

    def _default_engine_factory(self, url: URL, profile: PoolProfile) -> AsyncEngine:
        return build_engine(url, profile, connect_timeout=self.settings.tenant_connect_timeout_seconds)

    async def _open(self, organization_id: str) -> TenantHandle:
        tenant = await self.catalog.get_tenant_by_organization(organization_id)
        if tenant is None:
            raise TenantNotFoundError(organization_id)
        if tenant.status != "active":
            raise TenantNotActiveError(organization_id, tenant.status)
        host = await self.catalog.get_host(tenant.database_host_id)
        if host is None:
            raise TenantDatabaseError(organization_id, LookupError(f"database host {tenant.database_host_id} missing"))

        url = server_url(
            self.settings,
            host=host.host,
            port=self.settings.tenant_proxy_port or host.port,
            database=tenant.database_name,
            credentials=self.cipher.open_credentials(tenant.credentials_blob),
        )
        engine = self._engine_factory(url, self._profile)
        try:
            await asyncio.wait_for(self._check_connection(engine), timeout=self.settings.tenant_connect_timeout_seconds)
        except (SQLAlchemyError, OSError, TimeoutError) as exc:
            await engine.dispose()
            logger.warning(
                "tenant pool connect failed organization_id=%s host=%s err_type=%s err=%s",
                organization_id,
                host.name,
                type(exc).__name__,
                exc,
            )
            raise TenantDatabaseError(organization_id, exc) from exc

        handle = TenantHandle(
            organization_id=organization_id,
            tenant_id=tenant.id,
            engine=engine,
            sessions=async_sessionmaker(engine, autoflush=False, expire_on_commit=False),
            last_used_at=self._clock(),
        )
        self._handles[organization_id] = handle
        logger.info(
            "tenant pool created organization_id=%s host=%s profile=%s",
            organization_id,
            host.name,
            self._profile.name,
        )
        await self.prune()
        return handle

    async def _check_connection(self, engine: AsyncEngine) -> None:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
