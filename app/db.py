from __future__ import annotations

import uuid
from dataclasses import dataclass

from sqlalchemy import event
from sqlalchemy.engine import URL, make_url
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine

from app.config import Settings


@dataclass(frozen=True)
class PoolProfile:
    name: str
    pool_size: int = 5
    max_overflow: int = 10
    pool_recycle: int = -1
    pool_timeout: float = 30.0
    pre_ping: bool = True
    disable_statement_cache: bool = False
    autocommit: bool = False


CATALOG_PROFILE = PoolProfile("catalog")
# CREATE DATABASE cannot run inside a transaction block.
ADMIN_PROFILE = PoolProfile("admin", pool_size=1, max_overflow=0, autocommit=True)
MIGRATION_PROFILE = PoolProfile("migration", pool_size=1, max_overflow=0, disable_statement_cache=True)


def proxy_profile(settings: Settings) -> PoolProfile:
    # Many tenants share one transaction-mode proxy, so each pool stays tiny and never prepares statements.
    return PoolProfile(
        "proxy",
        pool_size=settings.tenant_pool_size,
        max_overflow=0,
        pool_recycle=settings.tenant_pool_recycle_seconds,
        pool_timeout=settings.tenant_pool_timeout_seconds,
        pre_ping=False,
        disable_statement_cache=True,
    )


def build_engine(url: str | URL, profile: PoolProfile = CATALOG_PROFILE, *, connect_timeout: float = 10.0) -> AsyncEngine:
    url = make_url(url)
    if url.get_backend_name() == "sqlite":
        engine = create_async_engine(url, connect_args={"check_same_thread": False})

        @event.listens_for(engine.sync_engine, "connect")
        def _set_sqlite_pragma(dbapi_connection, _connection_record) -> None:
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

        return engine

    connect_args: dict = {"timeout": connect_timeout}
    if profile.disable_statement_cache:
        connect_args["statement_cache_size"] = 0
        connect_args["prepared_statement_cache_size"] = 0
        connect_args["prepared_statement_name_func"] = lambda: f"__asyncpg_{uuid.uuid4()}__"

    kwargs: dict = {
        "pool_size": profile.pool_size,
        "max_overflow": profile.max_overflow,
        "pool_recycle": profile.pool_recycle,
        "pool_timeout": profile.pool_timeout,
        "pool_pre_ping": profile.pre_ping,
        "connect_args": connect_args,
    }
    if profile.autocommit:
        kwargs["isolation_level"] = "AUTOCOMMIT"
    return create_async_engine(url, **kwargs)


def server_url(
    settings: Settings, *, host: str, port: int, database: str, credentials: dict | None = None
) -> URL:
    credentials = credentials or {"user": settings.tenant_db_user, "password": settings.tenant_db_password}
    return URL.create(
        settings.tenant_db_driver,
        username=credentials["user"],
        password=credentials["password"],
        host=host,
        port=port,
        database=database,
    )
