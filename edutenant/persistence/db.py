from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Callable

from sqlalchemy.engine import URL, make_url
from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from edutenant.core.config import Settings, get_settings


# Build an engine for a tenant database URL; swapped out in tests to target SQLite files.
EngineFactory = Callable[[URL], AsyncEngine]
UrlResolver = Callable[[str], URL]


def _is_sqlite(url: URL) -> bool:
    return url.get_backend_name() == "sqlite"


def _statement_timeout_kwargs(url: URL, settings: Settings) -> dict[str, Any]:
    # Server-side bound for every statement on tenant connections, migrations and seeding included.
    if _is_sqlite(url) or settings.tenant_db_statement_timeout_ms <= 0:
        return {}
    return {
        "connect_args": {
            "server_settings": {"statement_timeout": str(int(settings.tenant_db_statement_timeout_ms))}
        }
    }


def pooled_engine_kwargs(url: URL, settings: Settings | None = None) -> dict[str, Any]:
    # Configure bounded asyncpg pools for long-lived tenant handles.
    settings = settings or get_settings()
    kwargs: dict[str, Any] = {"pool_pre_ping": True, "echo": settings.tenant_db_echo}
    if _is_sqlite(url):
        return kwargs
    kwargs["pool_size"] = max(1, int(settings.tenant_db_pool_size))
    kwargs["max_overflow"] = max(0, int(settings.tenant_db_max_overflow))
    kwargs["pool_timeout"] = settings.tenant_db_pool_timeout_s
    kwargs["pool_recycle"] = settings.tenant_db_pool_recycle_s
    kwargs.update(_statement_timeout_kwargs(url, settings))
    return kwargs


def throwaway_engine_kwargs(url: URL, settings: Settings | None = None) -> dict[str, Any]:
    # NullPool closes the socket as soon as the connection is released, so dispose() leaves nothing behind.
    settings = settings or get_settings()
    kwargs: dict[str, Any] = {"poolclass": NullPool, "echo": settings.tenant_db_echo}
    kwargs.update(_statement_timeout_kwargs(url, settings))
    return kwargs


def master_url(settings: Settings | None = None) -> URL:
    settings = settings or get_settings()
    return make_url(settings.master_database_url)


def tenant_database_url(database_name: str, settings: Settings | None = None) -> URL:
    # Tenant databases share host and credentials with the master; only the database differs.
    return master_url(settings).set(database=database_name)


def create_pooled_engine(url: URL) -> AsyncEngine:
    return create_async_engine(url, **pooled_engine_kwargs(url))


def create_throwaway_engine(url: URL) -> AsyncEngine:
    return create_async_engine(url, **throwaway_engine_kwargs(url))


@asynccontextmanager
async def throwaway_engine(
    database_name: str,
    *,
    url_resolver: UrlResolver | None = None,
    engine_factory: EngineFactory | None = None,
) -> AsyncIterator[AsyncEngine]:
    # Dedicated engine for migrations and seeding; never shared with the registry handle.
    url = (url_resolver or tenant_database_url)(database_name)
    tenant_engine = (engine_factory or create_throwaway_engine)(url)
    try:
        yield tenant_engine
    finally:
        await tenant_engine.dispose()


settings = get_settings()
engine = create_pooled_engine(master_url(settings))
SessionLocal = async_sessionmaker(engine, expire_on_commit=False)


def pool_stats(target: AsyncEngine | None = None) -> dict[str, int | None]:
    # Expose pool counters for ops visibility without querying Postgres internals.
    pool = (target or engine).sync_engine.pool
    checked_out_fn = getattr(pool, "checkedout", None)
    checked_in_fn = getattr(pool, "checkedin", None)
    overflow_fn = getattr(pool, "overflow", None)
    size_fn = getattr(pool, "size", None)
    return {
        "size": int(size_fn()) if callable(size_fn) else None,
        "checked_out": int(checked_out_fn()) if callable(checked_out_fn) else None,
        "checked_in": int(checked_in_fn()) if callable(checked_in_fn) else None,
        "overflow": int(overflow_fn()) if callable(overflow_fn) else None,
    }
