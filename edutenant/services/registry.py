from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
import logging
from typing import AsyncIterator

from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from edutenant.core.config import get_settings
from edutenant.core.errors import ConnectionNotFoundError, RegistryClosedError
from edutenant.domain.models import Tenant
from edutenant.persistence.db import (
    EngineFactory,
    UrlResolver,
    create_pooled_engine,
    pool_stats,
    tenant_database_url,
)
from edutenant.services.admin_db import translate_error
from edutenant.services.locks import KeyedLock
from edutenant.services.provisioner import require_database_name
from edutenant.services.telemetry import increment_counter, set_gauge


logger = logging.getLogger(__name__)


@dataclass(eq=False)
class TenantConnection:
    """Long-lived handle to one tenant database; owned and closed by the registry."""

    database_name: str
    engine: AsyncEngine
    session_factory: async_sessionmaker[AsyncSession] = field(init=False)
    _open: bool = field(default=True, init=False)

    def __post_init__(self) -> None:
        self.session_factory = async_sessionmaker(self.engine, expire_on_commit=False)

    @property
    def is_open(self) -> bool:
        return self._open

    @asynccontextmanager
    async def session(self) -> AsyncIterator[AsyncSession]:
        if not self._open:
            raise ConnectionNotFoundError(f"Connection for {self.database_name} is closed")
        async with self.session_factory() as session:
            yield session

    def pool_stats(self) -> dict[str, int | None]:
        return pool_stats(self.engine)

    async def _close(self) -> None:
        if not self._open:
            return
        self._open = False
        await self.engine.dispose()


class ConnectionRegistry:
    """Process-wide map of database name to one open TenantConnection.

    Construct once at startup, pass by reference, and await
    ``close_all_databases`` at shutdown (``registry_lifespan`` does both).
    Opening is serialized per database name so concurrent first-use requests
    share a single handle; lookups never open anything.
    """

    def __init__(
        self,
        *,
        engine_factory: EngineFactory | None = None,
        url_resolver: UrlResolver | None = None,
        connect_timeout_s: float | None = None,
    ) -> None:
        self._engine_factory = engine_factory or create_pooled_engine
        self._url_resolver = url_resolver or tenant_database_url
        self._connect_timeout_s = (
            connect_timeout_s if connect_timeout_s is not None else get_settings().admin_statement_timeout_s
        )
        self._connections: dict[str, TenantConnection] = {}
        self._locks = KeyedLock()
        self._closed = False

    def _live(self, database_name: str) -> TenantConnection | None:
        connection = self._connections.get(database_name)
        if connection is not None and connection.is_open:
            return connection
        return None

    def _publish_gauge(self) -> None:
        set_gauge("tenant_connections_active", float(len(self._connections)))

    async def create_tenant_database(self, tenant: Tenant) -> TenantConnection:
        """Register a connection for the tenant database, or return the existing one."""
        database_name = require_database_name(tenant)
        existing = self._live(database_name)
        if existing is not None:
            logger.debug("tenant_connection_reused database=%s", database_name)
            return existing
        async with self._locks.hold(database_name):
            if self._closed:
                raise RegistryClosedError("Connection registry is shut down")
            # Losers of the race land here after the winner inserted its handle.
            existing = self._live(database_name)
            if existing is not None:
                return existing
            connection = await self._open(database_name)
            if self._closed:
                await connection._close()
                raise RegistryClosedError("Connection registry shut down while opening a connection")
            self._connections[database_name] = connection
            self._publish_gauge()
        increment_counter("tenant_connections_opened_total")
        logger.info("tenant_connection_opened tenant=%s database=%s", tenant.id, database_name)
        return connection

    async def _open(self, database_name: str) -> TenantConnection:
        engine = self._engine_factory(self._url_resolver(database_name))

        async def _verify() -> None:
            async with engine.connect() as conn:
                await conn.execute(text("SELECT 1"))

        opened = False
        try:
            await asyncio.wait_for(_verify(), timeout=self._connect_timeout_s)
            opened = True
        except (SQLAlchemyError, OSError, asyncio.TimeoutError) as exc:
            increment_counter("tenant_connection_open_failures_total")
            logger.error("tenant_connection_open_failed database=%s error=%s", database_name, exc)
            raise translate_error(exc, action="open connection", database_name=database_name) from exc
        finally:
            # A failed open must not leave a half-initialized pool behind.
            if not opened:
                await engine.dispose()
        return TenantConnection(database_name=database_name, engine=engine)

    def get_tenant_data_source(self, database_name: str) -> TenantConnection:
        connection = self._live(database_name)
        if connection is None:
            raise ConnectionNotFoundError(f"Database connection for {database_name} not found")
        return connection

    async def close_tenant_database(self, database_name: str) -> bool:
        async with self._locks.hold(database_name):
            connection = self._connections.get(database_name)
            if connection is None:
                return False
            was_open = connection.is_open
            try:
                await connection._close()
            finally:
                self._connections.pop(database_name, None)
                self._publish_gauge()
        if was_open:
            increment_counter("tenant_connections_closed_total")
            logger.info("tenant_connection_closed database=%s", database_name)
        return was_open

    async def close_all_databases(self) -> None:
        self._closed = True
        entries = list(self._connections.items())
        results = await asyncio.gather(
            *(connection._close() for _, connection in entries),
            return_exceptions=True,
        )
        for (database_name, _), result in zip(entries, results):
            if isinstance(result, BaseException):
                logger.error("tenant_connection_close_failed database=%s error=%s", database_name, result)
            else:
                logger.info("tenant_connection_closed database=%s", database_name)
        self._connections.clear()
        self._publish_gauge()
        logger.info("tenant_connections_shutdown closed=%s", len(entries))

    def get_active_tenant_databases(self) -> int:
        return sum(1 for connection in self._connections.values() if connection.is_open)

    def active_database_names(self) -> list[str]:
        return sorted(name for name, connection in self._connections.items() if connection.is_open)

    @property
    def is_closed(self) -> bool:
        return self._closed


@asynccontextmanager
async def registry_lifespan(
    *,
    engine_factory: EngineFactory | None = None,
    url_resolver: UrlResolver | None = None,
) -> AsyncIterator[ConnectionRegistry]:
    # Tie the registry to process startup/shutdown hooks; shutdown always drains every handle.
    registry = ConnectionRegistry(engine_factory=engine_factory, url_resolver=url_resolver)
    try:
        yield registry
    finally:
        await registry.close_all_databases()
