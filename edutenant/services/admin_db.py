from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
import logging
from typing import AsyncIterator, Awaitable, Callable, TypeVar

from sqlalchemy import text
from sqlalchemy.engine import URL, make_url
from sqlalchemy.exc import DBAPIError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine, create_async_engine
from sqlalchemy.pool import NullPool

from edutenant.core.config import get_settings
from edutenant.core.errors import (
    ConnectivityError,
    DatabaseAlreadyExistsError,
    ProvisioningError,
    TenancyError,
)
from edutenant.persistence.db import EngineFactory, master_url
from edutenant.services.naming import is_valid_database_name
from edutenant.services.resilience import RetryPolicy, default_retry_policy, retry_async
from edutenant.services.telemetry import increment_counter


logger = logging.getLogger(__name__)

T = TypeVar("T")

SQLSTATE_DUPLICATE_DATABASE = "42P04"
# Class 08 is "connection exception"; 57P0x covers admin shutdown and "cannot connect now".
_CONNECTIVITY_SQLSTATE_PREFIXES = ("08", "57P")


def _default_admin_engine(url: URL) -> AsyncEngine:
    # CREATE/DROP DATABASE cannot run inside a transaction block, so the admin session autocommits.
    kwargs: dict = {"poolclass": NullPool, "isolation_level": "AUTOCOMMIT"}
    if url.get_backend_name() == "postgresql":
        kwargs["connect_args"] = {"timeout": get_settings().admin_statement_timeout_s}
    return create_async_engine(url, **kwargs)


def sqlstate_of(exc: BaseException) -> str | None:
    # SQLAlchemy wraps driver errors; the SQLSTATE may sit on the wrapper, the adapter or its cause.
    candidates: list[BaseException | None] = [exc]
    if isinstance(exc, DBAPIError):
        candidates.append(exc.orig)
        candidates.append(getattr(exc.orig, "__cause__", None))
    for candidate in candidates:
        if candidate is None:
            continue
        code = getattr(candidate, "sqlstate", None) or getattr(candidate, "pgcode", None)
        if isinstance(code, str) and code:
            return code
    return None


def is_connectivity_error(exc: BaseException) -> bool:
    if isinstance(exc, (OSError, asyncio.TimeoutError)):
        return True
    if isinstance(exc, DBAPIError):
        if exc.connection_invalidated:
            return True
        if isinstance(exc.orig, (OSError, asyncio.TimeoutError)):
            return True
        code = sqlstate_of(exc)
        return bool(code) and code.startswith(_CONNECTIVITY_SQLSTATE_PREFIXES)
    return False


def translate_error(exc: BaseException, *, action: str, database_name: str) -> TenancyError:
    # Map driver failures onto the tenancy error kinds so callers can tell retryable from fatal.
    if isinstance(exc, TenancyError):
        return exc
    message = f"{action} failed for database {database_name}: {exc}"
    if sqlstate_of(exc) == SQLSTATE_DUPLICATE_DATABASE:
        return DatabaseAlreadyExistsError(f"Database {database_name} already exists")
    if is_connectivity_error(exc):
        return ConnectivityError(message)
    return ProvisioningError(message)


class AdminDatabaseClient:
    """Short-lived client for the server's administrative database.

    Every public method opens a fresh connection, runs its statements and
    disposes the engine before returning. Nothing is pooled or cached between
    calls.
    """

    def __init__(
        self,
        admin_url: URL | str | None = None,
        *,
        engine_factory: EngineFactory | None = None,
        retry_policy: RetryPolicy | None = None,
        statement_timeout_s: float | None = None,
    ) -> None:
        self._url = make_url(admin_url) if admin_url is not None else master_url()
        self._engine_factory = engine_factory or _default_admin_engine
        self._retry_policy = retry_policy or default_retry_policy()
        self._timeout_s = (
            statement_timeout_s if statement_timeout_s is not None else get_settings().admin_statement_timeout_s
        )

    @property
    def service_user(self) -> str | None:
        return self._url.username

    @asynccontextmanager
    async def _connect(self) -> AsyncIterator[AsyncConnection]:
        engine = self._engine_factory(self._url)

        async def _open() -> AsyncConnection:
            return await engine.connect()

        try:
            conn = await retry_async(
                _open,
                policy=self._retry_policy,
                retryable=is_connectivity_error,
                operation="admin_connect",
            )
            try:
                yield conn
            finally:
                await conn.close()
        finally:
            await engine.dispose()

    async def _run(
        self,
        action: str,
        database_name: str,
        op: Callable[[AsyncConnection], Awaitable[T]],
    ) -> T:
        try:
            async with self._connect() as conn:
                return await asyncio.wait_for(op(conn), timeout=self._timeout_s)
        except (SQLAlchemyError, OSError, asyncio.TimeoutError) as exc:
            increment_counter(f"admin_db_errors_total.{action}")
            raise translate_error(exc, action=action, database_name=database_name) from exc

    @staticmethod
    def _quote(conn: AsyncConnection, database_name: str) -> str:
        return conn.dialect.identifier_preparer.quote_identifier(database_name)

    @classmethod
    def _drop_sql(cls, conn: AsyncConnection, database_name: str, *, force: bool = False) -> str:
        sql = f"DROP DATABASE IF EXISTS {cls._quote(conn, database_name)}"
        # PostgreSQL 13+ FORCE also ends sessions opened between the terminate pass and the drop.
        if force and (conn.dialect.server_version_info or (0,)) >= (13,):
            sql += " WITH (FORCE)"
        return sql

    @staticmethod
    def _require_safe_name(database_name: str) -> None:
        # Refuse anything that is not a plain identifier before it reaches DDL.
        if not is_valid_database_name(database_name):
            raise ProvisioningError(f"Refusing unsafe database name: {database_name!r}")

    async def exists(self, database_name: str) -> bool:
        async def _op(conn: AsyncConnection) -> bool:
            result = await conn.execute(
                text("SELECT 1 FROM pg_database WHERE datname = :name"),
                {"name": database_name},
            )
            return result.scalar_one_or_none() is not None

        return await self._run("exists", database_name, _op)

    async def create(self, database_name: str) -> None:
        self._require_safe_name(database_name)
        service_user = self.service_user

        async def _op(conn: AsyncConnection) -> None:
            quoted = self._quote(conn, database_name)
            await conn.execute(text(f"CREATE DATABASE {quoted}"))
            if service_user:
                grantee = self._quote(conn, service_user)
                await conn.execute(text(f"GRANT ALL PRIVILEGES ON DATABASE {quoted} TO {grantee}"))

        await self._run("create", database_name, _op)
        logger.info("admin_database_created database=%s grantee=%s", database_name, service_user)

    async def terminate_connections(self, database_name: str) -> int:
        async def _op(conn: AsyncConnection) -> int:
            return await self._terminate(conn, database_name)

        return await self._run("terminate_connections", database_name, _op)

    async def drop(self, database_name: str) -> None:
        """Drop without touching other sessions; fails while any are connected.

        Pair with ``terminate_connections`` or use ``terminate_and_drop``.
        """
        self._require_safe_name(database_name)

        async def _op(conn: AsyncConnection) -> None:
            await conn.execute(text(self._drop_sql(conn, database_name)))

        await self._run("drop", database_name, _op)
        logger.info("admin_database_dropped database=%s", database_name)

    async def terminate_and_drop(self, database_name: str) -> int:
        """Terminate foreign sessions and drop the database in one admin session."""
        self._require_safe_name(database_name)

        async def _op(conn: AsyncConnection) -> int:
            terminated = await self._terminate(conn, database_name)
            await conn.execute(text(self._drop_sql(conn, database_name, force=True)))
            return terminated

        terminated = await self._run("drop", database_name, _op)
        logger.info("admin_database_dropped database=%s terminated_sessions=%s", database_name, terminated)
        return terminated

    @staticmethod
    async def _terminate(conn: AsyncConnection, database_name: str) -> int:
        # Exclude our own backend so the admin session survives.
        result = await conn.execute(
            text(
                "SELECT pg_terminate_backend(pid) FROM pg_stat_activity "
                "WHERE datname = :name AND pid <> pg_backend_pid()"
            ),
            {"name": database_name},
        )
        terminated = len(result.all())
        if terminated:
            logger.info("admin_sessions_terminated database=%s count=%s", database_name, terminated)
        return terminated
