from __future__ import annotations

import logging
from pathlib import Path
import time

from alembic import command
from alembic.config import Config
from alembic.runtime.migration import MigrationContext
from alembic.script import ScriptDirectory
from sqlalchemy.engine import Connection

from edutenant.core.config import get_settings
from edutenant.core.errors import ConnectivityError, MigrationError, TenancyError
from edutenant.domain.models import Tenant
from edutenant.domain.tenant_models import TenantBase
from edutenant.persistence.db import EngineFactory, UrlResolver, throwaway_engine
from edutenant.services.admin_db import is_connectivity_error
from edutenant.services.provisioner import require_database_name
from edutenant.services.telemetry import increment_counter, record_operation


logger = logging.getLogger(__name__)

TENANT_MIGRATIONS_DIR = Path(__file__).resolve().parent.parent / "persistence" / "tenant_alembic"


def tenant_alembic_config() -> Config:
    # Build the config in code; tenant migrations have no ini file of their own.
    config = Config()
    config.set_main_option("script_location", str(TENANT_MIGRATIONS_DIR))
    return config


def pending_revisions(connection: Connection, script: ScriptDirectory) -> list[str]:
    """Revisions not yet recorded in the tenant database, in apply order."""
    current_heads = MigrationContext.configure(connection).get_current_heads()
    applied: set[str] = set()
    for head in current_heads:
        applied.update(rev.revision for rev in script.iterate_revisions(head, "base"))
    # walk_revisions yields newest first.
    pending = [rev.revision for rev in script.walk_revisions() if rev.revision not in applied]
    return list(reversed(pending))


class TenantSchemaMigrator:
    """Apply the tenant revision chain over a dedicated, short-lived connection."""

    def __init__(
        self,
        *,
        url_resolver: UrlResolver | None = None,
        engine_factory: EngineFactory | None = None,
        schema_mode: str | None = None,
    ) -> None:
        self._url_resolver = url_resolver
        self._engine_factory = engine_factory
        self._schema_mode = schema_mode or get_settings().tenant_schema_mode
        self._script = ScriptDirectory.from_config(tenant_alembic_config())

    def known_revisions(self) -> list[str]:
        return list(reversed([rev.revision for rev in self._script.walk_revisions()]))

    def _upgrade(self, connection: Connection) -> list[str]:
        pending = pending_revisions(connection, self._script)
        # End the read transaction so alembic can open one transaction per revision.
        connection.rollback()
        if not pending:
            return []
        # Per-call config: concurrent tenants must not share the bound connection attribute.
        config = tenant_alembic_config()
        config.attributes["connection"] = connection
        if self._schema_mode == "synchronize":
            TenantBase.metadata.create_all(connection)
            command.stamp(config, "head")
        else:
            command.upgrade(config, "head")
        return pending

    def _wrap(self, exc: Exception, database_name: str, action: str) -> TenancyError:
        if isinstance(exc, TenancyError):
            return exc
        if is_connectivity_error(exc):
            return ConnectivityError(f"{action} could not reach {database_name}: {exc}", stage="migrations")
        return MigrationError(f"{action} failed for {database_name}: {exc}", stage="migrations")

    async def run_migrations(self, tenant: Tenant) -> list[str]:
        """Apply pending revisions and return the ones applied, oldest first."""
        database_name = require_database_name(tenant)
        logger.info("tenant_migrations_started tenant=%s database=%s", tenant.id, database_name)
        start = time.monotonic()
        success = False
        try:
            async with throwaway_engine(
                database_name,
                url_resolver=self._url_resolver,
                engine_factory=self._engine_factory,
            ) as engine:
                async with engine.connect() as conn:
                    applied = await conn.run_sync(self._upgrade)
                    await conn.commit()
            success = True
        except Exception as exc:  # noqa: BLE001 - migration scripts may raise anything; re-raised as MigrationError
            logger.error(
                "tenant_migrations_failed tenant=%s database=%s error=%s", tenant.id, database_name, exc
            )
            raise self._wrap(exc, database_name, "Tenant migration") from exc
        finally:
            record_operation(
                operation="tenant_migrations",
                latency_ms=(time.monotonic() - start) * 1000.0,
                success=success,
            )
        increment_counter("tenant_migrations_applied_total", len(applied))
        logger.info(
            "tenant_migrations_completed tenant=%s database=%s applied=%s mode=%s",
            tenant.id,
            database_name,
            len(applied),
            self._schema_mode,
        )
        return applied

    async def pending_migrations(self, tenant: Tenant) -> list[str]:
        database_name = require_database_name(tenant)
        try:
            async with throwaway_engine(
                database_name,
                url_resolver=self._url_resolver,
                engine_factory=self._engine_factory,
            ) as engine:
                async with engine.connect() as conn:
                    return await conn.run_sync(pending_revisions, self._script)
        except Exception as exc:  # noqa: BLE001 - surfaced as a tenancy error kind
            raise self._wrap(exc, database_name, "Pending migration check") from exc

    async def needs_migration(self, tenant: Tenant) -> bool:
        # Connectivity blips must not block normal operation; report "nothing pending" and log.
        try:
            return bool(await self.pending_migrations(tenant))
        except TenancyError as exc:
            logger.error("tenant_migration_check_failed tenant=%s error=%s", tenant.id, exc)
            return False
