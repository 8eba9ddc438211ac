from __future__ import annotations

import pytest
from sqlalchemy import inspect, text
from sqlalchemy.ext.asyncio import create_async_engine

from edutenant.core.errors import MigrationError, TenancyError
from edutenant.services.migrator import TenantSchemaMigrator


ALL_REVISIONS = ["0001_tenant_rbac", "0002_schools_users"]


async def _tables_and_version(url) -> tuple[set[str], str | None]:
    engine = create_async_engine(url)
    try:
        async with engine.connect() as conn:
            tables = set(await conn.run_sync(lambda sync_conn: inspect(sync_conn).get_table_names()))
            version = None
            if "alembic_version" in tables:
                version = (await conn.execute(text("SELECT version_num FROM alembic_version"))).scalar_one()
        return tables, version
    finally:
        await engine.dispose()


def test_revision_chain_is_static_and_ordered() -> None:
    assert TenantSchemaMigrator(schema_mode="migrate").known_revisions() == ALL_REVISIONS


@pytest.mark.asyncio
async def test_migrations_apply_once(sqlite_resolver, make_tenant) -> None:
    migrator = TenantSchemaMigrator(url_resolver=sqlite_resolver, schema_mode="migrate")
    tenant = make_tenant()

    assert await migrator.needs_migration(tenant) is True
    assert await migrator.pending_migrations(tenant) == ALL_REVISIONS

    assert await migrator.run_migrations(tenant) == ALL_REVISIONS
    assert await migrator.run_migrations(tenant) == []
    assert await migrator.needs_migration(tenant) is False

    tables, version = await _tables_and_version(sqlite_resolver(tenant.database_name))
    assert {"permissions", "roles", "role_permissions", "schools", "users", "user_roles"} <= tables
    assert version == "0002_schools_users"


@pytest.mark.asyncio
async def test_synchronize_mode_builds_schema_and_stamps_head(sqlite_resolver, make_tenant) -> None:
    tenant = make_tenant()
    synchronizer = TenantSchemaMigrator(url_resolver=sqlite_resolver, schema_mode="synchronize")

    assert await synchronizer.run_migrations(tenant) == ALL_REVISIONS

    # The stamped head keeps migrate mode from replaying revisions over the synchronized schema.
    migrator = TenantSchemaMigrator(url_resolver=sqlite_resolver, schema_mode="migrate")
    assert await migrator.needs_migration(tenant) is False
    tables, version = await _tables_and_version(sqlite_resolver(tenant.database_name))
    assert "users" in tables
    assert version == "0002_schools_users"


@pytest.mark.asyncio
async def test_unreachable_database_is_reported(broken_resolver, make_tenant) -> None:
    migrator = TenantSchemaMigrator(url_resolver=broken_resolver, schema_mode="migrate")
    tenant = make_tenant()

    # Health checks downgrade to "nothing pending" instead of raising.
    assert await migrator.needs_migration(tenant) is False

    with pytest.raises(TenancyError) as excinfo:
        await migrator.run_migrations(tenant)
    assert isinstance(excinfo.value, MigrationError)
    assert excinfo.value.stage == "migrations"


@pytest.mark.asyncio
async def test_failed_revision_keeps_earlier_revisions(sqlite_resolver, make_tenant) -> None:
    tenant = make_tenant()
    url = sqlite_resolver(tenant.database_name)
    # A stray table makes 0002 fail after 0001 has committed.
    engine = create_async_engine(url)
    try:
        async with engine.begin() as conn:
            await conn.execute(text("CREATE TABLE schools (id VARCHAR PRIMARY KEY)"))
    finally:
        await engine.dispose()
    migrator = TenantSchemaMigrator(url_resolver=sqlite_resolver, schema_mode="migrate")

    with pytest.raises(MigrationError) as excinfo:
        await migrator.run_migrations(tenant)
    assert excinfo.value.stage == "migrations"

    tables, version = await _tables_and_version(url)
    assert version == "0001_tenant_rbac"
    assert {"permissions", "roles", "role_permissions"} <= tables
    assert "users" not in tables
    assert await migrator.pending_migrations(tenant) == ["0002_schools_users"]
    assert await migrator.needs_migration(tenant) is True
