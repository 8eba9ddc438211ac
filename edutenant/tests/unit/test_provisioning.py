from __future__ import annotations

import pytest
from sqlalchemy import func, select

from edutenant.core.config import get_settings
from edutenant.core.errors import ConnectivityError, MigrationError, ProvisioningError
from edutenant.domain.tenant_models import User
from edutenant.services.migrator import TenantSchemaMigrator
from edutenant.services.provisioning import TenancyService
from edutenant.services.provisioner import DatabaseStatus
from edutenant.services.registry import registry_lifespan
from edutenant.services.seeder import SeedReport, TenantDataSeeder
from edutenant.services.telemetry import counters_snapshot, operation_latency


class StubProvisioner:
    def __init__(self) -> None:
        self.existing: set[str] = set()
        self.create_error: Exception | None = None
        self.drop_error: Exception | None = None

    async def create_tenant_database(self, tenant) -> bool:
        if self.create_error is not None:
            raise self.create_error
        if tenant.database_name in self.existing:
            return False
        self.existing.add(tenant.database_name)
        return True

    async def drop_tenant_database(self, tenant) -> bool:
        if self.drop_error is not None:
            raise self.drop_error
        if tenant.database_name not in self.existing:
            return False
        self.existing.discard(tenant.database_name)
        return True

    async def probe_database(self, tenant) -> DatabaseStatus:
        return DatabaseStatus.PRESENT if tenant.database_name in self.existing else DatabaseStatus.ABSENT

    async def check_database_exists(self, tenant) -> bool:
        return tenant.database_name in self.existing


class StubMigrator:
    def __init__(self, error: Exception | None = None) -> None:
        self.error = error

    async def run_migrations(self, tenant) -> list[str]:
        if self.error is not None:
            raise self.error
        return ["0001_tenant_rbac"]

    async def needs_migration(self, tenant) -> bool:
        return False


class StubSeeder:
    async def run_seeders(self, tenant) -> SeedReport:
        return SeedReport(created={"permissions": 3})


@pytest.mark.asyncio
async def test_provision_runs_every_stage(sqlite_resolver, make_tenant) -> None:
    async with registry_lifespan(url_resolver=sqlite_resolver) as registry:
        service = TenancyService(
            registry, provisioner=StubProvisioner(), migrator=StubMigrator(), seeder=StubSeeder()
        )
        tenant = make_tenant()

        report = await service.provision_tenant(tenant)

        assert report.database_created is True
        assert report.migrations_applied == ["0001_tenant_rbac"]
        assert report.seed_report.total_created == 3
        assert report.duration_ms >= 0
        assert service.get_tenant_connection(tenant.database_name).is_open
        assert service.get_active_tenant_databases() == 1
        assert await service.check_database_exists(tenant) is True
        assert await service.probe_database(tenant) is DatabaseStatus.PRESENT
    assert counters_snapshot()["tenant_provisioned_total"] == 1
    assert operation_latency(60)["tenant_setup"]["failures"] == 0


@pytest.mark.asyncio
async def test_failed_stage_is_tagged_and_rerun_recovers(sqlite_resolver, make_tenant) -> None:
    async with registry_lifespan(url_resolver=sqlite_resolver) as registry:
        provisioner = StubProvisioner()
        failing = TenancyService(
            registry,
            provisioner=provisioner,
            migrator=StubMigrator(MigrationError("revision 0002 failed")),
            seeder=StubSeeder(),
        )
        tenant = make_tenant()

        with pytest.raises(MigrationError) as excinfo:
            await failing.provision_tenant(tenant)
        assert excinfo.value.stage == "migrations"
        assert counters_snapshot()["tenant_provisioning_failures_total.migrations"] == 1

        healthy = TenancyService(
            registry, provisioner=provisioner, migrator=StubMigrator(), seeder=StubSeeder()
        )
        report = await healthy.provision_tenant(tenant)
        assert report.database_created is False
        assert registry.get_active_tenant_databases() == 1


@pytest.mark.asyncio
async def test_transient_failure_is_retryable(sqlite_resolver, make_tenant) -> None:
    provisioner = StubProvisioner()
    provisioner.create_error = ConnectivityError("connection refused")
    async with registry_lifespan(url_resolver=sqlite_resolver) as registry:
        service = TenancyService(
            registry, provisioner=provisioner, migrator=StubMigrator(), seeder=StubSeeder()
        )
        with pytest.raises(ConnectivityError) as excinfo:
            await service.provision_tenant(make_tenant())
        assert excinfo.value.stage == "database_creation"
        assert excinfo.value.retryable is True
        assert registry.get_active_tenant_databases() == 0


@pytest.mark.asyncio
async def test_failed_drop_keeps_registry_entry(sqlite_resolver, make_tenant) -> None:
    async with registry_lifespan(url_resolver=sqlite_resolver) as registry:
        provisioner = StubProvisioner()
        service = TenancyService(
            registry, provisioner=provisioner, migrator=StubMigrator(), seeder=StubSeeder()
        )
        tenant = make_tenant()
        await service.provision_tenant(tenant)
        handle = service.get_tenant_connection(tenant.database_name)

        provisioner.drop_error = ProvisioningError("database is being accessed by other users")
        with pytest.raises(ProvisioningError):
            await service.deprovision_tenant(tenant)
        assert service.get_tenant_connection(tenant.database_name) is handle
        assert handle.is_open

        provisioner.drop_error = None
        assert await service.deprovision_tenant(tenant) is True
        assert handle.is_open is False
        assert service.get_active_tenant_databases() == 0
        assert await service.deprovision_tenant(tenant) is False


@pytest.mark.asyncio
async def test_end_to_end_against_sqlite(monkeypatch, sqlite_resolver, make_tenant) -> None:
    monkeypatch.setenv("TENANT_ADMIN_PASSWORD", "initial-password")
    get_settings.cache_clear()
    async with registry_lifespan(url_resolver=sqlite_resolver) as registry:
        service = TenancyService(
            registry,
            provisioner=StubProvisioner(),
            migrator=TenantSchemaMigrator(url_resolver=sqlite_resolver, schema_mode="migrate"),
            seeder=TenantDataSeeder(url_resolver=sqlite_resolver),
        )
        tenant = make_tenant()

        first = await service.provision_tenant(tenant)
        second = await service.provision_tenant(tenant)

        assert first.migrations_applied == ["0001_tenant_rbac", "0002_schools_users"]
        assert first.seed_report.created["admin_users"] == 1
        assert second.database_created is False
        assert second.migrations_applied == []
        assert second.seed_report.total_created == 0
        assert await service.needs_migration(tenant) is False

        async with service.get_tenant_connection(tenant.database_name).session() as session:
            assert (await session.execute(select(func.count()).select_from(User))).scalar_one() == 1
