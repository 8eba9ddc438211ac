from __future__ import annotations

import asyncio

import pytest

from edutenant.core.errors import ConnectivityError, DatabaseAlreadyExistsError, ProvisioningError
from edutenant.services.provisioner import DatabaseStatus, TenantDatabaseProvisioner
from edutenant.services.telemetry import counters_snapshot


class FakeAdmin:
    """In-memory stand-in for the administrative database."""

    def __init__(self) -> None:
        self.databases: set[str] = set()
        self.calls: list[tuple[str, str]] = []
        self.exists_error: Exception | None = None
        self.drop_error: Exception | None = None
        # Simulate another process creating the database between our check and create.
        self.lose_create_race = False

    async def exists(self, database_name: str) -> bool:
        self.calls.append(("exists", database_name))
        await asyncio.sleep(0)
        if self.exists_error is not None:
            raise self.exists_error
        return database_name in self.databases

    async def create(self, database_name: str) -> None:
        self.calls.append(("create", database_name))
        await asyncio.sleep(0)
        if self.lose_create_race or database_name in self.databases:
            self.databases.add(database_name)
            raise DatabaseAlreadyExistsError(f"Database {database_name} already exists")
        self.databases.add(database_name)

    async def terminate_and_drop(self, database_name: str) -> int:
        self.calls.append(("terminate_and_drop", database_name))
        await asyncio.sleep(0)
        if self.drop_error is not None:
            raise self.drop_error
        self.databases.discard(database_name)
        return 1


@pytest.mark.asyncio
async def test_create_is_idempotent(make_tenant) -> None:
    admin = FakeAdmin()
    provisioner = TenantDatabaseProvisioner(admin)
    tenant = make_tenant()

    assert await provisioner.create_tenant_database(tenant) is True
    assert await provisioner.create_tenant_database(tenant) is False

    assert admin.databases == {tenant.database_name}
    assert [call for call, _ in admin.calls] == ["exists", "create", "exists"]
    assert counters_snapshot()["tenant_databases_created_total"] == 1


@pytest.mark.asyncio
async def test_concurrent_creates_issue_a_single_create(make_tenant) -> None:
    admin = FakeAdmin()
    provisioner = TenantDatabaseProvisioner(admin)
    tenant = make_tenant()

    results = await asyncio.gather(*(provisioner.create_tenant_database(tenant) for _ in range(8)))

    assert results.count(True) == 1
    assert sum(1 for call, _ in admin.calls if call == "create") == 1


@pytest.mark.asyncio
async def test_losing_the_create_race_counts_as_success(make_tenant) -> None:
    admin = FakeAdmin()
    admin.lose_create_race = True
    provisioner = TenantDatabaseProvisioner(admin)

    assert await provisioner.create_tenant_database(make_tenant()) is False


@pytest.mark.asyncio
async def test_create_propagates_probe_failures(make_tenant) -> None:
    # A broken admin connection must never be mistaken for "database missing".
    admin = FakeAdmin()
    admin.exists_error = ConnectivityError("connection refused")
    provisioner = TenantDatabaseProvisioner(admin)

    with pytest.raises(ConnectivityError):
        await provisioner.create_tenant_database(make_tenant())
    assert ("create", make_tenant().database_name) not in admin.calls


@pytest.mark.asyncio
async def test_drop_is_idempotent(make_tenant) -> None:
    admin = FakeAdmin()
    tenant = make_tenant()
    admin.databases.add(tenant.database_name)
    provisioner = TenantDatabaseProvisioner(admin)

    assert await provisioner.drop_tenant_database(tenant) is True
    assert await provisioner.drop_tenant_database(tenant) is False

    assert admin.databases == set()
    assert [call for call, _ in admin.calls] == ["exists", "terminate_and_drop", "exists"]


@pytest.mark.asyncio
async def test_failed_drop_propagates(make_tenant) -> None:
    admin = FakeAdmin()
    tenant = make_tenant()
    admin.databases.add(tenant.database_name)
    admin.drop_error = ProvisioningError("database is being accessed by other users")
    provisioner = TenantDatabaseProvisioner(admin)

    with pytest.raises(ProvisioningError):
        await provisioner.drop_tenant_database(tenant)
    assert tenant.database_name in admin.databases


@pytest.mark.asyncio
async def test_probe_reports_unknown_when_admin_connection_fails(make_tenant) -> None:
    admin = FakeAdmin()
    provisioner = TenantDatabaseProvisioner(admin)
    tenant = make_tenant()

    assert await provisioner.probe_database(tenant) is DatabaseStatus.ABSENT
    admin.databases.add(tenant.database_name)
    assert await provisioner.probe_database(tenant) is DatabaseStatus.PRESENT
    assert await provisioner.check_database_exists(tenant) is True

    admin.exists_error = ConnectivityError("timeout")
    assert await provisioner.probe_database(tenant) is DatabaseStatus.UNKNOWN
    assert await provisioner.check_database_exists(tenant) is False


@pytest.mark.asyncio
async def test_tenant_without_database_name_is_rejected(make_tenant) -> None:
    admin = FakeAdmin()
    provisioner = TenantDatabaseProvisioner(admin)
    tenant = make_tenant(database_name=None)

    with pytest.raises(ProvisioningError):
        await provisioner.create_tenant_database(tenant)
    assert admin.calls == []
    assert await provisioner.probe_database(tenant) is DatabaseStatus.UNKNOWN
