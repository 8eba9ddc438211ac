from __future__ import annotations

from dataclasses import dataclass, field
import logging
import time
from typing import Awaitable, TypeVar

from edutenant.core.errors import TenancyError
from edutenant.domain.models import Tenant
from edutenant.services.migrator import TenantSchemaMigrator
from edutenant.services.provisioner import DatabaseStatus, TenantDatabaseProvisioner
from edutenant.services.registry import ConnectionRegistry, TenantConnection
from edutenant.services.seeder import SeedReport, TenantDataSeeder
from edutenant.services.telemetry import increment_counter, record_operation


logger = logging.getLogger(__name__)

T = TypeVar("T")

STAGE_DATABASE = "database_creation"
STAGE_CONNECTION = "connection"
STAGE_MIGRATIONS = "migrations"
STAGE_SEEDING = "seeding"


@dataclass
class ProvisioningReport:
    tenant_id: str
    database_name: str
    database_created: bool = False
    migrations_applied: list[str] = field(default_factory=list)
    seed_report: SeedReport = field(default_factory=SeedReport)
    duration_ms: float = 0.0


class TenancyService:
    """Entry point for tenant database lifecycle used by onboarding and offboarding workflows."""

    def __init__(
        self,
        registry: ConnectionRegistry,
        *,
        provisioner: TenantDatabaseProvisioner | None = None,
        migrator: TenantSchemaMigrator | None = None,
        seeder: TenantDataSeeder | None = None,
    ) -> None:
        self.registry = registry
        self.provisioner = provisioner or TenantDatabaseProvisioner()
        self.migrator = migrator or TenantSchemaMigrator()
        self.seeder = seeder or TenantDataSeeder()

    async def _stage(self, stage: str, tenant: Tenant, call: Awaitable[T]) -> T:
        # Tag failures with the stage so the approval workflow can report where setup stopped.
        try:
            return await call
        except TenancyError as exc:
            exc.stage = exc.stage or stage
            increment_counter(f"tenant_provisioning_failures_total.{stage}")
            logger.error(
                "tenant_setup_failed tenant=%s stage=%s retryable=%s error=%s",
                tenant.id,
                stage,
                exc.retryable,
                exc,
            )
            raise

    async def provision_tenant(self, tenant: Tenant) -> ProvisioningReport:
        """Create database, register connection, migrate, seed. Safe to re-run after any failure."""
        start = time.monotonic()
        report = ProvisioningReport(tenant_id=tenant.id, database_name=tenant.database_name or "")
        logger.info("tenant_setup_started tenant=%s database=%s", tenant.id, tenant.database_name)
        success = False
        try:
            report.database_created = await self._stage(
                STAGE_DATABASE, tenant, self.provisioner.create_tenant_database(tenant)
            )
            await self._stage(STAGE_CONNECTION, tenant, self.registry.create_tenant_database(tenant))
            report.migrations_applied = await self._stage(
                STAGE_MIGRATIONS, tenant, self.migrator.run_migrations(tenant)
            )
            report.seed_report = await self._stage(STAGE_SEEDING, tenant, self.seeder.run_seeders(tenant))
            success = True
        finally:
            report.duration_ms = (time.monotonic() - start) * 1000.0
            record_operation(operation="tenant_setup", latency_ms=report.duration_ms, success=success)
        increment_counter("tenant_provisioned_total")
        logger.info(
            "tenant_setup_completed tenant=%s database=%s created=%s migrations=%s seeded=%s duration_ms=%.1f",
            tenant.id,
            report.database_name,
            report.database_created,
            len(report.migrations_applied),
            report.seed_report.total_created,
            report.duration_ms,
        )
        return report

    def get_tenant_connection(self, database_name: str) -> TenantConnection:
        return self.registry.get_tenant_data_source(database_name)

    async def deprovision_tenant(self, tenant: Tenant) -> bool:
        # Drop first: a failed drop must leave the registry entry in place.
        dropped = await self.provisioner.drop_tenant_database(tenant)
        if tenant.database_name:
            await self.registry.close_tenant_database(tenant.database_name)
        increment_counter("tenant_deprovisioned_total")
        logger.info("tenant_deprovisioned tenant=%s database=%s dropped=%s", tenant.id, tenant.database_name, dropped)
        return dropped

    def get_active_tenant_databases(self) -> int:
        return self.registry.get_active_tenant_databases()

    async def check_database_exists(self, tenant: Tenant) -> bool:
        return await self.provisioner.check_database_exists(tenant)

    async def probe_database(self, tenant: Tenant) -> DatabaseStatus:
        return await self.provisioner.probe_database(tenant)

    async def needs_migration(self, tenant: Tenant) -> bool:
        return await self.migrator.needs_migration(tenant)
