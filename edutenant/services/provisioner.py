from __future__ import annotations

from enum import Enum
import logging
import time

from edutenant.core.errors import DatabaseAlreadyExistsError, ProvisioningError, TenancyError
from edutenant.domain.models import Tenant
from edutenant.services.admin_db import AdminDatabaseClient
from edutenant.services.locks import KeyedLock
from edutenant.services.telemetry import increment_counter, record_operation


logger = logging.getLogger(__name__)


class DatabaseStatus(str, Enum):
    PRESENT = "present"
    ABSENT = "absent"
    # The administrative probe itself failed; existence is not known.
    UNKNOWN = "unknown"


def require_database_name(tenant: Tenant) -> str:
    if not tenant.database_name:
        raise ProvisioningError(f"Tenant {tenant.id} has no database name assigned")
    return tenant.database_name


class TenantDatabaseProvisioner:
    """Create, drop and probe the physical database of a tenant.

    Holds no connection state. Create and terminate+drop for the same database
    name are serialized in-process; the existence check at the start of each
    call is what makes a retry after a timeout or partial failure safe.
    """

    def __init__(self, admin_client: AdminDatabaseClient | None = None) -> None:
        self._admin = admin_client or AdminDatabaseClient()
        self._locks = KeyedLock()

    async def create_tenant_database(self, tenant: Tenant) -> bool:
        database_name = require_database_name(tenant)
        logger.info("tenant_database_create_requested tenant=%s database=%s", tenant.id, database_name)
        start = time.monotonic()
        success = False
        try:
            async with self._locks.hold(database_name):
                if await self._admin.exists(database_name):
                    logger.warning(
                        "tenant_database_already_exists tenant=%s database=%s", tenant.id, database_name
                    )
                    success = True
                    return False
                try:
                    await self._admin.create(database_name)
                except DatabaseAlreadyExistsError:
                    # Another process won the race between our check and create.
                    logger.warning(
                        "tenant_database_created_concurrently tenant=%s database=%s", tenant.id, database_name
                    )
                    success = True
                    return False
            increment_counter("tenant_databases_created_total")
            logger.info("tenant_database_created tenant=%s database=%s", tenant.id, database_name)
            success = True
            return True
        except TenancyError as exc:
            logger.error(
                "tenant_database_create_failed tenant=%s database=%s error=%s", tenant.id, database_name, exc
            )
            raise
        finally:
            record_operation(
                operation="tenant_database_create",
                latency_ms=(time.monotonic() - start) * 1000.0,
                success=success,
            )

    async def drop_tenant_database(self, tenant: Tenant) -> bool:
        database_name = require_database_name(tenant)
        logger.info("tenant_database_drop_requested tenant=%s database=%s", tenant.id, database_name)
        start = time.monotonic()
        success = False
        try:
            # Terminate and drop form one critical section so no new session slips in between.
            async with self._locks.hold(database_name):
                if not await self._admin.exists(database_name):
                    logger.warning("tenant_database_missing tenant=%s database=%s", tenant.id, database_name)
                    success = True
                    return False
                await self._admin.terminate_and_drop(database_name)
            increment_counter("tenant_databases_dropped_total")
            logger.info("tenant_database_dropped tenant=%s database=%s", tenant.id, database_name)
            success = True
            return True
        except TenancyError as exc:
            logger.error(
                "tenant_database_drop_failed tenant=%s database=%s error=%s", tenant.id, database_name, exc
            )
            raise
        finally:
            record_operation(
                operation="tenant_database_drop",
                latency_ms=(time.monotonic() - start) * 1000.0,
                success=success,
            )

    async def probe_database(self, tenant: Tenant) -> DatabaseStatus:
        # Health probe: report UNKNOWN instead of guessing when the admin connection is broken.
        try:
            database_name = require_database_name(tenant)
            exists = await self._admin.exists(database_name)
        except TenancyError as exc:
            logger.error("tenant_database_probe_failed tenant=%s error=%s", tenant.id, exc)
            return DatabaseStatus.UNKNOWN
        return DatabaseStatus.PRESENT if exists else DatabaseStatus.ABSENT

    async def check_database_exists(self, tenant: Tenant) -> bool:
        return await self.probe_database(tenant) is DatabaseStatus.PRESENT
