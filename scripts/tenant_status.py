from __future__ import annotations

import argparse
import asyncio
import json
import sys
from typing import Any

from edutenant.core.logging import configure_logging
from edutenant.domain.models import Tenant
from edutenant.persistence.db import SessionLocal
from edutenant.persistence.repos import tenants as tenants_repo
from edutenant.services.migrator import TenantSchemaMigrator
from edutenant.services.provisioner import DatabaseStatus, TenantDatabaseProvisioner


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Report database and schema state for tenants")
    parser.add_argument("--tenant", default=None, help="Tenant id; defaults to every active tenant")
    parser.add_argument("--json", action="store_true", help="Emit machine-readable output")
    return parser


async def _status_for(
    tenant: Tenant,
    provisioner: TenantDatabaseProvisioner,
    migrator: TenantSchemaMigrator,
) -> dict[str, Any]:
    entry: dict[str, Any] = {
        "tenant_id": tenant.id,
        "name": tenant.name,
        "database": tenant.database_name,
        "status": None,
        "needs_migration": None,
    }
    if not tenant.database_name:
        entry["status"] = "unassigned"
        return entry
    status = await provisioner.probe_database(tenant)
    entry["status"] = status.value
    # Only a present database has a schema worth inspecting.
    if status is DatabaseStatus.PRESENT:
        entry["needs_migration"] = await migrator.needs_migration(tenant)
    return entry


async def _status(args: argparse.Namespace) -> int:
    async with SessionLocal() as session:
        if args.tenant:
            tenants = [await tenants_repo.require_tenant(session, args.tenant)]
        else:
            tenants = await tenants_repo.list_active_tenants(session)

    provisioner = TenantDatabaseProvisioner()
    migrator = TenantSchemaMigrator()
    entries = [await _status_for(tenant, provisioner, migrator) for tenant in tenants]

    if args.json:
        print(json.dumps(entries, indent=2))
    else:
        for entry in entries:
            print(
                f"{entry['tenant_id']}  {entry['database'] or '-'}  status={entry['status']}"
                f"  needs_migration={entry['needs_migration']}"
            )
    # Non-zero exit lets cron checks alert on broken admin connectivity.
    if any(entry["status"] == DatabaseStatus.UNKNOWN.value for entry in entries):
        return 3
    return 0


def main() -> int:
    configure_logging()
    parser = _build_parser()
    args = parser.parse_args()
    try:
        return asyncio.run(_status(args))
    except Exception as exc:  # noqa: BLE001 - surface lookup failures clearly
        print(f"tenant_status failed: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
