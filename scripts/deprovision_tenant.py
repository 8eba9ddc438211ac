from __future__ import annotations

import argparse
import asyncio
import sys

from edutenant.core.logging import configure_logging
from edutenant.persistence.db import SessionLocal
from edutenant.persistence.repos import tenants as tenants_repo
from edutenant.services.provisioning import TenancyService
from edutenant.services.registry import registry_lifespan


def _build_parser() -> argparse.ArgumentParser:
    # Dropping is irreversible; require the database name as confirmation.
    parser = argparse.ArgumentParser(description="Drop the database of an offboarded tenant")
    parser.add_argument("--tenant", required=True, help="Tenant id in the master database")
    parser.add_argument("--confirm", required=True, help="Database name being dropped")
    return parser


async def _deprovision(args: argparse.Namespace) -> int:
    async with SessionLocal() as session:
        tenant = await tenants_repo.require_tenant(session, args.tenant)
    if not tenant.database_name:
        print(f"Tenant {tenant.id} has no database assigned; nothing to drop")
        return 0
    if tenant.database_name != args.confirm:
        print(
            f"Confirmation mismatch: tenant database is {tenant.database_name}, got {args.confirm}",
            file=sys.stderr,
        )
        return 2

    async with registry_lifespan() as registry:
        dropped = await TenancyService(registry).deprovision_tenant(tenant)

    state = "dropped" if dropped else "already absent"
    print(f"Tenant {tenant.id} database {tenant.database_name}: {state}")
    return 0


def main() -> int:
    configure_logging()
    parser = _build_parser()
    args = parser.parse_args()
    try:
        return asyncio.run(_deprovision(args))
    except Exception as exc:  # noqa: BLE001 - surface drop failures clearly
        print(f"deprovision_tenant failed: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
