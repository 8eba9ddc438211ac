from __future__ import annotations

import argparse
import asyncio
import sys

from edutenant.core.logging import configure_logging
from edutenant.persistence.db import SessionLocal
from edutenant.persistence.repos import tenants as tenants_repo
from edutenant.services.provisioning import TenancyService
from edutenant.services.registry import registry_lifespan
from edutenant.services.telemetry import operation_latency


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Create, migrate and seed the database of a tenant")
    parser.add_argument("--tenant", required=True, help="Tenant id in the master database")
    return parser


async def _provision(args: argparse.Namespace) -> int:
    async with SessionLocal() as session:
        tenant = await tenants_repo.require_tenant(session, args.tenant)
        # Persist the name before any physical work so a retry targets the same database.
        await tenants_repo.assign_database_name(session, tenant)
        await session.commit()

    async with registry_lifespan() as registry:
        service = TenancyService(registry)
        report = await service.provision_tenant(tenant)

    print("Tenant provisioned:")
    print(f"  tenant_id: {report.tenant_id}")
    print(f"  database: {report.database_name}")
    print(f"  database_created: {report.database_created}")
    print(f"  migrations_applied: {', '.join(report.migrations_applied) or 'none'}")
    for step, created in report.seed_report.created.items():
        print(f"  seeded.{step}: {created}")
    print(f"  duration_ms: {report.duration_ms:.1f}")
    # Per-stage timings recorded in this process during the run.
    for operation, stats in sorted(operation_latency(3600).items()):
        print(f"  {operation}_ms: {stats['max']:.1f}")
    return 0


def main() -> int:
    configure_logging()
    parser = _build_parser()
    args = parser.parse_args()
    try:
        return asyncio.run(_provision(args))
    except Exception as exc:  # noqa: BLE001 - surface provisioning failures clearly
        stage = getattr(exc, "stage", None)
        retryable = getattr(exc, "retryable", False)
        print(f"provision_tenant failed (stage={stage}, retryable={retryable}): {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
