from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from edutenant.core.errors import TenantNotFoundError
from edutenant.domain.models import Tenant
from edutenant.services.naming import generate_database_name


async def get_tenant(session: AsyncSession, tenant_id: str) -> Tenant | None:
    result = await session.execute(select(Tenant).where(Tenant.id == tenant_id))
    return result.scalar_one_or_none()


async def get_tenant_by_subdomain(session: AsyncSession, subdomain: str) -> Tenant | None:
    result = await session.execute(select(Tenant).where(Tenant.subdomain == subdomain.strip().lower()))
    return result.scalar_one_or_none()


async def require_tenant(session: AsyncSession, tenant_id: str) -> Tenant:
    tenant = await get_tenant(session, tenant_id)
    if tenant is None:
        raise TenantNotFoundError(f"Tenant {tenant_id} not found")
    return tenant


async def list_active_tenants(session: AsyncSession) -> list[Tenant]:
    # Stable ordering keeps status output deterministic.
    result = await session.execute(
        select(Tenant).where(Tenant.is_active.is_(True)).order_by(Tenant.created_at, Tenant.id)
    )
    return list(result.scalars().all())


async def create_tenant(
    session: AsyncSession,
    *,
    name: str,
    subdomain: str,
    domain: str | None = None,
    description: str | None = None,
    settings: dict | None = None,
) -> Tenant:
    tenant = Tenant(
        name=name,
        subdomain=subdomain.strip().lower(),
        domain=domain,
        description=description,
        settings=settings,
    )
    session.add(tenant)
    # Flush so the generated id is available for database naming.
    await session.flush()
    return tenant


async def assign_database_name(session: AsyncSession, tenant: Tenant, *, prefix: str | None = None) -> str:
    """Populate the tenant's database name once; an existing value is never changed.

    Renamed tenants keep the database they were provisioned with, so the
    stored name may no longer match what the current display name derives.
    """
    if tenant.database_name:
        return tenant.database_name
    tenant.database_name = generate_database_name(tenant.name, tenant.id, prefix=prefix)
    await session.flush()
    return tenant.database_name
