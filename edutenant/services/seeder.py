from __future__ import annotations

from dataclasses import dataclass, field
import logging
import time
from typing import Awaitable, Callable

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from edutenant.core.config import Settings, get_settings
from edutenant.core.errors import ConnectivityError, SeedingError, TenancyError
from edutenant.domain.models import Tenant
from edutenant.domain.tenant_models import Permission, Role, School, User
from edutenant.persistence.db import EngineFactory, UrlResolver, throwaway_engine
from edutenant.services.admin_db import is_connectivity_error
from edutenant.services.credentials import generate_password, hash_password
from edutenant.services.provisioner import require_database_name
from edutenant.services.telemetry import increment_counter, record_operation


logger = logging.getLogger(__name__)

SUPER_ADMIN_ROLE = "Super Admin"

# (name, description); resource and action are derived from the dotted name.
PERMISSIONS: tuple[tuple[str, str], ...] = (
    ("users.create", "Create users"),
    ("users.read", "Read users"),
    ("users.update", "Update users"),
    ("users.delete", "Delete users"),
    ("schools.create", "Create schools"),
    ("schools.read", "Read schools"),
    ("schools.update", "Update schools"),
    ("schools.delete", "Delete schools"),
    ("roles.create", "Create roles"),
    ("roles.read", "Read roles"),
    ("roles.update", "Update roles"),
    ("roles.delete", "Delete roles"),
    ("students.create", "Create students"),
    ("students.read", "Read students"),
    ("students.update", "Update students"),
    ("students.delete", "Delete students"),
    ("academics.create", "Create academic records"),
    ("academics.read", "Read academic records"),
    ("academics.update", "Update academic records"),
    ("academics.delete", "Delete academic records"),
    ("financials.create", "Create financial records"),
    ("financials.read", "Read financial records"),
    ("financials.update", "Update financial records"),
    ("financials.delete", "Delete financial records"),
    ("communications.create", "Create communications"),
    ("communications.read", "Read communications"),
    ("communications.update", "Update communications"),
    ("communications.delete", "Delete communications"),
    ("system.admin", "System administration"),
    ("system.settings", "System settings management"),
    ("system.reports", "Generate system reports"),
)


@dataclass(frozen=True)
class RoleDefinition:
    name: str
    description: str
    grants: Callable[[str], bool]


ROLES: tuple[RoleDefinition, ...] = (
    RoleDefinition(SUPER_ADMIN_ROLE, "Full system access with all permissions", lambda name: True),
    RoleDefinition(
        "School Admin",
        "School administration with limited system access",
        lambda name: not name.startswith(("system.", "roles.")),
    ),
    RoleDefinition(
        "Teacher",
        "Teacher with access to student and academic management",
        lambda name: name.startswith(("students.", "academics.", "communications.")),
    ),
    RoleDefinition(
        "Student",
        "Student with limited read access",
        lambda name: name in {"students.read", "academics.read"},
    ),
)


@dataclass(frozen=True)
class SeedContext:
    tenant_id: str
    settings: Settings


@dataclass
class SeedReport:
    # Rows created per step; a re-run against a seeded database reports zeros.
    created: dict[str, int] = field(default_factory=dict)

    @property
    def total_created(self) -> int:
        return sum(self.created.values())


SeedStep = Callable[[AsyncSession, SeedContext], Awaitable[int]]


async def seed_permissions(session: AsyncSession, ctx: SeedContext) -> int:
    existing = set((await session.execute(select(Permission.name))).scalars().all())
    created = 0
    for name, description in PERMISSIONS:
        if name in existing:
            continue
        resource, _, action = name.partition(".")
        session.add(Permission(name=name, description=description, resource=resource, action=action))
        created += 1
    return created


async def seed_roles(session: AsyncSession, ctx: SeedContext) -> int:
    permissions = list((await session.execute(select(Permission))).scalars().all())
    created = 0
    for definition in ROLES:
        existing = (
            await session.execute(
                select(Role).where(Role.name == definition.name, Role.tenant_id == ctx.tenant_id)
            )
        ).scalar_one_or_none()
        if existing is not None:
            continue
        role = Role(name=definition.name, description=definition.description, tenant_id=ctx.tenant_id)
        role.permissions = [permission for permission in permissions if definition.grants(permission.name)]
        session.add(role)
        created += 1
    return created


async def seed_default_school(session: AsyncSession, ctx: SeedContext) -> int:
    code = ctx.settings.tenant_default_school_code
    existing = (await session.execute(select(School).where(School.code == code))).scalar_one_or_none()
    if existing is not None:
        return 0
    session.add(School(name=ctx.settings.tenant_default_school_name, code=code, tenant_id=ctx.tenant_id))
    return 1


async def seed_default_admin(session: AsyncSession, ctx: SeedContext) -> int:
    email = ctx.settings.tenant_admin_email.strip().lower()
    existing = (
        await session.execute(select(User).where(User.email == email, User.tenant_id == ctx.tenant_id))
    ).scalar_one_or_none()
    if existing is not None:
        return 0
    role = (
        await session.execute(
            select(Role).where(Role.name == SUPER_ADMIN_ROLE, Role.tenant_id == ctx.tenant_id)
        )
    ).scalar_one_or_none()
    if role is None:
        logger.warning("tenant_seed_admin_skipped tenant=%s reason=super_admin_role_missing", ctx.tenant_id)
        return 0
    school = (
        await session.execute(select(School).where(School.code == ctx.settings.tenant_default_school_code))
    ).scalar_one_or_none()
    password = ctx.settings.tenant_admin_password
    if not password:
        password = generate_password()
        logger.warning(
            "tenant_seed_admin_password_generated tenant=%s email=%s; reset required before first login",
            ctx.tenant_id,
            email,
        )
    session.add(
        User(
            email=email,
            first_name="System",
            last_name="Administrator",
            password_hash=hash_password(password),
            user_type="admin",
            status="active",
            tenant_id=ctx.tenant_id,
            school_id=school.id if school is not None else None,
            roles=[role],
        )
    )
    return 1


# Fixed order: roles need permissions, the administrator needs the Super Admin role and the school.
SEED_STEPS: tuple[tuple[str, SeedStep], ...] = (
    ("permissions", seed_permissions),
    ("roles", seed_roles),
    ("schools", seed_default_school),
    ("admin_users", seed_default_admin),
)


class TenantDataSeeder:
    """Populate baseline reference data in a tenant database.

    Each step looks entities up by natural key before inserting and commits on
    its own, so the whole sequence can be re-run after a partial failure.
    """

    def __init__(
        self,
        *,
        url_resolver: UrlResolver | None = None,
        engine_factory: EngineFactory | None = None,
        steps: tuple[tuple[str, SeedStep], ...] = SEED_STEPS,
    ) -> None:
        self._url_resolver = url_resolver
        self._engine_factory = engine_factory
        self._steps = steps

    async def run_seeders(self, tenant: Tenant) -> SeedReport:
        database_name = require_database_name(tenant)
        ctx = SeedContext(tenant_id=tenant.id, settings=get_settings())
        report = SeedReport()
        logger.info("tenant_seeding_started tenant=%s database=%s", tenant.id, database_name)
        start = time.monotonic()
        current_step = "connect"
        try:
            async with throwaway_engine(
                database_name,
                url_resolver=self._url_resolver,
                engine_factory=self._engine_factory,
            ) as engine:
                session_factory = async_sessionmaker(engine, expire_on_commit=False)
                for name, step in self._steps:
                    current_step = name
                    async with session_factory() as session:
                        report.created[name] = await step(session, ctx)
                        await session.commit()
                    if report.created[name]:
                        logger.info(
                            "tenant_seed_step_completed tenant=%s step=%s created=%s",
                            tenant.id,
                            name,
                            report.created[name],
                        )
        except Exception as exc:  # noqa: BLE001 - any step failure surfaces as one seeding error
            record_operation(
                operation="tenant_seeding",
                latency_ms=(time.monotonic() - start) * 1000.0,
                success=False,
            )
            logger.error(
                "tenant_seeding_failed tenant=%s database=%s step=%s error=%s",
                tenant.id,
                database_name,
                current_step,
                exc,
            )
            if isinstance(exc, TenancyError):
                raise
            if is_connectivity_error(exc):
                raise ConnectivityError(
                    f"Seeding could not reach {database_name}: {exc}", stage="seeding"
                ) from exc
            raise SeedingError(
                f"Seeding step {current_step} failed for {database_name}: {exc}", stage="seeding"
            ) from exc
        record_operation(
            operation="tenant_seeding",
            latency_ms=(time.monotonic() - start) * 1000.0,
            success=True,
        )
        increment_counter("tenant_seed_rows_created_total", report.total_created)
        logger.info(
            "tenant_seeding_completed tenant=%s database=%s created=%s",
            tenant.id,
            database_name,
            report.total_created,
        )
        return report
