from __future__ import annotations

from alembic import context

from edutenant.domain.tenant_models import TenantBase


config = context.config
target_metadata = TenantBase.metadata


def run_migrations_online() -> None:
    # Tenant migrations only run programmatically against a connection bound by the migrator.
    connection = config.attributes.get("connection")
    if connection is None:
        raise RuntimeError("Tenant migrations require a connection in config.attributes['connection']")
    context.configure(
        connection=connection,
        target_metadata=target_metadata,
        # One transaction per revision: a failure keeps earlier revisions applied.
        transaction_per_migration=True,
    )
    with context.begin_transaction():
        context.run_migrations()


if context.is_offline_mode():
    raise RuntimeError("Offline SQL generation is not supported for tenant migrations")
run_migrations_online()
