"""tenants registry

Revision ID: 0001_tenants
Revises: 
Create Date: 2026-09-01 10:00:00.000000
"""
from __future__ import annotations

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = "0001_tenants"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "tenants",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("subdomain", sa.String(), nullable=False),
        sa.Column("domain", sa.String(), nullable=True),
        # Assigned once before provisioning; renaming a tenant never changes it.
        sa.Column("database_name", sa.String(), nullable=True),
        sa.Column("is_active", sa.Boolean(), server_default=sa.true(), nullable=False),
        sa.Column("settings", postgresql.JSONB(), nullable=True),
        sa.Column("modules", postgresql.JSONB(), nullable=True),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.UniqueConstraint("name", name="uq_tenants_name"),
        sa.UniqueConstraint("subdomain", name="uq_tenants_subdomain"),
        sa.UniqueConstraint("domain", name="uq_tenants_domain"),
        sa.UniqueConstraint("database_name", name="uq_tenants_database_name"),
    )
    op.create_index("ix_tenants_is_active", "tenants", ["is_active"])


def downgrade() -> None:
    op.drop_index("ix_tenants_is_active", table_name="tenants")
    op.drop_table("tenants")
