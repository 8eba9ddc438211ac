from __future__ import annotations

import re

from edutenant.core.config import (
    DATABASE_ID_PART_LENGTH,
    DATABASE_NAME_PART_LENGTH,
    MAX_DATABASE_NAME_LENGTH,
    get_settings,
)


_UNSAFE_CHARS = re.compile(r"[^a-z0-9]")
# Unquoted PostgreSQL identifiers: lowercase letter or underscore first, then letters, digits, underscores.
_IDENTIFIER = re.compile(r"^[a-z_][a-z0-9_]*$")


def _sanitize(value: str) -> str:
    return _UNSAFE_CHARS.sub("_", value.lower())


def is_valid_database_name(name: str) -> bool:
    return bool(name) and len(name) <= MAX_DATABASE_NAME_LENGTH and bool(_IDENTIFIER.match(name))


def generate_database_name(tenant_name: str, tenant_id: str, *, prefix: str | None = None) -> str:
    """Derive the physical database name for a tenant.

    The name part is lower-cased, every character outside ``[a-z0-9]`` becomes
    ``_`` and the result is cut to 20 characters. The first 8 characters of the
    tenant id follow after an underscore, and the environment prefix goes in
    front. The same inputs always give the same name.
    """
    resolved_prefix = get_settings().tenant_db_name_prefix if prefix is None else prefix
    if resolved_prefix and not _IDENTIFIER.match(resolved_prefix):
        raise ValueError(f"Database name prefix is not identifier-safe: {resolved_prefix!r}")
    if not tenant_id:
        raise ValueError("Tenant id is required to derive a database name")
    clean_name = _sanitize(tenant_name)[:DATABASE_NAME_PART_LENGTH]
    short_id = _sanitize(tenant_id)[:DATABASE_ID_PART_LENGTH]
    name = f"{resolved_prefix}{clean_name}_{short_id}"
    if not is_valid_database_name(name):
        raise ValueError(f"Derived database name is not a legal identifier: {name!r}")
    return name
