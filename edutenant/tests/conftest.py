from __future__ import annotations

from pathlib import Path
from typing import Callable

import pytest
from sqlalchemy.engine import URL, make_url

from edutenant.core.config import get_settings
from edutenant.domain.models import Tenant
from edutenant.services.telemetry import reset_telemetry


@pytest.fixture(autouse=True)
def reset_settings_and_telemetry() -> None:
    # Settings are cached per process; env overrides in one test must not leak into the next.
    get_settings.cache_clear()
    reset_telemetry()
    yield
    get_settings.cache_clear()


@pytest.fixture
def sqlite_resolver(tmp_path: Path) -> Callable[[str], URL]:
    # Each tenant database becomes its own SQLite file so tests need no server.
    def _resolve(database_name: str) -> URL:
        return make_url(f"sqlite+aiosqlite:///{tmp_path / database_name}.db")

    return _resolve


@pytest.fixture
def broken_resolver(tmp_path: Path) -> Callable[[str], URL]:
    # Parent directory never exists, so every connect attempt fails.
    def _resolve(database_name: str) -> URL:
        return make_url(f"sqlite+aiosqlite:///{tmp_path / 'missing' / database_name}.db")

    return _resolve


def _make_tenant(
    tenant_id: str = "abcd1234-0000-0000-0000-000000000000",
    name: str = "Greenfield Academy",
    database_name: str | None = "edu_tenant_greenfield_academy_abcd1234",
) -> Tenant:
    return Tenant(
        id=tenant_id,
        name=name,
        subdomain=name.lower().replace(" ", "-"),
        database_name=database_name,
    )


@pytest.fixture
def make_tenant() -> Callable[..., Tenant]:
    return _make_tenant
