from __future__ import annotations


class TenancyError(Exception):
    """Base error for tenant provisioning and connection lifecycle."""

    # Callers use this flag to decide whether re-running the whole operation is safe.
    retryable = False

    def __init__(self, message: str = "", *, stage: str | None = None) -> None:
        super().__init__(message)
        self.stage = stage


class DatabaseAlreadyExistsError(TenancyError):
    """Target database already exists; informational, callers treat it as success."""


class NotFoundError(TenancyError):
    """Requested entity does not exist and must not be created implicitly."""


class ConnectionNotFoundError(NotFoundError):
    """No registry entry for the database; provision before use."""


class TenantNotFoundError(NotFoundError):
    """Tenant record missing from the master database."""


class ProvisioningError(TenancyError):
    """Create/drop failed for a reason other than existence state."""


class MigrationError(TenancyError):
    """A tenant schema migration failed; earlier revisions stay applied."""


class SeedingError(TenancyError):
    """Baseline data seeding failed for a tenant database."""


class ConnectivityError(TenancyError):
    """Network or timeout failure talking to the database server."""

    retryable = True


class RegistryClosedError(TenancyError):
    """Connection registry has been shut down and accepts no new entries."""
