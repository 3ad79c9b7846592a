# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Store provisioning service.

This service drives a store through its lifecycle in the master database:
- Store creation (pending_database)
- Connecting a tenant database: credentials are sealed, the database is
  probed, migrated and seeded, and the store becomes provisioned
- Activation, demo mode, suspension and deactivation
- Credential rotation and deprovisioning
- Health checks

The provisioning flow:
1. pending_database -> provisioning (credentials stored, encrypted)
2. Probe the tenant database
3. Run tenant migrations, record them in the tenant_migrations ledger
4. Seed default store data
5. provisioning -> provisioned
On any failure in steps 2-4 the store returns to pending_database.

Suspension, deactivation, rotation and deprovisioning drop the store's cached
tenant pool so the next resolution sees the new state.

Example:
    >>> service = StoreProvisioningService(db, tenant_manager)
    >>> store = await service.create_store("acme", "Acme Outfitters")
    >>> store = await service.connect_database(store.id, credentials)
    >>> store = await service.activate(store.id)
"""

import logging
import re
from typing import Any, Awaitable, Callable

from sqlalchemy import select
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from src.infrastructure.database.migrations.runner import (
    AppliedMigration,
    MigrationError,
    get_migration_status,
    migration_version,
    run_tenant_migrations,
)
from src.infrastructure.database.models import (
    ConnectionStatus,
    DatabaseType,
    Store,
    StoreDatabase,
    StoreHostname,
    StoreStatus,
    TenantMigration,
    new_uuid,
)
from src.infrastructure.database.seeds import seed_tenant_database
from src.infrastructure.database.tenant_manager import (
    StoreNotFoundError,
    TenantDatabaseManager,
    TenantResolutionError,
)
from src.infrastructure.security import DatabaseCredentials
from src.utils.datetime import utc_now

logger = logging.getLogger(__name__)

SLUG_PATTERN = re.compile(r"^[a-z0-9](?:[a-z0-9-]{0,61}[a-z0-9])?$")

Migrator = Callable[..., Awaitable[list[AppliedMigration]]]
MigrationStatusReader = Callable[..., Awaitable[dict]]
Seeder = Callable[[AsyncSession, str], Awaitable[dict]]


def _normalize_hostnames(hostnames: list[str]) -> list[str]:
    """Lowercase and deduplicate hostnames, keeping their order."""
    normalized: list[str] = []
    for hostname in hostnames:
        value = hostname.strip().lower().rstrip(".")
        if not value:
            raise ValueError("Hostname must not be blank")
        if value not in normalized:
            normalized.append(value)
    return normalized


class StoreServiceError(Exception):
    """Base exception for store lifecycle errors."""

    pass


class StoreAlreadyExistsError(StoreServiceError):
    """Raised when creating a store with a slug that is taken."""

    pass


class HostnameInUseError(StoreServiceError):
    """Raised when a hostname is already routed to a store.

    Attributes:
        hostname: The conflicting hostname.
    """

    def __init__(self, hostname: str) -> None:
        super().__init__(f"Hostname '{hostname}' is already mapped to a store")
        self.hostname = hostname


class InvalidStatusTransitionError(StoreServiceError):
    """Raised when a lifecycle transition is not allowed.

    Attributes:
        store_id: Store concerned.
        current: Current status.
        target: Requested status.
    """

    def __init__(self, store_id: str, current: StoreStatus, target: StoreStatus) -> None:
        super().__init__(
            f"Store {store_id} cannot move from {current.value} to {target.value}"
        )
        self.store_id = store_id
        self.current = current
        self.target = target


class StoreProvisioningError(StoreServiceError):
    """Raised when connecting or migrating a tenant database fails.

    Attributes:
        store_id: Store concerned.
        reason: Short failure description.
    """

    def __init__(self, store_id: str, reason: str) -> None:
        super().__init__(f"Failed to provision store {store_id}: {reason}")
        self.store_id = store_id
        self.reason = reason


class StoreProvisioningService:
    """Service for store lifecycle management in the master database."""

    def __init__(
        self,
        db: AsyncSession,
        tenant_manager: TenantDatabaseManager,
        migrate: Migrator = run_tenant_migrations,
        read_migration_status: MigrationStatusReader = get_migration_status,
        seed: Seeder = seed_tenant_database,
    ) -> None:
        """Initialize the provisioning service.

        Args:
            db: Master database session.
            tenant_manager: Tenant resolver; its cache is invalidated on
                lifecycle changes.
            migrate: Applies tenant migrations to a database URL.
            read_migration_status: Reads migration status of a database URL.
            seed: Seeds a tenant session for a store.
        """
        self._db = db
        self._tenants = tenant_manager
        self._migrate = migrate
        self._read_migration_status = read_migration_status
        self._seed = seed

    # -------------------------------------------------------------------------
    # Creation
    # -------------------------------------------------------------------------

    async def create_store(
        self,
        slug: str,
        name: str | None = None,
        owner_id: str | None = None,
        hostnames: list[str] | None = None,
    ) -> Store:
        """Register a new store awaiting its database.

        Raises:
            ValueError: If the slug or a hostname is invalid.
            StoreAlreadyExistsError: If the slug is taken.
            HostnameInUseError: If a hostname is mapped to another store.
        """
        slug = slug.strip().lower()
        if not SLUG_PATTERN.match(slug):
            raise ValueError(f"Invalid store slug: {slug!r}")
        hostnames = _normalize_hostnames(hostnames or [])

        await self._check_available(slug, hostnames)

        store = Store(
            id=new_uuid(),
            slug=slug,
            name=name or "My Store",
            owner_id=owner_id,
            status=StoreStatus.PENDING_DATABASE.value,
        )
        self._db.add(store)
        for index, hostname in enumerate(hostnames):
            self._db.add(
                StoreHostname(
                    id=new_uuid(),
                    store_id=store.id,
                    hostname=hostname,
                    is_primary=index == 0,
                )
            )
        await self._commit_unique(slug, hostnames)

        logger.info("Created store %s (%s)", slug, store.id)
        return store

    async def add_hostname(
        self, store_id: str, hostname: str, is_primary: bool = False
    ) -> StoreHostname:
        """Route a hostname to a store.

        Raises:
            StoreNotFoundError: If the store does not exist.
            ValueError: If the hostname is blank.
            HostnameInUseError: If the hostname is already mapped.
        """
        store = await self._get_store(store_id)
        [hostname] = _normalize_hostnames([hostname])
        await self._check_available(None, [hostname])

        entry = StoreHostname(
            id=new_uuid(),
            store_id=store.id,
            hostname=hostname,
            is_primary=is_primary,
        )
        self._db.add(entry)
        await self._commit_unique(None, [hostname])
        logger.info("Mapped hostname %s to store %s", entry.hostname, store.id)
        return entry

    async def get_store(self, store_id: str) -> Store:
        """Get a store by id.

        Raises:
            StoreNotFoundError: If the store does not exist.
        """
        return await self._get_store(store_id)

    # -------------------------------------------------------------------------
    # Database connection
    # -------------------------------------------------------------------------

    async def connect_database(
        self, store_id: str, credentials: DatabaseCredentials
    ) -> Store:
        """Attach a tenant database to a store and bring it to provisioned.

        Raises:
            StoreNotFoundError: If the store does not exist.
            InvalidStatusTransitionError: If the store is not awaiting a database.
            EncryptionKeyError: If no encryption key is configured.
            StoreProvisioningError: If the database cannot be probed,
                migrated or seeded. The store is back in pending_database.
        """
        store = await self._get_store(store_id, for_update=True)
        self._transition(store, StoreStatus.PROVISIONING)

        blob = self._tenants.cipher.seal(store.id, credentials)
        database = await self._get_database(store.id)
        if database is None:
            database = StoreDatabase(id=new_uuid(), store_id=store.id)
            self._db.add(database)
        self._apply_credentials(database, blob, credentials)
        database.is_active = True
        database.revoked_at = None
        database.connection_status = ConnectionStatus.PENDING.value
        await self._db.commit()
        logger.info("Store %s is provisioning on %s", store.id, credentials.host)

        try:
            status = await self._tenants.probe(credentials)
            if status != ConnectionStatus.CONNECTED:
                raise StoreProvisioningError(
                    store.id, f"tenant database unreachable ({status.value})"
                )

            applied = await self._migrate(credentials.url())
            schema_version = await self._current_schema_version(credentials, applied)

            async with self._tenants.bootstrap_session(store.id, credentials) as session:
                await self._seed(session, store.id)
        except Exception as e:
            # Driver errors (asyncpg auth failures) are not always wrapped by SQLAlchemy.
            await self._db.rollback()
            await self._fail_provisioning(store.id, e)
            if isinstance(e, StoreProvisioningError):
                raise
            raise StoreProvisioningError(store.id, str(e)) from e

        now = utc_now()
        await self._record_migrations(store.id, applied)
        database.connection_status = ConnectionStatus.CONNECTED.value
        database.last_connection_test = now
        database.schema_version = schema_version
        if applied:
            database.last_migration_at = now
        self._transition(store, StoreStatus.PROVISIONED)
        store.provisioned_at = now
        await self._db.commit()
        await self._tenants.invalidate(store.id)

        logger.info(
            "Store %s provisioned (schema version %d, %d migrations applied)",
            store.id,
            schema_version,
            len(applied),
        )
        return store

    async def rotate_credentials(
        self, store_id: str, credentials: DatabaseCredentials, verify: bool = True
    ) -> StoreDatabase:
        """Replace a store's database credentials.

        Raises:
            StoreNotFoundError: If the store does not exist.
            StoreProvisioningError: If the store has no active database or
                the new credentials cannot connect.
        """
        store = await self._get_store(store_id, for_update=True)
        database = await self._get_database(store.id)
        if database is None or not database.is_active:
            raise StoreProvisioningError(store.id, "store has no active database")

        if verify:
            status = await self._tenants.probe(credentials)
            if status != ConnectionStatus.CONNECTED:
                raise StoreProvisioningError(
                    store.id, f"new credentials cannot connect ({status.value})"
                )

        now = utc_now()
        self._apply_credentials(
            database, self._tenants.cipher.seal(store.id, credentials), credentials
        )
        database.credentials_rotated_at = now
        if verify:
            database.connection_status = ConnectionStatus.CONNECTED.value
            database.last_connection_test = now
        await self._db.commit()
        await self._tenants.invalidate(store.id)

        logger.info("Rotated database credentials for store %s", store.id)
        return database

    async def deprovision(self, store_id: str) -> Store:
        """Revoke a store's database credentials and make it inactive.

        Raises:
            StoreNotFoundError: If the store does not exist.
            InvalidStatusTransitionError: If the store is already inactive.
        """
        store = await self._get_store(store_id, for_update=True)
        current = StoreStatus(store.status)
        if current == StoreStatus.INACTIVE:
            raise InvalidStatusTransitionError(store.id, current, StoreStatus.INACTIVE)

        database = await self._get_database(store.id)
        if database is not None:
            database.is_active = False
            database.revoked_at = utc_now()
        store.status = StoreStatus.INACTIVE.value
        await self._db.commit()
        await self._tenants.invalidate(store.id)

        logger.info("Deprovisioned store %s (was %s)", store.id, current.value)
        return store

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def activate(self, store_id: str) -> Store:
        """Make a store active."""
        store = await self._set_status(store_id, StoreStatus.ACTIVE)
        store.suspended_at = None
        await self._db.commit()
        return store

    async def set_demo(self, store_id: str) -> Store:
        """Put a store in demo mode."""
        store = await self._set_status(store_id, StoreStatus.DEMO)
        await self._db.commit()
        return store

    async def suspend(self, store_id: str, reason: str | None = None) -> Store:
        """Suspend a store; its tenant database stops being handed out."""
        store = await self._set_status(store_id, StoreStatus.SUSPENDED)
        store.suspended_at = utc_now()
        await self._db.commit()
        await self._tenants.invalidate(store.id)
        logger.info("Suspended store %s%s", store.id, f": {reason}" if reason else "")
        return store

    async def deactivate(self, store_id: str) -> Store:
        """Deactivate a store permanently."""
        store = await self._set_status(store_id, StoreStatus.INACTIVE)
        await self._db.commit()
        await self._tenants.invalidate(store.id)
        return store

    # -------------------------------------------------------------------------
    # Health
    # -------------------------------------------------------------------------

    async def check_health(self, store_id: str) -> dict[str, Any]:
        """Report a store's status, database connectivity and schema state.

        Raises:
            StoreNotFoundError: If the store does not exist.
        """
        store = await self._get_store(store_id)
        database = await self._get_database(store.id)
        report: dict[str, Any] = {
            "store_id": store.id,
            "slug": store.slug,
            "status": store.status,
            "usable": store.is_usable,
            "database": None,
            "connection": None,
            "migrations": None,
        }
        if database is not None:
            report["database"] = {
                "host": database.host,
                "port": database.port,
                "database_name": database.database_name,
                "is_active": database.is_active,
                "connection_status": database.connection_status,
                "last_connection_test": database.last_connection_test,
                "schema_version": database.schema_version,
                "credentials_rotated_at": database.credentials_rotated_at,
            }

        if not store.is_usable:
            return report

        try:
            result = await self._tenants.test_connection(store.id)
            report["connection"] = {
                "status": result.status.value,
                "latency_ms": result.latency_ms,
                "error": result.error,
            }
            if result.ok:
                report["migrations"] = await self._tenants.get_migration_status(store.id)
        except TenantResolutionError as e:
            report["connection"] = {"status": ConnectionStatus.FAILED.value, "error": e.kind}
        except SQLAlchemyError as e:
            logger.warning("Migration status unavailable for store %s: %s", store.id, e)

        return report

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    async def _check_available(self, slug: str | None, hostnames: list[str]) -> None:
        if slug is not None:
            existing = await self._db.execute(select(Store.id).where(Store.slug == slug))
            if existing.scalar_one_or_none() is not None:
                raise StoreAlreadyExistsError(f"Store with slug '{slug}' already exists")
        if hostnames:
            taken = await self._db.execute(
                select(StoreHostname.hostname)
                .where(StoreHostname.hostname.in_(hostnames))
                .limit(1)
            )
            hostname = taken.scalar_one_or_none()
            if hostname is not None:
                raise HostnameInUseError(hostname)

    async def _commit_unique(self, slug: str | None, hostnames: list[str]) -> None:
        """Commit, reporting a lost uniqueness race as a conflict."""
        try:
            await self._db.commit()
        except IntegrityError as e:
            await self._db.rollback()
            await self._check_available(slug, hostnames)
            if slug is None:
                raise HostnameInUseError(", ".join(hostnames)) from e
            raise StoreAlreadyExistsError(
                f"Store '{slug}' conflicts with an existing store"
            ) from e

    def _transition(self, store: Store, target: StoreStatus) -> None:
        if not store.can_transition_to(target):
            raise InvalidStatusTransitionError(store.id, StoreStatus(store.status), target)
        store.status = target.value

    async def _set_status(self, store_id: str, target: StoreStatus) -> Store:
        store = await self._get_store(store_id, for_update=True)
        previous = store.status
        self._transition(store, target)
        logger.info("Store %s: %s -> %s", store.id, previous, target.value)
        return store

    async def _get_store(self, store_id: str, for_update: bool = False) -> Store:
        stmt = select(Store).where(Store.id == store_id)
        if for_update:
            stmt = stmt.with_for_update()
        result = await self._db.execute(stmt)
        store = result.scalar_one_or_none()
        if store is None:
            raise StoreNotFoundError(store_id)
        return store

    async def _get_database(self, store_id: str) -> StoreDatabase | None:
        result = await self._db.execute(
            select(StoreDatabase).where(StoreDatabase.store_id == store_id)
        )
        return result.scalar_one_or_none()

    def _apply_credentials(
        self, database: StoreDatabase, blob: str, credentials: DatabaseCredentials
    ) -> None:
        database.database_type = DatabaseType.POSTGRESQL.value
        database.connection_string_encrypted = blob
        database.host = credentials.host
        database.port = credentials.port
        database.database_name = credentials.database

    async def _current_schema_version(
        self, credentials: DatabaseCredentials, applied: list[AppliedMigration]
    ) -> int:
        if applied:
            return applied[-1].version
        status = await self._read_migration_status(credentials.url(), target="tenant")
        return migration_version("tenant", status["current_version"])

    async def _record_migrations(self, store_id: str, applied: list[AppliedMigration]) -> None:
        for migration in applied:
            await self._upsert_ledger(
                store_id,
                migration.name,
                migration.version,
                success=True,
                execution_time_ms=migration.execution_time_ms,
            )

    async def _upsert_ledger(
        self,
        store_id: str,
        name: str,
        version: int,
        success: bool,
        execution_time_ms: int | None = None,
        error_message: str | None = None,
    ) -> None:
        values = {
            "success": success,
            "migration_version": version,
            "applied_at": utc_now(),
            "execution_time_ms": execution_time_ms,
            "error_message": error_message,
        }
        stmt = insert(TenantMigration).values(
            id=new_uuid(), store_id=store_id, migration_name=name, **values
        )
        await self._db.execute(
            stmt.on_conflict_do_update(
                index_elements=["store_id", "migration_name"], set_=values
            )
        )

    async def _fail_provisioning(self, store_id: str, error: Exception) -> None:
        store = await self._get_store(store_id, for_update=True)
        database = await self._get_database(store_id)
        self._transition(store, StoreStatus.PENDING_DATABASE)
        if database is not None:
            database.connection_status = ConnectionStatus.FAILED.value
            database.last_connection_test = utc_now()
        if isinstance(error, MigrationError):
            await self._upsert_ledger(
                store_id,
                error.revision,
                migration_version("tenant", error.revision),
                success=False,
                error_message=str(error.original_error),
            )
        await self._db.commit()
        logger.error("Provisioning of store %s failed: %s", store_id, error)
