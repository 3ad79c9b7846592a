# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Tenant database connection management.

Each store has its own PostgreSQL database. Its connection parameters are
kept encrypted in the master ``store_databases`` table. The manager resolves
a store identifier to a TenantHandle: a capability scoped to exactly one
tenant database, which is the only way application code reaches tenant data.

Engines are lazily created and cached per store, tagged with a fingerprint of
the encrypted credential blob so a rotation replaces the pool. Store status is
read from the master database on every resolution.

Example:
    from src.infrastructure.database import TenantDatabaseManager

    manager = TenantDatabaseManager(settings)

    handle = await manager.resolve("acme")
    async with handle.session() as session:
        result = await session.execute(select(Product))
        products = result.scalars().all()

    # Shortcut for the common case
    async with manager.get_session("acme") as session:
        ...

    await manager.close_all()
"""

import asyncio
import hashlib
import logging
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, AsyncIterator, Callable

from sqlalchemy import text
from sqlalchemy.ext.asyncio import (
    AsyncConnection,
    AsyncEngine,
    AsyncSession,
    create_async_engine,
)

from src.infrastructure.database.migrations.runner import get_migration_status
from src.infrastructure.database.models import (
    USABLE_STORE_STATUSES,
    ConnectionStatus,
    StoreStatus,
)
from src.infrastructure.database.scoping import create_store_sessionmaker
from src.infrastructure.database.store_directory import StoreDirectory, StoreRecord
from src.infrastructure.security import (
    CredentialCipher,
    DatabaseCredentials,
    DecryptionError,
    EncryptionKeyError,
)

if TYPE_CHECKING:
    from src.core.config.settings import Settings, TenantDatabaseSettings

logger = logging.getLogger(__name__)


class TenantResolutionError(Exception):
    """Base class for failures to resolve a store's tenant database.

    Attributes:
        store_id: Store identifier the caller asked for.
        kind: Stable machine-readable error kind.
        retryable: Whether retrying later may succeed.
    """

    kind = "tenant_resolution_failed"
    retryable = False

    def __init__(self, store_id: str, message: str) -> None:
        super().__init__(message)
        self.store_id = store_id
        self.message = message


class StoreNotFoundError(TenantResolutionError):
    """No store record matches the identifier."""

    kind = "store_not_found"

    def __init__(self, store_id: str) -> None:
        super().__init__(store_id, f"Store not found: {store_id}")


class StoreNotProvisionedError(TenantResolutionError):
    """The store exists but its tenant database is not available.

    Attributes:
        status: Current store status.
    """

    kind = "store_not_provisioned"
    retryable = True

    def __init__(self, store_id: str, status: StoreStatus, reason: str | None = None) -> None:
        message = f"Store {store_id} is not available (status: {status.value})"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(store_id, message)
        self.status = status


class CredentialDecryptionError(TenantResolutionError):
    """Stored credentials could not be decrypted or parsed."""

    kind = "credential_decryption_failed"

    def __init__(self, store_id: str) -> None:
        super().__init__(store_id, f"Unable to decrypt database credentials for store {store_id}")


class ConnectionTimeoutError(TenantResolutionError):
    """The tenant database did not accept a connection in time.

    Attributes:
        timeout: Seconds waited.
    """

    kind = "connection_timeout"
    retryable = True

    def __init__(self, store_id: str, timeout: float) -> None:
        super().__init__(
            store_id,
            f"Tenant database for store {store_id} did not accept a connection "
            f"within {timeout:g}s",
        )
        self.timeout = timeout


@dataclass(frozen=True)
class TenantConnectionInfo:
    """Non-sensitive description of a tenant database connection.

    Attributes:
        store_id: Store the database belongs to.
        database_name: Name of the PostgreSQL database.
        host: Database host.
        port: Database port.
        username: Database login role.
        ssl: Whether TLS is required.
    """

    store_id: str
    database_name: str
    host: str
    port: int
    username: str
    ssl: bool = False

    @classmethod
    def from_credentials(
        cls, store_id: str, credentials: DatabaseCredentials
    ) -> "TenantConnectionInfo":
        return cls(
            store_id=store_id,
            database_name=credentials.database,
            host=credentials.host,
            port=credentials.port,
            username=credentials.username,
            ssl=credentials.ssl,
        )


@dataclass(frozen=True)
class ConnectionTestResult:
    """Outcome of a tenant database connection test."""

    store_id: str
    status: ConnectionStatus
    latency_ms: float | None = None
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.status == ConnectionStatus.CONNECTED


EngineFactory = Callable[[DatabaseCredentials, "TenantDatabaseSettings"], AsyncEngine]


def create_tenant_engine(
    credentials: DatabaseCredentials, pool_settings: "TenantDatabaseSettings"
) -> AsyncEngine:
    """Create a pooled async engine for one tenant database."""
    connect_args: dict = {"timeout": pool_settings.connect_timeout}
    if credentials.ssl:
        connect_args["ssl"] = "require"
    server_settings = credentials.options.get("server_settings")
    if server_settings:
        connect_args["server_settings"] = dict(server_settings)

    return create_async_engine(
        credentials.url(),
        pool_size=pool_settings.pool_size,
        max_overflow=pool_settings.max_overflow,
        pool_timeout=pool_settings.connect_timeout,
        pool_pre_ping=True,
        pool_recycle=pool_settings.pool_recycle,
        connect_args=connect_args,
    )


def _fingerprint(blob: str) -> str:
    return hashlib.sha256(blob.encode()).hexdigest()


# Only the manager holds this token, so only the manager can issue handles.
_HANDLE_TOKEN = object()


class TenantHandle:
    """Capability to use one store's tenant database.

    Handles are issued by TenantDatabaseManager.resolve() and cannot be
    constructed directly. A handle carries no way to reach another store.
    """

    __slots__ = (
        "_store_id",
        "_slug",
        "_status",
        "_engine",
        "_connection_info",
        "_connect_timeout",
    )

    def __init__(
        self,
        token: object,
        *,
        store_id: str,
        slug: str,
        status: StoreStatus,
        engine: AsyncEngine,
        connection_info: TenantConnectionInfo,
        connect_timeout: float,
    ) -> None:
        if token is not _HANDLE_TOKEN:
            raise TypeError("TenantHandle instances are issued by TenantDatabaseManager.resolve()")
        self._store_id = store_id
        self._slug = slug
        self._status = status
        self._engine = engine
        self._connection_info = connection_info
        self._connect_timeout = connect_timeout

    @property
    def store_id(self) -> str:
        return self._store_id

    @property
    def slug(self) -> str:
        return self._slug

    @property
    def status(self) -> StoreStatus:
        return self._status

    @property
    def connection_info(self) -> TenantConnectionInfo:
        return self._connection_info

    async def _acquire(self) -> AsyncConnection:
        try:
            return await asyncio.wait_for(self._engine.connect(), self._connect_timeout)
        except asyncio.TimeoutError as e:
            logger.warning(
                "Connection to tenant database timed out for store %s after %ss",
                self._store_id,
                self._connect_timeout,
            )
            raise ConnectionTimeoutError(self._store_id, self._connect_timeout) from e

    @asynccontextmanager
    async def connection(self) -> AsyncIterator[AsyncConnection]:
        """Acquire a raw connection to this store's tenant database.

        Raises:
            ConnectionTimeoutError: If acquisition exceeds the timeout.
        """
        conn = await self._acquire()
        try:
            yield conn
        finally:
            await conn.close()

    @asynccontextmanager
    async def session(self) -> AsyncIterator[AsyncSession]:
        """Open a store-scoped session.

        The session is committed on success and rolled back on exception.
        Reads are filtered to this store's rows; writing another store's
        rows raises CrossStoreAccessError.

        Raises:
            ConnectionTimeoutError: If acquisition exceeds the timeout.
        """
        async with self.connection() as conn:
            sessionmaker = create_store_sessionmaker(conn, self._store_id)
            async with sessionmaker() as session:
                try:
                    yield session
                    await session.commit()
                except Exception:
                    await session.rollback()
                    raise

    async def ping(self) -> bool:
        """Check that the tenant database answers a trivial query.

        Driver errors (authentication, refused connections) count as a
        failed ping whether or not SQLAlchemy wraps them.

        Raises:
            ConnectionTimeoutError: If acquisition exceeds the timeout.
        """
        try:
            async with self.connection() as conn:
                await conn.execute(text("SELECT 1"))
            return True
        except ConnectionTimeoutError:
            raise
        except Exception as e:
            logger.warning("Ping of tenant database for store %s failed: %s", self._store_id, e)
            return False

    def __repr__(self) -> str:
        return f"TenantHandle(store_id={self._store_id!r}, slug={self._slug!r})"


@dataclass
class _CachedTenant:
    fingerprint: str
    credentials: DatabaseCredentials
    engine: AsyncEngine
    connection_info: TenantConnectionInfo
    created_at: float = field(default_factory=time.monotonic)


class TenantDatabaseManager:
    """Resolves stores to tenant database handles.

    Attributes:
        settings: Application settings containing database configuration.

    Example:
        manager = TenantDatabaseManager(settings)
        handle = await manager.resolve(store_id)
        async with handle.session() as session:
            await session.execute(...)
    """

    def __init__(
        self,
        settings: "Settings",
        directory: StoreDirectory | None = None,
        cipher: CredentialCipher | None = None,
        engine_factory: EngineFactory | None = None,
    ) -> None:
        """Initialize the manager.

        Args:
            settings: Application settings.
            directory: Store lookups; defaults to the master database.
            cipher: Credential cipher; defaults to one built from
                ``settings.encryption.key``.
            engine_factory: Builds an engine from decrypted credentials.
        """
        self._settings = settings
        self._directory = directory or StoreDirectory()
        self._cipher = cipher
        self._engine_factory = engine_factory or create_tenant_engine
        self._tenants: dict[str, _CachedTenant] = {}
        self._locks: dict[str, asyncio.Lock] = {}

    @property
    def directory(self) -> StoreDirectory:
        return self._directory

    @property
    def cipher(self) -> CredentialCipher:
        """Cipher for store credentials.

        Raises:
            EncryptionKeyError: If no usable key is configured.
        """
        if self._cipher is None:
            key = self._settings.encryption.key
            self._cipher = CredentialCipher.from_key(
                key.get_secret_value() if key is not None else None
            )
        return self._cipher

    def _get_cipher(self, store_id: str) -> CredentialCipher:
        try:
            return self.cipher
        except EncryptionKeyError as e:
            logger.error("Credential encryption key is not usable: %s", e)
            raise CredentialDecryptionError(store_id) from e

    def _issue(self, record: StoreRecord, cached: _CachedTenant) -> TenantHandle:
        return TenantHandle(
            _HANDLE_TOKEN,
            store_id=record.store_id,
            slug=record.slug,
            status=record.status,
            engine=cached.engine,
            connection_info=cached.connection_info,
            connect_timeout=self._settings.tenant_db.connect_timeout,
        )

    async def _lookup(self, identifier: str) -> StoreRecord:
        record = await self._directory.lookup(identifier)
        if record is None:
            raise StoreNotFoundError(identifier)

        if record.status not in USABLE_STORE_STATUSES:
            await self.invalidate(record.store_id)
            raise StoreNotProvisionedError(record.store_id, record.status)

        if record.credential_blob is None:
            await self.invalidate(record.store_id)
            raise StoreNotProvisionedError(
                record.store_id, record.status, "no active database credentials"
            )
        return record

    def _open_credentials(self, record: StoreRecord) -> DatabaseCredentials:
        cipher = self._get_cipher(record.store_id)
        try:
            return cipher.open(record.store_id, record.credential_blob)
        except DecryptionError as e:
            logger.error("Failed to decrypt credentials for store %s", record.store_id)
            raise CredentialDecryptionError(record.store_id) from e

    async def resolve(self, identifier: str) -> TenantHandle:
        """Resolve a store identifier to a tenant handle.

        Args:
            identifier: Store id, slug or hostname.

        Returns:
            TenantHandle scoped to the store's tenant database.

        Raises:
            StoreNotFoundError: If no store matches.
            StoreNotProvisionedError: If the store's database is not usable.
            CredentialDecryptionError: If stored credentials cannot be decrypted.
        """
        record = await self._lookup(identifier)
        fingerprint = _fingerprint(record.credential_blob)

        cached = self._tenants.get(record.store_id)
        if cached is not None and cached.fingerprint == fingerprint:
            return self._issue(record, cached)

        lock = self._locks.setdefault(record.store_id, asyncio.Lock())
        async with lock:
            cached = self._tenants.get(record.store_id)
            if cached is not None and cached.fingerprint == fingerprint:
                return self._issue(record, cached)

            try:
                credentials = self._open_credentials(record)
            except CredentialDecryptionError:
                await self._drop(record.store_id)
                raise

            engine = self._engine_factory(credentials, self._settings.tenant_db)
            fresh = _CachedTenant(
                fingerprint=fingerprint,
                credentials=credentials,
                engine=engine,
                connection_info=TenantConnectionInfo.from_credentials(
                    record.store_id, credentials
                ),
            )
            self._tenants[record.store_id] = fresh

            if cached is not None:
                logger.info("Credentials changed for store %s, replacing pool", record.store_id)
                await cached.engine.dispose()
            else:
                logger.info(
                    "Created tenant pool for store %s (%s@%s:%s/%s)",
                    record.store_id,
                    credentials.username,
                    credentials.host,
                    credentials.port,
                    credentials.database,
                )

        return self._issue(record, fresh)

    @asynccontextmanager
    async def get_session(self, identifier: str) -> AsyncIterator[AsyncSession]:
        """Resolve a store and open a store-scoped session.

        Example:
            async with manager.get_session("acme") as session:
                result = await session.execute(select(Product))
        """
        handle = await self.resolve(identifier)
        async with handle.session() as session:
            yield session

    async def get_connection_info(self, identifier: str) -> TenantConnectionInfo:
        """Get non-sensitive connection details for a store."""
        handle = await self.resolve(identifier)
        return handle.connection_info

    def cached_stores(self) -> list[str]:
        """Store ids with a cached engine."""
        return sorted(self._tenants)

    async def test_connection(self, identifier: str) -> ConnectionTestResult:
        """Resolve a store, ping its database and record the outcome.

        Resolution errors other than a timeout propagate. Connectivity
        problems are reported in the result rather than raised.
        """
        handle = await self.resolve(identifier)
        started = time.perf_counter()
        error: str | None = None
        try:
            ok = await handle.ping()
            status = ConnectionStatus.CONNECTED if ok else ConnectionStatus.FAILED
            if not ok:
                error = "Tenant database did not answer"
        except ConnectionTimeoutError as e:
            status = ConnectionStatus.TIMEOUT
            error = e.message
        latency_ms = round((time.perf_counter() - started) * 1000, 2)

        await self._directory.record_connection_test(handle.store_id, status)
        logger.info(
            "Connection test for store %s: %s (%.2f ms)",
            handle.store_id,
            status.value,
            latency_ms,
        )
        return ConnectionTestResult(
            store_id=handle.store_id,
            status=status,
            latency_ms=latency_ms if status == ConnectionStatus.CONNECTED else None,
            error=error,
        )

    async def get_migration_status(self, identifier: str) -> dict:
        """Migration status of a store's tenant database."""
        handle = await self.resolve(identifier)
        credentials = self._tenants[handle.store_id].credentials
        return await get_migration_status(credentials.url(), target="tenant")

    @asynccontextmanager
    async def bootstrap_session(
        self, store_id: str, credentials: DatabaseCredentials
    ) -> AsyncIterator[AsyncSession]:
        """Store-scoped session on candidate credentials, before the store is usable.

        Used while provisioning, when resolve() still refuses the store. The
        engine is disposed on exit and never cached.
        """
        engine = self._engine_factory(credentials, self._settings.tenant_db)
        try:
            async with create_store_sessionmaker(engine, store_id)() as session:
                try:
                    yield session
                    await session.commit()
                except Exception:
                    await session.rollback()
                    raise
        finally:
            await engine.dispose()

    async def probe(self, credentials: DatabaseCredentials) -> ConnectionStatus:
        """Test candidate credentials without caching an engine."""
        engine = self._engine_factory(credentials, self._settings.tenant_db)

        async def _select_one() -> None:
            async with engine.connect() as conn:
                await conn.execute(text("SELECT 1"))

        try:
            await asyncio.wait_for(_select_one(), self._settings.tenant_db.connect_timeout)
            return ConnectionStatus.CONNECTED
        except asyncio.TimeoutError:
            return ConnectionStatus.TIMEOUT
        except Exception as e:
            logger.warning("Connection probe to %s failed: %s", credentials.host, e)
            return ConnectionStatus.FAILED
        finally:
            await engine.dispose()

    async def _drop(self, store_id: str) -> None:
        cached = self._tenants.pop(store_id, None)
        if cached is not None:
            await cached.engine.dispose()
            logger.info("Closed tenant pool for store %s", store_id)

    async def invalidate(self, store_id: str) -> None:
        """Drop the cached credentials and engine for a store."""
        lock = self._locks.setdefault(store_id, asyncio.Lock())
        async with lock:
            await self._drop(store_id)

    async def close_all(self) -> None:
        """Close all tenant database connections."""
        for store_id in list(self._tenants):
            await self._drop(store_id)
        self._locks.clear()
