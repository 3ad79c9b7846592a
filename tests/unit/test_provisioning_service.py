# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Unit tests for the store provisioning service."""

from contextlib import asynccontextmanager
from unittest.mock import AsyncMock, MagicMock
from uuid import uuid4

import asyncpg
import pytest
from sqlalchemy.exc import IntegrityError

from src.domains.provisioning.service import (
    HostnameInUseError,
    InvalidStatusTransitionError,
    StoreAlreadyExistsError,
    StoreProvisioningError,
    StoreProvisioningService,
)
from src.infrastructure.database.migrations.runner import AppliedMigration, MigrationError
from src.infrastructure.database.models import (
    ConnectionStatus,
    Store,
    StoreDatabase,
    StoreHostname,
    StoreStatus,
)
from src.infrastructure.database.tenant_manager import (
    ConnectionTestResult,
    CredentialDecryptionError,
    StoreNotFoundError,
    TenantDatabaseManager,
)
from src.infrastructure.security import CredentialCipher, DatabaseCredentials
from src.utils.datetime import utc_now


class MasterState:
    """Rows returned by the mocked master session, keyed by entity."""

    def __init__(self, mock_db) -> None:
        self.rows: dict[type, object] = {}
        self.writes: list = []
        mock_db.execute.side_effect = self.execute
        mock_db.add.side_effect = self.add

    async def execute(self, statement, *args, **kwargs):
        result = MagicMock()
        value = None
        if getattr(statement, "is_select", False):
            value = self.rows.get(statement.column_descriptions[0]["entity"])
        else:
            self.writes.append(statement)
        result.scalar_one_or_none.return_value = value
        return result

    def add(self, obj) -> None:
        if isinstance(obj, StoreDatabase):
            self.rows[StoreDatabase] = obj


@pytest.fixture
def master(mock_db) -> MasterState:
    return MasterState(mock_db)


@pytest.fixture
def cipher(test_settings) -> CredentialCipher:
    return CredentialCipher.from_key(test_settings.encryption.key.get_secret_value())


@pytest.fixture
def tenant_session():
    return MagicMock(name="tenant_session")


@pytest.fixture
def tenant_manager(cipher, tenant_session):
    manager = MagicMock()
    manager.cipher = cipher
    manager.probe = AsyncMock(return_value=ConnectionStatus.CONNECTED)
    manager.invalidate = AsyncMock()
    manager.test_connection = AsyncMock()
    manager.get_migration_status = AsyncMock()

    @asynccontextmanager
    async def bootstrap_session(store_id, credentials):
        yield tenant_session

    manager.bootstrap_session = MagicMock(side_effect=bootstrap_session)
    return manager


@pytest.fixture
def migrate():
    return AsyncMock(
        return_value=[
            AppliedMigration("001_initial_schema", 1, 40),
            AppliedMigration("002_add_store_settings", 2, 12),
        ]
    )


@pytest.fixture
def seed():
    return AsyncMock(return_value={"store_settings": 12})


@pytest.fixture
def read_migration_status():
    return AsyncMock(return_value={"current_version": "002_add_store_settings"})


@pytest.fixture
def service(mock_db, tenant_manager, migrate, seed, read_migration_status):
    return StoreProvisioningService(
        mock_db,
        tenant_manager,
        migrate=migrate,
        read_migration_status=read_migration_status,
        seed=seed,
    )


def make_store(status: StoreStatus = StoreStatus.PENDING_DATABASE) -> Store:
    return Store(
        id=str(uuid4()),
        slug="acme",
        name="Acme Outfitters",
        status=status.value,
        created_at=utc_now(),
    )


def make_database(store: Store, cipher: CredentialCipher, credentials: DatabaseCredentials) -> StoreDatabase:
    return StoreDatabase(
        id=str(uuid4()),
        store_id=store.id,
        database_type="postgresql",
        connection_string_encrypted=cipher.seal(store.id, credentials),
        host=credentials.host,
        port=credentials.port,
        database_name=credentials.database,
        is_active=True,
        connection_status=ConnectionStatus.CONNECTED.value,
        schema_version=2,
    )


class TestStatusTransitions:
    """Tests for the store lifecycle table."""

    @pytest.mark.parametrize(
        "current,target",
        [
            (StoreStatus.PENDING_DATABASE, StoreStatus.PROVISIONING),
            (StoreStatus.PROVISIONING, StoreStatus.PROVISIONED),
            (StoreStatus.PROVISIONING, StoreStatus.PENDING_DATABASE),
            (StoreStatus.PROVISIONED, StoreStatus.ACTIVE),
            (StoreStatus.ACTIVE, StoreStatus.DEMO),
            (StoreStatus.DEMO, StoreStatus.ACTIVE),
            (StoreStatus.SUSPENDED, StoreStatus.ACTIVE),
            (StoreStatus.SUSPENDED, StoreStatus.INACTIVE),
        ],
    )
    def test_allowed(self, current, target) -> None:
        assert make_store(current).can_transition_to(target)

    @pytest.mark.parametrize(
        "current,target",
        [
            (StoreStatus.PENDING_DATABASE, StoreStatus.ACTIVE),
            (StoreStatus.PROVISIONING, StoreStatus.ACTIVE),
            (StoreStatus.ACTIVE, StoreStatus.PROVISIONING),
            (StoreStatus.INACTIVE, StoreStatus.ACTIVE),
            (StoreStatus.INACTIVE, StoreStatus.PENDING_DATABASE),
        ],
    )
    def test_rejected(self, current, target) -> None:
        assert not make_store(current).can_transition_to(target)

    @pytest.mark.parametrize(
        "status,usable",
        [
            (StoreStatus.PENDING_DATABASE, False),
            (StoreStatus.PROVISIONING, False),
            (StoreStatus.PROVISIONED, True),
            (StoreStatus.ACTIVE, True),
            (StoreStatus.DEMO, True),
            (StoreStatus.SUSPENDED, False),
            (StoreStatus.INACTIVE, False),
        ],
    )
    def test_usable(self, status, usable) -> None:
        assert make_store(status).is_usable is usable


class TestCreateStore:
    """Tests for store creation."""

    @pytest.mark.asyncio
    async def test_create_store(self, service, mock_db, master) -> None:
        store = await service.create_store("Acme", "Acme Outfitters", hostnames=["shop.acme.test"])

        assert store.slug == "acme"
        assert store.status == "pending_database"
        added = [call.args[0] for call in mock_db.add.call_args_list]
        [hostname] = [obj for obj in added if isinstance(obj, StoreHostname)]
        assert hostname.hostname == "shop.acme.test"
        assert hostname.is_primary is True
        assert hostname.store_id == store.id
        mock_db.commit.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_duplicate_slug(self, service, mock_db, master) -> None:
        master.rows[Store] = make_store()

        with pytest.raises(StoreAlreadyExistsError):
            await service.create_store("acme")

        mock_db.commit.assert_not_awaited()

    @pytest.mark.asyncio
    @pytest.mark.parametrize("slug", ["", "-acme", "acme_shop", "a" * 64])
    async def test_invalid_slug(self, service, master, slug) -> None:
        with pytest.raises(ValueError):
            await service.create_store(slug)

    @pytest.mark.asyncio
    async def test_duplicate_hostname(self, service, mock_db, master) -> None:
        master.rows[StoreHostname] = "shop.acme.test"

        with pytest.raises(HostnameInUseError) as exc_info:
            await service.create_store("globex", hostnames=["Shop.Acme.Test"])

        assert exc_info.value.hostname == "shop.acme.test"
        mock_db.commit.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_hostnames_deduplicated(self, service, mock_db, master) -> None:
        await service.create_store("acme", hostnames=["shop.acme.test", "SHOP.acme.test."])

        added = [call.args[0] for call in mock_db.add.call_args_list]
        assert [obj.hostname for obj in added if isinstance(obj, StoreHostname)] == [
            "shop.acme.test"
        ]

    @pytest.mark.asyncio
    async def test_lost_race_is_conflict(self, service, mock_db, master) -> None:
        """A concurrent create with the same slug wins the unique index."""

        async def commit_after_other_create():
            master.rows[Store] = make_store()
            raise IntegrityError("INSERT INTO stores", {}, Exception("duplicate key"))

        mock_db.commit.side_effect = commit_after_other_create

        with pytest.raises(StoreAlreadyExistsError, match="acme"):
            await service.create_store("acme")

        mock_db.rollback.assert_awaited_once()


class TestHostnames:
    """Tests for routing hostnames to stores."""

    @pytest.mark.asyncio
    async def test_add_hostname(self, service, mock_db, master) -> None:
        store = make_store(StoreStatus.ACTIVE)
        master.rows[Store] = store

        entry = await service.add_hostname(store.id, " WWW.Acme.Test ", is_primary=True)

        assert entry.hostname == "www.acme.test"
        assert entry.store_id == store.id
        assert entry.is_primary is True
        mock_db.add.assert_called_once_with(entry)
        mock_db.commit.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_hostname_taken(self, service, mock_db, master) -> None:
        master.rows[Store] = make_store(StoreStatus.ACTIVE)
        master.rows[StoreHostname] = "www.acme.test"

        with pytest.raises(HostnameInUseError):
            await service.add_hostname(master.rows[Store].id, "www.acme.test")

        mock_db.add.assert_not_called()

    @pytest.mark.asyncio
    async def test_unique_violation_on_commit(self, service, mock_db, master) -> None:
        master.rows[Store] = make_store(StoreStatus.ACTIVE)
        mock_db.commit.side_effect = IntegrityError(
            "INSERT INTO store_hostnames", {}, Exception("duplicate key")
        )

        with pytest.raises(HostnameInUseError):
            await service.add_hostname(master.rows[Store].id, "www.acme.test")

        mock_db.rollback.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_blank_hostname(self, service, master) -> None:
        master.rows[Store] = make_store(StoreStatus.ACTIVE)

        with pytest.raises(ValueError):
            await service.add_hostname(master.rows[Store].id, "   ")

    @pytest.mark.asyncio
    async def test_unknown_store(self, service, master) -> None:
        with pytest.raises(StoreNotFoundError):
            await service.add_hostname(str(uuid4()), "www.acme.test")


class TestConnectDatabase:
    """Tests for attaching a tenant database."""

    @pytest.mark.asyncio
    async def test_provisions_store(
        self,
        service,
        mock_db,
        master,
        cipher,
        tenant_manager,
        tenant_session,
        migrate,
        seed,
        sample_credentials,
    ) -> None:
        store = make_store()
        master.rows[Store] = store

        result = await service.connect_database(store.id, sample_credentials)

        assert result is store
        assert store.status == "provisioned"
        assert store.provisioned_at is not None

        database = master.rows[StoreDatabase]
        assert database.store_id == store.id
        assert "s3cret-acme" not in database.connection_string_encrypted
        assert cipher.open(store.id, database.connection_string_encrypted) == sample_credentials
        assert database.host == "tenant-db.internal"
        assert database.database_name == "store_acme"
        assert database.is_active is True
        assert database.connection_status == "connected"
        assert database.schema_version == 2

        migrate.assert_awaited_once_with(sample_credentials.url())
        seed.assert_awaited_once_with(tenant_session, store.id)
        tenant_manager.invalidate.assert_awaited_once_with(store.id)
        assert len(master.writes) == 2

    @pytest.mark.asyncio
    async def test_already_migrated(
        self, service, master, migrate, read_migration_status, sample_credentials
    ) -> None:
        """Re-provisioning an up-to-date database reads its current version."""
        store = make_store()
        master.rows[Store] = store
        migrate.return_value = []

        await service.connect_database(store.id, sample_credentials)

        read_migration_status.assert_awaited_once()
        assert master.rows[StoreDatabase].schema_version == 2
        assert master.writes == []

    @pytest.mark.asyncio
    async def test_unreachable_database(
        self, service, mock_db, master, tenant_manager, migrate, sample_credentials
    ) -> None:
        store = make_store()
        master.rows[Store] = store
        tenant_manager.probe.return_value = ConnectionStatus.TIMEOUT

        with pytest.raises(StoreProvisioningError, match="timeout"):
            await service.connect_database(store.id, sample_credentials)

        assert store.status == "pending_database"
        assert master.rows[StoreDatabase].connection_status == "failed"
        migrate.assert_not_awaited()
        mock_db.rollback.assert_awaited_once()
        tenant_manager.invalidate.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_migration_failure(
        self, service, master, migrate, seed, sample_credentials
    ) -> None:
        store = make_store()
        master.rows[Store] = store
        migrate.side_effect = MigrationError("002_add_store_settings", RuntimeError("lock timeout"))

        with pytest.raises(StoreProvisioningError) as exc_info:
            await service.connect_database(store.id, sample_credentials)

        assert isinstance(exc_info.value.__cause__, MigrationError)
        assert store.status == "pending_database"
        seed.assert_not_awaited()
        # failed step recorded in the tenant_migrations ledger
        assert len(master.writes) == 1

    @pytest.mark.asyncio
    async def test_rejected_password_returns_store_to_pending(
        self,
        mock_db,
        master,
        cipher,
        migrate,
        seed,
        read_migration_status,
        test_settings,
        sample_credentials,
        rejecting_engine_factory,
    ) -> None:
        """asyncpg login errors reach the undo path with a real resolver."""
        manager = TenantDatabaseManager(
            test_settings,
            directory=MagicMock(),
            cipher=cipher,
            engine_factory=rejecting_engine_factory,
        )
        service = StoreProvisioningService(
            mock_db,
            manager,
            migrate=migrate,
            read_migration_status=read_migration_status,
            seed=seed,
        )
        store = make_store()
        master.rows[Store] = store

        with pytest.raises(StoreProvisioningError, match="failed"):
            await service.connect_database(store.id, sample_credentials)

        assert store.status == "pending_database"
        assert master.rows[StoreDatabase].connection_status == "failed"
        migrate.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_unexpected_error_returns_store_to_pending(
        self, service, mock_db, master, migrate, sample_credentials
    ) -> None:
        store = make_store()
        master.rows[Store] = store
        migrate.side_effect = asyncpg.exceptions.InvalidPasswordError(
            "password authentication failed"
        )

        with pytest.raises(StoreProvisioningError) as exc_info:
            await service.connect_database(store.id, sample_credentials)

        assert isinstance(exc_info.value.__cause__, asyncpg.exceptions.InvalidPasswordError)
        assert store.status == "pending_database"
        mock_db.rollback.assert_awaited_once()

        # the store can be provisioned again
        migrate.side_effect = None
        await service.connect_database(store.id, sample_credentials)
        assert store.status == "provisioned"

    @pytest.mark.asyncio
    async def test_requires_pending_database(self, service, master, sample_credentials) -> None:
        master.rows[Store] = make_store(StoreStatus.ACTIVE)

        with pytest.raises(InvalidStatusTransitionError):
            await service.connect_database(master.rows[Store].id, sample_credentials)

    @pytest.mark.asyncio
    async def test_unknown_store(self, service, master, sample_credentials) -> None:
        with pytest.raises(StoreNotFoundError):
            await service.connect_database(str(uuid4()), sample_credentials)


class TestCredentials:
    """Tests for credential rotation and deprovisioning."""

    @pytest.mark.asyncio
    async def test_rotate_credentials(
        self, service, master, cipher, tenant_manager, sample_credentials
    ) -> None:
        store = make_store(StoreStatus.ACTIVE)
        database = make_database(store, cipher, sample_credentials)
        master.rows.update({Store: store, StoreDatabase: database})
        rotated = DatabaseCredentials(
            host="tenant-db-2.internal",
            database="store_acme",
            username="acme_app",
            password="rotated",
        )

        await service.rotate_credentials(store.id, rotated)

        assert cipher.open(store.id, database.connection_string_encrypted) == rotated
        assert database.host == "tenant-db-2.internal"
        assert database.credentials_rotated_at is not None
        tenant_manager.probe.assert_awaited_once_with(rotated)
        tenant_manager.invalidate.assert_awaited_once_with(store.id)

    @pytest.mark.asyncio
    async def test_rotate_rejects_unreachable(
        self, service, master, cipher, tenant_manager, sample_credentials
    ) -> None:
        store = make_store(StoreStatus.ACTIVE)
        database = make_database(store, cipher, sample_credentials)
        blob = database.connection_string_encrypted
        master.rows.update({Store: store, StoreDatabase: database})
        tenant_manager.probe.return_value = ConnectionStatus.FAILED

        with pytest.raises(StoreProvisioningError):
            await service.rotate_credentials(store.id, sample_credentials)

        assert database.connection_string_encrypted == blob
        tenant_manager.invalidate.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_rotate_without_database(self, service, master, sample_credentials) -> None:
        master.rows[Store] = make_store(StoreStatus.ACTIVE)

        with pytest.raises(StoreProvisioningError):
            await service.rotate_credentials(master.rows[Store].id, sample_credentials)

    @pytest.mark.asyncio
    async def test_deprovision(
        self, service, master, cipher, tenant_manager, sample_credentials
    ) -> None:
        store = make_store(StoreStatus.ACTIVE)
        database = make_database(store, cipher, sample_credentials)
        master.rows.update({Store: store, StoreDatabase: database})

        await service.deprovision(store.id)

        assert store.status == "inactive"
        assert database.is_active is False
        assert database.revoked_at is not None
        tenant_manager.invalidate.assert_awaited_once_with(store.id)

    @pytest.mark.asyncio
    async def test_deprovision_inactive(self, service, master) -> None:
        master.rows[Store] = make_store(StoreStatus.INACTIVE)

        with pytest.raises(InvalidStatusTransitionError):
            await service.deprovision(master.rows[Store].id)


class TestLifecycle:
    """Tests for activate, demo, suspend and deactivate."""

    @pytest.mark.asyncio
    async def test_activate(self, service, master) -> None:
        store = make_store(StoreStatus.PROVISIONED)
        master.rows[Store] = store

        await service.activate(store.id)

        assert store.status == "active"

    @pytest.mark.asyncio
    async def test_set_demo(self, service, master) -> None:
        store = make_store(StoreStatus.ACTIVE)
        master.rows[Store] = store

        await service.set_demo(store.id)

        assert store.status == "demo"

    @pytest.mark.asyncio
    async def test_suspend_invalidates_cache(self, service, master, tenant_manager) -> None:
        store = make_store(StoreStatus.ACTIVE)
        master.rows[Store] = store

        await service.suspend(store.id, reason="unpaid invoice")

        assert store.status == "suspended"
        assert store.suspended_at is not None
        tenant_manager.invalidate.assert_awaited_once_with(store.id)

    @pytest.mark.asyncio
    async def test_reactivate_clears_suspension(self, service, master) -> None:
        store = make_store(StoreStatus.SUSPENDED)
        store.suspended_at = utc_now()
        master.rows[Store] = store

        await service.activate(store.id)

        assert store.status == "active"
        assert store.suspended_at is None

    @pytest.mark.asyncio
    async def test_deactivate(self, service, master, tenant_manager) -> None:
        store = make_store(StoreStatus.DEMO)
        master.rows[Store] = store

        await service.deactivate(store.id)

        assert store.status == "inactive"
        tenant_manager.invalidate.assert_awaited_once_with(store.id)

    @pytest.mark.asyncio
    async def test_invalid_transition(self, service, mock_db, master) -> None:
        store = make_store(StoreStatus.PENDING_DATABASE)
        master.rows[Store] = store

        with pytest.raises(InvalidStatusTransitionError) as exc_info:
            await service.activate(store.id)

        assert exc_info.value.current == StoreStatus.PENDING_DATABASE
        assert exc_info.value.target == StoreStatus.ACTIVE
        assert store.status == "pending_database"
        mock_db.commit.assert_not_awaited()


class TestCheckHealth:
    """Tests for store health reports."""

    @pytest.mark.asyncio
    async def test_unusable_store_skips_connection(self, service, master, tenant_manager) -> None:
        store = make_store(StoreStatus.SUSPENDED)
        master.rows[Store] = store

        report = await service.check_health(store.id)

        assert report["status"] == "suspended"
        assert report["usable"] is False
        assert report["connection"] is None
        tenant_manager.test_connection.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_healthy_store(
        self, service, master, cipher, tenant_manager, sample_credentials
    ) -> None:
        store = make_store(StoreStatus.ACTIVE)
        master.rows.update({Store: store, StoreDatabase: make_database(store, cipher, sample_credentials)})
        tenant_manager.test_connection.return_value = ConnectionTestResult(
            store.id, ConnectionStatus.CONNECTED, latency_ms=1.5
        )
        tenant_manager.get_migration_status.return_value = {"is_up_to_date": True}

        report = await service.check_health(store.id)

        assert report["database"]["host"] == "tenant-db.internal"
        assert "connection_string_encrypted" not in report["database"]
        assert report["connection"]["status"] == "connected"
        assert report["migrations"] == {"is_up_to_date": True}

    @pytest.mark.asyncio
    async def test_resolution_error_reported(self, service, master, tenant_manager) -> None:
        store = make_store(StoreStatus.ACTIVE)
        master.rows[Store] = store
        tenant_manager.test_connection.side_effect = CredentialDecryptionError(store.id)

        report = await service.check_health(store.id)

        assert report["connection"] == {
            "status": "failed",
            "error": "credential_decryption_failed",
        }
        assert report["migrations"] is None
