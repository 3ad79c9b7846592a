# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Store database credentials and their sealed form.

Credentials are serialized as JSON and sealed with AES-256-GCM, using the
owning store id as associated data. A blob copied onto another store's row
therefore fails to decrypt instead of connecting to the wrong database.
"""

import json
from dataclasses import asdict, dataclass, field
from typing import Any

from sqlalchemy.engine import URL

from src.infrastructure.security.encryption import DecryptionError, Encryptor, load_key


@dataclass(frozen=True)
class DatabaseCredentials:
    """Connection parameters for one tenant database.

    Attributes:
        host: Database host.
        port: Database port.
        database: Database name.
        username: Login role.
        password: Login password.
        ssl: Whether to require TLS.
        options: Extra driver options (e.g. server_settings).
    """

    host: str
    database: str
    username: str
    password: str
    port: int = 5432
    ssl: bool = False
    options: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "DatabaseCredentials":
        """Build credentials from a decoded JSON document.

        Accepts ``user`` as an alias of ``username``.

        Raises:
            ValueError: If a required field is missing.
        """
        username = data.get("username") or data.get("user")
        missing = [
            name
            for name, value in (
                ("host", data.get("host")),
                ("database", data.get("database")),
                ("username", username),
            )
            if not value
        ]
        if missing:
            raise ValueError(f"Missing credential fields: {', '.join(missing)}")

        return cls(
            host=data["host"],
            port=int(data.get("port") or 5432),
            database=data["database"],
            username=username,
            password=data.get("password") or "",
            ssl=bool(data.get("ssl", False)),
            options=dict(data.get("options") or {}),
        )

    def to_dict(self) -> dict[str, Any]:
        """Serialize to a JSON-compatible dict."""
        return asdict(self)

    def url(self, driver: str = "postgresql+asyncpg") -> URL:
        """Build a SQLAlchemy URL for these credentials."""
        return URL.create(
            drivername=driver,
            username=self.username,
            password=self.password,
            host=self.host,
            port=self.port,
            database=self.database,
        )

    def redacted(self) -> dict[str, Any]:
        """Non-sensitive view suitable for logs and API responses."""
        return {
            "host": self.host,
            "port": self.port,
            "database": self.database,
            "username": self.username,
            "ssl": self.ssl,
        }

    def __repr__(self) -> str:
        return (
            f"DatabaseCredentials(host={self.host!r}, port={self.port}, "
            f"database={self.database!r}, username={self.username!r})"
        )


class CredentialCipher:
    """Seals and opens store database credentials.

    Example:
        cipher = CredentialCipher.from_key(settings.encryption.key.get_secret_value())
        blob = cipher.seal(store_id, credentials)
        credentials = cipher.open(store_id, blob)
    """

    def __init__(self, encryptor: Encryptor) -> None:
        self._encryptor = encryptor

    @classmethod
    def from_key(cls, encoded_key: str | None) -> "CredentialCipher":
        """Create a cipher from an encoded key.

        Raises:
            EncryptionKeyError: If the key is missing or malformed.
        """
        return cls(Encryptor(load_key(encoded_key)))

    def seal(self, store_id: str, credentials: DatabaseCredentials) -> str:
        """Encrypt credentials for storage on the given store's row."""
        payload = json.dumps(credentials.to_dict(), sort_keys=True)
        return self._encryptor.encrypt_string(payload, associated_data=store_id.encode())

    def open(self, store_id: str, blob: str) -> DatabaseCredentials:
        """Decrypt and parse a stored credential blob.

        Raises:
            DecryptionError: If the blob cannot be decrypted for this store
                or does not contain valid credentials.
        """
        payload = self._encryptor.decrypt_string(blob, associated_data=store_id.encode())
        try:
            return DatabaseCredentials.from_dict(json.loads(payload))
        except (json.JSONDecodeError, TypeError, ValueError) as e:
            raise DecryptionError(f"Stored credentials are malformed: {e}") from e
