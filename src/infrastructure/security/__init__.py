# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Secret handling for store database credentials."""

from src.infrastructure.security.credentials import CredentialCipher, DatabaseCredentials
from src.infrastructure.security.encryption import (
    DecryptionError,
    EncryptionError,
    EncryptionKeyError,
    Encryptor,
    generate_key,
    load_key,
)

__all__ = [
    "CredentialCipher",
    "DatabaseCredentials",
    "DecryptionError",
    "EncryptionError",
    "EncryptionKeyError",
    "Encryptor",
    "generate_key",
    "load_key",
]
