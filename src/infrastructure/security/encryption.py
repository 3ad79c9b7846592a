# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""AES-256-GCM encryption for secrets stored in the master database.

Ciphertexts are laid out as ``nonce (12 bytes) || ciphertext || tag (16 bytes)``
and carried as base64 text in TEXT columns.

Example:
    from src.infrastructure.security.encryption import Encryptor, load_key

    encryptor = Encryptor(load_key(settings.encryption.key.get_secret_value()))
    token = encryptor.encrypt_string("secret", associated_data=b"store-id")
    plain = encryptor.decrypt_string(token, associated_data=b"store-id")
"""

import base64
import binascii
import secrets

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM


class EncryptionError(Exception):
    """Raised when encryption or decryption fails."""

    pass


class EncryptionKeyError(EncryptionError):
    """Raised when the encryption key is missing or malformed."""

    pass


class DecryptionError(EncryptionError):
    """Raised when decryption fails (wrong key, corrupted or tampered data)."""

    pass


NONCE_SIZE = 12
TAG_SIZE = 16
KEY_SIZE = 32


def load_key(encoded: str | None) -> bytes:
    """Decode a 256-bit key from hex or base64 text.

    Args:
        encoded: 64 hex characters or base64 of 32 bytes.

    Returns:
        The raw 32-byte key.

    Raises:
        EncryptionKeyError: If the key is absent or does not decode to 32 bytes.
    """
    if not encoded:
        raise EncryptionKeyError("Encryption key is not configured")

    encoded = encoded.strip()
    raw: bytes | None = None

    if len(encoded) == KEY_SIZE * 2:
        try:
            raw = bytes.fromhex(encoded)
        except ValueError:
            raw = None

    if raw is None:
        try:
            raw = base64.b64decode(encoded, validate=True)
        except (binascii.Error, ValueError) as e:
            raise EncryptionKeyError("Encryption key is neither hex nor base64") from e

    if len(raw) != KEY_SIZE:
        raise EncryptionKeyError(
            f"Encryption key must be {KEY_SIZE} bytes, got {len(raw)}"
        )
    return raw


def generate_key() -> str:
    """Generate a new random key, base64 encoded."""
    return base64.b64encode(secrets.token_bytes(KEY_SIZE)).decode("ascii")


class Encryptor:
    """AES-256-GCM encryptor.

    Uses authenticated encryption to provide both confidentiality and
    integrity. Associated data is authenticated but not encrypted; a
    ciphertext only decrypts with the same associated data it was sealed with.
    """

    def __init__(self, key: bytes) -> None:
        """Initialize encryptor with a key.

        Args:
            key: 32-byte (256-bit) encryption key.

        Raises:
            EncryptionKeyError: If key is not 32 bytes.
        """
        if len(key) != KEY_SIZE:
            raise EncryptionKeyError(
                f"Encryption key must be {KEY_SIZE} bytes, got {len(key)}"
            )
        self._aesgcm = AESGCM(key)

    def encrypt(self, plaintext: bytes, associated_data: bytes | None = None) -> bytes:
        """Encrypt data.

        Args:
            plaintext: Data to encrypt.
            associated_data: Optional additional authenticated data.

        Returns:
            nonce || ciphertext || tag.
        """
        nonce = secrets.token_bytes(NONCE_SIZE)
        return nonce + self._aesgcm.encrypt(nonce, plaintext, associated_data)

    def decrypt(self, ciphertext: bytes, associated_data: bytes | None = None) -> bytes:
        """Decrypt data produced by encrypt().

        Args:
            ciphertext: nonce || ciphertext || tag.
            associated_data: The associated data used during encryption.

        Returns:
            Decrypted plaintext.

        Raises:
            DecryptionError: If the data is truncated, tampered with, or was
                sealed with another key or associated data.
        """
        if len(ciphertext) < NONCE_SIZE + TAG_SIZE:
            raise DecryptionError("Ciphertext too short")

        nonce, body = ciphertext[:NONCE_SIZE], ciphertext[NONCE_SIZE:]
        try:
            return self._aesgcm.decrypt(nonce, body, associated_data)
        except InvalidTag as e:
            raise DecryptionError("Authentication tag mismatch") from e

    def encrypt_string(self, plaintext: str, associated_data: bytes | None = None) -> str:
        """Encrypt a string and return base64-encoded result."""
        encrypted = self.encrypt(plaintext.encode("utf-8"), associated_data)
        return base64.b64encode(encrypted).decode("ascii")

    def decrypt_string(self, ciphertext: str, associated_data: bytes | None = None) -> str:
        """Decrypt a base64-encoded string.

        Raises:
            DecryptionError: If the text is not valid base64 or fails to decrypt.
        """
        try:
            raw = base64.b64decode(ciphertext, validate=True)
        except (binascii.Error, ValueError) as e:
            raise DecryptionError("Ciphertext is not valid base64") from e

        plaintext = self.decrypt(raw, associated_data)
        try:
            return plaintext.decode("utf-8")
        except UnicodeDecodeError as e:
            raise DecryptionError("Decrypted payload is not UTF-8") from e
