"""Fernet encryption for device OAuth tokens at rest.

Token material never leaves the credential store in plaintext: it is
serialized to JSON and sealed with a Fernet key before it reaches the
repository layer.  Only the expiry is kept in the clear for scheduling.
"""

from __future__ import annotations

import json
import logging

from cryptography.fernet import Fernet, InvalidToken

from src.wearables.base import OAuthTokens

logger = logging.getLogger("nutrisync.crypto")


class EncryptionError(Exception):
    """Raised when token encryption or decryption fails."""


class TokenEncryptor:
    """Seals and opens :class:`OAuthTokens` with Fernet symmetric encryption.

    Usage::

        encryptor = TokenEncryptor(key=settings.token_encryption_key)
        sealed = encryptor.encrypt(tokens)
        tokens = encryptor.decrypt(sealed)
    """

    def __init__(self, key: str) -> None:
        """Initialize with a Fernet key.

        Args:
            key: A valid Fernet key string. Generate with
                 ``TokenEncryptor.generate_key()``.

        Raises:
            EncryptionError: If the key is empty or invalid.
        """
        if not key or not key.strip():
            raise EncryptionError("Token encryption key must not be empty")
        try:
            self._fernet = Fernet(key.encode("utf-8"))
        except ValueError as exc:
            raise EncryptionError(f"Invalid token encryption key: {exc}") from exc

    def encrypt(self, tokens: OAuthTokens) -> str:
        """Serialize and encrypt tokens to a Fernet token string."""
        plaintext = json.dumps(tokens.to_dict(), separators=(",", ":")).encode("utf-8")
        return self._fernet.encrypt(plaintext).decode("utf-8")

    def decrypt(self, ciphertext: str) -> OAuthTokens:
        """Decrypt a Fernet token string back into OAuthTokens.

        Raises:
            EncryptionError: If the ciphertext is empty, tampered with, or
                was sealed with a different key.
        """
        if not ciphertext:
            raise EncryptionError("No credential ciphertext to decrypt")
        try:
            plaintext = self._fernet.decrypt(ciphertext.encode("utf-8"))
        except InvalidToken as exc:
            raise EncryptionError("Decryption failed: invalid token or wrong key") from exc
        try:
            return OAuthTokens.from_dict(json.loads(plaintext))
        except (KeyError, ValueError, TypeError) as exc:
            raise EncryptionError(f"Decrypted credential is malformed: {exc}") from exc

    @staticmethod
    def generate_key() -> str:
        """Generate a new URL-safe base64-encoded 32-byte Fernet key."""
        return Fernet.generate_key().decode("utf-8")
