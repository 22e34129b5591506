"""Symmetric encryption of stored provider credentials.

Access and refresh tokens are encrypted with Fernet before they reach the
connection store.  The key is read once from settings at startup.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import logging

from cryptography.fernet import Fernet, InvalidToken

from healthsync.integrations.errors import CryptoError

logger = logging.getLogger("healthsync.integrations.token_cipher")


def _derive_fernet_key(secret: str) -> bytes:
    """Return a usable Fernet key for ``secret``.

    A value that already decodes to 32 url-safe base64 bytes is used as is;
    anything else is treated as a passphrase and hashed with SHA-256.
    """
    raw = secret.encode("utf-8")
    try:
        if len(base64.urlsafe_b64decode(raw)) == 32:
            return raw
    except (binascii.Error, ValueError):
        pass
    return base64.urlsafe_b64encode(hashlib.sha256(raw).digest())


class TokenCipher:
    """Encrypts and decrypts credential strings with a process-wide key.

    Usage::

        cipher = TokenCipher(settings.token_encryption_key)
        stored = cipher.encrypt(tokens.access_token)
        plain = cipher.decrypt(stored)
    """

    def __init__(self, key: str) -> None:
        """Initialize with a Fernet key or passphrase.

        Raises:
            CryptoError: If the key is empty.
        """
        if not key or not key.strip():
            raise CryptoError("Token encryption key must not be empty")
        self._fernet = Fernet(_derive_fernet_key(key.strip()))

    def encrypt(self, plaintext: str) -> str:
        if not plaintext:
            return ""
        return self._fernet.encrypt(plaintext.encode("utf-8")).decode("utf-8")

    def decrypt(self, ciphertext: str) -> str:
        """Decrypt a token previously produced by :meth:`encrypt`.

        Raises:
            CryptoError: If the ciphertext is malformed or was written with
                another key.
        """
        if not ciphertext:
            return ""
        try:
            return self._fernet.decrypt(ciphertext.encode("utf-8")).decode("utf-8")
        except (InvalidToken, UnicodeError) as exc:
            logger.warning("Stored credential could not be decrypted")
            raise CryptoError("Decryption failed: invalid token or wrong key") from exc

    @staticmethod
    def generate_key() -> str:
        return Fernet.generate_key().decode("utf-8")
