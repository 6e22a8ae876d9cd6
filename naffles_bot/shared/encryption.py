"""Symmetric encryption for OAuth tokens stored at rest."""

from __future__ import annotations

import logging
from typing import Optional

from cryptography.fernet import Fernet
from cryptography.fernet import InvalidToken

logger = logging.getLogger(__name__)


class TokenDecryptionError(Exception):
    """Raised when stored token material cannot be decrypted."""
    pass


class TokenCipher:
    """Fernet wrapper used by account links to seal OAuth tokens.

    Args:
        key: urlsafe base64 Fernet key. When omitted an ephemeral key is
            generated and tokens written with it are unreadable after restart.
    """

    def __init__(self, key: Optional[str] = None):
        if key is None:
            logger.warning(
                "No token encryption key configured, using an ephemeral key"
            )
            key = Fernet.generate_key().decode()
        self._fernet = Fernet(key.encode() if isinstance(key, str) else key)

    def encrypt(self, plaintext: str) -> str:
        return self._fernet.encrypt(plaintext.encode("utf-8")).decode("ascii")

    def decrypt(self, ciphertext: str) -> str:
        try:
            return self._fernet.decrypt(ciphertext.encode("ascii")).decode("utf-8")
        except InvalidToken as e:
            raise TokenDecryptionError("Stored token could not be decrypted") from e

    @staticmethod
    def generate_key() -> str:
        return Fernet.generate_key().decode()
