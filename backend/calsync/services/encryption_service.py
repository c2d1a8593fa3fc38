"""Symmetric encryption wrapper (Fernet) for OAuth tokens at rest.

The secret comes from CALENDAR_TOKEN_SECRET: either a ready Fernet key or an
arbitrary passphrase (a key is derived from its SHA-256 digest).
"""
from __future__ import annotations
import base64
import hashlib
import logging
import os
from cryptography.fernet import Fernet, InvalidToken
from functools import lru_cache

logger = logging.getLogger(__name__)


def _derive_key(secret: str | bytes) -> bytes:
    raw = secret.encode() if isinstance(secret, str) else secret
    try:
        Fernet(raw)
        return raw
    except (ValueError, TypeError):
        return base64.urlsafe_b64encode(hashlib.sha256(raw).digest())


class EncryptionService:
    ENV_KEY = "CALENDAR_TOKEN_SECRET"

    def __init__(self, key: bytes | str | None = None):
        secret = key or os.getenv(self.ENV_KEY)
        if not secret:
            # Ephemeral key: tokens written now will not decrypt after a restart
            logger.warning("%s not set; generating an ephemeral encryption key", self.ENV_KEY)
            secret = Fernet.generate_key()
            os.environ[self.ENV_KEY] = secret.decode()
        self._fernet = Fernet(_derive_key(secret))

    def encrypt(self, plaintext: str) -> str:
        return self._fernet.encrypt(plaintext.encode()).decode()

    def decrypt(self, token: str) -> str:
        try:
            return self._fernet.decrypt(token.encode()).decode()
        except InvalidToken:
            raise ValueError("INVALID_ENCRYPTED_VALUE")

@lru_cache(maxsize=1)
def get_encryption_service() -> EncryptionService:
    return EncryptionService()
