from __future__ import annotations

import base64
import hashlib
import logging
import os
from functools import lru_cache

from cryptography.fernet import Fernet, InvalidToken

from squirrel.src.modules.errors import ConfigurationException

logger = logging.getLogger(__name__)

ENCRYPTED_PREFIX = "ENC:"
_DEV_KEY_MATERIAL = "squirrel-wiki-development-key"


def _derive_key(secret: str) -> bytes:
    digest = hashlib.sha256(secret.encode("utf-8")).digest()
    return base64.urlsafe_b64encode(digest)


class SecretEncryptionService:
    """Fernet wrapper for plugin secrets; ciphertext carries an ``ENC:`` prefix."""

    def __init__(self, secret_key: str | None = None):
        if not secret_key:
            logger.warning("SQUIRREL_SECRET_KEY not set, using development key (not secure for production)")
            secret_key = _DEV_KEY_MATERIAL
        self._fernet = Fernet(_derive_key(secret_key))

    @staticmethod
    def is_encrypted(value: str | None) -> bool:
        return bool(value) and str(value).startswith(ENCRYPTED_PREFIX)

    def encrypt(self, plain_text: str) -> str:
        if not plain_text:
            return plain_text
        token = self._fernet.encrypt(plain_text.encode("utf-8")).decode("ascii")
        return f"{ENCRYPTED_PREFIX}{token}"

    def decrypt(self, cipher_text: str) -> str:
        if not cipher_text:
            return cipher_text
        if not self.is_encrypted(cipher_text):
            raise ConfigurationException("Value is not encrypted", "SQUIRREL_SECRET_KEY")
        try:
            raw = self._fernet.decrypt(cipher_text[len(ENCRYPTED_PREFIX):].encode("ascii"))
        except InvalidToken as exc:
            logger.error("Failed to decrypt value; the encryption key may have changed")
            raise ConfigurationException(
                "Failed to decrypt value. The encryption key may have changed.",
                "SQUIRREL_SECRET_KEY",
            ) from exc
        return raw.decode("utf-8")

    def encrypt_if_needed(self, value: str) -> str:
        if not value or self.is_encrypted(value):
            return value
        return self.encrypt(value)

    def decrypt_if_needed(self, value: str) -> str:
        if not value or not self.is_encrypted(value):
            return value
        return self.decrypt(value)


@lru_cache
def get_secret_service() -> SecretEncryptionService:
    return SecretEncryptionService(os.environ.get("SQUIRREL_SECRET_KEY"))
