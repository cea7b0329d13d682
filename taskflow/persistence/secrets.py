"""
Encryption at rest for self-hosted connection strings (Fernet).

A key is required. The fixed development key is only used when it is
switched on explicitly (TASKFLOW_ALLOW_DEV_SECRET_KEY=true).
"""

import base64
import hashlib
import logging
from typing import Optional

from cryptography.fernet import Fernet, InvalidToken

from taskflow.errors import SecretDecryptionError

logger = logging.getLogger(__name__)


class SecretKeyNotConfigured(RuntimeError):
    """Raised when no encryption key is configured and the development key is not allowed."""


def _dev_key() -> bytes:
    seed = b"taskflow-storage-local-secret"
    return base64.urlsafe_b64encode(hashlib.sha256(seed).digest())


class SecretCipher:
    def __init__(self, key: Optional[str] = None, allow_development_key: bool = False):
        if key:
            self._fernet = Fernet(key.encode("utf-8"))
        elif allow_development_key:
            logger.warning("TASKFLOW_SECRET_KEY is not set; using the development key")
            self._fernet = Fernet(_dev_key())
        else:
            raise SecretKeyNotConfigured(
                "TASKFLOW_SECRET_KEY is required to store self-hosted connection strings"
            )

    @staticmethod
    def generate_key() -> str:
        return Fernet.generate_key().decode("utf-8")

    def encrypt(self, plaintext: str) -> str:
        return self._fernet.encrypt(plaintext.encode("utf-8")).decode("utf-8")

    def decrypt(self, token: str) -> str:
        try:
            return self._fernet.decrypt(token.encode("utf-8")).decode("utf-8")
        except InvalidToken as exc:
            raise SecretDecryptionError("Stored connection string could not be decrypted") from exc
