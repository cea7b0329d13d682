# ==============================================
# TOPIC 3: PERSISTENCE (Configuration in the official store)
# ==============================================
#
# This package saves and loads each tenant's storage configuration
# so that routing decisions survive process restarts.
#
# Modules:
# --------
# - config_store.py  → StorageConfigurationStore (get/set/reset)
# - secrets.py       → SecretCipher (connection strings at rest)
#
# ==============================================

from taskflow.errors import SecretDecryptionError

from .config_store import StorageConfigurationStore
from .secrets import SecretCipher, SecretKeyNotConfigured

__all__ = [
    "StorageConfigurationStore",
    "SecretCipher",
    "SecretDecryptionError",
    "SecretKeyNotConfigured",
]
