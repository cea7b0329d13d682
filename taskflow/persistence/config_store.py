import hashlib
import logging
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from taskflow.errors import InvalidStorageRequest, SecretDecryptionError
from taskflow.persistence.secrets import SecretCipher
from taskflow.routing.configuration import (
    ConnectionDetails,
    OfficialStorage,
    SelfHostedStorage,
    StorageConfiguration,
    StorageMode,
    TenantKind,
    UnreadableConnection,
    default_configuration,
    to_public_dict,
)

logger = logging.getLogger(__name__)


# ==============================================
# StorageConfigurationStore
# ==============================================
#
# PURPOSE:
#   Persist each tenant's StorageConfiguration so that routing
#   decisions survive restarts and are shared by every process.
#
#   The store itself ALWAYS lives in the official database: the
#   router needs a fixed place to look up where everything else is.
#
# WHAT IS PERSISTED (collection "storage_configurations"):
#   {
#     _id: tenantId,
#     tenantKind: "user" | "organization",
#     mode: "official" | "self_hosted",
#     connection: {connectionStringEncrypted, databaseName} | absent,
#     includeOrganizationMetadata: bool,
#     lastVerifiedAt, updatedAt, createdAt: datetime
#   }
#
#   Connection strings are Fernet-encrypted. Reads hand them back as
#   SecretStr; summaries only ever contain the masked form.
#
def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    # BSON datetimes come back naive (UTC) unless the client is tz_aware
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


# CLASS: StorageConfigurationStore
# --------------------------------
#   Stateful - holds the official database handle and the cipher.
#
#   Constructor:
#   ------------
#   - __init__(database, cipher, clock=None)
#
class StorageConfigurationStore:
    """
    Durable per-tenant storage configuration.

    Records are never deleted; "removing" self-hosting is a reset to
    OFFICIAL with the connection cleared.
    """

    COLLECTION = "storage_configurations"

    def __init__(
        self,
        database,
        cipher: SecretCipher,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        """
        Args:
            database: pymongo Database of the official store
            cipher: Encrypts/decrypts connection strings
            clock: Returns "now"; injectable for tests
        """
        self._collection = database[self.COLLECTION]
        self._cipher = cipher
        self._clock = clock or _utcnow

#   Methods:
#   --------
#   - get(tenant_id) -> StorageConfiguration
#       Default OFFICIAL configuration when no record exists.
#
#   - set(tenant_id, configuration) -> StorageConfiguration
#       Single-document atomic replace_one(..., upsert=True) of the
#       whole configuration; createdAt is carried over.
#
#   - ensure_default(tenant_id, tenant_kind) -> StorageConfiguration
#       Tenant creation: insert OFFICIAL only if no record exists.
#
#   - reset(tenant_id) -> OfficialStorage
#
#   - list_summaries() -> list[dict]   (masked)
#
    def get(self, tenant_id: str) -> StorageConfiguration:
        """
        Load a tenant's configuration.

        Returns:
            The stored configuration, or the default OFFICIAL one
        """
        self._require_tenant_id(tenant_id)
        document = self._collection.find_one({"_id": tenant_id})
        if document is None:
            return default_configuration(tenant_id)
        return self._from_document(document)

    def set(self, tenant_id: str, configuration: StorageConfiguration) -> StorageConfiguration:
        """
        Replace mode, connection and flags for a tenant in one write.

        Args:
            tenant_id: The tenant being configured
            configuration: The full new configuration

        Returns:
            The configuration as stored (with updated_at filled in)
        """
        self._require_tenant_id(tenant_id)
        if configuration.tenant_id != tenant_id:
            raise InvalidStorageRequest(
                f"Configuration belongs to '{configuration.tenant_id}', not '{tenant_id}'",
                field="tenantId",
            )

        now = self._clock()
        existing = self._collection.find_one({"_id": tenant_id}, {"createdAt": 1})
        document: Dict[str, Any] = {
            "_id": tenant_id,
            "tenantKind": configuration.tenant_kind.value,
            "mode": configuration.mode.value,
            "includeOrganizationMetadata": configuration.include_organization_metadata,
            "lastVerifiedAt": configuration.last_verified_at,
            "createdAt": (existing or {}).get("createdAt", now),
            "updatedAt": now,
        }
        if isinstance(configuration, SelfHostedStorage):
            document["connection"] = {
                "connectionStringEncrypted": self._cipher.encrypt(
                    configuration.connection.connection_string.get_secret_value()
                ),
                "databaseName": configuration.connection.database_name,
            }

        self._collection.replace_one({"_id": tenant_id}, document, upsert=True)

        logger.info("Saved storage configuration for %s: mode=%s", tenant_id, configuration.mode.value)
        return self.get(tenant_id)

    def ensure_default(
        self, tenant_id: str, tenant_kind: TenantKind = TenantKind.USER
    ) -> StorageConfiguration:
        self._require_tenant_id(tenant_id)
        now = self._clock()
        self._collection.update_one(
            {"_id": tenant_id},
            {"$setOnInsert": {
                "tenantKind": tenant_kind.value,
                "mode": StorageMode.OFFICIAL.value,
                "includeOrganizationMetadata": False,
                "lastVerifiedAt": None,
                "createdAt": now,
                "updatedAt": now,
            }},
            upsert=True,
        )
        return self.get(tenant_id)

    def reset(self, tenant_id: str) -> OfficialStorage:
        current = self.get(tenant_id)
        return self.set(tenant_id, OfficialStorage(
            tenant_id=tenant_id,
            tenant_kind=current.tenant_kind,
            include_organization_metadata=current.include_organization_metadata,
        ))

    def list_summaries(self) -> List[Dict[str, Any]]:
        return [
            to_public_dict(self._from_document(document))
            for document in self._collection.find({}).sort("_id", 1)
        ]

#   SERIALIZATION:
#   - _from_document(document) -> StorageConfiguration
#       A self-hosted record without a usable connection is read back
#       as OFFICIAL; the tagged union cannot hold anything else.
#       A connection the current key cannot decrypt stays self-hosted
#       with an UnreadableConnection.
#
    def _from_document(self, document: Dict[str, Any]) -> StorageConfiguration:
        tenant_id = document["_id"]
        common = {
            "tenant_id": tenant_id,
            "tenant_kind": TenantKind(document.get("tenantKind", TenantKind.USER.value)),
            "include_organization_metadata": bool(document.get("includeOrganizationMetadata", False)),
            "last_verified_at": _as_utc(document.get("lastVerifiedAt")),
            "updated_at": _as_utc(document.get("updatedAt")),
        }

        connection = document.get("connection") or {}
        if document.get("mode") == StorageMode.SELF_HOSTED.value:
            token = connection.get("connectionStringEncrypted")
            database_name = connection.get("databaseName")
            if token and database_name:
                return SelfHostedStorage(connection=self._read_connection(tenant_id, token, database_name), **common)
            logger.error("Tenant %s is marked self-hosted without a connection; routing to official", tenant_id)

        return OfficialStorage(**common)

    def _read_connection(self, tenant_id: str, token: str, database_name: str):
        try:
            return ConnectionDetails.from_plain(self._cipher.decrypt(token), database_name)
        except SecretDecryptionError:
            logger.error("Stored connection string for tenant %s cannot be decrypted with the current key", tenant_id)
            digest = hashlib.sha256(token.encode("utf-8")).hexdigest()[:16]
            return UnreadableConnection(database_name=database_name, token_digest=digest)

    @staticmethod
    def _require_tenant_id(tenant_id: str) -> None:
        if not tenant_id or not isinstance(tenant_id, str):
            raise InvalidStorageRequest("Tenant ID is required", field="tenantId")
