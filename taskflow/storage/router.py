# ==============================================
# StorageRouter
# ==============================================
#
# PURPOSE:
#   Answer "which database does this read/write go to?" for a tenant
#   and an entity category, on every request.
#
# RULES:
#   - MEMBERSHIP_AND_IDENTITY → official store, always. The tenant's
#     configuration is not even consulted.
#   - TASK_DATA               → official or self-hosted per mode
#   - ORGANIZATION_METADATA   → per mode only if the tenant set
#                               include_organization_metadata, else
#                               official
#
#   In the official store many tenants share collections, so handles
#   carry a `scope` filter (organizationId / userId). A self-hosted
#   database belongs to one tenant and has an empty scope.
#
# CLASS: StorageRouter
# --------------------
#   Constructor:
#   ------------
#   - __init__(store, pool, cache=None, invalidator=None)
#       Subscribes its cache to the invalidator so that any
#       configuration change drops the cached lookup immediately.
#
#   Methods:
#   --------
#   - resolve(tenant_id, category) -> PhysicalConnectionHandle
#   - resolve_collection(tenant_id, name) -> PhysicalConnectionHandle
#   - configuration(tenant_id) -> StorageConfiguration  (cached)
#   - close() -> None
#
# DATA CLASS: PhysicalConnectionHandle
# ------------------------------------
#   tenant_id, category, location, database_name, scope, database
#   - collection(name), count(name), sample(name, limit)
#
# ==============================================

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from taskflow.persistence.config_store import StorageConfigurationStore
from taskflow.routing.categories import EntityCategory, category_for_collection
from taskflow.routing.configuration import SelfHostedStorage, StorageConfiguration, tenant_scope
from taskflow.storage.cache import CacheInvalidator, RouterCache
from taskflow.storage.mongo_client import MongoConnectionPool

logger = logging.getLogger(__name__)


class StorageLocation(Enum):
    OFFICIAL = "official"
    SELF_HOSTED = "self_hosted"


@dataclass(frozen=True)
class PhysicalConnectionHandle:
    tenant_id: str
    category: EntityCategory
    location: StorageLocation
    database_name: str
    scope: Dict[str, Any] = field(default_factory=dict, hash=False)
    database: Any = field(default=None, compare=False, repr=False, hash=False)

    @property
    def is_official(self) -> bool:
        return self.location == StorageLocation.OFFICIAL

    def collection(self, name: str):
        return self.database[name]

    def count(self, name: str) -> int:
        return self.database[name].count_documents(dict(self.scope))

    def sample(self, name: str, limit: int = 5) -> List[Dict[str, Any]]:
        return list(self.database[name].find(dict(self.scope)).limit(limit))

    def describe(self) -> Dict[str, Any]:
        return {
            "category": self.category.value,
            "location": self.location.value,
            "databaseName": self.database_name,
        }


class StorageRouter:
    def __init__(
        self,
        store: StorageConfigurationStore,
        pool: MongoConnectionPool,
        cache: Optional[RouterCache] = None,
        invalidator: Optional[CacheInvalidator] = None,
    ):
        self._store = store
        self._pool = pool
        self.cache = cache or RouterCache()
        self._unsubscribe = invalidator.subscribe(self.cache.invalidate) if invalidator else None

    def resolve(self, tenant_id: str, category: EntityCategory) -> PhysicalConnectionHandle:
        """
        Resolve the physical database for one tenant and one category.

        Args:
            tenant_id: User or organization id
            category: Which kind of data is being read/written

        Returns:
            PhysicalConnectionHandle pointing at the governing database
        """
        if category == EntityCategory.MEMBERSHIP_AND_IDENTITY:
            return self._official_handle(tenant_id, category, scope={})

        configuration = self.configuration(tenant_id)
        follows_mode = (
            category == EntityCategory.TASK_DATA
            or configuration.include_organization_metadata
        )

        if follows_mode and isinstance(configuration, SelfHostedStorage):
            details = configuration.connection
            return PhysicalConnectionHandle(
                tenant_id=tenant_id,
                category=category,
                location=StorageLocation.SELF_HOSTED,
                database_name=details.database_name,
                scope={},
                database=self._pool.self_hosted_database(tenant_id, details),
            )

        return self._official_handle(
            tenant_id, category, scope=tenant_scope(configuration.tenant_kind, tenant_id)
        )

    def resolve_collection(self, tenant_id: str, name: str) -> PhysicalConnectionHandle:
        return self.resolve(tenant_id, category_for_collection(name))

    def configuration(self, tenant_id: str) -> StorageConfiguration:
        """Cached configuration lookup; refreshes under the tenant's lock."""
        entry = self.cache.get(tenant_id)
        if entry is not None:
            return entry.configuration

        with self.cache.tenant_lock(tenant_id):
            # Another request may have refreshed while we waited
            entry = self.cache.get(tenant_id)
            if entry is not None:
                return entry.configuration

            generation = self.cache.generation(tenant_id)
            configuration = self._store.get(tenant_id)
            if not self.cache.put(tenant_id, configuration, generation):
                logger.debug("Configuration for %s changed during refresh; not caching", tenant_id)
            return configuration

    def close(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None

    def _official_handle(
        self, tenant_id: str, category: EntityCategory, scope: Dict[str, Any]
    ) -> PhysicalConnectionHandle:
        database = self._pool.official_database()
        return PhysicalConnectionHandle(
            tenant_id=tenant_id,
            category=category,
            location=StorageLocation.OFFICIAL,
            database_name=database.name,
            scope=scope,
            database=database,
        )
