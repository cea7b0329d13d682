# ==============================================
# StorageService - Orchestrator
# ==============================================
#
# PURPOSE:
#   The one class the HTTP layer and the CLI talk to. It builds every
#   component from AppConfig and wires them together; everything else
#   is internal.
#
# HOW IT CONNECTS THE TOPICS:
#
#   ┌──────────────────────────────────────────────────────────┐
#   │                     StorageService                       │
#   │                                                          │
#   │  ┌──────────────────────────────────────────────┐        │
#   │  │ PERSISTENCE                                  │        │
#   │  │  SecretCipher → StorageConfigurationStore    │        │
#   │  └──────────────┬───────────────────────────────┘        │
#   │                 │ configuration lookups                  │
#   │                 ▼                                        │
#   │  ┌──────────────────────────────────────────────┐        │
#   │  │ STORAGE                                      │        │
#   │  │  MongoConnectionPool                         │        │
#   │  │  StorageRouter ← RouterCache ← Invalidator   │        │
#   │  └──────────────┬───────────────────────────────┘        │
#   │                 │ mode changes                           │
#   │                 ▼                                        │
#   │  ┌──────────────────────────────────────────────┐        │
#   │  │ MIGRATION                                    │        │
#   │  │  MigrationGuard → Prober, Store, Invalidator,│        │
#   │  │                   SchemaInitializer          │        │
#   │  └──────────────────────────────────────────────┘        │
#   └──────────────────────────────────────────────────────────┘
#
# CLASS: StorageService
# ---------------------
#
#   Constructor:
#   ------------
#   - __init__(config=None, client_factory=None, cache_clock=None)
#       1. Load config (from .env or passed in)
#       2. Open the official store through the connection pool
#       3. Build store, invalidator, router, prober, initializer, guard
#       4. Subscribe the pool so invalidation retires tenant clients
#          whose connection changed
#
#   Public Methods:
#   ---------------
#   - test_connection(connection_string, database_name=None) -> ConnectionProbeResult
#   - configure(tenant_id, mode, ...) -> MigrationOutcome
#   - initialize(tenant_id, connection_string=None, database_name=None) -> InitializationReport
#   - invalidate_cache(tenant_id) -> None
#   - status(tenant_id) -> dict
#   - get_configuration(tenant_id) -> dict
#   - register_tenant(tenant_id, tenant_kind) -> dict
#   - list_configurations() -> list[dict]
#   - close() -> None
#
# ==============================================

import logging
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Union

from bson import ObjectId
from pymongo.errors import PyMongoError

from taskflow.config import AppConfig, get_config
from taskflow.errors import InvalidStorageRequest, StorageRoutingError
from taskflow.persistence import SecretCipher, StorageConfigurationStore
from taskflow.routing import (
    ORGANIZATION_METADATA_COLLECTIONS,
    TASK_DATA_COLLECTIONS,
    ConnectionDetails,
    EntityCategory,
    SelfHostedStorage,
    StorageMode,
    TenantKind,
    UnreadableConnection,
    is_valid_mongo_uri,
    to_public_dict,
)
from taskflow.storage import (
    CacheInvalidator,
    ConnectionProber,
    ConnectionProbeResult,
    InitializationReport,
    MigrationGuard,
    MigrationOutcome,
    MongoConnectionPool,
    RouterCache,
    SchemaInitializer,
    StorageChangeRequest,
    StorageRouter,
)
from taskflow.storage.mongo_client import ClientFactory

logger = logging.getLogger(__name__)

SAMPLE_COLLECTIONS = ("tasks", "columns")
SAMPLE_LIMIT = 5


def _parse_mode(mode: Union[str, StorageMode]) -> StorageMode:
    if isinstance(mode, StorageMode):
        return mode
    try:
        return StorageMode(str(mode).lower())
    except ValueError:
        raise InvalidStorageRequest(
            f"Unknown storage mode '{mode}'",
            field="mode",
            hint="Use 'official' or 'self_hosted'.",
        )


def _parse_tenant_kind(kind: Union[None, str, TenantKind]) -> Optional[TenantKind]:
    if kind is None or isinstance(kind, TenantKind):
        return kind
    try:
        return TenantKind(str(kind).lower())
    except ValueError:
        raise InvalidStorageRequest(
            f"Unknown tenant kind '{kind}'",
            field="tenantKind",
            hint="Use 'user' or 'organization'.",
        )


def _jsonable(value: Any) -> Any:
    """BSON values → plain JSON values for diagnostics output."""
    if isinstance(value, ObjectId):
        return str(value)
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, dict):
        return {key: _jsonable(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_jsonable(item) for item in value]
    return value


class StorageService:
    """
    Dual-storage routing service: official store plus optional
    per-tenant self-hosted MongoDB databases.
    """

    def __init__(
        self,
        config: Optional[AppConfig] = None,
        client_factory: Optional[ClientFactory] = None,
        cache_clock: Optional[Callable[[], float]] = None,
    ):
        """
        Args:
            config: Application configuration. If None, loads from environment.
            client_factory: Builds MongoDB clients; tests pass mongomock here
            cache_clock: Monotonic clock for the router cache TTL
        """
        self.config = config or get_config()
        timeouts = self.config.timeouts

        self.pool = MongoConnectionPool(self.config.official, client_factory=client_factory)
        self.cipher = SecretCipher(
            self.config.secrets.encryption_key,
            allow_development_key=self.config.secrets.allow_development_key,
        )
        self.store = StorageConfigurationStore(self.pool.official_database(), self.cipher)

        self.invalidator = CacheInvalidator()
        cache_kwargs = {"clock": cache_clock} if cache_clock is not None else {}
        self.router = StorageRouter(
            self.store,
            self.pool,
            cache=RouterCache(ttl_seconds=self.config.router.cache_ttl_seconds, **cache_kwargs),
            invalidator=self.invalidator,
        )
        self._unsubscribe_pool = self.invalidator.subscribe(self._release_stale_client)

        self.prober = ConnectionProber(
            timeout_seconds=timeouts.probe_timeout_seconds,
            default_database_name=self.config.default_database_name,
            client_factory=client_factory,
        )
        self.initializer = SchemaInitializer(
            timeout_seconds=timeouts.initialize_timeout_seconds,
            client_factory=client_factory,
        )
        self.guard = MigrationGuard(
            store=self.store,
            prober=self.prober,
            initializer=self.initializer,
            invalidator=self.invalidator,
            router=self.router,
            organization_loader=self._load_organization,
            count_timeout_seconds=timeouts.probe_timeout_seconds,
        )

    # ------------------------------------------------------------------
    # Connections
    # ------------------------------------------------------------------

    def test_connection(
        self, connection_string: str, database_name: Optional[str] = None
    ) -> ConnectionProbeResult:
        if not connection_string:
            raise InvalidStorageRequest("Connection string is required", field="connectionString")
        return self.prober.probe(connection_string, database_name or None)

    def configure(
        self,
        tenant_id: str,
        mode: Union[str, StorageMode],
        connection_string: Optional[str] = None,
        database_name: Optional[str] = None,
        include_organization_metadata: Optional[bool] = None,
        tenant_kind: Union[None, str, TenantKind] = None,
        confirm: bool = False,
    ) -> MigrationOutcome:
        """
        Change a tenant's storage mode through the MigrationGuard.

        Returns:
            MigrationOutcome (may carry an initialization warning)
        """
        storage_mode = _parse_mode(mode)
        if database_name and not connection_string:
            raise InvalidStorageRequest(
                "databaseName requires connectionString",
                field="databaseName",
                hint="Send the connection string together with the new database name.",
            )
        connection = None
        if connection_string:
            connection = ConnectionDetails.from_plain(
                connection_string,
                database_name or self.config.default_database_name,
            )
        request = StorageChangeRequest(
            tenant_id=tenant_id,
            mode=storage_mode,
            connection=connection,
            include_organization_metadata=include_organization_metadata,
            tenant_kind=_parse_tenant_kind(tenant_kind),
            confirm=confirm,
        )
        return self.guard.run(request)

    def initialize(
        self,
        tenant_id: str,
        connection_string: Optional[str] = None,
        database_name: Optional[str] = None,
    ) -> InitializationReport:
        """
        Run the schema initializer on demand.

        Without a connection string the tenant's configured self-hosted
        database is initialized. Tenant kind and the organization
        metadata flag always come from the stored configuration.
        """
        configuration = self.store.get(tenant_id)

        if database_name and not connection_string:
            raise InvalidStorageRequest(
                "databaseName requires connectionString",
                field="databaseName",
                hint="Send the connection string together with the database name.",
            )
        if connection_string:
            if not is_valid_mongo_uri(connection_string):
                raise InvalidStorageRequest(
                    "Connection string is not a valid MongoDB URI",
                    field="connectionString",
                )
            connection = ConnectionDetails.from_plain(
                connection_string, database_name or self.config.default_database_name
            )
        elif isinstance(configuration, SelfHostedStorage):
            if isinstance(configuration.connection, UnreadableConnection):
                raise InvalidStorageRequest(
                    f"The stored connection for tenant '{tenant_id}' cannot be decrypted",
                    field="connectionString",
                    hint="Pass the connection string explicitly.",
                )
            connection = configuration.connection
        else:
            raise InvalidStorageRequest(
                f"Tenant '{tenant_id}' uses the official store; nothing to initialize",
                field="connectionString",
                hint="Pass a connection string or configure self-hosted storage first.",
            )

        organization_document = None
        if (
            configuration.include_organization_metadata
            and configuration.tenant_kind == TenantKind.ORGANIZATION
        ):
            organization_document = self._load_organization(tenant_id)

        return self.initializer.initialize(
            connection,
            tenant_id=tenant_id,
            tenant_kind=configuration.tenant_kind,
            include_organization_metadata=configuration.include_organization_metadata,
            organization_document=organization_document,
        )

    def invalidate_cache(self, tenant_id: str) -> None:
        if not tenant_id:
            raise InvalidStorageRequest("Tenant ID is required", field="tenantId")
        self.invalidator.invalidate(tenant_id)

    # ------------------------------------------------------------------
    # Diagnostics
    # ------------------------------------------------------------------

    def status(self, tenant_id: str) -> Dict[str, Any]:
        """
        Current mode, masked connection, where each category resolves,
        and live counts and samples read through the router.
        """
        configuration = self.router.configuration(tenant_id)
        data = to_public_dict(configuration)
        errors: List[str] = []

        locations: Dict[str, Dict[str, Any]] = {}
        for category in EntityCategory:
            try:
                locations[category.value] = self.router.resolve(tenant_id, category).describe()
            except StorageRoutingError as exc:
                locations[category.value] = {"category": category.value, "error": exc.code}
                errors.append(f"resolve {category.value}: {exc}")
        data["locations"] = locations

        collections = list(TASK_DATA_COLLECTIONS)
        if configuration.include_organization_metadata:
            collections.extend(ORGANIZATION_METADATA_COLLECTIONS)

        counts: Dict[str, Optional[int]] = {}
        for name in collections:
            try:
                counts[name] = self.router.resolve_collection(tenant_id, name).count(name)
            except (PyMongoError, StorageRoutingError) as exc:
                counts[name] = None
                errors.append(f"count {name}: {exc}")
        data["counts"] = counts

        samples: Dict[str, List[Dict[str, Any]]] = {}
        for name in SAMPLE_COLLECTIONS:
            try:
                handle = self.router.resolve_collection(tenant_id, name)
                samples[name] = [_jsonable(document) for document in handle.sample(name, SAMPLE_LIMIT)]
            except (PyMongoError, StorageRoutingError) as exc:
                samples[name] = []
                errors.append(f"sample {name}: {exc}")
        data["sampleData"] = samples

        if errors:
            logger.warning("Status for %s incomplete: %s", tenant_id, "; ".join(errors))
            data["errors"] = errors
        return data

    def get_configuration(self, tenant_id: str) -> Dict[str, Any]:
        return to_public_dict(self.store.get(tenant_id))

    def register_tenant(
        self, tenant_id: str, tenant_kind: Union[str, TenantKind] = TenantKind.USER
    ) -> Dict[str, Any]:
        kind = _parse_tenant_kind(tenant_kind) or TenantKind.USER
        return to_public_dict(self.store.ensure_default(tenant_id, kind))

    def list_configurations(self) -> List[Dict[str, Any]]:
        return self.store.list_summaries()

    def close(self) -> None:
        self.router.close()
        if self._unsubscribe_pool is not None:
            self._unsubscribe_pool()
            self._unsubscribe_pool = None
        self.pool.close_all()

    def _release_stale_client(self, tenant_id: str) -> None:
        try:
            connection = self.store.get(tenant_id).connection
        except PyMongoError as exc:
            logger.warning("Could not read configuration for %s; keeping its client: %s", tenant_id, exc)
            return
        keep = connection.fingerprint() if connection is not None else None
        self.pool.release(tenant_id, keep_fingerprint=keep)

    def _load_organization(self, tenant_id: str) -> Optional[Dict[str, Any]]:
        return self.pool.official_database()["organizations"].find_one({"_id": tenant_id})
