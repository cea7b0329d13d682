# ==============================================
# MongoConnection / MongoConnectionPool
# ==============================================
#
# PURPOSE:
#   Own every pymongo client the process opens. The prober and the
#   schema initializer use short-lived MongoConnection objects; the
#   router asks the pool for long-lived per-tenant clients.
#
# CLASS: MongoConnection
# ----------------------
#   Stateful - holds one pymongo client.
#
#   Constructor:
#   ------------
#   - __init__(uri, database_name, options=None, client_factory=None)
#
#   Methods:
#   --------
#   - connect(ping: bool = False) -> None
#   - disconnect() -> None
#   - database (property) -> pymongo Database
#
#   Context Manager:
#   ----------------
#   - __enter__ / __exit__ for `with MongoConnection(...) as conn:` usage.
#
# CLASS: MongoConnectionPool
# --------------------------
#   - official_database() -> Database
#   - self_hosted_database(tenant_id, details) -> Database
#   - release(tenant_id, keep_fingerprint=None) -> None
#       retire the tenant's client unless it still matches
#   - reap_retired() -> int   (close retired clients past the grace period)
#   - close_all() -> None
#
#   Locking: the official client has its own lock. Tenant clients are
#   built outside the pool lock and inserted with a double check.
#
# FUNCTIONS:
# ----------
# - build_client_options(uri, timeout_seconds=None) -> dict
#     Pool/timeouts plus TLS defaults derived from the URI:
#       * URI carries ssl/tls parameters → respect them
#       * Atlas or any non-local host    → tls=True
#       * localhost                      → driver default
#
# ==============================================

import logging
import threading
import time
from typing import Any, Callable, Dict, List, Optional, Tuple
from urllib.parse import parse_qs, urlsplit

from pymongo import MongoClient as PyMongoClient

from taskflow.config import OfficialStoreConfig
from taskflow.routing.configuration import ConnectionDetails, mask_connection_string

logger = logging.getLogger(__name__)

ClientFactory = Callable[..., Any]

_TLS_URI_PARAMS = {
    "ssl", "tls", "tlsallowinvalidcertificates", "tlsallowinvalidhostnames",
    "tlscafile", "tlscertificatekeyfile", "tlscertificatekeyfilepassword",
    "tlsinsecure", "tlsdisableocspendpointcheck",
}

_BASE_OPTIONS: Dict[str, Any] = {
    "maxPoolSize": 10,
    "serverSelectionTimeoutMS": 30000,
    "socketTimeoutMS": 60000,
    "connectTimeoutMS": 30000,
    "heartbeatFrequencyMS": 10000,
    "retryWrites": True,
    "retryReads": True,
    "maxIdleTimeMS": 30000,
    "maxConnecting": 5,
}


def default_client_factory(uri: str, **options: Any) -> PyMongoClient:
    return PyMongoClient(uri, **options)


def _uri_has_tls_params(uri: str) -> bool:
    query = parse_qs(urlsplit(uri).query)
    return any(key.lower() in _TLS_URI_PARAMS for key in query)


def _is_local_host(uri: str) -> bool:
    hosts = urlsplit(uri).netloc.split("@")[-1]
    return all(
        host.split(":")[0] in ("localhost", "127.0.0.1", "[::1]")
        for host in hosts.split(",")
    )


def build_client_options(uri: str, timeout_seconds: Optional[float] = None) -> Dict[str, Any]:
    """
    Connection options for a MongoDB URI.

    Args:
        uri: The connection string
        timeout_seconds: If given, overrides server selection, connect and
            socket timeouts (used by the prober for fail-fast behaviour)

    Returns:
        Keyword arguments for pymongo.MongoClient
    """
    options = dict(_BASE_OPTIONS)

    if timeout_seconds is not None:
        timeout_ms = max(int(timeout_seconds * 1000), 1)
        options["serverSelectionTimeoutMS"] = timeout_ms
        options["connectTimeoutMS"] = timeout_ms
        options["socketTimeoutMS"] = timeout_ms

    if _uri_has_tls_params(uri):
        # TLS settings in the URI win; adding our own would conflict
        return options

    if not _is_local_host(uri):
        options["tls"] = True
        options["tlsAllowInvalidCertificates"] = False
        options["tlsAllowInvalidHostnames"] = False

    return options


class MongoConnection:
    def __init__(
        self,
        uri: str,
        database_name: str,
        options: Optional[Dict[str, Any]] = None,
        client_factory: Optional[ClientFactory] = None,
    ):
        # Store connection params. Don't connect yet.
        self.uri = uri
        self.database_name = database_name
        self.options = options if options is not None else build_client_options(uri)
        self._client_factory = client_factory or default_client_factory
        self.client = None

    def connect(self, ping: bool = False) -> None:
        """Create the client; with ping=True also round-trip to the server."""
        self.client = self._client_factory(self.uri, **self.options)
        if ping:
            self.client[self.database_name].command("ping")
        logger.debug(
            "Opened MongoDB client for %s (db=%s)",
            mask_connection_string(self.uri), self.database_name,
        )

    def disconnect(self) -> None:
        if self.client is not None:
            try:
                self.client.close()
            finally:
                self.client = None

    @property
    def database(self):
        if self.client is None:
            raise RuntimeError("Not connected to MongoDB.")
        return self.client[self.database_name]

    def __enter__(self) -> "MongoConnection":
        self.connect()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.disconnect()


class MongoConnectionPool:
    """
    Long-lived clients: one for the official store, one per self-hosted
    tenant.

    A replaced or released tenant client is retired, not closed: handles
    resolved before the change may still be using it. Retired clients are
    closed once they are older than `retire_grace_seconds`, which is longer
    than any socket timeout, or by close_all().
    """

    def __init__(
        self,
        official: OfficialStoreConfig,
        client_factory: Optional[ClientFactory] = None,
        retire_grace_seconds: float = 90.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._official_config = official
        self._client_factory = client_factory or default_client_factory
        self._retire_grace_seconds = retire_grace_seconds
        self._clock = clock
        self._official_lock = threading.Lock()
        self._lock = threading.Lock()
        self._official: Optional[MongoConnection] = None
        # tenant_id -> (fingerprint, connection)
        self._tenants: Dict[str, Tuple[str, MongoConnection]] = {}
        # (retired_at, tenant_id, connection)
        self._retired: List[Tuple[float, str, MongoConnection]] = []

    def official_database(self):
        with self._official_lock:
            if self._official is None:
                connection = MongoConnection(
                    self._official_config.uri,
                    self._official_config.database,
                    client_factory=self._client_factory,
                )
                connection.connect()
                self._official = connection
            return self._official.database

    def self_hosted_database(self, tenant_id: str, details: ConnectionDetails):
        fingerprint = details.fingerprint()
        with self._lock:
            current = self._tenants.get(tenant_id)
            if current is not None and current[0] == fingerprint:
                return current[1].database

        # Client construction may block on DNS (mongodb+srv); keep it off the lock
        connection = MongoConnection(
            details.connection_string.get_secret_value(),
            details.database_name,
            client_factory=self._client_factory,
        )
        connection.connect()

        duplicate: Optional[MongoConnection] = None
        with self._lock:
            current = self._tenants.get(tenant_id)
            if current is not None and current[0] == fingerprint:
                duplicate, connection = connection, current[1]
            else:
                if current is not None:
                    self._retire(tenant_id, current[1])
                self._tenants[tenant_id] = (fingerprint, connection)
            database = connection.database

        if duplicate is not None:
            # Lost the race; this client was never handed out
            duplicate.disconnect()
        else:
            logger.info(
                "Connected tenant %s to self-hosted database %s at %s",
                tenant_id, details.database_name, details.masked_connection_string,
            )
        self.reap_retired()
        return database

    def release(self, tenant_id: str, keep_fingerprint: Optional[str] = None) -> None:
        """
        Retire the tenant's client unless it still matches `keep_fingerprint`.
        """
        with self._lock:
            current = self._tenants.get(tenant_id)
            if current is None or current[0] == keep_fingerprint:
                return
            del self._tenants[tenant_id]
            self._retire(tenant_id, current[1])
        self.reap_retired()

    def reap_retired(self) -> int:
        """Close retired clients past the grace period. Returns how many were closed."""
        cutoff = self._clock() - self._retire_grace_seconds
        with self._lock:
            expired = [entry for entry in self._retired if entry[0] <= cutoff]
            self._retired = [entry for entry in self._retired if entry[0] > cutoff]
        for _, tenant_id, connection in expired:
            self._disconnect(tenant_id, connection)
        return len(expired)

    def close_all(self) -> None:
        with self._lock:
            entries = [(tenant_id, connection) for tenant_id, (_, connection) in self._tenants.items()]
            entries.extend((tenant_id, connection) for _, tenant_id, connection in self._retired)
            self._tenants.clear()
            self._retired = []
        with self._official_lock:
            official, self._official = self._official, None
        for tenant_id, connection in entries:
            self._disconnect(tenant_id, connection)
        if official is not None:
            official.disconnect()
        logger.info("All connection cache cleared")

    def _retire(self, tenant_id: str, connection: MongoConnection) -> None:
        # Caller holds self._lock
        self._retired.append((self._clock(), tenant_id, connection))
        logger.debug("Retired client for tenant %s", tenant_id)

    @staticmethod
    def _disconnect(tenant_id: str, connection: MongoConnection) -> None:
        try:
            connection.disconnect()
        except Exception as exc:
            logger.warning("Error closing cached connection for tenant %s: %s", tenant_id, exc)
