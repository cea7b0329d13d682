# ==============================================
# TOPIC 2: STORAGE (Everything that touches a MongoDB connection)
# ==============================================
#
# This package decides which physical database serves a request and
# manages the lifecycle of self-hosted databases.
#
# Modules:
# --------
# - mongo_client.py  → MongoConnection, MongoConnectionPool, client options
# - prober.py        → ConnectionProber (read/write round-trip test)
# - schema.py        → SchemaInitializer (collections, indexes, seed data)
# - cache.py         → RouterCache, CacheInvalidator
# - router.py        → StorageRouter, PhysicalConnectionHandle
# - migrator.py      → MigrationGuard (mode change state machine)
#
# ==============================================

from .cache import CacheInvalidator, RouterCache, RouterCacheEntry
from .migrator import (
    MigrationGuard,
    MigrationOutcome,
    MigrationRun,
    MigrationState,
    StorageChangeRequest,
    assess_change,
)
from .mongo_client import MongoConnection, MongoConnectionPool, build_client_options
from .prober import ConnectionProber, ConnectionProbeResult, FailureCategory, classify_failure
from .router import PhysicalConnectionHandle, StorageLocation, StorageRouter
from .schema import InitializationReport, SchemaInitializer

__all__ = [
    "CacheInvalidator",
    "RouterCache",
    "RouterCacheEntry",
    "MigrationGuard",
    "MigrationOutcome",
    "MigrationRun",
    "MigrationState",
    "StorageChangeRequest",
    "assess_change",
    "MongoConnection",
    "MongoConnectionPool",
    "build_client_options",
    "ConnectionProber",
    "ConnectionProbeResult",
    "FailureCategory",
    "classify_failure",
    "PhysicalConnectionHandle",
    "StorageLocation",
    "StorageRouter",
    "InitializationReport",
    "SchemaInitializer",
]
