# ==============================================
# RouterCache / CacheInvalidator
# ==============================================
#
# PURPOSE:
#   Keep recent configuration lookups in memory so the router does
#   not read the official store on every request, and drop them the
#   moment a tenant's configuration changes.
#
# CLASS: RouterCache
# ------------------
#   Keyed by tenant. Entries expire after `ttl_seconds` regardless of
#   invalidation, bounding staleness if a signal is ever missed.
#
#   Concurrency:
#     * one dict lock, held only for dictionary operations
#     * one lock per tenant, held by the router while it refreshes
#       that tenant (no cross-tenant blocking)
#     * a generation number per tenant, bumped by invalidate();
#       put() only succeeds if the generation is unchanged since the
#       refresh began (compare-and-swap). A refresh that read the old
#       configuration before an invalidation cannot re-insert it.
#
#   The clock is injectable so tests control expiry.
#
# CLASS: CacheInvalidator
# -----------------------
#   Process-wide, synchronous invalidation channel. Every router cache
#   (and the connection pool) subscribes; invalidate(tenant_id) returns
#   only after every subscriber has dropped its state. Idempotent.
#
# ==============================================

import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional

from taskflow.routing.configuration import StorageConfiguration

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RouterCacheEntry:
    tenant_id: str
    configuration: StorageConfiguration
    cached_at: float


class RouterCache:
    def __init__(self, ttl_seconds: float = 5.0, clock: Callable[[], float] = time.monotonic):
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._lock = threading.Lock()
        self._entries: Dict[str, RouterCacheEntry] = {}
        self._generations: Dict[str, int] = {}
        self._tenant_locks: Dict[str, threading.Lock] = {}

    def get(self, tenant_id: str) -> Optional[RouterCacheEntry]:
        """Return a fresh entry, evicting it if the TTL has passed."""
        with self._lock:
            entry = self._entries.get(tenant_id)
            if entry is None:
                return None
            if self._clock() - entry.cached_at >= self.ttl_seconds:
                del self._entries[tenant_id]
                return None
            return entry

    def generation(self, tenant_id: str) -> int:
        with self._lock:
            return self._generations.get(tenant_id, 0)

    def put(self, tenant_id: str, configuration: StorageConfiguration, generation: int) -> bool:
        with self._lock:
            if self._generations.get(tenant_id, 0) != generation:
                return False
            self._entries[tenant_id] = RouterCacheEntry(
                tenant_id=tenant_id,
                configuration=configuration,
                cached_at=self._clock(),
            )
            return True

    def invalidate(self, tenant_id: str) -> None:
        with self._lock:
            self._generations[tenant_id] = self._generations.get(tenant_id, 0) + 1
            self._entries.pop(tenant_id, None)

    def clear(self) -> None:
        with self._lock:
            for tenant_id in list(self._entries):
                self._generations[tenant_id] = self._generations.get(tenant_id, 0) + 1
            self._entries.clear()

    def tenant_lock(self, tenant_id: str) -> threading.Lock:
        with self._lock:
            lock = self._tenant_locks.get(tenant_id)
            if lock is None:
                lock = self._tenant_locks[tenant_id] = threading.Lock()
            return lock

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


class CacheInvalidator:
    def __init__(self):
        self._lock = threading.Lock()
        self._subscribers: List[Callable[[str], None]] = []

    def subscribe(self, callback: Callable[[str], None]) -> Callable[[], None]:
        """Register a callback; returns a function that unsubscribes it."""
        with self._lock:
            self._subscribers.append(callback)

        def unsubscribe() -> None:
            with self._lock:
                if callback in self._subscribers:
                    self._subscribers.remove(callback)

        return unsubscribe

    def invalidate(self, tenant_id: str) -> None:
        with self._lock:
            subscribers = list(self._subscribers)
        for callback in subscribers:
            callback(tenant_id)
        logger.info("Cache invalidated for tenant: %s (%d subscribers)", tenant_id, len(subscribers))
