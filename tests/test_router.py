# ==============================================
# Tests for StorageRouter + RouterCache + CacheInvalidator
# ==============================================
#
# TEST CASES:
# -----------
# class TestIdentityIsolation:
#     membership/identity resolves to the official store for every
#     tenant kind, mode and flag combination
#
# class TestCategoryRouting:
#     task data follows the mode, org metadata follows the flag,
#     official handles are scoped, self-hosted handles are not
#
# class TestRouterCache:
#     TTL expiry, compare-and-swap on invalidation, single refresh
#     under concurrent resolution
#
# class TestCoherence:
#     every router sharing an invalidator sees a change immediately;
#     without the signal the TTL bounds staleness
# ==============================================

import threading
import time
from unittest.mock import MagicMock

import pytest
from cryptography.fernet import Fernet

from taskflow.config import OfficialStoreConfig
from taskflow.persistence import SecretCipher, StorageConfigurationStore
from taskflow.routing import (
    ConnectionDetails,
    EntityCategory,
    OfficialStorage,
    SelfHostedStorage,
    TenantKind,
    default_configuration,
)
from taskflow.storage import (
    CacheInvalidator,
    MongoConnectionPool,
    RouterCache,
    StorageLocation,
    StorageRouter,
)

OFFICIAL_URI = "mongodb://official.test:27017"


@pytest.fixture
def pool(client_factory):
    pool = MongoConnectionPool(
        OfficialStoreConfig(uri=OFFICIAL_URI, database="taskflow_official"),
        client_factory=client_factory,
    )
    yield pool
    pool.close_all()


@pytest.fixture
def store(pool):
    return StorageConfigurationStore(pool.official_database(), SecretCipher(Fernet.generate_key().decode()))


@pytest.fixture
def invalidator():
    return CacheInvalidator()


@pytest.fixture
def make_router(store, pool, invalidator, clock):
    routers = []

    def factory(ttl_seconds=5.0):
        router = StorageRouter(store, pool, RouterCache(ttl_seconds, clock), invalidator)
        routers.append(router)
        return router

    yield factory
    for router in routers:
        router.close()


def _self_hosted(uri, tenant_id="org-42", kind=TenantKind.ORGANIZATION, include=False):
    return SelfHostedStorage(
        tenant_id=tenant_id,
        connection=ConnectionDetails.from_plain(uri, "acme"),
        tenant_kind=kind,
        include_organization_metadata=include,
    )


class TestIdentityIsolation:
    @pytest.mark.parametrize("kind", list(TenantKind))
    @pytest.mark.parametrize("mode", ["official", "self_hosted"])
    @pytest.mark.parametrize("include", [False, True])
    def test_identity_always_official(self, make_router, store, self_hosted_uri, kind, mode, include):
        if mode == "official":
            configuration = OfficialStorage(tenant_id="t1", tenant_kind=kind, include_organization_metadata=include)
        else:
            configuration = _self_hosted(self_hosted_uri, "t1", kind, include)
        store.set("t1", configuration)
        router = make_router()

        handle = router.resolve("t1", EntityCategory.MEMBERSHIP_AND_IDENTITY)

        assert handle.location == StorageLocation.OFFICIAL
        assert handle.database_name == "taskflow_official"
        assert handle.scope == {}

    @pytest.mark.parametrize("name", ["users", "organizationMembers", "organizationInvitations", "roles"])
    def test_identity_collections_official_for_self_hosted_tenant(self, make_router, store, self_hosted_uri, name):
        store.set("org-42", _self_hosted(self_hosted_uri, include=True))
        assert make_router().resolve_collection("org-42", name).is_official

    def test_identity_does_not_read_configuration(self, make_router, store):
        router = make_router()
        store.get = MagicMock(side_effect=AssertionError("configuration should not be read"))
        assert router.resolve("anyone", EntityCategory.MEMBERSHIP_AND_IDENTITY).is_official


class TestCategoryRouting:
    def test_official_task_data_is_scoped(self, make_router, store):
        store.ensure_default("org-42", TenantKind.ORGANIZATION)

        handle = make_router().resolve("org-42", EntityCategory.TASK_DATA)

        assert handle.is_official
        assert handle.scope == {"organizationId": "org-42"}

    def test_user_scope(self, make_router):
        handle = make_router().resolve("u1", EntityCategory.TASK_DATA)
        assert handle.scope == {"userId": "u1"}

    def test_self_hosted_task_data(self, make_router, store, self_hosted_uri, client_factory):
        store.set("org-42", _self_hosted(self_hosted_uri))

        handle = make_router().resolve("org-42", EntityCategory.TASK_DATA)

        assert handle.location == StorageLocation.SELF_HOSTED
        assert handle.database_name == "acme"
        assert handle.scope == {}
        handle.collection("tasks").insert_one({"title": "x"})
        assert client_factory.database(self_hosted_uri, "acme")["tasks"].count_documents({}) == 1

    def test_org_metadata_follows_flag(self, make_router, store, self_hosted_uri):
        router = make_router()
        store.set("org-42", _self_hosted(self_hosted_uri, include=False))
        assert router.resolve("org-42", EntityCategory.ORGANIZATION_METADATA).is_official

        store.set("org-42", _self_hosted(self_hosted_uri, include=True))
        router.cache.invalidate("org-42")
        handle = router.resolve("org-42", EntityCategory.ORGANIZATION_METADATA)
        assert handle.location == StorageLocation.SELF_HOSTED

    def test_official_counts_only_own_documents(self, make_router, pool):
        tasks = pool.official_database()["tasks"]
        tasks.insert_many([{"userId": "u1"}, {"userId": "u1"}, {"userId": "u2"}])

        assert make_router().resolve("u1", EntityCategory.TASK_DATA).count("tasks") == 2


class TestRouterCache:
    def test_cached_until_ttl(self, make_router, store, clock):
        router = make_router(ttl_seconds=5.0)
        store.get = MagicMock(wraps=store.get)

        router.configuration("u1")
        router.configuration("u1")
        clock.advance(4.0)
        router.configuration("u1")
        assert store.get.call_count == 1

        clock.advance(1.0)
        router.configuration("u1")
        assert store.get.call_count == 2

    def test_put_rejected_after_invalidation(self, clock):
        cache = RouterCache(ttl_seconds=5.0, clock=clock)
        generation = cache.generation("u1")

        cache.invalidate("u1")

        assert not cache.put("u1", default_configuration("u1"), generation)
        assert cache.get("u1") is None
        assert cache.put("u1", default_configuration("u1"), cache.generation("u1"))
        assert cache.get("u1") is not None

    def test_clear(self, clock):
        cache = RouterCache(clock=clock)
        cache.put("a", default_configuration("a"), 0)
        cache.put("b", default_configuration("b"), 0)
        cache.clear()
        assert len(cache) == 0
        assert not cache.put("a", default_configuration("a"), 0)

    def test_concurrent_resolution_refreshes_once(self, make_router, store):
        router = make_router()
        real_get = store.get

        def slow_get(tenant_id):
            time.sleep(0.05)
            return real_get(tenant_id)

        store.get = MagicMock(side_effect=slow_get)
        barrier = threading.Barrier(8)
        results = []

        def worker():
            barrier.wait()
            results.append(router.resolve("u1", EntityCategory.TASK_DATA).location)

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert results == [StorageLocation.OFFICIAL] * 8
        assert store.get.call_count == 1


class TestCoherence:
    def test_all_routers_see_change_after_invalidation(self, make_router, store, invalidator, self_hosted_uri):
        first, second = make_router(), make_router()
        assert first.resolve("org-42", EntityCategory.TASK_DATA).is_official
        assert second.resolve("org-42", EntityCategory.TASK_DATA).is_official

        store.set("org-42", _self_hosted(self_hosted_uri))
        invalidator.invalidate("org-42")

        assert first.resolve("org-42", EntityCategory.TASK_DATA).location == StorageLocation.SELF_HOSTED
        assert second.resolve("org-42", EntityCategory.TASK_DATA).location == StorageLocation.SELF_HOSTED

    def test_missed_invalidation_bounded_by_ttl(self, make_router, store, clock, self_hosted_uri):
        router = make_router(ttl_seconds=5.0)
        assert router.resolve("org-42", EntityCategory.TASK_DATA).is_official

        store.set("org-42", _self_hosted(self_hosted_uri))
        assert router.resolve("org-42", EntityCategory.TASK_DATA).is_official

        clock.advance(5.0)
        assert router.resolve("org-42", EntityCategory.TASK_DATA).location == StorageLocation.SELF_HOSTED

    def test_closed_router_stops_listening(self, make_router, invalidator):
        router = make_router()
        router.configuration("u1")
        router.close()

        invalidator.invalidate("u1")

        assert router.cache.get("u1") is not None

    def test_invalidator_returns_after_all_subscribers(self):
        invalidator = CacheInvalidator()
        seen = []
        invalidator.subscribe(seen.append)
        unsubscribe = invalidator.subscribe(lambda tenant_id: seen.append(tenant_id.upper()))

        invalidator.invalidate("org-42")
        unsubscribe()
        invalidator.invalidate("org-7")

        assert seen == ["org-42", "ORG-42", "org-7"]
