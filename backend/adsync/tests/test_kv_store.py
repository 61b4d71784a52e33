"""Unit tests for the key/value backends.

WHAT: The same contract (get/set/delete/keys/add/usage + quota signalling)
      exercised against the in-memory, SQL (SQLite file) and Redis backends.
WHY: LocalCache's degradation ladder assumes every backend raises
     StorageQuotaExceededError the same way.
"""

import fnmatch
from datetime import datetime, timedelta

import pytest
from redis.exceptions import ResponseError

from adsync.database import build_session_factory
from adsync.deps import Settings
from adsync.services.kv_store import (
    InMemoryKeyValueStore,
    RedisKeyValueStore,
    SqlKeyValueStore,
    StorageQuotaExceededError,
    build_kv_store,
)

from .fakes import FakeClock


class _FakeRedis:
    """Just enough of redis.Redis for RedisKeyValueStore."""

    def __init__(self, oom=False):
        self.data = {}
        self.oom = oom
        self.expiries = {}

    def get(self, key):
        return self.data.get(key)

    def set(self, key, value, nx=False, ex=None):
        if self.oom:
            raise ResponseError("OOM command not allowed when used memory > 'maxmemory'.")
        if nx and key in self.data:
            return None
        self.data[key] = value
        if ex is not None:
            self.expiries[key] = ex
        return True

    def delete(self, key):
        return 1 if self.data.pop(key, None) is not None else 0

    def strlen(self, key):
        return len(self.data.get(key, b""))

    def scan_iter(self, match=None):
        for key in list(self.data):
            if match is None or fnmatch.fnmatch(key, match):
                yield key.encode()


class _Now:
    def __init__(self):
        self.value = datetime(2026, 10, 19, 12, 0)

    def __call__(self):
        return self.value


@pytest.fixture
def sql_now():
    return _Now()


@pytest.fixture(params=["memory", "sql", "redis"])
def backend(request, tmp_path, sql_now):
    if request.param == "memory":
        return InMemoryKeyValueStore(quota_bytes=100)
    if request.param == "sql":
        factory = build_session_factory(f"sqlite:///{tmp_path / 'cache.db'}")
        return SqlKeyValueStore(factory, quota_bytes=100, now=sql_now)
    return RedisKeyValueStore(_FakeRedis(), quota_bytes=100)


class TestContract:
    """Behaviour shared by every backend."""

    def test_set_get_delete(self, backend):
        backend.set("a", b"hello")
        assert backend.get("a") == b"hello"
        assert backend.delete("a") is True
        assert backend.get("a") is None
        assert backend.delete("a") is False

    def test_keys_by_prefix(self, backend):
        backend.set("meta_insights_cache_act_1", b"1")
        backend.set("meta_insights_cache_act_2", b"2")
        backend.set("meta_sync_status_act_1", b"3")

        assert backend.keys("meta_insights_cache_") == [
            "meta_insights_cache_act_1",
            "meta_insights_cache_act_2",
        ]

    def test_quota_counts_other_keys_only(self, backend):
        """WHAT: Overwriting a key only needs room for the new value.
        WHY: Every cache save rewrites the same blob key.
        """
        backend.set("a", b"x" * 60)
        backend.set("a", b"y" * 90)
        with pytest.raises(StorageQuotaExceededError):
            backend.set("b", b"z" * 20)
        assert backend.get("a") == b"y" * 90
        assert backend.usage_bytes() == 90

    def test_add_is_set_if_absent(self, backend):
        assert backend.add("lease", b"run-1", ttl_seconds=60) is True
        assert backend.add("lease", b"run-2", ttl_seconds=60) is False
        assert backend.get("lease") == b"run-1"


class TestExpiry:
    """Lease expiry for the backends that track time locally."""

    def test_memory_add_after_expiry(self):
        clock = FakeClock()
        store = InMemoryKeyValueStore(clock=clock)
        store.add("lease", b"run-1", ttl_seconds=10)

        clock.advance(11)

        assert store.get("lease") is None
        assert store.add("lease", b"run-2", ttl_seconds=10) is True

    def test_sql_add_after_expiry(self, tmp_path, sql_now):
        store = SqlKeyValueStore(build_session_factory(f"sqlite:///{tmp_path / 'c.db'}"), now=sql_now)
        store.add("lease", b"run-1", ttl_seconds=10)

        sql_now.value += timedelta(seconds=11)

        assert store.get("lease") is None
        assert store.add("lease", b"run-2", ttl_seconds=10) is True
        assert store.get("lease") == b"run-2"

    def test_redis_add_passes_ttl(self):
        fake = _FakeRedis()
        RedisKeyValueStore(fake).add("lease", b"x", ttl_seconds=3600)
        assert fake.expiries == {"adsync:lease": 3600}


class TestRedisSpecifics:
    def test_oom_maps_to_quota_error(self):
        store = RedisKeyValueStore(_FakeRedis(oom=True))
        with pytest.raises(StorageQuotaExceededError):
            store.set("a", b"1")

    def test_keys_are_namespaced(self):
        fake = _FakeRedis()
        store = RedisKeyValueStore(fake, namespace="test:")
        store.set("meta_sync_status_act_1", b"{}")

        assert list(fake.data) == ["test:meta_sync_status_act_1"]
        assert store.keys("meta_") == ["meta_sync_status_act_1"]


class TestBuildKvStore:
    def test_memory_backend(self):
        store = build_kv_store(Settings(CACHE_BACKEND="memory", CACHE_QUOTA_BYTES=10))
        assert isinstance(store, InMemoryKeyValueStore)
        assert store.quota_bytes == 10

    def test_sql_backend(self, tmp_path):
        settings = Settings(CACHE_BACKEND="sql", CACHE_DATABASE_URL=f"sqlite:///{tmp_path / 'k.db'}")
        assert isinstance(build_kv_store(settings), SqlKeyValueStore)

    def test_unknown_backend(self):
        with pytest.raises(ValueError):
            build_kv_store(Settings(CACHE_BACKEND="etcd"))
