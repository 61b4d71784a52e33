"""Key/value storage backends for the local insight cache.

WHAT:
    A small byte-oriented capability (get / set / delete / keys / add) with
    three implementations:
      - InMemoryKeyValueStore: dict with an optional byte quota (tests, single node)
      - SqlKeyValueStore: `cache_entries` table via SQLAlchemy (server deployment)
      - RedisKeyValueStore: shared Redis (multi-process API + arq worker)

WHY:
    LocalCache owns the merge and quota-degradation logic; backends only store
    bytes. Every backend signals a full store with StorageQuotaExceededError,
    so the same degradation ladder runs unchanged against each of them.

    `add(key, value, ttl)` is "set if absent or expired" and backs the
    per-account sync lease.
"""

from __future__ import annotations

import logging
import time
from abc import ABC, abstractmethod
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional, Tuple

from redis import Redis
from redis.exceptions import ResponseError
from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import sessionmaker

from ..database import session_scope
from ..models import CacheEntry

logger = logging.getLogger(__name__)


class StorageQuotaExceededError(Exception):
    """Raised by a backend when a write would exceed its storage quota."""

    def __init__(self, key: str, needed_bytes: int, quota_bytes: Optional[int] = None):
        self.key = key
        self.needed_bytes = needed_bytes
        self.quota_bytes = quota_bytes
        super().__init__(
            f"Storage quota exceeded writing {key} ({needed_bytes} bytes, quota {quota_bytes})"
        )


class KeyValueStore(ABC):
    """Byte-string key/value capability consumed by LocalCache."""

    @abstractmethod
    def get(self, key: str) -> Optional[bytes]:
        ...

    @abstractmethod
    def set(self, key: str, value: bytes) -> None:
        """Store value; raises StorageQuotaExceededError when the store is full."""

    @abstractmethod
    def delete(self, key: str) -> bool:
        ...

    @abstractmethod
    def keys(self, prefix: str = "") -> List[str]:
        ...

    @abstractmethod
    def add(self, key: str, value: bytes, ttl_seconds: float) -> bool:
        """Set only if the key is absent or expired. Returns True when written."""

    @abstractmethod
    def usage_bytes(self) -> int:
        ...


class InMemoryKeyValueStore(KeyValueStore):
    """Process-local store with an optional total byte quota."""

    def __init__(self, quota_bytes: Optional[int] = None, clock: Callable[[], float] = time.monotonic):
        self.quota_bytes = quota_bytes
        self._data: Dict[str, Tuple[bytes, Optional[float]]] = {}
        self._clock = clock

    def _live(self, key: str) -> Optional[bytes]:
        item = self._data.get(key)
        if item is None:
            return None
        value, expires_at = item
        if expires_at is not None and expires_at <= self._clock():
            del self._data[key]
            return None
        return value

    def get(self, key: str) -> Optional[bytes]:
        return self._live(key)

    def set(self, key: str, value: bytes) -> None:
        if self.quota_bytes is not None:
            other = sum(len(v) for k, (v, _) in self._data.items() if k != key)
            if other + len(value) > self.quota_bytes:
                raise StorageQuotaExceededError(key, len(value), self.quota_bytes)
        self._data[key] = (value, None)

    def delete(self, key: str) -> bool:
        return self._data.pop(key, None) is not None

    def keys(self, prefix: str = "") -> List[str]:
        return sorted(k for k in list(self._data) if k.startswith(prefix) and self._live(k) is not None)

    def add(self, key: str, value: bytes, ttl_seconds: float) -> bool:
        if self._live(key) is not None:
            return False
        self._data[key] = (value, self._clock() + ttl_seconds)
        return True

    def usage_bytes(self) -> int:
        return sum(len(v) for v, _ in self._data.values())


class SqlKeyValueStore(KeyValueStore):
    """Store backed by the `cache_entries` table."""

    def __init__(
        self,
        session_factory: sessionmaker,
        quota_bytes: Optional[int] = None,
        now: Callable[[], datetime] = datetime.utcnow,
    ):
        self._factory = session_factory
        self.quota_bytes = quota_bytes
        self._now = now

    def get(self, key: str) -> Optional[bytes]:
        with session_scope(self._factory) as db:
            entry = db.get(CacheEntry, key)
            if entry is None:
                return None
            if entry.expires_at is not None and entry.expires_at <= self._now():
                return None
            return bytes(entry.value)

    def set(self, key: str, value: bytes) -> None:
        with session_scope(self._factory) as db:
            if self.quota_bytes is not None:
                other = (
                    db.query(func.coalesce(func.sum(CacheEntry.size_bytes), 0))
                    .filter(CacheEntry.key != key)
                    .scalar()
                )
                if int(other) + len(value) > self.quota_bytes:
                    raise StorageQuotaExceededError(key, len(value), self.quota_bytes)
            db.merge(CacheEntry(
                key=key,
                value=value,
                size_bytes=len(value),
                expires_at=None,
                updated_at=self._now(),
            ))

    def delete(self, key: str) -> bool:
        with session_scope(self._factory) as db:
            deleted = db.query(CacheEntry).filter(CacheEntry.key == key).delete()
        return bool(deleted)

    def keys(self, prefix: str = "") -> List[str]:
        with session_scope(self._factory) as db:
            rows = (
                db.query(CacheEntry.key)
                .filter(CacheEntry.key.startswith(prefix, autoescape=True))
                .order_by(CacheEntry.key)
                .all()
            )
        return [row[0] for row in rows]

    def add(self, key: str, value: bytes, ttl_seconds: float) -> bool:
        now = self._now()
        try:
            with session_scope(self._factory) as db:
                entry = db.get(CacheEntry, key)
                if entry is not None:
                    if entry.expires_at is None or entry.expires_at > now:
                        return False
                    db.delete(entry)
                    db.flush()
                db.add(CacheEntry(
                    key=key,
                    value=value,
                    size_bytes=len(value),
                    expires_at=now + timedelta(seconds=ttl_seconds),
                    updated_at=now,
                ))
        except IntegrityError:
            # Another process inserted the same key between our read and write
            return False
        return True

    def usage_bytes(self) -> int:
        with session_scope(self._factory) as db:
            total = db.query(func.coalesce(func.sum(CacheEntry.size_bytes), 0)).scalar()
        return int(total)


class RedisKeyValueStore(KeyValueStore):
    """Store backed by Redis, keys namespaced under `namespace`.

    A Redis at `maxmemory` with a noeviction policy answers writes with an OOM
    error; that is mapped to StorageQuotaExceededError. An explicit
    `quota_bytes` additionally bounds this namespace's total size.
    """

    def __init__(self, client: Redis, namespace: str = "adsync:", quota_bytes: Optional[int] = None):
        self.client = client
        self.namespace = namespace
        self.quota_bytes = quota_bytes

    @classmethod
    def from_url(cls, redis_url: str, **kwargs) -> "RedisKeyValueStore":
        return cls(Redis.from_url(redis_url, decode_responses=False), **kwargs)

    def _k(self, key: str) -> str:
        return f"{self.namespace}{key}"

    def get(self, key: str) -> Optional[bytes]:
        return self.client.get(self._k(key))

    def set(self, key: str, value: bytes) -> None:
        if self.quota_bytes is not None:
            other = sum(
                int(self.client.strlen(self._k(k)) or 0) for k in self.keys() if k != key
            )
            if other + len(value) > self.quota_bytes:
                raise StorageQuotaExceededError(key, len(value), self.quota_bytes)
        try:
            self.client.set(self._k(key), value)
        except ResponseError as e:
            if "OOM" in str(e):
                logger.warning(f"[KV_STORE] Redis out of memory writing {key}")
                raise StorageQuotaExceededError(key, len(value), self.quota_bytes) from e
            raise

    def delete(self, key: str) -> bool:
        return bool(self.client.delete(self._k(key)))

    def keys(self, prefix: str = "") -> List[str]:
        start = len(self.namespace)
        found = []
        for raw in self.client.scan_iter(match=f"{self.namespace}{prefix}*"):
            name = raw.decode() if isinstance(raw, bytes) else raw
            found.append(name[start:])
        return sorted(found)

    def add(self, key: str, value: bytes, ttl_seconds: float) -> bool:
        return bool(self.client.set(self._k(key), value, nx=True, ex=max(1, int(ttl_seconds))))

    def usage_bytes(self) -> int:
        return sum(int(self.client.strlen(self._k(k)) or 0) for k in self.keys())


def build_kv_store(settings) -> KeyValueStore:
    """Backend selected by CACHE_BACKEND (memory | sql | redis)."""
    backend = (settings.CACHE_BACKEND or "memory").lower()
    quota = settings.CACHE_QUOTA_BYTES

    if backend == "sql":
        from ..database import build_session_factory
        logger.info(f"[KV_STORE] Using SQL backend ({settings.CACHE_DATABASE_URL.split('@')[-1]})")
        return SqlKeyValueStore(build_session_factory(settings.CACHE_DATABASE_URL), quota_bytes=quota)
    if backend == "redis":
        logger.info("[KV_STORE] Using Redis backend")
        return RedisKeyValueStore.from_url(settings.REDIS_URL, quota_bytes=quota)
    if backend != "memory":
        raise ValueError(f"Unknown CACHE_BACKEND: {settings.CACHE_BACKEND}")
    logger.info("[KV_STORE] Using in-memory backend")
    return InMemoryKeyValueStore(quota_bytes=quota)
