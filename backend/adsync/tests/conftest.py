"""Pytest configuration for adsync service and endpoint tests

WHAT: Fixtures for a fixed "today", a recording sleep, a MetaAdsClient wired
      to the in-process Graph fake, and cache/store fixtures over the
      in-memory key-value backend.
WHY: No test talks to Meta, Redis or waits in real time.
REFERENCES:
    - adsync/tests/fakes.py
"""

import os
from datetime import date
from typing import Callable

import httpx
import pytest

os.environ.setdefault("META_ACCESS_TOKEN", "test-token")
os.environ.setdefault("META_ACCOUNT_ID", "act_123")
os.environ.setdefault("CACHE_BACKEND", "memory")

from adsync.services.insight_store import CacheInsightStore
from adsync.services.kv_store import InMemoryKeyValueStore
from adsync.services.local_cache import LocalCache
from adsync.services.meta_ads_client import MetaAdsClient

from .fakes import NOW, TODAY, FakeClock, FakeGraphApi, RecordingSleep


@pytest.fixture
def today() -> date:
    return TODAY


@pytest.fixture
def sleeper() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
def fake_graph() -> FakeGraphApi:
    return FakeGraphApi()


@pytest.fixture
def meta_client_factory(fake_graph, sleeper) -> Callable[..., MetaAdsClient]:
    def _make(**kwargs) -> MetaAdsClient:
        clock = kwargs.pop("clock", FakeClock())
        return MetaAdsClient(
            access_token="test-token",
            account_id="123",
            http_client=httpx.AsyncClient(transport=fake_graph.transport()),
            sleep=kwargs.pop("sleep", sleeper),
            clock=clock,
            **kwargs,
        )
    return _make


@pytest.fixture
def kv_store() -> InMemoryKeyValueStore:
    return InMemoryKeyValueStore()


@pytest.fixture
def cache(kv_store) -> LocalCache:
    return LocalCache(kv_store, today=lambda: TODAY, now=lambda: NOW)


@pytest.fixture
def store(cache) -> CacheInsightStore:
    return CacheInsightStore(cache)
