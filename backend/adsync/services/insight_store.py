"""Persistence boundary for synced insights.

WHAT:
    `InsightStore` is the capability the orchestrator persists through:
    import (merge | replace), sync status, paginated reads, aggregate stats,
    missing-range lookup, account clear, and a per-account lease.
    `CacheInsightStore` implements it on top of LocalCache so the whole engine
    runs on one node.

WHY:
    The orchestrator only depends on this interface. A remote store can be
    swapped in without touching fetch or merge logic, and import is idempotent
    (merge by identity key), so at-least-once delivery is enough.

LEASE:
    `acquire_lease` is set-if-absent with a TTL. A second run for the same
    account fails fast instead of interleaving writes; a crashed holder's
    lease expires on its own.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from datetime import date
from typing import List, Optional, Sequence

from ..models import LevelEnum
from ..schemas import (
    DateRange,
    ImportResult,
    InsightFilters,
    InsightRecord,
    InsightsPage,
    InsightsStats,
    SyncStatus,
)
from .local_cache import LocalCache
from .meta_ads_client import ErrorCode, guidance_for

logger = logging.getLogger(__name__)

LEASE_PREFIX = "meta_sync_lease_"
DEFAULT_LEASE_TTL_SECONDS = 3600
DEFAULT_PAGE_SIZE = 100
MAX_PAGE_SIZE = 5000


class SyncInProgressError(Exception):
    """Raised when another run holds the account's sync lease."""

    code = ErrorCode.SYNC_IN_PROGRESS

    def __init__(self, account_id: str):
        self.account_id = account_id
        self.message = f"A sync is already in progress for {account_id}"
        super().__init__(self.message)

    def to_dict(self):
        return {
            "code": self.code.value,
            "message": self.message,
            "account_id": self.account_id,
            "guidance": guidance_for(self.code),
        }


class InsightStore(ABC):
    """Persistence capability consumed by the sync orchestrator."""

    @abstractmethod
    def import_insights(
        self,
        account_id: str,
        records: Sequence[InsightRecord],
        strategy: str = "merge",
    ) -> ImportResult:
        ...

    @abstractmethod
    def save_sync_status(self, account_id: str, **changes) -> SyncStatus:
        ...

    @abstractmethod
    def get_sync_status(self, account_id: str) -> SyncStatus:
        ...

    @abstractmethod
    def get_insights(
        self,
        account_id: str,
        filters: Optional[InsightFilters] = None,
        cursor: Optional[str] = None,
        limit: int = DEFAULT_PAGE_SIZE,
    ) -> InsightsPage:
        ...

    @abstractmethod
    def get_insights_stats(
        self,
        account_id: str,
        date_range: Optional[DateRange] = None,
        level: Optional[LevelEnum] = LevelEnum.account,
    ) -> InsightsStats:
        ...

    @abstractmethod
    def find_missing_date_ranges(
        self,
        account_id: str,
        start: date,
        end: date,
        exhaustive: bool = False,
    ) -> List[DateRange]:
        ...

    @abstractmethod
    def clear_account_data(self, account_id: str) -> int:
        ...

    @abstractmethod
    def acquire_lease(self, account_id: str, holder: str, ttl_seconds: float = DEFAULT_LEASE_TTL_SECONDS) -> bool:
        ...

    @abstractmethod
    def release_lease(self, account_id: str, holder: str) -> None:
        ...


def decode_cursor(cursor: Optional[str]) -> int:
    if not cursor:
        return 0
    try:
        offset = int(cursor)
    except ValueError:
        raise ValueError(f"Invalid cursor: {cursor!r}")
    if offset < 0:
        raise ValueError(f"Invalid cursor: {cursor!r}")
    return offset


class CacheInsightStore(InsightStore):
    """InsightStore backed by LocalCache (and its KeyValueStore for leases)."""

    def __init__(self, cache: LocalCache):
        self.cache = cache

    def import_insights(
        self,
        account_id: str,
        records: Sequence[InsightRecord],
        strategy: str = "merge",
    ) -> ImportResult:
        """Persist records.

        merge:   dedup by identity key, keep existing creative metadata
        replace: overwrite the account's set; `skipped` counts records the
                 quota ladder had to drop
        """
        if strategy == "merge":
            result = self.cache.merge_and_save(account_id, records, source="import")
        elif strategy == "replace":
            stored = self.cache.save(account_id, records, source="import")
            result = ImportResult(imported=len(stored), skipped=max(0, len(records) - len(stored)))
        else:
            raise ValueError(f"Unknown import strategy: {strategy}")

        logger.info(
            f"[INSIGHT_STORE] {strategy} import for {account_id}: "
            f"{result.imported} imported, {result.updated} updated, {result.skipped} skipped"
        )
        return result

    def save_sync_status(self, account_id: str, **changes) -> SyncStatus:
        return self.cache.save_sync_status(account_id, **changes)

    def get_sync_status(self, account_id: str) -> SyncStatus:
        return self.cache.get_sync_status(account_id)

    def _filtered(self, account_id: str, filters: Optional[InsightFilters]):
        records = self.cache.get_insights(account_id)
        if filters is None:
            return records
        if filters.start_date:
            records = [r for r in records if r.date_start >= filters.start_date]
        if filters.end_date:
            records = [r for r in records if r.date_start <= filters.end_date]
        if filters.campaign_id:
            records = [r for r in records if r.campaign_id == filters.campaign_id]
        if filters.ad_id:
            records = [r for r in records if r.ad_id == filters.ad_id]
        if filters.level:
            records = [r for r in records if r.level == filters.level]
        return records

    def get_insights(
        self,
        account_id: str,
        filters: Optional[InsightFilters] = None,
        cursor: Optional[str] = None,
        limit: int = DEFAULT_PAGE_SIZE,
    ) -> InsightsPage:
        """Newest-first page of records; `next_cursor` is opaque to callers."""
        limit = max(1, min(int(limit), MAX_PAGE_SIZE))
        offset = decode_cursor(cursor)

        records = sorted(
            self._filtered(account_id, filters),
            key=lambda r: (r.date_start, r.campaign_id or "", r.ad_id or ""),
            reverse=True,
        )
        items = records[offset:offset + limit]
        has_more = offset + limit < len(records)
        return InsightsPage(
            items=items,
            has_more=has_more,
            next_cursor=str(offset + limit) if has_more else None,
        )

    def get_insights_stats(
        self,
        account_id: str,
        date_range: Optional[DateRange] = None,
        level: Optional[LevelEnum] = LevelEnum.account,
    ) -> InsightsStats:
        """Aggregate KPIs over the window.

        Totals use one level only (account by default) so account-level and
        ad-level rows of the same day are not double counted. Unique
        campaign/ad counts use every row in the window.
        """
        filters = InsightFilters(
            start_date=date_range.start if date_range else None,
            end_date=date_range.end if date_range else None,
        )
        rows = self._filtered(account_id, filters)
        measured = [r for r in rows if level is None or r.level == level]

        spend = sum(r.spend for r in measured)
        impressions = sum(r.impressions for r in measured)
        clicks = sum(r.clicks for r in measured)

        return InsightsStats(
            total_spend=spend,
            total_impressions=impressions,
            total_clicks=clicks,
            total_conversions=sum(r.conversions for r in measured),
            total_conversion_value=sum(r.conversion_value for r in measured),
            avg_cpc=spend / clicks if clicks else 0.0,
            avg_cpm=spend / impressions * 1000 if impressions else 0.0,
            avg_ctr=clicks / impressions * 100 if impressions else 0.0,
            unique_campaigns=len({r.campaign_id for r in rows if r.campaign_id}),
            unique_ads=len({r.ad_id for r in rows if r.ad_id}),
            total_records=len(rows),
        )

    def find_missing_date_ranges(
        self,
        account_id: str,
        start: date,
        end: date,
        exhaustive: bool = False,
    ) -> List[DateRange]:
        return self.cache.find_missing_date_ranges(account_id, start, end, exhaustive)

    def clear_account_data(self, account_id: str) -> int:
        return self.cache.clear(account_id)

    def acquire_lease(self, account_id: str, holder: str, ttl_seconds: float = DEFAULT_LEASE_TTL_SECONDS) -> bool:
        acquired = self.cache.store.add(LEASE_PREFIX + account_id, holder.encode("utf-8"), ttl_seconds)
        logger.debug(f"[INSIGHT_STORE] Lease {account_id} for {holder}: {'acquired' if acquired else 'busy'}")
        return acquired

    def release_lease(self, account_id: str, holder: str) -> None:
        key = LEASE_PREFIX + account_id
        current = self.cache.store.get(key)
        if current is not None and current.decode("utf-8") == holder:
            self.cache.store.delete(key)

    def lease_holder(self, account_id: str) -> Optional[str]:
        current = self.cache.store.get(LEASE_PREFIX + account_id)
        return current.decode("utf-8") if current is not None else None
