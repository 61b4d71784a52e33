"""Per-account insight cache with merge and quota degradation.

WHAT:
    Stores, per ad account:
      meta_insights_cache_{account}   zlib-compressed JSON array of CachedRecord
      meta_sync_status_{account}      JSON SyncStatus
      meta_change_history_{account}   JSON array of ChangeHistoryEntry (newest 50)
    on top of any KeyValueStore backend.

WHY:
    The cache is the only owner of record storage, so the identity-key dedup,
    creative preservation and the quota ladder live here once, independent of
    where the bytes end up.

QUOTA LADDER (save):
    1. delete other accounts' cached insights, retry
    2. if the set is large (> trim_threshold records) keep the newest 70%, retry
    3. keep only the last 90 days, retry
    4. raise StorageExhaustedError
    Each step is logged. The ladder keeps something usable rather than
    nothing at all.
"""

from __future__ import annotations

import json
import logging
import math
import zlib
from datetime import date, datetime, timedelta, timezone
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Set, Tuple, Union

from pydantic import ValidationError

from ..models import ChangeOperationEnum
from ..schemas import (
    CacheUsage,
    CachedRecord,
    ChangeHistoryEntry,
    DateRange,
    ImportResult,
    InsightRecord,
    SyncDateRange,
    SyncStatus,
)
from ..telemetry import capture_message
from .kv_store import KeyValueStore, StorageQuotaExceededError
from .meta_ads_client import ErrorCode
from .sync_planner import SyncPlanner

logger = logging.getLogger(__name__)

INSIGHTS_PREFIX = "meta_insights_cache_"
STATUS_PREFIX = "meta_sync_status_"
HISTORY_PREFIX = "meta_change_history_"

HISTORY_LIMIT = 50
TRIM_THRESHOLD = 100
KEEP_RATIO = 0.7
RECENT_WINDOW_DAYS = 90

# Fields that make up a record's "content" for change detection
_VOLATILE_FIELDS = {"synced_at"}


class StorageExhaustedError(Exception):
    """Raised when a save still fails after every degradation step."""

    code = ErrorCode.STORAGE_EXHAUSTED

    def __init__(self, account_id: str, message: Optional[str] = None):
        self.account_id = account_id
        self.message = message or f"Local cache storage exhausted for {account_id}"
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, object]:
        from .meta_ads_client import guidance_for
        return {
            "code": self.code.value,
            "message": self.message,
            "account_id": self.account_id,
            "guidance": guidance_for(self.code),
        }


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _content(record: InsightRecord) -> Dict[str, object]:
    return record.model_dump(mode="json", exclude=_VOLATILE_FIELDS)


def _sort_key(record: InsightRecord) -> Tuple[str, str, str]:
    return record.identity_key


def encode_records(records: Sequence[CachedRecord]) -> bytes:
    payload = json.dumps([r.model_dump(mode="json") for r in records], separators=(",", ":"))
    return zlib.compress(payload.encode("utf-8"))


def decode_records(blob: bytes) -> List[CachedRecord]:
    data = json.loads(zlib.decompress(blob).decode("utf-8"))
    return [CachedRecord.model_validate(item) for item in data]


def preserve_creative(incoming: InsightRecord, existing: InsightRecord) -> InsightRecord:
    """Keep existing creative metadata when the incoming record has none."""
    if not incoming.has_creative and existing.has_creative:
        return incoming.model_copy(update={"creative": existing.creative})
    return incoming


class LocalCache:
    """Compressed per-account record cache over a KeyValueStore."""

    def __init__(
        self,
        store: KeyValueStore,
        today: Callable[[], date] = date.today,
        now: Callable[[], datetime] = _utcnow,
        history_limit: int = HISTORY_LIMIT,
        trim_threshold: int = TRIM_THRESHOLD,
        keep_ratio: float = KEEP_RATIO,
        recent_window_days: int = RECENT_WINDOW_DAYS,
    ):
        self.store = store
        self._today = today
        self._now = now
        self.history_limit = history_limit
        self.trim_threshold = trim_threshold
        self.keep_ratio = keep_ratio
        self.recent_window_days = recent_window_days
        self.planner = SyncPlanner(today=today)

    # =========================================================================
    # RECORDS
    # =========================================================================

    def get_insights(self, account_id: str) -> List[CachedRecord]:
        blob = self.store.get(INSIGHTS_PREFIX + account_id)
        if not blob:
            return []
        try:
            return decode_records(blob)
        except (zlib.error, ValueError, ValidationError) as e:
            logger.error(f"[LOCAL_CACHE] Unreadable cache blob for {account_id}, treating as empty: {e}")
            return []

    def merge_with_counts(
        self,
        existing: Iterable[InsightRecord],
        incoming: Iterable[InsightRecord],
    ) -> Tuple[List[CachedRecord], ImportResult]:
        """Dedup-merge `incoming` into `existing` by identity key.

        Incoming duplicates collapse first (last wins, creative preserved), then
        each survivor replaces the existing record with the same key. A record
        whose content is unchanged keeps its original `synced_at`, so merging
        the same input twice is a no-op.
        """
        now = self._now()
        merged: Dict[Tuple[str, str, str], CachedRecord] = {}
        for record in existing:
            merged[record.identity_key] = self._as_cached(record, now)

        collapsed: Dict[Tuple[str, str, str], InsightRecord] = {}
        for record in incoming:
            key = record.identity_key
            if key in collapsed:
                record = preserve_creative(record, collapsed[key])
            collapsed[key] = record

        result = ImportResult()
        for key, record in collapsed.items():
            current = merged.get(key)
            if current is None:
                merged[key] = self._as_cached(record, now, fresh=True)
                result.imported += 1
                continue
            candidate = preserve_creative(record, current)
            if _content(candidate) == _content(current):
                result.skipped += 1
                continue
            merged[key] = self._as_cached(candidate, now, fresh=True)
            result.updated += 1

        return sorted(merged.values(), key=_sort_key), result

    def merge(
        self,
        account_id: str,
        existing: Iterable[InsightRecord],
        incoming: Iterable[InsightRecord],
    ) -> List[CachedRecord]:
        merged, result = self.merge_with_counts(existing, incoming)
        logger.debug(
            f"[LOCAL_CACHE] Merge for {account_id}: {result.imported} new, "
            f"{result.updated} updated, {result.skipped} unchanged"
        )
        return merged

    def merge_and_save(
        self,
        account_id: str,
        incoming: Iterable[InsightRecord],
        source: str = "sync",
    ) -> ImportResult:
        existing = self.get_insights(account_id)
        merged, result = self.merge_with_counts(existing, incoming)
        self._append_history(account_id, ChangeOperationEnum.merge, len(existing), len(merged), source)
        self._write_records(account_id, merged)
        return result

    def save(self, account_id: str, records: Sequence[InsightRecord], source: str = "sync") -> List[CachedRecord]:
        """Replace the account's records; returns what was actually stored.

        Raises:
            StorageExhaustedError: the quota ladder ran out of steps
        """
        now = self._now()
        cached = sorted((self._as_cached(r, now) for r in records), key=_sort_key)
        before = len(self.get_insights(account_id))
        self._append_history(account_id, ChangeOperationEnum.save, before, len(cached), source)
        return self._write_records(account_id, cached)

    def _write_records(self, account_id: str, records: List[CachedRecord]) -> List[CachedRecord]:
        key = INSIGHTS_PREFIX + account_id
        try:
            self.store.set(key, encode_records(records))
            return records
        except StorageQuotaExceededError:
            logger.warning(f"[LOCAL_CACHE] Quota exceeded saving {len(records)} records for {account_id}")

        # 1. Other accounts' data goes first
        removed = self._evict_other_accounts(account_id)
        logger.warning(f"[LOCAL_CACHE] Step 1: removed cached data of {removed} other account(s)")
        if self._try_set(key, records):
            return records

        # 2. Large sets keep their newest 70%
        if len(records) > self.trim_threshold:
            keep = math.ceil(len(records) * self.keep_ratio)
            newest = sorted(records, key=_sort_key, reverse=True)[:keep]
            records = sorted(newest, key=_sort_key)
            logger.warning(f"[LOCAL_CACHE] Step 2: trimmed to newest {keep} records for {account_id}")
            if self._try_set(key, records):
                return records
        else:
            logger.warning(
                f"[LOCAL_CACHE] Step 2: skipped ({len(records)} records <= {self.trim_threshold})"
            )

        # 3. Last 90 days only
        cutoff = self._today() - timedelta(days=self.recent_window_days)
        records = [r for r in records if r.date_start >= cutoff]
        logger.warning(
            f"[LOCAL_CACHE] Step 3: kept {len(records)} records since {cutoff.isoformat()} for {account_id}"
        )
        if self._try_set(key, records):
            return records

        logger.error(f"[LOCAL_CACHE] Step 4: storage exhausted for {account_id}")
        capture_message(
            "Local cache storage exhausted",
            level="error",
            extra={"account_id": account_id, "records": len(records)},
        )
        raise StorageExhaustedError(account_id)

    def _try_set(self, key: str, records: List[CachedRecord]) -> bool:
        try:
            self.store.set(key, encode_records(records))
            return True
        except StorageQuotaExceededError:
            return False

    def _evict_other_accounts(self, account_id: str) -> int:
        removed = 0
        for key in self.store.keys(INSIGHTS_PREFIX):
            other = key[len(INSIGHTS_PREFIX):]
            if other == account_id:
                continue
            self.store.delete(key)
            self.store.delete(STATUS_PREFIX + other)
            self.store.delete(HISTORY_PREFIX + other)
            removed += 1
        return removed

    @staticmethod
    def _as_cached(record: InsightRecord, now: datetime, fresh: bool = False) -> CachedRecord:
        if isinstance(record, CachedRecord) and not fresh:
            return record
        data = record.model_dump(exclude=_VOLATILE_FIELDS)
        return CachedRecord(**data, synced_at=now)

    def cached_dates(self, account_id: str) -> Set[date]:
        return {r.date_start for r in self.get_insights(account_id)}

    def find_missing_date_ranges(
        self,
        account_id: str,
        start: date,
        end: date,
        exhaustive: bool = False,
    ) -> List[DateRange]:
        window = DateRange(start=start, end=end)
        return self.planner.find_missing(window, self.cached_dates(account_id), exhaustive)

    # =========================================================================
    # STATUS
    # =========================================================================

    def get_sync_status(self, account_id: str) -> SyncStatus:
        blob = self.store.get(STATUS_PREFIX + account_id)
        if not blob:
            return SyncStatus(account_id=account_id)
        try:
            return SyncStatus.model_validate_json(blob)
        except ValidationError as e:
            logger.error(f"[LOCAL_CACHE] Unreadable sync status for {account_id}, resetting: {e}")
            return SyncStatus(account_id=account_id)

    def save_sync_status(self, account_id: str, **changes) -> SyncStatus:
        """Partial update: fields passed as None keep their stored value."""
        status = self.get_sync_status(account_id)
        updates = {k: v for k, v in changes.items() if v is not None}
        if isinstance(updates.get("date_range"), dict):
            updates["date_range"] = SyncDateRange(**updates["date_range"])
        status = status.model_copy(update=updates)
        self._write_small(account_id, STATUS_PREFIX + account_id, status.model_dump_json().encode("utf-8"))
        return status

    def update_date_range(
        self,
        account_id: str,
        earliest: Optional[date] = None,
        latest: Optional[date] = None,
    ) -> SyncStatus:
        """Widen the stored date range to include earliest/latest."""
        current = self.get_sync_status(account_id).date_range
        candidates_early = [d for d in (current.earliest, earliest) if d is not None]
        candidates_late = [d for d in (current.latest, latest) if d is not None]
        return self.save_sync_status(
            account_id,
            date_range=SyncDateRange(
                earliest=min(candidates_early) if candidates_early else None,
                latest=max(candidates_late) if candidates_late else None,
            ),
        )

    def _write_small(self, account_id: str, key: str, payload: bytes) -> None:
        try:
            self.store.set(key, payload)
            return
        except StorageQuotaExceededError:
            logger.warning(f"[LOCAL_CACHE] Quota exceeded writing {key}, evicting other accounts")
        self._evict_other_accounts(account_id)
        try:
            self.store.set(key, payload)
        except StorageQuotaExceededError as e:
            raise StorageExhaustedError(account_id) from e

    # =========================================================================
    # CLEAR / DIAGNOSTICS
    # =========================================================================

    def clear(self, account_id: str, source: str = "user") -> int:
        """Remove records and status; returns how many records were dropped."""
        before = len(self.get_insights(account_id))
        self.store.delete(INSIGHTS_PREFIX + account_id)
        self.store.delete(STATUS_PREFIX + account_id)
        self._append_history(account_id, ChangeOperationEnum.clear, before, 0, source)
        logger.info(f"[LOCAL_CACHE] Cleared {before} records for {account_id}")
        return before

    def get_change_history(self, account_id: str) -> List[ChangeHistoryEntry]:
        blob = self.store.get(HISTORY_PREFIX + account_id)
        if not blob:
            return []
        try:
            return [ChangeHistoryEntry.model_validate(item) for item in json.loads(blob)]
        except (ValueError, ValidationError) as e:
            logger.error(f"[LOCAL_CACHE] Unreadable change history for {account_id}: {e}")
            return []

    def _append_history(
        self,
        account_id: str,
        operation: Union[ChangeOperationEnum, str],
        before: int,
        after: int,
        source: str,
    ) -> None:
        entry = ChangeHistoryEntry(
            timestamp=self._now(),
            account_id=account_id,
            operation=ChangeOperationEnum(operation),
            before_count=before,
            after_count=after,
            source=source,
        )
        history = (self.get_change_history(account_id) + [entry])[-self.history_limit:]
        payload = json.dumps([h.model_dump(mode="json") for h in history]).encode("utf-8")
        try:
            self.store.set(HISTORY_PREFIX + account_id, payload)
        except StorageQuotaExceededError as e:
            logger.warning(f"[LOCAL_CACHE] Could not record change history for {account_id}: {e}")

    def get_cache_usage(self, account_id: str) -> CacheUsage:
        blob = self.store.get(INSIGHTS_PREFIX + account_id) or b""
        return CacheUsage(
            account_id=account_id,
            records=len(self.get_insights(account_id)),
            compressed_bytes=len(blob),
            total_bytes=self.store.usage_bytes(),
            quota_bytes=getattr(self.store, "quota_bytes", None),
        )

    def account_ids(self) -> List[str]:
        return [k[len(INSIGHTS_PREFIX):] for k in self.store.keys(INSIGHTS_PREFIX)]
