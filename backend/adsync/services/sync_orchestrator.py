"""Sync orchestration: plan, fetch, normalize, flush, record status.

WHAT:
    Drives one sync run for one ad account through the states
        idle -> probing (full mode without an override) -> planning
             -> fetching chunk i/N -> flushing (every 10 chunks and at the end)
             -> completed | partially_failed | cancelled | failed
    and owns `SyncContext`, the per-process registry of accounts, clients,
    probers and in-flight cancellation tokens.

WHY:
    - Chunks run strictly sequentially, oldest first, with a 0.5s courtesy
      delay between them, so partial completion leaves a contiguous prefix
      and Meta never sees parallel bursts from us
    - One bad chunk never aborts a run: date-limit errors mean "out of
      range", any other error is logged, reported to Sentry and counted as a
      skip. Only StorageExhaustedError is fatal, since continuing would lose data
    - Periodic flushes bound memory during multi-year backfills
    - A per-account lease keeps two runs from interleaving writes

WHERE USED:
    - adsync/routers/meta_sync.py (HTTP-triggered syncs, cancel, status)
    - adsync/workers/arq_worker.py (background syncs)
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import uuid
from datetime import date, datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional

from ..deps import Settings, SyncSettings
from ..models import LevelEnum, SyncModeEnum, SyncStateEnum
from ..schemas import (
    CreativeInfo,
    DateRange,
    InsightRecord,
    RetentionInfo,
    SkippedChunk,
    SyncDateRange,
    SyncProgress,
    SyncRunResult,
)
from ..telemetry import capture_exception
from .insight_store import CacheInsightStore, InsightStore, SyncInProgressError
from .kv_store import build_kv_store
from .local_cache import LocalCache
from .meta_ads_client import (
    CREATIVE_BATCH_SIZE,
    ErrorCode,
    MetaAdsClient,
    MetaAdsClientError,
    MetaAdsDateLimitError,
    normalize_account_id,
)
from .metrics_normalizer import normalize_many
from .retention_prober import RetentionProber, fallback_retention
from .retry import RetryPolicy
from .sync_planner import SyncPlanner, boundary_for_months

logger = logging.getLogger(__name__)

CHUNK_DELAY_SECONDS = 0.5
FLUSH_EVERY_CHUNKS = 10
LEASE_TTL_SECONDS = 3600

ProgressCallback = Callable[[SyncProgress], Any]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CancellationToken:
    """Cooperative stop signal checked by the orchestrator between chunks."""

    def __init__(self):
        self._event = asyncio.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    async def wait(self) -> None:
        await self._event.wait()


class UnknownAccountError(LookupError):
    """Raised when an account id was never registered with the SyncContext."""

    def __init__(self, account_id: str):
        self.account_id = account_id
        super().__init__(f"Unknown ad account: {account_id}")


class SyncOrchestrator:
    """Runs syncs for one account.

    Usage:
        ```python
        orchestrator = SyncOrchestrator(client, store, prober=RetentionProber(client))
        result = await orchestrator.run(SyncModeEnum.full)
        ```
    """

    def __init__(
        self,
        client: MetaAdsClient,
        store: InsightStore,
        prober: Optional[RetentionProber] = None,
        planner: Optional[SyncPlanner] = None,
        retry: Optional[RetryPolicy] = None,
        settings: Optional[SyncSettings] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        today: Callable[[], date] = date.today,
        now: Callable[[], datetime] = _utcnow,
        chunk_delay: float = CHUNK_DELAY_SECONDS,
        flush_every: int = FLUSH_EVERY_CHUNKS,
        creative_batch_size: int = CREATIVE_BATCH_SIZE,
        lease_ttl: float = LEASE_TTL_SECONDS,
    ):
        self.client = client
        self.account_id = client.account_id
        self.store = store
        self.prober = prober
        self.planner = planner or SyncPlanner(today=today)
        self.retry = retry or RetryPolicy(sleep=sleep)
        self.settings = settings or SyncSettings()
        self._sleep = sleep
        self._today = today
        self._now = now
        self.chunk_delay = chunk_delay
        self.flush_every = max(1, flush_every)
        self.creative_batch_size = max(1, min(creative_batch_size, CREATIVE_BATCH_SIZE))
        self.lease_ttl = lease_ttl
        self.state = SyncStateEnum.idle

    # =========================================================================
    # RUN
    # =========================================================================

    async def run(
        self,
        mode: SyncModeEnum = SyncModeEnum.incremental,
        requested_range: Optional[DateRange] = None,
        settings: Optional[SyncSettings] = None,
        cancel_token: Optional[CancellationToken] = None,
        progress: Optional[ProgressCallback] = None,
    ) -> SyncRunResult:
        """Execute one sync run.

        Args:
            mode: full | incremental | initial
            requested_range: Optional window (clamped to the retention boundary in full mode)
            settings: Per-run overrides of the orchestrator's SyncSettings
            cancel_token: Checked between chunks; remaining records are flushed
            progress: Called (sync or async) with SyncProgress per chunk

        Returns:
            SyncRunResult with fetched/skipped counts and the final state

        Raises:
            SyncInProgressError: another run holds this account's lease
            StorageExhaustedError: the cache could not store the flushed records
        """
        mode = SyncModeEnum(mode)
        settings = settings or self.settings
        holder = uuid.uuid4().hex

        if not self.store.acquire_lease(self.account_id, holder, self.lease_ttl):
            logger.warning(f"[SYNC] Sync already in progress for {self.account_id}")
            raise SyncInProgressError(self.account_id)

        package_logger = logging.getLogger("adsync")
        previous_level = package_logger.level
        if settings.debug_mode:
            package_logger.setLevel(logging.DEBUG)

        result = SyncRunResult(
            account_id=self.account_id,
            mode=mode,
            state=SyncStateEnum.idle,
            started_at=self._now(),
        )
        try:
            await self._execute(result, mode, requested_range, settings, cancel_token, progress)
        except Exception as e:
            self._set_state(result, SyncStateEnum.failed)
            result.finished_at = self._now()
            logger.error(f"[SYNC] {mode.value} sync for {self.account_id} failed: {e}")
            raise
        finally:
            self.store.release_lease(self.account_id, holder)
            if settings.debug_mode:
                package_logger.setLevel(previous_level)
        return result

    async def _execute(
        self,
        result: SyncRunResult,
        mode: SyncModeEnum,
        requested_range: Optional[DateRange],
        settings: SyncSettings,
        cancel_token: Optional[CancellationToken],
        progress: Optional[ProgressCallback],
    ) -> None:
        chunks = await self._plan(result, mode, requested_range, settings)
        result.chunks_planned = len(chunks)

        if not chunks:
            self._set_state(result, SyncStateEnum.completed)
            result.finished_at = self._now()
            logger.info(f"[SYNC] Nothing to fetch for {self.account_id} ({mode.value})")
            await self._report(progress, result, 0, 0, "Nothing to sync")
            return

        logger.info(f"[SYNC] Starting {mode.value} sync for {self.account_id}: {len(chunks)} chunk(s)")

        accumulator: List[InsightRecord] = []
        creative_cache: Dict[str, Optional[CreativeInfo]] = {}
        earliest: Optional[date] = None
        latest: Optional[date] = None
        cancelled = False

        for index, chunk in enumerate(chunks, start=1):
            if cancel_token is not None and cancel_token.cancelled:
                logger.info(f"[SYNC] Cancelled before chunk {index}/{len(chunks)} for {self.account_id}")
                cancelled = True
                break

            self._set_state(result, SyncStateEnum.fetching)
            await self._report(progress, result, index, len(chunks), f"Fetching {chunk}")

            records = await self._fetch_chunk(result, chunk, index, len(chunks), settings)
            if records is not None:
                accumulator.extend(records)
                result.chunks_fetched += 1
                result.records_fetched += len(records)
                earliest = chunk.start if earliest is None else min(earliest, chunk.start)
                latest = chunk.end if latest is None else max(latest, chunk.end)

            if index % self.flush_every == 0 or index == len(chunks):
                await self._flush(result, accumulator, creative_cache, settings)

            if index < len(chunks):
                await self._sleep(self.chunk_delay)

        if cancelled:
            await self._flush(result, accumulator, creative_cache, settings)

        result.date_range = SyncDateRange(earliest=earliest, latest=latest)
        if result.chunks_fetched:
            self._update_status(mode, earliest, latest, cancelled)

        if cancelled:
            final = SyncStateEnum.cancelled
        elif result.chunks_fetched == 0:
            final = SyncStateEnum.failed
        elif result.skipped_chunks:
            final = SyncStateEnum.partially_failed
        else:
            final = SyncStateEnum.completed
        self._set_state(result, final)
        result.finished_at = self._now()

        logger.info(
            f"[SYNC] {mode.value} sync for {self.account_id} {final.value}: "
            f"{result.chunks_fetched}/{result.chunks_planned} chunks, "
            f"{result.chunks_skipped} skipped, {result.records_fetched} records"
        )
        await self._report(progress, result, result.chunks_fetched, result.chunks_planned, final.value)

    # =========================================================================
    # PLANNING
    # =========================================================================

    async def _plan(
        self,
        result: SyncRunResult,
        mode: SyncModeEnum,
        requested_range: Optional[DateRange],
        settings: SyncSettings,
    ) -> List[DateRange]:
        today = self._today()

        if mode == SyncModeEnum.full:
            retention = await self._resolve_retention(result, settings, today)
            result.retention = retention
            window = self.planner.full_window(retention.oldest_date)
            if requested_range is not None:
                start = max(window.start, requested_range.start)
                end = min(window.end, requested_range.end)
                if start > end:
                    self._set_state(result, SyncStateEnum.planning)
                    return []
                window = DateRange(start=start, end=end)
            self._set_state(result, SyncStateEnum.planning)
            return self.planner.plan(SyncModeEnum.full, window)

        self._set_state(result, SyncStateEnum.planning)

        if mode == SyncModeEnum.initial:
            return self.planner.plan(SyncModeEnum.initial, requested_range)

        if requested_range is None:
            status = self.store.get_sync_status(self.account_id)
            requested_range = self.planner.incremental_window(status.date_range.latest)
        chunks = self.store.find_missing_date_ranges(
            self.account_id,
            requested_range.start,
            requested_range.end,
            settings.exhaustive_coverage,
        )
        logger.info(f"[PLANNER] incremental plan: {len(chunks)} chunk(s) missing in {requested_range}")
        return chunks

    async def _resolve_retention(
        self,
        result: SyncRunResult,
        settings: SyncSettings,
        today: date,
    ) -> RetentionInfo:
        if settings.max_months:
            return RetentionInfo(
                max_months=settings.max_months,
                oldest_date=boundary_for_months(today, settings.max_months),
                probed=False,
            )
        if self.prober is None:
            return fallback_retention(today)
        self._set_state(result, SyncStateEnum.probing)
        return await self.prober.detect_retention_limit()

    # =========================================================================
    # FETCH / FLUSH
    # =========================================================================

    async def _fetch_chunk(
        self,
        result: SyncRunResult,
        chunk: DateRange,
        index: int,
        total: int,
        settings: SyncSettings,
    ) -> Optional[List[InsightRecord]]:
        """Fetch account- and ad-level rows for one chunk; None when skipped."""
        try:
            account_rows = await self.retry.run(
                self.client.get_insights, chunk, level="account", limit=settings.limit_per_request
            )
            ad_rows = await self.retry.run(
                self.client.get_insights, chunk, level="ad", limit=settings.limit_per_request
            )
        except MetaAdsDateLimitError as e:
            logger.info(f"[SYNC] Chunk {index}/{total} {chunk} is outside the retention window, skipping")
            result.skipped_chunks.append(self._skip(chunk, e))
            return None
        except Exception as e:  # noqa: BLE001
            logger.error(f"[SYNC] Chunk {index}/{total} {chunk} failed, skipping: {e}")
            capture_exception(e, extra={
                "operation": "sync_chunk",
                "account_id": self.account_id,
                "chunk_start": chunk.start.isoformat(),
                "chunk_end": chunk.end.isoformat(),
            })
            result.skipped_chunks.append(self._skip(chunk, e))
            return None

        account_records, dropped_account = normalize_many(account_rows, LevelEnum.account, self.account_id)
        ad_records, dropped_ad = normalize_many(ad_rows, LevelEnum.ad, self.account_id)
        if dropped_account or dropped_ad:
            logger.warning(
                f"[SYNC] Dropped {dropped_account + dropped_ad} unidentifiable row(s) in chunk {chunk}"
            )
        logger.debug(
            f"[SYNC] Chunk {index}/{total} {chunk}: "
            f"{len(account_records)} account rows, {len(ad_records)} ad rows"
        )
        return account_records + ad_records

    @staticmethod
    def _skip(chunk: DateRange, error: Exception) -> SkippedChunk:
        code = getattr(error, "code", ErrorCode.UNKNOWN_ERROR)
        return SkippedChunk(
            date_range=chunk,
            error_code=getattr(code, "value", str(code)),
            message=str(error),
            status_code=getattr(error, "status_code", None),
            api_error_code=getattr(error, "api_error_code", None),
        )

    async def _flush(
        self,
        result: SyncRunResult,
        accumulator: List[InsightRecord],
        creative_cache: Dict[str, Optional[CreativeInfo]],
        settings: SyncSettings,
    ) -> None:
        if not accumulator:
            return
        self._set_state(result, SyncStateEnum.flushing)

        if not settings.skip_creatives:
            await self._enrich_creatives(accumulator, creative_cache)

        # StorageExhaustedError propagates: the run cannot continue without losing data
        imported = self.store.import_insights(self.account_id, list(accumulator), strategy="merge")
        result.import_result = result.import_result + imported
        logger.info(f"[SYNC] Flushed {len(accumulator)} records for {self.account_id}")
        accumulator.clear()

    async def _enrich_creatives(
        self,
        records: List[InsightRecord],
        creative_cache: Dict[str, Optional[CreativeInfo]],
    ) -> None:
        """Attach creative metadata to ad-level records, in batches of <= 50 ads."""
        pending = list(dict.fromkeys(
            r.ad_id for r in records
            if r.level == LevelEnum.ad and r.ad_id and r.ad_id not in creative_cache
        ))
        for offset in range(0, len(pending), self.creative_batch_size):
            batch = pending[offset:offset + self.creative_batch_size]
            try:
                found = await self.client.get_ad_creatives(batch)
            except MetaAdsClientError as e:
                logger.warning(f"[SYNC] Creative batch of {len(batch)} failed: {e}")
                found = {}
            for ad_id in batch:
                creative_cache[ad_id] = found.get(ad_id)

        enriched = 0
        for i, record in enumerate(records):
            creative = creative_cache.get(record.ad_id) if record.ad_id else None
            if creative is not None and record.level == LevelEnum.ad:
                records[i] = record.model_copy(update={"creative": creative})
                enriched += 1
        if pending:
            logger.debug(f"[SYNC] Creative enrichment: {len(pending)} ads looked up, {enriched} records enriched")

    # =========================================================================
    # STATUS / PROGRESS
    # =========================================================================

    def _update_status(
        self,
        mode: SyncModeEnum,
        earliest: Optional[date],
        latest: Optional[date],
        cancelled: bool,
    ) -> None:
        existing = self.store.get_sync_status(self.account_id)
        early = [d for d in (existing.date_range.earliest, earliest) if d is not None]
        late = [d for d in (existing.date_range.latest, latest) if d is not None]
        stats = self.store.get_insights_stats(self.account_id, level=None)

        changes: Dict[str, Any] = {
            "total_records": stats.total_records,
            "date_range": SyncDateRange(
                earliest=min(early) if early else None,
                latest=max(late) if late else None,
            ),
        }
        if not cancelled:
            if mode == SyncModeEnum.full:
                changes["last_full_sync"] = self._now()
            elif mode == SyncModeEnum.incremental:
                changes["last_incremental_sync"] = self._now()
        self.store.save_sync_status(self.account_id, **changes)

    def _set_state(self, result: SyncRunResult, state: SyncStateEnum) -> None:
        self.state = state
        result.state = state

    async def _report(
        self,
        progress: Optional[ProgressCallback],
        result: SyncRunResult,
        current: int,
        total: int,
        message: str,
    ) -> None:
        if progress is None:
            return
        outcome = progress(SyncProgress(
            account_id=self.account_id,
            state=result.state,
            current=current,
            total=total,
            message=message,
        ))
        if inspect.isawaitable(outcome):
            await outcome


class MetaAccount:
    """A registered ad account and the token used to read it."""

    def __init__(self, account_id: str, access_token: str, name: Optional[str] = None):
        self.account_id = normalize_account_id(account_id)
        self.access_token = access_token
        self.name = name

    def __repr__(self):
        return f"MetaAccount({self.account_id}, name={self.name!r})"


class SyncContext:
    """Process-wide sync state, built once (FastAPI lifespan / arq startup).

    WHAT:
        Holds settings, the persistence boundary, registered accounts and,
        per account, one MetaAdsClient and one RetentionProber (so the probe
        result lives as long as the client). Tracks cancellation tokens of
        runs in flight.

    WHY:
        Explicit context instead of a global account manager: tests build as
        many isolated contexts as they need.
    """

    def __init__(
        self,
        settings: Settings,
        store: InsightStore,
        cache: Optional[LocalCache] = None,
        client_factory: Optional[Callable[[MetaAccount], MetaAdsClient]] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        today: Callable[[], date] = date.today,
    ):
        self.settings = settings
        self.store = store
        self.cache = cache
        self._client_factory = client_factory or self._default_client
        self._sleep = sleep
        self._today = today
        self.accounts: Dict[str, MetaAccount] = {}
        self._clients: Dict[str, MetaAdsClient] = {}
        self._probers: Dict[str, RetentionProber] = {}
        self._tokens: Dict[str, CancellationToken] = {}

    @classmethod
    def from_settings(cls, settings: Settings) -> "SyncContext":
        """Build the cache stack from CACHE_BACKEND and register META_ACCOUNT_ID."""
        cache = LocalCache(build_kv_store(settings))
        context = cls(settings, CacheInsightStore(cache), cache=cache)
        if settings.META_ACCESS_TOKEN and settings.META_ACCOUNT_ID:
            context.register_account(settings.META_ACCOUNT_ID, settings.META_ACCESS_TOKEN)
        else:
            logger.warning("[SYNC] META_ACCESS_TOKEN / META_ACCOUNT_ID not set, no default account registered")
        return context

    def _default_client(self, account: MetaAccount) -> MetaAdsClient:
        return MetaAdsClient(
            access_token=account.access_token,
            account_id=account.account_id,
            api_version=self.settings.META_API_VERSION,
            graph_url=self.settings.META_GRAPH_URL,
            sleep=self._sleep,
        )

    def register_account(self, account_id: str, access_token: str, name: Optional[str] = None) -> MetaAccount:
        account = MetaAccount(account_id, access_token, name)
        self.accounts[account.account_id] = account
        # A new token means a new client (and a fresh retention probe)
        self._clients.pop(account.account_id, None)
        self._probers.pop(account.account_id, None)
        logger.info(f"[SYNC] Registered account {account.account_id}")
        return account

    def get_account(self, account_id: str) -> MetaAccount:
        key = normalize_account_id(account_id)
        try:
            return self.accounts[key]
        except KeyError:
            raise UnknownAccountError(key)

    def client_for(self, account_id: str) -> MetaAdsClient:
        account = self.get_account(account_id)
        if account.account_id not in self._clients:
            self._clients[account.account_id] = self._client_factory(account)
        return self._clients[account.account_id]

    def prober_for(self, account_id: str) -> RetentionProber:
        account = self.get_account(account_id)
        if account.account_id not in self._probers:
            self._probers[account.account_id] = RetentionProber(self.client_for(account.account_id), today=self._today)
        return self._probers[account.account_id]

    def orchestrator_for(self, account_id: str, settings: Optional[SyncSettings] = None) -> SyncOrchestrator:
        return SyncOrchestrator(
            client=self.client_for(account_id),
            store=self.store,
            prober=self.prober_for(account_id),
            settings=settings or self.settings.sync_settings(),
            sleep=self._sleep,
            today=self._today,
        )

    async def run_sync(
        self,
        account_id: str,
        mode: SyncModeEnum = SyncModeEnum.incremental,
        requested_range: Optional[DateRange] = None,
        settings: Optional[SyncSettings] = None,
        progress: Optional[ProgressCallback] = None,
    ) -> SyncRunResult:
        """Run a sync and keep its cancellation token reachable via `cancel()`."""
        orchestrator = self.orchestrator_for(account_id, settings)
        key = orchestrator.account_id
        if key in self._tokens:
            raise SyncInProgressError(key)
        token = CancellationToken()
        self._tokens[key] = token
        try:
            return await orchestrator.run(
                mode,
                requested_range=requested_range,
                cancel_token=token,
                progress=progress,
            )
        finally:
            if self._tokens.get(key) is token:
                del self._tokens[key]

    def cancel(self, account_id: str) -> bool:
        token = self._tokens.get(normalize_account_id(account_id))
        if token is None:
            return False
        token.cancel()
        logger.info(f"[SYNC] Cancellation requested for {normalize_account_id(account_id)}")
        return True

    def is_running(self, account_id: str) -> bool:
        return normalize_account_id(account_id) in self._tokens

    async def aclose(self) -> None:
        for client in self._clients.values():
            await client.aclose()
        self._clients.clear()
        self._probers.clear()
