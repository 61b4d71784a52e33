"""Meta Ads synchronization endpoints.

WHAT:
    Thin HTTP wrappers around the SyncContext: trigger / cancel a sync,
    verify an account, and read status, insights, stats, missing ranges,
    change history and cache usage.

WHY:
    - Routers handle request parsing only
    - Business logic is shared with the arq worker
    - Errors are mapped to HTTP in adsync/main.py (409 in progress,
      507 storage exhausted, 404 unknown account, Meta errors by status)

REFERENCES:
    - adsync/services/sync_orchestrator.py
    - adsync/services/insight_store.py
"""

from __future__ import annotations

import logging
from datetime import date
from typing import Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status

from ..deps import get_sync_context
from ..models import LevelEnum
from ..schemas import (
    AccountInfo,
    CacheUsage,
    ChangeHistoryEntry,
    DateRange,
    InsightFilters,
    InsightsPage,
    InsightsStats,
    SyncRequest,
    SyncRunResult,
    SyncStatus,
)
from ..services.insight_store import MAX_PAGE_SIZE
from ..services.sync_orchestrator import SyncContext

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/accounts/{account_id}",
    tags=["Meta Sync"],
)


def _optional_range(start_date: Optional[date], end_date: Optional[date]) -> Optional[DateRange]:
    if start_date is None and end_date is None:
        return None
    if start_date is None or end_date is None:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="start_date and end_date go together")
    if start_date > end_date:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="start_date must be <= end_date")
    return DateRange(start=start_date, end=end_date)


def _cache(context: SyncContext):
    if context.cache is None:
        raise HTTPException(status_code=status.HTTP_501_NOT_IMPLEMENTED, detail="No local cache configured")
    return context.cache


@router.post("/sync", response_model=SyncRunResult)
async def trigger_sync(
    account_id: str,
    request: SyncRequest,
    context: SyncContext = Depends(get_sync_context),
) -> SyncRunResult:
    """Run a sync to completion (delegates to the orchestrator)."""
    account = context.get_account(account_id)
    logger.info(f"[META_SYNC] HTTP {request.mode.value} sync requested: account={account.account_id}")

    settings = context.settings.sync_settings()
    overrides = {
        k: v for k, v in {
            "max_months": request.max_months,
            "skip_creatives": request.skip_creatives,
            "debug_mode": request.debug_mode,
            "exhaustive_coverage": request.exhaustive_coverage,
        }.items() if v is not None
    }
    if overrides:
        settings = settings.model_copy(update=overrides)

    return await context.run_sync(
        account.account_id,
        mode=request.mode,
        requested_range=_optional_range(request.start_date, request.end_date),
        settings=settings,
    )


@router.post("/sync/cancel")
async def cancel_sync(
    account_id: str,
    context: SyncContext = Depends(get_sync_context),
) -> Dict[str, bool]:
    """Ask a running sync to stop after its current chunk."""
    account = context.get_account(account_id)
    return {"cancelled": context.cancel(account.account_id)}


@router.get("/verify", response_model=AccountInfo)
async def verify_account(
    account_id: str,
    context: SyncContext = Depends(get_sync_context),
) -> AccountInfo:
    """Check the token can read the account (one Graph call)."""
    return await context.client_for(account_id).get_account_info()


@router.get("/status", response_model=SyncStatus)
async def get_status(
    account_id: str,
    context: SyncContext = Depends(get_sync_context),
) -> SyncStatus:
    account = context.get_account(account_id)
    return context.store.get_sync_status(account.account_id)


@router.get("/insights", response_model=InsightsPage)
async def list_insights(
    account_id: str,
    start_date: Optional[date] = None,
    end_date: Optional[date] = None,
    campaign_id: Optional[str] = None,
    ad_id: Optional[str] = None,
    level: Optional[LevelEnum] = None,
    cursor: Optional[str] = None,
    limit: int = Query(default=100, ge=1, le=MAX_PAGE_SIZE),
    context: SyncContext = Depends(get_sync_context),
) -> InsightsPage:
    """Newest-first cached records, cursor paginated."""
    account = context.get_account(account_id)
    filters = InsightFilters(
        start_date=start_date,
        end_date=end_date,
        campaign_id=campaign_id,
        ad_id=ad_id,
        level=level,
    )
    try:
        return context.store.get_insights(account.account_id, filters, cursor=cursor, limit=limit)
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))


@router.get("/stats", response_model=InsightsStats)
async def get_stats(
    account_id: str,
    start_date: Optional[date] = None,
    end_date: Optional[date] = None,
    level: LevelEnum = LevelEnum.account,
    context: SyncContext = Depends(get_sync_context),
) -> InsightsStats:
    account = context.get_account(account_id)
    return context.store.get_insights_stats(
        account.account_id,
        _optional_range(start_date, end_date),
        level=level,
    )


@router.get("/missing-ranges", response_model=List[DateRange])
async def get_missing_ranges(
    account_id: str,
    start_date: date,
    end_date: date,
    exhaustive: bool = False,
    context: SyncContext = Depends(get_sync_context),
) -> List[DateRange]:
    account = context.get_account(account_id)
    window = _optional_range(start_date, end_date)
    return context.store.find_missing_date_ranges(account.account_id, window.start, window.end, exhaustive)


@router.get("/history", response_model=List[ChangeHistoryEntry])
async def get_history(
    account_id: str,
    context: SyncContext = Depends(get_sync_context),
) -> List[ChangeHistoryEntry]:
    account = context.get_account(account_id)
    return _cache(context).get_change_history(account.account_id)


@router.get("/cache/usage", response_model=CacheUsage)
async def get_cache_usage(
    account_id: str,
    context: SyncContext = Depends(get_sync_context),
) -> CacheUsage:
    account = context.get_account(account_id)
    return _cache(context).get_cache_usage(account.account_id)


@router.delete("/cache")
async def clear_cache(
    account_id: str,
    context: SyncContext = Depends(get_sync_context),
) -> Dict[str, int]:
    """Drop cached records and sync status for the account."""
    account = context.get_account(account_id)
    if context.is_running(account.account_id):
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Sync in progress")
    cleared = context.store.clear_account_data(account.account_id)
    logger.info(f"[META_SYNC] Cache cleared for {account.account_id}: {cleared} records")
    return {"cleared": cleared}
