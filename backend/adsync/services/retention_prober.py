"""Retention window detection for a Meta ad account.

WHAT:
    Binary-searches the number of months back (1..36) for which the insights
    endpoint still answers, using minimal one-day account-level queries.
    The result is memoized for the life of the prober; concurrent callers
    await the same in-flight probe task.

WHY:
    Meta's lookback limit depends on account and API version and is not
    documented. Probing once avoids both under-fetching and a full sync full
    of failed requests for months that will never answer.

ALGORITHM:
    low, high = 1, 36
    mid answers         -> best = mid, low = mid + 1   (can go older)
    mid DATE_LIMIT      -> high = mid - 1              (cannot go older)
    any other error     -> stop, keep best so far
    all DATE_LIMIT      -> 0 months, oldest = the day after one month back
    aborted, no answer  -> fall back to 37 months
"""

from __future__ import annotations

import asyncio
import logging
from datetime import date, timedelta
from typing import Callable, Optional

from ..schemas import DateRange, RetentionInfo
from ..utils.dates import add_months
from .meta_ads_client import MetaAdsClient, MetaAdsClientError, MetaAdsDateLimitError

logger = logging.getLogger(__name__)

PROBE_MIN_MONTHS = 1
PROBE_MAX_MONTHS = 36
DEFAULT_RETENTION_MONTHS = 37


def minimal_retention(today: date, probe_calls: int) -> RetentionInfo:
    """Probed answer when even one month back is rejected."""
    return RetentionInfo(
        max_months=0,
        oldest_date=add_months(today, -PROBE_MIN_MONTHS) + timedelta(days=1),
        probed=True,
        probe_calls=probe_calls,
    )


def fallback_retention(today: date, months: int = DEFAULT_RETENTION_MONTHS) -> RetentionInfo:
    """Unprobed retention info (used when probing is skipped or fails outright)."""
    return RetentionInfo(
        max_months=months,
        oldest_date=add_months(today, -months),
        probed=False,
    )


class RetentionProber:
    """Memoized retention probe bound to one MetaAdsClient."""

    def __init__(self, client: MetaAdsClient, today: Callable[[], date] = date.today):
        self.client = client
        self._today = today
        self._result: Optional[RetentionInfo] = None
        self._task: Optional[asyncio.Task] = None

    @property
    def cached(self) -> Optional[RetentionInfo]:
        return self._result

    async def detect_retention_limit(self) -> RetentionInfo:
        """Return the account's retention window, probing at most once."""
        if self._result is not None:
            return self._result
        if self._task is None:
            self._task = asyncio.ensure_future(self._probe())
        # shield: a cancelled caller must not cancel the probe other callers await
        return await asyncio.shield(self._task)

    async def _probe(self) -> RetentionInfo:
        today = self._today()
        try:
            result = await self._binary_search(today)
        except Exception as e:  # noqa: BLE001
            logger.warning(f"[RETENTION] Probe failed outright ({e}), using {DEFAULT_RETENTION_MONTHS} months")
            result = fallback_retention(today)
        self._result = result
        return result

    async def _probe_month(self, today: date, months_back: int) -> None:
        day = add_months(today, -months_back)
        await self.client.get_insights(
            DateRange(start=day, end=day),
            level="account",
            fields=["impressions"],
            limit=1,
            max_pages=1,
        )

    async def _binary_search(self, today: date) -> RetentionInfo:
        low, high = PROBE_MIN_MONTHS, PROBE_MAX_MONTHS
        best: Optional[int] = None
        calls = 0
        aborted = False

        logger.info(f"[RETENTION] Probing retention window for {self.client.account_id}")

        while low <= high:
            mid = (low + high) // 2
            calls += 1
            try:
                await self._probe_month(today, mid)
            except MetaAdsDateLimitError:
                logger.debug(f"[RETENTION] {mid} months back rejected (date limit)")
                high = mid - 1
                continue
            except MetaAdsClientError as e:
                logger.warning(
                    f"[RETENTION] Probe at {mid} months aborted by {e.code.value}: {e.message}. "
                    f"Keeping best bound {best}"
                )
                aborted = True
                break
            logger.debug(f"[RETENTION] {mid} months back accepted")
            best = mid
            low = mid + 1

        if best is None and not aborted:
            info = minimal_retention(today, calls)
            logger.warning(
                f"[RETENTION] {self.client.account_id}: every probe rejected by the date limit, "
                f"less than a month of history (oldest {info.oldest_date.isoformat()}, {calls} probe calls)"
            )
            return info

        if best is None:
            logger.warning(
                f"[RETENTION] Probe aborted before any month answered ({calls} call(s)), "
                f"using {DEFAULT_RETENTION_MONTHS} months"
            )
            info = fallback_retention(today)
            info.probe_calls = calls
            return info

        info = RetentionInfo(
            max_months=best,
            oldest_date=add_months(today, -best),
            probed=True,
            probe_calls=calls,
        )
        logger.info(
            f"[RETENTION] {self.client.account_id}: {best} months "
            f"(oldest {info.oldest_date.isoformat()}, {calls} probe calls)"
        )
        return info
