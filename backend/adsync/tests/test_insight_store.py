"""Unit tests for CacheInsightStore.

WHAT: Import strategies, cursor pagination, aggregate stats and the sync lease.
WHY: These are the reads the dashboard and the HTTP API serve directly.
"""

from datetime import date, timedelta

import pytest

from adsync.models import LevelEnum
from adsync.schemas import DateRange, InsightFilters, InsightRecord
from adsync.services.insight_store import decode_cursor

from .fakes import TODAY


ACCOUNT = "act_1"


def account_row(day, spend=20.0, impressions=1000, clicks=10, conversions=2.0, value=80.0):
    return InsightRecord(
        date_start=day, date_stop=day, level=LevelEnum.account,
        spend=spend, impressions=impressions, clicks=clicks,
        conversions=conversions, conversion_value=value,
    )


def ad_row(day, campaign_id, ad_id, spend=10.0):
    return InsightRecord(
        date_start=day, date_stop=day, level=LevelEnum.ad,
        campaign_id=campaign_id, ad_id=ad_id,
        spend=spend, impressions=500, clicks=5,
    )


class TestImport:
    """Test merge and replace import strategies."""

    def test_merge_counts(self, store):
        day = date(2026, 10, 1)
        store.import_insights(ACCOUNT, [account_row(day)])

        result = store.import_insights(ACCOUNT, [account_row(day), account_row(day, spend=25.0),
                                                 account_row(day + timedelta(days=1))])

        assert (result.imported, result.updated, result.skipped) == (1, 1, 0)

    def test_replace_overwrites(self, store):
        store.import_insights(ACCOUNT, [account_row(date(2026, 10, d)) for d in range(1, 4)])

        result = store.import_insights(ACCOUNT, [account_row(date(2026, 10, 9))], strategy="replace")

        assert result.imported == 1
        page = store.get_insights(ACCOUNT)
        assert [r.date_start for r in page.items] == [date(2026, 10, 9)]

    def test_unknown_strategy(self, store):
        with pytest.raises(ValueError):
            store.import_insights(ACCOUNT, [], strategy="append")


class TestPagination:
    """Test newest-first cursor pagination and filters."""

    def test_walks_all_pages_newest_first(self, store):
        store.import_insights(ACCOUNT, [account_row(TODAY - timedelta(days=i)) for i in range(5)])

        seen = []
        cursor = None
        while True:
            page = store.get_insights(ACCOUNT, cursor=cursor, limit=2)
            seen.extend(r.date_start for r in page.items)
            if not page.has_more:
                assert page.next_cursor is None
                break
            cursor = page.next_cursor

        assert seen == [TODAY - timedelta(days=i) for i in range(5)]

    def test_filters(self, store):
        day = date(2026, 10, 1)
        store.import_insights(ACCOUNT, [
            account_row(day),
            ad_row(day, "c-1", "ad-1"),
            ad_row(day, "c-2", "ad-2"),
            ad_row(day + timedelta(days=5), "c-1", "ad-1"),
        ])

        page = store.get_insights(ACCOUNT, InsightFilters(campaign_id="c-1", end_date=day))
        assert [(r.date_start, r.ad_id) for r in page.items] == [(day, "ad-1")]

        page = store.get_insights(ACCOUNT, InsightFilters(level=LevelEnum.ad))
        assert len(page.items) == 3

    def test_limit_is_clamped(self, store):
        store.import_insights(ACCOUNT, [account_row(TODAY)])
        assert len(store.get_insights(ACCOUNT, limit=0).items) == 1

    @pytest.mark.parametrize("cursor", ["abc", "-1"])
    def test_bad_cursor(self, cursor):
        with pytest.raises(ValueError):
            decode_cursor(cursor)


class TestStats:
    """Test aggregate KPIs."""

    def test_totals_use_account_level_only(self, store):
        """WHAT: Ad rows of the same day do not add to spend totals.
        WHY: Account rows already include them; summing both double counts.
        """
        day = date(2026, 10, 1)
        store.import_insights(ACCOUNT, [
            account_row(day, spend=20.0, impressions=1000, clicks=10),
            account_row(day + timedelta(days=1), spend=30.0, impressions=3000, clicks=40),
            ad_row(day, "c-1", "ad-1"),
            ad_row(day, "c-2", "ad-2"),
        ])

        stats = store.get_insights_stats(ACCOUNT)

        assert stats.total_spend == 50.0
        assert stats.total_impressions == 4000
        assert stats.total_clicks == 50
        assert stats.total_conversions == 4.0
        assert stats.avg_cpc == pytest.approx(1.0)
        assert stats.avg_cpm == pytest.approx(12.5)
        assert stats.avg_ctr == pytest.approx(1.25)
        assert stats.unique_campaigns == 2
        assert stats.unique_ads == 2
        assert stats.total_records == 4

    def test_window_and_level(self, store):
        day = date(2026, 10, 1)
        store.import_insights(ACCOUNT, [
            account_row(day),
            ad_row(day, "c-1", "ad-1", spend=4.0),
            ad_row(day + timedelta(days=3), "c-1", "ad-1", spend=6.0),
        ])

        stats = store.get_insights_stats(ACCOUNT, DateRange(start=day, end=day), level=LevelEnum.ad)

        assert stats.total_spend == 4.0
        assert stats.total_records == 2

    def test_empty_account(self, store):
        stats = store.get_insights_stats(ACCOUNT)
        assert stats.total_spend == 0.0
        assert stats.avg_ctr == 0.0


class TestLease:
    """Test the per-account sync lease."""

    def test_second_holder_is_refused(self, store):
        assert store.acquire_lease(ACCOUNT, "run-1") is True
        assert store.acquire_lease(ACCOUNT, "run-2") is False
        assert store.lease_holder(ACCOUNT) == "run-1"

    def test_only_holder_releases(self, store):
        store.acquire_lease(ACCOUNT, "run-1")

        store.release_lease(ACCOUNT, "run-2")
        assert store.lease_holder(ACCOUNT) == "run-1"

        store.release_lease(ACCOUNT, "run-1")
        assert store.lease_holder(ACCOUNT) is None
        assert store.acquire_lease(ACCOUNT, "run-2") is True

    def test_leases_are_per_account(self, store):
        assert store.acquire_lease("act_1", "run-1") is True
        assert store.acquire_lease("act_2", "run-2") is True

    def test_clear_account_data(self, store):
        store.import_insights(ACCOUNT, [account_row(TODAY)])
        assert store.clear_account_data(ACCOUNT) == 1
        assert store.get_insights(ACCOUNT).items == []
