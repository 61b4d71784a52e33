"""Unit tests for MetaAdsClient service.

WHAT:
    Tests the async Graph API transport against an in-process fake
    (httpx.MockTransport): call spacing, error classification, pagination,
    parameter encoding and creative enrichment.

WHY:
    Ensures MetaAdsClient works correctly without making real API calls.
    Fast, deterministic tests that don't require Meta credentials.

REFERENCES:
    - adsync/services/meta_ads_client.py (module under test)
"""

import json
from datetime import date

import httpx
import pytest

from adsync.models import CreativeTypeEnum
from adsync.schemas import DateRange
from adsync.services.meta_ads_client import (
    ErrorCode,
    MetaAdsAuthenticationError,
    MetaAdsClient,
    MetaAdsClientError,
    MetaAdsDateLimitError,
    MetaAdsNetworkError,
    MetaAdsPermissionError,
    MetaAdsRateLimitError,
    MetaAdsServerError,
    MetaAdsValidationError,
    classify_error,
    guidance_for,
    normalize_account_id,
    parse_creative,
)

from .fakes import FakeClock


CHUNK = DateRange(start=date(2026, 9, 1), end=date(2026, 9, 30))


class TestCallSpacing:
    """Test the minimum interval between consecutive calls."""

    @pytest.mark.asyncio
    async def test_first_call_does_not_wait(self, meta_client_factory, sleeper):
        """WHAT: The very first call goes out immediately.
        WHY: Spacing is relative to a previous call; there is none yet.
        """
        client = meta_client_factory()
        await client.call("act_123", {"fields": "id"})
        assert sleeper.delays == []

    @pytest.mark.asyncio
    async def test_back_to_back_calls_wait_for_the_floor(self, meta_client_factory, sleeper):
        """WHAT: A second call 30ms after the first waits the remaining 70ms.
        WHY: Prevents bursts; the floor is 100ms.
        """
        clock = FakeClock()
        client = meta_client_factory(clock=clock)

        await client.call("act_123")
        clock.advance(0.03)
        await client.call("act_123")

        assert sleeper.delays == [pytest.approx(0.07)]

    @pytest.mark.asyncio
    async def test_no_wait_when_floor_already_elapsed(self, meta_client_factory, sleeper):
        clock = FakeClock()
        client = meta_client_factory(clock=clock)

        await client.call("act_123")
        clock.advance(0.5)
        await client.call("act_123")

        assert sleeper.delays == []


class TestErrorClassification:
    """Test mapping of HTTP/JSON error shapes to the error taxonomy."""

    @pytest.mark.parametrize("status,expected", [
        (401, MetaAdsAuthenticationError),
        (403, MetaAdsPermissionError),
        (429, MetaAdsRateLimitError),
        (500, MetaAdsServerError),
        (503, MetaAdsServerError),
        (400, MetaAdsValidationError),
        (404, MetaAdsValidationError),
    ])
    def test_status_codes(self, status, expected):
        """WHAT: Each status class maps to one exception type.
        WHY: Callers (retry, orchestrator, HTTP layer) branch on the type.
        """
        error = classify_error(status, {"error": {"message": "boom", "type": "OAuthException", "code": 1}})
        assert type(error) is expected
        assert error.status_code == status
        assert error.details["message"] == "boom"

    def test_date_limit_by_code(self):
        """WHAT: Code 3018 becomes DATE_LIMIT even though the status is 400.
        WHY: The retention prober and the chunk loop key on this signal.
        """
        error = classify_error(400, {"error": {"message": "Invalid time range", "code": 3018}})
        assert isinstance(error, MetaAdsDateLimitError)
        assert isinstance(error, MetaAdsValidationError)
        assert error.code == ErrorCode.DATE_LIMIT
        assert error.api_error_code == 3018

    def test_date_limit_by_message(self):
        error = classify_error(400, {"error": {"message": "You can only query the last 37 months", "code": 100}})
        assert isinstance(error, MetaAdsDateLimitError)

    def test_non_json_body_is_kept_raw(self):
        error = classify_error(502, None, "<html>Bad Gateway</html>")
        assert isinstance(error, MetaAdsServerError)
        assert error.details == {"raw": "<html>Bad Gateway</html>"}

    @pytest.mark.asyncio
    async def test_call_raises_classified_error(self, meta_client_factory, fake_graph):
        fake_graph.script("act_123", (401, {"error": {"message": "Invalid OAuth access token", "code": 190}}))
        client = meta_client_factory()

        with pytest.raises(MetaAdsAuthenticationError) as exc_info:
            await client.call("act_123")

        assert exc_info.value.api_error_code == 190
        assert "regenerate the access token" in exc_info.value.to_dict()["guidance"].lower()

    @pytest.mark.asyncio
    async def test_transport_failure_is_network_error(self, sleeper):
        """WHAT: DNS/timeouts surface as NETWORK_ERROR.
        WHY: They have no HTTP status to classify by.
        """
        def refuse(request):
            raise httpx.ConnectError("name resolution failed", request=request)

        client = MetaAdsClient(
            "t", "123",
            http_client=httpx.AsyncClient(transport=httpx.MockTransport(refuse)),
            sleep=sleeper,
        )
        with pytest.raises(MetaAdsNetworkError) as exc_info:
            await client.call("act_123")
        assert exc_info.value.status_code is None

    @pytest.mark.asyncio
    async def test_unreadable_success_body_is_network_error(self, meta_client_factory, fake_graph):
        fake_graph.script("act_123", (200, "not json"))
        client = meta_client_factory()
        with pytest.raises(MetaAdsNetworkError):
            await client.call("act_123")

    def test_every_code_has_guidance(self):
        for code in ErrorCode:
            if code is ErrorCode.UNKNOWN_ERROR:
                continue
            assert "Unexpected error" not in guidance_for(code)
        assert "Unexpected error" in guidance_for("SOMETHING_ELSE")


class TestInsights:
    """Test insights requests and pagination."""

    @pytest.mark.asyncio
    async def test_params_are_encoded_for_graph(self, meta_client_factory, fake_graph):
        """WHAT: time_range is JSON, fields are comma-joined, auth is a Bearer header.
        WHY: Graph rejects Python reprs of lists/dicts.
        """
        client = meta_client_factory()
        await client.get_insights(CHUNK, level="ad", limit=100)

        request = fake_graph.requests[-1]
        params = dict(request.url.params)
        assert request.url.path == "/v23.0/act_123/insights"
        assert json.loads(params["time_range"]) == {"since": "2026-09-01", "until": "2026-09-30"}
        assert "date_start" in params["fields"].split(",")
        assert params["level"] == "ad"
        assert params["time_increment"] == "1"
        assert params["limit"] == "25"  # capped
        assert request.headers["Authorization"] == "Bearer test-token"

    @pytest.mark.asyncio
    async def test_follows_cursor_pagination(self, meta_client_factory, fake_graph):
        fake_graph.pages["account:2026-09-01"] = [
            [{"date_start": "2026-09-01"}, {"date_start": "2026-09-02"}],
            [{"date_start": "2026-09-03"}],
        ]
        client = meta_client_factory()

        rows = await client.get_insights(CHUNK, level="account")

        assert [r["date_start"] for r in rows] == ["2026-09-01", "2026-09-02", "2026-09-03"]
        assert len(fake_graph.requests) == 2
        assert dict(fake_graph.requests[1].url.params)["after"] == "1"

    @pytest.mark.asyncio
    async def test_follows_next_link_without_cursor(self, meta_client_factory, fake_graph):
        """WHAT: A page with `paging.next` but no `cursors.after` still leads to the next page.
        WHY: Meta sometimes sends only the absolute next link; stopping there drops rows.
        """
        next_link = "https://graph.facebook.com/v23.0/act_123/insights?level=account&after=QVFI"
        fake_graph.script(
            "/insights",
            (200, {"data": [{"date_start": "2026-09-01"}], "paging": {"next": next_link}}),
            (200, {"data": [{"date_start": "2026-09-02"}]}),
        )
        client = meta_client_factory()

        rows = await client.get_insights(CHUNK, level="account")

        assert [r["date_start"] for r in rows] == ["2026-09-01", "2026-09-02"]
        assert len(fake_graph.requests) == 2
        followed = fake_graph.requests[1].url
        assert followed.path == "/v23.0/act_123/insights"
        assert dict(followed.params) == {"level": "account", "after": "QVFI"}

    @pytest.mark.asyncio
    async def test_max_pages_stops_early(self, meta_client_factory, fake_graph):
        fake_graph.pages["account:2026-09-01"] = [[{"date_start": "2026-09-01"}], [{"date_start": "2026-09-02"}]]
        client = meta_client_factory()

        rows = await client.get_insights(CHUNK, level="account", max_pages=1)

        assert len(rows) == 1
        assert len(fake_graph.requests) == 1

    @pytest.mark.asyncio
    async def test_optional_params(self, meta_client_factory, fake_graph):
        client = meta_client_factory()
        await client.get_insights(
            CHUNK,
            breakdowns=["age", "gender"],
            action_attribution_windows=["7d_click", "1d_view"],
            filtering=[{"field": "spend", "operator": "GREATER_THAN", "value": 0}],
        )
        params = dict(fake_graph.requests[-1].url.params)
        assert params["breakdowns"] == "age,gender"
        assert json.loads(params["action_attribution_windows"]) == ["7d_click", "1d_view"]
        assert json.loads(params["filtering"])[0]["field"] == "spend"

    def test_account_id_prefix(self):
        assert normalize_account_id("123") == "act_123"
        assert normalize_account_id("act_123") == "act_123"


class TestAccountAndCreatives:
    """Test account verification and creative enrichment."""

    @pytest.mark.asyncio
    async def test_get_account_info(self, meta_client_factory):
        info = await meta_client_factory().get_account_info()
        assert info.id == "act_123"
        assert info.currency == "EUR"

    @pytest.mark.asyncio
    async def test_batch_creatives(self, meta_client_factory, fake_graph):
        fake_graph.creatives["ad-1"] = {"id": "cr-1", "object_type": "VIDEO", "video_id": "v-9", "thumbnail_url": "https://t/1"}
        fake_graph.creatives["ad-2"] = {"id": "cr-2", "object_type": "PHOTO", "image_url": "https://i/2"}

        result = await meta_client_factory().get_ad_creatives(["ad-1", "ad-2", "ad-3"])

        assert set(result) == {"ad-1", "ad-2"}
        assert result["ad-1"].creative_type == CreativeTypeEnum.video
        assert result["ad-1"].video_url == "https://www.facebook.com/v-9"
        assert result["ad-2"].creative_type == CreativeTypeEnum.image
        assert len(fake_graph.requests) == 1

    @pytest.mark.asyncio
    async def test_batch_failure_falls_back_per_id(self, meta_client_factory, fake_graph):
        """WHAT: If the batched read fails, each ad is fetched on its own.
        WHY: Creative enrichment is best-effort and must not fail a sync.
        """
        fake_graph.creatives["ad-1"] = {"id": "cr-1", "object_type": "PHOTO", "image_url": "https://i/1"}
        fake_graph.script("/v23.0/", (500, {"error": {"message": "Please reduce the amount of data", "code": 1}}))

        result = await meta_client_factory().get_ad_creatives(["ad-1", "ad-2"])

        assert list(result) == ["ad-1"]
        assert len(fake_graph.requests) == 3

    @pytest.mark.asyncio
    async def test_empty_ids_make_no_call(self, meta_client_factory, fake_graph):
        assert await meta_client_factory().get_ad_creatives([]) == {}
        assert fake_graph.requests == []

    def test_parse_carousel_cards(self):
        creative = parse_creative({
            "id": "cr-3",
            "object_type": "SHARE",
            "object_story_spec": {"link_data": {"child_attachments": [
                {"name": "Card 1", "link": "https://shop/1", "picture": "https://i/c1"},
                {"name": "Card 2", "link": "https://shop/2", "video_id": "v-2"},
            ]}},
        })
        assert creative.creative_type == CreativeTypeEnum.carousel
        assert [c.name for c in creative.carousel_cards] == ["Card 1", "Card 2"]
        assert creative.carousel_cards[0].image_url == "https://i/c1"

    def test_errors_share_a_base(self):
        assert issubclass(MetaAdsDateLimitError, MetaAdsClientError)
