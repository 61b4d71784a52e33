"""Meta Ads API Client Service.

WHAT:
    Async transport for the Meta Marketing (Graph) API: authenticated GET calls,
    a minimum spacing between consecutive calls, cursor pagination for insights,
    creative enrichment lookups and classification of error responses.

WHY:
    - Centralized Meta API interaction (single source of truth)
    - Cooperative throttling: a fixed floor between calls prevents back-to-back
      bursts (not a leaky bucket, heavier courtesy lives in the orchestrator)
    - Every failure becomes a typed MetaAdsClientError carrying the HTTP status,
      Meta's numeric error code and the raw error body, so callers can render
      actionable guidance and the retention prober can key on DATE_LIMIT

WHERE USED:
    - adsync/services/retention_prober.py (one-day probe queries)
    - adsync/services/sync_orchestrator.py (chunk fetches, creative enrichment)
    - adsync/routers/meta_sync.py (account verification)

ERROR TAXONOMY:
    401 -> AUTH_ERROR, 403 -> PERMISSION_ERROR, 429 -> RATE_LIMIT,
    5xx -> SERVER_ERROR, other 4xx -> API_ERROR,
    code 3018 / "37 months" -> DATE_LIMIT (sub-case of API_ERROR),
    DNS / timeout / unreadable body -> NETWORK_ERROR

REFERENCES:
    - https://developers.facebook.com/docs/marketing-api/insights
    - https://developers.facebook.com/docs/graph-api/guides/error-handling
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional

import httpx

from ..models import CreativeTypeEnum
from ..schemas import AccountInfo, CarouselCard, CreativeInfo, DateRange

logger = logging.getLogger(__name__)


DEFAULT_API_VERSION = "v23.0"
GRAPH_URL = "https://graph.facebook.com"
MIN_REQUEST_INTERVAL = 0.1  # seconds between consecutive calls
MAX_LIMIT_PER_REQUEST = 25
CREATIVE_BATCH_SIZE = 50

# Meta's "requested date is outside the retention window" error
DATE_LIMIT_ERROR_CODE = 3018
DATE_LIMIT_MESSAGE_MARKER = "37 months"

INSIGHT_FIELDS = [
    "date_start",
    "date_stop",
    "account_id",
    "campaign_id",
    "campaign_name",
    "adset_id",
    "adset_name",
    "ad_id",
    "ad_name",
    "impressions",
    "clicks",
    "spend",
    "reach",
    "frequency",
    "cpm",
    "cpc",
    "ctr",
    "conversions",
    "actions",
    "action_values",
    "cost_per_action_type",
    "cost_per_conversion",
    "purchase_roas",
    "website_purchase_roas",
]

CREATIVE_FIELDS = (
    "creative{id,name,object_type,thumbnail_url,image_url,video_id,object_story_spec}"
)

ACCOUNT_FIELDS = "id,name,currency,timezone_name,account_status"


class ErrorCode(str, Enum):
    AUTH_ERROR = "AUTH_ERROR"
    PERMISSION_ERROR = "PERMISSION_ERROR"
    RATE_LIMIT = "RATE_LIMIT"
    SERVER_ERROR = "SERVER_ERROR"
    NETWORK_ERROR = "NETWORK_ERROR"
    API_ERROR = "API_ERROR"
    DATE_LIMIT = "DATE_LIMIT"
    STORAGE_EXHAUSTED = "STORAGE_EXHAUSTED"
    SYNC_IN_PROGRESS = "SYNC_IN_PROGRESS"
    UNKNOWN_ERROR = "UNKNOWN_ERROR"


_GUIDANCE = {
    ErrorCode.AUTH_ERROR: "The access token is invalid or expired. Regenerate the access token and update META_ACCESS_TOKEN.",
    ErrorCode.PERMISSION_ERROR: "The token lacks permission for this ad account. Grant ads_read on the account to the system user.",
    ErrorCode.RATE_LIMIT: "Meta is throttling this account. Wait a few minutes before syncing again.",
    ErrorCode.SERVER_ERROR: "Meta returned a server error. Retry later.",
    ErrorCode.NETWORK_ERROR: "Could not reach the Meta API. Check network connectivity.",
    ErrorCode.API_ERROR: "Meta rejected the request. Check the account id and request parameters.",
    ErrorCode.DATE_LIMIT: "The requested dates are older than Meta's retention window. Reduce the lookback months.",
    ErrorCode.STORAGE_EXHAUSTED: "The local cache is full even after trimming. Clear cached data or raise CACHE_QUOTA_BYTES.",
    ErrorCode.SYNC_IN_PROGRESS: "A sync is already running for this account. Wait for it to finish or cancel it.",
}


def guidance_for(code: Any) -> str:
    """Operator-facing advice for an error code (string or ErrorCode)."""
    try:
        return _GUIDANCE[ErrorCode(code)]
    except (KeyError, ValueError):
        return "Unexpected error. Check the logs for details."


class MetaAdsClientError(Exception):
    """Base exception for Meta Ads Client errors.

    Carries the classified code plus the raw diagnostics (HTTP status, Meta's
    numeric error code, the error body) so callers never have to re-parse.
    """

    code = ErrorCode.API_ERROR

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        api_error_code: Optional[int] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.api_error_code = api_error_code
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "code": self.code.value,
            "message": self.message,
            "status_code": self.status_code,
            "api_error_code": self.api_error_code,
            "guidance": guidance_for(self.code),
        }


class MetaAdsAuthenticationError(MetaAdsClientError):
    """Raised when authentication fails (401)."""
    code = ErrorCode.AUTH_ERROR


class MetaAdsPermissionError(MetaAdsClientError):
    """Raised when permissions are insufficient (403)."""
    code = ErrorCode.PERMISSION_ERROR


class MetaAdsRateLimitError(MetaAdsClientError):
    """Raised when Meta throttles the caller (429)."""
    code = ErrorCode.RATE_LIMIT


class MetaAdsServerError(MetaAdsClientError):
    """Raised on 5xx responses."""
    code = ErrorCode.SERVER_ERROR


class MetaAdsNetworkError(MetaAdsClientError):
    """Raised when no usable response came back (DNS, timeout, bad body)."""
    code = ErrorCode.NETWORK_ERROR


class MetaAdsValidationError(MetaAdsClientError):
    """Raised when request is rejected (other 4xx)."""
    code = ErrorCode.API_ERROR


class MetaAdsDateLimitError(MetaAdsValidationError):
    """Raised when the requested dates are outside the retention window."""
    code = ErrorCode.DATE_LIMIT


def is_date_limit_error(error: BaseException) -> bool:
    return isinstance(error, MetaAdsDateLimitError)


def classify_error(
    status_code: int,
    body: Any,
    raw_text: Optional[str] = None,
) -> MetaAdsClientError:
    """Map an error response to the matching MetaAdsClientError subclass.

    Args:
        status_code: HTTP status of the response
        body: Decoded JSON body (`{"error": {message, type, code}}`) or None
        raw_text: Undecoded body, kept in `details` when JSON decoding failed

    Returns:
        The exception instance (not raised)
    """
    error = body.get("error") if isinstance(body, dict) else None
    if isinstance(error, dict):
        message = error.get("message") or f"HTTP {status_code}"
        api_error_code = error.get("code")
        details = error
    else:
        message = f"HTTP {status_code}"
        api_error_code = None
        details = {"raw": raw_text if raw_text is not None else body}

    kwargs = dict(status_code=status_code, api_error_code=api_error_code, details=details)

    if api_error_code == DATE_LIMIT_ERROR_CODE or DATE_LIMIT_MESSAGE_MARKER in message:
        return MetaAdsDateLimitError(message, **kwargs)
    if status_code == 401:
        return MetaAdsAuthenticationError(message, **kwargs)
    if status_code == 403:
        return MetaAdsPermissionError(message, **kwargs)
    if status_code == 429:
        return MetaAdsRateLimitError(message, **kwargs)
    if status_code >= 500:
        return MetaAdsServerError(message, **kwargs)
    return MetaAdsValidationError(message, **kwargs)


def normalize_account_id(account_id: str) -> str:
    """Meta expects ad account ids with the `act_` prefix."""
    account_id = str(account_id).strip()
    return account_id if account_id.startswith("act_") else f"act_{account_id}"


def _encode_params(params: Optional[Dict[str, Any]]) -> Dict[str, str]:
    """Flatten Graph API params: comma lists for field-like keys, JSON for structures."""
    encoded: Dict[str, str] = {}
    for key, value in (params or {}).items():
        if value is None:
            continue
        if isinstance(value, bool):
            encoded[key] = "true" if value else "false"
        elif isinstance(value, (list, tuple)) and key in ("fields", "breakdowns", "action_breakdowns", "ids"):
            encoded[key] = ",".join(str(v) for v in value)
        elif isinstance(value, (dict, list, tuple)):
            encoded[key] = json.dumps(value, separators=(",", ":"))
        else:
            encoded[key] = str(value)
    return encoded


class MetaAdsClient:
    """Async client for the Meta Marketing API.

    WHAT:
        One instance per ad account. `call()` is the only method that touches
        the network; everything else builds params and shapes results.

    WHY:
        Sleep and clock are injectable so throttling and retries can be tested
        without waiting in real time.

    Usage:
        ```python
        client = MetaAdsClient(access_token="EAAB...", account_id="act_123")
        rows = await client.get_insights(DateRange(start=..., end=...), level="ad")
        await client.aclose()
        ```
    """

    def __init__(
        self,
        access_token: str,
        account_id: str,
        api_version: str = DEFAULT_API_VERSION,
        graph_url: str = GRAPH_URL,
        min_interval: float = MIN_REQUEST_INTERVAL,
        timeout: float = 30.0,
        http_client: Optional[httpx.AsyncClient] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.access_token = access_token
        self.account_id = normalize_account_id(account_id)
        self.api_version = api_version
        self.base_url = f"{graph_url.rstrip('/')}/{api_version}"
        self.min_interval = min_interval
        self.timeout = timeout
        self._http = http_client
        self._owns_http = http_client is None
        self._sleep = sleep
        self._clock = clock

        # Rate limiting
        self._last_request_time: Optional[float] = None
        self.call_count = 0

        logger.info(f"[META_CLIENT] Initialized for {self.account_id} (API version: {api_version})")

    # =========================================================================
    # TRANSPORT
    # =========================================================================

    async def _throttle(self) -> None:
        """Wait until `min_interval` has elapsed since the previous call."""
        if self._last_request_time is not None:
            elapsed = self._clock() - self._last_request_time
            if elapsed < self.min_interval:
                wait_time = self.min_interval - elapsed
                logger.debug(f"[META_CLIENT] Spacing calls: waiting {wait_time:.3f}s")
                await self._sleep(wait_time)
        self._last_request_time = self._clock()

    def _get_http(self) -> httpx.AsyncClient:
        if self._http is None:
            self._http = httpx.AsyncClient(timeout=self.timeout)
        return self._http

    async def call(self, endpoint: str, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """Issue one authenticated GET and return the decoded JSON body.

        Args:
            endpoint: Path relative to the versioned Graph URL ("act_1/insights"),
                or an absolute URL (paging.next links)
            params: Query parameters; lists/dicts are encoded the way Graph expects

        Raises:
            MetaAdsClientError subclass matching the failure (see module docstring)
        """
        await self._throttle()

        if endpoint.startswith("http://") or endpoint.startswith("https://"):
            url = endpoint
        else:
            url = f"{self.base_url}/{endpoint.lstrip('/')}"

        headers = {"Authorization": f"Bearer {self.access_token}"}
        self.call_count += 1

        try:
            response = await self._get_http().get(url, params=_encode_params(params), headers=headers)
        except httpx.RequestError as e:
            logger.warning(f"[META_CLIENT] Network error calling {endpoint}: {e}")
            raise MetaAdsNetworkError(
                f"Network error calling {endpoint}: {e}",
                details={"exception": type(e).__name__},
            ) from e

        try:
            body = response.json()
        except ValueError:
            body = None

        if response.status_code >= 400:
            error = classify_error(response.status_code, body, response.text)
            logger.error(
                f"[META_CLIENT] API error calling {endpoint}: "
                f"HTTP {error.status_code}, Code {error.api_error_code}, "
                f"{error.code.value}: {error.message}"
            )
            raise error

        if not isinstance(body, dict):
            raise MetaAdsNetworkError(
                f"Unreadable response from {endpoint}",
                status_code=response.status_code,
                details={"raw": response.text[:500]},
            )
        return body

    async def aclose(self) -> None:
        if self._http is not None and self._owns_http:
            await self._http.aclose()
        self._http = None

    async def __aenter__(self) -> "MetaAdsClient":
        return self

    async def __aexit__(self, *exc) -> None:
        await self.aclose()

    # =========================================================================
    # INSIGHTS
    # =========================================================================

    def build_insights_params(
        self,
        date_range: Optional[DateRange] = None,
        level: str = "account",
        fields: Optional[Iterable[str]] = None,
        date_preset: Optional[str] = None,
        time_increment: str = "1",
        limit: int = MAX_LIMIT_PER_REQUEST,
        breakdowns: Optional[List[str]] = None,
        action_breakdowns: Optional[List[str]] = None,
        action_attribution_windows: Optional[List[str]] = None,
        filtering: Optional[List[Dict[str, Any]]] = None,
    ) -> Dict[str, Any]:
        """Assemble `/insights` query params (limit is capped at 25 rows per call)."""
        params: Dict[str, Any] = {
            "fields": list(fields) if fields else INSIGHT_FIELDS,
            "level": level,
            "time_increment": time_increment,
            "limit": max(1, min(int(limit), MAX_LIMIT_PER_REQUEST)),
        }
        if date_range is not None:
            params["time_range"] = {
                "since": date_range.start.isoformat(),
                "until": date_range.end.isoformat(),
            }
        elif date_preset:
            params["date_preset"] = date_preset
        if breakdowns:
            params["breakdowns"] = breakdowns
        if action_breakdowns:
            params["action_breakdowns"] = action_breakdowns
        if action_attribution_windows:
            params["action_attribution_windows"] = action_attribution_windows
        if filtering:
            params["filtering"] = filtering
        return params

    async def get_insights(
        self,
        date_range: Optional[DateRange] = None,
        level: str = "account",
        max_pages: Optional[int] = None,
        **kwargs: Any,
    ) -> List[Dict[str, Any]]:
        """Fetch insights rows for the account, following cursor pagination.

        WHAT:
            One call per page; each page is subject to the call spacing.
            Pages by `cursors.after`, or by the absolute `paging.next` link
            when Meta omits the cursor. Stops when there is no next link.

        Args:
            date_range: Inclusive window (`time_range`); omit to use `date_preset`
            level: account | campaign | adset | ad
            max_pages: Stop after this many pages (probe queries use 1)
            **kwargs: Forwarded to build_insights_params

        Returns:
            Raw insight dicts exactly as Meta returned them
        """
        params = self.build_insights_params(date_range=date_range, level=level, **kwargs)
        endpoint = f"{self.account_id}/insights"
        rows: List[Dict[str, Any]] = []
        pages = 0

        while True:
            body = await self.call(endpoint, params)
            rows.extend(body.get("data", []))
            pages += 1

            paging = body.get("paging") or {}
            next_url = paging.get("next")
            if not next_url:
                break
            if max_pages is not None and pages >= max_pages:
                break
            after = (paging.get("cursors") or {}).get("after")
            if after:
                params = dict(params, after=after)
            elif next_url != endpoint:
                # no cursor: the next link carries the full query
                endpoint, params = next_url, None
            else:
                break

        logger.debug(
            f"[META_CLIENT] Fetched {len(rows)} {level}-level rows "
            f"for {date_range or kwargs.get('date_preset')} in {pages} page(s)"
        )
        return rows

    # =========================================================================
    # ACCOUNT / CREATIVES
    # =========================================================================

    async def get_account_info(self) -> AccountInfo:
        """Fetch basic account metadata; doubles as a token/permission check."""
        body = await self.call(self.account_id, {"fields": ACCOUNT_FIELDS})
        logger.info(f"[META_CLIENT] Verified account {body.get('id')} ({body.get('name')})")
        return AccountInfo(**{k: body.get(k) for k in AccountInfo.model_fields if k in body})

    async def get_ad_creatives(self, ad_ids: List[str]) -> Dict[str, CreativeInfo]:
        """Fetch creative metadata for up to 50 ads.

        WHAT:
            One batched read (`GET /?ids=...`). If the batch call fails, fall
            back to one call per ad, dropping ads that still fail.

        WHY:
            Creative enrichment is best-effort: a missing thumbnail must never
            fail a sync.

        Returns:
            Mapping ad_id -> CreativeInfo for ads whose creative could be read
        """
        ad_ids = [a for a in dict.fromkeys(ad_ids) if a][:CREATIVE_BATCH_SIZE]
        if not ad_ids:
            return {}

        try:
            body = await self.call("", {"ids": ad_ids, "fields": CREATIVE_FIELDS})
            result = {}
            for ad_id in ad_ids:
                creative = (body.get(ad_id) or {}).get("creative")
                if creative:
                    result[ad_id] = parse_creative(creative)
            return result
        except MetaAdsClientError as e:
            logger.warning(
                f"[META_CLIENT] Batch creative fetch failed ({e.code.value}), "
                f"falling back to {len(ad_ids)} single fetches"
            )

        result = {}
        for ad_id in ad_ids:
            try:
                body = await self.call(ad_id, {"fields": CREATIVE_FIELDS})
            except MetaAdsClientError as e:
                logger.warning(f"[META_CLIENT] Could not fetch creative for ad {ad_id}: {e}")
                continue
            creative = body.get("creative")
            if creative:
                result[ad_id] = parse_creative(creative)
        return result


def determine_media_type(creative_data: Dict[str, Any]) -> CreativeTypeEnum:
    """Determine media type from creative data.

    Returns:
        One of: image, video, carousel, unknown
    """
    object_type = (creative_data.get("object_type") or "").upper()

    if "VIDEO" in object_type:
        return CreativeTypeEnum.video
    elif "CAROUSEL" in object_type:
        return CreativeTypeEnum.carousel
    elif object_type in ["SHARE", "PHOTO", "STATUS"]:
        # SHARE is also used by carousels; child attachments decide below
        if not ((creative_data.get("object_story_spec") or {}).get("link_data") or {}).get("child_attachments"):
            return CreativeTypeEnum.image

    object_story_spec = creative_data.get("object_story_spec") or {}
    if object_story_spec.get("video_data") or creative_data.get("video_id"):
        return CreativeTypeEnum.video
    if (object_story_spec.get("link_data") or {}).get("child_attachments"):
        return CreativeTypeEnum.carousel
    if object_story_spec.get("link_data") or object_story_spec.get("photo_data") or creative_data.get("image_url"):
        return CreativeTypeEnum.image

    return CreativeTypeEnum.unknown


def parse_creative(creative_data: Dict[str, Any]) -> CreativeInfo:
    """Shape a Graph `creative{...}` object into CreativeInfo."""
    object_story_spec = creative_data.get("object_story_spec") or {}
    link_data = object_story_spec.get("link_data") or {}
    video_data = object_story_spec.get("video_data") or {}

    video_id = creative_data.get("video_id") or video_data.get("video_id")
    image_url = creative_data.get("image_url") or link_data.get("picture") or video_data.get("image_url")

    cards = [
        CarouselCard(
            name=child.get("name"),
            description=child.get("description"),
            link=child.get("link"),
            image_url=child.get("picture") or child.get("image_url"),
            video_id=child.get("video_id"),
        )
        for child in link_data.get("child_attachments") or []
    ]

    return CreativeInfo(
        creative_id=creative_data.get("id"),
        creative_name=creative_data.get("name"),
        creative_type=determine_media_type(creative_data),
        thumbnail_url=creative_data.get("thumbnail_url") or image_url,
        image_url=image_url,
        video_id=video_id,
        video_url=f"https://www.facebook.com/{video_id}" if video_id else None,
        carousel_cards=cards,
    )
