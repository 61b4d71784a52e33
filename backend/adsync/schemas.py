"""Pydantic schemas for insight records, sync state and API payloads."""

from datetime import datetime, date
from typing import Optional, List, Dict, Any, Tuple

from pydantic import BaseModel, Field, computed_field, model_validator

from .models import (
    ChangeOperationEnum,
    CreativeTypeEnum,
    LevelEnum,
    SyncModeEnum,
    SyncStateEnum,
)


# Identity key component used when a record has no campaign (account-level rows)
ACCOUNT_SCOPE = "account"


class DateRange(BaseModel):
    """Inclusive [start, end] date window; the planner's unit of work."""

    start: date
    end: date

    @model_validator(mode="after")
    def _check_order(self):
        if self.start > self.end:
            raise ValueError(f"start ({self.start}) must be <= end ({self.end})")
        return self

    @property
    def days(self) -> int:
        return (self.end - self.start).days + 1

    def contains(self, day: date) -> bool:
        return self.start <= day <= self.end

    def __str__(self):
        return f"{self.start.isoformat()}..{self.end.isoformat()}"


class CarouselCard(BaseModel):
    """One card of a carousel creative."""

    name: Optional[str] = None
    description: Optional[str] = None
    link: Optional[str] = None
    image_url: Optional[str] = None
    video_id: Optional[str] = None


class CreativeInfo(BaseModel):
    """Creative enrichment attached to ad-level records.

    Fetched separately from the metrics, so it may arrive in a later pass.
    """

    creative_id: Optional[str] = None
    creative_name: Optional[str] = None
    creative_type: CreativeTypeEnum = CreativeTypeEnum.unknown
    thumbnail_url: Optional[str] = None
    image_url: Optional[str] = None
    video_id: Optional[str] = None
    video_url: Optional[str] = None
    carousel_cards: List[CarouselCard] = Field(default_factory=list)


class InsightRecord(BaseModel):
    """One (date, scope) observation with the unified conversion tuple.

    Identity key = (date_start, campaign_id or "account", ad_id or "").
    """

    date_start: date
    date_stop: date
    level: LevelEnum = LevelEnum.account
    account_id: Optional[str] = None
    campaign_id: Optional[str] = None
    campaign_name: Optional[str] = None
    adset_id: Optional[str] = None
    adset_name: Optional[str] = None
    ad_id: Optional[str] = None
    ad_name: Optional[str] = None

    # Raw counters (strings on the wire)
    impressions: int = 0
    clicks: int = 0
    spend: float = 0.0
    reach: int = 0
    frequency: float = 0.0
    cpm: float = 0.0
    cpc: float = 0.0
    ctr: float = 0.0

    # Unified conversion tuple
    conversions: float = 0.0
    conversion_value: float = 0.0
    cost_per_conversion: float = 0.0
    roas: float = 0.0
    conversion_action_type: Optional[str] = None  # which rule produced `conversions`

    creative: Optional[CreativeInfo] = None

    # Unmodified action arrays kept for diagnostics
    raw_actions: Dict[str, List[Dict[str, Any]]] = Field(default_factory=dict)

    @property
    def identity_key(self) -> Tuple[str, str, str]:
        return (
            self.date_start.isoformat(),
            self.campaign_id or ACCOUNT_SCOPE,
            self.ad_id or "",
        )

    @property
    def has_creative(self) -> bool:
        """True when any creative field is set, even if the media type is unknown."""
        return self.creative is not None and self.creative != CreativeInfo()


class CachedRecord(InsightRecord):
    """InsightRecord as stored in the cache."""

    synced_at: datetime


class SyncDateRange(BaseModel):
    earliest: Optional[date] = None
    latest: Optional[date] = None


class SyncStatus(BaseModel):
    """Per-account sync bookkeeping, mutated only by the orchestrator."""

    account_id: str
    last_full_sync: Optional[datetime] = None
    last_incremental_sync: Optional[datetime] = None
    total_records: int = 0
    date_range: SyncDateRange = Field(default_factory=SyncDateRange)


class ChangeHistoryEntry(BaseModel):
    """One audit line of a cache mutation (diagnostics only)."""

    timestamp: datetime
    account_id: str
    operation: ChangeOperationEnum
    before_count: int
    after_count: int
    source: str = "sync"


class CacheUsage(BaseModel):
    account_id: str
    records: int
    compressed_bytes: int
    total_bytes: Optional[int] = None
    quota_bytes: Optional[int] = None


class ImportResult(BaseModel):
    imported: int = 0
    updated: int = 0
    skipped: int = 0

    def __add__(self, other: "ImportResult") -> "ImportResult":
        return ImportResult(
            imported=self.imported + other.imported,
            updated=self.updated + other.updated,
            skipped=self.skipped + other.skipped,
        )


class InsightFilters(BaseModel):
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    campaign_id: Optional[str] = None
    ad_id: Optional[str] = None
    level: Optional[LevelEnum] = None


class InsightsPage(BaseModel):
    items: List[CachedRecord]
    has_more: bool
    next_cursor: Optional[str] = None


class InsightsStats(BaseModel):
    total_spend: float = 0.0
    total_impressions: int = 0
    total_clicks: int = 0
    total_conversions: float = 0.0
    total_conversion_value: float = 0.0
    avg_cpc: float = 0.0
    avg_cpm: float = 0.0
    avg_ctr: float = 0.0
    unique_campaigns: int = 0
    unique_ads: int = 0
    total_records: int = 0


class RetentionInfo(BaseModel):
    max_months: int
    oldest_date: date
    probed: bool
    probe_calls: int = 0


class SyncProgress(BaseModel):
    account_id: str
    state: SyncStateEnum
    current: int
    total: int
    message: str = ""


class SkippedChunk(BaseModel):
    date_range: DateRange
    error_code: str
    message: str
    status_code: Optional[int] = None
    api_error_code: Optional[int] = None


class SyncRunResult(BaseModel):
    """Outcome reported to the caller of a sync run."""

    account_id: str
    mode: SyncModeEnum
    state: SyncStateEnum
    chunks_planned: int = 0
    chunks_fetched: int = 0
    skipped_chunks: List[SkippedChunk] = Field(default_factory=list)
    records_fetched: int = 0
    import_result: ImportResult = Field(default_factory=ImportResult)
    retention: Optional[RetentionInfo] = None
    date_range: SyncDateRange = Field(default_factory=SyncDateRange)
    started_at: datetime
    finished_at: Optional[datetime] = None

    @computed_field
    @property
    def chunks_skipped(self) -> int:
        return len(self.skipped_chunks)

    @property
    def success(self) -> bool:
        return self.state == SyncStateEnum.completed


class SyncRequest(BaseModel):
    """Payload for POST /sync."""

    mode: SyncModeEnum = SyncModeEnum.incremental
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    max_months: Optional[int] = Field(default=None, ge=1, le=37)
    skip_creatives: Optional[bool] = None
    debug_mode: Optional[bool] = None
    exhaustive_coverage: Optional[bool] = None

    model_config = {
        "json_schema_extra": {
            "example": {
                "mode": "full",
                "max_months": 13,
                "skip_creatives": True,
            }
        }
    }


class AccountInfo(BaseModel):
    id: str
    name: Optional[str] = None
    currency: Optional[str] = None
    timezone_name: Optional[str] = None
    account_status: Optional[int] = None


class ErrorResponse(BaseModel):
    code: str
    message: str
    guidance: str
    status_code: Optional[int] = None
    account_id: Optional[str] = None
