"""Normalization of raw Meta insight rows into InsightRecord.

WHAT:
    Coerces the wire strings to numbers and collapses Meta's per-action-type
    arrays (`actions`, `action_values`, `cost_per_action_type`,
    `purchase_roas`, ...) into one conversions / value / CPA / ROAS tuple.

WHY:
    Meta reports the same purchase several times under different action
    types (omni_purchase is the cross-channel roll-up of purchase,
    offsite_conversion.fb_pixel_purchase, ...). Summing every type
    double-counts, so exactly one type is chosen by a fixed precedence that
    does not depend on array order.

PRECEDENCE (conversions):
    1. A scalar `conversions` aggregate on the row, when present.
    2. The highest-priority action type in PURCHASE_ACTION_PRIORITY present
       in `actions` (duplicate entries of that type are summed).
    3. The sum of every other action type containing "purchase".

    Value, CPA and ROAS follow the same chosen type where Meta reports one.

The module is pure: same raw input, same output. Merge idempotence depends on it.
"""

from __future__ import annotations

import math
from typing import Any, Dict, Iterable, List, Optional, Tuple

from pydantic import ValidationError

from ..models import LevelEnum
from ..schemas import InsightRecord
from ..utils.dates import parse_date


PURCHASE_ACTION_PRIORITY: Tuple[str, ...] = (
    "omni_purchase",
    "purchase",
    "offsite_conversion.fb_pixel_purchase",
    "website_purchase",
    "onsite_conversion.purchase",
    "app_custom_event.fb_mobile_purchase",
    "offline_conversion.purchase",
    "offsite_conversion",
)

RAW_ARRAY_FIELDS: Tuple[str, ...] = (
    "actions",
    "action_values",
    "cost_per_action_type",
    "purchase_roas",
    "website_purchase_roas",
    "conversions",
    "conversion_values",
)

AGGREGATE_MARKER = "conversions"
FALLBACK_MARKER = "purchase*"


class NormalizationError(ValueError):
    """Raised when a raw row cannot be identified (missing/invalid date_start)."""


def to_float(value: Any) -> float:
    """Wire value -> float; unparseable, NaN and infinite values become 0."""
    if value is None or isinstance(value, bool):
        return 0.0
    try:
        number = float(value)
    except (TypeError, ValueError):
        return 0.0
    if math.isnan(number) or math.isinf(number):
        return 0.0
    return number


def to_int(value: Any) -> int:
    return int(to_float(value))


def _entries(array: Any) -> List[Dict[str, Any]]:
    if not isinstance(array, list):
        return []
    return [a for a in array if isinstance(a, dict) and a.get("action_type")]


def _sum_type(entries: Iterable[Dict[str, Any]], action_type: str) -> Optional[float]:
    values = [to_float(e.get("value")) for e in entries if e.get("action_type") == action_type]
    return sum(values) if values else None


def pick_action_value(array: Any, prefer: Optional[str] = None) -> Tuple[float, Optional[str]]:
    """Choose one value from an action array by precedence.

    Args:
        array: Raw Meta action array (list of {action_type, value})
        prefer: Action type to try first (the type chosen for conversions)

    Returns:
        (value, rule) where rule is the action type used, FALLBACK_MARKER when
        other purchase-like types were summed, or None when nothing matched
    """
    entries = _entries(array)
    if not entries:
        return 0.0, None

    order = ((prefer,) if prefer and prefer != FALLBACK_MARKER else ()) + PURCHASE_ACTION_PRIORITY
    for action_type in order:
        value = _sum_type(entries, action_type)
        if value is not None:
            return value, action_type

    fallback = [
        to_float(e.get("value"))
        for e in entries
        if "purchase" in str(e["action_type"]) and e["action_type"] not in PURCHASE_ACTION_PRIORITY
    ]
    if fallback:
        return sum(fallback), FALLBACK_MARKER
    return 0.0, None


def extract_conversions(raw: Dict[str, Any]) -> Tuple[float, Optional[str]]:
    aggregate = raw.get("conversions")
    if aggregate is not None and not isinstance(aggregate, (list, dict)):
        return to_float(aggregate), AGGREGATE_MARKER
    if isinstance(aggregate, list) and _entries(aggregate):
        return pick_action_value(aggregate)
    return pick_action_value(raw.get("actions"))


def extract_conversion_value(raw: Dict[str, Any], prefer: Optional[str]) -> float:
    aggregate = raw.get("conversion_values")
    if aggregate is not None and not isinstance(aggregate, (list, dict)):
        return to_float(aggregate)
    if isinstance(aggregate, list) and _entries(aggregate):
        return pick_action_value(aggregate, prefer)[0]
    return pick_action_value(raw.get("action_values"), prefer)[0]


def calculate_cpa(raw: Dict[str, Any], spend: float, conversions: float, prefer: Optional[str]) -> float:
    """cost_per_conversion, then cost_per_action_type, then spend / conversions."""
    direct = raw.get("cost_per_conversion")
    if direct is not None and not isinstance(direct, (list, dict)) and to_float(direct) > 0:
        return to_float(direct)

    for array in (direct, raw.get("cost_per_action_type")):
        value, rule = pick_action_value(array, prefer)
        if rule is not None and rule != FALLBACK_MARKER and value > 0:
            return value

    if spend > 0 and conversions > 0:
        return spend / conversions
    return 0.0


def calculate_roas(raw: Dict[str, Any], spend: float, conversion_value: float, prefer: Optional[str]) -> float:
    """purchase_roas (omni_purchase first), then website_purchase_roas, then value / spend."""
    for field in ("purchase_roas", "website_purchase_roas"):
        entries = _entries(raw.get(field))
        if entries:
            value, rule = pick_action_value(entries, prefer)
            if rule is None:
                value = to_float(entries[0].get("value"))
            return value

    if spend > 0:
        return conversion_value / spend
    return 0.0


def detect_level(raw: Dict[str, Any]) -> LevelEnum:
    if raw.get("ad_id"):
        return LevelEnum.ad
    if raw.get("adset_id"):
        return LevelEnum.adset
    if raw.get("campaign_id"):
        return LevelEnum.campaign
    return LevelEnum.account


def normalize(
    raw: Dict[str, Any],
    level: Optional[LevelEnum] = None,
    account_id: Optional[str] = None,
) -> InsightRecord:
    """Convert one raw Meta insight row into an InsightRecord.

    Raises:
        NormalizationError: `date_start` is missing or not an ISO date, or a
            field cannot be coerced into the record
    """
    try:
        date_start = parse_date(raw.get("date_start"))
        date_stop = parse_date(raw.get("date_stop")) or date_start
    except ValueError as e:
        raise NormalizationError(f"Invalid date in insight row: {e}") from e
    if date_start is None:
        raise NormalizationError("Insight row has no date_start")

    spend = to_float(raw.get("spend"))
    conversions, rule = extract_conversions(raw)
    conversion_value = extract_conversion_value(raw, rule)

    raw_actions = {
        field: [entry for entry in raw[field] if isinstance(entry, dict)]
        for field in RAW_ARRAY_FIELDS
        if isinstance(raw.get(field), list)
    }

    try:
        return InsightRecord(
            date_start=date_start,
            date_stop=date_stop,
            level=level or detect_level(raw),
            account_id=raw.get("account_id") or account_id,
            campaign_id=raw.get("campaign_id") or None,
            campaign_name=raw.get("campaign_name"),
            adset_id=raw.get("adset_id") or None,
            adset_name=raw.get("adset_name"),
            ad_id=raw.get("ad_id") or None,
            ad_name=raw.get("ad_name"),
            impressions=to_int(raw.get("impressions")),
            clicks=to_int(raw.get("clicks")),
            spend=spend,
            reach=to_int(raw.get("reach")),
            frequency=to_float(raw.get("frequency")),
            cpm=to_float(raw.get("cpm")),
            cpc=to_float(raw.get("cpc")),
            ctr=to_float(raw.get("ctr")),
            conversions=conversions,
            conversion_value=conversion_value,
            cost_per_conversion=calculate_cpa(raw, spend, conversions, rule),
            roas=calculate_roas(raw, spend, conversion_value, rule),
            conversion_action_type=rule,
            raw_actions=raw_actions,
        )
    except ValidationError as e:
        raise NormalizationError(f"Malformed insight row for {date_start}: {e.error_count()} invalid field(s)") from e


def normalize_many(
    rows: Iterable[Dict[str, Any]],
    level: Optional[LevelEnum] = None,
    account_id: Optional[str] = None,
) -> Tuple[List[InsightRecord], int]:
    """Normalize a page of rows, returning (records, rows_dropped)."""
    records: List[InsightRecord] = []
    dropped = 0
    for row in rows:
        if not isinstance(row, dict):
            dropped += 1
            continue
        try:
            records.append(normalize(row, level=level, account_id=account_id))
        except NormalizationError:
            dropped += 1
    return records, dropped
