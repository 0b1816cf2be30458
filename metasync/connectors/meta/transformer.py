"""METASYNC: Meta Raw → RawInsightRecord Transformer.

Converts Graph API insight rows into RawInsightRecord, flattening the
``actions`` / ``action_values`` arrays into named metrics. A row that cannot
be converted is replaced by a recovery placeholder so one bad row never sinks
the rest of its batch.
"""

from datetime import date
from typing import Any, Dict, Iterable, List, Mapping, Optional

from pydantic import ValidationError

from metasync.connectors.meta.endpoints import BreakdownBatch, DateRange
from metasync.core.errors import RecordTransformError
from metasync.core.logging import get_logger
from metasync.models.insight_models import (
    DIMENSIONS,
    RECOVERY,
    UNKNOWN,
    RawInsightRecord,
)

logger = get_logger("meta.transformer")

# Direct-map fields from Meta insight response
DIRECT_METRICS = [
    "impressions",
    "reach",
    "clicks",
    "unique_clicks",
    "spend",
    "frequency",
    "ctr",
    "unique_ctr",
    "cpc",
    "cpm",
    "cpp",
    "cost_per_unique_click",
    "inline_link_clicks",
    "inline_post_engagement",
]

# action_type -> metric, first listed type wins when several are present
ACTION_METRICS: Dict[str, tuple] = {
    "link_clicks": ("link_click",),
    "post_engagement": ("post_engagement",),
    "page_engagement": ("page_engagement",),
    "likes": ("like",),
    "comments": ("comment",),
    "shares": ("post",),
    "photo_view": ("photo_view",),
    "video_views": ("video_view",),
    "purchases": ("purchase", "offsite_conversion.fb_pixel_purchase"),
    "leads": ("lead", "offsite_conversion.fb_pixel_lead"),
    "mobile_app_install": ("mobile_app_install",),
}
PURCHASE_ACTIONS = ("purchase", "offsite_conversion.fb_pixel_purchase")
ROAS_ACTIONS = ("omni_purchase", "purchase", "offsite_conversion.fb_pixel_purchase")
VIDEO_MILESTONES = ("25", "50", "75", "95", "100")


def _safe_float(value: Any) -> float:
    """Safely convert a value to float."""
    try:
        return float(value)
    except (TypeError, ValueError):
        return 0.0


def _parse_number(row: Mapping[str, Any], field: str) -> Optional[float]:
    """Strict numeric parse for top-level fields. Missing → None."""
    value = row.get(field)
    if value is None or value == "":
        return None
    try:
        return float(value)
    except (TypeError, ValueError) as e:
        raise RecordTransformError(
            f"Field {field!r} is not numeric: {value!r}"
        ) from e


def _parse_date(value: Any, field: str) -> str:
    if not isinstance(value, str) or not value:
        raise RecordTransformError(f"Missing {field}")
    try:
        date.fromisoformat(value)
    except ValueError as e:
        raise RecordTransformError(f"Invalid {field}: {value!r}") from e
    return value


def _first_action(entries: Any, action_types: Iterable[str]) -> Optional[float]:
    by_type = {
        e.get("action_type"): e.get("value")
        for e in entries or []
        if isinstance(e, Mapping)
    }
    for action_type in action_types:
        if action_type in by_type:
            return _safe_float(by_type[action_type])
    return None


def _extract_action_metrics(row: Mapping[str, Any]) -> Dict[str, float]:
    """Extract action-based metrics (conversions, purchases, etc.)."""
    metrics: Dict[str, float] = {}
    actions = row.get("actions") or []
    for metric, action_types in ACTION_METRICS.items():
        value = _first_action(actions, action_types)
        if value is not None:
            metrics[metric] = value

    unique_link = _first_action(row.get("unique_actions"), ("link_click",))
    if unique_link is not None:
        metrics["unique_link_clicks"] = unique_link

    # Action values (revenue)
    revenue = _first_action(row.get("action_values"), PURCHASE_ACTIONS)
    if revenue is not None:
        metrics["purchase_value"] = revenue

    roas = _first_action(row.get("purchase_roas"), ROAS_ACTIONS)
    if roas is not None:
        metrics["purchase_roas"] = roas

    # Video completion metrics
    for pct in VIDEO_MILESTONES:
        value = _first_action(row.get(f"video_p{pct}_watched_actions"), ("video_view",))
        if value is not None:
            metrics[f"video_p{pct}_watched"] = value

    return metrics


def _account_id(row: Mapping[str, Any], account_id: str) -> str:
    return str(row.get("account_id") or account_id.removeprefix("act_"))


def parse_insight_row(
    row: Any,
    account_id: str,
    batch: BreakdownBatch,
    fill_unknown: bool = False,
) -> RawInsightRecord:
    """Convert one Graph API row. Raises RecordTransformError if malformed.

    Dimensions requested by the batch but missing from the row are set to
    ``unknown``. With ``fill_unknown`` every dimension is set, which is how
    rows fetched without breakdowns are tagged.
    """
    if not isinstance(row, Mapping):
        raise RecordTransformError(f"Insight row is not an object: {type(row).__name__}")

    ad_id = row.get("ad_id")
    if not ad_id:
        raise RecordTransformError("Insight row has no ad_id")
    date_start = _parse_date(row.get("date_start"), "date_start")
    date_stop = row.get("date_stop") or date_start

    metrics: Dict[str, float] = {}
    for field in DIRECT_METRICS:
        value = _parse_number(row, field)
        if value is not None:
            metrics[field] = value
    metrics.update(_extract_action_metrics(row))

    dimensions: Dict[str, str] = {}
    if fill_unknown:
        dimensions = {d: UNKNOWN for d in DIMENSIONS}
    for breakdown, dimension in zip(batch.breakdowns, batch.dimensions):
        value = row.get(breakdown)
        dimensions[dimension] = str(value).strip() if value not in (None, "") else UNKNOWN

    try:
        return RawInsightRecord(
            account_id=_account_id(row, account_id),
            campaign_id=str(row.get("campaign_id") or ""),
            adset_id=str(row.get("adset_id") or ""),
            ad_id=str(ad_id),
            date_start=date_start,
            date_stop=str(date_stop),
            dimensions=dimensions,
            metrics=metrics,
            batch=batch.name,
        )
    except ValidationError as e:
        raise RecordTransformError(f"Invalid insight row: {e}") from e


def build_recovery_record(
    row: Any,
    account_id: str,
    batch: BreakdownBatch,
    error: Exception,
    date_range: Optional[DateRange] = None,
) -> RawInsightRecord:
    """Placeholder for a row that failed to transform."""
    src: Mapping[str, Any] = row if isinstance(row, Mapping) else {}
    try:
        date_start = _parse_date(src.get("date_start"), "date_start")
    except RecordTransformError:
        if date_range is None:
            raise
        date_start = date_range.since
    try:
        date_stop = _parse_date(src.get("date_stop"), "date_stop")
    except RecordTransformError:
        date_stop = date_start

    return RawInsightRecord(
        account_id=_account_id(src, account_id) or "recovery_account",
        campaign_id=str(src.get("campaign_id") or "recovery_campaign"),
        adset_id=str(src.get("adset_id") or "recovery_adset"),
        ad_id=str(src.get("ad_id") or "recovery_ad"),
        date_start=date_start,
        date_stop=date_stop,
        dimensions={d: RECOVERY for d in DIMENSIONS},
        metrics={},
        batch=batch.name,
        recovered=True,
        recovery_reason=str(error),
    )


def parse_insight_rows(
    rows: List[Any],
    account_id: str,
    batch: BreakdownBatch,
    date_range: Optional[DateRange] = None,
    fill_unknown: bool = False,
) -> List[RawInsightRecord]:
    """Convert a page of rows, substituting recovery placeholders for bad rows.

    Raises RecordTransformError only when a placeholder cannot be built.
    """
    records: List[RawInsightRecord] = []
    recovered = 0
    for row in rows:
        try:
            records.append(parse_insight_row(row, account_id, batch, fill_unknown))
        except RecordTransformError as e:
            logger.warning(
                f"Failed to transform insight row, creating recovery record: {e}",
                extra={"account_id": account_id, "batch": batch.name},
            )
            try:
                records.append(
                    build_recovery_record(row, account_id, batch, e, date_range)
                )
            except (RecordTransformError, ValidationError) as e2:
                raise RecordTransformError(
                    f"Could not build recovery record for batch {batch.name}: {e2}"
                ) from e
            recovered += 1

    if recovered:
        logger.warning(
            f"Batch {batch.name}: {recovered}/{len(rows)} rows replaced by recovery records",
            extra={"account_id": account_id, "batch": batch.name},
        )
    return records
