"""METASYNC: Storage Key Aggregator.

Collapses merged records that land on the same 12-field storage key. Additive
metrics are summed; ratio metrics are recomputed from the summed bases
(4 decimal places, half-up), never averaged.
"""

import math
import re
import time
import warnings
from decimal import ROUND_HALF_UP, Decimal
from typing import Dict, Iterable, List, Optional

from metasync.core.errors import DataIntegrityWarning
from metasync.core.logging import get_logger
from metasync.core.metric_registry import ALL_METRICS, DERIVED_METRICS
from metasync.models.insight_models import (
    RECOVERY,
    UNKNOWN,
    AggregatedRecord,
    MergedRecord,
    StorageKey,
)

logger = get_logger("processing.aggregator")

PLATFORM_ID = "META"
SPEND_TOLERANCE = 0.01
RATIO_PLACES = Decimal("0.0001")
RECOVERY_COUNTRY_CODE = -1

COUNTRY_CODES: Dict[str, int] = {
    "US": 1,
    "USA": 1,
    "UNITED STATES": 1,
    "VN": 84,
    "VIETNAM": 84,
    "UK": 44,
    "GB": 44,
    "UNITED KINGDOM": 44,
    "CA": 124,
    "CANADA": 124,
    "AU": 61,
    "AUSTRALIA": 61,
}

_PLACEMENT_CHARS = re.compile(r"[^a-z0-9_]")


def _dim(value: Optional[str]) -> Optional[str]:
    """Dimension value, or None when absent or a sentinel."""
    if not value or value in (UNKNOWN, RECOVERY):
        return None
    return value


def extract_placement_id(platform: Optional[str], device: Optional[str]) -> str:
    """``<platform>_<device>`` normalised to ``[a-z0-9_]``."""
    parts = [p for p in (_dim(platform), _dim(device)) if p]
    if not parts:
        return UNKNOWN
    return _PLACEMENT_CHARS.sub("_", "_".join(parts).lower())


def country_code(country: Optional[str], recovered: bool = False) -> int:
    if recovered:
        return RECOVERY_COUNTRY_CODE
    if not country:
        return 0
    return COUNTRY_CODES.get(country.strip().upper(), 0)


def storage_key(record: MergedRecord) -> StorageKey:
    dims = record.dimensions
    region = dims.get("region") or UNKNOWN
    return StorageKey(
        account_id=record.account_id,
        platform_id=PLATFORM_ID,
        campaign_id=record.campaign_id,
        adset_id=record.adset_id,
        ad_id=record.ad_id,
        placement_id=extract_placement_id(
            dims.get("placement"), dims.get("device_platform")
        ),
        processing_date=record.date_start,
        age_group=dims.get("age") or UNKNOWN,
        gender=dims.get("gender") or UNKNOWN,
        country_code=country_code(dims.get("country"), record.recovered),
        region=region,
        city=dims.get("city") or region,
    )


def _ratio(numerator: float, denominator: float, scale: int) -> Decimal:
    if not denominator:
        return Decimal("0").quantize(RATIO_PLACES)
    value = Decimal(str(numerator)) * scale / Decimal(str(denominator))
    return value.quantize(RATIO_PLACES, rounding=ROUND_HALF_UP)


def recompute_derived(metrics: Dict[str, float]) -> Dict[str, Decimal]:
    """Every registered ratio from the additive bases in ``metrics``."""
    derived: Dict[str, Decimal] = {}
    for name, definition in DERIVED_METRICS.items():
        numerator, denominator, scale = definition.formula
        derived[name] = _ratio(
            metrics.get(numerator, 0.0), metrics.get(denominator, 0.0), scale
        )
    return derived


def _additive(metrics: Dict[str, float]) -> Dict[str, float]:
    return {
        name: value
        for name, value in metrics.items()
        if name in ALL_METRICS and ALL_METRICS[name].additive
    }


def total_spend(records: Iterable) -> float:
    return math.fsum(r.metrics.get("spend", 0.0) for r in records)


def validate_conservation(
    inputs: List[MergedRecord],
    outputs: List[AggregatedRecord],
    tolerance: float = SPEND_TOLERANCE,
) -> bool:
    """Spend in == spend out. A mismatch warns, it does not raise."""
    before = total_spend(inputs)
    after = total_spend(outputs)
    if abs(before - after) > tolerance:
        message = (
            f"Spend not preserved by aggregation: input {before:.2f}, "
            f"output {after:.2f}"
        )
        logger.warning(message)
        warnings.warn(message, DataIntegrityWarning, stacklevel=2)
        return False
    logger.debug(f"Aggregation validation: total spend {after:.2f} preserved")
    return True


class KeyAggregator:
    """Groups merged records by StorageKey."""

    def __init__(self, tolerance: float = SPEND_TOLERANCE):
        self.tolerance = tolerance

    def aggregate(self, merged: List[MergedRecord]) -> List[AggregatedRecord]:
        """One AggregatedRecord per StorageKey, in first-seen order."""
        started = time.monotonic()
        groups: Dict[StorageKey, List[MergedRecord]] = {}
        for record in merged:
            groups.setdefault(storage_key(record), []).append(record)

        results = [self._aggregate_group(key, group) for key, group in groups.items()]

        duplicate_groups = sum(1 for g in groups.values() if len(g) > 1)
        removed = len(merged) - len(results)
        logger.info(
            f"Composite key aggregation completed: {len(merged)} in, "
            f"{len(results)} unique out, {duplicate_groups} duplicate groups, "
            f"{removed} duplicates collapsed",
            extra={
                "records": len(results),
                "duration_ms": round((time.monotonic() - started) * 1000),
            },
        )
        validate_conservation(merged, results, self.tolerance)
        return results

    def _aggregate_group(
        self, key: StorageKey, group: List[MergedRecord]
    ) -> AggregatedRecord:
        first = group[0]
        if len(group) == 1:
            metrics = _additive(first.metrics)
            derived = recompute_derived(metrics)
            # A lone record keeps the ratios the API reported
            for name in DERIVED_METRICS:
                if name in first.metrics:
                    derived[name] = Decimal(str(first.metrics[name])).quantize(
                        RATIO_PLACES, rounding=ROUND_HALF_UP
                    )
        else:
            logger.debug(f"Aggregating {len(group)} records for key {key}")
            metrics = {}
            for record in group:
                for name, value in _additive(record.metrics).items():
                    metrics[name] = metrics.get(name, 0.0) + value
            derived = recompute_derived(metrics)

        return AggregatedRecord(
            key=key,
            metrics=metrics,
            derived=derived,
            date_start=min(r.date_start for r in group),
            date_stop=max(r.date_stop or r.date_start for r in group),
            country_name=first.dimensions.get("country") or UNKNOWN,
            created_at=min(r.created_at for r in group),
            updated_at=max(r.updated_at for r in group),
            source_records=len(group),
            recovered=any(r.recovered for r in group),
        )
