"""METASYNC: Breakdown Batch Merger.

Unions the per-batch record lists back into one record per dimension slice.

Each batch only carries its own dimensions, so a record's DimensionKey has
``*`` for the rest. Two records from different batches describe the same
slice when account, ad and date match and no dimension set on both sides
disagrees. Batches are applied in declared order: the first is the base
layer, later batches fill dimensions that are still unset and metrics that
are still missing or zero. Nothing is dropped; a record with no partner
becomes its own MergedRecord.
"""

import time
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, List, Optional, Sequence, Tuple

from metasync.core.logging import get_logger
from metasync.models.insight_models import (
    DEMOGRAPHIC,
    GEOGRAPHIC,
    PLACEMENT,
    MergedRecord,
    RawInsightRecord,
    dimension_key,
    dimensions_compatible,
)

logger = get_logger("processing.merger")

DEFAULT_BATCH_ORDER = (DEMOGRAPHIC, GEOGRAPHIC, PLACEMENT)
PARTIAL_SAMPLE_SIZE = 5

Identity = Tuple[str, str, str]


@dataclass
class MergeStatistics:
    total: int = 0
    complete: int = 0
    partial: int = 0
    coverage: Dict[str, int] = field(default_factory=dict)
    duration_ms: int = 0
    partial_samples: List[Tuple[str, List[str]]] = field(default_factory=list)

    @property
    def complete_rate(self) -> float:
        return self.complete * 100.0 / self.total if self.total else 0.0


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _is_unset(value) -> bool:
    return value is None or value == "" or value == 0


class RecordMerger:
    """Union merge of breakdown batches. One instance per merge pass is fine,
    but nothing is kept between calls."""

    def __init__(self, batch_order: Optional[Sequence[str]] = None):
        self.batch_order = list(batch_order or DEFAULT_BATCH_ORDER)
        self.last_statistics: Optional[MergeStatistics] = None

    # ── Public API ──

    def merge(
        self,
        batch_results: Sequence[Sequence[RawInsightRecord]],
        batch_order: Optional[Sequence[str]] = None,
    ) -> List[MergedRecord]:
        """Merge batch lists given in declared order.

        ``batch_order`` names the lists; records that carry a ``batch`` tag
        keep their own.
        """
        order = list(batch_order or self.batch_order)
        started = time.monotonic()
        self.validate_batch_consistency(batch_results)

        merged: List[MergedRecord] = []
        by_key: Dict[str, MergedRecord] = {}
        by_identity: Dict[Identity, List[MergedRecord]] = defaultdict(list)

        for index, batch in enumerate(batch_results):
            label = order[index] if index < len(order) else f"batch_{index + 1}"
            logger.debug(f"Merging batch {label}: {len(batch)} records")
            for record in batch:
                name = record.batch or label
                key = dimension_key(record)
                target = by_key.get(key)
                if target is None:
                    target = self._find_partner(by_identity[record.identity], record, name)
                if target is None:
                    target = self._create(record, name)
                    merged.append(target)
                    by_identity[record.identity].append(target)
                else:
                    self._merge_into(target, record, name)
                by_key[key] = target

        expected = [
            order[i] if i < len(order) else f"batch_{i + 1}"
            for i, batch in enumerate(batch_results)
        ]
        self.last_statistics = self._statistics(
            merged, expected, round((time.monotonic() - started) * 1000)
        )
        self._log_statistics(self.last_statistics)
        return merged

    def merge_records(
        self,
        records: Sequence[RawInsightRecord],
        batch_order: Optional[Sequence[str]] = None,
    ) -> List[MergedRecord]:
        """Merge a flat list tagged by ``record.batch``.

        Batches named in ``batch_order`` go first, in that order; any other
        batch follows in order of first appearance.
        """
        grouped: Dict[str, List[RawInsightRecord]] = {
            name: [] for name in (batch_order or self.batch_order)
        }
        for record in records:
            grouped.setdefault(record.batch, []).append(record)
        present = {name: recs for name, recs in grouped.items() if recs}
        return self.merge(list(present.values()), list(present))

    def validate_batch_consistency(
        self, batch_results: Sequence[Sequence[RawInsightRecord]]
    ) -> bool:
        """False (and a warning) when non-empty batches share no ad/date."""
        identities = [{r.identity for r in batch} for batch in batch_results if batch]
        if len(identities) < 2:
            return True
        common = set.intersection(*identities)
        total = set.union(*identities)
        logger.debug(
            f"Batch overlap: {len(total)} total unique, {len(common)} common records"
        )
        if not common:
            logger.warning(
                "No common records between batches - may indicate API data issues"
            )
            return False
        return True

    # ── Internals ──

    @staticmethod
    def _find_partner(
        candidates: List[MergedRecord], record: RawInsightRecord, batch: str
    ) -> Optional[MergedRecord]:
        for candidate in candidates:
            if batch in candidate.coverage:
                continue
            if dimensions_compatible(candidate.dimensions, record.dimensions):
                return candidate
        return None

    @staticmethod
    def _create(record: RawInsightRecord, batch: str) -> MergedRecord:
        now = _now()
        return MergedRecord(
            account_id=record.account_id,
            campaign_id=record.campaign_id,
            adset_id=record.adset_id,
            ad_id=record.ad_id,
            date_start=record.date_start,
            date_stop=record.date_stop,
            dimensions=dict(record.dimensions),
            metrics=dict(record.metrics),
            coverage=[batch],
            sources={batch: 1},
            created_at=now,
            updated_at=now,
            recovered=record.recovered,
        )

    @staticmethod
    def _merge_into(target: MergedRecord, record: RawInsightRecord, batch: str) -> None:
        for dim, value in record.dimensions.items():
            if not target.dimensions.get(dim):
                target.dimensions[dim] = value
        # First non-zero wins
        for metric, value in record.metrics.items():
            if _is_unset(target.metrics.get(metric)):
                target.metrics[metric] = value
        if not target.campaign_id:
            target.campaign_id = record.campaign_id
        if not target.adset_id:
            target.adset_id = record.adset_id
        if not target.date_stop:
            target.date_stop = record.date_stop
        if batch not in target.coverage:
            target.coverage.append(batch)
        target.sources[batch] = target.sources.get(batch, 0) + 1
        target.recovered = target.recovered or record.recovered
        target.updated_at = _now()

    @staticmethod
    def _statistics(
        merged: List[MergedRecord], expected: List[str], duration_ms: int
    ) -> MergeStatistics:
        stats = MergeStatistics(
            total=len(merged),
            coverage={name: 0 for name in expected},
            duration_ms=duration_ms,
        )
        for record in merged:
            for name in record.coverage:
                stats.coverage[name] = stats.coverage.get(name, 0) + 1
            missing = record.missing_batches(expected)
            if missing:
                stats.partial += 1
                if len(stats.partial_samples) < PARTIAL_SAMPLE_SIZE:
                    stats.partial_samples.append((dimension_key(record), missing))
            else:
                stats.complete += 1
        return stats

    @staticmethod
    def _log_statistics(stats: MergeStatistics) -> None:
        coverage = ", ".join(f"{k}={v}" for k, v in stats.coverage.items())
        logger.info(
            f"Batch merge completed: {stats.total} records, {stats.complete} complete "
            f"({stats.complete_rate:.1f}%), {stats.partial} partial, coverage: {coverage}",
            extra={"records": stats.total, "duration_ms": stats.duration_ms},
        )
        if stats.partial:
            logger.warning(
                f"{stats.partial} records have incomplete data - "
                f"check API response consistency"
            )
            for key, missing in stats.partial_samples:
                logger.debug(f"Partial: {key} (missing: {', '.join(missing)})")
