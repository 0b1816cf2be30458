"""METASYNC: Insight Record Models.

The three shapes an insight row takes on its way to storage:
RawInsightRecord (one row of one breakdown batch) -> MergedRecord (union of
batches for one dimension slice) -> AggregatedRecord (one row per StorageKey).

Dimensions are a sparse mapping: a record only carries the dimensions its
batch asked for.
"""

from datetime import datetime, timezone
from decimal import Decimal
from typing import Dict, List, Tuple

from pydantic import BaseModel, ConfigDict, Field

DIMENSIONS = ("age", "gender", "country", "region", "placement", "device_platform")

UNKNOWN = "unknown"
RECOVERY = "recovery"
WILDCARD = "*"

DEMOGRAPHIC = "demographic"
GEOGRAPHIC = "geographic"
PLACEMENT = "placement"
NO_BREAKDOWN = "none"


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class RawInsightRecord(BaseModel):
    """One row returned by one breakdown batch. Immutable."""

    model_config = ConfigDict(frozen=True)

    account_id: str
    campaign_id: str = ""
    adset_id: str = ""
    ad_id: str
    date_start: str
    date_stop: str = ""
    dimensions: Dict[str, str] = {}
    metrics: Dict[str, float] = {}
    batch: str = ""
    fetched_at: str = Field(default_factory=_now)
    recovered: bool = False
    recovery_reason: str = ""

    @property
    def identity(self) -> Tuple[str, str, str]:
        return (self.account_id, self.ad_id, self.date_start)


class MergedRecord(BaseModel):
    """A dimension slice assembled from one or more batches.

    Owned by a single merge pass; mutated in place while later batches
    contribute missing dimensions and metrics.
    """

    account_id: str
    campaign_id: str = ""
    adset_id: str = ""
    ad_id: str
    date_start: str
    date_stop: str = ""
    dimensions: Dict[str, str] = {}
    metrics: Dict[str, float] = {}
    coverage: List[str] = []
    sources: Dict[str, int] = {}
    created_at: str = Field(default_factory=_now)
    updated_at: str = Field(default_factory=_now)
    recovered: bool = False

    @property
    def identity(self) -> Tuple[str, str, str]:
        return (self.account_id, self.ad_id, self.date_start)

    @property
    def has_demographic(self) -> bool:
        return DEMOGRAPHIC in self.coverage

    @property
    def has_geographic(self) -> bool:
        return GEOGRAPHIC in self.coverage

    @property
    def has_placement(self) -> bool:
        return PLACEMENT in self.coverage

    def missing_batches(self, expected: List[str]) -> List[str]:
        return [name for name in expected if name not in self.coverage]


class StorageKey(BaseModel):
    """12-field composite primary key of the reporting table."""

    model_config = ConfigDict(frozen=True)

    account_id: str
    platform_id: str
    campaign_id: str
    adset_id: str
    ad_id: str
    placement_id: str
    processing_date: str
    age_group: str
    gender: str
    country_code: int
    region: str
    city: str


class AggregatedRecord(BaseModel):
    """Final storage-ready row, one per StorageKey."""

    key: StorageKey
    metrics: Dict[str, float] = {}
    derived: Dict[str, Decimal] = {}
    date_start: str = ""
    date_stop: str = ""
    country_name: str = UNKNOWN
    created_at: str = Field(default_factory=_now)
    updated_at: str = Field(default_factory=_now)
    source_records: int = 1
    recovered: bool = False


def dimension_key(record) -> str:
    """account|ad|date|age|gender|country|region|placement|device.

    Absent dimensions render as ``*``.
    """
    parts = [record.account_id, record.ad_id, record.date_start]
    parts.extend(record.dimensions.get(d, WILDCARD) for d in DIMENSIONS)
    return "|".join(parts)


def dimensions_compatible(left: Dict[str, str], right: Dict[str, str]) -> bool:
    """True when no dimension is set on both sides with different values."""
    return all(
        left[d] == right[d] for d in DIMENSIONS if d in left and d in right
    )
