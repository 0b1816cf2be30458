"""METASYNC: Meta API Endpoints.

Field lists, breakdown batch definitions and the time-range filter used by
the insights fetch.
"""

import json
from dataclasses import dataclass
from datetime import date
from typing import Dict, List, Mapping, Optional, Sequence, Tuple

from pydantic import BaseModel, field_validator, model_validator

from metasync.config import settings

# Default fields requested from Meta
INSIGHT_FIELDS: Tuple[str, ...] = (
    "account_id",
    "campaign_id",
    "adset_id",
    "ad_id",
    "date_start",
    "date_stop",
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
    "unique_link_clicks_ctr",
    "actions",
    "unique_actions",
    "action_values",
    "purchase_roas",
    "video_p25_watched_actions",
    "video_p50_watched_actions",
    "video_p75_watched_actions",
    "video_p95_watched_actions",
    "video_p100_watched_actions",
)

# Graph API breakdown name -> dimension name on RawInsightRecord
BREAKDOWN_DIMENSIONS: Dict[str, str] = {
    "age": "age",
    "gender": "gender",
    "country": "country",
    "region": "region",
    "publisher_platform": "placement",
    "impression_device": "device_platform",
}

# The API rejects more than this many breakdowns in one call
MAX_BREAKDOWNS_PER_CALL = 2


@dataclass(frozen=True)
class BreakdownBatch:
    """One API call scoped to a fixed subset of breakdowns."""

    name: str
    breakdowns: Tuple[str, ...]

    def __post_init__(self):
        if len(self.breakdowns) > MAX_BREAKDOWNS_PER_CALL:
            raise ValueError(
                f"Batch {self.name!r} combines {len(self.breakdowns)} breakdowns, "
                f"at most {MAX_BREAKDOWNS_PER_CALL} are allowed"
            )
        unknown = [b for b in self.breakdowns if b not in BREAKDOWN_DIMENSIONS]
        if unknown:
            raise ValueError(f"Unsupported breakdowns in {self.name!r}: {unknown}")

    @property
    def dimensions(self) -> Tuple[str, ...]:
        return tuple(BREAKDOWN_DIMENSIONS[b] for b in self.breakdowns)


def build_batches(
    definitions: Optional[Mapping[str, Sequence[str]]] = None,
) -> List[BreakdownBatch]:
    """Batches in declared order. The first one is the merge base layer."""
    definitions = definitions if definitions is not None else settings.breakdown_batches
    return [BreakdownBatch(name, tuple(dims)) for name, dims in definitions.items()]


class DateRange(BaseModel):
    """Inclusive since/until range of ISO dates."""

    since: str
    until: str

    @field_validator("since", "until")
    @classmethod
    def _iso_date(cls, v: str) -> str:
        date.fromisoformat(v)
        return v

    @model_validator(mode="after")
    def _ordered(self) -> "DateRange":
        if self.since > self.until:
            raise ValueError(f"since ({self.since}) is after until ({self.until})")
        return self

    def to_param(self) -> str:
        return json.dumps({"since": self.since, "until": self.until})
