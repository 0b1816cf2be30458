"""METASYNC: Ads Reporting Table.

One row per (account, platform, campaign, adset, ad, placement, date, age,
gender, country code, region, city). Re-syncing a day overwrites its rows.
"""

from typing import Any, Dict

from sqlmodel import Field, SQLModel

from metasync.core.metric_registry import ADDITIVE_METRICS, DERIVED_METRICS
from metasync.models.insight_models import AggregatedRecord, StorageKey

KEY_COLUMNS = tuple(StorageKey.model_fields)


class AdsReporting(SQLModel, table=True):
    """Daily ad performance at the finest stored breakdown."""

    __tablename__ = "ads_reporting"

    # ── Composite primary key ──
    account_id: str = Field(primary_key=True)
    platform_id: str = Field(primary_key=True)
    campaign_id: str = Field(primary_key=True)
    adset_id: str = Field(primary_key=True)
    ad_id: str = Field(primary_key=True)
    placement_id: str = Field(primary_key=True)
    processing_date: str = Field(primary_key=True, description="YYYY-MM-DD")
    age_group: str = Field(primary_key=True)
    gender: str = Field(primary_key=True)
    country_code: int = Field(primary_key=True, description="-1 = recovery row")
    region: str = Field(primary_key=True)
    city: str = Field(primary_key=True)

    # ── Additive metrics ──
    spend: float = 0.0
    purchase_value: float = 0.0
    impressions: float = 0.0
    reach: float = 0.0
    clicks: float = 0.0
    unique_clicks: float = 0.0
    link_clicks: float = 0.0
    unique_link_clicks: float = 0.0
    post_engagement: float = 0.0
    page_engagement: float = 0.0
    likes: float = 0.0
    comments: float = 0.0
    shares: float = 0.0
    photo_view: float = 0.0
    video_views: float = 0.0
    video_p25_watched: float = 0.0
    video_p50_watched: float = 0.0
    video_p75_watched: float = 0.0
    video_p95_watched: float = 0.0
    video_p100_watched: float = 0.0
    purchases: float = 0.0
    leads: float = 0.0
    mobile_app_install: float = 0.0
    inline_link_clicks: float = 0.0
    inline_post_engagement: float = 0.0

    # ── Derived ratios (recomputed, 4 dp) ──
    cpc: float = 0.0
    cpm: float = 0.0
    ctr: float = 0.0
    unique_ctr: float = 0.0
    frequency: float = 0.0
    cost_per_unique_click: float = 0.0
    purchase_roas: float = 0.0
    cpp: float = 0.0
    cost_per_lead: float = 0.0

    # ── Provenance ──
    country_name: str = ""
    date_start: str = ""
    date_stop: str = ""
    source_records: int = 1
    recovered: bool = False
    created_at: str = ""
    updated_at: str = ""

    @property
    def key(self) -> StorageKey:
        return StorageKey(**{c: getattr(self, c) for c in KEY_COLUMNS})

    @classmethod
    def from_aggregated(cls, record: AggregatedRecord) -> "AdsReporting":
        values: Dict[str, Any] = record.key.model_dump()
        for name in ADDITIVE_METRICS:
            values[name] = float(record.metrics.get(name, 0.0))
        for name in DERIVED_METRICS:
            values[name] = float(record.derived.get(name, 0))
        values.update(
            country_name=record.country_name,
            date_start=record.date_start,
            date_stop=record.date_stop,
            source_records=record.source_records,
            recovered=record.recovered,
            created_at=record.created_at,
            updated_at=record.updated_at,
        )
        return cls(**values)
