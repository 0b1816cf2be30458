"""METASYNC: Unified Metric Registry.

Defines the canonical set of insight metrics and their classifications.
The aggregator sums every ADDITIVE metric and recomputes every DERIVED one
from its registered formula, so a new metric only needs registering here.
"""

from enum import Enum
from typing import Dict, Optional, Tuple


class MetricType(str, Enum):
    """How a metric is categorised."""

    VOLUME = "volume"  # Raw counts: impressions, clicks, reach
    COST = "cost"  # Monetary: spend
    REVENUE = "revenue"  # Income: purchase_value
    ENGAGEMENT = "engagement"  # Likes, shares, comments
    VIDEO = "video"  # Video-specific: views, completions
    CONVERSION = "conversion"  # Purchases, leads, installs
    DERIVED = "derived"  # Ratios recomputed from summed bases


ADDITIVE_TYPES = frozenset(
    {
        MetricType.VOLUME,
        MetricType.COST,
        MetricType.REVENUE,
        MetricType.ENGAGEMENT,
        MetricType.VIDEO,
        MetricType.CONVERSION,
    }
)


class MetricDefinition:
    """Describes a single metric.

    ``formula`` is only set for derived metrics:
    (numerator, denominator, scale) meaning numerator * scale / denominator.
    """

    def __init__(
        self,
        name: str,
        metric_type: MetricType,
        unit: str = "",
        description: str = "",
        formula: Optional[Tuple[str, str, int]] = None,
    ):
        self.name = name
        self.metric_type = metric_type
        self.unit = unit
        self.description = description
        self.formula = formula

    @property
    def additive(self) -> bool:
        return self.metric_type in ADDITIVE_TYPES

    def __repr__(self) -> str:
        return f"<Metric {self.name} ({self.metric_type.value})>"


# ─────────────────────────────────────────────
# BASE METRICS: summed on aggregation
# ─────────────────────────────────────────────

BASE_METRICS: Dict[str, MetricDefinition] = {
    # Cost / revenue
    "spend": MetricDefinition(
        "spend", MetricType.COST, "currency", "Total amount spent"
    ),
    "purchase_value": MetricDefinition(
        "purchase_value",
        MetricType.REVENUE,
        "currency",
        "Total purchase conversion value",
    ),
    # Volume
    "impressions": MetricDefinition(
        "impressions", MetricType.VOLUME, "count", "Number of times ad was shown"
    ),
    "reach": MetricDefinition(
        "reach", MetricType.VOLUME, "count", "Unique users who saw ad"
    ),
    "clicks": MetricDefinition("clicks", MetricType.VOLUME, "count", "Total clicks"),
    "unique_clicks": MetricDefinition(
        "unique_clicks", MetricType.VOLUME, "count", "Unique users who clicked"
    ),
    "link_clicks": MetricDefinition(
        "link_clicks", MetricType.VOLUME, "count", "Clicks on ad links"
    ),
    "unique_link_clicks": MetricDefinition(
        "unique_link_clicks", MetricType.VOLUME, "count", "Unique link clickers"
    ),
    # Engagement
    "post_engagement": MetricDefinition(
        "post_engagement", MetricType.ENGAGEMENT, "count", "Total post engagements"
    ),
    "page_engagement": MetricDefinition(
        "page_engagement", MetricType.ENGAGEMENT, "count", "Total page engagements"
    ),
    "likes": MetricDefinition("likes", MetricType.ENGAGEMENT, "count", "Likes"),
    "comments": MetricDefinition(
        "comments", MetricType.ENGAGEMENT, "count", "Comments"
    ),
    "shares": MetricDefinition("shares", MetricType.ENGAGEMENT, "count", "Shares"),
    "photo_view": MetricDefinition(
        "photo_view", MetricType.ENGAGEMENT, "count", "Photo views"
    ),
    # Video
    "video_views": MetricDefinition(
        "video_views", MetricType.VIDEO, "count", "Video views"
    ),
    "video_p25_watched": MetricDefinition(
        "video_p25_watched", MetricType.VIDEO, "count", "Watched 25%"
    ),
    "video_p50_watched": MetricDefinition(
        "video_p50_watched", MetricType.VIDEO, "count", "Watched 50%"
    ),
    "video_p75_watched": MetricDefinition(
        "video_p75_watched", MetricType.VIDEO, "count", "Watched 75%"
    ),
    "video_p95_watched": MetricDefinition(
        "video_p95_watched", MetricType.VIDEO, "count", "Watched 95%"
    ),
    "video_p100_watched": MetricDefinition(
        "video_p100_watched", MetricType.VIDEO, "count", "Watched 100%"
    ),
    # Conversions
    "purchases": MetricDefinition(
        "purchases", MetricType.CONVERSION, "count", "Purchase conversions"
    ),
    "leads": MetricDefinition("leads", MetricType.CONVERSION, "count", "Leads"),
    "mobile_app_install": MetricDefinition(
        "mobile_app_install", MetricType.CONVERSION, "count", "App installs"
    ),
    "inline_link_clicks": MetricDefinition(
        "inline_link_clicks", MetricType.CONVERSION, "count", "Inline link clicks"
    ),
    "inline_post_engagement": MetricDefinition(
        "inline_post_engagement",
        MetricType.CONVERSION,
        "count",
        "Inline post engagement",
    ),
}


# ─────────────────────────────────────────────
# DERIVED METRICS: recomputed, never summed
# ─────────────────────────────────────────────

DERIVED_METRICS: Dict[str, MetricDefinition] = {
    "cpc": MetricDefinition(
        "cpc", MetricType.DERIVED, "currency", "Cost per click",
        formula=("spend", "clicks", 1),
    ),
    "cpm": MetricDefinition(
        "cpm", MetricType.DERIVED, "currency", "Cost per 1000 impressions",
        formula=("spend", "impressions", 1000),
    ),
    "ctr": MetricDefinition(
        "ctr", MetricType.DERIVED, "%", "Click-through rate",
        formula=("clicks", "impressions", 100),
    ),
    "unique_ctr": MetricDefinition(
        "unique_ctr", MetricType.DERIVED, "%", "Unique click-through rate",
        formula=("unique_clicks", "reach", 100),
    ),
    "frequency": MetricDefinition(
        "frequency", MetricType.DERIVED, "avg", "Average times ad shown per user",
        formula=("impressions", "reach", 1),
    ),
    "cost_per_unique_click": MetricDefinition(
        "cost_per_unique_click", MetricType.DERIVED, "currency",
        "Cost per unique click",
        formula=("spend", "unique_clicks", 1),
    ),
    "purchase_roas": MetricDefinition(
        "purchase_roas", MetricType.DERIVED, "ratio", "Return on ad spend",
        formula=("purchase_value", "spend", 1),
    ),
    "cpp": MetricDefinition(
        "cpp", MetricType.DERIVED, "currency", "Cost per 1000 people reached",
        formula=("spend", "reach", 1000),
    ),
    "cost_per_lead": MetricDefinition(
        "cost_per_lead", MetricType.DERIVED, "currency", "Cost per lead",
        formula=("spend", "leads", 1),
    ),
}


# ─────────────────────────────────────────────
# COMBINED VIEWS
# ─────────────────────────────────────────────

ALL_METRICS = {**BASE_METRICS, **DERIVED_METRICS}

ADDITIVE_METRICS = tuple(name for name, m in ALL_METRICS.items() if m.additive)
