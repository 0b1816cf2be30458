"""METASYNC: Breakdown Batch Fetcher.

The insights endpoint refuses to combine more than two breakdowns, so one
logical request is split into breakdown batches (demographic, geographic,
placement by default), each paginated through the shared ResilientApiClient.

If the full batch set fails the fetcher falls back to the base batch alone,
then to a single call with no breakdowns at all.
"""

import time
from dataclasses import dataclass, field
from functools import partial
from typing import Callable, Dict, List, Optional, Sequence

from metasync.config import settings
from metasync.connectors.meta.client import MetaClient
from metasync.connectors.meta.endpoints import (
    INSIGHT_FIELDS,
    BreakdownBatch,
    DateRange,
    build_batches,
)
from metasync.connectors.meta.resilient import ResilientApiClient, shared_api_client
from metasync.connectors.meta.transformer import parse_insight_rows
from metasync.core.errors import DeadlineExceededError, MetaSyncError
from metasync.core.logging import get_logger
from metasync.models.insight_models import NO_BREAKDOWN, RawInsightRecord

logger = get_logger("meta.fetcher")

NO_BREAKDOWN_BATCH = BreakdownBatch(NO_BREAKDOWN, ())

MODE_FULL = "full"
MODE_BASE_ONLY = "base_only"
MODE_NO_BREAKDOWN = "no_breakdown"


@dataclass
class FetchResult:
    """Records per batch, in fetch order, plus which cascade step produced them."""

    batches: Dict[str, List[RawInsightRecord]] = field(default_factory=dict)
    mode: str = MODE_FULL

    @property
    def batch_order(self) -> List[str]:
        return list(self.batches)

    @property
    def records(self) -> List[RawInsightRecord]:
        return [r for batch in self.batches.values() for r in batch]


class BatchFetcher:
    """Drives the breakdown batches for one account and date range."""

    def __init__(
        self,
        client: MetaClient,
        api: Optional[ResilientApiClient] = None,
        batches: Optional[Sequence[BreakdownBatch]] = None,
        fields: Sequence[str] = INSIGHT_FIELDS,
        page_limit: Optional[int] = None,
        max_pages: Optional[int] = None,
        page_delay: Optional[float] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.client = client
        self.api = api or shared_api_client()
        self.batches = list(batches) if batches is not None else build_batches()
        if not self.batches:
            raise ValueError("At least one breakdown batch is required")
        self.fields = list(fields)
        self.page_limit = page_limit or settings.page_limit
        self.max_pages = max_pages or settings.max_pages
        self.page_delay = (
            page_delay if page_delay is not None else settings.page_delay_seconds
        )
        self._sleep = sleep

    # ── Single Batch ──

    def fetch_batch(
        self,
        account_id: str,
        date_range: DateRange,
        batch: BreakdownBatch,
        deadline: Optional[float] = None,
        fill_unknown: bool = False,
    ) -> List[RawInsightRecord]:
        """All pages of one batch, stopping at ``max_pages``."""
        records: List[RawInsightRecord] = []
        cursor: Optional[str] = None
        started = time.monotonic()

        for page in range(1, self.max_pages + 1):
            rows, cursor = self.api.execute(
                partial(
                    self.client.get_insights_page,
                    account_id,
                    self.fields,
                    list(batch.breakdowns),
                    date_range,
                    self.page_limit,
                    cursor,
                ),
                deadline=deadline,
                name=f"insights[{batch.name}] page {page}",
            )
            records.extend(
                parse_insight_rows(rows, account_id, batch, date_range, fill_unknown)
            )
            if not cursor:
                break
            if self.page_delay > 0:
                self._sleep(self.page_delay)
        else:
            logger.warning(
                f"Batch {batch.name} hit the {self.max_pages}-page ceiling, "
                f"remaining pages skipped",
                extra={"account_id": account_id, "batch": batch.name},
            )

        logger.info(
            f"Fetched {len(records)} records for batch {batch.name}",
            extra={
                "account_id": account_id,
                "batch": batch.name,
                "records": len(records),
                "duration_ms": round((time.monotonic() - started) * 1000),
            },
        )
        return records

    # ── Batch Sets ──

    def fetch_batches(
        self,
        account_id: str,
        date_range: DateRange,
        batches: Optional[Sequence[BreakdownBatch]] = None,
        deadline: Optional[float] = None,
    ) -> Dict[str, List[RawInsightRecord]]:
        """Every batch in declared order. Any batch failure propagates."""
        results: Dict[str, List[RawInsightRecord]] = {}
        for batch in batches or self.batches:
            results[batch.name] = self.fetch_batch(
                account_id, date_range, batch, deadline
            )
        return results

    def fetch_no_breakdowns(
        self,
        account_id: str,
        date_range: DateRange,
        deadline: Optional[float] = None,
    ) -> List[RawInsightRecord]:
        """One unbroken-down fetch, every dimension set to ``unknown``."""
        return self.fetch_batch(
            account_id, date_range, NO_BREAKDOWN_BATCH, deadline, fill_unknown=True
        )

    def fetch(
        self,
        account_id: str,
        date_range: DateRange,
        deadline: Optional[float] = None,
    ) -> FetchResult:
        """Fetch with the fallback cascade: full → base batch → no breakdowns.

        DeadlineExceededError stops the cascade. The last step's error
        propagates.
        """
        try:
            return FetchResult(
                self.fetch_batches(account_id, date_range, deadline=deadline),
                MODE_FULL,
            )
        except DeadlineExceededError:
            raise
        except MetaSyncError as e:
            logger.warning(
                f"Multi-batch fetch failed ({type(e).__name__}: {e}), "
                f"falling back to {self.batches[0].name} only",
                extra={"account_id": account_id},
            )

        if len(self.batches) > 1:
            base = self.batches[0]
            try:
                return FetchResult(
                    {base.name: self.fetch_batch(account_id, date_range, base, deadline)},
                    MODE_BASE_ONLY,
                )
            except DeadlineExceededError:
                raise
            except MetaSyncError as e:
                logger.warning(
                    f"{base.name} fetch failed ({type(e).__name__}: {e}), "
                    f"falling back to no breakdowns",
                    extra={"account_id": account_id},
                )

        return FetchResult(
            {NO_BREAKDOWN: self.fetch_no_breakdowns(account_id, date_range, deadline)},
            MODE_NO_BREAKDOWN,
        )

    def fetch_all(
        self,
        account_id: str,
        date_range: DateRange,
        deadline: Optional[float] = None,
    ) -> List[RawInsightRecord]:
        """Flat record list in batch order, tagged by ``record.batch``."""
        return self.fetch(account_id, date_range, deadline).records
