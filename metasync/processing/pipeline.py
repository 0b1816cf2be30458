"""METASYNC: Sync Pipeline Orchestrator.

Runs the full data flow for each account:
  fetch (breakdown batches) → merge → aggregate by storage key → upsert

A failure is reported with the stage it happened in. One account failing
never stops the others.
"""

import threading
import time
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from sqlmodel import Session

from metasync.config import settings
from metasync.connectors.meta.client import MetaClient
from metasync.connectors.meta.endpoints import DateRange
from metasync.connectors.meta.fetcher import BatchFetcher
from metasync.connectors.meta.resilient import ResilientApiClient, shared_api_client
from metasync.core.errors import SyncStageError
from metasync.core.logging import get_logger
from metasync.processing.aggregator import KeyAggregator
from metasync.processing.merger import RecordMerger
from metasync.storage.reporting_store import ReportingStore

logger = get_logger("processing.pipeline")

STAGE_FETCH = "fetch"
STAGE_MERGE = "merge"
STAGE_AGGREGATE = "aggregate"
STAGE_STORE = "store"


def _validate_date(d: Optional[str]) -> Optional[str]:
    """Return the date string if valid YYYY-MM-DD, else None."""
    if not d:
        return None
    try:
        datetime.strptime(d, "%Y-%m-%d")
        return d
    except ValueError:
        return None


def _resolve_dates(
    date_range: Optional[str] = None,
    start_date: Optional[str] = None,
    end_date: Optional[str] = None,
) -> DateRange:
    """Resolve date parameters into a DateRange."""
    today = datetime.now(timezone.utc).date()

    # Sanitize inputs
    start_date = _validate_date(start_date)
    end_date = _validate_date(end_date)

    if start_date and end_date:
        return DateRange(since=start_date, until=end_date)

    mapping = {
        "yesterday": (today - timedelta(days=1), today - timedelta(days=1)),
        "last_7d": (today - timedelta(days=7), today - timedelta(days=1)),
        "last_14d": (today - timedelta(days=14), today - timedelta(days=1)),
        "last_30d": (today - timedelta(days=30), today - timedelta(days=1)),
        "this_month": (today.replace(day=1), today),
    }
    # Default: yesterday
    s, e = mapping.get(date_range or "yesterday", mapping["yesterday"])
    return DateRange(since=s.isoformat(), until=e.isoformat())


@dataclass
class AccountSyncResult:
    account_id: str
    status: str = "success"
    fetch_mode: str = ""
    raw_records: int = 0
    recovered_records: int = 0
    merged_records: int = 0
    stored_records: int = 0
    failed_stage: Optional[str] = None
    error: Optional[str] = None
    duration_ms: int = 0


@dataclass
class SyncSummary:
    date_start: str
    date_stop: str
    started_at: str = field(
        default_factory=lambda: datetime.now(timezone.utc).isoformat()
    )
    finished_at: Optional[str] = None
    results: List[AccountSyncResult] = field(default_factory=list)

    @property
    def succeeded(self) -> int:
        return sum(1 for r in self.results if r.status == "success")

    @property
    def failed(self) -> int:
        return sum(1 for r in self.results if r.status != "success")

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data.update(succeeded=self.succeeded, failed=self.failed)
        return data


def sync_account(
    account_id: str,
    date_range: DateRange,
    fetcher: BatchFetcher,
    store: ReportingStore,
    merger: Optional[RecordMerger] = None,
    aggregator: Optional[KeyAggregator] = None,
    deadline: Optional[float] = None,
) -> AccountSyncResult:
    """Sync one account. Raises SyncStageError naming the failed stage."""
    merger = merger or RecordMerger([b.name for b in fetcher.batches])
    aggregator = aggregator or KeyAggregator()
    result = AccountSyncResult(account_id=account_id)
    started = time.monotonic()
    logger.info(
        f"Sync started for {date_range.since}..{date_range.until}",
        extra={"account_id": account_id},
    )

    try:
        fetched = fetcher.fetch(account_id, date_range, deadline)
    except Exception as e:
        raise SyncStageError(STAGE_FETCH, account_id, e) from e
    result.fetch_mode = fetched.mode
    records = fetched.records
    result.raw_records = len(records)
    result.recovered_records = sum(1 for r in records if r.recovered)

    try:
        merged = merger.merge(list(fetched.batches.values()), fetched.batch_order)
    except Exception as e:
        raise SyncStageError(STAGE_MERGE, account_id, e) from e
    result.merged_records = len(merged)

    try:
        aggregated = aggregator.aggregate(merged)
    except Exception as e:
        raise SyncStageError(STAGE_AGGREGATE, account_id, e) from e

    try:
        result.stored_records = store.upsert(aggregated)
    except Exception as e:
        raise SyncStageError(STAGE_STORE, account_id, e) from e

    result.duration_ms = round((time.monotonic() - started) * 1000)
    logger.info(
        f"Sync complete ({result.fetch_mode}): {result.raw_records} raw → "
        f"{result.merged_records} merged → {result.stored_records} stored",
        extra={
            "account_id": account_id,
            "records": result.stored_records,
            "duration_ms": result.duration_ms,
        },
    )
    return result


def discover_accounts(client: MetaClient, api: ResilientApiClient) -> List[str]:
    accounts = api.execute(client.list_ad_accounts, name="list_ad_accounts")
    return [a.get("id") or f"act_{a['account_id']}" for a in accounts]


# ── Last-run bookkeeping for /sync/status ──

_last_summary: Optional[SyncSummary] = None
_summary_lock = threading.Lock()


def last_sync_summary() -> Optional[SyncSummary]:
    with _summary_lock:
        return _last_summary


def run_sync(
    session: Session,
    account_ids: Optional[List[str]] = None,
    date_range: Optional[str] = None,
    start_date: Optional[str] = None,
    end_date: Optional[str] = None,
    client: Optional[MetaClient] = None,
    api: Optional[ResilientApiClient] = None,
    fetcher: Optional[BatchFetcher] = None,
    timeout_seconds: Optional[float] = None,
) -> SyncSummary:
    """Sync every account for the resolved date range.

    Accounts default to ``settings.meta_account_ids``, or to every account the
    token can see when none are configured.
    """
    global _last_summary
    dates = _resolve_dates(date_range, start_date, end_date)
    api = api or shared_api_client()
    own_client = client is None
    client = client or MetaClient()
    summary = SyncSummary(date_start=dates.since, date_stop=dates.until)

    timeout = (
        timeout_seconds if timeout_seconds is not None else settings.sync_timeout_seconds
    )
    deadline = time.monotonic() + timeout if timeout > 0 else None

    try:
        accounts = account_ids or settings.meta_account_ids
        if not accounts:
            accounts = discover_accounts(client, api)
        logger.info(f"Sync run for {len(accounts)} accounts, {dates.since}..{dates.until}")

        fetcher = fetcher or BatchFetcher(client, api)
        store = ReportingStore(session)

        for account_id in accounts:
            try:
                summary.results.append(
                    sync_account(account_id, dates, fetcher, store, deadline=deadline)
                )
            except SyncStageError as e:
                logger.error(
                    f"Sync failed: {e}",
                    extra={"account_id": account_id},
                    exc_info=e.cause,
                )
                summary.results.append(
                    AccountSyncResult(
                        account_id=account_id,
                        status="failed",
                        failed_stage=e.stage,
                        error=f"{type(e.cause).__name__}: {e.cause}",
                    )
                )
    finally:
        if own_client:
            client.close()

    summary.finished_at = datetime.now(timezone.utc).isoformat()
    with _summary_lock:
        _last_summary = summary
    logger.info(
        f"Sync run finished: {summary.succeeded} succeeded, {summary.failed} failed"
    )
    return summary
