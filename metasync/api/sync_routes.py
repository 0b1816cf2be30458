"""METASYNC: Sync API Routes."""

from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, ValidationError
from sqlmodel import Session

from metasync.connectors.meta.client import MetaClient
from metasync.connectors.meta.resilient import ResilientApiClient, shared_api_client
from metasync.core.errors import MetaSyncError
from metasync.core.logging import get_logger
from metasync.database import get_session
from metasync.processing.pipeline import last_sync_summary, run_sync

logger = get_logger("api.sync")

router = APIRouter(prefix="/sync", tags=["Sync"])


def get_api_client() -> ResilientApiClient:
    return shared_api_client()


def get_meta_client():
    """Dependency: yields a MetaClient, closed after the request."""
    client = MetaClient()
    try:
        yield client
    finally:
        client.close()


# ── Request Models ──


class RunSyncRequest(BaseModel):
    """Request body for POST /sync/run."""

    account_ids: Optional[List[str]] = None
    """Ad accounts to sync. Defaults to configured accounts, then discovery."""
    date_range: Optional[str] = None
    """One of: "yesterday", "last_7d", "last_14d", "last_30d", "this_month"."""
    start_date: Optional[str] = None
    """Custom start date in YYYY-MM-DD format."""
    end_date: Optional[str] = None
    """Custom end date in YYYY-MM-DD format."""

    model_config = {
        "json_schema_extra": {
            "examples": [
                {"date_range": "yesterday"},
                {"account_ids": ["act_123"], "start_date": "2026-02-01", "end_date": "2026-02-07"},
            ]
        }
    }


# ── Endpoints ──


@router.post("/run")
def trigger_sync(
    request: RunSyncRequest,
    session: Session = Depends(get_session),
    client: MetaClient = Depends(get_meta_client),
    api: ResilientApiClient = Depends(get_api_client),
):
    """Run a sync now and return the per-account summary.

    Blocks until every account is done, so it runs on the server's threadpool.
    """
    try:
        summary = run_sync(
            session=session,
            account_ids=request.account_ids,
            date_range=request.date_range,
            start_date=request.start_date,
            end_date=request.end_date,
            client=client,
            api=api,
        )
    except ValidationError as e:
        raise HTTPException(status_code=400, detail=f"Invalid date range: {e}")
    except MetaSyncError as e:
        logger.error(f"Sync run failed: {e}")
        raise HTTPException(status_code=502, detail=f"Sync failed: {e}")
    return {"status": "success", "summary": summary.to_dict()}


@router.get("/status")
def sync_status(api: ResilientApiClient = Depends(get_api_client)):
    """Rate limit window, circuit breaker state and the last run's summary."""
    summary = last_sync_summary()
    return {
        "client": api.status(),
        "last_run": summary.to_dict() if summary else None,
    }
