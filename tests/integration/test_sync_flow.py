"""Full path: HTTP transport → resilient client → batches → merge → aggregate → DB."""

from decimal import Decimal

import httpx
import pytest
from fastapi.testclient import TestClient
from sqlmodel import Session

from metasync.api.sync_routes import get_api_client, get_meta_client
from metasync.connectors.meta.client import MetaClient, StaticTokenProvider
from metasync.connectors.meta.endpoints import DateRange
from metasync.connectors.meta.fetcher import BatchFetcher
from metasync.database import get_session
from metasync.main import app
from metasync.processing.aggregator import KeyAggregator
from metasync.processing.merger import RecordMerger
from metasync.storage.reporting_store import ReportingStore

BASE = {
    "account_id": "A",
    "campaign_id": "C1",
    "adset_id": "S1",
    "ad_id": "X",
    "date_start": "2024-01-01",
    "date_stop": "2024-01-01",
    "spend": "10",
    "clicks": "5",
}

ROWS = {
    "age,gender": [{**BASE, "age": "25-34", "gender": "M"}],
    "country,region": [{**BASE, "country": "US", "region": "CA"}],
    "publisher_platform,impression_device": [],
}


def graph_api(request: httpx.Request) -> httpx.Response:
    if request.url.path.endswith("/insights"):
        rows = ROWS[request.url.params.get("breakdowns", "")]
        return httpx.Response(200, json={"data": rows, "paging": {"cursors": {"after": "z"}}})
    if request.url.path.endswith("/debug_token"):
        return httpx.Response(200, json={"data": {"is_valid": True, "scopes": ["ads_read"]}})
    return httpx.Response(404, json={"error": {"message": "Unknown path", "code": 803}})


@pytest.fixture
def meta_client():
    client = MetaClient(
        credentials=StaticTokenProvider("token"),
        base_url="https://graph.test",
        transport=httpx.MockTransport(graph_api),
    )
    yield client
    client.close()


def test_end_to_end_scenario(meta_client, api, session):
    fetcher = BatchFetcher(meta_client, api, page_delay=0)

    fetched = fetcher.fetch("act_A", DateRange(since="2024-01-01", until="2024-01-01"))
    merged = RecordMerger(fetched.batch_order).merge(
        list(fetched.batches.values()), fetched.batch_order
    )

    assert len(merged) == 1
    record = merged[0]
    assert record.dimensions == {"age": "25-34", "gender": "M", "country": "US", "region": "CA"}
    assert record.metrics["spend"] == 10
    assert record.metrics["clicks"] == 5
    assert record.has_placement is False

    aggregated = KeyAggregator().aggregate(merged)

    assert len(aggregated) == 1
    assert aggregated[0].metrics["spend"] == 10
    assert aggregated[0].derived["cpc"] == Decimal("2.0000")

    store = ReportingStore(session)
    assert store.upsert(aggregated) == 1
    row = store.get(aggregated[0].key)
    assert row.country_code == 1
    assert row.placement_id == "unknown"


@pytest.fixture
def http(meta_client, api, db_engine):
    def session_override():
        with Session(db_engine) as session:
            yield session

    app.dependency_overrides[get_session] = session_override
    app.dependency_overrides[get_meta_client] = lambda: meta_client
    app.dependency_overrides[get_api_client] = lambda: api
    yield TestClient(app)
    app.dependency_overrides.clear()


def test_run_sync_endpoint(http, db_engine):
    resp = http.post(
        "/sync/run",
        json={"account_ids": ["act_A"], "start_date": "2024-01-01", "end_date": "2024-01-01"},
    )

    assert resp.status_code == 200
    summary = resp.json()["summary"]
    assert summary["succeeded"] == 1
    assert summary["results"][0]["stored_records"] == 1
    with Session(db_engine) as session:
        assert ReportingStore(session).count("A") == 1


def test_run_sync_rejects_reversed_dates(http):
    resp = http.post(
        "/sync/run",
        json={"account_ids": ["act_A"], "start_date": "2024-02-01", "end_date": "2024-01-01"},
    )

    assert resp.status_code == 400


def test_status_endpoint(http):
    http.post("/sync/run", json={"account_ids": ["act_A"], "date_range": "yesterday"})

    body = http.get("/sync/status").json()

    assert body["client"]["circuit_breaker"]["is_open"] is False
    assert body["client"]["rate_limiter"]["calls_in_window"] == 3
    assert body["last_run"]["succeeded"] == 1


def test_validate_token_endpoint(http):
    body = http.get("/meta/validate-token").json()

    assert body["status"] == "success"
    assert body["valid"] is True


def test_health(http):
    assert http.get("/health").json()["status"] == "healthy"
