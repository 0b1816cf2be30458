"""Shared fixtures: fake clock, record factories, in-memory database."""

import threading

import pytest
from sqlalchemy.pool import StaticPool
from sqlmodel import Session, SQLModel, create_engine

from metasync.connectors.meta.circuit_breaker import CircuitBreaker
from metasync.connectors.meta.rate_limiter import RateLimiter
from metasync.connectors.meta.resilient import ResilientApiClient
from metasync.models import reporting_models  # noqa: F401
from metasync.models.insight_models import MergedRecord, RawInsightRecord


class FakeClock:
    """Monotonic clock that only moves when slept on or advanced."""

    def __init__(self, start: float = 1000.0):
        self.now = start
        self.sleeps = []
        self._lock = threading.Lock()

    def __call__(self) -> float:
        with self._lock:
            return self.now

    def sleep(self, seconds: float) -> None:
        with self._lock:
            self.sleeps.append(seconds)
            self.now += seconds

    def advance(self, seconds: float) -> None:
        with self._lock:
            self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def api(clock):
    """ResilientApiClient on a fake clock with no spacing between calls."""
    limiter = RateLimiter(
        requests_per_hour=1000,
        safety_margin=0.8,
        min_interval=0,
        max_concurrency=3,
        acquire_timeout=1,
        max_quota_wait=1800,
        clock=clock,
        sleep=clock.sleep,
    )
    return ResilientApiClient(
        rate_limiter=limiter,
        breaker=CircuitBreaker(clock=clock),
        max_attempts=3,
        base_delay=1.0,
        server_max_delay=60,
        throttle_max_delay=300,
        clock=clock,
        sleep=clock.sleep,
    )


def make_raw(
    batch="demographic",
    account_id="A",
    ad_id="X",
    date="2024-01-01",
    dimensions=None,
    **metrics,
) -> RawInsightRecord:
    return RawInsightRecord(
        account_id=account_id,
        campaign_id="C1",
        adset_id="S1",
        ad_id=ad_id,
        date_start=date,
        date_stop=date,
        dimensions=dimensions or {},
        metrics=metrics,
        batch=batch,
    )


def make_merged(
    dimensions=None,
    account_id="A",
    ad_id="X",
    date="2024-01-01",
    updated_at="2024-01-02T00:00:00+00:00",
    recovered=False,
    **metrics,
) -> MergedRecord:
    return MergedRecord(
        account_id=account_id,
        campaign_id="C1",
        adset_id="S1",
        ad_id=ad_id,
        date_start=date,
        date_stop=date,
        dimensions=dimensions or {},
        metrics=metrics,
        coverage=["demographic"],
        created_at="2024-01-02T00:00:00+00:00",
        updated_at=updated_at,
        recovered=recovered,
    )


@pytest.fixture
def db_engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SQLModel.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session(db_engine):
    with Session(db_engine) as session:
        yield session


@pytest.fixture
def raw():
    return make_raw


@pytest.fixture
def merged_record():
    return make_merged
