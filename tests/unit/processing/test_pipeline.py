from datetime import datetime, timedelta, timezone

import pytest

from metasync.config import settings
from metasync.connectors.meta.endpoints import DateRange, build_batches
from metasync.connectors.meta.fetcher import MODE_FULL, BatchFetcher, FetchResult
from metasync.core.errors import MetaAPIError, SyncStageError
from metasync.processing import pipeline
from metasync.processing.aggregator import KeyAggregator
from metasync.processing.merger import RecordMerger
from metasync.storage.reporting_store import ReportingStore

RANGE = DateRange(since="2024-01-01", until="2024-01-01")


@pytest.fixture
def fetcher(mocker, raw):
    def fake_fetch(account_id, date_range, deadline=None):
        if account_id == "act_bad":
            raise MetaAPIError("Invalid parameter", status_code=400, error_code=100)
        return FetchResult(
            {
                "demographic": [
                    raw("demographic", account_id=account_id, dimensions={"age": "25-34", "gender": "M"}, spend=10.0, clicks=5.0)
                ],
                "geographic": [
                    raw("geographic", account_id=account_id, dimensions={"country": "US", "region": "CA"}, spend=10.0, clicks=5.0)
                ],
                "placement": [],
            },
            MODE_FULL,
        )

    fetcher = mocker.Mock(spec=BatchFetcher)
    fetcher.batches = build_batches()
    fetcher.fetch.side_effect = fake_fetch
    return fetcher


class TestSyncAccount:
    def test_runs_every_stage(self, fetcher, session):
        store = ReportingStore(session)

        result = pipeline.sync_account("act_good", RANGE, fetcher, store)

        assert result.status == "success"
        assert result.fetch_mode == MODE_FULL
        assert result.raw_records == 2
        assert result.merged_records == 1
        assert result.stored_records == 1
        assert store.count() == 1

    def test_fetch_failure_names_stage(self, fetcher, session):
        with pytest.raises(SyncStageError) as exc:
            pipeline.sync_account("act_bad", RANGE, fetcher, ReportingStore(session))

        assert exc.value.stage == "fetch"
        assert exc.value.account_id == "act_bad"
        assert isinstance(exc.value.cause, MetaAPIError)

    @pytest.mark.parametrize(
        "target, method, stage",
        [
            (RecordMerger, "merge", "merge"),
            (KeyAggregator, "aggregate", "aggregate"),
            (ReportingStore, "upsert", "store"),
        ],
    )
    def test_later_stage_failures_name_stage(self, mocker, fetcher, session, target, method, stage):
        mocker.patch.object(target, method, side_effect=RuntimeError("boom"))

        with pytest.raises(SyncStageError) as exc:
            pipeline.sync_account("act_good", RANGE, fetcher, ReportingStore(session))

        assert exc.value.stage == stage


class TestRunSync:
    def test_failed_account_does_not_stop_siblings(self, mocker, fetcher, session, api):
        summary = pipeline.run_sync(
            session,
            account_ids=["act_bad", "act_good"],
            start_date="2024-01-01",
            end_date="2024-01-01",
            client=mocker.Mock(),
            api=api,
            fetcher=fetcher,
        )

        assert summary.succeeded == 1
        assert summary.failed == 1
        failed = summary.results[0]
        assert failed.account_id == "act_bad"
        assert failed.failed_stage == "fetch"
        assert "MetaAPIError" in failed.error
        assert ReportingStore(session).count("act_good") == 1
        assert pipeline.last_sync_summary() is summary

    def test_discovers_accounts_when_none_configured(self, mocker, monkeypatch, fetcher, session, api):
        monkeypatch.setattr(settings, "meta_account_ids", [])
        client = mocker.Mock()
        client.list_ad_accounts.return_value = [{"id": "act_1"}, {"account_id": "2"}]

        summary = pipeline.run_sync(
            session, date_range="yesterday", client=client, api=api, fetcher=fetcher
        )

        assert [r.account_id for r in summary.results] == ["act_1", "act_2"]

    def test_summary_serialises(self, mocker, fetcher, session, api):
        summary = pipeline.run_sync(
            session,
            account_ids=["act_good"],
            client=mocker.Mock(),
            api=api,
            fetcher=fetcher,
        )

        data = summary.to_dict()
        assert data["succeeded"] == 1
        assert data["results"][0]["stored_records"] == 1


class TestResolveDates:
    def test_explicit_dates(self):
        assert pipeline._resolve_dates(start_date="2024-03-01", end_date="2024-03-05") == DateRange(
            since="2024-03-01", until="2024-03-05"
        )

    def test_presets(self):
        today = datetime.now(timezone.utc).date()
        yesterday = (today - timedelta(days=1)).isoformat()

        last_7d = pipeline._resolve_dates("last_7d")
        assert last_7d.since == (today - timedelta(days=7)).isoformat()
        assert last_7d.until == yesterday

    def test_invalid_input_defaults_to_yesterday(self):
        yesterday = (datetime.now(timezone.utc).date() - timedelta(days=1)).isoformat()

        dates = pipeline._resolve_dates("fortnight", start_date="bad")
        assert dates.since == dates.until == yesterday
