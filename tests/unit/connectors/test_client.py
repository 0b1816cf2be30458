import json

import httpx
import pytest

from metasync.connectors.meta.client import MetaClient, StaticTokenProvider
from metasync.connectors.meta.endpoints import DateRange
from metasync.core.errors import (
    AuthError,
    MetaAPIError,
    QuotaError,
    QuotaScope,
    TransientServerError,
)

RANGE = DateRange(since="2024-01-01", until="2024-01-07")


def _client(handler) -> MetaClient:
    return MetaClient(
        credentials=StaticTokenProvider("test-token"),
        base_url="https://graph.test",
        api_version="v21.0",
        transport=httpx.MockTransport(handler),
    )


def _error(status, code=0, message="failed", **extra):
    body = {"error": {"message": message, "code": code, "fbtrace_id": "T1", **extra}}
    return lambda request: httpx.Response(status, json=body)


def test_insights_page_request_and_cursor():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["path"] = request.url.path
        seen["params"] = dict(request.url.params)
        return httpx.Response(
            200,
            json={
                "data": [{"ad_id": "1"}],
                "paging": {"cursors": {"after": "CUR"}, "next": "https://next"},
            },
        )

    with _client(handler) as client:
        rows, cursor = client.get_insights_page(
            "123", ["ad_id", "spend"], ["age", "gender"], RANGE, limit=500
        )

    assert rows == [{"ad_id": "1"}]
    assert cursor == "CUR"
    assert seen["path"] == "/v21.0/act_123/insights"
    params = seen["params"]
    assert params["breakdowns"] == "age,gender"
    assert params["fields"] == "ad_id,spend"
    assert json.loads(params["time_range"]) == {"since": "2024-01-01", "until": "2024-01-07"}
    assert params["limit"] == "500"
    assert params["access_token"] == "test-token"
    assert "after" not in params


def test_last_page_has_no_cursor():
    def handler(request):
        assert request.url.params["after"] == "CUR"
        assert "breakdowns" not in request.url.params
        return httpx.Response(
            200, json={"data": [], "paging": {"cursors": {"after": "END"}}}
        )

    rows, cursor = _client(handler).get_insights_page(
        "act_1", ["ad_id"], [], RANGE, limit=10, after="CUR"
    )

    assert rows == []
    assert cursor is None


def test_quota_error_code_is_structured():
    client = _client(_error(400, code=17, message="User request limit reached"))

    with pytest.raises(QuotaError) as exc:
        client.get_account_info("act_1")

    assert exc.value.scope is QuotaScope.ACCOUNT
    assert exc.value.status_code == 400
    assert exc.value.trace_id == "T1"


def test_auth_error():
    with pytest.raises(AuthError):
        _client(_error(400, code=190, message="Invalid OAuth token")).validate_token()


def test_server_error_without_json_is_transient():
    client = _client(lambda request: httpx.Response(503, text="unavailable"))

    with pytest.raises(TransientServerError) as exc:
        client.get_account_info("act_1")
    assert exc.value.throttled is False


def test_plain_429_is_throttled():
    client = _client(lambda request: httpx.Response(429, json={}))

    with pytest.raises(TransientServerError) as exc:
        client.get_account_info("act_1")
    assert exc.value.throttled is True


def test_network_failure_is_transient():
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(TransientServerError):
        _client(handler).get_account_info("act_1")


def test_unclassified_error_is_plain_api_error():
    with pytest.raises(MetaAPIError) as exc:
        _client(_error(400, code=100, message="Invalid parameter")).get_account_info("1")

    assert type(exc.value) is MetaAPIError
    assert exc.value.error_code == 100


def test_list_ad_accounts_follows_cursor():
    def handler(request):
        if request.url.params.get("after") == "P2":
            return httpx.Response(200, json={"data": [{"id": "act_2"}]})
        return httpx.Response(
            200,
            json={
                "data": [{"id": "act_1"}],
                "paging": {"cursors": {"after": "P2"}, "next": "https://next"},
            },
        )

    accounts = _client(handler).list_ad_accounts()

    assert [a["id"] for a in accounts] == ["act_1", "act_2"]


def test_validate_token():
    def handler(request):
        assert request.url.path == "/v21.0/debug_token"
        assert request.url.params["input_token"] == "test-token"
        return httpx.Response(
            200,
            json={"data": {"is_valid": True, "expires_at": 0, "scopes": ["ads_read"], "app_id": "9"}},
        )

    assert _client(handler).validate_token() == {
        "valid": True,
        "expires_at": 0,
        "scopes": ["ads_read"],
        "app_id": "9",
    }
