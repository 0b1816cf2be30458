"""METASYNC: Meta API Client.

Thin HTTP transport for the Graph API. One call = one HTTP request: retries,
rate limiting and the circuit breaker live in ResilientApiClient. Error bodies
are translated into the typed errors of metasync.core.errors.
"""

from typing import Any, Dict, List, Optional, Protocol, Tuple

import httpx

from metasync.config import settings
from metasync.connectors.meta.endpoints import DateRange
from metasync.core.errors import (
    MetaAPIError,
    TransientServerError,
    classify_api_error,
)
from metasync.core.logging import get_logger

logger = get_logger("meta.client")


class CredentialProvider(Protocol):
    """Supplies the access token for each request."""

    def get_token(self) -> str: ...


class StaticTokenProvider:
    """Token fixed at construction (env / settings)."""

    def __init__(self, token: Optional[str] = None):
        self.token = token or settings.meta_access_token

    def get_token(self) -> str:
        return self.token


def normalize_account_id(account_id: str) -> str:
    return account_id if account_id.startswith("act_") else f"act_{account_id}"


class MetaClient:
    """Sync HTTP client for Meta Marketing API."""

    def __init__(
        self,
        credentials: Optional[CredentialProvider] = None,
        base_url: Optional[str] = None,
        api_version: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self.credentials = credentials or StaticTokenProvider()
        self.base = (
            f"{base_url or settings.meta_base_url}/"
            f"{api_version or settings.meta_api_version}"
        )
        self.timeout = timeout or settings.http_timeout_seconds
        self._transport = transport
        self._client: Optional[httpx.Client] = None

    def _get_client(self) -> httpx.Client:
        if self._client is None or self._client.is_closed:
            self._client = httpx.Client(timeout=self.timeout, transport=self._transport)
        return self._client

    def close(self) -> None:
        if self._client and not self._client.is_closed:
            self._client.close()

    def __enter__(self) -> "MetaClient":
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    # ── Core Request Method ──

    def _request(
        self,
        method: str,
        path: str,
        params: Dict[str, Any] | None = None,
    ) -> Dict[str, Any]:
        """Make exactly one request. Raises a typed MetaAPIError on failure."""
        params = dict(params or {})
        params["access_token"] = self.credentials.get_token()
        url = f"{self.base}/{path.lstrip('/')}"

        try:
            resp = self._get_client().request(method, url, params=params)
        except httpx.RequestError as e:
            raise TransientServerError(f"Connection failed: {e}") from e

        if resp.status_code >= 400:
            raise self._error_from_response(resp)

        try:
            return resp.json()
        except ValueError as e:
            raise TransientServerError(
                f"Invalid JSON from Meta API: {e}", status_code=resp.status_code
            ) from e

    @staticmethod
    def _error_from_response(resp: httpx.Response) -> MetaAPIError:
        body: Dict[str, Any] = {}
        if resp.headers.get("content-type", "").startswith(
            ("application/json", "text/javascript")
        ):
            try:
                body = resp.json()
            except ValueError:
                body = {}
        error = body.get("error", {}) if isinstance(body, dict) else {}
        message = error.get("message") or resp.text or f"HTTP {resp.status_code}"
        err = classify_api_error(
            message,
            status_code=resp.status_code,
            error_code=int(error.get("code") or 0),
            error_subcode=int(error.get("error_subcode") or 0),
            error_type=error.get("type", ""),
            trace_id=error.get("fbtrace_id"),
        )
        logger.warning(
            f"Meta API error {resp.status_code}: {type(err).__name__} {message}",
            extra={"error_code": err.error_code},
        )
        return err

    # ── Insights ──

    def get_insights_page(
        self,
        account_id: str,
        fields: List[str],
        breakdowns: List[str],
        date_range: DateRange,
        limit: int,
        after: Optional[str] = None,
        level: str = "ad",
    ) -> Tuple[List[Dict[str, Any]], Optional[str]]:
        """Fetch one page of ad-level daily insights.

        Returns the rows and the cursor for the next page (None on the last).
        """
        params: Dict[str, Any] = {
            "fields": ",".join(fields),
            "time_range": date_range.to_param(),
            "time_increment": "1",
            "level": level,
            "limit": limit,
        }
        if breakdowns:
            params["breakdowns"] = ",".join(breakdowns)
        if after:
            params["after"] = after

        result = self._request(
            "GET", f"{normalize_account_id(account_id)}/insights", params
        )
        data = result.get("data", []) or []
        paging = result.get("paging", {}) or {}
        cursor = None
        if paging.get("next"):
            cursor = (paging.get("cursors") or {}).get("after")
        return data, cursor

    # ── Accounts ──

    def list_ad_accounts(self, max_pages: int = 10) -> List[Dict[str, Any]]:
        """Ad accounts reachable with the current token."""
        accounts: List[Dict[str, Any]] = []
        params: Dict[str, Any] = {
            "fields": "id,account_id,name,account_status,currency",
            "limit": 100,
        }
        for _ in range(max_pages):
            result = self._request("GET", "me/adaccounts", params)
            accounts.extend(result.get("data", []) or [])
            paging = result.get("paging", {}) or {}
            after = (paging.get("cursors") or {}).get("after")
            if not paging.get("next") or not after:
                break
            params = {**params, "after": after}
        logger.info(f"Discovered {len(accounts)} ad accounts")
        return accounts

    # ── Token Validation ──

    def validate_token(self) -> Dict[str, Any]:
        """Check if the access token is valid and return metadata."""
        token = self.credentials.get_token()
        result = self._request("GET", "debug_token", {"input_token": token})
        token_data = result.get("data", {})
        return {
            "valid": token_data.get("is_valid", False),
            "expires_at": token_data.get("expires_at", 0),
            "scopes": token_data.get("scopes", []),
            "app_id": token_data.get("app_id", ""),
        }

    # ── Account Info ──

    def get_account_info(self, account_id: str) -> Dict[str, Any]:
        """Fetch ad account details."""
        params = {
            "fields": "name,account_id,account_status,currency,timezone_name,balance"
        }
        return self._request("GET", normalize_account_id(account_id), params)
