"""METASYNC: Error Taxonomy.

Typed exceptions raised across the sync path, plus the classifier that turns a
Graph API error payload into the right subclass.
"""

import re
from enum import Enum
from typing import Optional


class QuotaScope(str, Enum):
    """Which quota a rate-limit error was charged against."""

    ACCOUNT = "account"  # code 17, user/ad-account request limit
    APPLICATION = "application"  # code 4, app-level request limit
    TRANSIENT = "transient"  # code 613, temporary request limit


QUOTA_CODES = {
    17: QuotaScope.ACCOUNT,
    4: QuotaScope.APPLICATION,
    613: QuotaScope.TRANSIENT,
}
AUTH_CODES = frozenset({190, 102})
PERMISSION_CODES = frozenset({200, 10})
TEMPORARY_CODES = frozenset({1, 2})

# Last-resort classification when the transport could not extract a code
_CODE_IN_MESSAGE = re.compile(r'(?:"code"\s*:\s*|\bcode\s+)(\d+)')
_QUOTA_PHRASES = ("too many api calls", "rate limit", "user request limit")


class MetaSyncError(Exception):
    """Root of every error raised by METASYNC."""


# ─────────────────────────────────────────────
# API ERRORS: raised by the transport
# ─────────────────────────────────────────────


class MetaAPIError(MetaSyncError):
    """Raised when Meta API returns an error."""

    def __init__(
        self,
        message: str,
        status_code: int = 0,
        error_code: int = 0,
        error_subcode: int = 0,
        error_type: str = "",
        trace_id: Optional[str] = None,
    ):
        self.status_code = status_code
        self.error_code = error_code
        self.error_subcode = error_subcode
        self.error_type = error_type
        self.trace_id = trace_id
        super().__init__(message)

    def __repr__(self) -> str:
        return (
            f"{type(self).__name__}(code={self.error_code}, "
            f"status={self.status_code}, message={str(self)!r})"
        )


class QuotaError(MetaAPIError):
    """Quota violation. Trips the circuit breaker, never retried locally."""

    def __init__(self, message: str, scope: QuotaScope, **kwargs):
        self.scope = scope
        super().__init__(message, **kwargs)


class AuthError(MetaAPIError):
    """Invalid or expired credentials."""


class ApiPermissionError(MetaAPIError):
    """The token lacks permission for the requested object."""


class TransientServerError(MetaAPIError):
    """Server fault or network failure worth retrying.

    ``throttled`` marks an HTTP 429 that carried no quota code; those back off
    on the slower schedule.
    """

    def __init__(self, message: str, throttled: bool = False, **kwargs):
        self.throttled = throttled
        super().__init__(message, **kwargs)


# ─────────────────────────────────────────────
# CLIENT-SIDE ERRORS
# ─────────────────────────────────────────────


class CircuitOpenError(MetaSyncError):
    """Circuit breaker is open; the call was rejected without a network call."""

    def __init__(self, retry_after: float):
        self.retry_after = retry_after
        super().__init__(
            f"Circuit breaker active - rate limit cooldown for {retry_after:.0f} seconds"
        )


class ConcurrencyTimeoutError(MetaSyncError):
    """No concurrency slot became free before the acquire timeout."""


class DeadlineExceededError(MetaSyncError):
    """The caller's deadline passed before the operation could finish."""


class RecordTransformError(MetaSyncError):
    """A single insight row could not be converted."""


class DuplicateStorageKeyError(MetaSyncError):
    """Two rows in one upsert batch share a storage primary key."""


class SyncStageError(MetaSyncError):
    """Sync of one account failed; ``stage`` names where."""

    def __init__(self, stage: str, account_id: str, cause: Exception):
        self.stage = stage
        self.account_id = account_id
        self.cause = cause
        super().__init__(f"{stage} stage failed for account {account_id}: {cause}")


class DataIntegrityWarning(UserWarning):
    """Non-fatal data check failure, e.g. spend not conserved by aggregation."""


# ─────────────────────────────────────────────
# CLASSIFICATION
# ─────────────────────────────────────────────


def _code_from_message(message: str) -> int:
    match = _CODE_IN_MESSAGE.search(message or "")
    return int(match.group(1)) if match else 0


def classify_api_error(
    message: str,
    status_code: int = 0,
    error_code: int = 0,
    error_subcode: int = 0,
    error_type: str = "",
    trace_id: Optional[str] = None,
) -> MetaAPIError:
    """Build the typed error for a failed Graph API call.

    The structured ``error_code`` wins. Only when it is missing do we fall back
    to scanning the message text.
    """
    if not error_code:
        error_code = _code_from_message(message)

    kwargs = dict(
        status_code=status_code,
        error_code=error_code,
        error_subcode=error_subcode,
        error_type=error_type,
        trace_id=trace_id,
    )

    if error_code in QUOTA_CODES:
        return QuotaError(message, QUOTA_CODES[error_code], **kwargs)
    if not error_code and any(p in (message or "").lower() for p in _QUOTA_PHRASES):
        return QuotaError(message, QuotaScope.APPLICATION, **kwargs)
    if error_code in AUTH_CODES:
        return AuthError(message, **kwargs)
    if error_code in PERMISSION_CODES:
        return ApiPermissionError(message, **kwargs)
    if error_code in TEMPORARY_CODES or status_code >= 500 or 500 <= error_code < 600:
        return TransientServerError(message, **kwargs)
    if status_code == 429:
        return TransientServerError(message, throttled=True, **kwargs)
    return MetaAPIError(message, **kwargs)
