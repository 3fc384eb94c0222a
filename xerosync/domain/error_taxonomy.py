from __future__ import annotations

from collections.abc import Iterable, Mapping
from typing import Literal

from xerosync.domain.errors import XeroApiError

# Canonical error vocabulary for staging records.
ErrorCode = Literal[
    "validation_error",
    "rate_limited",
    "xero_unavailable",
    "tenant_unavailable",
    "contact_sync_failed",
    "invoice_not_synced",
    "xero_validation_error",
    "invalid_response",
    "internal_error",
]

RetryClassification = Literal["recoverable", "terminal"]

# Allowed persisted error codes.
CANONICAL_ERROR_CODES: tuple[ErrorCode, ...] = (
    "validation_error",
    "rate_limited",
    "xero_unavailable",
    "tenant_unavailable",
    "contact_sync_failed",
    "invoice_not_synced",
    "xero_validation_error",
    "invalid_response",
    "internal_error",
)

# Errors that put the row back in the queue instead of failing it.
RECOVERABLE_ERROR_CODES: frozenset[ErrorCode] = frozenset(
    {
        "rate_limited",
        "xero_unavailable",
        "tenant_unavailable",
    }
)

# Recoverable errors that do not consume an attempt.
FREE_RETRY_ERROR_CODES: frozenset[ErrorCode] = frozenset({"rate_limited", "tenant_unavailable"})

# Record-kind allowlist. Codes outside it are normalized to internal_error
# by resolve_record_error().
RECORD_ERROR_MAP: Mapping[str, frozenset[ErrorCode]] = {
    "invoice": frozenset(
        {
            "validation_error",
            "rate_limited",
            "xero_unavailable",
            "tenant_unavailable",
            "contact_sync_failed",
            "xero_validation_error",
            "invalid_response",
            "internal_error",
        }
    ),
    "credit_note": frozenset(
        {
            "validation_error",
            "rate_limited",
            "xero_unavailable",
            "tenant_unavailable",
            "contact_sync_failed",
            "xero_validation_error",
            "invalid_response",
            "internal_error",
        }
    ),
    "payment": frozenset(
        {
            "validation_error",
            "rate_limited",
            "xero_unavailable",
            "tenant_unavailable",
            "invoice_not_synced",
            "xero_validation_error",
            "invalid_response",
            "internal_error",
        }
    ),
}

# sync_error text persisted when no more specific message is available.
DEFAULT_ERROR_MESSAGES: Mapping[ErrorCode, str] = {
    "validation_error": "Invalid staging data",
    "rate_limited": "Xero rate limit exceeded",
    "xero_unavailable": "Xero API unavailable",
    "tenant_unavailable": "No active Xero tenant",
    "contact_sync_failed": "Failed to get/create Xero contact",
    "invoice_not_synced": "Associated invoice not synced to Xero yet",
    "xero_validation_error": "Xero rejected the record",
    "invalid_response": "Xero returned no record for this item",
    "internal_error": "Unexpected sync error",
}

DEFAULT_RATE_LIMIT_MARKERS: tuple[str, ...] = (
    "rate limit",
    "429",
    "too many requests",
    "quota exceeded",
)


def is_canonical_error_code(code: str) -> bool:
    return code in CANONICAL_ERROR_CODES


def classify_error(code: ErrorCode) -> RetryClassification:
    if code in RECOVERABLE_ERROR_CODES:
        return "recoverable"
    return "terminal"


def resolve_record_error(*, record_type: str, code: str) -> ErrorCode:
    allowed = RECORD_ERROR_MAP.get(record_type, frozenset({"internal_error"}))
    if code in allowed and is_canonical_error_code(code):
        return code
    return "internal_error"


def is_rate_limit_error(
    exc: BaseException,
    *,
    markers: Iterable[str] = DEFAULT_RATE_LIMIT_MARKERS,
) -> bool:
    if getattr(exc, "status_code", None) == 429:
        return True
    message = str(exc).lower()
    return any(marker in message for marker in markers)


def error_code_for_exception(
    exc: BaseException,
    *,
    markers: Iterable[str] = DEFAULT_RATE_LIMIT_MARKERS,
) -> ErrorCode:
    if is_rate_limit_error(exc, markers=markers):
        return "rate_limited"
    if isinstance(exc, XeroApiError):
        if exc.status_code is None or exc.status_code >= 500:
            return "xero_unavailable"
        if exc.status_code in (401, 403):
            # Token refresh failed or the tenant connection was revoked.
            return "tenant_unavailable"
        if exc.status_code == 400:
            return "xero_validation_error"
    return "internal_error"
