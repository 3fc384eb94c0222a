import pytest

from xerosync.domain.error_taxonomy import (
    classify_error,
    error_code_for_exception,
    is_canonical_error_code,
    is_rate_limit_error,
    resolve_record_error,
)
from xerosync.domain.errors import XeroApiError


@pytest.mark.unit
def test_canonical_error_codes_are_enforced() -> None:
    assert is_canonical_error_code("contact_sync_failed") is True
    assert is_canonical_error_code("unknown_error") is False


@pytest.mark.unit
def test_record_error_mapping_restricts_invalid_codes() -> None:
    assert resolve_record_error(record_type="payment", code="invoice_not_synced") == "invoice_not_synced"
    assert resolve_record_error(record_type="invoice", code="invoice_not_synced") == "internal_error"
    assert resolve_record_error(record_type="credit_note", code="contact_sync_failed") == "contact_sync_failed"
    assert resolve_record_error(record_type="payment", code="made_up") == "internal_error"


@pytest.mark.unit
def test_retry_classification_distinguishes_terminal_and_recoverable() -> None:
    assert classify_error("rate_limited") == "recoverable"
    assert classify_error("xero_unavailable") == "recoverable"
    assert classify_error("xero_validation_error") == "terminal"
    assert classify_error("contact_sync_failed") == "terminal"


@pytest.mark.unit
@pytest.mark.parametrize(
    "message",
    ["Rate limit exceeded", "HTTP 429 returned", "Too Many Requests", "daily quota exceeded"],
)
def test_rate_limit_detected_from_message(message: str) -> None:
    assert is_rate_limit_error(RuntimeError(message)) is True


@pytest.mark.unit
def test_rate_limit_detected_from_status_code() -> None:
    assert is_rate_limit_error(XeroApiError("slow down", status_code=429)) is True
    assert is_rate_limit_error(XeroApiError("bad request", status_code=400)) is False


@pytest.mark.unit
def test_exception_mapping_to_error_codes() -> None:
    assert error_code_for_exception(XeroApiError("throttled", status_code=429)) == "rate_limited"
    assert error_code_for_exception(XeroApiError("gateway", status_code=503)) == "xero_unavailable"
    assert error_code_for_exception(XeroApiError("connection reset")) == "xero_unavailable"
    assert error_code_for_exception(XeroApiError("invalid", status_code=400)) == "xero_validation_error"
    auth_failure = XeroApiError("Unable to authenticate with Xero", status_code=401)
    assert error_code_for_exception(auth_failure) == "tenant_unavailable"
    assert error_code_for_exception(XeroApiError("forbidden", status_code=403)) == "tenant_unavailable"
    assert error_code_for_exception(XeroApiError("not found", status_code=404)) == "internal_error"
    assert error_code_for_exception(ValueError("boom")) == "internal_error"
