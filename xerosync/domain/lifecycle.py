from __future__ import annotations

from dataclasses import dataclass

from xerosync.domain.error_taxonomy import FREE_RETRY_ERROR_CODES, RECOVERABLE_ERROR_CODES
from xerosync.domain.errors import DomainInvariantError


@dataclass(frozen=True)
class StagingLifecycle:
    record_type: str
    table: str
    claim_function: str
    id_prefix: str
    source_state: str = "pending"
    in_progress_state: str = "processing"
    success_state: str = "synced"
    failed_state: str = "failed"
    max_attempts: int = 3


STAGING_LIFECYCLES: dict[str, StagingLifecycle] = {
    "invoice": StagingLifecycle(
        record_type="invoice",
        table="xero_invoices",
        claim_function="get_pending_xero_invoices_with_lock",
        id_prefix="inv_",
    ),
    "payment": StagingLifecycle(
        record_type="payment",
        table="xero_payments",
        claim_function="get_pending_xero_payments_with_lock",
        id_prefix="pay_",
    ),
}


ALLOWED_TRANSITIONS: dict[str, set[str]] = {
    "staged": {"pending", "ignore"},
    "planned": {"pending", "ignore"},
    "pending": {"processing", "ignore"},
    "processing": {"synced", "pending", "failed"},
    "failed": {"pending", "ignore"},
    "synced": set(),
    "ignore": set(),
}


def ensure_transition(*, from_state: str, to_state: str) -> None:
    allowed = ALLOWED_TRANSITIONS.get(from_state)
    if allowed is None or to_state not in allowed:
        raise DomainInvariantError(f"transition not allowed: {from_state} -> {to_state}")


def lifecycle_for_record_id(record_id: str) -> StagingLifecycle:
    for lifecycle in STAGING_LIFECYCLES.values():
        if record_id.startswith(lifecycle.id_prefix):
            return lifecycle
    raise DomainInvariantError(f"unknown staging record id: {record_id}")


def next_failure_state(*, error_code: str, retry_count: int, max_attempts: int) -> tuple[str, int]:
    """Returns (sync_status, retry_count) for a processing row whose sync attempt failed."""
    if error_code in FREE_RETRY_ERROR_CODES:
        return "pending", retry_count

    attempts = retry_count + 1
    if error_code in RECOVERABLE_ERROR_CODES and attempts < max_attempts:
        return "pending", attempts
    return "failed", attempts
