from __future__ import annotations

from collections.abc import Sequence
from datetime import date, datetime
from typing import Protocol, runtime_checkable

from xerosync.domain.dto import ChargeResult
from xerosync.domain.models import (
    ContactMapping,
    LineItem,
    StagedInvoice,
    StagedPayment,
    StagingCounts,
    SyncLogEntry,
    UserProfile,
    XeroTenant,
)

CLAIM_SQL_CONTRACT = "SELECT ... FOR UPDATE SKIP LOCKED"
XERO_PAYLOAD = dict[str, object]


@runtime_checkable
class StagingRepository(Protocol):
    """Repository contract for the xero_invoices / xero_payments work queue.

    Claim semantics must remain compatible with the Postgres claim functions
    using SELECT ... FOR UPDATE SKIP LOCKED.
    """

    async def create_invoice_staging(
        self,
        *,
        payment_id: str | None,
        invoice_type: str,
        invoice_status: str,
        total_amount: int,
        discount_amount: int,
        net_amount: int,
        sync_status: str,
        staging_metadata: dict[str, object],
        line_items: Sequence[LineItem],
        is_payment_plan: bool = False,
    ) -> str: ...

    async def create_payment_staging(
        self,
        *,
        invoice_id: str,
        amount_paid: int,
        sync_status: str,
        staging_metadata: dict[str, object],
        payment_method: str = "stripe",
        bank_account_code: str | None = None,
        reference: str | None = None,
        payment_type: str = "full",
        installment_number: int | None = None,
        planned_payment_date: date | None = None,
        max_attempts: int = 3,
    ) -> str: ...

    async def get_invoice(self, *, invoice_id: str) -> StagedInvoice | None: ...

    async def get_staged_payment(self, *, staged_payment_id: str) -> StagedPayment | None: ...

    async def find_invoice_by_payment_id(
        self,
        *,
        payment_id: str,
        invoice_type: str = "ACCREC",
        sync_status: str | None = None,
    ) -> StagedInvoice | None: ...

    async def find_credit_note_by_refund_id(self, *, refund_id: str) -> StagedInvoice | None: ...

    async def list_payments_for_invoice(self, *, invoice_id: str) -> list[StagedPayment]: ...

    async def transition_records(
        self,
        *,
        record_type: str,
        from_state: str,
        to_state: str,
        record_ids: Sequence[str] | None = None,
        reset_errors: bool = False,
    ) -> int: ...

    async def merge_payment_metadata(
        self,
        *,
        staged_payment_id: str,
        metadata: dict[str, object],
        bank_account_code: str | None = None,
    ) -> None: ...

    async def get_bank_account_code(self) -> str | None: ...

    async def get_payment_status(self, *, payment_id: str) -> str | None: ...

    async def create_payment_record(
        self,
        *,
        user_id: str,
        amount: int,
        stripe_payment_intent_id: str | None,
        stripe_charge_id: str | None = None,
    ) -> str: ...

    async def claim_pending_invoices(self, *, limit: int = 50) -> list[StagedInvoice]: ...

    async def claim_pending_payments(self, *, limit: int = 50) -> list[StagedPayment]: ...

    async def count_by_status(self, *, record_type: str) -> StagingCounts: ...

    async def mark_invoice_synced(
        self,
        *,
        invoice_id: str,
        tenant_id: str,
        xero_invoice_id: str,
        invoice_number: str | None,
    ) -> None: ...

    async def mark_payment_synced(
        self,
        *,
        staged_payment_id: str,
        tenant_id: str,
        xero_payment_id: str,
    ) -> None: ...

    async def record_sync_failure(
        self,
        *,
        record_type: str,
        record_id: str,
        error_code: str,
        detail: str,
        max_attempts: int = 3,
    ) -> str: ...

    async def release_stale_processing(self, *, older_than_seconds: int) -> int: ...

    async def get_active_tenant(self) -> XeroTenant | None: ...

    async def update_tenant_tokens(
        self,
        *,
        tenant_id: str,
        access_token: str,
        refresh_token: str,
        expires_at: datetime,
    ) -> None: ...

    async def deactivate_tenant(self, *, tenant_id: str) -> None: ...

    async def get_user_profile(self, *, user_id: str) -> UserProfile | None: ...

    async def get_contact_mapping(self, *, user_id: str, tenant_id: str) -> ContactMapping | None: ...

    async def upsert_contact_mapping(
        self,
        *,
        user_id: str,
        tenant_id: str,
        xero_contact_id: str,
        contact_number: str | None = None,
    ) -> None: ...

    async def write_sync_log(self, *, entry: SyncLogEntry) -> None: ...

    async def list_due_installments(self, *, today: date) -> list[StagedPayment]: ...

    async def record_installment_attempt(
        self,
        *,
        staged_payment_id: str,
        succeeded: bool,
        attempted_at: datetime,
        failure_reason: str | None = None,
        metadata: dict[str, object] | None = None,
    ) -> None: ...


@runtime_checkable
class XeroClient(Protocol):
    """Accounting API boundary. Batch operations return one element per input, in order."""

    async def validate_connection(self, *, tenant_id: str) -> bool: ...

    async def find_contacts(self, *, tenant_id: str, where: str) -> list[XERO_PAYLOAD]: ...

    async def create_contact(self, *, tenant_id: str, contact: XERO_PAYLOAD) -> XERO_PAYLOAD: ...

    async def create_invoices(self, *, tenant_id: str, invoices: list[XERO_PAYLOAD]) -> list[XERO_PAYLOAD]: ...

    async def create_credit_notes(
        self,
        *,
        tenant_id: str,
        credit_notes: list[XERO_PAYLOAD],
    ) -> list[XERO_PAYLOAD]: ...

    async def create_payments(self, *, tenant_id: str, payments: list[XERO_PAYLOAD]) -> list[XERO_PAYLOAD]: ...


@runtime_checkable
class PaymentProcessor(Protocol):
    async def charge_installment(
        self,
        *,
        amount: int,
        customer_id: str,
        payment_method_id: str,
        idempotency_key: str,
        metadata: dict[str, str],
    ) -> ChargeResult: ...
