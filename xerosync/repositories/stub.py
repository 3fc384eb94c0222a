from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass, field, replace
from datetime import UTC, date, datetime, timedelta
import uuid

from xerosync.domain.errors import DomainInvariantError
from xerosync.domain.ids import new_invoice_staging_id, new_payment_staging_id
from xerosync.domain.lifecycle import ensure_transition, next_failure_state
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


def _now() -> datetime:
    return datetime.now(tz=UTC)


@dataclass
class _InvoiceRow:
    id: str
    payment_id: str | None
    invoice_type: str
    invoice_status: str
    total_amount: int
    discount_amount: int
    net_amount: int
    sync_status: str
    staging_metadata: dict[str, object]
    line_items: tuple[LineItem, ...]
    is_payment_plan: bool = False
    tenant_id: str | None = None
    xero_invoice_id: str | None = None
    invoice_number: str | None = None
    sync_error: str | None = None
    retry_count: int = 0
    claimed_at: datetime | None = None
    last_synced_at: datetime | None = None
    created_at: datetime = field(default_factory=_now)
    staged_at: datetime = field(default_factory=_now)


@dataclass
class _PaymentRow:
    id: str
    invoice_id: str
    amount_paid: int
    sync_status: str
    staging_metadata: dict[str, object]
    payment_method: str = "stripe"
    bank_account_code: str | None = None
    reference: str | None = None
    stripe_fee_amount: int = 0
    payment_type: str = "full"
    installment_number: int | None = None
    planned_payment_date: date | None = None
    attempt_count: int = 0
    max_attempts: int = 3
    last_attempt_at: datetime | None = None
    failure_reason: str | None = None
    tenant_id: str | None = None
    xero_payment_id: str | None = None
    sync_error: str | None = None
    retry_count: int = 0
    claimed_at: datetime | None = None
    last_synced_at: datetime | None = None
    created_at: datetime = field(default_factory=_now)
    staged_at: datetime = field(default_factory=_now)


@dataclass
class _TenantRow:
    tenant: XeroTenant
    is_active: bool = True


@dataclass
class InMemoryStagingRepository:
    """Non-network repository with deterministic behavior for local runs and tests."""

    invoices: dict[str, _InvoiceRow] = field(default_factory=dict)
    payments: dict[str, _PaymentRow] = field(default_factory=dict)
    users: dict[str, UserProfile] = field(default_factory=dict)
    payment_records: dict[str, dict[str, object]] = field(default_factory=dict)
    tenants: dict[str, _TenantRow] = field(default_factory=dict)
    contacts: dict[tuple[str, str], ContactMapping] = field(default_factory=dict)
    accounting_codes: dict[str, str] = field(default_factory=dict)
    sync_logs: list[SyncLogEntry] = field(default_factory=list)

    # Seeding helpers for tables owned by the wider application.

    def add_user(self, user: UserProfile) -> None:
        self.users[user.user_id] = user

    def add_payment_record(self, *, payment_id: str, user_id: str, status: str = "completed", amount: int = 0) -> None:
        self.payment_records[payment_id] = {
            "id": payment_id,
            "user_id": user_id,
            "status": status,
            "final_amount": amount,
        }

    def add_tenant(self, tenant: XeroTenant, *, is_active: bool = True) -> None:
        self.tenants[tenant.tenant_id] = _TenantRow(tenant=tenant, is_active=is_active)

    def set_accounting_code(self, *, code_type: str, accounting_code: str) -> None:
        self.accounting_codes[code_type] = accounting_code

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
    ) -> str:
        invoice_id = new_invoice_staging_id()
        self.invoices[invoice_id] = _InvoiceRow(
            id=invoice_id,
            payment_id=payment_id,
            invoice_type=invoice_type,
            invoice_status=invoice_status,
            total_amount=total_amount,
            discount_amount=discount_amount,
            net_amount=net_amount,
            sync_status=sync_status,
            staging_metadata=dict(staging_metadata),
            line_items=tuple(line_items),
            is_payment_plan=is_payment_plan,
        )
        return invoice_id

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
    ) -> str:
        if invoice_id not in self.invoices:
            raise DomainInvariantError(f"invoice staging record not found: {invoice_id}")
        if (payment_type == "installment") != (installment_number is not None):
            raise DomainInvariantError("installment_number is required for installment payments only")
        staged_payment_id = new_payment_staging_id()
        self.payments[staged_payment_id] = _PaymentRow(
            id=staged_payment_id,
            invoice_id=invoice_id,
            amount_paid=amount_paid,
            sync_status=sync_status,
            staging_metadata=dict(staging_metadata),
            payment_method=payment_method,
            bank_account_code=bank_account_code,
            reference=reference,
            payment_type=payment_type,
            installment_number=installment_number,
            planned_payment_date=planned_payment_date,
            max_attempts=max_attempts,
        )
        return staged_payment_id

    async def get_invoice(self, *, invoice_id: str) -> StagedInvoice | None:
        row = self.invoices.get(invoice_id)
        return self._invoice_snapshot(row) if row is not None else None

    async def get_staged_payment(self, *, staged_payment_id: str) -> StagedPayment | None:
        row = self.payments.get(staged_payment_id)
        return self._payment_snapshot(row) if row is not None else None

    async def find_invoice_by_payment_id(
        self,
        *,
        payment_id: str,
        invoice_type: str = "ACCREC",
        sync_status: str | None = None,
    ) -> StagedInvoice | None:
        matches = [
            row
            for row in self.invoices.values()
            if row.payment_id == payment_id
            and row.invoice_type == invoice_type
            and (sync_status is None or row.sync_status == sync_status)
        ]
        if not matches:
            return None
        latest = max(matches, key=lambda row: (row.created_at, row.id))
        return self._invoice_snapshot(latest)

    async def find_credit_note_by_refund_id(self, *, refund_id: str) -> StagedInvoice | None:
        for row in self.invoices.values():
            if row.invoice_type == "ACCRECCREDIT" and row.staging_metadata.get("refund_id") == refund_id:
                return self._invoice_snapshot(row)
        return None

    async def list_payments_for_invoice(self, *, invoice_id: str) -> list[StagedPayment]:
        rows = [row for row in self.payments.values() if row.invoice_id == invoice_id]
        rows.sort(key=lambda row: (row.installment_number or 0, row.staged_at))
        return [self._payment_snapshot(row) for row in rows]

    async def transition_records(
        self,
        *,
        record_type: str,
        from_state: str,
        to_state: str,
        record_ids: Sequence[str] | None = None,
        reset_errors: bool = False,
    ) -> int:
        ensure_transition(from_state=from_state, to_state=to_state)
        table = self._table(record_type)
        wanted = set(record_ids) if record_ids is not None else None
        changed = 0
        for row in table.values():
            if row.sync_status != from_state:
                continue
            if wanted is not None and row.id not in wanted:
                continue
            row.sync_status = to_state
            row.claimed_at = None
            if reset_errors:
                row.sync_error = None
                row.retry_count = 0
            if to_state == "pending":
                row.staged_at = _now()
            changed += 1
        return changed

    async def merge_payment_metadata(
        self,
        *,
        staged_payment_id: str,
        metadata: dict[str, object],
        bank_account_code: str | None = None,
    ) -> None:
        row = self.payments.get(staged_payment_id)
        if row is None:
            raise DomainInvariantError(f"staged payment not found: {staged_payment_id}")
        row.staging_metadata = {**row.staging_metadata, **metadata}
        if bank_account_code is not None:
            row.bank_account_code = bank_account_code

    async def get_bank_account_code(self) -> str | None:
        return self.accounting_codes.get("stripe_bank_account")

    async def get_payment_status(self, *, payment_id: str) -> str | None:
        record = self.payment_records.get(payment_id)
        if record is None:
            return None
        return str(record["status"])

    async def create_payment_record(
        self,
        *,
        user_id: str,
        amount: int,
        stripe_payment_intent_id: str | None,
        stripe_charge_id: str | None = None,
    ) -> str:
        payment_id = str(uuid.uuid4())
        self.payment_records[payment_id] = {
            "id": payment_id,
            "user_id": user_id,
            "status": "completed",
            "final_amount": amount,
            "stripe_payment_intent_id": stripe_payment_intent_id,
            "stripe_charge_id": stripe_charge_id,
        }
        return payment_id

    async def claim_pending_invoices(self, *, limit: int = 50) -> list[StagedInvoice]:
        pending = sorted(
            (row for row in self.invoices.values() if row.sync_status == "pending"),
            key=lambda row: (row.staged_at, row.id),
        )[:limit]
        claimed_at = _now()
        for row in pending:
            row.sync_status = "processing"
            row.claimed_at = claimed_at
        return [self._invoice_snapshot(row) for row in pending]

    async def claim_pending_payments(self, *, limit: int = 50) -> list[StagedPayment]:
        pending = sorted(
            (row for row in self.payments.values() if row.sync_status == "pending"),
            key=lambda row: (row.staged_at, row.id),
        )[:limit]
        claimed_at = _now()
        for row in pending:
            row.sync_status = "processing"
            row.claimed_at = claimed_at
        return [self._payment_snapshot(row) for row in pending]

    async def count_by_status(self, *, record_type: str) -> StagingCounts:
        totals: dict[str, int] = {}
        for row in self._table(record_type).values():
            totals[row.sync_status] = totals.get(row.sync_status, 0) + 1
        return StagingCounts(
            pending=totals.get("pending", 0),
            failed=totals.get("failed", 0),
            staged=totals.get("staged", 0),
            planned=totals.get("planned", 0),
            processing=totals.get("processing", 0),
        )

    async def mark_invoice_synced(
        self,
        *,
        invoice_id: str,
        tenant_id: str,
        xero_invoice_id: str,
        invoice_number: str | None,
    ) -> None:
        row = self.invoices.get(invoice_id)
        if row is None or row.sync_status != "processing":
            raise DomainInvariantError("mark synced rejected by processing guard")
        row.sync_status = "synced"
        row.tenant_id = tenant_id
        row.xero_invoice_id = xero_invoice_id
        row.invoice_number = invoice_number
        row.invoice_status = "AUTHORISED"
        row.sync_error = None
        row.claimed_at = None
        row.last_synced_at = _now()

    async def mark_payment_synced(
        self,
        *,
        staged_payment_id: str,
        tenant_id: str,
        xero_payment_id: str,
    ) -> None:
        row = self.payments.get(staged_payment_id)
        if row is None or row.sync_status != "processing":
            raise DomainInvariantError("mark synced rejected by processing guard")
        row.sync_status = "synced"
        row.tenant_id = tenant_id
        row.xero_payment_id = xero_payment_id
        row.sync_error = None
        row.claimed_at = None
        row.last_synced_at = _now()

    async def record_sync_failure(
        self,
        *,
        record_type: str,
        record_id: str,
        error_code: str,
        detail: str,
        max_attempts: int = 3,
    ) -> str:
        row = self._table(record_type).get(record_id)
        if row is None or row.sync_status != "processing":
            raise DomainInvariantError("failure rejected by processing guard")
        next_status, next_retry_count = next_failure_state(
            error_code=error_code,
            retry_count=row.retry_count,
            max_attempts=max_attempts,
        )
        row.sync_status = next_status
        row.retry_count = next_retry_count
        row.sync_error = detail
        row.claimed_at = None
        row.last_synced_at = _now()
        return next_status

    async def release_stale_processing(self, *, older_than_seconds: int) -> int:
        cutoff = _now() - timedelta(seconds=older_than_seconds)
        released = 0
        for table in (self.invoices, self.payments):
            for row in table.values():
                if row.sync_status == "processing" and row.claimed_at is not None and row.claimed_at < cutoff:
                    row.sync_status = "pending"
                    row.claimed_at = None
                    released += 1
        return released

    async def get_active_tenant(self) -> XeroTenant | None:
        active = [row.tenant for row in self.tenants.values() if row.is_active]
        if not active:
            return None
        return max(active, key=lambda tenant: tenant.updated_at)

    async def update_tenant_tokens(
        self,
        *,
        tenant_id: str,
        access_token: str,
        refresh_token: str,
        expires_at: datetime,
    ) -> None:
        row = self.tenants.get(tenant_id)
        if row is None:
            return
        row.tenant = replace(
            row.tenant,
            access_token=access_token,
            refresh_token=refresh_token,
            expires_at=expires_at,
            updated_at=_now(),
        )

    async def deactivate_tenant(self, *, tenant_id: str) -> None:
        row = self.tenants.get(tenant_id)
        if row is not None:
            row.is_active = False

    async def get_user_profile(self, *, user_id: str) -> UserProfile | None:
        return self.users.get(user_id)

    async def get_contact_mapping(self, *, user_id: str, tenant_id: str) -> ContactMapping | None:
        return self.contacts.get((user_id, tenant_id))

    async def upsert_contact_mapping(
        self,
        *,
        user_id: str,
        tenant_id: str,
        xero_contact_id: str,
        contact_number: str | None = None,
    ) -> None:
        self.contacts[(user_id, tenant_id)] = ContactMapping(
            user_id=user_id,
            tenant_id=tenant_id,
            xero_contact_id=xero_contact_id,
            sync_status="synced",
            contact_number=contact_number,
        )

    async def write_sync_log(self, *, entry: SyncLogEntry) -> None:
        self.sync_logs.append(entry)

    async def list_due_installments(self, *, today: date) -> list[StagedPayment]:
        rows = [
            row
            for row in self.payments.values()
            if row.payment_type == "installment"
            and row.sync_status == "planned"
            and row.planned_payment_date is not None
            and row.planned_payment_date <= today
        ]
        rows.sort(key=lambda row: (row.planned_payment_date, row.installment_number or 0))
        return [self._payment_snapshot(row) for row in rows]

    async def record_installment_attempt(
        self,
        *,
        staged_payment_id: str,
        succeeded: bool,
        attempted_at: datetime,
        failure_reason: str | None = None,
        metadata: dict[str, object] | None = None,
    ) -> None:
        row = self.payments.get(staged_payment_id)
        if row is None or row.sync_status != "planned":
            raise DomainInvariantError(f"installment is not planned: {staged_payment_id}")
        row.attempt_count += 1
        row.last_attempt_at = attempted_at
        if succeeded:
            row.sync_status = "pending"
            row.failure_reason = None
            row.staging_metadata = {**row.staging_metadata, **(metadata or {})}
            row.staged_at = _now()
        else:
            row.failure_reason = failure_reason

    def _table(self, record_type: str) -> dict[str, _InvoiceRow] | dict[str, _PaymentRow]:
        if record_type == "invoice":
            return self.invoices
        if record_type == "payment":
            return self.payments
        raise ValueError(f"unknown staging record type: {record_type}")

    def _invoice_snapshot(self, row: _InvoiceRow) -> StagedInvoice:
        return StagedInvoice(
            id=row.id,
            payment_id=row.payment_id,
            invoice_type=row.invoice_type,
            invoice_status=row.invoice_status,
            total_amount=row.total_amount,
            discount_amount=row.discount_amount,
            net_amount=row.net_amount,
            sync_status=row.sync_status,
            staging_metadata=dict(row.staging_metadata),
            line_items=row.line_items,
            is_payment_plan=row.is_payment_plan,
            xero_invoice_id=row.xero_invoice_id,
            invoice_number=row.invoice_number,
            tenant_id=row.tenant_id,
            sync_error=row.sync_error,
            retry_count=row.retry_count,
            created_at=row.created_at,
            staged_at=row.staged_at,
            last_synced_at=row.last_synced_at,
        )

    def _payment_snapshot(self, row: _PaymentRow) -> StagedPayment:
        invoice = self.invoices.get(row.invoice_id)
        return StagedPayment(
            id=row.id,
            invoice_id=row.invoice_id,
            amount_paid=row.amount_paid,
            sync_status=row.sync_status,
            staging_metadata=dict(row.staging_metadata),
            payment_method=row.payment_method,
            bank_account_code=row.bank_account_code,
            reference=row.reference,
            stripe_fee_amount=row.stripe_fee_amount,
            payment_type=row.payment_type,
            installment_number=row.installment_number,
            planned_payment_date=row.planned_payment_date,
            attempt_count=row.attempt_count,
            max_attempts=row.max_attempts,
            last_attempt_at=row.last_attempt_at,
            failure_reason=row.failure_reason,
            invoice_xero_id=invoice.xero_invoice_id if invoice is not None else None,
            invoice_number=invoice.invoice_number if invoice is not None else None,
            xero_payment_id=row.xero_payment_id,
            tenant_id=row.tenant_id,
            sync_error=row.sync_error,
            retry_count=row.retry_count,
            created_at=row.created_at,
            staged_at=row.staged_at,
            last_synced_at=row.last_synced_at,
        )
