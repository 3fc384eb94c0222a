from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from enum import StrEnum

from xerosync.domain.error_taxonomy import ErrorCode


class SyncStatus(StrEnum):
    STAGED = "staged"
    PLANNED = "planned"
    PENDING = "pending"
    PROCESSING = "processing"
    SYNCED = "synced"
    FAILED = "failed"
    IGNORE = "ignore"


class InvoiceType(StrEnum):
    INVOICE = "ACCREC"
    CREDIT_NOTE = "ACCRECCREDIT"


class LineItemType(StrEnum):
    MEMBERSHIP = "membership"
    REGISTRATION = "registration"
    DISCOUNT = "discount"
    DONATION = "donation"
    REFUND = "refund"


class PaymentType(StrEnum):
    FULL = "full"
    INSTALLMENT = "installment"


@dataclass(frozen=True)
class LineItem:
    description: str
    line_amount: int
    line_item_type: str
    account_code: str | None = None
    tax_type: str = "NONE"
    quantity: int = 1
    item_id: str | None = None

    @property
    def unit_amount(self) -> int:
        return self.line_amount // max(self.quantity, 1)


@dataclass(frozen=True)
class StagedInvoice:
    id: str
    payment_id: str | None
    invoice_type: str
    invoice_status: str
    total_amount: int
    discount_amount: int
    net_amount: int
    sync_status: str
    staging_metadata: dict[str, object]
    line_items: tuple[LineItem, ...] = ()
    is_payment_plan: bool = False
    xero_invoice_id: str | None = None
    invoice_number: str | None = None
    tenant_id: str | None = None
    sync_error: str | None = None
    retry_count: int = 0
    created_at: datetime | None = None
    staged_at: datetime | None = None
    last_synced_at: datetime | None = None

    @property
    def is_credit_note(self) -> bool:
        return self.invoice_type == InvoiceType.CREDIT_NOTE

    @property
    def user_id(self) -> str | None:
        value = self.staging_metadata.get("user_id")
        return str(value) if value else None


@dataclass(frozen=True)
class StagedPayment:
    id: str
    invoice_id: str
    amount_paid: int
    sync_status: str
    staging_metadata: dict[str, object]
    payment_method: str = "stripe"
    bank_account_code: str | None = None
    reference: str | None = None
    stripe_fee_amount: int = 0
    payment_type: str = PaymentType.FULL
    installment_number: int | None = None
    planned_payment_date: date | None = None
    attempt_count: int = 0
    max_attempts: int = 3
    last_attempt_at: datetime | None = None
    failure_reason: str | None = None
    invoice_xero_id: str | None = None
    invoice_number: str | None = None
    xero_payment_id: str | None = None
    tenant_id: str | None = None
    sync_error: str | None = None
    retry_count: int = 0
    created_at: datetime | None = None
    staged_at: datetime | None = None
    last_synced_at: datetime | None = None


@dataclass(frozen=True)
class XeroTenant:
    tenant_id: str
    tenant_name: str
    access_token: str
    refresh_token: str
    expires_at: datetime
    updated_at: datetime
    scope: str = ""
    token_type: str = "Bearer"


@dataclass(frozen=True)
class UserProfile:
    user_id: str
    email: str
    first_name: str
    last_name: str
    member_id: str | None = None
    stripe_customer_id: str | None = None
    stripe_payment_method_id: str | None = None


@dataclass(frozen=True)
class ContactMapping:
    user_id: str
    tenant_id: str
    xero_contact_id: str
    sync_status: str
    contact_number: str | None = None


@dataclass(frozen=True)
class SyncLogEntry:
    operation_type: str
    status: str
    tenant_id: str | None = None
    record_id: str | None = None
    xero_id: str | None = None
    request_data: dict[str, object] | None = None
    response_data: dict[str, object] | None = None
    error_message: str | None = None
    error_code: ErrorCode | None = None


@dataclass
class SyncCounts:
    synced: int = 0
    failed: int = 0


@dataclass
class SyncResults:
    invoices: SyncCounts = field(default_factory=SyncCounts)
    payments: SyncCounts = field(default_factory=SyncCounts)

    @property
    def total_synced(self) -> int:
        return self.invoices.synced + self.payments.synced

    @property
    def total_failed(self) -> int:
        return self.invoices.failed + self.payments.failed

    def as_dict(self) -> dict[str, dict[str, int]]:
        return {
            "invoices": {"synced": self.invoices.synced, "failed": self.invoices.failed},
            "payments": {"synced": self.payments.synced, "failed": self.payments.failed},
        }


@dataclass(frozen=True)
class SyncRunStatus:
    is_running: bool
    last_run_time: datetime | None
    has_current_run: bool
    time_until_next_sync_ms: int
    min_delay_between_syncs_ms: int


@dataclass(frozen=True)
class ResetCounts:
    invoices: int = 0
    payments: int = 0

    @property
    def total(self) -> int:
        return self.invoices + self.payments


@dataclass(frozen=True)
class StagingCounts:
    pending: int = 0
    failed: int = 0
    staged: int = 0
    planned: int = 0
    processing: int = 0


@dataclass
class InstallmentRunResult:
    payments_found: int = 0
    payments_processed: int = 0
    payments_failed: int = 0
    retries_attempted: int = 0
    errors: list[str] = field(default_factory=list)
