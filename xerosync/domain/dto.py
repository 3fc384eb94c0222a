from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from typing import Literal

from xerosync.domain.models import LineItemType

RefundType = Literal["proportional", "discount_code"]


@dataclass(frozen=True)
class PaymentItem:
    item_type: str
    amount: int
    description: str
    accounting_code: str | None = None
    item_id: str | None = None


@dataclass(frozen=True)
class DiscountUsage:
    code: str
    amount_saved: int
    category_name: str
    accounting_code: str | None = None
    discount_code_id: str | None = None


@dataclass(frozen=True)
class PurchaseStagingCommand:
    user_id: str
    total_amount: int
    discount_amount: int
    final_amount: int
    payment_items: tuple[PaymentItem, ...]
    discount_codes_used: tuple[DiscountUsage, ...] = ()
    payment_id: str | None = None
    stripe_payment_intent_id: str | None = None


@dataclass(frozen=True)
class PaymentCompletion:
    payment_id: str
    stripe_payment_intent_id: str | None = None
    stripe_charge_id: str | None = None


@dataclass(frozen=True)
class RefundRequest:
    refund_type: RefundType
    amount: int | None = None
    discount_code: str | None = None
    discount_amount: int | None = None
    discount_accounting_code: str | None = None
    discount_category_name: str | None = None


@dataclass(frozen=True)
class RefundLine:
    description: str
    line_amount: int
    account_code: str
    tax_type: str = "NONE"
    line_item_type: str = LineItemType.REFUND


@dataclass(frozen=True)
class RefundPreview:
    line_items: tuple[RefundLine, ...]
    total_amount: int


@dataclass(frozen=True)
class InstallmentSchedule:
    installment_number: int
    amount: int
    planned_payment_date: date


@dataclass(frozen=True)
class PaymentPlanStagingResult:
    invoice_id: str
    payment_ids: tuple[str, ...]


@dataclass(frozen=True)
class ChargeResult:
    succeeded: bool
    payment_intent_id: str | None = None
    charge_id: str | None = None
    failure_reason: str | None = None
