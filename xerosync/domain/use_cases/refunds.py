from __future__ import annotations

from collections.abc import Sequence

from xerosync.domain.dto import RefundLine, RefundPreview, RefundRequest
from xerosync.domain.errors import DomainValidationError
from xerosync.domain.models import LineItem, LineItemType
from xerosync.domain.money import allocate_proportionally
from xerosync.domain.sync_policy import InvoicePolicy


def validate_refund_request(refund: RefundRequest) -> None:
    if refund.refund_type == "proportional":
        if refund.amount is None or refund.amount <= 0:
            raise DomainValidationError("proportional refund requires a positive amount in cents")
        return
    if refund.refund_type == "discount_code":
        if not refund.discount_code:
            raise DomainValidationError("discount_code refund requires discount_code")
        if refund.discount_amount is None or refund.discount_amount <= 0:
            raise DomainValidationError("discount_code refund requires a positive discount_amount in cents")
        return
    raise DomainValidationError(f"unsupported refund type: {refund.refund_type}")


def proportional_refund_lines(original_items: Sequence[LineItem], *, amount: int) -> list[RefundLine]:
    """Spread a refund across the original invoice lines by their share of the invoice total.

    Each credit line keeps the sign of its source line, and any rounding
    remainder lands on the first line so the lines sum to exactly `amount`.
    """
    try:
        shares = allocate_proportionally(amount, [item.line_amount for item in original_items])
    except ValueError as exc:
        raise DomainValidationError("original invoice lines sum to zero; cannot allocate refund") from exc

    return [
        RefundLine(
            description=f"Credit: {item.description}",
            line_amount=share,
            account_code=item.account_code or "",
            tax_type=item.tax_type,
            line_item_type=item.line_item_type,
        )
        for item, share in zip(original_items, shares, strict=True)
    ]


def fallback_refund_line(*, amount: int, policy: InvoicePolicy) -> RefundLine:
    return RefundLine(
        description="Refund",
        line_amount=amount,
        account_code=policy.default_revenue_account_code,
        tax_type=policy.default_tax_type,
    )


def discount_refund_line(refund: RefundRequest, *, policy: InvoicePolicy) -> RefundLine:
    category = refund.discount_category_name or "Discount"
    return RefundLine(
        description=f"Credit: {category} discount ({refund.discount_code})",
        line_amount=refund.discount_amount or 0,
        account_code=refund.discount_accounting_code or policy.discount_account_code,
        tax_type=policy.default_tax_type,
        line_item_type=LineItemType.DISCOUNT,
    )


def build_refund_preview(
    refund: RefundRequest,
    *,
    original_items: Sequence[LineItem],
    policy: InvoicePolicy,
    allow_fallback: bool,
) -> RefundPreview:
    validate_refund_request(refund)
    if refund.refund_type == "discount_code":
        lines = [discount_refund_line(refund, policy=policy)]
    elif original_items:
        lines = proportional_refund_lines(original_items, amount=refund.amount or 0)
    elif allow_fallback:
        lines = [fallback_refund_line(amount=refund.amount or 0, policy=policy)]
    else:
        raise DomainValidationError("original invoice has no line items to allocate the refund across")

    return RefundPreview(line_items=tuple(lines), total_amount=sum(line.line_amount for line in lines))
