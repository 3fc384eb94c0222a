from __future__ import annotations

from dataclasses import asdict, dataclass
from datetime import UTC, datetime
import logging

from xerosync.domain.contracts import StagingRepository
from xerosync.domain.dto import PaymentCompletion, PurchaseStagingCommand
from xerosync.domain.errors import DomainValidationError
from xerosync.domain.models import InvoiceType, LineItem, PaymentType, StagedInvoice, SyncStatus
from xerosync.domain.sync_policy import SyncPolicy

logger = logging.getLogger("xero.staging")


def _now_iso() -> str:
    return datetime.now(tz=UTC).isoformat()


def validate_purchase(purchase: PurchaseStagingCommand) -> None:
    if not purchase.user_id:
        raise DomainValidationError("user_id is required")
    if not purchase.payment_items:
        raise DomainValidationError("at least one payment item is required")
    if purchase.total_amount < 0 or purchase.discount_amount < 0 or purchase.final_amount < 0:
        raise DomainValidationError("amounts must be non-negative cents")
    if purchase.final_amount != purchase.total_amount - purchase.discount_amount:
        raise DomainValidationError("final_amount must equal total_amount - discount_amount")


def purchase_line_items(purchase: PurchaseStagingCommand, *, policy: SyncPolicy) -> list[LineItem]:
    return [
        LineItem(
            description=item.description or f"{item.item_type} purchase",
            line_amount=item.amount,
            line_item_type=item.item_type,
            account_code=item.accounting_code or policy.invoices.default_revenue_account_code,
            tax_type=policy.invoices.default_tax_type,
            item_id=item.item_id,
        )
        for item in purchase.payment_items
    ]


def purchase_metadata(purchase: PurchaseStagingCommand) -> dict[str, object]:
    return {
        "user_id": purchase.user_id,
        "payment_items": [asdict(item) for item in purchase.payment_items],
        "discount_codes_used": [asdict(usage) for usage in purchase.discount_codes_used],
        "stripe_payment_intent_id": purchase.stripe_payment_intent_id,
        "created_at": _now_iso(),
    }


@dataclass
class StagingWriter:
    """Writes purchase events into the xero_invoices / xero_payments staging tables."""

    repository: StagingRepository
    policy: SyncPolicy

    async def create_immediate_staging(self, purchase: PurchaseStagingCommand, *, is_free: bool) -> str:
        validate_purchase(purchase)
        invoice_id = await self.repository.create_invoice_staging(
            payment_id=purchase.payment_id,
            invoice_type=InvoiceType.INVOICE,
            invoice_status="AUTHORISED" if is_free else "DRAFT",
            total_amount=purchase.total_amount,
            discount_amount=purchase.discount_amount,
            net_amount=purchase.final_amount,
            sync_status=SyncStatus.STAGED,
            staging_metadata=purchase_metadata(purchase),
            line_items=purchase_line_items(purchase, policy=self.policy),
        )

        if purchase.final_amount > 0:
            await self.repository.create_payment_staging(
                invoice_id=invoice_id,
                amount_paid=purchase.final_amount,
                sync_status=SyncStatus.STAGED,
                staging_metadata={
                    "payment_id": purchase.payment_id,
                    "stripe_payment_intent_id": purchase.stripe_payment_intent_id,
                    "created_at": _now_iso(),
                },
                bank_account_code=await self.repository.get_bank_account_code(),
                payment_type=PaymentType.FULL,
            )

        if is_free:
            # Nothing to confirm with Stripe, so the invoice is ready for sync right away.
            await self.repository.transition_records(
                record_type="invoice",
                from_state=SyncStatus.STAGED,
                to_state=SyncStatus.PENDING,
                record_ids=[invoice_id],
            )

        logger.info(
            "purchase staged",
            extra={"record_id": invoice_id, "record_type": "invoice", "operation": "create_immediate_staging"},
        )
        return invoice_id

    async def create_paid_purchase_staging(self, *, payment_id: str) -> StagedInvoice | None:
        existing = await self.repository.find_invoice_by_payment_id(payment_id=payment_id)
        if existing is not None:
            logger.info(
                "purchase already staged",
                extra={"record_id": existing.id, "record_type": "invoice", "operation": "create_paid_purchase_staging"},
            )
        return existing

    async def complete_staged_purchase(self, completion: PaymentCompletion) -> int:
        invoice = await self.repository.find_invoice_by_payment_id(
            payment_id=completion.payment_id,
            sync_status=SyncStatus.STAGED,
        )
        if invoice is None:
            logger.warning(
                "no staged invoice for completed payment",
                extra={"operation": "complete_staged_purchase", "record_id": completion.payment_id},
            )
            return 0

        promoted = await self.repository.transition_records(
            record_type="invoice",
            from_state=SyncStatus.STAGED,
            to_state=SyncStatus.PENDING,
            record_ids=[invoice.id],
        )

        bank_account_code = await self.repository.get_bank_account_code()
        staged_payments = [
            payment
            for payment in await self.repository.list_payments_for_invoice(invoice_id=invoice.id)
            if payment.sync_status == SyncStatus.STAGED
        ]
        for payment in staged_payments:
            await self.repository.merge_payment_metadata(
                staged_payment_id=payment.id,
                metadata={
                    "payment_id": completion.payment_id,
                    "stripe_payment_intent_id": completion.stripe_payment_intent_id,
                    "stripe_charge_id": completion.stripe_charge_id,
                },
                bank_account_code=bank_account_code,
            )
        if staged_payments:
            promoted += await self.repository.transition_records(
                record_type="payment",
                from_state=SyncStatus.STAGED,
                to_state=SyncStatus.PENDING,
                record_ids=[payment.id for payment in staged_payments],
            )

        logger.info(
            "staged purchase completed",
            extra={"record_id": invoice.id, "record_type": "invoice", "operation": "complete_staged_purchase"},
        )
        return promoted

    async def abandon_staged_purchase(self, *, payment_id: str) -> int:
        invoice = await self.repository.find_invoice_by_payment_id(
            payment_id=payment_id,
            sync_status=SyncStatus.STAGED,
        )
        if invoice is None:
            return 0

        abandoned = await self.repository.transition_records(
            record_type="invoice",
            from_state=SyncStatus.STAGED,
            to_state=SyncStatus.IGNORE,
            record_ids=[invoice.id],
        )
        payment_ids = [
            payment.id
            for payment in await self.repository.list_payments_for_invoice(invoice_id=invoice.id)
            if payment.sync_status == SyncStatus.STAGED
        ]
        if payment_ids:
            abandoned += await self.repository.transition_records(
                record_type="payment",
                from_state=SyncStatus.STAGED,
                to_state=SyncStatus.IGNORE,
                record_ids=payment_ids,
            )

        logger.info(
            "staged purchase abandoned",
            extra={"record_id": invoice.id, "record_type": "invoice", "operation": "abandon_staged_purchase"},
        )
        return abandoned
