from __future__ import annotations

from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from datetime import UTC, date, datetime, timedelta
import logging

from xerosync.domain.contracts import PaymentProcessor, StagingRepository
from xerosync.domain.dto import InstallmentSchedule, PaymentPlanStagingResult, PurchaseStagingCommand
from xerosync.domain.errors import DomainValidationError, PaymentProcessorError
from xerosync.domain.models import InstallmentRunResult, InvoiceType, PaymentType, StagedPayment, SyncStatus
from xerosync.domain.sync_policy import InstallmentPolicy, SyncPolicy
from xerosync.services.staging import purchase_line_items, purchase_metadata, validate_purchase

MIN_INSTALLMENTS = 2

logger = logging.getLogger("xero.staging")


def _utcnow() -> datetime:
    return datetime.now(tz=UTC)


def validate_installments(installments: Sequence[InstallmentSchedule], *, net_amount: int) -> None:
    if len(installments) < MIN_INSTALLMENTS:
        raise DomainValidationError(f"a payment plan needs at least {MIN_INSTALLMENTS} installments")
    numbers = [installment.installment_number for installment in installments]
    if numbers != list(range(1, len(installments) + 1)):
        raise DomainValidationError("installments must be numbered 1..n in order")
    if any(installment.amount <= 0 for installment in installments):
        raise DomainValidationError("installment amounts must be positive cents")
    if sum(installment.amount for installment in installments) != net_amount:
        raise DomainValidationError("installment amounts must sum to the invoice net amount")


def is_installment_eligible(payment: StagedPayment, *, now: datetime, policy: InstallmentPolicy) -> bool:
    if payment.attempt_count == 0:
        return True
    if payment.attempt_count >= payment.max_attempts:
        return False
    if payment.last_attempt_at is None:
        return True
    return now - payment.last_attempt_at >= timedelta(hours=policy.retry_interval_hours)


@dataclass
class PaymentPlanService:
    repository: StagingRepository
    processor: PaymentProcessor
    policy: SyncPolicy
    clock: Callable[[], datetime] = field(default=_utcnow)

    async def create_payment_plan_staging(
        self,
        purchase: PurchaseStagingCommand,
        installments: Sequence[InstallmentSchedule],
    ) -> PaymentPlanStagingResult:
        validate_purchase(purchase)
        validate_installments(installments, net_amount=purchase.final_amount)

        metadata = purchase_metadata(purchase)
        metadata["installment_count"] = len(installments)
        invoice_id = await self.repository.create_invoice_staging(
            payment_id=purchase.payment_id,
            invoice_type=InvoiceType.INVOICE,
            invoice_status="DRAFT",
            total_amount=purchase.total_amount,
            discount_amount=purchase.discount_amount,
            net_amount=purchase.final_amount,
            sync_status=SyncStatus.STAGED,
            staging_metadata=metadata,
            line_items=purchase_line_items(purchase, policy=self.policy),
            is_payment_plan=True,
        )

        bank_account_code = await self.repository.get_bank_account_code()
        plan_created_at = self.clock().isoformat()
        payment_ids: list[str] = []
        for installment in installments:
            # The first installment is charged at checkout; later ones wait for their date.
            first = installment.installment_number == 1
            payment_ids.append(
                await self.repository.create_payment_staging(
                    invoice_id=invoice_id,
                    amount_paid=installment.amount,
                    sync_status=SyncStatus.STAGED if first else SyncStatus.PLANNED,
                    staging_metadata={
                        "payment_id": purchase.payment_id if first else None,
                        "stripe_payment_intent_id": purchase.stripe_payment_intent_id if first else None,
                        "user_id": purchase.user_id,
                        "payment_plan_created_at": plan_created_at,
                    },
                    bank_account_code=bank_account_code,
                    payment_type=PaymentType.INSTALLMENT,
                    installment_number=installment.installment_number,
                    planned_payment_date=installment.planned_payment_date,
                    max_attempts=self.policy.installments.max_attempts,
                )
            )

        logger.info(
            "payment plan staged",
            extra={"record_id": invoice_id, "record_type": "invoice", "operation": "create_payment_plan_staging"},
        )
        return PaymentPlanStagingResult(invoice_id=invoice_id, payment_ids=tuple(payment_ids))

    async def process_due_installments(self, *, today: date) -> InstallmentRunResult:
        result = InstallmentRunResult()
        due = await self.repository.list_due_installments(today=today)
        result.payments_found = len(due)
        if not due:
            return result

        now = self.clock()
        eligible = [
            payment
            for payment in due
            if is_installment_eligible(payment, now=now, policy=self.policy.installments)
        ]
        logger.info(
            "due installments selected",
            extra={"operation": "process_due_installments", "run_id": today.isoformat()},
        )

        for payment in eligible:
            if payment.attempt_count > 0:
                result.retries_attempted += 1
            failure = await self._charge(payment, attempted_at=self.clock())
            if failure is None:
                result.payments_processed += 1
            else:
                result.payments_failed += 1
                result.errors.append(f"Payment {payment.id}: {failure}")
        return result

    async def _charge(self, payment: StagedPayment, *, attempted_at: datetime) -> str | None:
        """Charge one installment and record the attempt. Returns the failure reason, if any."""
        invoice = await self.repository.get_invoice(invoice_id=payment.invoice_id)
        user_id = invoice.user_id if invoice is not None else None
        user = await self.repository.get_user_profile(user_id=user_id) if user_id else None
        if user is None or user_id is None:
            return await self._record_failure(payment, attempted_at=attempted_at, reason="User not found")
        if not user.stripe_customer_id or not user.stripe_payment_method_id:
            return await self._record_failure(payment, attempted_at=attempted_at, reason="No saved payment method")

        attempt = payment.attempt_count + 1
        try:
            charge = await self.processor.charge_installment(
                amount=payment.amount_paid,
                customer_id=user.stripe_customer_id,
                payment_method_id=user.stripe_payment_method_id,
                idempotency_key=f"{payment.id}-attempt-{attempt}",
                metadata={
                    "user_id": user_id,
                    "xero_invoice_id": payment.invoice_id,
                    "xero_payment_id": payment.id,
                    "installment_number": str(payment.installment_number or 0),
                    "purpose": "payment_plan_installment",
                },
            )
        except PaymentProcessorError as exc:
            return await self._record_failure(payment, attempted_at=attempted_at, reason=str(exc))

        if not charge.succeeded:
            return await self._record_failure(
                payment,
                attempted_at=attempted_at,
                reason=charge.failure_reason or "Payment declined",
            )

        payment_id = await self.repository.create_payment_record(
            user_id=user_id,
            amount=payment.amount_paid,
            stripe_payment_intent_id=charge.payment_intent_id,
            stripe_charge_id=charge.charge_id,
        )
        await self.repository.record_installment_attempt(
            staged_payment_id=payment.id,
            succeeded=True,
            attempted_at=attempted_at,
            metadata={
                "payment_id": payment_id,
                "processed_at": attempted_at.isoformat(),
                "stripe_payment_intent_id": charge.payment_intent_id,
                "stripe_charge_id": charge.charge_id,
            },
        )
        logger.info(
            "installment charged",
            extra={"record_id": payment.id, "record_type": "payment", "operation": "process_due_installments"},
        )
        return None

    async def _record_failure(self, payment: StagedPayment, *, attempted_at: datetime, reason: str) -> str:
        await self.repository.record_installment_attempt(
            staged_payment_id=payment.id,
            succeeded=False,
            attempted_at=attempted_at,
            failure_reason=reason,
        )
        logger.warning(
            "installment charge failed: %s",
            reason,
            extra={"record_id": payment.id, "record_type": "payment", "operation": "process_due_installments"},
        )
        return reason
