from __future__ import annotations

from xerosync.api.handlers.deps import ApiDeps
from xerosync.api.schemas import (
    AbandonedResponse,
    CompletePurchaseRequest,
    CreatePaymentPlanRequest,
    CreatePurchaseStagingRequest,
    CreateRefundStagingRequest,
    ExistingStagingResponse,
    PaymentPlanStagedResponse,
    PromotedResponse,
    PurchaseModel,
    RefundCompletedResponse,
    RefundLineModel,
    RefundModel,
    RefundPreviewRequest,
    RefundPreviewResponse,
    RefundStagedResponse,
    StagingCreatedResponse,
)
from xerosync.domain.dto import (
    DiscountUsage,
    InstallmentSchedule,
    PaymentCompletion,
    PaymentItem,
    PurchaseStagingCommand,
    RefundRequest,
)


def purchase_command(model: PurchaseModel) -> PurchaseStagingCommand:
    return PurchaseStagingCommand(
        user_id=model.user_id,
        total_amount=model.total_amount,
        discount_amount=model.discount_amount,
        final_amount=model.final_amount,
        payment_items=tuple(
            PaymentItem(
                item_type=item.item_type,
                amount=item.amount,
                description=item.description,
                accounting_code=item.accounting_code,
                item_id=item.item_id,
            )
            for item in model.payment_items
        ),
        discount_codes_used=tuple(
            DiscountUsage(
                code=usage.code,
                amount_saved=usage.amount_saved,
                category_name=usage.category_name,
                accounting_code=usage.accounting_code,
                discount_code_id=usage.discount_code_id,
            )
            for usage in model.discount_codes_used
        ),
        payment_id=model.payment_id,
        stripe_payment_intent_id=model.stripe_payment_intent_id,
    )


def refund_request(model: RefundModel) -> RefundRequest:
    return RefundRequest(
        refund_type=model.refund_type,
        amount=model.amount,
        discount_code=model.discount_code,
        discount_amount=model.discount_amount,
        discount_accounting_code=model.discount_accounting_code,
        discount_category_name=model.discount_category_name,
    )


async def create_purchase_staging_handler(
    deps: ApiDeps,
    *,
    request: CreatePurchaseStagingRequest,
) -> StagingCreatedResponse:
    invoice_id = await deps.staging.create_immediate_staging(purchase_command(request), is_free=request.is_free)
    return StagingCreatedResponse(invoice_id=invoice_id)


async def get_purchase_staging_handler(deps: ApiDeps, *, payment_id: str) -> ExistingStagingResponse:
    existing = await deps.staging.create_paid_purchase_staging(payment_id=payment_id)
    return ExistingStagingResponse(
        payment_id=payment_id,
        invoice_id=existing.id if existing is not None else None,
        sync_status=existing.sync_status if existing is not None else None,
    )


async def complete_purchase_handler(
    deps: ApiDeps,
    *,
    payment_id: str,
    request: CompletePurchaseRequest,
) -> PromotedResponse:
    promoted = await deps.staging.complete_staged_purchase(
        PaymentCompletion(
            payment_id=payment_id,
            stripe_payment_intent_id=request.stripe_payment_intent_id,
            stripe_charge_id=request.stripe_charge_id,
        )
    )
    return PromotedResponse(payment_id=payment_id, promoted=promoted)


async def abandon_purchase_handler(deps: ApiDeps, *, payment_id: str) -> AbandonedResponse:
    abandoned = await deps.staging.abandon_staged_purchase(payment_id=payment_id)
    return AbandonedResponse(payment_id=payment_id, abandoned=abandoned)


async def preview_refund_handler(deps: ApiDeps, *, request: RefundPreviewRequest) -> RefundPreviewResponse:
    preview = await deps.refunds.preview_refund_staging(
        payment_id=request.payment_id,
        refund=refund_request(request.refund),
    )
    return RefundPreviewResponse(
        line_items=[
            RefundLineModel(
                description=line.description,
                line_amount=line.line_amount,
                account_code=line.account_code,
                tax_type=line.tax_type,
                line_item_type=line.line_item_type,
            )
            for line in preview.line_items
        ],
        total_amount=preview.total_amount,
    )


async def create_refund_handler(deps: ApiDeps, *, request: CreateRefundStagingRequest) -> RefundStagedResponse:
    credit_note_id = await deps.refunds.create_refund_staging(
        refund_id=request.refund_id,
        payment_id=request.payment_id,
        refund=refund_request(request.refund),
    )
    return RefundStagedResponse(credit_note_id=credit_note_id)


async def complete_refund_handler(deps: ApiDeps, *, refund_id: str) -> RefundCompletedResponse:
    promoted = await deps.refunds.complete_refund_staging(refund_id=refund_id)
    return RefundCompletedResponse(refund_id=refund_id, promoted=promoted)


async def create_payment_plan_handler(
    deps: ApiDeps,
    *,
    request: CreatePaymentPlanRequest,
) -> PaymentPlanStagedResponse:
    staged = await deps.payment_plans.create_payment_plan_staging(
        purchase_command(request.purchase),
        [
            InstallmentSchedule(
                installment_number=installment.installment_number,
                amount=installment.amount,
                planned_payment_date=installment.planned_payment_date,
            )
            for installment in request.installments
        ],
    )
    return PaymentPlanStagedResponse(invoice_id=staged.invoice_id, payment_ids=list(staged.payment_ids))
