from __future__ import annotations

from datetime import date, datetime
from typing import Annotated, Literal

from pydantic import BaseModel, Field, model_validator

STAGING_ID_PATTERN = r"^(inv|pay)_[0-9A-HJKMNP-TV-Z]{26}$"

StagingId = Annotated[str, Field(pattern=STAGING_ID_PATTERN)]


class ErrorResponse(BaseModel):
    detail: str


class WorkerMetrics(BaseModel):
    started: bool
    stopped: bool
    ticks_total: int
    busy_ticks_total: int
    idle_ticks_total: int
    errors_total: int
    released_total: int


class HealthResponse(BaseModel):
    status: str
    role: str


class ReadyResponse(BaseModel):
    status: str
    role: str
    worker_loop_enabled: bool
    worker_loop_ready: bool
    worker_metrics: WorkerMetrics


class SyncCountsModel(BaseModel):
    synced: int = 0
    failed: int = 0


class SyncResultsModel(BaseModel):
    invoices: SyncCountsModel
    payments: SyncCountsModel
    total_synced: int = 0
    total_failed: int = 0


class CronSyncResponse(BaseModel):
    success: bool
    message: str | None = None
    results: SyncResultsModel | None = None
    pending_count: int
    timestamp: datetime


class CronFailureResponse(BaseModel):
    success: Literal[False] = False
    error: str
    timestamp: datetime


class PaymentPlansRunResponse(BaseModel):
    success: bool
    payments_found: int
    payments_processed: int
    payments_failed: int
    retries_attempted: int
    errors: list[str]
    timestamp: datetime


class FailedItemsRequest(BaseModel):
    type: Literal["all", "selected"]
    item_ids: list[StagingId] | None = Field(default=None, max_length=500)

    @model_validator(mode="after")
    def _selected_requires_ids(self) -> FailedItemsRequest:
        if self.type == "selected" and not self.item_ids:
            raise ValueError("item_ids are required when type is 'selected'")
        return self


class RecordCountsModel(BaseModel):
    invoices: int
    payments: int
    total: int


class RetryFailedResponse(BaseModel):
    success: bool
    message: str
    reset_counts: RecordCountsModel
    sync_results: SyncResultsModel


class IgnoreFailedResponse(BaseModel):
    success: bool
    message: str
    ignored_counts: RecordCountsModel


class ManualSyncResponse(BaseModel):
    success: bool
    results: SyncResultsModel
    timestamp: datetime


class SyncManagerStatusModel(BaseModel):
    is_running: bool
    last_run_time: datetime | None
    has_current_run: bool
    time_until_next_sync_ms: int
    min_delay_between_syncs_ms: int


class QueueCountsModel(BaseModel):
    pending: int
    failed: int
    staged: int
    planned: int
    processing: int


class TenantModel(BaseModel):
    tenant_id: str
    tenant_name: str


class SyncStatusResponse(BaseModel):
    sync_manager: SyncManagerStatusModel
    invoices: QueueCountsModel
    payments: QueueCountsModel
    tenant: TenantModel | None


class PaymentItemModel(BaseModel):
    item_type: Literal["membership", "registration", "discount", "donation"]
    amount: int
    description: str = Field(default="", max_length=512)
    accounting_code: str | None = Field(default=None, max_length=64)
    item_id: str | None = None


class DiscountUsageModel(BaseModel):
    code: str = Field(min_length=1, max_length=128)
    amount_saved: int = Field(ge=0)
    category_name: str = Field(min_length=1, max_length=256)
    accounting_code: str | None = Field(default=None, max_length=64)
    discount_code_id: str | None = None


class PurchaseModel(BaseModel):
    user_id: str = Field(min_length=1)
    total_amount: int = Field(ge=0)
    discount_amount: int = Field(default=0, ge=0)
    final_amount: int = Field(ge=0)
    payment_items: list[PaymentItemModel] = Field(min_length=1)
    discount_codes_used: list[DiscountUsageModel] = Field(default_factory=list)
    payment_id: str | None = None
    stripe_payment_intent_id: str | None = None


class CreatePurchaseStagingRequest(PurchaseModel):
    is_free: bool = False


class StagingCreatedResponse(BaseModel):
    invoice_id: str


class ExistingStagingResponse(BaseModel):
    payment_id: str
    invoice_id: str | None
    sync_status: str | None


class CompletePurchaseRequest(BaseModel):
    stripe_payment_intent_id: str | None = None
    stripe_charge_id: str | None = None


class PromotedResponse(BaseModel):
    payment_id: str
    promoted: int


class AbandonedResponse(BaseModel):
    payment_id: str
    abandoned: int


class RefundModel(BaseModel):
    refund_type: Literal["proportional", "discount_code"]
    amount: int | None = Field(default=None, gt=0)
    discount_code: str | None = None
    discount_amount: int | None = Field(default=None, gt=0)
    discount_accounting_code: str | None = None
    discount_category_name: str | None = None


class RefundPreviewRequest(BaseModel):
    payment_id: str = Field(min_length=1)
    refund: RefundModel


class RefundLineModel(BaseModel):
    description: str
    line_amount: int
    account_code: str
    tax_type: str
    line_item_type: str


class RefundPreviewResponse(BaseModel):
    line_items: list[RefundLineModel]
    total_amount: int


class CreateRefundStagingRequest(BaseModel):
    refund_id: str = Field(min_length=1)
    payment_id: str = Field(min_length=1)
    refund: RefundModel


class RefundStagedResponse(BaseModel):
    credit_note_id: str


class RefundCompletedResponse(BaseModel):
    refund_id: str
    promoted: bool


class InstallmentModel(BaseModel):
    installment_number: int = Field(ge=1)
    amount: int = Field(gt=0)
    planned_payment_date: date


class CreatePaymentPlanRequest(BaseModel):
    purchase: PurchaseModel
    installments: list[InstallmentModel] = Field(min_length=2)


class PaymentPlanStagedResponse(BaseModel):
    invoice_id: str
    payment_ids: list[str]
