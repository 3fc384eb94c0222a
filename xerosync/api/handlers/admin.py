from __future__ import annotations

from xerosync.api.handlers.deps import ApiDeps
from xerosync.api.handlers.sync_results import sync_results_model
from xerosync.api.schemas import (
    FailedItemsRequest,
    IgnoreFailedResponse,
    ManualSyncResponse,
    QueueCountsModel,
    RecordCountsModel,
    RetryFailedResponse,
    SyncManagerStatusModel,
    SyncStatusResponse,
    TenantModel,
)
from xerosync.domain.models import ResetCounts, StagingCounts


def _record_counts(counts: ResetCounts) -> RecordCountsModel:
    return RecordCountsModel(invoices=counts.invoices, payments=counts.payments, total=counts.total)


def _queue_counts(counts: StagingCounts) -> QueueCountsModel:
    return QueueCountsModel(
        pending=counts.pending,
        failed=counts.failed,
        staged=counts.staged,
        planned=counts.planned,
        processing=counts.processing,
    )


def _selected_ids(request: FailedItemsRequest) -> list[str] | None:
    return list(request.item_ids or []) if request.type == "selected" else None


async def retry_failed_handler(deps: ApiDeps, *, request: FailedItemsRequest) -> RetryFailedResponse:
    reset = await deps.admin.retry_failed(item_ids=_selected_ids(request))
    results = await deps.sync_manager.sync_all_pending_records()
    return RetryFailedResponse(
        success=True,
        message=f"Reset {reset.total} failed records to pending",
        reset_counts=_record_counts(reset),
        sync_results=sync_results_model(results),
    )


async def ignore_failed_handler(deps: ApiDeps, *, request: FailedItemsRequest) -> IgnoreFailedResponse:
    ignored = await deps.admin.ignore_failed(item_ids=_selected_ids(request))
    return IgnoreFailedResponse(
        success=True,
        message=f"Ignored {ignored.total} failed records",
        ignored_counts=_record_counts(ignored),
    )


async def manual_sync_handler(deps: ApiDeps) -> ManualSyncResponse:
    results = await deps.sync_manager.sync_all_pending_records()
    return ManualSyncResponse(success=True, results=sync_results_model(results), timestamp=deps.clock())


async def sync_status_handler(deps: ApiDeps) -> SyncStatusResponse:
    status = deps.sync_manager.get_sync_status()
    invoices = await deps.repository.count_by_status(record_type="invoice")
    payments = await deps.repository.count_by_status(record_type="payment")
    tenant = await deps.repository.get_active_tenant()
    return SyncStatusResponse(
        sync_manager=SyncManagerStatusModel(
            is_running=status.is_running,
            last_run_time=status.last_run_time,
            has_current_run=status.has_current_run,
            time_until_next_sync_ms=status.time_until_next_sync_ms,
            min_delay_between_syncs_ms=status.min_delay_between_syncs_ms,
        ),
        invoices=_queue_counts(invoices),
        payments=_queue_counts(payments),
        tenant=TenantModel(tenant_id=tenant.tenant_id, tenant_name=tenant.tenant_name) if tenant is not None else None,
    )
