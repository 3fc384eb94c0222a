from __future__ import annotations

import logging

from xerosync.api.handlers.deps import ApiDeps
from xerosync.api.handlers.sync_results import sync_results_model
from xerosync.api.schemas import CronSyncResponse, PaymentPlansRunResponse

logger = logging.getLogger("xero.sync")


async def run_xero_sync_handler(deps: ApiDeps) -> CronSyncResponse:
    pending_count = await deps.sync_manager.get_pending_count()
    if pending_count == 0:
        return CronSyncResponse(
            success=True,
            message="No pending records to sync",
            pending_count=0,
            timestamp=deps.clock(),
        )

    logger.info("cron sync triggered with %s pending records", pending_count, extra={"operation": "cron_sync"})
    results = await deps.sync_manager.sync_all_pending_records()
    return CronSyncResponse(
        success=True,
        results=sync_results_model(results),
        pending_count=pending_count,
        timestamp=deps.clock(),
    )


async def run_payment_plans_handler(deps: ApiDeps) -> PaymentPlansRunResponse:
    now = deps.clock()
    result = await deps.payment_plans.process_due_installments(today=now.date())
    return PaymentPlansRunResponse(
        success=True,
        payments_found=result.payments_found,
        payments_processed=result.payments_processed,
        payments_failed=result.payments_failed,
        retries_attempted=result.retries_attempted,
        errors=list(result.errors),
        timestamp=now,
    )
