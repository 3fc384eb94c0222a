from __future__ import annotations

from collections.abc import Callable
from datetime import UTC, date, datetime
import logging

from xerosync.services.batch_sync import XeroBatchSyncManager
from xerosync.services.payment_plans import PaymentPlanService
from xerosync.workers.loop import Job

logger = logging.getLogger("runtime")


def _today() -> date:
    return datetime.now(tz=UTC).date()


def build_xero_sync_job(manager: XeroBatchSyncManager) -> Job:
    async def _sync() -> bool:
        results = await manager.sync_all_pending_records()
        if results.total_synced or results.total_failed:
            logger.info(
                "xero sync tick: %s synced, %s failed",
                results.total_synced,
                results.total_failed,
                extra={"operation": "batch_sync"},
            )
        return results.total_synced + results.total_failed > 0

    return _sync


def build_payment_plans_job(service: PaymentPlanService, *, today: Callable[[], date] = _today) -> Job:
    async def _process() -> bool:
        result = await service.process_due_installments(today=today())
        if result.payments_processed or result.payments_failed:
            logger.info(
                "installments tick: %s processed, %s failed",
                result.payments_processed,
                result.payments_failed,
                extra={"operation": "process_due_installments"},
            )
        return result.payments_processed + result.payments_failed > 0

    return _process
