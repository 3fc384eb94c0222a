from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime

from xerosync.domain.contracts import StagingRepository
from xerosync.services.admin import FailedRecordAdmin
from xerosync.services.batch_sync import XeroBatchSyncManager
from xerosync.services.payment_plans import PaymentPlanService
from xerosync.services.refunds import RefundStagingService
from xerosync.services.staging import StagingWriter


def _utcnow() -> datetime:
    return datetime.now(tz=UTC)


@dataclass(frozen=True)
class ApiDeps:
    repository: StagingRepository
    sync_manager: XeroBatchSyncManager
    staging: StagingWriter
    refunds: RefundStagingService
    payment_plans: PaymentPlanService
    admin: FailedRecordAdmin
    cron_secret: str | None = None
    admin_api_token: str | None = None
    clock: Callable[[], datetime] = field(default=_utcnow)
