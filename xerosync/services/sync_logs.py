from __future__ import annotations

import logging

from xerosync.domain.contracts import StagingRepository
from xerosync.domain.models import SyncLogEntry

logger = logging.getLogger("xero.sync")


async def write_sync_log_safely(repository: StagingRepository, entry: SyncLogEntry) -> None:
    """Persist a sync log row. A failing log write is reported and never interrupts a sync."""
    try:
        await repository.write_sync_log(entry=entry)
    except Exception:
        logger.exception(
            "failed to write xero sync log",
            extra={
                "operation": entry.operation_type,
                "record_id": entry.record_id,
                "tenant_id": entry.tenant_id,
            },
        )
