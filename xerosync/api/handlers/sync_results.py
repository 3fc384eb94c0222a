from __future__ import annotations

from xerosync.api.schemas import SyncCountsModel, SyncResultsModel
from xerosync.domain.models import SyncResults


def sync_results_model(results: SyncResults) -> SyncResultsModel:
    return SyncResultsModel(
        invoices=SyncCountsModel(synced=results.invoices.synced, failed=results.invoices.failed),
        payments=SyncCountsModel(synced=results.payments.synced, failed=results.payments.failed),
        total_synced=results.total_synced,
        total_failed=results.total_failed,
    )
