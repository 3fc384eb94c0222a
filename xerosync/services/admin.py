from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
import logging

from xerosync.domain.contracts import StagingRepository
from xerosync.domain.errors import DomainInvariantError, DomainValidationError
from xerosync.domain.lifecycle import lifecycle_for_record_id
from xerosync.domain.models import ResetCounts, SyncStatus

logger = logging.getLogger("xero.sync")


def split_record_ids(item_ids: Sequence[str]) -> dict[str, list[str]]:
    """Group public staging ids by table using their inv_/pay_ prefix."""
    grouped: dict[str, list[str]] = {"invoice": [], "payment": []}
    for item_id in item_ids:
        try:
            lifecycle = lifecycle_for_record_id(item_id)
        except DomainInvariantError as exc:
            raise DomainValidationError(str(exc)) from exc
        grouped[lifecycle.record_type].append(item_id)
    return grouped


@dataclass
class FailedRecordAdmin:
    repository: StagingRepository

    async def retry_failed(self, *, item_ids: Sequence[str] | None = None) -> ResetCounts:
        return await self._move_failed(to_state=SyncStatus.PENDING, item_ids=item_ids, reset_errors=True)

    async def ignore_failed(self, *, item_ids: Sequence[str] | None = None) -> ResetCounts:
        return await self._move_failed(to_state=SyncStatus.IGNORE, item_ids=item_ids, reset_errors=False)

    async def _move_failed(
        self,
        *,
        to_state: str,
        item_ids: Sequence[str] | None,
        reset_errors: bool,
    ) -> ResetCounts:
        selected = split_record_ids(item_ids) if item_ids is not None else None
        moved: dict[str, int] = {}
        for record_type in ("invoice", "payment"):
            record_ids = selected[record_type] if selected is not None else None
            if record_ids is not None and not record_ids:
                moved[record_type] = 0
                continue
            moved[record_type] = await self.repository.transition_records(
                record_type=record_type,
                from_state=SyncStatus.FAILED,
                to_state=to_state,
                record_ids=record_ids,
                reset_errors=reset_errors,
            )

        counts = ResetCounts(invoices=moved["invoice"], payments=moved["payment"])
        logger.info(
            "failed records moved to %s: %s",
            to_state,
            counts.total,
            extra={"operation": f"failed_to_{to_state}"},
        )
        return counts
