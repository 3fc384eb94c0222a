from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime
import logging

from xerosync.domain.contracts import StagingRepository
from xerosync.domain.dto import RefundPreview, RefundRequest
from xerosync.domain.errors import DomainValidationError
from xerosync.domain.models import InvoiceType, LineItem, SyncStatus
from xerosync.domain.sync_policy import SyncPolicy
from xerosync.domain.use_cases.refunds import build_refund_preview

logger = logging.getLogger("xero.staging")


@dataclass
class RefundStagingService:
    repository: StagingRepository
    policy: SyncPolicy

    async def preview_refund_staging(self, *, payment_id: str, refund: RefundRequest) -> RefundPreview:
        original_items = await self._original_line_items(payment_id=payment_id)
        return build_refund_preview(
            refund,
            original_items=original_items,
            policy=self.policy.invoices,
            allow_fallback=False,
        )

    async def create_refund_staging(self, *, refund_id: str, payment_id: str, refund: RefundRequest) -> str:
        if not refund_id:
            raise DomainValidationError("refund_id is required")
        existing = await self.repository.find_credit_note_by_refund_id(refund_id=refund_id)
        if existing is not None:
            return existing.id

        original = await self.repository.find_invoice_by_payment_id(payment_id=payment_id)
        preview = build_refund_preview(
            refund,
            original_items=original.line_items if original is not None else (),
            policy=self.policy.invoices,
            allow_fallback=True,
        )

        user_id = original.user_id if original is not None else None
        credit_note_id = await self.repository.create_invoice_staging(
            payment_id=payment_id,
            invoice_type=InvoiceType.CREDIT_NOTE,
            invoice_status="DRAFT",
            total_amount=preview.total_amount,
            discount_amount=0,
            net_amount=preview.total_amount,
            sync_status=SyncStatus.STAGED,
            staging_metadata={
                "refund_id": refund_id,
                "refund_type": refund.refund_type,
                "refund_amount": preview.total_amount,
                "original_payment_id": payment_id,
                "user_id": user_id,
                "created_at": datetime.now(tz=UTC).isoformat(),
            },
            line_items=[
                LineItem(
                    description=line.description,
                    line_amount=line.line_amount,
                    line_item_type=line.line_item_type,
                    account_code=line.account_code,
                    tax_type=line.tax_type,
                )
                for line in preview.line_items
            ],
        )
        logger.info(
            "credit note staged",
            extra={"record_id": credit_note_id, "record_type": "credit_note", "operation": "create_refund_staging"},
        )
        return credit_note_id

    async def complete_refund_staging(self, *, refund_id: str) -> bool:
        credit_note = await self.repository.find_credit_note_by_refund_id(refund_id=refund_id)
        if credit_note is None or credit_note.sync_status != SyncStatus.STAGED:
            return False

        promoted = await self.repository.transition_records(
            record_type="invoice",
            from_state=SyncStatus.STAGED,
            to_state=SyncStatus.PENDING,
            record_ids=[credit_note.id],
        )
        logger.info(
            "credit note ready for sync",
            extra={"record_id": credit_note.id, "record_type": "credit_note", "operation": "complete_refund_staging"},
        )
        return promoted > 0

    async def _original_line_items(self, *, payment_id: str) -> tuple[LineItem, ...]:
        original = await self.repository.find_invoice_by_payment_id(payment_id=payment_id)
        if original is None:
            return ()
        return original.line_items
