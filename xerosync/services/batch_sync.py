from __future__ import annotations

import asyncio
from collections.abc import Callable
from dataclasses import dataclass, field, replace
from datetime import UTC, date, datetime
import logging
import time

from xerosync.domain.contracts import StagingRepository, XeroClient
from xerosync.domain.error_taxonomy import (
    DEFAULT_ERROR_MESSAGES,
    ErrorCode,
    FREE_RETRY_ERROR_CODES,
    classify_error,
    error_code_for_exception,
    resolve_record_error,
)
from xerosync.domain.errors import DomainError, DomainValidationError, XeroApiError
from xerosync.domain.models import (
    StagedInvoice,
    StagedPayment,
    SyncCounts,
    SyncLogEntry,
    SyncResults,
    SyncRunStatus,
    SyncStatus,
)
from xerosync.domain.sync_policy import SyncPolicy
from xerosync.domain.use_cases.xero_payloads import (
    build_credit_note_payload,
    build_invoice_payload,
    build_payment_payload,
    response_errors,
)
from xerosync.services.contacts import ContactResolver
from xerosync.services.sync_logs import write_sync_log_safely

logger = logging.getLogger("xero.sync")

# Response field names per batch endpoint.
_ELEMENT_KEYS = {
    "invoice": ("InvoiceID", "InvoiceNumber"),
    "credit_note": ("CreditNoteID", "CreditNoteNumber"),
    "payment": ("PaymentID", None),
}

# A payment whose invoice ended in one of these states can never be applied.
_SETTLED_UNSYNCED_STATES = frozenset({SyncStatus.FAILED, SyncStatus.IGNORE})


def _utcnow() -> datetime:
    return datetime.now(tz=UTC)


def _table_for(record_type: str) -> str:
    return "payment" if record_type == "payment" else "invoice"


@dataclass
class _SyncRun:
    tenant_id: str
    today: date
    results: SyncResults
    # (table record_type, id) of claimed rows whose outcome is not recorded yet.
    unresolved: set[tuple[str, str]] = field(default_factory=set)

    def counts_for(self, record_type: str) -> SyncCounts:
        return self.results.payments if record_type == "payment" else self.results.invoices


@dataclass
class XeroBatchSyncManager:
    """Claims pending staging rows and pushes them to Xero in batches.

    Only one run is active per manager; concurrent callers share its result.
    """

    repository: StagingRepository
    xero: XeroClient
    policy: SyncPolicy
    contacts: ContactResolver = field(init=False)
    clock: Callable[[], datetime] = field(default=_utcnow)
    monotonic: Callable[[], float] = field(default=time.monotonic)
    last_run_time: datetime | None = None
    _current: asyncio.Task[SyncResults] | None = field(default=None, init=False, repr=False)
    _in_progress: SyncResults | None = field(default=None, init=False, repr=False)
    _last_finished: float | None = field(default=None, init=False, repr=False)

    def __post_init__(self) -> None:
        self.contacts = ContactResolver(repository=self.repository, xero=self.xero)

    @property
    def is_running(self) -> bool:
        return self._current is not None and not self._current.done()

    async def sync_all_pending_records(self) -> SyncResults:
        current = self._current
        if current is not None and not current.done():
            logger.info("sync already in progress, joining current run", extra={"operation": "batch_sync"})
            return await self._await_run(current)

        wait_ms = self._time_until_next_sync_ms()
        if wait_ms > 0:
            logger.info(
                "sync skipped, minimum delay not reached (%sms remaining)",
                wait_ms,
                extra={"operation": "batch_sync"},
            )
            return SyncResults()

        results = SyncResults()
        self._in_progress = results
        task = asyncio.create_task(self._run(results))
        self._current = task
        return await self._await_run(task)

    async def perform_sync(self, results: SyncResults | None = None) -> SyncResults:
        results = results if results is not None else SyncResults()
        limit = self.policy.batch.limit
        run = _SyncRun(tenant_id="", today=self.clock().date(), results=results)
        try:
            invoices = await self.repository.claim_pending_invoices(limit=limit)
            run.unresolved.update(("invoice", invoice.id) for invoice in invoices)
            payments = await self.repository.claim_pending_payments(limit=limit)
            run.unresolved.update(("payment", payment.id) for payment in payments)
            if not invoices and not payments:
                return results

            tenant_id = await self._resolve_tenant()
            if tenant_id is None:
                logger.warning(
                    "no usable xero tenant, releasing %s claimed rows",
                    len(run.unresolved),
                    extra={"operation": "batch_sync", "error_code": "tenant_unavailable"},
                )
                return results

            run.tenant_id = tenant_id
            await self._sync_invoices(run, invoices)
            await self._sync_payments(run, payments)
        finally:
            await self._release_unresolved(run)

        logger.info(
            "batch sync finished",
            extra={"operation": "batch_sync", "tenant_id": run.tenant_id or None},
        )
        return results

    def get_sync_status(self) -> SyncRunStatus:
        return SyncRunStatus(
            is_running=self.is_running,
            last_run_time=self.last_run_time,
            has_current_run=self._current is not None and not self._current.done(),
            time_until_next_sync_ms=self._time_until_next_sync_ms(),
            min_delay_between_syncs_ms=self.policy.batch.min_delay_between_syncs_ms,
        )

    def force_stop(self) -> bool:
        current = self._current
        if current is None or current.done():
            return False
        current.cancel()
        logger.warning("sync run force stopped", extra={"operation": "batch_sync"})
        return True

    async def get_pending_count(self) -> int:
        invoices = await self.repository.count_by_status(record_type="invoice")
        payments = await self.repository.count_by_status(record_type="payment")
        return invoices.pending + payments.pending

    async def _run(self, results: SyncResults) -> SyncResults:
        try:
            return await self.perform_sync(results)
        finally:
            self.last_run_time = self.clock()
            self._last_finished = self.monotonic()
            self._in_progress = None

    async def _await_run(self, task: asyncio.Task[SyncResults]) -> SyncResults:
        partial = self._in_progress
        try:
            return await asyncio.shield(task)
        except asyncio.CancelledError:
            if task.cancelled():
                # Force-stopped: report what was recorded before the stop.
                return partial if partial is not None else SyncResults()
            raise

    def _time_until_next_sync_ms(self) -> int:
        if self._last_finished is None:
            return 0
        elapsed_ms = int((self.monotonic() - self._last_finished) * 1000)
        return max(0, self.policy.batch.min_delay_between_syncs_ms - elapsed_ms)

    async def _resolve_tenant(self) -> str | None:
        tenant = await self.repository.get_active_tenant()
        if tenant is None:
            return None
        try:
            connected = await self.xero.validate_connection(tenant_id=tenant.tenant_id)
        except XeroApiError as exc:
            logger.warning(
                "xero connection check failed: %s",
                exc,
                extra={"operation": "batch_sync", "tenant_id": tenant.tenant_id},
            )
            return None
        return tenant.tenant_id if connected else None

    # Invoices and credit notes

    async def _sync_invoices(self, run: _SyncRun, invoices: list[StagedInvoice]) -> None:
        invoice_batch: list[tuple[StagedInvoice, dict[str, object]]] = []
        credit_note_batch: list[tuple[StagedInvoice, dict[str, object]]] = []
        for invoice in invoices:
            payload = await self._prepare_invoice(run, invoice)
            if payload is None:
                continue
            if invoice.is_credit_note:
                credit_note_batch.append((invoice, payload))
            else:
                invoice_batch.append((invoice, payload))

        if invoice_batch:
            await self._submit(run, "invoice", invoice_batch, self.xero.create_invoices, "invoices")
        if credit_note_batch:
            await self._submit(run, "credit_note", credit_note_batch, self.xero.create_credit_notes, "credit_notes")

    async def _prepare_invoice(self, run: _SyncRun, invoice: StagedInvoice) -> dict[str, object] | None:
        record_type = "credit_note" if invoice.is_credit_note else "invoice"

        # A paid invoice waits until its payment is confirmed; zero-value invoices never wait.
        if not invoice.is_credit_note and invoice.net_amount > 0:
            status = None
            if invoice.payment_id:
                status = await self.repository.get_payment_status(payment_id=invoice.payment_id)
            if status != "completed":
                logger.info(
                    "payment not completed yet, returning invoice to queue",
                    extra={"record_id": invoice.id, "record_type": record_type, "operation": "invoice_sync"},
                )
                await self._release(run, "invoice", invoice.id)
                return None

        user_id = invoice.user_id
        if user_id is None:
            await self._fail(run, record_type, invoice.id, "validation_error", "staging metadata has no user_id")
            return None

        try:
            contact_id = await self.contacts.get_or_create_contact(user_id=user_id, tenant_id=run.tenant_id)
        except (DomainError, XeroApiError) as exc:
            code = error_code_for_exception(exc, markers=self.policy.rate_limit_markers)
            if code in FREE_RETRY_ERROR_CODES:
                logger.warning(
                    "contact lookup deferred by %s, returning invoice to queue",
                    code,
                    extra={"record_id": invoice.id, "record_type": record_type, "error_code": code},
                )
                await self._release(run, "invoice", invoice.id)
                return None
            await self._fail(
                run,
                record_type,
                invoice.id,
                "contact_sync_failed",
                f"{DEFAULT_ERROR_MESSAGES['contact_sync_failed']}: {exc}",
            )
            return None

        try:
            if invoice.is_credit_note:
                return build_credit_note_payload(
                    invoice,
                    contact_id=contact_id,
                    policy=self.policy.invoices,
                    today=run.today,
                )
            return build_invoice_payload(invoice, contact_id=contact_id, policy=self.policy.invoices, today=run.today)
        except DomainValidationError as exc:
            await self._fail(run, record_type, invoice.id, "validation_error", str(exc))
            return None

    # Payments

    async def _sync_payments(self, run: _SyncRun, payments: list[StagedPayment]) -> None:
        system_bank_code = await self.repository.get_bank_account_code()
        batch: list[tuple[StagedPayment, dict[str, object]]] = []
        for payment in payments:
            payment, invoice = await self._with_synced_invoice(payment)
            if not payment.invoice_xero_id:
                if invoice is not None and invoice.sync_status not in _SETTLED_UNSYNCED_STATES:
                    logger.info(
                        "invoice %s not synced yet, returning payment to queue",
                        invoice.id,
                        extra={"record_id": payment.id, "record_type": "payment", "operation": "payment_sync"},
                    )
                    await self._release(run, "payment", payment.id)
                    continue
                await self._fail(
                    run,
                    "payment",
                    payment.id,
                    "invoice_not_synced",
                    DEFAULT_ERROR_MESSAGES["invoice_not_synced"],
                )
                continue

            bank_account_code = (
                payment.bank_account_code
                or system_bank_code
                or self.policy.payments.default_bank_account_code
            )
            batch.append(
                (payment, build_payment_payload(payment, bank_account_code=bank_account_code, today=run.today))
            )

        if batch:
            await self._submit(run, "payment", batch, self.xero.create_payments, "payments")

    async def _with_synced_invoice(self, payment: StagedPayment) -> tuple[StagedPayment, StagedInvoice | None]:
        if payment.invoice_xero_id:
            return payment, None
        # The invoice may have been synced earlier in this same run.
        invoice = await self.repository.get_invoice(invoice_id=payment.invoice_id)
        if invoice is None or not invoice.xero_invoice_id:
            return payment, invoice
        return (
            replace(payment, invoice_xero_id=invoice.xero_invoice_id, invoice_number=invoice.invoice_number),
            invoice,
        )

    # Shared batch handling

    async def _submit(
        self,
        run: _SyncRun,
        record_type: str,
        batch: list,
        create: Callable,
        payload_key: str,
    ) -> None:
        payloads = [payload for _, payload in batch]
        try:
            elements = await create(tenant_id=run.tenant_id, **{payload_key: payloads})
        except Exception as exc:
            code = error_code_for_exception(exc, markers=self.policy.rate_limit_markers)
            logger.warning(
                "xero batch request failed: %s",
                exc,
                extra={"record_type": record_type, "tenant_id": run.tenant_id, "error_code": code},
            )
            for record, payload in batch:
                await self._fail(run, record_type, record.id, code, str(exc), request=payload)
            return

        id_key, number_key = _ELEMENT_KEYS[record_type]
        for index, (record, payload) in enumerate(batch):
            element = elements[index] if index < len(elements) else None
            if element is None:
                await self._fail(
                    run,
                    record_type,
                    record.id,
                    "invalid_response",
                    DEFAULT_ERROR_MESSAGES["invalid_response"],
                    request=payload,
                )
                continue

            errors = response_errors(element)
            if errors:
                await self._fail(
                    run,
                    record_type,
                    record.id,
                    "xero_validation_error",
                    "; ".join(errors),
                    request=payload,
                )
                continue

            xero_id = element.get(id_key)
            if not xero_id:
                await self._fail(
                    run,
                    record_type,
                    record.id,
                    "invalid_response",
                    DEFAULT_ERROR_MESSAGES["invalid_response"],
                    request=payload,
                )
                continue

            number = element.get(number_key) if number_key else None
            await self._succeed(
                run,
                record_type,
                record.id,
                xero_id=str(xero_id),
                number=str(number) if number else None,
                request=payload,
            )

    async def _succeed(
        self,
        run: _SyncRun,
        record_type: str,
        record_id: str,
        *,
        xero_id: str,
        number: str | None,
        request: dict[str, object],
    ) -> None:
        if record_type == "payment":
            await self.repository.mark_payment_synced(
                staged_payment_id=record_id,
                tenant_id=run.tenant_id,
                xero_payment_id=xero_id,
            )
        else:
            await self.repository.mark_invoice_synced(
                invoice_id=record_id,
                tenant_id=run.tenant_id,
                xero_invoice_id=xero_id,
                invoice_number=number,
            )
        run.unresolved.discard((_table_for(record_type), record_id))
        run.counts_for(record_type).synced += 1

        await write_sync_log_safely(
            self.repository,
            SyncLogEntry(
                operation_type=f"{record_type}_sync",
                status="success",
                tenant_id=run.tenant_id,
                record_id=record_id,
                xero_id=xero_id,
                request_data=request,
                response_data={"xero_id": xero_id, "number": number},
            ),
        )
        logger.info(
            "record synced",
            extra={"record_id": record_id, "record_type": record_type, "tenant_id": run.tenant_id},
        )

    async def _fail(
        self,
        run: _SyncRun,
        record_type: str,
        record_id: str,
        code: str,
        detail: str,
        *,
        request: dict[str, object] | None = None,
    ) -> None:
        error_code: ErrorCode = resolve_record_error(record_type=record_type, code=code)
        next_status = await self.repository.record_sync_failure(
            record_type=_table_for(record_type),
            record_id=record_id,
            error_code=error_code,
            detail=detail,
            max_attempts=self.policy.batch.max_attempts,
        )
        run.unresolved.discard((_table_for(record_type), record_id))
        if next_status == SyncStatus.FAILED:
            run.counts_for(record_type).failed += 1

        await write_sync_log_safely(
            self.repository,
            SyncLogEntry(
                operation_type=f"{record_type}_sync",
                status="error" if next_status == SyncStatus.FAILED else "warning",
                tenant_id=run.tenant_id or None,
                record_id=record_id,
                request_data=request,
                error_message=detail,
                error_code=error_code,
            ),
        )
        logger.warning(
            "record sync failed (%s, now %s)",
            classify_error(error_code),
            next_status,
            extra={
                "record_id": record_id,
                "record_type": record_type,
                "tenant_id": run.tenant_id or None,
                "error_code": error_code,
            },
        )

    async def _release(self, run: _SyncRun, table: str, record_id: str) -> None:
        await self.repository.transition_records(
            record_type=table,
            from_state=SyncStatus.PROCESSING,
            to_state=SyncStatus.PENDING,
            record_ids=[record_id],
        )
        run.unresolved.discard((table, record_id))

    async def _release_unresolved(self, run: _SyncRun) -> None:
        for table in ("invoice", "payment"):
            record_ids = [record_id for kind, record_id in run.unresolved if kind == table]
            if not record_ids:
                continue
            released = await self.repository.transition_records(
                record_type=table,
                from_state=SyncStatus.PROCESSING,
                to_state=SyncStatus.PENDING,
                record_ids=record_ids,
            )
            logger.info(
                "released %s unsynced %s rows",
                released,
                table,
                extra={"record_type": table, "operation": "batch_sync"},
            )
        run.unresolved.clear()
