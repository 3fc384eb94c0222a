from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from datetime import date, datetime
import json
from typing import Any

import asyncpg

from xerosync.domain.errors import DomainInvariantError
from xerosync.domain.ids import new_invoice_staging_id, new_payment_staging_id
from xerosync.domain.lifecycle import ensure_transition, next_failure_state
from xerosync.domain.models import (
    ContactMapping,
    LineItem,
    StagedInvoice,
    StagedPayment,
    StagingCounts,
    SyncLogEntry,
    UserProfile,
    XeroTenant,
)
from xerosync.repositories.sql_loader import load_sql, load_table_sql


SQL_CREATE_INVOICE = load_sql("create_invoice.sql")
SQL_CREATE_LINE_ITEM = load_sql("create_line_item.sql")
SQL_CREATE_PAYMENT = load_sql("create_payment.sql")
SQL_GET_INVOICE = load_sql("get_invoice.sql")
SQL_GET_STAGED_PAYMENT = load_sql("get_staged_payment.sql")
SQL_FIND_INVOICE_BY_PAYMENT_ID = load_sql("find_invoice_by_payment_id.sql")
SQL_FIND_CREDIT_NOTE_BY_REFUND_ID = load_sql("find_credit_note_by_refund_id.sql")
SQL_LIST_PAYMENTS_FOR_INVOICE = load_sql("list_payments_for_invoice.sql")
SQL_MERGE_PAYMENT_METADATA = load_sql("merge_payment_metadata.sql")
SQL_GET_BANK_ACCOUNT_CODE = load_sql("get_bank_account_code.sql")
SQL_GET_PAYMENT_STATUS = load_sql("get_payment_status.sql")
SQL_CREATE_PAYMENT_RECORD = load_sql("create_payment_record.sql")
SQL_CLAIM_PENDING_INVOICES = load_sql("claim_pending_invoices.sql")
SQL_CLAIM_PENDING_PAYMENTS = load_sql("claim_pending_payments.sql")
SQL_MARK_INVOICE_SYNCED = load_sql("mark_invoice_synced.sql")
SQL_MARK_PAYMENT_SYNCED = load_sql("mark_payment_synced.sql")
SQL_GET_ACTIVE_TENANT = load_sql("get_active_tenant.sql")
SQL_UPDATE_TENANT_TOKENS = load_sql("update_tenant_tokens.sql")
SQL_DEACTIVATE_TENANT = load_sql("deactivate_tenant.sql")
SQL_GET_USER_PROFILE = load_sql("get_user_profile.sql")
SQL_GET_CONTACT_MAPPING = load_sql("get_contact_mapping.sql")
SQL_UPSERT_CONTACT_MAPPING = load_sql("upsert_contact_mapping.sql")
SQL_INSERT_SYNC_LOG = load_sql("insert_sync_log.sql")
SQL_LIST_DUE_INSTALLMENTS = load_sql("list_due_installments.sql")
SQL_RECORD_INSTALLMENT_SUCCESS = load_sql("record_installment_success.sql")
SQL_RECORD_INSTALLMENT_FAILURE = load_sql("record_installment_failure.sql")

STAGING_RECORD_TYPES = ("invoice", "payment")


@dataclass
class AsyncpgPoolManager:
    dsn: str
    pool: Any | None = None

    async def startup(self) -> None:
        async def _init_connection(conn: Any) -> None:
            await conn.set_type_codec(
                "json",
                encoder=json.dumps,
                decoder=json.loads,
                schema="pg_catalog",
            )
            await conn.set_type_codec(
                "jsonb",
                encoder=json.dumps,
                decoder=json.loads,
                schema="pg_catalog",
            )

        self.pool = await asyncpg.create_pool(
            dsn=self.dsn,
            min_size=1,
            max_size=5,
            init=_init_connection,
        )

    async def shutdown(self) -> None:
        if self.pool is None:
            return
        await self.pool.close()
        self.pool = None


@dataclass
class PostgresStagingRepository:
    pool_manager: AsyncpgPoolManager

    def _pool(self) -> Any:
        if self.pool_manager.pool is None:
            raise RuntimeError("postgres pool is not initialized")
        return self.pool_manager.pool

    async def create_invoice_staging(
        self,
        *,
        payment_id: str | None,
        invoice_type: str,
        invoice_status: str,
        total_amount: int,
        discount_amount: int,
        net_amount: int,
        sync_status: str,
        staging_metadata: dict[str, object],
        line_items: Sequence[LineItem],
        is_payment_plan: bool = False,
    ) -> str:
        invoice_id = new_invoice_staging_id()
        pool = self._pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                created = await conn.fetchval(
                    SQL_CREATE_INVOICE,
                    invoice_id,
                    payment_id,
                    invoice_type,
                    invoice_status,
                    total_amount,
                    discount_amount,
                    net_amount,
                    sync_status,
                    staging_metadata,
                    is_payment_plan,
                )
                if created is None:
                    raise DomainInvariantError("failed to create invoice staging record")
                await conn.executemany(
                    SQL_CREATE_LINE_ITEM,
                    [
                        (
                            invoice_id,
                            item.line_item_type,
                            item.item_id,
                            item.description,
                            item.quantity,
                            item.unit_amount,
                            item.line_amount,
                            item.account_code,
                            item.tax_type,
                        )
                        for item in line_items
                    ],
                )
        return invoice_id

    async def create_payment_staging(
        self,
        *,
        invoice_id: str,
        amount_paid: int,
        sync_status: str,
        staging_metadata: dict[str, object],
        payment_method: str = "stripe",
        bank_account_code: str | None = None,
        reference: str | None = None,
        payment_type: str = "full",
        installment_number: int | None = None,
        planned_payment_date: date | None = None,
        max_attempts: int = 3,
    ) -> str:
        staged_payment_id = new_payment_staging_id()
        pool = self._pool()
        async with pool.acquire() as conn:
            created = await conn.fetchval(
                SQL_CREATE_PAYMENT,
                staged_payment_id,
                invoice_id,
                amount_paid,
                sync_status,
                staging_metadata,
                payment_method,
                bank_account_code,
                reference,
                payment_type,
                installment_number,
                planned_payment_date,
                max_attempts,
            )
        if created is None:
            raise DomainInvariantError("failed to create payment staging record")
        return staged_payment_id

    async def get_invoice(self, *, invoice_id: str) -> StagedInvoice | None:
        pool = self._pool()
        async with pool.acquire() as conn:
            row = await conn.fetchrow(SQL_GET_INVOICE, invoice_id)
        return _invoice_from_row(row) if row is not None else None

    async def get_staged_payment(self, *, staged_payment_id: str) -> StagedPayment | None:
        pool = self._pool()
        async with pool.acquire() as conn:
            row = await conn.fetchrow(SQL_GET_STAGED_PAYMENT, staged_payment_id)
        return _payment_from_row(row) if row is not None else None

    async def find_invoice_by_payment_id(
        self,
        *,
        payment_id: str,
        invoice_type: str = "ACCREC",
        sync_status: str | None = None,
    ) -> StagedInvoice | None:
        pool = self._pool()
        async with pool.acquire() as conn:
            row = await conn.fetchrow(SQL_FIND_INVOICE_BY_PAYMENT_ID, payment_id, invoice_type, sync_status)
        return _invoice_from_row(row) if row is not None else None

    async def find_credit_note_by_refund_id(self, *, refund_id: str) -> StagedInvoice | None:
        pool = self._pool()
        async with pool.acquire() as conn:
            row = await conn.fetchrow(SQL_FIND_CREDIT_NOTE_BY_REFUND_ID, refund_id)
        return _invoice_from_row(row) if row is not None else None

    async def list_payments_for_invoice(self, *, invoice_id: str) -> list[StagedPayment]:
        pool = self._pool()
        async with pool.acquire() as conn:
            rows = await conn.fetch(SQL_LIST_PAYMENTS_FOR_INVOICE, invoice_id)
        return [_payment_from_row(row) for row in rows]

    async def transition_records(
        self,
        *,
        record_type: str,
        from_state: str,
        to_state: str,
        record_ids: Sequence[str] | None = None,
        reset_errors: bool = False,
    ) -> int:
        ensure_transition(from_state=from_state, to_state=to_state)
        if record_ids is not None and not record_ids:
            return 0
        sql = load_table_sql("transition_{table}.sql", record_type=record_type)
        pool = self._pool()
        async with pool.acquire() as conn:
            rows = await conn.fetch(
                sql,
                from_state,
                to_state,
                reset_errors,
                list(record_ids) if record_ids is not None else None,
            )
        return len(rows)

    async def merge_payment_metadata(
        self,
        *,
        staged_payment_id: str,
        metadata: dict[str, object],
        bank_account_code: str | None = None,
    ) -> None:
        pool = self._pool()
        async with pool.acquire() as conn:
            updated = await conn.fetchval(SQL_MERGE_PAYMENT_METADATA, staged_payment_id, metadata, bank_account_code)
        if updated is None:
            raise DomainInvariantError(f"staged payment not found: {staged_payment_id}")

    async def get_bank_account_code(self) -> str | None:
        pool = self._pool()
        async with pool.acquire() as conn:
            value = await conn.fetchval(SQL_GET_BANK_ACCOUNT_CODE)
        return _as_str(value)

    async def get_payment_status(self, *, payment_id: str) -> str | None:
        pool = self._pool()
        async with pool.acquire() as conn:
            value = await conn.fetchval(SQL_GET_PAYMENT_STATUS, payment_id)
        return _as_str(value)

    async def create_payment_record(
        self,
        *,
        user_id: str,
        amount: int,
        stripe_payment_intent_id: str | None,
        stripe_charge_id: str | None = None,
    ) -> str:
        pool = self._pool()
        async with pool.acquire() as conn:
            payment_id = await conn.fetchval(
                SQL_CREATE_PAYMENT_RECORD,
                user_id,
                amount,
                stripe_payment_intent_id,
                stripe_charge_id,
            )
        if payment_id is None:
            raise DomainInvariantError("failed to create payment record")
        return str(payment_id)

    async def claim_pending_invoices(self, *, limit: int = 50) -> list[StagedInvoice]:
        pool = self._pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                rows = await conn.fetch(SQL_CLAIM_PENDING_INVOICES, limit)
        return [_invoice_from_row(row) for row in rows]

    async def claim_pending_payments(self, *, limit: int = 50) -> list[StagedPayment]:
        pool = self._pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                rows = await conn.fetch(SQL_CLAIM_PENDING_PAYMENTS, limit)
        return [_payment_from_row(row) for row in rows]

    async def count_by_status(self, *, record_type: str) -> StagingCounts:
        sql = load_table_sql("count_{table}_by_status.sql", record_type=record_type)
        pool = self._pool()
        async with pool.acquire() as conn:
            rows = await conn.fetch(sql)
        totals = {str(row["sync_status"]): _as_int(row["total"]) for row in rows}
        return StagingCounts(
            pending=totals.get("pending", 0),
            failed=totals.get("failed", 0),
            staged=totals.get("staged", 0),
            planned=totals.get("planned", 0),
            processing=totals.get("processing", 0),
        )

    async def mark_invoice_synced(
        self,
        *,
        invoice_id: str,
        tenant_id: str,
        xero_invoice_id: str,
        invoice_number: str | None,
    ) -> None:
        pool = self._pool()
        async with pool.acquire() as conn:
            updated = await conn.fetchval(
                SQL_MARK_INVOICE_SYNCED,
                invoice_id,
                tenant_id,
                xero_invoice_id,
                invoice_number,
            )
        if updated is None:
            raise DomainInvariantError("mark synced rejected by processing guard")

    async def mark_payment_synced(
        self,
        *,
        staged_payment_id: str,
        tenant_id: str,
        xero_payment_id: str,
    ) -> None:
        pool = self._pool()
        async with pool.acquire() as conn:
            updated = await conn.fetchval(SQL_MARK_PAYMENT_SYNCED, staged_payment_id, tenant_id, xero_payment_id)
        if updated is None:
            raise DomainInvariantError("mark synced rejected by processing guard")

    async def record_sync_failure(
        self,
        *,
        record_type: str,
        record_id: str,
        error_code: str,
        detail: str,
        max_attempts: int = 3,
    ) -> str:
        lock_sql = load_table_sql("lock_{record}_for_failure.sql", record_type=record_type)
        update_sql = load_table_sql("record_{record}_failure.sql", record_type=record_type)
        pool = self._pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                retry_count = await conn.fetchval(lock_sql, record_id)
                if retry_count is None:
                    raise DomainInvariantError("failure rejected by processing guard")
                next_status, next_retry_count = next_failure_state(
                    error_code=error_code,
                    retry_count=_as_int(retry_count),
                    max_attempts=max_attempts,
                )
                await conn.fetchval(update_sql, record_id, next_status, next_retry_count, detail)
        return next_status

    async def release_stale_processing(self, *, older_than_seconds: int) -> int:
        released = 0
        pool = self._pool()
        async with pool.acquire() as conn:
            for record_type in STAGING_RECORD_TYPES:
                sql = load_table_sql("release_stale_{table}.sql", record_type=record_type)
                rows = await conn.fetch(sql, older_than_seconds)
                released += len(rows)
        return released

    async def get_active_tenant(self) -> XeroTenant | None:
        pool = self._pool()
        async with pool.acquire() as conn:
            row = await conn.fetchrow(SQL_GET_ACTIVE_TENANT)
        if row is None:
            return None
        return XeroTenant(
            tenant_id=row["tenant_id"],
            tenant_name=row["tenant_name"],
            access_token=row["access_token"],
            refresh_token=row["refresh_token"],
            expires_at=row["expires_at"],
            updated_at=row["updated_at"],
            scope=row["scope"] or "",
            token_type=row["token_type"] or "Bearer",
        )

    async def update_tenant_tokens(
        self,
        *,
        tenant_id: str,
        access_token: str,
        refresh_token: str,
        expires_at: datetime,
    ) -> None:
        pool = self._pool()
        async with pool.acquire() as conn:
            await conn.execute(SQL_UPDATE_TENANT_TOKENS, tenant_id, access_token, refresh_token, expires_at)

    async def deactivate_tenant(self, *, tenant_id: str) -> None:
        pool = self._pool()
        async with pool.acquire() as conn:
            await conn.execute(SQL_DEACTIVATE_TENANT, tenant_id)

    async def get_user_profile(self, *, user_id: str) -> UserProfile | None:
        pool = self._pool()
        async with pool.acquire() as conn:
            row = await conn.fetchrow(SQL_GET_USER_PROFILE, user_id)
        if row is None:
            return None
        return UserProfile(
            user_id=row["id"],
            email=row["email"],
            first_name=row["first_name"],
            last_name=row["last_name"],
            member_id=_as_str(row["member_id"]),
            stripe_customer_id=_as_str(row["stripe_customer_id"]),
            stripe_payment_method_id=_as_str(row["stripe_payment_method_id"]),
        )

    async def get_contact_mapping(self, *, user_id: str, tenant_id: str) -> ContactMapping | None:
        pool = self._pool()
        async with pool.acquire() as conn:
            row = await conn.fetchrow(SQL_GET_CONTACT_MAPPING, user_id, tenant_id)
        if row is None:
            return None
        return ContactMapping(
            user_id=row["user_id"],
            tenant_id=row["tenant_id"],
            xero_contact_id=row["xero_contact_id"],
            sync_status=row["sync_status"],
            contact_number=_as_str(row["contact_number"]),
        )

    async def upsert_contact_mapping(
        self,
        *,
        user_id: str,
        tenant_id: str,
        xero_contact_id: str,
        contact_number: str | None = None,
    ) -> None:
        pool = self._pool()
        async with pool.acquire() as conn:
            await conn.execute(SQL_UPSERT_CONTACT_MAPPING, user_id, tenant_id, xero_contact_id, contact_number)

    async def write_sync_log(self, *, entry: SyncLogEntry) -> None:
        pool = self._pool()
        async with pool.acquire() as conn:
            await conn.execute(
                SQL_INSERT_SYNC_LOG,
                entry.tenant_id,
                entry.operation_type,
                _record_type_for_id(entry.record_id),
                entry.record_id,
                entry.xero_id,
                entry.status,
                entry.error_code,
                entry.error_message,
                entry.request_data,
                entry.response_data,
            )

    async def list_due_installments(self, *, today: date) -> list[StagedPayment]:
        pool = self._pool()
        async with pool.acquire() as conn:
            rows = await conn.fetch(SQL_LIST_DUE_INSTALLMENTS, today)
        return [_payment_from_row(row) for row in rows]

    async def record_installment_attempt(
        self,
        *,
        staged_payment_id: str,
        succeeded: bool,
        attempted_at: datetime,
        failure_reason: str | None = None,
        metadata: dict[str, object] | None = None,
    ) -> None:
        pool = self._pool()
        async with pool.acquire() as conn:
            if succeeded:
                updated = await conn.fetchval(
                    SQL_RECORD_INSTALLMENT_SUCCESS,
                    staged_payment_id,
                    attempted_at,
                    metadata or {},
                )
            else:
                updated = await conn.fetchval(
                    SQL_RECORD_INSTALLMENT_FAILURE,
                    staged_payment_id,
                    attempted_at,
                    failure_reason,
                )
        if updated is None:
            raise DomainInvariantError(f"installment is not planned: {staged_payment_id}")


def _invoice_from_row(row: Any) -> StagedInvoice:
    return StagedInvoice(
        id=row["id"],
        payment_id=_as_str(row["payment_id"]),
        invoice_type=row["invoice_type"],
        invoice_status=row["invoice_status"],
        total_amount=_as_int(row["total_amount"]),
        discount_amount=_as_int(row["discount_amount"]),
        net_amount=_as_int(row["net_amount"]),
        sync_status=row["sync_status"],
        staging_metadata=_json_object(row["staging_metadata"]),
        line_items=_line_items(row["line_items"]),
        is_payment_plan=bool(row["is_payment_plan"]),
        xero_invoice_id=_as_str(_record_get(row, "xero_invoice_id")),
        invoice_number=_as_str(_record_get(row, "invoice_number")),
        tenant_id=_as_str(_record_get(row, "tenant_id")),
        sync_error=_as_str(_record_get(row, "sync_error")),
        retry_count=_as_int(_record_get(row, "retry_count")),
        created_at=row["created_at"],
        staged_at=row["staged_at"],
        last_synced_at=_record_get(row, "last_synced_at"),
    )


def _payment_from_row(row: Any) -> StagedPayment:
    return StagedPayment(
        id=row["id"],
        invoice_id=row["invoice_id"],
        amount_paid=_as_int(row["amount_paid"]),
        sync_status=row["sync_status"],
        staging_metadata=_json_object(row["staging_metadata"]),
        payment_method=row["payment_method"],
        bank_account_code=_as_str(row["bank_account_code"]),
        reference=_as_str(row["reference"]),
        stripe_fee_amount=_as_int(row["stripe_fee_amount"]),
        payment_type=row["payment_type"],
        installment_number=row["installment_number"],
        planned_payment_date=row["planned_payment_date"],
        attempt_count=_as_int(_record_get(row, "attempt_count")),
        max_attempts=_as_int(_record_get(row, "max_attempts"), default=3),
        last_attempt_at=_record_get(row, "last_attempt_at"),
        failure_reason=_as_str(_record_get(row, "failure_reason")),
        invoice_xero_id=_as_str(row["invoice_xero_id"]),
        invoice_number=_as_str(row["invoice_number"]),
        xero_payment_id=_as_str(_record_get(row, "xero_payment_id")),
        tenant_id=_as_str(_record_get(row, "tenant_id")),
        sync_error=_as_str(_record_get(row, "sync_error")),
        retry_count=_as_int(_record_get(row, "retry_count")),
        created_at=row["created_at"],
        staged_at=row["staged_at"],
        last_synced_at=_record_get(row, "last_synced_at"),
    )


def _line_items(value: object) -> tuple[LineItem, ...]:
    if isinstance(value, str):
        value = json.loads(value)
    if not isinstance(value, list):
        return ()
    items: list[LineItem] = []
    for raw in value:
        if not isinstance(raw, dict):
            continue
        items.append(
            LineItem(
                description=str(raw.get("description") or ""),
                line_amount=_as_int(raw.get("line_amount")),
                line_item_type=str(raw.get("line_item_type") or "registration"),
                account_code=_as_str(raw.get("account_code")),
                tax_type=str(raw.get("tax_type") or "NONE"),
                quantity=_as_int(raw.get("quantity"), default=1),
                item_id=_as_str(raw.get("item_id")),
            )
        )
    return tuple(items)


def _record_type_for_id(record_id: str | None) -> str | None:
    if record_id is None:
        return None
    if record_id.startswith("inv_"):
        return "invoice"
    if record_id.startswith("pay_"):
        return "payment"
    return None


def _json_object(value: object) -> dict[str, object]:
    if isinstance(value, dict):
        return dict(value)
    if isinstance(value, str):
        parsed = json.loads(value)
        if isinstance(parsed, dict):
            return parsed
    return {}


def _record_get(row: Any, key: str) -> Any:
    try:
        return row[key]
    except KeyError:
        return None


def _as_str(value: object) -> str | None:
    if value is None:
        return None
    return str(value)


def _as_int(value: object, *, default: int = 0) -> int:
    if value is None:
        return default
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, (int, float)):
        return int(value)
    if isinstance(value, str):
        try:
            return int(value)
        except ValueError:
            return default
    return default
