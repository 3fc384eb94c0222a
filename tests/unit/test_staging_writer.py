import asyncio

import pytest

from xerosync.domain.dto import PaymentCompletion, PaymentItem, PurchaseStagingCommand
from xerosync.domain.errors import DomainValidationError
from xerosync.domain.sync_policy import SyncPolicy
from xerosync.services.staging import StagingWriter, purchase_line_items, validate_purchase
from tests.staging_seed import purchase, seeded_repository


@pytest.mark.unit
def test_paid_purchase_is_staged_until_payment_completes() -> None:
    async def _run() -> None:
        repository = seeded_repository()
        writer = StagingWriter(repository=repository, policy=SyncPolicy())

        invoice_id = await writer.create_immediate_staging(purchase(discount=2500), is_free=False)

        invoice = await repository.get_invoice(invoice_id=invoice_id)
        assert invoice is not None
        assert invoice.sync_status == "staged"
        assert invoice.invoice_status == "DRAFT"
        assert invoice.net_amount == 12500
        assert invoice.user_id == "user-1"
        assert [item.line_amount for item in invoice.line_items] == [15000, -2500]

        payments = await repository.list_payments_for_invoice(invoice_id=invoice_id)
        assert len(payments) == 1
        assert payments[0].sync_status == "staged"
        assert payments[0].amount_paid == 12500
        assert payments[0].payment_type == "full"

    asyncio.run(_run())


@pytest.mark.unit
def test_free_purchase_goes_straight_to_pending_without_payment() -> None:
    async def _run() -> None:
        repository = seeded_repository()
        writer = StagingWriter(repository=repository, policy=SyncPolicy())

        invoice_id = await writer.create_immediate_staging(purchase(amount=5000, discount=5000), is_free=True)

        invoice = await repository.get_invoice(invoice_id=invoice_id)
        assert invoice is not None
        assert invoice.sync_status == "pending"
        assert invoice.invoice_status == "AUTHORISED"
        assert invoice.net_amount == 0
        assert await repository.list_payments_for_invoice(invoice_id=invoice_id) == []

    asyncio.run(_run())


@pytest.mark.unit
def test_completion_promotes_invoice_and_payment_with_stripe_details() -> None:
    async def _run() -> None:
        repository = seeded_repository()
        repository.set_accounting_code(code_type="stripe_bank_account", accounting_code="091")
        writer = StagingWriter(repository=repository, policy=SyncPolicy())
        invoice_id = await writer.create_immediate_staging(purchase(), is_free=False)

        promoted = await writer.complete_staged_purchase(
            PaymentCompletion(payment_id="payment-1", stripe_payment_intent_id="pi_1", stripe_charge_id="ch_1")
        )

        assert promoted == 2
        invoice = await repository.get_invoice(invoice_id=invoice_id)
        assert invoice is not None and invoice.sync_status == "pending"
        [payment] = await repository.list_payments_for_invoice(invoice_id=invoice_id)
        assert payment.sync_status == "pending"
        assert payment.bank_account_code == "091"
        assert payment.staging_metadata["stripe_charge_id"] == "ch_1"
        assert payment.staging_metadata["payment_id"] == "payment-1"

        # A second completion for the same payment finds nothing left to promote.
        again = await writer.complete_staged_purchase(PaymentCompletion(payment_id="payment-1"))
        assert again == 0

    asyncio.run(_run())


@pytest.mark.unit
def test_abandoned_purchase_is_ignored() -> None:
    async def _run() -> None:
        repository = seeded_repository()
        writer = StagingWriter(repository=repository, policy=SyncPolicy())
        invoice_id = await writer.create_immediate_staging(purchase(), is_free=False)

        assert await writer.abandon_staged_purchase(payment_id="payment-1") == 2
        assert await writer.abandon_staged_purchase(payment_id="payment-1") == 0

        invoice = await repository.get_invoice(invoice_id=invoice_id)
        assert invoice is not None and invoice.sync_status == "ignore"
        [payment] = await repository.list_payments_for_invoice(invoice_id=invoice_id)
        assert payment.sync_status == "ignore"

    asyncio.run(_run())


@pytest.mark.unit
def test_paid_purchase_staging_returns_existing_invoice() -> None:
    async def _run() -> None:
        repository = seeded_repository()
        writer = StagingWriter(repository=repository, policy=SyncPolicy())

        assert await writer.create_paid_purchase_staging(payment_id="payment-1") is None
        invoice_id = await writer.create_immediate_staging(purchase(), is_free=False)
        existing = await writer.create_paid_purchase_staging(payment_id="payment-1")
        assert existing is not None and existing.id == invoice_id

    asyncio.run(_run())


@pytest.mark.unit
def test_purchase_validation_rejects_inconsistent_amounts() -> None:
    command = purchase(discount=2500)
    broken = PurchaseStagingCommand(
        user_id=command.user_id,
        total_amount=15000,
        discount_amount=2500,
        final_amount=15000,
        payment_items=command.payment_items,
    )
    with pytest.raises(DomainValidationError, match="final_amount"):
        validate_purchase(broken)

    missing_items = PurchaseStagingCommand(
        user_id="user-1",
        total_amount=0,
        discount_amount=0,
        final_amount=0,
        payment_items=(),
    )
    with pytest.raises(DomainValidationError, match="payment item"):
        validate_purchase(missing_items)


@pytest.mark.unit
def test_line_items_fall_back_to_default_revenue_account() -> None:
    no_code = PurchaseStagingCommand(
        user_id="user-1",
        total_amount=2000,
        discount_amount=0,
        final_amount=2000,
        payment_items=(PaymentItem(item_type="donation", amount=2000, description=""),),
    )

    [line] = purchase_line_items(no_code, policy=SyncPolicy())

    assert line.account_code == "200"
    assert line.description == "donation purchase"
    assert line.tax_type == "NONE"
