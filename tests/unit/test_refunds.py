import asyncio

import pytest

from xerosync.domain.dto import RefundRequest
from xerosync.domain.errors import DomainValidationError
from xerosync.domain.models import LineItem
from xerosync.domain.sync_policy import InvoicePolicy, SyncPolicy
from xerosync.domain.use_cases.refunds import build_refund_preview, proportional_refund_lines
from xerosync.services.refunds import RefundStagingService
from tests.staging_seed import seeded_repository, stage_paid_purchase

_ITEMS = (
    LineItem(description="Adult membership", line_amount=10000, line_item_type="membership", account_code="400"),
    LineItem(description="Tournament fee", line_amount=5000, line_item_type="registration", account_code="410"),
)


@pytest.mark.unit
def test_proportional_refund_keeps_original_accounts() -> None:
    lines = proportional_refund_lines(_ITEMS, amount=3000)

    assert [(line.description, line.line_amount, line.account_code) for line in lines] == [
        ("Credit: Adult membership", 2000, "400"),
        ("Credit: Tournament fee", 1000, "410"),
    ]


@pytest.mark.unit
def test_proportional_refund_rounding_lands_on_first_line() -> None:
    items = _ITEMS + (LineItem(description="Jersey", line_amount=5000, line_item_type="registration"),)

    lines = proportional_refund_lines(items, amount=1001)

    assert sum(line.line_amount for line in lines) == 1001
    assert [line.line_amount for line in lines] == [501, 250, 250]


@pytest.mark.unit
def test_discount_code_refund_uses_discount_account() -> None:
    refund = RefundRequest(
        refund_type="discount_code",
        discount_code="SPRING25",
        discount_amount=2500,
        discount_category_name="Scholarship",
    )

    preview = build_refund_preview(refund, original_items=_ITEMS, policy=InvoicePolicy(), allow_fallback=False)

    [line] = preview.line_items
    assert line.description == "Credit: Scholarship discount (SPRING25)"
    assert line.account_code == "DISCOUNT"
    assert preview.total_amount == 2500


@pytest.mark.unit
@pytest.mark.parametrize(
    "refund",
    [
        RefundRequest(refund_type="proportional"),
        RefundRequest(refund_type="proportional", amount=0),
        RefundRequest(refund_type="discount_code", discount_amount=100),
        RefundRequest(refund_type="discount_code", discount_code="X"),
    ],
)
def test_invalid_refund_requests_rejected(refund: RefundRequest) -> None:
    with pytest.raises(DomainValidationError):
        build_refund_preview(refund, original_items=_ITEMS, policy=InvoicePolicy(), allow_fallback=True)


@pytest.mark.unit
def test_preview_requires_original_lines_but_staging_falls_back() -> None:
    async def _run() -> None:
        repository = seeded_repository()
        service = RefundStagingService(repository=repository, policy=SyncPolicy())
        refund = RefundRequest(refund_type="proportional", amount=1500)

        with pytest.raises(DomainValidationError):
            await service.preview_refund_staging(payment_id="missing-payment", refund=refund)

        credit_note_id = await service.create_refund_staging(
            refund_id="refund-1",
            payment_id="missing-payment",
            refund=refund,
        )
        credit_note = await repository.get_invoice(invoice_id=credit_note_id)
        assert credit_note is not None
        [line] = credit_note.line_items
        assert line.description == "Refund"
        assert line.account_code == "200"
        assert line.line_amount == 1500

    asyncio.run(_run())


@pytest.mark.unit
def test_refund_staging_is_idempotent_and_completes_once() -> None:
    async def _run() -> None:
        repository = seeded_repository()
        policy = SyncPolicy()
        await stage_paid_purchase(repository, policy, amount=15000, discount=2500)
        service = RefundStagingService(repository=repository, policy=policy)
        refund = RefundRequest(refund_type="proportional", amount=5000)

        preview = await service.preview_refund_staging(payment_id="payment-1", refund=refund)
        assert [line.line_amount for line in preview.line_items] == [6000, -1000]

        first = await service.create_refund_staging(refund_id="refund-1", payment_id="payment-1", refund=refund)
        second = await service.create_refund_staging(refund_id="refund-1", payment_id="payment-1", refund=refund)
        assert first == second

        credit_note = await repository.get_invoice(invoice_id=first)
        assert credit_note is not None
        assert credit_note.is_credit_note
        assert credit_note.sync_status == "staged"
        assert credit_note.user_id == "user-1"
        assert credit_note.staging_metadata["original_payment_id"] == "payment-1"
        assert credit_note.net_amount == 5000

        assert await service.complete_refund_staging(refund_id="refund-1") is True
        assert await service.complete_refund_staging(refund_id="refund-1") is False
        assert await service.complete_refund_staging(refund_id="unknown") is False
        promoted = await repository.get_invoice(invoice_id=first)
        assert promoted is not None and promoted.sync_status == "pending"

    asyncio.run(_run())
