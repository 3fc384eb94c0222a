from __future__ import annotations

from datetime import UTC, datetime, timedelta

from xerosync.domain.dto import PaymentCompletion, PaymentItem, PurchaseStagingCommand
from xerosync.domain.models import UserProfile, XeroTenant
from xerosync.domain.sync_policy import SyncPolicy
from xerosync.repositories.stub import InMemoryStagingRepository
from xerosync.services.staging import StagingWriter

TENANT_ID = "tenant-1"


def make_user(user_id: str = "user-1", *, member_id: str | None = "M100") -> UserProfile:
    return UserProfile(
        user_id=user_id,
        email=f"{user_id}@example.org",
        first_name="Jamie",
        last_name="Skater",
        member_id=member_id,
        stripe_customer_id="cus_123",
        stripe_payment_method_id="pm_123",
    )


def make_tenant(*, expires_in: timedelta = timedelta(minutes=30), updated_at: datetime | None = None) -> XeroTenant:
    now = datetime.now(tz=UTC)
    return XeroTenant(
        tenant_id=TENANT_ID,
        tenant_name="Hockey Association",
        access_token="access-1",
        refresh_token="refresh-1",
        expires_at=now + expires_in,
        updated_at=updated_at or now,
    )


def seeded_repository(*, user_id: str = "user-1") -> InMemoryStagingRepository:
    repository = InMemoryStagingRepository()
    repository.add_user(make_user(user_id))
    repository.add_tenant(make_tenant())
    return repository


def purchase(
    *,
    user_id: str = "user-1",
    payment_id: str | None = "payment-1",
    amount: int = 15000,
    discount: int = 0,
) -> PurchaseStagingCommand:
    items = [PaymentItem(item_type="membership", amount=amount, description="Adult membership", accounting_code="400")]
    if discount:
        items.append(
            PaymentItem(item_type="discount", amount=-discount, description="Scholarship", accounting_code="DISC")
        )
    return PurchaseStagingCommand(
        user_id=user_id,
        total_amount=amount,
        discount_amount=discount,
        final_amount=amount - discount,
        payment_items=tuple(items),
        payment_id=payment_id,
        stripe_payment_intent_id="pi_checkout",
    )


async def stage_paid_purchase(
    repository: InMemoryStagingRepository,
    policy: SyncPolicy,
    *,
    payment_id: str = "payment-1",
    user_id: str = "user-1",
    amount: int = 15000,
    discount: int = 0,
) -> str:
    """Stage a purchase, mark its payment completed and promote it to pending."""
    writer = StagingWriter(repository=repository, policy=policy)
    invoice_id = await writer.create_immediate_staging(
        purchase(user_id=user_id, payment_id=payment_id, amount=amount, discount=discount),
        is_free=False,
    )
    repository.add_payment_record(payment_id=payment_id, user_id=user_id, amount=amount - discount)
    await writer.complete_staged_purchase(
        PaymentCompletion(payment_id=payment_id, stripe_payment_intent_id="pi_checkout", stripe_charge_id="ch_1")
    )
    return invoice_id
