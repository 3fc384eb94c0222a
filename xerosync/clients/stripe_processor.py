from __future__ import annotations

from dataclasses import dataclass
import logging
import os

import stripe

from xerosync.domain.dto import ChargeResult
from xerosync.domain.errors import PaymentProcessorError

logger = logging.getLogger("runtime")


@dataclass
class StripePaymentProcessor:
    """Charges saved payment methods off-session through the PaymentIntents API."""

    secret_key: str
    currency: str = "usd"

    async def charge_installment(
        self,
        *,
        amount: int,
        customer_id: str,
        payment_method_id: str,
        idempotency_key: str,
        metadata: dict[str, str],
    ) -> ChargeResult:
        try:
            intent = await stripe.PaymentIntent.create_async(
                api_key=self.secret_key,
                idempotency_key=idempotency_key,
                amount=amount,
                currency=self.currency,
                customer=customer_id,
                payment_method=payment_method_id,
                off_session=True,
                confirm=True,
                metadata=metadata,
            )
        except (stripe.CardError, stripe.InvalidRequestError) as exc:
            logger.info(
                "installment charge declined",
                extra={"operation": "charge_installment", "error_code": exc.code},
            )
            return ChargeResult(succeeded=False, failure_reason=exc.user_message or str(exc))
        except stripe.StripeError as exc:
            # Connection errors, bad gateway pages and Stripe outages all land here.
            raise PaymentProcessorError(f"Stripe request failed: {exc.user_message or exc}") from exc

        if intent.status != "succeeded":
            return ChargeResult(
                succeeded=False,
                payment_intent_id=intent.id,
                failure_reason=f"Payment status: {intent.status}",
            )
        return ChargeResult(
            succeeded=True,
            payment_intent_id=intent.id,
            charge_id=_charge_id(getattr(intent, "latest_charge", None)),
        )


def _charge_id(latest_charge: object) -> str | None:
    if latest_charge is None:
        return None
    if isinstance(latest_charge, str):
        return latest_charge
    # Expanded charge object.
    return str(latest_charge["id"])


def build_stripe_processor_from_env() -> StripePaymentProcessor | None:
    secret_key = os.getenv("STRIPE_SECRET_KEY")
    if not secret_key:
        return None
    return StripePaymentProcessor(secret_key=secret_key)
