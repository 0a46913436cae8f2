from decimal import Decimal

import stripe
import structlog
from fastapi.concurrency import run_in_threadpool
from pydantic import ValidationError

from zapshift.errors import ExternalServiceError, InvalidInput, MalformedSession
from zapshift.models import Parcel
from zapshift.schemas import PaymentSession

logger = structlog.get_logger(__name__)


def _field(obj, key):
    try:
        return obj[key]
    except (KeyError, TypeError):
        return None


def _to_payment_session(raw) -> PaymentSession:
    metadata = _field(raw, "metadata") or {}
    intent = _field(raw, "payment_intent")
    if intent is not None and not isinstance(intent, str):
        intent = _field(intent, "id")
    email = _field(raw, "customer_email") or _field(_field(raw, "customer_details"), "email")
    return PaymentSession(
        id=_field(raw, "id"),
        payment_status=_field(raw, "payment_status"),
        payment_intent=intent,
        amount_total=_field(raw, "amount_total"),
        currency=_field(raw, "currency"),
        customer_email=email,
        parcel_id=_field(metadata, "parcelId"),
        parcel_name=_field(metadata, "parcelName"),
    )


class PaymentSessionVerifier:
    """Stripe Checkout access: session lookup, session creation, webhook verification."""

    def __init__(self, api_key: str | None, webhook_secret: str | None, currency: str = "usd"):
        stripe.api_key = api_key
        self.webhook_secret = webhook_secret
        self.currency = currency

    async def resolve(self, session_id: str) -> PaymentSession:
        if not session_id:
            raise ExternalServiceError("Missing checkout session reference")
        try:
            raw = await run_in_threadpool(stripe.checkout.Session.retrieve, session_id)
        except stripe.StripeError as exc:
            logger.warning("stripe_session_retrieve_failed", session_id=session_id, error=str(exc))
            raise ExternalServiceError(f"Could not verify checkout session {session_id}") from exc

        try:
            return _to_payment_session(raw)
        except ValidationError as exc:
            logger.error("stripe_session_malformed", session_id=session_id, error=str(exc))
            raise MalformedSession(f"Checkout session {session_id} is malformed") from exc

    async def create_checkout_session(self, parcel: Parcel, success_url: str, cancel_url: str) -> str:
        unit_amount = int((Decimal(parcel.cost) * 100).to_integral_value())
        try:
            session = await run_in_threadpool(
                stripe.checkout.Session.create,
                line_items=[
                    {
                        "price_data": {
                            "currency": self.currency,
                            "unit_amount": unit_amount,
                            "product_data": {"name": f"Please pay for: {parcel.parcel_name}"},
                        },
                        "quantity": 1,
                    }
                ],
                mode="payment",
                customer_email=parcel.sender_email,
                metadata={"parcelId": parcel.id, "parcelName": parcel.parcel_name},
                success_url=success_url,
                cancel_url=cancel_url,
            )
        except stripe.StripeError as exc:
            logger.warning("stripe_session_create_failed", parcel_id=parcel.id, error=str(exc))
            raise ExternalServiceError("Could not create checkout session") from exc

        logger.info("checkout_session_created", parcel_id=parcel.id, session_id=session["id"])
        return session["url"]

    def construct_event(self, payload: bytes, signature: str | None):
        try:
            return stripe.Webhook.construct_event(payload, signature, self.webhook_secret)
        except ValueError:
            raise InvalidInput("Invalid payload")
        except stripe.SignatureVerificationError:
            raise InvalidInput("Invalid signature")
