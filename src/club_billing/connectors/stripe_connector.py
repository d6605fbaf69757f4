import os
import json
import logging
from datetime import datetime
from typing import Dict, Any, Optional

import stripe

from ..errors import ProviderError, ProviderTimeout
from .base import ProviderBase, ChargeRequest, ChargeResult, InboundEvent

logger = logging.getLogger(__name__)

stripe.api_key = os.getenv("STRIPE_API_KEY", "")

# Stripe event types that carry a payment outcome
PAYMENT_EVENT_TYPES = {
    "payment_intent.succeeded",
    "payment_intent.payment_failed",
    "payment_intent.canceled",
    "payment_intent.processing",
    "charge.refunded",
}


class StripeConnector(ProviderBase):
    """
    Stripe connector using stripe-python. Renewals charge a saved
    PaymentMethod off-session through a confirmed PaymentIntent; the tracking
    key travels in PaymentIntent metadata so webhooks and polls can correlate
    the payment back to the entitlement or order.
    """

    name = "stripe"

    def charge(self, request: ChargeRequest) -> ChargeResult:
        try:
            pi = stripe.PaymentIntent.create(
                amount=request.amount,
                currency=request.currency.lower(),
                customer=request.customer_id,
                payment_method=request.payment_method_token,
                off_session=True,
                confirm=True,
                description=request.description,
                metadata={"tracking_key": request.tracking_key, **request.metadata},
                idempotency_key=request.idempotency_key,
            )
        except stripe.CardError as e:
            # declines surface as CardError for off-session confirmations
            return ChargeResult(
                succeeded=False,
                status="failed",
                error_code=e.code or "card_declined",
                error_message=e.user_message or str(e),
            )
        except stripe.APIConnectionError as e:
            # the charge may or may not have gone through upstream
            raise ProviderTimeout(f"Stripe connection failed: {e}") from e
        except stripe.StripeError as e:
            return ChargeResult(
                succeeded=False,
                status="failed",
                error_code=e.code or type(e).__name__,
                error_message=str(e),
            )

        succeeded = pi.status == "succeeded"
        return ChargeResult(
            succeeded=succeeded,
            status="succeeded" if succeeded else ("pending" if pi.status == "processing" else "failed"),
            provider_transaction_id=pi.id,
            error_code=None if succeeded else pi.status,
            raw_provider_response={"id": pi.id, "status": pi.status},
        )

    def parse_webhook(self, headers: Dict[str, str], body: bytes) -> Optional[InboundEvent]:
        # Use STRIPE_WEBHOOK_SECRET env var to verify the signature
        webhook_secret = os.getenv("STRIPE_WEBHOOK_SECRET")
        if webhook_secret:
            sig_header = headers.get("stripe-signature", "")
            try:
                stripe.Webhook.construct_event(payload=body, sig_header=sig_header, secret=webhook_secret)
            except (ValueError, stripe.SignatureVerificationError) as e:
                raise ValueError("Invalid webhook signature") from e

        try:
            event = json.loads(body)
        except json.JSONDecodeError as e:
            raise ValueError("Webhook body is not valid JSON") from e

        event_type = event.get("type")
        if event_type not in PAYMENT_EVENT_TYPES:
            logger.debug(f"Ignoring Stripe event type {event_type}")
            return None

        obj = event.get("data", {}).get("object", {})
        metadata = obj.get("metadata") or {}
        raw_status = "refunded" if event_type == "charge.refunded" else obj.get("status", "")
        if event_type == "payment_intent.payment_failed":
            raw_status = "failed"

        created = obj.get("created") or event.get("created")
        return InboundEvent(
            provider_event_id=event["id"],
            tracking_key=metadata.get("tracking_key", ""),
            raw_status=raw_status,
            plan_title=metadata.get("plan_title"),
            amount=obj.get("amount_received") or obj.get("amount"),
            currency=(obj.get("currency") or "").upper() or None,
            occurred_at=datetime.utcfromtimestamp(created) if created else None,
            provider=self.name,
            raw={"type": event_type, "object_id": obj.get("id")},
        )

    def cancel_subscription(self, subscription_id: str) -> Dict[str, Any]:
        try:
            sub = stripe.Subscription.cancel(subscription_id)
        except stripe.StripeError as e:
            logger.error(f"Failed to cancel Stripe subscription {subscription_id}: {e}")
            raise ProviderError(f"Failed to cancel subscription: {e}", code=e.code) from e
        return {"id": sub.id, "status": sub.status}
