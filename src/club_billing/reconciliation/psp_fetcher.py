"""Provider read-side fetching for reconciliation polls and orphan detection."""

import os
import logging
from abc import ABC, abstractmethod
from datetime import datetime
from typing import List, Optional, Dict, Any

import stripe

from ..connectors.base import InboundEvent, ProviderSubscription
from ..connectors.simulator_connector import SimulatorConnector

logger = logging.getLogger(__name__)

# Subscription statuses that still bill or grant access provider-side
LIVE_SUBSCRIPTION_STATUSES = frozenset(["active", "trialing", "past_due", "unpaid"])


class PSPFetcherBase(ABC):
    """Base class for provider fetchers."""

    @abstractmethod
    def fetch_events(
        self,
        start_time: datetime,
        end_time: datetime,
        limit: int = 100,
    ) -> List[InboundEvent]:
        """Fetch payment events within the given time range.

        Args:
            start_time: Start of the time range.
            end_time: End of the time range.
            limit: Maximum number of records per page.

        Returns:
            List of InboundEvent objects, same shape as webhook deliveries.
        """
        raise NotImplementedError

    @abstractmethod
    def list_subscriptions(self) -> List[ProviderSubscription]:
        """List live provider-side subscriptions."""
        raise NotImplementedError


class StripeFetcher(PSPFetcherBase):
    """Stripe fetcher for reconciliation polls and subscription audits."""

    def __init__(self, api_key: Optional[str] = None):
        """Initialize the Stripe fetcher.

        Args:
            api_key: Stripe API key. Falls back to STRIPE_API_KEY env var.

        Raises:
            ValueError: If no API key is provided or found.
        """
        self._api_key = api_key or os.getenv("STRIPE_API_KEY")
        if not self._api_key:
            raise ValueError(
                "STRIPE_API_KEY must be provided either as argument or environment variable"
            )

    def _configure_stripe(self) -> None:
        stripe.api_key = self._api_key

    @staticmethod
    def _metadata(obj: Any) -> Dict[str, Any]:
        metadata = getattr(obj, "metadata", None)
        return dict(metadata) if metadata else {}

    def _convert_payment_intent(self, payment_intent: Any) -> Optional[InboundEvent]:
        """Convert a Stripe PaymentIntent to an InboundEvent.

        PaymentIntents without a tracking key were not created through this
        service and are skipped.
        """
        metadata = self._metadata(payment_intent)
        tracking_key = metadata.get("tracking_key")
        if not tracking_key:
            return None
        return InboundEvent(
            provider_event_id=payment_intent.id,
            tracking_key=tracking_key,
            raw_status=payment_intent.status,
            plan_title=metadata.get("plan_title"),
            amount=payment_intent.amount,
            currency=payment_intent.currency.upper(),
            occurred_at=datetime.utcfromtimestamp(payment_intent.created),
            provider="stripe",
        )

    def fetch_events(
        self,
        start_time: datetime,
        end_time: datetime,
        limit: int = 100,
    ) -> List[InboundEvent]:
        """Fetch PaymentIntents from Stripe within the given time range.

        Uses Stripe's list pagination to fetch all matching records.
        """
        self._configure_stripe()

        events: List[InboundEvent] = []
        logger.info(
            f"Fetching Stripe payments from {start_time.isoformat()} "
            f"to {end_time.isoformat()}"
        )

        try:
            payment_intents = stripe.PaymentIntent.list(
                created={
                    "gte": int(start_time.timestamp()),
                    "lte": int(end_time.timestamp()),
                },
                limit=min(limit, 100),  # Stripe max is 100
            )
            for pi in payment_intents.auto_paging_iter():
                event = self._convert_payment_intent(pi)
                if event is not None:
                    events.append(event)
        except stripe.AuthenticationError as e:
            logger.error("Stripe authentication failed")
            raise ValueError("Invalid Stripe API key") from e
        except stripe.APIConnectionError as e:
            logger.error("Failed to connect to Stripe API")
            raise ConnectionError("Failed to connect to Stripe API") from e
        except stripe.StripeError as e:
            logger.error(f"Stripe API error: {type(e).__name__}")
            raise RuntimeError(f"Stripe API error: {e}") from e

        logger.info(f"Fetched {len(events)} tracked payments from Stripe")
        return events

    def list_subscriptions(self) -> List[ProviderSubscription]:
        """List live Stripe subscriptions."""
        self._configure_stripe()

        subscriptions: List[ProviderSubscription] = []
        try:
            for sub in stripe.Subscription.list(status="all", limit=100).auto_paging_iter():
                if sub.status not in LIVE_SUBSCRIPTION_STATUSES:
                    continue
                metadata = self._metadata(sub)
                subscriptions.append(ProviderSubscription(
                    id=sub.id,
                    status=sub.status,
                    customer_id=sub.customer if isinstance(sub.customer, str) else None,
                    plan_title=metadata.get("plan_title"),
                    tracking_key=metadata.get("tracking_key"),
                    created_at=datetime.utcfromtimestamp(sub.created),
                    metadata=metadata,
                ))
        except stripe.APIConnectionError as e:
            logger.error("Failed to connect to Stripe API")
            raise ConnectionError("Failed to connect to Stripe API") from e
        except stripe.StripeError as e:
            logger.error(f"Stripe API error: {type(e).__name__}")
            raise RuntimeError(f"Stripe API error: {e}") from e

        logger.info(f"Fetched {len(subscriptions)} live subscriptions from Stripe")
        return subscriptions


class SimulatorFetcher(PSPFetcherBase):
    """Fetcher backed by a SimulatorConnector's in-memory state."""

    def __init__(self, connector: SimulatorConnector, events: Optional[List[InboundEvent]] = None):
        self.connector = connector
        self.events = list(events or [])

    def fetch_events(
        self,
        start_time: datetime,
        end_time: datetime,
        limit: int = 100,
    ) -> List[InboundEvent]:
        return [
            e for e in self.events
            if e.occurred_at is None or start_time <= e.occurred_at <= end_time
        ]

    def list_subscriptions(self) -> List[ProviderSubscription]:
        return [
            s for s in self.connector.list_subscriptions()
            if s.status in LIVE_SUBSCRIPTION_STATUSES
        ]


def get_psp_fetcher(
    provider: str = "stripe",
    api_key: Optional[str] = None,
    simulator: Optional[SimulatorConnector] = None,
) -> PSPFetcherBase:
    """Factory function to get the appropriate fetcher.

    Args:
        provider: Provider name.
        api_key: Optional API key for the provider.
        simulator: Simulator instance to read from when provider is ``simulator``.

    Returns:
        PSPFetcherBase implementation for the provider.

    Raises:
        ValueError: If the provider is not supported.
    """
    provider = provider.lower()
    if provider == "stripe":
        return StripeFetcher(api_key=api_key)
    if provider == "simulator":
        return SimulatorFetcher(simulator or SimulatorConnector())
    raise ValueError(f"Unsupported PSP provider: {provider}")
