"""Simulator provider for exercising billing flows without real provider calls."""

import json
import time
import uuid
import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Dict, Any, List, Optional

from ..errors import ProviderError, ProviderTimeout
from .base import ProviderBase, ChargeRequest, ChargeResult, InboundEvent, ProviderSubscription

logger = logging.getLogger(__name__)


class SimulatorScenario(str, Enum):
    """Predefined charge outcomes for the simulator."""
    SUCCESS = "success"
    FAILURE = "failure"
    TIMEOUT = "timeout"
    INSUFFICIENT_FUNDS = "insufficient_funds"


@dataclass
class SimulatedCharge:
    """In-memory record of a simulated charge."""
    id: str
    amount: int
    currency: str
    tracking_key: str
    succeeded: bool
    error_code: Optional[str] = None
    created_at: datetime = field(default_factory=datetime.utcnow)


@dataclass
class SimulatorConfig:
    """Configuration for simulator behavior."""
    # Seconds to block before answering a CARD_TIMEOUT charge; 0 raises immediately
    timeout_delay_seconds: float = 0.0
    # Seconds to block before every answer
    delay_seconds: float = 0.0


class SimulatorConnector(ProviderBase):
    """
    Simulator provider.

    Charge outcomes are driven by the payment method token. Subscriptions live
    in memory so orphan detection and cancellation can be exercised.
    """

    name = "simulator"

    # Special card tokens for triggering specific behaviors
    CARD_SUCCESS = "sim_card_success"
    CARD_DECLINE = "sim_card_decline"
    CARD_INSUFFICIENT = "sim_card_insufficient"
    CARD_TIMEOUT = "sim_card_timeout"

    def __init__(self, config: Optional[SimulatorConfig] = None):
        """Initialize the simulator with optional configuration."""
        self.config = config or SimulatorConfig()
        self.charges: List[SimulatedCharge] = []
        self.subscriptions: Dict[str, ProviderSubscription] = {}
        self.cancelled_subscriptions: List[str] = []

    def _determine_scenario(self, token: str) -> SimulatorScenario:
        card_scenarios = {
            self.CARD_DECLINE: SimulatorScenario.FAILURE,
            self.CARD_INSUFFICIENT: SimulatorScenario.INSUFFICIENT_FUNDS,
            self.CARD_TIMEOUT: SimulatorScenario.TIMEOUT,
        }
        return card_scenarios.get(token, SimulatorScenario.SUCCESS)

    def charge(self, request: ChargeRequest) -> ChargeResult:
        """Charge a simulated card."""
        if self.config.delay_seconds > 0:
            time.sleep(self.config.delay_seconds)

        scenario = self._determine_scenario(request.payment_method_token)
        if scenario == SimulatorScenario.TIMEOUT:
            if self.config.timeout_delay_seconds > 0:
                time.sleep(self.config.timeout_delay_seconds)
            else:
                raise ProviderTimeout("Simulated provider timeout")

        charge_id = f"sim_{uuid.uuid4().hex[:24]}"
        error_code = {
            SimulatorScenario.FAILURE: "declined",
            SimulatorScenario.INSUFFICIENT_FUNDS: "insufficient_funds",
        }.get(scenario)
        succeeded = error_code is None

        self.charges.append(SimulatedCharge(
            id=charge_id,
            amount=request.amount,
            currency=request.currency,
            tracking_key=request.tracking_key,
            succeeded=succeeded,
            error_code=error_code,
        ))
        logger.info(f"Simulated charge {charge_id} for {request.tracking_key}: {scenario.value}")

        return ChargeResult(
            succeeded=succeeded,
            status="succeeded" if succeeded else "failed",
            provider_transaction_id=charge_id,
            error_code=error_code,
            error_message=None if succeeded else f"Simulated {scenario.value}",
        )

    def parse_webhook(self, headers: Dict[str, str], body: bytes) -> Optional[InboundEvent]:
        """Accept an inbound event posted as plain JSON."""
        try:
            payload = json.loads(body)
        except json.JSONDecodeError as e:
            raise ValueError("Webhook body is not valid JSON") from e
        payload.setdefault("provider", self.name)
        return InboundEvent(**payload)

    def add_subscription(
        self,
        subscription_id: str,
        status: str = "active",
        tracking_key: Optional[str] = None,
        plan_title: Optional[str] = None,
        customer_id: Optional[str] = None,
    ) -> ProviderSubscription:
        """Register a provider-side subscription."""
        sub = ProviderSubscription(
            id=subscription_id,
            status=status,
            tracking_key=tracking_key,
            plan_title=plan_title,
            customer_id=customer_id,
            created_at=datetime.utcnow(),
        )
        self.subscriptions[subscription_id] = sub
        return sub

    def list_subscriptions(self) -> List[ProviderSubscription]:
        return list(self.subscriptions.values())

    def cancel_subscription(self, subscription_id: str) -> Dict[str, Any]:
        sub = self.subscriptions.get(subscription_id)
        if sub is None:
            raise ProviderError(f"No such subscription: {subscription_id}", code="resource_missing")
        sub.status = "canceled"
        self.cancelled_subscriptions.append(subscription_id)
        return {"id": subscription_id, "status": sub.status}
