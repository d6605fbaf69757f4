"""Payment provider connectors."""

from typing import Optional

from .base import (
    ProviderBase,
    InboundEvent,
    ChargeRequest,
    ChargeResult,
    ProviderSubscription,
)
from .stripe_connector import StripeConnector
from .simulator_connector import (
    SimulatorConnector,
    SimulatorConfig,
    SimulatorScenario,
    SimulatedCharge,
)


def get_connector(provider: str = "stripe", simulator: Optional[SimulatorConnector] = None) -> ProviderBase:
    """Factory returning the connector for a provider name.

    Raises:
        ValueError: If the provider is not supported.
    """
    provider = (provider or "").lower()
    if provider == "stripe":
        return StripeConnector()
    if provider == "simulator":
        return simulator or SimulatorConnector()
    raise ValueError(f"Unsupported provider: {provider}")


__all__ = [
    # Base classes and models
    "ProviderBase",
    "InboundEvent",
    "ChargeRequest",
    "ChargeResult",
    "ProviderSubscription",
    # Connectors
    "StripeConnector",
    "SimulatorConnector",
    "SimulatorConfig",
    "SimulatorScenario",
    "SimulatedCharge",
    "get_connector",
]
