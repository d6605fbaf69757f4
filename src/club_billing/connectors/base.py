from abc import ABC, abstractmethod
from datetime import datetime
from typing import Optional, Dict, Any
from pydantic import BaseModel, Field


# Canonical models
class InboundEvent(BaseModel):
    """A provider payment event, identical whether pushed by webhook or pulled by a poll."""
    provider_event_id: str = Field(..., min_length=1, description="Provider's unique event id")
    tracking_key: str = Field(..., description="Opaque key correlating the payment to an order or link")
    raw_status: str = Field(..., description="Provider's native status string")
    plan_title: Optional[str] = Field(None, description="Provider plan/product label")
    amount: Optional[int] = Field(None, ge=0, description="Amount in minor units")
    currency: Optional[str] = Field(None, min_length=3, max_length=3)
    occurred_at: Optional[datetime] = Field(None, description="When the payment happened")
    provider: str = "stripe"
    raw: Optional[Dict[str, Any]] = None


class ChargeRequest(BaseModel):
    amount: int  # minor units
    currency: str
    payment_method_token: str
    customer_id: Optional[str] = None
    tracking_key: str
    idempotency_key: str
    description: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


class ChargeResult(BaseModel):
    succeeded: bool
    status: str  # succeeded|failed|pending
    provider_transaction_id: Optional[str] = None
    error_code: Optional[str] = None
    error_message: Optional[str] = None
    raw_provider_response: Optional[Dict[str, Any]] = None


class ProviderSubscription(BaseModel):
    """A recurring subscription as the provider sees it."""
    id: str
    status: str
    customer_id: Optional[str] = None
    plan_title: Optional[str] = None
    tracking_key: Optional[str] = None
    created_at: Optional[datetime] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


class ProviderBase(ABC):
    """
    Minimal provider interface. Implementations should be side-effect free
    until the method makes a network call to the provider.
    """

    name: str = "base"

    @abstractmethod
    def charge(self, request: ChargeRequest) -> ChargeResult:
        """
        Charge a stored payment method off-session. A declined card is a
        result, not an exception; transport failures raise ProviderTimeout.
        """
        raise NotImplementedError

    @abstractmethod
    def parse_webhook(self, headers: Dict[str, str], body: bytes) -> Optional[InboundEvent]:
        """
        Validate a webhook payload; return the canonical event, or None for
        event types that carry no payment outcome.
        """
        raise NotImplementedError

    @abstractmethod
    def cancel_subscription(self, subscription_id: str) -> Dict[str, Any]:
        raise NotImplementedError
