"""Exception taxonomy for the billing core."""

from typing import Optional


class BillingError(Exception):
    """Base class for all billing core errors."""


class NotFoundError(BillingError):
    """Raised when a referenced entity does not exist."""

    def __init__(self, entity: str, entity_id: str):
        self.entity = entity
        self.entity_id = entity_id
        super().__init__(f"{entity} {entity_id} not found")


class MappingNotFound(BillingError):
    """Raised by operator actions that require a plan mapping which does not exist.

    The queue processor never raises this; an unmapped plan title routes the
    item to ``pending_needs_mapping`` instead.
    """

    def __init__(self, plan_title: Optional[str]):
        self.plan_title = plan_title
        super().__init__(f"No active plan mapping for {plan_title!r}")


class InvalidTrackingKey(BillingError, ValueError):
    """Raised when encoding a tracking key from invalid parts."""


class ClaimConflict(BillingError):
    """Raised when an entitlement is already claimed by another renewal run."""


class PaymentMethodInactive(BillingError):
    """Raised when a renewal cannot proceed because the card is missing or unusable."""

    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(reason)


class ProviderError(BillingError):
    """Base class for failures reported by the payment provider."""

    def __init__(self, message: str, code: Optional[str] = None):
        self.code = code
        super().__init__(message)


class ProviderTimeout(ProviderError):
    """The provider did not answer within the configured timeout.

    The charge outcome is unknown; it may still have succeeded upstream.
    """

    def __init__(self, message: str = "Provider call timed out"):
        super().__init__(message, code="timeout")


class ProviderRejected(ProviderError):
    """The provider answered and declined the charge."""


class CollaboratorError(BillingError):
    """An access collaborator (Telegram, LMS) failed to apply a grant."""
