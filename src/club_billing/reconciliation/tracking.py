"""Tracking-key codec.

A tracking key correlates a provider-side payment or subscription event to an
internal entity. Three shapes are in circulation::

    link:order:<order_id>   an internal order
    link:<link_id>          a stand-alone payment link
    <order_ref>             a bare order id or order number

Decoding never raises. Keys that carry a prefix but no identifier decode as a
link with whatever remains, flagged as malformed, so callers always have a
lookup value to try.
"""

import enum
import logging
from dataclasses import dataclass
from typing import Optional, Union

from ..errors import InvalidTrackingKey

logger = logging.getLogger(__name__)

LINK_PREFIX = "link:"
ORDER_PREFIX = "link:order:"


class TrackingKind(str, enum.Enum):
    """What a tracking key points at."""
    ORDER = "order"
    LINK = "link"


@dataclass(frozen=True)
class TrackingKey:
    """A decoded tracking key."""
    kind: TrackingKind
    value: str
    malformed: bool = False

    @property
    def order_id(self) -> Optional[str]:
        return self.value if self.kind == TrackingKind.ORDER else None

    @property
    def link_id(self) -> Optional[str]:
        return self.value if self.kind == TrackingKind.LINK else None

    @property
    def canonical(self) -> str:
        """Encoded form used as the unique order key.

        Malformed keys have no well-formed encoding, so the raw remainder is
        kept under the link prefix.
        """
        if self.malformed:
            return f"{LINK_PREFIX}{self.value}"
        return format_tracking_key(self.kind, self.value)


def parse_tracking_key(key: Optional[str]) -> TrackingKey:
    """Decode a tracking key.

    Args:
        key: Raw tracking key as received from the provider.

    Returns:
        TrackingKey. Never raises.
    """
    raw = (key or "").strip()

    if raw.startswith(ORDER_PREFIX):
        order_id = raw[len(ORDER_PREFIX):]
        if order_id:
            return TrackingKey(kind=TrackingKind.ORDER, value=order_id)
        logger.warning(f"Malformed tracking key {key!r}: empty order id")
        return TrackingKey(kind=TrackingKind.LINK, value=raw[len(LINK_PREFIX):], malformed=True)

    if raw.startswith(LINK_PREFIX):
        link_id = raw[len(LINK_PREFIX):]
        if link_id:
            return TrackingKey(kind=TrackingKind.LINK, value=link_id)
        logger.warning(f"Malformed tracking key {key!r}: empty link id")
        return TrackingKey(kind=TrackingKind.LINK, value="", malformed=True)

    if raw:
        return TrackingKey(kind=TrackingKind.ORDER, value=raw)

    logger.warning("Malformed tracking key: empty value")
    return TrackingKey(kind=TrackingKind.LINK, value="", malformed=True)


def format_tracking_key(kind: Union[TrackingKind, str], entity_id: str) -> str:
    """Encode a tracking key.

    Args:
        kind: ``order`` or ``link``.
        entity_id: Order id or payment link id.

    Returns:
        Encoded key that decodes back to ``(kind, entity_id)``.

    Raises:
        InvalidTrackingKey: If the kind is unknown or the id cannot round-trip.
    """
    try:
        kind = TrackingKind(kind)
    except ValueError as e:
        raise InvalidTrackingKey(f"Unknown tracking key kind: {kind!r}") from e

    if not entity_id or entity_id != entity_id.strip():
        raise InvalidTrackingKey(f"Invalid {kind.value} id: {entity_id!r}")

    if kind == TrackingKind.ORDER:
        return f"{ORDER_PREFIX}{entity_id}"

    # A link id that starts with "order:" would decode as an order.
    if entity_id.startswith("order:"):
        raise InvalidTrackingKey(f"Link id may not start with 'order:': {entity_id!r}")
    return f"{LINK_PREFIX}{entity_id}"


def canonical_tracking_key(key: Optional[str]) -> str:
    """Return the canonical encoding of any raw tracking key."""
    return parse_tracking_key(key).canonical
