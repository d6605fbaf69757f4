"""Provider status normalization.

Providers report payment outcomes in several vocabularies (English and Russian
labels, card-network and gateway terms). Everything is folded into five values
at write time; the alias table is kept so comparisons against historical rows
written before normalization still match.
"""

import enum
import logging
from typing import Dict, FrozenSet, Optional, Set

logger = logging.getLogger(__name__)


class NormalizedStatus(str, enum.Enum):
    """Internal payment outcome."""
    PENDING = "pending"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    REFUNDED = "refunded"
    CANCELLED = "cancelled"


STATUS_TABLE: Dict[str, NormalizedStatus] = {
    # succeeded
    "succeeded": NormalizedStatus.SUCCEEDED,
    "successful": NormalizedStatus.SUCCEEDED,
    "success": NormalizedStatus.SUCCEEDED,
    "успешно": NormalizedStatus.SUCCEEDED,
    "completed": NormalizedStatus.SUCCEEDED,
    "processed": NormalizedStatus.SUCCEEDED,
    "captured": NormalizedStatus.SUCCEEDED,
    "paid": NormalizedStatus.SUCCEEDED,
    # refunded
    "refunded": NormalizedStatus.REFUNDED,
    "refund": NormalizedStatus.REFUNDED,
    "возврат": NormalizedStatus.REFUNDED,
    "возврат средств": NormalizedStatus.REFUNDED,
    # cancelled
    "cancelled": NormalizedStatus.CANCELLED,
    "canceled": NormalizedStatus.CANCELLED,
    "cancel": NormalizedStatus.CANCELLED,
    "void": NormalizedStatus.CANCELLED,
    "voided": NormalizedStatus.CANCELLED,
    "authorization_void": NormalizedStatus.CANCELLED,
    "отмена": NormalizedStatus.CANCELLED,
    # failed
    "failed": NormalizedStatus.FAILED,
    "declined": NormalizedStatus.FAILED,
    "expired": NormalizedStatus.FAILED,
    "incomplete": NormalizedStatus.FAILED,
    "error": NormalizedStatus.FAILED,
    "ошибка": NormalizedStatus.FAILED,
    # pending
    "pending": NormalizedStatus.PENDING,
    "processing": NormalizedStatus.PENDING,
    "ожидание": NormalizedStatus.PENDING,
    "requires_action": NormalizedStatus.PENDING,
    "requires_capture": NormalizedStatus.PENDING,
    "requires_confirmation": NormalizedStatus.PENDING,
}


def _key(raw_status: Optional[str]) -> str:
    return (raw_status or "").strip().lower()


def normalize_status(raw_status: Optional[str]) -> NormalizedStatus:
    """Map a provider status string onto the internal enum.

    Unknown values normalize to ``pending`` so the item stays visible to stuck
    detection instead of being dropped.

    Args:
        raw_status: Provider's native status string.

    Returns:
        NormalizedStatus for the value.
    """
    status = STATUS_TABLE.get(_key(raw_status))
    if status is None:
        logger.warning(f"Unknown provider status {raw_status!r}, treating as pending")
        return NormalizedStatus.PENDING
    return status


def status_aliases(status: NormalizedStatus) -> FrozenSet[str]:
    """All stored spellings that mean ``status``, for use in queries."""
    aliases: Set[str] = {status.value}
    aliases.update(raw for raw, value in STATUS_TABLE.items() if value == status)
    return frozenset(aliases)


def statuses_equivalent(left: Optional[str], right: Optional[str]) -> bool:
    """Check whether two raw or normalized values denote the same outcome."""
    return normalize_status(left) == normalize_status(right)
