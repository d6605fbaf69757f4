"""Entitlement access-window arithmetic.

Pure functions only: nothing here touches the database, so every rule can be
exercised directly in unit tests.

All datetimes in the service are naive UTC (``datetime.utcnow()``). Day
arithmetic is done on the calendar of ``access_timezone`` so a 30-day grant
ends at the same local wall-clock time across DST changes.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional, Protocol
from zoneinfo import ZoneInfo


class EntitlementState(Protocol):
    """The parts of an entitlement the calculator reads."""
    status: str
    access_end_at: Optional[datetime]


@dataclass(frozen=True)
class AccessWindow:
    """A computed access period."""
    start: datetime
    end: datetime

    def is_retroactive(self, now: datetime) -> bool:
        """True when the window starts in the past (e.g. a deal paid days ago)."""
        return self.start < now

    @property
    def days(self) -> int:
        return (self.end - self.start).days


def to_naive_utc(moment: datetime) -> datetime:
    """Normalize an aware datetime to naive UTC; naive values pass through."""
    if moment.tzinfo is None:
        return moment
    return moment.astimezone(timezone.utc).replace(tzinfo=None)


def add_calendar_days(moment: datetime, days: int, tz_name: str = "UTC") -> datetime:
    """Add calendar days in ``tz_name``, returning naive UTC.

    Args:
        moment: Naive UTC (or aware) datetime.
        days: Number of calendar days to add. May be negative.
        tz_name: IANA zone whose calendar defines a day.

    Returns:
        Naive UTC datetime at the same local wall-clock time ``days`` later.
    """
    zone = ZoneInfo(tz_name)
    local = to_naive_utc(moment).replace(tzinfo=timezone.utc).astimezone(zone)
    # Aware + timedelta keeps the local wall clock; the offset is recomputed
    # on conversion back to UTC.
    shifted = local + timedelta(days=days)
    return shifted.astimezone(timezone.utc).replace(tzinfo=None)


def compute_window(
    existing: Optional[EntitlementState],
    tariff_days: int,
    requested_start: Optional[datetime],
    extend_from_current: bool,
    now: datetime,
    tz_name: str = "UTC",
) -> AccessWindow:
    """Compute the access window for a grant.

    Rules, in order:

    1. With ``extend_from_current`` and an active ``existing`` entitlement that
       ends after ``now``, the new window starts where the current one ends.
    2. Otherwise the window starts at ``requested_start``; failing that, at the
       end of a still-running (non-cancelled) entitlement when extending; and
       failing that, at ``now``.
    3. The window lasts ``tariff_days`` calendar days.

    Args:
        existing: Current entitlement for the same user and product, if any.
        tariff_days: Length of the grant in days. Must be positive.
        requested_start: Explicit start (custom start or payment time).
        extend_from_current: Whether to append to the current entitlement.
        now: Reference time, naive UTC.
        tz_name: Zone whose calendar defines a day.

    Returns:
        AccessWindow with ``end > start``.

    Raises:
        ValueError: If ``tariff_days`` is not positive.
    """
    if tariff_days <= 0:
        raise ValueError(f"tariff_days must be positive, got {tariff_days}")

    now = to_naive_utc(now)
    current_end = to_naive_utc(existing.access_end_at) if existing and existing.access_end_at else None

    if (
        extend_from_current
        and existing is not None
        and existing.status == "active"
        and current_end is not None
        and current_end > now
    ):
        start = current_end
    elif requested_start is not None:
        start = to_naive_utc(requested_start)
    elif (
        extend_from_current
        and existing is not None
        and existing.status != "cancelled"
        and current_end is not None
        and current_end > now
    ):
        start = current_end
    else:
        start = now

    return AccessWindow(start=start, end=add_calendar_days(start, tariff_days, tz_name))
