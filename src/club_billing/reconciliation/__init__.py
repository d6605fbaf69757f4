"""Payment reconciliation and entitlement core.

This module turns inbound provider payment events into paid orders and
time-boxed access, and keeps the two sides consistent.

Features:
- Tracking-key codec and provider status normalization
- Plan title to product/tariff mapping with an explicit "no mapping" state
- Idempotent queue processing and order/entitlement materialization
- Calendar-day access window arithmetic
- Auto-renewal charging with bounded retries
- Detection of stuck queue items, unmaterialized money and orphaned subscriptions
"""

from .tracking import (
    TrackingKind,
    TrackingKey,
    parse_tracking_key,
    format_tracking_key,
    canonical_tracking_key,
)
from .status import (
    NormalizedStatus,
    normalize_status,
    status_aliases,
    statuses_equivalent,
)
from .window import AccessWindow, add_calendar_days, compute_window
from .models import (
    QueueAction,
    Resolved,
    NotFound,
    Mismatched,
    FallbackResolution,
    ProcessOutcome,
    BatchResult,
    MaterializeRequest,
    GrantRequest,
    GrantResult,
    RenewalResult,
    RenewalOutcome,
    DiagnosticsReport,
)
from .psp_fetcher import (
    PSPFetcherBase,
    StripeFetcher,
    SimulatorFetcher,
    get_psp_fetcher,
)
from .mapper import PlanMapper
from .access import AccessGranter
from .materializer import Materializer, MaterializeOutcome
from .processor import QueueProcessor, ALLOWED_TRANSITIONS, validate_transition
from .renewals import RenewalScheduler, renewal_attempt_id, renewal_tracking_key
from .detector import Detector
from .report import ReportGenerator

__all__ = [
    # Codec and normalization
    "TrackingKind",
    "TrackingKey",
    "parse_tracking_key",
    "format_tracking_key",
    "canonical_tracking_key",
    "NormalizedStatus",
    "normalize_status",
    "status_aliases",
    "statuses_equivalent",
    # Date arithmetic
    "AccessWindow",
    "add_calendar_days",
    "compute_window",
    # Models
    "QueueAction",
    "Resolved",
    "NotFound",
    "Mismatched",
    "FallbackResolution",
    "ProcessOutcome",
    "BatchResult",
    "MaterializeRequest",
    "GrantRequest",
    "GrantResult",
    "RenewalResult",
    "RenewalOutcome",
    "DiagnosticsReport",
    # Provider fetchers
    "PSPFetcherBase",
    "StripeFetcher",
    "SimulatorFetcher",
    "get_psp_fetcher",
    # Core components
    "PlanMapper",
    "AccessGranter",
    "Materializer",
    "MaterializeOutcome",
    "QueueProcessor",
    "ALLOWED_TRANSITIONS",
    "validate_transition",
    "RenewalScheduler",
    "renewal_attempt_id",
    "renewal_tracking_key",
    "Detector",
    "ReportGenerator",
]
