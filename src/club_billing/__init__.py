# club_billing package
__version__ = "0.1.0"

from .database import (
    ReconcileQueueItem,
    Order,
    Entitlement,
    PlanMapping,
    ProcessingStatus,
    OrderStatus,
    EntitlementStatus,
    init_db,
    close_db,
    get_db,
)
from .errors import (
    BillingError,
    NotFoundError,
    MappingNotFound,
    InvalidTrackingKey,
    ClaimConflict,
    PaymentMethodInactive,
    ProviderError,
    ProviderTimeout,
    ProviderRejected,
)

# Reconciliation exports
from .reconciliation import (
    QueueProcessor,
    Materializer,
    AccessGranter,
    PlanMapper,
    RenewalScheduler,
    Detector,
    ReportGenerator,
    compute_window,
    normalize_status,
    parse_tracking_key,
    format_tracking_key,
)
