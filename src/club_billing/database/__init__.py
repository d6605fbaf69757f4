"""Database module for reconciliation and entitlement persistence."""

from .models import (
    Base,
    ReconcileQueueItem,
    Order,
    Entitlement,
    EntitlementGrant,
    PlanMapping,
    Tariff,
    PaymentMethod,
    ChargeAttempt,
    AuditLog,
    ProcessingStatus,
    OrderStatus,
    EntitlementStatus,
    PaymentMethodStatus,
)
from .session import (
    get_db,
    get_database_url,
    get_session_factory,
    init_db,
    close_db,
    create_async_engine,
    get_async_session_factory,
)
from .repository import (
    QueueItemRepository,
    OrderRepository,
    EntitlementRepository,
    PlanMappingRepository,
    TariffRepository,
    PaymentMethodRepository,
    ChargeAttemptRepository,
    AuditLogRepository,
    plan_key_for,
)

__all__ = [
    # Models
    "Base",
    "ReconcileQueueItem",
    "Order",
    "Entitlement",
    "EntitlementGrant",
    "PlanMapping",
    "Tariff",
    "PaymentMethod",
    "ChargeAttempt",
    "AuditLog",
    "ProcessingStatus",
    "OrderStatus",
    "EntitlementStatus",
    "PaymentMethodStatus",
    # Session management
    "get_db",
    "get_database_url",
    "get_session_factory",
    "init_db",
    "close_db",
    "create_async_engine",
    "get_async_session_factory",
    # Repositories
    "QueueItemRepository",
    "OrderRepository",
    "EntitlementRepository",
    "PlanMappingRepository",
    "TariffRepository",
    "PaymentMethodRepository",
    "ChargeAttemptRepository",
    "AuditLogRepository",
    "plan_key_for",
]
