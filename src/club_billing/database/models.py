"""SQLAlchemy models for reconciliation and entitlement persistence."""

import uuid
import json
from datetime import datetime
from typing import Optional, Dict, Any, List

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    String,
    Integer,
    DateTime,
    ForeignKey,
    Text,
    Index,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
import enum


class Base(DeclarativeBase):
    """Base class for all models."""
    pass


class ProcessingStatus(str, enum.Enum):
    """Where a queue item stands in reconciliation."""
    PENDING = "pending"
    PENDING_NEEDS_MAPPING = "pending_needs_mapping"
    PROCESSED = "processed"
    ERROR = "error"


class OrderStatus(str, enum.Enum):
    """Internal order lifecycle."""
    PENDING = "pending"
    PAID = "paid"
    PARTIAL = "partial"
    CANCELLED = "cancelled"


class EntitlementStatus(str, enum.Enum):
    """Entitlement lifecycle. ``cancelled`` is the tombstone."""
    TRIAL = "trial"
    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELLED = "cancelled"


class PaymentMethodStatus(str, enum.Enum):
    """Stored card health."""
    ACTIVE = "active"
    REVOKED = "revoked"
    EXPIRED = "expired"


def _json_get(raw: Optional[str]) -> Optional[Dict[str, Any]]:
    if raw:
        return json.loads(raw)
    return None


def _json_set(value: Optional[Dict[str, Any]]) -> Optional[str]:
    if value is not None:
        return json.dumps(value, default=str)
    return None


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


class ReconcileQueueItem(Base):
    """One inbound provider event awaiting reconciliation."""
    __tablename__ = "reconcile_queue"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    provider_event_id: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    provider: Mapped[str] = mapped_column(String(50), nullable=False, default="stripe")
    source: Mapped[str] = mapped_column(String(20), nullable=False, default="webhook")
    tracking_key: Mapped[str] = mapped_column(String(255), nullable=False, index=True)

    raw_status: Mapped[str] = mapped_column(String(64), nullable=False)
    status_normalized: Mapped[str] = mapped_column(String(20), nullable=False)
    processing_status: Mapped[str] = mapped_column(
        String(32), nullable=False, default=ProcessingStatus.PENDING.value
    )
    # Cause shown to operators for needs-mapping and error states
    status_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    plan_title: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    plan_key: Mapped[Optional[str]] = mapped_column(String(255), nullable=True, index=True)
    amount: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    currency: Mapped[Optional[str]] = mapped_column(String(3), nullable=True)
    occurred_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    matched_order_id: Mapped[Optional[str]] = mapped_column(String(36), ForeignKey("orders.id"), nullable=True)

    attempt_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    last_attempted_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    processed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    raw_payload_json: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        Index("ix_reconcile_queue_processing_status", "processing_status"),
        Index("ix_reconcile_queue_status_normalized", "status_normalized"),
        Index("ix_reconcile_queue_created_at", "created_at"),
    )

    @property
    def raw_payload(self) -> Optional[Dict[str, Any]]:
        """Get the provider payload as dictionary."""
        return _json_get(self.raw_payload_json)

    @raw_payload.setter
    def raw_payload(self, value: Optional[Dict[str, Any]]) -> None:
        self.raw_payload_json = _json_set(value)

    @property
    def paid_at(self) -> datetime:
        """Time the provider reports the payment happened."""
        return self.occurred_at or self.created_at

    def to_dict(self) -> Dict[str, Any]:
        """Convert queue item to dictionary representation."""
        return {
            "id": self.id,
            "provider_event_id": self.provider_event_id,
            "provider": self.provider,
            "source": self.source,
            "tracking_key": self.tracking_key,
            "raw_status": self.raw_status,
            "status_normalized": self.status_normalized,
            "processing_status": self.processing_status,
            "status_reason": self.status_reason,
            "plan_title": self.plan_title,
            "amount": self.amount,
            "currency": self.currency,
            "occurred_at": _iso(self.occurred_at),
            "matched_order_id": self.matched_order_id,
            "attempt_count": self.attempt_count,
            "last_error": self.last_error,
            "last_attempted_at": _iso(self.last_attempted_at),
            "processed_at": _iso(self.processed_at),
            "created_at": _iso(self.created_at),
        }


class Order(Base):
    """An internal purchase record."""
    __tablename__ = "orders"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    order_number: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    # Canonical encoded tracking key; at most one order per key
    tracking_key: Mapped[Optional[str]] = mapped_column(String(255), nullable=True, unique=True)

    user_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True, index=True)
    product_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    tariff_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    offer_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    plan_title: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    plan_key: Mapped[Optional[str]] = mapped_column(String(255), nullable=True, index=True)

    status: Mapped[str] = mapped_column(String(20), nullable=False, default=OrderStatus.PENDING.value)
    amount: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    currency: Mapped[Optional[str]] = mapped_column(String(3), nullable=True)
    paid_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    reconcile_source: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)

    meta_json: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Materialized orders carry the payment time, not the processing time
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        Index("ix_orders_status", "status"),
        Index("ix_orders_created_at", "created_at"),
    )

    @property
    def meta(self) -> Optional[Dict[str, Any]]:
        """Get order metadata as dictionary."""
        return _json_get(self.meta_json)

    @meta.setter
    def meta(self, value: Optional[Dict[str, Any]]) -> None:
        self.meta_json = _json_set(value)

    @property
    def access_reference(self) -> datetime:
        """Default start of access granted for this order."""
        return self.paid_at or self.created_at

    def to_dict(self) -> Dict[str, Any]:
        """Convert order to dictionary representation."""
        return {
            "id": self.id,
            "order_number": self.order_number,
            "tracking_key": self.tracking_key,
            "user_id": self.user_id,
            "product_id": self.product_id,
            "tariff_id": self.tariff_id,
            "offer_id": self.offer_id,
            "plan_title": self.plan_title,
            "status": self.status,
            "amount": self.amount,
            "currency": self.currency,
            "paid_at": _iso(self.paid_at),
            "reconcile_source": self.reconcile_source,
            "meta": self.meta,
            "created_at": _iso(self.created_at),
        }


class Entitlement(Base):
    """A time-boxed grant of product access to a user. Never deleted."""
    __tablename__ = "entitlements"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    # Null until a contact is linked to the paying order
    user_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)
    product_id: Mapped[str] = mapped_column(String(64), nullable=False)
    tariff_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    order_id: Mapped[Optional[str]] = mapped_column(String(36), ForeignKey("orders.id"), nullable=True, index=True)

    status: Mapped[str] = mapped_column(String(20), nullable=False, default=EntitlementStatus.ACTIVE.value)
    access_start_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    access_end_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)

    auto_renew: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    next_charge_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    charge_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    payment_method_id: Mapped[Optional[str]] = mapped_column(
        String(36), ForeignKey("payment_methods.id"), nullable=True
    )
    provider_subscription_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True, index=True)

    # Renewal claim marker (compare-and-swap with timeout)
    claim_token: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)
    claimed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    blocked_reason: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)

    meta_json: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        CheckConstraint("access_end_at > access_start_at", name="ck_entitlements_window"),
        Index("ix_entitlements_user_product", "user_id", "product_id"),
        Index("ix_entitlements_next_charge_at", "next_charge_at"),
        Index("ix_entitlements_status", "status"),
    )

    @property
    def meta(self) -> Optional[Dict[str, Any]]:
        """Get entitlement metadata as dictionary."""
        return _json_get(self.meta_json)

    @meta.setter
    def meta(self, value: Optional[Dict[str, Any]]) -> None:
        self.meta_json = _json_set(value)

    @property
    def granted_order_ids(self) -> List[str]:
        """Orders whose access has already been applied to this entitlement."""
        return list((self.meta or {}).get("granted_order_ids", []))

    def add_granted_order(self, order_id: str) -> None:
        meta = self.meta or {}
        granted = list(meta.get("granted_order_ids", []))
        if order_id not in granted:
            granted.append(order_id)
        meta["granted_order_ids"] = granted
        self.meta = meta

    def to_dict(self) -> Dict[str, Any]:
        """Convert entitlement to dictionary representation."""
        return {
            "id": self.id,
            "user_id": self.user_id,
            "product_id": self.product_id,
            "tariff_id": self.tariff_id,
            "order_id": self.order_id,
            "status": self.status,
            "access_start_at": _iso(self.access_start_at),
            "access_end_at": _iso(self.access_end_at),
            "auto_renew": self.auto_renew,
            "next_charge_at": _iso(self.next_charge_at),
            "charge_attempts": self.charge_attempts,
            "payment_method_id": self.payment_method_id,
            "provider_subscription_id": self.provider_subscription_id,
            "blocked_reason": self.blocked_reason,
            "granted_order_ids": self.granted_order_ids,
        }


class EntitlementGrant(Base):
    """Ledger row claimed once per order before its access is applied."""
    __tablename__ = "entitlement_grants"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    order_id: Mapped[str] = mapped_column(String(36), ForeignKey("orders.id"), nullable=False, unique=True)
    # Set once the grant has been applied in the claiming transaction
    entitlement_id: Mapped[Optional[str]] = mapped_column(String(36), ForeignKey("entitlements.id"), nullable=True)
    granted_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.utcnow)


class PlanMapping(Base):
    """Operator-maintained provider plan title -> product/tariff correspondence."""
    __tablename__ = "plan_mappings"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    # Case-folded lookup key; one mapping row per title
    plan_key: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    provider_plan_title: Mapped[str] = mapped_column(String(255), nullable=False)
    product_id: Mapped[str] = mapped_column(String(64), nullable=False)
    tariff_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    offer_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    auto_create_order: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    def to_dict(self) -> Dict[str, Any]:
        """Convert mapping to dictionary representation."""
        return {
            "id": self.id,
            "provider_plan_title": self.provider_plan_title,
            "product_id": self.product_id,
            "tariff_id": self.tariff_id,
            "offer_id": self.offer_id,
            "auto_create_order": self.auto_create_order,
            "is_active": self.is_active,
            "notes": self.notes,
        }


class Tariff(Base):
    """A priced billing period for a product."""
    __tablename__ = "tariffs"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    product_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    access_days: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    price: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="USD")
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.utcnow)


class PaymentMethod(Base):
    """A stored, reusable card token."""
    __tablename__ = "payment_methods"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default=PaymentMethodStatus.ACTIVE.value)
    token: Mapped[str] = mapped_column(String(255), nullable=False)
    provider_customer_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    card_last4: Mapped[Optional[str]] = mapped_column(String(4), nullable=True)
    card_brand: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    is_default: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "status": self.status,
            "card_last4": self.card_last4,
            "card_brand": self.card_brand,
            "is_default": self.is_default,
        }


class ChargeAttempt(Base):
    """One renewal charge attempt against an entitlement."""
    __tablename__ = "charge_attempts"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    entitlement_id: Mapped[str] = mapped_column(String(36), ForeignKey("entitlements.id"), nullable=False, index=True)
    attempted_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.utcnow)
    succeeded: Mapped[bool] = mapped_column(Boolean, nullable=False)
    error_code: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    trigger: Mapped[str] = mapped_column(String(20), nullable=False, default="schedule")
    tracking_key: Mapped[Optional[str]] = mapped_column(String(255), nullable=True, index=True)
    provider_transaction_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    amount: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    currency: Mapped[Optional[str]] = mapped_column(String(3), nullable=True)

    def to_dict(self) -> Dict[str, Any]:
        """Convert charge attempt to dictionary representation."""
        return {
            "id": self.id,
            "entitlement_id": self.entitlement_id,
            "attempted_at": _iso(self.attempted_at),
            "succeeded": self.succeeded,
            "error_code": self.error_code,
            "error_message": self.error_message,
            "trigger": self.trigger,
            "tracking_key": self.tracking_key,
            "provider_transaction_id": self.provider_transaction_id,
        }


class AuditLog(Base):
    """Append-only record of operator and system actions."""
    __tablename__ = "audit_log"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    actor: Mapped[str] = mapped_column(String(255), nullable=False, default="system")
    action: Mapped[str] = mapped_column(String(64), nullable=False)
    entity_type: Mapped[str] = mapped_column(String(64), nullable=False)
    entity_id: Mapped[str] = mapped_column(String(255), nullable=False)
    meta_json: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.utcnow)

    __table_args__ = (
        Index("ix_audit_log_entity", "entity_type", "entity_id"),
        Index("ix_audit_log_action", "action"),
    )

    @property
    def meta(self) -> Optional[Dict[str, Any]]:
        return _json_get(self.meta_json)

    @meta.setter
    def meta(self, value: Optional[Dict[str, Any]]) -> None:
        self.meta_json = _json_set(value)
