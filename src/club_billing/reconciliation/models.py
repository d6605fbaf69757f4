"""Request, result and report models for reconciliation."""

import enum
from datetime import datetime
from typing import Optional, Dict, Any, List, Literal, Union
from pydantic import BaseModel, Field


class QueueAction(str, enum.Enum):
    """What processing did with a queue item."""
    MATERIALIZED = "materialized"
    ALREADY_PROCESSED = "already_processed"
    NEEDS_MAPPING = "needs_mapping"
    NO_ACTION = "no_action"
    AWAITING_PROVIDER = "awaiting_provider"
    ERROR = "error"
    DRY_RUN = "dry_run"


# Plan mapping results

class Resolved(BaseModel):
    """An active mapping exists for the plan title."""
    kind: Literal["resolved"] = "resolved"
    mapping_id: str
    plan_title: str
    product_id: str
    tariff_id: Optional[str] = None
    offer_id: Optional[str] = None
    auto_create_order: bool = True


class NotFound(BaseModel):
    """No active mapping exists for the plan title. Not an error."""
    kind: Literal["not_found"] = "not_found"
    plan_title: Optional[str] = None


class Mismatched(BaseModel):
    """A paid order disagrees with the current mapping for its plan title."""
    kind: Literal["mismatched"] = "mismatched"
    order_id: str
    order_number: str
    plan_title: Optional[str] = None
    order_product_id: Optional[str] = None
    order_tariff_id: Optional[str] = None
    mapping_product_id: str
    mapping_tariff_id: Optional[str] = None


class FallbackResolution(BaseModel):
    """Operator-selected product used in place of a mapping."""
    kind: Literal["fallback"] = "fallback"
    product_id: str
    tariff_id: Optional[str] = None
    offer_id: Optional[str] = None


MappingResult = Union[Resolved, NotFound]
Resolution = Union[Resolved, FallbackResolution]


# Queue processing

class ProcessOutcome(BaseModel):
    """Result of driving one queue item."""
    item_id: str
    processing_status: str
    action: QueueAction
    order_id: Optional[str] = None
    entitlement_id: Optional[str] = None
    detail: Optional[str] = None
    warnings: List[str] = Field(default_factory=list)


class BatchResult(BaseModel):
    """Result of a queue batch run."""
    outcomes: List[ProcessOutcome] = Field(default_factory=list)

    @property
    def counts(self) -> Dict[str, int]:
        counts: Dict[str, int] = {}
        for outcome in self.outcomes:
            counts[outcome.action.value] = counts.get(outcome.action.value, 0) + 1
        return counts

    @property
    def has_errors(self) -> bool:
        return any(o.action == QueueAction.ERROR for o in self.outcomes)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total": len(self.outcomes),
            "counts": self.counts,
            "outcomes": [o.model_dump(mode="json") for o in self.outcomes],
        }


class MaterializeRequest(BaseModel):
    """Operator request to materialize a queue item against a chosen product."""
    queue_item_id: str = Field(..., description="Queue item to materialize")
    profile_id: Optional[str] = Field(None, description="User to attach the order and access to")
    product_id: str = Field(..., description="Product to grant")
    tariff_id: Optional[str] = Field(None, description="Tariff (billing period)")
    offer_id: Optional[str] = Field(None, description="Offer the sale came from")


# Access grants

class GrantRequest(BaseModel):
    """Request to grant or extend access for a paid order."""
    order_id: str
    custom_access_days: Optional[int] = Field(None, gt=0)
    custom_access_start_at: Optional[datetime] = None
    extend_from_current: bool = True
    grant_telegram: bool = False
    grant_getcourse: bool = False


class GrantResult(BaseModel):
    """Outcome of an access grant."""
    order_id: str
    entitlement_id: Optional[str] = None
    access_start_at: Optional[datetime] = None
    access_end_at: Optional[datetime] = None
    created: bool = False
    already_granted: bool = False
    retroactive: bool = False
    warnings: List[str] = Field(default_factory=list)
    side_effects: Dict[str, Any] = Field(default_factory=dict)


# Renewals

class RenewalResult(str, enum.Enum):
    CHARGED = "charged"
    RETRY_SCHEDULED = "retry_scheduled"
    PAST_DUE = "past_due"
    BLOCKED = "blocked"
    SKIPPED = "skipped"
    ERROR = "error"


class RenewalOutcome(BaseModel):
    """Result of one renewal attempt."""
    entitlement_id: str
    result: RenewalResult
    charge_attempts: Optional[int] = None
    status: Optional[str] = None
    access_end_at: Optional[datetime] = None
    next_charge_at: Optional[datetime] = None
    error_code: Optional[str] = None
    detail: Optional[str] = None
    side_effects: Dict[str, Any] = Field(default_factory=dict)
    warnings: List[str] = Field(default_factory=list)


# Diagnostics

class StuckGroup(BaseModel):
    kind: str = Field(..., description="Tracking key kind ('order' or 'link')")
    processing_status: str
    count: int


class StuckItemRow(BaseModel):
    item_id: str
    provider_event_id: str
    tracking_key: str
    kind: str
    processing_status: str
    status_normalized: str
    plan_title: Optional[str] = None
    amount: Optional[int] = None
    currency: Optional[str] = None
    attempt_count: int = 0
    cause: Optional[str] = None
    created_at: datetime


class UnmaterializedPayment(BaseModel):
    """Money received, access not granted."""
    item_id: str
    provider_event_id: str
    tracking_key: str
    processing_status: str
    amount: Optional[int] = None
    currency: Optional[str] = None
    occurred_at: Optional[datetime] = None
    order_id: Optional[str] = None
    order_status: Optional[str] = Field(None, description="None when no order exists at all")
    cause: Optional[str] = None


class OrphanSubscription(BaseModel):
    subscription_id: str
    status: str
    customer_id: Optional[str] = None
    plan_title: Optional[str] = None
    tracking_key: Optional[str] = None
    created_at: Optional[datetime] = None


class DiagnosticsReport(BaseModel):
    """Operator dashboard snapshot. Every row list is capped."""
    generated_at: datetime = Field(default_factory=datetime.utcnow)
    row_limit: int

    stuck_summary: List[StuckGroup] = Field(default_factory=list)
    stuck_items: List[StuckItemRow] = Field(default_factory=list)
    stuck_total: int = 0

    unmaterialized: List[UnmaterializedPayment] = Field(default_factory=list)
    unmaterialized_total: int = 0

    orphans: List[OrphanSubscription] = Field(default_factory=list)
    orphans_total: int = 0
    orphan_check_error: Optional[str] = None

    mismatches: List[Mismatched] = Field(default_factory=list)
    unmapped_titles: Dict[str, int] = Field(default_factory=dict)

    @property
    def has_issues(self) -> bool:
        return bool(self.unmaterialized_total or self.orphans_total or self.stuck_total or self.mismatches)

    def to_summary_dict(self) -> Dict[str, Any]:
        """Return counts without row detail."""
        return {
            "generated_at": self.generated_at.isoformat(),
            "row_limit": self.row_limit,
            "statistics": {
                "stuck_items": self.stuck_total,
                "unmaterialized_payments": self.unmaterialized_total,
                "orphaned_subscriptions": self.orphans_total,
                "mismatched_mappings": len(self.mismatches),
                "unmapped_titles": len(self.unmapped_titles),
            },
            "stuck_summary": [g.model_dump() for g in self.stuck_summary],
            "orphan_check_error": self.orphan_check_error,
        }

    def to_full_dict(self) -> Dict[str, Any]:
        """Return the complete report including all capped rows."""
        result = self.to_summary_dict()
        result["stuck_items"] = [r.model_dump(mode="json") for r in self.stuck_items]
        result["unmaterialized"] = [r.model_dump(mode="json") for r in self.unmaterialized]
        result["orphans"] = [r.model_dump(mode="json") for r in self.orphans]
        result["mismatches"] = [r.model_dump(mode="json") for r in self.mismatches]
        result["unmapped_titles"] = dict(self.unmapped_titles)
        return result
