"""Order and entitlement materialization for confirmed payments."""

import uuid
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from ..collaborators import AccessCollaborator
from ..config import BillingSettings, settings as default_settings
from ..database import (
    AuditLogRepository,
    Order,
    OrderRepository,
    OrderStatus,
    ReconcileQueueItem,
    plan_key_for,
)
from .access import AccessGranter
from .models import GrantRequest, GrantResult, Resolution
from .tracking import TrackingKind, parse_tracking_key

logger = logging.getLogger(__name__)


@dataclass
class MaterializeOutcome:
    """What materialization did for one queue item."""
    order: Order
    created: bool
    # Another writer created the order first; treated as success
    duplicate: bool
    grant: GrantResult


class Materializer:
    """Creates or confirms the order for a successful payment and grants its access.

    Order creation is committed before the entitlement is touched. If the
    grant then fails, the paid order stays and a retry finds it, so only the
    entitlement is repaired.
    """

    def __init__(
        self,
        session: AsyncSession,
        collaborator: Optional[AccessCollaborator] = None,
        settings: Optional[BillingSettings] = None,
    ):
        self.session = session
        self.settings = settings or default_settings
        self.orders = OrderRepository(session)
        self.audit = AuditLogRepository(session)
        self.granter = AccessGranter(session, collaborator=collaborator, settings=self.settings)

    async def find_order(self, item: ReconcileQueueItem) -> Optional[Order]:
        """Look up the order a queue item's tracking key points at."""
        if item.matched_order_id:
            order = await self.orders.get_by_id(item.matched_order_id)
            if order is not None:
                return order
        key = parse_tracking_key(item.tracking_key)
        reference = key.value if key.kind == TrackingKind.ORDER else None
        return await self.orders.find_for_reference(key.canonical, reference)

    async def _ensure_paid_order(
        self,
        item: ReconcileQueueItem,
        resolution: Resolution,
        user_id: Optional[str],
        source: str,
    ):
        order = await self.find_order(item)
        paid_at = item.paid_at

        if order is None:
            key = parse_tracking_key(item.tracking_key)
            values = {
                "id": str(uuid.uuid4()),
                "order_number": OrderRepository.generate_order_number(),
                "tracking_key": key.canonical,
                "user_id": user_id,
                "product_id": resolution.product_id,
                "tariff_id": resolution.tariff_id,
                "offer_id": resolution.offer_id,
                "plan_title": item.plan_title,
                "plan_key": plan_key_for(item.plan_title),
                "status": OrderStatus.PAID.value,
                "amount": item.amount,
                "currency": item.currency,
                "paid_at": paid_at,
                "reconcile_source": source,
                # Access windows anchor on this, so it must be the payment time
                "created_at": paid_at,
                "updated_at": datetime.utcnow(),
            }
            order, created = await self.orders.insert_if_absent(values)
            return order, created, not created

        if order.status != OrderStatus.PAID.value:
            logger.info(f"Marking order {order.order_number} paid from queue item {item.id}")
            order.status = OrderStatus.PAID.value
            order.paid_at = order.paid_at or paid_at
            order.product_id = order.product_id or resolution.product_id
            order.tariff_id = order.tariff_id or resolution.tariff_id
            order.offer_id = order.offer_id or resolution.offer_id
            order.reconcile_source = order.reconcile_source or source
        if order.tracking_key is None:
            order.tracking_key = parse_tracking_key(item.tracking_key).canonical
        if order.plan_title is None and item.plan_title:
            order.plan_title = item.plan_title
            order.plan_key = plan_key_for(item.plan_title)
        if order.user_id is None and user_id:
            order.user_id = user_id
        await self.session.flush()
        return order, False, False

    async def materialize(
        self,
        item: ReconcileQueueItem,
        resolution: Resolution,
        user_id: Optional[str] = None,
        source: str = "reconcile_queue",
        actor: str = "system",
        now: Optional[datetime] = None,
    ) -> MaterializeOutcome:
        """Materialize a successful payment.

        Args:
            item: Queue item with a succeeded payment.
            resolution: Mapping or operator fallback giving product/tariff/offer.
            user_id: User to attach when the order has none.
            source: Recorded as the order's reconcile source.
            actor: Recorded in the audit log.
            now: Reference time, naive UTC.

        Returns:
            MaterializeOutcome with the order and the grant result.
        """
        order, created, duplicate = await self._ensure_paid_order(item, resolution, user_id, source)
        item.matched_order_id = order.id
        if created:
            await self.audit.record(
                action="order_materialized",
                entity_type="order",
                entity_id=order.id,
                actor=actor,
                meta={"queue_item_id": item.id, "provider_event_id": item.provider_event_id},
            )
        await self.session.commit()

        grant = await self.granter.grant_for_order(
            order,
            GrantRequest(order_id=order.id, extend_from_current=True),
            actor=actor,
            now=now,
        )
        return MaterializeOutcome(order=order, created=created, duplicate=duplicate, grant=grant)
