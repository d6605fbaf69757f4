"""Read-only audit of stuck queue items, unmaterialized money and orphaned subscriptions."""

import asyncio
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy.ext.asyncio import AsyncSession

from ..config import BillingSettings, settings as default_settings
from ..connectors.base import ProviderBase, ProviderSubscription
from ..database import (
    AuditLogRepository,
    EntitlementRepository,
    Order,
    OrderRepository,
    QueueItemRepository,
    ReconcileQueueItem,
)
from .mapper import PlanMapper
from .models import (
    DiagnosticsReport,
    OrphanSubscription,
    StuckGroup,
    StuckItemRow,
    UnmaterializedPayment,
)
from .psp_fetcher import PSPFetcherBase
from .status import NormalizedStatus, status_aliases
from .tracking import TrackingKey, TrackingKind, parse_tracking_key

logger = logging.getLogger(__name__)


class _OrderIndex:
    """In-memory lookup over one batch of loaded orders."""

    def __init__(self, orders: List[Order]):
        self.by_id = {o.id: o for o in orders}
        self.by_key = {o.tracking_key: o for o in orders if o.tracking_key}
        self.by_number = {o.order_number: o for o in orders}

    def resolve(self, key: TrackingKey, matched_order_id: Optional[str] = None) -> Optional[Order]:
        order = self.by_id.get(matched_order_id) if matched_order_id else None
        order = order or self.by_key.get(key.canonical)
        if order is None and key.kind == TrackingKind.ORDER:
            order = self.by_id.get(key.value) or self.by_number.get(key.value)
        return order


class Detector:
    """Surfaces records that need human reconciliation. Never remediates on its own."""

    def __init__(
        self,
        session: AsyncSession,
        fetcher: Optional[PSPFetcherBase] = None,
        connector: Optional[ProviderBase] = None,
        settings: Optional[BillingSettings] = None,
    ):
        """Initialize the detector.

        Args:
            session: Async database session.
            fetcher: Provider fetcher used to list live subscriptions.
            connector: Provider connector used by the cancel-orphan action.
            settings: Policy settings; defaults to the process settings.
        """
        self.session = session
        self.fetcher = fetcher
        self.connector = connector
        self.settings = settings or default_settings
        self.queue = QueueItemRepository(session)
        self.orders = OrderRepository(session)
        self.entitlements = EntitlementRepository(session)
        self.audit = AuditLogRepository(session)

    async def _load_orders(self, keys: List[TrackingKey], matched_ids: List[str]) -> _OrderIndex:
        orders = await self.orders.find_many(
            ids=matched_ids,
            tracking_keys=[k.canonical for k in keys],
            references=[k.value for k in keys if k.kind == TrackingKind.ORDER and k.value],
        )
        return _OrderIndex(orders)

    async def stuck_items(self, limit: int) -> Tuple[List[StuckGroup], List[StuckItemRow], int]:
        """Unfinished ``link:*`` queue items.

        Returns:
            Tuple of (summary grouped by kind and processing status, capped rows, total).
        """
        summary = [
            StuckGroup(kind=kind, processing_status=status, count=count)
            for kind, status, count in await self.queue.stuck_link_summary()
        ]
        total = sum(g.count for g in summary)
        rows = [self._stuck_row(item) for item in await self.queue.list_stuck_link_items(limit)]
        return summary, rows, total

    @staticmethod
    def _stuck_row(item: ReconcileQueueItem) -> StuckItemRow:
        return StuckItemRow(
            item_id=item.id,
            provider_event_id=item.provider_event_id,
            tracking_key=item.tracking_key,
            kind=parse_tracking_key(item.tracking_key).kind.value,
            processing_status=item.processing_status,
            status_normalized=item.status_normalized,
            plan_title=item.plan_title,
            amount=item.amount,
            currency=item.currency,
            attempt_count=item.attempt_count,
            cause=item.status_reason or item.last_error,
            created_at=item.created_at,
        )

    async def unmaterialized_payments(self, limit: int) -> Tuple[List[UnmaterializedPayment], int]:
        """Succeeded payments whose order is missing or not paid.

        Filtering and counting happen in the database. Orders are loaded only
        for the capped rows, to explain each one.

        A renewal payment counts as materialized once its charge attempt is
        recorded as succeeded.

        Returns:
            Tuple of (capped rows, total count).
        """
        statuses = status_aliases(NormalizedStatus.SUCCEEDED)
        total = await self.queue.count_unmaterialized(statuses)
        if total == 0:
            return [], 0
        items = await self.queue.list_unmaterialized(statuses, limit)

        keys = {item.id: parse_tracking_key(item.tracking_key) for item in items}
        index = await self._load_orders(
            list(keys.values()),
            [item.matched_order_id for item in items if item.matched_order_id],
        )

        rows: List[UnmaterializedPayment] = []
        for item in items:
            order = index.resolve(keys[item.id], item.matched_order_id)
            if order is None:
                cause = "no order exists"
            else:
                cause = f"order {order.order_number} is {order.status}"
            if item.status_reason:
                cause = f"{cause}; {item.status_reason}"
            rows.append(UnmaterializedPayment(
                item_id=item.id,
                provider_event_id=item.provider_event_id,
                tracking_key=item.tracking_key,
                processing_status=item.processing_status,
                amount=item.amount,
                currency=item.currency,
                occurred_at=item.occurred_at,
                order_id=order.id if order else None,
                order_status=order.status if order else None,
                cause=cause,
            ))

        logger.error(f"{total} succeeded payments have no paid order")
        return rows, total

    async def _unlinked(self, subscriptions: List[ProviderSubscription]) -> List[ProviderSubscription]:
        linked = await self.entitlements.linked_subscription_ids(s.id for s in subscriptions)
        candidates = [s for s in subscriptions if s.id not in linked]

        keyed = {s.id: parse_tracking_key(s.tracking_key) for s in candidates if s.tracking_key}
        index = await self._load_orders(list(keyed.values()), []) if keyed else _OrderIndex([])
        order_for: Dict[str, str] = {}
        for sub_id, key in keyed.items():
            order = index.resolve(key)
            if order is not None:
                order_for[sub_id] = order.id
        linked_orders = await self.entitlements.linked_order_ids(order_for.values())

        return [s for s in candidates if order_for.get(s.id) not in linked_orders]

    async def orphaned_subscriptions(self, limit: int) -> Tuple[List[OrphanSubscription], int]:
        """Live provider subscriptions with no internal entitlement.

        Raises:
            ValueError: If no provider fetcher is configured.
        """
        if self.fetcher is None:
            raise ValueError("No provider fetcher configured")
        subscriptions = await asyncio.to_thread(self.fetcher.list_subscriptions)
        orphans = [
            OrphanSubscription(
                subscription_id=s.id,
                status=s.status,
                customer_id=s.customer_id,
                plan_title=s.plan_title,
                tracking_key=s.tracking_key,
                created_at=s.created_at,
            )
            for s in await self._unlinked(subscriptions)
        ]
        if orphans:
            logger.warning(f"{len(orphans)} provider subscriptions have no internal entitlement")
        return orphans[:limit], len(orphans)

    async def run(self, limit: Optional[int] = None) -> DiagnosticsReport:
        """Build the operator diagnostics report.

        Args:
            limit: Rows per widget, clamped to the configured caps.

        Returns:
            DiagnosticsReport snapshot.
        """
        row_limit = self.settings.clamp_rows(limit)
        report = DiagnosticsReport(generated_at=datetime.utcnow(), row_limit=row_limit)

        report.stuck_summary, report.stuck_items, report.stuck_total = await self.stuck_items(row_limit)
        report.unmaterialized, report.unmaterialized_total = await self.unmaterialized_payments(row_limit)

        try:
            report.orphans, report.orphans_total = await self.orphaned_subscriptions(row_limit)
        except Exception as e:
            logger.error(f"Orphan subscription check failed: {e}")
            report.orphan_check_error = str(e)

        mapper = PlanMapper(self.session)
        report.mismatches = await mapper.find_mismatches(row_limit)
        report.unmapped_titles = dict(await mapper.unmapped_titles(row_limit))

        logger.info(
            f"Diagnostics: {report.stuck_total} stuck, {report.unmaterialized_total} unmaterialized, "
            f"{report.orphans_total} orphaned, {len(report.mismatches)} mismatched"
        )
        return report

    async def cancel_orphan(self, subscription_id: str, actor: str = "system") -> Dict[str, Any]:
        """Cancel an orphaned subscription at the provider.

        Internal entitlements are never modified.

        Raises:
            ValueError: If no connector is configured or the subscription is linked.
            ProviderError: If the provider refuses the cancellation.
        """
        if self.connector is None:
            raise ValueError("No provider connector configured")
        if await self.entitlements.linked_subscription_ids([subscription_id]):
            raise ValueError(f"Subscription {subscription_id} is linked to an entitlement")
        if self.fetcher is not None:
            subscriptions = await asyncio.to_thread(self.fetcher.list_subscriptions)
            match = [s for s in subscriptions if s.id == subscription_id]
            if match and not await self._unlinked(match):
                raise ValueError(f"Subscription {subscription_id} is linked to an order with an entitlement")

        response = await asyncio.to_thread(self.connector.cancel_subscription, subscription_id)
        await self.audit.record(
            action="orphan_subscription_cancelled",
            entity_type="provider_subscription",
            entity_id=subscription_id,
            actor=actor,
            meta={"provider": self.connector.name, "response": response},
        )
        logger.info(f"Cancelled orphaned subscription {subscription_id} at {self.connector.name}")
        return response
