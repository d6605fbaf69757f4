"""Repository layer for reconciliation and entitlement persistence."""

import uuid
import random
import string
import logging
from datetime import datetime
from typing import Optional, Dict, Any, List, Iterable, Set, Tuple

from sqlalchemy import select, update, func, case, literal, or_, and_
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession

from .models import (
    AuditLog,
    ChargeAttempt,
    Entitlement,
    EntitlementGrant,
    EntitlementStatus,
    Order,
    OrderStatus,
    PaymentMethod,
    PaymentMethodStatus,
    PlanMapping,
    ProcessingStatus,
    ReconcileQueueItem,
    Tariff,
)

logger = logging.getLogger(__name__)

# Statuses the renewal scheduler charges
RENEWABLE_STATUSES = (
    EntitlementStatus.ACTIVE.value,
    EntitlementStatus.TRIAL.value,
    EntitlementStatus.PAST_DUE.value,
)

STUCK_PROCESSING_STATUSES = (
    ProcessingStatus.PENDING.value,
    ProcessingStatus.ERROR.value,
    ProcessingStatus.PENDING_NEEDS_MAPPING.value,
)


def plan_key_for(title: Optional[str]) -> Optional[str]:
    """Case-insensitive lookup key for a provider plan title."""
    if title is None:
        return None
    key = title.strip().casefold()
    return key or None


class QueueItemRepository:
    """Repository for ReconcileQueueItem operations."""

    def __init__(self, session: AsyncSession):
        """Initialize the repository with a database session.

        Args:
            session: AsyncSession instance for database operations.
        """
        self.session = session

    async def create(
        self,
        provider_event_id: str,
        tracking_key: str,
        raw_status: str,
        status_normalized: str,
        plan_title: Optional[str] = None,
        amount: Optional[int] = None,
        currency: Optional[str] = None,
        occurred_at: Optional[datetime] = None,
        provider: str = "stripe",
        source: str = "webhook",
        raw_payload: Optional[Dict[str, Any]] = None,
    ) -> ReconcileQueueItem:
        """Create a new queue item in ``pending``.

        Args:
            provider_event_id: Provider's unique event id.
            tracking_key: Raw tracking key as delivered.
            raw_status: Provider's native status string.
            status_normalized: Normalized status value.
            plan_title: Provider plan label.
            amount: Amount in minor units.
            currency: Three-letter currency code.
            occurred_at: Provider payment time.
            provider: Provider name.
            source: ``webhook``, ``poll`` or ``import``.
            raw_payload: Original payload for audit.

        Returns:
            Created ReconcileQueueItem instance.
        """
        item = ReconcileQueueItem(
            provider_event_id=provider_event_id,
            tracking_key=tracking_key,
            raw_status=raw_status,
            status_normalized=status_normalized,
            processing_status=ProcessingStatus.PENDING.value,
            plan_title=plan_title,
            plan_key=plan_key_for(plan_title),
            amount=amount,
            currency=currency.upper() if currency else None,
            occurred_at=occurred_at,
            provider=provider,
            source=source,
        )
        if raw_payload:
            item.raw_payload = raw_payload

        self.session.add(item)
        await self.session.flush()

        logger.info(f"Queued provider event {provider_event_id} as item {item.id} ({status_normalized})")
        return item

    async def get_by_id(self, item_id: str) -> Optional[ReconcileQueueItem]:
        result = await self.session.execute(
            select(ReconcileQueueItem).where(ReconcileQueueItem.id == item_id)
        )
        return result.scalar_one_or_none()

    async def get_by_provider_event_id(self, provider_event_id: str) -> Optional[ReconcileQueueItem]:
        """Get a queue item by the provider's event id.

        Args:
            provider_event_id: Provider's unique event id.

        Returns:
            ReconcileQueueItem if found, None otherwise.
        """
        result = await self.session.execute(
            select(ReconcileQueueItem).where(
                ReconcileQueueItem.provider_event_id == provider_event_id
            )
        )
        return result.scalar_one_or_none()

    async def list_processable_ids(self, limit: int, max_attempts: int) -> List[str]:
        """Ids of pending items plus errored items still under the retry cap."""
        result = await self.session.execute(
            select(ReconcileQueueItem.id)
            .where(
                or_(
                    ReconcileQueueItem.processing_status == ProcessingStatus.PENDING.value,
                    and_(
                        ReconcileQueueItem.processing_status == ProcessingStatus.ERROR.value,
                        ReconcileQueueItem.attempt_count < max_attempts,
                    ),
                )
            )
            # Oldest untried items first, recently retried ones last
            .order_by(
                func.coalesce(ReconcileQueueItem.last_attempted_at, ReconcileQueueItem.created_at),
                ReconcileQueueItem.created_at,
            )
            .limit(limit)
        )
        return list(result.scalars().all())

    async def list_needs_mapping_ids(self, plan_key: str) -> List[str]:
        result = await self.session.execute(
            select(ReconcileQueueItem.id)
            .where(
                ReconcileQueueItem.processing_status == ProcessingStatus.PENDING_NEEDS_MAPPING.value,
                ReconcileQueueItem.plan_key == plan_key,
            )
            .order_by(ReconcileQueueItem.created_at)
        )
        return list(result.scalars().all())

    async def count_needs_mapping_by_title(self, limit: int) -> List[Tuple[str, int]]:
        """Plan titles waiting on a mapping, with the number of items per title."""
        count = func.count(ReconcileQueueItem.id)
        result = await self.session.execute(
            select(func.min(ReconcileQueueItem.plan_title), count)
            .where(
                ReconcileQueueItem.processing_status == ProcessingStatus.PENDING_NEEDS_MAPPING.value,
                ReconcileQueueItem.plan_key.isnot(None),
            )
            .group_by(ReconcileQueueItem.plan_key)
            .order_by(count.desc())
            .limit(limit)
        )
        return [(title, n) for title, n in result.all()]

    def _link_kind(self):
        return case(
            (ReconcileQueueItem.tracking_key.like("link:order:%"), "order"),
            else_="link",
        ).label("kind")

    async def stuck_link_summary(self) -> List[Tuple[str, str, int]]:
        """Counts of unfinished ``link:*`` items grouped by (kind, processing_status)."""
        kind = self._link_kind()
        result = await self.session.execute(
            select(kind, ReconcileQueueItem.processing_status, func.count(ReconcileQueueItem.id))
            .where(
                ReconcileQueueItem.tracking_key.like("link:%"),
                ReconcileQueueItem.processing_status.in_(STUCK_PROCESSING_STATUSES),
            )
            .group_by(kind, ReconcileQueueItem.processing_status)
        )
        return [(k, status, n) for k, status, n in result.all()]

    async def list_stuck_link_items(self, limit: int) -> List[ReconcileQueueItem]:
        result = await self.session.execute(
            select(ReconcileQueueItem)
            .where(
                ReconcileQueueItem.tracking_key.like("link:%"),
                ReconcileQueueItem.processing_status.in_(STUCK_PROCESSING_STATUSES),
            )
            .order_by(ReconcileQueueItem.created_at)
            .limit(limit)
        )
        return list(result.scalars().all())

    @staticmethod
    def _paid_order_exists():
        """Correlated EXISTS for a paid order the item's tracking key points at.

        Matches the recorded order id, the canonical key, or a reference
        (order id or order number) carried bare or under ``link:order:``.
        """
        key = ReconcileQueueItem.tracking_key
        canonical = case(
            (key.like("link:%"), key),
            else_=literal("link:order:") + key,
        )
        reference = case(
            (key.like("link:order:%"), func.substr(key, len("link:order:") + 1)),
            (key.like("link:%"), None),
            else_=key,
        )
        return (
            select(Order.id)
            .where(
                Order.status == OrderStatus.PAID.value,
                or_(
                    Order.id == ReconcileQueueItem.matched_order_id,
                    Order.tracking_key == canonical,
                    Order.id == reference,
                    Order.order_number == reference,
                ),
            )
            .exists()
        )

    @staticmethod
    def _renewal_applied_exists():
        """Correlated EXISTS for a succeeded renewal charge carrying the item's key."""
        return (
            select(ChargeAttempt.id)
            .where(
                ChargeAttempt.tracking_key == ReconcileQueueItem.tracking_key,
                ChargeAttempt.succeeded.is_(True),
            )
            .exists()
        )

    def _unmaterialized_conditions(self, statuses: Iterable[str]) -> list:
        return [
            ReconcileQueueItem.status_normalized.in_(list(statuses)),
            ~self._paid_order_exists(),
            ~self._renewal_applied_exists(),
        ]

    async def list_unmaterialized(self, statuses: Iterable[str], limit: int) -> List[ReconcileQueueItem]:
        """Oldest items in ``statuses`` with neither a paid order nor an applied renewal charge."""
        result = await self.session.execute(
            select(ReconcileQueueItem)
            .where(*self._unmaterialized_conditions(statuses))
            .order_by(ReconcileQueueItem.created_at)
            .limit(limit)
        )
        return list(result.scalars().all())

    async def count_unmaterialized(self, statuses: Iterable[str]) -> int:
        result = await self.session.execute(
            select(func.count(ReconcileQueueItem.id))
            .where(*self._unmaterialized_conditions(statuses))
        )
        return result.scalar_one()


class OrderRepository:
    """Repository for Order operations."""

    def __init__(self, session: AsyncSession):
        self.session = session

    @staticmethod
    def generate_order_number(now: Optional[datetime] = None) -> str:
        """Human-facing order number, e.g. ``ORD-1718000000000-K3F9``."""
        moment = now or datetime.utcnow()
        millis = int(moment.timestamp() * 1000)
        suffix = "".join(random.choices(string.ascii_uppercase + string.digits, k=4))
        return f"ORD-{millis}-{suffix}"

    async def get_by_id(self, order_id: str) -> Optional[Order]:
        result = await self.session.execute(select(Order).where(Order.id == order_id))
        return result.scalar_one_or_none()

    async def get_by_tracking_key(self, canonical_key: str) -> Optional[Order]:
        result = await self.session.execute(
            select(Order).where(Order.tracking_key == canonical_key)
        )
        return result.scalar_one_or_none()

    async def find_for_reference(
        self,
        canonical_key: str,
        reference: Optional[str] = None,
    ) -> Optional[Order]:
        """Find the order for a tracking key.

        Args:
            canonical_key: Canonical encoded tracking key.
            reference: Order id or order number to also try (order-kind keys only).

        Returns:
            The order bound to the tracking key if any, else the order matching
            the reference.
        """
        conditions = [Order.tracking_key == canonical_key]
        if reference:
            conditions.append(Order.id == reference)
            conditions.append(Order.order_number == reference)
        result = await self.session.execute(select(Order).where(or_(*conditions)))
        orders = list(result.scalars().all())
        for order in orders:
            if order.tracking_key == canonical_key:
                return order
        return orders[0] if orders else None

    async def find_many(
        self,
        ids: Iterable[str],
        tracking_keys: Iterable[str],
        references: Iterable[str],
    ) -> List[Order]:
        """Load every order matching any of the given ids, keys or references in one query."""
        ids, tracking_keys, references = set(ids), set(tracking_keys), set(references)
        conditions = []
        if ids:
            conditions.append(Order.id.in_(ids))
        if tracking_keys:
            conditions.append(Order.tracking_key.in_(tracking_keys))
        if references:
            conditions.append(Order.id.in_(references))
            conditions.append(Order.order_number.in_(references))
        if not conditions:
            return []
        result = await self.session.execute(select(Order).where(or_(*conditions)))
        return list(result.scalars().all())

    async def insert_if_absent(self, values: Dict[str, Any]) -> Tuple[Order, bool]:
        """Insert an order unless one already holds its tracking key.

        Uses ``INSERT ... ON CONFLICT DO NOTHING`` so that concurrent writers of
        the same key produce exactly one row; the loser reads the winner's row.

        Args:
            values: Column values. ``id`` and ``tracking_key`` are required.

        Returns:
            Tuple of (order, created).
        """
        dialect = self.session.get_bind().dialect.name
        insert_fn = pg_insert if dialect == "postgresql" else sqlite_insert
        stmt = insert_fn(Order).values(**values).on_conflict_do_nothing(
            index_elements=["tracking_key"]
        )
        await self.session.execute(stmt)

        order = await self.session.execute(
            select(Order)
            .where(Order.tracking_key == values["tracking_key"])
            .execution_options(populate_existing=True)
        )
        order = order.scalar_one()
        created = order.id == values["id"]
        if created:
            logger.info(f"Created order {order.id} ({order.order_number}) for {order.tracking_key}")
        else:
            logger.info(f"Order for {values['tracking_key']} already exists as {order.id}")
        return order, created

    async def list_mapping_mismatches(self, limit: int) -> List[Tuple[Order, PlanMapping]]:
        """Paid orders whose product or tariff disagrees with the active mapping for their plan."""
        result = await self.session.execute(
            select(Order, PlanMapping)
            .join(PlanMapping, PlanMapping.plan_key == Order.plan_key)
            .where(
                PlanMapping.is_active.is_(True),
                Order.status == OrderStatus.PAID.value,
                or_(
                    Order.product_id.is_distinct_from(PlanMapping.product_id),
                    Order.tariff_id.is_distinct_from(PlanMapping.tariff_id),
                ),
            )
            .order_by(Order.created_at.desc())
            .limit(limit)
        )
        return [(order, mapping) for order, mapping in result.all()]


class EntitlementRepository:
    """Repository for Entitlement operations."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get_by_id(self, entitlement_id: str, refresh: bool = False) -> Optional[Entitlement]:
        stmt = select(Entitlement).where(Entitlement.id == entitlement_id)
        if refresh:
            stmt = stmt.execution_options(populate_existing=True)
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def create(self, **fields: Any) -> Entitlement:
        entitlement = Entitlement(**fields)
        self.session.add(entitlement)
        await self.session.flush()
        logger.info(
            f"Created entitlement {entitlement.id} for user {entitlement.user_id} "
            f"product {entitlement.product_id} until {entitlement.access_end_at.isoformat()}"
        )
        return entitlement

    async def find_current(self, user_id: str, product_id: str) -> Optional[Entitlement]:
        """Latest-ending non-cancelled entitlement for a (user, product) pair."""
        result = await self.session.execute(
            select(Entitlement)
            .where(
                Entitlement.user_id == user_id,
                Entitlement.product_id == product_id,
                Entitlement.status != EntitlementStatus.CANCELLED.value,
            )
            .order_by(Entitlement.access_end_at.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def find_by_order(self, order_id: str) -> Optional[Entitlement]:
        result = await self.session.execute(
            select(Entitlement)
            .where(Entitlement.order_id == order_id)
            .order_by(Entitlement.created_at.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def claim_grant(self, order_id: str, now: datetime) -> Tuple[EntitlementGrant, bool]:
        """Claim the one grant an order may ever receive.

        ``INSERT ... ON CONFLICT DO NOTHING`` on the unique order id: a
        concurrent claimer waits for the first transaction and then reads its
        row instead of inserting a second one.

        Returns:
            Tuple of (grant ledger row, claimed by this call).
        """
        grant_id = str(uuid.uuid4())
        dialect = self.session.get_bind().dialect.name
        insert_fn = pg_insert if dialect == "postgresql" else sqlite_insert
        stmt = insert_fn(EntitlementGrant).values(
            id=grant_id, order_id=order_id, granted_at=now
        ).on_conflict_do_nothing(index_elements=["order_id"])
        await self.session.execute(stmt)

        result = await self.session.execute(
            select(EntitlementGrant)
            .where(EntitlementGrant.order_id == order_id)
            .execution_options(populate_existing=True)
        )
        grant = result.scalar_one()
        return grant, grant.id == grant_id

    async def list_by_order(self, order_id: str) -> List[Entitlement]:
        result = await self.session.execute(
            select(Entitlement).where(Entitlement.order_id == order_id)
        )
        return list(result.scalars().all())

    async def list_due_ids(self, now: datetime, max_attempts: int, limit: int) -> List[str]:
        """Ids of entitlements due for an automatic renewal charge."""
        result = await self.session.execute(
            select(Entitlement.id)
            .where(*self._due_conditions(now, max_attempts))
            .order_by(Entitlement.next_charge_at)
            .limit(limit)
        )
        return list(result.scalars().all())

    @staticmethod
    def _due_conditions(now: datetime, max_attempts: int) -> list:
        return [
            Entitlement.auto_renew.is_(True),
            Entitlement.status.in_(RENEWABLE_STATUSES),
            Entitlement.next_charge_at.isnot(None),
            Entitlement.next_charge_at <= now,
            Entitlement.charge_attempts < max_attempts,
        ]

    async def try_claim(
        self,
        entitlement_id: str,
        token: str,
        now: datetime,
        stale_before: datetime,
        due_max_attempts: Optional[int] = None,
    ) -> bool:
        """Atomically mark an entitlement as being charged.

        The update only matches when no live claim exists (or the existing one
        is older than ``stale_before``). With ``due_max_attempts`` the
        entitlement must also still be due, so overlapping scheduler runs cannot
        both charge it.

        Returns:
            True if this caller now holds the claim.
        """
        conditions = [
            Entitlement.id == entitlement_id,
            or_(Entitlement.claim_token.is_(None), Entitlement.claimed_at < stale_before),
        ]
        if due_max_attempts is not None:
            conditions.extend(self._due_conditions(now, due_max_attempts))

        result = await self.session.execute(
            update(Entitlement)
            .where(*conditions)
            .values(claim_token=token, claimed_at=now)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def release_claim(self, entitlement_id: str, token: str) -> None:
        await self.session.execute(
            update(Entitlement)
            .where(Entitlement.id == entitlement_id, Entitlement.claim_token == token)
            .values(claim_token=None, claimed_at=None)
            .execution_options(synchronize_session=False)
        )

    async def linked_subscription_ids(self, subscription_ids: Iterable[str]) -> Set[str]:
        ids = set(subscription_ids)
        if not ids:
            return set()
        result = await self.session.execute(
            select(Entitlement.provider_subscription_id).where(
                Entitlement.provider_subscription_id.in_(ids)
            )
        )
        return set(result.scalars().all())

    async def linked_order_ids(self, order_ids: Iterable[str]) -> Set[str]:
        ids = set(order_ids)
        if not ids:
            return set()
        result = await self.session.execute(
            select(Entitlement.order_id).where(Entitlement.order_id.in_(ids))
        )
        return set(result.scalars().all())


class PlanMappingRepository:
    """Repository for PlanMapping operations."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get_by_title(self, plan_title: str) -> Optional[PlanMapping]:
        key = plan_key_for(plan_title)
        if key is None:
            return None
        result = await self.session.execute(
            select(PlanMapping).where(PlanMapping.plan_key == key)
        )
        return result.scalar_one_or_none()

    async def create(
        self,
        provider_plan_title: str,
        product_id: str,
        tariff_id: Optional[str] = None,
        offer_id: Optional[str] = None,
        auto_create_order: bool = True,
        notes: Optional[str] = None,
    ) -> PlanMapping:
        mapping = PlanMapping(
            plan_key=plan_key_for(provider_plan_title),
            provider_plan_title=provider_plan_title.strip(),
            product_id=product_id,
            tariff_id=tariff_id,
            offer_id=offer_id,
            auto_create_order=auto_create_order,
            is_active=True,
            notes=notes,
        )
        self.session.add(mapping)
        await self.session.flush()
        logger.info(f"Created plan mapping {mapping.provider_plan_title!r} -> {product_id}/{tariff_id}")
        return mapping

    async def list_all(self, include_inactive: bool = False) -> List[PlanMapping]:
        stmt = select(PlanMapping).order_by(PlanMapping.provider_plan_title)
        if not include_inactive:
            stmt = stmt.where(PlanMapping.is_active.is_(True))
        result = await self.session.execute(stmt)
        return list(result.scalars().all())


class TariffRepository:
    """Repository for Tariff lookups."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get_by_id(self, tariff_id: Optional[str]) -> Optional[Tariff]:
        if not tariff_id:
            return None
        result = await self.session.execute(select(Tariff).where(Tariff.id == tariff_id))
        return result.scalar_one_or_none()


class PaymentMethodRepository:
    """Repository for stored payment methods."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get_by_id(self, payment_method_id: Optional[str]) -> Optional[PaymentMethod]:
        if not payment_method_id:
            return None
        result = await self.session.execute(
            select(PaymentMethod).where(PaymentMethod.id == payment_method_id)
        )
        return result.scalar_one_or_none()

    async def get_default_active(self, user_id: str) -> Optional[PaymentMethod]:
        """The user's default active card, falling back to the newest active one."""
        result = await self.session.execute(
            select(PaymentMethod)
            .where(
                PaymentMethod.user_id == user_id,
                PaymentMethod.status == PaymentMethodStatus.ACTIVE.value,
            )
            .order_by(PaymentMethod.is_default.desc(), PaymentMethod.created_at.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()


class ChargeAttemptRepository:
    """Repository for renewal charge attempts."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def create(self, **fields: Any) -> ChargeAttempt:
        attempt = ChargeAttempt(**fields)
        self.session.add(attempt)
        await self.session.flush()
        return attempt

    async def get_by_tracking_key(self, tracking_key: str) -> Optional[ChargeAttempt]:
        result = await self.session.execute(
            select(ChargeAttempt)
            .where(ChargeAttempt.tracking_key == tracking_key)
            .order_by(ChargeAttempt.attempted_at.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def mark_succeeded(self, attempt_id: str) -> bool:
        """Flip a failed attempt to succeeded. False if another writer already did."""
        result = await self.session.execute(
            update(ChargeAttempt)
            .where(ChargeAttempt.id == attempt_id, ChargeAttempt.succeeded.is_(False))
            .values(succeeded=True, error_code=None, error_message=None)
        )
        return result.rowcount == 1


class AuditLogRepository:
    """Append-only audit trail."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def record(
        self,
        action: str,
        entity_type: str,
        entity_id: str,
        actor: str = "system",
        meta: Optional[Dict[str, Any]] = None,
    ) -> AuditLog:
        entry = AuditLog(action=action, entity_type=entity_type, entity_id=entity_id, actor=actor)
        if meta:
            entry.meta = meta
        self.session.add(entry)
        await self.session.flush()
        return entry

    async def list_for_entity(self, entity_type: str, entity_id: str) -> List[AuditLog]:
        result = await self.session.execute(
            select(AuditLog)
            .where(AuditLog.entity_type == entity_type, AuditLog.entity_id == entity_id)
            .order_by(AuditLog.created_at)
        )
        return list(result.scalars().all())
