"""Entitlement grants for paid orders."""

import logging
from datetime import datetime
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from ..collaborators import AccessCollaborator, get_access_collaborator
from ..config import BillingSettings, settings as default_settings
from ..database import (
    AuditLogRepository,
    Entitlement,
    EntitlementRepository,
    EntitlementStatus,
    Order,
    OrderRepository,
    OrderStatus,
    PaymentMethodRepository,
    TariffRepository,
)
from ..errors import CollaboratorError, MappingNotFound, NotFoundError
from .models import GrantRequest, GrantResult
from .window import add_calendar_days, compute_window

logger = logging.getLogger(__name__)

GRANTABLE_ORDER_STATUSES = (OrderStatus.PAID.value, OrderStatus.PARTIAL.value)


class AccessGranter:
    """Creates or extends the entitlement a paid order pays for.

    The entitlement targeted is the non-cancelled one for the same
    (user, product); a cancelled entitlement is never revived. Each order is
    applied at most once: replays are caught by the entitlement's
    ``granted_order_ids`` and concurrent grants by the ``entitlement_grants``
    ledger row claimed per order.
    """

    def __init__(
        self,
        session: AsyncSession,
        collaborator: Optional[AccessCollaborator] = None,
        settings: Optional[BillingSettings] = None,
    ):
        self.session = session
        self.settings = settings or default_settings
        self.collaborator = collaborator or get_access_collaborator(self.settings)
        self.orders = OrderRepository(session)
        self.entitlements = EntitlementRepository(session)
        self.tariffs = TariffRepository(session)
        self.payment_methods = PaymentMethodRepository(session)
        self.audit = AuditLogRepository(session)

    async def grant(self, request: GrantRequest, actor: str = "system", now: Optional[datetime] = None) -> GrantResult:
        """Grant access for an order by id.

        Raises:
            NotFoundError: If the order does not exist.
        """
        order = await self.orders.get_by_id(request.order_id)
        if order is None:
            raise NotFoundError("order", request.order_id)
        return await self.grant_for_order(order, request, actor=actor, now=now)

    async def _find_target(self, order: Order) -> Optional[Entitlement]:
        if order.user_id:
            return await self.entitlements.find_current(order.user_id, order.product_id)
        # Without a contact the only safe target is an entitlement this order created
        entitlement = await self.entitlements.find_by_order(order.id)
        if entitlement is not None and entitlement.status != EntitlementStatus.CANCELLED.value:
            return entitlement
        return None

    async def _access_days(self, order: Order, request: GrantRequest) -> int:
        if request.custom_access_days:
            return request.custom_access_days
        tariff = await self.tariffs.get_by_id(order.tariff_id)
        if tariff is not None and tariff.access_days:
            return tariff.access_days
        return self.settings.default_access_days

    async def grant_for_order(
        self,
        order: Order,
        request: GrantRequest,
        actor: str = "system",
        now: Optional[datetime] = None,
    ) -> GrantResult:
        """Grant or extend access for a loaded order.

        Args:
            order: Paid order.
            request: Grant options.
            actor: Who asked for the grant, recorded in the audit log.
            now: Reference time, naive UTC.

        Returns:
            GrantResult describing the window and any side-effect failures.

        Raises:
            ValueError: If the order is not paid.
            MappingNotFound: If the order has no product to grant.
        """
        now = now or datetime.utcnow()
        result = GrantResult(order_id=order.id)

        if order.status not in GRANTABLE_ORDER_STATUSES:
            raise ValueError(f"Order {order.order_number} is {order.status}, not paid")
        if not order.product_id:
            raise MappingNotFound(order.plan_title)

        existing = await self._find_target(order)
        if existing is not None and order.id in existing.granted_order_ids:
            logger.info(f"Order {order.order_number} already granted on entitlement {existing.id}")
            return self._already_granted(result, existing)

        # Concurrent grants of one order block here until the first commits
        grant, claimed = await self.entitlements.claim_grant(order.id, now)
        if not claimed:
            granted = None
            if grant.entitlement_id:
                granted = await self.entitlements.get_by_id(grant.entitlement_id, refresh=True)
            logger.warning(
                f"Order {order.order_number} was granted concurrently on entitlement {grant.entitlement_id}"
            )
            return self._already_granted(result, granted)

        days = await self._access_days(order, request)
        window = compute_window(
            existing=existing,
            tariff_days=days,
            requested_start=request.custom_access_start_at or order.access_reference,
            extend_from_current=request.extend_from_current,
            now=now,
            tz_name=self.settings.access_timezone,
        )
        result.retroactive = window.is_retroactive(now)

        payment_method = None
        if order.user_id:
            payment_method = await self.payment_methods.get_default_active(order.user_id)
        else:
            result.warnings.append("no_user_id")
            logger.warning(f"Order {order.order_number} has no linked contact; access granted without a user")

        if existing is None:
            entitlement = await self.entitlements.create(
                user_id=order.user_id,
                product_id=order.product_id,
                tariff_id=order.tariff_id,
                order_id=order.id,
                status=EntitlementStatus.ACTIVE.value,
                access_start_at=window.start,
                access_end_at=window.end,
                charge_attempts=0,
            )
            result.created = True
        else:
            entitlement = existing
            if entitlement.access_end_at < window.start:
                # Lapsed: the new window replaces the old one
                entitlement.access_start_at = window.start
            else:
                entitlement.access_start_at = min(entitlement.access_start_at, window.start)
            entitlement.access_end_at = max(entitlement.access_end_at, window.end)
            entitlement.status = EntitlementStatus.ACTIVE.value
            entitlement.charge_attempts = 0
            entitlement.tariff_id = order.tariff_id or entitlement.tariff_id
            entitlement.order_id = order.id

        if payment_method is not None:
            entitlement.payment_method_id = payment_method.id
            entitlement.auto_renew = True
            entitlement.blocked_reason = None
        if entitlement.auto_renew:
            entitlement.next_charge_at = add_calendar_days(
                entitlement.access_end_at, -self.settings.charge_lead_days, self.settings.access_timezone
            )
        entitlement.add_granted_order(order.id)
        await self.session.flush()
        grant.entitlement_id = entitlement.id

        result.entitlement_id = entitlement.id
        result.access_start_at = entitlement.access_start_at
        result.access_end_at = entitlement.access_end_at

        await self._request_side_effects(order, entitlement, request, result)

        await self.audit.record(
            action="access_granted",
            entity_type="entitlement",
            entity_id=entitlement.id,
            actor=actor,
            meta={
                "order_id": order.id,
                "window_start": window.start.isoformat(),
                "window_end": window.end.isoformat(),
                "days": days,
                "extend_from_current": request.extend_from_current,
                "retroactive": result.retroactive,
                "side_effects": result.side_effects,
            },
        )
        if result.retroactive:
            logger.warning(
                f"Retroactive grant for order {order.order_number}: access starts "
                f"{window.start.isoformat()}"
            )
        logger.info(
            f"Granted {days} days on entitlement {entitlement.id} for order {order.order_number}, "
            f"access until {entitlement.access_end_at.isoformat()}"
        )
        return result

    @staticmethod
    def _already_granted(result: GrantResult, entitlement: Optional[Entitlement]) -> GrantResult:
        result.already_granted = True
        if entitlement is not None:
            result.entitlement_id = entitlement.id
            result.access_start_at = entitlement.access_start_at
            result.access_end_at = entitlement.access_end_at
        return result

    async def _request_side_effects(
        self,
        order: Order,
        entitlement: Entitlement,
        request: GrantRequest,
        result: GrantResult,
    ) -> None:
        requested = {"telegram": request.grant_telegram, "getcourse": request.grant_getcourse}
        for channel, wanted in requested.items():
            if not wanted:
                continue
            if not order.user_id:
                result.side_effects[channel] = {"status": "skipped", "reason": "no_user_id"}
                continue
            send = self.collaborator.grant_telegram if channel == "telegram" else self.collaborator.grant_lms
            try:
                result.side_effects[channel] = await send(
                    order.user_id, entitlement.product_id, entitlement.access_end_at
                )
            except CollaboratorError as e:
                result.side_effects[channel] = {"status": "error", "error": str(e)}
                result.warnings.append(f"{channel}_failed")

    async def link_contact(self, order_id: str, user_id: str, actor: str = "system") -> Order:
        """Attach a user to an order that was paid before the contact was known.

        Entitlements granted from the order without a user are attached too.

        Raises:
            NotFoundError: If the order does not exist.
            ValueError: If the order already belongs to a different user.
        """
        order = await self.orders.get_by_id(order_id)
        if order is None:
            raise NotFoundError("order", order_id)
        if order.user_id and order.user_id != user_id:
            raise ValueError(f"Order {order.order_number} already belongs to user {order.user_id}")

        order.user_id = user_id
        linked = 0
        for entitlement in await self.entitlements.list_by_order(order.id):
            if entitlement.user_id is None:
                entitlement.user_id = user_id
                linked += 1
        await self.session.flush()

        await self.audit.record(
            action="contact_linked",
            entity_type="order",
            entity_id=order.id,
            actor=actor,
            meta={"user_id": user_id, "entitlements": linked},
        )
        logger.info(f"Linked order {order.order_number} and {linked} entitlements to user {user_id}")
        return order
