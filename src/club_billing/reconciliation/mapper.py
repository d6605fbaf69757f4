"""Provider plan title -> internal product/tariff resolution."""

import logging
from typing import List, Optional, Tuple

from sqlalchemy.ext.asyncio import AsyncSession

from ..database import (
    AuditLogRepository,
    Order,
    OrderRepository,
    PlanMapping,
    PlanMappingRepository,
    QueueItemRepository,
    plan_key_for,
)
from ..errors import MappingNotFound, NotFoundError
from .models import MappingResult, Mismatched, NotFound, Resolved

logger = logging.getLogger(__name__)


def _resolved(mapping: PlanMapping) -> Resolved:
    return Resolved(
        mapping_id=mapping.id,
        plan_title=mapping.provider_plan_title,
        product_id=mapping.product_id,
        tariff_id=mapping.tariff_id,
        offer_id=mapping.offer_id,
        auto_create_order=mapping.auto_create_order,
    )


class PlanMapper:
    """Resolves plan titles and administers the mapping table.

    Lookups are case-insensitive exact matches. A missing mapping is a normal
    result; disagreements between paid orders and mappings are reported, and
    only corrected when an operator applies the mapping to an order.
    """

    def __init__(self, session: AsyncSession):
        self.session = session
        self.mappings = PlanMappingRepository(session)
        self.orders = OrderRepository(session)
        self.queue = QueueItemRepository(session)
        self.audit = AuditLogRepository(session)

    async def resolve(self, plan_title: Optional[str]) -> MappingResult:
        """Resolve a provider plan title.

        Args:
            plan_title: Provider plan label, any case.

        Returns:
            Resolved with the mapping's product, or NotFound.
        """
        mapping = await self.mappings.get_by_title(plan_title) if plan_title else None
        if mapping is None or not mapping.is_active:
            return NotFound(plan_title=plan_title)
        return _resolved(mapping)

    async def create_mapping(
        self,
        provider_plan_title: str,
        product_id: str,
        tariff_id: Optional[str] = None,
        offer_id: Optional[str] = None,
        auto_create_order: bool = True,
        notes: Optional[str] = None,
        actor: str = "system",
    ) -> PlanMapping:
        """Create a mapping, or reactivate a deactivated one with new values.

        Raises:
            ValueError: If the title is blank or an active mapping already exists.
        """
        if plan_key_for(provider_plan_title) is None:
            raise ValueError("provider_plan_title must not be blank")

        mapping = await self.mappings.get_by_title(provider_plan_title)
        if mapping is not None and mapping.is_active:
            raise ValueError(f"An active mapping for {provider_plan_title!r} already exists")

        if mapping is None:
            mapping = await self.mappings.create(
                provider_plan_title=provider_plan_title,
                product_id=product_id,
                tariff_id=tariff_id,
                offer_id=offer_id,
                auto_create_order=auto_create_order,
                notes=notes,
            )
        else:
            mapping.provider_plan_title = provider_plan_title.strip()
            mapping.product_id = product_id
            mapping.tariff_id = tariff_id
            mapping.offer_id = offer_id
            mapping.auto_create_order = auto_create_order
            mapping.notes = notes
            mapping.is_active = True
            await self.session.flush()
            logger.info(f"Reactivated plan mapping {mapping.provider_plan_title!r}")

        await self.audit.record(
            action="mapping_created",
            entity_type="plan_mapping",
            entity_id=mapping.id,
            actor=actor,
            meta=mapping.to_dict(),
        )
        return mapping

    async def update_mapping(self, provider_plan_title: str, actor: str = "system", **fields) -> PlanMapping:
        """Update product, tariff, offer, auto_create_order or notes on a mapping.

        Raises:
            NotFoundError: If no mapping exists for the title.
            ValueError: If an unknown field is given.
        """
        allowed = {"product_id", "tariff_id", "offer_id", "auto_create_order", "notes"}
        unknown = set(fields) - allowed
        if unknown:
            raise ValueError(f"Cannot update mapping fields: {sorted(unknown)}")

        mapping = await self.mappings.get_by_title(provider_plan_title)
        if mapping is None:
            raise NotFoundError("plan_mapping", provider_plan_title)
        for name, value in fields.items():
            setattr(mapping, name, value)
        await self.session.flush()
        await self.audit.record(
            action="mapping_updated",
            entity_type="plan_mapping",
            entity_id=mapping.id,
            actor=actor,
            meta=fields,
        )
        return mapping

    async def deactivate_mapping(self, provider_plan_title: str, actor: str = "system") -> PlanMapping:
        mapping = await self.mappings.get_by_title(provider_plan_title)
        if mapping is None:
            raise NotFoundError("plan_mapping", provider_plan_title)
        mapping.is_active = False
        await self.session.flush()
        await self.audit.record(
            action="mapping_deactivated",
            entity_type="plan_mapping",
            entity_id=mapping.id,
            actor=actor,
        )
        logger.info(f"Deactivated plan mapping {mapping.provider_plan_title!r}")
        return mapping

    async def list_mappings(self, include_inactive: bool = False) -> List[PlanMapping]:
        return await self.mappings.list_all(include_inactive=include_inactive)

    async def unmapped_titles(self, limit: int = 20) -> List[Tuple[str, int]]:
        """Plan titles seen in the queue without a mapping, most frequent first."""
        return await self.queue.count_needs_mapping_by_title(limit)

    async def find_mismatches(self, limit: int = 20) -> List[Mismatched]:
        """Paid orders whose product/tariff disagrees with their plan's mapping.

        Report only; nothing is corrected.
        """
        rows = await self.orders.list_mapping_mismatches(limit)
        mismatches = [
            Mismatched(
                order_id=order.id,
                order_number=order.order_number,
                plan_title=order.plan_title,
                order_product_id=order.product_id,
                order_tariff_id=order.tariff_id,
                mapping_product_id=mapping.product_id,
                mapping_tariff_id=mapping.tariff_id,
            )
            for order, mapping in rows
        ]
        if mismatches:
            logger.warning(f"Found {len(mismatches)} orders disagreeing with their plan mapping")
        return mismatches

    async def apply_mapping(self, order_id: str, actor: str = "system") -> Order:
        """Write the order's plan mapping onto the order.

        Product and tariff are overwritten as a pair. The offer is only
        replaced when the mapping names one.

        Args:
            order_id: Order to correct.
            actor: Operator performing the action.

        Returns:
            The updated order.

        Raises:
            NotFoundError: If the order does not exist.
            MappingNotFound: If the order's plan title has no active mapping.
        """
        order = await self.orders.get_by_id(order_id)
        if order is None:
            raise NotFoundError("order", order_id)

        result = await self.resolve(order.plan_title)
        if isinstance(result, NotFound):
            raise MappingNotFound(order.plan_title)

        before = {"product_id": order.product_id, "tariff_id": order.tariff_id, "offer_id": order.offer_id}
        order.product_id = result.product_id
        # A mapping without a tariff clears the order's tariff
        order.tariff_id = result.tariff_id
        if result.offer_id is not None:
            order.offer_id = result.offer_id
        await self.session.flush()

        await self.audit.record(
            action="mapping_applied",
            entity_type="order",
            entity_id=order.id,
            actor=actor,
            meta={"before": before, "mapping_id": result.mapping_id},
        )
        logger.info(
            f"Applied mapping {result.plan_title!r} to order {order.order_number}: "
            f"{before['product_id']}/{before['tariff_id']} -> {order.product_id}/{order.tariff_id}"
        )
        return order
