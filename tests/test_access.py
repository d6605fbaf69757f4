"""Tests for entitlement grants and contact linking."""

from datetime import datetime

import pytest

from club_billing.database import AuditLog, Entitlement, EntitlementStatus, Order
from club_billing.errors import MappingNotFound, NotFoundError
from club_billing.reconciliation import AccessGranter, GrantRequest

from factories import (
    RecordingCollaborator,
    make_entitlement,
    make_order,
    make_payment_method,
    make_tariff,
)

NOW = datetime(2025, 3, 2, 9, 0)
PAID_AT = datetime(2025, 3, 1, 10, 0)


@pytest.fixture
def granter_for(billing_settings):
    def _granter(session, collaborator=None):
        return AccessGranter(session, collaborator=collaborator or RecordingCollaborator(), settings=billing_settings)
    return _granter


class TestGrant:
    """Tests for AccessGranter.grant."""

    async def test_new_entitlement_starts_at_payment_time(self, seed, db_session, granter_for, fetch):
        _, order = await seed(make_tariff(), make_order())

        result = await granter_for(db_session).grant(GrantRequest(order_id=order.id), now=NOW)
        await db_session.commit()

        assert result.created is True
        assert result.access_start_at == PAID_AT
        assert result.access_end_at == datetime(2025, 3, 31, 10, 0)
        assert result.retroactive is True

        entitlement = await fetch(Entitlement, result.entitlement_id)
        assert entitlement.user_id == "user-1"
        assert entitlement.order_id == order.id
        assert entitlement.granted_order_ids == [order.id]

    async def test_extends_running_entitlement(self, seed, db_session, granter_for, fetch):
        current, _, order = await seed(
            make_entitlement(access_end_at=datetime(2025, 3, 15)),
            make_tariff(),
            make_order(),
        )

        result = await granter_for(db_session).grant(GrantRequest(order_id=order.id), now=NOW)
        await db_session.commit()

        assert result.created is False
        assert result.entitlement_id == current.id
        entitlement = await fetch(Entitlement, current.id)
        assert entitlement.access_start_at == datetime(2025, 2, 1)
        assert entitlement.access_end_at == datetime(2025, 4, 14)

    async def test_grant_twice_is_a_no_op(self, seed, db_session, granter_for, fetch_all):
        _, order = await seed(make_tariff(), make_order())
        granter = granter_for(db_session)

        first = await granter.grant(GrantRequest(order_id=order.id), now=NOW)
        second = await granter.grant(GrantRequest(order_id=order.id), now=NOW)
        await db_session.commit()

        assert second.already_granted is True
        assert second.access_end_at == first.access_end_at
        assert len(await fetch_all(Entitlement)) == 1

    async def test_cancelled_entitlement_is_never_revived(self, seed, db_session, granter_for, fetch):
        cancelled, _, order = await seed(
            make_entitlement(status=EntitlementStatus.CANCELLED.value, access_end_at=datetime(2025, 3, 20)),
            make_tariff(),
            make_order(),
        )

        result = await granter_for(db_session).grant(GrantRequest(order_id=order.id), now=NOW)
        await db_session.commit()

        assert result.created is True
        assert result.entitlement_id != cancelled.id
        assert (await fetch(Entitlement, cancelled.id)).status == EntitlementStatus.CANCELLED.value

    async def test_custom_days_and_start_without_extension(self, seed, db_session, granter_for):
        _, _, order = await seed(
            make_entitlement(access_end_at=datetime(2025, 3, 15)),
            make_tariff(),
            make_order(),
        )
        request = GrantRequest(
            order_id=order.id,
            custom_access_days=7,
            custom_access_start_at=datetime(2025, 3, 10),
            extend_from_current=False,
        )

        result = await granter_for(db_session).grant(request, now=NOW)

        # Overlaps the current window, so only the end moves
        assert result.access_end_at == datetime(2025, 3, 17)

    async def test_default_days_without_tariff(self, seed, db_session, granter_for):
        order = await seed(make_order(tariff_id=None))
        result = await granter_for(db_session).grant(GrantRequest(order_id=order.id), now=NOW)
        assert result.access_end_at == datetime(2025, 3, 31, 10, 0)

    async def test_active_card_enables_auto_renew(self, seed, db_session, granter_for, fetch):
        card, _, order = await seed(make_payment_method(), make_tariff(), make_order())

        result = await granter_for(db_session).grant(GrantRequest(order_id=order.id), now=NOW)
        await db_session.commit()

        entitlement = await fetch(Entitlement, result.entitlement_id)
        assert entitlement.auto_renew is True
        assert entitlement.payment_method_id == card.id
        assert entitlement.next_charge_at == entitlement.access_end_at

    async def test_unpaid_order_rejected(self, seed, db_session, granter_for):
        order = await seed(make_order(status="pending"))
        with pytest.raises(ValueError):
            await granter_for(db_session).grant(GrantRequest(order_id=order.id), now=NOW)

    async def test_order_without_product_rejected(self, seed, db_session, granter_for):
        order = await seed(make_order(product_id=None))
        with pytest.raises(MappingNotFound):
            await granter_for(db_session).grant(GrantRequest(order_id=order.id), now=NOW)

    async def test_missing_order(self, db_session, granter_for):
        with pytest.raises(NotFoundError):
            await granter_for(db_session).grant(GrantRequest(order_id="missing"), now=NOW)


class TestSideEffects:
    """Tests for collaborator grants."""

    async def test_failed_collaborator_keeps_entitlement(self, seed, db_session, granter_for, fetch):
        _, order = await seed(make_tariff(), make_order())
        collaborator = RecordingCollaborator(fail_telegram=True)
        request = GrantRequest(order_id=order.id, grant_telegram=True, grant_getcourse=True)

        result = await granter_for(db_session, collaborator).grant(request, now=NOW)
        await db_session.commit()

        assert result.side_effects["telegram"]["status"] == "error"
        assert result.side_effects["getcourse"] == {"status": "sent"}
        assert "telegram_failed" in result.warnings
        assert (await fetch(Entitlement, result.entitlement_id)).access_end_at == result.access_end_at

    async def test_side_effects_skipped_without_user(self, seed, db_session, granter_for):
        order = await seed(make_order(user_id=None))
        collaborator = RecordingCollaborator()
        request = GrantRequest(order_id=order.id, grant_telegram=True)

        result = await granter_for(db_session, collaborator).grant(request, now=NOW)

        assert result.side_effects["telegram"] == {"status": "skipped", "reason": "no_user_id"}
        assert "no_user_id" in result.warnings
        assert collaborator.calls == []


class TestLinkContact:
    """Tests for AccessGranter.link_contact."""

    async def test_links_order_and_its_entitlement(self, seed, db_session, granter_for, fetch, fetch_all):
        order = await seed(make_order(user_id=None))
        granter = granter_for(db_session)
        result = await granter.grant(GrantRequest(order_id=order.id), now=NOW)

        await granter.link_contact(order.id, "user-7", actor="ops@club")
        await db_session.commit()

        assert (await fetch(Order, order.id)).user_id == "user-7"
        assert (await fetch(Entitlement, result.entitlement_id)).user_id == "user-7"
        actions = [a.action for a in await fetch_all(AuditLog)]
        assert "contact_linked" in actions

    async def test_regrant_after_linking_is_a_no_op(self, seed, db_session, granter_for):
        order = await seed(make_order(user_id=None))
        granter = granter_for(db_session)
        await granter.grant(GrantRequest(order_id=order.id), now=NOW)
        await granter.link_contact(order.id, "user-7")

        again = await granter.grant(GrantRequest(order_id=order.id), now=NOW)

        assert again.already_granted is True

    async def test_order_owned_by_another_user_rejected(self, seed, db_session, granter_for):
        order = await seed(make_order(user_id="user-1"))
        with pytest.raises(ValueError):
            await granter_for(db_session).link_contact(order.id, "user-2")

    async def test_missing_order(self, db_session, granter_for):
        with pytest.raises(NotFoundError):
            await granter_for(db_session).link_contact("missing", "user-2")
