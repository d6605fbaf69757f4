"""Tests for the HTTP surface."""

import json
from datetime import datetime

import httpx
import pytest

from club_billing.api import app
from club_billing.database import AuditLog, Entitlement, Order, ReconcileQueueItem, get_db, get_session_factory
from club_billing.reconciliation.api import provider_connector, provider_fetcher

from factories import (
    make_entitlement,
    make_event,
    make_mapping,
    make_order,
    make_payment_method,
    make_queue_item,
    make_tariff,
)


@pytest.fixture
async def client(session_factory, simulator, simulator_fetcher, mock_api_key):
    """HTTP client bound to the app with the test database and simulator provider."""
    async def override_get_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_session_factory] = lambda: session_factory
    app.dependency_overrides[provider_connector] = lambda: simulator
    app.dependency_overrides[provider_fetcher] = lambda: simulator_fetcher
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.clear()


def _event_body(**overrides) -> bytes:
    return make_event(**overrides).model_dump_json().encode()


class TestAuthentication:
    """Tests for API key enforcement."""

    async def test_health_is_public(self, client):
        response = await client.get("/health")
        assert response.status_code == 200
        assert response.json() == {"status": "healthy"}

    async def test_missing_key_rejected(self, client):
        response = await client.get("/reconciliation/mappings")
        assert response.status_code in (401, 403)

    async def test_wrong_key_rejected(self, client):
        response = await client.get("/reconciliation/mappings", headers={"Authorization": "Bearer nope"})
        assert response.status_code == 401

    async def test_unconfigured_key_is_a_server_error(self, client, monkeypatch):
        monkeypatch.delenv("API_KEY", raising=False)
        response = await client.get("/reconciliation/mappings", headers={"Authorization": "Bearer anything"})
        assert response.status_code == 500


class TestWebhook:
    """Tests for provider event intake."""

    async def test_unmapped_event_is_queued(self, client, fetch_all):
        response = await client.post("/events", content=_event_body(plan_title="Gold Yearly"))

        assert response.status_code == 200
        data = response.json()
        assert data["accepted"] is True
        assert data["created"] is True
        assert data["outcome"]["action"] == "needs_mapping"
        assert len(await fetch_all(ReconcileQueueItem)) == 1

    async def test_mapped_event_is_materialized_once(self, client, seed, fetch_all):
        await seed(make_mapping(), make_tariff())

        first = await client.post("/events", content=_event_body())
        replay = await client.post("/events", content=_event_body())

        assert first.json()["outcome"]["action"] == "materialized"
        assert replay.json()["created"] is False
        assert replay.json()["outcome"]["action"] == "already_processed"
        assert len(await fetch_all(Order)) == 1
        assert len(await fetch_all(Entitlement)) == 1

    async def test_invalid_body_rejected(self, client):
        response = await client.post("/events", content=b"not json")
        assert response.status_code == 400

    async def test_polled_events_share_the_pipeline(self, client, auth_headers, fetch_all):
        events = [
            json.loads(make_event(provider_event_id="evt_a").model_dump_json()),
            json.loads(make_event(provider_event_id="evt_b", raw_status="refunded").model_dump_json()),
        ]

        response = await client.post("/events/poll", json=events, headers=auth_headers)

        assert response.status_code == 200
        assert response.json()["counts"] == {"needs_mapping": 1, "no_action": 1}
        items = await fetch_all(ReconcileQueueItem)
        assert {i.source for i in items} == {"poll"}


class TestQueueRoutes:
    """Tests for queue processing and operator materialization."""

    async def test_process_queue(self, client, auth_headers, seed):
        await seed(make_mapping(), make_tariff(), make_queue_item())

        response = await client.post("/reconciliation/queue/process", headers=auth_headers)

        assert response.status_code == 200
        assert response.json()["counts"] == {"materialized": 1}

    async def test_materialize_item(self, client, auth_headers, seed, fetch_all):
        item = await seed(make_queue_item(plan_title="Gold Yearly"))

        response = await client.post(
            f"/reconciliation/queue/{item.id}/materialize",
            json={"profile_id": "user-5", "product_id": "P2"},
            headers=auth_headers,
        )

        assert response.status_code == 200
        assert response.json()["action"] == "materialized"
        audit = [(a.action, a.actor) for a in await fetch_all(AuditLog)]
        assert ("queue_item_materialized", "ops@club") in audit

    async def test_materialize_missing_item(self, client, auth_headers):
        response = await client.post(
            "/reconciliation/queue/missing/materialize",
            json={"product_id": "P2"},
            headers=auth_headers,
        )
        assert response.status_code == 404

    async def test_materialize_failed_payment(self, client, auth_headers, seed):
        item = await seed(make_queue_item(raw_status="declined", status_normalized="failed"))
        response = await client.post(
            f"/reconciliation/queue/{item.id}/materialize",
            json={"product_id": "P2"},
            headers=auth_headers,
        )
        assert response.status_code == 400

    async def test_bulk_dry_run(self, client, auth_headers, seed, fetch_all):
        item = await seed(make_queue_item())

        response = await client.post(
            "/reconciliation/queue/materialize",
            json={"requests": [{"queue_item_id": item.id, "product_id": "P2"}], "dry_run": True},
            headers=auth_headers,
        )

        assert response.status_code == 200
        assert response.json()["counts"] == {"dry_run": 1}
        assert await fetch_all(Order) == []

    async def test_bulk_requires_requests(self, client, auth_headers):
        response = await client.post("/reconciliation/queue/materialize", json={"requests": []}, headers=auth_headers)
        assert response.status_code == 422


class TestMappingRoutes:
    """Tests for mapping administration."""

    async def test_create_mapping_reprocesses_waiting_items(self, client, auth_headers, seed):
        await seed(make_tariff(), make_queue_item(processing_status="pending_needs_mapping"))

        response = await client.post(
            "/reconciliation/mappings",
            json={"provider_plan_title": "Standard Monthly", "product_id": "P1", "tariff_id": "T1"},
            headers=auth_headers,
        )

        assert response.status_code == 201
        data = response.json()
        assert data["mapping"]["product_id"] == "P1"
        assert data["reprocessed"]["counts"] == {"materialized": 1}

    async def test_duplicate_mapping_rejected(self, client, auth_headers, seed):
        await seed(make_mapping())
        response = await client.post(
            "/reconciliation/mappings",
            json={"provider_plan_title": "standard monthly", "product_id": "P1"},
            headers=auth_headers,
        )
        assert response.status_code == 400

    async def test_list_mappings_with_unmapped_titles(self, client, auth_headers, seed):
        await seed(
            make_mapping(),
            make_queue_item(plan_title="Gold", plan_key="gold", processing_status="pending_needs_mapping"),
        )

        response = await client.get("/reconciliation/mappings", headers=auth_headers)

        data = response.json()
        assert [m["provider_plan_title"] for m in data["mappings"]] == ["Standard Monthly"]
        assert data["unmapped_titles"] == {"Gold": 1}

    async def test_apply_mapping_without_mapping_conflicts(self, client, auth_headers, seed):
        order = await seed(make_order(plan_title="Gold"))

        response = await client.post(f"/reconciliation/orders/{order.id}/apply-mapping", headers=auth_headers)

        assert response.status_code == 409
        assert response.json()["plan_title"] == "Gold"

    async def test_apply_mapping(self, client, auth_headers, seed, fetch):
        _, order = await seed(make_mapping(), make_order(product_id="P9"))

        response = await client.post(f"/reconciliation/orders/{order.id}/apply-mapping", headers=auth_headers)

        assert response.status_code == 200
        assert (await fetch(Order, order.id)).product_id == "P1"


class TestOrderRoutes:
    """Tests for grants and contact linking."""

    async def test_grant_access(self, client, auth_headers, seed, fetch):
        _, order = await seed(make_tariff(), make_order())

        response = await client.post(
            f"/reconciliation/orders/{order.id}/grant-access",
            json={"custom_access_days": 10, "extend_from_current": False},
            headers=auth_headers,
        )

        assert response.status_code == 200
        data = response.json()
        assert data["created"] is True
        assert data["access_end_at"] == "2025-03-11T10:00:00"
        assert (await fetch(Entitlement, data["entitlement_id"])).order_id == order.id

    async def test_grant_access_missing_order(self, client, auth_headers):
        response = await client.post("/reconciliation/orders/missing/grant-access", json={}, headers=auth_headers)
        assert response.status_code == 404

    async def test_link_contact(self, client, auth_headers, seed, fetch):
        order = await seed(make_order(user_id=None))

        response = await client.post(
            f"/reconciliation/orders/{order.id}/link-contact",
            json={"user_id": "user-7"},
            headers=auth_headers,
        )

        assert response.status_code == 200
        assert (await fetch(Order, order.id)).user_id == "user-7"


class TestRenewalRoutes:
    """Tests for charging and card replacement."""

    async def _due(self, seed):
        _, card = await seed(make_tariff(), make_payment_method())
        return await seed(make_entitlement(auto_renew=True, payment_method_id=card.id, next_charge_at=datetime(2025, 3, 1)))

    async def test_charge_now(self, client, auth_headers, seed):
        entitlement = await self._due(seed)

        response = await client.post(f"/reconciliation/entitlements/{entitlement.id}/charge", headers=auth_headers)

        assert response.status_code == 200
        assert response.json()["result"] == "charged"

    async def test_charge_claimed_entitlement_conflicts(self, client, auth_headers, seed):
        entitlement = await seed(make_entitlement(claim_token="other", claimed_at=datetime.utcnow()))

        response = await client.post(f"/reconciliation/entitlements/{entitlement.id}/charge", headers=auth_headers)

        assert response.status_code == 409

    async def test_run_renewals(self, client, auth_headers, seed):
        await self._due(seed)

        response = await client.post("/reconciliation/renewals/run", headers=auth_headers)

        assert response.status_code == 200
        assert response.json()["counts"] == {"charged": 1}

    async def test_replace_payment_method(self, client, auth_headers, seed, fetch):
        entitlement = await self._due(seed)
        card = await seed(make_payment_method(card_last4="1111"))

        response = await client.post(
            f"/reconciliation/entitlements/{entitlement.id}/payment-method",
            json={"payment_method_id": card.id},
            headers=auth_headers,
        )

        assert response.status_code == 200
        assert response.json()["payment_method_id"] == card.id


class TestDiagnosticsRoutes:
    """Tests for diagnostics and orphan cancellation."""

    async def test_json_report(self, client, auth_headers, seed, simulator):
        await seed(make_queue_item())
        simulator.add_subscription("S-99")

        response = await client.get("/reconciliation/diagnostics?limit=5", headers=auth_headers)

        assert response.status_code == 200
        data = response.json()
        assert data["row_limit"] == 5
        assert data["statistics"]["unmaterialized_payments"] == 1
        assert data["orphans"][0]["subscription_id"] == "S-99"

    async def test_csv_report(self, client, auth_headers, seed):
        await seed(make_queue_item())

        response = await client.get("/reconciliation/diagnostics?format=csv", headers=auth_headers)

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/csv")
        assert response.text.splitlines()[1].startswith("unmaterialized,")

    async def test_unknown_format(self, client, auth_headers):
        response = await client.get("/reconciliation/diagnostics?format=xml", headers=auth_headers)
        assert response.status_code == 400

    async def test_cancel_orphan(self, client, auth_headers, simulator, fetch_all):
        simulator.add_subscription("S-99")

        response = await client.post("/reconciliation/orphans/S-99/cancel", headers=auth_headers)

        assert response.status_code == 200
        assert response.json()["cancelled"] is True
        assert simulator.cancelled_subscriptions == ["S-99"]
        assert [a.action for a in await fetch_all(AuditLog)] == ["orphan_subscription_cancelled"]

    async def test_cancel_unknown_subscription_reports_provider_error(self, client, auth_headers):
        response = await client.post("/reconciliation/orphans/S-404/cancel", headers=auth_headers)

        assert response.status_code == 200
        data = response.json()
        assert data["cancelled"] is False
        assert data["code"] == "resource_missing"

    async def test_cancel_linked_subscription_rejected(self, client, auth_headers, seed, simulator):
        await seed(make_entitlement(provider_subscription_id="S-1"))
        simulator.add_subscription("S-1")

        response = await client.post("/reconciliation/orphans/S-1/cancel", headers=auth_headers)

        assert response.status_code == 400
        assert simulator.cancelled_subscriptions == []
