"""Tests for the SimulatorConnector and the simulator-backed fetcher."""

import json
from datetime import datetime

import pytest

from club_billing.connectors import (
    ChargeRequest,
    SimulatorConnector,
    SimulatorConfig,
    StripeConnector,
    get_connector,
)
from club_billing.errors import ProviderError, ProviderTimeout
from club_billing.reconciliation.psp_fetcher import SimulatorFetcher, StripeFetcher, get_psp_fetcher

from factories import make_event


def charge_request(token: str = SimulatorConnector.CARD_SUCCESS) -> ChargeRequest:
    return ChargeRequest(
        amount=4900,
        currency="USD",
        payment_method_token=token,
        tracking_key="link:renewal:att-1",
        idempotency_key="att-1",
    )


class TestSimulatorCharges:
    """Charge outcomes are driven by the card token."""

    def test_success(self, simulator):
        result = simulator.charge(charge_request())

        assert result.succeeded is True
        assert result.status == "succeeded"
        assert result.provider_transaction_id.startswith("sim_")
        assert simulator.charges[0].tracking_key == "link:renewal:att-1"

    @pytest.mark.parametrize("token,code", [
        (SimulatorConnector.CARD_DECLINE, "declined"),
        (SimulatorConnector.CARD_INSUFFICIENT, "insufficient_funds"),
    ])
    def test_declines_are_results(self, simulator, token, code):
        result = simulator.charge(charge_request(token))

        assert result.succeeded is False
        assert result.status == "failed"
        assert result.error_code == code
        assert simulator.charges[0].succeeded is False

    def test_timeout_raises(self, simulator):
        with pytest.raises(ProviderTimeout) as exc_info:
            simulator.charge(charge_request(SimulatorConnector.CARD_TIMEOUT))

        assert exc_info.value.code == "timeout"
        assert simulator.charges == []

    def test_slow_timeout_card_eventually_answers(self):
        connector = SimulatorConnector(SimulatorConfig(timeout_delay_seconds=0.01))
        result = connector.charge(charge_request(SimulatorConnector.CARD_TIMEOUT))
        assert result.succeeded is True


class TestSimulatorWebhook:
    """Tests for plain-JSON webhook parsing."""

    def test_parses_event(self, simulator):
        body = make_event(provider_event_id="evt_9").model_dump_json().encode()

        event = simulator.parse_webhook({}, body)

        assert event.provider_event_id == "evt_9"
        assert event.occurred_at == datetime(2025, 3, 1, 10, 0)

    def test_defaults_provider(self, simulator):
        body = json.dumps({
            "provider_event_id": "evt_1",
            "tracking_key": "ORD-1",
            "raw_status": "paid",
        }).encode()
        assert simulator.parse_webhook({}, body).provider == "simulator"

    def test_invalid_json(self, simulator):
        with pytest.raises(ValueError, match="not valid JSON"):
            simulator.parse_webhook({}, b"{nope")

    def test_missing_fields(self, simulator):
        with pytest.raises(ValueError):
            simulator.parse_webhook({}, b'{"raw_status": "paid"}')


class TestSimulatorSubscriptions:
    """Tests for in-memory subscriptions."""

    def test_cancel(self, simulator):
        simulator.add_subscription("S-1", tracking_key="link:order:ORD-1")

        response = simulator.cancel_subscription("S-1")

        assert response == {"id": "S-1", "status": "canceled"}
        assert simulator.cancelled_subscriptions == ["S-1"]

    def test_cancel_unknown(self, simulator):
        with pytest.raises(ProviderError) as exc_info:
            simulator.cancel_subscription("S-404")
        assert exc_info.value.code == "resource_missing"

    def test_fetcher_lists_live_subscriptions_only(self, simulator, simulator_fetcher):
        simulator.add_subscription("S-1")
        simulator.add_subscription("S-2", status="past_due")
        simulator.add_subscription("S-3", status="canceled")

        ids = [s.id for s in simulator_fetcher.list_subscriptions()]

        assert ids == ["S-1", "S-2"]


class TestSimulatorFetcher:
    """Tests for polled events."""

    def test_filters_by_time_range(self, simulator):
        fetcher = SimulatorFetcher(simulator, events=[
            make_event(provider_event_id="early", occurred_at=datetime(2025, 2, 1)),
            make_event(provider_event_id="inside", occurred_at=datetime(2025, 3, 1)),
            make_event(provider_event_id="undated", occurred_at=None),
        ])

        events = fetcher.fetch_events(datetime(2025, 2, 15), datetime(2025, 3, 15))

        assert [e.provider_event_id for e in events] == ["inside", "undated"]


class TestFactories:
    """Tests for connector and fetcher factories."""

    def test_get_connector(self, simulator):
        assert isinstance(get_connector("stripe"), StripeConnector)
        assert get_connector("SIMULATOR", simulator=simulator) is simulator

    def test_get_connector_unknown(self):
        with pytest.raises(ValueError, match="Unsupported provider"):
            get_connector("paypal")

    def test_get_psp_fetcher(self, simulator):
        assert isinstance(get_psp_fetcher("stripe", api_key="sk_test"), StripeFetcher)
        fetcher = get_psp_fetcher("simulator", simulator=simulator)
        assert fetcher.connector is simulator

    def test_get_psp_fetcher_unknown(self):
        with pytest.raises(ValueError, match="Unsupported PSP provider"):
            get_psp_fetcher("paypal")
