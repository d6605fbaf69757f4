"""Tests for the reconciliation queue worker."""

from datetime import datetime
from unittest.mock import AsyncMock, patch

import pytest

from club_billing.connectors import SimulatorConnector
from club_billing.database import (
    AuditLog,
    ChargeAttempt,
    Entitlement,
    Order,
    ProcessingStatus,
    ReconcileQueueItem,
)
from club_billing.errors import NotFoundError
from club_billing.reconciliation import (
    ALLOWED_TRANSITIONS,
    Detector,
    Materializer,
    MaterializeRequest,
    PlanMapper,
    QueueAction,
    QueueProcessor,
    RenewalScheduler,
    renewal_tracking_key,
    validate_transition,
)

from factories import (
    RecordingCollaborator,
    make_entitlement,
    make_event,
    make_mapping,
    make_order,
    make_payment_method,
    make_queue_item,
    make_tariff,
)

NOW = datetime(2025, 3, 1, 10, 5)


@pytest.fixture
def processor(session_factory, billing_settings):
    return QueueProcessor(session_factory, settings=billing_settings)


class TestTransitions:
    """Tests for the queue state machine table."""

    @pytest.mark.parametrize("current, target", [
        ("pending", "processed"),
        ("pending", "pending_needs_mapping"),
        ("pending", "error"),
        ("pending_needs_mapping", "processed"),
        ("error", "processed"),
        ("error", "error"),
    ])
    def test_allowed(self, current, target):
        validate_transition(current, target)

    @pytest.mark.parametrize("current, target", [
        ("processed", "pending"),
        ("processed", "error"),
        ("pending_needs_mapping", "pending"),
    ])
    def test_rejected(self, current, target):
        with pytest.raises(ValueError):
            validate_transition(current, target)

    def test_processed_is_terminal(self):
        assert ALLOWED_TRANSITIONS["processed"] == set()


class TestIngest:
    """Tests for QueueProcessor.ingest."""

    async def test_stores_normalized_status(self, processor, fetch):
        item, created = await processor.ingest(make_event(raw_status="Успешно"))

        assert created is True
        stored = await fetch(ReconcileQueueItem, item.id)
        assert stored.raw_status == "Успешно"
        assert stored.status_normalized == "succeeded"
        assert stored.processing_status == ProcessingStatus.PENDING.value
        assert stored.plan_key == "standard monthly"

    async def test_replayed_event_is_stored_once(self, processor, fetch_all):
        first, _ = await processor.ingest(make_event())
        second, created = await processor.ingest(make_event(raw_status="failed"), source="poll")

        assert created is False
        assert second.id == first.id
        items = await fetch_all(ReconcileQueueItem)
        assert len(items) == 1
        assert items[0].source == "webhook"


class TestProcessItem:
    """Tests for driving single items."""

    async def test_materializes_mapped_payment(self, processor, seed, fetch, fetch_all):
        await seed(make_mapping(), make_tariff())
        item, _ = await processor.ingest(make_event())

        outcome = await processor.process_item(item.id, now=NOW)

        assert outcome.action == QueueAction.MATERIALIZED
        assert outcome.processing_status == ProcessingStatus.PROCESSED.value
        stored = await fetch(ReconcileQueueItem, item.id)
        assert stored.processed_at == NOW
        order = await fetch(Order, stored.matched_order_id)
        assert order.status == "paid"
        assert order.reconcile_source == "reconcile_webhook"
        entitlement = await fetch(Entitlement, outcome.entitlement_id)
        assert entitlement.access_end_at == datetime(2025, 3, 31, 10, 0)

    async def test_reprocessing_processed_item_is_a_no_op(self, processor, seed, fetch_all):
        await seed(make_mapping(), make_tariff())
        item, _ = await processor.ingest(make_event())
        await processor.process_item(item.id, now=NOW)

        again = await processor.process_item(item.id, now=NOW)

        assert again.action == QueueAction.ALREADY_PROCESSED
        assert len(await fetch_all(Order)) == 1
        assert len(await fetch_all(Entitlement)) == 1

    async def test_missing_mapping_needs_mapping(self, processor, fetch, fetch_all, caplog):
        item, _ = await processor.ingest(make_event(plan_title="Gold Yearly"))

        outcome = await processor.process_item(item.id, now=NOW)

        assert outcome.action == QueueAction.NEEDS_MAPPING
        stored = await fetch(ReconcileQueueItem, item.id)
        assert stored.processing_status == ProcessingStatus.PENDING_NEEDS_MAPPING.value
        assert "Gold Yearly" in stored.status_reason
        assert await fetch_all(Order) == []
        assert await fetch_all(Entitlement) == []
        assert "needs mapping" in caplog.text

    async def test_mapping_without_auto_create_needs_mapping(self, processor, seed, fetch_all):
        await seed(make_mapping(auto_create_order=False), make_tariff())
        item, _ = await processor.ingest(make_event())

        outcome = await processor.process_item(item.id, now=NOW)

        assert outcome.action == QueueAction.NEEDS_MAPPING
        assert await fetch_all(Order) == []

    async def test_mapping_without_auto_create_confirms_existing_order(self, processor, seed, fetch):
        _, _, order = await seed(
            make_mapping(auto_create_order=False),
            make_tariff(),
            make_order(order_number="ORD-42", status="pending", paid_at=None),
        )
        item, _ = await processor.ingest(make_event())

        outcome = await processor.process_item(item.id, now=NOW)

        assert outcome.action == QueueAction.MATERIALIZED
        assert outcome.order_id == order.id
        assert (await fetch(Order, order.id)).status == "paid"

    @pytest.mark.parametrize("raw_status", ["declined", "refunded", "canceled"])
    async def test_non_payment_outcomes_close_without_changes(self, processor, seed, raw_status, fetch, fetch_all):
        await seed(make_mapping(), make_tariff())
        item, _ = await processor.ingest(make_event(raw_status=raw_status))

        outcome = await processor.process_item(item.id, now=NOW)

        assert outcome.action == QueueAction.NO_ACTION
        assert (await fetch(ReconcileQueueItem, item.id)).processing_status == "processed"
        assert await fetch_all(Order) == []
        assert await fetch_all(Entitlement) == []

    async def test_pending_payment_waits(self, processor, seed, fetch):
        await seed(make_mapping(), make_tariff())
        item, _ = await processor.ingest(make_event(raw_status="processing"))

        outcome = await processor.process_item(item.id, now=NOW)

        assert outcome.action == QueueAction.AWAITING_PROVIDER
        stored = await fetch(ReconcileQueueItem, item.id)
        assert stored.processing_status == ProcessingStatus.PENDING.value
        assert stored.last_attempted_at == NOW

    async def test_failure_is_recorded_and_retried(self, processor, seed, fetch):
        await seed(make_mapping(), make_tariff())
        item, _ = await processor.ingest(make_event())

        with patch.object(Materializer, "materialize", AsyncMock(side_effect=RuntimeError("db went away"))):
            failed = await processor.process_item(item.id, now=NOW)

        assert failed.action == QueueAction.ERROR
        stored = await fetch(ReconcileQueueItem, item.id)
        assert stored.processing_status == ProcessingStatus.ERROR.value
        assert stored.attempt_count == 1
        assert stored.last_error == "RuntimeError: db went away"

        batch = await processor.process_pending(now=NOW)

        assert [o.action for o in batch.outcomes] == [QueueAction.MATERIALIZED]
        assert (await fetch(ReconcileQueueItem, item.id)).processing_status == "processed"

    async def test_missing_item(self, processor):
        with pytest.raises(NotFoundError):
            await processor.process_item("missing", now=NOW)


class TestBatches:
    """Tests for batch processing and re-processing."""

    async def test_one_failure_does_not_stop_the_batch(self, processor, seed):
        await seed(make_mapping(), make_tariff())
        good, _ = await processor.ingest(make_event(provider_event_id="evt_good", tracking_key="link:order:A"))
        bad, _ = await processor.ingest(make_event(provider_event_id="evt_bad", tracking_key="link:order:B"))

        original = Materializer.materialize

        async def flaky(self, item, *args, **kwargs):
            if item.id == bad.id:
                raise RuntimeError("boom")
            return await original(self, item, *args, **kwargs)

        with patch.object(Materializer, "materialize", flaky):
            result = await processor.process_pending(now=NOW)

        actions = {o.item_id: o.action for o in result.outcomes}
        assert actions == {good.id: QueueAction.MATERIALIZED, bad.id: QueueAction.ERROR}
        assert result.has_errors

    async def test_items_over_retry_cap_are_skipped(self, processor, seed):
        await seed(make_queue_item(processing_status="error", attempt_count=5))
        result = await processor.process_pending(now=NOW)
        assert result.outcomes == []

    async def test_needs_mapping_items_are_not_picked_by_batches(self, processor, fetch_all):
        item, _ = await processor.ingest(make_event(plan_title="Gold Yearly"))
        await processor.process_item(item.id, now=NOW)

        result = await processor.process_pending(now=NOW)

        assert result.outcomes == []

    async def test_reprocess_after_mapping_is_added(self, processor, session_factory, seed, fetch):
        await seed(make_tariff())
        item, _ = await processor.ingest(make_event(plan_title="Standard Monthly"))
        await processor.process_item(item.id, now=NOW)

        async with session_factory() as session:
            await PlanMapper(session).create_mapping("standard monthly", product_id="P1", tariff_id="T1")
            await session.commit()
        result = await processor.reprocess_needs_mapping("STANDARD MONTHLY", now=NOW)

        assert [o.action for o in result.outcomes] == [QueueAction.MATERIALIZED]
        stored = await fetch(ReconcileQueueItem, item.id)
        assert stored.processing_status == "processed"
        assert stored.status_reason is None

    async def test_reprocess_blank_title_rejected(self, processor):
        with pytest.raises(ValueError):
            await processor.reprocess_needs_mapping("  ")


class TestManualMaterialize:
    """Tests for operator materialization."""

    async def test_materializes_with_fallback_product(self, processor, fetch, fetch_all):
        item, _ = await processor.ingest(make_event(plan_title="Gold Yearly"))
        await processor.process_item(item.id, now=NOW)
        request = MaterializeRequest(queue_item_id=item.id, profile_id="user-5", product_id="P2")

        outcome = await processor.materialize_manual(request, actor="ops@club", now=NOW)

        assert outcome.action == QueueAction.MATERIALIZED
        order = await fetch(Order, outcome.order_id)
        assert (order.user_id, order.product_id, order.reconcile_source) == ("user-5", "P2", "manual")
        audit = [(a.action, a.actor) for a in await fetch_all(AuditLog)]
        assert ("queue_item_materialized", "ops@club") in audit

    async def test_repeat_returns_existing_order(self, processor, fetch_all):
        item, _ = await processor.ingest(make_event(plan_title="Gold Yearly"))
        request = MaterializeRequest(queue_item_id=item.id, product_id="P2")

        first = await processor.materialize_manual(request, now=NOW)
        second = await processor.materialize_manual(request, now=NOW)

        assert second.action == QueueAction.ALREADY_PROCESSED
        assert second.order_id == first.order_id
        assert len(await fetch_all(Order)) == 1

    async def test_failed_payment_rejected(self, processor):
        item, _ = await processor.ingest(make_event(raw_status="declined"))
        with pytest.raises(ValueError):
            await processor.materialize_manual(MaterializeRequest(queue_item_id=item.id, product_id="P2"))

    async def test_missing_item(self, processor):
        with pytest.raises(NotFoundError):
            await processor.materialize_manual(MaterializeRequest(queue_item_id="missing", product_id="P2"))

    async def test_bulk_reports_each_item(self, processor, fetch_all):
        ok, _ = await processor.ingest(make_event(provider_event_id="evt_ok", tracking_key="link:order:A"))
        declined, _ = await processor.ingest(make_event(provider_event_id="evt_no", tracking_key="link:order:B", raw_status="declined"))
        requests = [
            MaterializeRequest(queue_item_id=ok.id, product_id="P2"),
            MaterializeRequest(queue_item_id=declined.id, product_id="P2"),
            MaterializeRequest(queue_item_id="missing", product_id="P2"),
        ]

        result = await processor.materialize_bulk(requests, actor="ops@club")

        assert [o.action for o in result.outcomes] == [
            QueueAction.MATERIALIZED,
            QueueAction.ERROR,
            QueueAction.ERROR,
        ]
        assert len(await fetch_all(Order)) == 1

    async def test_bulk_dry_run_writes_nothing(self, processor, seed, fetch_all):
        await seed(make_order(order_number="ORD-42", status="pending"))
        existing, _ = await processor.ingest(make_event(provider_event_id="evt_a"))
        fresh, _ = await processor.ingest(make_event(provider_event_id="evt_b", tracking_key="link:order:NEW"))
        requests = [
            MaterializeRequest(queue_item_id=existing.id, product_id="P2"),
            MaterializeRequest(queue_item_id=fresh.id, product_id="P2"),
        ]

        result = await processor.materialize_bulk(requests, dry_run=True)

        assert [o.action for o in result.outcomes] == [QueueAction.DRY_RUN, QueueAction.DRY_RUN]
        assert result.outcomes[0].detail == "would confirm order ORD-42"
        assert result.outcomes[1].detail == "would create a new order"
        orders = await fetch_all(Order)
        assert [o.status for o in orders] == ["pending"]
        assert await fetch_all(Entitlement) == []


RENEWAL_RUN = datetime(2025, 3, 1, 0, 0)


@pytest.fixture
def renewal_charge(seed, session_factory, billing_settings, simulator, fetch_all):
    """Run one scheduled renewal on the given card; return (entitlement, charge attempt)."""
    async def _charge(token=SimulatorConnector.CARD_SUCCESS):
        _, card = await seed(make_tariff(), make_payment_method(token=token))
        entitlement = await seed(make_entitlement(
            auto_renew=True,
            payment_method_id=card.id,
            access_end_at=RENEWAL_RUN,
            next_charge_at=RENEWAL_RUN,
        ))
        await RenewalScheduler(session_factory, simulator, settings=billing_settings).run_due(now=RENEWAL_RUN)
        attempts = await fetch_all(ChargeAttempt)
        return entitlement, attempts[0]
    return _charge


def _renewal_event(tracking_key, provider_event_id="evt_renewal"):
    return make_event(
        provider_event_id=provider_event_id,
        tracking_key=tracking_key,
        raw_status="succeeded",
        plan_title=None,
    )


class TestRenewalPayments:
    """Tests for provider events that report renewal charges."""

    async def test_applied_charge_closes_the_item(self, processor, renewal_charge, db_session, billing_settings, fetch, fetch_all):
        entitlement, attempt = await renewal_charge()
        item, _ = await processor.ingest(_renewal_event(attempt.tracking_key))

        outcome = await processor.process_item(item.id, now=NOW)

        assert outcome.action == QueueAction.NO_ACTION
        assert outcome.processing_status == ProcessingStatus.PROCESSED.value
        assert outcome.entitlement_id == entitlement.id
        assert (await fetch(Entitlement, entitlement.id)).access_end_at == datetime(2025, 3, 31)
        assert await fetch_all(Order) == []

        _, total = await Detector(db_session, settings=billing_settings).unmaterialized_payments(limit=10)
        assert total == 0

    async def test_late_success_after_timeout_is_applied_once(self, session_factory, billing_settings, renewal_charge, fetch, fetch_all):
        entitlement, attempt = await renewal_charge(SimulatorConnector.CARD_TIMEOUT)
        assert attempt.succeeded is False
        collaborator = RecordingCollaborator()
        processor = QueueProcessor(session_factory, settings=billing_settings, collaborator=collaborator)
        first, _ = await processor.ingest(_renewal_event(attempt.tracking_key, "evt_intent"))
        second, _ = await processor.ingest(_renewal_event(attempt.tracking_key, "evt_charge"))

        recovered = await processor.process_item(first.id, now=NOW)
        replayed = await processor.process_item(second.id, now=NOW)

        assert recovered.action == QueueAction.MATERIALIZED
        assert recovered.entitlement_id == entitlement.id
        assert replayed.action == QueueAction.NO_ACTION
        stored = await fetch(Entitlement, entitlement.id)
        assert stored.access_end_at == datetime(2025, 3, 31, 10, 0)
        assert stored.charge_attempts == 0
        assert stored.status == "active"
        assert (await fetch(ChargeAttempt, attempt.id)).succeeded is True
        assert "renewal_recovered" in [a.action for a in await fetch_all(AuditLog)]
        assert collaborator.calls == [("telegram", "user-1", "P1", datetime(2025, 3, 31, 10, 0))]

    async def test_payment_ahead_of_the_attempt_record_waits(self, processor, fetch):
        item, _ = await processor.ingest(_renewal_event(renewal_tracking_key("att-unrecorded")))

        outcome = await processor.process_item(item.id, now=NOW)

        assert outcome.action == QueueAction.AWAITING_PROVIDER
        stored = await fetch(ReconcileQueueItem, item.id)
        assert stored.processing_status == ProcessingStatus.PENDING.value
        assert "att-unrecorded" in stored.status_reason

    async def test_cancelled_entitlement_is_left_for_an_operator(self, processor, seed, fetch):
        entitlement = await seed(make_entitlement(status="cancelled"))
        await seed(ChargeAttempt(
            id="att-1",
            entitlement_id=entitlement.id,
            attempted_at=RENEWAL_RUN,
            succeeded=False,
            error_code="timeout",
            tracking_key=renewal_tracking_key("att-1"),
        ))
        item, _ = await processor.ingest(_renewal_event(renewal_tracking_key("att-1")))

        outcome = await processor.process_item(item.id, now=NOW)

        assert outcome.action == QueueAction.NEEDS_MAPPING
        assert (await fetch(Entitlement, entitlement.id)).status == "cancelled"
        assert (await fetch(ChargeAttempt, "att-1")).succeeded is False

    async def test_manual_materialize_never_creates_an_order(self, processor, renewal_charge, fetch_all):
        _, attempt = await renewal_charge()
        item, _ = await processor.ingest(_renewal_event(attempt.tracking_key))
        request = MaterializeRequest(queue_item_id=item.id, product_id="P1")

        outcome = await processor.materialize_manual(request, actor="ops@club", now=NOW)

        assert outcome.action == QueueAction.NO_ACTION
        assert await fetch_all(Order) == []
        assert len(await fetch_all(Entitlement)) == 1
