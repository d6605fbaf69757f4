"""Reconciliation queue worker.

Drives each ReconcileQueueItem through its state machine:

    pending ---------------> processed              (failed, cancelled, refunded)
    pending ---------------> pending_needs_mapping  (no usable mapping)
    pending ---------------> processed              (materialized)
    pending ---------------> processed              (renewal payment matched to its charge)
    pending_needs_mapping -> processed              (mapping added or operator fallback)
    any non-terminal ------> error                  (unhandled exception, retried later)

Every item is handled in its own session so a failure on one never affects the
rest of a batch.
"""

import logging
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Set, Tuple

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..collaborators import AccessCollaborator, get_access_collaborator
from ..config import BillingSettings, settings as default_settings
from ..connectors.base import InboundEvent
from ..database import (
    AuditLogRepository,
    ChargeAttemptRepository,
    EntitlementRepository,
    EntitlementStatus,
    ProcessingStatus,
    QueueItemRepository,
    ReconcileQueueItem,
    TariffRepository,
    plan_key_for,
)
from ..errors import NotFoundError
from .mapper import PlanMapper
from .materializer import Materializer
from .models import (
    BatchResult,
    FallbackResolution,
    MaterializeRequest,
    NotFound,
    ProcessOutcome,
    QueueAction,
)
from .renewals import (
    apply_renewal_success,
    refresh_telegram_access,
    renewal_attempt_id,
    renewal_tracking_key,
)
from .status import NormalizedStatus, normalize_status

logger = logging.getLogger(__name__)

P = ProcessingStatus

# Valid processing_status transitions
ALLOWED_TRANSITIONS: Dict[str, Set[str]] = {
    P.PENDING.value: {P.PENDING_NEEDS_MAPPING.value, P.PROCESSED.value, P.ERROR.value},
    P.PENDING_NEEDS_MAPPING.value: {P.PROCESSED.value, P.ERROR.value},
    P.ERROR.value: {P.PROCESSED.value, P.PENDING_NEEDS_MAPPING.value, P.ERROR.value},
    P.PROCESSED.value: set(),
}

# Provider outcomes that close an item without materializing anything
NON_EVENT_STATUSES = (
    NormalizedStatus.FAILED,
    NormalizedStatus.CANCELLED,
    NormalizedStatus.REFUNDED,
)


def validate_transition(current: str, target: str) -> None:
    """Raise ValueError if ``current -> target`` is not a legal queue transition."""
    allowed = ALLOWED_TRANSITIONS.get(current, set())
    if target not in allowed:
        raise ValueError(
            f"Invalid queue transition: {current} -> {target}. "
            f"Allowed: {sorted(allowed)}"
        )


def _transition(item: ReconcileQueueItem, target: ProcessingStatus, reason: Optional[str] = None) -> None:
    validate_transition(item.processing_status, target.value)
    logger.info(f"Queue item {item.id}: {item.processing_status} -> {target.value}")
    item.processing_status = target.value
    item.status_reason = reason


class QueueProcessor:
    """Consumes inbound provider events and drives them to a terminal state."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        settings: Optional[BillingSettings] = None,
        collaborator: Optional[AccessCollaborator] = None,
    ):
        """Initialize the processor.

        Args:
            session_factory: Factory used to open one session per unit of work.
            settings: Policy settings; defaults to the process settings.
            collaborator: Access collaborator for grant side effects.
        """
        self.session_factory = session_factory
        self.settings = settings or default_settings
        self.collaborator = collaborator

    async def ingest(self, event: InboundEvent, source: str = "webhook") -> Tuple[ReconcileQueueItem, bool]:
        """Store an inbound event, once per provider event id.

        Webhook deliveries and reconciliation polls share this entry point and
        payload shape. A replayed event returns the stored item unchanged.

        Args:
            event: Inbound provider event.
            source: ``webhook``, ``poll`` or ``import``.

        Returns:
            Tuple of (queue item, created).
        """
        async with self.session_factory() as session:
            queue = QueueItemRepository(session)
            existing = await queue.get_by_provider_event_id(event.provider_event_id)
            if existing is not None:
                logger.info(f"Provider event {event.provider_event_id} already queued as {existing.id}")
                return existing, False

            try:
                item = await queue.create(
                    provider_event_id=event.provider_event_id,
                    tracking_key=event.tracking_key,
                    raw_status=event.raw_status,
                    status_normalized=normalize_status(event.raw_status).value,
                    plan_title=event.plan_title,
                    amount=event.amount,
                    currency=event.currency,
                    occurred_at=event.occurred_at,
                    provider=event.provider,
                    source=source,
                    raw_payload=event.raw,
                )
                await session.commit()
                return item, True
            except IntegrityError:
                # A concurrent delivery of the same event won the insert
                await session.rollback()
                existing = await queue.get_by_provider_event_id(event.provider_event_id)
                if existing is None:
                    raise
                return existing, False

    async def process_pending(self, limit: Optional[int] = None, now: Optional[datetime] = None) -> BatchResult:
        """Process pending items and errored items still under the retry cap.

        Args:
            limit: Maximum number of items; defaults to the configured batch size.
            now: Reference time, naive UTC.

        Returns:
            BatchResult with one outcome per item.
        """
        async with self.session_factory() as session:
            ids = await QueueItemRepository(session).list_processable_ids(
                limit or self.settings.batch_size,
                self.settings.max_queue_attempts,
            )

        result = await self._process_ids(ids, now)
        logger.info(f"Queue batch finished: {result.counts}")
        return result

    async def reprocess_needs_mapping(self, plan_title: str, now: Optional[datetime] = None) -> BatchResult:
        """Re-drive items that were waiting on a mapping for ``plan_title``."""
        key = plan_key_for(plan_title)
        if key is None:
            raise ValueError("plan_title must not be blank")
        async with self.session_factory() as session:
            ids = await QueueItemRepository(session).list_needs_mapping_ids(key)

        logger.info(f"Re-processing {len(ids)} items waiting on mapping {plan_title!r}")
        return await self._process_ids(ids, now)

    async def _process_ids(self, ids: Iterable[str], now: Optional[datetime]) -> BatchResult:
        result = BatchResult()
        for item_id in ids:
            try:
                outcome = await self.process_item(item_id, now=now)
            except Exception as e:
                logger.error(f"Queue item {item_id} could not be processed or recorded: {e}")
                outcome = ProcessOutcome(
                    item_id=item_id,
                    processing_status=P.ERROR.value,
                    action=QueueAction.ERROR,
                    detail=str(e),
                )
            result.outcomes.append(outcome)
        return result

    async def process_item(self, item_id: str, now: Optional[datetime] = None) -> ProcessOutcome:
        """Drive one queue item as far as it can go.

        Args:
            item_id: Queue item id.
            now: Reference time, naive UTC.

        Returns:
            ProcessOutcome describing what happened.

        Raises:
            NotFoundError: If the item does not exist.
        """
        now = now or datetime.utcnow()
        try:
            async with self.session_factory() as session:
                return await self._drive(session, item_id, now)
        except NotFoundError:
            raise
        except Exception as e:
            logger.error(f"Processing queue item {item_id} failed: {type(e).__name__}: {e}")
            return await self._record_failure(item_id, e, now)

    async def _drive(self, session: AsyncSession, item_id: str, now: datetime) -> ProcessOutcome:
        item = await QueueItemRepository(session).get_by_id(item_id)
        if item is None:
            raise NotFoundError("queue_item", item_id)

        if item.processing_status == P.PROCESSED.value:
            return self._outcome(item, QueueAction.ALREADY_PROCESSED)

        item.last_attempted_at = now
        status = normalize_status(item.status_normalized)

        if status in NON_EVENT_STATUSES:
            _transition(item, P.PROCESSED, reason=f"provider status {status.value}, nothing to materialize")
            item.processed_at = now
            await session.commit()
            return self._outcome(item, QueueAction.NO_ACTION, detail=item.status_reason)

        if status == NormalizedStatus.PENDING:
            item.status_reason = f"awaiting provider confirmation (raw status {item.raw_status!r})"
            await session.commit()
            return self._outcome(item, QueueAction.AWAITING_PROVIDER, detail=item.status_reason)

        attempt_id = renewal_attempt_id(item.tracking_key)
        if attempt_id is not None:
            return await self._settle_renewal(session, item, attempt_id, now)

        materializer = Materializer(session, collaborator=self.collaborator, settings=self.settings)
        resolution = await PlanMapper(session).resolve(item.plan_title)

        reason = None
        if isinstance(resolution, NotFound):
            reason = f"no active plan mapping for {item.plan_title!r}"
        elif not resolution.auto_create_order and await materializer.find_order(item) is None:
            reason = f"mapping for {item.plan_title!r} does not auto-create orders"

        if reason is not None:
            if item.processing_status != P.PENDING_NEEDS_MAPPING.value:
                _transition(item, P.PENDING_NEEDS_MAPPING, reason=reason)
            else:
                item.status_reason = reason
            await session.commit()
            logger.warning(f"Queue item {item.id} needs mapping: {reason}")
            return self._outcome(item, QueueAction.NEEDS_MAPPING, detail=reason)

        outcome = await materializer.materialize(item, resolution, source=f"reconcile_{item.source}", now=now)
        _transition(item, P.PROCESSED)
        item.processed_at = now
        await session.commit()

        warnings = list(outcome.grant.warnings)
        if outcome.duplicate:
            warnings.append("duplicate_materialization")
        return self._outcome(
            item,
            QueueAction.MATERIALIZED,
            entitlement_id=outcome.grant.entitlement_id,
            warnings=warnings,
        )

    async def _settle_renewal(
        self,
        session: AsyncSession,
        item: ReconcileQueueItem,
        attempt_id: str,
        now: datetime,
        actor: str = "system",
    ) -> ProcessOutcome:
        """Match a renewal payment to the charge attempt that requested it.

        A charge recorded as succeeded already extended access, so the item
        just closes. A charge recorded as failed or timed out that the
        provider later confirms is applied here, at most once per attempt.
        """
        attempts = ChargeAttemptRepository(session)
        attempt = await attempts.get_by_tracking_key(renewal_tracking_key(attempt_id))
        if attempt is None:
            # The scheduler records the attempt after the provider answers
            item.status_reason = f"awaiting record of renewal charge {attempt_id}"
            await session.commit()
            return self._outcome(item, QueueAction.AWAITING_PROVIDER, detail=item.status_reason)

        previous_error = attempt.error_code
        if not attempt.succeeded:
            entitlement = await EntitlementRepository(session).get_by_id(attempt.entitlement_id, refresh=True)
            if entitlement.status == EntitlementStatus.CANCELLED.value:
                reason = f"renewal charge {attempt.id} was paid for cancelled entitlement {entitlement.id}"
                if item.processing_status != P.PENDING_NEEDS_MAPPING.value:
                    _transition(item, P.PENDING_NEEDS_MAPPING, reason=reason)
                else:
                    item.status_reason = reason
                await session.commit()
                logger.error(f"Queue item {item.id}: {reason}")
                return self._outcome(item, QueueAction.NEEDS_MAPPING, entitlement_id=entitlement.id, detail=reason)

        if attempt.succeeded or not await attempts.mark_succeeded(attempt.id):
            _transition(item, P.PROCESSED, reason=f"renewal charge {attempt.id} already applied")
            item.processed_at = now
            await session.commit()
            return self._outcome(
                item,
                QueueAction.NO_ACTION,
                entitlement_id=attempt.entitlement_id,
                detail=item.status_reason,
            )

        tariff = await TariffRepository(session).get_by_id(entitlement.tariff_id)
        period_days = tariff.access_days if tariff is not None and tariff.access_days else self.settings.default_access_days
        apply_renewal_success(entitlement, period_days, item.paid_at, self.settings)
        await AuditLogRepository(session).record(
            action="renewal_recovered",
            entity_type="entitlement",
            entity_id=entitlement.id,
            actor=actor,
            meta={"attempt_id": attempt.id, "queue_item_id": item.id, "previous_error": previous_error},
        )
        _transition(item, P.PROCESSED, reason=f"late success of renewal charge {attempt.id} applied")
        item.processed_at = now
        await session.commit()
        logger.warning(
            f"Renewal charge {attempt.id} recorded as {previous_error} was confirmed by the provider; "
            f"entitlement {entitlement.id} extended to {entitlement.access_end_at.isoformat()}"
        )

        collaborator = self.collaborator or get_access_collaborator(self.settings)
        telegram = await refresh_telegram_access(collaborator, entitlement)
        return self._outcome(
            item,
            QueueAction.MATERIALIZED,
            entitlement_id=entitlement.id,
            detail=item.status_reason,
            warnings=["telegram_failed"] if telegram.get("status") == "error" else [],
        )

    async def _record_failure(self, item_id: str, error: Exception, now: datetime) -> ProcessOutcome:
        message = f"{type(error).__name__}: {error}"
        async with self.session_factory() as session:
            item = await QueueItemRepository(session).get_by_id(item_id)
            if item is None:
                raise NotFoundError("queue_item", item_id)
            if item.processing_status == P.PROCESSED.value:
                # Failed after the terminal commit; nothing to reopen
                return self._outcome(item, QueueAction.ALREADY_PROCESSED, detail=message)

            _transition(item, P.ERROR, reason=message)
            item.attempt_count += 1
            item.last_error = message
            item.last_attempted_at = now
            await session.commit()
            return self._outcome(item, QueueAction.ERROR, detail=message)

    async def materialize_manual(
        self,
        request: MaterializeRequest,
        actor: str = "system",
        now: Optional[datetime] = None,
    ) -> ProcessOutcome:
        """Materialize a queue item against an operator-chosen product.

        Used for items waiting on a mapping or in error. Re-running it on an
        item already processed returns the existing order.

        Raises:
            NotFoundError: If the queue item does not exist.
            ValueError: If the provider did not report the payment as succeeded.
        """
        now = now or datetime.utcnow()
        async with self.session_factory() as session:
            item = await QueueItemRepository(session).get_by_id(request.queue_item_id)
            if item is None:
                raise NotFoundError("queue_item", request.queue_item_id)
            if normalize_status(item.status_normalized) != NormalizedStatus.SUCCEEDED:
                raise ValueError(
                    f"Queue item {item.id} has status {item.status_normalized}; only succeeded payments materialize"
                )
            attempt_id = renewal_attempt_id(item.tracking_key)
            if attempt_id is not None:
                if item.processing_status == P.PROCESSED.value:
                    return self._outcome(item, QueueAction.ALREADY_PROCESSED)
                item.last_attempted_at = now
                return await self._settle_renewal(session, item, attempt_id, now, actor=actor)
            if item.processing_status == P.PROCESSED.value and item.matched_order_id:
                return self._outcome(item, QueueAction.ALREADY_PROCESSED)

            resolution = FallbackResolution(
                product_id=request.product_id,
                tariff_id=request.tariff_id,
                offer_id=request.offer_id,
            )
            materializer = Materializer(session, collaborator=self.collaborator, settings=self.settings)
            outcome = await materializer.materialize(
                item,
                resolution,
                user_id=request.profile_id,
                source="manual",
                actor=actor,
                now=now,
            )
            _transition(item, P.PROCESSED)
            item.processed_at = now
            item.last_attempted_at = now
            await AuditLogRepository(session).record(
                action="queue_item_materialized",
                entity_type="reconcile_queue",
                entity_id=item.id,
                actor=actor,
                meta={**request.model_dump(), "order_id": outcome.order.id},
            )
            await session.commit()

            return self._outcome(
                item,
                QueueAction.MATERIALIZED,
                entitlement_id=outcome.grant.entitlement_id,
                warnings=list(outcome.grant.warnings),
            )

    async def materialize_bulk(
        self,
        requests: List[MaterializeRequest],
        actor: str = "system",
        dry_run: bool = False,
    ) -> BatchResult:
        """Materialize several queue items; one failure never stops the rest.

        Args:
            requests: Operator requests, one per queue item.
            actor: Operator performing the action.
            dry_run: Validate only; nothing is written.

        Returns:
            BatchResult with one outcome per request.
        """
        result = BatchResult()
        for request in requests:
            try:
                if dry_run:
                    outcome = await self._dry_run(request)
                else:
                    outcome = await self.materialize_manual(request, actor=actor)
            except Exception as e:
                logger.error(f"Bulk materialize of queue item {request.queue_item_id} failed: {e}")
                outcome = ProcessOutcome(
                    item_id=request.queue_item_id,
                    processing_status=P.ERROR.value,
                    action=QueueAction.ERROR,
                    detail=str(e),
                )
            result.outcomes.append(outcome)

        logger.info(f"Bulk materialize by {actor} finished (dry_run={dry_run}): {result.counts}")
        return result

    async def _dry_run(self, request: MaterializeRequest) -> ProcessOutcome:
        async with self.session_factory() as session:
            item = await QueueItemRepository(session).get_by_id(request.queue_item_id)
            if item is None:
                raise NotFoundError("queue_item", request.queue_item_id)
            if normalize_status(item.status_normalized) != NormalizedStatus.SUCCEEDED:
                raise ValueError(f"Queue item {item.id} has status {item.status_normalized}")
            if item.processing_status == P.PROCESSED.value:
                return self._outcome(item, QueueAction.ALREADY_PROCESSED)
            attempt_id = renewal_attempt_id(item.tracking_key)
            if attempt_id is not None:
                return self._outcome(item, QueueAction.DRY_RUN, detail=f"would settle renewal charge {attempt_id}")
            order = await Materializer(session, collaborator=self.collaborator, settings=self.settings).find_order(item)
            detail = f"would confirm order {order.order_number}" if order else "would create a new order"
            return self._outcome(item, QueueAction.DRY_RUN, detail=detail)

    @staticmethod
    def _outcome(item: ReconcileQueueItem, action: QueueAction, **fields) -> ProcessOutcome:
        return ProcessOutcome(
            item_id=item.id,
            processing_status=item.processing_status,
            action=action,
            order_id=item.matched_order_id,
            **fields,
        )
