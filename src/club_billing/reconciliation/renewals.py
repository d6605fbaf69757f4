"""Auto-renewal charging with bounded retries."""

import uuid
import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..collaborators import AccessCollaborator, get_access_collaborator
from ..config import BillingSettings, settings as default_settings
from ..connectors.base import ChargeRequest, ProviderBase
from ..database import (
    AuditLogRepository,
    ChargeAttemptRepository,
    Entitlement,
    EntitlementRepository,
    EntitlementStatus,
    PaymentMethodRepository,
    PaymentMethodStatus,
    TariffRepository,
)
from ..errors import (
    ClaimConflict,
    CollaboratorError,
    NotFoundError,
    PaymentMethodInactive,
    ProviderError,
    ProviderRejected,
    ProviderTimeout,
)
from .models import RenewalOutcome, RenewalResult
from .tracking import TrackingKind, format_tracking_key, parse_tracking_key
from .window import add_calendar_days

logger = logging.getLogger(__name__)

RENEWAL_LINK_PREFIX = "renewal:"


def renewal_tracking_key(attempt_id: str) -> str:
    """Tracking key sent to the provider with a renewal charge."""
    return format_tracking_key(TrackingKind.LINK, f"{RENEWAL_LINK_PREFIX}{attempt_id}")


def renewal_attempt_id(tracking_key: Optional[str]) -> Optional[str]:
    """Charge attempt id carried by a renewal tracking key, or None for any other key."""
    key = parse_tracking_key(tracking_key)
    if key.kind != TrackingKind.LINK or key.malformed:
        return None
    if not key.value.startswith(RENEWAL_LINK_PREFIX):
        return None
    return key.value[len(RENEWAL_LINK_PREFIX):] or None


def apply_renewal_success(
    entitlement: Entitlement,
    period_days: int,
    now: datetime,
    settings: BillingSettings,
) -> datetime:
    """Extend an entitlement by one paid period and clear its retry state.

    The period runs from the later of the current end and ``now`` (the
    payment time), so a lapsed entitlement restarts then instead of
    back-filling the gap.

    Returns:
        The new access end.
    """
    tz = settings.access_timezone
    new_end = add_calendar_days(max(entitlement.access_end_at, now), period_days, tz)
    entitlement.access_end_at = new_end
    entitlement.next_charge_at = add_calendar_days(new_end, -settings.charge_lead_days, tz)
    entitlement.status = EntitlementStatus.ACTIVE.value
    entitlement.charge_attempts = 0
    entitlement.blocked_reason = None
    logger.info(f"Renewed entitlement {entitlement.id} until {new_end.isoformat()}")
    return new_end


async def refresh_telegram_access(collaborator: AccessCollaborator, entitlement: Entitlement) -> Dict[str, Any]:
    """Push a renewed access window to the Telegram collaborator.

    A collaborator failure never undoes the renewal; it is reported in the
    returned status instead.
    """
    if not entitlement.user_id:
        return {"status": "skipped", "reason": "no_user_id"}
    try:
        return await collaborator.grant_telegram(
            entitlement.user_id, entitlement.product_id, entitlement.access_end_at
        )
    except CollaboratorError as e:
        logger.warning(f"Telegram access refresh for entitlement {entitlement.id} failed: {e}")
        return {"status": "error", "error": str(e)}


@dataclass
class _PreparedCharge:
    attempt_id: str
    request: ChargeRequest
    period_days: int


class RenewalScheduler:
    """Charges entitlements due for renewal.

    Each entitlement is claimed with a compare-and-swap marker before the
    provider is called, so overlapping runs cannot charge the same card twice.
    No database session is held open across the provider call.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        connector: ProviderBase,
        settings: Optional[BillingSettings] = None,
        collaborator: Optional[AccessCollaborator] = None,
    ):
        self.session_factory = session_factory
        self.connector = connector
        self.settings = settings or default_settings
        self.collaborator = collaborator or get_access_collaborator(self.settings)

    async def run_due(self, now: Optional[datetime] = None, limit: Optional[int] = None) -> List[RenewalOutcome]:
        """Attempt a charge for every entitlement currently due.

        Args:
            now: Reference time, naive UTC.
            limit: Maximum entitlements to attempt; defaults to the batch size.

        Returns:
            One RenewalOutcome per entitlement considered.
        """
        now = now or datetime.utcnow()
        async with self.session_factory() as session:
            ids = await EntitlementRepository(session).list_due_ids(
                now, self.settings.max_charge_attempts, limit or self.settings.batch_size
            )

        logger.info(f"Renewal run found {len(ids)} due entitlements")
        outcomes: List[RenewalOutcome] = []
        for entitlement_id in ids:
            try:
                outcome = await self._renew(entitlement_id, now, trigger="schedule", actor="scheduler")
            except Exception as e:
                logger.error(f"Renewal of entitlement {entitlement_id} failed: {type(e).__name__}: {e}")
                outcome = RenewalOutcome(
                    entitlement_id=entitlement_id,
                    result=RenewalResult.ERROR,
                    detail=str(e),
                )
            outcomes.append(outcome)
        return outcomes

    async def charge_now(
        self,
        entitlement_id: str,
        actor: str = "system",
        now: Optional[datetime] = None,
    ) -> RenewalOutcome:
        """Operator-initiated charge outside the schedule.

        Counts attempts exactly like a scheduled charge but ignores the due
        time and the attempt cap.

        Raises:
            NotFoundError: If the entitlement does not exist.
            ValueError: If the entitlement is cancelled.
            ClaimConflict: If another run is charging it right now.
        """
        return await self._renew(entitlement_id, now or datetime.utcnow(), trigger="manual", actor=actor)

    async def _renew(self, entitlement_id: str, now: datetime, trigger: str, actor: str) -> RenewalOutcome:
        token = str(uuid.uuid4())
        manual = trigger == "manual"

        # Claim and validate
        async with self.session_factory() as session:
            entitlements = EntitlementRepository(session)
            entitlement = await entitlements.get_by_id(entitlement_id)
            if entitlement is None:
                raise NotFoundError("entitlement", entitlement_id)
            if manual and entitlement.status == EntitlementStatus.CANCELLED.value:
                raise ValueError(f"Entitlement {entitlement_id} is cancelled")

            claimed = await entitlements.try_claim(
                entitlement_id,
                token,
                now,
                stale_before=now - timedelta(seconds=self.settings.claim_timeout_seconds),
                due_max_attempts=None if manual else self.settings.max_charge_attempts,
            )
            if not claimed:
                await session.rollback()
                if manual:
                    raise ClaimConflict(f"Entitlement {entitlement_id} is already being charged")
                logger.info(f"Entitlement {entitlement_id} claimed elsewhere or no longer due, skipping")
                return RenewalOutcome(
                    entitlement_id=entitlement_id,
                    result=RenewalResult.SKIPPED,
                    detail="claimed by another run or no longer due",
                )

            entitlement = await entitlements.get_by_id(entitlement_id, refresh=True)
            try:
                prepared = await self._prepare(session, entitlement, trigger)
            except PaymentMethodInactive as e:
                # No attempt is consumed; the claim is dropped in the same commit
                entitlement.blocked_reason = e.reason
                entitlement.claim_token = None
                entitlement.claimed_at = None
                await AuditLogRepository(session).record(
                    action="renewal_blocked",
                    entity_type="entitlement",
                    entity_id=entitlement.id,
                    actor=actor,
                    meta={"reason": e.reason, "trigger": trigger},
                )
                await session.commit()
                logger.warning(f"Entitlement {entitlement.id} blocked on card: {e.reason}")
                return self._outcome(entitlement, RenewalResult.BLOCKED, detail=e.reason)
            await session.commit()

        # Provider call, no lock held
        error: Optional[ProviderError] = None
        result = None
        try:
            result = await asyncio.wait_for(
                asyncio.to_thread(self.connector.charge, prepared.request),
                timeout=self.settings.charge_timeout_seconds,
            )
            if not result.succeeded:
                error = ProviderRejected(
                    result.error_message or f"Charge {result.status}",
                    code=result.error_code or result.status,
                )
        except asyncio.TimeoutError:
            error = ProviderTimeout(f"No answer within {self.settings.charge_timeout_seconds}s")
        except ProviderError as e:
            error = e
        except Exception:
            await self._release(entitlement_id, token)
            raise

        # Apply the outcome
        async with self.session_factory() as session:
            entitlements = EntitlementRepository(session)
            entitlement = await entitlements.get_by_id(entitlement_id, refresh=True)
            request = prepared.request
            await ChargeAttemptRepository(session).create(
                id=prepared.attempt_id,
                entitlement_id=entitlement.id,
                attempted_at=now,
                succeeded=error is None,
                error_code=error.code if error else None,
                error_message=str(error) if error else None,
                trigger=trigger,
                tracking_key=request.tracking_key,
                provider_transaction_id=result.provider_transaction_id if result else None,
                amount=request.amount,
                currency=request.currency,
            )

            if error is None:
                outcome_kind = self._apply_success(entitlement, prepared.period_days, now)
            else:
                outcome_kind = self._apply_failure(entitlement, now)

            entitlement.claim_token = None
            entitlement.claimed_at = None
            if manual:
                await AuditLogRepository(session).record(
                    action="manual_charge",
                    entity_type="entitlement",
                    entity_id=entitlement.id,
                    actor=actor,
                    meta={"attempt_id": prepared.attempt_id, "result": outcome_kind.value},
                )
            await session.commit()

        if error is not None:
            logger.warning(
                f"Renewal charge for entitlement {entitlement_id} failed ({error.code}): "
                f"attempt {entitlement.charge_attempts}/{self.settings.max_charge_attempts}, "
                f"status {entitlement.status}"
            )
            return self._outcome(entitlement, outcome_kind, error_code=error.code, detail=str(error))

        telegram = await refresh_telegram_access(self.collaborator, entitlement)
        return self._outcome(
            entitlement,
            outcome_kind,
            side_effects={"telegram": telegram},
            warnings=["telegram_failed"] if telegram.get("status") == "error" else [],
        )

    async def _prepare(self, session: AsyncSession, entitlement: Entitlement, trigger: str) -> _PreparedCharge:
        payment_method = await PaymentMethodRepository(session).get_by_id(entitlement.payment_method_id)
        if payment_method is None:
            raise PaymentMethodInactive("no_payment_method")
        if payment_method.status != PaymentMethodStatus.ACTIVE.value:
            raise PaymentMethodInactive(f"payment_method_{payment_method.status}")

        tariff = await TariffRepository(session).get_by_id(entitlement.tariff_id)
        if tariff is None:
            raise NotFoundError("tariff", entitlement.tariff_id or "")

        attempt_id = str(uuid.uuid4())
        request = ChargeRequest(
            amount=tariff.price,
            currency=tariff.currency,
            payment_method_token=payment_method.token,
            customer_id=payment_method.provider_customer_id,
            tracking_key=renewal_tracking_key(attempt_id),
            idempotency_key=f"renewal-{entitlement.id}-{attempt_id}",
            description=f"Renewal of {tariff.name}",
            metadata={"entitlement_id": entitlement.id, "trigger": trigger},
        )
        return _PreparedCharge(
            attempt_id=attempt_id,
            request=request,
            period_days=tariff.access_days or self.settings.default_access_days,
        )

    def _apply_success(self, entitlement: Entitlement, period_days: int, now: datetime) -> RenewalResult:
        apply_renewal_success(entitlement, period_days, now, self.settings)
        return RenewalResult.CHARGED

    def _apply_failure(self, entitlement: Entitlement, now: datetime) -> RenewalResult:
        # access_end_at is never reduced here; expiry is handled elsewhere
        entitlement.charge_attempts += 1
        if entitlement.charge_attempts >= self.settings.max_charge_attempts:
            entitlement.status = EntitlementStatus.PAST_DUE.value
            logger.warning(
                f"Entitlement {entitlement.id} is past due after {entitlement.charge_attempts} failed charges"
            )
            return RenewalResult.PAST_DUE

        next_charge_at = now + timedelta(hours=self.settings.retry_backoff_hours)
        if entitlement.access_end_at > now:
            next_charge_at = min(next_charge_at, entitlement.access_end_at)
        entitlement.next_charge_at = next_charge_at
        return RenewalResult.RETRY_SCHEDULED

    async def _release(self, entitlement_id: str, token: str) -> None:
        async with self.session_factory() as session:
            await EntitlementRepository(session).release_claim(entitlement_id, token)
            await session.commit()

    async def replace_payment_method(
        self,
        entitlement_id: str,
        payment_method_id: str,
        actor: str = "system",
    ) -> Entitlement:
        """Attach a new card and give the entitlement a fresh set of retries.

        Raises:
            NotFoundError: If the entitlement or payment method does not exist.
            ValueError: If the card is not active or belongs to another user.
        """
        async with self.session_factory() as session:
            entitlement = await EntitlementRepository(session).get_by_id(entitlement_id)
            if entitlement is None:
                raise NotFoundError("entitlement", entitlement_id)
            payment_method = await PaymentMethodRepository(session).get_by_id(payment_method_id)
            if payment_method is None:
                raise NotFoundError("payment_method", payment_method_id)
            if payment_method.status != PaymentMethodStatus.ACTIVE.value:
                raise ValueError(f"Payment method {payment_method_id} is {payment_method.status}")
            if entitlement.user_id and payment_method.user_id != entitlement.user_id:
                raise ValueError(f"Payment method {payment_method_id} belongs to another user")

            previous = entitlement.payment_method_id
            entitlement.payment_method_id = payment_method.id
            entitlement.charge_attempts = 0
            entitlement.blocked_reason = None
            if entitlement.auto_renew and entitlement.next_charge_at is None:
                entitlement.next_charge_at = add_calendar_days(
                    entitlement.access_end_at,
                    -self.settings.charge_lead_days,
                    self.settings.access_timezone,
                )
            await AuditLogRepository(session).record(
                action="payment_method_replaced",
                entity_type="entitlement",
                entity_id=entitlement.id,
                actor=actor,
                meta={"previous": previous, "payment_method_id": payment_method.id},
            )
            await session.commit()

        logger.info(f"Replaced payment method on entitlement {entitlement_id}; retries reset")
        return entitlement

    @staticmethod
    def _outcome(entitlement: Entitlement, result: RenewalResult, **fields) -> RenewalOutcome:
        return RenewalOutcome(
            entitlement_id=entitlement.id,
            result=result,
            charge_attempts=entitlement.charge_attempts,
            status=entitlement.status,
            access_end_at=entitlement.access_end_at,
            next_charge_at=entitlement.next_charge_at,
            **fields,
        )
