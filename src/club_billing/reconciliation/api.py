"""API endpoints for reconciliation, entitlement and diagnostics operations."""

import logging
from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query
from fastapi.responses import PlainTextResponse
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..auth import get_actor, verify_api_key
from ..config import settings
from ..connectors import ProviderBase, get_connector
from ..database import get_db, get_session_factory
from ..errors import ProviderError
from .access import AccessGranter
from .detector import Detector
from .mapper import PlanMapper
from .models import GrantRequest, MaterializeRequest
from .processor import QueueProcessor
from .psp_fetcher import PSPFetcherBase, get_psp_fetcher
from .renewals import RenewalScheduler
from .report import ReportGenerator

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/reconciliation", tags=["reconciliation"])


def provider_connector(x_provider: Optional[str] = Header("stripe")) -> ProviderBase:
    """Connector selected by the ``X-Provider`` header."""
    try:
        return get_connector(x_provider)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))


def provider_fetcher(x_provider: Optional[str] = Header("stripe")) -> Optional[PSPFetcherBase]:
    """Subscription fetcher for the provider, or None when it cannot be configured."""
    try:
        return get_psp_fetcher(x_provider or "stripe")
    except ValueError as e:
        logger.warning(f"Provider fetcher unavailable: {e}")
        return None


class MaterializeBody(BaseModel):
    """Request body for materializing one queue item."""
    profile_id: Optional[str] = Field(None, description="User to attach the order and access to")
    product_id: str = Field(..., description="Product to grant")
    tariff_id: Optional[str] = Field(None, description="Tariff (billing period)")
    offer_id: Optional[str] = Field(None, description="Offer the sale came from")


class BulkMaterializeBody(BaseModel):
    """Request body for bulk materialization."""
    requests: List[MaterializeRequest] = Field(..., min_length=1)
    dry_run: bool = Field(default=False, description="Validate only, write nothing")


class MappingBody(BaseModel):
    """Request body for creating a plan mapping."""
    provider_plan_title: str = Field(..., min_length=1)
    product_id: str
    tariff_id: Optional[str] = None
    offer_id: Optional[str] = None
    auto_create_order: bool = True
    notes: Optional[str] = None
    reprocess: bool = Field(default=True, description="Re-drive items waiting on this title")


class GrantBody(BaseModel):
    """Request body for granting access for an order."""
    custom_access_days: Optional[int] = Field(None, gt=0)
    custom_access_start_at: Optional[datetime] = None
    extend_from_current: bool = True
    grant_telegram: bool = False
    grant_getcourse: bool = False


class LinkContactBody(BaseModel):
    user_id: str = Field(..., min_length=1)


class PaymentMethodBody(BaseModel):
    payment_method_id: str = Field(..., min_length=1)


# Queue

@router.post("/queue/process")
async def process_queue(
    limit: Optional[int] = Query(default=None, ge=1, le=1000),
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
    api_key: str = Depends(verify_api_key),
):
    """Run one batch of the queue processor."""
    result = await QueueProcessor(session_factory).process_pending(limit=limit)
    return result.to_dict()


@router.post("/queue/materialize")
async def materialize_bulk(
    body: BulkMaterializeBody,
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
    actor: str = Depends(get_actor),
    api_key: str = Depends(verify_api_key),
):
    """Materialize several queue items against operator-chosen products."""
    result = await QueueProcessor(session_factory).materialize_bulk(
        body.requests, actor=actor, dry_run=body.dry_run
    )
    return result.to_dict()


@router.post("/queue/{item_id}/materialize")
async def materialize_item(
    item_id: str,
    body: MaterializeBody,
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
    actor: str = Depends(get_actor),
    api_key: str = Depends(verify_api_key),
):
    """Materialize one queue item against an operator-chosen product."""
    request = MaterializeRequest(queue_item_id=item_id, **body.model_dump())
    outcome = await QueueProcessor(session_factory).materialize_manual(request, actor=actor)
    return outcome.model_dump(mode="json")


# Mappings

@router.get("/mappings")
async def list_mappings(
    include_inactive: bool = Query(default=False),
    db: AsyncSession = Depends(get_db),
    api_key: str = Depends(verify_api_key),
):
    mapper = PlanMapper(db)
    mappings = await mapper.list_mappings(include_inactive=include_inactive)
    return {
        "mappings": [m.to_dict() for m in mappings],
        "unmapped_titles": dict(await mapper.unmapped_titles(settings.report_row_cap)),
    }


@router.post("/mappings", status_code=201)
async def create_mapping(
    body: MappingBody,
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
    actor: str = Depends(get_actor),
    api_key: str = Depends(verify_api_key),
):
    """Create a plan mapping and, by default, re-drive the items waiting on it."""
    async with session_factory() as session:
        mapping = await PlanMapper(session).create_mapping(
            provider_plan_title=body.provider_plan_title,
            product_id=body.product_id,
            tariff_id=body.tariff_id,
            offer_id=body.offer_id,
            auto_create_order=body.auto_create_order,
            notes=body.notes,
            actor=actor,
        )
        await session.commit()
        response = {"mapping": mapping.to_dict()}

    if body.reprocess:
        result = await QueueProcessor(session_factory).reprocess_needs_mapping(body.provider_plan_title)
        response["reprocessed"] = result.to_dict()
    return response


@router.post("/mappings/{plan_title}/reprocess")
async def reprocess_mapping(
    plan_title: str,
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
    api_key: str = Depends(verify_api_key),
):
    """Re-drive queue items waiting on a mapping for ``plan_title``."""
    result = await QueueProcessor(session_factory).reprocess_needs_mapping(plan_title)
    return result.to_dict()


# Orders

@router.post("/orders/{order_id}/apply-mapping")
async def apply_mapping(
    order_id: str,
    db: AsyncSession = Depends(get_db),
    actor: str = Depends(get_actor),
    api_key: str = Depends(verify_api_key),
):
    """Overwrite an order's product/tariff with its plan mapping."""
    order = await PlanMapper(db).apply_mapping(order_id, actor=actor)
    await db.commit()
    return order.to_dict()


@router.post("/orders/{order_id}/grant-access")
async def grant_access(
    order_id: str,
    body: GrantBody,
    db: AsyncSession = Depends(get_db),
    actor: str = Depends(get_actor),
    api_key: str = Depends(verify_api_key),
):
    """Grant or extend access for a paid order.

    Telegram and LMS failures are reported in ``side_effects`` and never
    undo the entitlement change.
    """
    request = GrantRequest(order_id=order_id, **body.model_dump())
    result = await AccessGranter(db).grant(request, actor=actor)
    await db.commit()
    return result.model_dump(mode="json")


@router.post("/orders/{order_id}/link-contact")
async def link_contact(
    order_id: str,
    body: LinkContactBody,
    db: AsyncSession = Depends(get_db),
    actor: str = Depends(get_actor),
    api_key: str = Depends(verify_api_key),
):
    """Attach a user to an order paid before the contact was known."""
    order = await AccessGranter(db).link_contact(order_id, body.user_id, actor=actor)
    await db.commit()
    return order.to_dict()


# Entitlements and renewals

@router.post("/entitlements/{entitlement_id}/charge")
async def charge_entitlement(
    entitlement_id: str,
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
    connector: ProviderBase = Depends(provider_connector),
    actor: str = Depends(get_actor),
    api_key: str = Depends(verify_api_key),
):
    """Charge an entitlement now, outside the schedule."""
    outcome = await RenewalScheduler(session_factory, connector).charge_now(entitlement_id, actor=actor)
    return outcome.model_dump(mode="json")


@router.post("/entitlements/{entitlement_id}/payment-method")
async def replace_payment_method(
    entitlement_id: str,
    body: PaymentMethodBody,
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
    connector: ProviderBase = Depends(provider_connector),
    actor: str = Depends(get_actor),
    api_key: str = Depends(verify_api_key),
):
    """Attach a new card and reset the retry counter."""
    entitlement = await RenewalScheduler(session_factory, connector).replace_payment_method(
        entitlement_id, body.payment_method_id, actor=actor
    )
    return entitlement.to_dict()


@router.post("/renewals/run")
async def run_renewals(
    limit: Optional[int] = Query(default=None, ge=1, le=1000),
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
    connector: ProviderBase = Depends(provider_connector),
    api_key: str = Depends(verify_api_key),
):
    """Run one pass of the renewal scheduler."""
    outcomes = await RenewalScheduler(session_factory, connector).run_due(limit=limit)
    counts = {}
    for outcome in outcomes:
        counts[outcome.result.value] = counts.get(outcome.result.value, 0) + 1
    return {
        "total": len(outcomes),
        "counts": counts,
        "outcomes": [o.model_dump(mode="json") for o in outcomes],
    }


# Diagnostics

@router.get("/diagnostics")
async def diagnostics(
    limit: Optional[int] = Query(default=None, description="Rows per section, capped"),
    format: str = Query(default="json", description="Output format: json, csv, text, detailed_text"),
    db: AsyncSession = Depends(get_db),
    fetcher: Optional[PSPFetcherBase] = Depends(provider_fetcher),
    api_key: str = Depends(verify_api_key),
):
    """
    Operator diagnostics snapshot.

    Includes:
    - Stuck ``link:*`` queue items grouped by kind and status
    - Succeeded payments with no paid order (money received, access not granted)
    - Provider subscriptions with no internal entitlement
    - Paid orders disagreeing with their plan mapping
    """
    if format not in ReportGenerator.FORMATS:
        raise HTTPException(
            status_code=400,
            detail="format must be one of: json, csv, text, detailed_text"
        )

    report = await Detector(db, fetcher=fetcher).run(limit)
    if format == "json":
        return report.to_full_dict()

    output = ReportGenerator(report).render(format)
    content_type = "text/csv" if format == "csv" else "text/plain"
    return PlainTextResponse(content=output, media_type=content_type)


@router.post("/orphans/{subscription_id}/cancel")
async def cancel_orphan(
    subscription_id: str,
    db: AsyncSession = Depends(get_db),
    connector: ProviderBase = Depends(provider_connector),
    fetcher: Optional[PSPFetcherBase] = Depends(provider_fetcher),
    actor: str = Depends(get_actor),
    api_key: str = Depends(verify_api_key),
):
    """Cancel an orphaned subscription at the provider. Entitlements are untouched."""
    detector = Detector(db, fetcher=fetcher, connector=connector)
    try:
        response = await detector.cancel_orphan(subscription_id, actor=actor)
    except ProviderError as e:
        logger.error(f"Provider refused to cancel {subscription_id}: {e}")
        return {"cancelled": False, "subscription_id": subscription_id, "error": str(e), "code": e.code}
    await db.commit()
    return {"cancelled": True, "subscription_id": subscription_id, "provider_response": response}


@router.get("/health")
async def reconciliation_health():
    """Health check endpoint for reconciliation service."""
    return {"status": "healthy", "service": "reconciliation"}
