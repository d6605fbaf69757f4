"""FastAPI application: provider event intake plus the reconciliation router."""

import logging
from contextlib import asynccontextmanager
from typing import List, Optional

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from .auth import WEBHOOK_RATE_LIMIT, limiter, verify_api_key
from .connectors import InboundEvent, ProviderBase
from .database import close_db, get_session_factory, init_db
from .errors import ClaimConflict, InvalidTrackingKey, MappingNotFound, NotFoundError
from .reconciliation.api import provider_connector, router as reconciliation_router
from .reconciliation.models import BatchResult
from .reconciliation.processor import QueueProcessor

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    await init_db()
    yield
    await close_db()


app = FastAPI(title="Club Billing Core", lifespan=lifespan)
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)
app.include_router(reconciliation_router)


@app.exception_handler(NotFoundError)
async def not_found_handler(request: Request, exc: NotFoundError):
    return JSONResponse(status_code=404, content={"detail": str(exc)})


@app.exception_handler(MappingNotFound)
async def mapping_not_found_handler(request: Request, exc: MappingNotFound):
    return JSONResponse(status_code=409, content={"detail": str(exc), "plan_title": exc.plan_title})


@app.exception_handler(ClaimConflict)
async def claim_conflict_handler(request: Request, exc: ClaimConflict):
    return JSONResponse(status_code=409, content={"detail": str(exc)})


@app.exception_handler(InvalidTrackingKey)
async def invalid_tracking_key_handler(request: Request, exc: InvalidTrackingKey):
    return JSONResponse(status_code=400, content={"detail": str(exc)})


@app.exception_handler(ValueError)
async def value_error_handler(request: Request, exc: ValueError):
    return JSONResponse(status_code=400, content={"detail": str(exc)})


@app.post("/events")
@limiter.limit(WEBHOOK_RATE_LIMIT)
async def provider_webhook(
    request: Request,
    connector: ProviderBase = Depends(provider_connector),
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
):
    """Accept a provider webhook, queue it and drive it immediately.

    The connector verifies the provider signature. Event types without a
    payment outcome are acknowledged and ignored.
    """
    body = await request.body()
    headers = {k.lower(): v for k, v in request.headers.items()}
    try:
        event: Optional[InboundEvent] = connector.parse_webhook(headers, body)
    except Exception as e:
        raise HTTPException(status_code=400, detail=str(e))
    if event is None:
        return {"accepted": True, "ignored": True}

    processor = QueueProcessor(session_factory)
    item, created = await processor.ingest(event, source="webhook")
    outcome = await processor.process_item(item.id)
    return {
        "accepted": True,
        "created": created,
        "item_id": item.id,
        "outcome": outcome.model_dump(mode="json"),
    }


@app.post("/events/poll")
async def ingest_polled_events(
    events: List[InboundEvent],
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
    api_key: str = Depends(verify_api_key),
):
    """Accept events pulled by a reconciliation poll; same shape as webhooks."""
    processor = QueueProcessor(session_factory)
    result = BatchResult()
    for event in events:
        item, _ = await processor.ingest(event, source="poll")
        result.outcomes.append(await processor.process_item(item.id))
    return result.to_dict()


@app.get("/health")
async def health():
    return {"status": "healthy"}
