"""Outbound access collaborators (Telegram channel access, external LMS).

The billing core only requests grants; delivery is someone else's job. A
failed request is reported back to the caller and never rolls back the
entitlement that triggered it.
"""

import logging
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Optional, Dict, Any

import httpx

from .config import BillingSettings, settings as default_settings
from .errors import CollaboratorError

logger = logging.getLogger(__name__)


class AccessCollaborator(ABC):
    """Receives access grants for delivery outside the billing core."""

    @abstractmethod
    async def grant_telegram(self, user_id: str, product_id: str, access_end_at: datetime) -> Dict[str, Any]:
        raise NotImplementedError

    @abstractmethod
    async def grant_lms(self, user_id: str, product_id: str, access_end_at: datetime) -> Dict[str, Any]:
        raise NotImplementedError


class NullAccessCollaborator(AccessCollaborator):
    """Collaborator used when no grant endpoints are configured."""

    async def grant_telegram(self, user_id: str, product_id: str, access_end_at: datetime) -> Dict[str, Any]:
        return {"status": "skipped", "reason": "not_configured"}

    async def grant_lms(self, user_id: str, product_id: str, access_end_at: datetime) -> Dict[str, Any]:
        return {"status": "skipped", "reason": "not_configured"}


class HttpAccessCollaborator(AccessCollaborator):
    """Posts grant requests to configured HTTP endpoints."""

    def __init__(
        self,
        telegram_url: Optional[str],
        lms_url: Optional[str],
        timeout: float = 5.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.telegram_url = telegram_url
        self.lms_url = lms_url
        self.timeout = timeout
        self._transport = transport

    async def _post(self, url: Optional[str], payload: Dict[str, Any]) -> Dict[str, Any]:
        if not url:
            return {"status": "skipped", "reason": "not_configured"}
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.post(url, json=payload)
                response.raise_for_status()
        except httpx.HTTPError as e:
            logger.warning(f"Access grant to {url} failed: {e}")
            raise CollaboratorError(str(e)) from e
        return {"status": "sent", "http_status": response.status_code}

    @staticmethod
    def _payload(user_id: str, product_id: str, access_end_at: datetime) -> Dict[str, Any]:
        return {
            "user_id": user_id,
            "product_id": product_id,
            "access_end_at": access_end_at.isoformat(),
        }

    async def grant_telegram(self, user_id: str, product_id: str, access_end_at: datetime) -> Dict[str, Any]:
        return await self._post(self.telegram_url, self._payload(user_id, product_id, access_end_at))

    async def grant_lms(self, user_id: str, product_id: str, access_end_at: datetime) -> Dict[str, Any]:
        return await self._post(self.lms_url, self._payload(user_id, product_id, access_end_at))


def get_access_collaborator(settings: Optional[BillingSettings] = None) -> AccessCollaborator:
    """Build the collaborator for the configured endpoints."""
    settings = settings or default_settings
    if settings.telegram_grant_url or settings.lms_grant_url:
        return HttpAccessCollaborator(
            telegram_url=settings.telegram_grant_url,
            lms_url=settings.lms_grant_url,
            timeout=settings.collaborator_timeout_seconds,
        )
    return NullAccessCollaborator()
