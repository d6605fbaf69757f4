"""Environment-driven policy settings for the billing core.

Values are read once per process from ``CLUB_BILLING_*`` environment variables
(or a local ``.env`` file). Deployment settings that the rest of the stack
already reads directly (``DATABASE_URL``, ``API_KEY``, ``STRIPE_API_KEY``) are
not duplicated here.
"""

from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class BillingSettings(BaseSettings):
    """Typed view of reconciliation and renewal policy."""

    # Renewal policy
    max_charge_attempts: int = Field(default=3, ge=1)
    retry_backoff_hours: int = Field(default=24, ge=1)
    charge_timeout_seconds: float = Field(default=30.0, gt=0)
    claim_timeout_seconds: int = Field(default=600, ge=1)
    charge_lead_days: int = Field(default=0, ge=0)

    # Entitlement windows
    default_access_days: int = Field(default=30, ge=1)
    access_timezone: str = "UTC"

    # Queue processing
    max_queue_attempts: int = Field(default=5, ge=1)
    batch_size: int = Field(default=100, ge=1)

    # Diagnostics widgets
    report_min_rows: int = Field(default=20, ge=1)
    report_row_cap: int = Field(default=100, ge=1)

    # Access collaborators
    telegram_grant_url: Optional[str] = None
    lms_grant_url: Optional[str] = None
    collaborator_timeout_seconds: float = Field(default=5.0, gt=0)

    model_config = SettingsConfigDict(
        env_prefix="CLUB_BILLING_",
        env_file=".env",
        extra="ignore",
    )

    def clamp_rows(self, limit: Optional[int]) -> int:
        """Clamp a requested row count to the diagnostics caps."""
        if limit is None or limit <= 0:
            return self.report_min_rows
        return min(limit, self.report_row_cap)


settings = BillingSettings()
