"""
Communication Settings Service
Lazy defaults and partial updates for per-tenant communication settings.
"""
import logging
from typing import Any, Dict, Optional

from smartcomm.domain.interfaces.communication_store import CommunicationStore
from smartcomm.domain.models.communication import CommunicationSettings

logger = logging.getLogger(__name__)


# Fields a tenant may change through the settings endpoint
UPDATABLE_FIELDS = (
    "auto_enabled",
    "tone",
    "max_sms_per_customer_per_week",
    "send_booking_confirmation",
    "send_day_before_reminder",
    "send_on_the_way",
    "send_quote_followup",
    "send_job_completed",
    "send_invoice_reminder",
    "send_review_request",
    "quiet_hours_start",
    "quiet_hours_end",
    "timezone",
)


class CommunicationSettingsService:
    """Reads settings (falling back to defaults) and applies partial updates."""

    def __init__(self, store: CommunicationStore, default_timezone: Optional[str] = None):
        self.store = store
        self.default_timezone = default_timezone

    async def get(self, business_id: str) -> CommunicationSettings:
        """
        Get the tenant's settings.

        A missing row is not an error: defaults are returned.
        Datastore failures propagate to the caller.
        """
        row = await self.store.get_settings(business_id)
        if not row:
            logger.debug(f"No communication settings for {business_id}, using defaults")
            return CommunicationSettings.defaults(business_id, self.default_timezone)

        if not row.get("timezone") and self.default_timezone:
            row = {**row, "timezone": self.default_timezone}
        return CommunicationSettings(**{**row, "business_id": business_id})

    async def update(self, business_id: str, changes: Dict[str, Any]) -> CommunicationSettings:
        """
        Apply a partial update.

        Unknown fields are ignored; the merged result is validated
        before anything is written.

        Raises:
            pydantic.ValidationError: If the merged settings are invalid
        """
        updates = {
            field: changes[field]
            for field in UPDATABLE_FIELDS
            if field in changes and changes[field] is not None
        }

        current = await self.get(business_id)
        merged = CommunicationSettings(**{**current.model_dump(mode="json"), **updates})

        if not updates:
            return merged

        row = await self.store.upsert_settings(
            business_id,
            merged.model_dump(mode="json", include=set(updates.keys())),
        )
        logger.info(f"Updated communication settings for {business_id}: {sorted(updates.keys())}")
        return CommunicationSettings(**{**merged.model_dump(mode="json"), **row, "business_id": business_id})
