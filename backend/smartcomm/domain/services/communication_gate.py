"""
Communication Gate
Admission control: may we contact this customer right now?

Checks, in order, stopping at the first failure:
1. Global automation switch
2. Quiet hours (tenant local time, may wrap past midnight)
3. Rolling 7-day message cap per customer
"""
import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

import pytz

from smartcomm.domain.interfaces.communication_store import CommunicationStore
from smartcomm.domain.models.communication import (
    COUNTED_STATUSES,
    CommunicationSettings,
    GateResult,
)
from smartcomm.domain.services.communication_settings import CommunicationSettingsService

logger = logging.getLogger(__name__)

MINUTES_PER_DAY = 1440
RATE_LIMIT_WINDOW = timedelta(days=7)


def local_now(timezone_name: str, now: Optional[datetime] = None) -> datetime:
    """Current time in the tenant's timezone (unknown zones fall back to UTC)."""
    try:
        tz = pytz.timezone(timezone_name)
    except pytz.exceptions.UnknownTimeZoneError:
        logger.warning(f"Unknown timezone '{timezone_name}', using UTC")
        tz = pytz.UTC

    if now is None:
        return datetime.now(tz)
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    return now.astimezone(tz)


def is_quiet_minute(minute_of_day: int, start: int, end: int) -> bool:
    """
    True if minute_of_day falls inside the quiet window.

    start > end is an overnight window: [start, 1440) + [0, end).
    Otherwise the window is [start, end); start == end blocks nothing.
    """
    if start > end:
        return minute_of_day >= start or minute_of_day < end
    return start <= minute_of_day < end


def is_quiet_hours(settings: CommunicationSettings, now: Optional[datetime] = None) -> bool:
    """Whether the tenant's quiet hours are in effect at `now`."""
    local = local_now(settings.timezone, now)
    start, end = settings.quiet_window()
    return is_quiet_minute(local.hour * 60 + local.minute, start, end)


class CommunicationGate:
    """
    Evaluates the admission rules for automated messages.

    Reads the communication_log for rate limiting; the count and the
    later log insert are not atomic, so concurrent triggers for the same
    customer can exceed the weekly cap by a small margin.
    """

    def __init__(self, store: CommunicationStore, settings_service: CommunicationSettingsService):
        self.store = store
        self.settings_service = settings_service

    async def can_send(
        self,
        business_id: str,
        customer_id: str,
        now: Optional[datetime] = None,
        settings: Optional[CommunicationSettings] = None,
    ) -> GateResult:
        """
        Check if an automated message may be sent now.

        Args:
            business_id: Tenant
            customer_id: Customer to contact
            now: Time to check (default: now)
            settings: Pre-loaded settings (loaded if not given)

        Returns:
            GateResult(allowed, reason)
        """
        try:
            if settings is None:
                settings = await self.settings_service.get(business_id)
        except Exception as e:
            logger.error(f"Could not load settings for {business_id}: {e}")
            return GateResult(allowed=False, reason="settings unavailable")

        # Rule 1: Global switch
        if not settings.auto_enabled:
            return GateResult(allowed=False, reason="automation disabled")

        # Rule 2: Quiet hours
        if is_quiet_hours(settings, now):
            return GateResult(
                allowed=False,
                reason=f"quiet hours ({settings.quiet_hours_start}-{settings.quiet_hours_end})"
            )

        # Rule 3: Weekly cap (rolling, not calendar-aligned)
        current = now or datetime.now(timezone.utc)
        try:
            count = await self.store.count_messages(
                business_id,
                customer_id,
                since=current - RATE_LIMIT_WINDOW,
                statuses=COUNTED_STATUSES,
            )
        except Exception as e:
            logger.error(f"Rate limit lookup failed for {customer_id}: {e}")
            return GateResult(allowed=False, reason="rate limit unavailable")

        cap = settings.max_messages_per_customer_per_week
        if count >= cap:
            logger.debug(f"Weekly cap reached for customer {customer_id}: {count}/{cap}")
            return GateResult(
                allowed=False,
                reason=f"max {cap} messages per week already sent"
            )

        return GateResult(allowed=True)
