"""
Communication Statistics
Message volume and delivery rate for a tenant's dashboard.
"""
import asyncio
from datetime import date, datetime, time, timedelta, timezone
from typing import Any, Dict, Optional

from smartcomm.domain.interfaces.communication_store import CommunicationStore
from smartcomm.domain.models.communication import COUNTED_STATUSES, Channel, LogStatus
from smartcomm.domain.services.communication_gate import local_now


def _local_midnight(local: datetime, day: date) -> datetime:
    """Midnight of `day` in the timezone of `local` (DST-aware for pytz zones)."""
    naive = datetime.combine(day, time.min)
    if hasattr(local.tzinfo, "localize"):
        return local.tzinfo.localize(naive)
    return naive.replace(tzinfo=local.tzinfo)


class CommunicationStatsService:
    """Counts communication_log rows over calendar periods in the tenant's timezone."""

    def __init__(self, store: CommunicationStore):
        self.store = store

    async def get_stats(
        self,
        business_id: str,
        timezone_name: str = "Europe/Stockholm",
        now: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        """
        Today, this week (Monday start), this month and channel split.

        Delivery rate is sent/delivered over all rows this week, 100 when
        nothing was attempted.
        """
        local = local_now(timezone_name, now)
        today = local.date()
        today_start = _local_midnight(local, today)
        week_start = _local_midnight(local, today - timedelta(days=today.weekday()))
        month_start = _local_midnight(local, today.replace(day=1))

        week_start_utc = week_start.astimezone(timezone.utc)
        count = self.store.count_logs

        (
            today_total,
            week_total,
            week_sent,
            week_failed,
            month_total,
            week_sms,
            week_email,
        ) = await asyncio.gather(
            count(business_id, today_start.astimezone(timezone.utc)),
            count(business_id, week_start_utc),
            count(business_id, week_start_utc, statuses=COUNTED_STATUSES),
            count(business_id, week_start_utc, statuses=(LogStatus.FAILED.value,)),
            count(business_id, month_start.astimezone(timezone.utc)),
            count(business_id, week_start_utc, channel=Channel.SMS.value),
            count(business_id, week_start_utc, channel=Channel.EMAIL.value),
        )

        delivery_rate = round(week_sent / week_total * 100) if week_total > 0 else 100

        return {
            "today": today_total,
            "week": {
                "total": week_total,
                "sent": week_sent,
                "failed": week_failed,
                "delivery_rate": delivery_rate,
            },
            "month": {"total": month_total},
            "channels": {"sms": week_sms, "email": week_email},
        }
