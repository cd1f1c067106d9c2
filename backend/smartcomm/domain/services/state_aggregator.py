"""
Customer State Aggregator
Builds the point-in-time snapshot the decision engine works on.
"""
import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Awaitable, List, Optional, Sequence

from smartcomm.domain.interfaces.communication_store import CommunicationStore
from smartcomm.domain.models.communication import (
    COUNTED_STATUSES,
    CommunicationRule,
    CustomerState,
    OverdueInvoice,
    PaidInvoice,
    PendingQuote,
    TriggerType,
    UpcomingBooking,
    parse_date,
    parse_timestamp,
)
from smartcomm.domain.services.communication_gate import RATE_LIMIT_WINDOW, local_now
from smartcomm.domain.services.condition_matchers import days_since

logger = logging.getLogger(__name__)

# Rule id used for review requests when the catalog has no review rule
DEFAULT_REVIEW_RULE_ID = "rule_review_request"


def review_rule_ids(rules: Sequence[CommunicationRule]) -> List[str]:
    """Ids of rules whose messages count as a review request."""
    ids = [
        rule.id for rule in rules
        if (rule.trigger_type == TriggerType.CONDITION and rule.trigger_config.condition == "invoice_paid")
        or (rule.trigger_type == TriggerType.EVENT and rule.trigger_config.event == "invoice_paid")
    ]
    return ids or [DEFAULT_REVIEW_RULE_ID]


class StateAggregator:
    """
    Reads a customer's cross-entity signals concurrently.

    Every lookup is independent: a failing lookup is logged and leaves its
    field empty, so aggregation itself never raises.
    """

    def __init__(self, store: CommunicationStore):
        self.store = store

    async def _guarded(self, label: str, customer_id: str, lookup: Awaitable[Any], default: Any = None) -> Any:
        try:
            return await lookup
        except Exception as e:
            logger.warning(f"Snapshot lookup '{label}' failed for customer {customer_id}: {e}")
            return default

    async def aggregate(
        self,
        business_id: str,
        customer_id: str,
        now: Optional[datetime] = None,
        review_rules: Optional[Sequence[str]] = None,
        timezone_name: Optional[str] = None,
    ) -> CustomerState:
        """
        Build the snapshot for one customer.

        Args:
            business_id: Tenant
            customer_id: Customer
            now: Snapshot time (default: now)
            review_rules: Rule ids that count as a review request
            timezone_name: Tenant timezone, decides what "today" is for bookings

        Returns:
            CustomerState (fields are None where data is missing)
        """
        now = now or datetime.now(timezone.utc)
        today = local_now(timezone_name, now).date() if timezone_name else now.date()
        store = self.store

        (
            customer,
            message_count,
            last_message_at,
            last_activity_at,
            deal_stage,
            quote_row,
            booking_row,
            overdue_row,
            paid_row,
            call_summary,
        ) = await asyncio.gather(
            self._guarded("customer", customer_id, store.get_customer(business_id, customer_id)),
            self._guarded(
                "message_count", customer_id,
                store.count_messages(business_id, customer_id, since=now - RATE_LIMIT_WINDOW, statuses=COUNTED_STATUSES),
                default=0,
            ),
            self._guarded("last_message", customer_id, store.get_last_message_at(business_id, customer_id, COUNTED_STATUSES)),
            self._guarded("last_activity", customer_id, store.get_last_activity_at(business_id, customer_id)),
            self._guarded("deal_stage", customer_id, store.get_latest_deal_stage(business_id, customer_id)),
            self._guarded("pending_quote", customer_id, store.get_pending_quote(business_id, customer_id)),
            self._guarded("next_booking", customer_id, store.get_next_booking(business_id, customer_id, today)),
            self._guarded("overdue_invoice", customer_id, store.get_oldest_overdue_invoice(business_id, customer_id)),
            self._guarded("paid_invoice", customer_id, store.get_latest_paid_invoice(business_id, customer_id)),
            self._guarded("call_summary", customer_id, store.get_recent_call_summary(business_id, customer_id)),
        )

        paid_invoice = await self._paid_without_review(
            business_id, customer_id, paid_row, review_rules or [DEFAULT_REVIEW_RULE_ID]
        )

        customer = customer or {}
        return CustomerState(
            customer_id=customer_id,
            business_id=business_id,
            customer_name=customer.get("name") or "Kund",
            customer_phone=customer.get("phone_number") or None,
            customer_email=customer.get("email") or None,
            deal_stage=deal_stage or None,
            days_since_contact=days_since(last_activity_at, now) if last_activity_at else None,
            days_since_message=days_since(last_message_at, now) if last_message_at else None,
            message_count_this_week=message_count or 0,
            pending_quote=self._pending_quote(quote_row),
            upcoming_booking=self._upcoming_booking(booking_row),
            overdue_invoice=self._overdue_invoice(overdue_row),
            paid_invoice_no_review=paid_invoice,
            recent_call_summary=call_summary or None,
        )

    async def _paid_without_review(
        self,
        business_id: str,
        customer_id: str,
        row: Optional[dict],
        rule_ids: Sequence[str],
    ) -> Optional[PaidInvoice]:
        """The paid invoice, unless a review request was logged after payment."""
        if not row:
            return None
        paid_at = parse_timestamp(row.get("updated_at"))
        if paid_at is None:
            return None

        review_count = await self._guarded(
            "review_requests", customer_id,
            self.store.count_messages(
                business_id, customer_id, since=paid_at, statuses=(), rule_ids=list(rule_ids)
            ),
        )
        if review_count is None:
            # Unknown whether a review was requested; leave the field empty
            return None
        if review_count > 0:
            return None
        return PaidInvoice(id=str(row["invoice_id"]), paid_at=paid_at)

    @staticmethod
    def _pending_quote(row: Optional[dict]) -> Optional[PendingQuote]:
        if not row:
            return None
        sent_at = parse_timestamp(row.get("updated_at"))
        if sent_at is None:
            return None
        return PendingQuote(id=str(row["quote_id"]), amount=row.get("total") or 0, sent_at=sent_at)

    @staticmethod
    def _upcoming_booking(row: Optional[dict]) -> Optional[UpcomingBooking]:
        if not row:
            return None
        booking_date = parse_date(row.get("booking_date"))
        if booking_date is None:
            return None
        return UpcomingBooking(
            id=str(row["booking_id"]) if row.get("booking_id") is not None else None,
            booking_date=booking_date,
            booking_time=(row.get("booking_time") or "")[:5],
        )

    @staticmethod
    def _overdue_invoice(row: Optional[dict]) -> Optional[OverdueInvoice]:
        if not row:
            return None
        due_date = parse_date(row.get("due_date"))
        if due_date is None:
            return None
        return OverdueInvoice(
            id=str(row["invoice_id"]),
            number=str(row.get("invoice_number") or ""),
            amount=row.get("customer_pays") or row.get("total") or 0,
            due_date=due_date,
        )
