"""
Condition Matchers
One matcher per condition name used by condition-triggered rules.

Adding a condition means adding a matcher and registering it;
the rule evaluator itself does not branch on condition names.
"""
from abc import ABC, abstractmethod
from datetime import date, datetime, time, timedelta, timezone
from typing import ClassVar, Dict, List, Optional

from smartcomm.domain.models.communication import (
    CommunicationRule,
    CommunicationSettings,
    CustomerState,
)
from smartcomm.domain.services.communication_gate import local_now

SECONDS_PER_DAY = 86400

# Local hour from which a day-before reminder may go out
BOOKING_REMINDER_HOUR = 17


def days_since(then: datetime, now: datetime) -> int:
    """Whole days elapsed (floored)."""
    return int((now - then).total_seconds() // SECONDS_PER_DAY)


def start_of_day(day: date) -> datetime:
    return datetime.combine(day, time.min, tzinfo=timezone.utc)


class ConditionMatcher(ABC):
    """
    Base class for condition matchers.

    Subclasses declare the condition name they handle, the settings
    toggle that enables them, the default day threshold and the
    confidence of a positive match.
    """

    condition: ClassVar[str]
    setting_key: ClassVar[str]
    default_threshold: ClassVar[int] = 0
    confidence: ClassVar[int] = 90

    def is_enabled(self, settings: CommunicationSettings) -> bool:
        return bool(getattr(settings, self.setting_key))

    def threshold(self, rule: CommunicationRule) -> int:
        """Day threshold from the rule, or the matcher default."""
        configured = rule.trigger_config.days_since
        return self.default_threshold if configured is None else configured

    def find_rule(self, rules: List[CommunicationRule]) -> Optional[CommunicationRule]:
        """First rule (in sort order) whose condition is ours."""
        for rule in rules:
            if rule.trigger_config.condition == self.condition:
                return rule
        return None

    @abstractmethod
    def match(
        self,
        state: CustomerState,
        rule: CommunicationRule,
        settings: CommunicationSettings,
        now: datetime,
    ) -> Optional[str]:
        """Return the decision reason if the state matches, else None."""
        pass

    def matches(
        self,
        state: CustomerState,
        rule: CommunicationRule,
        settings: CommunicationSettings,
        now: datetime,
    ) -> bool:
        return self.match(state, rule, settings, now) is not None


class InvoiceOverdueMatcher(ConditionMatcher):
    """Overdue invoice past the threshold since its due date"""

    condition = "invoice_overdue"
    setting_key = "send_invoice_reminder"
    default_threshold = 5
    confidence = 95

    def match(self, state, rule, settings, now):
        invoice = state.overdue_invoice
        if invoice is None:
            return None
        elapsed = days_since(start_of_day(invoice.due_date), now)
        if elapsed < self.threshold(rule):
            return None
        return f"Invoice #{invoice.number} became overdue {elapsed} days ago"


class QuotePendingMatcher(ConditionMatcher):
    """Quote left unanswered past the threshold"""

    condition = "quote_pending"
    setting_key = "send_quote_followup"
    default_threshold = 3
    confidence = 90

    def match(self, state, rule, settings, now):
        quote = state.pending_quote
        if quote is None:
            return None
        elapsed = days_since(quote.sent_at, now)
        if elapsed < self.threshold(rule):
            return None
        return f"Quote unanswered for {elapsed} days"


class BookingTomorrowMatcher(ConditionMatcher):
    """
    Booking on the next calendar day.

    Carries its own time gate: only matches from 17:00 local time,
    independent of quiet hours.
    """

    condition = "booking_tomorrow"
    setting_key = "send_day_before_reminder"
    confidence = 95

    def match(self, state, rule, settings, now):
        booking = state.upcoming_booking
        if booking is None:
            return None
        local = local_now(settings.timezone, now)
        tomorrow = local.date() + timedelta(days=1)
        if booking.booking_date != tomorrow or local.hour < BOOKING_REMINDER_HOUR:
            return None
        return "Booking tomorrow - automatic reminder"


class InvoicePaidMatcher(ConditionMatcher):
    """Paid invoice with no review request yet"""

    condition = "invoice_paid"
    setting_key = "send_review_request"
    default_threshold = 2
    confidence = 85

    def match(self, state, rule, settings, now):
        paid = state.paid_invoice_no_review
        if paid is None:
            return None
        elapsed = days_since(paid.paid_at, now)
        if elapsed < self.threshold(rule):
            return None
        return f"Invoice paid {elapsed} days ago - asking for a review"


# Evaluation order is significant: first match wins
CONDITION_MATCHERS: List[ConditionMatcher] = [
    InvoiceOverdueMatcher(),
    QuotePendingMatcher(),
    BookingTomorrowMatcher(),
    InvoicePaidMatcher(),
]


def register_matcher(matcher: ConditionMatcher, position: Optional[int] = None) -> None:
    """Register a matcher (appended, or inserted at `position`)."""
    if position is None:
        CONDITION_MATCHERS.append(matcher)
    else:
        CONDITION_MATCHERS.insert(position, matcher)


def get_matcher(condition: str) -> Optional[ConditionMatcher]:
    matchers: Dict[str, ConditionMatcher] = {m.condition: m for m in CONDITION_MATCHERS}
    return matchers.get(condition)
