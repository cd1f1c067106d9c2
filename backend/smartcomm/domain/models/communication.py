"""
Communication Domain Models
Settings, rules, customer snapshots, decisions and log records
used by the automated outreach engine.
"""
from datetime import date, datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, field_validator


class Channel(str, Enum):
    """Outbound channel for a message"""
    SMS = "sms"
    EMAIL = "email"


class TriggerType(str, Enum):
    """How a rule is triggered"""
    EVENT = "event"
    CONDITION = "condition"


class Tone(str, Enum):
    """Messaging tone configured per tenant"""
    FORMAL = "formal"
    FRIENDLY = "friendly"
    PERSONAL = "personal"


class LogStatus(str, Enum):
    """Status of a communication_log row"""
    SENT = "sent"
    DELIVERED = "delivered"
    FAILED = "failed"


# Statuses counted against the weekly cap
COUNTED_STATUSES: Tuple[str, ...] = (LogStatus.SENT.value, LogStatus.DELIVERED.value)


class DecisionSource(str, Enum):
    """Which stage of the pipeline produced a decision"""
    GATE = "gate"
    RULES = "rules"
    MODEL = "model"
    DEFAULT = "default"


class ScheduledStatus(str, Enum):
    """Status of a scheduled (delayed) communication"""
    PENDING = "pending"
    PROCESSING = "processing"
    SENT = "sent"
    FAILED = "failed"
    SKIPPED = "skipped"


# Business events and the settings toggle that enables them
EVENT_SETTING_KEYS: Dict[str, str] = {
    "booking_created": "send_booking_confirmation",
    "on_the_way": "send_on_the_way",
    "quote_sent": "send_quote_followup",
    "project_completed": "send_job_completed",
    "invoice_sent": "send_invoice_reminder",
    "invoice_paid": "send_review_request",
}


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse a Supabase timestamp (ISO string) into an aware UTC datetime."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        dt = value
    else:
        try:
            dt = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
        except ValueError:
            return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def parse_date(value: Any) -> Optional[date]:
    """Parse a date column (YYYY-MM-DD or full timestamp)."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(str(value)[:10])
    except ValueError:
        return None


def parse_clock(value: str) -> int:
    """Convert 'HH:MM' (or 'HH:MM:SS') to minute-of-day."""
    parts = value.split(":")
    if len(parts) < 2:
        raise ValueError(f"Invalid clock time: {value}")
    hours, minutes = int(parts[0]), int(parts[1])
    if not (0 <= hours < 24 and 0 <= minutes < 60):
        raise ValueError(f"Invalid clock time: {value}")
    return hours * 60 + minutes


class CommunicationSettings(BaseModel):
    """
    Per-tenant communication settings.

    Stored in the communication_settings table, one row per business.
    When no row exists the engine works with `CommunicationSettings.defaults()`.
    """

    model_config = ConfigDict(extra="ignore", coerce_numbers_to_str=True)

    id: Optional[str] = None
    business_id: str

    auto_enabled: bool = Field(default=True, description="Global kill switch for automatic messages")
    tone: Tone = Tone.FRIENDLY
    max_sms_per_customer_per_week: int = Field(
        default=3,
        ge=0,
        description="Rolling 7-day cap on automated messages per customer"
    )

    # Feature toggles, one per rule category
    send_booking_confirmation: bool = True
    send_day_before_reminder: bool = True
    send_on_the_way: bool = True
    send_quote_followup: bool = True
    send_job_completed: bool = True
    send_invoice_reminder: bool = True
    send_review_request: bool = True

    # Quiet hours in local wall-clock time, may wrap past midnight
    quiet_hours_start: str = Field(default="21:00", description="HH:MM")
    quiet_hours_end: str = Field(default="07:00", description="HH:MM")
    timezone: str = Field(default="Europe/Stockholm", description="IANA timezone for quiet hours")

    @field_validator("quiet_hours_start", "quiet_hours_end")
    @classmethod
    def _validate_clock(cls, value: str) -> str:
        parse_clock(value)
        return value[:5]

    @field_validator("timezone", mode="before")
    @classmethod
    def _default_timezone(cls, value: Any) -> Any:
        return value or "Europe/Stockholm"

    @property
    def max_messages_per_customer_per_week(self) -> int:
        return self.max_sms_per_customer_per_week

    def quiet_window(self) -> Tuple[int, int]:
        """Quiet hours as (start, end) minute-of-day."""
        return parse_clock(self.quiet_hours_start), parse_clock(self.quiet_hours_end)

    def is_event_enabled(self, event: str) -> bool:
        """Events without a dedicated toggle are always enabled."""
        key = EVENT_SETTING_KEYS.get(event)
        if key is None:
            return True
        return bool(getattr(self, key))

    @classmethod
    def defaults(cls, business_id: str, timezone_name: Optional[str] = None) -> "CommunicationSettings":
        """Settings used when the tenant has never saved any."""
        if timezone_name:
            return cls(business_id=business_id, timezone=timezone_name)
        return cls(business_id=business_id)


class TriggerConfig(BaseModel):
    """Structured matcher stored in communication_rule.trigger_config"""

    model_config = ConfigDict(extra="allow")

    event: Optional[str] = None
    condition: Optional[str] = None
    days_since: Optional[int] = Field(default=None, ge=0)
    delay_minutes: int = Field(default=0, ge=0)

    @field_validator("delay_minutes", mode="before")
    @classmethod
    def _none_delay(cls, value: Any) -> Any:
        return value or 0


class CommunicationRule(BaseModel):
    """
    A catalog entry mapping an event or condition to a message template.

    Rules with business_id = None are global and apply to all tenants
    unless a tenant rule for the same event overrides them.
    """

    model_config = ConfigDict(extra="ignore", coerce_numbers_to_str=True)

    id: str
    business_id: Optional[str] = None
    name: str = ""
    description: Optional[str] = None
    trigger_type: TriggerType
    trigger_config: TriggerConfig = Field(default_factory=TriggerConfig)
    message_template: str
    channel: Channel = Channel.SMS
    is_enabled: bool = True
    is_system: bool = False
    sort_order: int = 0

    @field_validator("trigger_config", mode="before")
    @classmethod
    def _empty_config(cls, value: Any) -> Any:
        return value or {}

    @field_validator("channel", mode="before")
    @classmethod
    def _unknown_channel(cls, value: Any) -> Any:
        # Anything that is not email goes out as SMS
        return Channel.EMAIL.value if value == Channel.EMAIL.value else Channel.SMS.value

    @property
    def delay_minutes(self) -> int:
        return self.trigger_config.delay_minutes


# =============================================================================
# Customer snapshot
# =============================================================================

class PendingQuote(BaseModel):
    """Most recent quote sent to the customer and not yet answered"""
    id: str
    amount: float = 0.0
    sent_at: datetime


class UpcomingBooking(BaseModel):
    """Nearest confirmed booking from today onward"""
    id: Optional[str] = None
    booking_date: date
    booking_time: str = ""


class OverdueInvoice(BaseModel):
    """Oldest overdue invoice"""
    id: str
    number: str = ""
    amount: float = 0.0
    due_date: date


class PaidInvoice(BaseModel):
    """Most recently paid invoice with no review request sent since"""
    id: str
    paid_at: datetime


class CustomerState(BaseModel):
    """
    Point-in-time snapshot of the signals the engine decides on.

    Never persisted. Every optional field may be None when the
    underlying row is missing or its lookup failed.
    """

    customer_id: str
    business_id: str
    customer_name: str = "Kund"
    customer_phone: Optional[str] = None
    customer_email: Optional[str] = None
    deal_stage: Optional[str] = None

    days_since_contact: Optional[int] = None
    days_since_message: Optional[int] = None
    message_count_this_week: int = 0

    pending_quote: Optional[PendingQuote] = None
    upcoming_booking: Optional[UpcomingBooking] = None
    overdue_invoice: Optional[OverdueInvoice] = None
    paid_invoice_no_review: Optional[PaidInvoice] = None
    recent_call_summary: Optional[str] = None


class Decision(BaseModel):
    """Outcome of evaluating one customer. Immutable once created."""

    model_config = ConfigDict(frozen=True, use_enum_values=True)

    should_send: bool
    rule_id: Optional[str] = None
    reason: str
    confidence: int = Field(ge=0, le=100)
    source: DecisionSource = DecisionSource.DEFAULT

    @classmethod
    def negative(cls, reason: str, confidence: int, source: DecisionSource = DecisionSource.DEFAULT) -> "Decision":
        return cls(should_send=False, reason=reason, confidence=confidence, source=source)


class GateResult(BaseModel):
    """Admission-control answer"""
    allowed: bool
    reason: Optional[str] = None


class CommunicationContext(BaseModel):
    """Entity references available when resolving template variables"""
    business_id: str
    customer_id: str
    deal_id: Optional[str] = None
    order_id: Optional[str] = None
    invoice_id: Optional[str] = None
    quote_id: Optional[str] = None
    booking_id: Optional[str] = None
    extra_variables: Dict[str, str] = Field(default_factory=dict)


class CommunicationLogEntry(BaseModel):
    """Row written to communication_log once per dispatch attempt"""

    model_config = ConfigDict(use_enum_values=True, coerce_numbers_to_str=True)

    id: Optional[str] = None
    business_id: str
    customer_id: str
    deal_id: Optional[str] = None
    order_id: Optional[str] = None
    invoice_id: Optional[str] = None
    rule_id: Optional[str] = None
    channel: Channel
    recipient: str
    message: str
    ai_reason: Optional[str] = None
    status: LogStatus
    error_message: Optional[str] = None
    created_at: Optional[datetime] = None

    def to_row(self) -> Dict[str, Any]:
        """Insert payload (id and created_at are assigned by the database)."""
        return self.model_dump(exclude={"id", "created_at"}, mode="json")


class ScheduledCommunication(BaseModel):
    """Durable delayed dispatch, picked up by the communication worker"""

    model_config = ConfigDict(use_enum_values=True, coerce_numbers_to_str=True)

    id: Optional[str] = None
    business_id: str
    customer_id: str
    rule_id: Optional[str] = None
    channel: Channel
    recipient: str
    message: str
    reason: Optional[str] = None
    deal_id: Optional[str] = None
    order_id: Optional[str] = None
    invoice_id: Optional[str] = None
    due_at: datetime
    status: ScheduledStatus = ScheduledStatus.PENDING
    attempted_at: Optional[datetime] = None
    last_error: Optional[str] = None
    log_id: Optional[str] = None

    def to_row(self) -> Dict[str, Any]:
        return self.model_dump(exclude={"id"}, mode="json")

    def to_context(self) -> CommunicationContext:
        return CommunicationContext(
            business_id=self.business_id,
            customer_id=self.customer_id,
            deal_id=self.deal_id,
            order_id=self.order_id,
            invoice_id=self.invoice_id,
        )


# =============================================================================
# Results
# =============================================================================

class DispatchResult(BaseModel):
    """Outcome of a dispatch attempt"""
    success: bool
    log_id: Optional[str] = None
    error: Optional[str] = None
    scheduled_id: Optional[str] = None


class CustomerDecision(BaseModel):
    """Per-customer decision reported by a sweep"""
    customer_id: str
    decision: Decision
    outcome: str = "skipped"  # sent | failed | skipped
    detail: Optional[str] = None


class RunResult(BaseModel):
    """Aggregate statistics of one tenant sweep"""
    evaluated: int = 0
    sent: int = 0
    skipped: int = 0
    failed: int = 0
    decisions: List[CustomerDecision] = Field(default_factory=list)


class EventTriggerResult(BaseModel):
    """What happened to a business event (never raised to the caller)"""
    event: str
    sent: bool = False
    scheduled: bool = False
    reason: Optional[str] = None
    log_id: Optional[str] = None


class TenantRunSummary(BaseModel):
    """One tenant's line in a cross-tenant sweep"""
    business_id: str
    evaluated: int = 0
    sent: int = 0
    error: Optional[str] = None


class SweepSummary(BaseModel):
    """Result of sweeping every enabled tenant"""
    businesses: int = 0
    total_evaluated: int = 0
    total_sent: int = 0
    details: List[TenantRunSummary] = Field(default_factory=list)
