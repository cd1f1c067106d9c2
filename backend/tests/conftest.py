"""
Shared fixtures: an in-memory CommunicationStore and fake gateways.
"""
from datetime import date, datetime, timezone
from typing import Any, Dict, List, Optional, Sequence
from unittest.mock import AsyncMock, MagicMock

import pytest

from smartcomm.core.config import Settings
from smartcomm.domain.interfaces.communication_store import (
    CommunicationStore,
    CommunicationStoreError,
)
from smartcomm.domain.models.communication import parse_timestamp
from smartcomm.infrastructure.connectors.email import EmailResult
from smartcomm.infrastructure.connectors.sms import SMSProvider, SMSResult
from smartcomm.services.communication_engine import build_communication_engine


BUSINESS_ID = "biz-1"
CUSTOMER_ID = "cust-1"

# Tuesday 14 Jan 2025, 13:00 in Stockholm
NOW = datetime(2025, 1, 14, 12, 0, tzinfo=timezone.utc)


class FakeCommunicationStore(CommunicationStore):
    """Dictionary-backed store. Method names listed in `failing` raise."""

    def __init__(self):
        self.now = NOW
        self.failing: set = set()

        self.settings: Dict[str, Dict[str, Any]] = {}
        self.businesses: Dict[str, Dict[str, Any]] = {}
        self.customers: Dict[tuple, Dict[str, Any]] = {}
        self.active_customers: Dict[str, List[str]] = {}
        self.last_activity: Dict[tuple, datetime] = {}
        self.deal_stages: Dict[tuple, str] = {}
        self.pending_quotes: Dict[tuple, Dict[str, Any]] = {}
        self.next_bookings: Dict[tuple, Dict[str, Any]] = {}
        self.overdue_invoices: Dict[tuple, Dict[str, Any]] = {}
        self.paid_invoices: Dict[tuple, Dict[str, Any]] = {}
        self.call_summaries: Dict[tuple, str] = {}
        self.quotes: Dict[str, Dict[str, Any]] = {}
        self.bookings: Dict[str, Dict[str, Any]] = {}
        self.invoices: Dict[str, Dict[str, Any]] = {}
        self.rules: List[Dict[str, Any]] = []
        self.logs: List[Dict[str, Any]] = []
        self.scheduled: Dict[str, Dict[str, Any]] = {}

    def _check(self, name: str) -> None:
        if name in self.failing:
            raise CommunicationStoreError(f"{name} failed")

    # Test helpers

    def add_customer(self, business_id: str, customer_id: str, **fields) -> None:
        self.customers[(business_id, customer_id)] = {"customer_id": customer_id, **fields}
        self.active_customers.setdefault(business_id, []).append(customer_id)

    def add_log(self, business_id: str, customer_id: str, created_at: datetime, **fields) -> None:
        self.logs.append({
            "id": f"log-{len(self.logs) + 1}",
            "business_id": business_id,
            "customer_id": customer_id,
            "status": "sent",
            "rule_id": None,
            "channel": "sms",
            "created_at": created_at,
            **fields,
        })

    # Tenants and settings

    async def get_settings(self, business_id):
        self._check("get_settings")
        return self.settings.get(business_id)

    async def upsert_settings(self, business_id, updates):
        self._check("upsert_settings")
        row = {**self.settings.get(business_id, {}), **updates, "business_id": business_id}
        self.settings[business_id] = row
        return row

    async def list_business_ids(self, limit):
        self._check("list_business_ids")
        return list(self.businesses)[:limit]

    async def list_disabled_business_ids(self):
        return [bid for bid, row in self.settings.items() if row.get("auto_enabled") is False]

    async def get_business(self, business_id):
        self._check("get_business")
        return self.businesses.get(business_id)

    # Customers

    async def get_customer(self, business_id, customer_id):
        self._check("get_customer")
        return self.customers.get((business_id, customer_id))

    async def list_active_customer_ids(self, business_id, since, limit):
        self._check("list_active_customer_ids")
        return self.active_customers.get(business_id, [])[:limit]

    async def get_last_activity_at(self, business_id, customer_id):
        self._check("get_last_activity_at")
        return self.last_activity.get((business_id, customer_id))

    async def get_latest_deal_stage(self, business_id, customer_id):
        self._check("get_latest_deal_stage")
        return self.deal_stages.get((business_id, customer_id))

    async def get_pending_quote(self, business_id, customer_id):
        self._check("get_pending_quote")
        return self.pending_quotes.get((business_id, customer_id))

    async def get_next_booking(self, business_id, customer_id, from_date: date):
        self._check("get_next_booking")
        row = self.next_bookings.get((business_id, customer_id))
        if row and row["booking_date"] >= from_date.isoformat():
            return row
        return None

    async def get_oldest_overdue_invoice(self, business_id, customer_id):
        self._check("get_oldest_overdue_invoice")
        return self.overdue_invoices.get((business_id, customer_id))

    async def get_latest_paid_invoice(self, business_id, customer_id):
        self._check("get_latest_paid_invoice")
        return self.paid_invoices.get((business_id, customer_id))

    async def get_recent_call_summary(self, business_id, customer_id):
        self._check("get_recent_call_summary")
        return self.call_summaries.get((business_id, customer_id))

    async def get_quote(self, business_id, quote_id):
        return self.quotes.get(quote_id)

    async def get_booking(self, business_id, booking_id):
        return self.bookings.get(booking_id)

    async def get_invoice(self, business_id, invoice_id):
        return self.invoices.get(invoice_id)

    # Rules

    async def list_rules(self, business_id, trigger_type=None):
        self._check("list_rules")
        rules = [
            r for r in self.rules
            if r.get("is_enabled", True) and r.get("business_id") in (None, business_id)
        ]
        if trigger_type:
            rules = [r for r in rules if r["trigger_type"] == trigger_type]
        return sorted(rules, key=lambda r: r.get("sort_order", 0))

    async def get_rule(self, business_id, rule_id):
        self._check("get_rule")
        for rule in self.rules:
            if rule["id"] == rule_id and rule.get("business_id") in (None, business_id):
                return rule
        return None

    # Communication log

    def _matching_logs(
        self,
        business_id: str,
        since: datetime,
        customer_id: Optional[str] = None,
        statuses: Optional[Sequence[str]] = None,
        rule_ids: Optional[Sequence[str]] = None,
        channel: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        return [
            row for row in self.logs
            if row["business_id"] == business_id
            and (customer_id is None or row["customer_id"] == customer_id)
            and parse_timestamp(row["created_at"]) >= since
            and (not statuses or row["status"] in statuses)
            and (not rule_ids or row["rule_id"] in rule_ids)
            and (channel is None or row["channel"] == channel)
        ]

    async def count_messages(self, business_id, customer_id, since, statuses, rule_ids=None):
        self._check("count_messages")
        return len(self._matching_logs(business_id, since, customer_id, statuses, rule_ids))

    async def get_last_message_at(self, business_id, customer_id, statuses):
        self._check("get_last_message_at")
        rows = self._matching_logs(
            business_id, datetime.min.replace(tzinfo=timezone.utc), customer_id, statuses
        )
        return max((parse_timestamp(r["created_at"]) for r in rows), default=None)

    async def insert_log(self, row):
        self._check("insert_log")
        log_id = f"log-{len(self.logs) + 1}"
        self.logs.append({**row, "id": log_id, "created_at": self.now})
        return log_id

    async def list_logs(self, business_id, limit=50):
        self._check("list_logs")
        rows = [r for r in self.logs if r["business_id"] == business_id]
        return list(reversed(rows))[:limit]

    async def count_logs(self, business_id, since, statuses=None, channel=None):
        self._check("count_logs")
        return len(self._matching_logs(business_id, since, statuses=statuses, channel=channel))

    # Scheduled communications

    async def insert_scheduled(self, row):
        self._check("insert_scheduled")
        scheduled_id = f"sched-{len(self.scheduled) + 1}"
        self.scheduled[scheduled_id] = {**row, "id": scheduled_id}
        return scheduled_id

    async def list_due_scheduled(self, now, limit):
        due = [
            row for row in self.scheduled.values()
            if row.get("status", "pending") == "pending" and parse_timestamp(row["due_at"]) <= now
        ]
        return sorted(due, key=lambda r: r["due_at"])[:limit]

    async def update_scheduled(self, scheduled_id, updates):
        self._check("update_scheduled")
        self.scheduled[scheduled_id].update(updates)

    async def claim_scheduled(self, scheduled_id, attempted_at):
        self._check("claim_scheduled")
        row = self.scheduled[scheduled_id]
        if row.get("status", "pending") != "pending":
            return False
        row.update({"status": "processing", "attempted_at": attempted_at.isoformat()})
        return True


class FakeSMSProvider(SMSProvider):
    """Records every message instead of sending it."""

    def __init__(self, succeed: bool = True, configured: bool = True):
        self.succeed = succeed
        self.configured = configured
        self.sent: List[Dict[str, Any]] = []

    @property
    def provider_name(self) -> str:
        return "fake"

    def is_configured(self) -> bool:
        return self.configured

    async def send_sms(self, to_number, message, from_number=None, metadata=None):
        self.sent.append({"to": to_number, "message": message, "from": from_number})
        if not self.succeed:
            return SMSResult(success=False, provider="fake", to_number=to_number, error="gateway rejected")
        return SMSResult(success=True, message_id=f"sms-{len(self.sent)}", provider="fake", to_number=to_number)


def make_rule(rule_id: str, trigger_type: str = "condition", **fields) -> Dict[str, Any]:
    """A communication_rule row."""
    row = {
        "id": rule_id,
        "business_id": None,
        "name": rule_id.replace("_", " "),
        "trigger_type": trigger_type,
        "trigger_config": {},
        "message_template": "Hej {customer_name}!",
        "channel": "sms",
        "is_enabled": True,
        "sort_order": 0,
    }
    row.update(fields)
    return row


@pytest.fixture
def store():
    store = FakeCommunicationStore()
    store.businesses[BUSINESS_ID] = {
        "business_id": BUSINESS_ID,
        "business_name": "Anderssons Bygg",
        "phone_number": "08-123 45 67",
    }
    store.add_customer(BUSINESS_ID, CUSTOMER_ID, name="Anna Svensson", phone_number="0701234567")
    return store


@pytest.fixture
def sms_provider():
    return FakeSMSProvider()


@pytest.fixture
def email_provider():
    provider = MagicMock()
    provider.send_email = AsyncMock(
        side_effect=lambda to_email, subject, body, from_name: EmailResult(success=True, to_email=to_email)
    )
    return provider


@pytest.fixture
def app_settings():
    return Settings(_env_file=None, app_url="https://app.example.se")


@pytest.fixture
def engine(store, sms_provider, email_provider, app_settings):
    return build_communication_engine(
        store,
        llm_provider=None,
        settings=app_settings,
        sms_provider=sms_provider,
        email_provider=email_provider,
    )
