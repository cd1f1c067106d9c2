"""
Communication Store Interface
Datastore contract used by the outreach engine.

The engine never owns storage: every method is a point query
("latest matching row", "count") or an insert scoped by tenant
and customer ids. Absence of a row is returned as None, not raised.
"""
from abc import ABC, abstractmethod
from datetime import date, datetime
from typing import Any, Dict, List, Optional, Sequence


class CommunicationStoreError(Exception):
    """Raised when the datastore cannot answer a query."""
    def __init__(self, message: str):
        self.message = message
        super().__init__(self.message)


class CommunicationStore(ABC):
    """Abstract datastore for settings, rules, customer signals and the log."""

    # Tenants and settings

    @abstractmethod
    async def get_settings(self, business_id: str) -> Optional[Dict[str, Any]]:
        """communication_settings row for the tenant, if any"""
        pass

    @abstractmethod
    async def upsert_settings(self, business_id: str, updates: Dict[str, Any]) -> Dict[str, Any]:
        """Create or update the tenant's settings row and return it"""
        pass

    @abstractmethod
    async def list_business_ids(self, limit: int) -> List[str]:
        """Known tenants (bounded)"""
        pass

    @abstractmethod
    async def list_disabled_business_ids(self) -> List[str]:
        """Tenants whose settings explicitly disable automation"""
        pass

    @abstractmethod
    async def get_business(self, business_id: str) -> Optional[Dict[str, Any]]:
        """business_config row (business_name, phone_number, assigned_phone_number)"""
        pass

    # Customers

    @abstractmethod
    async def get_customer(self, business_id: str, customer_id: str) -> Optional[Dict[str, Any]]:
        """customer row (name, phone_number, email, address_line)"""
        pass

    @abstractmethod
    async def list_active_customer_ids(self, business_id: str, since: datetime, limit: int) -> List[str]:
        """Customers updated at or after `since`"""
        pass

    @abstractmethod
    async def get_last_activity_at(self, business_id: str, customer_id: str) -> Optional[datetime]:
        """Most recent human-initiated contact (customer_activity)"""
        pass

    @abstractmethod
    async def get_latest_deal_stage(self, business_id: str, customer_id: str) -> Optional[str]:
        pass

    @abstractmethod
    async def get_pending_quote(self, business_id: str, customer_id: str) -> Optional[Dict[str, Any]]:
        """Most recently sent quote still awaiting an answer"""
        pass

    @abstractmethod
    async def get_next_booking(self, business_id: str, customer_id: str, from_date: date) -> Optional[Dict[str, Any]]:
        """Nearest confirmed booking on or after `from_date`"""
        pass

    @abstractmethod
    async def get_oldest_overdue_invoice(self, business_id: str, customer_id: str) -> Optional[Dict[str, Any]]:
        pass

    @abstractmethod
    async def get_latest_paid_invoice(self, business_id: str, customer_id: str) -> Optional[Dict[str, Any]]:
        pass

    @abstractmethod
    async def get_recent_call_summary(self, business_id: str, customer_id: str) -> Optional[str]:
        pass

    @abstractmethod
    async def get_quote(self, business_id: str, quote_id: str) -> Optional[Dict[str, Any]]:
        pass

    @abstractmethod
    async def get_booking(self, business_id: str, booking_id: str) -> Optional[Dict[str, Any]]:
        pass

    @abstractmethod
    async def get_invoice(self, business_id: str, invoice_id: str) -> Optional[Dict[str, Any]]:
        pass

    # Rules

    @abstractmethod
    async def list_rules(self, business_id: str, trigger_type: Optional[str] = None) -> List[Dict[str, Any]]:
        """Enabled global and tenant rules ordered by sort_order"""
        pass

    @abstractmethod
    async def get_rule(self, business_id: str, rule_id: str) -> Optional[Dict[str, Any]]:
        """A rule visible to the tenant (its own or a global one)"""
        pass

    # Communication log

    @abstractmethod
    async def count_messages(
        self,
        business_id: str,
        customer_id: str,
        since: datetime,
        statuses: Sequence[str],
        rule_ids: Optional[Sequence[str]] = None,
    ) -> int:
        """Log rows for the pair created at or after `since`"""
        pass

    @abstractmethod
    async def get_last_message_at(
        self,
        business_id: str,
        customer_id: str,
        statuses: Sequence[str],
    ) -> Optional[datetime]:
        pass

    @abstractmethod
    async def insert_log(self, row: Dict[str, Any]) -> Optional[str]:
        """Insert a communication_log row and return its id"""
        pass

    @abstractmethod
    async def list_logs(self, business_id: str, limit: int = 50) -> List[Dict[str, Any]]:
        pass

    @abstractmethod
    async def count_logs(
        self,
        business_id: str,
        since: datetime,
        statuses: Optional[Sequence[str]] = None,
        channel: Optional[str] = None,
    ) -> int:
        """Tenant-wide log count (statistics)"""
        pass

    # Scheduled communications

    @abstractmethod
    async def insert_scheduled(self, row: Dict[str, Any]) -> Optional[str]:
        pass

    @abstractmethod
    async def list_due_scheduled(self, now: datetime, limit: int) -> List[Dict[str, Any]]:
        """Pending scheduled communications with due_at <= now"""
        pass

    @abstractmethod
    async def update_scheduled(self, scheduled_id: str, updates: Dict[str, Any]) -> None:
        pass

    @abstractmethod
    async def claim_scheduled(self, scheduled_id: str, attempted_at: datetime) -> bool:
        """
        Move a pending row to processing.

        Returns False when another poller claimed it first.
        """
        pass
