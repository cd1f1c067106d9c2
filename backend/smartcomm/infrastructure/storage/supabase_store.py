"""
Supabase Communication Store
CommunicationStore implementation backed by Supabase (PostgREST).
"""
import asyncio
import logging
from datetime import date, datetime, timezone
from typing import Any, Dict, List, Optional, Sequence

from postgrest.exceptions import APIError
from supabase import Client

from smartcomm.domain.interfaces.communication_store import (
    CommunicationStore,
    CommunicationStoreError,
)
from smartcomm.domain.models.communication import parse_timestamp

logger = logging.getLogger(__name__)


class SupabaseCommunicationStore(CommunicationStore):
    """
    Reads and writes the tables the outreach engine depends on.

    Tables:
    - business_config, customer, customer_activity, deal
    - quotes, booking, invoice, call_recording
    - communication_settings, communication_rule, communication_log
    - scheduled_communication
    """

    def __init__(self, supabase: Client):
        self.supabase = supabase

    async def _execute(self, query, what: str):
        """
        Run a PostgREST query in a worker thread; the supabase client is synchronous.

        Raises:
            CommunicationStoreError: On PostgREST API errors
        """
        try:
            return await asyncio.to_thread(query.execute)
        except APIError as e:
            logger.error(f"Supabase query failed ({what}): {e}")
            raise CommunicationStoreError(f"{what} failed: {e.message or e}")

    async def _first(self, query, what: str) -> Optional[Dict[str, Any]]:
        response = await self._execute(query.limit(1), what)
        return response.data[0] if response.data else None

    async def _count(self, query, what: str) -> int:
        response = await self._execute(query, what)
        return response.count or 0

    # -------------------------------------------------------------------------
    # Tenants and settings
    # -------------------------------------------------------------------------

    async def get_settings(self, business_id: str) -> Optional[Dict[str, Any]]:
        return await self._first(
            self.supabase.table("communication_settings").select("*").eq("business_id", business_id),
            "get_settings",
        )

    async def upsert_settings(self, business_id: str, updates: Dict[str, Any]) -> Dict[str, Any]:
        payload = {
            "business_id": business_id,
            **updates,
            "updated_at": datetime.now(timezone.utc).isoformat(),
        }
        response = await self._execute(
            self.supabase.table("communication_settings").upsert(payload, on_conflict="business_id"),
            "upsert_settings",
        )
        return response.data[0] if response.data else payload

    async def list_business_ids(self, limit: int) -> List[str]:
        response = await self._execute(
            self.supabase.table("business_config").select("business_id").limit(limit),
            "list_business_ids",
        )
        return [row["business_id"] for row in response.data or []]

    async def list_disabled_business_ids(self) -> List[str]:
        response = await self._execute(
            self.supabase.table("communication_settings").select("business_id").eq("auto_enabled", False),
            "list_disabled_business_ids",
        )
        return [row["business_id"] for row in response.data or []]

    async def get_business(self, business_id: str) -> Optional[Dict[str, Any]]:
        return await self._first(
            self.supabase.table("business_config").select(
                "business_id, business_name, phone_number, assigned_phone_number"
            ).eq("business_id", business_id),
            "get_business",
        )

    # -------------------------------------------------------------------------
    # Customers and related entities
    # -------------------------------------------------------------------------

    async def get_customer(self, business_id: str, customer_id: str) -> Optional[Dict[str, Any]]:
        return await self._first(
            self.supabase.table("customer").select(
                "customer_id, name, phone_number, email, address_line"
            ).eq("business_id", business_id).eq("customer_id", customer_id),
            "get_customer",
        )

    async def list_active_customer_ids(self, business_id: str, since: datetime, limit: int) -> List[str]:
        response = await self._execute(
            self.supabase.table("customer").select("customer_id").eq(
                "business_id", business_id
            ).gte("updated_at", since.isoformat()).limit(limit),
            "list_active_customer_ids",
        )
        return [row["customer_id"] for row in response.data or []]

    async def get_last_activity_at(self, business_id: str, customer_id: str) -> Optional[datetime]:
        row = await self._first(
            self.supabase.table("customer_activity").select("created_at").eq(
                "business_id", business_id
            ).eq("customer_id", customer_id).order("created_at", desc=True),
            "get_last_activity_at",
        )
        return parse_timestamp(row["created_at"]) if row else None

    async def get_latest_deal_stage(self, business_id: str, customer_id: str) -> Optional[str]:
        row = await self._first(
            self.supabase.table("deal").select("stage_slug").eq(
                "business_id", business_id
            ).eq("customer_id", customer_id).order("created_at", desc=True),
            "get_latest_deal_stage",
        )
        return row.get("stage_slug") if row else None

    async def get_pending_quote(self, business_id: str, customer_id: str) -> Optional[Dict[str, Any]]:
        return await self._first(
            self.supabase.table("quotes").select("quote_id, total, updated_at").eq(
                "business_id", business_id
            ).eq("customer_id", customer_id).eq("status", "sent").order("updated_at", desc=True),
            "get_pending_quote",
        )

    async def get_next_booking(self, business_id: str, customer_id: str, from_date: date) -> Optional[Dict[str, Any]]:
        return await self._first(
            self.supabase.table("booking").select("booking_id, booking_date, booking_time").eq(
                "business_id", business_id
            ).eq("customer_id", customer_id).eq("status", "confirmed").gte(
                "booking_date", from_date.isoformat()
            ).order("booking_date"),
            "get_next_booking",
        )

    async def get_oldest_overdue_invoice(self, business_id: str, customer_id: str) -> Optional[Dict[str, Any]]:
        return await self._first(
            self.supabase.table("invoice").select(
                "invoice_id, invoice_number, total, customer_pays, due_date"
            ).eq("business_id", business_id).eq("customer_id", customer_id).eq(
                "status", "overdue"
            ).order("due_date"),
            "get_oldest_overdue_invoice",
        )

    async def get_latest_paid_invoice(self, business_id: str, customer_id: str) -> Optional[Dict[str, Any]]:
        return await self._first(
            self.supabase.table("invoice").select("invoice_id, updated_at").eq(
                "business_id", business_id
            ).eq("customer_id", customer_id).eq("status", "paid").order("updated_at", desc=True),
            "get_latest_paid_invoice",
        )

    async def get_recent_call_summary(self, business_id: str, customer_id: str) -> Optional[str]:
        row = await self._first(
            self.supabase.table("call_recording").select("transcript_summary").eq(
                "business_id", business_id
            ).eq("customer_id", customer_id).not_.is_(
                "transcript_summary", "null"
            ).order("created_at", desc=True),
            "get_recent_call_summary",
        )
        return row.get("transcript_summary") if row else None

    async def get_quote(self, business_id: str, quote_id: str) -> Optional[Dict[str, Any]]:
        return await self._first(
            self.supabase.table("quotes").select("quote_id, total, sign_token").eq(
                "business_id", business_id
            ).eq("quote_id", quote_id),
            "get_quote",
        )

    async def get_booking(self, business_id: str, booking_id: str) -> Optional[Dict[str, Any]]:
        return await self._first(
            self.supabase.table("booking").select("booking_id, booking_date, booking_time, service_type").eq(
                "business_id", business_id
            ).eq("booking_id", booking_id),
            "get_booking",
        )

    async def get_invoice(self, business_id: str, invoice_id: str) -> Optional[Dict[str, Any]]:
        return await self._first(
            self.supabase.table("invoice").select(
                "invoice_id, invoice_number, total, due_date, customer_pays"
            ).eq("business_id", business_id).eq("invoice_id", invoice_id),
            "get_invoice",
        )

    # -------------------------------------------------------------------------
    # Rules
    # -------------------------------------------------------------------------

    async def list_rules(self, business_id: str, trigger_type: Optional[str] = None) -> List[Dict[str, Any]]:
        query = self.supabase.table("communication_rule").select("*").eq(
            "is_enabled", True
        ).or_(f"business_id.is.null,business_id.eq.{business_id}")
        if trigger_type:
            query = query.eq("trigger_type", trigger_type)
        response = await self._execute(query.order("sort_order"), "list_rules")
        return response.data or []

    async def get_rule(self, business_id: str, rule_id: str) -> Optional[Dict[str, Any]]:
        return await self._first(
            self.supabase.table("communication_rule").select("*").eq("id", rule_id).or_(
                f"business_id.is.null,business_id.eq.{business_id}"
            ),
            "get_rule",
        )

    # -------------------------------------------------------------------------
    # Communication log
    # -------------------------------------------------------------------------

    async def count_messages(
        self,
        business_id: str,
        customer_id: str,
        since: datetime,
        statuses: Sequence[str],
        rule_ids: Optional[Sequence[str]] = None,
    ) -> int:
        query = self.supabase.table("communication_log").select(
            "id", count="exact", head=True
        ).eq("business_id", business_id).eq("customer_id", customer_id).gte(
            "created_at", since.isoformat()
        )
        if statuses:
            query = query.in_("status", list(statuses))
        if rule_ids:
            query = query.in_("rule_id", list(rule_ids))
        return await self._count(query, "count_messages")

    async def get_last_message_at(
        self,
        business_id: str,
        customer_id: str,
        statuses: Sequence[str],
    ) -> Optional[datetime]:
        row = await self._first(
            self.supabase.table("communication_log").select("created_at").eq(
                "business_id", business_id
            ).eq("customer_id", customer_id).in_("status", list(statuses)).order(
                "created_at", desc=True
            ),
            "get_last_message_at",
        )
        return parse_timestamp(row["created_at"]) if row else None

    async def insert_log(self, row: Dict[str, Any]) -> Optional[str]:
        response = await self._execute(
            self.supabase.table("communication_log").insert(row),
            "insert_log",
        )
        log_id = response.data[0]["id"] if response.data else None
        logger.debug(f"Created communication_log row: {log_id}")
        return log_id

    async def list_logs(self, business_id: str, limit: int = 50) -> List[Dict[str, Any]]:
        response = await self._execute(
            self.supabase.table("communication_log").select("*").eq(
                "business_id", business_id
            ).order("created_at", desc=True).limit(limit),
            "list_logs",
        )
        return response.data or []

    async def count_logs(
        self,
        business_id: str,
        since: datetime,
        statuses: Optional[Sequence[str]] = None,
        channel: Optional[str] = None,
    ) -> int:
        query = self.supabase.table("communication_log").select(
            "id", count="exact", head=True
        ).eq("business_id", business_id).gte("created_at", since.isoformat())
        if statuses:
            query = query.in_("status", list(statuses))
        if channel:
            query = query.eq("channel", channel)
        return await self._count(query, "count_logs")

    # -------------------------------------------------------------------------
    # Scheduled communications
    # -------------------------------------------------------------------------

    async def insert_scheduled(self, row: Dict[str, Any]) -> Optional[str]:
        response = await self._execute(
            self.supabase.table("scheduled_communication").insert(row),
            "insert_scheduled",
        )
        return response.data[0]["id"] if response.data else None

    async def list_due_scheduled(self, now: datetime, limit: int) -> List[Dict[str, Any]]:
        response = await self._execute(
            self.supabase.table("scheduled_communication").select("*").eq(
                "status", "pending"
            ).lte("due_at", now.isoformat()).order("due_at").limit(limit),
            "list_due_scheduled",
        )
        return response.data or []

    async def update_scheduled(self, scheduled_id: str, updates: Dict[str, Any]) -> None:
        await self._execute(
            self.supabase.table("scheduled_communication").update(updates).eq("id", scheduled_id),
            "update_scheduled",
        )

    async def claim_scheduled(self, scheduled_id: str, attempted_at: datetime) -> bool:
        response = await self._execute(
            self.supabase.table("scheduled_communication").update({
                "status": "processing",
                "attempted_at": attempted_at.isoformat(),
            }).eq("id", scheduled_id).eq("status", "pending"),
            "claim_scheduled",
        )
        return bool(response.data)
