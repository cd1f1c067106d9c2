"""
Communication Dispatcher
Sends a rendered message through its channel and records the attempt.

Every send attempt produces exactly one communication_log row, whether
the gateway accepted the message or not. Delayed messages are stored in
scheduled_communication and sent by the worker when due.
"""
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from smartcomm.domain.interfaces.communication_store import CommunicationStore
from smartcomm.domain.models.communication import (
    Channel,
    CommunicationContext,
    CommunicationLogEntry,
    DispatchResult,
    LogStatus,
    ScheduledCommunication,
    ScheduledStatus,
)
from smartcomm.domain.services.communication_gate import CommunicationGate
from smartcomm.infrastructure.connectors.email import SMTPEmailProvider
from smartcomm.infrastructure.connectors.sms import SMSProvider

logger = logging.getLogger(__name__)

DEFAULT_SENDER_NAME = "Handymate"


class SMSNotConfiguredError(Exception):
    """Raised when SMS provider is not configured."""
    def __init__(self, message: str = "SMS provider not configured"):
        self.message = message
        super().__init__(self.message)


class CommunicationDispatcher:
    """
    Channel delivery plus audit logging.

    Integration Points:
    - CommunicationEngine: rule and event messages, manual sends
    - CommunicationWorker: scheduled (delayed) messages
    """

    def __init__(
        self,
        store: CommunicationStore,
        sms_provider: SMSProvider,
        email_provider: Optional[SMTPEmailProvider] = None,
        gate: Optional[CommunicationGate] = None,
    ):
        self.store = store
        self.sms_provider = sms_provider
        self.email_provider = email_provider
        self.gate = gate

    async def _sender_name(self, business_id: str) -> str:
        try:
            business = await self.store.get_business(business_id)
        except Exception as e:
            logger.warning(f"Could not load business name for {business_id}: {e}")
            business = None
        return (business or {}).get("business_name") or DEFAULT_SENDER_NAME

    async def _deliver_sms(self, sender: str, recipient: str, message: str, metadata: Dict[str, Any]) -> None:
        """
        Raises:
            SMSNotConfiguredError: If the SMS gateway has no credentials
            RuntimeError: If the gateway rejected the message
        """
        if not self.sms_provider.is_configured():
            raise SMSNotConfiguredError(f"{self.sms_provider.provider_name} credentials not configured")

        result = await self.sms_provider.send_sms(
            to_number=recipient,
            message=message,
            from_number=self.sms_provider.sender_id(sender),
            metadata=metadata,
        )
        if not result.success:
            raise RuntimeError(result.error or "SMS failed")

    async def _deliver_email(self, sender: str, recipient: str, message: str) -> None:
        if self.email_provider is None:
            raise RuntimeError("Email provider not configured")

        result = await self.email_provider.send_email(
            to_email=recipient,
            subject=f"Meddelande från {sender}",
            body=message,
            from_name=sender,
        )
        if not result.success:
            raise RuntimeError(result.error or "Email failed")

    async def send(
        self,
        business_id: str,
        customer_id: str,
        rule_id: Optional[str],
        channel: str,
        recipient: str,
        message: str,
        reason: Optional[str] = None,
        context: Optional[CommunicationContext] = None,
        enforce_gate: bool = False,
        now: Optional[datetime] = None,
    ) -> DispatchResult:
        """
        Send a message and write its log row.

        Args:
            business_id: Tenant
            customer_id: Recipient customer
            rule_id: Rule that produced the message (None for ad-hoc)
            channel: "sms" or "email"
            recipient: Phone number or email address
            message: Final message text
            reason: Why the message is sent (stored as ai_reason)
            context: Entity ids to link in the log
            enforce_gate: Re-check the gate first; a denial sends and logs nothing
            now: Time for the gate check

        Returns:
            DispatchResult(success, log_id, error)
        """
        if enforce_gate and self.gate is not None:
            gate = await self.gate.can_send(business_id, customer_id, now=now)
            if not gate.allowed:
                logger.info(f"Dispatch to customer {customer_id} blocked: {gate.reason}")
                return DispatchResult(success=False, error=gate.reason)

        sender = await self._sender_name(business_id)
        error: Optional[str] = None

        try:
            if channel == Channel.EMAIL.value:
                await self._deliver_email(sender, recipient, message)
            else:
                await self._deliver_sms(
                    sender, recipient, message,
                    metadata={"business_id": business_id, "customer_id": customer_id, "rule_id": rule_id},
                )
        except SMSNotConfiguredError as e:
            logger.warning(f"SMS not sent to {recipient[:6]}...: {e.message}")
            error = e.message
        except Exception as e:
            logger.error(f"Dispatch via {channel} to {recipient[:6]}... failed: {e}")
            error = str(e) or "send failed"

        success = error is None
        entry = CommunicationLogEntry(
            business_id=business_id,
            customer_id=customer_id,
            deal_id=context.deal_id if context else None,
            order_id=context.order_id if context else None,
            invoice_id=context.invoice_id if context else None,
            rule_id=rule_id,
            channel=Channel.EMAIL if channel == Channel.EMAIL.value else Channel.SMS,
            recipient=recipient,
            message=message,
            ai_reason=reason,
            status=LogStatus.SENT if success else LogStatus.FAILED,
            error_message=error,
        )

        try:
            log_id = await self.store.insert_log(entry.to_row())
        except Exception as e:
            logger.error(f"Could not write communication_log for customer {customer_id}: {e}", exc_info=True)
            return DispatchResult(success=success, error=error or f"log write failed: {e}")

        if success:
            logger.info(f"Message sent to customer {customer_id} via {channel} (rule {rule_id}, log {log_id})")
        return DispatchResult(success=success, log_id=log_id, error=error)

    async def schedule(
        self,
        business_id: str,
        customer_id: str,
        rule_id: Optional[str],
        channel: str,
        recipient: str,
        message: str,
        delay_minutes: int,
        reason: Optional[str] = None,
        context: Optional[CommunicationContext] = None,
        now: Optional[datetime] = None,
    ) -> DispatchResult:
        """
        Store a message for sending after `delay_minutes`.

        The gate is checked again when the message becomes due.
        """
        now = now or datetime.now(timezone.utc)
        scheduled = ScheduledCommunication(
            business_id=business_id,
            customer_id=customer_id,
            rule_id=rule_id,
            channel=Channel.EMAIL if channel == Channel.EMAIL.value else Channel.SMS,
            recipient=recipient,
            message=message,
            reason=reason,
            deal_id=context.deal_id if context else None,
            order_id=context.order_id if context else None,
            invoice_id=context.invoice_id if context else None,
            due_at=now + timedelta(minutes=delay_minutes),
        )

        try:
            scheduled_id = await self.store.insert_scheduled(scheduled.to_row())
        except Exception as e:
            logger.error(f"Could not schedule message for customer {customer_id}: {e}", exc_info=True)
            return DispatchResult(success=False, error=f"schedule failed: {e}")

        logger.info(f"Scheduled message {scheduled_id} for customer {customer_id} in {delay_minutes} min")
        return DispatchResult(success=True, scheduled_id=scheduled_id)

    async def _mark_failed(self, scheduled_id: Optional[str], error: str) -> None:
        if not scheduled_id:
            return
        try:
            await self.store.update_scheduled(scheduled_id, {
                "status": ScheduledStatus.FAILED.value,
                "last_error": error,
            })
        except Exception as e:
            logger.error(f"Could not mark scheduled message {scheduled_id} failed: {e}")

    async def _process_scheduled(self, scheduled: ScheduledCommunication, now: datetime) -> ScheduledStatus:
        if self.gate is not None:
            gate = await self.gate.can_send(scheduled.business_id, scheduled.customer_id, now=now)
            if not gate.allowed:
                logger.info(f"Scheduled message {scheduled.id} skipped: {gate.reason}")
                await self.store.update_scheduled(scheduled.id, {
                    "status": ScheduledStatus.SKIPPED.value,
                    "last_error": gate.reason,
                })
                return ScheduledStatus.SKIPPED

        result = await self.send(
            business_id=scheduled.business_id,
            customer_id=scheduled.customer_id,
            rule_id=scheduled.rule_id,
            channel=scheduled.channel,
            recipient=scheduled.recipient,
            message=scheduled.message,
            reason=scheduled.reason,
            context=scheduled.to_context(),
        )

        status = ScheduledStatus.SENT if result.success else ScheduledStatus.FAILED
        await self.store.update_scheduled(scheduled.id, {
            "status": status.value,
            "log_id": result.log_id,
            "last_error": result.error,
        })
        return status

    async def process_due(self, now: Optional[datetime] = None, limit: int = 50) -> Dict[str, int]:
        """
        Send scheduled messages whose due time has passed.

        Each row is claimed (pending to processing), gated, then finished
        as sent, failed or skipped. Rows another poller claimed first are
        left alone and not counted.

        Returns:
            Counts per outcome
        """
        now = now or datetime.now(timezone.utc)
        stats = {"processed": 0, "sent": 0, "failed": 0, "skipped": 0}

        rows = await self.store.list_due_scheduled(now, limit)
        for row in rows:
            try:
                scheduled = ScheduledCommunication(**row)
                if not await self.store.claim_scheduled(scheduled.id, now):
                    logger.debug(f"Scheduled message {scheduled.id} already claimed")
                    continue
            except Exception as e:
                logger.error(f"Scheduled message {row.get('id')} could not be claimed: {e}")
                await self._mark_failed(row.get("id"), str(e))
                stats["processed"] += 1
                stats["failed"] += 1
                continue

            stats["processed"] += 1
            try:
                outcome = await self._process_scheduled(scheduled, now)
            except Exception as e:
                logger.error(f"Scheduled message {scheduled.id} could not be processed: {e}", exc_info=True)
                outcome = ScheduledStatus.FAILED
                await self._mark_failed(scheduled.id, str(e))
            stats[outcome.value] += 1

        if stats["processed"]:
            logger.info(f"Processed {stats['processed']} scheduled messages: {stats}")
        return stats
