"""
Communication Engine
Decides, per customer, whether an automatic message goes out, which one
and when, and carries the decision through to dispatch.

Pipeline per customer:
    gate -> snapshot -> rules -> [model fallback] -> template -> dispatch

Entry points:
- evaluate_customer(): single decision, no side effects
- run(): sweep one tenant's active customers
- run_all_tenants(): sweep every tenant that has not disabled automation
- trigger_event_communication(): react to a business event (never raises)
- send_manual(): send a chosen rule now, bypassing the gate
"""
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Tuple

from pydantic import ValidationError
from supabase import Client

from smartcomm.core.config import ConfigManager, Settings, get_settings
from smartcomm.domain.interfaces.communication_store import CommunicationStore
from smartcomm.domain.interfaces.llm_provider import LLMProvider
from smartcomm.domain.models.communication import (
    Channel,
    CommunicationContext,
    CommunicationRule,
    CommunicationSettings,
    CustomerDecision,
    CustomerState,
    Decision,
    DecisionSource,
    DispatchResult,
    EventTriggerResult,
    RunResult,
    SweepSummary,
    TenantRunSummary,
    TriggerType,
)
from smartcomm.domain.services.communication_gate import CommunicationGate
from smartcomm.domain.services.communication_settings import CommunicationSettingsService
from smartcomm.domain.services.condition_matchers import (
    BookingTomorrowMatcher,
    InvoiceOverdueMatcher,
    InvoicePaidMatcher,
    QuotePendingMatcher,
)
from smartcomm.domain.services.fallback_evaluator import FallbackEvaluator
from smartcomm.domain.services.message_template import MessageTemplateResolver
from smartcomm.domain.services.rule_evaluator import RuleEvaluator
from smartcomm.domain.services.state_aggregator import StateAggregator, review_rule_ids
from smartcomm.infrastructure.connectors.email import SMTPEmailProvider
from smartcomm.infrastructure.connectors.sms import get_sms_provider
from smartcomm.infrastructure.storage.supabase_store import SupabaseCommunicationStore
from smartcomm.services.dispatcher import CommunicationDispatcher

logger = logging.getLogger(__name__)

NO_PHONE_REASON = "customer has no phone number"
NO_EMAIL_REASON = "customer has no email address"
NO_ACTION_REASON = "no action needed"


class CommunicationError(Exception):
    """Raised by operations that report problems to their caller (manual send)."""
    def __init__(self, message: str):
        self.message = message
        super().__init__(self.message)


class RuleNotFoundError(CommunicationError):
    pass


class MissingRecipientError(CommunicationError):
    pass


def parse_rules(rows: List[Dict[str, Any]]) -> List[CommunicationRule]:
    """Build rule models, skipping rows that do not validate."""
    rules = []
    for row in rows:
        try:
            rules.append(CommunicationRule(**row))
        except ValidationError as e:
            logger.warning(f"Ignoring invalid communication rule {row.get('id')}: {e.error_count()} errors")
    return rules


def select_event_rule(rules: List[CommunicationRule], business_id: str, event: str) -> Optional[CommunicationRule]:
    """Enabled event rule for `event`; a tenant rule overrides the global one."""
    candidates = [
        r for r in rules
        if r.trigger_type == TriggerType.EVENT and r.is_enabled and r.trigger_config.event == event
    ]
    for rule in candidates:
        if rule.business_id == business_id:
            return rule
    return candidates[0] if candidates else None


def context_from_state(state: CustomerState, condition: Optional[str] = None) -> CommunicationContext:
    """
    Entity ids a rule-driven message refers to.

    Built-in conditions link only the entity they matched on; other
    conditions get every id in the snapshot.
    """
    quote_id = state.pending_quote.id if state.pending_quote else None
    booking_id = state.upcoming_booking.id if state.upcoming_booking else None
    overdue_id = state.overdue_invoice.id if state.overdue_invoice else None
    paid_id = state.paid_invoice_no_review.id if state.paid_invoice_no_review else None

    ids: Dict[str, Optional[str]]
    if condition == InvoiceOverdueMatcher.condition:
        ids = {"invoice_id": overdue_id}
    elif condition == InvoicePaidMatcher.condition:
        ids = {"invoice_id": paid_id}
    elif condition == QuotePendingMatcher.condition:
        ids = {"quote_id": quote_id}
    elif condition == BookingTomorrowMatcher.condition:
        ids = {"booking_id": booking_id}
    else:
        ids = {"quote_id": quote_id, "booking_id": booking_id, "invoice_id": overdue_id or paid_id}

    return CommunicationContext(business_id=state.business_id, customer_id=state.customer_id, **ids)


def unreachable_reason(state: CustomerState, rule: CommunicationRule) -> Optional[str]:
    """Why the rule's channel cannot reach the customer, or None."""
    if rule.channel == Channel.EMAIL:
        return None if state.customer_email else NO_EMAIL_REASON
    return None if state.customer_phone else NO_PHONE_REASON


class CommunicationEngine:
    """
    Automated outreach decision engine.

    Customers are evaluated independently and sequentially. The gate is
    consulted before any decision work (avoiding needless model calls)
    and again by the dispatcher right before a sweep send.
    """

    def __init__(
        self,
        store: CommunicationStore,
        settings_service: CommunicationSettingsService,
        gate: CommunicationGate,
        aggregator: StateAggregator,
        rule_evaluator: RuleEvaluator,
        fallback_evaluator: FallbackEvaluator,
        template_resolver: MessageTemplateResolver,
        dispatcher: CommunicationDispatcher,
        page_size: int = 100,
        active_window_days: int = 30,
        tenant_limit: int = 100,
    ):
        self.store = store
        self.settings_service = settings_service
        self.gate = gate
        self.aggregator = aggregator
        self.rule_evaluator = rule_evaluator
        self.fallback_evaluator = fallback_evaluator
        self.template_resolver = template_resolver
        self.dispatcher = dispatcher
        self.page_size = page_size
        self.active_window_days = active_window_days
        self.tenant_limit = tenant_limit

    async def _load_rules(self, business_id: str, trigger_type: Optional[TriggerType] = None) -> List[CommunicationRule]:
        try:
            rows = await self.store.list_rules(business_id, trigger_type.value if trigger_type else None)
        except Exception as e:
            logger.error(f"Could not load communication rules for {business_id}: {e}")
            return []
        return parse_rules(rows)

    # -------------------------------------------------------------------------
    # Decision
    # -------------------------------------------------------------------------

    async def _decide(
        self,
        business_id: str,
        customer_id: str,
        now: datetime,
    ) -> Tuple[Decision, Optional[CustomerState], List[CommunicationRule]]:
        try:
            settings = await self.settings_service.get(business_id)
        except Exception as e:
            logger.error(f"Could not load settings for {business_id}: {e}")
            return Decision.negative("settings unavailable", 100, DecisionSource.GATE), None, []

        gate = await self.gate.can_send(business_id, customer_id, now=now, settings=settings)
        if not gate.allowed:
            return Decision.negative(gate.reason or "gate denied", 100, DecisionSource.GATE), None, []

        rules = await self._load_rules(business_id)
        state = await self.aggregator.aggregate(
            business_id,
            customer_id,
            now=now,
            review_rules=review_rule_ids(rules),
            timezone_name=settings.timezone,
        )

        if not state.customer_phone and not state.customer_email:
            return Decision.negative(NO_PHONE_REASON, 100), state, rules

        condition_rules = [r for r in rules if r.trigger_type == TriggerType.CONDITION and r.is_enabled]

        decision = self.rule_evaluator.evaluate(state, condition_rules, settings, now=now)
        if decision is None and self.fallback_evaluator.should_consult(state):
            decision = await self.fallback_evaluator.evaluate_with_model(state, condition_rules, settings)
        if decision is None:
            return Decision.negative(NO_ACTION_REASON, 80), state, rules

        if decision.should_send and decision.rule_id:
            rule = next((r for r in rules if r.id == decision.rule_id), None)
            reason = unreachable_reason(state, rule) if rule else None
            if reason:
                return Decision.negative(reason, 100), state, rules

        return decision, state, rules

    async def evaluate_customer(
        self,
        business_id: str,
        customer_id: str,
        now: Optional[datetime] = None,
    ) -> Decision:
        """
        Decide whether to contact one customer right now.

        Read-only: nothing is sent or logged.
        """
        now = now or datetime.now(timezone.utc)
        decision, _, _ = await self._decide(business_id, customer_id, now)
        logger.debug(f"Decision for customer {customer_id}: send={decision.should_send} ({decision.reason})")
        return decision

    # -------------------------------------------------------------------------
    # Dispatch helpers
    # -------------------------------------------------------------------------

    async def _recipient(self, business_id: str, customer_id: str, channel: str) -> Optional[str]:
        customer = await self.store.get_customer(business_id, customer_id) or {}
        if channel == Channel.EMAIL.value:
            return customer.get("email") or None
        return customer.get("phone_number") or None

    async def _dispatch_rule(
        self,
        rule: CommunicationRule,
        recipient: str,
        reason: str,
        context: CommunicationContext,
        enforce_gate: bool,
        now: datetime,
        delay_minutes: int = 0,
    ) -> DispatchResult:
        message = await self.template_resolver.render(rule.message_template, context)
        channel = rule.channel.value

        if delay_minutes > 0:
            return await self.dispatcher.schedule(
                business_id=context.business_id,
                customer_id=context.customer_id,
                rule_id=rule.id,
                channel=channel,
                recipient=recipient,
                message=message,
                delay_minutes=delay_minutes,
                reason=reason,
                context=context,
                now=now,
            )

        return await self.dispatcher.send(
            business_id=context.business_id,
            customer_id=context.customer_id,
            rule_id=rule.id,
            channel=channel,
            recipient=recipient,
            message=message,
            reason=reason,
            context=context,
            enforce_gate=enforce_gate,
            now=now,
        )

    # -------------------------------------------------------------------------
    # Sweeps
    # -------------------------------------------------------------------------

    async def _run_customer(self, business_id: str, customer_id: str, now: datetime) -> CustomerDecision:
        decision, state, rules = await self._decide(business_id, customer_id, now)

        if not decision.should_send or not decision.rule_id:
            return CustomerDecision(customer_id=customer_id, decision=decision)

        rule = next((r for r in rules if r.id == decision.rule_id), None)
        if rule is None:
            return CustomerDecision(customer_id=customer_id, decision=decision, detail="rule not found")

        recipient = await self._recipient(business_id, customer_id, rule.channel.value)
        if not recipient:
            return CustomerDecision(customer_id=customer_id, decision=decision, detail="no recipient")

        result = await self._dispatch_rule(
            rule,
            recipient,
            reason=decision.reason,
            context=context_from_state(state, rule.trigger_config.condition),
            enforce_gate=True,
            now=now,
        )

        if result.success:
            return CustomerDecision(customer_id=customer_id, decision=decision, outcome="sent")
        if result.log_id is None:
            # Nothing was attempted (gate closed since the decision)
            return CustomerDecision(customer_id=customer_id, decision=decision, detail=result.error)
        return CustomerDecision(customer_id=customer_id, decision=decision, outcome="failed", detail=result.error)

    async def run(self, business_id: str, now: Optional[datetime] = None) -> RunResult:
        """
        Sweep a tenant's recently active customers.

        Args:
            business_id: Tenant
            now: Sweep time (default: now)

        Returns:
            RunResult with counts and every per-customer decision
        """
        now = now or datetime.now(timezone.utc)
        since = now - timedelta(days=self.active_window_days)

        customer_ids = await self.store.list_active_customer_ids(business_id, since, self.page_size)
        result = RunResult(evaluated=len(customer_ids))

        for customer_id in customer_ids:
            try:
                entry = await self._run_customer(business_id, customer_id, now)
            except Exception as e:
                logger.error(f"Evaluation failed for customer {customer_id}: {e}", exc_info=True)
                entry = CustomerDecision(
                    customer_id=customer_id,
                    decision=Decision.negative("evaluation error", 0),
                    detail=str(e),
                )

            result.decisions.append(entry)
            if entry.outcome == "sent":
                result.sent += 1
            elif entry.outcome == "failed":
                result.failed += 1
            else:
                result.skipped += 1

        logger.info(
            f"Communication run for {business_id}: evaluated={result.evaluated} "
            f"sent={result.sent} skipped={result.skipped} failed={result.failed}"
        )
        return result

    async def run_all_tenants(self, now: Optional[datetime] = None) -> SweepSummary:
        """
        Sweep every tenant that has not explicitly disabled automation.

        Tenants without a settings row run with defaults (enabled).
        A failing tenant is logged and reported, never fatal.
        """
        business_ids = await self.store.list_business_ids(self.tenant_limit)
        disabled = set(await self.store.list_disabled_business_ids())
        summary = SweepSummary()

        for business_id in business_ids:
            if business_id in disabled:
                continue
            try:
                result = await self.run(business_id, now=now)
                line = TenantRunSummary(business_id=business_id, evaluated=result.evaluated, sent=result.sent)
            except Exception as e:
                logger.error(f"Communication check failed for {business_id}: {e}", exc_info=True)
                line = TenantRunSummary(business_id=business_id, error=str(e))

            summary.details.append(line)
            summary.total_evaluated += line.evaluated
            summary.total_sent += line.sent

        summary.businesses = len(summary.details)
        return summary

    # -------------------------------------------------------------------------
    # Events and manual sends
    # -------------------------------------------------------------------------

    async def _trigger_event(
        self,
        business_id: str,
        event: str,
        customer_id: str,
        context: CommunicationContext,
        now: datetime,
    ) -> EventTriggerResult:
        settings: CommunicationSettings = await self.settings_service.get(business_id)
        if not settings.auto_enabled:
            return EventTriggerResult(event=event, reason="automation disabled")
        if not settings.is_event_enabled(event):
            return EventTriggerResult(event=event, reason=f"{event} messages disabled")

        rule = select_event_rule(await self._load_rules(business_id, TriggerType.EVENT), business_id, event)
        if rule is None:
            return EventTriggerResult(event=event, reason="no matching rule")

        recipient = await self._recipient(business_id, customer_id, rule.channel.value)
        if not recipient:
            return EventTriggerResult(event=event, reason="no recipient")

        gate = await self.gate.can_send(business_id, customer_id, now=now, settings=settings)
        if not gate.allowed:
            logger.info(f"Communication skipped for {customer_id}: {gate.reason}")
            return EventTriggerResult(event=event, reason=gate.reason)

        result = await self._dispatch_rule(
            rule,
            recipient,
            reason=f"Automatic: {rule.name}",
            context=context,
            enforce_gate=False,
            now=now,
            delay_minutes=rule.delay_minutes,
        )

        if result.scheduled_id:
            return EventTriggerResult(event=event, scheduled=True, reason=f"scheduled in {rule.delay_minutes} min")
        return EventTriggerResult(event=event, sent=result.success, reason=result.error, log_id=result.log_id)

    async def trigger_event_communication(
        self,
        business_id: str,
        event: str,
        customer_id: str,
        context: Optional[Dict[str, Any]] = None,
        now: Optional[datetime] = None,
    ) -> EventTriggerResult:
        """
        Send (or schedule) the message for a business event.

        Best effort: every failure is logged and reported in the result,
        never raised to the code that emitted the event.
        """
        now = now or datetime.now(timezone.utc)
        try:
            full_context = CommunicationContext(
                **{**(context or {}), "business_id": business_id, "customer_id": customer_id}
            )
            result = await self._trigger_event(business_id, event, customer_id, full_context, now)
        except Exception as e:
            logger.error(f"Event communication '{event}' failed for {customer_id}: {e}", exc_info=True)
            return EventTriggerResult(event=event, reason=f"error: {e}")

        logger.info(f"Event '{event}' for customer {customer_id}: sent={result.sent} scheduled={result.scheduled} ({result.reason})")
        return result

    async def send_manual(
        self,
        business_id: str,
        customer_id: str,
        rule_id: str,
        extra_variables: Optional[Dict[str, str]] = None,
    ) -> Tuple[DispatchResult, str]:
        """
        Send a rule's message immediately, without gate checks.

        Returns:
            (DispatchResult, rendered message)

        Raises:
            RuleNotFoundError: If the rule is not visible to the tenant
            MissingRecipientError: If the customer has no phone/email for the channel
        """
        row = await self.store.get_rule(business_id, rule_id)
        if not row:
            raise RuleNotFoundError(f"Rule {rule_id} not found")
        rule = CommunicationRule(**row)

        recipient = await self._recipient(business_id, customer_id, rule.channel.value)
        if not recipient:
            raise MissingRecipientError("Customer has no phone number" if rule.channel == Channel.SMS else "Customer has no email")

        context = CommunicationContext(
            business_id=business_id,
            customer_id=customer_id,
            extra_variables=extra_variables or {},
        )
        message = await self.template_resolver.render(rule.message_template, context)
        result = await self.dispatcher.send(
            business_id=business_id,
            customer_id=customer_id,
            rule_id=rule.id,
            channel=rule.channel.value,
            recipient=recipient,
            message=message,
            reason=f"Manually triggered: {rule.name}",
            context=context,
        )
        return result, message


def build_communication_engine(
    store: CommunicationStore,
    llm_provider: Optional[LLMProvider] = None,
    settings: Optional[Settings] = None,
    config: Optional[ConfigManager] = None,
    sms_provider=None,
    email_provider: Optional[SMTPEmailProvider] = None,
) -> CommunicationEngine:
    """Wire the engine's collaborators around a store."""
    settings = settings or get_settings()
    config = config or ConfigManager()

    settings_service = CommunicationSettingsService(store, default_timezone=settings.default_timezone)
    gate = CommunicationGate(store, settings_service)
    dispatcher = CommunicationDispatcher(
        store,
        sms_provider=sms_provider or get_sms_provider(settings.sms_provider, config),
        email_provider=email_provider or SMTPEmailProvider(),
        gate=gate,
    )

    return CommunicationEngine(
        store=store,
        settings_service=settings_service,
        gate=gate,
        aggregator=StateAggregator(store),
        rule_evaluator=RuleEvaluator(),
        fallback_evaluator=FallbackEvaluator(
            llm_provider,
            timeout_seconds=settings.llm_timeout_seconds,
            contact_threshold_days=settings.fallback_contact_threshold_days,
        ),
        template_resolver=MessageTemplateResolver(store, settings.app_url, config),
        dispatcher=dispatcher,
        page_size=settings.sweep_page_size,
        active_window_days=settings.active_customer_window_days,
        tenant_limit=settings.tenant_sweep_limit,
    )


def get_communication_engine(
    supabase: Client,
    llm_provider: Optional[LLMProvider] = None,
) -> CommunicationEngine:
    """Engine backed by Supabase."""
    return build_communication_engine(SupabaseCommunicationStore(supabase), llm_provider=llm_provider)
