"""
Unit Tests for the Communication Engine
Decision pipeline, sweeps, business events and manual sends.
"""
import pytest
from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock

from smartcomm.services.communication_engine import (
    MissingRecipientError,
    RuleNotFoundError,
    build_communication_engine,
    select_event_rule,
    parse_rules,
)

from tests.conftest import BUSINESS_ID, CUSTOMER_ID, NOW, make_rule


KEY = (BUSINESS_ID, CUSTOMER_ID)

REVIEW_RULE = make_rule(
    "rule_review_request",
    name="Review request",
    trigger_config={"condition": "invoice_paid", "days_since": 2},
    message_template="Hej {customer_name}! Tack för att du anlitade {business_name}.",
)
QUOTE_RULE = make_rule(
    "rule_quote_followup",
    name="Quote follow-up",
    trigger_config={"condition": "quote_pending", "days_since": 3},
    message_template="Hej {customer_name}, har du tittat på offerten? {quote_link}",
)
BOOKING_CONFIRMATION = make_rule(
    "rule_booking_confirmation",
    "event",
    name="Booking confirmation",
    trigger_config={"event": "booking_created"},
    message_template="Hej {customer_name}! Din bokning {booking_date} kl {booking_time} är bekräftad.",
)
JOB_COMPLETED = make_rule(
    "rule_job_completed",
    "event",
    name="Job completed",
    trigger_config={"event": "project_completed", "delay_minutes": 120},
    message_template="Tack {customer_name}!",
)


def _paid_three_days_ago(store):
    store.rules = [REVIEW_RULE, QUOTE_RULE]
    store.paid_invoices[KEY] = {"invoice_id": "inv-9", "updated_at": (NOW - timedelta(days=3)).isoformat()}


def _llm(response: str) -> MagicMock:
    provider = MagicMock()
    provider.complete = AsyncMock(return_value=response)
    return provider


class TestHelpers:
    """Tests for rule parsing and selection."""

    def test_invalid_rule_rows_are_skipped(self):
        rules = parse_rules([REVIEW_RULE, {"id": "broken"}])
        assert [r.id for r in rules] == ["rule_review_request"]

    def test_tenant_event_rule_overrides_global(self):
        tenant_rule = {**BOOKING_CONFIRMATION, "id": "tenant_booking", "business_id": BUSINESS_ID}
        rules = parse_rules([BOOKING_CONFIRMATION, tenant_rule])

        assert select_event_rule(rules, BUSINESS_ID, "booking_created").id == "tenant_booking"
        assert select_event_rule(rules, "other-biz", "booking_created").id == "rule_booking_confirmation"
        assert select_event_rule(rules, BUSINESS_ID, "on_the_way") is None


class TestEvaluateCustomer:
    """Tests for CommunicationEngine.evaluate_customer."""

    @pytest.mark.asyncio
    async def test_paid_invoice_triggers_review_request(self, engine, store):
        _paid_three_days_ago(store)

        decision = await engine.evaluate_customer(BUSINESS_ID, CUSTOMER_ID, now=NOW)

        assert decision.should_send is True
        assert decision.rule_id == "rule_review_request"
        assert decision.confidence == 85
        assert store.logs == []

    @pytest.mark.asyncio
    async def test_gate_denial_wins(self, engine, store):
        _paid_three_days_ago(store)
        store.settings[BUSINESS_ID] = {"business_id": BUSINESS_ID, "auto_enabled": False}

        decision = await engine.evaluate_customer(BUSINESS_ID, CUSTOMER_ID, now=NOW)

        assert decision.should_send is False
        assert decision.reason == "automation disabled"
        assert decision.confidence == 100
        assert decision.source == "gate"

    @pytest.mark.asyncio
    async def test_customer_without_phone(self, engine, store):
        _paid_three_days_ago(store)
        store.customers[KEY]["phone_number"] = None

        decision = await engine.evaluate_customer(BUSINESS_ID, CUSTOMER_ID, now=NOW)

        assert decision.should_send is False
        assert decision.reason == "customer has no phone number"
        assert decision.confidence == 100

    @pytest.mark.asyncio
    async def test_nothing_to_do(self, engine, store):
        store.rules = [REVIEW_RULE]

        decision = await engine.evaluate_customer(BUSINESS_ID, CUSTOMER_ID, now=NOW)

        assert decision.should_send is False
        assert decision.reason == "no action needed"
        assert decision.confidence == 80

    @pytest.mark.asyncio
    async def test_model_consulted_for_quiet_customer(self, store, sms_provider, email_provider, app_settings):
        store.rules = [REVIEW_RULE, QUOTE_RULE]
        store.last_activity[KEY] = NOW - timedelta(days=10)
        llm = _llm('{"shouldSend": true, "ruleId": "rule_quote_followup", "reason": "Check in", "confidence": 65}')
        engine = build_communication_engine(
            store, llm_provider=llm, settings=app_settings,
            sms_provider=sms_provider, email_provider=email_provider,
        )

        decision = await engine.evaluate_customer(BUSINESS_ID, CUSTOMER_ID, now=NOW)

        assert decision.should_send is True
        assert decision.source == "model"
        assert decision.confidence == 65
        llm.complete.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_model_not_consulted_after_recent_contact(self, store, sms_provider, email_provider, app_settings):
        store.rules = [REVIEW_RULE]
        store.last_activity[KEY] = NOW - timedelta(days=2)
        llm = _llm("{}")
        engine = build_communication_engine(
            store, llm_provider=llm, settings=app_settings,
            sms_provider=sms_provider, email_provider=email_provider,
        )

        decision = await engine.evaluate_customer(BUSINESS_ID, CUSTOMER_ID, now=NOW)

        assert decision.reason == "no action needed"
        llm.complete.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_model_not_consulted_when_gate_denies(self, store, sms_provider, email_provider, app_settings):
        store.rules = [REVIEW_RULE]
        store.last_activity[KEY] = NOW - timedelta(days=10)
        store.settings[BUSINESS_ID] = {"business_id": BUSINESS_ID, "max_sms_per_customer_per_week": 0}
        llm = _llm("{}")
        engine = build_communication_engine(
            store, llm_provider=llm, settings=app_settings,
            sms_provider=sms_provider, email_provider=email_provider,
        )

        await engine.evaluate_customer(BUSINESS_ID, CUSTOMER_ID, now=NOW)

        llm.complete.assert_not_awaited()
    @pytest.mark.asyncio
    async def test_model_not_consulted_when_rule_matched(self, store, sms_provider, email_provider, app_settings):
        _paid_three_days_ago(store)
        store.last_activity[KEY] = NOW - timedelta(days=10)
        llm = _llm("{}")
        engine = build_communication_engine(
            store, llm_provider=llm, settings=app_settings,
            sms_provider=sms_provider, email_provider=email_provider,
        )

        decision = await engine.evaluate_customer(BUSINESS_ID, CUSTOMER_ID, now=NOW)

        assert decision.source == "rules"
        assert decision.rule_id == "rule_review_request"
        llm.complete.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_model_not_consulted_without_contact_history(self, store, sms_provider, email_provider, app_settings):
        store.rules = [REVIEW_RULE, QUOTE_RULE]
        llm = _llm('{"shouldSend": true, "ruleId": "rule_quote_followup", "reason": "x", "confidence": 70}')
        engine = build_communication_engine(
            store, llm_provider=llm, settings=app_settings,
            sms_provider=sms_provider, email_provider=email_provider,
        )

        decision = await engine.evaluate_customer(BUSINESS_ID, CUSTOMER_ID, now=NOW)

        assert decision.reason == "no action needed"
        llm.complete.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_email_rule_reaches_customer_without_phone(self, engine, store):
        _paid_three_days_ago(store)
        store.rules = [{**REVIEW_RULE, "channel": "email"}]
        store.customers[KEY].update(phone_number=None, email="anna@example.se")

        decision = await engine.evaluate_customer(BUSINESS_ID, CUSTOMER_ID, now=NOW)

        assert decision.should_send is True
        assert decision.rule_id == "rule_review_request"

    @pytest.mark.asyncio
    async def test_sms_rule_needs_phone(self, engine, store):
        _paid_three_days_ago(store)
        store.customers[KEY].update(phone_number=None, email="anna@example.se")

        decision = await engine.evaluate_customer(BUSINESS_ID, CUSTOMER_ID, now=NOW)

        assert decision.should_send is False
        assert decision.reason == "customer has no phone number"

    @pytest.mark.asyncio
    async def test_email_rule_needs_email(self, engine, store):
        _paid_three_days_ago(store)
        store.rules = [{**REVIEW_RULE, "channel": "email"}]

        decision = await engine.evaluate_customer(BUSINESS_ID, CUSTOMER_ID, now=NOW)

        assert decision.should_send is False
        assert decision.reason == "customer has no email address"


class TestRun:
    """Tests for tenant sweeps."""

    @pytest.mark.asyncio
    async def test_sweep_sends_review_request(self, engine, store, sms_provider):
        _paid_three_days_ago(store)

        result = await engine.run(BUSINESS_ID, now=NOW)

        assert result.evaluated == 1
        assert result.sent == 1
        assert result.skipped == 0
        assert result.decisions[0].outcome == "sent"
        assert sms_provider.sent[0]["message"] == "Hej Anna Svensson! Tack för att du anlitade Anderssons Bygg."
        log = store.logs[0]
        assert log["rule_id"] == "rule_review_request"
        assert log["invoice_id"] == "inv-9"
        assert log["ai_reason"].startswith("Invoice paid 3 days ago")

    @pytest.mark.asyncio
    async def test_second_sweep_does_not_repeat_review(self, engine, store, sms_provider):
        _paid_three_days_ago(store)

        await engine.run(BUSINESS_ID, now=NOW)
        again = await engine.run(BUSINESS_ID, now=NOW + timedelta(hours=1))

        assert again.sent == 0
        assert again.skipped == 1
        assert len(sms_provider.sent) == 1

    @pytest.mark.asyncio
    async def test_weekly_cap_of_one(self, engine, store, sms_provider):
        _paid_three_days_ago(store)
        store.settings[BUSINESS_ID] = {"business_id": BUSINESS_ID, "max_sms_per_customer_per_week": 1}
        store.pending_quotes[KEY] = {
            "quote_id": "q-1", "total": 9000, "updated_at": (NOW - timedelta(days=5)).isoformat(),
        }

        first = await engine.run(BUSINESS_ID, now=NOW)
        second = await engine.run(BUSINESS_ID, now=NOW + timedelta(hours=1))

        assert first.sent == 1
        assert second.sent == 0
        assert second.decisions[0].decision.reason == "max 1 messages per week already sent"
        assert len(store.logs) == 1

    @pytest.mark.asyncio
    async def test_failed_send_is_counted(self, engine, store, sms_provider):
        _paid_three_days_ago(store)
        sms_provider.succeed = False

        result = await engine.run(BUSINESS_ID, now=NOW)

        assert result.failed == 1
        assert result.sent == 0
        assert store.logs[0]["status"] == "failed"

    @pytest.mark.asyncio
    async def test_one_customer_error_does_not_stop_sweep(self, engine, store, monkeypatch):
        store.add_customer(BUSINESS_ID, "cust-2", name="Bo", phone_number="0709999999")
        original = engine._decide

        async def flaky(business_id, customer_id, now):
            if customer_id == CUSTOMER_ID:
                raise RuntimeError("boom")
            return await original(business_id, customer_id, now)

        monkeypatch.setattr(engine, "_decide", flaky)

        result = await engine.run(BUSINESS_ID, now=NOW)

        assert result.evaluated == 2
        assert result.skipped == 2
        assert result.decisions[0].detail == "boom"

    @pytest.mark.asyncio
    async def test_run_all_tenants_skips_disabled(self, engine, store):
        _paid_three_days_ago(store)
        store.businesses["biz-off"] = {"business_id": "biz-off"}
        store.settings["biz-off"] = {"business_id": "biz-off", "auto_enabled": False}

        summary = await engine.run_all_tenants(now=NOW)

        assert summary.businesses == 1
        assert summary.total_evaluated == 1
        assert summary.total_sent == 1
        assert summary.details[0].business_id == BUSINESS_ID

    @pytest.mark.asyncio
    async def test_run_all_tenants_reports_tenant_errors(self, engine, store):
        store.failing.add("list_active_customer_ids")

        summary = await engine.run_all_tenants(now=NOW)

        assert summary.businesses == 1
        assert summary.details[0].error is not None
    @pytest.mark.asyncio
    async def test_quote_followup_does_not_link_paid_invoice(self, engine, store):
        _paid_three_days_ago(store)
        store.pending_quotes[KEY] = {
            "quote_id": "q-1", "total": 9000, "updated_at": (NOW - timedelta(days=5)).isoformat(),
        }

        result = await engine.run(BUSINESS_ID, now=NOW)

        assert result.sent == 1
        log = store.logs[0]
        assert log["rule_id"] == "rule_quote_followup"
        assert log["invoice_id"] is None

    @pytest.mark.asyncio
    async def test_email_only_customer_gets_email(self, engine, store, sms_provider, email_provider):
        _paid_three_days_ago(store)
        store.rules = [{**REVIEW_RULE, "channel": "email"}]
        store.customers[KEY].update(phone_number=None, email="anna@example.se")

        result = await engine.run(BUSINESS_ID, now=NOW)

        assert result.sent == 1
        assert sms_provider.sent == []
        assert email_provider.send_email.await_args.kwargs["to_email"] == "anna@example.se"
        assert store.logs[0]["channel"] == "email"


class TestTriggerEvent:
    """Tests for business event messages."""

    @pytest.mark.asyncio
    async def test_booking_created_sends_confirmation(self, engine, store, sms_provider):
        store.rules = [BOOKING_CONFIRMATION]
        store.bookings["b-1"] = {"booking_id": "b-1", "booking_date": "2025-01-20", "booking_time": "09:00:00"}

        result = await engine.trigger_event_communication(
            BUSINESS_ID, "booking_created", CUSTOMER_ID, context={"booking_id": "b-1"}, now=NOW
        )

        assert result.sent is True
        assert result.log_id == "log-1"
        assert sms_provider.sent[0]["message"] == "Hej Anna Svensson! Din bokning mån 20 jan kl 09:00 är bekräftad."
        assert store.logs[0]["ai_reason"] == "Automatic: Booking confirmation"

    @pytest.mark.asyncio
    async def test_delayed_rule_is_scheduled(self, engine, store, sms_provider):
        store.rules = [JOB_COMPLETED]

        result = await engine.trigger_event_communication(
            BUSINESS_ID, "project_completed", CUSTOMER_ID, now=NOW
        )

        assert result.scheduled is True
        assert result.sent is False
        assert sms_provider.sent == []
        assert store.scheduled["sched-1"]["message"] == "Tack Anna Svensson!"

    @pytest.mark.asyncio
    async def test_disabled_toggle(self, engine, store, sms_provider):
        store.rules = [BOOKING_CONFIRMATION]
        store.settings[BUSINESS_ID] = {"business_id": BUSINESS_ID, "send_booking_confirmation": False}

        result = await engine.trigger_event_communication(BUSINESS_ID, "booking_created", CUSTOMER_ID, now=NOW)

        assert result.sent is False
        assert result.reason == "booking_created messages disabled"
        assert sms_provider.sent == []

    @pytest.mark.asyncio
    async def test_no_rule(self, engine, store):
        result = await engine.trigger_event_communication(BUSINESS_ID, "on_the_way", CUSTOMER_ID, now=NOW)
        assert result.reason == "no matching rule"

    @pytest.mark.asyncio
    async def test_quiet_hours_block_event(self, engine, store, sms_provider):
        store.rules = [BOOKING_CONFIRMATION]

        result = await engine.trigger_event_communication(
            BUSINESS_ID, "booking_created", CUSTOMER_ID, now=NOW + timedelta(hours=10)
        )

        assert result.sent is False
        assert "quiet hours" in result.reason
        assert store.logs == []

    @pytest.mark.asyncio
    async def test_never_raises(self, engine, store):
        store.rules = [BOOKING_CONFIRMATION]
        store.failing.add("get_settings")

        result = await engine.trigger_event_communication(BUSINESS_ID, "booking_created", CUSTOMER_ID, now=NOW)

        assert result.sent is False
        assert result.reason.startswith("error:")


class TestSendManual:
    """Tests for manual sends."""

    @pytest.mark.asyncio
    async def test_bypasses_gate(self, engine, store, sms_provider):
        store.rules = [QUOTE_RULE]
        store.settings[BUSINESS_ID] = {"business_id": BUSINESS_ID, "auto_enabled": False}

        result, message = await engine.send_manual(
            BUSINESS_ID, CUSTOMER_ID, "rule_quote_followup", {"quote_link": "https://x.se/q"}
        )

        assert result.success is True
        assert message == "Hej Anna Svensson, har du tittat på offerten? https://x.se/q"
        assert store.logs[0]["ai_reason"] == "Manually triggered: Quote follow-up"

    @pytest.mark.asyncio
    async def test_unknown_rule(self, engine, store):
        with pytest.raises(RuleNotFoundError):
            await engine.send_manual(BUSINESS_ID, CUSTOMER_ID, "missing")

    @pytest.mark.asyncio
    async def test_missing_email(self, engine, store):
        store.rules = [{**QUOTE_RULE, "channel": "email"}]

        with pytest.raises(MissingRecipientError, match="email"):
            await engine.send_manual(BUSINESS_ID, CUSTOMER_ID, "rule_quote_followup")
