"""
Fallback Decision Evaluator
Asks a language model whether to contact a customer that no
deterministic rule covers.

The model's answer is soft guidance: the gate has already been
applied, and a rule id outside the supplied catalog is rejected.
"""
import asyncio
import json
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from smartcomm.domain.interfaces.llm_provider import LLMProvider
from smartcomm.domain.models.communication import (
    CommunicationRule,
    CommunicationSettings,
    CustomerState,
    Decision,
    DecisionSource,
    Tone,
)
from smartcomm.domain.models.conversation import Message, MessageRole

logger = logging.getLogger(__name__)


DEFAULT_CONTACT_THRESHOLD_DAYS = 5
DEFAULT_TIMEOUT_SECONDS = 15.0
DEFAULT_MODEL_CONFIDENCE = 50

MODEL_FAILED_REASON = "model evaluation failed"
UNPARSEABLE_REASON = "could not parse model response"
UNKNOWN_RULE_REASON = "model chose unknown rule"

SYSTEM_PROMPT = (
    "You help a Swedish tradesperson decide when to message their customers. "
    "You answer with a single JSON object and nothing else."
)

TONE_GUIDANCE = {
    Tone.FORMAL.value: "formal and businesslike",
    Tone.FRIENDLY.value: "friendly and relaxed",
    Tone.PERSONAL.value: "personal and warm",
}


class LLMTimeoutError(Exception):
    """Raised when the model does not answer within the timeout."""
    def __init__(self, timeout_seconds: float):
        self.timeout_seconds = timeout_seconds
        self.message = f"LLM response timed out after {timeout_seconds}s"
        super().__init__(self.message)


class EvaluationError(Exception):
    """A model evaluation that produced no usable decision."""
    def __init__(self, message: str, reason: str = MODEL_FAILED_REASON):
        self.message = message
        self.reason = reason
        super().__init__(self.message)


@dataclass
class ModelEvaluation:
    """Either a decision or the error that prevented one."""
    decision: Optional[Decision] = None
    error: Optional[EvaluationError] = None
    raw_response: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.decision is not None

    def to_decision(self) -> Decision:
        if self.decision is not None:
            return self.decision
        reason = self.error.reason if self.error else MODEL_FAILED_REASON
        return Decision.negative(reason, confidence=0, source=DecisionSource.MODEL)


def extract_json_object(text: str) -> Dict[str, Any]:
    """
    Parse the first JSON object embedded in `text`.

    Raises:
        EvaluationError: If no object can be decoded
    """
    start = text.find("{")
    if start < 0:
        raise EvaluationError("No JSON object in model response", UNPARSEABLE_REASON)
    try:
        parsed, _ = json.JSONDecoder().raw_decode(text[start:])
    except json.JSONDecodeError as e:
        raise EvaluationError(f"Invalid JSON in model response: {e}", UNPARSEABLE_REASON)
    if not isinstance(parsed, dict):
        raise EvaluationError("Model response is not a JSON object", UNPARSEABLE_REASON)
    return parsed


def _clamp_confidence(value: Any) -> int:
    try:
        confidence = int(float(value))
    except (TypeError, ValueError):
        return DEFAULT_MODEL_CONFIDENCE
    if confidence == 0:
        return DEFAULT_MODEL_CONFIDENCE
    return max(0, min(100, confidence))


class FallbackEvaluator:
    """
    Model-backed second tier of the decision engine.

    Only consulted when the rule evaluator was inconclusive and the
    customer has not been contacted for a while.
    """

    def __init__(
        self,
        llm_provider: Optional[LLMProvider],
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        contact_threshold_days: int = DEFAULT_CONTACT_THRESHOLD_DAYS,
    ):
        self.llm_provider = llm_provider
        self.timeout_seconds = timeout_seconds
        self.contact_threshold_days = contact_threshold_days

    @property
    def is_configured(self) -> bool:
        return self.llm_provider is not None

    def should_consult(self, state: CustomerState) -> bool:
        """Whether the model may be asked about this customer."""
        if not self.is_configured:
            return False
        if state.days_since_contact is None:
            return False
        return state.days_since_contact > self.contact_threshold_days

    def build_prompt(
        self,
        state: CustomerState,
        rules: List[CommunicationRule],
        settings: CommunicationSettings,
    ) -> str:
        """Describe the customer's situation and the available rules."""
        cap = settings.max_messages_per_customer_per_week

        contact = (
            f"{state.days_since_contact} days ago"
            if state.days_since_contact is not None else "unknown"
        )
        last_message = (
            f"{state.days_since_message} days ago"
            if state.days_since_message is not None else "never"
        )
        quote = f"yes ({state.pending_quote.amount:g} kr)" if state.pending_quote else "no"
        booking = (
            f"{state.upcoming_booking.booking_date.isoformat()} at {state.upcoming_booking.booking_time}"
            if state.upcoming_booking else "no"
        )
        invoice = (
            f"yes (#{state.overdue_invoice.number}, {state.overdue_invoice.amount:g} kr)"
            if state.overdue_invoice else "no"
        )
        catalog = "\n".join(
            f"- {rule.id}: {rule.name} ({rule.description or ''})" for rule in rules
        ) or "- (none)"
        tone = settings.tone.value if isinstance(settings.tone, Tone) else str(settings.tone)

        return f"""Customer situation:
- Name: {state.customer_name}
- Pipeline stage: {state.deal_stage or 'unknown'}
- Last contact: {contact}
- Last message from us: {last_message}
- Messages this week: {state.message_count_this_week}
- Max messages per week: {cap}

Status:
- Pending quote: {quote}
- Upcoming booking: {booking}
- Overdue invoice: {invoice}

Latest call note: "{state.recent_call_summary or 'none'}"

Available rules:
{catalog}

The business prefers a {TONE_GUIDANCE.get(tone, tone)} tone.

Decide whether we should send a message now.
Reply ONLY with JSON:
{{
  "shouldSend": true/false,
  "ruleId": "rule id if shouldSend is true, otherwise null",
  "reason": "short explanation",
  "confidence": 0-100
}}

Keep in mind:
- Do not message too often (max {cap} per week)
- Do not message if we were in contact recently
- Prioritize important matters (overdue invoices, upcoming bookings)
- Do not be pushy"""

    def parse_model_response(self, text: str, rules: List[CommunicationRule]) -> ModelEvaluation:
        """Turn raw model output into a ModelEvaluation."""
        try:
            parsed = extract_json_object(text)
        except EvaluationError as e:
            logger.warning(f"Unparseable model response: {e.message}")
            return ModelEvaluation(error=e, raw_response=text)

        should_send = parsed.get("shouldSend") is True
        rule_id = parsed.get("ruleId") or None
        reason = str(parsed.get("reason") or "model decision")
        confidence = _clamp_confidence(parsed.get("confidence"))

        if rule_id is not None:
            rule_id = str(rule_id)
            if rule_id not in {rule.id for rule in rules}:
                logger.warning(f"Model chose rule {rule_id} which is not in the catalog")
                return ModelEvaluation(
                    decision=Decision.negative(UNKNOWN_RULE_REASON, confidence=0, source=DecisionSource.MODEL),
                    raw_response=text,
                )

        return ModelEvaluation(
            decision=Decision(
                should_send=should_send,
                rule_id=rule_id,
                reason=reason,
                confidence=confidence,
                source=DecisionSource.MODEL,
            ),
            raw_response=text,
        )

    async def request(self, prompt: str) -> str:
        """
        Single-turn completion, bounded by the timeout.

        Raises:
            LLMTimeoutError: If the model does not answer in time
        """
        messages = [Message(role=MessageRole.USER, content=prompt)]
        try:
            return await asyncio.wait_for(
                self.llm_provider.complete(messages, system_prompt=SYSTEM_PROMPT),
                timeout=self.timeout_seconds,
            )
        except asyncio.TimeoutError:
            raise LLMTimeoutError(self.timeout_seconds)

    async def evaluate(
        self,
        state: CustomerState,
        rules: List[CommunicationRule],
        settings: CommunicationSettings,
    ) -> ModelEvaluation:
        """Ask the model; every failure is returned, never raised."""
        if not self.is_configured:
            return ModelEvaluation(error=EvaluationError("No LLM provider configured"))

        prompt = self.build_prompt(state, rules, settings)
        try:
            text = await self.request(prompt)
        except LLMTimeoutError as e:
            logger.warning(f"Fallback evaluation for {state.customer_id}: {e.message}")
            return ModelEvaluation(error=EvaluationError(e.message))
        except Exception as e:
            logger.error(f"Fallback evaluation for {state.customer_id} failed: {e}", exc_info=True)
            return ModelEvaluation(error=EvaluationError(str(e)))

        return self.parse_model_response(text, rules)

    async def evaluate_with_model(
        self,
        state: CustomerState,
        rules: List[CommunicationRule],
        settings: CommunicationSettings,
    ) -> Decision:
        """
        Decide with the model.

        Returns:
            The model's decision, or a negative decision with
            confidence 0 when the model failed or answered garbage
        """
        evaluation = await self.evaluate(state, rules, settings)
        return evaluation.to_decision()
