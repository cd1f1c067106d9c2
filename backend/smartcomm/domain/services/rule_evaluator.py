"""
Rule Evaluator
Deterministic first tier of the decision engine.
"""
import logging
from datetime import datetime, timezone
from typing import List, Optional

from smartcomm.domain.models.communication import (
    CommunicationRule,
    CommunicationSettings,
    CustomerState,
    Decision,
    DecisionSource,
    TriggerType,
)
from smartcomm.domain.services.condition_matchers import CONDITION_MATCHERS, ConditionMatcher

logger = logging.getLogger(__name__)


class RuleEvaluator:
    """
    Matches a customer snapshot against condition rules.

    Matchers run in a fixed order and the first match wins. When nothing
    matches the result is None (inconclusive), which is what allows the
    model fallback to run; it is never a negative decision.
    """

    def __init__(self, matchers: Optional[List[ConditionMatcher]] = None):
        self._matchers = matchers if matchers is not None else CONDITION_MATCHERS

    def evaluate(
        self,
        state: CustomerState,
        rules: List[CommunicationRule],
        settings: CommunicationSettings,
        now: Optional[datetime] = None,
    ) -> Optional[Decision]:
        """
        Evaluate the condition rules for one customer.

        Args:
            state: Customer snapshot
            rules: Enabled rules in sort order (non-condition rules are ignored)
            settings: Tenant settings (feature toggles, timezone)
            now: Evaluation time (default: now)

        Returns:
            A positive Decision, or None if no rule applies
        """
        now = now or datetime.now(timezone.utc)
        condition_rules = [
            r for r in rules
            if r.trigger_type == TriggerType.CONDITION and r.is_enabled
        ]

        for matcher in self._matchers:
            if not matcher.is_enabled(settings):
                continue

            rule = matcher.find_rule(condition_rules)
            if rule is None:
                continue

            reason = matcher.match(state, rule, settings, now)
            if reason is None:
                continue

            logger.debug(f"Rule {rule.id} ({matcher.condition}) matched customer {state.customer_id}")
            return Decision(
                should_send=True,
                rule_id=rule.id,
                reason=reason,
                confidence=matcher.confidence,
                source=DecisionSource.RULES,
            )

        return None
