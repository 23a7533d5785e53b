"""
Rule Matcher - Matches and applies pricing rules to a running price.

Used by the pricing calculator to layer conditional discounts, surcharges
and fees on top of the base price. Rules are evaluated in priority order
against the price as it stands after every earlier rule.
"""
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Optional

import structlog

from .models import (
    HUNDRED,
    ONE,
    ZERO,
    ActionType,
    ActionUnit,
    ConditionOperator,
    PriceAdjustment,
    PricingRule,
    RuleAction,
    RuleCondition,
    TraceStep,
)

logger = structlog.get_logger(__name__)

# Synthetic context field holding the cumulative price
PRICE_FIELD = "price"


def _as_number(value: Any) -> Optional[Decimal]:
    if isinstance(value, bool):
        return None
    if isinstance(value, Decimal):
        return value
    if isinstance(value, (int, float)):
        return Decimal(str(value))
    return None


def _values_equal(left: Any, right: Any) -> bool:
    left_num, right_num = _as_number(left), _as_number(right)
    if left_num is not None and right_num is not None:
        return left_num == right_num
    return left == right


def _compare(value: Any, target: Any, operator: ConditionOperator) -> bool:
    left, right = _as_number(value), _as_number(target)
    if left is None or right is None:
        return False
    if operator is ConditionOperator.GT:
        return left > right
    if operator is ConditionOperator.GTE:
        return left >= right
    if operator is ConditionOperator.LT:
        return left < right
    return left <= right


def evaluate_condition(condition: RuleCondition, value: Any) -> bool:
    """Test one condition against the context value of its field."""
    op = condition.operator
    target = condition.value

    if op is ConditionOperator.EQ:
        return _values_equal(value, target)
    if op is ConditionOperator.NEQ:
        return not _values_equal(value, target)
    if op in (ConditionOperator.GT, ConditionOperator.GTE, ConditionOperator.LT, ConditionOperator.LTE):
        return _compare(value, target, op)
    if op is ConditionOperator.IN:
        return isinstance(target, (list, tuple)) and any(_values_equal(value, t) for t in target)
    if op is ConditionOperator.NOT_IN:
        return isinstance(target, (list, tuple)) and not any(_values_equal(value, t) for t in target)
    if op is ConditionOperator.CONTAINS:
        if isinstance(value, str):
            return isinstance(target, str) and target in value
        if isinstance(value, (list, tuple)):
            return any(_values_equal(v, target) for v in value)
        return False
    if op is ConditionOperator.BETWEEN:
        number = _as_number(value)
        if number is None or not isinstance(target, (list, tuple)) or len(target) != 2:
            return False
        low, high = _as_number(target[0]), _as_number(target[1])
        if low is None or high is None:
            return False
        return low <= number <= high
    raise ValueError(f"Unhandled condition operator: {op}")


def calculate_adjustment(action: RuleAction, price: Decimal) -> Decimal:
    """Signed delta that ``action`` applies to ``price``."""
    percent = action.unit is ActionUnit.PERCENT

    if action.type is ActionType.APPLY_DISCOUNT:
        return -(price * action.value / HUNDRED) if percent else -action.value
    if action.type in (ActionType.APPLY_SURCHARGE, ActionType.ADD_FEE):
        return price * action.value / HUNDRED if percent else action.value
    if action.type is ActionType.SET_PRICE:
        return action.value - price
    if action.type is ActionType.APPLY_MULTIPLIER:
        return price * (action.value - ONE)
    if action.type is ActionType.SKIP:
        return ZERO
    raise ValueError(f"Unhandled action type: {action.type}")


@dataclass
class RuleOutcome:
    """Result of running a rule set over a base price."""
    final_price: Decimal
    adjustments: list[PriceAdjustment] = field(default_factory=list)
    applied_rules: list[str] = field(default_factory=list)
    trace: list[TraceStep] = field(default_factory=list)


class RuleMatcher:
    """
    Matches and applies pricing rules to a price.

    Rules are sorted by priority (higher first, creation order on ties) and
    each sees the cumulative price after the rules before it.
    """

    def active_rules(self, rules: list[PricingRule], at: datetime) -> list[PricingRule]:
        """Rules effective at ``at``, highest priority first."""
        effective = [r for r in rules if r.is_effective(at)]
        # sort is stable, so equal priorities keep their stored order
        effective.sort(key=lambda r: -r.priority)
        return effective

    def rule_matches(self, rule: PricingRule, context: dict, current_price: Decimal) -> bool:
        """All conditions hold; a rule without conditions always matches."""
        for condition in rule.conditions:
            if condition.field == PRICE_FIELD:
                value = current_price
            else:
                value = context.get(condition.field)
            if not evaluate_condition(condition, value):
                return False
        return True

    def apply_rule_to_price(
        self,
        rule: PricingRule,
        current_price: Decimal,
    ) -> tuple[Decimal, list[PriceAdjustment], list[str]]:
        """
        Apply every action of a matched rule.

        Returns (new_price, adjustments, trace_messages).
        """
        adjustments = []
        traces = []
        price = current_price

        for action in rule.actions:
            if action.type is ActionType.SKIP:
                traces.append(f"Rule {rule.name} skip action ignored")
                continue
            amount = calculate_adjustment(action, price)
            adjustments.append(PriceAdjustment(
                type=action.type.value,
                amount=amount,
                reason=action.reason or rule.name,
                rule_id=rule.id,
            ))
            traces.append(f"Rule {rule.name} {action.type.value}: {price} → {price + amount}")
            price = price + amount

        return price, adjustments, traces

    def apply_rules(
        self,
        rules: list[PricingRule],
        base_price: Decimal,
        context: Optional[dict],
        at: datetime,
    ) -> RuleOutcome:
        """Evaluate the effective rules in order against the running price."""
        context = context or {}
        outcome = RuleOutcome(final_price=base_price)

        for rule in self.active_rules(rules, at):
            if not self.rule_matches(rule, context, outcome.final_price):
                continue
            new_price, adjustments, traces = self.apply_rule_to_price(rule, outcome.final_price)
            if adjustments:
                outcome.adjustments.extend(adjustments)
                outcome.applied_rules.append(rule.id)
            for message in traces:
                outcome.trace.append(TraceStep("Rule Applied", message, str(new_price)))
            outcome.final_price = new_price

        logger.debug(
            "rules_applied",
            rule_count=len(rules),
            applied=len(outcome.applied_rules),
            base_price=str(base_price),
            price=str(outcome.final_price),
        )
        return outcome
