# Overview: Service-layer operations for policy evaluation; decides whether an override needs approval.

"""
Policy Evaluator

Given an override type, the value being requested and the point-of-sale
context, find the single threshold rule that governs it and decide whether
approval is needed and at which level.

CANDIDATES: active rules of the same type that apply to the channel, whose
category is unset or equals the context category, whose validity window
contains the evaluation time, and whose time-of-day / day-of-week scope (in
store-local time) contains it.

RANKING (first wins):
1. category-specific rules over generic ones
2. higher priority
3. stricter default approval level
4. most recently created (highest id)

No matching rule is not an error: the decision simply says no approval is
required.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime
from decimal import Decimal, ROUND_HALF_UP

from ..enums import ApprovalLevel, Channel, Comparison, ExceptionScope, OverrideType
from ..time_utils import sunday_based_weekday, time_in_window, to_store_local, utcnow
from . import tier_service
from .rule_cache import CachedException, CachedRule, RuleCache


HUNDRED = Decimal("100")
PERCENT_QUANTUM = Decimal("0.01")

# Stricter price checks first so ties keep the most specific reason
PRICE_TYPES = (
    OverrideType.PRICE_BELOW_COST,
    OverrideType.MARGIN_BELOW,
    OverrideType.DISCOUNT_PERCENT,
    OverrideType.DISCOUNT_AMOUNT,
)

# Exception precedence when several scopes match the same context
EXCEPTION_PRECEDENCE = (
    ExceptionScope.PRODUCT,
    ExceptionScope.CUSTOMER,
    ExceptionScope.USER,
    ExceptionScope.CATEGORY,
)


@dataclass(frozen=True)
class EvaluationContext:
    channel: Channel = Channel.POS
    category: str | None = None
    product_id: int | None = None
    customer_id: int | None = None
    user_id: int | None = None
    at: datetime | None = None


@dataclass(frozen=True)
class PolicyDecision:
    override_type: OverrideType
    value: Decimal | None
    requires_approval: bool
    rule: CachedRule | None = None
    required_level: ApprovalLevel = ApprovalLevel.SHIFT_LEAD
    message: str = ""
    exception_applied: bool = False
    exception: CachedException | None = None


@dataclass(frozen=True)
class PriceEvaluation:
    """Combined result of every price-type check for one price change."""
    decision: PolicyDecision
    decisions: tuple[PolicyDecision, ...] = field(default=())
    discount_percent: Decimal | None = None
    discount_amount: Decimal | None = None
    margin_value: Decimal | None = None
    margin_percent: Decimal | None = None


def _pct(numerator: Decimal, denominator: Decimal) -> Decimal:
    return (numerator / denominator * HUNDRED).quantize(PERCENT_QUANTUM, rounding=ROUND_HALF_UP)


def price_metrics(original: Decimal, requested: Decimal, cost: Decimal | None) -> dict:
    metrics = {
        "discount_amount": original - requested,
        "discount_percent": _pct(original - requested, original) if original > 0 else Decimal("0"),
        "margin_value": None,
        "margin_percent": None,
    }
    if cost is not None:
        metrics["margin_value"] = requested - cost
        metrics["margin_percent"] = _pct(requested - cost, requested) if requested > 0 else Decimal("0")
    return metrics


def _format(value: Decimal | None) -> str:
    if value is None:
        return "n/a"
    return f"{value.normalize():f}"


def _compare(comparison: Comparison, value: Decimal | None, threshold: Decimal | None) -> bool:
    threshold = threshold if threshold is not None else Decimal("0")
    if comparison is Comparison.ALWAYS:
        return True
    if value is None:
        return False
    if comparison is Comparison.EXCEEDS:
        return value > threshold
    if comparison is Comparison.BELOW:
        return value < threshold
    if comparison is Comparison.NEGATIVE:
        return value < 0
    raise AssertionError(f"Unhandled comparison: {comparison!r}")


def _message(rule: CachedRule, value: Decimal | None, requires_approval: bool) -> str:
    name = rule.override_type.value.replace("_", " ")
    if not requires_approval:
        return f"{name} of {_format(value)} is within the '{rule.name}' threshold"
    comparison = rule.override_type.comparison
    if comparison is Comparison.EXCEEDS:
        return f"{name} of {_format(value)} exceeds threshold {_format(rule.threshold_value)}"
    if comparison is Comparison.BELOW:
        return f"{name}: {_format(value)} is below threshold {_format(rule.threshold_value)}"
    if comparison is Comparison.NEGATIVE:
        return f"{name}: value {_format(value)} is below zero"
    if comparison is Comparison.ALWAYS:
        return f"{name} always requires approval"
    raise AssertionError(f"Unhandled comparison: {comparison!r}")


def _exception_matches(exc: CachedException, context: EvaluationContext) -> bool:
    if exc.scope is ExceptionScope.PRODUCT:
        return exc.product_id is not None and exc.product_id == context.product_id
    if exc.scope is ExceptionScope.CATEGORY:
        return exc.category is not None and exc.category == context.category
    if exc.scope is ExceptionScope.CUSTOMER:
        return exc.customer_id is not None and exc.customer_id == context.customer_id
    if exc.scope is ExceptionScope.USER:
        return exc.user_id is not None and exc.user_id == context.user_id
    raise AssertionError(f"Unhandled exception scope: {exc.scope!r}")


class PolicyEvaluator:
    """Rule lookup and threshold comparison. Holds the rule cache it reads from."""

    def __init__(self, cache: RuleCache, store_timezone: str = "UTC"):
        self.cache = cache
        self.store_timezone = store_timezone

    def invalidate(self) -> None:
        self.cache.invalidate()

    def _in_scope(self, rule: CachedRule, context: EvaluationContext, at: datetime) -> bool:
        if not rule.applies_to_channel(context.channel):
            return False
        if rule.category is not None and rule.category != context.category:
            return False
        if rule.valid_from and at < rule.valid_from:
            return False
        if rule.valid_until and at > rule.valid_until:
            return False
        if rule.active_start_time is not None or rule.active_days is not None:
            local = to_store_local(at, self.store_timezone)
            if rule.active_days is not None and sunday_based_weekday(local) not in rule.active_days:
                return False
            if rule.active_start_time is not None and rule.active_end_time is not None:
                if not time_in_window(local.time(), rule.active_start_time, rule.active_end_time):
                    return False
        return True

    def find_rule(self, override_type: OverrideType, context: EvaluationContext) -> CachedRule | None:
        at = context.at or utcnow()
        candidates = [
            rule for rule in self.cache.rules_for(override_type)
            if self._in_scope(rule, context, at)
        ]
        if not candidates:
            return None
        return max(
            candidates,
            key=lambda rule: (rule.category is not None, rule.priority, rule.default_level.rank, rule.id),
        )

    def _find_exception(self, rule: CachedRule, context: EvaluationContext, at: datetime) -> CachedException | None:
        matches = [exc for exc in rule.exceptions if exc.in_window(at) and _exception_matches(exc, context)]
        for scope in EXCEPTION_PRECEDENCE:
            for exc in matches:
                if exc.scope is scope:
                    return exc
        return None

    def evaluate(self, override_type: OverrideType, value: Decimal | None, context: EvaluationContext | None = None) -> PolicyDecision:
        context = context or EvaluationContext()
        at = context.at or utcnow()
        rule = self.find_rule(override_type, context)
        if rule is None:
            return PolicyDecision(
                override_type=override_type,
                value=value,
                requires_approval=False,
                message=f"No threshold rule for {override_type.value}",
            )

        exc = self._find_exception(rule, context, at)
        if exc is not None and exc.is_exempt:
            return PolicyDecision(
                override_type=override_type,
                value=value,
                requires_approval=False,
                rule=rule,
                message=f"Exempt by {exc.scope.value} exception on '{rule.name}'",
                exception_applied=True,
                exception=exc,
            )
        if exc is not None:
            # The exception's level replaces the whole ladder, its threshold replaces the rule's
            rule = replace(
                rule,
                threshold_value=exc.threshold_value if exc.threshold_value is not None else rule.threshold_value,
                default_level=exc.approval_level or rule.default_level,
                levels=() if exc.approval_level else rule.levels,
            )

        requires_approval = _compare(override_type.comparison, value, rule.threshold_value)
        level = tier_service.required_level(rule, value) if requires_approval else ApprovalLevel.lowest()
        return PolicyDecision(
            override_type=override_type,
            value=value,
            requires_approval=requires_approval,
            rule=rule,
            required_level=level,
            message=_message(rule, value, requires_approval),
            exception_applied=exc is not None,
            exception=exc,
        )

    def evaluate_price_change(
        self,
        original_value: Decimal,
        requested_value: Decimal,
        cost_value: Decimal | None = None,
        context: EvaluationContext | None = None,
    ) -> PriceEvaluation:
        """
        Run every price-type check for one price change and keep the
        decision with the highest required level. Margin checks are skipped
        when the cost is unknown.
        """
        metrics = price_metrics(original_value, requested_value, cost_value)
        values = {
            OverrideType.DISCOUNT_PERCENT: metrics["discount_percent"],
            OverrideType.DISCOUNT_AMOUNT: metrics["discount_amount"],
            OverrideType.MARGIN_BELOW: metrics["margin_percent"],
            OverrideType.PRICE_BELOW_COST: metrics["margin_value"],
        }

        decisions = []
        for override_type in PRICE_TYPES:
            if values[override_type] is None:
                continue
            decisions.append(self.evaluate(override_type, values[override_type], context))

        winner = None
        for decision in decisions:
            if not decision.requires_approval:
                continue
            if winner is None or decision.required_level.rank > winner.required_level.rank:
                winner = decision
        if winner is None:
            winner = next((d for d in decisions if d.exception_applied), None)
        if winner is None:
            winner = next(d for d in decisions if d.override_type is OverrideType.DISCOUNT_PERCENT)

        return PriceEvaluation(
            decision=winner,
            decisions=tuple(decisions),
            discount_percent=metrics["discount_percent"],
            discount_amount=metrics["discount_amount"],
            margin_value=metrics["margin_value"],
            margin_percent=metrics["margin_percent"],
        )
