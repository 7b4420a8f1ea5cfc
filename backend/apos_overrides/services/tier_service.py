# Overview: Service-layer operations for tiered authority; maps override values onto approval levels.

"""
Tiered Authority

A rule's approval ladder is an ordered list of (level, ceiling) rungs. The
required level for a value is the first rung whose ceiling covers it, or the
unlimited rung; values above every ceiling fall back to the rule's default
level.

Which number is walked up the ladder depends on the comparison:
- exceeds:  the value itself (discount 30% -> the rung covering 30)
- below:    the shortfall under the threshold (margin 4% vs 10% -> 6)
- negative: the absolute deficit (price $20 under cost -> 20)
- always:   the value itself (refund amount, drawer adjustment)

Direct and delegated authority checks both go through `level_satisfies`.
"""

from __future__ import annotations

from decimal import Decimal
from typing import Iterable

from ..enums import ApprovalLevel, Comparison
from ..validation import ValidationError
from .rule_cache import CachedLevel, CachedRule


def level_satisfies(level: ApprovalLevel | None, required: ApprovalLevel) -> bool:
    if level is None:
        return False
    return level.rank >= required.rank


def tiered_value(rule: CachedRule, value: Decimal | None) -> Decimal:
    value = value if value is not None else Decimal("0")
    comparison = rule.override_type.comparison
    if comparison is Comparison.EXCEEDS or comparison is Comparison.ALWAYS:
        return value
    if comparison is Comparison.BELOW:
        threshold = rule.threshold_value if rule.threshold_value is not None else Decimal("0")
        return max(threshold - value, Decimal("0"))
    if comparison is Comparison.NEGATIVE:
        return abs(value) if value < 0 else Decimal("0")
    raise AssertionError(f"Unhandled comparison: {comparison!r}")


def required_level(rule: CachedRule, value: Decimal | None) -> ApprovalLevel:
    walked = tiered_value(rule, value)
    for rung in rule.levels:
        if rung.is_unlimited or walked <= rung.max_value:
            return rung.level
    return rule.default_level


def can_actor_approve(actor_level: ApprovalLevel | None, rule: CachedRule, value: Decimal | None) -> bool:
    return level_satisfies(actor_level, required_level(rule, value))


def validate_levels(levels: Iterable[CachedLevel]) -> list[CachedLevel]:
    """
    Check a proposed approval ladder.

    Rungs must be strictly increasing in authority with non-decreasing
    ceilings; at most one rung may be unlimited and it must be the last.
    Returns the rungs as a list; raises ValidationError otherwise.
    """
    rungs = list(levels)
    previous: CachedLevel | None = None
    for index, rung in enumerate(rungs):
        if rung.is_unlimited and index != len(rungs) - 1:
            raise ValidationError("Only the last approval level may be unlimited")
        if rung.max_value is not None and rung.max_value < 0:
            raise ValidationError("Approval level ceilings cannot be negative")
        if previous is not None:
            if rung.level.rank <= previous.level.rank:
                raise ValidationError(
                    "Approval levels must be strictly increasing in authority",
                    level=rung.level.value,
                )
            if rung.max_value is not None and rung.max_value < previous.max_value:
                raise ValidationError(
                    "Approval level ceilings must not decrease",
                    level=rung.level.value,
                )
        previous = rung
    return rungs
