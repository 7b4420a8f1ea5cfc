"""
Tiered authority tests.

Verifies:
- Level ordering (shift_lead < manager < area_manager < admin)
- Which number is walked up a ladder for each comparison
- Ladder lookup, including the fallback to the rule's default level
- Ladder validation rules
"""

from dataclasses import replace
from decimal import Decimal

import pytest

from apos_overrides.enums import ApprovalLevel, OverrideType, UserRole
from apos_overrides.services import tier_service
from apos_overrides.services.policy_service import EvaluationContext
from apos_overrides.services.rule_cache import CachedLevel
from apos_overrides.services.runtime import policy_evaluator
from apos_overrides.validation import ValidationError


D = Decimal


def _seeded(override_type):
    return policy_evaluator().find_rule(override_type, EvaluationContext())


class TestLevels:
    def test_ranks(self):
        assert [level.rank for level in ApprovalLevel] == [1, 2, 3, 4]
        assert ApprovalLevel.from_rank(3) is ApprovalLevel.AREA_MANAGER

    def test_rank_out_of_range(self):
        with pytest.raises(ValidationError):
            ApprovalLevel.from_rank(5)

    @pytest.mark.parametrize(
        "level,required,expected",
        [
            (ApprovalLevel.MANAGER, ApprovalLevel.MANAGER, True),
            (ApprovalLevel.ADMIN, ApprovalLevel.SHIFT_LEAD, True),
            (ApprovalLevel.SHIFT_LEAD, ApprovalLevel.MANAGER, False),
            (None, ApprovalLevel.SHIFT_LEAD, False),
        ],
    )
    def test_level_satisfies(self, level, required, expected):
        assert tier_service.level_satisfies(level, required) is expected

    def test_salesperson_has_no_level(self):
        assert UserRole.SALESPERSON.approval_level is None
        assert UserRole.AREA_MANAGER.approval_level is ApprovalLevel.AREA_MANAGER


class TestTieredValue:
    def test_exceeds_uses_value(self, app):
        assert tier_service.tiered_value(_seeded(OverrideType.DISCOUNT_PERCENT), D("30")) == D("30")

    def test_below_uses_shortfall(self, app):
        rule = _seeded(OverrideType.MARGIN_BELOW)

        assert tier_service.tiered_value(rule, D("4")) == D("6")
        assert tier_service.tiered_value(rule, D("12")) == D("0")

    def test_negative_uses_deficit(self, app):
        rule = _seeded(OverrideType.PRICE_BELOW_COST)

        assert tier_service.tiered_value(rule, D("-20")) == D("20")
        assert tier_service.tiered_value(rule, D("5")) == D("0")

    def test_always_treats_missing_value_as_zero(self, app):
        assert tier_service.tiered_value(_seeded(OverrideType.VOID_ITEM), None) == D("0")


class TestRequiredLevel:
    @pytest.mark.parametrize(
        "value,expected",
        [
            ("10", ApprovalLevel.SHIFT_LEAD),
            ("10.01", ApprovalLevel.MANAGER),
            ("25", ApprovalLevel.MANAGER),
            ("25.5", ApprovalLevel.AREA_MANAGER),
            ("50", ApprovalLevel.AREA_MANAGER),
            ("80", ApprovalLevel.ADMIN),
        ],
    )
    def test_discount_percent_ladder(self, app, value, expected):
        rule = _seeded(OverrideType.DISCOUNT_PERCENT)
        assert tier_service.required_level(rule, D(value)) is expected

    def test_value_above_every_ceiling_uses_default(self, app):
        rule = replace(
            _seeded(OverrideType.REFUND_AMOUNT),
            levels=(CachedLevel(ApprovalLevel.MANAGER, D("100")),),
            default_level=ApprovalLevel.ADMIN,
        )

        assert tier_service.required_level(rule, D("150")) is ApprovalLevel.ADMIN

    def test_can_actor_approve(self, app):
        rule = _seeded(OverrideType.DISCOUNT_PERCENT)

        assert tier_service.can_actor_approve(ApprovalLevel.MANAGER, rule, D("20")) is True
        assert tier_service.can_actor_approve(ApprovalLevel.MANAGER, rule, D("30")) is False
        assert tier_service.can_actor_approve(None, rule, D("20")) is False


class TestValidateLevels:
    def test_valid_ladder(self):
        rungs = [
            CachedLevel(ApprovalLevel.MANAGER, D("100")),
            CachedLevel(ApprovalLevel.ADMIN, None),
        ]
        assert tier_service.validate_levels(rungs) == rungs

    def test_empty_ladder_is_valid(self):
        assert tier_service.validate_levels([]) == []

    @pytest.mark.parametrize(
        "rungs",
        [
            # unlimited rung not last
            [CachedLevel(ApprovalLevel.MANAGER, None), CachedLevel(ApprovalLevel.ADMIN, D("10"))],
            # authority not increasing
            [CachedLevel(ApprovalLevel.ADMIN, D("10")), CachedLevel(ApprovalLevel.MANAGER, D("20"))],
            # ceilings decreasing
            [CachedLevel(ApprovalLevel.MANAGER, D("50")), CachedLevel(ApprovalLevel.ADMIN, D("20"))],
            # negative ceiling
            [CachedLevel(ApprovalLevel.MANAGER, D("-1"))],
        ],
    )
    def test_invalid_ladders(self, rungs):
        with pytest.raises(ValidationError):
            tier_service.validate_levels(rungs)
