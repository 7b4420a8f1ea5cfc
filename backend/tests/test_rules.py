"""
Threshold rule administration tests.

Verifies:
- Default rules seed once
- Create / update / deactivate with validation of ladders, days and windows
- Exceptions need a target and an effect
- Writes are visible to the next evaluation (cache invalidated)
- Admin-only HTTP routes
"""

from decimal import Decimal

import pytest

from apos_overrides.enums import ApprovalLevel, OverrideType
from apos_overrides.services import rule_service
from apos_overrides.services.policy_service import EvaluationContext
from apos_overrides.services.runtime import policy_evaluator
from apos_overrides.validation import NotFoundError, ValidationError


def _rule_payload(**overrides):
    payload = {
        "name": "Electronics discount",
        "rule_type": "discount_percent",
        "threshold_value": "5",
        "default_level": "manager",
        "category": "electronics",
        "levels": [
            {"level": "manager", "max_value": "20"},
            {"level": "admin", "max_value": None},
        ],
    }
    payload.update(overrides)
    return payload


class TestSeed:
    def test_seeded_once(self, app):
        assert len(rule_service.list_rules()) == len(rule_service.DEFAULT_RULES)
        assert rule_service.seed_default_rules() == 0

    def test_seeded_ladder(self, app):
        (rule,) = rule_service.list_rules(rule_type="discount_percent")

        assert [lvl.level for lvl in rule.levels] == ["shift_lead", "manager", "area_manager", "admin"]
        assert rule.levels[-1].max_value is None
        assert rule.timeout_seconds == 180
        assert rule.applies_to_online is False


class TestCreateRule:
    def test_create_and_evaluate(self, app):
        rule = rule_service.create_rule(_rule_payload())

        decision = policy_evaluator().evaluate(
            OverrideType.DISCOUNT_PERCENT, Decimal("8"), EvaluationContext(category="electronics")
        )

        assert decision.rule.id == rule.id
        assert decision.requires_approval is True
        assert decision.required_level is ApprovalLevel.MANAGER

    @pytest.mark.parametrize(
        "overrides",
        [
            {"name": ""},
            {"rule_type": "tip_adjustment"},
            {"default_level": "owner"},
            {"levels": [{"level": "admin", "max_value": None}, {"level": "manager", "max_value": "5"}]},
            {"levels": "manager"},
            {"active_days": [7]},
            {"active_start_time": "09:00"},
            {"active_start_time": "9am", "active_end_time": "17:00"},
            {"timeout_seconds": -1},
            {"require_reason": "yes"},
            {"valid_from": "2026-02-01T00:00:00Z", "valid_until": "2026-01-01T00:00:00Z"},
        ],
    )
    def test_invalid(self, app, overrides):
        with pytest.raises(ValidationError):
            rule_service.create_rule(_rule_payload(**overrides))

    def test_schedule_fields(self, app):
        rule = rule_service.create_rule(_rule_payload(
            active_days="1,2,3", active_start_time="09:00", active_end_time="17:30",
        ))

        data = rule.to_dict()
        assert data["active_days"] == [1, 2, 3]
        assert data["active_start_time"] == "09:00:00"
        assert data["active_end_time"] == "17:30:00"


class TestUpdateRule:
    def test_update_ladder(self, app):
        (rule,) = rule_service.list_rules(rule_type="refund_amount")

        updated = rule_service.update_rule(rule.id, {
            "levels": [{"level": "shift_lead", "max_value": "200"}, {"level": "manager", "max_value": None}],
        })

        assert [lvl.level for lvl in updated.levels] == ["shift_lead", "manager"]
        decision = policy_evaluator().evaluate(OverrideType.REFUND_AMOUNT, Decimal("150"), EvaluationContext())
        assert decision.required_level is ApprovalLevel.SHIFT_LEAD

    def test_deactivate(self, app):
        (rule,) = rule_service.list_rules(rule_type="void_item")

        rule_service.deactivate_rule(rule.id)

        assert rule_service.list_rules(rule_type="void_item") == []
        assert len(rule_service.list_rules(include_inactive=True, rule_type="void_item")) == 1
        decision = policy_evaluator().evaluate(OverrideType.VOID_ITEM, None, EvaluationContext())
        assert decision.requires_approval is False

    def test_unknown_rule(self, app):
        with pytest.raises(NotFoundError):
            rule_service.update_rule(999, {"priority": 1})


class TestExceptions:
    def _discount_rule(self):
        (rule,) = rule_service.list_rules(rule_type="discount_percent")
        return rule

    def test_add_exception(self, app):
        exc = rule_service.add_exception(self._discount_rule().id, {
            "scope": "product", "product_id": 12, "override_threshold_value": "30", "reason": "Clearance",
        })

        assert exc.product_id == 12
        assert exc.is_active is True
        decision = policy_evaluator().evaluate(
            OverrideType.DISCOUNT_PERCENT, Decimal("20"), EvaluationContext(product_id=12)
        )
        assert decision.requires_approval is False
        assert decision.exception_applied is True

    @pytest.mark.parametrize(
        "payload",
        [
            {"scope": "store", "product_id": 1, "is_exempt": True},
            {"scope": "product", "is_exempt": True},
            {"scope": "customer", "customer_id": ""},
            {"scope": "category", "category": "audio"},
            {"scope": "user", "user_id": 3, "override_approval_level": "owner"},
        ],
    )
    def test_invalid_exception(self, app, payload):
        with pytest.raises(ValidationError):
            rule_service.add_exception(self._discount_rule().id, payload)

    def test_deactivate_exception(self, app):
        exc = rule_service.add_exception(self._discount_rule().id, {
            "scope": "category", "category": "clearance", "is_exempt": True,
        })

        rule_service.deactivate_exception(exc.id)

        decision = policy_evaluator().evaluate(
            OverrideType.DISCOUNT_PERCENT, Decimal("20"), EvaluationContext(category="clearance")
        )
        assert decision.requires_approval is True

    def test_unknown_exception(self, app):
        with pytest.raises(NotFoundError):
            rule_service.deactivate_exception(999)


class TestRuleRoutes:
    def test_admin_crud(self, client, admin, headers_for):
        headers = headers_for(admin)

        created = client.post("/api/override-rules", json=_rule_payload(), headers=headers)
        assert created.status_code == 201
        rule_id = created.get_json()["rule"]["id"]

        patched = client.patch(f"/api/override-rules/{rule_id}", json={"priority": 5}, headers=headers)
        assert patched.get_json()["rule"]["priority"] == 5

        exc = client.post(
            f"/api/override-rules/{rule_id}/exceptions",
            json={"scope": "customer", "customer_id": 44, "override_approval_level": "shift_lead"},
            headers=headers,
        )
        assert exc.status_code == 201

        fetched = client.get(f"/api/override-rules/{rule_id}", headers=headers).get_json()["rule"]
        assert len(fetched["exceptions"]) == 1

        deleted = client.delete(f"/api/override-rules/{rule_id}", headers=headers)
        assert deleted.get_json()["rule"]["is_active"] is False

    def test_list_and_seed(self, client, admin, headers_for):
        headers = headers_for(admin)

        rules = client.get("/api/override-rules", headers=headers).get_json()["rules"]
        assert len(rules) == len(rule_service.DEFAULT_RULES)
        assert client.post("/api/override-rules/seed", headers=headers).get_json() == {"created": 0}

    def test_invalid_rule_is_400(self, client, admin, headers_for):
        resp = client.post("/api/override-rules", json={"name": "x"}, headers=headers_for(admin))
        assert resp.status_code == 400
        assert resp.get_json()["code"] == "validation_error"
