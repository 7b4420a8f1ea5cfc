# Overview: Service-layer operations for threshold rules; administrator CRUD and default seeding.

"""
Threshold Rule Administration

Every write here commits and then invalidates the policy evaluator's rule
cache, so the next evaluation in this process sees the change.

Rules are deactivated, never deleted: audit rows and historical requests
keep pointing at them.
"""

from __future__ import annotations

from decimal import Decimal

from ..enums import ApprovalLevel, ExceptionScope, OverrideType
from ..extensions import db
from ..models import RuleApprovalLevel, RuleException, ThresholdRule
from ..time_utils import parse_time_of_day, utcnow
from ..validation import NotFoundError, ValidationError, parse_datetime, parse_decimal, parse_int
from . import tier_service
from .rule_cache import CachedLevel
from .runtime import policy_evaluator


RULE_FIELDS_BOOL = ("applies_to_pos", "applies_to_quotes", "applies_to_online", "require_reason", "is_active")


def _invalidate() -> None:
    policy_evaluator().invalidate()


def _parse_bool(value, field: str) -> bool:
    if isinstance(value, bool):
        return value
    raise ValidationError(f"{field} must be true or false")


def _parse_levels(raw) -> list[CachedLevel]:
    if raw is None:
        return []
    if not isinstance(raw, list):
        raise ValidationError("levels must be a list")
    parsed = []
    for index, item in enumerate(raw):
        if not isinstance(item, dict):
            raise ValidationError(f"levels[{index}] must be an object")
        parsed.append(CachedLevel(
            level=ApprovalLevel.parse(item.get("level"), f"levels[{index}].level"),
            max_value=parse_decimal(item.get("max_value"), f"levels[{index}].max_value", allow_none=True),
        ))
    return tier_service.validate_levels(parsed)


def _parse_days(raw) -> str | None:
    if raw is None or raw == "" or raw == []:
        return None
    if isinstance(raw, str):
        raw = [part for part in raw.split(",") if part.strip()]
    if not isinstance(raw, list):
        raise ValidationError("active_days must be a list of day numbers (0 = Sunday)")
    days = sorted({parse_int(day, "active_days") for day in raw})
    if any(day < 0 or day > 6 for day in days):
        raise ValidationError("active_days must be between 0 (Sunday) and 6 (Saturday)")
    return ",".join(str(day) for day in days)


def _parse_time(raw, field: str):
    try:
        return parse_time_of_day(raw)
    except (TypeError, ValueError):
        raise ValidationError(f"{field} must be HH:MM")


def _apply_levels(rule: ThresholdRule, levels: list[CachedLevel]) -> None:
    rule.levels.clear()
    db.session.flush()
    for position, rung in enumerate(levels):
        rule.levels.append(RuleApprovalLevel(
            position=position,
            level=rung.level.value,
            max_value=rung.max_value,
        ))


def _apply_fields(rule: ThresholdRule, payload: dict) -> None:
    if "name" in payload:
        name = (payload.get("name") or "").strip()
        if not name:
            raise ValidationError("name is required")
        rule.name = name
    if "description" in payload:
        rule.description = payload.get("description")
    if "rule_type" in payload:
        rule.rule_type = OverrideType.parse(payload.get("rule_type"), "rule_type").value
    if "threshold_value" in payload:
        rule.threshold_value = parse_decimal(payload.get("threshold_value"), "threshold_value", allow_none=True)
    if "default_level" in payload:
        rule.default_level = ApprovalLevel.parse(payload.get("default_level"), "default_level").value
    for field in RULE_FIELDS_BOOL:
        if field in payload:
            setattr(rule, field, _parse_bool(payload.get(field), field))
    if "category" in payload:
        rule.category = payload.get("category") or None
    if "valid_from" in payload:
        rule.valid_from = parse_datetime(payload.get("valid_from"), "valid_from")
    if "valid_until" in payload:
        rule.valid_until = parse_datetime(payload.get("valid_until"), "valid_until")
    if "active_start_time" in payload:
        rule.active_start_time = _parse_time(payload.get("active_start_time"), "active_start_time")
    if "active_end_time" in payload:
        rule.active_end_time = _parse_time(payload.get("active_end_time"), "active_end_time")
    if "active_days" in payload:
        rule.active_days = _parse_days(payload.get("active_days"))
    if "priority" in payload:
        rule.priority = parse_int(payload.get("priority"), "priority")
    if "reason_min_length" in payload:
        rule.reason_min_length = parse_int(payload.get("reason_min_length"), "reason_min_length")
    if "timeout_seconds" in payload:
        timeout = parse_int(payload.get("timeout_seconds"), "timeout_seconds")
        if timeout < 0:
            raise ValidationError("timeout_seconds cannot be negative")
        rule.timeout_seconds = timeout

    if rule.valid_from and rule.valid_until and rule.valid_until <= rule.valid_from:
        raise ValidationError("valid_until must be after valid_from")
    if (rule.active_start_time is None) != (rule.active_end_time is None):
        raise ValidationError("active_start_time and active_end_time must be set together")


def list_rules(include_inactive: bool = False, rule_type: str | None = None) -> list[ThresholdRule]:
    query = db.session.query(ThresholdRule)
    if not include_inactive:
        query = query.filter(ThresholdRule.is_active.is_(True))
    if rule_type:
        query = query.filter(ThresholdRule.rule_type == OverrideType.parse(rule_type, "rule_type").value)
    return query.order_by(ThresholdRule.rule_type, ThresholdRule.priority.desc(), ThresholdRule.id).all()


def get_rule(rule_id: int) -> ThresholdRule:
    rule = db.session.get(ThresholdRule, rule_id)
    if rule is None:
        raise NotFoundError("Threshold rule not found")
    return rule


def create_rule(payload: dict, created_by_user_id: int | None = None) -> ThresholdRule:
    for field in ("name", "rule_type"):
        if not payload.get(field):
            raise ValidationError(f"{field} is required")
    levels = _parse_levels(payload.get("levels"))
    now = utcnow()
    rule = ThresholdRule(created_by_user_id=created_by_user_id, created_at=now, updated_at=now)
    _apply_fields(rule, payload)
    db.session.add(rule)
    _apply_levels(rule, levels)
    db.session.commit()
    _invalidate()
    return rule


def update_rule(rule_id: int, payload: dict) -> ThresholdRule:
    rule = get_rule(rule_id)
    levels = _parse_levels(payload.get("levels")) if "levels" in payload else None
    _apply_fields(rule, payload)
    if levels is not None:
        _apply_levels(rule, levels)
    rule.updated_at = utcnow()
    db.session.commit()
    _invalidate()
    return rule


def deactivate_rule(rule_id: int) -> ThresholdRule:
    rule = get_rule(rule_id)
    rule.is_active = False
    rule.updated_at = utcnow()
    db.session.commit()
    _invalidate()
    return rule


def add_exception(rule_id: int, payload: dict, created_by_user_id: int | None = None) -> RuleException:
    rule = get_rule(rule_id)
    scope = ExceptionScope.parse(payload.get("scope"), "scope")
    exc = RuleException(
        rule_id=rule.id,
        scope=scope.value,
        is_exempt=bool(payload.get("is_exempt", False)),
        override_threshold_value=parse_decimal(
            payload.get("override_threshold_value"), "override_threshold_value", allow_none=True
        ),
        override_approval_level=(
            ApprovalLevel.parse(payload["override_approval_level"], "override_approval_level").value
            if payload.get("override_approval_level") else None
        ),
        valid_from=parse_datetime(payload.get("valid_from"), "valid_from"),
        valid_until=parse_datetime(payload.get("valid_until"), "valid_until"),
        reason=payload.get("reason"),
        created_by_user_id=created_by_user_id,
        created_at=utcnow(),
    )

    target_field = {
        ExceptionScope.PRODUCT: "product_id",
        ExceptionScope.CATEGORY: "category",
        ExceptionScope.CUSTOMER: "customer_id",
        ExceptionScope.USER: "user_id",
    }[scope]
    target = payload.get(target_field)
    if target is None or target == "":
        raise ValidationError(f"{target_field} is required for a {scope.value} exception")
    if target_field == "category":
        exc.category = str(target)
    else:
        setattr(exc, target_field, parse_int(target, target_field))

    if not exc.is_exempt and exc.override_threshold_value is None and exc.override_approval_level is None:
        raise ValidationError("An exception must exempt, or override the threshold or approval level")

    db.session.add(exc)
    db.session.commit()
    _invalidate()
    return exc


def deactivate_exception(exception_id: int) -> RuleException:
    exc = db.session.get(RuleException, exception_id)
    if exc is None:
        raise NotFoundError("Rule exception not found")
    exc.is_active = False
    db.session.commit()
    _invalidate()
    return exc


DEFAULT_RULES = (
    {
        "name": "Discount percentage",
        "description": "Line discounts above 10% need approval; larger discounts need more senior staff.",
        "rule_type": OverrideType.DISCOUNT_PERCENT.value,
        "threshold_value": Decimal("10"),
        "default_level": ApprovalLevel.MANAGER.value,
        "timeout_seconds": 180,
        "levels": [
            {"level": ApprovalLevel.SHIFT_LEAD.value, "max_value": Decimal("10")},
            {"level": ApprovalLevel.MANAGER.value, "max_value": Decimal("25")},
            {"level": ApprovalLevel.AREA_MANAGER.value, "max_value": Decimal("50")},
            {"level": ApprovalLevel.ADMIN.value, "max_value": None},
        ],
    },
    {
        "name": "Discount amount",
        "description": "Line discounts above $50.",
        "rule_type": OverrideType.DISCOUNT_AMOUNT.value,
        "threshold_value": Decimal("50"),
        "default_level": ApprovalLevel.MANAGER.value,
        "timeout_seconds": 180,
        "levels": [
            {"level": ApprovalLevel.MANAGER.value, "max_value": Decimal("200")},
            {"level": ApprovalLevel.AREA_MANAGER.value, "max_value": Decimal("500")},
            {"level": ApprovalLevel.ADMIN.value, "max_value": None},
        ],
    },
    {
        "name": "Minimum margin",
        "description": "Selling below a 10% margin.",
        "rule_type": OverrideType.MARGIN_BELOW.value,
        "threshold_value": Decimal("10"),
        "default_level": ApprovalLevel.MANAGER.value,
        "timeout_seconds": 180,
        "levels": [],
    },
    {
        "name": "Below cost",
        "description": "Selling below cost always needs an administrator.",
        "rule_type": OverrideType.PRICE_BELOW_COST.value,
        "threshold_value": Decimal("0"),
        "default_level": ApprovalLevel.ADMIN.value,
        "timeout_seconds": 300,
        "levels": [],
    },
    {
        "name": "Void transaction",
        "rule_type": OverrideType.VOID_TRANSACTION.value,
        "default_level": ApprovalLevel.MANAGER.value,
        "levels": [],
    },
    {
        "name": "Void item",
        "rule_type": OverrideType.VOID_ITEM.value,
        "default_level": ApprovalLevel.SHIFT_LEAD.value,
        "levels": [],
    },
    {
        "name": "Refund amount",
        "description": "Refunds above $100.",
        "rule_type": OverrideType.REFUND_AMOUNT.value,
        "threshold_value": Decimal("100"),
        "default_level": ApprovalLevel.MANAGER.value,
        "levels": [
            {"level": ApprovalLevel.MANAGER.value, "max_value": Decimal("500")},
            {"level": ApprovalLevel.AREA_MANAGER.value, "max_value": None},
        ],
    },
    {
        "name": "Refund without receipt",
        "rule_type": OverrideType.REFUND_NO_RECEIPT.value,
        "default_level": ApprovalLevel.MANAGER.value,
        "require_reason": True,
        "levels": [],
    },
    {
        "name": "Drawer adjustment",
        "rule_type": OverrideType.DRAWER_ADJUSTMENT.value,
        "default_level": ApprovalLevel.MANAGER.value,
        "levels": [],
    },
)


def seed_default_rules() -> int:
    """Create the default rule set for any override type without rules. Returns rules created."""
    existing = {row[0] for row in db.session.query(ThresholdRule.rule_type).distinct().all()}
    created = 0
    for default in DEFAULT_RULES:
        if default["rule_type"] in existing:
            continue
        create_rule(dict(default))
        created += 1
    return created
