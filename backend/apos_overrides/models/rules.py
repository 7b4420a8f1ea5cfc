from __future__ import annotations

from ..enums import ApprovalLevel, Channel, ExceptionScope, OverrideType
from ..extensions import db
from ..time_utils import to_utc_z


def _decimal_str(value) -> str | None:
    return None if value is None else str(value)


class ThresholdRule(db.Model):
    """
    Administrator-managed rule deciding when an override needs approval.

    WHY: Thresholds are store policy, not code. A rule names one override
    type, the threshold it compares against, where it applies (channel,
    category, validity window, time-of-day/day-of-week) and the ordered
    approval levels able to authorize values above it.

    Rule rows are long-lived reference data. Audit entries snapshot the rule
    at decision time (see `snapshot`) instead of joining it later.
    """
    __tablename__ = "override_threshold_rules"
    __table_args__ = (
        db.Index("ix_override_rules_type_active", "rule_type", "is_active"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(100), nullable=False)
    description = db.Column(db.Text, nullable=True)

    rule_type = db.Column(db.String(32), nullable=False, index=True)
    threshold_value = db.Column(db.Numeric(12, 4), nullable=True)
    default_level = db.Column(db.String(32), nullable=False, default=ApprovalLevel.MANAGER.value)

    # Channel applicability
    applies_to_pos = db.Column(db.Boolean, nullable=False, default=True)
    applies_to_quotes = db.Column(db.Boolean, nullable=False, default=True)
    applies_to_online = db.Column(db.Boolean, nullable=False, default=False)

    # Optional scopes
    category = db.Column(db.String(100), nullable=True)
    valid_from = db.Column(db.DateTime(timezone=True), nullable=True)
    valid_until = db.Column(db.DateTime(timezone=True), nullable=True)
    active_start_time = db.Column(db.Time, nullable=True)
    active_end_time = db.Column(db.Time, nullable=True)
    active_days = db.Column(db.String(32), nullable=True)  # "0,6" -> Sunday and Saturday

    priority = db.Column(db.Integer, nullable=False, default=100)
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    require_reason = db.Column(db.Boolean, nullable=False, default=False)
    reason_min_length = db.Column(db.Integer, nullable=False, default=0)

    # Pending requests older than this are swept to timed_out (0 = never)
    timeout_seconds = db.Column(db.Integer, nullable=False, default=0)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), onupdate=db.func.now())
    created_by_user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)

    levels = db.relationship(
        "RuleApprovalLevel",
        backref="rule",
        lazy="selectin",
        cascade="all, delete-orphan",
        order_by="RuleApprovalLevel.position",
    )
    exceptions = db.relationship(
        "RuleException",
        backref="rule",
        lazy="selectin",
        cascade="all, delete-orphan",
    )

    @property
    def override_type(self) -> OverrideType:
        return OverrideType(self.rule_type)

    @property
    def default_approval_level(self) -> ApprovalLevel:
        return ApprovalLevel(self.default_level)

    @property
    def day_set(self) -> set[int] | None:
        if not self.active_days:
            return None
        return {int(part) for part in self.active_days.split(",") if part.strip() != ""}

    def applies_to_channel(self, channel: Channel) -> bool:
        if channel is Channel.POS:
            return bool(self.applies_to_pos)
        if channel is Channel.QUOTE:
            return bool(self.applies_to_quotes)
        if channel is Channel.ONLINE:
            return bool(self.applies_to_online)
        raise AssertionError(f"Unhandled channel: {channel!r}")

    def snapshot(self) -> dict:
        """Values in effect when a decision is made, frozen into the audit log."""
        return {
            "id": self.id,
            "name": self.name,
            "rule_type": self.rule_type,
            "threshold_value": _decimal_str(self.threshold_value),
            "default_level": self.default_level,
            "category": self.category,
            "priority": self.priority,
            "require_reason": self.require_reason,
            "timeout_seconds": self.timeout_seconds,
            "levels": [
                {"level": lvl.level, "max_value": _decimal_str(lvl.max_value)}
                for lvl in self.levels
            ],
        }

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "rule_type": self.rule_type,
            "threshold_value": _decimal_str(self.threshold_value),
            "default_level": self.default_level,
            "applies_to_pos": self.applies_to_pos,
            "applies_to_quotes": self.applies_to_quotes,
            "applies_to_online": self.applies_to_online,
            "category": self.category,
            "valid_from": to_utc_z(self.valid_from),
            "valid_until": to_utc_z(self.valid_until),
            "active_start_time": self.active_start_time.isoformat() if self.active_start_time else None,
            "active_end_time": self.active_end_time.isoformat() if self.active_end_time else None,
            "active_days": sorted(self.day_set) if self.day_set is not None else None,
            "priority": self.priority,
            "is_active": self.is_active,
            "require_reason": self.require_reason,
            "reason_min_length": self.reason_min_length,
            "timeout_seconds": self.timeout_seconds,
            "levels": [lvl.to_dict() for lvl in self.levels],
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }


class RuleApprovalLevel(db.Model):
    """
    One rung of a rule's approval ladder.

    INVARIANT (enforced by tier_service.validate_levels): within a rule,
    rungs are strictly increasing in authority and their ceilings are
    non-decreasing. max_value NULL means "unlimited" and may only appear last.
    """
    __tablename__ = "override_rule_levels"
    __table_args__ = (
        db.UniqueConstraint("rule_id", "level", name="uq_override_rule_levels_rule_level"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    rule_id = db.Column(db.Integer, db.ForeignKey("override_threshold_rules.id"), nullable=False, index=True)
    position = db.Column(db.Integer, nullable=False, default=0)
    level = db.Column(db.String(32), nullable=False)
    max_value = db.Column(db.Numeric(12, 4), nullable=True)

    @property
    def approval_level(self) -> ApprovalLevel:
        return ApprovalLevel(self.level)

    @property
    def is_unlimited(self) -> bool:
        return self.max_value is None

    def to_dict(self) -> dict:
        return {
            "level": self.level,
            "max_value": _decimal_str(self.max_value),
            "unlimited": self.is_unlimited,
        }


class RuleException(db.Model):
    """
    Scoped exception to a threshold rule (product, category, customer or user).

    An exempt exception waives approval entirely; otherwise it may swap in a
    different threshold and/or default approval level. Waivers are still
    recorded as requests with outcome "exception_applied".
    """
    __tablename__ = "override_rule_exceptions"
    __table_args__ = (
        db.Index("ix_override_rule_exceptions_rule_active", "rule_id", "is_active"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    rule_id = db.Column(db.Integer, db.ForeignKey("override_threshold_rules.id"), nullable=False)

    scope = db.Column(db.String(16), nullable=False)
    product_id = db.Column(db.Integer, nullable=True)
    category = db.Column(db.String(100), nullable=True)
    customer_id = db.Column(db.Integer, nullable=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)

    is_exempt = db.Column(db.Boolean, nullable=False, default=False)
    override_threshold_value = db.Column(db.Numeric(12, 4), nullable=True)
    override_approval_level = db.Column(db.String(32), nullable=True)

    is_active = db.Column(db.Boolean, nullable=False, default=True)
    valid_from = db.Column(db.DateTime(timezone=True), nullable=True)
    valid_until = db.Column(db.DateTime(timezone=True), nullable=True)

    reason = db.Column(db.Text, nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    created_by_user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)

    @property
    def exception_scope(self) -> ExceptionScope:
        return ExceptionScope(self.scope)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "rule_id": self.rule_id,
            "scope": self.scope,
            "product_id": self.product_id,
            "category": self.category,
            "customer_id": self.customer_id,
            "user_id": self.user_id,
            "is_exempt": self.is_exempt,
            "override_threshold_value": _decimal_str(self.override_threshold_value),
            "override_approval_level": self.override_approval_level,
            "is_active": self.is_active,
            "valid_from": to_utc_z(self.valid_from),
            "valid_until": to_utc_z(self.valid_until),
            "reason": self.reason,
            "created_at": to_utc_z(self.created_at),
        }
