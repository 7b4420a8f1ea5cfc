from __future__ import annotations

from ..extensions import db
from ..time_utils import to_utc_z


def _decimal_str(value) -> str | None:
    return None if value is None else str(value)


class OverrideAuditEntry(db.Model):
    """
    Override decision audit log.

    IMMUTABLE: Never update or delete. Append-only for audit integrity.

    Each row is a snapshot: the rule values in effect at decision time are
    copied into `rule_snapshot` rather than joined from the live rule.
    Every terminal resolution writes exactly one row in the same transaction
    as the status change; refused authorization attempts against a real
    request are recorded as outcome "authorization_denied".
    """
    __tablename__ = "override_audit_log"
    __table_args__ = (
        db.Index("ix_override_audit_created", "created_at"),
        db.Index("ix_override_audit_type_outcome", "override_type", "outcome"),
        db.Index("ix_override_audit_approver", "approver_id"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    request_id = db.Column(db.Integer, db.ForeignKey("approval_requests.id"), nullable=True, index=True)

    override_type = db.Column(db.String(32), nullable=True)
    threshold_rule_id = db.Column(db.Integer, nullable=True)
    rule_snapshot = db.Column(db.JSON, nullable=True)

    cashier_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    approver_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    approval_level = db.Column(db.String(32), nullable=True)  # approver's effective level
    required_level = db.Column(db.String(32), nullable=True)
    delegation_id = db.Column(db.Integer, nullable=True)

    original_value = db.Column(db.Numeric(12, 4), nullable=True)
    override_value = db.Column(db.Numeric(12, 4), nullable=True)
    difference_value = db.Column(db.Numeric(12, 4), nullable=True)
    difference_percent = db.Column(db.Numeric(12, 4), nullable=True)

    verification_method = db.Column(db.String(16), nullable=True)
    outcome = db.Column(db.String(32), nullable=False, index=True)
    reason = db.Column(db.Text, nullable=True)
    denial_reason = db.Column(db.Text, nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "request_id": self.request_id,
            "override_type": self.override_type,
            "threshold_rule_id": self.threshold_rule_id,
            "rule_snapshot": self.rule_snapshot,
            "cashier_id": self.cashier_id,
            "approver_id": self.approver_id,
            "approval_level": self.approval_level,
            "required_level": self.required_level,
            "delegation_id": self.delegation_id,
            "original_value": _decimal_str(self.original_value),
            "override_value": _decimal_str(self.override_value),
            "difference_value": _decimal_str(self.difference_value),
            "difference_percent": _decimal_str(self.difference_percent),
            "verification_method": self.verification_method,
            "outcome": self.outcome,
            "reason": self.reason,
            "denial_reason": self.denial_reason,
            "created_at": to_utc_z(self.created_at),
        }
