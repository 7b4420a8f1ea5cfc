from __future__ import annotations

from ..enums import ApprovalLevel
from ..extensions import db
from ..time_utils import to_utc_z


class Delegation(db.Model):
    """
    Time-bounded transfer of approval authority from delegator to delegate.

    WHY: A manager going on break hands approvals to a shift lead without
    sharing a PIN. The delegate acts at most at `max_tier` and never above
    the delegator's own level.

    Revocation flips `active` and stamps `revoked_at`; rows are never
    deleted so the audit trail can reference them. Expiry is evaluated
    against `expires_at`, never written.
    """
    __tablename__ = "approval_delegations"
    __table_args__ = (
        db.CheckConstraint("delegator_id <> delegate_id", name="ck_approval_delegations_distinct_users"),
        db.CheckConstraint("expires_at > starts_at", name="ck_approval_delegations_window"),
        db.Index("ix_approval_delegations_delegate_active", "delegate_id", "active"),
        db.Index("ix_approval_delegations_delegator_active", "delegator_id", "active"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    delegator_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False)
    delegate_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False)

    max_tier = db.Column(db.Integer, nullable=False)
    starts_at = db.Column(db.DateTime(timezone=True), nullable=False)
    expires_at = db.Column(db.DateTime(timezone=True), nullable=False)

    active = db.Column(db.Boolean, nullable=False, default=True)
    revoked_at = db.Column(db.DateTime(timezone=True), nullable=True)
    reason = db.Column(db.Text, nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    delegator = db.relationship("User", foreign_keys=[delegator_id])
    delegate = db.relationship("User", foreign_keys=[delegate_id])

    @property
    def max_level(self) -> ApprovalLevel:
        return ApprovalLevel.from_rank(self.max_tier)

    def is_effective(self, now) -> bool:
        return bool(self.active) and self.starts_at <= now < self.expires_at

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "delegator_id": self.delegator_id,
            "delegator_name": self.delegator.display_name if self.delegator else None,
            "delegate_id": self.delegate_id,
            "delegate_name": self.delegate.display_name if self.delegate else None,
            "max_tier": self.max_tier,
            "starts_at": to_utc_z(self.starts_at),
            "expires_at": to_utc_z(self.expires_at),
            "active": self.active,
            "revoked_at": to_utc_z(self.revoked_at),
            "reason": self.reason,
            "created_at": to_utc_z(self.created_at),
        }
