from __future__ import annotations

from ..enums import ApprovalLevel
from ..extensions import db
from ..time_utils import to_utc_z


class ManagerCredential(db.Model):
    """
    Manager override PIN (bcrypt hashed) with lockout and daily quota.

    STATES: active, or locked until `locked_until`. failed_attempts and the
    daily counter are only ever changed through conditional / expression
    UPDATEs so concurrent terminals cannot lose increments.

    Only one active credential per user; rotating a PIN deactivates the old
    row instead of deleting it.
    """
    __tablename__ = "manager_credentials"
    __table_args__ = (
        db.Index("ix_manager_credentials_user_active", "user_id", "is_active"),
        db.Index("ix_manager_credentials_locked", "locked_until"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False)

    pin_hash = db.Column(db.String(255), nullable=False)
    approval_level = db.Column(db.String(32), nullable=False, default=ApprovalLevel.MANAGER.value)

    # Daily quota (NULL = unlimited)
    max_daily_overrides = db.Column(db.Integer, nullable=True)
    override_count_today = db.Column(db.Integer, nullable=False, default=0)
    last_override_date = db.Column(db.Date, nullable=True)

    # Failed attempt tracking
    failed_attempts = db.Column(db.Integer, nullable=False, default=0)
    locked_until = db.Column(db.DateTime(timezone=True), nullable=True)
    max_failed_attempts = db.Column(db.Integer, nullable=False, default=3)
    lockout_minutes = db.Column(db.Integer, nullable=False, default=15)

    is_active = db.Column(db.Boolean, nullable=False, default=True)
    valid_from = db.Column(db.DateTime(timezone=True), nullable=True)
    valid_until = db.Column(db.DateTime(timezone=True), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    created_by_user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    last_used_at = db.Column(db.DateTime(timezone=True), nullable=True)

    user = db.relationship("User", foreign_keys=[user_id], backref=db.backref("credentials", lazy=True))

    @property
    def level(self) -> ApprovalLevel:
        return ApprovalLevel(self.approval_level)

    def to_dict(self) -> dict:
        # pin_hash is never serialized
        return {
            "id": self.id,
            "user_id": self.user_id,
            "approval_level": self.approval_level,
            "max_daily_overrides": self.max_daily_overrides,
            "override_count_today": self.override_count_today,
            "last_override_date": self.last_override_date.isoformat() if self.last_override_date else None,
            "failed_attempts": self.failed_attempts,
            "locked_until": to_utc_z(self.locked_until),
            "max_failed_attempts": self.max_failed_attempts,
            "lockout_minutes": self.lockout_minutes,
            "is_active": self.is_active,
            "valid_from": to_utc_z(self.valid_from),
            "valid_until": to_utc_z(self.valid_until),
            "created_at": to_utc_z(self.created_at),
            "last_used_at": to_utc_z(self.last_used_at),
        }
