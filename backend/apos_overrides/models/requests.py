from __future__ import annotations

from ..enums import ApprovalLevel, RequestStatus, RequestType
from ..extensions import db
from ..time_utils import to_utc_z


def _decimal_str(value) -> str | None:
    return None if value is None else str(value)


class ApprovalRequest(db.Model):
    """
    Override approval request (single line item, batch parent, or batch child).

    STATE MACHINE:
        pending   -> approved | denied | countered | cancelled | timed_out | expired
        countered -> pending (counter declined) | approved (counter accepted)
                   | denied | cancelled

    Terminal: approved, denied, cancelled, timed_out, expired. After reaching
    a terminal status only token bookkeeping (token_used) may change.

    CONCURRENCY: every transition is written as a conditional UPDATE guarded
    by the expected prior status (see services/concurrency.py). version_id is
    also bumped by the ORM for object-level writes.
    """
    __tablename__ = "approval_requests"
    __table_args__ = (
        db.Index("ix_approval_requests_status_created", "status", "created_at"),
        db.Index("ix_approval_requests_parent", "parent_request_id"),
        db.Index("ix_approval_requests_requester", "requester_id", "status"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    request_code = db.Column(db.String(20), nullable=False, unique=True)

    request_type = db.Column(db.String(16), nullable=False, default=RequestType.SINGLE.value)
    override_type = db.Column(db.String(32), nullable=True)
    threshold_rule_id = db.Column(db.Integer, db.ForeignKey("override_threshold_rules.id"), nullable=True, index=True)
    parent_request_id = db.Column(db.Integer, db.ForeignKey("approval_requests.id"), nullable=True)
    batch_label = db.Column(db.String(100), nullable=True)

    # Context supplied by the point-of-sale flow
    channel = db.Column(db.String(16), nullable=False, default="pos")
    product_id = db.Column(db.Integer, nullable=True, index=True)
    customer_id = db.Column(db.Integer, nullable=True)
    category = db.Column(db.String(100), nullable=True)
    cart_ref = db.Column(db.String(64), nullable=True)
    line_ref = db.Column(db.String(64), nullable=True)

    # People
    requester_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False)
    target_approver_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    resolved_by_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    delegation_id = db.Column(db.Integer, db.ForeignKey("approval_delegations.id"), nullable=True)

    # Values
    original_value = db.Column(db.Numeric(12, 4), nullable=True)
    requested_value = db.Column(db.Numeric(12, 4), nullable=True)
    approved_value = db.Column(db.Numeric(12, 4), nullable=True)
    cost_value = db.Column(db.Numeric(12, 4), nullable=True)
    margin_value = db.Column(db.Numeric(12, 4), nullable=True)
    margin_percent = db.Column(db.Numeric(12, 4), nullable=True)

    # Lifecycle
    status = db.Column(db.String(16), nullable=False, default=RequestStatus.PENDING.value, index=True)
    required_level = db.Column(db.String(32), nullable=False, default=ApprovalLevel.SHIFT_LEAD.value)
    auto_approved = db.Column(db.Boolean, nullable=False, default=False)
    exception_applied = db.Column(db.Boolean, nullable=False, default=False)
    method = db.Column(db.String(16), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    responded_at = db.Column(db.DateTime(timezone=True), nullable=True)
    response_time_ms = db.Column(db.Integer, nullable=True)
    expires_at = db.Column(db.DateTime(timezone=True), nullable=True)

    # Single-use approval token
    approval_token = db.Column(db.String(64), nullable=True, unique=True)
    token_used = db.Column(db.Boolean, nullable=False, default=False)
    token_expires_at = db.Column(db.DateTime(timezone=True), nullable=True)
    token_used_at = db.Column(db.DateTime(timezone=True), nullable=True)

    # Free text
    reason = db.Column(db.Text, nullable=True)
    denial_reason_code = db.Column(db.String(64), nullable=True)
    denial_reason_note = db.Column(db.Text, nullable=True)

    version_id = db.Column(db.Integer, nullable=False, default=1)

    rule = db.relationship("ThresholdRule")
    requester = db.relationship("User", foreign_keys=[requester_id])
    target_approver = db.relationship("User", foreign_keys=[target_approver_id])
    resolved_by = db.relationship("User", foreign_keys=[resolved_by_id])
    delegation = db.relationship("Delegation")
    children = db.relationship(
        "ApprovalRequest",
        backref=db.backref("parent", remote_side=[id]),
        lazy="select",
        order_by="ApprovalRequest.id",
    )
    counter_offers = db.relationship(
        "CounterOffer",
        backref="request",
        lazy="select",
        order_by="CounterOffer.id",
    )

    __mapper_args__ = {"version_id_col": version_id}

    @property
    def request_status(self) -> RequestStatus:
        return RequestStatus(self.status)

    @property
    def approval_level(self) -> ApprovalLevel:
        return ApprovalLevel(self.required_level)

    @property
    def tier(self) -> int:
        return self.approval_level.rank

    @property
    def is_batch(self) -> bool:
        return self.request_type == RequestType.BATCH.value

    def to_dict(self, *, include_token: bool = False) -> dict:
        data = {
            "id": self.id,
            "request_code": self.request_code,
            "request_type": self.request_type,
            "override_type": self.override_type,
            "threshold_rule_id": self.threshold_rule_id,
            "parent_request_id": self.parent_request_id,
            "batch_label": self.batch_label,
            "channel": self.channel,
            "product_id": self.product_id,
            "customer_id": self.customer_id,
            "category": self.category,
            "cart_ref": self.cart_ref,
            "line_ref": self.line_ref,
            "requester_id": self.requester_id,
            "target_approver_id": self.target_approver_id,
            "resolved_by_id": self.resolved_by_id,
            "delegation_id": self.delegation_id,
            "original_value": _decimal_str(self.original_value),
            "requested_value": _decimal_str(self.requested_value),
            "approved_value": _decimal_str(self.approved_value),
            "cost_value": _decimal_str(self.cost_value),
            "margin_value": _decimal_str(self.margin_value),
            "margin_percent": _decimal_str(self.margin_percent),
            "status": self.status,
            "required_level": self.required_level,
            "tier": self.tier,
            "auto_approved": self.auto_approved,
            "exception_applied": self.exception_applied,
            "method": self.method,
            "created_at": to_utc_z(self.created_at),
            "responded_at": to_utc_z(self.responded_at),
            "response_time_ms": self.response_time_ms,
            "expires_at": to_utc_z(self.expires_at),
            "token_used": self.token_used,
            "token_expires_at": to_utc_z(self.token_expires_at),
            "reason": self.reason,
            "denial_reason_code": self.denial_reason_code,
            "denial_reason_note": self.denial_reason_note,
        }
        if include_token:
            data["approval_token"] = self.approval_token
        return data


class CounterOffer(db.Model):
    """
    Approver's alternative value for an open request.

    Only the most recent pending counter-offer is actionable; issuing a new
    one marks the previous pending offer as superseded.
    """
    __tablename__ = "approval_counter_offers"
    __table_args__ = (
        db.Index("ix_approval_counter_offers_request_status", "approval_request_id", "status"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    approval_request_id = db.Column(db.Integer, db.ForeignKey("approval_requests.id"), nullable=False)
    created_by_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False)
    delegation_id = db.Column(db.Integer, db.ForeignKey("approval_delegations.id"), nullable=True)
    approver_level = db.Column(db.String(32), nullable=False)

    price = db.Column(db.Numeric(12, 4), nullable=False)
    margin_value = db.Column(db.Numeric(12, 4), nullable=True)
    margin_percent = db.Column(db.Numeric(12, 4), nullable=True)

    status = db.Column(db.String(16), nullable=False, default="pending")
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    responded_at = db.Column(db.DateTime(timezone=True), nullable=True)

    created_by = db.relationship("User")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "approval_request_id": self.approval_request_id,
            "created_by_id": self.created_by_id,
            "approver_level": self.approver_level,
            "price": _decimal_str(self.price),
            "margin_value": _decimal_str(self.margin_value),
            "margin_percent": _decimal_str(self.margin_percent),
            "status": self.status,
            "created_at": to_utc_z(self.created_at),
            "responded_at": to_utc_z(self.responded_at),
        }
