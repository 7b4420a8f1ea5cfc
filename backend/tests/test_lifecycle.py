"""
Override request lifecycle tests.

Verifies:
- Creation: auto-approval with a token, or pending at the required tier
- Remote and PIN approval, delegated approval, denial, cancellation
- Requesters never resolve their own requests
- Exactly one resolution wins; late resolutions are refused
- Refused authorization attempts are audited
- Approval queue and eligible approvers
"""

from datetime import timedelta
from decimal import Decimal

import pytest

from apos_overrides.enums import AuditOutcome, RequestStatus
from apos_overrides.extensions import db
from apos_overrides.models import OverrideAuditEntry
from apos_overrides.services import approval_service, credential_service, delegation_service
from apos_overrides.time_utils import utcnow
from apos_overrides.validation import (
    AuthorizationError,
    ConflictError,
    ExpiredError,
    NotFoundError,
    RateLimitError,
    ValidationError,
)


PIN = "4821"


def _audit_outcomes(request_id):
    rows = db.session.query(OverrideAuditEntry).filter_by(request_id=request_id).order_by(OverrideAuditEntry.id).all()
    return [row.outcome for row in rows]


# =============================================================================
# CREATION
# =============================================================================


class TestCreate:
    def test_small_discount_is_auto_approved(self, price_override, salesperson):
        request = price_override(salesperson, "95")

        assert request.status == "approved"
        assert request.auto_approved is True
        assert request.method == "auto"
        assert request.tier == 1
        assert len(request.approval_token) == 64
        assert request.token_expires_at > utcnow()
        assert _audit_outcomes(request.id) == [AuditOutcome.AUTO_APPROVED.value]

    def test_fifteen_percent_is_pending_for_manager(self, pending_request):
        assert pending_request.status == "pending"
        assert pending_request.override_type == "discount_percent"
        assert pending_request.required_level == "manager"
        assert pending_request.margin_percent == Decimal("29.41")
        assert pending_request.approval_token is None
        assert _audit_outcomes(pending_request.id) == []

    def test_below_cost_needs_admin(self, price_override, salesperson):
        request = price_override(salesperson, "40")

        assert request.override_type == "price_below_cost"
        assert request.required_level == "admin"
        assert request.tier == 4

    def test_created_response_shape(self, salesperson):
        created = approval_service.create_price_override(salesperson.id, Decimal("100"), Decimal("95"))

        data = created.to_dict()
        assert data["status"] == "approved"
        assert data["token"] == created.request.approval_token
        assert data["message"]

    @pytest.mark.parametrize(
        "override_type,requested,original",
        [
            ("refund_amount", "0", None),
            ("refund_amount", "150", "100"),
            ("discount_percent", "90", None),
            ("discount_percent", "120", "100"),
            ("drawer_adjustment", "0", None),
            ("tip_adjustment", "10", None),
        ],
    )
    def test_invalid_values(self, salesperson, override_type, requested, original):
        with pytest.raises(ValidationError):
            approval_service.create_request(
                salesperson.id,
                override_type,
                Decimal(requested),
                None if original is None else Decimal(original),
            )

    def test_refund_ladder(self, salesperson, manager):
        small = approval_service.create_request(salesperson.id, "refund_amount", Decimal("50")).request
        large = approval_service.create_request(salesperson.id, "refund_amount", Decimal("300")).request

        assert small.status == "approved"
        assert large.status == "pending"
        assert large.required_level == "manager"

    def test_drawer_adjustment_uses_absolute_value(self, salesperson):
        request = approval_service.create_request(salesperson.id, "drawer_adjustment", Decimal("-40")).request

        assert request.status == "pending"
        assert request.required_level == "manager"

    def test_reason_required(self, salesperson):
        with pytest.raises(ValidationError):
            approval_service.create_request(salesperson.id, "refund_no_receipt", Decimal("30"))

        request = approval_service.create_request(
            salesperson.id, "refund_no_receipt", Decimal("30"), reason="Gift return, no receipt"
        ).request
        assert request.status == "pending"
        assert request.reason == "Gift return, no receipt"

    def test_expiry_must_be_in_future(self, price_override, salesperson):
        with pytest.raises(ValidationError):
            price_override(salesperson, "85", expires_at=utcnow() - timedelta(minutes=1))

    def test_target_approver_must_have_authority(self, price_override, salesperson, shift_lead):
        with pytest.raises(ValidationError) as exc:
            price_override(salesperson, "85", target_approver_id=shift_lead.id)
        assert exc.value.details["required_level"] == "manager"

    def test_inactive_requester(self, price_override, salesperson):
        salesperson.is_active = False
        db.session.commit()

        with pytest.raises(NotFoundError):
            price_override(salesperson, "85")


# =============================================================================
# RESOLUTION
# =============================================================================


class TestApprove:
    def test_remote_approval(self, pending_request, manager):
        approved = approval_service.approve(pending_request.id, actor_id=manager.id, note="Loyal customer")

        assert approved.status == "approved"
        assert approved.approved_value == Decimal("85")
        assert approved.resolved_by_id == manager.id
        assert approved.method == "remote"
        assert approved.response_time_ms >= 0
        assert len(approved.approval_token) == 64
        assert _audit_outcomes(pending_request.id) == [AuditOutcome.APPROVED.value]

        entry = db.session.query(OverrideAuditEntry).filter_by(request_id=pending_request.id).one()
        assert entry.approver_id == manager.id
        assert entry.approval_level == "manager"
        assert entry.difference_value == Decimal("15")
        assert entry.rule_snapshot["rule_type"] == "discount_percent"

    def test_higher_authority_may_approve(self, pending_request, admin):
        approved = approval_service.approve(pending_request.id, actor_id=admin.id)

        assert approved.resolved_by_id == admin.id

    def test_insufficient_authority_is_audited(self, pending_request, shift_lead):
        with pytest.raises(AuthorizationError):
            approval_service.approve(pending_request.id, actor_id=shift_lead.id)

        db.session.refresh(pending_request)
        assert pending_request.status == "pending"
        assert _audit_outcomes(pending_request.id) == [AuditOutcome.AUTHORIZATION_DENIED.value]

    def test_requester_cannot_approve_own_request(self, price_override, manager, area_manager):
        request = price_override(manager, "85")

        with pytest.raises(AuthorizationError):
            approval_service.approve(request.id, actor_id=manager.id)
        with pytest.raises(AuthorizationError):
            approval_service.deny(request.id, reason_code="policy", actor_id=manager.id)
        with pytest.raises(AuthorizationError):
            approval_service.counter(request.id, actor_id=manager.id, counter_value=Decimal("90"))

        assert _audit_outcomes(request.id) == [AuditOutcome.AUTHORIZATION_DENIED.value] * 3
        db.session.refresh(request)
        assert request.status == "pending"

    def test_only_one_resolution_wins(self, pending_request, manager, area_manager):
        approval_service.approve(pending_request.id, actor_id=manager.id)

        with pytest.raises(ConflictError):
            approval_service.approve(pending_request.id, actor_id=area_manager.id)
        with pytest.raises(ConflictError):
            approval_service.deny(pending_request.id, reason_code="policy", actor_id=area_manager.id)

    def test_pin_approval_identifies_approver(self, pending_request, manager, issue_pin):
        issue_pin(manager, pin=PIN)

        approved = approval_service.approve(pending_request.id, method="pin", pin=PIN)

        assert approved.resolved_by_id == manager.id
        assert approved.method == "pin"

    def test_wrong_pin_is_audited(self, pending_request, manager, issue_pin):
        issue_pin(manager, pin=PIN)

        with pytest.raises(AuthorizationError):
            approval_service.approve(pending_request.id, method="pin", pin="0000")

        assert _audit_outcomes(pending_request.id) == [AuditOutcome.AUTHORIZATION_DENIED.value]

    def test_pin_with_bad_format(self, pending_request):
        with pytest.raises(ValidationError):
            approval_service.approve(pending_request.id, method="pin", pin="12")

    def test_unknown_method(self, pending_request, manager):
        with pytest.raises(ValidationError):
            approval_service.approve(pending_request.id, actor_id=manager.id, method="counter")

    def test_delegated_pin_approval(self, pending_request, manager, shift_lead, issue_pin):
        delegation = delegation_service.grant(
            manager.id, shift_lead.id, 2, expires_at=utcnow() + timedelta(hours=1)
        )
        issue_pin(shift_lead, pin="5555")

        approved = approval_service.approve(
            pending_request.id, actor_id=shift_lead.id, method="pin", pin="5555"
        )

        assert approved.resolved_by_id == shift_lead.id
        assert approved.delegation_id == delegation.id
        entry = db.session.query(OverrideAuditEntry).filter_by(request_id=pending_request.id).one()
        assert entry.delegation_id == delegation.id
        assert entry.approval_level == "manager"

    def test_delegated_remote_approval(self, pending_request, manager, shift_lead):
        delegation_service.grant(manager.id, shift_lead.id, 2, expires_at=utcnow() + timedelta(hours=1))

        approved = approval_service.approve(pending_request.id, actor_id=shift_lead.id)

        assert approved.status == "approved"

    def test_remote_quota_is_enforced(self, price_override, salesperson, manager, issue_pin):
        issue_pin(manager, max_daily_overrides=1)
        first = price_override(salesperson, "85")
        second = price_override(salesperson, "84")

        approval_service.approve(first.id, actor_id=manager.id)
        with pytest.raises(RateLimitError):
            approval_service.approve(second.id, actor_id=manager.id)

    @pytest.mark.parametrize("method", ["remote", "pin"])
    def test_losing_a_race_spends_no_quota(
        self, pending_request, manager, area_manager, issue_pin, monkeypatch, method
    ):
        issue_pin(manager, max_daily_overrides=2)
        approval_service.approve(pending_request.id, actor_id=area_manager.id)
        # the loser read the request while it was still pending
        monkeypatch.setattr(approval_service, "ensure_actionable", lambda request, now: None)

        with pytest.raises(ConflictError):
            approval_service.approve(pending_request.id, actor_id=manager.id, method=method, pin=PIN)

        assert credential_service.lockout_status(manager.id)["remaining_today"] == 2


class TestDeny:
    def test_deny(self, pending_request, manager):
        denied = approval_service.deny(
            pending_request.id, reason_code="margin", actor_id=manager.id, note="Too deep"
        )

        assert denied.status == "denied"
        assert denied.denial_reason_code == "margin"
        assert denied.denial_reason_note == "Too deep"
        assert denied.approval_token is None
        entry = db.session.query(OverrideAuditEntry).filter_by(request_id=pending_request.id).one()
        assert entry.outcome == "denied"
        assert entry.denial_reason == "margin: Too deep"

    def test_reason_code_optional_by_default(self, pending_request, manager):
        denied = approval_service.deny(pending_request.id, reason_code="  ", actor_id=manager.id)

        assert denied.status == "denied"
        assert denied.denial_reason_code is None
        entry = db.session.query(OverrideAuditEntry).filter_by(request_id=pending_request.id).one()
        assert entry.denial_reason is None

    def test_reason_code_required_when_rule_asks(self, salesperson, manager):
        request = approval_service.create_request(
            salesperson.id, "refund_no_receipt", Decimal("30"), reason="Gift return, no receipt"
        ).request

        with pytest.raises(ValidationError):
            approval_service.deny(request.id, actor_id=manager.id)
        assert _audit_outcomes(request.id) == []

        denied = approval_service.deny(request.id, reason_code="no_receipt", actor_id=manager.id)
        assert denied.denial_reason_code == "no_receipt"

    def test_deny_needs_authority(self, pending_request, shift_lead):
        with pytest.raises(AuthorizationError):
            approval_service.deny(pending_request.id, reason_code="no", actor_id=shift_lead.id)


class TestCancel:
    def test_requester_cancels(self, pending_request, salesperson):
        cancelled = approval_service.cancel(pending_request.id, requester_id=salesperson.id, reason="Customer left")

        assert cancelled.status == "cancelled"
        assert _audit_outcomes(pending_request.id) == [AuditOutcome.CANCELLED.value]

    def test_only_requester_cancels(self, pending_request, manager):
        with pytest.raises(AuthorizationError):
            approval_service.cancel(pending_request.id, requester_id=manager.id)

    def test_cannot_cancel_closed_request(self, pending_request, salesperson, manager):
        approval_service.approve(pending_request.id, actor_id=manager.id)

        with pytest.raises(ConflictError):
            approval_service.cancel(pending_request.id, requester_id=salesperson.id)

    def test_cannot_approve_cancelled_request(self, pending_request, salesperson, manager):
        approval_service.cancel(pending_request.id, requester_id=salesperson.id)

        with pytest.raises(ConflictError):
            approval_service.approve(pending_request.id, actor_id=manager.id)


class TestDeadlines:
    def test_approving_after_expiry(self, price_override, salesperson, manager, backdate):
        request = price_override(salesperson, "85", expires_at=utcnow() + timedelta(minutes=5))
        backdate(request, expires_at=utcnow() - timedelta(seconds=1))

        with pytest.raises(ExpiredError):
            approval_service.approve(request.id, actor_id=manager.id)

        db.session.refresh(request)
        assert request.status == "expired"
        assert _audit_outcomes(request.id) == [AuditOutcome.EXPIRED.value]

    def test_approving_after_rule_timeout(self, pending_request, manager, backdate):
        backdate(pending_request, created_at=utcnow() - timedelta(minutes=10))

        with pytest.raises(ExpiredError):
            approval_service.approve(pending_request.id, actor_id=manager.id)

        db.session.refresh(pending_request)
        assert pending_request.status == "timed_out"

    def test_timed_out_request_stays_closed(self, pending_request, manager, backdate):
        backdate(pending_request, status=RequestStatus.TIMED_OUT.value)

        with pytest.raises(ExpiredError):
            approval_service.approve(pending_request.id, actor_id=manager.id)


# =============================================================================
# QUERIES
# =============================================================================


class TestQueries:
    def test_status_shows_token_to_requester_only(self, pending_request, salesperson, manager):
        approval_service.approve(pending_request.id, actor_id=manager.id)

        mine = approval_service.get_status(pending_request.id, salesperson.id)
        theirs = approval_service.get_status(pending_request.id, manager.id)

        assert len(mine["approval_token"]) == 64
        assert "approval_token" not in theirs
        assert mine["counter_offers"] == []
        assert mine["active_counter_offer"] is None

    def test_queue_by_authority(self, price_override, salesperson, shift_lead, manager, admin):
        manager_level = price_override(salesperson, "85")
        admin_level = price_override(salesperson, "40")

        manager_queue = [r["id"] for r in approval_service.pending_queue(manager.id)]
        admin_queue = [r["id"] for r in approval_service.pending_queue(admin.id)]

        assert manager_queue == [manager_level.id]
        assert admin_queue == [manager_level.id, admin_level.id]
        assert approval_service.pending_queue(shift_lead.id) == []
        assert approval_service.pending_queue(admin.id, tier=4)[0]["id"] == admin_level.id

    def test_queue_requires_authority(self, salesperson):
        with pytest.raises(AuthorizationError):
            approval_service.pending_queue(salesperson.id)

    def test_queue_respects_target_approver(self, price_override, salesperson, manager, area_manager):
        targeted = price_override(salesperson, "85", target_approver_id=area_manager.id)

        assert approval_service.pending_queue(manager.id) == []
        assert [r["id"] for r in approval_service.pending_queue(area_manager.id)] == [targeted.id]

    def test_eligible_approvers_exclude_requester(self, price_override, manager, area_manager, admin):
        request = price_override(manager, "85")

        ids = {entry["user_id"] for entry in approval_service.eligible_approvers(request.id)}

        assert ids == {area_manager.id, admin.id}

    def test_transition_table(self):
        assert approval_service.can_transition(RequestStatus.PENDING, RequestStatus.APPROVED)
        assert approval_service.can_transition(RequestStatus.COUNTERED, RequestStatus.PENDING)
        assert not approval_service.can_transition(RequestStatus.APPROVED, RequestStatus.DENIED)
        assert not approval_service.can_transition(RequestStatus.TIMED_OUT, RequestStatus.APPROVED)
