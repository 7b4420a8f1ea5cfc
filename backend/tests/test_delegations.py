"""
Delegation registry tests.

Verifies:
- Only managers and above delegate, never above their own tier
- Effective delegated level is min(delegator level, max_tier)
- Direct authority is preferred over delegated authority
- Revocation, expiry and not-yet-started windows
- Eligible approver listing (direct + delegated, online first)
"""

from datetime import timedelta

import pytest

from apos_overrides.enums import ApprovalLevel
from apos_overrides.extensions import db
from apos_overrides.models import Delegation
from apos_overrides.services import auth_service, delegation_service
from apos_overrides.time_utils import utcnow
from apos_overrides.validation import (
    AuthorizationError,
    ConflictError,
    NotFoundError,
    ValidationError,
)


def _grant(delegator, delegate, max_tier, hours=1, **kwargs):
    return delegation_service.grant(
        delegator.id,
        delegate.id,
        max_tier,
        expires_at=utcnow() + timedelta(hours=hours),
        **kwargs,
    )


class TestGrant:
    def test_manager_delegates_to_shift_lead(self, manager, shift_lead):
        delegation = _grant(manager, shift_lead, 2, reason="Lunch break")

        grant = delegation_service.resolve_authority(shift_lead.id, ApprovalLevel.MANAGER)

        assert grant.is_delegated is True
        assert grant.delegation_id == delegation.id
        assert grant.level is ApprovalLevel.MANAGER

    def test_cannot_delegate_above_own_tier(self, manager, shift_lead):
        with pytest.raises(AuthorizationError) as exc:
            _grant(manager, shift_lead, 3)
        assert exc.value.details["delegator_tier"] == 2

    @pytest.mark.parametrize("role_fixture", ["salesperson", "shift_lead"])
    def test_below_manager_cannot_delegate(self, request, role_fixture, other_salesperson):
        delegator = request.getfixturevalue(role_fixture)
        with pytest.raises(AuthorizationError):
            _grant(delegator, other_salesperson, 1)

    def test_cannot_delegate_to_self(self, manager):
        with pytest.raises(ValidationError):
            _grant(manager, manager, 1)

    @pytest.mark.parametrize("max_tier", [0, 5, True])
    def test_max_tier_range(self, manager, shift_lead, max_tier):
        with pytest.raises(ValidationError):
            _grant(manager, shift_lead, max_tier)

    def test_expiry_required_and_after_start(self, manager, shift_lead):
        with pytest.raises(ValidationError):
            delegation_service.grant(manager.id, shift_lead.id, 1)
        with pytest.raises(ValidationError):
            delegation_service.grant(
                manager.id, shift_lead.id, 1,
                starts_at=utcnow(), expires_at=utcnow() - timedelta(minutes=1),
            )

    def test_unknown_delegate(self, manager):
        with pytest.raises(NotFoundError):
            delegation_service.grant(manager.id, 9999, 1, expires_at=utcnow() + timedelta(hours=1))

    def test_regrant_replaces_previous(self, manager, shift_lead):
        first = _grant(manager, shift_lead, 1)
        second = _grant(manager, shift_lead, 2)

        active = db.session.query(Delegation).filter(Delegation.active.is_(True)).all()
        assert [d.id for d in active] == [second.id]
        db.session.refresh(first)
        assert first.active is False


class TestAuthority:
    def test_effective_level_capped_by_delegator(self, area_manager, salesperson):
        _grant(area_manager, salesperson, 2)

        assert delegation_service.is_authorized(salesperson.id, ApprovalLevel.MANAGER) is True
        assert delegation_service.is_authorized(salesperson.id, ApprovalLevel.AREA_MANAGER) is False

    def test_direct_authority_preferred(self, area_manager, manager):
        _grant(area_manager, manager, 2)

        grant = delegation_service.resolve_authority(manager.id, ApprovalLevel.MANAGER)

        assert grant.is_delegated is False
        assert grant.level is ApprovalLevel.MANAGER

    def test_delegation_raises_authority_above_role(self, area_manager, manager):
        _grant(area_manager, manager, 3)

        grant = delegation_service.resolve_authority(manager.id, ApprovalLevel.AREA_MANAGER)

        assert grant.is_delegated is True
        assert grant.level is ApprovalLevel.AREA_MANAGER

    def test_no_authority(self, salesperson):
        with pytest.raises(AuthorizationError) as exc:
            delegation_service.resolve_authority(salesperson.id, ApprovalLevel.SHIFT_LEAD)
        assert exc.value.details["required_tier"] == 1

    def test_max_authority(self, manager, shift_lead, salesperson):
        _grant(manager, shift_lead, 2)

        assert delegation_service.max_authority(shift_lead.id) is ApprovalLevel.MANAGER
        assert delegation_service.max_authority(manager.id) is ApprovalLevel.MANAGER
        assert delegation_service.max_authority(salesperson.id) is None

    def test_demoted_delegator_passes_nothing_on(self, manager, shift_lead):
        _grant(manager, shift_lead, 2)
        auth_service.set_role(manager.id, "salesperson")

        assert delegation_service.is_authorized(shift_lead.id, ApprovalLevel.MANAGER) is False


class TestWindows:
    def test_revoke(self, manager, shift_lead):
        delegation = _grant(manager, shift_lead, 2)

        revoked = delegation_service.revoke(delegation.id, manager.id)

        assert revoked.active is False
        assert revoked.revoked_at is not None
        assert delegation_service.is_authorized(shift_lead.id, ApprovalLevel.MANAGER) is False

    def test_only_delegator_revokes(self, manager, shift_lead, area_manager):
        delegation = _grant(manager, shift_lead, 2)

        with pytest.raises(AuthorizationError):
            delegation_service.revoke(delegation.id, area_manager.id)

    def test_revoke_twice(self, manager, shift_lead):
        delegation = _grant(manager, shift_lead, 2)
        delegation_service.revoke(delegation.id, manager.id)

        with pytest.raises(ConflictError):
            delegation_service.revoke(delegation.id, manager.id)

    def test_expired_delegation(self, manager, shift_lead):
        now = utcnow()
        delegation_service.grant(
            manager.id, shift_lead.id, 2,
            starts_at=now - timedelta(hours=2), expires_at=now - timedelta(hours=1),
        )

        assert delegation_service.is_authorized(shift_lead.id, ApprovalLevel.MANAGER) is False

    def test_future_delegation(self, manager, shift_lead):
        now = utcnow()
        delegation_service.grant(
            manager.id, shift_lead.id, 2,
            starts_at=now + timedelta(hours=1), expires_at=now + timedelta(hours=2),
        )

        assert delegation_service.is_authorized(shift_lead.id, ApprovalLevel.MANAGER) is False
        assert delegation_service.is_authorized(
            shift_lead.id, ApprovalLevel.MANAGER, now=now + timedelta(minutes=90)
        ) is True

    def test_list_active(self, manager, shift_lead):
        _grant(manager, shift_lead, 2)

        mine = delegation_service.list_active(manager.id)
        theirs = delegation_service.list_active(shift_lead.id)

        assert len(mine["outgoing"]) == 1 and mine["incoming"] == []
        assert len(theirs["incoming"]) == 1
        assert theirs["incoming"][0]["delegator_name"] == manager.display_name


class TestEligibleApprovers:
    def test_direct_and_delegated(self, staff, make_user):
        floater = make_user("floater", "salesperson", "Fran Floater")
        _grant(staff["manager"], floater, 2)

        entries = delegation_service.list_eligible_approvers(ApprovalLevel.MANAGER)
        by_user = {entry["user_id"]: entry for entry in entries}

        assert set(by_user) == {
            staff["manager"].id, staff["area_manager"].id, staff["admin"].id, floater.id,
        }
        assert by_user[floater.id]["delegated"] is True
        assert by_user[floater.id]["delegated_by_id"] == staff["manager"].id
        assert by_user[staff["manager"].id]["delegated"] is False

    def test_online_approvers_first(self, staff):
        entries = delegation_service.list_eligible_approvers(
            ApprovalLevel.MANAGER, online_user_ids=[staff["admin"].id]
        )

        assert entries[0]["user_id"] == staff["admin"].id
        assert entries[0]["online"] is True
        assert all(entry["online"] is False for entry in entries[1:])

    def test_lowest_tier_first_among_offline(self, staff):
        entries = delegation_service.list_eligible_approvers(ApprovalLevel.SHIFT_LEAD)

        assert [entry["tier"] for entry in entries] == [1, 2, 3, 4]

    def test_eligible_delegates_exclude_self(self, staff):
        delegates = delegation_service.list_eligible_delegates(staff["manager"].id)

        assert staff["manager"] not in delegates
        assert delegates[0].role == "salesperson"
