"""
Batch approval tests.

Verifies:
- One request per cart: tier is the strictest line's
- All-auto batches approve every line with its own token
- Approving or denying the batch resolves every pending line
- Batch lines are not resolved one by one
- Batch tokens are redeemed together
"""

from decimal import Decimal

import pytest

from apos_overrides.enums import AuditOutcome
from apos_overrides.extensions import db
from apos_overrides.models import OverrideAuditEntry
from apos_overrides.services import approval_service, batch_service, rule_service
from apos_overrides.validation import (
    AuthorizationError,
    ConflictError,
    ValidationError,
)


def _line(requested, original="100", cost="60", line_ref=None, **extra):
    item = {"original_value": original, "requested_value": requested, "cost_value": cost}
    if line_ref:
        item["line_ref"] = line_ref
    item.update(extra)
    return item


@pytest.fixture
def mixed_batch(salesperson, manager):
    """Three lines: auto, manager, auto."""
    return batch_service.create_batch(
        salesperson.id,
        [_line("95", line_ref="a"), _line("85", line_ref="b"), _line("98", line_ref="c")],
        cart_ref="cart-42",
        batch_label="Bundle deal",
    )


class TestCreate:
    def test_pending_at_strictest_level(self, mixed_batch):
        assert mixed_batch.request_type == "batch"
        assert mixed_batch.status == "pending"
        assert mixed_batch.required_level == "manager"
        assert mixed_batch.original_value == Decimal("300")
        assert mixed_batch.requested_value == Decimal("278")
        assert mixed_batch.batch_label == "Bundle deal"

        children = mixed_batch.children
        assert [c.line_ref for c in children] == ["a", "b", "c"]
        assert all(c.status == "pending" for c in children)
        assert [c.required_level for c in children] == ["shift_lead", "manager", "shift_lead"]
        assert all(c.cart_ref == "cart-42" for c in children)

    def test_all_auto(self, salesperson):
        parent = batch_service.create_batch(salesperson.id, [_line("95"), _line("97")])

        assert parent.status == "approved"
        assert parent.auto_approved is True
        assert parent.approval_token is None
        for child in parent.children:
            assert child.status == "approved"
            assert len(child.approval_token) == 64

        outcomes = db.session.query(OverrideAuditEntry.outcome).all()
        assert sorted(o for (o,) in outcomes) == [AuditOutcome.AUTO_APPROVED.value] * 2

    def test_below_cost_line_needs_admin(self, salesperson):
        parent = batch_service.create_batch(salesperson.id, [_line("85"), _line("40")])

        assert parent.required_level == "admin"
        assert parent.override_type == "price_below_cost"

    @pytest.mark.parametrize(
        "items",
        [
            [],
            "not-a-list",
            [_line("120")],
            [_line("0")],
            ["oops"],
            [_line("95")] * (batch_service.MAX_BATCH_ITEMS + 1),
        ],
    )
    def test_invalid_items(self, salesperson, items):
        with pytest.raises(ValidationError):
            batch_service.create_batch(salesperson.id, items)

    def test_unknown_cost_skips_margin(self, salesperson):
        parent = batch_service.create_batch(salesperson.id, [_line("95", cost=None)])

        assert parent.cost_value is None
        assert parent.status == "approved"


class TestResolve:
    def test_approve_batch(self, mixed_batch, manager):
        approved = batch_service.approve_batch(mixed_batch.id, actor_id=manager.id)

        assert approved.status == "approved"
        assert approved.resolved_by_id == manager.id
        tokens = [c.approval_token for c in approved.children]
        assert all(c.status == "approved" for c in approved.children)
        assert len(set(tokens)) == 3

        outcomes = db.session.query(OverrideAuditEntry).filter(
            OverrideAuditEntry.outcome == AuditOutcome.APPROVED.value
        ).all()
        assert {entry.request_id for entry in outcomes} == {c.id for c in approved.children}

    def test_approve_needs_strictest_authority(self, mixed_batch, shift_lead):
        with pytest.raises(AuthorizationError):
            batch_service.approve_batch(mixed_batch.id, actor_id=shift_lead.id)

    def test_deny_batch(self, mixed_batch, manager):
        denied = batch_service.deny_batch(mixed_batch.id, reason_code="bundle", actor_id=manager.id, note="No")

        assert denied.status == "denied"
        assert all(c.status == "denied" for c in denied.children)
        assert all(c.denial_reason_code == "bundle" for c in denied.children)

    def test_deny_without_reason(self, mixed_batch, manager):
        denied = batch_service.deny_batch(mixed_batch.id, reason_code="", actor_id=manager.id)

        assert denied.status == "denied"
        assert all(c.denial_reason_code is None for c in denied.children)

    def test_deny_requires_reason_when_a_rule_does(self, mixed_batch, manager):
        for rule in rule_service.list_rules():
            rule_service.update_rule(rule.id, {"require_reason": True})

        with pytest.raises(ValidationError):
            batch_service.deny_batch(mixed_batch.id, actor_id=manager.id)
        assert batch_service.deny_batch(mixed_batch.id, reason_code="bundle", actor_id=manager.id).status == "denied"

    def test_lines_are_not_resolved_individually(self, mixed_batch, manager):
        child = mixed_batch.children[1]

        with pytest.raises(ValidationError):
            approval_service.approve(child.id, actor_id=manager.id)
        with pytest.raises(ValidationError):
            approval_service.cancel(child.id, requester_id=mixed_batch.requester_id)

    def test_cancel_batch_cancels_lines(self, mixed_batch, salesperson, manager):
        approval_service.cancel(mixed_batch.id, requester_id=salesperson.id)

        assert mixed_batch.status == "cancelled"
        assert all(c.status == "cancelled" for c in mixed_batch.children)
        with pytest.raises(ConflictError):
            batch_service.approve_batch(mixed_batch.id, actor_id=manager.id)

    def test_get_batch_shows_tokens_to_requester(self, mixed_batch, salesperson, manager):
        batch_service.approve_batch(mixed_batch.id, actor_id=manager.id)

        mine = batch_service.get_batch(mixed_batch.id, salesperson.id)
        theirs = batch_service.get_batch(mixed_batch.id, manager.id)

        assert all("approval_token" in c for c in mine["children"])
        assert not any("approval_token" in c for c in theirs["children"])


class TestBatchTokens:
    def test_consume_all_lines(self, mixed_batch, manager):
        batch_service.approve_batch(mixed_batch.id, actor_id=manager.id)

        redeemed = batch_service.consume_batch_tokens(mixed_batch.id, cart_ref="cart-42")

        assert [r["line_ref"] for r in redeemed] == ["a", "b", "c"]
        with pytest.raises(ConflictError):
            batch_service.consume_batch_tokens(mixed_batch.id)

    def test_consume_pending_batch(self, mixed_batch):
        with pytest.raises(ConflictError):
            batch_service.consume_batch_tokens(mixed_batch.id)

    def test_wrong_cart(self, mixed_batch, manager):
        batch_service.approve_batch(mixed_batch.id, actor_id=manager.id)

        with pytest.raises(ValidationError):
            batch_service.consume_batch_tokens(mixed_batch.id, cart_ref="cart-99")
