# Overview: Service-layer operations for batch approvals; one decision over several price lines.

"""
Batch Override Requests

A cart with several price changes asks once. The parent request (type
"batch") carries the cart-level totals and the highest tier among its
lines; each line is a child request (type "child") with its own values,
tier and, once approved, its own token.

- Every line needs no approval  -> parent and children approved at once.
- Otherwise                     -> parent and all children pending; the
                                   parent decision applies to every child
                                   still pending, in one transaction.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal

from ..enums import (
    ApprovalLevel,
    AuditOutcome,
    RequestStatus,
    RequestType,
    VerificationMethod,
)
from ..extensions import db
from ..models import ApprovalRequest
from ..time_utils import utcnow
from ..validation import NotFoundError, ValidationError, enforce_price_range, parse_decimal, parse_int
from . import audit_service, token_service
from .approval_service import (
    approver_recipients,
    authorize,
    build_context,
    denial_text,
    ensure_actionable,
    load_active_user,
    margin_columns,
    new_request_code,
    require_denial_reason,
    require_method,
    response_time_ms,
    transition,
)
from .concurrency import conditional_update
from .notification_service import LifecycleEvent
from .policy_service import PolicyDecision
from .runtime import policy_evaluator, publish

MAX_BATCH_ITEMS = 50


@dataclass(frozen=True)
class BatchLine:
    original_value: Decimal
    requested_value: Decimal
    cost_value: Decimal | None
    product_id: int | None
    category: str | None
    line_ref: str | None


def parse_items(items) -> list[BatchLine]:
    """Validate every line before anything is written."""
    if not isinstance(items, list) or not items:
        raise ValidationError("items must be a non-empty list")
    if len(items) > MAX_BATCH_ITEMS:
        raise ValidationError(f"A batch may contain at most {MAX_BATCH_ITEMS} items")
    lines = []
    for index, item in enumerate(items):
        if not isinstance(item, dict):
            raise ValidationError(f"items[{index}] must be an object")
        original = parse_decimal(item.get("original_value"), f"items[{index}].original_value")
        requested = parse_decimal(item.get("requested_value"), f"items[{index}].requested_value")
        enforce_price_range(original, requested, field=f"items[{index}].requested_value")
        lines.append(BatchLine(
            original_value=original,
            requested_value=requested,
            cost_value=parse_decimal(item.get("cost_value"), f"items[{index}].cost_value", allow_none=True),
            product_id=parse_int(item.get("product_id"), f"items[{index}].product_id", allow_none=True),
            category=item.get("category"),
            line_ref=item.get("line_ref"),
        ))
    return lines


def _sum(values) -> Decimal | None:
    values = list(values)
    if any(v is None for v in values):
        return None
    return sum(values, Decimal("0"))


def create_batch(
    requester_id: int,
    items,
    *,
    channel: str | None = None,
    customer_id: int | None = None,
    cart_ref: str | None = None,
    reason: str | None = None,
    batch_label: str | None = None,
    target_approver_id: int | None = None,
) -> ApprovalRequest:
    lines = parse_items(items)
    requester = load_active_user(requester_id, "Requester")
    if target_approver_id is not None:
        load_active_user(target_approver_id, "Target approver")
    evaluator = policy_evaluator()

    evaluated: list[tuple[BatchLine, PolicyDecision, object]] = []
    for line in lines:
        context = build_context(
            channel,
            category=line.category,
            product_id=line.product_id,
            customer_id=customer_id,
            user_id=requester_id,
        )
        evaluation = evaluator.evaluate_price_change(
            line.original_value, line.requested_value, line.cost_value, context,
        )
        evaluated.append((line, evaluation.decision, evaluation))

    def level_of(decision: PolicyDecision) -> ApprovalLevel:
        return decision.required_level if decision.requires_approval else ApprovalLevel.lowest()

    strictest = max((d for _, d, _ in evaluated), key=lambda d: level_of(d).rank)
    all_auto = not any(d.requires_approval for _, d, _ in evaluated)
    now = utcnow()
    status = RequestStatus.APPROVED if all_auto else RequestStatus.PENDING
    context = build_context(channel, customer_id=customer_id, user_id=requester_id)

    parent = ApprovalRequest(
        request_code=new_request_code(),
        request_type=RequestType.BATCH.value,
        override_type=strictest.override_type.value,
        threshold_rule_id=strictest.rule.id if strictest.rule else None,
        batch_label=batch_label,
        channel=context.channel.value,
        customer_id=customer_id,
        cart_ref=cart_ref,
        requester_id=requester.id,
        target_approver_id=target_approver_id,
        original_value=_sum(line.original_value for line in lines),
        requested_value=_sum(line.requested_value for line in lines),
        cost_value=_sum(line.cost_value for line in lines),
        status=status.value,
        required_level=level_of(strictest).value,
        auto_approved=all_auto,
        reason=reason,
        created_at=now,
    )
    if all_auto:
        parent.approved_value = parent.requested_value
        parent.method = VerificationMethod.AUTO.value
        parent.responded_at = now
        parent.response_time_ms = 0
    db.session.add(parent)
    db.session.flush()

    for line, decision, evaluation in evaluated:
        child = ApprovalRequest(
            request_code=new_request_code(),
            request_type=RequestType.CHILD.value,
            parent_request_id=parent.id,
            override_type=decision.override_type.value,
            threshold_rule_id=decision.rule.id if decision.rule else None,
            channel=parent.channel,
            product_id=line.product_id,
            customer_id=customer_id,
            category=line.category,
            cart_ref=cart_ref,
            line_ref=line.line_ref,
            requester_id=requester.id,
            original_value=line.original_value,
            requested_value=line.requested_value,
            cost_value=line.cost_value,
            margin_value=evaluation.margin_value,
            margin_percent=evaluation.margin_percent,
            status=status.value,
            required_level=level_of(decision).value,
            exception_applied=decision.exception_applied,
            auto_approved=all_auto,
            created_at=now,
        )
        if all_auto:
            child.approved_value = line.requested_value
            child.method = VerificationMethod.AUTO.value
            child.responded_at = now
            child.response_time_ms = 0
            for column, value in token_service.issue(now).columns().items():
                setattr(child, column, value)
        db.session.add(child)
        if all_auto:
            db.session.flush()
            audit_service.record(
                child,
                AuditOutcome.EXCEPTION_APPLIED if decision.exception_applied else AuditOutcome.AUTO_APPROVED,
                method=VerificationMethod.AUTO,
                override_value=line.requested_value,
                rule_snapshot=decision.rule.snapshot() if decision.rule else None,
            )
    db.session.commit()

    if not all_auto:
        publish(LifecycleEvent(
            name="batch-request-created",
            payload={
                "request": parent.to_dict(),
                "item_count": len(lines),
                "requester_name": requester.display_name,
            },
            user_ids=approver_recipients(parent),
        ))
    return parent


def _load_batch(parent_id: int) -> ApprovalRequest:
    parent = db.session.get(ApprovalRequest, parent_id)
    if parent is None or parent.request_type != RequestType.BATCH.value:
        raise NotFoundError("Batch request not found")
    return parent


def _pending_children(parent: ApprovalRequest) -> list[ApprovalRequest]:
    return [c for c in parent.children if c.status == RequestStatus.PENDING.value]


def approve_batch(
    parent_id: int,
    *,
    actor_id: int | None = None,
    method: str = VerificationMethod.REMOTE.value,
    pin: str | None = None,
    note: str | None = None,
) -> ApprovalRequest:
    method = require_method(method, pin)
    parent = _load_batch(parent_id)
    now = utcnow()
    ensure_actionable(parent, now)

    grant = authorize(parent, actor_id=actor_id, method=method, pin=pin)
    now = utcnow()
    children = _pending_children(parent)
    common = {
        "resolved_by_id": grant.user.id,
        "delegation_id": grant.delegation_id,
        "method": method.value,
        "responded_at": now,
        "response_time_ms": response_time_ms(parent, now),
    }
    transition(parent.id, RequestStatus.APPROVED, dict(common, approved_value=parent.requested_value))

    for child in children:
        values = dict(common, approved_value=child.requested_value)
        values.update(margin_columns(child.cost_value, child.requested_value))
        values.update(token_service.issue(now).columns())
        transition(child.id, RequestStatus.APPROVED, values, from_statuses=(RequestStatus.PENDING.value,))
        audit_service.record(
            child,
            AuditOutcome.APPROVED,
            approver_id=grant.user.id,
            approval_level=grant.level.value,
            method=method,
            delegation_id=grant.delegation_id,
            override_value=child.requested_value,
            reason=note,
        )
    db.session.commit()

    publish(LifecycleEvent(
        name="batch-approved",
        payload={
            "request": parent.to_dict(),
            "children": [child.to_dict(include_token=True) for child in parent.children],
            "approver_name": grant.user.display_name,
        },
        user_ids=(parent.requester_id,),
    ))
    return parent


def deny_batch(
    parent_id: int,
    *,
    reason_code: str | None = None,
    actor_id: int | None = None,
    method: str = VerificationMethod.REMOTE.value,
    pin: str | None = None,
    note: str | None = None,
) -> ApprovalRequest:
    method = require_method(method, pin)
    parent = _load_batch(parent_id)
    reason_code = require_denial_reason([parent, *parent.children], reason_code)
    now = utcnow()
    ensure_actionable(parent, now)

    grant = authorize(parent, actor_id=actor_id, method=method, pin=pin, count_quota=False)
    now = utcnow()
    children = _pending_children(parent)
    common = {
        "resolved_by_id": grant.user.id,
        "delegation_id": grant.delegation_id,
        "method": method.value,
        "responded_at": now,
        "response_time_ms": response_time_ms(parent, now),
        "denial_reason_code": reason_code,
        "denial_reason_note": note,
    }
    transition(parent.id, RequestStatus.DENIED, common)
    child_ids = [child.id for child in children]
    if child_ids:
        conditional_update(
            ApprovalRequest,
            [ApprovalRequest.id.in_(child_ids), ApprovalRequest.status == RequestStatus.PENDING.value],
            dict(common, status=RequestStatus.DENIED.value),
        )
    for child in children:
        audit_service.record(
            child,
            AuditOutcome.DENIED,
            approver_id=grant.user.id,
            approval_level=grant.level.value,
            method=method,
            delegation_id=grant.delegation_id,
            denial_reason=denial_text(reason_code, note),
        )
    db.session.commit()

    publish(LifecycleEvent(
        name="batch-denied",
        payload={
            "request": parent.to_dict(),
            "reason_code": reason_code,
            "note": note,
            "approver_name": grant.user.display_name,
        },
        user_ids=(parent.requester_id,),
    ))
    return parent


def get_batch(parent_id: int, viewer_id: int | None = None) -> dict:
    parent = _load_batch(parent_id)
    is_requester = viewer_id is not None and viewer_id == parent.requester_id
    data = parent.to_dict()
    data["children"] = [child.to_dict(include_token=is_requester) for child in parent.children]
    return data


def consume_batch_tokens(parent_id: int, cart_ref: str | None = None) -> list[dict]:
    return [r.to_dict() for r in token_service.consume_batch(parent_id, cart_ref)]
