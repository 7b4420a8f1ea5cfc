# Overview: Service-layer operations for approval requests; the override request state machine.

"""
APOS Override Request Lifecycle

================================================================================
PURPOSE: Move an override request from creation to exactly one resolution
================================================================================

STATE MACHINE:
    pending   -> approved | denied | countered | cancelled | timed_out | expired
    countered -> pending (counter declined) | approved (counter accepted)
               | countered (new counter) | denied | cancelled

    Terminal: approved, denied, cancelled, timed_out, expired.

RULES (NON-NEGOTIABLE):
1. Every transition is a conditional UPDATE guarded by the expected prior
   status. Of two concurrent resolvers exactly one sees a changed row; the
   other gets ConflictError (or ExpiredError when the row was swept).
2. The audit row and the approver's daily quota increment commit in the
   same transaction as the status change; a lost race spends no quota.
3. Events are published only after commit.
4. An approved request carries exactly one single-use token.
5. Requests that need no approval are stored already approved (tier 1,
   token minted) so nothing is left pending.

AUTHORITY:
- remote: the session user approves; authority from role or delegation.
- pin:    the approver enters a PIN at the terminal; the credential owner
          is the approver. When a specific approver is named and their
          authority is delegated, the PIN only proves identity.
================================================================================
"""

from __future__ import annotations

import secrets
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal

from ..enums import (
    ApprovalLevel,
    AuditOutcome,
    Channel,
    CounterOfferStatus,
    OPEN_STATUSES,
    OverrideType,
    RequestStatus,
    RequestType,
    VerificationMethod,
)
from ..extensions import db
from ..models import ApprovalRequest, CounterOffer, User
from ..time_utils import utcnow
from ..validation import (
    AuthorizationError,
    ConflictError,
    ExpiredError,
    NotFoundError,
    ValidationError,
    enforce_price_range,
)
from . import audit_service, credential_service, delegation_service, token_service
from .concurrency import conditional_update
from .delegation_service import AuthorityGrant
from .notification_service import LifecycleEvent
from .policy_service import EvaluationContext, PolicyDecision, price_metrics
from .runtime import online_user_ids, policy_evaluator, publish
from .timeout_service import close_stale, stale_status


ALLOWED_TRANSITIONS = {
    (RequestStatus.PENDING, RequestStatus.APPROVED),
    (RequestStatus.PENDING, RequestStatus.DENIED),
    (RequestStatus.PENDING, RequestStatus.COUNTERED),
    (RequestStatus.PENDING, RequestStatus.CANCELLED),
    (RequestStatus.PENDING, RequestStatus.TIMED_OUT),
    (RequestStatus.PENDING, RequestStatus.EXPIRED),
    (RequestStatus.COUNTERED, RequestStatus.PENDING),
    (RequestStatus.COUNTERED, RequestStatus.APPROVED),
    (RequestStatus.COUNTERED, RequestStatus.COUNTERED),
    (RequestStatus.COUNTERED, RequestStatus.DENIED),
    (RequestStatus.COUNTERED, RequestStatus.CANCELLED),
}

RESOLUTION_METHODS = (VerificationMethod.PIN, VerificationMethod.REMOTE)


def can_transition(from_status: RequestStatus, to_status: RequestStatus) -> bool:
    return (from_status, to_status) in ALLOWED_TRANSITIONS


def sources_for(to_status: RequestStatus) -> tuple[str, ...]:
    return tuple(sorted(f.value for f, t in ALLOWED_TRANSITIONS if t is to_status))


@dataclass(frozen=True)
class CreatedRequest:
    request: ApprovalRequest
    decision: PolicyDecision

    def to_dict(self) -> dict:
        data = {
            "request": self.request.to_dict(include_token=True),
            "status": self.request.status,
            "tier": self.request.tier,
            "required_level": self.request.required_level,
            "auto_approved": self.request.auto_approved,
            "exception_applied": self.request.exception_applied,
            "message": self.decision.message,
        }
        if self.request.status == RequestStatus.APPROVED.value:
            data["token"] = self.request.approval_token
        return data


# =============================================================================
# SHARED HELPERS (also used by batch_service)
# =============================================================================

def new_request_code() -> str:
    while True:
        code = f"OVR-{secrets.token_hex(3).upper()}"
        exists = db.session.query(ApprovalRequest.id).filter(ApprovalRequest.request_code == code).first()
        if not exists:
            return code


def load_request(request_id: int) -> ApprovalRequest:
    request = db.session.get(ApprovalRequest, request_id)
    if request is None:
        raise NotFoundError("Approval request not found")
    return request


def load_active_user(user_id: int, label: str = "User") -> User:
    user = db.session.get(User, user_id)
    if user is None or not user.is_active:
        raise NotFoundError(f"{label} not found")
    return user


def raise_lost_race(request_id: int) -> None:
    """The conditional write changed nothing: explain why."""
    db.session.rollback()
    status = db.session.query(ApprovalRequest.status).filter(ApprovalRequest.id == request_id).scalar()
    if status is None:
        raise NotFoundError("Approval request not found")
    if RequestStatus(status).is_too_late:
        raise ExpiredError("Approval request is no longer open", status=status)
    raise ConflictError("Approval request was already resolved", status=status)


def transition(request_id: int, to_status: RequestStatus, values: dict, *, from_statuses=None) -> None:
    """Conditional status change; raises on a lost race."""
    sources = from_statuses or sources_for(to_status)
    updated = conditional_update(
        ApprovalRequest,
        [ApprovalRequest.id == request_id, ApprovalRequest.status.in_(sources)],
        dict(values, status=to_status.value),
    )
    if not updated:
        raise_lost_race(request_id)


def ensure_actionable(request: ApprovalRequest, now: datetime) -> None:
    """
    Reject resolution of closed requests. A pending request that is already
    past its deadline is closed here first, then reported as expired.
    """
    status = request.request_status
    if status.is_too_late:
        raise ExpiredError("Approval request is no longer open", status=status.value)
    if status.is_terminal:
        raise ConflictError("Approval request was already resolved", status=status.value)
    closing = stale_status(request, now)
    if closing is not None:
        event = close_stale(request.id, closing, now)
        if event is not None:
            publish(event)
        raise ExpiredError("Approval request timed out before it was resolved", status=closing.value)


def forbid_self_approval(request: ApprovalRequest, approver_id: int | None) -> None:
    if approver_id is not None and approver_id == request.requester_id:
        raise AuthorizationError("Requesters cannot resolve their own requests")


def require_denial_reason(requests, reason_code: str | None) -> str | None:
    """A reason code is mandatory only when a rule behind the request asks for one."""
    code = (reason_code or "").strip() or None
    if code is None and any(r.rule is not None and r.rule.require_reason for r in requests):
        raise ValidationError("reason_code is required to deny this request")
    return code


def denial_text(reason_code: str | None, note: str | None) -> str | None:
    if reason_code and note:
        return f"{reason_code}: {note}"
    return reason_code or note


def require_method(method, pin) -> VerificationMethod:
    method = VerificationMethod.parse(method, "method")
    if method not in RESOLUTION_METHODS:
        raise ValidationError("method must be 'pin' or 'remote'")
    if method is VerificationMethod.PIN:
        credential_service.validate_pin_format(pin)
    return method


def authorize(
    request: ApprovalRequest,
    *,
    actor_id: int | None,
    method: VerificationMethod,
    pin: str | None = None,
    count_quota: bool = True,
) -> AuthorityGrant:
    """
    Establish who is resolving `request` and at what authority.

    Refusals are audited as "authorization_denied" before propagating.
    """
    required = request.approval_level
    try:
        forbid_self_approval(request, actor_id)
        if method is VerificationMethod.PIN:
            if actor_id is not None:
                grant = delegation_service.resolve_authority(actor_id, required)
                credential_level = ApprovalLevel.lowest() if grant.is_delegated else required
                credential_service.verify(pin, credential_level, user_id=actor_id, commit=False)
            else:
                verification = credential_service.verify(pin, required, commit=False)
                forbid_self_approval(request, verification.user_id)
                grant = delegation_service.resolve_authority(verification.user_id, required)
        else:
            if actor_id is None:
                raise AuthorizationError("Remote approval requires an authenticated approver")
            grant = delegation_service.resolve_authority(actor_id, required)
            if count_quota:
                credential_service.consume_remote_quota(actor_id, commit=False)
    except AuthorizationError as exc:
        audit_service.record_authorization_denied(request, actor_id, method, exc.message)
        raise
    return grant


def approver_recipients(request: ApprovalRequest) -> tuple[int, ...]:
    if request.target_approver_id:
        return (request.target_approver_id,)
    return tuple(
        entry["user_id"]
        for entry in delegation_service.list_eligible_approvers(request.approval_level)
        if entry["user_id"] != request.requester_id
    )


def response_time_ms(request: ApprovalRequest, now: datetime) -> int:
    return max(int((now - request.created_at).total_seconds() * 1000), 0)


def margin_columns(cost_value: Decimal | None, value: Decimal) -> dict:
    if cost_value is None:
        return {}
    metrics = price_metrics(value, value, cost_value)
    return {"margin_value": metrics["margin_value"], "margin_percent": metrics["margin_percent"]}


def build_context(
    channel,
    *,
    category=None,
    product_id=None,
    customer_id=None,
    user_id=None,
) -> EvaluationContext:
    return EvaluationContext(
        channel=Channel.parse(channel or Channel.POS.value, "channel"),
        category=category,
        product_id=product_id,
        customer_id=customer_id,
        user_id=user_id,
    )


def _enforce_reason(decision: PolicyDecision, reason: str | None) -> None:
    rule = decision.rule
    if rule is None or not decision.requires_approval or not rule.require_reason:
        return
    text = (reason or "").strip()
    if not text:
        raise ValidationError("A reason is required for this override", rule=rule.name)
    if len(text) < rule.reason_min_length:
        raise ValidationError(
            f"Reason must be at least {rule.reason_min_length} characters",
            rule=rule.name,
        )


def _evaluate(
    override_type: OverrideType,
    original_value: Decimal | None,
    requested_value: Decimal,
    cost_value: Decimal | None,
    context: EvaluationContext,
) -> tuple[PolicyDecision, dict]:
    evaluator = policy_evaluator()
    if override_type.is_price_type:
        metrics = price_metrics(original_value, requested_value, cost_value)
        value_by_type = {
            OverrideType.DISCOUNT_PERCENT: metrics["discount_percent"],
            OverrideType.DISCOUNT_AMOUNT: metrics["discount_amount"],
            OverrideType.MARGIN_BELOW: metrics["margin_percent"],
            OverrideType.PRICE_BELOW_COST: metrics["margin_value"],
        }
        value = value_by_type[override_type]
        if value is None:
            raise ValidationError(f"cost_value is required for {override_type.value}")
        return evaluator.evaluate(override_type, value, context), metrics
    value = abs(requested_value) if override_type is OverrideType.DRAWER_ADJUSTMENT else requested_value
    return evaluator.evaluate(override_type, value, context), {}


def _validate_values(override_type: OverrideType, original_value, requested_value) -> None:
    if requested_value is None:
        raise ValidationError("requested_value is required")
    if override_type.is_price_type:
        if original_value is None:
            raise ValidationError("original_value is required for price overrides")
        enforce_price_range(original_value, requested_value)
        return
    if override_type is OverrideType.DRAWER_ADJUSTMENT:
        if requested_value == 0:
            raise ValidationError("requested_value cannot be zero")
        return
    if requested_value <= 0:
        raise ValidationError("requested_value must be greater than 0")
    if original_value is not None and requested_value > original_value:
        raise ValidationError("requested_value cannot exceed the original value")


# =============================================================================
# CREATION
# =============================================================================

def _store_request(
    *,
    requester: User,
    override_type: OverrideType,
    decision: PolicyDecision,
    metrics: dict,
    original_value,
    requested_value,
    cost_value,
    context: EvaluationContext,
    cart_ref,
    line_ref,
    reason,
    target_approver_id,
    expires_at,
) -> CreatedRequest:
    now = utcnow()
    if expires_at is not None and expires_at <= now:
        raise ValidationError("expires_at must be in the future")
    _enforce_reason(decision, reason)

    level = decision.required_level if decision.requires_approval else ApprovalLevel.lowest()
    if target_approver_id is not None:
        load_active_user(target_approver_id, "Target approver")
        if decision.requires_approval and not delegation_service.is_authorized(target_approver_id, level):
            raise ValidationError(
                "Target approver cannot approve at the required level",
                required_level=level.value,
            )

    request = ApprovalRequest(
        request_code=new_request_code(),
        request_type=RequestType.SINGLE.value,
        override_type=override_type.value,
        threshold_rule_id=decision.rule.id if decision.rule else None,
        channel=context.channel.value,
        product_id=context.product_id,
        customer_id=context.customer_id,
        category=context.category,
        cart_ref=cart_ref,
        line_ref=line_ref,
        requester_id=requester.id,
        target_approver_id=target_approver_id,
        original_value=original_value,
        requested_value=requested_value,
        cost_value=cost_value,
        margin_value=metrics.get("margin_value"),
        margin_percent=metrics.get("margin_percent"),
        required_level=level.value,
        exception_applied=decision.exception_applied,
        reason=reason,
        created_at=now,
        expires_at=expires_at,
    )

    if not decision.requires_approval:
        issued = token_service.issue(now)
        request.status = RequestStatus.APPROVED.value
        request.auto_approved = True
        request.approved_value = requested_value
        request.method = VerificationMethod.AUTO.value
        request.responded_at = now
        request.response_time_ms = 0
        for column, value in issued.columns().items():
            setattr(request, column, value)
        db.session.add(request)
        db.session.flush()
        audit_service.record(
            request,
            AuditOutcome.EXCEPTION_APPLIED if decision.exception_applied else AuditOutcome.AUTO_APPROVED,
            method=VerificationMethod.AUTO,
            override_value=requested_value,
            rule_snapshot=decision.rule.snapshot() if decision.rule else None,
        )
        db.session.commit()
        return CreatedRequest(request=request, decision=decision)

    request.status = RequestStatus.PENDING.value
    db.session.add(request)
    db.session.commit()

    publish(LifecycleEvent(
        name="request-created",
        payload={
            "request": request.to_dict(),
            "requester_name": requester.display_name,
            "message": decision.message,
        },
        user_ids=approver_recipients(request),
    ))
    return CreatedRequest(request=request, decision=decision)


def create_request(
    requester_id: int,
    override_type,
    requested_value: Decimal,
    original_value: Decimal | None = None,
    cost_value: Decimal | None = None,
    *,
    channel: str | None = None,
    product_id: int | None = None,
    customer_id: int | None = None,
    category: str | None = None,
    cart_ref: str | None = None,
    line_ref: str | None = None,
    reason: str | None = None,
    target_approver_id: int | None = None,
    expires_at: datetime | None = None,
) -> CreatedRequest:
    """
    Evaluate one override of a named type and store the request.

    Needs approval -> pending, approvers notified.
    Otherwise      -> approved immediately with a token.
    """
    override_type = OverrideType.parse(override_type, "override_type")
    _validate_values(override_type, original_value, requested_value)
    requester = load_active_user(requester_id, "Requester")
    context = build_context(
        channel, category=category, product_id=product_id, customer_id=customer_id, user_id=requester_id,
    )
    decision, metrics = _evaluate(override_type, original_value, requested_value, cost_value, context)
    return _store_request(
        requester=requester,
        override_type=override_type,
        decision=decision,
        metrics=metrics,
        original_value=original_value,
        requested_value=requested_value,
        cost_value=cost_value,
        context=context,
        cart_ref=cart_ref,
        line_ref=line_ref,
        reason=reason,
        target_approver_id=target_approver_id,
        expires_at=expires_at,
    )


def create_price_override(
    requester_id: int,
    original_value: Decimal,
    requested_value: Decimal,
    cost_value: Decimal | None = None,
    *,
    channel: str | None = None,
    product_id: int | None = None,
    customer_id: int | None = None,
    category: str | None = None,
    cart_ref: str | None = None,
    line_ref: str | None = None,
    reason: str | None = None,
    target_approver_id: int | None = None,
    expires_at: datetime | None = None,
) -> CreatedRequest:
    """
    A line price change checked against every price rule at once (discount
    percent and amount, margin, below cost). The strictest decision names
    the request's override type and tier.
    """
    if original_value is None:
        raise ValidationError("original_value is required for price overrides")
    enforce_price_range(original_value, requested_value)
    requester = load_active_user(requester_id, "Requester")
    context = build_context(
        channel, category=category, product_id=product_id, customer_id=customer_id, user_id=requester_id,
    )
    evaluation = policy_evaluator().evaluate_price_change(original_value, requested_value, cost_value, context)
    metrics = {"margin_value": evaluation.margin_value, "margin_percent": evaluation.margin_percent}
    return _store_request(
        requester=requester,
        override_type=evaluation.decision.override_type,
        decision=evaluation.decision,
        metrics=metrics,
        original_value=original_value,
        requested_value=requested_value,
        cost_value=cost_value,
        context=context,
        cart_ref=cart_ref,
        line_ref=line_ref,
        reason=reason,
        target_approver_id=target_approver_id,
        expires_at=expires_at,
    )


# =============================================================================
# RESOLUTION
# =============================================================================

def _reject_batch_members(request: ApprovalRequest) -> None:
    if request.request_type != RequestType.SINGLE.value:
        raise ValidationError("Batch requests are resolved through the batch operations")


def finish_approval(
    request: ApprovalRequest,
    *,
    approver_id: int,
    approver_level: str,
    delegation_id: int | None,
    method: VerificationMethod,
    value: Decimal,
    now: datetime,
    from_statuses=None,
    note: str | None = None,
) -> ApprovalRequest:
    """Approve at `value`, mint the token, audit, commit, notify the requester."""
    issued = token_service.issue(now)
    values = {
        "approved_value": value,
        "resolved_by_id": approver_id,
        "delegation_id": delegation_id,
        "method": method.value,
        "responded_at": now,
        "response_time_ms": response_time_ms(request, now),
    }
    values.update(margin_columns(request.cost_value, value))
    values.update(issued.columns())
    transition(request.id, RequestStatus.APPROVED, values, from_statuses=from_statuses)

    audit_service.record(
        request,
        AuditOutcome.APPROVED,
        approver_id=approver_id,
        approval_level=approver_level,
        method=method,
        delegation_id=delegation_id,
        override_value=value,
        reason=note,
    )
    db.session.commit()

    approver = db.session.get(User, approver_id)
    publish(LifecycleEvent(
        name="approved",
        payload={
            "request": request.to_dict(include_token=True),
            "approver_name": approver.display_name if approver else None,
        },
        user_ids=(request.requester_id,),
    ))
    return request


def approve(
    request_id: int,
    *,
    actor_id: int | None = None,
    method: str = VerificationMethod.REMOTE.value,
    pin: str | None = None,
    note: str | None = None,
) -> ApprovalRequest:
    """Approve at the requested value (also valid while a counter is outstanding)."""
    method = require_method(method, pin)
    request = load_request(request_id)
    _reject_batch_members(request)
    now = utcnow()
    ensure_actionable(request, now)

    grant = authorize(request, actor_id=actor_id, method=method, pin=pin)
    _supersede_counters(request.id, now)
    return finish_approval(
        request,
        approver_id=grant.user.id,
        approver_level=grant.level.value,
        delegation_id=grant.delegation_id,
        method=method,
        value=request.requested_value,
        now=utcnow(),
        note=note,
    )


def deny(
    request_id: int,
    *,
    reason_code: str | None = None,
    actor_id: int | None = None,
    method: str = VerificationMethod.REMOTE.value,
    pin: str | None = None,
    note: str | None = None,
) -> ApprovalRequest:
    method = require_method(method, pin)
    request = load_request(request_id)
    _reject_batch_members(request)
    reason_code = require_denial_reason([request], reason_code)
    now = utcnow()
    ensure_actionable(request, now)

    grant = authorize(request, actor_id=actor_id, method=method, pin=pin, count_quota=False)
    now = utcnow()
    _supersede_counters(request.id, now)
    transition(request.id, RequestStatus.DENIED, {
        "resolved_by_id": grant.user.id,
        "delegation_id": grant.delegation_id,
        "method": method.value,
        "responded_at": now,
        "response_time_ms": response_time_ms(request, now),
        "denial_reason_code": reason_code,
        "denial_reason_note": note,
    })
    audit_service.record(
        request,
        AuditOutcome.DENIED,
        approver_id=grant.user.id,
        approval_level=grant.level.value,
        method=method,
        delegation_id=grant.delegation_id,
        denial_reason=denial_text(reason_code, note),
    )
    db.session.commit()

    publish(LifecycleEvent(
        name="denied",
        payload={"request": request.to_dict(), "approver_name": grant.user.display_name},
        user_ids=(request.requester_id,),
    ))
    return request


def _supersede_counters(request_id: int, now: datetime) -> None:
    conditional_update(
        CounterOffer,
        [
            CounterOffer.approval_request_id == request_id,
            CounterOffer.status == CounterOfferStatus.PENDING.value,
        ],
        {"status": CounterOfferStatus.SUPERSEDED.value, "responded_at": now},
    )


def counter(
    request_id: int,
    *,
    actor_id: int,
    counter_value: Decimal,
) -> CounterOffer:
    """
    Propose a different price. Any earlier pending counter for the request
    is superseded; the request moves to (or stays) countered.
    """
    if counter_value is None:
        raise ValidationError("counter_value is required")
    request = load_request(request_id)
    _reject_batch_members(request)
    if not OverrideType(request.override_type).is_price_type or request.original_value is None:
        raise ValidationError("Only price overrides can be countered")
    enforce_price_range(request.original_value, counter_value, field="counter_value")
    now = utcnow()
    ensure_actionable(request, now)

    grant = authorize(request, actor_id=actor_id, method=VerificationMethod.REMOTE, count_quota=False)
    now = utcnow()
    _supersede_counters(request.id, now)
    transition(request.id, RequestStatus.COUNTERED, {})

    margins = margin_columns(request.cost_value, counter_value)
    offer = CounterOffer(
        approval_request_id=request.id,
        created_by_id=grant.user.id,
        delegation_id=grant.delegation_id,
        approver_level=grant.level.value,
        price=counter_value,
        margin_value=margins.get("margin_value"),
        margin_percent=margins.get("margin_percent"),
        status=CounterOfferStatus.PENDING.value,
        created_at=now,
    )
    db.session.add(offer)
    db.session.commit()

    publish(LifecycleEvent(
        name="countered",
        payload={
            "request": request.to_dict(),
            "counter_offer": offer.to_dict(),
            "approver_name": grant.user.display_name,
        },
        user_ids=(request.requester_id,),
    ))
    return offer


def _load_offer_for_requester(counter_offer_id: int, requester_id: int) -> CounterOffer:
    offer = db.session.get(CounterOffer, counter_offer_id)
    if offer is None:
        raise NotFoundError("Counter-offer not found")
    if offer.request.requester_id != requester_id:
        raise AuthorizationError("Only the requester can respond to a counter-offer")
    if offer.status != CounterOfferStatus.PENDING.value:
        raise ConflictError("Counter-offer is no longer open", status=offer.status)
    return offer


def _claim_offer(offer: CounterOffer, to_status: CounterOfferStatus, now: datetime) -> None:
    updated = conditional_update(
        CounterOffer,
        [CounterOffer.id == offer.id, CounterOffer.status == CounterOfferStatus.PENDING.value],
        {"status": to_status.value, "responded_at": now},
    )
    if not updated:
        db.session.rollback()
        raise ConflictError("Counter-offer is no longer open")


def accept_counter(counter_offer_id: int, *, requester_id: int) -> ApprovalRequest:
    """Approve the request at the counter price, attributed to the approver who countered."""
    offer = _load_offer_for_requester(counter_offer_id, requester_id)
    request = offer.request
    now = utcnow()
    _claim_offer(offer, CounterOfferStatus.ACCEPTED, now)
    approved = finish_approval(
        request,
        approver_id=offer.created_by_id,
        approver_level=offer.approver_level,
        delegation_id=offer.delegation_id,
        method=VerificationMethod.COUNTER,
        value=offer.price,
        now=now,
        from_statuses=(RequestStatus.COUNTERED.value,),
    )
    publish(LifecycleEvent(
        name="counter-accepted",
        payload={"request": approved.to_dict(), "counter_offer": offer.to_dict()},
        user_ids=(offer.created_by_id,),
    ))
    return approved


def decline_counter(counter_offer_id: int, *, requester_id: int) -> ApprovalRequest:
    """Reject the counter; the request goes back to pending for another decision."""
    offer = _load_offer_for_requester(counter_offer_id, requester_id)
    request = offer.request
    _claim_offer(offer, CounterOfferStatus.DECLINED, utcnow())
    transition(request.id, RequestStatus.PENDING, {}, from_statuses=(RequestStatus.COUNTERED.value,))
    db.session.commit()

    publish(LifecycleEvent(
        name="counter-declined",
        payload={"request": request.to_dict(), "counter_offer": offer.to_dict()},
        user_ids=(offer.created_by_id,),
    ))
    return request


def cancel(request_id: int, *, requester_id: int, reason: str | None = None) -> ApprovalRequest:
    request = load_request(request_id)
    if request.request_type == RequestType.CHILD.value:
        raise ValidationError("Cancel the batch instead of one of its lines")
    if request.requester_id != requester_id:
        raise AuthorizationError("Only the requester can cancel a request")

    recipients = approver_recipients(request)
    offer_owners = tuple(o.created_by_id for o in request.counter_offers)
    now = utcnow()
    updated = conditional_update(
        ApprovalRequest,
        [ApprovalRequest.id == request.id, ApprovalRequest.status.in_(OPEN_STATUSES)],
        {"status": RequestStatus.CANCELLED.value, "responded_at": now},
    )
    if not updated:
        db.session.rollback()
        raise ConflictError("Approval request is already closed", status=request.status)
    if request.is_batch:
        conditional_update(
            ApprovalRequest,
            [
                ApprovalRequest.parent_request_id == request.id,
                ApprovalRequest.status == RequestStatus.PENDING.value,
            ],
            {"status": RequestStatus.CANCELLED.value, "responded_at": now},
        )
    _supersede_counters(request.id, now)
    audit_service.record(request, AuditOutcome.CANCELLED, reason=reason)
    db.session.commit()

    publish(LifecycleEvent(
        name="cancelled",
        payload={"request": request.to_dict()},
        user_ids=tuple(dict.fromkeys(recipients + offer_owners)),
    ))
    return request


# =============================================================================
# QUERIES
# =============================================================================

def get_status(request_id: int, viewer_id: int | None = None) -> dict:
    """
    Current state of a request. The requester (only) sees the approval
    token, so a terminal that missed the push event can recover it.
    """
    request = load_request(request_id)
    is_requester = viewer_id is not None and viewer_id == request.requester_id
    data = request.to_dict(include_token=is_requester)
    data["counter_offers"] = [offer.to_dict() for offer in request.counter_offers]
    latest = next(
        (o for o in reversed(request.counter_offers) if o.status == CounterOfferStatus.PENDING.value),
        None,
    )
    data["active_counter_offer"] = latest.to_dict() if latest else None
    if request.is_batch:
        data["children"] = [child.to_dict(include_token=is_requester) for child in request.children]
    return data


def pending_queue(
    approver_id: int,
    *,
    override_type: str | None = None,
    tier: int | None = None,
    requester_id: int | None = None,
    limit: int = 100,
) -> list[dict]:
    """Open requests this approver is currently entitled to resolve, oldest first."""
    authority = delegation_service.max_authority(approver_id)
    if authority is None:
        raise AuthorizationError("User has no approval authority")

    levels = [level.value for level in ApprovalLevel if level.rank <= authority.rank]
    query = db.session.query(ApprovalRequest).filter(
        ApprovalRequest.status.in_(OPEN_STATUSES),
        ApprovalRequest.request_type.in_((RequestType.SINGLE.value, RequestType.BATCH.value)),
        ApprovalRequest.required_level.in_(levels),
        ApprovalRequest.requester_id != approver_id,
        db.or_(
            ApprovalRequest.target_approver_id.is_(None),
            ApprovalRequest.target_approver_id == approver_id,
        ),
    )
    if override_type:
        query = query.filter(ApprovalRequest.override_type == OverrideType.parse(override_type).value)
    if tier is not None:
        query = query.filter(ApprovalRequest.required_level == ApprovalLevel.from_rank(tier).value)
    if requester_id is not None:
        query = query.filter(ApprovalRequest.requester_id == requester_id)

    rows = query.order_by(ApprovalRequest.created_at.asc(), ApprovalRequest.id.asc()).limit(limit).all()
    return [
        dict(row.to_dict(), requester_name=row.requester.display_name if row.requester else None)
        for row in rows
    ]


def eligible_approvers(request_id: int) -> list[dict]:
    """Who can approve this request right now (directly or by delegation), online first."""
    request = load_request(request_id)
    return [
        entry for entry in delegation_service.list_eligible_approvers(
            request.approval_level, online_user_ids=online_user_ids()
        )
        if entry["user_id"] != request.requester_id
    ]
