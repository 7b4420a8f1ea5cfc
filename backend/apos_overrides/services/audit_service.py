# Overview: Service-layer operations for the override audit log; append-only records and analytics.

"""
Override Audit Log

One row per decision: every terminal resolution (including automatic ones
and sweeps) and every refused authorization attempt against a real request.
Rows are added to the caller's session so they commit atomically with the
status change they describe; nothing here updates or deletes.
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal, ROUND_HALF_UP

from sqlalchemy import func

from ..enums import AuditOutcome, VerificationMethod
from ..extensions import db
from ..models import ApprovalRequest, OverrideAuditEntry, User
from ..time_utils import utcnow
from ..validation import ValidationError

MAX_PAGE_SIZE = 200

APPROVED_OUTCOMES = (
    AuditOutcome.APPROVED.value,
    AuditOutcome.AUTO_APPROVED.value,
    AuditOutcome.EXCEPTION_APPLIED.value,
)


def _difference(original: Decimal | None, override: Decimal | None) -> tuple[Decimal | None, Decimal | None]:
    if original is None or override is None:
        return None, None
    diff = original - override
    if original == 0:
        return diff, None
    pct = (diff / original * Decimal("100")).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)
    return diff, pct


def record(
    request: ApprovalRequest,
    outcome: AuditOutcome,
    *,
    approver_id: int | None = None,
    approval_level: str | None = None,
    method: VerificationMethod | None = None,
    delegation_id: int | None = None,
    override_value: Decimal | None = None,
    rule_snapshot: dict | None = None,
    reason: str | None = None,
    denial_reason: str | None = None,
) -> OverrideAuditEntry:
    """Stage an audit row in the current session. The caller commits."""
    if rule_snapshot is None and request.rule is not None:
        rule_snapshot = request.rule.snapshot()
    diff, pct = _difference(request.original_value, override_value)
    entry = OverrideAuditEntry(
        request_id=request.id,
        override_type=request.override_type,
        threshold_rule_id=request.threshold_rule_id,
        rule_snapshot=rule_snapshot,
        cashier_id=request.requester_id,
        approver_id=approver_id,
        approval_level=approval_level,
        required_level=request.required_level,
        delegation_id=delegation_id,
        original_value=request.original_value,
        override_value=override_value,
        difference_value=diff,
        difference_percent=pct,
        verification_method=method.value if method else None,
        outcome=outcome.value,
        reason=reason if reason is not None else request.reason,
        denial_reason=denial_reason,
        created_at=utcnow(),
    )
    db.session.add(entry)
    return entry


def record_authorization_denied(request: ApprovalRequest, actor_id: int | None, method: VerificationMethod, message: str) -> None:
    """Refused attempt on a real request; committed on its own."""
    db.session.rollback()
    record(
        request,
        AuditOutcome.AUTHORIZATION_DENIED,
        approver_id=actor_id,
        method=method,
        denial_reason=message,
    )
    db.session.commit()


def _filtered(query, filters: dict):
    if filters.get("request_id") is not None:
        query = query.filter(OverrideAuditEntry.request_id == filters["request_id"])
    if filters.get("override_type"):
        query = query.filter(OverrideAuditEntry.override_type == filters["override_type"])
    if filters.get("outcome"):
        query = query.filter(OverrideAuditEntry.outcome == filters["outcome"])
    if filters.get("approver_id") is not None:
        query = query.filter(OverrideAuditEntry.approver_id == filters["approver_id"])
    if filters.get("cashier_id") is not None:
        query = query.filter(OverrideAuditEntry.cashier_id == filters["cashier_id"])
    if filters.get("start"):
        query = query.filter(OverrideAuditEntry.created_at >= filters["start"])
    if filters.get("end"):
        query = query.filter(OverrideAuditEntry.created_at < filters["end"])
    return query


def query_log(filters: dict | None = None, page: int = 1, per_page: int = 50) -> dict:
    filters = filters or {}
    if page < 1:
        raise ValidationError("page must be at least 1")
    if not 1 <= per_page <= MAX_PAGE_SIZE:
        raise ValidationError(f"per_page must be between 1 and {MAX_PAGE_SIZE}")

    query = _filtered(db.session.query(OverrideAuditEntry), filters)
    total = query.count()
    rows = query.order_by(OverrideAuditEntry.created_at.desc(), OverrideAuditEntry.id.desc()) \
        .offset((page - 1) * per_page).limit(per_page).all()
    return {
        "items": [row.to_dict() for row in rows],
        "page": page,
        "per_page": per_page,
        "total": total,
    }


def summary(start: datetime | None = None, end: datetime | None = None) -> dict:
    """Counts by outcome, tier, day and approver, plus approval rate and response time."""
    filters = {"start": start, "end": end}
    base = _filtered(db.session.query(OverrideAuditEntry), filters)

    by_outcome = dict(
        _filtered(
            db.session.query(OverrideAuditEntry.outcome, func.count(OverrideAuditEntry.id)),
            filters,
        ).group_by(OverrideAuditEntry.outcome).all()
    )

    by_tier = dict(
        _filtered(
            db.session.query(OverrideAuditEntry.required_level, func.count(OverrideAuditEntry.id)),
            filters,
        ).filter(OverrideAuditEntry.outcome.in_(APPROVED_OUTCOMES + (AuditOutcome.DENIED.value,)))
        .group_by(OverrideAuditEntry.required_level).all()
    )

    day = func.date(OverrideAuditEntry.created_at)
    by_day = [
        {"day": str(d), "count": c}
        for d, c in _filtered(db.session.query(day, func.count(OverrideAuditEntry.id)), filters)
        .group_by(day).order_by(day).all()
    ]

    by_approver = [
        {"approver_id": approver_id, "display_name": name, "count": count}
        for approver_id, name, count in _filtered(
            db.session.query(OverrideAuditEntry.approver_id, User.display_name, func.count(OverrideAuditEntry.id)),
            filters,
        ).join(User, User.id == OverrideAuditEntry.approver_id)
        .filter(OverrideAuditEntry.outcome == AuditOutcome.APPROVED.value)
        .group_by(OverrideAuditEntry.approver_id, User.display_name)
        .order_by(func.count(OverrideAuditEntry.id).desc()).all()
    ]

    approved = sum(by_outcome.get(o, 0) for o in APPROVED_OUTCOMES)
    denied = by_outcome.get(AuditOutcome.DENIED.value, 0)
    decided = approved + denied
    approval_rate = round(approved / decided * 100, 2) if decided else None

    response_query = db.session.query(func.avg(ApprovalRequest.response_time_ms)).filter(
        ApprovalRequest.response_time_ms.isnot(None),
        ApprovalRequest.auto_approved.is_(False),
    )
    if start:
        response_query = response_query.filter(ApprovalRequest.responded_at >= start)
    if end:
        response_query = response_query.filter(ApprovalRequest.responded_at < end)
    avg_response = response_query.scalar()

    return {
        "total": base.count(),
        "by_outcome": by_outcome,
        "by_tier": by_tier,
        "by_day": by_day,
        "by_approver": by_approver,
        "approval_rate": approval_rate,
        "average_response_ms": int(avg_response) if avg_response is not None else None,
    }
