# Overview: Service-layer operations for approval tokens; single-use proof of an approved override.

"""
Approval Tokens

An approved request carries one token (64 hex chars, short TTL). The sale
flow redeems it exactly once; redemption is a conditional UPDATE on
`token_used`, so two terminals racing on the same token see one success
and one ConflictError.

The token is kept in plaintext on the request row: the requester's
terminal recovers it by polling request status if it missed the push
event. It is single use and expires within minutes.
"""

from __future__ import annotations

import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal

from flask import current_app

from ..enums import RequestStatus, RequestType
from ..extensions import db
from ..models import ApprovalRequest
from ..time_utils import utcnow
from ..validation import ConflictError, ExpiredError, NotFoundError, ValidationError
from .concurrency import conditional_update, retry_on_lock


@dataclass(frozen=True)
class IssuedToken:
    token: str
    expires_at: datetime

    def columns(self) -> dict:
        return {
            "approval_token": self.token,
            "token_expires_at": self.expires_at,
            "token_used": False,
            "token_used_at": None,
        }


@dataclass(frozen=True)
class TokenRedemption:
    request_id: int
    approved_value: Decimal | None
    product_id: int | None
    line_ref: str | None

    def to_dict(self) -> dict:
        return {
            "request_id": self.request_id,
            "approved_value": None if self.approved_value is None else str(self.approved_value),
            "product_id": self.product_id,
            "line_ref": self.line_ref,
        }


def issue(now: datetime | None = None) -> IssuedToken:
    now = now or utcnow()
    ttl = timedelta(minutes=current_app.config.get("APPROVAL_TOKEN_TTL_MINUTES", 10))
    return IssuedToken(token=secrets.token_hex(32), expires_at=now + ttl)


def _check_redeemable(request: ApprovalRequest, now: datetime) -> None:
    if request.status != RequestStatus.APPROVED.value:
        raise ConflictError("Request is not approved", status=request.status)
    if request.token_used:
        raise ConflictError("Approval token already used")
    if request.token_expires_at is None or request.token_expires_at <= now:
        raise ExpiredError("Approval token expired")


def _claim(request_id: int, now: datetime) -> int:
    return conditional_update(
        ApprovalRequest,
        [
            ApprovalRequest.id == request_id,
            ApprovalRequest.status == RequestStatus.APPROVED.value,
            ApprovalRequest.token_used.is_(False),
            ApprovalRequest.token_expires_at > now,
        ],
        {"token_used": True, "token_used_at": now},
    )


def consume(token: str, cart_ref: str | None = None, line_ref: str | None = None) -> TokenRedemption:
    """
    Redeem a token once. Context references, when both the request and the
    caller supply one, must match.
    """
    if not token:
        raise ValidationError("token is required")
    return retry_on_lock(lambda: _redeem(token, cart_ref, line_ref))


def _redeem(token: str, cart_ref: str | None, line_ref: str | None) -> TokenRedemption:
    now = utcnow()
    request = db.session.query(ApprovalRequest).filter(ApprovalRequest.approval_token == token).first()
    if request is None:
        raise NotFoundError("Unknown approval token")

    _check_redeemable(request, now)
    if cart_ref and request.cart_ref and cart_ref != request.cart_ref:
        raise ValidationError("Approval token belongs to a different cart")
    if line_ref and request.line_ref and line_ref != request.line_ref:
        raise ValidationError("Approval token belongs to a different line item")

    if not _claim(request.id, now):
        db.session.rollback()
        raise ConflictError("Approval token already used")
    db.session.commit()

    return TokenRedemption(
        request_id=request.id,
        approved_value=request.approved_value,
        product_id=request.product_id,
        line_ref=request.line_ref,
    )


def consume_batch(parent_id: int, cart_ref: str | None = None) -> list[TokenRedemption]:
    """Redeem every unused child token of an approved batch in one transaction."""
    return retry_on_lock(lambda: _redeem_batch(parent_id, cart_ref))


def _redeem_batch(parent_id: int, cart_ref: str | None) -> list[TokenRedemption]:
    now = utcnow()
    parent = db.session.get(ApprovalRequest, parent_id)
    if parent is None or parent.request_type != RequestType.BATCH.value:
        raise NotFoundError("Batch request not found")
    if parent.status != RequestStatus.APPROVED.value:
        raise ConflictError("Batch is not approved", status=parent.status)
    if cart_ref and parent.cart_ref and cart_ref != parent.cart_ref:
        raise ValidationError("Batch belongs to a different cart")

    children = [
        child for child in parent.children
        if child.status == RequestStatus.APPROVED.value and not child.token_used
    ]
    if not children:
        raise ConflictError("No unused approval tokens in this batch")
    if any(child.token_expires_at is None or child.token_expires_at <= now for child in children):
        raise ExpiredError("Batch approval tokens expired")

    redemptions = []
    for child in children:
        if not _claim(child.id, now):
            db.session.rollback()
            raise ConflictError("Batch approval tokens already used")
        redemptions.append(TokenRedemption(
            request_id=child.id,
            approved_value=child.approved_value,
            product_id=child.product_id,
            line_ref=child.line_ref,
        ))
    db.session.commit()
    return redemptions
