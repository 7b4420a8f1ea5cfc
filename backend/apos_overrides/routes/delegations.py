# Overview: Flask API routes for delegations; parses input and returns JSON responses.

"""
Delegation API routes

- POST   /api/delegations              - grant approval authority to another user
- DELETE /api/delegations/:id          - revoke a delegation you granted
- GET    /api/delegations/active       - delegations granted by and to the current user
- GET    /api/delegations/eligible-delegates

A grant needs either `expires_at` or `duration_minutes`.
"""

from datetime import timedelta

from flask import Blueprint, request, jsonify, g, current_app

from ..enums import ApprovalLevel
from ..services import delegation_service
from ..services.notification_service import LifecycleEvent
from ..services.runtime import publish
from ..time_utils import utcnow
from ..validation import (
    OverrideError,
    ValidationError,
    parse_datetime,
    parse_int,
    require_fields,
    require_payload,
)
from ..decorators import require_auth, require_level
from .errors import error_response, internal_error


delegations_bp = Blueprint("delegations", __name__, url_prefix="/api/delegations")


@delegations_bp.post("")
@require_auth
@require_level(ApprovalLevel.MANAGER)
def grant_delegation_route():
    """
    Request body:
        {"delegate_id": 7, "max_tier": 2, "duration_minutes": 60, "reason": "Lunch break"}
    """
    try:
        data = require_payload(request.get_json(silent=True))
        require_fields(data, "delegate_id", "max_tier")
        starts_at = parse_datetime(data.get("starts_at"), "starts_at") or utcnow()
        expires_at = parse_datetime(data.get("expires_at"), "expires_at")
        if expires_at is None:
            minutes = parse_int(data.get("duration_minutes"), "duration_minutes", allow_none=True)
            if minutes is None:
                raise ValidationError("expires_at or duration_minutes is required")
            if minutes <= 0:
                raise ValidationError("duration_minutes must be greater than 0")
            expires_at = starts_at + timedelta(minutes=minutes)

        delegation = delegation_service.grant(
            g.current_user.id,
            parse_int(data.get("delegate_id"), "delegate_id"),
            parse_int(data.get("max_tier"), "max_tier"),
            starts_at=starts_at,
            expires_at=expires_at,
            reason=data.get("reason"),
        )
        payload = delegation.to_dict()
        publish(LifecycleEvent(
            name="delegation-granted",
            payload={"delegation": payload},
            user_ids=(delegation.delegate_id,),
        ))
        return jsonify({"delegation": payload}), 201
    except OverrideError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to grant delegation")
        return internal_error()


@delegations_bp.delete("/<int:delegation_id>")
@require_auth
def revoke_delegation_route(delegation_id: int):
    try:
        delegation = delegation_service.revoke(delegation_id, g.current_user.id)
        payload = delegation.to_dict()
        publish(LifecycleEvent(
            name="delegation-revoked",
            payload={"delegation": payload},
            user_ids=(delegation.delegate_id,),
        ))
        return jsonify({"delegation": payload}), 200
    except OverrideError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to revoke delegation")
        return internal_error()


@delegations_bp.get("/active")
@require_auth
def active_delegations_route():
    return jsonify(delegation_service.list_active(g.current_user.id)), 200


@delegations_bp.get("/eligible-delegates")
@require_auth
@require_level(ApprovalLevel.MANAGER)
def eligible_delegates_route():
    users = delegation_service.list_eligible_delegates(g.current_user.id)
    return jsonify({
        "delegates": [u.to_dict() for u in users],
        "max_tier": g.current_user.approval_level.rank,
    }), 200
