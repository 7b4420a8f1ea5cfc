# Overview: Flask API routes for threshold rules and override credentials; parses input and returns JSON responses.

"""
Threshold Rule API routes (admin)

- GET    /api/override-rules                       - list (?include_inactive=true&rule_type=...)
- POST   /api/override-rules                       - create rule with approval ladder
- GET    /api/override-rules/:id
- PATCH  /api/override-rules/:id                   - partial update (levels replace the ladder)
- DELETE /api/override-rules/:id                   - deactivate
- POST   /api/override-rules/:id/exceptions        - product/category/customer/user exception
- DELETE /api/override-rules/exceptions/:id        - deactivate exception
- POST   /api/override-rules/seed                  - create default rules for uncovered types

Override Credential API routes

- POST /api/credentials/users/:id/pin              - set or rotate a PIN (admin)
- GET  /api/credentials/users/:id/lockout          - lock status (self or manager+)
- POST /api/credentials/users/:id/unlock           - clear a lockout (admin)
- POST /api/credentials/verify                     - check a PIN against a tier at the terminal
"""

from flask import Blueprint, request, jsonify, g, current_app

from ..enums import ApprovalLevel
from ..services import credential_service, rule_service
from ..services.tier_service import level_satisfies
from ..validation import (
    AuthorizationError,
    OverrideError,
    parse_datetime,
    parse_int,
    require_fields,
    require_payload,
)
from ..decorators import require_auth, require_admin
from .errors import error_response, internal_error


rules_bp = Blueprint("override_rules", __name__, url_prefix="/api/override-rules")
credentials_bp = Blueprint("credentials", __name__, url_prefix="/api/credentials")


@rules_bp.get("")
@require_auth
@require_admin
def list_rules_route():
    try:
        include_inactive = request.args.get("include_inactive", "false").lower() == "true"
        rules = rule_service.list_rules(include_inactive, request.args.get("rule_type") or None)
        return jsonify({"rules": [r.to_dict() for r in rules]}), 200
    except OverrideError as e:
        return error_response(e)


@rules_bp.post("")
@require_auth
@require_admin
def create_rule_route():
    """
    Request body:
        {"name": "Discount percentage", "rule_type": "discount_percent",
         "threshold_value": 10, "default_level": "manager",
         "levels": [{"level": "shift_lead", "max_value": 10}, {"level": "admin", "max_value": null}],
         "category": null, "priority": 0, "active_days": [1,2,3,4,5],
         "active_start_time": "09:00", "active_end_time": "17:00", "timeout_seconds": 180}
    """
    try:
        data = require_payload(request.get_json(silent=True))
        rule = rule_service.create_rule(data, created_by_user_id=g.current_user.id)
        current_app.logger.info("Threshold rule %s created by user %s", rule.id, g.current_user.id)
        return jsonify({"rule": rule.to_dict()}), 201
    except OverrideError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to create threshold rule")
        return internal_error()


@rules_bp.get("/<int:rule_id>")
@require_auth
@require_admin
def get_rule_route(rule_id: int):
    try:
        rule = rule_service.get_rule(rule_id)
        data = rule.to_dict()
        data["exceptions"] = [exc.to_dict() for exc in rule.exceptions]
        return jsonify({"rule": data}), 200
    except OverrideError as e:
        return error_response(e)


@rules_bp.patch("/<int:rule_id>")
@require_auth
@require_admin
def update_rule_route(rule_id: int):
    try:
        data = require_payload(request.get_json(silent=True))
        rule = rule_service.update_rule(rule_id, data)
        return jsonify({"rule": rule.to_dict()}), 200
    except OverrideError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to update threshold rule")
        return internal_error()


@rules_bp.delete("/<int:rule_id>")
@require_auth
@require_admin
def deactivate_rule_route(rule_id: int):
    try:
        rule = rule_service.deactivate_rule(rule_id)
        return jsonify({"rule": rule.to_dict()}), 200
    except OverrideError as e:
        return error_response(e)


@rules_bp.post("/<int:rule_id>/exceptions")
@require_auth
@require_admin
def add_exception_route(rule_id: int):
    """
    Request body:
        {"scope": "product", "product_id": 12, "is_exempt": false,
         "override_threshold_value": 30, "override_approval_level": "shift_lead",
         "valid_until": "2026-12-31T23:59:59Z", "reason": "Clearance"}
    """
    try:
        data = require_payload(request.get_json(silent=True))
        exc = rule_service.add_exception(rule_id, data, created_by_user_id=g.current_user.id)
        return jsonify({"exception": exc.to_dict()}), 201
    except OverrideError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to add rule exception")
        return internal_error()


@rules_bp.delete("/exceptions/<int:exception_id>")
@require_auth
@require_admin
def deactivate_exception_route(exception_id: int):
    try:
        exc = rule_service.deactivate_exception(exception_id)
        return jsonify({"exception": exc.to_dict()}), 200
    except OverrideError as e:
        return error_response(e)


@rules_bp.post("/seed")
@require_auth
@require_admin
def seed_rules_route():
    created = rule_service.seed_default_rules()
    return jsonify({"created": created}), 200


@credentials_bp.post("/users/<int:user_id>/pin")
@require_auth
@require_admin
def set_pin_route(user_id: int):
    """
    Request body:
        {"pin": "4821", "approval_level": "manager", "max_daily_overrides": 25,
         "valid_from": null, "valid_until": null}
    """
    try:
        data = require_payload(request.get_json(silent=True))
        require_fields(data, "pin", "approval_level")
        credential = credential_service.set_pin(
            user_id,
            str(data.get("pin")),
            data.get("approval_level"),
            max_daily_overrides=parse_int(data.get("max_daily_overrides"), "max_daily_overrides", allow_none=True),
            valid_from=parse_datetime(data.get("valid_from"), "valid_from"),
            valid_until=parse_datetime(data.get("valid_until"), "valid_until"),
            created_by_user_id=g.current_user.id,
        )
        current_app.logger.info("Override PIN set for user %s by user %s", user_id, g.current_user.id)
        return jsonify({"credential": credential.to_dict()}), 201
    except OverrideError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to set override PIN")
        return internal_error()


@credentials_bp.get("/users/<int:user_id>/lockout")
@require_auth
def lockout_status_route(user_id: int):
    try:
        if user_id != g.current_user.id and not level_satisfies(g.current_user.approval_level, ApprovalLevel.MANAGER):
            raise AuthorizationError("Permission denied")
        return jsonify(credential_service.lockout_status(user_id)), 200
    except OverrideError as e:
        return error_response(e)


@credentials_bp.post("/users/<int:user_id>/unlock")
@require_auth
@require_admin
def unlock_route(user_id: int):
    try:
        credential = credential_service.unlock(user_id)
        current_app.logger.info("Override PIN for user %s unlocked by user %s", user_id, g.current_user.id)
        return jsonify({"credential": credential.to_dict()}), 200
    except OverrideError as e:
        return error_response(e)


@credentials_bp.post("/verify")
@require_auth
def verify_pin_route():
    """
    Check a PIN entered at the terminal against a tier. A successful check
    counts toward the approver's daily quota.

    Request body:
        {"pin": "4821", "tier": 2, "approver_id": 3 (optional)}
    """
    try:
        data = require_payload(request.get_json(silent=True))
        require_fields(data, "pin", "tier")
        result = credential_service.verify(
            str(data.get("pin")),
            ApprovalLevel.from_rank(parse_int(data.get("tier"), "tier")),
            user_id=parse_int(data.get("approver_id"), "approver_id", allow_none=True),
        )
        return jsonify({
            "verified": True,
            "user_id": result.user_id,
            "level": result.level.value,
            "tier": result.level.rank,
            "remaining_today": result.remaining_today,
        }), 200
    except OverrideError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to verify override PIN")
        return internal_error()
