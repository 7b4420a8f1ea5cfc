# Overview: Flask API routes for override approvals; parses input and returns JSON responses.

"""
Override Approval API routes

Requests:
- POST /api/approvals/evaluate                      - preview: does this price change need approval?
- POST /api/approvals/price-overrides               - request a line price change
- POST /api/approvals/requests                      - request an override of a named type
- GET  /api/approvals/requests/:id                  - status (requester also sees the token)
- POST /api/approvals/requests/:id/approve          - approve (method pin | remote)
- POST /api/approvals/requests/:id/deny             - deny with a reason code
- POST /api/approvals/requests/:id/counter          - propose a different price
- POST /api/approvals/requests/:id/cancel           - requester withdraws
- GET  /api/approvals/requests/:id/eligible-approvers
- POST /api/approvals/counter-offers/:id/accept
- POST /api/approvals/counter-offers/:id/decline
- GET  /api/approvals/queue                         - open requests this user may resolve
- GET  /api/approvals/eligible-approvers?tier=N

Batches:
- POST /api/approvals/batches
- GET  /api/approvals/batches/:id
- POST /api/approvals/batches/:id/approve | deny | consume

Tokens:
- POST /api/approvals/tokens/consume

Events:
- GET  /api/approvals/events                        - Server-Sent Events stream

SECURITY:
- All routes require a bearer session token (the event stream also accepts ?token=)
- Requester and remote approver identities come from the session, never the body
- PIN approvals identify the approver by the credential that matched
"""

from flask import Blueprint, Response, request, jsonify, g, current_app, stream_with_context

from ..enums import ApprovalLevel, VerificationMethod
from ..services import approval_service, batch_service, delegation_service, token_service
from ..services.notification_service import format_sse
from ..services.runtime import get_runtime, online_user_ids, policy_evaluator
from ..time_utils import to_utc_z, utcnow
from ..validation import (
    OverrideError,
    parse_datetime,
    parse_decimal,
    parse_int,
    require_fields,
    require_payload,
)
from ..decorators import require_auth, require_stream_auth
from .errors import error_response, internal_error


approvals_bp = Blueprint("approvals", __name__, url_prefix="/api/approvals")


def _context_kwargs(data: dict) -> dict:
    return {
        "channel": data.get("channel"),
        "product_id": parse_int(data.get("product_id"), "product_id", allow_none=True),
        "customer_id": parse_int(data.get("customer_id"), "customer_id", allow_none=True),
        "category": data.get("category") or None,
        "cart_ref": data.get("cart_ref") or None,
        "line_ref": data.get("line_ref") or None,
        "reason": data.get("reason") or None,
        "target_approver_id": parse_int(data.get("target_approver_id"), "target_approver_id", allow_none=True),
        "expires_at": parse_datetime(data.get("expires_at"), "expires_at"),
    }


def _resolution_kwargs(data: dict) -> dict:
    """
    Remote resolutions act as the session user. PIN resolutions act as the
    credential owner, optionally narrowed to `approver_id`.
    """
    method = data.get("method") or VerificationMethod.REMOTE.value
    if method == VerificationMethod.PIN.value:
        actor_id = parse_int(data.get("approver_id"), "approver_id", allow_none=True)
    else:
        actor_id = g.current_user.id
    return {
        "actor_id": actor_id,
        "method": method,
        "pin": data.get("pin"),
        "note": data.get("note") or None,
    }


@approvals_bp.post("/evaluate")
@require_auth
def evaluate_route():
    """Policy preview; nothing is stored."""
    try:
        data = require_payload(request.get_json(silent=True))
        require_fields(data, "original_value", "requested_value")
        original = parse_decimal(data.get("original_value"), "original_value")
        requested = parse_decimal(data.get("requested_value"), "requested_value")
        cost = parse_decimal(data.get("cost_value"), "cost_value", allow_none=True)
        context = approval_service.build_context(
            data.get("channel"),
            category=data.get("category") or None,
            product_id=parse_int(data.get("product_id"), "product_id", allow_none=True),
            customer_id=parse_int(data.get("customer_id"), "customer_id", allow_none=True),
            user_id=g.current_user.id,
        )
        evaluation = policy_evaluator().evaluate_price_change(original, requested, cost, context)
        decision = evaluation.decision
        return jsonify({
            "requires_approval": decision.requires_approval,
            "override_type": decision.override_type.value,
            "required_level": decision.required_level.value,
            "tier": decision.required_level.rank,
            "message": decision.message,
            "rule_id": decision.rule.id if decision.rule else None,
            "exception_applied": decision.exception_applied,
            "discount_percent": str(evaluation.discount_percent),
            "margin_percent": None if evaluation.margin_percent is None else str(evaluation.margin_percent),
        }), 200
    except OverrideError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to evaluate price change")
        return internal_error()


@approvals_bp.post("/price-overrides")
@require_auth
def create_price_override_route():
    """
    Request body:
        {"original_value": 100, "requested_value": 85, "cost_value": 60,
         "product_id": 12, "category": "audio", "cart_ref": "...", "line_ref": "...",
         "target_approver_id": 3, "reason": "..."}

    Response 201: {"status": "pending" | "approved", "tier": 2, "token": ... (when approved), ...}
    """
    try:
        data = require_payload(request.get_json(silent=True))
        require_fields(data, "original_value", "requested_value")
        created = approval_service.create_price_override(
            g.current_user.id,
            parse_decimal(data.get("original_value"), "original_value"),
            parse_decimal(data.get("requested_value"), "requested_value"),
            parse_decimal(data.get("cost_value"), "cost_value", allow_none=True),
            **_context_kwargs(data),
        )
        return jsonify(created.to_dict()), 201
    except OverrideError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to create price override request")
        return internal_error()


@approvals_bp.post("/requests")
@require_auth
def create_request_route():
    try:
        data = require_payload(request.get_json(silent=True))
        require_fields(data, "override_type", "requested_value")
        created = approval_service.create_request(
            g.current_user.id,
            data.get("override_type"),
            parse_decimal(data.get("requested_value"), "requested_value"),
            parse_decimal(data.get("original_value"), "original_value", allow_none=True),
            parse_decimal(data.get("cost_value"), "cost_value", allow_none=True),
            **_context_kwargs(data),
        )
        return jsonify(created.to_dict()), 201
    except OverrideError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to create approval request")
        return internal_error()


@approvals_bp.get("/requests/<int:request_id>")
@require_auth
def get_request_route(request_id: int):
    try:
        return jsonify({"request": approval_service.get_status(request_id, g.current_user.id)}), 200
    except OverrideError as e:
        return error_response(e)


@approvals_bp.post("/requests/<int:request_id>/approve")
@require_auth
def approve_request_route(request_id: int):
    try:
        data = require_payload(request.get_json(silent=True))
        req = approval_service.approve(request_id, **_resolution_kwargs(data))
        return jsonify({"request": req.to_dict()}), 200
    except OverrideError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to approve request")
        return internal_error()


@approvals_bp.post("/requests/<int:request_id>/deny")
@require_auth
def deny_request_route(request_id: int):
    try:
        data = require_payload(request.get_json(silent=True))
        req = approval_service.deny(
            request_id,
            reason_code=data.get("reason_code"),
            **_resolution_kwargs(data),
        )
        return jsonify({"request": req.to_dict()}), 200
    except OverrideError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to deny request")
        return internal_error()


@approvals_bp.post("/requests/<int:request_id>/counter")
@require_auth
def counter_request_route(request_id: int):
    try:
        data = require_payload(request.get_json(silent=True))
        require_fields(data, "counter_value")
        offer = approval_service.counter(
            request_id,
            actor_id=g.current_user.id,
            counter_value=parse_decimal(data.get("counter_value"), "counter_value"),
        )
        return jsonify({"counter_offer": offer.to_dict()}), 201
    except OverrideError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to counter request")
        return internal_error()


@approvals_bp.post("/requests/<int:request_id>/cancel")
@require_auth
def cancel_request_route(request_id: int):
    try:
        data = require_payload(request.get_json(silent=True))
        req = approval_service.cancel(request_id, requester_id=g.current_user.id, reason=data.get("reason"))
        return jsonify({"request": req.to_dict()}), 200
    except OverrideError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to cancel request")
        return internal_error()


@approvals_bp.get("/requests/<int:request_id>/eligible-approvers")
@require_auth
def request_approvers_route(request_id: int):
    try:
        return jsonify({"approvers": approval_service.eligible_approvers(request_id)}), 200
    except OverrideError as e:
        return error_response(e)


@approvals_bp.post("/counter-offers/<int:offer_id>/accept")
@require_auth
def accept_counter_route(offer_id: int):
    try:
        req = approval_service.accept_counter(offer_id, requester_id=g.current_user.id)
        return jsonify({"request": req.to_dict(include_token=True), "token": req.approval_token}), 200
    except OverrideError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to accept counter-offer")
        return internal_error()


@approvals_bp.post("/counter-offers/<int:offer_id>/decline")
@require_auth
def decline_counter_route(offer_id: int):
    try:
        req = approval_service.decline_counter(offer_id, requester_id=g.current_user.id)
        return jsonify({"request": req.to_dict()}), 200
    except OverrideError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to decline counter-offer")
        return internal_error()


@approvals_bp.get("/queue")
@require_auth
def queue_route():
    """
    Query params: override_type, tier, requester_id, limit (default 100, max 500)
    """
    try:
        limit = parse_int(request.args.get("limit"), "limit", allow_none=True) or 100
        rows = approval_service.pending_queue(
            g.current_user.id,
            override_type=request.args.get("override_type") or None,
            tier=parse_int(request.args.get("tier"), "tier", allow_none=True),
            requester_id=parse_int(request.args.get("requester_id"), "requester_id", allow_none=True),
            limit=min(max(limit, 1), 500),
        )
        return jsonify({"requests": rows, "count": len(rows)}), 200
    except OverrideError as e:
        return error_response(e)


@approvals_bp.get("/eligible-approvers")
@require_auth
def eligible_approvers_route():
    try:
        tier = parse_int(request.args.get("tier"), "tier", allow_none=True) or ApprovalLevel.lowest().rank
        approvers = delegation_service.list_eligible_approvers(
            ApprovalLevel.from_rank(tier), online_user_ids=online_user_ids(),
        )
        return jsonify({"approvers": approvers, "tier": tier}), 200
    except OverrideError as e:
        return error_response(e)


@approvals_bp.post("/tokens/consume")
@require_auth
def consume_token_route():
    try:
        data = require_payload(request.get_json(silent=True))
        require_fields(data, "token")
        redemption = token_service.consume(
            data.get("token"),
            cart_ref=data.get("cart_ref") or None,
            line_ref=data.get("line_ref") or None,
        )
        return jsonify(redemption.to_dict()), 200
    except OverrideError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to consume approval token")
        return internal_error()


@approvals_bp.post("/batches")
@require_auth
def create_batch_route():
    """
    Request body:
        {"items": [{"original_value": 100, "requested_value": 80, "cost_value": 50,
                    "product_id": 1, "line_ref": "L1"}, ...],
         "cart_ref": "...", "batch_label": "...", "reason": "...", "target_approver_id": 3}
    """
    try:
        data = require_payload(request.get_json(silent=True))
        parent = batch_service.create_batch(
            g.current_user.id,
            data.get("items"),
            channel=data.get("channel"),
            customer_id=parse_int(data.get("customer_id"), "customer_id", allow_none=True),
            cart_ref=data.get("cart_ref") or None,
            reason=data.get("reason") or None,
            batch_label=data.get("batch_label") or None,
            target_approver_id=parse_int(data.get("target_approver_id"), "target_approver_id", allow_none=True),
        )
        return jsonify({"batch": batch_service.get_batch(parent.id, g.current_user.id)}), 201
    except OverrideError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to create batch request")
        return internal_error()


@approvals_bp.get("/batches/<int:batch_id>")
@require_auth
def get_batch_route(batch_id: int):
    try:
        return jsonify({"batch": batch_service.get_batch(batch_id, g.current_user.id)}), 200
    except OverrideError as e:
        return error_response(e)


@approvals_bp.post("/batches/<int:batch_id>/approve")
@require_auth
def approve_batch_route(batch_id: int):
    try:
        data = require_payload(request.get_json(silent=True))
        parent = batch_service.approve_batch(batch_id, **_resolution_kwargs(data))
        return jsonify({"batch": parent.to_dict()}), 200
    except OverrideError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to approve batch")
        return internal_error()


@approvals_bp.post("/batches/<int:batch_id>/deny")
@require_auth
def deny_batch_route(batch_id: int):
    try:
        data = require_payload(request.get_json(silent=True))
        parent = batch_service.deny_batch(
            batch_id,
            reason_code=data.get("reason_code"),
            **_resolution_kwargs(data),
        )
        return jsonify({"batch": parent.to_dict()}), 200
    except OverrideError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to deny batch")
        return internal_error()


@approvals_bp.post("/batches/<int:batch_id>/consume")
@require_auth
def consume_batch_route(batch_id: int):
    try:
        data = require_payload(request.get_json(silent=True))
        redemptions = batch_service.consume_batch_tokens(batch_id, cart_ref=data.get("cart_ref") or None)
        return jsonify({"redemptions": redemptions, "count": len(redemptions)}), 200
    except OverrideError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to consume batch tokens")
        return internal_error()


@approvals_bp.get("/events")
@require_stream_auth
def events_route():
    """
    Server-Sent Events stream of approval lifecycle events for the session
    user. The first frame is `connected`; `ping` frames keep idle
    connections open.
    """
    user_id = g.current_user.id
    role = g.current_user.role
    connections = get_runtime().connections
    keepalive = current_app.config.get("EVENT_KEEPALIVE_SECONDS", 30)
    subscriber = connections.connect(user_id, role)

    def stream():
        try:
            yield format_sse("connected", {"user_id": user_id, "role": role, "at": to_utc_z(utcnow())})
            while True:
                frame = subscriber.next_frame(keepalive)
                if frame is None:
                    yield format_sse("ping", {"at": to_utc_z(utcnow())})
                else:
                    yield frame
        finally:
            connections.disconnect(subscriber)

    return Response(
        stream_with_context(stream()),
        mimetype="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )
