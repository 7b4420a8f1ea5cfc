# Overview: Flask API routes for the override audit log; parses input and returns JSON responses.

"""
Override Audit API routes (manager and above)

- GET /api/override-audit          - paginated log
      ?request_id=&override_type=&outcome=&approver_id=&cashier_id=
      &start=ISO&end=ISO&page=1&per_page=50
- GET /api/override-audit/summary  - counts by outcome/tier/day/approver for ?start=&end=

The log is read-only over HTTP.
"""

from flask import Blueprint, request, jsonify, current_app

from ..enums import ApprovalLevel, AuditOutcome, OverrideType
from ..services import audit_service
from ..validation import OverrideError, parse_datetime, parse_int
from ..decorators import require_auth, require_level
from .errors import error_response, internal_error


audit_bp = Blueprint("override_audit", __name__, url_prefix="/api/override-audit")


def _range_args():
    return (
        parse_datetime(request.args.get("start"), "start"),
        parse_datetime(request.args.get("end"), "end"),
    )


@audit_bp.get("")
@require_auth
@require_level(ApprovalLevel.MANAGER)
def audit_log_route():
    try:
        start, end = _range_args()
        override_type = request.args.get("override_type")
        outcome = request.args.get("outcome")
        filters = {
            "request_id": parse_int(request.args.get("request_id"), "request_id", allow_none=True),
            "override_type": OverrideType.parse(override_type, "override_type").value if override_type else None,
            "outcome": AuditOutcome.parse(outcome, "outcome").value if outcome else None,
            "approver_id": parse_int(request.args.get("approver_id"), "approver_id", allow_none=True),
            "cashier_id": parse_int(request.args.get("cashier_id"), "cashier_id", allow_none=True),
            "start": start,
            "end": end,
        }
        page = parse_int(request.args.get("page"), "page", allow_none=True) or 1
        per_page = parse_int(request.args.get("per_page"), "per_page", allow_none=True) or 50
        return jsonify(audit_service.query_log(filters, page=page, per_page=per_page)), 200
    except OverrideError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to query override audit log")
        return internal_error()


@audit_bp.get("/summary")
@require_auth
@require_level(ApprovalLevel.MANAGER)
def audit_summary_route():
    try:
        start, end = _range_args()
        return jsonify(audit_service.summary(start, end)), 200
    except OverrideError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to summarize override audit log")
        return internal_error()
