# Overview: Flask API routes for auth operations; parses input and returns JSON responses.

"""
Authentication API routes

- POST /api/auth/login   - exchange username/password for a bearer token
- POST /api/auth/logout  - revoke the current token
- GET  /api/auth/me      - current user and their approval authority

The same bearer token authenticates every other blueprint and the approval
event stream.
"""

from flask import Blueprint, request, jsonify, current_app, g

from ..services import auth_service, delegation_service, session_service
from ..validation import OverrideError, require_payload
from ..decorators import require_auth, bearer_token
from .errors import error_response, internal_error


auth_bp = Blueprint("auth", __name__, url_prefix="/api/auth")


@auth_bp.post("/login")
def login_route():
    """
    Authenticate user and create session token.

    Response:
        {"user": {...}, "token": "<64 hex chars>", "expires_at": "...Z"}
    """
    try:
        data = require_payload(request.get_json(silent=True))
        username = data.get("username")
        password = data.get("password")

        if not all([username, password]):
            return jsonify({"error": "username and password required"}), 400

        user = auth_service.authenticate(username, password)
        if not user:
            return jsonify({"error": "Invalid credentials"}), 401

        session, token = session_service.create_session(
            user.id,
            user_agent=request.headers.get("User-Agent"),
            ip_address=request.remote_addr,
        )
        return jsonify({
            "user": user.to_dict(),
            "token": token,
            "expires_at": session.to_dict()["expires_at"],
        }), 200
    except OverrideError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Login failed")
        return internal_error()


@auth_bp.post("/logout")
@require_auth
def logout_route():
    session_service.revoke_session(bearer_token())
    return jsonify({"message": "Logged out"}), 200


@auth_bp.get("/me")
@require_auth
def me_route():
    """Current user, including the highest level they can approve at right now."""
    user = g.current_user
    authority = delegation_service.max_authority(user.id)
    return jsonify({
        "user": user.to_dict(),
        "effective_level": authority.value if authority else None,
        "effective_tier": authority.rank if authority else None,
        "delegations": delegation_service.list_active(user.id),
    }), 200
