# Overview: Request authentication and role decorators for API routes.

from functools import wraps
from flask import request, jsonify, g

from .enums import ApprovalLevel
from .services import session_service
from .services.tier_service import level_satisfies


def bearer_token(*, allow_query: bool = False) -> str | None:
    auth_header = request.headers.get("Authorization")
    if auth_header and auth_header.startswith("Bearer "):
        return auth_header.split(" ", 1)[1]
    if allow_query:
        return request.args.get("token") or None
    return None


def _authenticate(token: str | None):
    if not token:
        return jsonify({"error": "Authentication required"}), 401
    context = session_service.validate_session(token)
    if not context:
        return jsonify({"error": "Invalid or expired token"}), 401
    g.current_user = context.user
    g.session_context = context
    return None


def require_auth(f):
    """
    Require a valid bearer session token.

    Sets g.current_user and g.session_context. Returns 401 if the header is
    missing, the token is invalid/expired/revoked, or the account is inactive.
    """
    @wraps(f)
    def decorated_function(*args, **kwargs):
        failure = _authenticate(bearer_token())
        if failure:
            return failure
        return f(*args, **kwargs)

    return decorated_function


def require_stream_auth(f):
    """
    Like require_auth, but also accepts `?token=` because browser
    EventSource clients cannot set headers.
    """
    @wraps(f)
    def decorated_function(*args, **kwargs):
        failure = _authenticate(bearer_token(allow_query=True))
        if failure:
            return failure
        return f(*args, **kwargs)

    return decorated_function


def require_level(level: ApprovalLevel):
    """Require the authenticated user's role to carry at least `level`."""
    def decorator(f):
        @wraps(f)
        def decorated_function(*args, **kwargs):
            if not hasattr(g, 'current_user'):
                return jsonify({"error": "Authentication required"}), 401
            if not level_satisfies(g.current_user.approval_level, level):
                return jsonify({
                    "error": "Permission denied",
                    "required_level": level.value,
                }), 403
            return f(*args, **kwargs)
        return decorated_function
    return decorator


require_admin = require_level(ApprovalLevel.ADMIN)
