# Overview: Shared JSON error responses for the API blueprints.

from flask import jsonify

from ..extensions import db
from ..validation import OverrideError


def error_response(exc: OverrideError):
    """Roll back whatever the failed operation staged and render the domain error."""
    db.session.rollback()
    return jsonify(exc.to_dict()), exc.status_code


def internal_error():
    db.session.rollback()
    return jsonify({"error": "Internal server error"}), 500
