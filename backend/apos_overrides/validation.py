from __future__ import annotations

from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Any

from .time_utils import parse_iso_datetime


# Largest value accepted for any monetary or percentage field ($99,999,999.9999)
MAX_VALUE = Decimal("99999999.9999")
VALUE_QUANTUM = Decimal("0.0001")


class OverrideError(ValueError):
    """
    Base class for every domain error raised by the override engine.

    Each subclass carries the HTTP status used by the blueprints and an
    optional `details` dict with actionable context (remaining attempts,
    lock expiry, required level). Details never include credential material.
    """
    status_code = 400
    error_code = "override_error"

    def __init__(self, message: str, **details: Any):
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> dict:
        payload = {"error": self.message, "code": self.error_code}
        payload.update(self.details)
        return payload


class ValidationError(OverrideError):
    """400-level input problem. Raised before any state change."""
    status_code = 400
    error_code = "validation_error"


class AuthorizationError(OverrideError):
    """403: insufficient level, ineligible role, or no active delegation."""
    status_code = 403
    error_code = "authorization_error"


class NotFoundError(OverrideError):
    """404: unknown request, counter-offer, token, delegation or rule."""
    status_code = 404
    error_code = "not_found"


class ConflictError(OverrideError):
    """409: the conditional write lost (already resolved, already consumed...)."""
    status_code = 409
    error_code = "conflict"


class ExpiredError(OverrideError):
    """410: too late (token expired, request timed out, PIN locked)."""
    status_code = 410
    error_code = "expired"


class RateLimitError(OverrideError):
    """429: daily override quota exhausted."""
    status_code = 429
    error_code = "rate_limited"


def require_payload(payload: Any) -> dict:
    if payload is None:
        return {}
    if not isinstance(payload, dict):
        raise ValidationError("Invalid JSON payload")
    return payload


def require_fields(payload: dict, *fields: str) -> None:
    missing = [f for f in fields if payload.get(f) is None or payload.get(f) == ""]
    if missing:
        raise ValidationError(f"Missing required fields: {', '.join(missing)}")


def parse_decimal(value: Any, field: str, *, allow_none: bool = False) -> Decimal | None:
    """
    Coerce JSON numbers / numeric strings into a quantized Decimal.

    Booleans are rejected (bool is an int subclass), as are NaN/Infinity
    and anything outside +/- MAX_VALUE.
    """
    if value is None:
        if allow_none:
            return None
        raise ValidationError(f"{field} is required")
    if isinstance(value, bool):
        raise ValidationError(f"{field} must be a number")
    if isinstance(value, Decimal):
        result = value
    else:
        if isinstance(value, str) and not value.strip():
            raise ValidationError(f"{field} must be a number")
        try:
            result = Decimal(str(value).strip())
        except (InvalidOperation, ValueError):
            raise ValidationError(f"{field} must be a number")
    if not result.is_finite():
        raise ValidationError(f"{field} must be a finite number")
    if abs(result) > MAX_VALUE:
        raise ValidationError(f"{field} exceeds the maximum of {MAX_VALUE}")
    return result.quantize(VALUE_QUANTUM)


def parse_int(value: Any, field: str, *, allow_none: bool = False) -> int | None:
    if value is None:
        if allow_none:
            return None
        raise ValidationError(f"{field} is required")
    if isinstance(value, bool):
        raise ValidationError(f"{field} must be an integer")
    if isinstance(value, int):
        return value
    if isinstance(value, str) and value.strip().lstrip("-").isdigit():
        return int(value.strip())
    raise ValidationError(f"{field} must be an integer")


def parse_datetime(value: Any, field: str, *, allow_none: bool = True) -> datetime | None:
    if value is None or value == "":
        if allow_none:
            return None
        raise ValidationError(f"{field} is required")
    if isinstance(value, datetime):
        return value
    if not isinstance(value, str):
        raise ValidationError(f"{field} must be an ISO-8601 datetime")
    try:
        return parse_iso_datetime(value)
    except ValueError:
        raise ValidationError(f"{field} must be an ISO-8601 datetime")


def enforce_price_range(original_value: Decimal, requested_value: Decimal, *, field: str = "requested_value") -> None:
    """Price-type overrides must satisfy 0 < requested <= original."""
    if requested_value <= 0:
        raise ValidationError(f"{field} must be greater than 0")
    if requested_value > original_value:
        raise ValidationError(
            f"{field} cannot exceed the original value",
            original_value=str(original_value),
        )
