# Overview: Service-layer operations for manager PIN credentials; verification, lockout and daily quota.

"""
Credential Verifier

Manager PINs authorize overrides at the terminal. Each user has at most one
active credential carrying an approval level, an optional daily override
quota and failed-attempt lockout settings.

VERIFY:
- Locked credentials are rejected before any hashing (ExpiredError).
- A correct PIN on a credential whose level is too low is refused with
  AuthorizationError; attempt counters are left untouched because the PIN
  was right.
- An exhausted daily quota is refused with RateLimitError.
- Success resets failed attempts, bumps the daily counter and stamps
  last_used_at.
- A wrong PIN against a targeted user increments failed_attempts with a SQL
  expression (no lost increments between terminals) and locks the
  credential once it reaches max_failed_attempts.

SECURITY: PINs are bcrypt hashed; errors carry remaining attempts and lock
expiry, never the hash or the PIN.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import datetime, timedelta

import bcrypt
from flask import current_app
from sqlalchemy import or_, and_

from ..enums import ApprovalLevel
from ..extensions import db
from ..models import ManagerCredential, User
from ..time_utils import to_utc_z, utcnow, utc_today
from ..validation import (
    AuthorizationError,
    ExpiredError,
    NotFoundError,
    RateLimitError,
    ValidationError,
)
from .concurrency import conditional_update


PIN_PATTERN = re.compile(r"^\d{4,8}$")


@dataclass(frozen=True)
class VerificationResult:
    credential_id: int
    user_id: int
    level: ApprovalLevel
    remaining_today: int | None


def validate_pin_format(pin) -> str:
    if not isinstance(pin, str) or not PIN_PATTERN.match(pin):
        raise ValidationError("PIN must be 4-8 digits")
    return pin


def hash_pin(pin: str) -> str:
    salt = bcrypt.gensalt(rounds=12)
    return bcrypt.hashpw(pin.encode('utf-8'), salt).decode('utf-8')


def _pin_matches(pin: str, pin_hash: str) -> bool:
    try:
        return bcrypt.checkpw(pin.encode('utf-8'), pin_hash.encode('utf-8'))
    except ValueError:
        return False


def _active_filter(now: datetime):
    return and_(
        ManagerCredential.is_active.is_(True),
        or_(ManagerCredential.valid_from.is_(None), ManagerCredential.valid_from <= now),
        or_(ManagerCredential.valid_until.is_(None), ManagerCredential.valid_until > now),
    )


def get_active_credential(user_id: int, now: datetime | None = None) -> ManagerCredential | None:
    now = now or utcnow()
    return db.session.query(ManagerCredential).filter(
        ManagerCredential.user_id == user_id,
        _active_filter(now),
    ).order_by(ManagerCredential.id.desc()).first()


def _remaining(credential: ManagerCredential, today) -> int | None:
    if credential.max_daily_overrides is None:
        return None
    used = credential.override_count_today if credential.last_override_date == today else 0
    return max(credential.max_daily_overrides - used, 0)


def set_pin(
    user_id: int,
    pin: str,
    level: str,
    *,
    max_daily_overrides: int | None = None,
    valid_from: datetime | None = None,
    valid_until: datetime | None = None,
    created_by_user_id: int | None = None,
) -> ManagerCredential:
    """
    Issue (or rotate) a user's override PIN.

    The previous active credential is deactivated, not deleted. The
    credential level only gates PIN entry; approval authority itself comes
    from the user's role or an active delegation.
    """
    validate_pin_format(pin)
    approval_level = ApprovalLevel.parse(level, "approval_level")
    if max_daily_overrides is not None and max_daily_overrides < 1:
        raise ValidationError("max_daily_overrides must be at least 1")
    if valid_from and valid_until and valid_until <= valid_from:
        raise ValidationError("valid_until must be after valid_from")

    user = db.session.get(User, user_id)
    if not user or not user.is_active:
        raise NotFoundError("User not found")

    db.session.query(ManagerCredential).filter(
        ManagerCredential.user_id == user_id,
        ManagerCredential.is_active.is_(True),
    ).update({"is_active": False}, synchronize_session=False)

    credential = ManagerCredential(
        user_id=user_id,
        pin_hash=hash_pin(pin),
        approval_level=approval_level.value,
        max_daily_overrides=max_daily_overrides,
        max_failed_attempts=current_app.config.get("PIN_MAX_FAILED_ATTEMPTS", 3),
        lockout_minutes=current_app.config.get("PIN_LOCKOUT_MINUTES", 15),
        valid_from=valid_from,
        valid_until=valid_until,
        created_by_user_id=created_by_user_id,
        created_at=utcnow(),
    )
    db.session.add(credential)
    db.session.commit()
    return credential


def deactivate(user_id: int) -> int:
    count = db.session.query(ManagerCredential).filter(
        ManagerCredential.user_id == user_id,
        ManagerCredential.is_active.is_(True),
    ).update({"is_active": False}, synchronize_session=False)
    db.session.commit()
    return count


def _consume_quota(credential: ManagerCredential, now: datetime) -> None:
    """
    Count one override against the credential's daily quota.

    Two conditional UPDATEs: the first rolls a stale counter over to today,
    the second increments today's counter only while under the quota.
    """
    today = utc_today()
    rolled = conditional_update(
        ManagerCredential,
        [
            ManagerCredential.id == credential.id,
            or_(ManagerCredential.last_override_date.is_(None), ManagerCredential.last_override_date != today),
        ],
        {
            "override_count_today": 1,
            "last_override_date": today,
            "failed_attempts": 0,
            "last_used_at": now,
        },
    )
    if rolled:
        return
    criteria = [
        ManagerCredential.id == credential.id,
        ManagerCredential.last_override_date == today,
    ]
    if credential.max_daily_overrides is not None:
        criteria.append(ManagerCredential.override_count_today < ManagerCredential.max_daily_overrides)
    updated = conditional_update(
        ManagerCredential,
        criteria,
        {
            "override_count_today": ManagerCredential.override_count_today + 1,
            "failed_attempts": 0,
            "last_used_at": now,
        },
    )
    if not updated:
        db.session.rollback()
        raise RateLimitError(
            "Daily override limit reached",
            max_daily_overrides=credential.max_daily_overrides,
        )


def _record_failure(credential: ManagerCredential, now: datetime) -> None:
    conditional_update(
        ManagerCredential,
        [ManagerCredential.id == credential.id],
        {"failed_attempts": ManagerCredential.failed_attempts + 1},
    )
    attempts = db.session.query(ManagerCredential.failed_attempts).filter(
        ManagerCredential.id == credential.id
    ).scalar()
    locked_until = None
    if attempts >= credential.max_failed_attempts:
        locked_until = now + timedelta(minutes=credential.lockout_minutes)
        conditional_update(
            ManagerCredential,
            [ManagerCredential.id == credential.id],
            {"locked_until": locked_until, "failed_attempts": 0},
        )
    db.session.commit()

    if locked_until is not None:
        raise AuthorizationError(
            "Invalid PIN; credential locked",
            remaining_attempts=0,
            locked_until=to_utc_z(locked_until),
        )
    raise AuthorizationError("Invalid PIN", remaining_attempts=credential.max_failed_attempts - attempts)


def verify(
    pin: str,
    required_level: ApprovalLevel,
    user_id: int | None = None,
    now: datetime | None = None,
    commit: bool = True,
) -> VerificationResult:
    """
    Check `pin` against active credentials. With `commit=False` the quota
    increment stays in the caller's transaction and is rolled back with it.
    """
    validate_pin_format(pin)
    now = now or utcnow()
    today = utc_today()

    query = db.session.query(ManagerCredential).filter(_active_filter(now))
    if user_id is not None:
        credential = query.filter(ManagerCredential.user_id == user_id).order_by(
            ManagerCredential.id.desc()
        ).first()
        if credential is None:
            raise AuthorizationError("User has no active override credential")
        if credential.locked_until and credential.locked_until > now:
            raise ExpiredError(
                "Credential locked after too many failed PIN attempts",
                remaining_attempts=0,
                locked_until=to_utc_z(credential.locked_until),
            )
        candidates = [credential]
    else:
        candidates = query.filter(
            or_(ManagerCredential.locked_until.is_(None), ManagerCredential.locked_until <= now)
        ).order_by(ManagerCredential.id).all()

    matched = next((c for c in candidates if _pin_matches(pin, c.pin_hash)), None)
    if matched is None:
        if user_id is not None:
            _record_failure(candidates[0], now)
        raise AuthorizationError("Invalid PIN")

    if matched.level.rank < required_level.rank:
        raise AuthorizationError(
            "PIN accepted but approval level is insufficient",
            credential_level=matched.level.value,
            required_level=required_level.value,
        )

    if matched.max_daily_overrides is not None and _remaining(matched, today) == 0:
        raise RateLimitError(
            "Daily override limit reached",
            max_daily_overrides=matched.max_daily_overrides,
        )

    _consume_quota(matched, now)
    if commit:
        db.session.commit()
    db.session.refresh(matched)

    return VerificationResult(
        credential_id=matched.id,
        user_id=matched.user_id,
        level=matched.level,
        remaining_today=_remaining(matched, today),
    )


def consume_remote_quota(user_id: int, now: datetime | None = None, commit: bool = True) -> int | None:
    """
    Count a remote (session-authenticated) approval against the approver's
    daily quota when they hold a credential with one. Returns the remaining
    quota, or None when unlimited.
    """
    now = now or utcnow()
    credential = get_active_credential(user_id, now)
    if credential is None or credential.max_daily_overrides is None:
        return None
    _consume_quota(credential, now)
    if commit:
        db.session.commit()
    db.session.refresh(credential)
    return _remaining(credential, utc_today())


def lockout_status(user_id: int, now: datetime | None = None) -> dict:
    now = now or utcnow()
    credential = get_active_credential(user_id, now)
    if credential is None:
        raise NotFoundError("User has no active override credential")
    locked = bool(credential.locked_until and credential.locked_until > now)
    return {
        "user_id": user_id,
        "locked": locked,
        "locked_until": to_utc_z(credential.locked_until) if locked else None,
        "failed_attempts": credential.failed_attempts,
        "remaining_attempts": max(credential.max_failed_attempts - credential.failed_attempts, 0),
        "remaining_today": _remaining(credential, utc_today()),
    }


def unlock(user_id: int) -> ManagerCredential:
    credential = get_active_credential(user_id)
    if credential is None:
        raise NotFoundError("User has no active override credential")
    conditional_update(
        ManagerCredential,
        [ManagerCredential.id == credential.id],
        {"failed_attempts": 0, "locked_until": None},
    )
    db.session.commit()
    db.session.refresh(credential)
    return credential
