# Overview: Service-layer operations for delegations; grants, revocation and authority resolution.

"""
Delegation Registry

A delegator (manager or above) temporarily hands approval authority to a
delegate, capped at `max_tier`. Authority for an approval comes from one of
two sources:

- direct:     the user's own role maps to a sufficient approval level
- delegated:  an active, in-window delegation whose effective level
              (min of the delegator's level and max_tier) covers the
              required level

A delegate acting under a delegation is always capped at max_tier. The
personal PIN credential level never widens that cap: it only gates PIN
entry at the terminal.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

from ..enums import ApprovalLevel, MAX_TIER, MIN_TIER, UserRole
from ..extensions import db
from ..models import Delegation, User
from ..time_utils import to_utc_z, utcnow
from ..validation import AuthorizationError, ConflictError, NotFoundError, ValidationError
from .concurrency import conditional_update
from .tier_service import level_satisfies


@dataclass(frozen=True)
class AuthorityGrant:
    """How a user is entitled to approve at `level` (directly or via `delegation`)."""
    user: User
    level: ApprovalLevel
    delegation: Delegation | None = None

    @property
    def is_delegated(self) -> bool:
        return self.delegation is not None

    @property
    def delegation_id(self) -> int | None:
        return self.delegation.id if self.delegation else None


def effective_level(delegation: Delegation) -> ApprovalLevel | None:
    delegator_level = delegation.delegator.approval_level if delegation.delegator else None
    if delegator_level is None or not delegation.delegator.is_active:
        return None
    return ApprovalLevel.from_rank(min(delegator_level.rank, delegation.max_tier))


def _effective_delegations_query(now: datetime):
    return db.session.query(Delegation).filter(
        Delegation.active.is_(True),
        Delegation.starts_at <= now,
        Delegation.expires_at > now,
    )


def grant(
    delegator_id: int,
    delegate_id: int,
    max_tier: int,
    starts_at: datetime | None = None,
    expires_at: datetime | None = None,
    reason: str | None = None,
) -> Delegation:
    """
    Create a delegation. Any active delegation for the same pair is revoked
    and replaced in the same transaction.
    """
    if delegator_id == delegate_id:
        raise ValidationError("Cannot delegate to yourself")
    if isinstance(max_tier, bool) or not isinstance(max_tier, int) or not MIN_TIER <= max_tier <= MAX_TIER:
        raise ValidationError(f"max_tier must be between {MIN_TIER} and {MAX_TIER}")
    starts_at = starts_at or utcnow()
    if expires_at is None:
        raise ValidationError("expires_at is required")
    if expires_at <= starts_at:
        raise ValidationError("expires_at must be after starts_at")

    delegator = db.session.get(User, delegator_id)
    if not delegator or not delegator.is_active:
        raise NotFoundError("Delegator not found")
    delegate = db.session.get(User, delegate_id)
    if not delegate or not delegate.is_active:
        raise NotFoundError("Delegate not found")

    if not level_satisfies(delegator.approval_level, ApprovalLevel.MANAGER):
        raise AuthorizationError("Only managers and above can delegate approval authority")
    if max_tier > delegator.approval_level.rank:
        raise AuthorizationError(
            "Cannot delegate above your own approval level",
            delegator_tier=delegator.approval_level.rank,
        )

    now = utcnow()
    conditional_update(
        Delegation,
        [
            Delegation.delegator_id == delegator_id,
            Delegation.delegate_id == delegate_id,
            Delegation.active.is_(True),
        ],
        {"active": False, "revoked_at": now},
    )

    delegation = Delegation(
        delegator_id=delegator_id,
        delegate_id=delegate_id,
        max_tier=max_tier,
        starts_at=starts_at,
        expires_at=expires_at,
        reason=reason,
        active=True,
        created_at=now,
    )
    db.session.add(delegation)
    db.session.commit()
    return delegation


def revoke(delegation_id: int, actor_id: int) -> Delegation:
    delegation = db.session.get(Delegation, delegation_id)
    if not delegation:
        raise NotFoundError("Delegation not found")
    if delegation.delegator_id != actor_id:
        raise AuthorizationError("Only the delegator can revoke a delegation")

    updated = conditional_update(
        Delegation,
        [Delegation.id == delegation_id, Delegation.active.is_(True)],
        {"active": False, "revoked_at": utcnow()},
    )
    if not updated:
        raise ConflictError("Delegation already revoked")
    db.session.commit()
    db.session.refresh(delegation)
    return delegation


def resolve_authority(user_id: int, required: ApprovalLevel, now: datetime | None = None) -> AuthorityGrant:
    """
    Return how `user_id` may approve at `required`, preferring direct
    authority. Raises AuthorizationError when neither source suffices.
    """
    now = now or utcnow()
    user = db.session.get(User, user_id)
    if not user or not user.is_active:
        raise AuthorizationError("Approver not found or inactive")

    if level_satisfies(user.approval_level, required):
        return AuthorityGrant(user=user, level=user.approval_level)

    best: AuthorityGrant | None = None
    for delegation in _effective_delegations_query(now).filter(Delegation.delegate_id == user_id).all():
        level = effective_level(delegation)
        if not level_satisfies(level, required):
            continue
        if best is None or level.rank > best.level.rank:
            best = AuthorityGrant(user=user, level=level, delegation=delegation)
    if best is None:
        raise AuthorizationError(
            "Insufficient approval authority",
            required_level=required.value,
            required_tier=required.rank,
        )
    return best


def is_authorized(user_id: int, required: ApprovalLevel, now: datetime | None = None) -> bool:
    try:
        resolve_authority(user_id, required, now)
    except AuthorizationError:
        return False
    return True


def max_authority(user_id: int, now: datetime | None = None) -> ApprovalLevel | None:
    """Highest level the user can currently approve at, from any source."""
    now = now or utcnow()
    user = db.session.get(User, user_id)
    if not user or not user.is_active:
        return None
    best = user.approval_level
    for delegation in _effective_delegations_query(now).filter(Delegation.delegate_id == user_id).all():
        level = effective_level(delegation)
        if level is not None and (best is None or level.rank > best.rank):
            best = level
    return best


def list_eligible_approvers(required: ApprovalLevel, now: datetime | None = None, online_user_ids=()) -> list[dict]:
    """
    Everyone who can approve at `required` right now, directly or through a
    delegation, annotated with the source of their authority. Users with
    both keep the direct entry. Online approvers sort first.
    """
    now = now or utcnow()
    online = set(online_user_ids)
    entries: dict[int, dict] = {}

    direct_roles = [
        role.value for role in UserRole
        if role.approval_level is not None and level_satisfies(role.approval_level, required)
    ]
    for user in db.session.query(User).filter(User.is_active.is_(True), User.role.in_(direct_roles)).all():
        entries[user.id] = {
            "user_id": user.id,
            "display_name": user.display_name,
            "role": user.role,
            "level": user.approval_level.value,
            "tier": user.approval_level.rank,
            "delegated": False,
            "delegated_by_id": None,
            "delegated_by_name": None,
            "delegation_id": None,
            "delegation_expires_at": None,
        }

    for delegation in _effective_delegations_query(now).all():
        level = effective_level(delegation)
        delegate = delegation.delegate
        if not level_satisfies(level, required) or not delegate or not delegate.is_active:
            continue
        existing = entries.get(delegate.id)
        if existing is not None and (not existing["delegated"] or existing["tier"] >= level.rank):
            continue
        entries[delegate.id] = {
            "user_id": delegate.id,
            "display_name": delegate.display_name,
            "role": delegate.role,
            "level": level.value,
            "tier": level.rank,
            "delegated": True,
            "delegated_by_id": delegation.delegator_id,
            "delegated_by_name": delegation.delegator.display_name,
            "delegation_id": delegation.id,
            "delegation_expires_at": to_utc_z(delegation.expires_at),
        }

    for entry in entries.values():
        entry["online"] = entry["user_id"] in online
    return sorted(entries.values(), key=lambda e: (not e["online"], e["tier"], e["display_name"]))


def list_active(user_id: int, now: datetime | None = None) -> dict:
    now = now or utcnow()
    base = _effective_delegations_query(now)
    outgoing = base.filter(Delegation.delegator_id == user_id).order_by(Delegation.expires_at).all()
    incoming = base.filter(Delegation.delegate_id == user_id).order_by(Delegation.expires_at).all()
    return {
        "outgoing": [d.to_dict() for d in outgoing],
        "incoming": [d.to_dict() for d in incoming],
    }


def list_eligible_delegates(delegator_id: int) -> list[User]:
    """Active staff other than the delegator, lowest role first."""
    users = db.session.query(User).filter(
        User.is_active.is_(True),
        User.id != delegator_id,
    ).all()
    order = {role: index for index, role in enumerate(UserRole)}
    return sorted(users, key=lambda u: (order[u.user_role], u.display_name))
