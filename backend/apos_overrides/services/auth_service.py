# Overview: Service-layer operations for auth; password hashing, user creation and login.

"""
Authentication Service

WHY: Every request, approval and delegation must be attributable to a
named staff member. Uses bcrypt for password hashing and validates
password strength.

SECURITY NOTES:
- Passwords hashed with bcrypt (cost factor 12)
- Minimum 8 characters required
- Must contain uppercase, lowercase, digit, and special char
- Session tokens managed separately (see session_service.py)
- Manager override PINs are hashed separately (see credential_service.py)
"""

import bcrypt
import re
from ..extensions import db
from ..enums import UserRole
from ..models import User
from ..time_utils import utcnow
from ..validation import ValidationError, ConflictError, NotFoundError
from . import session_service


class PasswordValidationError(ValidationError):
    """Raised when password doesn't meet strength requirements."""
    pass


def validate_password_strength(password: str) -> None:
    """
    Validate password meets strength requirements.

    Requirements:
    - Minimum 8 characters
    - At least one uppercase letter
    - At least one lowercase letter
    - At least one digit
    - At least one special character (!@#$%^&*(),.'":{}|<>)

    Raises PasswordValidationError if requirements not met.
    """
    if len(password) < 8:
        raise PasswordValidationError("Password must be at least 8 characters long")

    if not re.search(r'[A-Z]', password):
        raise PasswordValidationError("Password must contain at least one uppercase letter")

    if not re.search(r'[a-z]', password):
        raise PasswordValidationError("Password must contain at least one lowercase letter")

    if not re.search(r'\d', password):
        raise PasswordValidationError("Password must contain at least one digit")

    if not re.search(r"[!@#$%^&*(),.'\":{}|<>]", password):
        raise PasswordValidationError("Password must contain at least one special character")


def hash_password(password: str) -> str:
    """
    Hash password using bcrypt with cost factor 12.

    Password is validated for strength before hashing.
    """
    validate_password_strength(password)
    salt = bcrypt.gensalt(rounds=12)
    hashed = bcrypt.hashpw(password.encode('utf-8'), salt)
    return hashed.decode('utf-8')


def verify_password(password: str, password_hash: str) -> bool:
    """
    Verify password against bcrypt hash.

    bcrypt.checkpw() compares in constant time. A malformed stored hash
    is treated as a mismatch.
    """
    try:
        return bcrypt.checkpw(password.encode('utf-8'), password_hash.encode('utf-8'))
    except ValueError:
        return False


def create_user(
    username: str,
    password: str,
    display_name: str | None = None,
    role: str = UserRole.SALESPERSON.value,
) -> User:
    """
    Create new staff user with bcrypt password hashing.

    The role decides direct approval authority: salesperson has none, every
    other role maps onto the approval level of the same name.

    Raises:
        ValidationError: invalid role or weak password
        ConflictError: username already taken
    """
    username = (username or "").strip()
    if not username:
        raise ValidationError("username is required")
    user_role = UserRole.parse(role, "role")

    existing = db.session.query(User).filter(User.username == username).first()
    if existing:
        raise ConflictError("Username already exists")

    password_hash = hash_password(password)

    user = User(
        username=username,
        display_name=display_name or username,
        password_hash=password_hash,
        role=user_role.value,
        created_at=utcnow(),
    )

    db.session.add(user)
    db.session.commit()
    return user


def _authority_rank(role: UserRole) -> int:
    level = role.approval_level
    return level.rank if level else 0


def set_role(user_id: int, role: str) -> User:
    """
    Change a user's organizational role (and therefore their direct authority).

    A demotion revokes the user's open sessions so no terminal keeps acting
    at the old tier.
    """
    user = db.session.get(User, user_id)
    if not user:
        raise NotFoundError("User not found")
    previous = user.user_role
    new_role = UserRole.parse(role, "role")
    user.role = new_role.value
    db.session.commit()

    if _authority_rank(new_role) < _authority_rank(previous):
        session_service.revoke_all_user_sessions(user.id, reason=f"Role changed to {new_role.value}")
    return user


def authenticate(username: str, password: str) -> User | None:
    """
    Authenticate user with username and password.

    Returns User if credentials valid, None otherwise.
    Updates last_login_at timestamp on successful authentication.
    """
    user = db.session.query(User).filter(
        User.username == username,
        User.is_active.is_(True),
    ).first()

    if not user:
        return None

    if verify_password(password, user.password_hash):
        user.last_login_at = utcnow()
        db.session.commit()
        return user

    return None
