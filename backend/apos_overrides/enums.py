# Overview: Closed enumerations shared by models and services.

"""
Override Engine Vocabulary

Every override type, approval level, request status and sales channel is a
closed Enum. Code that branches on a member goes through a single exhaustive
helper (see `OverrideType.comparison`) so a new member fails loudly instead
of silently falling through a string switch.
"""

from __future__ import annotations

import enum


class ValidatedEnum(str, enum.Enum):
    """String-valued enum with a parse helper that raises ValidationError."""

    @classmethod
    def parse(cls, value, field: str | None = None):
        from .validation import ValidationError

        if isinstance(value, cls):
            return value
        try:
            return cls(value)
        except ValueError:
            allowed = ", ".join(m.value for m in cls)
            raise ValidationError(f"Invalid {field or cls.__name__} '{value}'. Must be one of: {allowed}")


class Comparison(str, enum.Enum):
    EXCEEDS = "exceeds"     # approval when value > threshold
    BELOW = "below"         # approval when value < threshold
    NEGATIVE = "negative"   # approval when value < 0
    ALWAYS = "always"       # approval regardless of value


class OverrideType(ValidatedEnum):
    DISCOUNT_PERCENT = "discount_percent"
    DISCOUNT_AMOUNT = "discount_amount"
    MARGIN_BELOW = "margin_below"
    PRICE_BELOW_COST = "price_below_cost"
    VOID_TRANSACTION = "void_transaction"
    VOID_ITEM = "void_item"
    REFUND_AMOUNT = "refund_amount"
    REFUND_NO_RECEIPT = "refund_no_receipt"
    DRAWER_ADJUSTMENT = "drawer_adjustment"

    @property
    def comparison(self) -> Comparison:
        if self in (OverrideType.DISCOUNT_PERCENT, OverrideType.DISCOUNT_AMOUNT, OverrideType.REFUND_AMOUNT):
            return Comparison.EXCEEDS
        if self is OverrideType.MARGIN_BELOW:
            return Comparison.BELOW
        if self is OverrideType.PRICE_BELOW_COST:
            return Comparison.NEGATIVE
        if self in (
            OverrideType.VOID_TRANSACTION,
            OverrideType.VOID_ITEM,
            OverrideType.REFUND_NO_RECEIPT,
            OverrideType.DRAWER_ADJUSTMENT,
        ):
            return Comparison.ALWAYS
        raise AssertionError(f"Unhandled override type: {self!r}")

    @property
    def is_price_type(self) -> bool:
        """Price-type overrides carry original/requested prices (0 < requested <= original)."""
        return self in (
            OverrideType.DISCOUNT_PERCENT,
            OverrideType.DISCOUNT_AMOUNT,
            OverrideType.MARGIN_BELOW,
            OverrideType.PRICE_BELOW_COST,
        )


class ApprovalLevel(ValidatedEnum):
    SHIFT_LEAD = "shift_lead"
    MANAGER = "manager"
    AREA_MANAGER = "area_manager"
    ADMIN = "admin"

    @property
    def rank(self) -> int:
        return _LEVEL_RANKS[self]

    @classmethod
    def lowest(cls) -> "ApprovalLevel":
        return cls.SHIFT_LEAD

    @classmethod
    def highest(cls) -> "ApprovalLevel":
        return cls.ADMIN

    @classmethod
    def from_rank(cls, rank: int) -> "ApprovalLevel":
        for level, level_rank in _LEVEL_RANKS.items():
            if level_rank == rank:
                return level
        from .validation import ValidationError
        raise ValidationError(f"Tier {rank} is outside the range 1-{len(_LEVEL_RANKS)}")


_LEVEL_RANKS = {
    ApprovalLevel.SHIFT_LEAD: 1,
    ApprovalLevel.MANAGER: 2,
    ApprovalLevel.AREA_MANAGER: 3,
    ApprovalLevel.ADMIN: 4,
}

MIN_TIER = 1
MAX_TIER = 4


class UserRole(ValidatedEnum):
    """Staff roles. Every role except salesperson maps onto an approval level."""
    SALESPERSON = "salesperson"
    SHIFT_LEAD = "shift_lead"
    MANAGER = "manager"
    AREA_MANAGER = "area_manager"
    ADMIN = "admin"

    @property
    def approval_level(self) -> ApprovalLevel | None:
        if self is UserRole.SALESPERSON:
            return None
        return ApprovalLevel(self.value)


class RequestStatus(ValidatedEnum):
    PENDING = "pending"
    COUNTERED = "countered"
    APPROVED = "approved"
    DENIED = "denied"
    CANCELLED = "cancelled"
    TIMED_OUT = "timed_out"
    EXPIRED = "expired"

    @property
    def is_terminal(self) -> bool:
        return self not in (RequestStatus.PENDING, RequestStatus.COUNTERED)

    @property
    def is_too_late(self) -> bool:
        return self in (RequestStatus.TIMED_OUT, RequestStatus.EXPIRED)


OPEN_STATUSES = (RequestStatus.PENDING.value, RequestStatus.COUNTERED.value)


class RequestType(ValidatedEnum):
    SINGLE = "single"
    BATCH = "batch"
    CHILD = "child"


class CounterOfferStatus(ValidatedEnum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    DECLINED = "declined"
    SUPERSEDED = "superseded"


class Channel(ValidatedEnum):
    POS = "pos"
    QUOTE = "quote"
    ONLINE = "online"


class VerificationMethod(ValidatedEnum):
    PIN = "pin"
    REMOTE = "remote"
    COUNTER = "counter"
    AUTO = "auto"
    SYSTEM = "system"


class AuditOutcome(ValidatedEnum):
    APPROVED = "approved"
    AUTO_APPROVED = "auto_approved"
    EXCEPTION_APPLIED = "exception_applied"
    DENIED = "denied"
    CANCELLED = "cancelled"
    TIMED_OUT = "timed_out"
    EXPIRED = "expired"
    AUTHORIZATION_DENIED = "authorization_denied"


class ExceptionScope(ValidatedEnum):
    PRODUCT = "product"
    CATEGORY = "category"
    CUSTOMER = "customer"
    USER = "user"
