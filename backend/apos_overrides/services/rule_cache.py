# Overview: In-memory snapshot cache of active threshold rules for the policy evaluator.

from __future__ import annotations

import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, time as time_of_day
from decimal import Decimal

from ..enums import ApprovalLevel, Channel, ExceptionScope, OverrideType
from ..extensions import db
from ..models import ThresholdRule


@dataclass(frozen=True)
class CachedLevel:
    level: ApprovalLevel
    max_value: Decimal | None

    @property
    def is_unlimited(self) -> bool:
        return self.max_value is None


@dataclass(frozen=True)
class CachedException:
    id: int
    scope: ExceptionScope
    product_id: int | None
    category: str | None
    customer_id: int | None
    user_id: int | None
    is_exempt: bool
    threshold_value: Decimal | None
    approval_level: ApprovalLevel | None
    valid_from: datetime | None
    valid_until: datetime | None

    def in_window(self, at: datetime) -> bool:
        if self.valid_from and at < self.valid_from:
            return False
        if self.valid_until and at > self.valid_until:
            return False
        return True


@dataclass(frozen=True)
class CachedRule:
    """
    Immutable copy of a ThresholdRule row.

    The evaluator never hands ORM instances across requests: a snapshot
    survives session teardown and is safe to share between threads.
    """
    id: int
    name: str
    override_type: OverrideType
    threshold_value: Decimal | None
    default_level: ApprovalLevel
    applies_to_pos: bool
    applies_to_quotes: bool
    applies_to_online: bool
    category: str | None
    valid_from: datetime | None
    valid_until: datetime | None
    active_start_time: time_of_day | None
    active_end_time: time_of_day | None
    active_days: frozenset[int] | None
    priority: int
    require_reason: bool
    reason_min_length: int
    timeout_seconds: int
    created_at: datetime | None
    levels: tuple[CachedLevel, ...] = ()
    exceptions: tuple[CachedException, ...] = field(default=(), compare=False)

    def applies_to_channel(self, channel: Channel) -> bool:
        if channel is Channel.POS:
            return self.applies_to_pos
        if channel is Channel.QUOTE:
            return self.applies_to_quotes
        if channel is Channel.ONLINE:
            return self.applies_to_online
        raise AssertionError(f"Unhandled channel: {channel!r}")

    def snapshot(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "rule_type": self.override_type.value,
            "threshold_value": None if self.threshold_value is None else str(self.threshold_value),
            "default_level": self.default_level.value,
            "category": self.category,
            "priority": self.priority,
            "require_reason": self.require_reason,
            "timeout_seconds": self.timeout_seconds,
            "levels": [
                {"level": lvl.level.value, "max_value": None if lvl.max_value is None else str(lvl.max_value)}
                for lvl in self.levels
            ],
        }


def snapshot_rule(rule: ThresholdRule) -> CachedRule:
    return CachedRule(
        id=rule.id,
        name=rule.name,
        override_type=rule.override_type,
        threshold_value=rule.threshold_value,
        default_level=rule.default_approval_level,
        applies_to_pos=bool(rule.applies_to_pos),
        applies_to_quotes=bool(rule.applies_to_quotes),
        applies_to_online=bool(rule.applies_to_online),
        category=rule.category,
        valid_from=rule.valid_from,
        valid_until=rule.valid_until,
        active_start_time=rule.active_start_time,
        active_end_time=rule.active_end_time,
        active_days=frozenset(rule.day_set) if rule.day_set is not None else None,
        priority=rule.priority,
        require_reason=bool(rule.require_reason),
        reason_min_length=rule.reason_min_length or 0,
        timeout_seconds=rule.timeout_seconds or 0,
        created_at=rule.created_at,
        levels=tuple(
            CachedLevel(level=lvl.approval_level, max_value=lvl.max_value)
            for lvl in sorted(rule.levels, key=lambda lvl: lvl.position)
        ),
        exceptions=tuple(
            CachedException(
                id=exc.id,
                scope=exc.exception_scope,
                product_id=exc.product_id,
                category=exc.category,
                customer_id=exc.customer_id,
                user_id=exc.user_id,
                is_exempt=bool(exc.is_exempt),
                threshold_value=exc.override_threshold_value,
                approval_level=ApprovalLevel(exc.override_approval_level) if exc.override_approval_level else None,
                valid_from=exc.valid_from,
                valid_until=exc.valid_until,
            )
            for exc in rule.exceptions
            if exc.is_active
        ),
    )


class RuleCache:
    """
    Active rules grouped by override type, reloaded after `ttl_seconds`.

    Owned by a PolicyEvaluator instance. Rule administration calls
    `invalidate()` after every commit so edits are visible on the next
    evaluation; the TTL only bounds staleness from writers in other
    processes. A TTL of 0 disables caching.
    """

    def __init__(self, ttl_seconds: float = 60, clock=time.monotonic):
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._lock = threading.Lock()
        self._by_type: dict[OverrideType, tuple[CachedRule, ...]] | None = None
        self._loaded_at = 0.0

    def invalidate(self) -> None:
        with self._lock:
            self._by_type = None

    def rules_for(self, override_type: OverrideType) -> tuple[CachedRule, ...]:
        with self._lock:
            if self._by_type is None or self._clock() - self._loaded_at >= self.ttl_seconds:
                self._by_type = self._load()
                self._loaded_at = self._clock()
            return self._by_type.get(override_type, ())

    def _load(self) -> dict[OverrideType, tuple[CachedRule, ...]]:
        rows = db.session.query(ThresholdRule).filter(ThresholdRule.is_active.is_(True)).all()
        grouped: dict[OverrideType, list[CachedRule]] = {}
        for row in rows:
            cached = snapshot_rule(row)
            grouped.setdefault(cached.override_type, []).append(cached)
        return {key: tuple(value) for key, value in grouped.items()}
