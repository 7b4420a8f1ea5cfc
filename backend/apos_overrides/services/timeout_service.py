# Overview: Service-layer operations for request timeouts; sweeps stale pending requests.

"""
Timeout Sweeper

Pending requests do not wait forever:
- past their rule's `timeout_seconds`  -> timed_out
- past their own `expires_at`          -> expired

Each request is closed with a conditional UPDATE (status == 'pending'), so
when several workers sweep at once, or an approver resolves the request at
the same instant, exactly one of them wins. Only the winner writes the
audit row and publishes the event. Running the sweep twice is harmless.

Resolution paths also close stale requests lazily (see approval_service),
so correctness never depends on the sweep interval.
"""

from __future__ import annotations

import logging
import threading
from datetime import datetime, timedelta

from ..enums import AuditOutcome, RequestStatus, RequestType, VerificationMethod
from ..extensions import db
from ..models import ApprovalRequest, ThresholdRule
from ..time_utils import utcnow
from . import audit_service
from .concurrency import conditional_update, retry_on_lock
from .notification_service import EventBus, LifecycleEvent

_log = logging.getLogger(__name__)

EVENT_NAMES = {
    RequestStatus.TIMED_OUT: "timed-out",
    RequestStatus.EXPIRED: "expired",
}
AUDIT_OUTCOMES = {
    RequestStatus.TIMED_OUT: AuditOutcome.TIMED_OUT,
    RequestStatus.EXPIRED: AuditOutcome.EXPIRED,
}


def rule_deadline(request: ApprovalRequest) -> datetime | None:
    rule = request.rule
    if rule is None or not rule.timeout_seconds:
        return None
    return request.created_at + timedelta(seconds=rule.timeout_seconds)


def stale_status(request: ApprovalRequest, now: datetime) -> RequestStatus | None:
    """Which closing status applies to a pending request right now, if any."""
    if request.status != RequestStatus.PENDING.value:
        return None
    if request.expires_at is not None and request.expires_at <= now:
        return RequestStatus.EXPIRED
    deadline = rule_deadline(request)
    if deadline is not None and deadline <= now:
        return RequestStatus.TIMED_OUT
    return None


def close_stale(request_id: int, status: RequestStatus, now: datetime) -> LifecycleEvent | None:
    """
    Move one pending request to timed_out / expired. Returns the event to
    publish, or None when another writer got there first.
    """
    updated = conditional_update(
        ApprovalRequest,
        [ApprovalRequest.id == request_id, ApprovalRequest.status == RequestStatus.PENDING.value],
        {"status": status.value, "responded_at": now},
    )
    if not updated:
        db.session.rollback()
        return None

    request = db.session.get(ApprovalRequest, request_id)
    if request.request_type == RequestType.BATCH.value:
        conditional_update(
            ApprovalRequest,
            [
                ApprovalRequest.parent_request_id == request_id,
                ApprovalRequest.status == RequestStatus.PENDING.value,
            ],
            {"status": status.value, "responded_at": now},
        )
    audit_service.record(request, AUDIT_OUTCOMES[status], method=VerificationMethod.SYSTEM)
    db.session.commit()

    return LifecycleEvent(
        name=EVENT_NAMES[status],
        payload={"request": request.to_dict()},
        user_ids=(request.requester_id,),
    )


class TimeoutSweeper:
    def __init__(self, app, bus: EventBus, interval_seconds: float = 30):
        self.app = app
        self.bus = bus
        self.interval_seconds = interval_seconds
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    def _candidates(self, now: datetime) -> list[tuple[int, RequestStatus]]:
        pending = db.session.query(ApprovalRequest).outerjoin(
            ThresholdRule, ThresholdRule.id == ApprovalRequest.threshold_rule_id
        ).filter(
            ApprovalRequest.status == RequestStatus.PENDING.value,
            ApprovalRequest.request_type.in_((RequestType.SINGLE.value, RequestType.BATCH.value)),
            db.or_(ApprovalRequest.expires_at.isnot(None), ThresholdRule.timeout_seconds > 0),
        ).order_by(ApprovalRequest.created_at).all()
        found = []
        for request in pending:
            status = stale_status(request, now)
            if status is not None:
                found.append((request.id, status))
        return found

    def sweep_once(self, now: datetime | None = None) -> dict:
        """Close every stale pending request. Returns counts per closing status."""
        now = now or utcnow()
        counts = {RequestStatus.TIMED_OUT.value: 0, RequestStatus.EXPIRED.value: 0}
        for request_id, status in self._candidates(now):
            event = retry_on_lock(lambda: close_stale(request_id, status, now))
            if event is None:
                continue
            counts[status.value] += 1
            self.bus.publish(event)
        if any(counts.values()):
            _log.info("Timeout sweep closed %s", counts)
        return counts

    def _run(self) -> None:
        while not self._stop.wait(self.interval_seconds):
            with self.app.app_context():
                try:
                    self.sweep_once()
                except Exception:
                    db.session.rollback()
                    _log.exception("Timeout sweep failed")
                finally:
                    db.session.remove()

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self._thread and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name="approval-timeout-sweeper", daemon=True)
        self._thread.start()
        _log.info("Timeout sweeper started (every %ss)", self.interval_seconds)

    def stop(self, timeout: float = 2.0) -> None:
        self._stop.set()
        if self._thread:
            self._thread.join(timeout)
            self._thread = None
