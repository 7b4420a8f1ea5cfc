# Overview: Service-layer operations for notifications; event bus, subscriber registry and dispatcher thread.

"""
Approval Event Delivery

Lifecycle code never talks to client connections. After a transition has
committed it publishes a LifecycleEvent onto the EventBus; the
NotificationDispatcher drains the bus on its own thread and hands each
event to the ConnectionManager, which queues it for every subscriber the
event addresses (by user id or by role).

Delivery is best effort: a full or vanished subscriber queue is logged and
skipped. Nothing on this path can roll back or block a state change.
"""

from __future__ import annotations

import json
import logging
import queue
import threading
from collections import defaultdict
from dataclasses import dataclass, field

from ..enums import UserRole
from ..time_utils import to_utc_z, utcnow

_log = logging.getLogger(__name__)

SUBSCRIBER_QUEUE_SIZE = 100


@dataclass(frozen=True)
class LifecycleEvent:
    name: str
    payload: dict = field(default_factory=dict)
    user_ids: tuple[int, ...] = ()
    roles: tuple[str, ...] = ()


def format_sse(name: str, payload: dict) -> str:
    """Server-Sent Events frame: `event:` line, one `data:` JSON line, blank line."""
    return f"event: {name}\ndata: {json.dumps(payload, default=str)}\n\n"


class EventBus:
    """Thread-safe FIFO between committing code and the dispatcher."""

    def __init__(self) -> None:
        self._queue: queue.Queue[LifecycleEvent] = queue.Queue()

    def publish(self, event: LifecycleEvent) -> None:
        self._queue.put(event)

    def get(self, timeout: float | None = None) -> LifecycleEvent | None:
        try:
            return self._queue.get(timeout=timeout)
        except queue.Empty:
            return None

    def get_nowait(self) -> LifecycleEvent | None:
        try:
            return self._queue.get_nowait()
        except queue.Empty:
            return None

    def pending(self) -> int:
        return self._queue.qsize()


class Subscriber:
    """One open event stream: a bounded queue of pre-formatted SSE frames."""

    def __init__(self, user_id: int, role: str):
        self.user_id = user_id
        self.role = role
        self.queue: queue.Queue[str] = queue.Queue(maxsize=SUBSCRIBER_QUEUE_SIZE)

    def next_frame(self, timeout: float) -> str | None:
        try:
            return self.queue.get(timeout=timeout)
        except queue.Empty:
            return None


class ConnectionManager:
    """Track event-stream subscribers per user and fan events out to them."""

    def __init__(self, bus: EventBus) -> None:
        self._bus = bus
        self._subscribers: dict[int, list[Subscriber]] = defaultdict(list)
        self._lock = threading.Lock()

    def connect(self, user_id: int, role: str) -> Subscriber:
        subscriber = Subscriber(user_id, role)
        with self._lock:
            first = not self._subscribers[user_id]
            self._subscribers[user_id].append(subscriber)
        _log.info("User %s connected to approval events (%d streams)", user_id, self.client_count(user_id))
        if first:
            self._announce_presence(user_id, role, online=True)
        return subscriber

    def disconnect(self, subscriber: Subscriber) -> None:
        with self._lock:
            streams = self._subscribers.get(subscriber.user_id, [])
            if subscriber in streams:
                streams.remove(subscriber)
            last = not streams
            if last:
                self._subscribers.pop(subscriber.user_id, None)
        _log.info("User %s disconnected from approval events", subscriber.user_id)
        if last:
            self._announce_presence(subscriber.user_id, subscriber.role, online=False)

    def _announce_presence(self, user_id: int, role: str, *, online: bool) -> None:
        if UserRole(role).approval_level is None:
            return
        self._bus.publish(LifecycleEvent(
            name="approver-status-change",
            payload={"user_id": user_id, "online": online, "at": to_utc_z(utcnow())},
            roles=(UserRole.SALESPERSON.value,),
        ))

    def deliver(self, event: LifecycleEvent) -> int:
        """Queue `event` for every addressed subscriber. Returns how many got it."""
        frame = format_sse(event.name, event.payload)
        with self._lock:
            targets = []
            for user_id in event.user_ids:
                targets.extend(self._subscribers.get(user_id, []))
            if event.roles:
                for streams in self._subscribers.values():
                    targets.extend(s for s in streams if s.role in event.roles and s not in targets)
        delivered = 0
        for subscriber in targets:
            try:
                subscriber.queue.put_nowait(frame)
                delivered += 1
            except queue.Full:
                _log.warning("Dropping %s event for user %s: stream queue full", event.name, subscriber.user_id)
        return delivered

    def is_online(self, user_id: int) -> bool:
        with self._lock:
            return bool(self._subscribers.get(user_id))

    def online_user_ids(self) -> list[int]:
        with self._lock:
            return [user_id for user_id, streams in self._subscribers.items() if streams]

    def client_count(self, user_id: int) -> int:
        with self._lock:
            return len(self._subscribers.get(user_id, []))


class NotificationDispatcher:
    """Moves events from the bus to the connection manager on a daemon thread."""

    def __init__(self, bus: EventBus, connections: ConnectionManager, poll_seconds: float = 0.5):
        self.bus = bus
        self.connections = connections
        self.poll_seconds = poll_seconds
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    def dispatch(self, event: LifecycleEvent) -> None:
        try:
            self.connections.deliver(event)
        except Exception:
            _log.exception("Failed to dispatch %s event", event.name)

    def drain(self) -> int:
        """Deliver everything currently queued on the calling thread."""
        count = 0
        while True:
            event = self.bus.get_nowait()
            if event is None:
                return count
            self.dispatch(event)
            count += 1

    def _run(self) -> None:
        while not self._stop.is_set():
            event = self.bus.get(timeout=self.poll_seconds)
            if event is not None:
                self.dispatch(event)

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self._thread and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name="approval-dispatcher", daemon=True)
        self._thread.start()
        _log.info("Notification dispatcher started")

    def stop(self, timeout: float = 2.0) -> None:
        self._stop.set()
        if self._thread:
            self._thread.join(timeout)
            self._thread = None
