# Overview: Per-application engine objects (policy evaluator, event bus, background workers).

from __future__ import annotations

import logging
from dataclasses import dataclass

from flask import current_app

from .notification_service import ConnectionManager, EventBus, LifecycleEvent, NotificationDispatcher
from .policy_service import PolicyEvaluator
from .rule_cache import RuleCache
from .timeout_service import TimeoutSweeper

_log = logging.getLogger(__name__)

EXTENSION_KEY = "apos_overrides"


@dataclass
class OverrideRuntime:
    evaluator: PolicyEvaluator
    bus: EventBus
    connections: ConnectionManager
    dispatcher: NotificationDispatcher
    sweeper: TimeoutSweeper

    def start(self) -> None:
        self.dispatcher.start()
        self.sweeper.start()

    def stop(self) -> None:
        self.sweeper.stop()
        self.dispatcher.stop()


def init_app(app) -> OverrideRuntime:
    bus = EventBus()
    connections = ConnectionManager(bus)
    runtime = OverrideRuntime(
        evaluator=PolicyEvaluator(
            RuleCache(app.config.get("RULE_CACHE_TTL_SECONDS", 60)),
            store_timezone=app.config.get("STORE_TIMEZONE", "UTC"),
        ),
        bus=bus,
        connections=connections,
        dispatcher=NotificationDispatcher(bus, connections),
        sweeper=TimeoutSweeper(app, bus, interval_seconds=app.config.get("TIMEOUT_SWEEP_INTERVAL_SECONDS", 30)),
    )
    app.extensions[EXTENSION_KEY] = runtime
    if app.config.get("BACKGROUND_WORKERS_ENABLED"):
        runtime.start()
    return runtime


def get_runtime() -> OverrideRuntime:
    return current_app.extensions[EXTENSION_KEY]


def policy_evaluator() -> PolicyEvaluator:
    return get_runtime().evaluator


def publish(event: LifecycleEvent) -> None:
    """Hand a committed change to the dispatcher. Never raises."""
    try:
        get_runtime().bus.publish(event)
    except Exception:
        _log.exception("Failed to publish %s event", event.name)


def online_user_ids() -> list[int]:
    return get_runtime().connections.online_user_ids()
