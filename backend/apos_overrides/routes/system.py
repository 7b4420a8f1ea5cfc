# Overview: System health and version endpoints.
"""
System health and version endpoints.

Reports database reachability and the state of the in-process approval
runtime (event queue depth, connected clients, background workers).
"""

import sys
import time
from flask import Blueprint, current_app
from ..extensions import db
from ..enums import OPEN_STATUSES
from ..models import ApprovalRequest, ThresholdRule, User
from ..services.runtime import get_runtime
from ..time_utils import to_utc_z, utcnow

system_bp = Blueprint("system", __name__)


def check_database_health() -> dict:
    start_time = time.time()
    try:
        user_count = db.session.query(User).count()
        rule_count = db.session.query(ThresholdRule).filter(ThresholdRule.is_active.is_(True)).count()
        open_requests = db.session.query(ApprovalRequest).filter(
            ApprovalRequest.status.in_(OPEN_STATUSES)
        ).count()

        elapsed_ms = (time.time() - start_time) * 1000
        return {
            "status": "healthy" if rule_count else "degraded",
            "latency_ms": round(elapsed_ms, 2),
            "details": {
                "users": user_count,
                "active_rules": rule_count,
                "open_requests": open_requests,
            },
        }
    except Exception:
        elapsed_ms = (time.time() - start_time) * 1000
        current_app.logger.exception("Database health check failed")
        return {
            "status": "unhealthy",
            "latency_ms": round(elapsed_ms, 2),
            "error": "Database error",
        }


def check_runtime_health() -> dict:
    runtime = get_runtime()
    workers_expected = current_app.config.get("BACKGROUND_WORKERS_ENABLED", False)
    workers_running = runtime.dispatcher.is_running and runtime.sweeper.is_running
    return {
        "status": "degraded" if workers_expected and not workers_running else "healthy",
        "details": {
            "pending_events": runtime.bus.pending(),
            "online_users": len(runtime.connections.online_user_ids()),
            "workers_running": workers_running,
        },
    }


@system_bp.get("/health")
def health():
    """
    Returns:
    - 200: healthy or degraded (no active rules, workers stopped)
    - 503: database unreachable
    """
    start_time = time.time()
    database_health = check_database_health()
    runtime_health = check_runtime_health()

    all_checks = [database_health, runtime_health]
    if any(check["status"] == "unhealthy" for check in all_checks):
        overall_status, http_status = "unhealthy", 503
    elif any(check["status"] == "degraded" for check in all_checks):
        overall_status, http_status = "degraded", 200
    else:
        overall_status, http_status = "healthy", 200

    return {
        "status": overall_status,
        "timestamp": to_utc_z(utcnow()),
        "total_latency_ms": round((time.time() - start_time) * 1000, 2),
        "checks": {
            "database": database_health,
            "runtime": runtime_health,
        },
    }, http_status


@system_bp.get("/version")
def version():
    env = "production" if not current_app.debug else "development"
    return {
        "api_version": "1.0.0",
        "environment": env,
        "python_version": sys.version.split()[0],
        "server_time": to_utc_z(utcnow()),
    }
