# backend/reportflow/routes/system.py
"""
System health endpoint.

Reports database reachability and notification delivery backlog for
deployment monitoring.
"""

import time
from flask import Blueprint, current_app
from ..extensions import db
from ..models import ServiceReport, User
from ..services import notification_service
from reportflow.time_utils import utcnow

system_bp = Blueprint("system", __name__)


def check_database_health() -> dict:
    """
    Check database connectivity and basic operations.

    Returns dict with status and details.
    """
    start_time = time.time()
    try:
        user_count = db.session.query(User).count()
        report_count = db.session.query(ServiceReport).count()

        elapsed_ms = (time.time() - start_time) * 1000
        return {
            "status": "healthy",
            "latency_ms": round(elapsed_ms, 2),
            "details": {
                "users": user_count,
                "reports": report_count,
            }
        }
    except Exception:
        elapsed_ms = (time.time() - start_time) * 1000
        current_app.logger.exception("Database health check failed")
        return {
            "status": "unhealthy",
            "latency_ms": round(elapsed_ms, 2),
            "error": "Database error"
        }


def check_notification_health() -> dict:
    """
    Delivery backlog. Dead letters degrade the service but do not stop it.
    """
    try:
        dispatcher = notification_service.get_dispatcher()
        stats = dispatcher.stats()
        dead = len(dispatcher.dead_letters())
        channel_open = notification_service.get_live_channel().is_open
    except Exception:
        current_app.logger.exception("Notification health check failed")
        return {"status": "unhealthy", "error": "Notification service error"}

    status = "healthy"
    if dead or not channel_open:
        status = "degraded"
    return {
        "status": status,
        "details": {**stats, "dead_letters": dead, "live_channel_open": channel_open},
    }


@system_bp.get("/health")
def health():
    """
    Returns:
    - 200: healthy or degraded (still operational)
    - 503: database unreachable
    """
    start_time = time.time()

    database_health = check_database_health()
    notification_health = check_notification_health()

    all_checks = [database_health, notification_health]
    if any(check["status"] == "unhealthy" for check in all_checks):
        overall_status, http_status = "unhealthy", 503
    elif any(check["status"] == "degraded" for check in all_checks):
        overall_status, http_status = "degraded", 200
    else:
        overall_status, http_status = "healthy", 200

    total_elapsed_ms = (time.time() - start_time) * 1000

    return {
        "status": overall_status,
        "timestamp": utcnow().isoformat() + "Z",
        "total_latency_ms": round(total_elapsed_ms, 2),
        "checks": {
            "database": database_health,
            "notifications": notification_health,
        }
    }, http_status
