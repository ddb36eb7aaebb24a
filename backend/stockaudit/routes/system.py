# backend/stockaudit/routes/system.py
"""
System health endpoint.

Checks the ticket database and the snapshot archive.
"""

import os
import time
from flask import Blueprint, current_app
from ..extensions import db
from ..models import RecoveryTicket, Store
from ..time_utils import utcnow

system_bp = Blueprint("system", __name__)


def check_database_health() -> dict:
    start_time = time.time()
    try:
        store_count = db.session.query(Store).count()
        ticket_count = db.session.query(RecoveryTicket).count()

        elapsed_ms = (time.time() - start_time) * 1000
        return {
            "status": "healthy",
            "latency_ms": round(elapsed_ms, 2),
            "details": {
                "stores": store_count,
                "recovery_tickets": ticket_count,
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


def check_snapshot_archive_health() -> dict:
    """
    A missing archive directory only degrades the service: tickets still work,
    scans return an empty-window error.
    """
    root = current_app.config.get("SNAPSHOT_ARCHIVE_DIR")
    if root and os.path.isdir(root):
        return {"status": "healthy", "details": {"archive_dir": root}}
    return {
        "status": "degraded",
        "warning": "Snapshot archive directory not found",
        "details": {"archive_dir": root},
    }


@system_bp.get("/health")
def health():
    """
    Returns:
    - 200: healthy or degraded
    - 503: database unreachable
    """
    start_time = time.time()

    database_health = check_database_health()
    archive_health = check_snapshot_archive_health()

    all_checks = [database_health, archive_health]
    if any(check["status"] == "unhealthy" for check in all_checks):
        overall_status, http_status = "unhealthy", 503
    elif any(check["status"] == "degraded" for check in all_checks):
        overall_status, http_status = "degraded", 200
    else:
        overall_status, http_status = "healthy", 200

    response = {
        "status": overall_status,
        "timestamp": utcnow().isoformat() + "Z",
        "total_latency_ms": round((time.time() - start_time) * 1000, 2),
        "checks": {
            "database": database_health,
            "snapshot_archive": archive_health,
        }
    }

    return response, http_status
