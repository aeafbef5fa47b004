# backend/lanepay/routes/system.py
"""
System health and version endpoints.

Reports database reachability and the state of the ledger's backlog
(orders awaiting reconciliation, sales not yet in the books).
"""

import sys
import time
from flask import Blueprint, current_app
from ..extensions import db
from ..models import Order
from ..providers import EXTENSION_KEY as PROVIDERS_KEY
from lanepay.time_utils import utcnow, to_utc_z

system_bp = Blueprint("system", __name__)


def check_database_health() -> dict:
    """
    Check database connectivity and basic operations.

    Returns dict with status and details.
    """
    start_time = time.time()
    try:
        order_count = db.session.query(Order).count()
        flagged = db.session.query(Order).filter(Order.needs_reconciliation.is_(True)).count()

        elapsed_ms = (time.time() - start_time) * 1000

        return {
            "status": "healthy",
            "latency_ms": round(elapsed_ms, 2),
            "details": {
                "orders": order_count,
                "needs_reconciliation": flagged,
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


def check_providers_health() -> dict:
    """Configured channels. No gateway calls: health must stay fast."""
    providers = current_app.extensions.get(PROVIDERS_KEY) or {}
    if not providers:
        return {"status": "degraded", "warning": "No payment providers configured"}
    return {"status": "healthy", "details": {"providers": sorted(providers)}}


@system_bp.get("/health")
def health():
    """
    Returns:
    - 200: Healthy or degraded
    - 503: Database unreachable
    """
    start_time = time.time()

    database_health = check_database_health()
    providers_health = check_providers_health()

    all_checks = [database_health, providers_health]
    if any(check["status"] == "unhealthy" for check in all_checks):
        overall_status = "unhealthy"
        http_status = 503
    elif any(check["status"] == "degraded" for check in all_checks):
        overall_status = "degraded"
        http_status = 200  # Degraded is still operational
    else:
        overall_status = "healthy"
        http_status = 200

    total_elapsed_ms = (time.time() - start_time) * 1000

    response = {
        "status": overall_status,
        "timestamp": to_utc_z(utcnow()),
        "total_latency_ms": round(total_elapsed_ms, 2),
        "checks": {
            "database": database_health,
            "providers": providers_health,
        }
    }

    return response, http_status


@system_bp.get("/version")
def version():
    """Non-sensitive deployment information."""
    env = "production" if not current_app.debug else "development"

    return {
        "api_version": "1.0.0",
        "environment": env,
        "python_version": sys.version.split()[0],
        "server_time": to_utc_z(utcnow()),
    }
