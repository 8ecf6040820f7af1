# backend/market/routes/system.py
"""
System health endpoint.

Reports database connectivity, the settlement unit-of-work mode and
whether the payment gateway is configured. A SEQUENTIAL settlement mode
reports "degraded": money movements are not atomic on this database.
"""

import time
from flask import Blueprint, current_app
from ..extensions import db
from ..models import Order, Payout
from ..services import unit_of_work
from market.time_utils import utcnow

system_bp = Blueprint("system", __name__)


def check_database_health() -> dict:
    start_time = time.time()
    try:
        order_count = db.session.query(Order).count()
        payout_count = db.session.query(Payout).count()
        elapsed_ms = (time.time() - start_time) * 1000
        return {
            "status": "healthy",
            "latency_ms": round(elapsed_ms, 2),
            "details": {
                "orders": order_count,
                "payouts": payout_count,
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


def check_settlement_health() -> dict:
    try:
        mode = unit_of_work.resolve_mode()
    except Exception:
        current_app.logger.exception("Settlement mode check failed")
        return {"status": "unhealthy", "error": "Could not resolve settlement mode"}

    if mode == unit_of_work.MODE_ATOMIC:
        return {"status": "healthy", "mode": mode}
    return {
        "status": "degraded",
        "mode": mode,
        "warning": "Settlement is not atomic; partial failures need manual reconciliation",
    }


def check_gateway_config() -> dict:
    if current_app.config.get("MIDTRANS_SERVER_KEY"):
        return {"status": "healthy"}
    return {"status": "degraded", "warning": "MIDTRANS_SERVER_KEY not set; webhooks will be rejected"}


@system_bp.get("/health")
def health():
    """
    Returns:
    - 200: healthy or degraded
    - 503: database unreachable
    """
    start_time = time.time()

    checks = {
        "database": check_database_health(),
        "settlement": check_settlement_health(),
        "payment_gateway": check_gateway_config(),
    }

    statuses = [check["status"] for check in checks.values()]
    if "unhealthy" in statuses:
        overall_status, http_status = "unhealthy", 503
    elif "degraded" in statuses:
        overall_status, http_status = "degraded", 200
    else:
        overall_status, http_status = "healthy", 200

    return {
        "status": overall_status,
        "timestamp": utcnow().isoformat() + "Z",
        "total_latency_ms": round((time.time() - start_time) * 1000, 2),
        "checks": checks,
    }, http_status
