# backend/ledgerbook/routes/system.py
"""
System health endpoint.

Reports database connectivity and row counts for the ledger tables, which is
enough to tell a broken deployment from an empty one.
"""

import time
from flask import Blueprint, current_app
from ..extensions import db
from ..models import Customer, Transaction, PaymentAudit
from ..utils import utcnow, to_utc_z

system_bp = Blueprint("system", __name__)


def check_database_health() -> dict:
    """
    Check database connectivity and basic operations.

    Returns dict with status and details.
    """
    start_time = time.time()
    try:
        customer_count = db.session.query(Customer).count()
        transaction_count = db.session.query(Transaction).count()
        audit_count = db.session.query(PaymentAudit).count()

        elapsed_ms = (time.time() - start_time) * 1000

        return {
            "status": "healthy",
            "latency_ms": round(elapsed_ms, 2),
            "details": {
                "customers": customer_count,
                "transactions": transaction_count,
                "payment_audit": audit_count,
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


@system_bp.get("/health")
def health():
    """
    Health check endpoint.

    Returns:
    - 200: Database reachable
    - 503: Database unreachable
    """
    start_time = time.time()
    database_health = check_database_health()

    if database_health["status"] == "unhealthy":
        http_status = 503
    else:
        http_status = 200

    total_elapsed_ms = (time.time() - start_time) * 1000

    response = {
        "status": database_health["status"],
        "timestamp": to_utc_z(utcnow()),
        "total_latency_ms": round(total_elapsed_ms, 2),
        "checks": {
            "database": database_health,
        }
    }

    return response, http_status
