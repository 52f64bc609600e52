# Overview: Flask API routes for balance reconciliation, audit backfill and anomaly reports.

"""
Reconciliation API Routes

SEMANTICS:
- dry_run defaults to true; nothing is written unless dry_run is false.
- apply corrects each customer in its own unit; a failure for one customer
  leaves the corrections already committed in place.
- anomalies are reported only; nothing here repairs them.
"""

from flask import Blueprint, request, jsonify, current_app

from ..services import reconciliation_service
from ..services.errors import LedgerError


reconciliation_bp = Blueprint("reconciliation", __name__, url_prefix="/api/reconciliation")


@reconciliation_bp.post("/run")
def run_reconciliation_route():
    data = request.get_json(silent=True) or {}
    dry_run = data.get("dry_run", True)
    if not isinstance(dry_run, bool):
        return jsonify({"error": "dry_run must be a boolean"}), 400

    try:
        results = reconciliation_service.reconcile(dry_run=dry_run)
    except LedgerError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Reconciliation failed")
        return jsonify({"error": "Internal server error"}), 500

    key = "discrepancies" if dry_run else "corrections"
    return jsonify({
        "dry_run": dry_run,
        "count": len(results),
        key: [r.to_dict() for r in results],
    }), 200


@reconciliation_bp.post("/backfill-audit")
def backfill_audit_route():
    try:
        created = reconciliation_service.backfill_audit()
    except LedgerError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Audit backfill failed")
        return jsonify({"error": "Internal server error"}), 500

    return jsonify({"created": created}), 200


@reconciliation_bp.get("/anomalies")
def list_anomalies_route():
    anomalies = reconciliation_service.find_anomalies()
    status_mismatches = reconciliation_service.find_status_mismatches()
    return jsonify({
        "anomalies": [a.to_dict() for a in anomalies],
        "status_mismatches": [m.to_dict() for m in status_mismatches],
    }), 200
