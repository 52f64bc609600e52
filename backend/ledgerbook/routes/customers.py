# Overview: Flask API routes for customers, their balances, open debts and audit trail.

# backend/ledgerbook/routes/customers.py
"""
Customer API Routes

WHY: Collaborators (POS front ends, back-office tools) read a customer's
position and trigger credit application without touching the tables.

DESIGN:
- Balances are served from the cached aggregates by default;
  ?computed=true derives them from the ledger instead
- Audit history is newest first and capped by LEDGER_MAX_PAGE_SIZE
- Service errors map to status codes through LedgerError.status_code
"""

from flask import Blueprint, request, jsonify, current_app

from ..services import ledger_service, allocation_service, audit_service
from ..services.errors import LedgerError


customers_bp = Blueprint("customers", __name__, url_prefix="/api/customers")


def _page_limit():
    limit = request.args.get("limit", type=int)
    max_size = current_app.config.get("LEDGER_MAX_PAGE_SIZE", 500)
    if limit is None:
        return max_size
    return max(1, min(limit, max_size))


# =============================================================================
# CUSTOMER MASTER DATA
# =============================================================================

@customers_bp.post("")
def create_customer_route():
    """
    Create a customer.

    Request body:
    {
        "name": "Jane Doe",
        "phone": "555-0100"  (optional)
    }

    Returns:
        201: Customer created
        400: Missing name
    """
    try:
        data = request.get_json(silent=True) or {}
        customer = ledger_service.create_customer(
            name=data.get("name"),
            phone=data.get("phone"),
        )
        return jsonify(customer.to_dict()), 201

    except LedgerError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to create customer")
        return jsonify({"error": "Internal server error"}), 500


@customers_bp.get("")
def list_customers_route():
    customers = ledger_service.list_customers(limit=_page_limit())
    return jsonify({"customers": [c.to_dict() for c in customers]}), 200


@customers_bp.get("/<customer_id>")
def get_customer_route(customer_id: str):
    try:
        customer = ledger_service.get_customer(customer_id)
        return jsonify(customer.to_dict()), 200
    except LedgerError as e:
        return jsonify(e.to_dict()), e.status_code


# =============================================================================
# BALANCES / OPEN DEBTS
# =============================================================================

@customers_bp.get("/<customer_id>/balances")
def get_balances_route(customer_id: str):
    """
    Current balances.

    Query params:
    - computed: Derive from the ledger instead of the cached aggregates
      (default: false)
    """
    try:
        computed = request.args.get("computed", "false").lower() == "true"
        balances = ledger_service.get_customer_balances(customer_id, computed=computed)
        return jsonify({
            "customer_id": customer_id,
            "computed": computed,
            **balances.to_dict(),
        }), 200

    except LedgerError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to load balances")
        return jsonify({"error": "Internal server error"}), 500


@customers_bp.get("/<customer_id>/open-debts")
def get_open_debts_route(customer_id: str):
    """Unsettled sale/credit rows, oldest first (the allocation order)."""
    try:
        debts = ledger_service.get_open_debts(customer_id)
        return jsonify({
            "customer_id": customer_id,
            "open_debts": [d.to_dict() for d in debts],
            "total_remaining": sum(d.remaining_amount for d in debts),
        }), 200

    except LedgerError as e:
        return jsonify(e.to_dict()), e.status_code


# =============================================================================
# AUDIT TRAIL
# =============================================================================

@customers_bp.get("/<customer_id>/audit")
def get_audit_history_route(customer_id: str):
    try:
        entries = ledger_service.get_audit_history(customer_id, limit=_page_limit())
        return jsonify({
            "customer_id": customer_id,
            "entries": [e.to_dict() for e in entries],
        }), 200

    except LedgerError as e:
        return jsonify(e.to_dict()), e.status_code


@customers_bp.get("/<customer_id>/audit/summary")
def get_audit_summary_route(customer_id: str):
    try:
        ledger_service.get_customer(customer_id)
        summary = audit_service.summarize(customer_id)
        return jsonify(summary.to_dict()), 200

    except LedgerError as e:
        return jsonify(e.to_dict()), e.status_code


# =============================================================================
# CREDIT APPLICATION
# =============================================================================

@customers_bp.post("/<customer_id>/apply-credit")
def apply_credit_route(customer_id: str):
    """
    Spend the customer's credit balance on open debts, oldest first.

    Request body (optional):
    {
        "max_amount": 5000
    }

    Returns:
        200: Credit applied (credit_used may be 0)
        400: Invalid max_amount
        404: Unknown customer
        409: Concurrent writes outlasted the retry budget
    """
    try:
        data = request.get_json(silent=True) or {}
        result = allocation_service.apply_credit(customer_id, max_amount=data.get("max_amount"))
        customer = ledger_service.get_customer(customer_id)
        return jsonify({
            "application": result.to_dict(),
            "customer": customer.to_dict(),
        }), 200

    except LedgerError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to apply credit")
        return jsonify({"error": "Internal server error"}), 500
