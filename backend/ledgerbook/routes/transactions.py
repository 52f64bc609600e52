# Overview: Flask API routes for ledger transactions; parses input and returns JSON responses.

# backend/ledgerbook/routes/transactions.py
"""
Transaction API Routes

WHY: Record sales, credits, payments and refunds against a customer and
expose how each payment was used.

DESIGN:
- Payments are allocated inside the same request (oldest debt first)
- Cancel takes a debt off the books and returns its paid part as credit
- Delete is a tombstone; PATCH edits amount, date or description
- Datetimes accepted as ISO-8601 with Z/offsets, stored as UTC-naive
"""

from flask import Blueprint, request, jsonify, current_app

from ..models.ledger import KIND_PAYMENT
from ..services import ledger_service
from ..services.errors import LedgerError
from ..utils import parse_iso_datetime


transactions_bp = Blueprint("transactions", __name__, url_prefix="/api/transactions")


# =============================================================================
# TRANSACTION CREATION
# =============================================================================

@transactions_bp.post("")
def create_transaction_route():
    """
    Append a transaction to a customer's ledger.

    Request body:
    {
        "customer_id": "9f1c...",
        "kind": "sale",              (sale | credit | payment | refund)
        "amount": 10000,             (minor currency units)
        "date": "2026-10-16T09:30:00Z",  (optional, defaults to now)
        "description": "Invoice 42",     (optional)
        "applied_to_debt": true,     (payment only, default true)
        "use_credit": true           (sale/credit only, default true)
    }

    Returns:
        201: Transaction created (payments include their allocation)
        400: Invalid input
        404: Unknown customer
        409: Concurrent writes outlasted the retry budget
        500: Server error
    """
    try:
        data = request.get_json(silent=True) or {}

        customer_id = data.get("customer_id")
        kind = data.get("kind")
        amount = data.get("amount")

        if not customer_id or not kind or amount is None:
            return jsonify({"error": "customer_id, kind, and amount required"}), 400

        try:
            date = parse_iso_datetime(data.get("date"))
        except (TypeError, ValueError, AttributeError):
            return jsonify({"error": "date must be an ISO-8601 datetime"}), 400

        applied_to_debt = data.get("applied_to_debt", True)
        use_credit = data.get("use_credit", True)
        if not isinstance(applied_to_debt, bool) or not isinstance(use_credit, bool):
            return jsonify({"error": "applied_to_debt and use_credit must be booleans"}), 400

        if kind == KIND_PAYMENT:
            txn, allocation = ledger_service.record_payment(
                customer_id,
                amount,
                date=date,
                description=data.get("description"),
                applied_to_debt=applied_to_debt,
            )
            body = {"transaction": txn.to_dict(), "allocation": allocation.to_dict()}
        else:
            txn = ledger_service.create_transaction(
                customer_id,
                kind,
                amount,
                date=date,
                description=data.get("description"),
                use_credit=use_credit,
            )
            body = {"transaction": txn.to_dict()}

        customer = ledger_service.get_customer(customer_id)
        body["customer"] = customer.to_dict()
        return jsonify(body), 201

    except LedgerError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to create transaction")
        return jsonify({"error": "Internal server error"}), 500


# =============================================================================
# TRANSACTION QUERIES
# =============================================================================

@transactions_bp.get("/<transaction_id>")
def get_transaction_route(transaction_id: str):
    try:
        txn = ledger_service.get_transaction(transaction_id)
        return jsonify(txn.to_dict()), 200
    except LedgerError as e:
        return jsonify(e.to_dict()), e.status_code


@transactions_bp.get("/<transaction_id>/disposition")
def get_disposition_route(transaction_id: str):
    """
    How much of a payment went to debt and how much became credit.

    Returns:
        200: Disposition derived from the audit trail
        400: Transaction is not a payment
        404: Unknown transaction
    """
    try:
        disposition = ledger_service.get_payment_disposition(transaction_id)
        return jsonify(disposition.to_dict()), 200
    except LedgerError as e:
        return jsonify(e.to_dict()), e.status_code


# =============================================================================
# CANCELLATION / SOFT DELETE
# =============================================================================

@transactions_bp.post("/<transaction_id>/cancel")
def cancel_transaction_route(transaction_id: str):
    """
    Cancel a sale/credit; any paid portion becomes credit.

    Request body (optional):
    {
        "reason": "Customer returned goods"
    }
    """
    try:
        data = request.get_json(silent=True) or {}
        txn = ledger_service.cancel_transaction(transaction_id, reason=data.get("reason"))
        customer = ledger_service.get_customer(txn.customer_id)
        return jsonify({
            "transaction": txn.to_dict(),
            "customer": customer.to_dict(),
        }), 200

    except LedgerError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to cancel transaction")
        return jsonify({"error": "Internal server error"}), 500


@transactions_bp.delete("/<transaction_id>")
def delete_transaction_route(transaction_id: str):
    try:
        txn = ledger_service.delete_transaction(transaction_id)
        customer = ledger_service.get_customer(txn.customer_id)
        return jsonify({
            "transaction": txn.to_dict(),
            "customer": customer.to_dict(),
        }), 200

    except LedgerError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to delete transaction")
        return jsonify({"error": "Internal server error"}), 500


@transactions_bp.patch("/<transaction_id>")
def update_transaction_route(transaction_id: str):
    """
    Edit a transaction's amount, date or description.

    Request body (any subset):
    {
        "amount": 12000,
        "date": "2026-10-15T18:00:00Z",
        "description": "Invoice 42 (corrected)"
    }

    Returns:
        200: Updated transaction and refreshed customer balances
        400: Invalid input, or the amount can no longer change
        404: Unknown transaction
    """
    try:
        data = request.get_json(silent=True) or {}

        try:
            date = parse_iso_datetime(data.get("date"))
        except (TypeError, ValueError, AttributeError):
            return jsonify({"error": "date must be an ISO-8601 datetime"}), 400

        description = data.get("description")
        if description is not None and not isinstance(description, str):
            return jsonify({"error": "description must be a string"}), 400

        txn = ledger_service.update_transaction(
            transaction_id,
            amount=data.get("amount"),
            date=date,
            description=description,
        )
        customer = ledger_service.get_customer(txn.customer_id)
        return jsonify({
            "transaction": txn.to_dict(),
            "customer": customer.to_dict(),
        }), 200

    except LedgerError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to update transaction")
        return jsonify({"error": "Internal server error"}), 500
