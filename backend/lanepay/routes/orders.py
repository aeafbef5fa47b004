# Overview: Flask API routes for orders; create, pay, poll, reverse and sync.

# backend/lanepay/routes/orders.py
"""
Order API Routes

WHY: Registers drive the whole payment lifecycle of a sale through these
endpoints. Handlers parse input, call one service operation and return
JSON; all state rules live in the services.

DESIGN:
- POST /api/orders creates an OPEN order
- POST /api/orders/<id>/payments starts a payment on a provider
- Pending payments are resolved by /poll (or the background poll)
- /void and /refund go through the reconciler, which picks the legal action
- /sync retries the accounting forward
"""

from flask import Blueprint, request, jsonify, current_app

from ..services import ledger_service as ledger
from ..services import payment_flow_service as flow
from ..services import reconciler_service as reconciler
from ..services import sync_service
from ..services.payment_flow_service import (
    OUTCOME_APPROVED,
    OUTCOME_DECLINED,
    OUTCOME_PENDING,
)
from ..validation import ValidationError, optional_int
from .responses import HANDLED_ERRORS, error_response, json_body, user_id_from


orders_bp = Blueprint("orders", __name__, url_prefix="/api/orders")

# HTTP status per start_payment outcome
_START_STATUS = {
    OUTCOME_APPROVED: 201,
    OUTCOME_PENDING: 202,
    OUTCOME_DECLINED: 402,
}


def _bool_arg(name: str):
    value = request.args.get(name)
    if value is None or value == "":
        return None
    value = value.lower()
    if value in ("1", "true", "yes"):
        return True
    if value in ("0", "false", "no"):
        return False
    raise ValidationError(f"{name} must be true or false")


def _order_detail(order) -> dict:
    return {
        "order": order.to_dict(),
        "payments": [payment.to_dict() for payment in order.payments],
        "actions": ledger.payment_actions(order),
        "events": [event.to_dict() for event in ledger.get_order_events(order.id)],
    }


# =============================================================================
# ORDERS
# =============================================================================

@orders_bp.post("")
def create_order_route():
    """
    Create an OPEN order.

    Request body:
    {
        "lane_id": "LANE-01",
        "amount": "42.50",
        "invoice_number": "LANE01-20240115-000123",  (optional, generated if absent)
        "notes": "...",  (optional)
        "user_id": 7  (optional)
    }

    Returns:
        201: Order created
        400: Invalid amount or lane
        409: Duplicate invoice number
    """
    try:
        data = json_body()
        order = ledger.create_order(
            lane_id=data.get("lane_id"),
            amount=data.get("amount"),
            invoice_number=data.get("invoice_number"),
            user_id=user_id_from(data),
            notes=data.get("notes"),
        )
        return jsonify({"order": order.to_dict()}), 201

    except HANDLED_ERRORS as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to create order")
        return jsonify({"error": "Internal server error"}), 500


@orders_bp.get("")
def list_orders_route():
    """
    Query params: status, lane_id, needs_reconciliation, synced, limit (max 200), offset
    """
    try:
        limit = optional_int(request.args.get("limit"), "limit") or 50
        offset = optional_int(request.args.get("offset"), "offset") or 0
        if limit < 1 or limit > 200 or offset < 0:
            raise ValidationError("limit must be 1-200 and offset >= 0")

        orders = ledger.list_orders(
            status=request.args.get("status") or None,
            lane_id=request.args.get("lane_id") or None,
            needs_reconciliation=_bool_arg("needs_reconciliation"),
            synced=_bool_arg("synced"),
            limit=limit,
            offset=offset,
        )
        return jsonify({
            "orders": [order.to_dict() for order in orders],
            "limit": limit,
            "offset": offset,
        }), 200

    except HANDLED_ERRORS as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to list orders")
        return jsonify({"error": "Internal server error"}), 500


@orders_bp.get("/<int:order_id>")
def get_order_route(order_id: int):
    """Order with its payments, allowed actions and event trail."""
    try:
        return jsonify(_order_detail(ledger.get_order(order_id))), 200
    except HANDLED_ERRORS as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to get order")
        return jsonify({"error": "Internal server error"}), 500


# =============================================================================
# PAYMENTS
# =============================================================================

@orders_bp.post("/<int:order_id>/payments")
def start_payment_route(order_id: int):
    """
    Start a payment on a provider.

    Request body:
    {
        "provider": "LAN_TERMINAL" | "CLOUD_TERMINAL" | "CARD_READER" | "CARD_ON_FILE" | "MANUAL_CARD",
        "amount": "42.50",  (optional, defaults to the order amount)
        "target": {"ip": "192.168.1.50", "port": 10009} | {"serial_number": "..."} | {"epi": "..."},
        "opaque_data": {"dataDescriptor": "...", "dataValue": "..."},  (CARD_READER)
        "customer_profile_id": "...", "payment_profile_id": "...",  (CARD_ON_FILE)
        "card": {"number": "...", "expiration": "12/30", "cvv": "123"},  (MANUAL_CARD)
        "poll": true  (optional, poll pending payments in the background)
    }

    Returns:
        201: Approved, order PAID
        202: Pending at the gateway; poll for the outcome
        402: Declined, order stays OPEN
        200: Approved but flagged for reconciliation
        400: Invalid input (no gateway call made)
        409: Order not open, or another payment is in progress
        502: Gateway unreachable or unreadable; payment FAILED
    """
    try:
        data = json_body()
        poll = data.get("poll")
        result = flow.start_payment(
            order_id,
            data.get("provider"),
            amount=data.get("amount"),
            user_id=user_id_from(data),
            target=data.get("target"),
            opaque_data=data.get("opaque_data"),
            customer_profile_id=data.get("customer_profile_id"),
            payment_profile_id=data.get("payment_profile_id"),
            card=data.get("card"),
            description=data.get("description"),
            poll_in_background=None if poll is None else bool(poll),
        )
        return jsonify(result.to_dict()), _START_STATUS.get(result.outcome, 200)

    except HANDLED_ERRORS as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to start payment")
        return jsonify({"error": "Internal server error"}), 500


@orders_bp.post("/<int:order_id>/poll")
def poll_payment_route(order_id: int):
    """
    Poll the pending payment until it resolves or attempts run out.

    Request body (optional): {"max_attempts": 60, "interval_ms": 2000}

    The outcome is APPROVED, DECLINED, TIMEOUT or CANCELLED. TIMEOUT and
    CANCELLED leave the payment PENDING and the order flagged.
    """
    try:
        data = json_body()
        result = flow.poll_payment(
            order_id,
            max_attempts=optional_int(data.get("max_attempts"), "max_attempts"),
            interval_ms=optional_int(data.get("interval_ms"), "interval_ms"),
        )
        return jsonify(result.to_dict()), 200

    except HANDLED_ERRORS as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to poll payment")
        return jsonify({"error": "Internal server error"}), 500


@orders_bp.post("/<int:order_id>/cancel-polling")
def cancel_polling_route(order_id: int):
    try:
        cancelled = flow.cancel_polling(order_id)
        return jsonify({"order_id": order_id, "cancelled": cancelled}), 200
    except HANDLED_ERRORS as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to cancel polling")
        return jsonify({"error": "Internal server error"}), 500


@orders_bp.post("/<int:order_id>/release")
def release_payment_route(order_id: int):
    """
    Give up on a PENDING payment after confirming nothing was charged.

    Request body (optional): {"reason": "...", "user_id": 7}
    """
    try:
        data = json_body()
        flow.cancel_polling(order_id)
        payment = ledger.release_payment(order_id, user_id=user_id_from(data), reason=data.get("reason"))
        return jsonify({
            "payment": payment.to_dict(),
            "order": ledger.get_order(order_id).to_dict(),
        }), 200

    except HANDLED_ERRORS as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to release payment")
        return jsonify({"error": "Internal server error"}), 500


@orders_bp.post("/<int:order_id>/reconciled")
def clear_reconciliation_route(order_id: int):
    """Operator confirmed the outcome of a flagged order by hand."""
    try:
        data = json_body()
        order = ledger.clear_reconciliation_flag(order_id, user_id=user_id_from(data), note=data.get("note"))
        return jsonify({"order": order.to_dict()}), 200
    except HANDLED_ERRORS as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to clear reconciliation flag")
        return jsonify({"error": "Internal server error"}), 500


# =============================================================================
# VOIDS & REFUNDS
# =============================================================================

@orders_bp.post("/<int:order_id>/void")
def void_order_route(order_id: int):
    """
    Void the order's unsettled payment.

    Returns:
        200: Voided (or noop when already voided/refunded)
        409: Payment already settled (refund instead) or still pending
        502: Gateway failure; order unchanged
    """
    try:
        data = json_body()
        result = reconciler.void_order(order_id, user_id=user_id_from(data), reason=data.get("reason"))
        return jsonify(result.to_dict()), 200
    except HANDLED_ERRORS as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to void order")
        return jsonify({"error": "Internal server error"}), 500


@orders_bp.post("/<int:order_id>/refund")
def refund_order_route(order_id: int):
    """
    Refund the order's settled payment; "amount" in the body refunds only part of it.

    Same status codes as /void, plus 400 for an amount outside (0, payment amount].
    """
    try:
        data = json_body()
        result = reconciler.refund_order(order_id, amount=data.get("amount"),
                                         user_id=user_id_from(data), reason=data.get("reason"))
        return jsonify(result.to_dict()), 200
    except HANDLED_ERRORS as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to refund order")
        return jsonify({"error": "Internal server error"}), 500


@orders_bp.post("/<int:order_id>/reverse")
def reverse_order_route(order_id: int):
    """Void or refund, whichever the payment's settlement state allows."""
    try:
        data = json_body()
        result = reconciler.reverse_payment(order_id, amount=data.get("amount"),
                                            user_id=user_id_from(data), reason=data.get("reason"))
        return jsonify(result.to_dict()), 200
    except HANDLED_ERRORS as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to reverse order")
        return jsonify({"error": "Internal server error"}), 500


# =============================================================================
# ACCOUNTING SYNC
# =============================================================================

@orders_bp.post("/<int:order_id>/sync")
def sync_order_route(order_id: int):
    """
    Retry the accounting sync. Always 200 when the attempt ran; check
    order.sync.synced_to_zoho and sync_error for the result.
    """
    try:
        order = sync_service.retry_sync(order_id)
        return jsonify({"order": order.to_dict()}), 200
    except HANDLED_ERRORS as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to sync order")
        return jsonify({"error": "Internal server error"}), 500
