# Overview: Flask API routes for payment lookups and accounting sync status.

# backend/lanepay/routes/payments.py
"""
Payment Status API Routes

WHY: Support staff look a charge up by the transaction id printed on the
receipt, without knowing which order it belongs to.
"""

from flask import Blueprint, request, jsonify, current_app

from ..services import payment_flow_service as flow
from ..services import sync_service
from ..validation import ValidationError, optional_int
from .responses import HANDLED_ERRORS, error_response, json_body


payments_bp = Blueprint("payments", __name__, url_prefix="/api")


@payments_bp.get("/payments/<provider>/<transaction_id>/status")
def payment_status_route(provider: str, transaction_id: str):
    """
    Local payment record plus the gateway's current view.

    Query params:
    - live: Ask the gateway as well (default: true)

    Returns:
        200: {"payment": ..., "order": ..., "actions": ..., "gateway": ...}
        404: Unknown provider or transaction id
    """
    try:
        live = request.args.get("live", "true").lower() != "false"
        data = flow.get_payment_status_by_transaction(provider, transaction_id, live=live)
        return jsonify(data), 200
    except HANDLED_ERRORS as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to get payment status")
        return jsonify({"error": "Internal server error"}), 500


@payments_bp.get("/sync/summary")
def sync_summary_route():
    try:
        return jsonify(sync_service.sync_summary()), 200
    except Exception:
        current_app.logger.exception("Failed to get sync summary")
        return jsonify({"error": "Internal server error"}), 500


@payments_bp.post("/sync/retry")
def sync_retry_route():
    """Retry a batch of unsynced orders. Body (optional): {"limit": 25}"""
    try:
        data = json_body()
        limit = optional_int(data.get("limit"), "limit")
        if limit is not None and limit < 1:
            raise ValidationError("limit must be at least 1")
        return jsonify(sync_service.retry_failed_syncs(limit=limit)), 200
    except HANDLED_ERRORS as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to retry syncs")
        return jsonify({"error": "Internal server error"}), 500
