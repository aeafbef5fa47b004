# Overview: Maps service-layer exceptions to JSON error responses.

from flask import current_app, jsonify, request

from ..providers.base import GatewayDeclined, GatewayError, GatewayUnreachable, ProviderError
from ..services.ledger_service import PaymentInProgress
from ..services.reconciler_service import NothingToReverse
from ..validation import ConflictError, NotFoundError, ValidationError, optional_int

# Exceptions a route answers itself; anything else is a 500
HANDLED_ERRORS = (ValidationError, ConflictError, NotFoundError, ProviderError)


def error_response(exc: Exception):
    """
    HTTP status for a known failure.

    ValidationError -> 400, NotFoundError -> 404, ConflictError -> 409,
    NothingToReverse -> 200 with noop (repeat void/refund is not an error),
    GatewayDeclined -> 422, GatewayUnreachable/GatewayError -> 502.
    ValidationError is checked first: InvalidAmount/MissingTarget are both.
    """
    body = {"error": str(exc)}

    if isinstance(exc, ValidationError):
        return jsonify(body), 400
    if isinstance(exc, NotFoundError):
        return jsonify(body), 404
    if isinstance(exc, NothingToReverse):
        body["noop"] = True
        if exc.result is not None:
            body["result"] = exc.result.to_dict()
        return jsonify(body), 200
    if isinstance(exc, PaymentInProgress):
        body["payment_id"] = exc.payment_id
        return jsonify(body), 409
    if isinstance(exc, ConflictError):
        return jsonify(body), 409
    if isinstance(exc, GatewayDeclined):
        body.update({"code": exc.code, "transaction_id": exc.transaction_id})
        return jsonify(body), 422
    if isinstance(exc, (GatewayUnreachable, GatewayError)):
        body["gateway_unreachable"] = isinstance(exc, GatewayUnreachable)
        return jsonify(body), 502
    current_app.logger.exception("Unmapped error")
    return jsonify({"error": "Internal server error"}), 500


def json_body() -> dict:
    data = request.get_json(silent=True)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValidationError("Request body must be a JSON object")
    return data


def user_id_from(data: dict) -> int | None:
    return optional_int(data.get("user_id"), "user_id")
