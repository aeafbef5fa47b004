# Overview: Flask API routes for payment channels; discovery, connection tests, gateway auth.

# backend/lanepay/routes/providers.py
"""
Provider API Routes

WHY: Lane setup screens find terminals on the network, check that a
configured terminal answers, and warm the cloud gateway token before the
first sale of the day.
"""

import time

from flask import Blueprint, request, jsonify, current_app

from ..providers import get_provider
from ..providers.base import CLOUD_TERMINAL, DeviceTarget
from .responses import HANDLED_ERRORS, error_response, json_body


providers_bp = Blueprint("providers", __name__, url_prefix="/api/providers")


@providers_bp.get("/<provider>/devices")
def discover_devices_route(provider: str):
    """
    Discover devices for a channel.

    LAN_TERMINAL broadcasts on the local network; CLOUD_TERMINAL lists the
    merchant's registered terminals; processor channels have no devices.
    """
    try:
        channel = get_provider(provider)
        start = time.time()
        devices = channel.discover()
        return jsonify({
            "provider": channel.name,
            "devices": [device.to_dict() for device in devices],
            "elapsed_ms": round((time.time() - start) * 1000, 2),
        }), 200
    except HANDLED_ERRORS as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to discover devices")
        return jsonify({"error": "Internal server error"}), 500


@providers_bp.post("/<provider>/test-connection")
def test_connection_route(provider: str):
    """
    Check that a device or gateway answers.

    Request body (optional): {"target": {"ip": "192.168.1.50", "port": 10009}}

    Returns 200 with {"reachable": false, ...} when the device does not
    answer; that is a result, not an error.
    """
    try:
        channel = get_provider(provider)
        data = json_body()
        target = data.get("target")
        report = channel.test_connection(DeviceTarget.from_dict(target) if target else None)
        return jsonify({"provider": channel.name, **report.to_dict()}), 200
    except HANDLED_ERRORS as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to test connection")
        return jsonify({"error": "Internal server error"}), 500


@providers_bp.post("/cloud-terminal/authenticate")
def cloud_authenticate_route():
    """
    Obtain (or reuse) the cloud gateway bearer token.

    Query params:
    - force: Discard the cached token first (default: false)

    Returns:
        200: {"cached": bool, "expires_at": "...Z"}
        502: Gateway rejected the credentials or could not be reached
    """
    try:
        force = request.args.get("force", "false").lower() == "true"
        status = get_provider(CLOUD_TERMINAL).authenticate(force=force)
        return jsonify(status.to_dict()), 200
    except HANDLED_ERRORS as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to authenticate with cloud terminal gateway")
        return jsonify({"error": "Internal server error"}), 500
