# Overview: LAN card terminal adapter (newline-delimited JSON over TCP, UDP discovery).

"""
LAN Terminal Provider

WHY: Countertop terminals on the store network run the card transaction
themselves (swipe/insert/tap plus gateway call) and answer the register
with the final result. The sale is synchronous: one request, one reply,
and an approved reply means the charge is captured.

WIRE FORMAT:
- One JSON object per line, both directions
- Request: {"type": "DO_SALE" | "DO_VOID" | "DO_REFUND" | ..., "timestamp": ..., ...}
- Reply: JSON, or legacy "Key=Value" lines (ResponseCode=, TransactionID=, ...)
- Approved when success is true, ResponseCode is one of SUCCESS_CODES,
  or status is APPROVED

DISCOVERY:
- UDP broadcast of DISCOVERY_REQUEST to the terminal port
- Every reply of type PAX_TERMINAL received within the window is a device
"""

from __future__ import annotations

import ipaddress
import json
import logging
import socket
import time
from decimal import Decimal, InvalidOperation

from ..models.orders import PAYMENT_CAPTURED
from lanepay.time_utils import to_utc_z, utcnow
from .base import (
    ACTION_REFUND,
    ACTION_VOID,
    LAN_TERMINAL,
    STATUS_APPROVED,
    STATUS_DECLINED,
    STATUS_PENDING,
    ConnectionReport,
    DeviceInfo,
    DeviceTarget,
    GatewayDeclined,
    GatewayError,
    GatewayUnreachable,
    MissingTarget,
    PaymentRequest,
    PaymentResult,
    ReversalReceipt,
    StatusResult,
    require_action,
    require_positive_amount,
)

logger = logging.getLogger(__name__)


MSG_DO_SALE = "DO_SALE"
MSG_DO_VOID = "DO_VOID"
MSG_DO_REFUND = "DO_REFUND"
MSG_GET_LAST_TRANSACTION = "GET_LAST_TRANSACTION"
MSG_GET_TERMINAL_STATUS = "GET_TERMINAL_STATUS"

SUCCESS_CODES = ("000000", "A0000", "00", "APPROVED")

DISCOVERY_REQUEST = b"PAX_DISCOVERY"
DISCOVERY_REPLY_TYPE = "PAX_TERMINAL"

DEFAULT_PORT = 10009
# Customer has this long to complete the card interaction on the device
SALE_DEVICE_TIMEOUT_SECONDS = 120


def parse_terminal_response(text: str) -> dict:
    """Decode a terminal reply: JSON first, then legacy Key=Value lines."""
    text = (text or "").strip()
    if not text:
        raise GatewayError("Empty response from terminal")

    try:
        parsed = json.loads(text)
    except ValueError:
        parsed = None
    if isinstance(parsed, dict):
        return parsed
    if parsed is not None:
        raise GatewayError("Unexpected terminal response shape", raw=text)

    result: dict = {"success": False, "raw": text}
    keys = {
        "ResponseCode": "responseCode",
        "TransactionID": "transactionId",
        "AuthCode": "authCode",
        "Message": "message",
    }
    found = False
    for line in text.splitlines():
        if "=" not in line:
            continue
        key, _, value = line.partition("=")
        target = keys.get(key.strip())
        if target:
            result[target] = value.strip()
            found = True
    if not found:
        raise GatewayError("Unreadable terminal response", raw=text)
    result["success"] = result.get("responseCode") in SUCCESS_CODES
    return result


def is_approved(response: dict) -> bool:
    if response.get("success") is True:
        return True
    code = response.get("responseCode")
    if code is not None and str(code) in SUCCESS_CODES:
        return True
    status = response.get("status")
    return isinstance(status, str) and status.upper() == "APPROVED"


class LanTerminalProvider:
    name = LAN_TERMINAL

    def __init__(
        self,
        *,
        default_ip: str | None = None,
        port: int = DEFAULT_PORT,
        connect_timeout: float = 10.0,
        response_timeout: float = 120.0,
        discovery_timeout: float = 3.0,
        broadcast_address: str = "255.255.255.255",
    ):
        self.default_ip = default_ip
        self.port = port
        self.connect_timeout = connect_timeout
        self.response_timeout = response_timeout
        self.discovery_timeout = discovery_timeout
        self.broadcast_address = broadcast_address

    # ------------------------------------------------------------------
    # Wire helpers
    # ------------------------------------------------------------------

    def _resolve(self, target: DeviceTarget | None) -> tuple[str, int]:
        ip = (target.ip if target else None) or self.default_ip
        if not ip:
            raise MissingTarget("Terminal IP address is required")
        try:
            ipaddress.ip_address(ip)
        except ValueError:
            raise MissingTarget(f"Invalid terminal IP address: {ip}")

        port = (target.port if target else None) or self.port
        if port < 1 or port > 65535:
            raise MissingTarget(f"Invalid port number: {port}. Must be between 1 and 65535.")
        return ip, port

    def _exchange(self, ip: str, port: int, message_type: str, data: dict,
                  timeout: float | None = None) -> dict:
        message = {"type": message_type, "timestamp": to_utc_z(utcnow())}
        message.update(data)
        payload = (json.dumps(message) + "\n").encode("utf-8")
        timeout = self.response_timeout if timeout is None else timeout

        try:
            sock = socket.create_connection((ip, port), timeout=self.connect_timeout)
        except OSError as exc:
            raise GatewayUnreachable(
                f"Cannot connect to terminal at {ip}:{port}. "
                f"Verify the terminal is powered on and on the same network ({exc})"
            )

        with sock:
            sock.settimeout(timeout)
            buffer = b""
            try:
                sock.sendall(payload)
                while b"\n" not in buffer:
                    chunk = sock.recv(4096)
                    if not chunk:
                        break
                    buffer += chunk
            except socket.timeout:
                raise GatewayError(
                    f"Terminal at {ip}:{port} did not respond within {timeout:g}s; "
                    "it may still be processing the request"
                )
            except OSError as exc:
                raise GatewayError(f"Socket error while communicating with terminal at {ip}:{port}: {exc}")

        line = buffer.split(b"\n", 1)[0]
        if not line.strip():
            raise GatewayError(f"Socket closed before the terminal at {ip}:{port} responded")
        return parse_terminal_response(line.decode("utf-8", errors="replace"))

    # ------------------------------------------------------------------
    # Capabilities
    # ------------------------------------------------------------------

    def discover(self) -> list[DeviceInfo]:
        devices: dict[str, DeviceInfo] = {}
        sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        with sock:
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_BROADCAST, 1)
            try:
                sock.sendto(DISCOVERY_REQUEST, (self.broadcast_address, self.port))
            except OSError as exc:
                raise GatewayUnreachable(f"Discovery broadcast failed: {exc}")

            deadline = time.monotonic() + self.discovery_timeout
            while True:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    break
                sock.settimeout(remaining)
                try:
                    data, (addr, _) = sock.recvfrom(4096)
                except socket.timeout:
                    break
                except OSError as exc:
                    logger.warning("Discovery receive failed: %s", exc)
                    break

                try:
                    reply = json.loads(data.decode("utf-8", errors="replace"))
                except ValueError:
                    continue
                if not isinstance(reply, dict) or reply.get("type") != DISCOVERY_REPLY_TYPE:
                    continue

                ip = reply.get("ip") or addr
                devices[ip] = DeviceInfo(
                    device_id=str(reply.get("serialNumber") or ip),
                    name=reply.get("name") or reply.get("model") or f"Terminal {ip}",
                    provider=self.name,
                    ip=ip,
                    port=int(reply.get("port") or self.port),
                    serial_number=reply.get("serialNumber"),
                    model=reply.get("model"),
                    status="online",
                )

        logger.info("LAN discovery found %d terminal(s)", len(devices))
        return list(devices.values())

    def test_connection(self, target: DeviceTarget | None = None) -> ConnectionReport:
        ip, port = self._resolve(target)
        started = time.monotonic()
        try:
            response = self._exchange(ip, port, MSG_GET_TERMINAL_STATUS, {}, timeout=self.connect_timeout)
        except GatewayUnreachable as exc:
            return ConnectionReport(reachable=False, detail=str(exc))
        except GatewayError as exc:
            # Connected, but the status query itself is unsupported or slow
            return ConnectionReport(
                reachable=True,
                detail=f"Terminal connection successful (status query unavailable: {exc})",
                latency_ms=int((time.monotonic() - started) * 1000),
            )
        return ConnectionReport(
            reachable=True,
            detail="Terminal connection successful",
            latency_ms=int((time.monotonic() - started) * 1000),
            raw=response,
        )

    def initiate_payment(self, request: PaymentRequest) -> PaymentResult:
        amount = require_positive_amount(request.amount)
        ip, port = self._resolve(request.target)

        response = self._exchange(ip, port, MSG_DO_SALE, {
            "amount": format(amount, ".2f"),
            "invoiceNumber": request.invoice_number,
            "description": request.description or "POS Sale",
            "transactionType": "SALE",
            "allowDuplicates": False,
            "timeout": SALE_DEVICE_TIMEOUT_SECONDS,
            "cardEntryMethods": ["SWIPE", "INSERT", "TAP"],
            "requireSignature": False,
            "printReceipt": True,
        })

        if not is_approved(response):
            reason = response.get("message") or response.get("error") or "Transaction declined"
            logger.warning("Terminal %s declined invoice %s: %s", ip, request.invoice_number, reason)
            raise GatewayDeclined(
                reason,
                code=_str_or_none(response.get("responseCode") or response.get("code")),
                transaction_id=_str_or_none(response.get("transactionId")),
                raw=response,
            )

        transaction_id = response.get("transactionId") or response.get("transId")
        if not transaction_id:
            raise GatewayError("Terminal approved the sale without a transaction id", raw=response)

        return PaymentResult(
            transaction_id=str(transaction_id),
            status=PAYMENT_CAPTURED,
            amount=_approved_amount(response, amount),
            auth_code=_str_or_none(response.get("authCode") or response.get("auth_code")),
            auto_capture=False,
            message=response.get("message") or "Transaction approved",
            raw=response,
        )

    def check_status(self, transaction_id: str, target: DeviceTarget | None = None) -> StatusResult:
        ip, port = self._resolve(target)
        response = self._exchange(ip, port, MSG_GET_LAST_TRANSACTION, {"transactionId": transaction_id},
                                  timeout=self.connect_timeout)

        reported = _str_or_none(response.get("transactionId") or response.get("transId"))
        if reported != transaction_id:
            return StatusResult(status=STATUS_PENDING, transaction_id=transaction_id, raw=response)
        if is_approved(response):
            return StatusResult(
                status=STATUS_APPROVED,
                transaction_id=transaction_id,
                settled=True,
                auth_code=_str_or_none(response.get("authCode")),
                message=response.get("message"),
                raw=response,
            )
        return StatusResult(
            status=STATUS_DECLINED,
            transaction_id=transaction_id,
            message=response.get("message") or "Transaction declined",
            raw=response,
        )

    def void_or_refund(self, transaction_id: str, target: DeviceTarget | None, action: str,
                       amount: Decimal | None = None) -> ReversalReceipt:
        action = require_action(action)
        if not transaction_id:
            raise MissingTarget("Transaction ID is required to void or refund a transaction")
        ip, port = self._resolve(target)

        data = {"transactionId": transaction_id}
        if action == ACTION_REFUND and amount is not None:
            data["amount"] = format(require_positive_amount(amount), ".2f")
        message_type = MSG_DO_VOID if action == ACTION_VOID else MSG_DO_REFUND

        response = self._exchange(ip, port, message_type, data)
        if not is_approved(response):
            raise GatewayDeclined(
                response.get("message") or f"Terminal rejected {action.lower()}",
                code=_str_or_none(response.get("responseCode")),
                transaction_id=transaction_id,
                raw=response,
            )
        return ReversalReceipt(
            transaction_id=transaction_id,
            action=action,
            reference_id=_str_or_none(response.get("referenceId") or response.get("transactionId")),
            message=response.get("message") or f"Transaction {action.lower()} approved",
            raw=response,
        )


def _approved_amount(response: dict, requested: Decimal) -> Decimal:
    """Amount the terminal says it charged; the requested amount when it says nothing."""
    value = response.get("amount")
    if value in (None, ""):
        return requested
    try:
        approved = Decimal(str(value))
    except InvalidOperation:
        approved = None
    if approved is None or not approved.is_finite():
        raise GatewayError(f"Terminal approved the sale with an unreadable amount: {value!r}", raw=response)
    return approved


def _str_or_none(value) -> str | None:
    return None if value in (None, "") else str(value)
