# Overview: Cloud-connected terminal adapter (HTTPS REST, asynchronous sale).

"""
Cloud Terminal Provider

WHY: Some terminals are not reachable on the store LAN; the register asks
a cloud gateway to push the sale to the device and then polls the gateway
until the customer finishes on the terminal.

FLOW:
1. Bearer token from POST /auth/token (held in the shared CredentialCache)
2. POST {device}/transactions/sale -> PENDING (or an immediate result)
3. GET {device}/transactions/{id} until APPROVED / DECLINED
4. POST {device}/transactions/{id}/void or /refund to reverse

DEVICE ADDRESSING:
A terminal is addressed either by serial number (/terminals/{serial}) or
by EPI (/epi/{epi}). Both route sets are the same channel; the target
decides which path prefix is used.
"""

from __future__ import annotations

import logging
from decimal import Decimal, InvalidOperation

import httpx

from ..models.orders import PAYMENT_AUTHORIZED
from .base import (
    ACTION_REFUND,
    ACTION_VOID,
    CLOUD_TERMINAL,
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
    PendingHandle,
    ReversalReceipt,
    StatusResult,
    require_action,
    require_positive_amount,
)
from .credentials import CredentialCache, CredentialStatus

logger = logging.getLogger(__name__)


APPROVED_STATUSES = ("APPROVED", "SUCCESS", "SETTLED")
PENDING_STATUSES = ("PENDING", "PROCESSING")
DECLINED_STATUSES = ("DECLINED", "FAILED", "CANCELLED")
REVERSAL_OK_STATUSES = ("SUCCESS", "VOIDED", "REFUNDED", "APPROVED")

DEFAULT_TOKEN_TTL_SECONDS = 3600
# Seconds the gateway waits for the customer at the device
SALE_DEVICE_TIMEOUT_SECONDS = 180


def device_path(target: DeviceTarget | None) -> str:
    """URL prefix for a terminal: serial number or EPI addressing."""
    if target is not None and target.serial_number:
        return f"/terminals/{target.serial_number.strip()}"
    if target is not None and target.epi:
        return f"/epi/{target.epi.strip()}"
    raise MissingTarget("Terminal serial number or EPI is required")


class CloudTerminalProvider:
    name = CLOUD_TERMINAL

    def __init__(
        self,
        *,
        base_url: str,
        merchant_id: str | None,
        api_key: str | None,
        secret_key: str | None,
        timeout: float = 30.0,
        credentials: CredentialCache | None = None,
        client: httpx.Client | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.merchant_id = merchant_id
        self.api_key = api_key
        self.secret_key = secret_key
        self.client = client or httpx.Client(base_url=self.base_url, timeout=timeout)
        self.credentials = credentials or CredentialCache(CLOUD_TERMINAL, self._login)

    # ------------------------------------------------------------------
    # Authentication
    # ------------------------------------------------------------------

    def _login(self) -> tuple[str, int]:
        if not (self.merchant_id and self.api_key and self.secret_key):
            raise GatewayError("Cloud terminal credentials are not configured")

        data = self._send("POST", "/auth/token", json={
            "merchantId": self.merchant_id,
            "apiKey": self.api_key,
            "secretKey": self.secret_key,
        }, authenticated=False)

        token = data.get("token")
        if not token:
            raise GatewayError(data.get("message") or "Authentication failed: no token returned", raw=data)
        return token, int(data.get("expiresIn") or DEFAULT_TOKEN_TTL_SECONDS)

    def authenticate(self, force: bool = False) -> CredentialStatus:
        return self.credentials.authenticate(force=force)

    # ------------------------------------------------------------------
    # HTTP
    # ------------------------------------------------------------------

    def _send(self, method: str, path: str, *, json: dict | None = None,
              authenticated: bool = True, _retried: bool = False) -> dict:
        headers = {"Content-Type": "application/json"}
        if authenticated:
            headers["Authorization"] = f"Bearer {self.credentials.get_token()}"

        try:
            response = self.client.request(method, path, json=json, headers=headers)
        except (httpx.ConnectError, httpx.ConnectTimeout) as exc:
            raise GatewayUnreachable(f"Cannot reach cloud terminal gateway at {self.base_url}: {exc}") from exc
        except httpx.TimeoutException as exc:
            raise GatewayError(f"Cloud terminal gateway timed out on {method} {path}") from exc
        except httpx.HTTPError as exc:
            raise GatewayError(f"Cloud terminal gateway request failed: {exc}") from exc

        if response.status_code == 401 and authenticated and not _retried:
            # Token revoked or expired early; refresh once
            self.credentials.invalidate()
            return self._send(method, path, json=json, authenticated=True, _retried=True)

        try:
            data = response.json()
        except ValueError:
            raise GatewayError(
                f"Cloud terminal gateway returned a non-JSON response (HTTP {response.status_code})",
                raw=response.text,
            )

        if response.is_error:
            message = data.get("message") or data.get("error") if isinstance(data, dict) else None
            raise GatewayError(
                f"Cloud terminal gateway error (HTTP {response.status_code}): {message or 'request failed'}",
                raw=data,
            )
        if not isinstance(data, (dict, list)):
            raise GatewayError("Unexpected cloud terminal response shape", raw=data)
        return data if isinstance(data, dict) else {"items": data}

    # ------------------------------------------------------------------
    # Capabilities
    # ------------------------------------------------------------------

    def discover(self) -> list[DeviceInfo]:
        data = self._send("GET", "/terminals")
        raw_devices = data.get("devices") or data.get("terminals") or data.get("items") or []
        devices = []
        for item in raw_devices:
            if not isinstance(item, dict):
                continue
            serial = item.get("serialNumber") or item.get("serial_number")
            devices.append(DeviceInfo(
                device_id=str(item.get("id") or serial or item.get("epi") or ""),
                name=item.get("name") or item.get("model") or f"Terminal {serial}",
                provider=self.name,
                serial_number=serial,
                model=item.get("model"),
                status=item.get("status"),
                extra={"epi": item["epi"]} if item.get("epi") else {},
            ))
        return devices

    def test_connection(self, target: DeviceTarget | None = None) -> ConnectionReport:
        path = f"{device_path(target)}/status" if target and (target.serial_number or target.epi) else "/terminals"
        try:
            data = self._send("GET", path)
        except GatewayUnreachable as exc:
            return ConnectionReport(reachable=False, detail=str(exc))
        except GatewayError as exc:
            return ConnectionReport(reachable=False, detail=str(exc), raw=exc.raw)
        return ConnectionReport(reachable=True, detail="Cloud terminal gateway reachable", raw=data)

    def initiate_payment(self, request: PaymentRequest) -> PaymentResult | PendingHandle:
        amount = require_positive_amount(request.amount)
        prefix = device_path(request.target)

        data = self._send("POST", f"{prefix}/transactions/sale", json={
            "amount": format(amount, ".2f"),
            "invoiceNumber": request.invoice_number,
            "description": request.description or "POS Sale - Terminal Payment",
            "transactionType": "SALE",
            "timeout": SALE_DEVICE_TIMEOUT_SECONDS,
        })

        status = str(data.get("status") or "").upper()
        transaction_id = data.get("transactionId") or data.get("id")

        if status in DECLINED_STATUSES:
            raise GatewayDeclined(
                data.get("message") or data.get("error") or "Transaction declined",
                code=_str_or_none(data.get("errorCode") or data.get("code")),
                transaction_id=_str_or_none(transaction_id),
                raw=data,
            )
        if not transaction_id:
            raise GatewayError("Cloud terminal gateway did not return a transaction id", raw=data)

        if status in PENDING_STATUSES:
            logger.info("Sale for invoice %s pushed to %s as %s", request.invoice_number, prefix, transaction_id)
            return PendingHandle(
                transaction_id=str(transaction_id),
                target=request.target,
                message="Payment request sent to terminal. Complete payment on device.",
                raw=data,
            )
        if status in APPROVED_STATUSES:
            return PaymentResult(
                transaction_id=str(transaction_id),
                status=PAYMENT_AUTHORIZED,
                amount=_decimal_or(data.get("amount"), amount),
                auth_code=_str_or_none(data.get("authCode")),
                auto_capture=True,
                message=data.get("message") or "Payment processed successfully",
                raw=data,
            )
        raise GatewayError(f"Unexpected cloud terminal sale status: {status or 'missing'}", raw=data)

    def check_status(self, transaction_id: str, target: DeviceTarget | None = None) -> StatusResult:
        if not transaction_id:
            raise MissingTarget("Transaction ID is required")
        if target is not None and (target.serial_number or target.epi):
            path = f"{device_path(target)}/transactions/{transaction_id}"
        else:
            path = f"/transactions/{transaction_id}"

        data = self._send("GET", path)
        status = str(data.get("status") or data.get("transactionStatus") or "").upper()
        message = data.get("message") or data.get("responseReasonDescription") or f"Transaction {status.lower()}"

        if status in APPROVED_STATUSES:
            return StatusResult(
                status=STATUS_APPROVED,
                transaction_id=transaction_id,
                settled=status == "SETTLED",
                auth_code=_str_or_none(data.get("authCode")),
                amount=_decimal_or(data.get("amount"), None),
                message=message,
                raw=data,
            )
        if status in DECLINED_STATUSES:
            return StatusResult(status=STATUS_DECLINED, transaction_id=transaction_id, message=message, raw=data)
        if status in PENDING_STATUSES:
            return StatusResult(status=STATUS_PENDING, transaction_id=transaction_id, message=message, raw=data)
        raise GatewayError(f"Unknown cloud terminal transaction status: {status or 'missing'}", raw=data)

    def void_or_refund(self, transaction_id: str, target: DeviceTarget | None, action: str,
                       amount: Decimal | None = None) -> ReversalReceipt:
        action = require_action(action)
        if not transaction_id:
            raise MissingTarget("Transaction ID is required to void or refund a transaction")

        if target is not None and (target.serial_number or target.epi):
            base = f"{device_path(target)}/transactions/{transaction_id}"
        else:
            base = f"/transactions/{transaction_id}"

        body: dict = {}
        if action == ACTION_REFUND and amount is not None:
            body["amount"] = format(require_positive_amount(amount), ".2f")
        suffix = "void" if action == ACTION_VOID else "refund"

        data = self._send("POST", f"{base}/{suffix}", json=body)
        status = str(data.get("status") or "").upper()
        if status not in REVERSAL_OK_STATUSES:
            raise GatewayDeclined(
                data.get("message") or data.get("error") or f"Gateway rejected {suffix}",
                code=_str_or_none(data.get("errorCode") or data.get("code")),
                transaction_id=transaction_id,
                raw=data,
            )
        return ReversalReceipt(
            transaction_id=transaction_id,
            action=action,
            reference_id=_str_or_none(data.get("referenceId") or data.get("refId")),
            message=data.get("message") or f"Transaction {suffix} successful",
            raw=data,
        )


def _str_or_none(value) -> str | None:
    return None if value in (None, "") else str(value)


def _decimal_or(value, default):
    if value in (None, ""):
        return default
    try:
        return Decimal(str(value))
    except InvalidOperation:
        return default
