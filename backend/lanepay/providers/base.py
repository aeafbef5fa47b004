# Overview: Payment channel contract shared by every provider adapter.

"""
Provider Adapter Contract

WHY: Terminals, cloud gateways and card processors speak different
protocols. The payment flow talks to all of them through one capability
set so the ledger never learns which wire format was used.

CAPABILITIES:
- discover(): devices reachable for this channel ([] where unsupported)
- test_connection(target): reachability report, never raises for "down"
- initiate_payment(request): PaymentResult (synchronous) or PendingHandle
- check_status(transaction_id, target): APPROVED / DECLINED / PENDING
- void_or_refund(transaction_id, target, action, amount): compensating call

Each adapter is constructed with only its own configuration (IP/port,
merchant credentials, credential cache) and keeps no per-call state.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from decimal import Decimal, InvalidOperation
from typing import Any, Protocol, runtime_checkable

from ..validation import ValidationError


# =============================================================================
# PROVIDER NAMES (CONSTANTS)
# =============================================================================

LAN_TERMINAL = "LAN_TERMINAL"
CLOUD_TERMINAL = "CLOUD_TERMINAL"
CARD_READER = "CARD_READER"
CARD_ON_FILE = "CARD_ON_FILE"
MANUAL_CARD = "MANUAL_CARD"

PROVIDER_NAMES = (LAN_TERMINAL, CLOUD_TERMINAL, CARD_READER, CARD_ON_FILE, MANUAL_CARD)
# Channels that charge through the card processor rather than a terminal
PROCESSOR_PROVIDERS = (CARD_READER, CARD_ON_FILE, MANUAL_CARD)

STATUS_APPROVED = "APPROVED"
STATUS_DECLINED = "DECLINED"
STATUS_PENDING = "PENDING"

ACTION_VOID = "VOID"
ACTION_REFUND = "REFUND"


# =============================================================================
# ERRORS
# =============================================================================

class ProviderError(Exception):
    """Base for channel failures. `raw` keeps whatever the gateway returned."""

    def __init__(self, message: str, *, raw: Any = None):
        super().__init__(message)
        self.raw = raw


class InvalidAmount(ProviderError, ValidationError):
    """Amount is not a positive, finite currency value."""


class MissingTarget(ProviderError, ValidationError):
    """Device IP, serial number, EPI or payment profile was not supplied."""


class GatewayUnreachable(ProviderError):
    """Connection refused, timed out, or DNS failed. Nothing was sent."""


class GatewayDeclined(ProviderError):
    """Terminal decline from the issuer or processor."""

    def __init__(self, reason: str, *, code: str | None = None, transaction_id: str | None = None,
                 raw: Any = None):
        super().__init__(reason, raw=raw)
        self.reason = reason
        self.code = code
        self.transaction_id = transaction_id


class GatewayError(ProviderError):
    """Malformed or unexpected gateway response, or authentication failure."""


# =============================================================================
# VALUE TYPES
# =============================================================================

@dataclass
class DeviceTarget:
    """Where to send a request. Each channel reads only the fields it needs."""
    ip: str | None = None
    port: int | None = None
    serial_number: str | None = None
    epi: str | None = None
    device_id: str | None = None

    @classmethod
    def from_dict(cls, data: dict | None) -> "DeviceTarget":
        data = data or {}
        port = data.get("port")
        if port not in (None, ""):
            try:
                port = int(port)
            except (TypeError, ValueError):
                raise MissingTarget(f"Invalid port: {port!r}")
        else:
            port = None
        return cls(
            ip=(data.get("ip") or data.get("terminal_ip") or None),
            port=port,
            serial_number=(data.get("serial_number") or data.get("terminal_serial_number") or None),
            epi=data.get("epi") or None,
            device_id=data.get("device_id") or None,
        )

    def to_dict(self) -> dict:
        return {k: v for k, v in asdict(self).items() if v is not None}


@dataclass
class DeviceInfo:
    device_id: str
    name: str
    provider: str
    ip: str | None = None
    port: int | None = None
    serial_number: str | None = None
    model: str | None = None
    status: str | None = None
    extra: dict = field(default_factory=dict)

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class ConnectionReport:
    reachable: bool
    detail: str
    latency_ms: int | None = None
    raw: Any = None

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class PaymentRequest:
    """
    One charge request.

    Channel-specific inputs:
    - target: LAN terminal IP/port, cloud terminal serial/EPI, reader id
    - opaque_data: {"descriptor", "value"} token produced by a card reader SDK
    - customer_profile_id / payment_profile_id: stored card on file
    - card: {"number", "expiration", "cvv"} manual entry, never persisted
    """
    amount: Decimal
    invoice_number: str
    description: str | None = None
    target: DeviceTarget | None = None
    opaque_data: dict | None = None
    customer_profile_id: str | None = None
    payment_profile_id: str | None = None
    card: dict | None = None


@dataclass
class PaymentResult:
    """Synchronous approval. status is AUTHORIZED or CAPTURED."""
    transaction_id: str
    status: str
    amount: Decimal
    auth_code: str | None = None
    auto_capture: bool = False
    message: str | None = None
    raw: Any = None


@dataclass
class PendingHandle:
    """Asynchronous attempt; resolve with check_status."""
    transaction_id: str
    target: DeviceTarget | None = None
    message: str | None = None
    raw: Any = None


@dataclass
class StatusResult:
    status: str
    transaction_id: str
    settled: bool = False
    auth_code: str | None = None
    amount: Decimal | None = None
    message: str | None = None
    raw: Any = None


@dataclass
class ReversalReceipt:
    transaction_id: str
    action: str
    reference_id: str | None = None
    message: str | None = None
    raw: Any = None

    def to_dict(self) -> dict:
        return asdict(self)


@runtime_checkable
class PaymentProvider(Protocol):
    name: str

    def discover(self) -> list[DeviceInfo]: ...

    def test_connection(self, target: DeviceTarget | None = None) -> ConnectionReport: ...

    def initiate_payment(self, request: PaymentRequest) -> PaymentResult | PendingHandle: ...

    def check_status(self, transaction_id: str, target: DeviceTarget | None = None) -> StatusResult: ...

    def void_or_refund(
        self,
        transaction_id: str,
        target: DeviceTarget | None,
        action: str,
        amount: Decimal | None = None,
    ) -> ReversalReceipt: ...


# =============================================================================
# SHARED CHECKS
# =============================================================================

def require_positive_amount(amount) -> Decimal:
    try:
        value = Decimal(str(amount))
    except (InvalidOperation, TypeError, ValueError):
        raise InvalidAmount(f"Invalid payment amount: {amount!r}")
    if not value.is_finite() or value <= 0:
        raise InvalidAmount(f"Invalid payment amount: {amount}. Amount must be a positive number.")
    return value.quantize(Decimal("0.01"))


def require_action(action: str) -> str:
    action = (action or "").upper()
    if action not in (ACTION_VOID, ACTION_REFUND):
        raise ValidationError(f"Invalid action: {action}. Must be {ACTION_VOID} or {ACTION_REFUND}")
    return action
