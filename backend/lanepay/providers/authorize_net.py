# Overview: Card processor adapters (card reader token, card on file, manual entry).

"""
Processor-Backed Providers

WHY: Three channels never talk to a terminal; the register forwards the
sale straight to the card processor (Authorize.Net JSON API):

- CARD_READER: a Bluetooth reader SDK tokenizes the card on the client;
  the server only sees opaqueData (descriptor + value)
- CARD_ON_FILE: a stored customer profile / payment profile is charged
- MANUAL_CARD: the cashier keys the card; the number is forwarded once
  and never stored

All three run authCaptureTransaction: approved charges come back
AUTHORIZED with auto-capture and settle with the nightly batch. Until
settlement they are voided; afterwards refunded.

RESPONSE CODES (transactionResponse.responseCode):
- "1" approved, "2" declined, "3" error, "4" held for review
"""

from __future__ import annotations

import json
import logging
import re
from datetime import datetime
from decimal import Decimal, InvalidOperation

import httpx

from ..models.orders import PAYMENT_AUTHORIZED
from ..time_utils import to_utc_z, utcnow
from ..validation import ValidationError
from .base import (
    ACTION_VOID,
    CARD_ON_FILE,
    CARD_READER,
    MANUAL_CARD,
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

logger = logging.getLogger(__name__)


RESPONSE_APPROVED = "1"
RESPONSE_DECLINED = "2"
RESPONSE_ERROR = "3"
RESPONSE_HELD = "4"

TXN_AUTH_CAPTURE = "authCaptureTransaction"
TXN_VOID = "voidTransaction"
TXN_REFUND = "refundTransaction"

# getTransactionDetails transactionStatus values
SETTLED_STATUSES = ("settledSuccessfully",)
APPROVED_UNSETTLED_STATUSES = ("capturedPendingSettlement", "authorizedPendingCapture")
PENDING_REVIEW_STATUSES = ("FDSPendingReview", "FDSAuthorizedPendingReview", "underReview")
DECLINED_STATUSES = ("declined", "voided", "expired", "generalError", "failedReview",
                     "settlementError", "communicationError", "couldNotVoid")

SENSITIVE_KEYS = ("cardNumber", "cardCode", "expirationDate", "dataValue")

# Largest page the reporting API returns
REPORT_PAGE_SIZE = 1000
# order.invoiceNumber field limit; longer invoice numbers are truncated
INVOICE_MAX_LENGTH = 20


def scrub_card_data(value):
    """Mask PAN and drop CVV/expiry/token values anywhere in a payload."""
    if isinstance(value, dict):
        cleaned = {}
        for key, item in value.items():
            if key == "cardNumber" and isinstance(item, str):
                cleaned[key] = "XXXX" + re.sub(r"\D", "", item)[-4:]
            elif key in SENSITIVE_KEYS:
                continue
            else:
                cleaned[key] = scrub_card_data(item)
        return cleaned
    if isinstance(value, list):
        return [scrub_card_data(item) for item in value]
    return value


class AuthorizeNetClient:
    """Thin JSON client; one instance is shared by the three processor channels."""

    def __init__(
        self,
        *,
        endpoint: str,
        api_login_id: str | None,
        transaction_key: str | None,
        timeout: float = 30.0,
        client: httpx.Client | None = None,
    ):
        self.endpoint = endpoint
        self.api_login_id = api_login_id
        self.transaction_key = transaction_key
        self.client = client or httpx.Client(timeout=timeout)

    def _post(self, request_name: str, body: dict) -> dict:
        if not (self.api_login_id and self.transaction_key):
            raise GatewayError("Authorize.Net credentials are not configured")

        payload = {
            request_name: {
                "merchantAuthentication": {
                    "name": self.api_login_id,
                    "transactionKey": self.transaction_key,
                },
                **body,
            }
        }
        try:
            response = self.client.post(self.endpoint, json=payload,
                                        headers={"Content-Type": "application/json"})
        except (httpx.ConnectError, httpx.ConnectTimeout) as exc:
            raise GatewayUnreachable(f"Cannot reach card processor: {exc}") from exc
        except httpx.TimeoutException as exc:
            raise GatewayError(f"Card processor timed out on {request_name}") from exc
        except httpx.HTTPError as exc:
            raise GatewayError(f"Card processor request failed: {exc}") from exc

        if response.is_error:
            raise GatewayError(f"Card processor returned HTTP {response.status_code}", raw=response.text)

        # The API prefixes its JSON with a UTF-8 byte order mark
        try:
            data = json.loads(response.content.decode("utf-8-sig"))
        except ValueError:
            raise GatewayError("Card processor returned a non-JSON response", raw=response.text)
        if not isinstance(data, dict):
            raise GatewayError("Unexpected card processor response shape", raw=data)
        return data

    @staticmethod
    def _result_message(data: dict) -> tuple[str, str | None]:
        messages = data.get("messages") or {}
        message_list = messages.get("message") or []
        first = message_list[0] if message_list else {}
        return messages.get("resultCode") or "", first.get("text") or first.get("code")

    def create_transaction(self, transaction_request: dict) -> dict:
        """
        Submit a transactionRequest and return transactionResponse.

        Raises GatewayDeclined for declines and processor errors ("2"/"3"),
        GatewayError when the response carries no transaction result.
        """
        data = self._post("createTransactionRequest", {"transactionRequest": transaction_request})
        result = data.get("transactionResponse")

        if not isinstance(result, dict) or not result.get("responseCode"):
            _, text = self._result_message(data)
            raise GatewayError(text or "Card processor returned no transaction result", raw=scrub_card_data(data))

        code = str(result.get("responseCode"))
        if code in (RESPONSE_APPROVED, RESPONSE_HELD):
            return result

        errors = result.get("errors") or []
        messages = result.get("messages") or []
        reason = (
            (errors[0].get("errorText") if errors else None)
            or (messages[0].get("description") if messages else None)
            or ("Transaction declined" if code == RESPONSE_DECLINED else "Transaction failed")
        )
        raise GatewayDeclined(
            reason,
            code=(errors[0].get("errorCode") if errors else code),
            transaction_id=_txn_or_none(result.get("transId")),
            raw=scrub_card_data(result),
        )

    def get_transaction_details(self, transaction_id: str) -> dict:
        data = self._post("getTransactionDetailsRequest", {"transId": transaction_id})
        result_code, text = self._result_message(data)
        if result_code != "Ok" or not isinstance(data.get("transaction"), dict):
            raise GatewayError(text or f"Transaction {transaction_id} not found", raw=data)
        return data["transaction"]

    def authenticate_test(self) -> tuple[bool, str]:
        data = self._post("authenticateTestRequest", {})
        result_code, text = self._result_message(data)
        return result_code == "Ok", text or result_code

    # -------------------------------------------------------------------------
    # Reporting (transaction recovery)
    # -------------------------------------------------------------------------

    def _report(self, request_name: str, body: dict, key: str) -> list[dict]:
        data = self._post(request_name, body)
        result_code, text = self._result_message(data)
        if result_code != "Ok":
            raise GatewayError(text or f"{request_name} failed", raw=data)
        # "No records found" comes back Ok without the list key
        items = data.get(key) or []
        return [item for item in items if isinstance(item, dict)]

    def get_unsettled_transactions(self, limit: int = REPORT_PAGE_SIZE) -> list[dict]:
        """Approved, voided and declined transactions not yet in a settled batch, newest first."""
        return self._report("getUnsettledTransactionListRequest", {
            "sorting": {"orderBy": "submitTimeUTC", "orderDescending": "true"},
            "paging": {"limit": str(limit), "offset": "1"},
        }, "transactions")

    def get_settled_batches(self, first: datetime, last: datetime) -> list[dict]:
        return self._report("getSettledBatchListRequest", {
            "firstSettlementDate": to_utc_z(first),
            "lastSettlementDate": to_utc_z(last),
        }, "batchList")

    def get_batch_transactions(self, batch_id: str, limit: int = REPORT_PAGE_SIZE) -> list[dict]:
        return self._report("getTransactionListRequest", {
            "batchId": str(batch_id),
            "sorting": {"orderBy": "submitTimeUTC", "orderDescending": "true"},
            "paging": {"limit": str(limit), "offset": "1"},
        }, "transactions")

    def get_recent_transactions(self, since: datetime, until: datetime | None = None) -> list[dict]:
        """
        Transactions submitted since `since`: unsettled ones plus those in
        batches that settled inside the window.
        """
        until = until or utcnow()
        transactions = list(self.get_unsettled_transactions())
        for batch in self.get_settled_batches(since, until):
            if batch.get("batchId"):
                transactions.extend(self.get_batch_transactions(batch["batchId"]))
        return [scrub_card_data(txn) for txn in transactions]


# =============================================================================
# SHARED CHANNEL OPERATIONS
# =============================================================================

def _txn_or_none(value) -> str | None:
    # The processor reports "0" for test-mode and some declined transactions
    if value in (None, "", "0"):
        return None
    return str(value)


def _charge(processor: AuthorizeNetClient, request: PaymentRequest, payment: dict,
            channel: str) -> PaymentResult | PendingHandle:
    amount = require_positive_amount(request.amount)
    result = processor.create_transaction({
        "transactionType": TXN_AUTH_CAPTURE,
        "amount": format(amount, ".2f"),
        **payment,
        "order": {
            "invoiceNumber": request.invoice_number[:INVOICE_MAX_LENGTH],
            "description": (request.description or "POS Sale")[:255],
        },
    })
    raw = scrub_card_data(result)

    transaction_id = _txn_or_none(result.get("transId"))
    if not transaction_id:
        raise GatewayError("Card processor approved the sale without a transaction id", raw=raw)

    messages = result.get("messages") or []
    message = messages[0].get("description") if messages else None

    if str(result.get("responseCode")) == RESPONSE_HELD:
        logger.info("%s charge %s held for review", channel, transaction_id)
        return PendingHandle(transaction_id=transaction_id, message=message or "Held for review", raw=raw)

    return PaymentResult(
        transaction_id=transaction_id,
        status=PAYMENT_AUTHORIZED,
        amount=amount,
        auth_code=result.get("authCode") or None,
        auto_capture=True,
        message=message or "Transaction approved",
        raw=raw,
    )


def _check_status(processor: AuthorizeNetClient, transaction_id: str) -> StatusResult:
    if not transaction_id:
        raise MissingTarget("Transaction ID is required")
    txn = processor.get_transaction_details(transaction_id)
    status = txn.get("transactionStatus") or ""
    raw = scrub_card_data(txn)
    amount = None
    if txn.get("settleAmount") not in (None, ""):
        try:
            amount = Decimal(str(txn["settleAmount"]))
        except InvalidOperation:
            amount = None

    if status in SETTLED_STATUSES or status in APPROVED_UNSETTLED_STATUSES:
        return StatusResult(
            status=STATUS_APPROVED,
            transaction_id=transaction_id,
            settled=status in SETTLED_STATUSES,
            auth_code=txn.get("authCode") or None,
            amount=amount,
            message=status,
            raw=raw,
        )
    if status in DECLINED_STATUSES:
        return StatusResult(status=STATUS_DECLINED, transaction_id=transaction_id,
                            message=txn.get("responseReasonDescription") or status, raw=raw)
    if status in PENDING_REVIEW_STATUSES:
        return StatusResult(status=STATUS_PENDING, transaction_id=transaction_id, message=status, raw=raw)
    raise GatewayError(f"Unknown processor transaction status: {status or 'missing'}", raw=raw)


def _reverse(processor: AuthorizeNetClient, transaction_id: str, action: str,
             amount: Decimal | None) -> ReversalReceipt:
    action = require_action(action)
    if not transaction_id:
        raise MissingTarget("Transaction ID is required to void or refund a transaction")

    if action == ACTION_VOID:
        result = processor.create_transaction({"transactionType": TXN_VOID, "refTransId": transaction_id})
    else:
        # Refunds must name the card; the processor accepts the masked last four
        txn = processor.get_transaction_details(transaction_id)
        card = ((txn.get("payment") or {}).get("creditCard") or {})
        last4 = re.sub(r"\D", "", card.get("cardNumber") or "")[-4:]
        if not last4:
            raise GatewayError(f"Cannot determine card for refund of {transaction_id}", raw=scrub_card_data(txn))
        refund_amount = amount if amount is not None else txn.get("settleAmount")
        result = processor.create_transaction({
            "transactionType": TXN_REFUND,
            "amount": format(require_positive_amount(refund_amount), ".2f"),
            "payment": {"creditCard": {"cardNumber": last4, "expirationDate": "XXXX"}},
            "refTransId": transaction_id,
        })

    messages = result.get("messages") or []
    return ReversalReceipt(
        transaction_id=transaction_id,
        action=action,
        reference_id=_txn_or_none(result.get("transId")),
        message=(messages[0].get("description") if messages else None) or f"{action.title()} approved",
        raw=scrub_card_data(result),
    )


def _test_connection(processor: AuthorizeNetClient) -> ConnectionReport:
    try:
        ok, detail = processor.authenticate_test()
    except GatewayUnreachable as exc:
        return ConnectionReport(reachable=False, detail=str(exc))
    except GatewayError as exc:
        return ConnectionReport(reachable=False, detail=str(exc))
    return ConnectionReport(reachable=ok, detail=detail or ("Credentials accepted" if ok else "Authentication failed"))


# =============================================================================
# CHANNELS
# =============================================================================

class CardReaderProvider:
    """Bluetooth reader; the card is tokenized on the client, pairing happens there too."""
    name = CARD_READER

    def __init__(self, processor: AuthorizeNetClient):
        self.processor = processor

    def discover(self) -> list[DeviceInfo]:
        return []

    def test_connection(self, target: DeviceTarget | None = None) -> ConnectionReport:
        return _test_connection(self.processor)

    def initiate_payment(self, request: PaymentRequest) -> PaymentResult | PendingHandle:
        opaque = request.opaque_data or {}
        descriptor = opaque.get("descriptor") or opaque.get("dataDescriptor")
        value = opaque.get("value") or opaque.get("dataValue")
        if not descriptor or not value:
            raise MissingTarget("Card reader payment requires opaque_data descriptor and value")
        return _charge(self.processor, request, {
            "payment": {"opaqueData": {"dataDescriptor": descriptor, "dataValue": value}},
        }, self.name)

    def check_status(self, transaction_id: str, target: DeviceTarget | None = None) -> StatusResult:
        return _check_status(self.processor, transaction_id)

    def void_or_refund(self, transaction_id: str, target: DeviceTarget | None, action: str,
                       amount: Decimal | None = None) -> ReversalReceipt:
        return _reverse(self.processor, transaction_id, action, amount)


class CardOnFileProvider:
    name = CARD_ON_FILE

    def __init__(self, processor: AuthorizeNetClient):
        self.processor = processor

    def discover(self) -> list[DeviceInfo]:
        return []

    def test_connection(self, target: DeviceTarget | None = None) -> ConnectionReport:
        return _test_connection(self.processor)

    def initiate_payment(self, request: PaymentRequest) -> PaymentResult | PendingHandle:
        if not request.customer_profile_id or not request.payment_profile_id:
            raise MissingTarget("Customer profile ID and payment profile ID are required")
        return _charge(self.processor, request, {
            "profile": {
                "customerProfileId": str(request.customer_profile_id),
                "paymentProfile": {"paymentProfileId": str(request.payment_profile_id)},
            },
        }, self.name)

    def check_status(self, transaction_id: str, target: DeviceTarget | None = None) -> StatusResult:
        return _check_status(self.processor, transaction_id)

    def void_or_refund(self, transaction_id: str, target: DeviceTarget | None, action: str,
                       amount: Decimal | None = None) -> ReversalReceipt:
        return _reverse(self.processor, transaction_id, action, amount)


_EXPIRATION_RE = re.compile(r"^(?:(\d{4})-(\d{2})|(\d{2})/?(\d{2}))$")


def normalize_card(card: dict | None) -> dict:
    """Validate keyed card fields. Returns processor fields; raises ValidationError."""
    card = card or {}
    number = re.sub(r"[\s-]", "", str(card.get("number") or card.get("card_number") or ""))
    if not number.isdigit() or not 12 <= len(number) <= 19:
        raise ValidationError("Card number must be 12-19 digits")

    expiration = str(card.get("expiration") or card.get("expiration_date") or "").strip()
    match = _EXPIRATION_RE.match(expiration)
    if not match:
        raise ValidationError("Expiration must be MM/YY, MMYY or YYYY-MM")
    if match.group(1):
        year, month = match.group(1), match.group(2)
    else:
        month, year = match.group(3), "20" + match.group(4)
    if not 1 <= int(month) <= 12:
        raise ValidationError("Expiration month must be 01-12")

    fields = {"cardNumber": number, "expirationDate": f"{year}-{month}"}
    cvv = str(card.get("cvv") or "").strip()
    if cvv:
        if not cvv.isdigit() or len(cvv) not in (3, 4):
            raise ValidationError("CVV must be 3 or 4 digits")
        fields["cardCode"] = cvv
    return fields


class ManualCardProvider:
    name = MANUAL_CARD

    def __init__(self, processor: AuthorizeNetClient):
        self.processor = processor

    def discover(self) -> list[DeviceInfo]:
        return []

    def test_connection(self, target: DeviceTarget | None = None) -> ConnectionReport:
        return _test_connection(self.processor)

    def initiate_payment(self, request: PaymentRequest) -> PaymentResult | PendingHandle:
        fields = normalize_card(request.card)
        return _charge(self.processor, request, {"payment": {"creditCard": fields}}, self.name)

    def check_status(self, transaction_id: str, target: DeviceTarget | None = None) -> StatusResult:
        return _check_status(self.processor, transaction_id)

    def void_or_refund(self, transaction_id: str, target: DeviceTarget | None, action: str,
                       amount: Decimal | None = None) -> ReversalReceipt:
        return _reverse(self.processor, transaction_id, action, amount)
