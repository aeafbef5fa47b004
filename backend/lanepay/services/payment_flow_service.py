# Overview: Payment control flow: attach -> initiate -> (poll) -> settle.

"""
Payment Flow

WHY: The ledger knows the legal states and the providers know the wire
formats; this module decides which ledger transition each provider
outcome maps to.

OUTCOME MAPPING:
- PaymentResult            -> payment AUTHORIZED/CAPTURED, order PAID
- PendingHandle            -> payment PENDING with the gateway id, poll later
- GatewayDeclined          -> payment DECLINED, order stays OPEN
- GatewayUnreachable       -> payment FAILED (nothing was sent)
- GatewayError             -> payment FAILED, order flagged: the charge may
                              have reached the gateway
- any other exception      -> same as GatewayError, then re-raised
- poll TIMEOUT / CANCELLED -> payment stays PENDING, order flagged

Charges are never retried automatically. A new attempt is always an
explicit caller action.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import Decimal

from flask import current_app

from ..models import Order, Payment
from ..models.orders import (
    ORDER_PAID,
    PAYMENT_AUTHORIZED,
    PAYMENT_CAPTURED,
    PAYMENT_PENDING,
)
from ..providers import get_provider
from ..providers.base import (
    DeviceTarget,
    GatewayDeclined,
    GatewayError,
    GatewayUnreachable,
    PaymentRequest,
    PaymentResult,
    PendingHandle,
    ProviderError,
    StatusResult,
)
from ..validation import ConflictError, ValidationError, parse_amount
from . import ledger_service as ledger
from .ledger_service import PROVISIONAL_TXN_PREFIX, AmountMismatch, PaymentNotFound
from .polling import (
    POLL_APPROVED,
    POLL_CANCELLED,
    POLL_DECLINED,
    POLL_TIMEOUT,
    PollingCoordinator,
)
from .worker import get_worker

logger = logging.getLogger(__name__)


OUTCOME_APPROVED = "APPROVED"
OUTCOME_DECLINED = "DECLINED"
OUTCOME_PENDING = "PENDING"
OUTCOME_TIMEOUT = POLL_TIMEOUT
OUTCOME_CANCELLED = POLL_CANCELLED
OUTCOME_NEEDS_RECONCILIATION = "NEEDS_RECONCILIATION"


@dataclass
class FlowResult:
    outcome: str
    order: Order
    payment: Payment | None
    message: str | None = None
    attempts: int | None = None

    def to_dict(self) -> dict:
        data = {
            "outcome": self.outcome,
            "message": self.message,
            "order": self.order.to_dict(),
            "payment": self.payment.to_dict() if self.payment is not None else None,
        }
        if self.attempts is not None:
            data["attempts"] = self.attempts
        return data


# =============================================================================
# START
# =============================================================================

def start_payment(
    order_id: int,
    provider_name: str,
    *,
    amount=None,
    user_id: int | None = None,
    target: dict | None = None,
    opaque_data: dict | None = None,
    customer_profile_id: str | None = None,
    payment_profile_id: str | None = None,
    card: dict | None = None,
    description: str | None = None,
    poll_in_background: bool | None = None,
) -> FlowResult:
    """
    Attach a payment to an OPEN order and send it to the provider.

    Raises:
        ValidationError: bad amount/target, before any gateway call
        OrderNotOpen / PaymentInProgress: single-flight guard
        GatewayUnreachable: payment FAILED, order unchanged
        GatewayError (or anything unexpected): payment FAILED, order flagged
    """
    provider = get_provider(provider_name)
    order = ledger.get_order(order_id)
    charge_amount = parse_amount(amount) if amount is not None else order.amount
    device_target = DeviceTarget.from_dict(target) if target else None

    request = PaymentRequest(
        amount=charge_amount,
        invoice_number=order.invoice_number,
        description=description,
        target=device_target,
        opaque_data=opaque_data,
        customer_profile_id=customer_profile_id,
        payment_profile_id=payment_profile_id,
        card=card,
    )

    payment = ledger.attach_payment(order.id, provider.name, charge_amount, user_id=user_id)
    payment_id = payment.id
    logger.info("Payment %s attached to order %s via %s", payment_id, order.invoice_number, provider.name)

    try:
        result = provider.initiate_payment(request)
    except GatewayDeclined as exc:
        payment = ledger.mark_declined(
            payment_id,
            exc.reason,
            transaction_id=_unused_transaction_id(provider.name, exc.transaction_id),
            raw_response=_raw(exc.raw, device_target),
        )
        logger.info("Payment %s declined: %s", payment_id, exc.reason)
        return FlowResult(OUTCOME_DECLINED, ledger.get_order(order_id), payment, message=exc.reason)
    except ValidationError as exc:
        ledger.mark_failed(payment_id, str(exc))
        raise
    except GatewayUnreachable as exc:
        ledger.mark_failed(payment_id, str(exc), raw_response=_raw(exc.raw, device_target))
        raise
    except GatewayError as exc:
        ledger.mark_failed(payment_id, str(exc), raw_response=_raw(exc.raw, device_target),
                           needs_reconciliation=True)
        raise
    except Exception as exc:
        # Outcome unknown: release the single-flight guard but keep the order flagged
        logger.exception("Payment %s failed unexpectedly on %s", payment_id, provider.name)
        ledger.mark_failed(payment_id, f"Unexpected error: {exc}"[:255], raw_response=_raw(None, device_target),
                           needs_reconciliation=True)
        raise

    if isinstance(result, PendingHandle):
        payment = ledger.record_pending(payment_id, result.transaction_id, _raw(result.raw, device_target))
        if poll_in_background is None:
            poll_in_background = current_app.config.get("PAYMENT_AUTO_POLL", True)
        if poll_in_background:
            get_worker().submit(_background_poll, order_id)
        return FlowResult(OUTCOME_PENDING, ledger.get_order(order_id), payment, message=result.message)

    return _settle_approved(order_id, payment_id, result, device_target, user_id=user_id)


def _background_poll(order_id: int) -> None:
    try:
        poll_payment(order_id)
    except ConflictError as exc:
        logger.info("Background poll for order %s skipped: %s", order_id, exc)


# =============================================================================
# POLL
# =============================================================================

def poll_payment(order_id: int, *, max_attempts: int | None = None, interval_ms: int | None = None) -> FlowResult:
    """
    Resolve the order's PENDING payment through the polling coordinator.

    Returns APPROVED/DECLINED when the gateway reached an outcome, or
    TIMEOUT/CANCELLED. The order is flagged for reconciliation only when
    the payment is still PENDING on the polled transaction; an attempt the
    operator released or resolved meanwhile is left as it is.
    """
    config = current_app.config
    coordinator = PollingCoordinator(
        max_attempts=config.get("PAYMENT_POLL_MAX_ATTEMPTS", 60) if max_attempts is None else max_attempts,
        interval_ms=config.get("PAYMENT_POLL_INTERVAL_MS", 2000) if interval_ms is None else interval_ms,
    )

    order = ledger.get_order(order_id)
    payment = ledger.get_in_flight_payment(order_id)
    if payment is None:
        if order.status == ORDER_PAID:
            return FlowResult(OUTCOME_APPROVED, order, ledger.get_current_payment(order_id),
                              message="Order already paid", attempts=0)
        raise ConflictError(f"Order {order.invoice_number} has no pending payment to poll")
    if payment.status != PAYMENT_PENDING:
        raise ConflictError(f"Payment {payment.id} is {payment.status}; only PENDING payments are polled")
    if payment.transaction_id.startswith(PROVISIONAL_TXN_PREFIX):
        raise ConflictError(f"Payment {payment.id} has no gateway transaction id yet")

    provider = get_provider(payment.provider)
    payment_id = payment.id
    transaction_id = payment.transaction_id
    target = stored_target(payment)
    initial_raw = payment.raw_response.get("gateway") if isinstance(payment.raw_response, dict) else None

    with get_worker().poll_token(order_id) as token:
        outcome = coordinator.poll(lambda: provider.check_status(transaction_id, target), token)

    if outcome.outcome == POLL_APPROVED:
        status = outcome.last_status
        result = PaymentResult(
            transaction_id=transaction_id,
            status=PAYMENT_CAPTURED if status.settled else PAYMENT_AUTHORIZED,
            amount=status.amount if status.amount is not None else payment.amount,
            auth_code=status.auth_code,
            auto_capture=True,
            message=status.message,
            raw={"initiate": initial_raw, "status": status.raw},
        )
        flow = _settle_approved(order_id, payment_id, result, target)
        flow.attempts = outcome.attempts
        return flow

    if outcome.outcome == POLL_DECLINED:
        status = outcome.last_status
        reason = status.message or "Transaction declined"
        payment = ledger.mark_declined(payment_id, reason, raw_response=_raw({"initiate": initial_raw, "status": status.raw}, target))
        return FlowResult(OUTCOME_DECLINED, ledger.get_order(order_id), payment,
                          message=reason, attempts=outcome.attempts)

    if outcome.outcome == POLL_TIMEOUT:
        note = (f"Polling timed out after {outcome.attempts} attempts; "
                f"the terminal may still complete transaction {transaction_id}")
    else:
        note = f"Polling cancelled after {outcome.attempts} attempts; outcome of {transaction_id} unknown"
    order, flagged = ledger.flag_unresolved_payment(order_id, payment_id, transaction_id, note)
    payment = ledger.get_payment(payment_id)
    if flagged:
        logger.warning("Order %s flagged for reconciliation: %s", order.invoice_number, note)
    else:
        note = f"Payment {payment_id} was resolved as {payment.status} while polling"
        logger.info("Poll for order %s stopped: %s", order.invoice_number, note)
    return FlowResult(outcome.outcome, order, payment, message=note, attempts=outcome.attempts)


def cancel_polling(order_id: int) -> bool:
    """Stop the running poll for an order. Never declares a decline."""
    ledger.get_order(order_id)
    return get_worker().cancel(order_id)


# =============================================================================
# STATUS LOOKUP
# =============================================================================

def get_payment_status_by_transaction(provider_name: str, transaction_id: str, *, live: bool = True) -> dict:
    """Local payment record plus, when requested, the gateway's current view."""
    provider = get_provider(provider_name)
    payment = ledger.get_payment_by_transaction(provider.name, transaction_id)
    if payment is None:
        raise PaymentNotFound(f"No {provider.name} payment with transaction id {transaction_id}")

    data = {
        "payment": payment.to_dict(),
        "order": payment.order.to_dict(),
        "actions": ledger.payment_actions(payment.order),
    }
    if live and not transaction_id.startswith(PROVISIONAL_TXN_PREFIX):
        try:
            status = provider.check_status(transaction_id, stored_target(payment))
            data["gateway"] = _status_dict(status)
        except ProviderError as exc:
            logger.warning("Live status check for %s failed: %s", transaction_id, exc)
            data["gateway"] = {"error": str(exc)}
    return data


# =============================================================================
# INTERNAL HELPERS
# =============================================================================

def _settle_approved(order_id: int, payment_id: int, result: PaymentResult,
                     target: DeviceTarget | None, *, user_id: int | None = None) -> FlowResult:
    payment = ledger.record_authorization(
        payment_id,
        transaction_id=result.transaction_id,
        status=result.status,
        auth_code=result.auth_code,
        auto_capture=result.auto_capture,
        raw_response=_raw(result.raw, target),
        amount=Decimal(result.amount) if result.amount is not None else None,
    )
    try:
        order = ledger.mark_paid(order_id, payment_id, user_id=user_id)
    except AmountMismatch as exc:
        order = ledger.flag_for_reconciliation(order_id, str(exc))
        logger.error("Order %s approved with mismatched amount: %s", order.invoice_number, exc)
        return FlowResult(OUTCOME_NEEDS_RECONCILIATION, order, ledger.get_payment(payment_id), message=str(exc))

    logger.info("Order %s paid with payment %s (%s)", order.invoice_number, payment_id, result.transaction_id)
    return FlowResult(OUTCOME_APPROVED, order, ledger.get_payment(payment_id), message=result.message)


def _raw(raw, target: DeviceTarget | None) -> dict:
    """Provider payload plus the device target needed to poll/reverse later."""
    data = {"gateway": raw}
    if target is not None:
        data["target"] = target.to_dict()
    return data


def stored_target(payment: Payment) -> DeviceTarget | None:
    raw = payment.raw_response if isinstance(payment.raw_response, dict) else {}
    stored = raw.get("target")
    return DeviceTarget.from_dict(stored) if stored else None


def _unused_transaction_id(provider_name: str, transaction_id: str | None) -> str | None:
    if not transaction_id:
        return None
    if ledger.get_payment_by_transaction(provider_name, transaction_id) is not None:
        return None
    return transaction_id


def _status_dict(status: StatusResult) -> dict:
    return {
        "status": status.status,
        "settled": status.settled,
        "auth_code": status.auth_code,
        "amount": format(status.amount, ".2f") if status.amount is not None else None,
        "message": status.message,
    }
