# Overview: Void/refund reconciler; picks the compensating gateway call from ledger state.

"""
Void/Refund Reconciler

WHY: Cashiers ask to "cancel the sale"; whether that is a void or a
refund depends on whether the charge has settled. Sending the wrong one
fails at the gateway (or worse, succeeds twice), so the decision is made
here from the ledger plus a fresh settlement check.

RULES:
- Current payment AUTHORIZED -> void -> order VOIDED
- Current payment CAPTURED   -> refund -> order REFUNDED
- AUTHORIZED but the gateway reports it settled -> mark CAPTURED first
- No payment, or payment already VOIDED/REFUNDED -> NothingToReverse,
  carrying the earlier result; no gateway call
- Gateway failure leaves the ledger untouched; retrying is safe
- A refund may name a smaller amount (0 < amount <= payment amount); the
  order is still closed as REFUNDED. Voids are always for the full amount
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from ..models import Order, Payment
from ..models.orders import (
    PAYMENT_AUTHORIZED,
    PAYMENT_PENDING,
    PAYMENT_REVERSED,
    PAYMENT_VOIDED,
)
from ..providers import get_provider
from ..providers.base import ACTION_REFUND, ACTION_VOID, STATUS_APPROVED, DeviceTarget, ProviderError, require_action
from ..validation import ConflictError, ValidationError, parse_amount
from . import ledger_service as ledger
from .concurrency import order_lock
from .ledger_service import InvalidTransition
from .payment_flow_service import stored_target

logger = logging.getLogger(__name__)


@dataclass
class ReversalResult:
    action: str
    order: Order
    payment: Payment
    receipt: dict | None = None
    already_reversed: bool = False

    def to_dict(self) -> dict:
        return {
            "action": self.action,
            "already_reversed": self.already_reversed,
            "receipt": self.receipt,
            "order": self.order.to_dict(),
            "payment": self.payment.to_dict(),
        }


class NothingToReverse(ConflictError):
    """
    No-op report: there is no charge left to void or refund.

    `result` holds the earlier reversal when the payment was already
    voided/refunded, else None.
    """

    def __init__(self, message: str, result: ReversalResult | None = None):
        super().__init__(message)
        self.result = result


def void_order(order_id: int, *, user_id: int | None = None, reason: str | None = None) -> ReversalResult:
    return reverse_payment(order_id, ACTION_VOID, user_id=user_id, reason=reason)


def refund_order(order_id: int, *, amount=None, user_id: int | None = None,
                 reason: str | None = None) -> ReversalResult:
    return reverse_payment(order_id, ACTION_REFUND, amount=amount, user_id=user_id, reason=reason)


def reverse_payment(
    order_id: int,
    action: str | None = None,
    *,
    amount=None,
    user_id: int | None = None,
    reason: str | None = None,
) -> ReversalResult:
    """
    Void or refund the order's current payment.

    Args:
        order_id: Order to reverse
        action: VOID or REFUND to insist on one; None lets ledger state decide
        amount: partial refund amount; None refunds the whole payment

    Raises:
        ValidationError: refund amount not within (0, payment amount]
        NothingToReverse: no payment, or already reversed (no gateway call)
        ConflictError: requested action does not match the settlement state,
            or the payment is still PENDING
        ProviderError: gateway failed; ledger unchanged
    """
    requested = require_action(action) if action else None
    partial = parse_amount(amount) if amount is not None else None

    with order_lock(order_id):
        order = ledger.get_order(order_id)
        payment = ledger.get_current_payment(order_id)

        if payment is None:
            raise NothingToReverse(f"Order {order.invoice_number} has no payment to reverse")
        if payment.status in PAYMENT_REVERSED:
            raise NothingToReverse(
                f"Payment {payment.id} is already {payment.status}",
                result=_prior_result(order, payment),
            )
        if payment.status == PAYMENT_PENDING:
            raise ConflictError(
                f"Payment {payment.id} is still PENDING; cancel polling and resolve it before reversing"
            )

        provider = get_provider(payment.provider)
        target = stored_target(payment)

        if payment.status == PAYMENT_AUTHORIZED:
            payment = _refresh_settlement(provider, payment, target)

        chosen = ACTION_VOID if payment.status == PAYMENT_AUTHORIZED else ACTION_REFUND
        if requested == ACTION_VOID and chosen == ACTION_REFUND:
            raise ConflictError(f"Payment {payment.id} has settled; refund it instead of voiding")
        if requested == ACTION_REFUND and chosen == ACTION_VOID:
            raise ConflictError(f"Payment {payment.id} has not settled yet; void it instead of refunding")

        actions = ledger.payment_actions(order)
        if chosen == ACTION_VOID and not actions["can_void"]:
            raise InvalidTransition(f"Order {order.invoice_number} cannot be voided from {order.status}")
        if chosen == ACTION_REFUND and not actions["can_refund"]:
            raise InvalidTransition(f"Order {order.invoice_number} cannot be refunded from {order.status}")

        reverse_amount = payment.amount
        if partial is not None:
            if chosen == ACTION_VOID:
                raise ValidationError(f"Payment {payment.id} is voided in full; partial amounts apply to refunds only")
            if partial > payment.amount:
                raise ValidationError(f"Refund amount must be between 0 and {payment.amount}")
            reverse_amount = partial

        payment_id = payment.id
        receipt = provider.void_or_refund(payment.transaction_id, target, chosen, reverse_amount)
        logger.info("%s of %s on order %s accepted by %s", chosen, payment.transaction_id,
                    order.invoice_number, provider.name)

        receipt_data = receipt.to_dict()
        if chosen == ACTION_VOID:
            order = ledger.mark_voided(order_id, payment_id, user_id=user_id,
                                       raw_response=receipt_data, reason=reason)
        else:
            order = ledger.mark_refunded(order_id, payment_id, user_id=user_id,
                                         raw_response=receipt_data, reason=reason, amount=reverse_amount)

        return ReversalResult(chosen, order, ledger.get_payment(payment_id), receipt=receipt_data)


def _refresh_settlement(provider, payment: Payment, target: DeviceTarget | None) -> Payment:
    """Ask the gateway whether an AUTHORIZED charge has settled since we last looked."""
    try:
        status = provider.check_status(payment.transaction_id, target)
    except ProviderError as exc:
        logger.warning("Settlement check for %s failed, using ledger state: %s", payment.transaction_id, exc)
        return payment
    if status.status == STATUS_APPROVED and status.settled:
        return ledger.mark_settled(payment.id)
    return payment


def _prior_result(order: Order, payment: Payment) -> ReversalResult:
    action = ACTION_VOID if payment.status == PAYMENT_VOIDED else ACTION_REFUND
    raw = payment.raw_response if isinstance(payment.raw_response, dict) else {}
    key = "void" if payment.status == PAYMENT_VOIDED else "refund"
    return ReversalResult(action, order, payment, receipt=raw.get(key), already_reversed=True)

