# Overview: Order ledger state machine; the only writer of Order/Payment status.

"""
Order Ledger

WHY: A sale is paid through slow, unreliable channels (LAN terminals,
cloud gateways, card readers). The ledger keeps one consistent record of
what actually happened while polls, voids and refunds race each other.

ORDER STATE MACHINE:
- OPEN -> PAID      (payment captured, or authorized with auto-capture)
- OPEN -> VOIDED    (authorized charge voided before the order was paid)
- PAID -> VOIDED    (only while no payment of the order has been CAPTURED)
- PAID -> REFUNDED  (settled charge returned)
- VOIDED, REFUNDED are terminal

SINGLE-FLIGHT:
- At most one in-flight payment per order: PENDING, or AUTHORIZED on an
  order that is still OPEN
- A second attach fails fast with PaymentInProgress; it never queues

Every transition runs under the in-process order lock and is persisted
with the Order's version_id compare-and-set, so a status poll and a manual
void cannot both win.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from decimal import Decimal

from flask import current_app
from sqlalchemy.exc import IntegrityError

from ..extensions import db
from ..models import Order, Payment, OrderEvent
from ..models.orders import (
    ORDER_OPEN,
    ORDER_PAID,
    ORDER_VOIDED,
    ORDER_REFUNDED,
    ORDER_STATUSES,
    PAYMENT_PENDING,
    PAYMENT_AUTHORIZED,
    PAYMENT_CAPTURED,
    PAYMENT_DECLINED,
    PAYMENT_FAILED,
    PAYMENT_CANCELLED,
    PAYMENT_VOIDED,
    PAYMENT_REFUNDED,
)
from ..signals import order_paid
from ..validation import (
    ConflictError,
    NotFoundError,
    ValidationError,
    amounts_match,
    parse_amount,
    require_text,
)
from lanepay.time_utils import utcnow
from .concurrency import lock_for_update, order_lock, run_with_retry
from .invoice_service import next_invoice_number


class DuplicateInvoice(ConflictError):
    """Invoice number already used by another order."""


class OrderNotOpen(ConflictError):
    """Order is no longer accepting payments."""


class PaymentInProgress(ConflictError):
    """Another payment for the order has not reached an outcome yet."""

    def __init__(self, message: str, payment_id: int | None = None):
        super().__init__(message)
        self.payment_id = payment_id


class InvalidTransition(ConflictError):
    """Requested status change is not allowed from the current state."""


class AmountMismatch(ConflictError):
    """Payment amount differs from the order amount beyond rounding tolerance."""


class OrderNotFound(NotFoundError):
    pass


class PaymentNotFound(NotFoundError):
    pass


# Legal order transitions; PAID -> VOIDED is further restricted in _check_transition
ORDER_TRANSITIONS = {
    ORDER_OPEN: {ORDER_PAID, ORDER_VOIDED},
    ORDER_PAID: {ORDER_REFUNDED, ORDER_VOIDED},
    ORDER_VOIDED: set(),
    ORDER_REFUNDED: set(),
}

PROVISIONAL_TXN_PREFIX = "LOCAL-"


# =============================================================================
# QUERIES
# =============================================================================

def get_order(order_id: int) -> Order:
    order = db.session.get(Order, order_id)
    if not order:
        raise OrderNotFound(f"Order {order_id} not found")
    return order


def find_order_by_invoice(invoice_number: str) -> Order | None:
    return db.session.query(Order).filter_by(invoice_number=invoice_number).first()


def get_payment(payment_id: int) -> Payment:
    payment = db.session.get(Payment, payment_id)
    if not payment:
        raise PaymentNotFound(f"Payment {payment_id} not found")
    return payment


def get_payment_by_transaction(provider: str, transaction_id: str) -> Payment | None:
    return (
        db.session.query(Payment)
        .filter_by(provider=provider, transaction_id=transaction_id)
        .first()
    )


def find_payment_by_transaction(transaction_id: str, providers) -> Payment | None:
    """Payment holding transaction_id under any of the given channels."""
    return (
        db.session.query(Payment)
        .filter(Payment.transaction_id == transaction_id, Payment.provider.in_(tuple(providers)))
        .first()
    )


def get_latest_payment(order_id: int) -> Payment | None:
    """Most recent attempt of any status."""
    return (
        db.session.query(Payment)
        .filter_by(order_id=order_id)
        .order_by(Payment.id.desc())
        .first()
    )


def get_current_payment(order_id: int) -> Payment | None:
    """
    Most recent attempt that moved (or may still move) money.

    Declined, failed and cancelled attempts are skipped; they have nothing
    to void or refund.
    """
    return (
        db.session.query(Payment)
        .filter(
            Payment.order_id == order_id,
            Payment.status.notin_((PAYMENT_DECLINED, PAYMENT_FAILED, PAYMENT_CANCELLED)),
        )
        .order_by(Payment.id.desc())
        .first()
    )


def _in_flight_payment(order: Order) -> Payment | None:
    statuses = [PAYMENT_PENDING]
    if order.status == ORDER_OPEN:
        statuses.append(PAYMENT_AUTHORIZED)
    return (
        db.session.query(Payment)
        .filter(Payment.order_id == order.id, Payment.status.in_(statuses))
        .order_by(Payment.id.desc())
        .first()
    )


def get_in_flight_payment(order_id: int) -> Payment | None:
    return _in_flight_payment(get_order(order_id))


def list_orders(
    *,
    status: str | None = None,
    lane_id: str | None = None,
    needs_reconciliation: bool | None = None,
    synced: bool | None = None,
    limit: int = 50,
    offset: int = 0,
) -> list[Order]:
    query = db.session.query(Order)
    if status:
        if status not in ORDER_STATUSES:
            raise ValidationError(f"Invalid status: {status}. Must be one of {list(ORDER_STATUSES)}")
        query = query.filter(Order.status == status)
    if lane_id:
        query = query.filter(Order.lane_id == lane_id)
    if needs_reconciliation is not None:
        query = query.filter(Order.needs_reconciliation.is_(needs_reconciliation))
    if synced is not None:
        query = query.filter(Order.synced_to_zoho.is_(synced))
    return query.order_by(Order.created_at.desc(), Order.id.desc()).offset(offset).limit(limit).all()


def get_order_events(order_id: int) -> list[OrderEvent]:
    return (
        db.session.query(OrderEvent)
        .filter_by(order_id=order_id)
        .order_by(OrderEvent.id)
        .all()
    )


def payment_actions(order: Order) -> dict:
    """Which compensating action the current payment allows."""
    payment = get_current_payment(order.id)
    can_void = bool(
        payment
        and payment.status == PAYMENT_AUTHORIZED
        and order.status in (ORDER_OPEN, ORDER_PAID)
        and not _has_captured_payment(order)
    )
    can_refund = bool(payment and payment.status == PAYMENT_CAPTURED and order.status == ORDER_PAID)
    return {"can_void": can_void, "can_refund": can_refund}


# =============================================================================
# ORDER CREATION
# =============================================================================

def create_order(
    *,
    lane_id: str,
    amount,
    invoice_number: str | None = None,
    user_id: int | None = None,
    notes: str | None = None,
) -> Order:
    """
    Create a new OPEN order.

    Args:
        lane_id: Register/device the sale comes from (e.g. "LANE-01")
        amount: Sale total, > 0, fixed-point 2 places
        invoice_number: Globally unique; generated per lane/day if omitted
        user_id: Cashier creating the order (optional)
        notes: Free text (optional)

    Raises:
        ValidationError: bad amount or missing lane
        DuplicateInvoice: invoice number already exists (no record created)
    """
    lane_id = require_text(lane_id, "lane_id", max_length=64)
    amount = parse_amount(amount)

    def _op():
        number = invoice_number
        if number is not None:
            number = require_text(number, "invoice_number", max_length=64)
            if db.session.query(Order.id).filter_by(invoice_number=number).first():
                raise DuplicateInvoice(f"Invoice number {number} already exists")
        else:
            number = next_invoice_number(lane_id)

        order = Order(
            invoice_number=number,
            lane_id=lane_id,
            amount=amount,
            status=ORDER_OPEN,
            user_id=user_id,
            notes=notes or None,
        )
        db.session.add(order)
        try:
            db.session.flush()
        except IntegrityError:
            db.session.rollback()
            raise DuplicateInvoice(f"Invoice number {number} already exists")

        _append_event(order, "order.created", to_status=ORDER_OPEN, actor_user_id=user_id)
        db.session.commit()
        return order

    return run_with_retry(_op)


# =============================================================================
# PAYMENT ATTEMPTS
# =============================================================================

def attach_payment(order_id: int, provider: str, amount, user_id: int | None = None) -> Payment:
    """
    Start a payment attempt (single-flight guard).

    WHY: The PENDING row is written before any gateway call so that a
    second register tapping "pay" on the same order is turned away
    instead of charging the customer twice.

    Raises:
        OrderNotOpen: order is PAID/VOIDED/REFUNDED
        PaymentInProgress: another attempt is still in flight
        ValidationError: amount invalid or different from the order amount
    """
    provider = require_text(provider, "provider", max_length=32)
    amount = parse_amount(amount)

    def _op():
        order = lock_for_update(db.session.query(Order).filter_by(id=order_id)).first()
        if not order:
            raise OrderNotFound(f"Order {order_id} not found")

        if order.status != ORDER_OPEN:
            raise OrderNotOpen(f"Order {order.invoice_number} is {order.status}; payments require OPEN")

        existing = _in_flight_payment(order)
        if existing:
            raise PaymentInProgress(
                f"Payment {existing.id} for order {order.invoice_number} is still {existing.status}",
                payment_id=existing.id,
            )

        if not amounts_match(amount, order.amount, _tolerance()):
            raise ValidationError(
                f"Payment amount {amount} does not match order amount {order.amount}"
            )

        payment = Payment(
            order_id=order.id,
            provider=provider,
            transaction_id=f"{PROVISIONAL_TXN_PREFIX}{uuid.uuid4().hex}",
            status=PAYMENT_PENDING,
            amount=amount,
            user_id=user_id,
        )
        db.session.add(payment)

        # Bumps order.version_id: a concurrent attach loses the compare-and-set
        order.updated_at = utcnow()
        db.session.flush()

        _append_event(order, "payment.attached", payment=payment, actor_user_id=user_id,
                      note=f"provider={provider}")
        db.session.commit()
        return payment

    with order_lock(order_id):
        return run_with_retry(_op)


def record_pending(payment_id: int, correlation_id: str, raw_response: dict | None = None) -> Payment:
    """Store the gateway's correlation id for an asynchronous attempt."""
    def _op():
        payment = _locked_payment(payment_id)
        if payment.status != PAYMENT_PENDING:
            raise InvalidTransition(f"Payment {payment.id} is {payment.status}, expected PENDING")
        payment.transaction_id = correlation_id
        payment.raw_response = raw_response
        _append_event(payment.order, "payment.pending", payment=payment, note=f"txn={correlation_id}")
        db.session.commit()
        return payment

    return _with_payment_order_lock(payment_id, _op)


def record_authorization(
    payment_id: int,
    *,
    transaction_id: str,
    status: str,
    auth_code: str | None = None,
    auto_capture: bool = False,
    raw_response: dict | None = None,
    amount: Decimal | None = None,
    settled_at: datetime | None = None,
) -> Payment:
    """
    Record an approved gateway outcome on a PENDING attempt.

    Does not move the order; callers follow with mark_paid so an amount
    mismatch leaves a visible AUTHORIZED payment on an OPEN order.
    """
    if status not in (PAYMENT_AUTHORIZED, PAYMENT_CAPTURED):
        raise ValidationError(f"Approved payment status must be AUTHORIZED or CAPTURED, got {status}")

    def _op():
        payment = _locked_payment(payment_id)
        if payment.status in (PAYMENT_AUTHORIZED, PAYMENT_CAPTURED) and payment.transaction_id == transaction_id:
            return payment
        if payment.status != PAYMENT_PENDING:
            raise InvalidTransition(f"Payment {payment.id} is {payment.status}, expected PENDING")

        payment.transaction_id = transaction_id
        payment.auth_code = auth_code
        payment.status = status
        payment.auto_capture = auto_capture
        if raw_response is not None:
            payment.raw_response = raw_response
        if amount is not None:
            payment.amount = amount
        if status == PAYMENT_CAPTURED:
            payment.settled_at = settled_at or utcnow()

        _append_event(
            payment.order,
            "payment.captured" if status == PAYMENT_CAPTURED else "payment.authorized",
            payment=payment,
            from_status=PAYMENT_PENDING,
            to_status=status,
            note=f"txn={transaction_id}",
        )
        db.session.commit()
        return payment

    return _with_payment_order_lock(payment_id, _op)


def mark_declined(
    payment_id: int,
    reason: str,
    *,
    transaction_id: str | None = None,
    raw_response: dict | None = None,
) -> Payment:
    """Terminal decline. The order stays OPEN for a new attempt."""
    def _op():
        payment = _locked_payment(payment_id)
        if payment.status == PAYMENT_DECLINED:
            return payment
        if payment.status != PAYMENT_PENDING:
            raise InvalidTransition(f"Payment {payment.id} is {payment.status}, expected PENDING")

        payment.status = PAYMENT_DECLINED
        payment.decline_reason = (reason or "Declined")[:255]
        if transaction_id:
            payment.transaction_id = transaction_id
        if raw_response is not None:
            payment.raw_response = raw_response

        order = payment.order
        order.needs_reconciliation = False
        order.reconciliation_note = None
        _append_event(order, "payment.declined", payment=payment, from_status=PAYMENT_PENDING,
                      to_status=PAYMENT_DECLINED, note=payment.decline_reason)
        db.session.commit()
        return payment

    return _with_payment_order_lock(payment_id, _op)


def mark_failed(
    payment_id: int,
    reason: str,
    *,
    raw_response: dict | None = None,
    needs_reconciliation: bool = False,
) -> Payment:
    """
    Gateway error before an outcome was known. Order keeps its prior state.

    needs_reconciliation=True when the charge may have gone through anyway
    (e.g. the gateway answered with something unreadable).
    """
    def _op():
        payment = _locked_payment(payment_id)
        if payment.status != PAYMENT_PENDING:
            raise InvalidTransition(f"Payment {payment.id} is {payment.status}, expected PENDING")

        payment.status = PAYMENT_FAILED
        payment.decline_reason = (reason or "Gateway error")[:255]
        if raw_response is not None:
            payment.raw_response = raw_response

        order = payment.order
        if needs_reconciliation:
            order.needs_reconciliation = True
            order.reconciliation_note = f"Gateway error on payment {payment.id}: {payment.decline_reason}"[:255]
        _append_event(order, "payment.failed", payment=payment, from_status=PAYMENT_PENDING,
                      to_status=PAYMENT_FAILED, note=payment.decline_reason)
        db.session.commit()
        return payment

    return _with_payment_order_lock(payment_id, _op)


def release_payment(order_id: int, *, user_id: int | None = None, reason: str | None = None) -> Payment:
    """
    Operator gives up on a PENDING attempt (terminal confirmed nothing was charged).

    Frees the single-flight guard so a new attempt can be made.
    """
    def _op():
        order = lock_for_update(db.session.query(Order).filter_by(id=order_id)).first()
        if not order:
            raise OrderNotFound(f"Order {order_id} not found")
        payment = (
            db.session.query(Payment)
            .filter_by(order_id=order_id, status=PAYMENT_PENDING)
            .order_by(Payment.id.desc())
            .first()
        )
        if not payment:
            raise ConflictError(f"Order {order.invoice_number} has no pending payment to release")

        payment.status = PAYMENT_CANCELLED
        payment.decline_reason = (reason or "Released by operator")[:255]
        order.needs_reconciliation = False
        order.reconciliation_note = None
        _append_event(order, "payment.cancelled", payment=payment, from_status=PAYMENT_PENDING,
                      to_status=PAYMENT_CANCELLED, actor_user_id=user_id, note=payment.decline_reason)
        db.session.commit()
        return payment

    with order_lock(order_id):
        return run_with_retry(_op)


def mark_settled(payment_id: int, settled_at: datetime | None = None) -> Payment:
    """AUTHORIZED -> CAPTURED once the gateway reports the batch settled."""
    def _op():
        payment = _locked_payment(payment_id)
        if payment.status == PAYMENT_CAPTURED:
            return payment
        if payment.status != PAYMENT_AUTHORIZED:
            raise InvalidTransition(f"Payment {payment.id} is {payment.status}; only AUTHORIZED can settle")

        payment.status = PAYMENT_CAPTURED
        payment.settled_at = settled_at or utcnow()
        _append_event(payment.order, "payment.settled", payment=payment,
                      from_status=PAYMENT_AUTHORIZED, to_status=PAYMENT_CAPTURED)
        db.session.commit()
        return payment

    return _with_payment_order_lock(payment_id, _op)


def record_recovered_payment(
    order_id: int,
    provider: str,
    *,
    transaction_id: str,
    amount: Decimal,
    status: str,
    auth_code: str | None = None,
    settled_at: datetime | None = None,
    raw_response: dict | None = None,
) -> Payment:
    """
    Record a processor charge the lane never heard back about.

    A PENDING attempt still holding its provisional id is completed in
    place; otherwise a new approved payment is attached. Calling again
    with the same transaction returns the recorded payment. Does not move
    the order; callers follow with mark_paid.

    Raises:
        OrderNotOpen: order already left OPEN
        PaymentInProgress: another attempt with a gateway id is in flight
    """
    if status not in (PAYMENT_AUTHORIZED, PAYMENT_CAPTURED):
        raise ValidationError(f"Recovered payment status must be AUTHORIZED or CAPTURED, got {status}")

    def _op():
        order = lock_for_update(db.session.query(Order).filter_by(id=order_id)).first()
        if not order:
            raise OrderNotFound(f"Order {order_id} not found")

        existing = get_payment_by_transaction(provider, transaction_id)
        if existing is not None:
            return existing

        if order.status != ORDER_OPEN:
            raise OrderNotOpen(f"Order {order.invoice_number} is {order.status}; nothing to recover")

        payment = _in_flight_payment(order)
        if payment is not None and not (
            payment.status == PAYMENT_PENDING and payment.transaction_id.startswith(PROVISIONAL_TXN_PREFIX)
        ):
            raise PaymentInProgress(
                f"Payment {payment.id} for order {order.invoice_number} is still {payment.status}",
                payment_id=payment.id,
            )

        from_status = None
        if payment is None:
            payment = Payment(order_id=order.id, provider=provider, status=PAYMENT_PENDING, amount=amount)
            db.session.add(payment)
        else:
            from_status = PAYMENT_PENDING

        payment.provider = provider
        payment.transaction_id = transaction_id
        payment.auth_code = auth_code
        payment.status = status
        payment.auto_capture = True
        payment.amount = amount
        payment.raw_response = raw_response
        if status == PAYMENT_CAPTURED:
            payment.settled_at = settled_at or utcnow()

        order.updated_at = utcnow()
        db.session.flush()

        _append_event(order, "payment.recovered", payment=payment, from_status=from_status,
                      to_status=status, note=f"txn={transaction_id}")
        db.session.commit()
        return payment

    with order_lock(order_id):
        return run_with_retry(_op)


# =============================================================================
# ORDER TRANSITIONS
# =============================================================================

def mark_paid(order_id: int, payment_id: int, *, user_id: int | None = None) -> Order:
    """
    OPEN -> PAID.

    Requires the payment to be CAPTURED, or AUTHORIZED with auto-capture,
    and its amount to match the order amount. Calling again for the same
    payment returns the order unchanged. The order_paid signal is sent
    once, after the commit.
    """
    transitioned = False

    def _op():
        nonlocal transitioned
        order, payment = _locked_order_and_payment(order_id, payment_id)

        if order.status == ORDER_PAID and payment.status in (PAYMENT_AUTHORIZED, PAYMENT_CAPTURED):
            return order

        _check_transition(order, ORDER_PAID)

        eligible = payment.status == PAYMENT_CAPTURED or (
            payment.status == PAYMENT_AUTHORIZED and payment.auto_capture
        )
        if not eligible:
            raise InvalidTransition(
                f"Payment {payment.id} is {payment.status}"
                f"{'' if payment.auto_capture else ' without auto-capture'}; cannot mark order paid"
            )

        if not amounts_match(payment.amount, order.amount, _tolerance()):
            raise AmountMismatch(
                f"Payment amount {payment.amount} does not match order amount {order.amount}"
            )

        previous = order.status
        order.status = ORDER_PAID
        order.needs_reconciliation = False
        order.reconciliation_note = None
        _append_event(order, "order.paid", payment=payment, from_status=previous,
                      to_status=ORDER_PAID, actor_user_id=user_id)
        db.session.commit()
        transitioned = True
        return order

    with order_lock(order_id):
        order = run_with_retry(_op)

    if transitioned:
        order_paid.send(current_app._get_current_object(), order_id=order.id)
    return order


def mark_voided(order_id: int, payment_id: int, *, user_id: int | None = None,
                raw_response: dict | None = None, reason: str | None = None) -> Order:
    """
    OPEN/PAID -> VOIDED after the gateway voided an AUTHORIZED payment.

    Idempotent: an order already VOIDED with this payment VOIDED is
    returned as-is.
    """
    def _op():
        order, payment = _locked_order_and_payment(order_id, payment_id)

        if order.status == ORDER_VOIDED and payment.status == PAYMENT_VOIDED:
            return order

        _check_transition(order, ORDER_VOIDED)
        if payment.status != PAYMENT_AUTHORIZED:
            raise InvalidTransition(f"Payment {payment.id} is {payment.status}; only AUTHORIZED payments can be voided")

        previous = order.status
        payment.status = PAYMENT_VOIDED
        if raw_response is not None:
            payment.raw_response = _merge_raw(payment.raw_response, "void", raw_response)
        order.status = ORDER_VOIDED
        order.needs_reconciliation = False
        order.reconciliation_note = None

        _append_event(order, "payment.voided", payment=payment, from_status=PAYMENT_AUTHORIZED,
                      to_status=PAYMENT_VOIDED, actor_user_id=user_id, note=reason)
        _append_event(order, "order.voided", payment=payment, from_status=previous,
                      to_status=ORDER_VOIDED, actor_user_id=user_id, note=reason)
        db.session.commit()
        return order

    with order_lock(order_id):
        return run_with_retry(_op)


def mark_refunded(order_id: int, payment_id: int, *, user_id: int | None = None,
                  raw_response: dict | None = None, reason: str | None = None,
                  amount: Decimal | None = None) -> Order:
    """
    PAID -> REFUNDED after the gateway refunded a CAPTURED payment.

    amount is what the gateway returned; None means the full payment. A
    partial refund still closes the order.

    Idempotent: an order already REFUNDED with this payment REFUNDED is
    returned as-is.
    """
    def _op():
        order, payment = _locked_order_and_payment(order_id, payment_id)

        if order.status == ORDER_REFUNDED and payment.status == PAYMENT_REFUNDED:
            return order

        _check_transition(order, ORDER_REFUNDED)
        if payment.status != PAYMENT_CAPTURED:
            raise InvalidTransition(f"Payment {payment.id} is {payment.status}; only CAPTURED payments can be refunded")

        payment.status = PAYMENT_REFUNDED
        payment.refunded_amount = amount if amount is not None else payment.amount
        if raw_response is not None:
            payment.raw_response = _merge_raw(payment.raw_response, "refund", raw_response)
        order.status = ORDER_REFUNDED

        _append_event(order, "payment.refunded", payment=payment, from_status=PAYMENT_CAPTURED,
                      to_status=PAYMENT_REFUNDED, actor_user_id=user_id, note=_refund_note(payment, reason))
        _append_event(order, "order.refunded", payment=payment, from_status=ORDER_PAID,
                      to_status=ORDER_REFUNDED, actor_user_id=user_id, note=reason)
        db.session.commit()
        return order

    with order_lock(order_id):
        return run_with_retry(_op)


def flag_for_reconciliation(order_id: int, note: str) -> Order:
    """Payment outcome unknown; an operator must check the terminal/gateway."""
    def _op():
        order = lock_for_update(db.session.query(Order).filter_by(id=order_id)).first()
        if not order:
            raise OrderNotFound(f"Order {order_id} not found")
        order.needs_reconciliation = True
        order.reconciliation_note = (note or "")[:255] or None
        _append_event(order, "order.flagged", note=order.reconciliation_note)
        db.session.commit()
        return order

    with order_lock(order_id):
        return run_with_retry(_op)


def flag_unresolved_payment(order_id: int, payment_id: int, transaction_id: str, note: str) -> tuple[Order, bool]:
    """
    Flag the order only while the payment is still PENDING on transaction_id.

    A poll that gives up races the operator: when the attempt was released
    or resolved in the meantime there is nothing left to reconcile.
    Returns (order, flagged).
    """
    def _op():
        order, payment = _locked_order_and_payment(order_id, payment_id)
        if payment.status != PAYMENT_PENDING or payment.transaction_id != transaction_id:
            return order, False
        order.needs_reconciliation = True
        order.reconciliation_note = (note or "")[:255] or None
        _append_event(order, "order.flagged", payment=payment, note=order.reconciliation_note)
        db.session.commit()
        return order, True

    with order_lock(order_id):
        return run_with_retry(_op)


def clear_reconciliation_flag(order_id: int, *, user_id: int | None = None, note: str | None = None) -> Order:
    """Operator confirmed the outcome by hand (e.g. checked the terminal batch)."""
    def _op():
        order = lock_for_update(db.session.query(Order).filter_by(id=order_id)).first()
        if not order:
            raise OrderNotFound(f"Order {order_id} not found")
        if not order.needs_reconciliation:
            return order
        order.needs_reconciliation = False
        order.reconciliation_note = None
        _append_event(order, "order.reconciled", actor_user_id=user_id, note=note)
        db.session.commit()
        return order

    with order_lock(order_id):
        return run_with_retry(_op)


# =============================================================================
# INTERNAL HELPERS
# =============================================================================

def _tolerance() -> Decimal:
    return Decimal(str(current_app.config.get("AMOUNT_TOLERANCE", "0.01")))


def _has_captured_payment(order: Order) -> bool:
    return (
        db.session.query(Payment.id)
        .filter(
            Payment.order_id == order.id,
            Payment.status.in_((PAYMENT_CAPTURED, PAYMENT_REFUNDED)),
        )
        .first()
        is not None
    )


def _check_transition(order: Order, target: str) -> None:
    if target not in ORDER_TRANSITIONS.get(order.status, set()):
        raise InvalidTransition(f"Order {order.invoice_number} cannot move from {order.status} to {target}")
    if order.status == ORDER_PAID and target == ORDER_VOIDED and _has_captured_payment(order):
        raise InvalidTransition(
            f"Order {order.invoice_number} has a captured payment; use refund instead of void"
        )


def _locked_payment(payment_id: int) -> Payment:
    payment = lock_for_update(db.session.query(Payment).filter_by(id=payment_id)).first()
    if not payment:
        raise PaymentNotFound(f"Payment {payment_id} not found")
    return payment


def _locked_order_and_payment(order_id: int, payment_id: int) -> tuple[Order, Payment]:
    order = lock_for_update(db.session.query(Order).filter_by(id=order_id)).first()
    if not order:
        raise OrderNotFound(f"Order {order_id} not found")
    payment = _locked_payment(payment_id)
    if payment.order_id != order.id:
        raise ValidationError(f"Payment {payment_id} does not belong to order {order_id}")
    return order, payment


def _with_payment_order_lock(payment_id: int, op):
    payment = db.session.get(Payment, payment_id)
    if not payment:
        raise PaymentNotFound(f"Payment {payment_id} not found")
    with order_lock(payment.order_id):
        return run_with_retry(op)


def _refund_note(payment: Payment, reason: str | None) -> str | None:
    if payment.refunded_amount is None or payment.refunded_amount == payment.amount:
        return reason
    partial = f"partial refund {payment.refunded_amount} of {payment.amount}"
    return f"{partial}: {reason}" if reason else partial


def _merge_raw(existing, key: str, payload: dict) -> dict:
    merged = dict(existing) if isinstance(existing, dict) else {"initial": existing}
    merged[key] = payload
    return merged


def _append_event(
    order: Order,
    event_type: str,
    *,
    payment: Payment | None = None,
    from_status: str | None = None,
    to_status: str | None = None,
    actor_user_id: int | None = None,
    note: str | None = None,
) -> OrderEvent:
    """
    Log a ledger event in the same transaction as the change it records.
    """
    event = OrderEvent(
        order_id=order.id,
        payment_id=payment.id if payment is not None else None,
        event_type=event_type,
        from_status=from_status,
        to_status=to_status,
        actor_user_id=actor_user_id,
        note=(note or None) and note[:255],
        occurred_at=utcnow(),
    )
    db.session.add(event)
    return event
