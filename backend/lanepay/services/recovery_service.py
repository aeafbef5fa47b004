# Overview: Recovers processor charges the ledger never recorded (lost responses, lane crashes).

"""
Transaction Recovery

WHY: A card reader or keyed sale can be approved by the processor while
the lane never sees the answer (crash, dropped connection). The customer
was charged but the order is still OPEN. This job walks the processor's
recent transactions and closes those orders.

MATCHING (all must hold):
- The transaction is approved and its id is on no payment yet
- Its invoice number names an OPEN order. The processor keeps only the
  first 20 characters, so a full-length number may match by prefix
- Amount equals the order amount within AMOUNT_TOLERANCE
- It was submitted 0..RECOVERY_MATCH_WINDOW_MINUTES after the order was created

A match is written through the ledger (payment.recovered, then order.paid),
so accounting sync follows as for any other sale. One run at a time per
process; an overlapping run returns without doing anything.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from decimal import Decimal, InvalidOperation

from flask import Flask, current_app

from ..extensions import db
from ..models import Order
from ..models.orders import ORDER_OPEN, PAYMENT_AUTHORIZED, PAYMENT_CAPTURED
from ..providers import get_processor
from ..providers.authorize_net import (
    APPROVED_UNSETTLED_STATUSES,
    INVOICE_MAX_LENGTH,
    SETTLED_STATUSES,
)
from ..providers.base import CARD_READER, PROCESSOR_PROVIDERS
from ..validation import ConflictError, amounts_match
from ..time_utils import parse_iso_datetime, utcnow
from . import ledger_service as ledger
from .worker import schedule

logger = logging.getLogger(__name__)

SCHEDULER_KEY = "lanepay.recovery_scheduler"

_run_guard = threading.Lock()


@dataclass
class RecoveryReport:
    checked: int = 0
    already_recorded: int = 0
    unmatched: int = 0
    recovered: list[dict] = field(default_factory=list)
    skipped: list[dict] = field(default_factory=list)
    ran: bool = True

    def to_dict(self) -> dict:
        return {
            "ran": self.ran,
            "checked": self.checked,
            "already_recorded": self.already_recorded,
            "unmatched": self.unmatched,
            "recovered": self.recovered,
            "skipped": self.skipped,
        }


def reconcile_recent_transactions(
    lookback_minutes: int | None = None,
    match_window_minutes: int | None = None,
    now: datetime | None = None,
) -> RecoveryReport:
    """
    Match recent processor transactions to OPEN orders and record them.

    Args:
        lookback_minutes: How far back to list transactions (RECOVERY_LOOKBACK_MINUTES)
        match_window_minutes: Max minutes between order creation and charge
            (RECOVERY_MATCH_WINDOW_MINUTES)
        now: Reference time, UTC

    Raises:
        ProviderError: the processor could not list transactions
    """
    config = current_app.config
    if lookback_minutes is None:
        lookback_minutes = config.get("RECOVERY_LOOKBACK_MINUTES", 15)
    if match_window_minutes is None:
        match_window_minutes = config.get("RECOVERY_MATCH_WINDOW_MINUTES", 15)
    now = now or utcnow()

    if not _run_guard.acquire(blocking=False):
        logger.info("Transaction recovery already running; skipping this run")
        return RecoveryReport(ran=False)

    try:
        transactions = get_processor().get_recent_transactions(now - timedelta(minutes=lookback_minutes), now)
        report = RecoveryReport()
        seen = set()
        for txn in transactions:
            transaction_id = str(txn.get("transId") or "")
            if not transaction_id or transaction_id in seen:
                continue
            seen.add(transaction_id)
            report.checked += 1
            _recover_one(txn, transaction_id, timedelta(minutes=match_window_minutes), report)
    finally:
        _run_guard.release()

    if report.recovered or report.skipped:
        logger.info(
            "Transaction recovery: %s checked, %s recovered, %s skipped",
            report.checked, len(report.recovered), len(report.skipped),
        )
    return report


def _recover_one(txn: dict, transaction_id: str, window: timedelta, report: RecoveryReport) -> None:
    status = txn.get("transactionStatus") or ""
    if status not in SETTLED_STATUSES and status not in APPROVED_UNSETTLED_STATUSES:
        report.unmatched += 1
        return

    if ledger.find_payment_by_transaction(transaction_id, PROCESSOR_PROVIDERS) is not None:
        report.already_recorded += 1
        return

    amount = _amount(txn.get("settleAmount"))
    submitted_at = _submitted_at(txn.get("submitTimeUTC"))
    if amount is None or submitted_at is None:
        _skip(report, transaction_id, None, "unreadable amount or submit time")
        return

    candidates = [
        order for order in _open_orders_for(txn.get("invoiceNumber"))
        if _matches(order, amount, submitted_at, window)
    ]
    if not candidates:
        report.unmatched += 1
        return
    if len(candidates) > 1:
        _skip(report, transaction_id, None,
              f"invoice {txn.get('invoiceNumber')} matches {len(candidates)} open orders")
        return

    order = candidates[0]
    try:
        payment = ledger.record_recovered_payment(
            order.id,
            _provider_for(order),
            transaction_id=transaction_id,
            amount=amount,
            status=PAYMENT_CAPTURED if status in SETTLED_STATUSES else PAYMENT_AUTHORIZED,
            raw_response={"recovered": txn},
        )
        order = ledger.mark_paid(order.id, payment.id)
    except ConflictError as exc:
        _skip(report, transaction_id, order.invoice_number, str(exc))
        return

    logger.warning("Recovered payment %s for order %s from processor transaction %s",
                   payment.id, order.invoice_number, transaction_id)
    report.recovered.append({
        "order_id": order.id,
        "invoice_number": order.invoice_number,
        "payment_id": payment.id,
        "transaction_id": transaction_id,
        "status": payment.status,
    })


def _open_orders_for(invoice_number) -> list[Order]:
    if not invoice_number:
        return []
    invoice_number = str(invoice_number)
    order = ledger.find_order_by_invoice(invoice_number)
    if order is not None:
        return [order] if order.status == ORDER_OPEN else []
    if len(invoice_number) < INVOICE_MAX_LENGTH:
        return []
    return (
        db.session.query(Order)
        .filter(Order.invoice_number.startswith(invoice_number, autoescape=True), Order.status == ORDER_OPEN)
        .all()
    )


def _matches(order: Order, amount: Decimal, submitted_at: datetime, window: timedelta) -> bool:
    tolerance = Decimal(str(current_app.config.get("AMOUNT_TOLERANCE", "0.01")))
    if not amounts_match(amount, order.amount, tolerance):
        return False
    elapsed = submitted_at - _naive_utc(order.created_at)
    return timedelta(0) <= elapsed <= window


def _provider_for(order: Order) -> str:
    """Channel of the order's last processor attempt; card reader when there was none."""
    for payment in reversed(order.payments):
        if payment.provider in PROCESSOR_PROVIDERS:
            return payment.provider
    return CARD_READER


def _amount(value) -> Decimal | None:
    if value in (None, ""):
        return None
    try:
        amount = Decimal(str(value))
    except InvalidOperation:
        return None
    if not amount.is_finite() or amount <= 0:
        return None
    return amount.quantize(Decimal("0.01"))


def _submitted_at(value) -> datetime | None:
    try:
        return parse_iso_datetime(value) if isinstance(value, str) else None
    except ValueError:
        return None


def _naive_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def _skip(report: RecoveryReport, transaction_id: str, invoice_number: str | None, reason: str) -> None:
    logger.warning("Transaction %s not recovered: %s", transaction_id, reason)
    report.skipped.append({"transaction_id": transaction_id, "invoice_number": invoice_number, "reason": reason})


def init_recovery(app: Flask) -> None:
    if app.config.get("RECOVERY_SCHEDULER_ENABLED"):
        schedule(app, SCHEDULER_KEY, "transaction-recovery", app.config.get("RECOVERY_INTERVAL_SECONDS", 60),
                 reconcile_recent_transactions)
