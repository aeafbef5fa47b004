# Overview: Forwards paid orders to accounting (Zoho Books) with retry and error capture.

"""
Sync Forwarder

WHY: A sale that cannot reach the books is still a valid, paid sale. The
forwarder records every failure on the order and retries later; it never
rolls back or blocks the payment.

IDEMPOTENCY:
- Every attempt first asks Zoho for a receipt numbered with the invoice
  number, and only creates one when none exists
- A success response lost in transit is therefore recovered on the next
  retry instead of producing a second receipt
- zoho_sales_receipt_id is set once

TRIGGERS:
- order_paid signal (after the PAID commit), on the worker pool
- retry_sync(order_id) from the API/CLI
- retry_failed_syncs() from the CLI or the optional scheduler thread
"""

from __future__ import annotations

import logging

from flask import Flask, current_app
from sqlalchemy import func

from ..accounting import AccountingError, SaleSnapshot, get_accounting_client
from ..extensions import db
from ..models import Order, OrderEvent
from ..models.orders import ORDER_PAID, ORDER_REFUNDED
from ..signals import order_paid
from ..validation import ConflictError
from lanepay.time_utils import to_utc_z, utcnow
from . import ledger_service as ledger
from .concurrency import lock_for_update, run_with_retry, sync_lock
from .ledger_service import OrderNotFound
from .worker import get_worker, schedule

logger = logging.getLogger(__name__)

# Orders in these states represent money that was collected
SYNCABLE_STATUSES = (ORDER_PAID, ORDER_REFUNDED)

SCHEDULER_KEY = "lanepay.sync_scheduler"


def forward_sale(order_id: int) -> Order:
    """
    Push one order to accounting. Accounting failures are recorded, not raised.
    """
    with sync_lock(order_id):
        order = ledger.get_order(order_id)
        if order.synced_to_zoho and order.zoho_sales_receipt_id:
            return order
        if order.status not in SYNCABLE_STATUSES:
            raise ConflictError(f"Order {order.invoice_number} is {order.status}; only paid sales are synced")

        snapshot = SaleSnapshot.from_order(order, ledger.get_current_payment(order_id))
        client = get_accounting_client()

        try:
            receipt_id = client.find_sales_receipt(snapshot.invoice_number)
            recovered = receipt_id is not None
            if not recovered:
                receipt_id = client.create_sales_receipt(snapshot)
        except AccountingError as exc:
            logger.warning("Sync of order %s failed: %s", snapshot.invoice_number, exc)
            return _record_failure(order_id, str(exc) or exc.__class__.__name__)

        return _record_success(order_id, receipt_id, recovered)


def retry_sync(order_id: int) -> Order:
    """Manual retry; safe to call any number of times."""
    return forward_sale(order_id)


def retry_failed_syncs(limit: int | None = None) -> dict:
    """
    Retry unsynced paid orders, least recently attempted first.

    Returns counts: attempted, succeeded, failed.
    """
    if limit is None:
        limit = current_app.config.get("SYNC_RETRY_BATCH_SIZE", 25)

    order_ids = [
        row.id
        for row in db.session.query(Order.id)
        .filter(Order.status.in_(SYNCABLE_STATUSES), Order.synced_to_zoho.is_(False))
        .order_by(Order.last_sync_attempt_at.is_(None).desc(), Order.last_sync_attempt_at, Order.id)
        .limit(limit)
        .all()
    ]

    succeeded = failed = 0
    for order_id in order_ids:
        try:
            order = forward_sale(order_id)
        except (ConflictError, OrderNotFound) as exc:
            logger.info("Skipping sync of order %s: %s", order_id, exc)
            continue
        if order.synced_to_zoho:
            succeeded += 1
        else:
            failed += 1

    if order_ids:
        logger.info("Sync retry batch: %d attempted, %d succeeded, %d failed",
                    len(order_ids), succeeded, failed)
    return {"attempted": len(order_ids), "succeeded": succeeded, "failed": failed}


def sync_summary() -> dict:
    base = db.session.query(Order).filter(Order.status.in_(SYNCABLE_STATUSES))
    synced = base.filter(Order.synced_to_zoho.is_(True)).count()
    unsynced = base.filter(Order.synced_to_zoho.is_(False))
    failed = unsynced.filter(Order.sync_error.isnot(None)).count()
    never_attempted = unsynced.filter(Order.sync_attempts == 0).count()
    oldest = (
        db.session.query(func.min(Order.created_at))
        .filter(Order.status.in_(SYNCABLE_STATUSES), Order.synced_to_zoho.is_(False))
        .scalar()
    )
    return {
        "synced": synced,
        "unsynced": unsynced.count(),
        "failed": failed,
        "never_attempted": never_attempted,
        "oldest_unsynced_at": to_utc_z(oldest),
    }


# =============================================================================
# RESULT RECORDING
# =============================================================================

def _record_success(order_id: int, receipt_id: str, recovered: bool) -> Order:
    def _op():
        order = lock_for_update(db.session.query(Order).filter_by(id=order_id)).first()
        if not order:
            raise OrderNotFound(f"Order {order_id} not found")
        order.synced_to_zoho = True
        if not order.zoho_sales_receipt_id:
            order.zoho_sales_receipt_id = receipt_id
        order.sync_error = None
        order.sync_attempts = (order.sync_attempts or 0) + 1
        order.last_sync_attempt_at = utcnow()
        db.session.add(OrderEvent(
            order_id=order.id,
            event_type="sync.succeeded",
            note=f"receipt={receipt_id}{' (existing)' if recovered else ''}",
            occurred_at=utcnow(),
        ))
        db.session.commit()
        return order

    order = run_with_retry(_op)
    logger.info("Order %s synced as receipt %s", order.invoice_number, receipt_id)
    return order


def _record_failure(order_id: int, message: str) -> Order:
    def _op():
        order = lock_for_update(db.session.query(Order).filter_by(id=order_id)).first()
        if not order:
            raise OrderNotFound(f"Order {order_id} not found")
        order.synced_to_zoho = False
        order.sync_error = message[:2000]
        order.sync_attempts = (order.sync_attempts or 0) + 1
        order.last_sync_attempt_at = utcnow()
        db.session.add(OrderEvent(
            order_id=order.id,
            event_type="sync.failed",
            note=message[:255],
            occurred_at=utcnow(),
        ))
        db.session.commit()
        return order

    return run_with_retry(_op)


# =============================================================================
# WIRING
# =============================================================================

def _on_order_paid(sender: Flask, order_id: int, **extra) -> None:
    if not sender.config.get("SYNC_AUTO_FORWARD", True):
        return
    get_worker().submit(forward_sale, order_id)


def init_sync(app: Flask) -> None:
    order_paid.connect(_on_order_paid, sender=app)
    if app.config.get("SYNC_SCHEDULER_ENABLED"):
        schedule(app, SCHEDULER_KEY, "sync-retry", app.config.get("SYNC_RETRY_INTERVAL_SECONDS", 300),
                 retry_failed_syncs)
