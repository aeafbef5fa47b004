from __future__ import annotations

from ..extensions import db
from lanepay.time_utils import to_utc_z, utcnow


# =============================================================================
# ORDER STATUS (CONSTANTS)
# =============================================================================

ORDER_OPEN = "OPEN"
ORDER_PAID = "PAID"
ORDER_VOIDED = "VOIDED"
ORDER_REFUNDED = "REFUNDED"

ORDER_STATUSES = (ORDER_OPEN, ORDER_PAID, ORDER_VOIDED, ORDER_REFUNDED)


# =============================================================================
# PAYMENT STATUS (CONSTANTS)
# =============================================================================

PAYMENT_PENDING = "PENDING"
PAYMENT_AUTHORIZED = "AUTHORIZED"
PAYMENT_CAPTURED = "CAPTURED"
PAYMENT_DECLINED = "DECLINED"
PAYMENT_FAILED = "FAILED"
PAYMENT_CANCELLED = "CANCELLED"
PAYMENT_VOIDED = "VOIDED"
PAYMENT_REFUNDED = "REFUNDED"

PAYMENT_STATUSES = (
    PAYMENT_PENDING,
    PAYMENT_AUTHORIZED,
    PAYMENT_CAPTURED,
    PAYMENT_DECLINED,
    PAYMENT_FAILED,
    PAYMENT_CANCELLED,
    PAYMENT_VOIDED,
    PAYMENT_REFUNDED,
)

# Attempts whose charge has been reversed
PAYMENT_REVERSED = (PAYMENT_VOIDED, PAYMENT_REFUNDED)


class Order(db.Model):
    """
    Ledger record of one sale transaction.

    WHY: The order is the single source of truth for a sale. Payment
    channels, polling and accounting sync all report back into it.

    LIFECYCLE:
    - OPEN: created, awaiting a successful payment
    - PAID: a payment was authorized/captured for the full amount
    - VOIDED: the sale was cancelled before its charge settled
    - REFUNDED: a settled charge was returned

    Orders are never deleted; they are kept for audit.
    """
    __tablename__ = "orders"
    __table_args__ = (
        db.Index("ix_orders_lane_created", "lane_id", "created_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)

    # Human-readable invoice number (e.g., "LANE01-20240115-000123")
    invoice_number = db.Column(db.String(64), nullable=False, unique=True, index=True)

    # Register / device the sale originated from (e.g., "LANE-01")
    lane_id = db.Column(db.String(64), nullable=False)

    amount = db.Column(db.Numeric(10, 2), nullable=False)

    status = db.Column(db.String(16), nullable=False, default=ORDER_OPEN, index=True)

    user_id = db.Column(db.Integer, nullable=True)
    notes = db.Column(db.Text, nullable=True)

    # Set when a payment outcome is unknown (poll timeout/cancel, unreadable gateway reply)
    needs_reconciliation = db.Column(db.Boolean, nullable=False, default=False, index=True)
    reconciliation_note = db.Column(db.String(255), nullable=True)

    # Accounting sync record
    synced_to_zoho = db.Column(db.Boolean, nullable=False, default=False, index=True)
    zoho_sales_receipt_id = db.Column(db.String(64), nullable=True)
    sync_error = db.Column(db.Text, nullable=True)
    sync_attempts = db.Column(db.Integer, nullable=False, default=0)
    last_sync_attempt_at = db.Column(db.DateTime(timezone=True), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)
    version_id = db.Column(db.Integer, nullable=False, default=1)

    __mapper_args__ = {"version_id_col": version_id}

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "invoice_number": self.invoice_number,
            "lane_id": self.lane_id,
            "amount": format(self.amount, ".2f") if self.amount is not None else None,
            "status": self.status,
            "user_id": self.user_id,
            "notes": self.notes,
            "needs_reconciliation": self.needs_reconciliation,
            "reconciliation_note": self.reconciliation_note,
            "sync": {
                "synced_to_zoho": self.synced_to_zoho,
                "zoho_sales_receipt_id": self.zoho_sales_receipt_id,
                "sync_error": self.sync_error,
                "sync_attempts": self.sync_attempts,
                "last_sync_attempt_at": to_utc_z(self.last_sync_attempt_at),
            },
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
            "version_id": self.version_id,
        }


class Payment(db.Model):
    """
    One attempt, by a specific provider, to collect money for an order.

    WHY: An order accumulates several payments across declines, retries,
    voids and refunds. Each attempt keeps the provider's raw payload
    verbatim for audit and disputes.

    TRANSACTION IDS:
    - Unique per provider namespace
    - A PENDING attempt holds a provisional "LOCAL-..." id until the
      gateway assigns one
    """
    __tablename__ = "payments"
    __table_args__ = (
        db.UniqueConstraint("provider", "transaction_id", name="uq_payments_provider_txn"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id", ondelete="CASCADE"), nullable=False, index=True)

    provider = db.Column(db.String(32), nullable=False)
    transaction_id = db.Column(db.String(128), nullable=False, index=True)
    auth_code = db.Column(db.String(64), nullable=True)

    status = db.Column(db.String(16), nullable=False, default=PAYMENT_PENDING, index=True)

    # authCaptureTransaction: authorized now, captured automatically at settlement
    auto_capture = db.Column(db.Boolean, nullable=False, default=False)

    amount = db.Column(db.Numeric(10, 2), nullable=False)
    # Set on refund; below amount for a partial refund
    refunded_amount = db.Column(db.Numeric(10, 2), nullable=True)

    raw_response = db.Column(db.JSON, nullable=True)
    decline_reason = db.Column(db.String(255), nullable=True)

    user_id = db.Column(db.Integer, nullable=True)

    settled_at = db.Column(db.DateTime(timezone=True), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow, index=True)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)
    version_id = db.Column(db.Integer, nullable=False, default=1)

    order = db.relationship(
        "Order",
        backref=db.backref("payments", lazy=True, cascade="all, delete-orphan", order_by="Payment.id"),
    )
    __mapper_args__ = {"version_id_col": version_id}

    def to_dict(self, include_raw: bool = False) -> dict:
        data = {
            "id": self.id,
            "order_id": self.order_id,
            "provider": self.provider,
            "transaction_id": self.transaction_id,
            "auth_code": self.auth_code,
            "status": self.status,
            "auto_capture": self.auto_capture,
            "amount": format(self.amount, ".2f") if self.amount is not None else None,
            "refunded_amount": format(self.refunded_amount, ".2f") if self.refunded_amount is not None else None,
            "decline_reason": self.decline_reason,
            "user_id": self.user_id,
            "settled_at": to_utc_z(self.settled_at),
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }
        if include_raw:
            data["raw_response"] = self.raw_response
        return data


class OrderEvent(db.Model):
    """
    Append-only audit trail of ledger transitions.

    IMMUTABLE: Records are never updated or deleted.
    """
    __tablename__ = "order_events"
    __table_args__ = (
        db.Index("ix_order_events_order_occurred", "order_id", "occurred_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id", ondelete="CASCADE"), nullable=False, index=True)
    payment_id = db.Column(db.Integer, db.ForeignKey("payments.id"), nullable=True, index=True)

    # e.g. "order.created", "payment.captured", "sync.failed"
    event_type = db.Column(db.String(48), nullable=False, index=True)
    from_status = db.Column(db.String(16), nullable=True)
    to_status = db.Column(db.String(16), nullable=True)

    actor_user_id = db.Column(db.Integer, nullable=True)
    note = db.Column(db.String(255), nullable=True)

    occurred_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)

    order = db.relationship("Order", backref=db.backref("events", lazy=True, order_by="OrderEvent.id"))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "order_id": self.order_id,
            "payment_id": self.payment_id,
            "event_type": self.event_type,
            "from_status": self.from_status,
            "to_status": self.to_status,
            "actor_user_id": self.actor_user_id,
            "note": self.note,
            "occurred_at": to_utc_z(self.occurred_at),
        }
