from __future__ import annotations

from ..extensions import db
from lanepay.time_utils import to_utc_z, utcnow


class InvoiceSequence(db.Model):
    """
    Atomic per-lane, per-day invoice sequences.

    WHY: Prevent two registers from generating the same invoice number
    when orders are created concurrently.
    """
    __tablename__ = "invoice_sequences"
    __table_args__ = (
        db.UniqueConstraint("lane_key", "business_date", name="uq_invoice_sequences_lane_date"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    # Normalized lane number ("01" for "LANE-01")
    lane_key = db.Column(db.String(16), nullable=False)
    # YYYYMMDD
    business_date = db.Column(db.String(8), nullable=False)
    next_number = db.Column(db.Integer, nullable=False, default=1)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "lane_key": self.lane_key,
            "business_date": self.business_date,
            "next_number": self.next_number,
            "updated_at": to_utc_z(self.updated_at),
        }
