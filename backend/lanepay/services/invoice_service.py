# Overview: Invoice number allocation for orders created without one.

from __future__ import annotations

import re

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError

from ..extensions import db
from ..models import InvoiceSequence
from ..validation import ValidationError
from lanepay.time_utils import utcnow


def lane_key(lane_id: str) -> str:
    """
    Normalize a lane identifier to its two-digit number.

    "LANE-01" -> "01", "lane 7" -> "07". Lanes without digits are rejected
    because the invoice format is numeric.
    """
    digits = re.sub(r"[^0-9]", "", lane_id or "")
    if not digits:
        raise ValidationError(f"lane_id {lane_id!r} has no lane number to build an invoice number from")
    return digits.zfill(2)


def next_invoice_number(lane_id: str, *, pad: int = 6) -> str:
    """
    Atomically allocate the next invoice number for a lane and business day.

    Format: LANE{nn}-{YYYYMMDD}-{sequence}, e.g. LANE01-20240115-000123.
    Uses an UPDATE ... SET next_number = next_number + 1 so two registers
    never receive the same sequence value. Does not commit.
    """
    key = lane_key(lane_id)
    business_date = utcnow().strftime("%Y%m%d")

    stmt = (
        update(InvoiceSequence)
        .where(
            InvoiceSequence.lane_key == key,
            InvoiceSequence.business_date == business_date,
        )
        .values(next_number=InvoiceSequence.next_number + 1)
    )

    result = db.session.execute(stmt)
    if result.rowcount:
        db.session.flush()
        current = (
            db.session.query(InvoiceSequence.next_number)
            .filter_by(lane_key=key, business_date=business_date)
            .scalar()
        )
        next_num = current - 1
    else:
        seq = InvoiceSequence(lane_key=key, business_date=business_date, next_number=2)
        try:
            with db.session.begin_nested():
                db.session.add(seq)
            next_num = 1
        except IntegrityError:
            # Another writer created today's row first
            result = db.session.execute(stmt)
            if not result.rowcount:
                raise
            db.session.flush()
            current = (
                db.session.query(InvoiceSequence.next_number)
                .filter_by(lane_key=key, business_date=business_date)
                .scalar()
            )
            next_num = current - 1

    return f"LANE{key}-{business_date}-{str(next_num).zfill(pad)}"
