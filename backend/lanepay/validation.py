from __future__ import annotations

from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Any


# Maximum order amount: $99,999,999.99 (Numeric(10, 2))
MAX_AMOUNT = Decimal("99999999.99")
CENT = Decimal("0.01")


class ValidationError(ValueError):
    """400-level input problem, rejected before any external call."""


class ConflictError(ValueError):
    """409-level business rule conflict (e.g., duplicate invoice)."""


class NotFoundError(LookupError):
    """404-level missing order, payment or provider."""


def parse_amount(value: Any, field: str = "amount") -> Decimal:
    """
    Coerce a currency amount to a 2-place Decimal.

    - Accepts Decimal, int, or numeric strings; floats go through str() so
      12.1 becomes Decimal("12.10") rather than its binary expansion.
    - Rejects booleans, NaN/Infinity, scientific notation and values <= 0.
    """
    if value is None or isinstance(value, bool):
        raise ValidationError(f"{field} is required and must be greater than 0")

    if isinstance(value, float):
        value = str(value)

    if isinstance(value, str):
        stripped = value.strip()
        if not stripped:
            raise ValidationError(f"{field} is required and must be greater than 0")
        if "e" in stripped.lower():
            raise ValidationError(f"{field} must be a plain decimal (scientific notation not allowed)")
        value = stripped

    try:
        amount = Decimal(value)
    except (InvalidOperation, TypeError):
        raise ValidationError(f"{field} must be a number")

    if not amount.is_finite():
        raise ValidationError(f"{field} must be a finite number")

    amount = amount.quantize(CENT, rounding=ROUND_HALF_UP)
    if amount <= 0:
        raise ValidationError(f"{field} must be greater than 0")
    if amount > MAX_AMOUNT:
        raise ValidationError(f"{field} exceeds maximum of {MAX_AMOUNT}")
    return amount


def amounts_match(left: Decimal, right: Decimal, tolerance: Decimal = CENT) -> bool:
    """True when two amounts differ by no more than the rounding tolerance."""
    return abs(Decimal(left) - Decimal(right)) <= tolerance


def require_text(value: Any, field: str, max_length: int = 255) -> str:
    if value is None or not str(value).strip():
        raise ValidationError(f"{field} is required")
    text = str(value).strip()
    if len(text) > max_length:
        raise ValidationError(f"{field} must be at most {max_length} characters")
    return text


def optional_int(value: Any, field: str) -> int | None:
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        raise ValidationError(f"{field} must be an integer")
    if isinstance(value, int):
        return value
    if isinstance(value, str) and value.strip().lstrip("-").isdigit():
        return int(value.strip())
    raise ValidationError(f"{field} must be an integer")
