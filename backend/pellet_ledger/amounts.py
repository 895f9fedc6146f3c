from __future__ import annotations

from decimal import Decimal, ROUND_HALF_UP, InvalidOperation


"""
Money and quantity rounding rules (authoritative)

- Money is stored and passed around as integer cents.
- Anything that can produce fractions of a cent (quantity x unit price,
  tax) rounds half-up to the nearest cent.
- Ledger quantities keep one decimal place (kilograms out of tons).
"""

CENT = Decimal("1")
QUANTITY_STEP = Decimal("0.1")


def _to_decimal(value) -> Decimal:
    if isinstance(value, Decimal):
        return value
    if isinstance(value, bool):
        raise ValueError("boolean is not a number")
    try:
        # str() keeps floats like 0.1 from dragging binary noise along
        return Decimal(str(value))
    except (InvalidOperation, TypeError) as exc:
        raise ValueError(f"not a number: {value!r}") from exc


def round_cents(value) -> int:
    """Round a (possibly fractional) cent amount half-up to whole cents."""
    return int(_to_decimal(value).quantize(CENT, rounding=ROUND_HALF_UP))


def to_cents(amount) -> int:
    """Convert a currency amount (e.g. 2310.005) to integer cents."""
    return round_cents(_to_decimal(amount) * 100)


def cents_to_amount(cents: int | None) -> Decimal | None:
    if cents is None:
        return None
    return (Decimal(cents) / 100).quantize(Decimal("0.01"))


def round_quantity(value) -> float:
    """Round a ledger quantity half-up to one decimal place."""
    return float(_to_decimal(value).quantize(QUANTITY_STEP, rounding=ROUND_HALF_UP))


def line_total_cents(quantity, unit_price_cents: int) -> int:
    """quantity x unit price, exact up to the final half-up cent rounding."""
    return round_cents(_to_decimal(quantity) * Decimal(unit_price_cents))


def tax_cents(subtotal_cents: int, rate) -> int:
    """Tax on a subtotal, e.g. tax_cents(1_100_000, "0.21") == 231_000."""
    return round_cents(Decimal(subtotal_cents) * _to_decimal(rate))
