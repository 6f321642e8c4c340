"""
Money helpers — decimals at the boundary, integer cents inside.

Amounts arrive and leave the API as decimals with exactly two fractional
digits ("100.00"). Storage and all balance arithmetic use integer cents, so
comparisons are exact and no floating point value ever touches a balance.
"""

from decimal import Decimal, InvalidOperation

CENT = Decimal("0.01")


def to_cents(amount: Decimal | str | int) -> int:
    """
    Convert a decimal amount to integer cents.

    Raises:
        ValueError: If the amount is not a finite number or carries more than
            two fractional digits.
    """
    try:
        value = Decimal(str(amount))
    except InvalidOperation as exc:
        raise ValueError(f"Not a decimal amount: {amount!r}") from exc
    if not value.is_finite():
        raise ValueError(f"Not a finite amount: {amount!r}")
    if value != value.quantize(CENT):
        raise ValueError(f"More than two fractional digits: {amount!r}")
    return int(value * 100)


def from_cents(cents: int) -> Decimal:
    """Convert integer cents to a Decimal with exactly two fractional digits."""
    return (Decimal(cents) / 100).quantize(CENT)


def format_cents(cents: int) -> str:
    """Render cents as a plain "1234.50" string."""
    return str(from_cents(cents))
