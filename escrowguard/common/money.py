"""Decimal helpers for escrow amounts and splits."""

from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal, InvalidOperation

CENT = Decimal("0.01")


def to_money(value: Decimal | int | float | str) -> Decimal:
    try:
        return Decimal(str(value)).quantize(CENT, rounding=ROUND_HALF_UP)
    except (InvalidOperation, ValueError) as e:
        raise ValueError(f"Invalid amount: {value!r}") from e


def to_cents(value: Decimal) -> int:
    return int(to_money(value) * 100)


def split_by_percent(total: Decimal, customer_percent: int | float) -> tuple[Decimal, Decimal]:
    """Return (customer, vendor) shares; the vendor takes the rounding remainder."""
    total = to_money(total)
    customer = to_money(total * Decimal(str(customer_percent)) / Decimal(100))
    return customer, total - customer
