from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal, ROUND_DOWN, ROUND_HALF_EVEN, ROUND_HALF_UP, ROUND_UP
from typing import Iterable, Literal


MONEY_QUANT = Decimal("0.01")
ZERO = Decimal("0.00")

MoneyRounding = Literal["half_up", "half_even", "up", "down"]


_ROUNDING_MAP: dict[str, str] = {
    "half_up": ROUND_HALF_UP,
    "half_even": ROUND_HALF_EVEN,
    "up": ROUND_UP,
    "down": ROUND_DOWN,
}


def quantize_money(value: Decimal, *, rounding: MoneyRounding = "half_up") -> Decimal:
    mode = _ROUNDING_MAP.get(str(rounding), ROUND_HALF_UP)
    return Decimal(value).quantize(MONEY_QUANT, rounding=mode)


def line_subtotal(unit_price: Decimal, quantity: int) -> Decimal:
    return quantize_money(Decimal(str(unit_price)) * int(quantity))


@dataclass(frozen=True)
class OrderTotals:
    subtotal: Decimal
    discount: Decimal
    total: Decimal


def compute_order_totals(line_subtotals: Iterable[Decimal], discount: Decimal = ZERO) -> OrderTotals:
    """Sum line subtotals and apply a discount; the total never goes below zero."""
    subtotal = quantize_money(sum((Decimal(v) for v in line_subtotals), start=ZERO))
    discount_q = quantize_money(discount) if discount > 0 else ZERO
    discount_q = min(discount_q, subtotal)
    return OrderTotals(subtotal=subtotal, discount=discount_q, total=quantize_money(subtotal - discount_q))
