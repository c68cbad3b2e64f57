from __future__ import annotations

from decimal import Decimal, ROUND_HALF_UP
from typing import Iterable

MONEY_Q = Decimal("0.01")
KG_Q = Decimal("0.01")

# A sales line's stated total may differ from quantity x unit price by this much
# (receipts are usually rounded to the centavo).
LINE_TOTAL_TOLERANCE = Decimal("0.01")


def to_decimal(v) -> Decimal:
    if v is None:
        return Decimal("0")
    if isinstance(v, Decimal):
        return v
    return Decimal(str(v))


def q_money(v) -> Decimal:
    return to_decimal(v).quantize(MONEY_Q, rounding=ROUND_HALF_UP)


def q_kg(v) -> Decimal:
    return to_decimal(v).quantize(KG_Q, rounding=ROUND_HALF_UP)


def line_total(quantity, unit_price) -> Decimal:
    return q_money(to_decimal(quantity) * to_decimal(unit_price))


def line_total_matches(quantity, unit_price, total_amount, tolerance: Decimal = LINE_TOTAL_TOLERANCE) -> bool:
    expected = to_decimal(quantity) * to_decimal(unit_price)
    return abs(to_decimal(total_amount) - expected) <= tolerance


def exact_sum(values: Iterable) -> Decimal:
    # Decimal addition is exact, so the result does not depend on input order.
    total = Decimal("0")
    for v in values:
        total += to_decimal(v)
    return total
