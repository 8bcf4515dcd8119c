"""Pricing service - subtotal, discount and total of a sale."""
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Any, Dict, List

CENT = Decimal('0.01')
MIN_DISCOUNT_RATE = Decimal('0')
MAX_DISCOUNT_RATE = Decimal('100')


def _money(value: Decimal) -> Decimal:
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


def normalize_discount_rate(raw) -> Decimal:
    """
    Coerce a discount percentage into [0, 100].

    Missing, non-numeric, NaN or infinite input counts as 0; out-of-range
    values are clamped rather than rejected.
    """
    if raw is None or isinstance(raw, bool):
        return MIN_DISCOUNT_RATE
    try:
        rate = Decimal(str(raw).strip())
    except (InvalidOperation, ValueError):
        return MIN_DISCOUNT_RATE
    if not rate.is_finite():
        return MIN_DISCOUNT_RATE
    return min(max(rate, MIN_DISCOUNT_RATE), MAX_DISCOUNT_RATE)


def compute_totals(items: List[Dict[str, Any]], discount_rate=None) -> Dict[str, Any]:
    """
    Calculate totals for a list of line items.

    Each item needs ``unit_price`` and ``quantity``. The discount rate is
    applied as given, whatever the customer type.

    Returns:
        dict with subtotal, discount_rate (clamped), discount_amount, total
        and the per-line totals in input order.
    """
    lines = []
    subtotal = Decimal('0')

    for item in items:
        unit_price = Decimal(str(item['unit_price']))
        quantity = int(item['quantity'])
        line_total = _money(unit_price * quantity)
        lines.append({
            'unit_price': unit_price,
            'quantity': quantity,
            'line_total': line_total
        })
        subtotal += line_total

    rate = normalize_discount_rate(discount_rate)
    subtotal = _money(subtotal)
    discount_amount = _money(subtotal * rate / Decimal('100'))

    return {
        'subtotal': subtotal,
        'discount_rate': rate,
        'discount_amount': discount_amount,
        'total': _money(subtotal - discount_amount),
        'lines': lines
    }
