from decimal import Decimal, ROUND_HALF_UP
from typing import Iterable

from storefront.schemas.checkout import CartLineIn
from storefront.schemas.orders import DraftLine

CENT = Decimal("0.01")
ZERO = Decimal("0")


def dec(x) -> Decimal:
    # go through str to avoid float binary artifacts
    if isinstance(x, Decimal):
        return x
    return Decimal(str(x or 0))


def money(x) -> Decimal:
    return dec(x).quantize(CENT, rounding=ROUND_HALF_UP)


def to_float(x) -> float:
    return float(money(x))


def line_unit_price(line: CartLineIn) -> Decimal:
    """Base price plus every selected option's delta."""
    return money(dec(line.unit_price) + sum((dec(o.price_delta) for o in line.options), ZERO))


def freeze_lines(lines: Iterable[CartLineIn]) -> list[DraftLine]:
    out: list[DraftLine] = []
    for l in lines:
        unit = line_unit_price(l)
        out.append(DraftLine(
            product_id=l.product_id,
            product_name=l.product_name,
            quantity=l.quantity,
            unit_price=unit,
            total_price=money(unit * l.quantity),
            options=list(l.options),
            notes=l.notes or None,
            requires_preparation=l.requires_preparation,
            is_composite=l.is_composite,
            component_product_ids=list(l.component_product_ids),
        ))
    return out


def cart_subtotal(lines: Iterable[CartLineIn]) -> Decimal:
    return money(sum((line_unit_price(l) * l.quantity for l in lines), ZERO))


def compute_totals(subtotal, discount_amount, delivery_fee) -> dict:
    subtotal = money(subtotal)
    discount = money(discount_amount)
    fee = money(delivery_fee)
    return {
        "subtotal": subtotal,
        "discount_amount": discount,
        "delivery_fee": fee,
        "total": money(subtotal - discount + fee),
    }
