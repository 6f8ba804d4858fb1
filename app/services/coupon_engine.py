"""Coupon usability and discount calculation.

Pure functions of coupon fields, cart contents, and the clock. Nothing here
touches the database; ``CouponService`` wraps these with persistence.
"""

from collections.abc import Iterable, Sequence
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Protocol

from app.core.config import settings
from app.models.base import utcnow
from app.models.coupon import Coupon, CouponScope, CouponStatus, DiscountType

CENT = Decimal("0.01")
ZERO = Decimal("0")
LEGACY_BXGY_RATE = Decimal("0.10")


class PricedItem(Protocol):
    """Anything that looks like a cart line."""

    product_id: str
    category_id: str | None
    quantity: int
    price: Decimal


def quantize_money(value: Decimal) -> Decimal:
    """Round to cents, half up."""
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


def is_usable(coupon: Coupon, now: datetime) -> bool:
    """True iff the coupon is active, inside its window, and under its limit."""
    return unusable_reason(coupon, now) is None


def unusable_reason(coupon: Coupon, now: datetime) -> str | None:
    """Shopper-facing reason the coupon cannot be used right now, or None."""
    if coupon.status != CouponStatus.ACTIVE:
        return "This coupon is no longer active"
    if coupon.start_date > now:
        return f"This coupon is not valid until {coupon.start_date:%Y-%m-%d}"
    if coupon.end_date is not None and coupon.end_date < now:
        return f"This coupon expired on {coupon.end_date:%Y-%m-%d}"
    usage_limit = coupon.usage_limit or 0
    if usage_limit > 0 and (coupon.usage_count or 0) >= usage_limit:
        return "This coupon has reached its usage limit"
    return None


def below_minimum(coupon: Coupon, subtotal: Decimal) -> bool:
    """True when the coupon has a minimum order value the subtotal misses."""
    minimum = coupon.min_order_value or ZERO
    return minimum > 0 and subtotal < minimum


def calculate_discount(
    coupon: Coupon,
    subtotal: Decimal,
    line_items: Sequence[PricedItem] = (),
    now: datetime | None = None,
    *,
    flat_bxgy: bool | None = None,
) -> Decimal:
    """Merchandise discount for ``subtotal`` under ``coupon``.

    Returns 0 for coupons unusable at ``now`` (default: the current time) and
    for subtotals under the minimum order value. The result is clamped to
    ``max_discount_amount`` (when positive) and to ``[0, subtotal]``, then
    rounded half up to cents, so a percentage discount is
    ``subtotal * value / 100`` only up to that rounding (10.10 at 15% gives
    1.52). ``free_shipping`` always yields 0 here; the shipping line is waived
    elsewhere.
    """
    if not is_usable(coupon, now or utcnow()):
        return ZERO
    subtotal = Decimal(subtotal)
    if below_minimum(coupon, subtotal):
        return ZERO

    base = _discount_base(coupon, subtotal, line_items)
    value = Decimal(coupon.discount_value or ZERO)

    match coupon.discount_type:
        case DiscountType.PERCENTAGE:
            discount = base * value / 100
        case DiscountType.FIXED:
            discount = min(value, base)
        case DiscountType.FREE_SHIPPING:
            discount = ZERO
        case DiscountType.BUY_X_GET_Y:
            use_flat = settings.coupon_bxgy_flat_placeholder if flat_bxgy is None else flat_bxgy
            if use_flat:
                discount = subtotal * LEGACY_BXGY_RATE if coupon.buy_x_get_y else ZERO
            else:
                discount = _buy_x_get_y_discount(coupon.buy_x_get_y, line_items)
        case _:
            discount = ZERO

    # 0 means uncapped
    if coupon.max_discount_amount:
        discount = min(discount, Decimal(coupon.max_discount_amount))

    discount = max(ZERO, min(discount, subtotal))
    return quantize_money(discount)


def _scope_ids(coupon: Coupon) -> set[str] | None:
    if coupon.scope == CouponScope.PRODUCT and coupon.product_ids:
        return {str(pid) for pid in coupon.product_ids}
    if coupon.scope == CouponScope.CATEGORY and coupon.category_ids:
        return {str(cid) for cid in coupon.category_ids}
    return None


def _in_scope(coupon: Coupon, item: PricedItem, scope_ids: set[str] | None) -> bool:
    if coupon.exclude_sale_items and getattr(item, "on_sale", False):
        return False
    if scope_ids is None:
        return True
    if coupon.scope == CouponScope.PRODUCT:
        return str(item.product_id) in scope_ids
    return item.category_id is not None and str(item.category_id) in scope_ids


def _discount_base(coupon: Coupon, subtotal: Decimal, items: Sequence[PricedItem]) -> Decimal:
    """Subtotal the discount applies to.

    Product/category-scoped coupons only discount matching lines; coupons
    excluding sale items skip lines marked on sale. Without either
    restriction the whole subtotal is the base.
    """
    scope_ids = _scope_ids(coupon)
    excludes_sale = coupon.exclude_sale_items and any(getattr(i, "on_sale", False) for i in items)
    if scope_ids is None and not excludes_sale:
        return subtotal

    eligible = sum(
        (Decimal(item.price) * item.quantity for item in items if _in_scope(coupon, item, scope_ids)),
        start=ZERO,
    )
    return min(eligible, subtotal)


def _buy_x_get_y_discount(rule: dict[str, Any] | None, items: Iterable[PricedItem]) -> Decimal:
    """Value of the free units under a buy-X-get-Y rule.

    Every complete group of ``buy_quantity + get_quantity`` eligible units
    earns ``get_quantity`` free units, and the free units are the cheapest
    eligible ones.
    """
    if not rule:
        return ZERO
    buy = int(rule.get("buy_quantity") or 0)
    get = int(rule.get("get_quantity") or 0)
    if buy < 1 or get < 1:
        return ZERO

    product_id = rule.get("product_id")
    category_id = rule.get("category_id")

    def eligible(item: PricedItem) -> bool:
        if product_id and str(item.product_id) != str(product_id):
            return False
        if category_id and str(item.category_id) != str(category_id):
            return False
        return True

    lines = sorted(
        ((Decimal(item.price), item.quantity) for item in items if eligible(item)),
        key=lambda line: line[0],
    )
    total_units = sum(quantity for _, quantity in lines)
    free_units = (total_units // (buy + get)) * get

    discount = ZERO
    for price, quantity in lines:
        if free_units <= 0:
            break
        taken = min(quantity, free_units)
        discount += price * taken
        free_units -= taken
    return discount
