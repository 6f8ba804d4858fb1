"""Coupon model: named discount rules with validity window and usage limits."""

import enum
from datetime import datetime
from decimal import Decimal
from typing import Any

from sqlalchemy import Boolean, Enum, Index, Integer, Numeric, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from app.models.base import Base, JSONType, UTCDateTime, utcnow


class DiscountType(str, enum.Enum):
    """How a coupon turns a subtotal into a discount."""

    PERCENTAGE = "percentage"
    FIXED = "fixed"
    FREE_SHIPPING = "free_shipping"
    BUY_X_GET_Y = "buy_x_get_y"


class CouponStatus(str, enum.Enum):
    """Administrative status of a coupon. Never changed implicitly on read."""

    ACTIVE = "active"
    EXPIRED = "expired"
    SCHEDULED = "scheduled"
    USED = "used"
    DISABLED = "disabled"


class CouponScope(str, enum.Enum):
    """Entity type a coupon's eligibility is evaluated against."""

    CART = "cart"
    PRODUCT = "product"
    CATEGORY = "category"
    CUSTOMER = "customer"


class Coupon(Base):
    """A discount rule redeemable by code.

    ``usage_limit`` of 0 means unlimited. ``usage_count`` only ever grows and
    is incremented in SQL by the order-completion path, never read-modify-write.
    """

    __tablename__ = "coupons"
    __table_args__ = (
        Index("ix_coupons_status", "status"),
        Index("ix_coupons_window", "start_date", "end_date"),
    )

    code: Mapped[str] = mapped_column(
        String(64),
        nullable=False,
        unique=True,
        index=True,
    )
    description: Mapped[str | None] = mapped_column(
        Text,
        nullable=True,
    )

    # Discount rule
    discount_type: Mapped[DiscountType] = mapped_column(
        Enum(
            DiscountType,
            name="discount_type",
            values_callable=lambda x: [e.value for e in x],
        ),
        nullable=False,
    )
    discount_value: Mapped[Decimal] = mapped_column(
        Numeric(12, 2),
        nullable=False,
    )
    min_order_value: Mapped[Decimal] = mapped_column(
        Numeric(12, 2),
        nullable=False,
        default=Decimal("0"),
    )
    max_discount_amount: Mapped[Decimal | None] = mapped_column(
        Numeric(12, 2),
        nullable=True,
    )

    # Validity window
    start_date: Mapped[datetime] = mapped_column(
        UTCDateTime(),
        nullable=False,
        default=utcnow,
    )
    end_date: Mapped[datetime | None] = mapped_column(
        UTCDateTime(),
        nullable=True,
    )
    status: Mapped[CouponStatus] = mapped_column(
        Enum(
            CouponStatus,
            name="coupon_status",
            values_callable=lambda x: [e.value for e in x],
        ),
        default=CouponStatus.ACTIVE,
        nullable=False,
    )

    # Usage
    usage_limit: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=0,
    )
    usage_count: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=0,
    )
    individual_use_only: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=False,
    )
    exclude_sale_items: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=False,
    )

    # Applicability
    scope: Mapped[CouponScope] = mapped_column(
        Enum(
            CouponScope,
            name="coupon_scope",
            values_callable=lambda x: [e.value for e in x],
        ),
        default=CouponScope.CART,
        nullable=False,
    )
    product_ids: Mapped[list[str]] = mapped_column(
        JSONType,
        nullable=False,
        default=list,
    )
    category_ids: Mapped[list[str]] = mapped_column(
        JSONType,
        nullable=False,
        default=list,
    )
    customer_ids: Mapped[list[str]] = mapped_column(
        JSONType,
        nullable=False,
        default=list,
    )

    # {"buy_quantity": int, "get_quantity": int, "product_id": str?, "category_id": str?}
    buy_x_get_y: Mapped[dict[str, Any] | None] = mapped_column(
        JSONType,
        nullable=True,
    )

    def __repr__(self) -> str:
        return f"<Coupon {self.code} ({self.status.value})>"
