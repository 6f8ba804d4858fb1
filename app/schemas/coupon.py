"""Pydantic schemas for coupons and discount evaluation."""

from datetime import UTC, datetime
from decimal import Decimal
from typing import Self
from uuid import UUID

from pydantic import Field, field_validator, model_validator

from app.models.coupon import CouponScope, CouponStatus, DiscountType
from app.schemas.common import BaseSchema


def _normalize_code(code: str) -> str:
    return code.strip().upper()


def _as_utc(value: datetime | None) -> datetime | None:
    # Naive datetimes from clients are taken to be UTC
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


class BuyXGetY(BaseSchema):
    """Buy ``buy_quantity`` eligible units, get ``get_quantity`` free."""

    buy_quantity: int = Field(ge=1)
    get_quantity: int = Field(ge=1)
    product_id: str | None = None
    category_id: str | None = None


class LineItem(BaseSchema):
    """A priced cart line as seen by the discount calculation."""

    product_id: str
    category_id: str | None = None
    quantity: int = Field(ge=1)
    price: Decimal = Field(ge=0)
    on_sale: bool = False


# --- Admin CRUD ---


class CouponBase(BaseSchema):
    """Fields shared by coupon create/response payloads."""

    code: str = Field(min_length=1, max_length=64)
    description: str | None = None
    discount_type: DiscountType
    discount_value: Decimal = Field(ge=0)
    min_order_value: Decimal = Field(default=Decimal("0"), ge=0)
    max_discount_amount: Decimal | None = Field(default=None, ge=0)
    start_date: datetime
    end_date: datetime | None = None
    status: CouponStatus = CouponStatus.ACTIVE
    usage_limit: int = Field(default=0, ge=0)
    individual_use_only: bool = False
    exclude_sale_items: bool = False
    scope: CouponScope = CouponScope.CART
    product_ids: list[str] = Field(default_factory=list)
    category_ids: list[str] = Field(default_factory=list)
    customer_ids: list[str] = Field(default_factory=list)
    buy_x_get_y: BuyXGetY | None = None


class CouponCreate(CouponBase):
    """Admin request to create a coupon."""

    @field_validator("code")
    @classmethod
    def normalize_code(cls, code: str) -> str:
        return _normalize_code(code)

    @field_validator("start_date", "end_date")
    @classmethod
    def normalize_dates(cls, value: datetime | None) -> datetime | None:
        return _as_utc(value)

    @model_validator(mode="after")
    def check_rules(self) -> Self:
        if self.end_date is not None and self.end_date < self.start_date:
            raise ValueError("end_date must not be before start_date")
        if self.discount_type == DiscountType.PERCENTAGE and self.discount_value > 100:
            raise ValueError("percentage discount_value must be between 0 and 100")
        if self.discount_type == DiscountType.BUY_X_GET_Y and self.buy_x_get_y is None:
            raise ValueError("buy_x_get_y coupons need a buy_x_get_y rule")
        return self


class CouponUpdate(BaseSchema):
    """Admin partial update. Only the provided fields are written."""

    code: str | None = Field(default=None, min_length=1, max_length=64)
    description: str | None = None
    discount_type: DiscountType | None = None
    discount_value: Decimal | None = Field(default=None, ge=0)
    min_order_value: Decimal | None = Field(default=None, ge=0)
    max_discount_amount: Decimal | None = Field(default=None, ge=0)
    start_date: datetime | None = None
    end_date: datetime | None = None
    status: CouponStatus | None = None
    usage_limit: int | None = Field(default=None, ge=0)
    individual_use_only: bool | None = None
    exclude_sale_items: bool | None = None
    scope: CouponScope | None = None
    product_ids: list[str] | None = None
    category_ids: list[str] | None = None
    customer_ids: list[str] | None = None
    buy_x_get_y: BuyXGetY | None = None

    @field_validator("code")
    @classmethod
    def normalize_code(cls, code: str | None) -> str | None:
        return _normalize_code(code) if code is not None else None

    @field_validator("start_date", "end_date")
    @classmethod
    def normalize_dates(cls, value: datetime | None) -> datetime | None:
        return _as_utc(value)


class CouponResponse(CouponBase):
    """Full coupon as returned to admins."""

    id: UUID
    usage_count: int
    created_at: datetime
    updated_at: datetime


class CouponPublicResponse(BaseSchema):
    """Coupon details safe to show shoppers (no id sets)."""

    id: UUID
    code: str
    description: str | None
    discount_type: DiscountType
    discount_value: Decimal
    min_order_value: Decimal
    max_discount_amount: Decimal | None
    end_date: datetime | None
    scope: CouponScope


# --- Shopper validation / application ---


class CouponValidateRequest(BaseSchema):
    """Check a code, optionally against a cart."""

    code: str = Field(min_length=1)
    subtotal: Decimal | None = Field(default=None, ge=0)
    items: list[LineItem] = Field(default_factory=list)


class CouponValidateResponse(BaseSchema):
    """Result of a successful coupon validation."""

    is_valid: bool = True
    coupon: CouponPublicResponse
    discount_amount: Decimal
    subtotal: Decimal


class CouponApplyRequest(BaseSchema):
    """Apply a code to a cart subtotal."""

    code: str = Field(min_length=1)
    subtotal: Decimal = Field(ge=0)
    items: list[LineItem] = Field(default_factory=list)


class CouponApplyResponse(BaseSchema):
    """Discount applied to a cart."""

    success: bool = True
    message: str = "Coupon applied successfully"
    coupon: CouponPublicResponse
    discount_amount: Decimal
    subtotal_before_discount: Decimal
    subtotal_after_discount: Decimal


# --- Stats ---


class CouponUsageCount(BaseSchema):
    """A coupon and how many times it was used."""

    id: UUID
    code: str
    usage_count: int


class CouponDiscountTotal(BaseSchema):
    """A coupon and the total discount it has granted."""

    coupon_id: UUID | None
    coupon_code: str
    total_discount_amount: Decimal


class CouponStats(BaseSchema):
    """Admin coupon statistics."""

    total_coupons: int
    active_coupons: int
    expired_coupons: int
    total_usage: int
    total_discount_amount: Decimal
    most_used_coupons: list[CouponUsageCount]
    highest_value_coupons: list[CouponDiscountTotal]
