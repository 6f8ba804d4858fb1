"""Pydantic schemas for abandoned carts."""

from decimal import Decimal

from pydantic import EmailStr, Field, field_validator

from app.schemas.common import BaseSchema


class CartItem(BaseSchema):
    """A cart line snapshot as stored on the abandoned cart."""

    product_id: str
    product_name: str = Field(min_length=1)
    quantity: int = Field(ge=1)
    price: Decimal = Field(ge=0)
    image: str | None = None
    variant_id: str | None = None
    variant_name: str | None = None
    size: str | None = None
    color: str | None = None
    category_id: str | None = None


class AbandonedCartCreate(BaseSchema):
    """Cart-save payload sent by the storefront when a shopper leaves."""

    email: EmailStr
    cart_items: list[CartItem] = Field(min_length=1)
    subtotal: Decimal = Field(ge=0)
    coupon_code: str | None = None
    discount_amount: Decimal = Field(default=Decimal("0"), ge=0)
    total: Decimal = Field(ge=0)
    metadata: dict[str, str] = Field(default_factory=dict)

    @field_validator("email")
    @classmethod
    def normalize_email(cls, email: str) -> str:
        return email.strip().lower()


class AbandonedCartSaveResponse(BaseSchema):
    """Response for a saved cart."""

    message: str = "Abandoned cart saved successfully"
    recovery_url: str


class RecoveredCartResponse(BaseSchema):
    """Items and coupon the storefront needs to rebuild a live cart."""

    message: str = "Cart recovered successfully"
    cart_items: list[CartItem]
    coupon_code: str | None


class ProcessEmailsResponse(BaseSchema):
    """Outcome of one reminder sweep."""

    success: bool = True
    message: str = "Abandoned cart emails processed successfully"
    processed: int
    sent: int
    failed: int


# --- Stats ---


class EmailStats(BaseSchema):
    """Aggregate reminder engagement."""

    sent: int
    opened: int
    clicked: int
    open_rate: float
    click_rate: float
    conversion_rate: float


class TopAbandonedProduct(BaseSchema):
    """A product and how many carts it was abandoned in."""

    product_id: str
    product_name: str
    count: int


class HourlyAbandonment(BaseSchema):
    """Abandoned carts created in a given hour of day (UTC)."""

    hour: int
    count: int


class AbandonedCartStats(BaseSchema):
    """Admin abandoned-cart statistics."""

    total_carts: int
    active_carts: int
    recovered_carts: int
    expired_carts: int
    converted_carts: int
    total_value: Decimal
    recovered_value: Decimal
    average_cart_value: Decimal
    recovery_rate: float
    email_stats: EmailStats
    top_abandoned_products: list[TopAbandonedProduct]
    abandonment_by_time: list[HourlyAbandonment]
