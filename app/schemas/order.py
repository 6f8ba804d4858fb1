"""Pydantic schemas for order-completion notifications."""

from decimal import Decimal

from pydantic import EmailStr, Field, field_validator

from app.schemas.common import BaseSchema


class OrderCompletedRequest(BaseSchema):
    """Sent by the checkout service after an order is persisted."""

    order_id: str = Field(min_length=1)
    email: EmailStr | None = None
    user_id: str | None = None
    coupon_code: str | None = None
    discount_amount: Decimal = Field(default=Decimal("0"), ge=0)

    @field_validator("email")
    @classmethod
    def normalize_email(cls, email: str | None) -> str | None:
        return email.strip().lower() if email else None


class OrderCompletedResponse(BaseSchema):
    """What the order-completion hook did."""

    status: str = "completed"
    order_id: str
    coupon_usage_recorded: bool
    carts_converted: int
