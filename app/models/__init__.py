"""SQLAlchemy models."""

from app.models.abandoned_cart import TERMINAL_CART_STATUSES, AbandonedCart, CartStatus
from app.models.base import Base
from app.models.coupon import Coupon, CouponScope, CouponStatus, DiscountType
from app.models.coupon_usage import CouponUsage
from app.models.recovery_email import EmailStatus, EmailType, RecoveryEmail

__all__ = [
    # Base
    "Base",
    # Coupons
    "Coupon",
    "CouponScope",
    "CouponStatus",
    "CouponUsage",
    "DiscountType",
    # Cart Recovery
    "AbandonedCart",
    "CartStatus",
    "TERMINAL_CART_STATUSES",
    "EmailStatus",
    "EmailType",
    "RecoveryEmail",
]
