"""CouponUsage model: append-only ledger of coupon redemptions."""

import uuid
from datetime import datetime
from decimal import Decimal
from typing import TYPE_CHECKING

from sqlalchemy import ForeignKey, Numeric, String, Uuid
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.models.base import Base, UTCDateTime, utcnow

if TYPE_CHECKING:
    from app.models.coupon import Coupon


class CouponUsage(Base):
    """One row per order that successfully applied a coupon.

    ``coupon_code`` is a snapshot so the ledger stays readable after the
    coupon is renamed or deleted.
    """

    __tablename__ = "coupon_usages"

    coupon_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("coupons.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )
    coupon_code: Mapped[str] = mapped_column(
        String(64),
        nullable=False,
    )
    user_id: Mapped[str | None] = mapped_column(
        String(255),
        nullable=True,
        index=True,
    )
    order_id: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
        index=True,
    )
    discount_amount: Mapped[Decimal] = mapped_column(
        Numeric(12, 2),
        nullable=False,
    )
    used_at: Mapped[datetime] = mapped_column(
        UTCDateTime(),
        nullable=False,
        default=utcnow,
    )

    coupon: Mapped["Coupon | None"] = relationship("Coupon")

    def __repr__(self) -> str:
        return f"<CouponUsage {self.coupon_code} order={self.order_id}>"
