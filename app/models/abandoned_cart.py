"""AbandonedCart model for tracking carts left behind at checkout."""

import enum
from datetime import datetime
from decimal import Decimal
from typing import TYPE_CHECKING, Any

from sqlalchemy import Enum, Index, Integer, Numeric, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.models.base import Base, JSONType, UTCDateTime

if TYPE_CHECKING:
    from app.models.recovery_email import RecoveryEmail


class CartStatus(str, enum.Enum):
    """Status of an abandoned cart. Only ACTIVE carts receive reminders."""

    ACTIVE = "active"
    RECOVERED = "recovered"
    EXPIRED = "expired"
    CONVERTED = "converted"


TERMINAL_CART_STATUSES = frozenset(
    {CartStatus.RECOVERED, CartStatus.EXPIRED, CartStatus.CONVERTED}
)


class AbandonedCart(Base):
    """Snapshot of a non-completed cart tied to an email address.

    Created/updated by the storefront's cart-save call. Drives the reminder
    sequence in ``recovery_emails`` until the cart is recovered through its
    token, converted by checkout, or expired by the sweep.
    """

    __tablename__ = "abandoned_carts"
    __table_args__ = (
        Index("ix_abandoned_carts_email_status", "email", "status"),
        Index("ix_abandoned_carts_expires_at", "expires_at"),
    )

    # Customer identity
    email: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
        index=True,
    )
    user_id: Mapped[str | None] = mapped_column(
        String(255),
        nullable=True,
    )

    # Cart snapshot
    cart_items: Mapped[list[dict[str, Any]]] = mapped_column(
        JSONType,
        nullable=False,
        default=list,
    )
    subtotal: Mapped[Decimal] = mapped_column(
        Numeric(12, 2),
        nullable=False,
    )
    coupon_code: Mapped[str | None] = mapped_column(
        String(64),
        nullable=True,
    )
    discount_amount: Mapped[Decimal] = mapped_column(
        Numeric(12, 2),
        nullable=False,
        default=Decimal("0"),
    )
    total: Mapped[Decimal] = mapped_column(
        Numeric(12, 2),
        nullable=False,
    )

    # Lifecycle
    status: Mapped[CartStatus] = mapped_column(
        Enum(
            CartStatus,
            name="cart_status",
            values_callable=lambda x: [e.value for e in x],
        ),
        default=CartStatus.ACTIVE,
        nullable=False,
        index=True,
    )
    recovery_token: Mapped[str] = mapped_column(
        String(64),
        nullable=False,
        unique=True,
        index=True,
    )
    recovery_url: Mapped[str] = mapped_column(
        String(2048),
        nullable=False,
    )
    expires_at: Mapped[datetime] = mapped_column(
        UTCDateTime(),
        nullable=False,
    )
    recovered_at: Mapped[datetime | None] = mapped_column(
        UTCDateTime(),
        nullable=True,
    )
    converted_at: Mapped[datetime | None] = mapped_column(
        UTCDateTime(),
        nullable=True,
    )
    converted_order_id: Mapped[str | None] = mapped_column(
        String(255),
        nullable=True,
    )

    # Email engagement
    emails_sent: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=0,
    )
    emails_opened: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=0,
    )
    emails_clicked: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=0,
    )
    last_email_sent_at: Mapped[datetime | None] = mapped_column(
        UTCDateTime(),
        nullable=True,
    )

    # Extensible data
    extra_data: Mapped[dict[str, str]] = mapped_column(
        JSONType,
        nullable=False,
        default=dict,
    )

    # Relationships
    recovery_emails: Mapped[list["RecoveryEmail"]] = relationship(
        "RecoveryEmail",
        back_populates="cart",
        order_by="RecoveryEmail.position",
        cascade="all, delete-orphan",
        lazy="selectin",
    )

    def __repr__(self) -> str:
        return f"<AbandonedCart {self.email} ({self.status.value})>"
