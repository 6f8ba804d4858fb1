"""RecoveryEmail model: one scheduled or sent reminder of a cart's sequence."""

import enum
import uuid
from datetime import datetime
from decimal import Decimal
from typing import TYPE_CHECKING

from sqlalchemy import Enum, ForeignKey, Index, Integer, Numeric, String, Uuid
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.models.base import Base, UTCDateTime

if TYPE_CHECKING:
    from app.models.abandoned_cart import AbandonedCart


class EmailType(str, enum.Enum):
    """Reminder kind, selects the email template."""

    FIRST_REMINDER = "first_reminder"
    SECOND_REMINDER = "second_reminder"
    FINAL_REMINDER = "final_reminder"
    DISCOUNT_OFFER = "discount_offer"


class EmailStatus(str, enum.Enum):
    """Delivery and engagement status of a reminder.

    SENDING is the claim taken by a sweep before it talks to the mail
    provider, so two overlapping sweeps cannot both send one reminder.
    """

    PENDING = "pending"
    SENDING = "sending"
    SENT = "sent"
    FAILED = "failed"
    OPENED = "opened"
    CLICKED = "clicked"


class RecoveryEmail(Base):
    """A reminder record. Addressed by id from tracking pixels and links."""

    __tablename__ = "recovery_emails"
    __table_args__ = (
        Index("ix_recovery_emails_status_scheduled", "status", "scheduled_for"),
    )

    cart_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("abandoned_carts.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    position: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
    )

    email_type: Mapped[EmailType] = mapped_column(
        Enum(
            EmailType,
            name="recovery_email_type",
            values_callable=lambda x: [e.value for e in x],
        ),
        nullable=False,
    )
    status: Mapped[EmailStatus] = mapped_column(
        Enum(
            EmailStatus,
            name="recovery_email_status",
            values_callable=lambda x: [e.value for e in x],
        ),
        default=EmailStatus.PENDING,
        nullable=False,
    )
    subject: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
    )

    # Timing
    scheduled_for: Mapped[datetime] = mapped_column(
        UTCDateTime(),
        nullable=False,
    )
    sent_at: Mapped[datetime | None] = mapped_column(
        UTCDateTime(),
        nullable=True,
    )
    opened_at: Mapped[datetime | None] = mapped_column(
        UTCDateTime(),
        nullable=True,
    )
    clicked_at: Mapped[datetime | None] = mapped_column(
        UTCDateTime(),
        nullable=True,
    )

    # Discount offered in this email (percent for recovery coupons)
    coupon_code: Mapped[str | None] = mapped_column(
        String(64),
        nullable=True,
    )
    discount_amount: Mapped[Decimal | None] = mapped_column(
        Numeric(12, 2),
        nullable=True,
    )

    provider_message_id: Mapped[str | None] = mapped_column(
        String(255),
        nullable=True,
    )

    cart: Mapped["AbandonedCart"] = relationship(
        "AbandonedCart",
        back_populates="recovery_emails",
    )

    def __repr__(self) -> str:
        return f"<RecoveryEmail {self.email_type.value} ({self.status.value})>"
