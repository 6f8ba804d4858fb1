"""Abandoned cart recovery: cart snapshots, reminder scheduling and dispatch."""

import logging
import secrets
import uuid
from collections import Counter
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from pathlib import Path
from typing import Any
from urllib.parse import quote

from jinja2 import Environment, FileSystemLoader
from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from app.core.config import settings
from app.models.abandoned_cart import TERMINAL_CART_STATUSES, AbandonedCart, CartStatus
from app.models.base import utcnow
from app.models.coupon import Coupon
from app.models.recovery_email import EmailStatus, EmailType, RecoveryEmail
from app.schemas.abandoned_cart import (
    AbandonedCartCreate,
    AbandonedCartStats,
    EmailStats,
    HourlyAbandonment,
    TopAbandonedProduct,
)
from app.services.coupon_engine import quantize_money
from app.services.coupon_service import CouponService
from app.services.email_service import EmailService
from app.services.errors import CartNotFoundError

logger = logging.getLogger(__name__)

# Jinja2 template environment
TEMPLATE_DIR = Path(__file__).resolve().parent.parent / "templates" / "email"
_jinja_env = Environment(loader=FileSystemLoader(str(TEMPLATE_DIR)), autoescape=True)

# Reminder with its cart and the cart's full reminder list
_WITH_CART = selectinload(RecoveryEmail.cart).selectinload(AbandonedCart.recovery_emails)

IN_FLIGHT_STATUSES = frozenset({EmailStatus.PENDING, EmailStatus.SENDING})

# Overdue reminders are pushed this far past "now" instead of into the past
OVERDUE_GRACE = timedelta(minutes=5)


@dataclass(frozen=True)
class ReminderStep:
    email_type: EmailType
    delay: timedelta
    subject: str
    includes_coupon: bool = False


# Indexed by cart.emails_sent
REMINDER_SEQUENCE: tuple[ReminderStep, ...] = (
    ReminderStep(
        EmailType.FIRST_REMINDER,
        timedelta(hours=1),
        "Did you forget something? Your cart is waiting!",
    ),
    ReminderStep(
        EmailType.SECOND_REMINDER,
        timedelta(hours=24),
        "Your cart is still waiting for you!",
    ),
    ReminderStep(
        EmailType.FINAL_REMINDER,
        timedelta(hours=72),
        "Last chance to complete your purchase!",
        includes_coupon=True,
    ),
)


@dataclass
class DispatchResult:
    """Counts from one reminder sweep."""

    processed: int = 0
    sent: int = 0
    failed: int = 0


def _money(value: Decimal | float | int | str | None) -> str:
    return f"{quantize_money(Decimal(str(value or 0))):.2f}"


def _parse_id(value: str | uuid.UUID) -> uuid.UUID | None:
    if isinstance(value, uuid.UUID):
        return value
    try:
        return uuid.UUID(str(value))
    except ValueError:
        return None


class RecoveryService:
    """Drives the reminder sequence of abandoned carts."""

    def __init__(self, db: AsyncSession, email_service: EmailService | None = None) -> None:
        self.db = db
        self.email_service = email_service or EmailService.from_settings()
        self.coupon_service = CouponService(db)

    # --- Cart snapshots ---

    async def get_active_cart(self, email: str) -> AbandonedCart | None:
        stmt = select(AbandonedCart).where(
            AbandonedCart.email == email.strip().lower(),
            AbandonedCart.status == CartStatus.ACTIVE,
        )
        result = await self.db.execute(stmt)
        return result.scalars().first()

    async def save_abandoned_cart(
        self,
        data: AbandonedCartCreate,
        user_id: str | None = None,
        now: datetime | None = None,
    ) -> AbandonedCart:
        """Create or refresh the active cart for ``data.email``.

        The shopper's active cart is updated in place, keeping its token and
        reminder history. The next reminder is scheduled only when none is
        pending or being sent and the latest one did not fail.
        """
        now = now or utcnow()
        items = [item.model_dump(mode="json", exclude_none=True) for item in data.cart_items]

        cart = await self.get_active_cart(data.email)
        if cart is not None:
            cart.cart_items = items
            cart.subtotal = data.subtotal
            cart.coupon_code = data.coupon_code
            cart.discount_amount = data.discount_amount
            cart.total = data.total
            if user_id:
                cart.user_id = user_id
            if data.metadata:
                cart.extra_data = {**(cart.extra_data or {}), **data.metadata}
            logger.info("Abandoned cart updated: id=%s email=%s", cart.id, cart.email)
        else:
            token = secrets.token_hex(20)
            cart = AbandonedCart(
                email=data.email,
                user_id=user_id,
                cart_items=items,
                subtotal=data.subtotal,
                coupon_code=data.coupon_code,
                discount_amount=data.discount_amount,
                total=data.total,
                status=CartStatus.ACTIVE,
                recovery_token=token,
                recovery_url=f"{settings.frontend_url}/recover-cart?token={token}",
                expires_at=now + timedelta(days=settings.cart_expiry_days),
                emails_sent=0,
                emails_opened=0,
                emails_clicked=0,
                extra_data=dict(data.metadata),
                created_at=now,
                updated_at=now,
                recovery_emails=[],
            )
            self.db.add(cart)
            logger.info("Abandoned cart created: email=%s", cart.email)

        await self.db.flush()

        if self._sequence_idle(cart):
            await self.schedule_next_reminder(cart, now)

        await self.db.commit()
        return cart

    # --- Reminder scheduling ---

    @staticmethod
    def _sequence_idle(cart: AbandonedCart) -> bool:
        if any(r.status in IN_FLIGHT_STATUSES for r in cart.recovery_emails):
            return False
        # A failed reminder stops the sequence
        return not cart.recovery_emails or cart.recovery_emails[-1].status != EmailStatus.FAILED

    async def schedule_next_reminder(
        self,
        cart: AbandonedCart,
        now: datetime | None = None,
    ) -> RecoveryEmail | None:
        """Append the next pending reminder of the sequence to ``cart``.

        No-op for carts that are not active or have had every reminder
        scheduled. The caller commits.
        """
        now = now or utcnow()
        if cart.status in TERMINAL_CART_STATUSES or cart.emails_sent >= len(REMINDER_SEQUENCE):
            return None

        step = REMINDER_SEQUENCE[cart.emails_sent]
        scheduled_for = self._delay_base(cart) + step.delay
        if scheduled_for < now:
            scheduled_for = now + OVERDUE_GRACE

        coupon: Coupon | None = None
        if step.includes_coupon:
            coupon = await self.coupon_service.mint_recovery_coupon(now)

        reminder = RecoveryEmail(
            position=len(cart.recovery_emails),
            email_type=step.email_type,
            status=EmailStatus.PENDING,
            subject=step.subject,
            scheduled_for=scheduled_for,
            coupon_code=coupon.code if coupon else None,
            discount_amount=coupon.discount_value if coupon else None,
        )
        cart.recovery_emails.append(reminder)
        cart.emails_sent += 1
        await self.db.flush()

        logger.info(
            "Reminder scheduled: cart=%s type=%s for=%s",
            cart.id,
            step.email_type.value,
            scheduled_for.isoformat(),
        )
        return reminder

    @staticmethod
    def _delay_base(cart: AbandonedCart) -> datetime:
        if cart.emails_sent == 0:
            return cart.created_at
        if cart.last_email_sent_at is not None:
            return cart.last_email_sent_at
        # Nothing sent yet: chain off the latest scheduled reminder
        if cart.recovery_emails:
            return cart.recovery_emails[-1].scheduled_for
        return cart.created_at

    # --- Dispatch ---

    async def due_reminders(self, now: datetime | None = None) -> list[RecoveryEmail]:
        """Pending reminders of active carts whose time has come."""
        now = now or utcnow()
        stmt = (
            select(RecoveryEmail)
            .join(RecoveryEmail.cart)
            .where(
                AbandonedCart.status == CartStatus.ACTIVE,
                RecoveryEmail.status == EmailStatus.PENDING,
                RecoveryEmail.scheduled_for <= now,
            )
            .options(_WITH_CART)
            .order_by(RecoveryEmail.scheduled_for)
        )
        result = await self.db.execute(stmt)
        return list(result.scalars().all())

    async def dispatch_due_reminders(self, now: datetime | None = None) -> DispatchResult:
        """Send every due reminder once.

        Each reminder is claimed (pending -> sending) before the send, so an
        overlapping sweep skips it. A failed send is terminal for that
        reminder; a successful one schedules the next step. A sent reminder
        is always marked sent, even when scheduling the next step fails.
        """
        now = now or utcnow()
        result = DispatchResult()

        for reminder_id in [r.id for r in await self.due_reminders(now)]:
            if not await self._claim(reminder_id):
                logger.info("Reminder %s already claimed, skipping", reminder_id)
                continue
            result.processed += 1

            reminder = await self._load_reminder(reminder_id)
            cart = reminder.cart
            cart_id = cart.id
            message_id: str | None = None
            try:
                html_content, text_content = await self.render_reminder(cart, reminder)
                message_id = await self.email_service.send_email(
                    to_email=cart.email,
                    subject=reminder.subject,
                    html_content=html_content,
                    text_content=text_content,
                    tags=[
                        {"name": "type", "value": reminder.email_type.value},
                        {"name": "cart_id", "value": str(cart_id)},
                    ],
                )
            except Exception:
                logger.exception("Error dispatching reminder %s", reminder_id)

            if message_id is None:
                reminder.status = EmailStatus.FAILED
                await self.db.commit()
                result.failed += 1
                logger.warning("Reminder failed: id=%s cart=%s", reminder_id, cart_id)
                continue

            result.sent += 1
            try:
                reminder.status = EmailStatus.SENT
                reminder.sent_at = now
                reminder.provider_message_id = message_id
                cart.last_email_sent_at = now
                await self.schedule_next_reminder(cart, now)
                await self.db.commit()
            except Exception:
                logger.exception(
                    "Could not schedule after reminder %s, marking it sent only", reminder_id
                )
                await self.db.rollback()
                await self._mark_sent(reminder_id, cart_id, message_id, now)

        logger.info(
            "Reminder sweep done: processed=%d sent=%d failed=%d",
            result.processed,
            result.sent,
            result.failed,
        )
        return result

    async def _claim(self, reminder_id: uuid.UUID) -> bool:
        stmt = (
            update(RecoveryEmail)
            .where(
                RecoveryEmail.id == reminder_id,
                RecoveryEmail.status == EmailStatus.PENDING,
            )
            .values(status=EmailStatus.SENDING)
            .execution_options(synchronize_session=False)
        )
        claimed = (await self.db.execute(stmt)).rowcount == 1
        await self.db.commit()
        return claimed

    async def _load_reminder(self, reminder_id: uuid.UUID) -> RecoveryEmail:
        stmt = (
            select(RecoveryEmail)
            .where(RecoveryEmail.id == reminder_id)
            .options(_WITH_CART)
            .execution_options(populate_existing=True)
        )
        return (await self.db.execute(stmt)).scalar_one()

    async def _mark_sent(
        self,
        reminder_id: uuid.UUID,
        cart_id: uuid.UUID,
        message_id: str,
        now: datetime,
    ) -> None:
        await self.db.execute(
            update(RecoveryEmail)
            .where(RecoveryEmail.id == reminder_id)
            .values(status=EmailStatus.SENT, sent_at=now, provider_message_id=message_id)
            .execution_options(synchronize_session=False)
        )
        await self.db.execute(
            update(AbandonedCart)
            .where(AbandonedCart.id == cart_id)
            .values(last_email_sent_at=now)
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()

    async def render_reminder(
        self,
        cart: AbandonedCart,
        reminder: RecoveryEmail,
    ) -> tuple[str, str]:
        """Render the HTML and plain-text bodies of a reminder."""
        context = await self._template_context(cart, reminder)
        template = _jinja_env.get_template(f"abandoned_cart_{reminder.email_type.value}.html")
        html_content = template.render(subject=reminder.subject, **context)
        text_content = (
            "We noticed you left some items in your cart. "
            f"Visit {cart.recovery_url} to complete your purchase."
        )
        return html_content, text_content

    async def _template_context(
        self,
        cart: AbandonedCart,
        reminder: RecoveryEmail,
    ) -> dict[str, Any]:
        tracking_base = f"{settings.api_url}{settings.api_v1_prefix}/abandoned-carts/track"
        items = [
            {
                "name": item.get("product_name", ""),
                "quantity": item.get("quantity", 1),
                "price": _money(item.get("price")),
                "total": _money(Decimal(str(item.get("price", 0))) * int(item.get("quantity", 1))),
                "image": item.get("image"),
            }
            for item in cart.cart_items or []
        ]
        context: dict[str, Any] = {
            "first_name": (cart.extra_data or {}).get("first_name") or "Valued Customer",
            "items": items,
            "subtotal": _money(cart.subtotal),
            "discount": _money(cart.discount_amount),
            "total": _money(cart.total),
            "recovery_url": (
                f"{tracking_base}/click/{reminder.id}"
                f"?redirectUrl={quote(cart.recovery_url, safe='')}"
            ),
            "tracking_pixel_url": f"{tracking_base}/open/{reminder.id}",
            "store_name": settings.store_name,
            "store_url": settings.frontend_url,
            "current_year": utcnow().year,
        }

        if reminder.coupon_code:
            context["coupon_code"] = reminder.coupon_code
            context["discount_amount"] = reminder.discount_amount
            coupon = await self.coupon_service.get_by_code(reminder.coupon_code)
            if coupon is not None:
                context["coupon_type"] = coupon.discount_type.value
                context["coupon_value"] = coupon.discount_value
                context["coupon_expiry"] = (
                    f"{coupon.end_date:%Y-%m-%d}" if coupon.end_date else "Never"
                )
        return context

    # --- Recovery & tracking ---

    async def recover_cart(self, token: str, now: datetime | None = None) -> AbandonedCart:
        """Redeem a recovery token. Succeeds at most once per cart.

        Raises:
            CartNotFoundError: unknown token, terminal cart, or expired cart
        """
        now = now or utcnow()
        stmt = (
            update(AbandonedCart)
            .where(
                AbandonedCart.recovery_token == token,
                AbandonedCart.status == CartStatus.ACTIVE,
                AbandonedCart.expires_at > now,
            )
            .values(status=CartStatus.RECOVERED, recovered_at=now)
            .execution_options(synchronize_session=False)
        )
        if (await self.db.execute(stmt)).rowcount != 1:
            await self.db.rollback()
            raise CartNotFoundError()
        await self.db.commit()

        result = await self.db.execute(
            select(AbandonedCart)
            .where(AbandonedCart.recovery_token == token)
            .execution_options(populate_existing=True)
        )
        cart = result.scalar_one()
        logger.info("Cart recovered: id=%s email=%s", cart.id, cart.email)
        return cart

    async def track_open(self, email_id: str | uuid.UUID, now: datetime | None = None) -> bool:
        """Record a pixel load. Returns False for unknown reminders.

        Every call bumps the cart's open counter; a clicked reminder stays
        clicked and the first open time is kept.
        """
        now = now or utcnow()
        reminder_id = _parse_id(email_id)
        if reminder_id is None:
            return False
        cart_id = await self._reminder_cart_id(reminder_id)
        if cart_id is None:
            return False

        await self.db.execute(
            update(RecoveryEmail)
            .where(RecoveryEmail.id == reminder_id, RecoveryEmail.status != EmailStatus.CLICKED)
            .values(status=EmailStatus.OPENED)
            .execution_options(synchronize_session=False)
        )
        await self.db.execute(
            update(RecoveryEmail)
            .where(RecoveryEmail.id == reminder_id, RecoveryEmail.opened_at.is_(None))
            .values(opened_at=now)
            .execution_options(synchronize_session=False)
        )
        await self.db.execute(
            update(AbandonedCart)
            .where(AbandonedCart.id == cart_id)
            .values(emails_opened=AbandonedCart.emails_opened + 1)
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()
        return True

    async def track_click(self, email_id: str | uuid.UUID, now: datetime | None = None) -> bool:
        """Record a link click. Returns False for unknown reminders."""
        now = now or utcnow()
        reminder_id = _parse_id(email_id)
        if reminder_id is None:
            return False
        cart_id = await self._reminder_cart_id(reminder_id)
        if cart_id is None:
            return False

        await self.db.execute(
            update(RecoveryEmail)
            .where(RecoveryEmail.id == reminder_id)
            .values(status=EmailStatus.CLICKED)
            .execution_options(synchronize_session=False)
        )
        await self.db.execute(
            update(RecoveryEmail)
            .where(RecoveryEmail.id == reminder_id, RecoveryEmail.clicked_at.is_(None))
            .values(clicked_at=now)
            .execution_options(synchronize_session=False)
        )
        await self.db.execute(
            update(AbandonedCart)
            .where(AbandonedCart.id == cart_id)
            .values(emails_clicked=AbandonedCart.emails_clicked + 1)
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()
        return True

    async def _reminder_cart_id(self, reminder_id: uuid.UUID) -> uuid.UUID | None:
        stmt = select(RecoveryEmail.cart_id).where(RecoveryEmail.id == reminder_id)
        return (await self.db.execute(stmt)).scalar_one_or_none()

    # --- Terminal transitions driven from outside ---

    async def mark_converted(
        self,
        email: str,
        order_id: str,
        now: datetime | None = None,
    ) -> int:
        """Close the shopper's active carts after a completed checkout."""
        now = now or utcnow()
        stmt = (
            update(AbandonedCart)
            .where(
                AbandonedCart.email == email.strip().lower(),
                AbandonedCart.status == CartStatus.ACTIVE,
            )
            .values(status=CartStatus.CONVERTED, converted_at=now, converted_order_id=order_id)
            .execution_options(synchronize_session=False)
        )
        converted = (await self.db.execute(stmt)).rowcount
        await self.db.commit()
        if converted:
            logger.info("Carts converted: email=%s order=%s count=%d", email, order_id, converted)
        return converted

    async def expire_stale_carts(self, now: datetime | None = None) -> int:
        """Expire active carts past ``expires_at``."""
        now = now or utcnow()
        stmt = (
            update(AbandonedCart)
            .where(
                AbandonedCart.status == CartStatus.ACTIVE,
                AbandonedCart.expires_at <= now,
            )
            .values(status=CartStatus.EXPIRED)
            .execution_options(synchronize_session=False)
        )
        expired = (await self.db.execute(stmt)).rowcount
        await self.db.commit()
        logger.info("Expired %d abandoned carts", expired)
        return expired

    # --- Stats ---

    async def get_stats(self) -> AbandonedCartStats:
        status_rows = (
            await self.db.execute(
                select(AbandonedCart.status, func.count(), func.coalesce(func.sum(AbandonedCart.total), 0))
                .group_by(AbandonedCart.status)
            )
        ).all()
        counts = {row[0]: row[1] for row in status_rows}
        values = {row[0]: Decimal(str(row[2] or 0)) for row in status_rows}

        total_carts = sum(counts.values())
        total_value = sum(values.values(), start=Decimal("0"))
        recovered_carts = counts.get(CartStatus.RECOVERED, 0)
        converted_carts = counts.get(CartStatus.CONVERTED, 0)

        email_row = (
            await self.db.execute(
                select(
                    func.count(RecoveryEmail.sent_at),
                    func.count(RecoveryEmail.opened_at),
                    func.count(RecoveryEmail.clicked_at),
                )
            )
        ).one()
        sent, opened, clicked = (email_row[0] or 0, email_row[1] or 0, email_row[2] or 0)

        emailed_rows = (
            await self.db.execute(
                select(AbandonedCart.status, func.count())
                .where(AbandonedCart.last_email_sent_at.is_not(None))
                .group_by(AbandonedCart.status)
            )
        ).all()
        emailed = {row[0]: row[1] for row in emailed_rows}
        emailed_total = sum(emailed.values())
        emailed_won = emailed.get(CartStatus.RECOVERED, 0) + emailed.get(CartStatus.CONVERTED, 0)

        products: Counter[tuple[str, str]] = Counter()
        hours: Counter[int] = Counter()
        for cart_items, created_at in (
            await self.db.execute(select(AbandonedCart.cart_items, AbandonedCart.created_at))
        ).all():
            hours[created_at.hour] += 1
            for item in cart_items or []:
                products[(str(item.get("product_id")), item.get("product_name", ""))] += 1

        return AbandonedCartStats(
            total_carts=total_carts,
            active_carts=counts.get(CartStatus.ACTIVE, 0),
            recovered_carts=recovered_carts,
            expired_carts=counts.get(CartStatus.EXPIRED, 0),
            converted_carts=converted_carts,
            total_value=quantize_money(total_value),
            recovered_value=quantize_money(values.get(CartStatus.RECOVERED, Decimal("0"))),
            average_cart_value=quantize_money(total_value / total_carts) if total_carts else Decimal("0.00"),
            recovery_rate=round(recovered_carts / total_carts * 100, 2) if total_carts else 0.0,
            email_stats=EmailStats(
                sent=sent,
                opened=opened,
                clicked=clicked,
                open_rate=round(opened / sent * 100, 2) if sent else 0.0,
                click_rate=round(clicked / sent * 100, 2) if sent else 0.0,
                conversion_rate=round(emailed_won / emailed_total * 100, 2) if emailed_total else 0.0,
            ),
            top_abandoned_products=[
                TopAbandonedProduct(product_id=pid, product_name=name, count=count)
                for (pid, name), count in products.most_common(5)
            ],
            abandonment_by_time=[
                HourlyAbandonment(hour=hour, count=hours[hour]) for hour in sorted(hours)
            ],
        )
