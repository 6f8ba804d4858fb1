"""Seed script for local coupon and cart-recovery testing.

Creates:
- 4 coupons (SAVE20, WELCOME10, BOGO, an expired SUMMER24)
- 4 abandoned carts in different states
  - alice: active, first reminder already due (the next sweep sends it)
  - bob: active, fresh (first reminder an hour out)
  - carol: recovered
  - dave: active but past expiry (the expiry sweep closes it)

Usage:
    uv run python -m scripts.seed_recovery
"""

import asyncio
import uuid
from datetime import UTC, datetime, timedelta
from decimal import Decimal

from sqlalchemy import delete
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.database import async_session_maker
from app.models.abandoned_cart import AbandonedCart, CartStatus
from app.models.coupon import Coupon, CouponScope, CouponStatus, DiscountType
from app.models.recovery_email import EmailStatus, EmailType, RecoveryEmail

SEED_COUPON_CODES = ["SAVE20", "WELCOME10", "BOGO", "SUMMER24"]
SEED_EMAILS = ["alice@test.com", "bob@test.com", "carol@test.com", "dave@test.com"]

SAMPLE_ITEMS = [
    {
        "product_id": "prod_widget",
        "product_name": "Premium Widget",
        "quantity": 2,
        "price": "49.99",
        "variant_name": "Blue / Large",
        "image": "https://placehold.co/64x64/4F46E5/white?text=PW",
        "category_id": "widgets",
    },
    {
        "product_id": "prod_case",
        "product_name": "Widget Case",
        "quantity": 1,
        "price": "30.01",
        "category_id": "accessories",
    },
]


def _token(n: int) -> str:
    return f"{n:040x}"


def _cart(email: str, n: int, now: datetime, **overrides: object) -> AbandonedCart:
    token = _token(n)
    values: dict[str, object] = {
        "id": uuid.UUID(int=n),
        "email": email,
        "cart_items": SAMPLE_ITEMS,
        "subtotal": Decimal("129.99"),
        "discount_amount": Decimal("0"),
        "total": Decimal("129.99"),
        "status": CartStatus.ACTIVE,
        "recovery_token": token,
        "recovery_url": f"{settings.frontend_url}/recover-cart?token={token}",
        "expires_at": now + timedelta(days=settings.cart_expiry_days),
        "emails_sent": 1,
        "emails_opened": 0,
        "emails_clicked": 0,
        "extra_data": {},
        "created_at": now,
    }
    values.update(overrides)
    return AbandonedCart(**values)


async def seed(session: AsyncSession) -> None:
    now = datetime.now(UTC)

    # ── Cleanup existing seed data ──────────────────────────────────────
    await session.execute(delete(AbandonedCart).where(AbandonedCart.email.in_(SEED_EMAILS)))
    await session.execute(delete(Coupon).where(Coupon.code.in_(SEED_COUPON_CODES)))
    await session.flush()

    # ── Coupons ─────────────────────────────────────────────────────────
    session.add_all(
        [
            Coupon(
                code="SAVE20",
                description="20% off orders over $50, up to $15",
                discount_type=DiscountType.PERCENTAGE,
                discount_value=Decimal("20"),
                min_order_value=Decimal("50"),
                max_discount_amount=Decimal("15"),
                start_date=now - timedelta(days=1),
                status=CouponStatus.ACTIVE,
            ),
            Coupon(
                code="WELCOME10",
                description="$10 off, once per customer",
                discount_type=DiscountType.FIXED,
                discount_value=Decimal("10"),
                start_date=now - timedelta(days=1),
                usage_limit=100,
                status=CouponStatus.ACTIVE,
            ),
            Coupon(
                code="BOGO",
                description="Buy 2 widgets, get 1 free",
                discount_type=DiscountType.BUY_X_GET_Y,
                discount_value=Decimal("0"),
                start_date=now - timedelta(days=1),
                scope=CouponScope.CATEGORY,
                category_ids=["widgets"],
                buy_x_get_y={"buy_quantity": 2, "get_quantity": 1, "category_id": "widgets"},
                status=CouponStatus.ACTIVE,
            ),
            Coupon(
                code="SUMMER24",
                description="Expired seasonal promo",
                discount_type=DiscountType.PERCENTAGE,
                discount_value=Decimal("15"),
                start_date=now - timedelta(days=120),
                end_date=now - timedelta(days=30),
                status=CouponStatus.ACTIVE,
            ),
        ]
    )

    # ── alice: first reminder due now ───────────────────────────────────
    alice = _cart("alice@test.com", 1, now - timedelta(hours=2))
    alice.recovery_emails = [
        RecoveryEmail(
            position=0,
            email_type=EmailType.FIRST_REMINDER,
            status=EmailStatus.PENDING,
            subject="Did you forget something? Your cart is waiting!",
            scheduled_for=now - timedelta(hours=1),
        )
    ]

    # ── bob: fresh cart ─────────────────────────────────────────────────
    bob = _cart("bob@test.com", 2, now)
    bob.recovery_emails = [
        RecoveryEmail(
            position=0,
            email_type=EmailType.FIRST_REMINDER,
            status=EmailStatus.PENDING,
            subject="Did you forget something? Your cart is waiting!",
            scheduled_for=now + timedelta(hours=1),
        )
    ]

    # ── carol: recovered ────────────────────────────────────────────────
    carol = _cart(
        "carol@test.com",
        3,
        now - timedelta(days=2),
        status=CartStatus.RECOVERED,
        recovered_at=now - timedelta(days=1),
        last_email_sent_at=now - timedelta(days=1, hours=12),
    )
    carol.recovery_emails = [
        RecoveryEmail(
            position=0,
            email_type=EmailType.FIRST_REMINDER,
            status=EmailStatus.CLICKED,
            subject="Did you forget something? Your cart is waiting!",
            scheduled_for=now - timedelta(days=1, hours=12),
            sent_at=now - timedelta(days=1, hours=12),
            opened_at=now - timedelta(days=1, hours=2),
            clicked_at=now - timedelta(days=1),
        )
    ]

    # ── dave: past expiry ───────────────────────────────────────────────
    dave = _cart(
        "dave@test.com",
        4,
        now - timedelta(days=10),
        expires_at=now - timedelta(days=3),
        emails_sent=0,
    )
    dave.recovery_emails = []

    session.add_all([alice, bob, carol, dave])
    await session.commit()


async def main() -> None:
    async with async_session_maker() as session:
        await seed(session)

    print("=" * 60)
    print("  Coupon and recovery seed data created successfully!")
    print("=" * 60)
    print()
    print("  Coupons: " + ", ".join(SEED_COUPON_CODES))
    print()
    print("  Abandoned carts (recovery tokens):")
    print(f"    alice (reminder due):   {_token(1)}")
    print(f"    bob (fresh):            {_token(2)}")
    print(f"    carol (recovered):      {_token(3)}")
    print(f"    dave (past expiry):     {_token(4)}")
    print()
    print("  Run a sweep: POST /api/v1/abandoned-carts/process-emails")
    print("=" * 60)


if __name__ == "__main__":
    asyncio.run(main())
