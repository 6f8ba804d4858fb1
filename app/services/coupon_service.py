"""Coupon persistence, validation, and redemption bookkeeping."""

import logging
import secrets
import string
from collections.abc import Sequence
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from uuid import UUID

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.models.base import utcnow
from app.models.coupon import Coupon, CouponScope, CouponStatus, DiscountType
from app.models.coupon_usage import CouponUsage
from app.schemas.coupon import (
    CouponCreate,
    CouponDiscountTotal,
    CouponStats,
    CouponUpdate,
    CouponUsageCount,
    LineItem,
)
from app.services import coupon_engine
from app.services.errors import CouponConflictError, CouponInvalidError, CouponNotFoundError

logger = logging.getLogger(__name__)

RECOVERY_CODE_PREFIX = "RECOVER"
RECOVERY_CODE_ATTEMPTS = 10


@dataclass
class CouponEvaluation:
    """A coupon that passed validation and what it is worth for a cart."""

    coupon: Coupon
    discount_amount: Decimal
    subtotal: Decimal

    @property
    def subtotal_after_discount(self) -> Decimal:
        return self.subtotal - self.discount_amount


def _items_subtotal(items: Sequence[LineItem]) -> Decimal:
    return sum((item.price * item.quantity for item in items), start=Decimal("0"))


class CouponService:
    """Admin CRUD plus shopper-facing validation for coupons."""

    def __init__(self, db: AsyncSession) -> None:
        self.db = db

    # --- Lookup ---

    async def get_by_code(self, code: str) -> Coupon | None:
        """Find a coupon by code, case-insensitively."""
        stmt = select(Coupon).where(Coupon.code == code.strip().upper())
        result = await self.db.execute(stmt)
        return result.scalar_one_or_none()

    async def get_coupon(self, coupon_id: UUID) -> Coupon:
        coupon = await self.db.get(Coupon, coupon_id)
        if coupon is None:
            raise CouponNotFoundError("Coupon not found")
        return coupon

    async def list_coupons(
        self,
        status: CouponStatus | None = None,
        page: int = 1,
        page_size: int = 20,
    ) -> tuple[list[Coupon], int]:
        """List coupons newest first. Returns (page of coupons, total count)."""
        stmt = select(Coupon)
        count_stmt = select(func.count()).select_from(Coupon)
        if status is not None:
            stmt = stmt.where(Coupon.status == status)
            count_stmt = count_stmt.where(Coupon.status == status)

        total = (await self.db.execute(count_stmt)).scalar() or 0
        stmt = stmt.order_by(Coupon.created_at.desc()).offset((page - 1) * page_size).limit(page_size)
        coupons = list((await self.db.execute(stmt)).scalars().all())
        return coupons, total

    async def get_available_coupons(self, now: datetime | None = None) -> list[Coupon]:
        """Coupons shoppers may see: active, started, and not yet ended."""
        now = now or utcnow()
        stmt = (
            select(Coupon)
            .where(
                Coupon.status == CouponStatus.ACTIVE,
                Coupon.start_date <= now,
                (Coupon.end_date.is_(None)) | (Coupon.end_date > now),
            )
            .order_by(Coupon.created_at.desc())
        )
        result = await self.db.execute(stmt)
        return list(result.scalars().all())

    # --- Admin CRUD ---

    async def create_coupon(self, data: CouponCreate) -> Coupon:
        if await self.get_by_code(data.code) is not None:
            raise CouponConflictError()

        values = data.model_dump()
        values["buy_x_get_y"] = data.buy_x_get_y.model_dump() if data.buy_x_get_y else None
        coupon = Coupon(**values, usage_count=0)
        self.db.add(coupon)
        await self.db.commit()
        await self.db.refresh(coupon)

        logger.info("Coupon created: code=%s type=%s", coupon.code, coupon.discount_type.value)
        return coupon

    async def update_coupon(self, coupon_id: UUID, data: CouponUpdate) -> Coupon:
        """Write the provided fields. A new code must still be unique."""
        coupon = await self.get_coupon(coupon_id)
        updates = data.model_dump(exclude_unset=True)

        new_code = updates.get("code")
        if new_code is not None and new_code != coupon.code:
            if await self.get_by_code(new_code) is not None:
                raise CouponConflictError()

        if "buy_x_get_y" in updates:
            updates["buy_x_get_y"] = data.buy_x_get_y.model_dump() if data.buy_x_get_y else None

        for field, value in updates.items():
            if value is None and field in {"code", "discount_type", "discount_value", "start_date"}:
                continue
            setattr(coupon, field, value)

        if coupon.end_date is not None and coupon.end_date < coupon.start_date:
            raise CouponInvalidError("end_date must not be before start_date")
        if coupon.discount_type == DiscountType.PERCENTAGE and coupon.discount_value > 100:
            raise CouponInvalidError("percentage discount_value must be between 0 and 100")

        await self.db.commit()
        await self.db.refresh(coupon)
        logger.info("Coupon updated: code=%s fields=%s", coupon.code, sorted(updates))
        return coupon

    async def delete_coupon(self, coupon_id: UUID) -> None:
        coupon = await self.get_coupon(coupon_id)
        await self.db.delete(coupon)
        await self.db.commit()
        logger.info("Coupon deleted: code=%s", coupon.code)

    # --- Shopper validation ---

    async def validate_coupon(
        self,
        code: str,
        *,
        user_id: str | None = None,
        subtotal: Decimal | None = None,
        items: Sequence[LineItem] = (),
        now: datetime | None = None,
    ) -> CouponEvaluation:
        """Check that ``code`` can be used by ``user_id`` on this cart.

        The subtotal defaults to the sum of ``items``; with neither, only the
        coupon itself is checked and the discount is 0.

        Raises:
            CouponNotFoundError: unknown code
            CouponInvalidError: the coupon cannot be used, with the reason
        """
        now = now or utcnow()
        coupon = await self.get_by_code(code)
        if coupon is None:
            raise CouponNotFoundError()

        reason = coupon_engine.unusable_reason(coupon, now)
        if reason is not None:
            raise CouponInvalidError(reason)

        if user_id is not None and coupon.usage_limit > 0:
            if await self._user_usage_count(coupon.id, user_id) > 0:
                raise CouponInvalidError("You have already used this coupon")

        if coupon.scope == CouponScope.CUSTOMER and coupon.customer_ids:
            if user_id is None or user_id not in {str(cid) for cid in coupon.customer_ids}:
                raise CouponInvalidError("This coupon is not available for your account")

        if subtotal is None and items:
            subtotal = _items_subtotal(items)
        if subtotal is None:
            return CouponEvaluation(coupon=coupon, discount_amount=Decimal("0"), subtotal=Decimal("0"))

        if coupon_engine.below_minimum(coupon, subtotal):
            raise CouponInvalidError(
                f"This coupon requires a minimum order of ${coupon.min_order_value:.2f}"
            )

        discount = coupon_engine.calculate_discount(coupon, subtotal, items, now)
        return CouponEvaluation(coupon=coupon, discount_amount=discount, subtotal=subtotal)

    async def apply_coupon(
        self,
        code: str,
        subtotal: Decimal,
        items: Sequence[LineItem] = (),
        *,
        user_id: str | None = None,
        now: datetime | None = None,
    ) -> CouponEvaluation:
        """Validate against a concrete subtotal. The cart itself lives elsewhere."""
        evaluation = await self.validate_coupon(
            code, user_id=user_id, subtotal=subtotal, items=items, now=now
        )
        logger.info(
            "Coupon applied: code=%s subtotal=%s discount=%s",
            evaluation.coupon.code,
            evaluation.subtotal,
            evaluation.discount_amount,
        )
        return evaluation

    async def _user_usage_count(self, coupon_id: UUID, user_id: str) -> int:
        stmt = select(func.count()).select_from(CouponUsage).where(
            CouponUsage.coupon_id == coupon_id,
            CouponUsage.user_id == user_id,
        )
        return (await self.db.execute(stmt)).scalar() or 0

    # --- Redemption ---

    async def record_usage(
        self,
        coupon: Coupon,
        *,
        user_id: str | None,
        order_id: str,
        discount_amount: Decimal,
        now: datetime | None = None,
    ) -> CouponUsage:
        """Count one redemption and append it to the usage ledger.

        The counter is bumped in SQL so concurrent checkouts never lose an
        increment.
        """
        now = now or utcnow()
        await self.db.execute(
            update(Coupon)
            .where(Coupon.id == coupon.id)
            .values(usage_count=Coupon.usage_count + 1)
        )
        usage = CouponUsage(
            coupon_id=coupon.id,
            coupon_code=coupon.code,
            user_id=user_id,
            order_id=order_id,
            discount_amount=coupon_engine.quantize_money(Decimal(discount_amount)),
            used_at=now,
        )
        self.db.add(usage)
        await self.db.commit()
        await self.db.refresh(coupon)

        logger.info(
            "Coupon usage recorded: code=%s order=%s count=%s",
            coupon.code,
            order_id,
            coupon.usage_count,
        )
        return usage

    async def mint_recovery_coupon(self, now: datetime | None = None) -> Coupon:
        """Create a single-use percentage coupon for a final cart reminder.

        Flushed but not committed; the caller owns the transaction.
        """
        now = now or utcnow()
        for _ in range(RECOVERY_CODE_ATTEMPTS):
            code = RECOVERY_CODE_PREFIX + "".join(secrets.choice(string.digits) for _ in range(6))
            if await self.get_by_code(code) is None:
                break
        else:
            raise CouponConflictError("Could not allocate a unique recovery coupon code")

        coupon = Coupon(
            code=code,
            description="Special discount to complete your purchase",
            discount_type=DiscountType.PERCENTAGE,
            discount_value=Decimal(settings.recovery_coupon_percent),
            min_order_value=Decimal("0"),
            start_date=now,
            end_date=now + timedelta(days=settings.recovery_coupon_valid_days),
            status=CouponStatus.ACTIVE,
            usage_limit=1,
            usage_count=0,
            individual_use_only=True,
            exclude_sale_items=False,
            scope=CouponScope.CART,
            product_ids=[],
            category_ids=[],
            customer_ids=[],
        )
        self.db.add(coupon)
        await self.db.flush()

        logger.info("Recovery coupon minted: code=%s", coupon.code)
        return coupon

    # --- Stats ---

    async def get_stats(self) -> CouponStats:
        total_coupons = (await self.db.execute(select(func.count()).select_from(Coupon))).scalar() or 0
        active_coupons = (
            await self.db.execute(
                select(func.count()).select_from(Coupon).where(Coupon.status == CouponStatus.ACTIVE)
            )
        ).scalar() or 0
        expired_coupons = (
            await self.db.execute(
                select(func.count()).select_from(Coupon).where(Coupon.status == CouponStatus.EXPIRED)
            )
        ).scalar() or 0

        usage_row = (
            await self.db.execute(
                select(
                    func.count(CouponUsage.id),
                    func.coalesce(func.sum(CouponUsage.discount_amount), 0),
                )
            )
        ).one()

        most_used = (
            await self.db.execute(
                select(Coupon.id, Coupon.code, Coupon.usage_count)
                .order_by(Coupon.usage_count.desc())
                .limit(5)
            )
        ).all()

        discount_sum = func.sum(CouponUsage.discount_amount)
        highest_value = (
            await self.db.execute(
                select(CouponUsage.coupon_id, CouponUsage.coupon_code, discount_sum)
                .group_by(CouponUsage.coupon_id, CouponUsage.coupon_code)
                .order_by(discount_sum.desc())
                .limit(5)
            )
        ).all()

        return CouponStats(
            total_coupons=total_coupons,
            active_coupons=active_coupons,
            expired_coupons=expired_coupons,
            total_usage=usage_row[0] or 0,
            total_discount_amount=coupon_engine.quantize_money(Decimal(str(usage_row[1] or 0))),
            most_used_coupons=[
                CouponUsageCount(id=row.id, code=row.code, usage_count=row.usage_count)
                for row in most_used
            ],
            highest_value_coupons=[
                CouponDiscountTotal(
                    coupon_id=row[0],
                    coupon_code=row[1],
                    total_discount_amount=coupon_engine.quantize_money(Decimal(str(row[2] or 0))),
                )
                for row in highest_value
            ],
        )
