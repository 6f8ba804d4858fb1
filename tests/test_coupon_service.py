"""Tests for CouponService: CRUD, validation, redemption and stats."""

from collections.abc import Callable
from datetime import timedelta
from decimal import Decimal
from typing import Any
from unittest.mock import patch

import pytest
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.models.base import utcnow
from app.models.coupon import Coupon, CouponScope, CouponStatus, DiscountType
from app.models.coupon_usage import CouponUsage
from app.schemas.coupon import CouponCreate, CouponUpdate, LineItem
from app.services.coupon_service import CouponService
from app.services.errors import CouponConflictError, CouponInvalidError, CouponNotFoundError
from tests.conftest import TEST_USER_ID


class TestCouponCrud:
    """Admin create/update/delete."""

    @pytest.mark.asyncio
    async def test_create_uppercases_code(self, db_session: AsyncSession) -> None:
        service = CouponService(db_session)
        coupon = await service.create_coupon(
            CouponCreate(
                code="  summer10 ",
                discount_type=DiscountType.PERCENTAGE,
                discount_value=Decimal("10"),
                start_date=utcnow(),
            )
        )
        assert coupon.code == "SUMMER10"
        assert coupon.usage_count == 0

    @pytest.mark.asyncio
    async def test_duplicate_code_rejected(
        self,
        db_session: AsyncSession,
        coupon_factory: Callable[..., Any],
    ) -> None:
        await coupon_factory(code="DUPE")
        service = CouponService(db_session)
        with pytest.raises(CouponConflictError):
            await service.create_coupon(
                CouponCreate(
                    code="dupe",
                    discount_type=DiscountType.FIXED,
                    discount_value=Decimal("5"),
                    start_date=utcnow(),
                )
            )

    @pytest.mark.asyncio
    async def test_update_rejects_taken_code(
        self,
        db_session: AsyncSession,
        coupon_factory: Callable[..., Any],
    ) -> None:
        await coupon_factory(code="FIRST")
        second = await coupon_factory(code="SECOND")
        service = CouponService(db_session)
        with pytest.raises(CouponConflictError):
            await service.update_coupon(second.id, CouponUpdate(code="first"))

    @pytest.mark.asyncio
    async def test_update_writes_only_given_fields(
        self,
        db_session: AsyncSession,
        coupon_factory: Callable[..., Any],
    ) -> None:
        coupon = await coupon_factory(code="PARTIAL", discount_value="10")
        service = CouponService(db_session)
        updated = await service.update_coupon(coupon.id, CouponUpdate(status=CouponStatus.DISABLED))
        assert updated.status == CouponStatus.DISABLED
        assert updated.discount_value == Decimal("10")
        assert updated.code == "PARTIAL"

    @pytest.mark.asyncio
    async def test_delete_unknown_raises(self, db_session: AsyncSession) -> None:
        import uuid

        with pytest.raises(CouponNotFoundError):
            await CouponService(db_session).delete_coupon(uuid.uuid4())


class TestValidateCoupon:
    """Shopper-facing validation reasons."""

    @pytest.mark.asyncio
    async def test_unknown_code(self, db_session: AsyncSession) -> None:
        with pytest.raises(CouponNotFoundError) as exc:
            await CouponService(db_session).validate_coupon("NOPE")
        assert exc.value.message == "Invalid coupon code"

    @pytest.mark.asyncio
    async def test_lookup_is_case_insensitive(
        self,
        db_session: AsyncSession,
        coupon_factory: Callable[..., Any],
    ) -> None:
        await coupon_factory(code="SAVE10")
        result = await CouponService(db_session).validate_coupon("save10", subtotal=Decimal("50"))
        assert result.discount_amount == Decimal("5.00")

    @pytest.mark.asyncio
    async def test_expired_reason(
        self,
        db_session: AsyncSession,
        coupon_factory: Callable[..., Any],
    ) -> None:
        await coupon_factory(
            code="OLD",
            start_date=utcnow() - timedelta(days=30),
            end_date=utcnow() - timedelta(days=1),
        )
        with pytest.raises(CouponInvalidError) as exc:
            await CouponService(db_session).validate_coupon("OLD")
        assert exc.value.message.startswith("This coupon expired on")

    @pytest.mark.asyncio
    async def test_already_used_by_user(
        self,
        db_session: AsyncSession,
        coupon_factory: Callable[..., Any],
        coupon_usage_factory: Callable[..., Any],
    ) -> None:
        coupon = await coupon_factory(code="ONCE", usage_limit=10, usage_count=1)
        await coupon_usage_factory(coupon=coupon, user_id=TEST_USER_ID)

        service = CouponService(db_session)
        with pytest.raises(CouponInvalidError) as exc:
            await service.validate_coupon("ONCE", user_id=TEST_USER_ID)
        assert exc.value.message == "You have already used this coupon"

        # Another shopper can still use it
        result = await service.validate_coupon("ONCE", user_id="someone-else")
        assert result.coupon.code == "ONCE"

    @pytest.mark.asyncio
    async def test_customer_scope(
        self,
        db_session: AsyncSession,
        coupon_factory: Callable[..., Any],
    ) -> None:
        await coupon_factory(code="VIP", scope=CouponScope.CUSTOMER, customer_ids=["vip-1"])
        service = CouponService(db_session)

        with pytest.raises(CouponInvalidError) as exc:
            await service.validate_coupon("VIP", user_id=TEST_USER_ID)
        assert exc.value.message == "This coupon is not available for your account"

        result = await service.validate_coupon("VIP", user_id="vip-1")
        assert result.coupon.code == "VIP"

    @pytest.mark.asyncio
    async def test_below_minimum_message(
        self,
        db_session: AsyncSession,
        coupon_factory: Callable[..., Any],
    ) -> None:
        await coupon_factory(code="MIN50", min_order_value=Decimal("50"))
        with pytest.raises(CouponInvalidError) as exc:
            await CouponService(db_session).validate_coupon("MIN50", subtotal=Decimal("40"))
        assert exc.value.message == "This coupon requires a minimum order of $50.00"

    @pytest.mark.asyncio
    async def test_subtotal_defaults_to_items(
        self,
        db_session: AsyncSession,
        coupon_factory: Callable[..., Any],
    ) -> None:
        await coupon_factory(code="ITEMS", discount_value="10")
        items = [LineItem(product_id="a", price=Decimal("25"), quantity=2)]
        result = await CouponService(db_session).validate_coupon("ITEMS", items=items)
        assert result.subtotal == Decimal("50")
        assert result.discount_amount == Decimal("5.00")

    @pytest.mark.asyncio
    async def test_apply_reports_totals(
        self,
        db_session: AsyncSession,
        coupon_factory: Callable[..., Any],
    ) -> None:
        await coupon_factory(
            code="SAVE20",
            discount_value="20",
            min_order_value=Decimal("50"),
            max_discount_amount=Decimal("15"),
        )
        result = await CouponService(db_session).apply_coupon("SAVE20", Decimal("100"))
        assert result.discount_amount == Decimal("15.00")
        assert result.subtotal_after_discount == Decimal("85.00")


class TestRecordUsage:
    """Atomic usage counting and the ledger."""

    @pytest.mark.asyncio
    async def test_increments_and_appends_ledger(
        self,
        db_session: AsyncSession,
        coupon_factory: Callable[..., Any],
    ) -> None:
        coupon = await coupon_factory(code="COUNTME")
        service = CouponService(db_session)

        await service.record_usage(
            coupon, user_id=TEST_USER_ID, order_id="order-1", discount_amount=Decimal("4.5")
        )

        assert coupon.usage_count == 1
        rows = (await db_session.execute(select(CouponUsage))).scalars().all()
        assert len(rows) == 1
        assert rows[0].coupon_code == "COUNTME"
        assert rows[0].discount_amount == Decimal("4.50")

    @pytest.mark.asyncio
    async def test_stale_copies_do_not_lose_updates(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        coupon_factory: Callable[..., Any],
    ) -> None:
        coupon = await coupon_factory(code="RACE")

        # Two checkouts holding the same stale coupon row (usage_count=0)
        async with session_factory() as s1, session_factory() as s2:
            c1 = await s1.get(Coupon, coupon.id)
            c2 = await s2.get(Coupon, coupon.id)
            assert c1 is not None and c2 is not None
            await CouponService(s1).record_usage(
                c1, user_id="u1", order_id="o1", discount_amount=Decimal("1")
            )
            await CouponService(s2).record_usage(
                c2, user_id="u2", order_id="o2", discount_amount=Decimal("1")
            )

        async with session_factory() as s3:
            count = (
                await s3.execute(select(Coupon.usage_count).where(Coupon.id == coupon.id))
            ).scalar_one()
        assert count == 2


class TestMintRecoveryCoupon:
    @pytest.mark.asyncio
    async def test_mints_single_use_percentage_coupon(self, db_session: AsyncSession) -> None:
        now = utcnow()
        coupon = await CouponService(db_session).mint_recovery_coupon(now)
        await db_session.commit()

        assert coupon.code.startswith("RECOVER")
        assert len(coupon.code) == len("RECOVER") + 6
        assert coupon.code[len("RECOVER") :].isdigit()
        assert coupon.discount_type == DiscountType.PERCENTAGE
        assert coupon.discount_value == Decimal("10")
        assert coupon.usage_limit == 1
        assert coupon.scope == CouponScope.CART
        assert coupon.end_date == now + timedelta(days=7)

    @pytest.mark.asyncio
    async def test_retries_on_code_collision(
        self,
        db_session: AsyncSession,
        coupon_factory: Callable[..., Any],
    ) -> None:
        await coupon_factory(code="RECOVER111111")
        digits = iter("111111" + "222222")
        with patch("app.services.coupon_service.secrets.choice", side_effect=lambda _: next(digits)):
            coupon = await CouponService(db_session).mint_recovery_coupon()
        assert coupon.code == "RECOVER222222"


class TestCouponStats:
    @pytest.mark.asyncio
    async def test_stats(
        self,
        db_session: AsyncSession,
        coupon_factory: Callable[..., Any],
        coupon_usage_factory: Callable[..., Any],
    ) -> None:
        popular = await coupon_factory(code="POPULAR", usage_count=3)
        await coupon_factory(code="GONE", status=CouponStatus.EXPIRED)
        await coupon_usage_factory(coupon=popular, order_id="o1", discount_amount="5.00")
        await coupon_usage_factory(coupon=popular, order_id="o2", discount_amount="7.50")

        stats = await CouponService(db_session).get_stats()

        assert stats.total_coupons == 2
        assert stats.active_coupons == 1
        assert stats.expired_coupons == 1
        assert stats.total_usage == 2
        assert stats.total_discount_amount == Decimal("12.50")
        assert stats.most_used_coupons[0].code == "POPULAR"
        assert stats.highest_value_coupons[0].total_discount_amount == Decimal("12.50")

    @pytest.mark.asyncio
    async def test_empty_stats(self, db_session: AsyncSession) -> None:
        stats = await CouponService(db_session).get_stats()
        total = (await db_session.execute(select(func.count()).select_from(Coupon))).scalar()
        assert total == 0
        assert stats.total_usage == 0
        assert stats.total_discount_amount == Decimal("0")
        assert stats.most_used_coupons == []
