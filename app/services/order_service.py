"""Order-completion hook: coupon redemption bookkeeping and cart conversion."""

import logging
from datetime import datetime
from decimal import Decimal

from sqlalchemy.ext.asyncio import AsyncSession

from app.models.base import utcnow
from app.schemas.order import OrderCompletedRequest, OrderCompletedResponse
from app.services.coupon_service import CouponService
from app.services.recovery_service import RecoveryService

logger = logging.getLogger(__name__)


class OrderService:
    """Reacts to orders the checkout service has already persisted."""

    def __init__(self, db: AsyncSession) -> None:
        self.db = db
        self.coupon_service = CouponService(db)

    async def complete_order(
        self,
        data: OrderCompletedRequest,
        now: datetime | None = None,
    ) -> OrderCompletedResponse:
        """Record coupon usage and convert the shopper's abandoned carts.

        The order already exists, so nothing here may fail it: a usage
        ledger error is logged and reported as ``coupon_usage_recorded=False``.
        """
        now = now or utcnow()
        usage_recorded = False

        if data.coupon_code and data.discount_amount > Decimal("0"):
            usage_recorded = await self._record_coupon_usage(data, now)

        carts_converted = 0
        if data.email:
            recovery = RecoveryService(self.db)
            carts_converted = await recovery.mark_converted(data.email, data.order_id, now)

        return OrderCompletedResponse(
            order_id=data.order_id,
            coupon_usage_recorded=usage_recorded,
            carts_converted=carts_converted,
        )

    async def _record_coupon_usage(self, data: OrderCompletedRequest, now: datetime) -> bool:
        try:
            coupon = await self.coupon_service.get_by_code(data.coupon_code or "")
            if coupon is None:
                logger.warning(
                    "Order %s used unknown coupon %s, usage not recorded",
                    data.order_id,
                    data.coupon_code,
                )
                return False
            await self.coupon_service.record_usage(
                coupon,
                user_id=data.user_id,
                order_id=data.order_id,
                discount_amount=data.discount_amount,
                now=now,
            )
            return True
        except Exception:
            logger.exception(
                "Failed to record coupon usage: order=%s code=%s",
                data.order_id,
                data.coupon_code,
            )
            await self.db.rollback()
            return False
