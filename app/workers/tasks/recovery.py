"""Celery tasks for cart recovery: reminder sweep, expiry sweep, order completion."""

import asyncio
import logging
from collections.abc import Coroutine
from decimal import Decimal
from typing import Any, TypeVar

from app.core.database import async_session_maker, engine
from app.schemas.order import OrderCompletedRequest
from app.services.email_service import EmailService
from app.services.order_service import OrderService
from app.services.recovery_service import RecoveryService
from app.workers.celery_app import BaseTask, celery_app

logger = logging.getLogger(__name__)

T = TypeVar("T")


def _run_async(coro: Coroutine[Any, Any, T]) -> T:
    """Run an async coroutine in a fresh event loop, disposing DB connections after.

    Each Celery prefork worker creates a new event loop per task. asyncpg connections
    are bound to the loop that created them, so pooled connections from a previous
    (closed) loop must not be reused.
    """
    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    try:
        return loop.run_until_complete(coro)
    finally:
        loop.run_until_complete(engine.dispose())
        loop.close()


# ---------------------------------------------------------------------------
# Reminder sweep (Celery Beat, every 5 minutes)
# ---------------------------------------------------------------------------


@celery_app.task(  # type: ignore[untyped-decorator]
    name="tasks.recovery.process_due_reminders",
    base=BaseTask,
    bind=True,
)
def process_due_reminders(self: BaseTask) -> dict[str, Any]:  # noqa: ARG001
    """Send every reminder whose scheduled time has passed."""
    return _run_async(_process_due_reminders_async())


async def _process_due_reminders_async() -> dict[str, Any]:
    """Async implementation of the reminder sweep."""
    async with async_session_maker() as session:
        service = RecoveryService(session, EmailService.from_settings())
        result = await service.dispatch_due_reminders()

    return {
        "status": "completed",
        "processed": result.processed,
        "sent": result.sent,
        "failed": result.failed,
    }


# ---------------------------------------------------------------------------
# Expiry sweep (Celery Beat, hourly)
# ---------------------------------------------------------------------------


@celery_app.task(  # type: ignore[untyped-decorator]
    name="tasks.recovery.expire_abandoned_carts",
    base=BaseTask,
    bind=True,
)
def expire_abandoned_carts(self: BaseTask) -> dict[str, Any]:  # noqa: ARG001
    """Move active carts past their expiry to ``expired``."""
    return _run_async(_expire_abandoned_carts_async())


async def _expire_abandoned_carts_async() -> dict[str, Any]:
    async with async_session_maker() as session:
        expired = await RecoveryService(session).expire_stale_carts()
    return {"status": "completed", "expired": expired}


# ---------------------------------------------------------------------------
# Order completed: coupon usage + cart conversion
# ---------------------------------------------------------------------------


@celery_app.task(  # type: ignore[untyped-decorator]
    name="tasks.recovery.process_order_completed",
    base=BaseTask,
    bind=True,
    # Coupon usage is counted per call, a retry could count it twice
    autoretry_for=(),
)
def process_order_completed(
    self: BaseTask,  # noqa: ARG001
    payload: dict[str, Any],
) -> dict[str, Any]:
    """Queue-driven variant of ``POST /orders/completed``."""
    return _run_async(_process_order_completed_async(payload))


async def _process_order_completed_async(payload: dict[str, Any]) -> dict[str, Any]:
    """Async implementation of order completed processing."""
    if not payload.get("order_id"):
        return {"status": "ignored", "reason": "no order id"}

    data = OrderCompletedRequest(
        order_id=str(payload["order_id"]),
        email=payload.get("email"),
        user_id=payload.get("user_id"),
        coupon_code=payload.get("coupon_code"),
        discount_amount=Decimal(str(payload.get("discount_amount") or "0")),
    )
    async with async_session_maker() as session:
        response = await OrderService(session).complete_order(data)

    logger.info(
        "Order completed: order=%s usage_recorded=%s carts_converted=%d",
        response.order_id,
        response.coupon_usage_recorded,
        response.carts_converted,
    )
    return response.model_dump(mode="json")
