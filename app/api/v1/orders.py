"""Order-completion hook called by the checkout service."""

from fastapi import APIRouter

from app.core.deps import AdminUser, DBSession
from app.schemas.order import OrderCompletedRequest, OrderCompletedResponse
from app.services.order_service import OrderService

router = APIRouter()


@router.post("/completed", response_model=OrderCompletedResponse)
async def order_completed(
    data: OrderCompletedRequest,
    _admin: AdminUser,
    db: DBSession,
) -> OrderCompletedResponse:
    """Record coupon usage for a finished order and close the shopper's carts.

    Service-to-service call authenticated with an admin token. Bookkeeping
    failures are logged and reported in the response, never raised.
    """
    return await OrderService(db).complete_order(data)
